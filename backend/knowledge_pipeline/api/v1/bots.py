"""
Bot-scoped vector operations.

  POST   /bots/{bot_id}/search    similarity search within one bot
  DELETE /bots/{bot_id}/vectors   remove every vector the bot owns
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from knowledge_pipeline.api.dependencies import DocumentServiceDep
from knowledge_pipeline.schemas.documents import (
    DeleteResponse,
    DocumentErrors,
    ErrorResponse,
    SearchRequest,
    SearchResponse,
)
from knowledge_pipeline.vectorstore.base import VectorStoreError

router = APIRouter(
    prefix="/bots",
    tags=["Retrieval"],
)


@router.post(
    "/{bot_id}/search",
    response_model=SearchResponse,
    summary="Similarity search over one bot's documents",
)
async def search(bot_id: UUID, body: SearchRequest, service: DocumentServiceDep) -> SearchResponse:
    """
    An unreachable vector backend yields `degraded=true` with no matches,
    never an error status.
    """
    return await service.search(bot_id, body.query, body.top_k)


@router.delete(
    "/{bot_id}/vectors",
    response_model=DeleteResponse,
    summary="Delete all vectors owned by a bot",
    responses={502: {"model": ErrorResponse}},
)
async def delete_bot_vectors(bot_id: UUID, service: DocumentServiceDep) -> DeleteResponse:
    try:
        return await service.delete_bot_vectors(bot_id)
    except VectorStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=DocumentErrors.vector_store_error(str(exc)).model_dump(),
        ) from exc
