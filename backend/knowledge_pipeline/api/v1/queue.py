"""
GET /queue/status: queue health for load balancers and dashboards.

200 while healthy; 503 when Redis is unreachable or the waiting count
reaches the degraded threshold.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from knowledge_pipeline.api.dependencies import DocumentServiceDep
from knowledge_pipeline.schemas.documents import QueueStatusResponse

router = APIRouter(
    prefix="/queue",
    tags=["Operations"],
)


@router.get(
    "/status",
    response_model=QueueStatusResponse,
    summary="Document queue health",
    responses={503: {"model": QueueStatusResponse}},
)
async def queue_status(service: DocumentServiceDep) -> JSONResponse:
    report = await service.queue_status()
    return JSONResponse(
        status_code=(
            status.HTTP_200_OK if report.status == "healthy"
            else status.HTTP_503_SERVICE_UNAVAILABLE
        ),
        content=report.model_dump(mode="json"),
    )
