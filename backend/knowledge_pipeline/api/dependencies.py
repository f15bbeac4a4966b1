"""
Composed FastAPI Dependencies

Route handlers receive a ready DocumentService from here and never build
repositories, queues or vector stores themselves. Tests swap the whole
service through `app.dependency_overrides[get_document_service]`.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from knowledge_pipeline.db.repository import DocumentRepository
from knowledge_pipeline.services.documents import DocumentService


def get_document_service() -> DocumentService:
    return DocumentService(DocumentRepository())


DocumentServiceDep = Annotated[DocumentService, Depends(get_document_service)]
