from knowledge_pipeline.vectorstore.base import (
    QueryOutcome,
    QueryResult,
    QueryStatus,
    UpsertOutcome,
    VectorRecord,
    VectorStoreBase,
    VectorStoreError,
)
from knowledge_pipeline.vectorstore.factory import get_vector_store

__all__ = [
    "VectorStoreBase",
    "VectorRecord",
    "QueryResult",
    "QueryOutcome",
    "QueryStatus",
    "UpsertOutcome",
    "VectorStoreError",
    "get_vector_store",
]
