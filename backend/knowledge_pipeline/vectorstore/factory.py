"""
Vector Store Factory

Selects the correct backend (Pinecone | memory) based on config.
The rest of the app only imports get_vector_store() — never touches
the concrete classes directly.
"""

from __future__ import annotations

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.vectorstore.base import VectorStoreBase

# The memory backend must be shared within a process or writes vanish
_memory_store: VectorStoreBase | None = None


def get_vector_store() -> VectorStoreBase:
    """Return a vector store for the configured backend."""
    global _memory_store
    backend = settings.vector_store_backend.lower()

    if backend == "pinecone":
        from knowledge_pipeline.vectorstore.pinecone_store import PineconeVectorStore
        return PineconeVectorStore()

    if backend == "memory":
        if _memory_store is None:
            from knowledge_pipeline.vectorstore.memory_store import InMemoryVectorStore
            _memory_store = InMemoryVectorStore(dimension=settings.embedding_dimensions)
        return _memory_store

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'pinecone', 'memory'"
    )
