"""Storage collaborators: memory vectors, knowledge index and embeddings."""

from .config import EmbeddingConfig, KnowledgeConfig
from .embedding_client import EmbeddingClient
from .fts_index import KnowledgeIndex, chunk_text
from .vector_store import MemoryVectorStore

__all__ = [
    "EmbeddingClient",
    "EmbeddingConfig",
    "KnowledgeConfig",
    "KnowledgeIndex",
    "MemoryVectorStore",
    "chunk_text",
]
