"""Configuration for the knowledge store components."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class EmbeddingConfig:
    """Settings for the OpenAI-compatible embeddings endpoint."""

    endpoint: str = "http://localhost:8001/v1/embeddings"
    model: Optional[str] = None
    api_key: Optional[str] = None
    batch_size: int = 32
    request_timeout: int = 30
    model_kwargs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class KnowledgeConfig:
    """Locations of the persisted memory vectors and the full-text index."""

    memory_dir: str = "./data/memory"
    index_path: str = "./data/knowledge.db"
    chunk_size: int = 500
    chunk_overlap: int = 50
