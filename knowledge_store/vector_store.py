"""FAISS-backed store for long-term memory vectors.

Vectors are L2-normalised and kept in an inner-product index, so search
scores are cosine similarities. The index and its metadata are persisted
side by side as ``index.faiss`` and ``metadata.json``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

try:
    import faiss  # type: ignore
except ImportError as exc:  # pragma: no cover - runtime dependency
    raise RuntimeError(
        "The faiss library is required for the memory vector store. Install faiss or faiss-cpu via pip or conda."
    ) from exc

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.faiss"
METADATA_FILENAME = "metadata.json"


class MemoryVectorStore:
    """Thread-safe append-only vector store with optional persistence."""

    def __init__(self, store_dir: Optional[Union[str, Path]] = None, *, dimension: Optional[int] = None) -> None:
        self.store_dir = Path(store_dir) if store_dir else None
        self._lock = threading.Lock()
        self._index: Optional[Any] = faiss.IndexFlatIP(dimension) if dimension else None
        self._metadata: List[Dict[str, Any]] = []

    @property
    def index_path(self) -> Optional[Path]:
        return self.store_dir / INDEX_FILENAME if self.store_dir else None

    @property
    def metadata_path(self) -> Optional[Path]:
        return self.store_dir / METADATA_FILENAME if self.store_dir else None

    @property
    def dimension(self) -> Optional[int]:
        return self._index.d if self._index is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._metadata)

    def load(self) -> bool:
        """Load a persisted store; returns False when nothing is on disk."""
        if self.index_path is None or not self.index_path.exists():
            return False
        if not self.metadata_path.exists():
            raise FileNotFoundError(f"Metadata file not found at {self.metadata_path}")

        started = time.perf_counter()
        index = faiss.read_index(str(self.index_path))
        with self.metadata_path.open("r", encoding="utf-8") as f:
            metadata = json.load(f)
        if not isinstance(metadata, list):
            raise ValueError("metadata.json must contain a list of metadata entries")
        if index.ntotal != len(metadata):
            logger.warning(
                "Memory store mismatch: index has %d vectors, metadata contains %d entries",
                index.ntotal,
                len(metadata),
            )
        with self._lock:
            self._index = index
            self._metadata = metadata
        logger.info("Loaded %d memories from %s in %.2f seconds", len(metadata), self.store_dir, time.perf_counter() - started)
        return True

    def save(self, text: str, vector: Sequence[float]) -> int:
        """Add one memory and return its id."""
        if not text or not text.strip():
            raise ValueError("memory text must not be empty")
        matrix = self._as_matrix(vector)
        with self._lock:
            if self._index is None:
                self._index = faiss.IndexFlatIP(matrix.shape[1])
                logger.info("Created memory index with dimension %d", matrix.shape[1])
            if matrix.shape[1] != self._index.d:
                raise ValueError(
                    f"Embedding dimension {matrix.shape[1]} does not match index dimension {self._index.d}"
                )
            self._index.add(matrix)
            memory_id = len(self._metadata)
            self._metadata.append({"text": text, "created_at": time.time()})
            self._persist_locked()
        logger.debug("Stored memory %d", memory_id)
        return memory_id

    def search_top_k(self, vector: Sequence[float], k: int) -> List[Dict[str, Any]]:
        if k <= 0:
            raise ValueError("k must be a positive integer")
        matrix = self._as_matrix(vector)
        with self._lock:
            if self._index is None or self._index.ntotal == 0:
                return []
            if matrix.shape[1] != self._index.d:
                raise ValueError(
                    f"Embedding dimension {matrix.shape[1]} does not match index dimension {self._index.d}"
                )
            scores, ids = self._index.search(matrix, min(k, self._index.ntotal))
            metadata = list(self._metadata)

        results: List[Dict[str, Any]] = []
        for idx, score in zip(ids[0], scores[0]):
            if idx < 0 or idx >= len(metadata):
                continue
            entry = metadata[idx]
            results.append(
                {
                    "id": int(idx),
                    "score": float(score),
                    "text": entry.get("text", ""),
                    "metadata": {key: value for key, value in entry.items() if key != "text"},
                }
            )
        return results

    def _persist_locked(self) -> None:
        if self.store_dir is None:
            return
        self.store_dir.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self._index, str(self.index_path))
        with self.metadata_path.open("w", encoding="utf-8") as f:
            json.dump(self._metadata, f, ensure_ascii=False)

    @staticmethod
    def _as_matrix(vector: Sequence[float]) -> np.ndarray:
        matrix = np.array(vector, dtype="float32").reshape(1, -1)
        if matrix.shape[1] == 0:
            raise ValueError("vector must not be empty")
        faiss.normalize_L2(matrix)
        return matrix
