"""SQLite FTS5 full-text index over knowledge-base chunks."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Union

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS chunks USING fts5(
    content,
    source UNINDEXED
)
"""


def chunk_text(text: str, chunk_size: int = 500, overlap: int = 50) -> List[str]:
    """Split ``text`` into overlapping character windows, preferring paragraph breaks."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be between 0 and chunk_size")

    chunks: List[str] = []
    current = ""
    for paragraph in (p.strip() for p in text.split("\n\n")):
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= chunk_size:
            current = candidate
            continue
        if current:
            chunks.append(current)
        while len(paragraph) > chunk_size:
            chunks.append(paragraph[:chunk_size])
            paragraph = paragraph[chunk_size - overlap :]
        current = paragraph
    if current:
        chunks.append(current)
    return chunks


class KnowledgeIndex:
    """Chunk store searchable with FTS5 boolean/prefix queries."""

    def __init__(self, db_path: Union[str, Path] = ":memory:", *, chunk_size: int = 500, chunk_overlap: int = 50) -> None:
        self.db_path = str(db_path)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        with self._lock, self._conn:
            self._conn.execute(_SCHEMA)
        logger.debug("Knowledge index ready at %s", self.db_path)

    def add_document(self, source: str, text: str) -> int:
        """Chunk and index ``text``; returns the number of chunks added."""
        if not source or not source.strip():
            raise ValueError("source must not be empty")
        chunks = chunk_text(text, self.chunk_size, self.chunk_overlap)
        if not chunks:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                "INSERT INTO chunks (content, source) VALUES (?, ?)",
                [(chunk, source) for chunk in chunks],
            )
        logger.info("Indexed %d chunk(s) from %s", len(chunks), source)
        return len(chunks)

    def search(self, query: str, limit: int = 20) -> List[Dict[str, object]]:
        """Run an FTS5 MATCH query, best matches first."""
        if not query or not query.strip():
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT content, source, rank FROM chunks WHERE chunks MATCH ? ORDER BY rank LIMIT ?",
                (query, limit),
            ).fetchall()
        return [{"content": content, "source": source, "rank": float(rank)} for content, source, rank in rows]

    def count(self) -> int:
        with self._lock:
            (total,) = self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()
        return int(total)

    def clear(self) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM chunks")
        logger.info("Cleared knowledge index at %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
