"""Memory and knowledge retrieval.

Two paths feed the prompt:

* the vector path embeds the query and searches the long-term memory store;
* the lexical path recalls knowledge-base chunks through a full-text index and
  re-ranks them by query-term coverage, recording a trace of the decision.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .models import RetrievedMemory
from .stores import EmbeddingComputer, FullTextIndex, VectorStore

logger = logging.getLogger(__name__)

RECALL_LIMIT = 20
RERANK_LIMIT = 5
CHUNK_SEPARATOR = "\n\n---\n\n"

_FTS_STRIP = re.compile(r"[^\w\s一-龥]")
_TERM_SPLIT = re.compile(r"[^a-z0-9一-龥]+")


def format_fts_query(query: str) -> str:
    """Turn free text into a prefix-matching ``OR`` query for FTS5.

    Each term is quoted so words like AND or NEAR stay literal.
    """
    words = _FTS_STRIP.sub(" ", query).split()
    return " OR ".join(f'"{word}"*' for word in words)


def extract_query_terms(query: str) -> List[str]:
    """Distinct lowercase terms in first-seen order."""
    terms = [term for term in _TERM_SPLIT.split(query.lower()) if term]
    return list(dict.fromkeys(terms))


def coverage_score(terms: Sequence[str], content: str) -> float:
    if not terms:
        return 0.0
    lowered = content.lower()
    matched = sum(1 for term in terms if term in lowered)
    return matched / len(terms)


@dataclass
class TraceItem:
    rank: int
    original_rank: int
    score: float
    source: str
    preview: str

    @property
    def rank_delta(self) -> int:
        """Positive when re-ranking moved the chunk up."""
        return self.original_rank - self.rank

    def to_dict(self) -> Dict[str, object]:
        return {
            "rank": self.rank,
            "original_rank": self.original_rank,
            "rank_delta": self.rank_delta,
            "score": round(self.score, 4),
            "source": self.source,
            "preview": self.preview,
        }


@dataclass
class RetrievalTrace:
    query: str = ""
    terms: List[str] = field(default_factory=list)
    recall_count: int = 0
    reranked_count: int = 0
    items: List[TraceItem] = field(default_factory=list)
    error: Optional[str] = None

    def render(self) -> str:
        lines = ["[Retrieval analysis]", "-" * 50]
        if self.error:
            lines.append(f"Error: {self.error}")
        lines.append(f"Terms: {', '.join(self.terms)}")
        lines.append(f"Recalled: {self.recall_count} (full-text), kept: {self.reranked_count} (re-ranked)")
        for item in self.items:
            movement = f"up (was #{item.original_rank})" if item.rank_delta > 0 else f"- (was #{item.original_rank})"
            lines.append(f"{item.rank}. [Score: {item.score:.2f}] {movement}")
            lines.append(f"   source: {item.source}")
            lines.append(f'   "{item.preview}"')
        lines.append("-" * 50)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, object]:
        return {
            "query": self.query,
            "terms": list(self.terms),
            "recall_count": self.recall_count,
            "reranked_count": self.reranked_count,
            "items": [item.to_dict() for item in self.items],
            "error": self.error,
        }


@dataclass
class LexicalResult:
    context: str
    trace: RetrievalTrace


class LexicalRetriever:
    """Full-text recall followed by coverage re-ranking."""

    def __init__(self, index: FullTextIndex, *, recall_limit: int = RECALL_LIMIT, top_n: int = RERANK_LIMIT) -> None:
        self.index = index
        self.recall_limit = recall_limit
        self.top_n = top_n

    def retrieve(self, query: str) -> LexicalResult:
        trace = RetrievalTrace(query=query)
        if not query or not query.strip():
            return LexicalResult("", trace)

        fts_query = format_fts_query(query)
        if not fts_query:
            return LexicalResult("", trace)
        try:
            candidates = self.index.search(fts_query, limit=self.recall_limit)
        except Exception as exc:
            logger.exception("Knowledge index search failed")
            trace.error = str(exc) or exc.__class__.__name__
            return LexicalResult("", trace)

        trace.terms = extract_query_terms(query)
        trace.recall_count = len(candidates)
        if not candidates:
            return LexicalResult("", trace)

        scored = [
            (chunk, coverage_score(trace.terms, str(chunk.get("content", ""))), position)
            for position, chunk in enumerate(candidates, start=1)
        ]
        # sorted() is stable so equal scores keep recall order
        top = sorted(scored, key=lambda entry: entry[1], reverse=True)[: self.top_n]
        trace.reranked_count = len(top)

        seen = set()
        blocks = []
        for rank, (chunk, score, original_rank) in enumerate(top, start=1):
            content = str(chunk.get("content", ""))
            source = str(chunk.get("source", ""))
            trace.items.append(
                TraceItem(
                    rank=rank,
                    original_rank=original_rank,
                    score=score,
                    source=source,
                    preview=content.replace("\n", " ")[:30] + "...",
                )
            )
            if content in seen:
                continue
            seen.add(content)
            blocks.append(f"[Source: {source}]\n{content}")

        logger.debug("%s", trace.render())
        return LexicalResult(CHUNK_SEPARATOR.join(blocks), trace)


class VectorRetriever:
    """Embedding lookup against the long-term memory store."""

    def __init__(self, embedder: EmbeddingComputer, store: VectorStore) -> None:
        self.embedder = embedder
        self.store = store

    def embed_query(self, text: str) -> Optional[List[float]]:
        if not text or not text.strip():
            return None
        try:
            vector = self.embedder.embed(text)
        except Exception:
            logger.exception("Query embedding failed")
            return None
        return list(vector) if vector is not None else None

    def search_memories(self, vector: Sequence[float], k: int) -> List[RetrievedMemory]:
        if k <= 0 or not vector:
            return []
        hits = self.store.search_top_k(vector, k)
        memories = []
        for hit in hits:
            text = str(hit.get("text", ""))
            if not text:
                continue
            source_id = hit.get("id")
            memories.append(
                RetrievedMemory(
                    text=text,
                    score=float(hit.get("score", 0.0)),
                    source_id=str(source_id) if source_id is not None else None,
                )
            )
        return memories


class RetrievalEngine:
    """Bundles both retrieval paths behind one object."""

    def __init__(self, vector: Optional[VectorRetriever] = None, lexical: Optional[LexicalRetriever] = None) -> None:
        self.vector = vector
        self.lexical = lexical

    def embed_query(self, text: str) -> Optional[List[float]]:
        return self.vector.embed_query(text) if self.vector else None

    def search_memories(self, vector: Sequence[float], k: int) -> List[RetrievedMemory]:
        return self.vector.search_memories(vector, k) if self.vector else []

    def retrieve_knowledge(self, query: str) -> LexicalResult:
        if self.lexical is None:
            return LexicalResult("", RetrievalTrace(query=query))
        return self.lexical.retrieve(query)
