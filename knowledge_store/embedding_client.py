"""HTTP client for an OpenAI-compatible embeddings endpoint."""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Sequence

import requests

from .config import EmbeddingConfig

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Embed text in batches through ``requests``."""

    def __init__(self, config: Optional[EmbeddingConfig] = None, session: Optional[requests.Session] = None) -> None:
        self.config = config or EmbeddingConfig()
        self.session = session or requests.Session()

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        """Return one vector per input text, in input order.

        Raises ``requests`` exceptions and ``ValueError`` for malformed
        responses; use :meth:`embed` for the forgiving single-text variant.
        """
        vectors: List[List[float]] = []
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(texts), batch_size):
            batch = list(texts[start : start + batch_size])
            began = time.perf_counter()
            vectors.extend(self._embed_batch(batch))
            logger.debug(
                "Embedded batch of %d text(s) in %.2f seconds",
                len(batch),
                time.perf_counter() - began,
            )
        return vectors

    def embed(self, text: str) -> Optional[List[float]]:
        if not text or not text.strip():
            return None
        try:
            vectors = self.embed_documents([text])
        except (requests.RequestException, ValueError):
            logger.warning("Embedding request failed", exc_info=True)
            return None
        return vectors[0] if vectors else None

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        payload: Dict[str, object] = {"input": batch}
        if self.config.model:
            payload["model"] = self.config.model
        payload.update(self.config.model_kwargs)
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        response = self.session.post(
            self.config.endpoint,
            json=payload,
            headers=headers,
            timeout=self.config.request_timeout,
        )
        response.raise_for_status()
        data = response.json()
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or len(items) != len(batch):
            raise ValueError("Embedding response does not match the request batch")
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        return [[float(x) for x in item["embedding"]] for item in ordered]
