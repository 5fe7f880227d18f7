"""Batched AI judgement of which buffered candidates become memories."""

from __future__ import annotations

import json
import logging
import re
from typing import List, Sequence

from ..config import ProviderConfig
from ..models import ChatMessage, GenerationParams, MemoryCandidate, Role
from ..providers.base import ProviderAdapter
from ..stores import VectorStore
from ..utils import preview

logger = logging.getLogger(__name__)

_ARRAY = re.compile(r"\[[^\[\]]*\]")
_INTEGER = re.compile(r"-?\d+")


def parse_indices(text: str) -> List[int]:
    """Read the selected indices from a model reply.

    The first JSON array in the text wins; when there is none (or it does not
    decode) every integer in the text is used instead.
    """
    match = _ARRAY.search(text or "")
    if match:
        try:
            values = json.loads(match.group(0))
        except json.JSONDecodeError:
            values = None
        if isinstance(values, list):
            return [int(v) for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    return [int(v) for v in _INTEGER.findall(text or "")]


def build_curation_prompt(instructions: str, items: Sequence[MemoryCandidate]) -> str:
    lines = [instructions.strip(), ""]
    for index, item in enumerate(items):
        lines.append(f"{index}. {item.text}")
    return "\n".join(lines)


class MemoryCurationGateway:
    """Ask a judge model which candidates to keep and persist them.

    Failures at any stage are logged and swallowed; curation never affects
    the chat that produced the candidates.
    """

    def __init__(self, vector_store: VectorStore, instructions: str, *, max_tokens: int = 100) -> None:
        self.vector_store = vector_store
        self.instructions = instructions
        self.max_tokens = max_tokens

    def curate(
        self,
        items: Sequence[MemoryCandidate],
        adapter: ProviderAdapter,
        provider: ProviderConfig,
        model_id: str,
    ) -> List[int]:
        """Return the indices that were saved."""
        if not items:
            return []
        logger.info("Curating %d memory candidate(s) with %s/%s", len(items), provider.id, model_id)

        try:
            reply = adapter.generate_text(
                provider,
                [ChatMessage(Role.USER, build_curation_prompt(self.instructions, items))],
                GenerationParams(model_id=model_id, temperature=0.0, max_tokens=self.max_tokens),
            )
            selected = parse_indices(reply.text)
        except Exception:
            logger.exception("Memory curation request failed")
            return []

        saved: List[int] = []
        for index in selected:
            if index in saved:
                continue
            if index < 0 or index >= len(items):
                logger.warning("Ignoring out-of-range memory index %d (batch of %d)", index, len(items))
                continue
            item = items[index]
            try:
                self.vector_store.save(item.text, item.embedding)
            except Exception:
                logger.exception("Failed to save memory %d", index)
                continue
            saved.append(index)
            logger.debug("Saved memory %d: %s", index, preview(item.text))

        logger.info("Curation kept %d of %d candidate(s)", len(saved), len(items))
        return saved
