"""Short session titles generated from the first user message."""

from __future__ import annotations

import logging
from typing import Optional

from .config import ProviderConfig
from .models import ChatMessage, GenerationParams, Role
from .providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 30
FALLBACK_CHARS = 20


def fallback_title(text: str) -> str:
    return " ".join(text.split())[:FALLBACK_CHARS]


def clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = title.strip().strip("\"'`*#").strip()
    return title[:TITLE_MAX_CHARS]


class TitleGenerator:
    def __init__(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 50) -> None:
        self.prompt = prompt
        self.temperature = temperature
        self.max_tokens = max_tokens

    def generate(self, text: str, adapter: Optional[ProviderAdapter], provider: Optional[ProviderConfig], model_id: Optional[str]) -> str:
        """Return a title for ``text``; never raises."""
        if adapter is None or provider is None or not model_id:
            return fallback_title(text)
        try:
            reply = adapter.generate_text(
                provider,
                [ChatMessage(Role.SYSTEM, self.prompt), ChatMessage(Role.USER, text)],
                GenerationParams(model_id=model_id, temperature=self.temperature, max_tokens=self.max_tokens),
            )
        except Exception:
            logger.warning("Title generation failed; using message prefix", exc_info=True)
            return fallback_title(text)
        return clean_title(reply.text) or fallback_title(text)
