"""Provider adapter contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterator, List, Optional, Sequence

from ..config import ProviderConfig
from ..models import CancellationToken, ChatMessage, FinalMessage, GenerationParams, ModelInfo, TextDelta


class ProviderAdapter(ABC):
    """Translate canonical requests to one vendor's wire format and back.

    Every adapter normalises its vendor's responses into the same primitive:
    an ordered sequence of :class:`TextDelta` fragments, the last of which may
    carry a ``finish_reason``.
    """

    kind: str = ""

    @abstractmethod
    def list_models(self, config: ProviderConfig) -> List[ModelInfo]:
        """Return the models the provider exposes."""

    @abstractmethod
    def generate_text(
        self,
        config: ProviderConfig,
        messages: Sequence[ChatMessage],
        params: GenerationParams,
    ) -> FinalMessage:
        """Run a blocking generation and return the complete answer."""

    @abstractmethod
    def stream_text(
        self,
        config: ProviderConfig,
        messages: Sequence[ChatMessage],
        params: GenerationParams,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[TextDelta]:
        """Yield deltas as they arrive until completion or error."""
