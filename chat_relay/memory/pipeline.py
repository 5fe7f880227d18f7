"""Background glue between user input and long-term memory storage."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Sequence

from ..config import ChatConfig, ProviderConfig
from ..models import MemoryCandidate
from ..providers.base import ProviderAdapter
from ..utils import preview
from .buffer import MemoryBuffer
from .curation import MemoryCurationGateway
from .triggers import MemoryTriggerFilter

logger = logging.getLogger(__name__)


class MemoryPipeline:
    """Filter, buffer and curate memory candidates off the request thread.

    The judge provider and model are resolved when a batch is curated, so the
    current settings apply rather than those at enqueue time.
    """

    def __init__(
        self,
        config: ChatConfig,
        adapter_factory: Callable[[ProviderConfig], ProviderAdapter],
        gateway: MemoryCurationGateway,
        *,
        trigger: Optional[MemoryTriggerFilter] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.config = config
        self.adapter_factory = adapter_factory
        self.gateway = gateway
        self.trigger = trigger or MemoryTriggerFilter()
        self.buffer = MemoryBuffer(self._curate, max_size=config.memory.buffer_size)
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, config.memory.workers),
            thread_name_prefix="memory",
        )

    def submit(self, text: str, embedding: Optional[Sequence[float]]) -> Optional[Future]:
        if not self.config.memory.enabled or not embedding:
            return None
        return self._executor.submit(self.process, text, list(embedding))

    def run_in_background(self, fn: Callable[..., Any], *args: Any) -> Future:
        return self._executor.submit(fn, *args)

    def process(self, text: str, embedding: List[float]) -> bool:
        """Buffer ``text`` when it looks memorable; returns whether it was."""
        try:
            if not self.trigger(text):
                return False
            logger.debug("Memory candidate accepted: %s", preview(text))
            self.buffer.add(MemoryCandidate(text=text, embedding=embedding))
            return True
        except Exception:
            logger.exception("Memory processing failed")
            return False

    def flush(self) -> int:
        pending = self.buffer.size()
        self.buffer.flush()
        return pending

    def shutdown(self) -> None:
        """Drain queued candidates, then curate whatever is still buffered.

        A shared executor is left running; its owner must drain it before
        calling this.
        """
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        try:
            self.flush()
        except Exception:
            logger.exception("Failed to flush memory buffer during shutdown")

    def _curate(self, items: List[MemoryCandidate]) -> None:
        memory = self.config.memory
        provider_id = memory.judge_provider_id or self.config.active_provider_id
        model_id = memory.judge_model_id or self.config.active_model_id
        provider = self.config.provider(provider_id) if provider_id else None
        if provider is None or not model_id:
            logger.warning("No judge model configured; dropping %d memory candidate(s)", len(items))
            return
        try:
            adapter = self.adapter_factory(provider)
        except Exception:
            logger.exception("Could not build adapter for judge provider %s", provider.id)
            return
        self.gateway.curate(items, adapter, provider, model_id)
