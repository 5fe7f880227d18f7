"""Select the adapter implementation for a provider kind."""

from __future__ import annotations

import threading
from typing import Callable, Dict, Optional

from ..config import DIFY, OLLAMA, OPENAI, ProviderConfig
from .base import ProviderAdapter
from .dify import DifyAdapter
from .http import HttpTransport
from .ollama import OllamaAdapter
from .openai import OpenAIAdapter

_ADAPTERS: Dict[str, Callable[[HttpTransport], ProviderAdapter]] = {
    OPENAI: OpenAIAdapter,
    OLLAMA: OllamaAdapter,
    DIFY: DifyAdapter,
}


class AdapterFactory:
    """Caches one adapter, with its own HTTP session, per provider id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cache: Dict[str, ProviderAdapter] = {}

    def __call__(self, config: ProviderConfig) -> ProviderAdapter:
        with self._lock:
            adapter = self._cache.get(config.id)
            if adapter is None or adapter.kind != config.kind:
                adapter = get_adapter(config)
                self._cache[config.id] = adapter
            return adapter


def get_adapter(config: ProviderConfig, transport: Optional[HttpTransport] = None) -> ProviderAdapter:
    builder = _ADAPTERS.get(config.kind)
    if builder is None:
        raise ValueError(f"Unsupported provider kind '{config.kind}'")
    return builder(transport or HttpTransport())
