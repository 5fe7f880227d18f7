"""
Shared pytest fixtures for chat relay tests.

Provides:
- Scripted provider adapters (no network)
- A slow memory trigger for shutdown ordering
- A two-provider ChatConfig
- ChatService factories wired to in-memory stores
"""

import threading
import time
from typing import Dict, List, Optional

import pytest

from chat_relay.config import ChatConfig, FallbackPolicy, MemoryConfig, OpenAIProviderConfig
from chat_relay.errors import CancelledError
from chat_relay.models import FinalMessage, ModelInfo, TextDelta
from chat_relay.providers.base import ProviderAdapter
from chat_relay.service import ChatService


class ScriptedAdapter(ProviderAdapter):
    """Adapter replaying fixed deltas, optionally failing or blocking."""

    kind = "openai"

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        *,
        error: Optional[Exception] = None,
        block_after: Optional[int] = None,
        reply: str = "",
        models: Optional[List[str]] = None,
    ) -> None:
        self.chunks = chunks or []
        self.error = error
        self.block_after = block_after
        self.reply = reply
        self.models = models or []
        self.calls: List[Dict[str, object]] = []
        self.generate_calls: List[Dict[str, object]] = []
        self.blocked = threading.Event()

    def list_models(self, config):
        return [ModelInfo(model_id=m) for m in self.models]

    def generate_text(self, config, messages, params):
        self.generate_calls.append({"provider": config.id, "model": params.model_id, "messages": list(messages)})
        if self.error is not None:
            raise self.error
        return FinalMessage(text=self.reply, finish_reason="stop", model=params.model_id)

    def stream_text(self, config, messages, params, token=None):
        self.calls.append({"provider": config.id, "model": params.model_id, "messages": list(messages)})
        return self._stream(token)

    def _stream(self, token):
        for position, chunk in enumerate(self.chunks):
            if self.block_after is not None and position == self.block_after:
                self.blocked.set()
                token.wait(5)
                raise CancelledError("Stream cancelled")
            yield TextDelta(text=chunk)
        if self.block_after is not None and self.block_after >= len(self.chunks):
            self.blocked.set()
            token.wait(5)
            raise CancelledError("Stream cancelled")
        if self.error is not None:
            raise self.error
        yield TextDelta(text="", finish_reason="stop")


class SlowTrigger:
    """Memory trigger that accepts everything after a delay."""

    def __init__(self, delay: float = 0.3) -> None:
        self.delay = delay

    def __call__(self, text: str) -> bool:
        time.sleep(self.delay)
        return True


class AdapterMap:
    """Adapter factory returning a fixed adapter per provider id."""

    def __init__(self, adapters: Dict[str, ProviderAdapter]) -> None:
        self.adapters = adapters

    def __call__(self, config):
        return self.adapters[config.id]


def collect(events):
    return list(events)


@pytest.fixture
def chat_config() -> ChatConfig:
    return ChatConfig(
        providers=[
            OpenAIProviderConfig(
                id="a",
                name="Provider A",
                base_url="http://a.test/v1",
                api_keys=["key-a"],
                models=[ModelInfo("a1"), ModelInfo("a2")],
            ),
            OpenAIProviderConfig(
                id="b",
                name="Provider B",
                base_url="http://b.test/v1",
                api_keys=["key-b"],
                models=[ModelInfo("b1")],
            ),
        ],
        active_provider_id="a",
        active_model_id="a1",
        fallback=FallbackPolicy(enabled=True, provider_id="b", model_id="b1"),
        memory=MemoryConfig(enabled=True, buffer_size=5, workers=1),
        enable_titles=False,
        persist_interval=0.0,
        system_prompt="",
    )


@pytest.fixture
def make_service(chat_config):
    services = []

    def factory(adapters: Dict[str, ProviderAdapter], **kwargs) -> ChatService:
        service = ChatService(chat_config, adapter_factory=AdapterMap(adapters), **kwargs)
        services.append(service)
        return service

    yield factory
    for service in services:
        service.shutdown()
