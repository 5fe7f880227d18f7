"""Ollama adapter speaking the native ``/api/chat`` NDJSON protocol."""

from __future__ import annotations

import json
import logging
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from ..config import OLLAMA, ProviderConfig
from ..models import CancellationToken, ChatMessage, FinalMessage, GenerationParams, ModelInfo, TextDelta
from .base import ProviderAdapter
from .http import HttpTransport, KeyRoulette, bearer_headers, build_url

logger = logging.getLogger(__name__)

DEFAULT_KEY = "ollama"
CONNECT_TIMEOUT = 10.0


def iter_ndjson_deltas(lines: Iterable[str]) -> Iterator[TextDelta]:
    """Parse newline-delimited JSON chunks until ``done`` is true."""
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed Ollama chunk: %s", line)
            continue
        if not isinstance(chunk, dict):
            continue

        message = chunk.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        done = bool(chunk.get("done"))
        if done:
            yield TextDelta(text=str(content or ""), finish_reason=chunk.get("done_reason") or "stop")
            return
        if content:
            yield TextDelta(text=str(content))


def parse_chat_response(payload: Dict[str, object], model: Optional[str] = None) -> FinalMessage:
    message = payload.get("message")
    if isinstance(message, dict):
        text = message.get("content") or ""
    else:
        text = payload.get("response") or ""
    return FinalMessage(
        text=str(text),
        finish_reason=str(payload.get("done_reason") or "stop"),
        model=str(payload.get("model") or model or ""),
    )


class OllamaAdapter(ProviderAdapter):
    kind = OLLAMA

    def __init__(self, transport: Optional[HttpTransport] = None, keys: Optional[KeyRoulette] = None) -> None:
        self.transport = transport or HttpTransport()
        self.keys = keys or KeyRoulette()

    def _headers(self, config: ProviderConfig, params: Optional[GenerationParams] = None) -> Dict[str, str]:
        key = self.keys.next(config.api_keys)
        if key == DEFAULT_KEY:
            key = ""
        return bearer_headers(key, params.extra_headers if params else None)

    def list_models(self, config: ProviderConfig) -> List[ModelInfo]:
        data = self.transport.get_json(
            config,
            build_url(config, "/api/tags"),
            headers=self._headers(config),
            timeout=config.request_timeout,
        )
        return [
            ModelInfo(model_id=str(entry["name"]))
            for entry in data.get("models") or []
            if isinstance(entry, dict) and entry.get("name")
        ]

    def generate_text(
        self,
        config: ProviderConfig,
        messages: Sequence[ChatMessage],
        params: GenerationParams,
    ) -> FinalMessage:
        data = self.transport.post_json(
            config,
            build_url(config, config.chat_path),
            self._build_payload(messages, params, stream=False),
            headers=self._headers(config, params),
            timeout=(CONNECT_TIMEOUT, None),
        )
        return parse_chat_response(data, params.model_id)

    def stream_text(
        self,
        config: ProviderConfig,
        messages: Sequence[ChatMessage],
        params: GenerationParams,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[TextDelta]:
        url = build_url(config, config.chat_path)
        logger.info("Streaming Ollama chat from %s using model %s", url, params.model_id)
        lines = self.transport.stream_lines(
            config,
            url,
            self._build_payload(messages, params, stream=True),
            headers=self._headers(config, params),
            timeout=(CONNECT_TIMEOUT, None),
            token=token,
        )
        return iter_ndjson_deltas(lines)

    @staticmethod
    def _build_payload(messages: Sequence[ChatMessage], params: GenerationParams, *, stream: bool) -> Dict[str, object]:
        options: Dict[str, object] = {}
        if params.temperature is not None:
            options["temperature"] = params.temperature
        if params.top_p is not None:
            options["top_p"] = params.top_p
        if params.max_tokens is not None:
            options["num_predict"] = params.max_tokens

        payload: Dict[str, object] = {
            "model": params.model_id,
            "messages": [message.to_wire() for message in messages],
            "stream": stream,
        }
        if options:
            payload["options"] = options
        if params.extra_body:
            payload.update(params.extra_body)
        return payload
