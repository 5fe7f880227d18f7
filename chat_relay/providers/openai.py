"""OpenAI-compatible chat-completions adapter."""

from __future__ import annotations

import json
import logging
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from ..config import OPENAI, ProviderConfig
from ..models import CancellationToken, ChatMessage, FinalMessage, GenerationParams, ModelInfo, TextDelta
from .base import ProviderAdapter
from .http import HttpTransport, KeyRoulette, bearer_headers, build_url

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


def iter_stream_deltas(lines: Iterable[str]) -> Iterator[TextDelta]:
    """Parse server-sent ``data:`` lines into deltas.

    Lines without the ``data: `` prefix (comments, keep-alives) are ignored,
    ``data: [DONE]`` terminates the stream and undecodable payloads are
    skipped without aborting it.
    """
    for line in lines:
        if not line.startswith(DATA_PREFIX):
            continue
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_MARKER:
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON stream line: %s", line)
            continue

        delta = _extract_delta(payload)
        if delta is not None:
            yield delta


def _extract_delta(payload: object) -> Optional[TextDelta]:
    if not isinstance(payload, dict):
        logger.debug("Skipping unexpected stream payload: %s", payload)
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        logger.debug("Skipping stream payload without usable choices: %s", payload)
        return None
    choice = choices[0]
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if not isinstance(content, str):
        content = ""
    finish_reason = choice.get("finish_reason")
    if not isinstance(finish_reason, str):
        finish_reason = None
    if not content and not finish_reason:
        return None
    return TextDelta(text=content, finish_reason=finish_reason)


def parse_completion(payload: Dict[str, object], model: Optional[str] = None) -> FinalMessage:
    choices = payload.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices else None
    if not isinstance(choice, dict):
        choice = {}
    message = choice.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    return FinalMessage(
        text=content if isinstance(content, str) else "",
        finish_reason=choice.get("finish_reason"),
        model=str(payload.get("model") or model or ""),
    )


class OpenAIAdapter(ProviderAdapter):
    """Chat-completions endpoint with SSE streaming support."""

    kind = OPENAI

    def __init__(self, transport: Optional[HttpTransport] = None, keys: Optional[KeyRoulette] = None) -> None:
        self.transport = transport or HttpTransport()
        self.keys = keys or KeyRoulette()

    def list_models(self, config: ProviderConfig) -> List[ModelInfo]:
        url = build_url(config, "/models")
        data = self.transport.get_json(
            config,
            url,
            headers=bearer_headers(self.keys.next(config.api_keys)),
            timeout=config.request_timeout,
        )
        models = []
        for entry in data.get("data") or []:
            if isinstance(entry, dict) and entry.get("id"):
                models.append(ModelInfo(model_id=str(entry["id"])))
        return models

    def generate_text(
        self,
        config: ProviderConfig,
        messages: Sequence[ChatMessage],
        params: GenerationParams,
    ) -> FinalMessage:
        payload = self._build_payload(messages, params, stream=False)
        logger.debug("Requesting non-streaming completion for %d message(s)", len(messages))
        data = self.transport.post_json(
            config,
            build_url(config, config.chat_path),
            payload,
            headers=bearer_headers(self.keys.next(config.api_keys), params.extra_headers),
            timeout=config.request_timeout,
        )
        return parse_completion(data, params.model_id)

    def stream_text(
        self,
        config: ProviderConfig,
        messages: Sequence[ChatMessage],
        params: GenerationParams,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[TextDelta]:
        payload = self._build_payload(messages, params, stream=True)
        url = build_url(config, config.chat_path)
        logger.info("Streaming chat completion to %s using model %s", url, params.model_id)
        lines = self.transport.stream_lines(
            config,
            url,
            payload,
            headers=bearer_headers(self.keys.next(config.api_keys), params.extra_headers),
            timeout=(config.request_timeout, None),
            token=token,
        )
        return iter_stream_deltas(lines)

    @staticmethod
    def _build_payload(messages: Sequence[ChatMessage], params: GenerationParams, *, stream: bool) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "model": params.model_id,
            "messages": [message.to_wire() for message in messages],
            "stream": stream,
        }
        if params.temperature is not None:
            payload["temperature"] = params.temperature
        if params.top_p is not None:
            payload["top_p"] = params.top_p
        if params.max_tokens is not None:
            payload["max_tokens"] = params.max_tokens
        if params.extra_body:
            payload.update(params.extra_body)
        return payload
