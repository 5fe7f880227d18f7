"""Dify application adapter (chat, completion and workflow apps)."""

from __future__ import annotations

import json
import logging
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from ..config import DIFY, DifyProviderConfig, ProviderConfig
from ..errors import ServerError
from ..models import CancellationToken, ChatMessage, FinalMessage, GenerationParams, ModelInfo, TextDelta
from .base import ProviderAdapter
from .http import HttpTransport, KeyRoulette, bearer_headers, build_url

logger = logging.getLogger(__name__)

BOT_PATHS = {
    "chat": "/chat-messages",
    "completion": "/completion-messages",
    "workflow": "/workflows/run",
}


def build_query_string(messages: Sequence[ChatMessage], bot_type: str) -> str:
    """Flatten the conversation into the single query Dify accepts.

    Dify conversations are stateless here, so chat apps receive prior turns as
    an inline transcript ahead of the latest question. Completion and workflow
    apps only see the latest message.
    """
    last = messages[-1].content if messages else ""
    if bot_type != "chat":
        return last

    parts: List[str] = []
    if len(messages) > 1:
        parts.append("here is our talk history:\n'''\n")
        for message in messages[:-1]:
            parts.append(f"{message.role.value}: {message.content}\n")
        parts.append("'''\n\n")
    parts.append("here is my question:\n")
    parts.append(last)
    return "".join(parts)


def build_request_body(messages: Sequence[ChatMessage], config: DifyProviderConfig) -> Dict[str, object]:
    query = build_query_string(messages, config.bot_type)
    body: Dict[str, object] = {}
    if config.input_variable:
        body["inputs"] = {config.input_variable: query}
        if config.bot_type == "chat":
            body["query"] = query
    else:
        body["inputs"] = {}
        body["query"] = query
    body["response_mode"] = "streaming"
    body["conversation_id"] = ""
    body["user"] = config.user
    body["auto_generate_name"] = False
    return body


def parse_dify_event(line: str, output_variable: str = "") -> Optional[str]:
    """Return the text carried by one SSE line, or None when it carries none.

    Raises :class:`ServerError` for ``error`` events.
    """
    data = line.strip()
    if data.startswith("data:"):
        data = data[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed Dify chunk: %s", data)
        return None
    if not isinstance(event, dict):
        return None

    kind = event.get("event")
    if kind in ("message", "agent_message"):
        return _text_field(event.get("answer"), kind)
    if kind == "text_chunk":
        payload = event.get("data") or {}
        return _text_field(payload.get("text") if isinstance(payload, dict) else None, kind)
    if kind == "workflow_finished":
        payload = event.get("data") or {}
        outputs = payload.get("outputs") if isinstance(payload, dict) else None
        if not isinstance(outputs, dict):
            return None
        if output_variable:
            value = outputs.get(output_variable)
            return None if value is None else str(value)
        return json.dumps(outputs, ensure_ascii=False)
    if kind == "error":
        message = event.get("message") or "Unknown error"
        logger.error("Dify returned an error event: %s", message)
        status = event.get("status")
        raise ServerError(f"Dify error: {message}", status_code=status if isinstance(status, int) else None)
    return None


def _text_field(value: object, kind: object) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    logger.warning("Skipping Dify %s event with non-text payload: %r", kind, value)
    return None


def iter_dify_deltas(lines: Iterable[str], output_variable: str = "") -> Iterator[TextDelta]:
    for line in lines:
        text = parse_dify_event(line, output_variable)
        if text:
            yield TextDelta(text=text)


class DifyAdapter(ProviderAdapter):
    kind = DIFY

    def __init__(self, transport: Optional[HttpTransport] = None, keys: Optional[KeyRoulette] = None) -> None:
        self.transport = transport or HttpTransport()
        self.keys = keys or KeyRoulette()

    def list_models(self, config: ProviderConfig) -> List[ModelInfo]:
        return list(config.models)

    def generate_text(
        self,
        config: ProviderConfig,
        messages: Sequence[ChatMessage],
        params: GenerationParams,
    ) -> FinalMessage:
        text = "".join(delta.text for delta in self.stream_text(config, messages, params))
        return FinalMessage(text=text, finish_reason="stop", model=params.model_id)

    def stream_text(
        self,
        config: ProviderConfig,
        messages: Sequence[ChatMessage],
        params: GenerationParams,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[TextDelta]:
        dify = _as_dify(config)
        url = build_url(dify, BOT_PATHS[dify.bot_type])
        logger.info("Streaming Dify %s app from %s", dify.bot_type, url)
        lines = self.transport.stream_lines(
            dify,
            url,
            build_request_body(messages, dify),
            headers=bearer_headers(self.keys.next(dify.api_keys), params.extra_headers),
            timeout=(dify.request_timeout, None),
            token=token,
        )
        return iter_dify_deltas(lines, dify.output_variable)


def _as_dify(config: ProviderConfig) -> DifyProviderConfig:
    if isinstance(config, DifyProviderConfig):
        return config
    raise ValueError(f"Provider '{config.id}' is not a Dify provider")

