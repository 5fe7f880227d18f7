"""Streaming chat relay for OpenAI-compatible, Ollama and Dify backends.

The primary entry points are ``chat_relay.api.create_app`` for running the
HTTP service and ``chat_relay.service.ChatService`` for embedding the engine
directly into Python code.
"""

from .config import ChatConfig, load_config
from .service import ChatService

__all__ = ["ChatConfig", "ChatService", "load_config"]
