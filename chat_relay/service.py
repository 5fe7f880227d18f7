"""High level chat engine with streaming, fallback, rollback and memory."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .config import ChatConfig, ProviderConfig
from .errors import ProviderNotFoundError, SessionBusyError
from .fallback import FallbackCoordinator
from .memory import MemoryCurationGateway, MemoryPipeline
from .messages import MessageConstructor
from .models import ChatTurn, GenerationParams, ModelInfo, OperationResult, Role, StreamEvent, TurnStatus
from .orchestrator import GenerationRequest, StreamOrchestrator
from .providers import AdapterFactory
from .providers.base import ProviderAdapter
from .registry import TaskRegistry
from .retrieval import LexicalResult, RetrievalEngine, RetrievalTrace
from .rollback import RollbackCoordinator
from .stores import InMemoryMessageStore, InMemorySessionStore, VectorStore, current_turns
from .titles import TitleGenerator
from .utils import preview

logger = logging.getLogger(__name__)


class ChatService:
    """Core chat engine used by both the API and direct Python consumers."""

    def __init__(
        self,
        config: Optional[ChatConfig] = None,
        *,
        adapter_factory: Optional[Callable[[ProviderConfig], ProviderAdapter]] = None,
        message_store: Optional[InMemoryMessageStore] = None,
        session_store: Optional[InMemorySessionStore] = None,
        registry: Optional[TaskRegistry] = None,
        retrieval: Optional[RetrievalEngine] = None,
        memory_store: Optional[VectorStore] = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.adapter_factory = adapter_factory or AdapterFactory()
        self.messages = message_store or InMemoryMessageStore()
        self.sessions = session_store or InMemorySessionStore()
        self.registry = registry or TaskRegistry()
        self.retrieval = retrieval

        self.orchestrator = StreamOrchestrator(
            self.adapter_factory,
            self.messages,
            self.sessions,
            self.registry,
            persist_interval=self.config.persist_interval,
            queue_size=self.config.stream_queue_size,
            consumer_timeout=self.config.consumer_timeout,
            cancel_marker=self.config.cancel_marker,
        )
        self.fallback = FallbackCoordinator(self.orchestrator, self.messages, self.config)
        self.rollbacks = RollbackCoordinator(self.messages, self.fallback, self.registry)
        self.constructor = MessageConstructor(self.messages, retrieval)
        self.titles = TitleGenerator(self.config.title_prompt)

        self._background = ThreadPoolExecutor(
            max_workers=max(1, self.config.memory.workers),
            thread_name_prefix="chat-background",
        )
        self.memory: Optional[MemoryPipeline] = None
        if memory_store is not None:
            gateway = MemoryCurationGateway(memory_store, self.config.memory.curation_prompt)
            self.memory = MemoryPipeline(self.config, self.adapter_factory, gateway, executor=self._background)

    def stream_chat(
        self,
        session_id: str,
        message: str,
        *,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        enable_context: Optional[bool] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        is_auto_triggered: bool = False,
    ) -> Iterator[StreamEvent]:
        """Persist the user turn and stream the assistant reply as events.

        Raises ValueError for invalid input, ProviderNotFoundError for an
        unknown provider and SessionBusyError while the session streams.
        """
        if not session_id:
            raise ValueError("session_id is required")
        if not message or not message.strip():
            raise ValueError("message is required")

        provider, model = self._resolve(provider_id, model_id)
        if self.registry.is_active(session_id):
            raise SessionBusyError(session_id)

        self.sessions.ensure_session(session_id)
        is_first_message = not any(t.role == Role.USER for t in current_turns(self.messages, session_id))
        user_turn = ChatTurn(session_id=session_id, role=Role.USER, content=message, status=TurnStatus.DONE)
        self.messages.upsert_turn(user_turn)

        use_context = self.config.enable_context if enable_context is None else enable_context
        try:
            construction = self.constructor.construct(
                session_id,
                message,
                is_auto_triggered=is_auto_triggered,
                retrieve_knowledge=self._knowledge_context if use_context and self.retrieval else None,
                system_prompt=system_prompt or self.config.system_prompt,
                top_k=self.config.memory.top_k,
                history_limit=self.config.history_limit,
            )
            request = GenerationRequest(
                session_id=session_id,
                provider=provider,
                params=self._params(model, temperature, max_tokens),
                messages=construction.messages,
                parent_id=user_turn.id,
            )
            events = self.fallback.start(request)
        except Exception:
            self.messages.delete_turn(user_turn.id)
            raise
        logger.info("Session %s: streaming reply to '%s'", session_id, preview(message))

        if self.memory is not None and not is_auto_triggered:
            self.memory.submit(message, construction.embedding)
        if is_first_message and self.config.enable_titles:
            self._background.submit(self._generate_title, session_id, message, provider, model)
        return events

    def pause(self, session_id: str) -> OperationResult:
        if self.registry.cancel(session_id):
            logger.info("Cancelled generation for session %s", session_id)
            return OperationResult(success=True, message="Generation cancelled")
        return OperationResult(success=False, message="No active generation")

    def rollback(
        self,
        session_id: str,
        *,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> OperationResult:
        if not session_id:
            raise ValueError("session_id is required")
        provider, model = self._resolve(provider_id, model_id)
        return self.rollbacks.rollback(
            session_id,
            provider,
            self._params(model, None, None),
            system_prompt=system_prompt or self.config.system_prompt,
        )

    def is_streaming(self, session_id: str) -> bool:
        return self.registry.is_active(session_id)

    def get_history(self, session_id: str) -> Dict[str, object]:
        """Return the recorded conversation and session metadata."""
        record = self.sessions.get(session_id)
        turns = current_turns(self.messages, session_id)
        if record is None and not turns:
            raise ValueError(f"No chat session found for id '{session_id}'")
        return {
            "session_id": session_id,
            "title": record.title if record else "",
            "updated_at": record.updated_at if record else 0.0,
            "streaming": self.is_streaming(session_id),
            "turns": [turn.to_dict() for turn in turns],
        }

    def list_sessions(self) -> List[Dict[str, object]]:
        """Return lightweight session metadata for UI selection."""
        payload = []
        for record in self.sessions.list_sessions():
            turns = current_turns(self.messages, record.session_id)
            item = record.to_dict()
            item["message_count"] = len(turns)
            item["last_message"] = turns[-1].content if turns else ""
            item["streaming"] = self.is_streaming(record.session_id)
            payload.append(item)
        return payload

    def list_providers(self) -> List[Dict[str, object]]:
        return [
            {
                "id": provider.id,
                "name": provider.name,
                "kind": provider.kind,
                "active": provider.id == self.config.active_provider_id,
                "models": [model.model_id for model in provider.models],
            }
            for provider in self.config.providers
        ]

    def list_models(self, provider_id: str) -> List[ModelInfo]:
        provider = self.config.provider(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return self.adapter_factory(provider).list_models(provider)

    def retrieve_knowledge(self, query: str) -> LexicalResult:
        if self.retrieval is None:
            return LexicalResult("", RetrievalTrace(query=query))
        return self.retrieval.retrieve_knowledge(query)

    def flush_memory(self) -> int:
        if self.memory is None:
            return 0
        return self.memory.flush()

    def shutdown(self) -> None:
        for session_id in self.registry.active_sessions():
            self.registry.cancel(session_id)
        self._background.shutdown(wait=True)
        if self.memory is not None:
            self.memory.shutdown()

    def _resolve(self, provider_id: Optional[str], model_id: Optional[str]) -> Tuple[ProviderConfig, str]:
        pid = provider_id or self.config.active_provider_id
        if not pid:
            raise ValueError("No provider selected")
        provider = self.config.provider(pid)
        if provider is None:
            raise ProviderNotFoundError(pid)
        model = model_id or (self.config.active_model_id if pid == self.config.active_provider_id else None)
        if not model and provider.models:
            model = provider.models[0].model_id
        if not model:
            raise ValueError(f"No model selected for provider '{pid}'")
        if not provider.has_model(model):
            raise ValueError(f"Model '{model}' is not configured for provider '{pid}'")
        return provider, model

    def _params(self, model_id: str, temperature: Optional[float], max_tokens: Optional[int]) -> GenerationParams:
        return GenerationParams(
            model_id=model_id,
            temperature=self.config.temperature if temperature is None else temperature,
            max_tokens=self.config.max_tokens if max_tokens is None else max_tokens,
        )

    def _knowledge_context(self, query: str) -> str:
        return self.retrieve_knowledge(query).context

    def _generate_title(self, session_id: str, text: str, provider: ProviderConfig, model_id: str) -> None:
        try:
            adapter = self.adapter_factory(provider)
            title = self.titles.generate(text, adapter, provider, model_id)
            self.sessions.rename(session_id, title)
            logger.debug("Session %s titled '%s'", session_id, title)
        except Exception:
            logger.exception("Failed to title session %s", session_id)
