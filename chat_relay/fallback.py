"""Turns orchestrator tasks into caller events, retrying once on failure."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterator, Optional, Tuple

from .config import ChatConfig, ProviderConfig
from .errors import is_cancellation, user_message
from .models import ChatTurn, EventType, Role, StreamEvent, TaskState, TurnStatus
from .orchestrator import GenerationRequest, StreamOrchestrator, StreamTask
from .stores import MessageStore

logger = logging.getLogger(__name__)


class FallbackCoordinator:
    """Run a request and switch to the configured fallback model once.

    The policy and provider list are read from ``config`` on every failure so
    settings changes apply to the next request without rebuilding anything.
    """

    def __init__(self, orchestrator: StreamOrchestrator, message_store: MessageStore, config: ChatConfig) -> None:
        self.orchestrator = orchestrator
        self.message_store = message_store
        self.config = config

    def start(self, request: GenerationRequest) -> Iterator[StreamEvent]:
        """Start streaming immediately and return the event iterator.

        :class:`SessionBusyError` is raised here, before any event is produced.
        """
        task = self.orchestrator.start(request)
        return self._follow(task, request)

    def _follow(self, task: StreamTask, request: GenerationRequest) -> Iterator[StreamEvent]:
        deltas = task.events()
        try:
            for delta in deltas:
                yield self._event(EventType.DELTA, task, delta.text)
        finally:
            deltas.close()
        task.wait()

        if task.state == TaskState.COMPLETED:
            yield self._event(EventType.DONE, task, task.content)
            return
        if task.state == TaskState.CANCELLED or task.error is None or is_cancellation(task.error):
            yield self._event(EventType.CANCELLED, task, task.content)
            return

        target = self._fallback_target(request)
        if target is None:
            yield self._surface(task, task.error)
            return

        provider, model_id = target
        self._drop_empty_placeholder(task)
        reason = task.error.message or str(task.error)
        note = f"Request failed ({reason}). Falling back to {provider.name} ({provider.display_model(model_id)})..."
        self._persist_system(task.session_id, note)
        logger.warning("Session %s: %s", task.session_id, note)
        yield StreamEvent(EventType.NOTICE, note, provider_id=provider.id, model_id=model_id)

        retry = replace(
            request,
            provider=provider,
            params=replace(request.params, model_id=model_id),
            is_retry=True,
        )
        try:
            retry_task = self.orchestrator.start(retry)
        except Exception as exc:
            logger.exception("Could not start fallback generation for session %s", task.session_id)
            yield self._surface(task, exc)
            return
        yield from self._follow(retry_task, retry)

    def _fallback_target(self, request: GenerationRequest) -> Optional[Tuple[ProviderConfig, str]]:
        policy = self.config.fallback
        if request.is_retry or not policy.configured:
            return None
        provider = self.config.provider(policy.provider_id or "")
        if provider is None:
            logger.warning("Fallback provider %s is not configured", policy.provider_id)
            return None
        model_id = policy.model_id or ""
        if provider.id == request.provider_id and model_id == request.model_id:
            return None
        return provider, model_id

    def _surface(self, task: StreamTask, error: BaseException) -> StreamEvent:
        self._drop_empty_placeholder(task)
        message = user_message(error)
        self._persist_system(task.session_id, message)
        return self._event(EventType.ERROR, task, message)

    def _drop_empty_placeholder(self, task: StreamTask) -> None:
        turn = self.message_store.get_turn(task.turn_id)
        if turn is None or turn.content.strip():
            return
        try:
            self.message_store.delete_turn(task.turn_id)
        except Exception:
            logger.exception("Failed to delete empty turn %s", task.turn_id)

    def _persist_system(self, session_id: str, text: str) -> None:
        try:
            self.message_store.upsert_turn(ChatTurn(session_id=session_id, role=Role.SYSTEM, content=text, status=TurnStatus.DONE))
        except Exception:
            logger.exception("Failed to persist system note for session %s", session_id)

    @staticmethod
    def _event(kind: EventType, task: StreamTask, text: str) -> StreamEvent:
        return StreamEvent(kind, text, turn_id=task.turn_id, provider_id=task.provider_id, model_id=task.model_id)
