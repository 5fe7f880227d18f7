"""Regenerate the last assistant answer of a session."""

from __future__ import annotations

import logging
from typing import List, Optional

from .config import ProviderConfig
from .errors import SessionBusyError
from .fallback import FallbackCoordinator
from .models import ChatMessage, ChatTurn, GenerationParams, OperationResult, Role
from .orchestrator import GenerationRequest
from .registry import TaskRegistry
from .stores import MessageStore, current_turns, non_system

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    def __init__(self, message_store: MessageStore, fallback: FallbackCoordinator, registry: TaskRegistry) -> None:
        self.message_store = message_store
        self.fallback = fallback
        self.registry = registry

    def rollback(
        self,
        session_id: str,
        provider: ProviderConfig,
        params: GenerationParams,
        *,
        system_prompt: Optional[str] = None,
    ) -> OperationResult:
        """Delete the last assistant turn and stream a fresh answer.

        Returns an unsuccessful result without side effects when the session
        has no user turn to answer.
        """
        if self.registry.is_active(session_id):
            raise SessionBusyError(session_id)

        turns = non_system(current_turns(self.message_store, session_id))
        if not any(turn.role == Role.USER for turn in turns):
            return OperationResult(success=False, message="Nothing to roll back")

        last_assistant = _last_of(turns, Role.ASSISTANT)
        if last_assistant is not None:
            self.message_store.delete_turn(last_assistant.id)
            turns = [turn for turn in turns if turn.id != last_assistant.id]
            logger.info("Rolled back turn %s in session %s", last_assistant.id, session_id)

        messages: List[ChatMessage] = []
        if system_prompt:
            messages.append(ChatMessage(Role.SYSTEM, system_prompt))
        messages.extend(ChatMessage(turn.role, turn.content) for turn in turns)

        last_user = _last_of(turns, Role.USER)
        request = GenerationRequest(
            session_id=session_id,
            provider=provider,
            params=params,
            messages=messages,
            parent_id=last_user.id if last_user else None,
        )
        events = self.fallback.start(request)
        return OperationResult(success=True, message="Regenerating the last answer", events=events)


def _last_of(turns: List[ChatTurn], role: Role) -> Optional[ChatTurn]:
    for turn in reversed(turns):
        if turn.role == role:
            return turn
    return None
