"""Core data types for turns, tasks, deltas and memories."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class TurnStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TaskState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (TaskState.CREATED, TaskState.ACTIVE)


class EventType(str, Enum):
    DELTA = "delta"
    NOTICE = "notice"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class ChatTurn:
    """A persisted conversation turn."""

    session_id: str
    role: Role
    content: str = ""
    status: TurnStatus = TurnStatus.DONE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)
    parent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "status": self.status.value,
            "created_at": self.created_at,
            "parent_id": self.parent_id,
        }


@dataclass
class ChatMessage:
    """An outbound message handed to a provider adapter."""

    role: Role
    content: str

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class TextDelta:
    text: str
    finish_reason: Optional[str] = None


@dataclass
class FinalMessage:
    text: str
    finish_reason: Optional[str] = None
    model: Optional[str] = None


@dataclass
class ModelInfo:
    model_id: str
    display_name: str = ""

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.model_id


@dataclass
class GenerationParams:
    """Sampling parameters for a single request."""

    model_id: str
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    extra_body: Dict[str, object] = field(default_factory=dict)
    extra_headers: Dict[str, str] = field(default_factory=dict)


class CancellationToken:
    """Cooperative cancellation flag with abort callbacks.

    Callbacks registered with :meth:`add_callback` run once when the token is
    cancelled (or immediately if it already was). Adapters use them to close
    the in-flight HTTP response so a blocked read returns promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run(callback)

    def cancel(self) -> bool:
        """Set the flag; returns False when it was already set."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run(callback)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.debug("Cancellation callback failed", exc_info=True)


@dataclass
class StreamEvent:
    """One item of the caller-facing stream."""

    type: EventType
    text: str = ""
    turn_id: Optional[str] = None
    provider_id: Optional[str] = None
    model_id: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"type": self.type.value, "text": self.text}
        if self.turn_id:
            payload["turn_id"] = self.turn_id
        if self.provider_id:
            payload["provider_id"] = self.provider_id
        if self.model_id:
            payload["model_id"] = self.model_id
        return payload


@dataclass
class OperationResult:
    """Outcome of pause and rollback requests."""

    success: bool
    message: str = ""
    events: Optional[Iterator[StreamEvent]] = None


@dataclass
class MemoryCandidate:
    text: str
    embedding: List[float]
    enqueued_at: float = field(default_factory=time.time)


@dataclass
class RetrievedMemory:
    text: str
    score: float
    source_id: Optional[str] = None
