"""Collaborator protocols and the bundled in-memory stores."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol, Sequence

from .models import ChatTurn, Role

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    def get_turn(self, turn_id: str) -> Optional[ChatTurn]: ...

    def upsert_turn(self, turn: ChatTurn) -> None: ...

    def delete_turn(self, turn_id: str) -> None: ...

    def observe_turns(self, session_id: str) -> Iterator[List[ChatTurn]]: ...


class SessionStore(Protocol):
    def touch_updated_at(self, session_id: str) -> None: ...


class EmbeddingComputer(Protocol):
    def embed(self, text: str) -> Optional[List[float]]: ...


class VectorStore(Protocol):
    def save(self, text: str, vector: Sequence[float]) -> None: ...

    def search_top_k(self, vector: Sequence[float], k: int) -> List[Dict[str, object]]: ...


class FullTextIndex(Protocol):
    def search(self, query: str, limit: int = 20) -> List[Dict[str, object]]: ...


class InMemoryMessageStore:
    """Thread-safe turn storage.

    ``observe_turns`` yields the current snapshot first and then a fresh
    snapshot every time the session changes. Callers stop observing by closing
    the iterator.
    """

    def __init__(self) -> None:
        self._turns: Dict[str, ChatTurn] = {}
        self._versions: Dict[str, int] = {}
        self._changed = threading.Condition()

    def get_turn(self, turn_id: str) -> Optional[ChatTurn]:
        with self._changed:
            turn = self._turns.get(turn_id)
            return _copy(turn) if turn else None

    def upsert_turn(self, turn: ChatTurn) -> None:
        with self._changed:
            self._turns[turn.id] = _copy(turn)
            self._bump(turn.session_id)

    def delete_turn(self, turn_id: str) -> None:
        with self._changed:
            turn = self._turns.pop(turn_id, None)
            if turn is not None:
                self._bump(turn.session_id)

    def list_turns(self, session_id: str) -> List[ChatTurn]:
        with self._changed:
            return self._snapshot(session_id)

    def delete_session(self, session_id: str) -> None:
        with self._changed:
            for turn_id in [t.id for t in self._turns.values() if t.session_id == session_id]:
                del self._turns[turn_id]
            self._bump(session_id)

    def observe_turns(self, session_id: str, timeout: Optional[float] = None) -> Iterator[List[ChatTurn]]:
        with self._changed:
            seen = self._versions.get(session_id, 0)
            snapshot = self._snapshot(session_id)
        yield snapshot
        while True:
            with self._changed:
                changed = self._changed.wait_for(lambda: self._versions.get(session_id, 0) != seen, timeout=timeout)
                if not changed:
                    return
                seen = self._versions.get(session_id, 0)
                snapshot = self._snapshot(session_id)
            yield snapshot

    def _snapshot(self, session_id: str) -> List[ChatTurn]:
        turns = [_copy(t) for t in self._turns.values() if t.session_id == session_id]
        turns.sort(key=lambda t: t.created_at)
        return turns

    def _bump(self, session_id: str) -> None:
        self._versions[session_id] = self._versions.get(session_id, 0) + 1
        self._changed.notify_all()


def current_turns(store: MessageStore, session_id: str) -> List[ChatTurn]:
    """Read one snapshot from ``observe_turns`` and stop observing."""
    stream = store.observe_turns(session_id)
    try:
        return list(next(stream, []))
    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            close()


@dataclass
class SessionRecord:
    session_id: str
    title: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class InMemorySessionStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionRecord] = {}

    def ensure_session(self, session_id: str) -> SessionRecord:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                record = SessionRecord(session_id=session_id)
                self._sessions[session_id] = record
                logger.info("Created session %s", session_id)
            return record

    def touch_updated_at(self, session_id: str) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                record = SessionRecord(session_id=session_id)
                self._sessions[session_id] = record
            record.updated_at = time.time()

    def rename(self, session_id: str, title: str) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                raise KeyError(session_id)
            record.title = title

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self) -> List[SessionRecord]:
        with self._lock:
            records = list(self._sessions.values())
        return sorted(records, key=lambda r: r.updated_at, reverse=True)


def _copy(turn: ChatTurn) -> ChatTurn:
    return ChatTurn(
        session_id=turn.session_id,
        role=turn.role,
        content=turn.content,
        status=turn.status,
        id=turn.id,
        created_at=turn.created_at,
        parent_id=turn.parent_id,
    )


def non_system(turns: Sequence[ChatTurn]) -> List[ChatTurn]:
    return [turn for turn in turns if turn.role != Role.SYSTEM]
