"""Session-keyed registry of in-flight streaming tasks."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from .errors import SessionBusyError

if TYPE_CHECKING:  # pragma: no cover
    from .orchestrator import StreamTask

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Holds at most one active task per session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: Dict[str, "StreamTask"] = {}

    def register(self, task: "StreamTask") -> None:
        with self._lock:
            current = self._tasks.get(task.session_id)
            if current is not None and current.state.is_active:
                raise SessionBusyError(task.session_id)
            self._tasks[task.session_id] = task
        logger.debug("Registered task %s for session %s", task.task_id, task.session_id)

    def get(self, session_id: str) -> Optional["StreamTask"]:
        with self._lock:
            return self._tasks.get(session_id)

    def is_active(self, session_id: str) -> bool:
        task = self.get(session_id)
        return task is not None and task.state.is_active

    def remove(self, task: "StreamTask") -> None:
        """Drop ``task`` if it is still the one registered for its session."""
        with self._lock:
            if self._tasks.get(task.session_id) is task:
                del self._tasks[task.session_id]

    def cancel(self, session_id: str) -> bool:
        task = self.get(session_id)
        if task is None:
            return False
        return task.cancel()

    def active_sessions(self) -> List[str]:
        with self._lock:
            return [sid for sid, task in self._tasks.items() if task.state.is_active]
