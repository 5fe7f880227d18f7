"""Per-session streaming task lifecycle.

A :class:`StreamTask` moves through ``CREATED -> ACTIVE`` and ends in exactly
one of ``COMPLETED``, ``CANCELLED`` or ``FAILED``. A worker thread consumes
the provider's delta stream, keeps the placeholder assistant turn up to date
and hands each delta to the caller through a bounded queue.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional

from .config import ProviderConfig
from .errors import CancelledError, LLMError, classify, is_cancellation
from .models import CancellationToken, ChatMessage, ChatTurn, GenerationParams, Role, TaskState, TextDelta, TurnStatus
from .providers.base import ProviderAdapter
from .registry import TaskRegistry
from .stores import MessageStore, SessionStore

logger = logging.getLogger(__name__)

_END = object()


@dataclass
class GenerationRequest:
    """Everything needed to run one generation for a session."""

    session_id: str
    provider: ProviderConfig
    params: GenerationParams
    messages: List[ChatMessage] = field(default_factory=list)
    is_retry: bool = False
    parent_id: Optional[str] = None

    @property
    def provider_id(self) -> str:
        return self.provider.id

    @property
    def model_id(self) -> str:
        return self.params.model_id


class StreamTask:
    """Handle returned to callers of :meth:`StreamOrchestrator.start`."""

    def __init__(
        self,
        request: GenerationRequest,
        turn_id: str,
        queue_size: int,
        poll_interval: float = 0.1,
        consumer_timeout: float = 30.0,
    ) -> None:
        self.task_id = str(uuid.uuid4())
        self.session_id = request.session_id
        self.provider_id = request.provider_id
        self.model_id = request.model_id
        self.is_retry = request.is_retry
        self.turn_id = turn_id
        self.token = CancellationToken()
        self.state = TaskState.CREATED
        self.error: Optional[LLMError] = None
        self.content = ""
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max(1, queue_size))
        self._done = threading.Event()
        self._poll_interval = poll_interval
        self._consumer_timeout = consumer_timeout

    def cancel(self) -> bool:
        """Request cancellation; returns False when the task already ended."""
        if not self.state.is_active:
            return False
        return self.token.cancel()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def events(self) -> Iterator[TextDelta]:
        """Yield deltas in arrival order until the worker finishes.

        Closing the iterator before the end cancels the task.
        """
        exhausted = False
        try:
            while True:
                try:
                    item = self._queue.get(timeout=self._poll_interval)
                except queue.Empty:
                    if self._done.is_set() and self._queue.empty():
                        exhausted = True
                        return
                    continue
                if item is _END:
                    exhausted = True
                    return
                yield item  # type: ignore[misc]
        finally:
            if not exhausted and self.cancel():
                logger.info("Stream consumer for session %s went away; cancelled task %s", self.session_id, self.task_id)

    def _offer(self, item: TextDelta) -> bool:
        """Queue ``item`` for the consumer; False once the task is cancelled.

        A consumer that takes nothing for ``consumer_timeout`` seconds is
        treated as gone and the task is cancelled.
        """
        deadline = time.monotonic() + self._consumer_timeout
        while True:
            try:
                self._queue.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                if self.token.cancelled:
                    return False
                if time.monotonic() >= deadline:
                    logger.info(
                        "Stream consumer for session %s idle for %.1fs; cancelling task %s",
                        self.session_id,
                        self._consumer_timeout,
                        self.task_id,
                    )
                    self.token.cancel()
                    return False

    def _finish(self) -> None:
        self._done.set()
        try:
            self._queue.put_nowait(_END)
        except queue.Full:
            # events() also stops once done is set and the queue is drained
            pass

    def __repr__(self) -> str:
        return f"StreamTask(id={self.task_id!r}, session={self.session_id!r}, state={self.state.value})"


AdapterFactory = Callable[[ProviderConfig], ProviderAdapter]


class StreamOrchestrator:
    def __init__(
        self,
        adapter_factory: AdapterFactory,
        message_store: MessageStore,
        session_store: SessionStore,
        registry: TaskRegistry,
        *,
        persist_interval: float = 0.5,
        queue_size: int = 64,
        consumer_timeout: float = 30.0,
        cancel_marker: str = "\n(generation cancelled)",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapter_factory = adapter_factory
        self.message_store = message_store
        self.session_store = session_store
        self.registry = registry
        self.persist_interval = persist_interval
        self.queue_size = queue_size
        self.consumer_timeout = consumer_timeout
        self.cancel_marker = cancel_marker
        self._clock = clock

    def start(self, request: GenerationRequest) -> StreamTask:
        """Register a task, persist its placeholder turn and start streaming.

        Raises :class:`SessionBusyError` when the session already streams.
        """
        adapter = self.adapter_factory(request.provider)
        placeholder = ChatTurn(
            session_id=request.session_id,
            role=Role.ASSISTANT,
            status=TurnStatus.STREAMING,
            parent_id=request.parent_id,
        )
        task = StreamTask(request, placeholder.id, self.queue_size, consumer_timeout=self.consumer_timeout)
        self.registry.register(task)
        try:
            self.message_store.upsert_turn(placeholder)
        except Exception:
            self.registry.remove(task)
            raise

        worker = threading.Thread(
            target=self._run,
            args=(task, adapter, request, placeholder),
            name=f"stream-{request.session_id}",
            daemon=True,
        )
        task.state = TaskState.ACTIVE
        worker.start()
        logger.info(
            "Started task %s for session %s via %s/%s%s",
            task.task_id,
            task.session_id,
            task.provider_id,
            task.model_id,
            " (retry)" if task.is_retry else "",
        )
        return task

    def _run(self, task: StreamTask, adapter: ProviderAdapter, request: GenerationRequest, turn: ChatTurn) -> None:
        parts: List[str] = []
        last_persist = self._clock()
        try:
            stream = adapter.stream_text(request.provider, request.messages, request.params, task.token)
            for delta in stream:
                if task.token.cancelled:
                    raise CancelledError("Stream cancelled")
                if not delta.text:
                    continue
                parts.append(delta.text)
                if not task._offer(delta):
                    raise CancelledError("Stream cancelled")
                now = self._clock()
                if now - last_persist >= self.persist_interval:
                    self._persist(turn, "".join(parts), TurnStatus.STREAMING)
                    last_persist = now
            if task.token.cancelled:
                raise CancelledError("Stream cancelled")

            task.content = "".join(parts)
            self._persist(turn, task.content, TurnStatus.DONE)
            self._touch(task.session_id)
            task.state = TaskState.COMPLETED
            logger.info("Task %s completed with %d characters", task.task_id, len(task.content))
        except Exception as exc:
            error = classify(exc)
            if task.token.cancelled or is_cancellation(error):
                task.content = "".join(parts) + self.cancel_marker
                self._persist(turn, task.content, TurnStatus.CANCELLED)
                task.state = TaskState.CANCELLED
                logger.info("Task %s cancelled", task.task_id)
            else:
                task.content = "".join(parts)
                task.error = error
                self._persist(turn, task.content, TurnStatus.FAILED)
                task.state = TaskState.FAILED
                logger.warning("Task %s failed: %s", task.task_id, error)
        finally:
            self.registry.remove(task)
            task._finish()

    def _persist(self, turn: ChatTurn, content: str, status: TurnStatus) -> None:
        turn.content = content
        turn.status = status
        try:
            self.message_store.upsert_turn(turn)
        except Exception:
            logger.exception("Failed to persist turn %s", turn.id)

    def _touch(self, session_id: str) -> None:
        try:
            self.session_store.touch_updated_at(session_id)
        except Exception:
            logger.exception("Failed to update session %s timestamp", session_id)
