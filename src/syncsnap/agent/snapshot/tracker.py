"""Progress tracking for snapshot operations.

This module provides:
- OperationState: Progress of one snapshot operation
- Subscription: Ordered, bounded stream of state updates for one observer
- ProgressTracker: Registry of operation states with fan-out to subscribers

Architecture:
    SnapshotPipeline ──update──► ProgressTracker ──fan-out──► Subscription (SSE)
                                       │                 └──► Subscription (WebSocket)
                                 (current state)
                                       ▲
                                 get_state (HTTP poll)

Delivery never blocks the writer. When a subscriber falls behind, the
oldest intermediate update in its buffer is dropped, but the terminal
update is always delivered and is the last one a subscriber receives.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from syncsnap.agent.snapshot.types import OperationAlreadyRunningError
from syncsnap.core.types import SnapshotOutcome, SnapshotStep

logger = logging.getLogger(__name__)

TOTAL_STEPS = 6
DEFAULT_BUFFER_SIZE = 10

# Overall progress shown for each step number
PROGRESS_BY_STEP: dict[int, int] = {
    1: 10,
    2: 20,
    3: 50,
    4: 75,
    5: 95,
    6: 100,
}

IDLE_MESSAGE = "No snapshot generation in progress"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class OperationState:
    """Progress of one snapshot operation.

    Attributes:
        key: Project ID the operation belongs to.
        step: Current step.
        step_number: 1..TOTAL_STEPS, 0 for the idle placeholder.
        file_count: Last known number of inventory entries.
        total_size: Last known total size in bytes.
        message: Human-readable description of the current step.
        started_at: When the operation started.
        last_updated_at: When the state last changed.
        estimated_end: Projected completion time, if known.
        result_location: URL of the published snapshot (success only).
        error_detail: Failure cause, or upload error for LOCAL_ONLY.
        outcome: Final outcome, None while running.
    """

    key: str
    step: SnapshotStep = SnapshotStep.WAITING
    step_number: int = 1
    file_count: int = 0
    total_size: int = 0
    message: str = ""
    started_at: datetime = field(default_factory=_utcnow)
    last_updated_at: datetime = field(default_factory=_utcnow)
    estimated_end: datetime | None = None
    result_location: str | None = None
    error_detail: str | None = None
    outcome: SnapshotOutcome | None = None

    @classmethod
    def idle(cls, key: str) -> OperationState:
        """State reported for a project with no tracked operation."""
        return cls(key=key, step=SnapshotStep.IDLE, step_number=0, message=IDLE_MESSAGE)

    @property
    def terminal(self) -> bool:
        """Whether the operation has completed or failed."""
        return self.step.is_terminal

    @property
    def progress(self) -> int:
        """Overall progress percentage derived from the step number."""
        return PROGRESS_BY_STEP.get(self.step_number, 0)

    def copy(self) -> OperationState:
        """Get an independent copy of this state."""
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "project_id": self.key,
            "step": self.step.value,
            "step_number": self.step_number,
            "total_steps": TOTAL_STEPS,
            "progress": self.progress,
            "file_count": self.file_count,
            "total_size": self.total_size,
            "message": self.message,
            "started_at": self.started_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "estimated_end": self.estimated_end.isoformat() if self.estimated_end else None,
            "result_location": self.result_location,
            "error_detail": self.error_detail,
            "outcome": self.outcome.value if self.outcome else None,
            "terminal": self.terminal,
        }


class Subscription:
    """Ordered stream of state updates for one observer of one project.

    Updates are buffered up to ``maxsize``. When the buffer is full the
    oldest buffered update is discarded to make room; terminal updates
    are always accepted. Once closed, buffered updates can still be read,
    after which reads return None (end of stream).

    Usage:
        sub = tracker.subscribe("project-1")
        async for state in sub:
            print(state.step)
    """

    def __init__(self, key: str, maxsize: int = DEFAULT_BUFFER_SIZE) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.key = key
        self._maxsize = maxsize
        self._buffer: deque[OperationState] = deque()
        self._lock = threading.Lock()
        self._wakeup = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False
        self._terminal_seen = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        """Whether no further updates will be accepted."""
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def offer(self, state: OperationState) -> bool:
        """Queue an update without blocking.

        Args:
            state: Snapshot of the operation state.

        Returns:
            True if the update was queued.
        """
        with self._lock:
            if self._closed or self._terminal_seen:
                return False
            if state.terminal:
                self._terminal_seen = True
            elif len(self._buffer) >= self._maxsize:
                self._buffer.popleft()
                self.dropped += 1
            self._buffer.append(state)
        self._notify()
        return True

    def close(self) -> None:
        """Close the stream. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._notify()

    def get_nowait(self) -> OperationState | None:
        """Pop the next buffered update, or None if the buffer is empty."""
        with self._lock:
            if self._buffer:
                return self._buffer.popleft()
            return None

    async def get(self) -> OperationState | None:
        """Wait for the next update.

        Returns:
            The next state, or None once the stream is closed and drained.
        """
        while True:
            with self._lock:
                if self._buffer:
                    return self._buffer.popleft()
                if self._closed:
                    return None
                self._loop = asyncio.get_running_loop()
                self._wakeup.clear()
            await self._wakeup.wait()

    def __aiter__(self) -> AsyncIterator[OperationState]:
        return self

    async def __anext__(self) -> OperationState:
        state = await self.get()
        if state is None:
            raise StopAsyncIteration
        return state

    def _notify(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wakeup.set()
        else:
            loop.call_soon_threadsafe(self._wakeup.set)


class ProgressTracker:
    """Registry of snapshot operation states with live fan-out.

    Each project has at most one live state. Only the pipeline run that
    called start() should write to it. All registry access goes through
    a single lock, so the tracker can be shared between the event loop
    and worker threads.

    A state is kept after it reaches a terminal step until cleanup() is
    called, so observers can still read how the operation ended.
    """

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the tracker.

        Args:
            buffer_size: Per-subscriber buffer bound.
            clock: Source of timestamps (overridable in tests).
        """
        self._buffer_size = buffer_size
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, OperationState] = {}
        self._subscribers: dict[str, list[Subscription]] = {}

    def start(self, key: str) -> OperationState:
        """Start tracking a new operation at step 1.

        A finished operation that was not cleaned up yet is replaced.
        Subscribers registered before the start are kept.

        Args:
            key: Project ID.

        Returns:
            Copy of the new state.

        Raises:
            OperationAlreadyRunningError: If a non-terminal operation exists.
        """
        with self._lock:
            existing = self._states.get(key)
            if existing is not None and not existing.terminal:
                raise OperationAlreadyRunningError(key)

            now = self._clock()
            state = OperationState(
                key=key,
                step=SnapshotStep.WAITING,
                step_number=1,
                message="Snapshot generation started",
                started_at=now,
                last_updated_at=now,
            )
            self._states[key] = state
            self._subscribers.setdefault(key, [])
            self._publish(key, state)
            logger.info("Tracking snapshot for project %s", key)
            return state.copy()

    def update(
        self,
        key: str,
        step: SnapshotStep,
        step_number: int,
        file_count: int = 0,
        total_size: int = 0,
        message: str = "",
    ) -> None:
        """Record progress of a running operation.

        Updates for unknown or finished operations are ignored, as are
        updates that would move the step number backwards. Counters never
        decrease.
        """
        if step.is_terminal:
            raise ValueError("Use complete() or fail() for terminal steps")

        with self._lock:
            state = self._states.get(key)
            if state is None or state.terminal:
                logger.debug("Ignoring progress update for inactive project %s", key)
                return
            if step_number < state.step_number:
                logger.warning(
                    "Ignoring out-of-order step %d < %d for project %s",
                    step_number, state.step_number, key,
                )
                return

            now = self._clock()
            state.step = step
            state.step_number = min(step_number, TOTAL_STEPS)
            state.file_count = max(state.file_count, file_count)
            state.total_size = max(state.total_size, total_size)
            state.message = message
            state.last_updated_at = now
            state.estimated_end = self._estimate_end(state, now)
            self._publish(key, state)

    def complete(
        self,
        key: str,
        result_location: str | None,
        upload_error: str | None = None,
    ) -> None:
        """Mark an operation as completed.

        Args:
            key: Project ID.
            result_location: URL of the published snapshot, or None when
                the inventory was produced but could not be published.
            upload_error: Why publishing failed, when result_location is None.
        """
        with self._lock:
            state = self._states.get(key)
            if state is None or state.terminal:
                return

            state.step = SnapshotStep.COMPLETED
            state.step_number = TOTAL_STEPS
            state.last_updated_at = self._clock()
            state.estimated_end = state.last_updated_at
            if result_location:
                state.outcome = SnapshotOutcome.SUCCESS
                state.result_location = result_location
                state.error_detail = None
                state.message = "Snapshot generation completed successfully"
            else:
                state.outcome = SnapshotOutcome.LOCAL_ONLY
                state.result_location = None
                state.error_detail = upload_error or "Snapshot was not uploaded"
                state.message = f"Snapshot created locally, upload failed: {state.error_detail}"
            self._publish(key, state)

        logger.info("Snapshot for project %s completed (%s)", key, state.outcome.value)

    def fail(self, key: str, error_detail: str) -> None:
        """Mark an operation as failed.

        The step number stays at the step that failed.
        """
        with self._lock:
            state = self._states.get(key)
            if state is None or state.terminal:
                return

            state.step = SnapshotStep.FAILED
            state.outcome = SnapshotOutcome.FAILED
            state.error_detail = error_detail
            state.result_location = None
            state.message = f"Snapshot generation failed: {error_detail}"
            state.last_updated_at = self._clock()
            state.estimated_end = None
            self._publish(key, state)

        logger.warning("Snapshot for project %s failed: %s", key, error_detail)

    def get_state(self, key: str) -> OperationState | None:
        """Get a copy of the current state of an operation."""
        with self._lock:
            state = self._states.get(key)
            return state.copy() if state is not None else None

    def active_keys(self) -> list[str]:
        """Get the projects with an operation still in progress."""
        with self._lock:
            return [key for key, state in self._states.items() if not state.terminal]

    def subscribe(self, key: str) -> Subscription:
        """Register a new observer for a project.

        Subscribing before the operation starts is allowed. If a state
        already exists, it is queued first so the observer starts from
        the current position.
        """
        subscription = Subscription(key, self._buffer_size)
        with self._lock:
            self._subscribers.setdefault(key, []).append(subscription)
            state = self._states.get(key)
            if state is not None:
                subscription.offer(state.copy())
        logger.debug("New subscriber for project %s", key)
        return subscription

    def unsubscribe(self, key: str, subscription: Subscription) -> None:
        """Remove and close a subscription. Idempotent."""
        with self._lock:
            subscribers = self._subscribers.get(key)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
                if not subscribers and key not in self._states:
                    del self._subscribers[key]
        subscription.close()

    def subscriber_count(self, key: str) -> int:
        """Number of current subscribers of a project."""
        with self._lock:
            return len(self._subscribers.get(key, []))

    def cleanup(self, key: str) -> None:
        """Forget an operation and close all of its subscriptions."""
        with self._lock:
            self._states.pop(key, None)
            subscribers = self._subscribers.pop(key, [])
        for subscription in subscribers:
            subscription.close()
        logger.debug("Cleaned up project %s (%d subscribers closed)", key, len(subscribers))

    def _publish(self, key: str, state: OperationState) -> None:
        # Called with the lock held, so every subscriber sees the same order
        for subscription in self._subscribers.get(key, []):
            if not subscription.offer(state.copy()):
                logger.debug("Subscriber of %s not accepting updates", key)

    @staticmethod
    def _estimate_end(state: OperationState, now: datetime) -> datetime | None:
        if state.step_number <= 0:
            return None
        elapsed = now - state.started_at
        per_step = elapsed / state.step_number
        remaining = TOTAL_STEPS - state.step_number
        return now + per_step * remaining if remaining > 0 else now

    def __repr__(self) -> str:
        return f"ProgressTracker(active={self.active_keys()!r})"


__all__ = [
    "IDLE_MESSAGE",
    "PROGRESS_BY_STEP",
    "TOTAL_STEPS",
    "OperationState",
    "ProgressTracker",
    "Subscription",
]
