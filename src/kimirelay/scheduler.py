from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
import heapq
import itertools
import logging
import threading
import time
from typing import Literal

from kimirelay.error_classifier import ErrorType, classify
from kimirelay.models import Task, TaskKind, TaskResult, utc_now_iso
from kimirelay.notifier import Notifier
from kimirelay.observability import log_event, log_warning, logging_task_context
from kimirelay.orchestrator import TaskOrchestrator
from kimirelay.retry_policy import RetryPolicy


LOGGER = logging.getLogger("kimirelay.scheduler")

OutcomeStatus = Literal["succeeded", "failed"]


@dataclass(frozen=True)
class CurrentTaskSummary:
    task_id: str
    repository: str
    kind: TaskKind
    number: int
    attempt: int
    started_at: str


@dataclass(frozen=True)
class QueueStatus:
    length: int
    busy: bool
    current: CurrentTaskSummary | None
    delayed: int


@dataclass(frozen=True)
class TaskOutcome:
    task_id: str
    repository: str
    kind: TaskKind
    status: OutcomeStatus
    attempts: int
    result: TaskResult | None = None
    error: str | None = None
    error_type: ErrorType | None = None


class TaskScheduler:
    """Serial task queue with delayed, prioritised retries.

    One worker thread runs tasks strictly one at a time. Failed tasks that the
    retry policy accepts wait in a min-heap keyed by ready time; once ready they
    move to a retry lane that is drained before the pending FIFO. The worker
    exits when nothing is queued or delayed and is restarted by `enqueue`.
    """

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        *,
        retry_policy: RetryPolicy,
        notifier: Notifier,
        on_outcome: Callable[[TaskOutcome], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._orchestrator = orchestrator
        self._retry = retry_policy
        self._notifier = notifier
        self._on_outcome = on_outcome
        self._clock = clock
        self._cond = threading.Condition()
        self._pending: deque[Task] = deque()
        self._retry_lane: deque[Task] = deque()
        self._delayed: list[tuple[float, int, Task]] = []
        self._seq = itertools.count()
        self._current: CurrentTaskSummary | None = None
        self._worker: threading.Thread | None = None
        self._stopping = False

    def enqueue(self, task: Task) -> int:
        with self._cond:
            if self._stopping:
                raise RuntimeError("Scheduler is shut down")
            self._pending.append(task)
            position = len(self._pending) + len(self._retry_lane)
            self._ensure_worker_locked()
            self._cond.notify_all()
        log_event(
            LOGGER,
            "task_enqueued",
            task_id=task.task_id,
            repository=task.repository,
            kind=task.kind,
            position=position,
        )
        return position

    def status(self) -> QueueStatus:
        with self._cond:
            return QueueStatus(
                length=len(self._pending) + len(self._retry_lane),
                busy=self._current is not None,
                current=self._current,
                delayed=len(self._delayed),
            )

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is running, queued or awaiting retry."""
        with self._cond:
            return self._cond.wait_for(self._is_idle_locked, timeout=timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop after the current task; queued and delayed work is dropped."""
        with self._cond:
            self._stopping = True
            dropped = len(self._pending) + len(self._retry_lane) + len(self._delayed)
            self._pending.clear()
            self._retry_lane.clear()
            self._delayed.clear()
            worker = self._worker
            self._cond.notify_all()
        if dropped:
            log_warning(LOGGER, "scheduler_shutdown_dropped_tasks", count=dropped)
        if wait and worker is not None and worker is not threading.current_thread():
            worker.join()

    def _ensure_worker_locked(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._worker_loop,
            name="kimirelay-worker",
            daemon=True,
        )
        self._worker.start()

    def _is_idle_locked(self) -> bool:
        return (
            self._current is None
            and not self._pending
            and not self._retry_lane
            and not self._delayed
        )

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, task = heapq.heappop(self._delayed)
            self._retry_lane.append(task)

    def _next_task_locked(self) -> Task | None:
        self._promote_ready_locked()
        if self._retry_lane:
            return self._retry_lane.popleft()
        if self._pending:
            return self._pending.popleft()
        return None

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                task = None if self._stopping else self._next_task_locked()
                while task is None:
                    if self._stopping or not self._delayed:
                        self._worker = None
                        self._cond.notify_all()
                        return
                    wait_seconds = max(self._delayed[0][0] - self._clock(), 0.0)
                    self._cond.wait(timeout=wait_seconds)
                    task = None if self._stopping else self._next_task_locked()
                self._current = CurrentTaskSummary(
                    task_id=task.task_id,
                    repository=task.repository,
                    kind=task.kind,
                    number=task.target_number,
                    attempt=task.retries + 1,
                    started_at=utc_now_iso(),
                )
            try:
                with logging_task_context(task.task_id):
                    self._process(task)
            finally:
                with self._cond:
                    self._current = None
                    self._cond.notify_all()

    def _process(self, task: Task) -> None:
        self._notifier.task_started(task)
        try:
            result = self._orchestrator.run(task)
        except Exception as exc:  # noqa: BLE001
            self._handle_failure(task, exc)
            return
        log_event(
            LOGGER,
            "task_succeeded",
            repository=task.repository,
            kind=task.kind,
            attempts=task.retries + 1,
            pr_number=result.pr_number,
            changes=result.success,
        )
        self._notifier.task_succeeded(task, result)
        self._emit(
            TaskOutcome(
                task_id=task.task_id,
                repository=task.repository,
                kind=task.kind,
                status="succeeded",
                attempts=task.retries + 1,
                result=result,
            )
        )

    def _handle_failure(self, task: Task, exc: Exception) -> None:
        message = str(exc)
        if self._retry.will_retry(task.retries, message):
            task.retries += 1
            delay_minutes = self._retry.delay_minutes(task.retries)
            with self._cond:
                if self._stopping:
                    return
                ready_at = self._clock() + delay_minutes * 60
                heapq.heappush(self._delayed, (ready_at, next(self._seq), task))
                self._cond.notify_all()
            log_event(
                LOGGER,
                "task_retry_scheduled",
                repository=task.repository,
                kind=task.kind,
                retry=task.retries,
                delay_minutes=delay_minutes,
            )
            self._notifier.retry_scheduled(task, delay_minutes)
            return

        error_type = classify(message)
        log_warning(
            LOGGER,
            "task_failed_terminal",
            repository=task.repository,
            kind=task.kind,
            attempts=task.retries + 1,
            error_type=error_type,
            error=message,
        )
        self._emit(
            TaskOutcome(
                task_id=task.task_id,
                repository=task.repository,
                kind=task.kind,
                status="failed",
                attempts=task.retries + 1,
                error=message,
                error_type=error_type,
            )
        )

    def _emit(self, outcome: TaskOutcome) -> None:
        if self._on_outcome is None:
            return
        try:
            self._on_outcome(outcome)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "outcome_callback_failed",
                task_id=outcome.task_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
