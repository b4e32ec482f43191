from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

JobHandler = Callable[[Any], None]


class JobQueue(Protocol):
    def bind(self, handler: JobHandler) -> None: ...

    def enqueue(self, job: Any, *, delay_seconds: float = 0) -> None: ...

    def shutdown(self) -> None: ...


@dataclass(frozen=True)
class ScheduledJob:
    job: Any
    delay_seconds: float


class InlineJobQueue:
    """Runs jobs on the caller's thread in FIFO order.

    A job enqueued while another is running is appended and picked up by the
    outer drain loop, so chained work runs after the job that scheduled it.
    Retry delays are recorded but not waited on. A failing job is logged and
    the rest of the backlog still runs.
    """

    def __init__(self) -> None:
        self._handler: JobHandler | None = None
        self._pending: deque[Any] = deque()
        self._draining = False
        self.history: list[ScheduledJob] = []

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    def enqueue(self, job: Any, *, delay_seconds: float = 0) -> None:
        if self._handler is None:
            raise RuntimeError("job queue has no handler bound")
        self.history.append(ScheduledJob(job=job, delay_seconds=delay_seconds))
        self._pending.append(job)
        if self._draining:
            return
        self._draining = True
        try:
            while self._pending:
                pending = self._pending.popleft()
                try:
                    self._handler(pending)
                except Exception:
                    logger.exception("unhandled error while running job %r", pending)
        finally:
            self._draining = False

    def shutdown(self) -> None:
        self._pending.clear()


class ThreadPoolJobQueue:
    """Bounded worker pool; delayed jobs wait on a timer before entering the pool."""

    def __init__(self, *, pool_size: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(pool_size, 1), thread_name_prefix="relay-worker")
        self._handler: JobHandler | None = None
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    def _run(self, job: Any) -> None:
        handler = self._handler
        if handler is None:
            logger.error("dropping job %r: no handler bound", job)
            return
        try:
            handler(job)
        except Exception:
            logger.exception("unhandled error while running job %r", job)

    def _submit(self, job: Any) -> None:
        with self._lock:
            if self._closed:
                logger.warning("job queue closed, dropping %r", job)
                return
            self._executor.submit(self._run, job)

    def enqueue(self, job: Any, *, delay_seconds: float = 0) -> None:
        if delay_seconds <= 0:
            self._submit(job)
            return

        def fire() -> None:
            with self._lock:
                self._timers.discard(timer)
            self._submit(job)

        timer = threading.Timer(delay_seconds, fire)
        timer.daemon = True
        with self._lock:
            if self._closed:
                return
            self._timers.add(timer)
        timer.start()

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=True)


def create_job_queue(*, backend: str, pool_size: int = 4) -> JobQueue:
    normalized = backend.strip().lower()
    if normalized == "inline":
        return InlineJobQueue()
    return ThreadPoolJobQueue(pool_size=pool_size)
