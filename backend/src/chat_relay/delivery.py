from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from .identities import IdentityRepository
from .jobs import JobQueue
from .ledger import MessageLedger
from .models import DeliveryTarget, Severity
from .providers import ChannelProvider, DeliveryResult, OutboundPayload, Rejected, Sent, TransportFailure
from .team import TeamChatClient, is_thread_stale
from .threads import ThreadCreationJob, ThreadLifecycleManager

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 5
BASE_RETRY_SECONDS = 15
MAX_RETRY_SECONDS = 600


class JobState(str, Enum):
    CREATED = "created"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    WAITING_FOR_THREAD = "waiting_for_thread"
    FAILED_TERMINAL = "failed_terminal"


@dataclass
class DeliveryJob:
    """One send to one side, carrying its own attempt counter.

    Channel-bound jobs hold the provider resolved when the job was created so
    a configuration change never switches provider mid-retry.
    """

    customer_id: int
    target: DeliveryTarget
    payload: OutboundPayload
    ledger_entry_id: int
    origin: Any = None
    provider: ChannelProvider | None = None
    attempts: int = 0
    thread_waits: int = 0
    state: JobState = JobState.CREATED
    last_error: str | None = None
    cleanup_paths: tuple[str, ...] = ()
    job_id: str = field(default_factory=lambda: f"job_{uuid4().hex[:12]}")

    @property
    def kind(self) -> str:
        return self.payload.kind


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    state: JobState
    attempts: int
    message: str | None = None


def retry_delay_seconds(attempts: int, *, base_seconds: int = BASE_RETRY_SECONDS) -> int:
    return min(base_seconds * (2 ** max(attempts - 1, 0)), MAX_RETRY_SECONDS)


def _log_level(severity: Severity) -> int:
    return logging.WARNING if severity == "warning" else logging.ERROR


class DeliveryEngine:
    def __init__(
        self,
        *,
        identities: IdentityRepository,
        ledger: MessageLedger,
        team_client: TeamChatClient,
        threads: ThreadLifecycleManager,
        queue: JobQueue,
        max_attempts: int = MAX_DELIVERY_ATTEMPTS,
        base_retry_seconds: int = BASE_RETRY_SECONDS,
    ) -> None:
        self._identities = identities
        self._ledger = ledger
        self._team_client = team_client
        self._threads = threads
        self._queue = queue
        self._max_attempts = max(max_attempts, 1)
        self._base_retry_seconds = base_retry_seconds
        self._handlers: dict[type, Callable[[Any], JobOutcome]] = {
            DeliveryJob: self._run_delivery,
            ThreadCreationJob: self._run_thread_creation,
        }
        queue.bind(self.execute)

    def submit(self, job: DeliveryJob) -> None:
        self._queue.enqueue(job)

    def execute(self, job: Any) -> JobOutcome:
        handler = self._handlers.get(type(job))
        if handler is None:
            raise TypeError(f"unsupported job type: {type(job).__name__}")
        return handler(job)

    def _run_delivery(self, job: DeliveryJob) -> JobOutcome:
        job.state = JobState.ATTEMPTING
        if job.target == "team":
            result = self._attempt_team(job)
            if isinstance(result, JobOutcome):
                return result
        else:
            if job.provider is None:
                return self._fail(job, Rejected("invalid_payload", "channel job without a provider"))
            result = self._send(job, job.provider.send_message)
        return self._classify(job, result)

    def _send(self, job: DeliveryJob, send: Callable[..., DeliveryResult], *args: Any) -> DeliveryResult:
        try:
            return send(*args, job.payload)
        except Exception as exc:
            logger.exception("delivery job %s raised while sending to %s", job.job_id, job.target)
            return TransportFailure(f"unexpected error: {exc!r}")

    def _attempt_team(self, job: DeliveryJob) -> DeliveryResult | JobOutcome:
        identity = self._identities.get(job.customer_id)
        thread_ref = identity.thread_ref if identity is not None else None
        if thread_ref and not self._threads.verify_thread(thread_ref, "inbound"):
            self._threads.mark_stale(job.customer_id, thread_ref)
            return self._wait_for_thread(job, stale=True)
        if not thread_ref:
            return self._wait_for_thread(job)

        result = self._send(job, self._team_client.post, thread_ref)
        if is_thread_stale(result):
            self._threads.mark_stale(job.customer_id, thread_ref)
            return self._wait_for_thread(job, stale=True)
        return result

    def _wait_for_thread(self, job: DeliveryJob, *, stale: bool = False) -> JobOutcome:
        # Stale threads do not spend an attempt; they are capped separately.
        if stale:
            job.thread_waits += 1
            if job.thread_waits > self._max_attempts:
                return self._fail(
                    job,
                    Rejected("thread_unavailable", f"thread went stale {job.thread_waits} times"),
                )
        job.state = JobState.WAITING_FOR_THREAD
        self._threads.request_thread(job.customer_id, continuation=job)
        return JobOutcome(job.job_id, job.state, job.attempts, "waiting for thread")

    def _classify(self, job: DeliveryJob, result: DeliveryResult) -> JobOutcome:
        job.attempts += 1
        if isinstance(result, Sent):
            return self._succeed(job, result)
        if isinstance(result, Rejected) and result.permanent:
            return self._fail(job, result)

        job.last_error = result.message
        if job.attempts >= self._max_attempts:
            return self._fail(job, result)
        delay = retry_delay_seconds(job.attempts, base_seconds=self._base_retry_seconds)
        job.state = JobState.RETRYING
        logger.info(
            "delivery job %s attempt %s/%s failed, retrying in %ss: %s",
            job.job_id,
            job.attempts,
            self._max_attempts,
            delay,
            result.message,
        )
        self._queue.enqueue(job, delay_seconds=delay)
        return JobOutcome(job.job_id, job.state, job.attempts, result.message)

    def _succeed(self, job: DeliveryJob, result: Sent) -> JobOutcome:
        written = self._ledger.attach_destination(job.ledger_entry_id, result.native_message_id)
        if not written:
            logger.info("ledger entry %s already completed, keeping first destination", job.ledger_entry_id)
        job.state = JobState.SUCCEEDED
        job.last_error = None
        if job.target == "channel":
            self._threads.refresh_decoration(job.customer_id, "outbound")
        self._cleanup(job)
        return JobOutcome(job.job_id, job.state, job.attempts)

    def _fail(self, job: DeliveryJob, result: Rejected | TransportFailure) -> JobOutcome:
        job.state = JobState.FAILED_TERMINAL
        job.last_error = result.message
        if isinstance(result, Rejected) and result.permanent:
            reason = f"rejected permanently ({result.error_kind})"
        else:
            reason = f"gave up after {job.attempts} attempts"
        logger.log(
            _log_level(result.severity),
            "delivery job %s to %s for customer %s %s: %s",
            job.job_id,
            job.target,
            job.customer_id,
            reason,
            result.message,
        )
        self._ledger.discard_pending(job.ledger_entry_id)
        self._cleanup(job)
        return JobOutcome(job.job_id, job.state, job.attempts, result.message)

    def _cleanup(self, job: DeliveryJob) -> None:
        for raw_path in job.cleanup_paths:
            try:
                Path(raw_path).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("could not remove temporary file %s: %s", raw_path, exc)

    def _run_thread_creation(self, job: ThreadCreationJob) -> JobOutcome:
        result = self._threads.create_thread(job.customer_id)
        job.attempts += 1
        if isinstance(result, Sent):
            for waiting in self._threads.activate(job.customer_id):
                self._queue.enqueue(waiting)
            return JobOutcome(job.job_id, JobState.SUCCEEDED, job.attempts)

        permanent = isinstance(result, Rejected) and result.permanent
        if permanent or job.attempts >= self._max_attempts:
            logger.error(
                "thread creation for customer %s failed after %s attempts: %s",
                job.customer_id,
                job.attempts,
                result.message,
            )
            for waiting in self._threads.abandon(job.customer_id):
                self._fail(waiting, Rejected("thread_unavailable", f"no thread for customer {job.customer_id}"))
            return JobOutcome(job.job_id, JobState.FAILED_TERMINAL, job.attempts, result.message)

        delay = retry_delay_seconds(job.attempts, base_seconds=self._base_retry_seconds)
        logger.info(
            "thread creation for customer %s failed (attempt %s), retrying in %ss: %s",
            job.customer_id,
            job.attempts,
            delay,
            result.message,
        )
        self._queue.enqueue(job, delay_seconds=delay)
        return JobOutcome(job.job_id, JobState.RETRYING, job.attempts, result.message)
