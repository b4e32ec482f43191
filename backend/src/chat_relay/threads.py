from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from .identities import CustomerIdentity, IdentityRepository
from .jobs import JobQueue
from .models import Direction
from .providers import DeliveryResult, Rejected, Sent
from .team import THREAD_NOT_FOUND, THREAD_NOT_MODIFIED, TeamChatClient, is_thread_stale

logger = logging.getLogger(__name__)


class ThreadState(str, Enum):
    NO_THREAD = "no_thread"
    PENDING = "thread_pending"
    ACTIVE = "thread_active"
    STALE = "thread_stale"


@dataclass
class ThreadCreationJob:
    customer_id: int
    attempts: int = 0
    job_id: str = field(default_factory=lambda: f"thread_{uuid4().hex[:12]}")


def _is_not_modified(result: DeliveryResult) -> bool:
    return isinstance(result, Rejected) and result.error_kind == THREAD_NOT_MODIFIED


def thread_title(identity: CustomerIdentity) -> str:
    address = identity.native_address
    if address.isdigit():
        address = f"+{address}"
    return f"{address} [{identity.channel}]"


class ThreadLifecycleManager:
    """Owns whether a customer has a usable team thread.

    Work that needs a thread and finds none parks itself here as a
    continuation; the first request per customer enqueues the single creation
    job and later requests only join the waiting list. Waiters are released to
    the queue, in arrival order, once the thread reference is stored.

    The icon last applied to each thread is remembered, so a "not modified"
    answer for that same icon proves the thread is alive rather than stale.
    """

    def __init__(
        self,
        *,
        identities: IdentityRepository,
        team_client: TeamChatClient,
        queue: JobQueue,
        icon_incoming: str = "",
        icon_outgoing: str = "",
    ) -> None:
        self._identities = identities
        self._team_client = team_client
        self._queue = queue
        self._icons: dict[str, str] = {"inbound": icon_incoming, "outbound": icon_outgoing}
        self._lock = threading.Lock()
        self._waiters: dict[int, list[Any]] = {}
        self._applied_icons: dict[str, str] = {}

    def state_of(self, customer_id: int) -> ThreadState:
        with self._lock:
            if customer_id in self._waiters:
                return ThreadState.PENDING
        identity = self._identities.get(customer_id)
        if identity is not None and identity.thread_ref:
            return ThreadState.ACTIVE
        return ThreadState.NO_THREAD

    def request_thread(self, customer_id: int, continuation: Any | None = None) -> bool:
        """Park ``continuation`` until the thread exists; True when this call started the creation."""
        with self._lock:
            waiters = self._waiters.get(customer_id)
            if waiters is not None:
                if continuation is not None:
                    waiters.append(continuation)
                return False
            self._waiters[customer_id] = [continuation] if continuation is not None else []
        logger.info("thread creation requested for customer %s", customer_id)
        self._queue.enqueue(ThreadCreationJob(customer_id=customer_id))
        return True

    def create_thread(self, customer_id: int) -> DeliveryResult:
        identity = self._identities.get(customer_id)
        if identity is None:
            return Rejected("invalid_recipient", f"customer {customer_id} does not exist")
        if identity.thread_ref:
            return Sent(identity.thread_ref)
        result = self._team_client.create_thread(thread_title(identity))
        if isinstance(result, Sent):
            if not result.native_message_id:
                return Rejected("missing_thread_ref", "team chat created a thread without a reference")
            self._identities.set_thread_ref(customer_id, result.native_message_id)
            icon = self._icons["inbound"]
            decoration = self._team_client.decorate_thread(result.native_message_id, icon)
            # a fresh thread answering "not modified" already shows this icon
            if isinstance(decoration, Sent) or _is_not_modified(decoration):
                self._remember_icon(result.native_message_id, icon)
            logger.info("thread %s created for customer %s", result.native_message_id, customer_id)
        return result

    def activate(self, customer_id: int) -> list[Any]:
        with self._lock:
            return self._waiters.pop(customer_id, [])

    def abandon(self, customer_id: int) -> list[Any]:
        with self._lock:
            return self._waiters.pop(customer_id, [])

    def decorate(self, thread_ref: str, direction: Direction) -> DeliveryResult:
        icon = self._icons[direction]
        result = self._team_client.decorate_thread(thread_ref, icon)
        if isinstance(result, Sent):
            self._remember_icon(thread_ref, icon)
        elif _is_not_modified(result):
            with self._lock:
                if self._applied_icons.get(thread_ref) == icon:
                    return Sent(thread_ref)
        return result

    def _remember_icon(self, thread_ref: str, icon: str) -> None:
        with self._lock:
            self._applied_icons[thread_ref] = icon

    def verify_thread(self, thread_ref: str, direction: Direction) -> bool:
        """Decorate before a team-side post; False when the thread turned out stale."""
        return not is_thread_stale(self.decorate(thread_ref, direction))

    def refresh_decoration(self, customer_id: int, direction: Direction) -> bool:
        """Re-decorate after a channel-side delivery; a vanished thread is re-requested."""
        identity = self._identities.get(customer_id)
        if identity is None or not identity.thread_ref:
            return False
        result = self.decorate(identity.thread_ref, direction)
        if isinstance(result, Rejected) and result.error_kind == THREAD_NOT_FOUND:
            self.mark_stale(customer_id, identity.thread_ref)
            self.request_thread(customer_id)
            return False
        return True

    def mark_stale(self, customer_id: int, thread_ref: str) -> bool:
        with self._lock:
            self._applied_icons.pop(thread_ref, None)
        cleared = self._identities.clear_thread_ref(customer_id, expected_ref=thread_ref)
        if cleared:
            logger.info("thread %s for customer %s is stale, reference cleared", thread_ref, customer_id)
        return cleared
