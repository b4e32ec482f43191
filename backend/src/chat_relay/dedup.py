from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from sqlalchemy import DateTime, String, create_engine, delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600
PURGE_EVERY_ADMITS = 500


def marker_key(channel_tag: str, native_event_id: str) -> str:
    return f"{channel_tag}:{native_event_id}"


class DedupGate(Protocol):
    def admit(self, channel_tag: str, native_event_id: str) -> bool: ...

    def reset(self) -> None: ...


class InMemoryDedupGate:
    def __init__(self, *, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._expiry_by_key: dict[str, float] = {}

    def reset(self) -> None:
        with self._lock:
            self._expiry_by_key.clear()

    def admit(self, channel_tag: str, native_event_id: str) -> bool:
        key = marker_key(channel_tag, native_event_id)
        now = self._clock()
        with self._lock:
            expires_at = self._expiry_by_key.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expiry_by_key[key] = now + self._ttl_seconds
            if len(self._expiry_by_key) > 10_000:
                self._purge(now)
        return True

    def _purge(self, now: float) -> None:
        expired = [key for key, expires_at in self._expiry_by_key.items() if expires_at <= now]
        for key in expired:
            del self._expiry_by_key[key]


class DedupBase(DeclarativeBase):
    pass


class _DedupMarkerRow(DedupBase):
    __tablename__ = "dedup_markers"

    marker_key: Mapped[str] = mapped_column(String(320), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SqlAlchemyDedupGate:
    """Marker table guarded by its primary key.

    A fresh key is an INSERT; an expired key is reclaimed with a conditional
    UPDATE, so two workers racing on one key cannot both be admitted. Every
    ``purge_every`` admissions the expired markers are deleted in bulk.
    """

    def __init__(
        self,
        database_url: str,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = _now_utc,
        purge_every: int = PURGE_EVERY_ADMITS,
    ) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RELAY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._purge_every = max(purge_every, 1)
        self._admits_since_purge = 0
        self._counter_lock = threading.Lock()
        if database_url.startswith("sqlite"):
            DedupBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_DedupMarkerRow))

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = now if now is not None else self._clock()
        with self._session() as session:
            with session.begin():
                result = session.execute(delete(_DedupMarkerRow).where(_DedupMarkerRow.expires_at <= cutoff))
        if result.rowcount:
            logger.info("purged %s expired dedup markers", result.rowcount)
        return result.rowcount

    def _purge_due(self) -> bool:
        with self._counter_lock:
            self._admits_since_purge += 1
            if self._admits_since_purge < self._purge_every:
                return False
            self._admits_since_purge = 0
            return True

    def _insert(self, key: str, expires_at: datetime) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    session.add(_DedupMarkerRow(marker_key=key, expires_at=expires_at))
        except IntegrityError:
            return False
        return True

    def _reclaim(self, key: str, now: datetime, expires_at: datetime) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_DedupMarkerRow)
                    .where(_DedupMarkerRow.marker_key == key, _DedupMarkerRow.expires_at <= now)
                    .values(expires_at=expires_at)
                )
        return result.rowcount == 1

    def admit(self, channel_tag: str, native_event_id: str) -> bool:
        key = marker_key(channel_tag, native_event_id)
        now = self._clock()
        expires_at = now + self._ttl
        try:
            if self._purge_due():
                self.purge_expired(now)
            # second pass covers a marker purged between the insert and the reclaim
            for _ in range(2):
                if self._insert(key, expires_at) or self._reclaim(key, now, expires_at):
                    return True
            return False
        except SQLAlchemyError as exc:
            logger.warning("dedup store unavailable, admitting %s: %s", key, exc)
            return True


def create_dedup_gate(*, backend: str, database_url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> DedupGate:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDedupGate(database_url, ttl_seconds=ttl_seconds)
    return InMemoryDedupGate(ttl_seconds=ttl_seconds)
