from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint, create_engine, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


@dataclass(frozen=True)
class CustomerIdentity:
    customer_id: int
    channel: str
    native_address: str
    thread_ref: str | None
    banned: bool
    banned_at: datetime | None
    created_at: datetime
    updated_at: datetime


class CustomerNotFoundError(KeyError):
    pass


class IdentityRepository(Protocol):
    def reset(self) -> None: ...

    def get(self, customer_id: int) -> CustomerIdentity | None: ...

    def get_or_create(self, *, channel: str, native_address: str) -> CustomerIdentity: ...

    def find_by_thread_ref(self, thread_ref: str) -> CustomerIdentity | None: ...

    def set_thread_ref(self, customer_id: int, thread_ref: str) -> CustomerIdentity: ...

    def clear_thread_ref(self, customer_id: int, *, expected_ref: str | None) -> bool: ...

    def set_banned(self, customer_id: int, banned: bool) -> CustomerIdentity: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_address(value: str) -> str:
    normalized = value.strip()
    digits = "".join(ch for ch in normalized if ch.isdigit())
    return digits or normalized


class InMemoryIdentityRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = count(1)
        self._by_id: dict[int, CustomerIdentity] = {}
        self._by_address: dict[tuple[str, str], int] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._by_id.clear()
            self._by_address.clear()

    def get(self, customer_id: int) -> CustomerIdentity | None:
        with self._lock:
            return self._by_id.get(customer_id)

    def get_or_create(self, *, channel: str, native_address: str) -> CustomerIdentity:
        key = (channel, normalize_address(native_address))
        with self._lock:
            existing_id = self._by_address.get(key)
            if existing_id is not None:
                return self._by_id[existing_id]
            now = _now_utc()
            created = CustomerIdentity(
                customer_id=next(self._counter),
                channel=channel,
                native_address=key[1],
                thread_ref=None,
                banned=False,
                banned_at=None,
                created_at=now,
                updated_at=now,
            )
            self._by_id[created.customer_id] = created
            self._by_address[key] = created.customer_id
            return created

    def find_by_thread_ref(self, thread_ref: str) -> CustomerIdentity | None:
        with self._lock:
            for identity in self._by_id.values():
                if identity.thread_ref == thread_ref:
                    return identity
        return None

    def _update(self, customer_id: int, **values) -> CustomerIdentity:
        current = self._by_id.get(customer_id)
        if current is None:
            raise CustomerNotFoundError(customer_id)
        updated = replace(current, updated_at=_now_utc(), **values)
        self._by_id[customer_id] = updated
        return updated

    def set_thread_ref(self, customer_id: int, thread_ref: str) -> CustomerIdentity:
        with self._lock:
            return self._update(customer_id, thread_ref=thread_ref)

    def clear_thread_ref(self, customer_id: int, *, expected_ref: str | None) -> bool:
        with self._lock:
            current = self._by_id.get(customer_id)
            if current is None or current.thread_ref is None or current.thread_ref != expected_ref:
                return False
            self._update(customer_id, thread_ref=None)
            return True

    def set_banned(self, customer_id: int, banned: bool) -> CustomerIdentity:
        with self._lock:
            return self._update(customer_id, banned=banned, banned_at=_now_utc() if banned else None)


class RelayBase(DeclarativeBase):
    pass


class _CustomerIdentityRow(RelayBase):
    __tablename__ = "customer_identities"
    __table_args__ = (UniqueConstraint("channel", "native_address", name="uq_customer_identities_channel_address"),)

    customer_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    native_address: Mapped[str] = mapped_column(String(256), nullable=False)
    thread_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    banned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _identity_from_row(row: _CustomerIdentityRow) -> CustomerIdentity:
    return CustomerIdentity(
        customer_id=row.customer_id,
        channel=row.channel,
        native_address=row.native_address,
        thread_ref=row.thread_ref,
        banned=row.banned,
        banned_at=row.banned_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlAlchemyIdentityRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RELAY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            RelayBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_CustomerIdentityRow))

    def get(self, customer_id: int) -> CustomerIdentity | None:
        with self._session() as session:
            row = session.get(_CustomerIdentityRow, customer_id)
            return _identity_from_row(row) if row is not None else None

    def _find(self, channel: str, native_address: str) -> CustomerIdentity | None:
        with self._session() as session:
            row = session.execute(
                select(_CustomerIdentityRow).where(
                    _CustomerIdentityRow.channel == channel,
                    _CustomerIdentityRow.native_address == native_address,
                )
            ).scalar_one_or_none()
            return _identity_from_row(row) if row is not None else None

    def get_or_create(self, *, channel: str, native_address: str) -> CustomerIdentity:
        address = normalize_address(native_address)
        existing = self._find(channel, address)
        if existing is not None:
            return existing
        now = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    row = _CustomerIdentityRow(
                        channel=channel,
                        native_address=address,
                        thread_ref=None,
                        banned=False,
                        banned_at=None,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                    session.flush()
                    return _identity_from_row(row)
        except IntegrityError:
            # Lost the race to a concurrent first message from the same address.
            winner = self._find(channel, address)
            if winner is None:
                raise
            return winner

    def find_by_thread_ref(self, thread_ref: str) -> CustomerIdentity | None:
        with self._session() as session:
            row = session.execute(
                select(_CustomerIdentityRow).where(_CustomerIdentityRow.thread_ref == thread_ref).limit(1)
            ).scalar_one_or_none()
            return _identity_from_row(row) if row is not None else None

    def _update(self, customer_id: int, **values) -> CustomerIdentity:
        with self._session() as session:
            with session.begin():
                row = session.get(_CustomerIdentityRow, customer_id)
                if row is None:
                    raise CustomerNotFoundError(customer_id)
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = _now_utc()
                session.flush()
                return _identity_from_row(row)

    def set_thread_ref(self, customer_id: int, thread_ref: str) -> CustomerIdentity:
        return self._update(customer_id, thread_ref=thread_ref)

    def clear_thread_ref(self, customer_id: int, *, expected_ref: str | None) -> bool:
        if expected_ref is None:
            return False
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_CustomerIdentityRow)
                    .where(
                        _CustomerIdentityRow.customer_id == customer_id,
                        _CustomerIdentityRow.thread_ref == expected_ref,
                    )
                    .values(thread_ref=None, updated_at=_now_utc())
                )
        return result.rowcount == 1

    def set_banned(self, customer_id: int, banned: bool) -> CustomerIdentity:
        return self._update(customer_id, banned=banned, banned_at=_now_utc() if banned else None)


def create_identity_repository(*, backend: str, database_url: str) -> IdentityRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyIdentityRepository(database_url)
    return InMemoryIdentityRepository()
