"""Message ledger linking team-side post ids with channel-side message ids.

An entry is created pending (destination unknown) before its send is attempted
and completed once. Inbound entries originate on the customer channel and land
in the team thread; outbound entries go the other way. The channel-side id of
every entry is mirrored into a ``ChannelMessageRecord`` so channel id formats
stay out of the cross-channel columns used for team-side lookups.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from typing import Protocol

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, create_engine, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column, sessionmaker

from .identities import RelayBase
from .models import TEAM_CHANNEL, Direction


@dataclass(frozen=True)
class LedgerEntry:
    entry_id: int
    customer_id: int
    direction: Direction
    channel: str
    origin_native_id: str
    destination_native_id: str | None
    created_at: datetime

    @property
    def pending(self) -> bool:
        return self.destination_native_id is None

    @property
    def channel_native_id(self) -> str | None:
        return self.origin_native_id if self.direction == "inbound" else self.destination_native_id

    @property
    def team_native_id(self) -> str | None:
        return self.destination_native_id if self.direction == "inbound" else self.origin_native_id


@dataclass(frozen=True)
class ChannelMessageRecord:
    record_id: int
    entry_id: int
    channel: str
    native_message_id: str


class LedgerConflictError(Exception):
    """An entry for this (customer, direction, origin id) already exists."""

    def __init__(self, customer_id: int, direction: str, origin_native_id: str) -> None:
        super().__init__(f"ledger entry exists for customer={customer_id} direction={direction} origin={origin_native_id}")
        self.customer_id = customer_id
        self.direction = direction
        self.origin_native_id = origin_native_id


class LedgerEntryNotFoundError(KeyError):
    pass


class MessageLedger(Protocol):
    def reset(self) -> None: ...

    def record_origin(self, customer_id: int, direction: Direction, origin_native_id: str, *, channel: str) -> LedgerEntry: ...

    def attach_destination(self, entry_id: int, destination_native_id: str) -> bool: ...

    def discard_pending(self, entry_id: int) -> bool: ...

    def get_entry(self, entry_id: int) -> LedgerEntry | None: ...

    def list_entries(self, customer_id: int, *, limit: int = 100) -> list[LedgerEntry]: ...

    def resolve_counterpart(
        self,
        native_id: str,
        channel_tag: str,
        direction: Direction | None = None,
        *,
        customer_id: int | None = None,
    ) -> str | None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _counterpart(entry: LedgerEntry, channel_tag: str) -> str | None:
    if entry.pending:
        return None
    if channel_tag == TEAM_CHANNEL:
        return entry.channel_native_id
    return entry.team_native_id


class InMemoryMessageLedger:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entry_counter = count(1)
        self._record_counter = count(1)
        self._entries: dict[int, LedgerEntry] = {}
        self._by_origin: dict[tuple[int, str, str], int] = {}
        self._records: dict[int, ChannelMessageRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._entry_counter = count(1)
            self._record_counter = count(1)
            self._entries.clear()
            self._by_origin.clear()
            self._records.clear()

    def record_origin(self, customer_id: int, direction: Direction, origin_native_id: str, *, channel: str) -> LedgerEntry:
        key = (customer_id, direction, origin_native_id)
        with self._lock:
            if key in self._by_origin:
                raise LedgerConflictError(customer_id, direction, origin_native_id)
            entry = LedgerEntry(
                entry_id=next(self._entry_counter),
                customer_id=customer_id,
                direction=direction,
                channel=channel,
                origin_native_id=origin_native_id,
                destination_native_id=None,
                created_at=_now_utc(),
            )
            self._entries[entry.entry_id] = entry
            self._by_origin[key] = entry.entry_id
            if direction == "inbound":
                self._add_record(entry, origin_native_id)
            return entry

    def _add_record(self, entry: LedgerEntry, native_message_id: str) -> None:
        self._records[entry.entry_id] = ChannelMessageRecord(
            record_id=next(self._record_counter),
            entry_id=entry.entry_id,
            channel=entry.channel,
            native_message_id=native_message_id,
        )

    def attach_destination(self, entry_id: int, destination_native_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise LedgerEntryNotFoundError(entry_id)
            if entry.destination_native_id is not None:
                return False
            self._entries[entry_id] = replace(entry, destination_native_id=destination_native_id)
            if entry.direction == "outbound":
                self._add_record(entry, destination_native_id)
            return True

    def discard_pending(self, entry_id: int) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or not entry.pending:
                return False
            del self._entries[entry_id]
            self._by_origin.pop((entry.customer_id, entry.direction, entry.origin_native_id), None)
            self._records.pop(entry_id, None)
            return True

    def get_entry(self, entry_id: int) -> LedgerEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    def get_channel_record(self, entry_id: int) -> ChannelMessageRecord | None:
        with self._lock:
            return self._records.get(entry_id)

    def list_entries(self, customer_id: int, *, limit: int = 100) -> list[LedgerEntry]:
        with self._lock:
            entries = [entry for entry in self._entries.values() if entry.customer_id == customer_id]
        entries.sort(key=lambda entry: entry.entry_id)
        return entries[-limit:]

    def resolve_counterpart(
        self,
        native_id: str,
        channel_tag: str,
        direction: Direction | None = None,
        *,
        customer_id: int | None = None,
    ) -> str | None:
        with self._lock:
            candidates = list(self._entries.values())
        for entry in candidates:
            if direction is not None and entry.direction != direction:
                continue
            if customer_id is not None and entry.customer_id != customer_id:
                continue
            if channel_tag == TEAM_CHANNEL:
                matched = entry.team_native_id == native_id
            else:
                record = self._records.get(entry.entry_id)
                matched = record is not None and record.channel == channel_tag and record.native_message_id == native_id
            if matched:
                return _counterpart(entry, channel_tag)
        return None


class _LedgerEntryRow(RelayBase):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("customer_id", "direction", "origin_native_id", name="uq_ledger_entries_origin"),
    )

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(Integer, ForeignKey("customer_identities.customer_id"), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    origin_native_id: Mapped[str] = mapped_column(String(256), nullable=False)
    destination_native_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ChannelMessageRow(RelayBase):
    __tablename__ = "channel_message_records"

    record_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("ledger_entries.entry_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    native_message_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)


def _entry_from_row(row: _LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row.entry_id,
        customer_id=row.customer_id,
        direction=row.direction,  # type: ignore[arg-type]
        channel=row.channel,
        origin_native_id=row.origin_native_id,
        destination_native_id=row.destination_native_id,
        created_at=row.created_at,
    )


class SqlAlchemyMessageLedger:
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
                session.execute(delete(_ChannelMessageRow))
                session.execute(delete(_LedgerEntryRow))

    def record_origin(self, customer_id: int, direction: Direction, origin_native_id: str, *, channel: str) -> LedgerEntry:
        try:
            with self._session() as session:
                with session.begin():
                    row = _LedgerEntryRow(
                        customer_id=customer_id,
                        direction=direction,
                        channel=channel,
                        origin_native_id=origin_native_id,
                        destination_native_id=None,
                        created_at=_now_utc(),
                    )
                    session.add(row)
                    session.flush()
                    if direction == "inbound":
                        session.add(
                            _ChannelMessageRow(entry_id=row.entry_id, channel=channel, native_message_id=origin_native_id)
                        )
                    entry = _entry_from_row(row)
        except IntegrityError as exc:
            raise LedgerConflictError(customer_id, direction, origin_native_id) from exc
        return entry

    def attach_destination(self, entry_id: int, destination_native_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_LedgerEntryRow, entry_id)
                if row is None:
                    raise LedgerEntryNotFoundError(entry_id)
                direction = row.direction
                channel = row.channel
                result = session.execute(
                    update(_LedgerEntryRow)
                    .where(
                        _LedgerEntryRow.entry_id == entry_id,
                        _LedgerEntryRow.destination_native_id.is_(None),
                    )
                    .values(destination_native_id=destination_native_id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False
                if direction == "outbound":
                    session.add(
                        _ChannelMessageRow(entry_id=entry_id, channel=channel, native_message_id=destination_native_id)
                    )
        return True

    def discard_pending(self, entry_id: int) -> bool:
        with self._session() as session:
            with session.begin():
                pending = select(_LedgerEntryRow.entry_id).where(
                    _LedgerEntryRow.entry_id == entry_id,
                    _LedgerEntryRow.destination_native_id.is_(None),
                )
                session.execute(
                    delete(_ChannelMessageRow)
                    .where(_ChannelMessageRow.entry_id.in_(pending))
                    .execution_options(synchronize_session=False)
                )
                result = session.execute(
                    delete(_LedgerEntryRow)
                    .where(
                        _LedgerEntryRow.entry_id == entry_id,
                        _LedgerEntryRow.destination_native_id.is_(None),
                    )
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    def get_entry(self, entry_id: int) -> LedgerEntry | None:
        with self._session() as session:
            row = session.get(_LedgerEntryRow, entry_id)
            return _entry_from_row(row) if row is not None else None

    def get_channel_record(self, entry_id: int) -> ChannelMessageRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_ChannelMessageRow).where(_ChannelMessageRow.entry_id == entry_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            return ChannelMessageRecord(
                record_id=row.record_id,
                entry_id=row.entry_id,
                channel=row.channel,
                native_message_id=row.native_message_id,
            )

    def list_entries(self, customer_id: int, *, limit: int = 100) -> list[LedgerEntry]:
        with self._session() as session:
            rows = session.execute(
                select(_LedgerEntryRow)
                .where(_LedgerEntryRow.customer_id == customer_id)
                .order_by(_LedgerEntryRow.entry_id.desc())
                .limit(limit)
            ).scalars()
            return list(reversed([_entry_from_row(row) for row in rows]))

    def resolve_counterpart(
        self,
        native_id: str,
        channel_tag: str,
        direction: Direction | None = None,
        *,
        customer_id: int | None = None,
    ) -> str | None:
        if channel_tag == TEAM_CHANNEL:
            statement = select(_LedgerEntryRow).where(
                or_(
                    (_LedgerEntryRow.direction == "inbound") & (_LedgerEntryRow.destination_native_id == native_id),
                    (_LedgerEntryRow.direction == "outbound") & (_LedgerEntryRow.origin_native_id == native_id),
                )
            )
        else:
            statement = (
                select(_LedgerEntryRow)
                .join(_ChannelMessageRow, _ChannelMessageRow.entry_id == _LedgerEntryRow.entry_id)
                .where(
                    _ChannelMessageRow.channel == channel_tag,
                    _ChannelMessageRow.native_message_id == native_id,
                )
            )
        if direction is not None:
            statement = statement.where(_LedgerEntryRow.direction == direction)
        if customer_id is not None:
            statement = statement.where(_LedgerEntryRow.customer_id == customer_id)
        with self._session() as session:
            row = session.execute(statement.order_by(_LedgerEntryRow.entry_id).limit(1)).scalar_one_or_none()
            if row is None:
                return None
            return _counterpart(_entry_from_row(row), channel_tag)


def create_message_ledger(*, backend: str, database_url: str) -> MessageLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyMessageLedger(database_url)
    return InMemoryMessageLedger()
