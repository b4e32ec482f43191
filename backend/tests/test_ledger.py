from __future__ import annotations

import threading

import pytest

from chat_relay.ledger import (
    InMemoryMessageLedger,
    LedgerConflictError,
    LedgerEntryNotFoundError,
    SqlAlchemyMessageLedger,
    create_message_ledger,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def ledger(request, tmp_path):
    if request.param == "sqlite":
        return SqlAlchemyMessageLedger(f"sqlite:///{tmp_path / 'ledger.db'}")
    return InMemoryMessageLedger()


def test_record_origin_creates_pending_entry(ledger) -> None:
    entry = ledger.record_origin(1, "inbound", "M1", channel="waha")

    assert entry.pending is True
    assert entry.customer_id == 1
    assert entry.channel_native_id == "M1"
    assert entry.team_native_id is None
    record = ledger.get_channel_record(entry.entry_id)
    assert record is not None
    assert record.channel == "waha"
    assert record.native_message_id == "M1"


def test_record_origin_rejects_duplicate_origin(ledger) -> None:
    ledger.record_origin(1, "inbound", "M1", channel="waha")

    with pytest.raises(LedgerConflictError):
        ledger.record_origin(1, "inbound", "M1", channel="waha")

    other_direction = ledger.record_origin(1, "outbound", "M1", channel="waha")
    other_customer = ledger.record_origin(2, "inbound", "M1", channel="waha")
    assert other_direction.entry_id != other_customer.entry_id


def test_attach_destination_is_first_write_wins(ledger) -> None:
    entry = ledger.record_origin(1, "inbound", "M1", channel="waha")

    assert ledger.attach_destination(entry.entry_id, "501") is True
    assert ledger.attach_destination(entry.entry_id, "502") is False

    stored = ledger.get_entry(entry.entry_id)
    assert stored is not None
    assert stored.destination_native_id == "501"
    assert stored.pending is False


def test_attach_destination_for_unknown_entry_raises(ledger) -> None:
    with pytest.raises(LedgerEntryNotFoundError):
        ledger.attach_destination(999, "501")


def test_outbound_entry_gets_channel_record_on_completion(ledger) -> None:
    entry = ledger.record_origin(1, "outbound", "501", channel="cloud")
    assert ledger.get_channel_record(entry.entry_id) is None

    ledger.attach_destination(entry.entry_id, "wamid.OUT")

    record = ledger.get_channel_record(entry.entry_id)
    assert record is not None
    assert record.native_message_id == "wamid.OUT"
    assert record.channel == "cloud"


def test_resolve_counterpart_in_both_directions(ledger) -> None:
    inbound = ledger.record_origin(1, "inbound", "M1", channel="waha")
    ledger.attach_destination(inbound.entry_id, "501")
    outbound = ledger.record_origin(1, "outbound", "502", channel="waha")
    ledger.attach_destination(outbound.entry_id, "M2")

    assert ledger.resolve_counterpart("M1", "waha") == "501"
    assert ledger.resolve_counterpart("501", "team") == "M1"
    assert ledger.resolve_counterpart("M2", "waha") == "502"
    assert ledger.resolve_counterpart("502", "team") == "M2"
    assert ledger.resolve_counterpart("M1", "waha", "outbound") is None
    assert ledger.resolve_counterpart("M1", "waha", customer_id=2) is None
    assert ledger.resolve_counterpart("M1", "cloud") is None
    assert ledger.resolve_counterpart("unknown", "team") is None


def test_resolve_counterpart_ignores_pending_entries(ledger) -> None:
    ledger.record_origin(1, "inbound", "M1", channel="waha")

    assert ledger.resolve_counterpart("M1", "waha") is None


def test_discard_pending_only_removes_incomplete_entries(ledger) -> None:
    pending = ledger.record_origin(1, "inbound", "M1", channel="waha")
    completed = ledger.record_origin(1, "inbound", "M2", channel="waha")
    ledger.attach_destination(completed.entry_id, "501")

    assert ledger.discard_pending(pending.entry_id) is True
    assert ledger.discard_pending(completed.entry_id) is False
    assert ledger.get_entry(pending.entry_id) is None
    assert ledger.get_channel_record(pending.entry_id) is None
    assert ledger.get_entry(completed.entry_id) is not None

    # a discarded origin may be recorded again
    again = ledger.record_origin(1, "inbound", "M1", channel="waha")
    assert again.pending is True


def test_list_entries_returns_most_recent_in_order(ledger) -> None:
    for index in range(5):
        ledger.record_origin(1, "inbound", f"M{index}", channel="waha")
    ledger.record_origin(2, "inbound", "other", channel="waha")

    entries = ledger.list_entries(1, limit=3)

    assert [entry.origin_native_id for entry in entries] == ["M2", "M3", "M4"]


def test_reset_clears_everything(ledger) -> None:
    entry = ledger.record_origin(1, "inbound", "M1", channel="waha")
    ledger.reset()

    assert ledger.get_entry(entry.entry_id) is None
    assert ledger.list_entries(1) == []


def test_concurrent_record_origin_admits_one_writer() -> None:
    ledger = InMemoryMessageLedger()
    barrier = threading.Barrier(6)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        try:
            ledger.record_origin(1, "inbound", "M1", channel="cloud")
            outcome = "created"
        except LedgerConflictError:
            outcome = "conflict"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("created") == 1
    assert outcomes.count("conflict") == 5


def test_create_message_ledger_selects_backend(tmp_path) -> None:
    assert isinstance(create_message_ledger(backend="inmemory", database_url=""), InMemoryMessageLedger)
    assert isinstance(
        create_message_ledger(backend="postgres", database_url=f"sqlite:///{tmp_path / 'ledger.db'}"),
        SqlAlchemyMessageLedger,
    )


def test_listing_runs_safely_beside_new_entries() -> None:
    ledger = InMemoryMessageLedger()
    barrier = threading.Barrier(2)
    errors: list[BaseException] = []

    def reader() -> None:
        barrier.wait()
        try:
            for _ in range(2000):
                ledger.list_entries(1, limit=5)
        except BaseException as exc:
            errors.append(exc)

    def writer() -> None:
        barrier.wait()
        for number in range(2000):
            ledger.record_origin(1, "inbound", f"M{number}", channel="cloud")

    threads = [threading.Thread(target=reader), threading.Thread(target=writer)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert [entry.origin_native_id for entry in ledger.list_entries(1, limit=2)] == ["M1998", "M1999"]
