from __future__ import annotations

import threading

import pytest

from chat_relay.identities import (
    CustomerNotFoundError,
    InMemoryIdentityRepository,
    SqlAlchemyIdentityRepository,
    create_identity_repository,
    normalize_address,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def identities(request, tmp_path):
    if request.param == "sqlite":
        return SqlAlchemyIdentityRepository(f"sqlite:///{tmp_path / 'relay.db'}")
    return InMemoryIdentityRepository()


def test_normalize_address_keeps_digits() -> None:
    assert normalize_address("+1 (555) 123-4567") == "15551234567"
    assert normalize_address(" support-desk ") == "support-desk"


def test_get_or_create_is_stable_per_channel_and_address(identities) -> None:
    first = identities.get_or_create(channel="waha", native_address="+1 555 123 4567")
    again = identities.get_or_create(channel="waha", native_address="15551234567")
    other_channel = identities.get_or_create(channel="cloud", native_address="15551234567")

    assert first.customer_id == again.customer_id
    assert first.native_address == "15551234567"
    assert first.thread_ref is None
    assert first.banned is False
    assert other_channel.customer_id != first.customer_id
    assert identities.get(first.customer_id).native_address == "15551234567"
    assert identities.get(999) is None


def test_thread_ref_lookup_and_conditional_clear(identities) -> None:
    identity = identities.get_or_create(channel="waha", native_address="15551234567")

    identities.set_thread_ref(identity.customer_id, "100")

    assert identities.find_by_thread_ref("100").customer_id == identity.customer_id
    assert identities.clear_thread_ref(identity.customer_id, expected_ref="101") is False
    assert identities.get(identity.customer_id).thread_ref == "100"
    assert identities.clear_thread_ref(identity.customer_id, expected_ref="100") is True
    assert identities.clear_thread_ref(identity.customer_id, expected_ref="100") is False
    assert identities.get(identity.customer_id).thread_ref is None
    assert identities.find_by_thread_ref("100") is None


def test_ban_and_unban(identities) -> None:
    identity = identities.get_or_create(channel="cloud", native_address="15551234567")

    banned = identities.set_banned(identity.customer_id, True)
    assert banned.banned is True
    assert banned.banned_at is not None

    unbanned = identities.set_banned(identity.customer_id, False)
    assert unbanned.banned is False
    assert unbanned.banned_at is None


def test_updates_to_unknown_customers_raise(identities) -> None:
    with pytest.raises(CustomerNotFoundError):
        identities.set_banned(42, True)
    with pytest.raises(CustomerNotFoundError):
        identities.set_thread_ref(42, "100")


def test_create_identity_repository_requires_database_url_for_postgres() -> None:
    assert isinstance(create_identity_repository(backend="inmemory", database_url=""), InMemoryIdentityRepository)
    with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
        create_identity_repository(backend="postgres", database_url="")


def test_thread_lookups_run_safely_beside_new_customers() -> None:
    identities = InMemoryIdentityRepository()
    seed = identities.get_or_create(channel="waha", native_address="15550000000")
    identities.set_thread_ref(seed.customer_id, "100")
    barrier = threading.Barrier(4)
    errors: list[BaseException] = []
    errors_lock = threading.Lock()

    def reader() -> None:
        barrier.wait()
        try:
            for _ in range(2000):
                assert identities.find_by_thread_ref("100").customer_id == seed.customer_id
        except BaseException as exc:
            with errors_lock:
                errors.append(exc)

    def writer(offset: int) -> None:
        barrier.wait()
        for number in range(2000):
            identities.get_or_create(channel="waha", native_address=f"1555{offset}{number:06d}")

    threads = [threading.Thread(target=reader), threading.Thread(target=reader)]
    threads += [threading.Thread(target=writer, args=(offset,)) for offset in (1, 2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert identities.get(4001) is not None
