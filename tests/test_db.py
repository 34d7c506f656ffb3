"""Tests for the sync record store and ledger tables."""

import sqlite3
from decimal import Decimal
from uuid import uuid4

import pytest

from split_sync.models import (
    CounterpartyProviderMapping,
    ProviderConnection,
    Split,
    SyncRecord,
    SyncStatus,
)


def test_transaction_round_trip(db, transaction):
    loaded = db.get_transaction(transaction.id)

    assert loaded == transaction
    assert loaded.amount == Decimal("90.00")
    assert db.get_transaction(uuid4()) is None


def test_splits_with_mappings_keep_order_and_unmapped(db, transaction):
    provider_id = uuid4()
    mapped, unmapped = uuid4(), uuid4()
    db.save_mapping(
        CounterpartyProviderMapping(
            counterparty_id=mapped, provider_id=provider_id, external_user_id="111"
        )
    )
    first = db.save_split(
        Split(
            transaction_id=transaction.id, counterparty_id=mapped, amount=Decimal("30")
        )
    )
    second = db.save_split(
        Split(
            transaction_id=transaction.id,
            counterparty_id=unmapped,
            amount=Decimal("60"),
        )
    )

    rows = db.list_splits_with_mappings(transaction.id)

    assert [split.id for split, _ in rows] == [first.id, second.id]
    assert rows[0][1].provider_id == provider_id
    assert rows[0][1].external_user_id == "111"
    assert rows[1][1] is None


def test_save_mapping_replaces_existing(db):
    counterparty_id = uuid4()
    first = db.save_mapping(
        CounterpartyProviderMapping(
            counterparty_id=counterparty_id, provider_id=uuid4(), external_user_id="1"
        )
    )
    second_provider = uuid4()
    second = db.save_mapping(
        CounterpartyProviderMapping(
            counterparty_id=counterparty_id,
            provider_id=second_provider,
            external_user_id="2",
        )
    )

    assert second.id == first.id
    assert second.provider_id == second_provider
    assert db.get_mapping(counterparty_id).external_user_id == "2"


def test_delete_mapping(db):
    counterparty_id = uuid4()
    db.save_mapping(
        CounterpartyProviderMapping(
            counterparty_id=counterparty_id, provider_id=uuid4(), external_user_id="1"
        )
    )

    assert db.delete_mapping(counterparty_id) == 1

    assert db.get_mapping(counterparty_id) is None
    assert db.delete_mapping(counterparty_id) == 0


def test_provider_connection_upsert(db, make_connection):
    first = make_connection()
    second = make_connection(is_active=False)

    assert second.id == first.id
    assert second.is_active is False
    assert second.credentials != first.credentials


def test_list_provider_connections(db, make_connection, user_id):
    splitwise = make_connection("splitwise")
    splitpro = make_connection("splitpro")
    db.save_provider_connection(
        ProviderConnection(user_id=uuid4(), provider_type="splitwise", credentials="x")
    )

    connections = db.list_provider_connections(user_id)

    assert [c.id for c in connections] == [splitwise.id, splitpro.id]
    assert db.list_provider_connections(uuid4()) == []


def test_update_provider_credentials(db, make_connection):
    connection = make_connection()

    db.update_provider_credentials(connection.id, "new-blob")

    assert db.get_provider_connection(connection.id).credentials == "new-blob"


def test_delete_provider_connection_cascades(db, make_connection):
    connection = make_connection()
    counterparty_id = uuid4()
    db.save_mapping(
        CounterpartyProviderMapping(
            counterparty_id=counterparty_id,
            provider_id=connection.id,
            external_user_id="1",
        )
    )
    record = db.create_sync_record(
        SyncRecord(split_id=uuid4(), provider_id=connection.id)
    )

    assert db.delete_provider_connection(connection.id) == 1

    assert db.get_provider_connection(connection.id) is None
    assert db.get_mapping(counterparty_id) is None
    assert db.get_sync_record(record.id) is None


def test_sync_record_create_and_find(db):
    split_id, provider_id = uuid4(), uuid4()
    record = db.create_sync_record(
        SyncRecord(split_id=split_id, provider_id=provider_id)
    )

    loaded = db.get_sync_record(record.id)
    assert loaded.status == SyncStatus.PENDING
    assert loaded.retry_count == 0
    assert loaded.external_expense_id is None

    assert db.find_sync_record(split_id, provider_id).id == record.id
    assert db.find_sync_record(split_id, uuid4()) is None
    assert [r.id for r in db.find_sync_records_by_split(split_id)] == [record.id]


def test_sync_record_is_unique_per_split_and_provider(db):
    split_id, provider_id = uuid4(), uuid4()
    db.create_sync_record(SyncRecord(split_id=split_id, provider_id=provider_id))

    with pytest.raises(sqlite3.IntegrityError):
        db.create_sync_record(SyncRecord(split_id=split_id, provider_id=provider_id))


def test_update_sync_record_writes_all_fields(db):
    record = db.create_sync_record(SyncRecord(split_id=uuid4(), provider_id=uuid4()))
    created_updated_at = record.updated_at

    record.status = SyncStatus.FAILED
    record.last_error = "boom"
    record.retry_count = 2
    record.external_expense_id = "999"
    db.update_sync_record(record)

    loaded = db.get_sync_record(record.id)
    assert loaded.status == SyncStatus.FAILED
    assert loaded.last_error == "boom"
    assert loaded.retry_count == 2
    assert loaded.external_expense_id == "999"
    assert loaded.updated_at >= created_updated_at


def test_update_missing_sync_record_raises(db):
    with pytest.raises(RuntimeError):
        db.update_sync_record(SyncRecord(split_id=uuid4(), provider_id=uuid4()))


def test_delete_sync_records_for_split(db):
    split_id = uuid4()
    db.create_sync_record(SyncRecord(split_id=split_id, provider_id=uuid4()))
    db.create_sync_record(SyncRecord(split_id=split_id, provider_id=uuid4()))

    assert db.delete_sync_records_for_split(split_id) == 2
    assert db.find_sync_records_by_split(split_id) == []


def test_find_sync_records_by_transaction(db, transaction):
    split = db.save_split(
        Split(
            transaction_id=transaction.id, counterparty_id=uuid4(), amount=Decimal("30")
        )
    )
    record = db.create_sync_record(SyncRecord(split_id=split.id, provider_id=uuid4()))
    db.create_sync_record(SyncRecord(split_id=uuid4(), provider_id=uuid4()))

    records = db.find_sync_records_by_transaction(transaction.id)
    assert [r.id for r in records] == [record.id]


def test_find_failed_sync_records_respects_ceiling(db):
    retryable = db.create_sync_record(
        SyncRecord(
            split_id=uuid4(),
            provider_id=uuid4(),
            status=SyncStatus.FAILED,
            retry_count=4,
        )
    )
    db.create_sync_record(
        SyncRecord(
            split_id=uuid4(),
            provider_id=uuid4(),
            status=SyncStatus.FAILED,
            retry_count=5,
        )
    )
    db.create_sync_record(
        SyncRecord(split_id=uuid4(), provider_id=uuid4(), status=SyncStatus.SYNCED)
    )

    assert [r.id for r in db.find_failed_sync_records(5)] == [retryable.id]
