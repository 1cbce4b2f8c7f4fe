from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from gps_relay.models import TransmissionRecord, TransmissionStatus
from gps_relay.stores.memory import InMemoryTransmissionStore
from gps_relay.stores.postgres import PostgresTransmissionStore, render_sql

pytestmark = pytest.mark.unit

NOW = datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)


def _record(**overrides) -> TransmissionRecord:
    fields = {"entity_id": "e-1", "payload": [{"imei": "123456789012345"}], "created_at": NOW}
    fields.update(overrides)
    return TransmissionRecord(**fields)


class TestInMemoryTransmissionStore:
    def test_commit_makes_rows_visible(self):
        store = InMemoryTransmissionStore()
        record = _record()

        with store.unit_of_work() as conn:
            store.create(record, conn)
            assert store.get(record.id) is None
            record.mark_sent(200, "ok", NOW)
            store.update(record, conn)

        stored = store.get(record.id)
        assert stored.status is TransmissionStatus.SENT
        assert stored.response_code == 200

    def test_exception_discards_staged_rows(self):
        store = InMemoryTransmissionStore()
        record = _record()

        with pytest.raises(RuntimeError):
            with store.unit_of_work() as conn:
                store.create(record, conn)
                raise RuntimeError("boom")

        assert store.get(record.id) is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_async_unit_of_work_commits_and_rolls_back(self):
        store = InMemoryTransmissionStore()
        kept, dropped = _record(), _record()

        async with store.async_unit_of_work() as conn:
            store.create(kept, conn)
        with pytest.raises(RuntimeError):
            async with store.async_unit_of_work() as conn:
                store.create(dropped, conn)
                raise RuntimeError("boom")

        assert store.get(kept.id) is not None
        assert store.get(dropped.id) is None

    def test_create_rejects_duplicates_and_update_requires_row(self):
        store = InMemoryTransmissionStore()
        record = _record()
        with store.unit_of_work() as conn:
            store.create(record, conn)

        with store.unit_of_work() as conn:
            with pytest.raises(ValueError):
                store.create(record, conn)
            with pytest.raises(LookupError):
                store.update(_record(), conn)

    def test_list_for_entity_filters_and_orders_newest_first(self):
        store = InMemoryTransmissionStore()
        older = _record(created_at=NOW - timedelta(minutes=5))
        newer = _record()
        failed = _record(created_at=NOW + timedelta(minutes=5))
        failed.mark_failed("boom", NOW)
        other = _record(entity_id="e-2")
        with store.unit_of_work() as conn:
            for record in (older, newer, failed, other):
                store.create(record, conn)

        assert [r.id for r in store.list_for_entity("e-1")] == [failed.id, newer.id, older.id]
        assert [r.id for r in store.list_for_entity("e-1", TransmissionStatus.FAILED)] == [failed.id]

    def test_returned_rows_are_copies(self):
        store = InMemoryTransmissionStore()
        record = _record()
        with store.unit_of_work() as conn:
            store.create(record, conn)

        copy = store.get(record.id)
        copy.mark_sent(200, "ok", NOW)
        assert store.get(record.id).status is TransmissionStatus.PENDING


@pytest.fixture
def mock_psycopg():
    """Mocks psycopg so the store can be exercised without a database."""
    with patch("gps_relay.stores.postgres.psycopg") as mock_psycopg_lib:
        mock_conn = MagicMock()
        mock_psycopg_lib.connect.return_value.__enter__.return_value = mock_conn
        yield mock_psycopg_lib, mock_conn


def test_render_sql_uses_schema():
    ddl = render_sql("create_tables.sql", schema='"relay"')
    assert 'CREATE SCHEMA IF NOT EXISTS "relay";' in ddl
    assert '"relay".transmissions' in ddl
    assert "JSONB" in ddl


def test_postgres_unit_of_work_opens_transaction(mock_psycopg):
    _, mock_conn = mock_psycopg
    store = PostgresTransmissionStore(dsn="test_dsn")

    with store.unit_of_work() as conn:
        assert conn is mock_conn

    mock_conn.transaction.assert_called_once()


def test_postgres_create_wraps_payload_in_jsonb(mock_psycopg):
    _, mock_conn = mock_psycopg
    mock_cursor = MagicMock()
    mock_conn.cursor.return_value.__enter__.return_value = mock_cursor
    record = _record()

    PostgresTransmissionStore(dsn="test_dsn", schema="relay").create(record, mock_conn)

    query, params = mock_cursor.execute.call_args[0]
    assert "INSERT INTO" in str(query)
    assert "relay" in str(query)
    assert params[0] == record.id
    assert params[2].obj == record.payload
    assert params[3] == "PENDING"


def test_postgres_update_requires_existing_row(mock_psycopg):
    _, mock_conn = mock_psycopg
    mock_cursor = MagicMock()
    mock_cursor.rowcount = 0
    mock_conn.cursor.return_value.__enter__.return_value = mock_cursor

    with pytest.raises(LookupError):
        PostgresTransmissionStore(dsn="test_dsn").update(_record(), mock_conn)


def test_postgres_get_maps_row(mock_psycopg):
    _, mock_conn = mock_psycopg
    record = _record()
    mock_conn.execute.return_value.fetchone.return_value = {
        **record.model_dump(),
        "status": "PENDING",
    }

    loaded = PostgresTransmissionStore(dsn="test_dsn").get(record.id)

    assert loaded == record


def test_postgres_get_missing(mock_psycopg):
    _, mock_conn = mock_psycopg
    mock_conn.execute.return_value.fetchone.return_value = None
    assert PostgresTransmissionStore(dsn="test_dsn").get("nope") is None
