from datetime import datetime, timezone

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from gps_relay.errors import RegistryError
from gps_relay.models import DestinationVariant, SourceEntity, TransmissionRecord, TransmissionStatus
from gps_relay.registry import PostgresEntityRegistry
from gps_relay.stores.postgres import PostgresTransmissionStore

# Mark all tests in this file as integration tests
pytestmark = pytest.mark.integration

SCHEMA = "gps_relay"
NOW = datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)
ENTITY = SourceEntity(
    id="11111111-1111-1111-1111-111111111111",
    name="Municipalidad de Lima",
    token="a" * 32,
    area_code="150101",
    variant=DestinationVariant.MUNICIPAL,
)


@pytest.fixture(scope="module")
def postgres_dsn():
    """Starts a PostgreSQL container once for all tests in this module."""
    try:
        container = PostgresContainer("postgres:15-alpine", driver=None)
        container.start()
    except Exception as e:  # Docker is not available on every machine.
        pytest.skip(f"PostgreSQL container unavailable: {e}")
    try:
        yield container.get_connection_url()
    finally:
        container.stop()


@pytest.fixture(scope="module")
def store(postgres_dsn):
    store = PostgresTransmissionStore(postgres_dsn, SCHEMA)
    store.prepare_schema()
    # Running it twice must be harmless.
    store.prepare_schema()
    with psycopg.connect(postgres_dsn) as conn:
        conn.execute(
            "INSERT INTO gps_relay.source_entities (id, name, token, area_code, variant) "
            "VALUES (%s, %s, %s, %s, %s) ON CONFLICT DO NOTHING",
            (ENTITY.id, ENTITY.name, ENTITY.token, ENTITY.area_code, ENTITY.variant.value),
        )
    return store


def test_create_and_update_in_one_unit_of_work(store):
    record = TransmissionRecord(
        entity_id=ENTITY.id, payload=[{"imei": "123456789012345", "latitud": -12.0464}],
    )

    with store.unit_of_work() as conn:
        store.create(record, conn)
        record.mark_sent(200, '{"ok": true}', NOW)
        store.update(record, conn)

    loaded = store.get(record.id)
    assert loaded.status is TransmissionStatus.SENT
    assert loaded.payload == record.payload
    assert loaded.response_code == 200
    assert loaded.sent_at == NOW


def test_rolled_back_unit_of_work_leaves_nothing(store):
    record = TransmissionRecord(entity_id=ENTITY.id, payload=[])

    with pytest.raises(RuntimeError):
        with store.unit_of_work() as conn:
            store.create(record, conn)
            raise RuntimeError("boom")

    assert store.get(record.id) is None


def test_sent_without_timestamp_is_rejected_by_database(store):
    record = TransmissionRecord(entity_id=ENTITY.id, payload=[])
    record.status = TransmissionStatus.SENT

    with pytest.raises(psycopg.errors.CheckViolation):
        with store.unit_of_work() as conn:
            store.create(record, conn)


def test_list_for_entity_by_status(store):
    failed = TransmissionRecord(entity_id=ENTITY.id, payload=[])
    failed.mark_failed("Invalid data sent", NOW, response_code=400)
    with store.unit_of_work() as conn:
        store.create(failed, conn)

    ids = [r.id for r in store.list_for_entity(ENTITY.id, TransmissionStatus.FAILED)]
    assert failed.id in ids
    assert all(
        r.status is TransmissionStatus.FAILED
        for r in store.list_for_entity(ENTITY.id, TransmissionStatus.FAILED)
    )


def test_entity_registry_reads_table(store, postgres_dsn):
    registry = PostgresEntityRegistry(postgres_dsn, SCHEMA)

    assert registry.get(ENTITY.id) == ENTITY
    assert [e.id for e in registry.list()] == [ENTITY.id]
    with pytest.raises(RegistryError):
        registry.get("00000000-0000-0000-0000-000000000000")
