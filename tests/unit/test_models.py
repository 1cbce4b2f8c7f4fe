from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from gps_relay.errors import InvalidTransitionError
from gps_relay.models import (
    DeliveryReport,
    DeliveryResult,
    DestinationVariant,
    EndpointHealth,
    ErrorKind,
    SourceEntity,
    TransformedRecord,
    TransmissionRecord,
    TransmissionStatus,
)

pytestmark = pytest.mark.unit

NOW = datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)


def _base_fields(**overrides):
    fields = {
        "timestamp": "15/01/2025 09:30:00",
        "device_id": "123456789012345",
        "latitude": -12.0464,
        "longitude": -77.0428,
        "plate": "EGN-802",
        "area_code": "150101",
    }
    fields.update(overrides)
    return fields


def test_police_entity_requires_station_code():
    with pytest.raises(ValidationError, match="station_code is required"):
        SourceEntity(
            name="Comisaria", token="t", area_code="080101",
            variant=DestinationVariant.POLICE,
        )


def test_municipal_entity_rejects_station_code():
    with pytest.raises(ValidationError, match="not allowed"):
        SourceEntity(
            name="Municipalidad", token="t", area_code="150101",
            variant=DestinationVariant.MUNICIPAL, station_code="C1",
        )


@pytest.mark.parametrize("area_code", ["15010", "1501011", "15O101"])
def test_entity_area_code_must_be_six_digits(area_code):
    with pytest.raises(ValidationError):
        SourceEntity(
            name="x", token="t", area_code=area_code,
            variant=DestinationVariant.MUNICIPAL,
        )


def test_entity_token_max_length():
    with pytest.raises(ValidationError):
        SourceEntity(
            name="x", token="t" * 33, area_code="150101",
            variant=DestinationVariant.MUNICIPAL,
        )


def test_entity_gets_generated_id_and_is_frozen():
    entity = SourceEntity(
        name="x", token="t", area_code="150101", variant=DestinationVariant.MUNICIPAL,
    )
    assert len(entity.id) == 36
    assert entity.active is True
    with pytest.raises(ValidationError):
        entity.name = "y"


def test_municipal_payload_uses_wire_names():
    record = TransformedRecord(
        variant=DestinationVariant.MUNICIPAL, municipality_id="m-1", **_base_fields(),
    )
    payload = record.to_payload()

    assert payload["idMunicipalidad"] == "m-1"
    assert payload["imei"] == "123456789012345"
    assert payload["latitud"] == -12.0464
    assert payload["fechaHora"] == "15/01/2025 09:30:00"
    assert payload["ubigeo"] == "150101"
    assert "idTransmision" not in payload
    assert "codigoComisaria" not in payload
    assert "variant" not in payload


def test_police_payload_has_transmission_id_and_station_code():
    record = TransformedRecord(
        variant=DestinationVariant.POLICE,
        transmission_id="tx-1",
        station_code="C12345",
        **_base_fields(),
    )
    payload = record.to_payload()

    assert payload["idTransmision"] == "tx-1"
    assert payload["codigoComisaria"] == "C12345"
    assert "idMunicipalidad" not in payload


def test_transformed_record_variant_fields_are_exclusive():
    with pytest.raises(ValidationError):
        TransformedRecord(
            variant=DestinationVariant.MUNICIPAL,
            municipality_id="m-1",
            transmission_id="tx-1",
            **_base_fields(),
        )
    with pytest.raises(ValidationError):
        TransformedRecord(
            variant=DestinationVariant.POLICE,
            transmission_id="tx-1",
            station_code="C12345",
            municipality_id="m-1",
            **_base_fields(),
        )
    with pytest.raises(ValidationError):
        TransformedRecord(variant=DestinationVariant.POLICE, transmission_id="tx-1", **_base_fields())


@pytest.mark.parametrize("heading", [-1, 360])
def test_transformed_record_heading_range(heading):
    with pytest.raises(ValidationError):
        TransformedRecord(
            variant=DestinationVariant.MUNICIPAL,
            municipality_id="m-1",
            **_base_fields(heading=heading),
        )


def test_transmission_mark_sent_from_pending():
    record = TransmissionRecord(entity_id="e-1", payload=[{"imei": "1"}])
    assert record.status is TransmissionStatus.PENDING

    record.mark_sent(200, '{"ok": true}', NOW)

    assert record.status is TransmissionStatus.SENT
    assert record.response_code == 200
    assert record.sent_at == NOW


def test_transmission_terminal_states_are_final():
    record = TransmissionRecord(entity_id="e-1", payload=[])
    record.mark_failed("boom", NOW, response_code=500)

    assert record.status is TransmissionStatus.FAILED
    assert record.error_message == "boom"
    with pytest.raises(InvalidTransitionError):
        record.mark_sent(200, "", NOW)
    with pytest.raises(InvalidTransitionError):
        record.mark_failed("again", NOW)


def test_transmission_retry_count():
    record = TransmissionRecord(entity_id="e-1", payload=[])
    record.increment_retry_count()
    record.increment_retry_count()
    assert record.retry_count == 2
    with pytest.raises(ValidationError):
        TransmissionRecord(entity_id="e-1", payload=[], retry_count=-1)


def test_delivery_report_aggregates_results():
    report = DeliveryReport(total=3)
    report.add(DeliveryResult(index=0, success=True, status_code=200))
    report.add(
        DeliveryResult(
            index=1, success=False, status_code=400,
            error_kind=ErrorKind.CLIENT_ERROR, message="Invalid data sent",
        ),
    )
    report.add(DeliveryResult(index=2, success=False, error_kind=ErrorKind.CONNECTION_ERROR))

    assert report.success is False
    assert report.successful_count == 1
    assert report.failed_count == 2
    assert report.first_error == "Invalid data sent"


def test_endpoint_health():
    assert EndpointHealth(accessible=True, status_code=405).healthy
    assert not EndpointHealth(accessible=True, status_code=503).healthy
    assert not EndpointHealth(accessible=False, error="refused").healthy
