from datetime import datetime, timezone

import pytest

from gps_relay.config import Settings
from gps_relay.models import DestinationVariant, SourceEntity

FIXED_NOW = datetime(2025, 1, 15, 15, 0, 0, tzinfo=timezone.utc)
MUNICIPAL_ID = "11111111-1111-1111-1111-111111111111"
POLICE_ID = "22222222-2222-2222-2222-222222222222"


@pytest.fixture
def settings() -> Settings:
    """Settings with fast retries so tests never wait on real backoff."""
    return Settings(
        source_base_url="https://gps.test/api/api.php",
        municipal_endpoint="https://mininter.test/serenazgo",
        police_endpoint="https://mininter.test/policial",
        source_retry_delay=0,
        destination_retry_delay=0,
        job_backoff=[0, 0, 0, 0, 0],
    )


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def municipal_entity() -> SourceEntity:
    return SourceEntity(
        id=MUNICIPAL_ID,
        name="Municipalidad de Lima",
        token="a" * 32,
        area_code="150101",
        variant=DestinationVariant.MUNICIPAL,
    )


@pytest.fixture
def police_entity() -> SourceEntity:
    return SourceEntity(
        id=POLICE_ID,
        name="Comisaria Cusco",
        token="b" * 32,
        area_code="080101",
        variant=DestinationVariant.POLICE,
        station_code="C12345",
    )


@pytest.fixture
def raw_record() -> dict:
    """A well-formed upstream GPS object."""
    return {
        "imei": "123456789012345",
        "name": "C-14, EGN-802",
        "lat": "-12.0464",
        "lng": "-77.0428",
        "dt_server": "2025-01-15 14:30:00",
        "speed": "45.7",
        "angle": "90",
        "altitude": "154",
        "odometer": "12.5",
        "engine_hours": "3",
        "ignition": "1",
        "loc_valid": "1",
    }
