# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Maps raw GPServer records onto the destination schema.

Parsing is fail-open: a capture time that cannot be read is replaced by the
current local time and a warning is logged, so one bad field never drops a
record that already passed validation.
"""

import math
import re
import uuid
from collections.abc import Callable
from typing import Any

from .config import Settings
from .logging_service import TELEMETRY, RelayLogger
from .models import (
    DestinationVariant,
    RawTelemetryRecord,
    SourceEntity,
    TransformationSummary,
    TransformedRecord,
)
from .utils import (
    Clock,
    digits_only,
    is_numeric,
    parse_timestamp,
    round_half_up,
    round_to_int,
    to_float,
    utc_now,
)
from .validation import success_rate

REQUIRED_FIELDS = ("imei", "lat", "lng", "dt_server")
PLATE_FIELDS = ("plate_number", "placa", "name")
AREA_CODE_PATTERN = re.compile(r"^\d{6}$")
MIN_PLATE_LENGTH = 3
KM_THRESHOLD = 1000


def sanitize_imei(value: Any) -> str:
    return digits_only(value)


def format_speed(value: Any) -> int:
    return max(0, round_to_int(value))


def format_course(value: Any) -> int:
    """Wrap a heading into [0, 360)."""
    course = math.fmod(to_float(value), 360.0)
    if course < 0:
        course += 360.0
    # A tiny negative remainder plus 360 can round up to exactly 360.0.
    return int(course) % 360


def format_total_distance(value: Any) -> int:
    """Odometer in metres. Small readings are assumed to be kilometres."""
    distance = to_float(value)
    if distance < KM_THRESHOLD:
        distance *= 1000
    return round_to_int(distance)


def format_ignition(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if is_numeric(value):
        return to_float(value) == 1
    if isinstance(value, str):
        return value.strip().lower() == "on"
    return False


def format_valid(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if is_numeric(value):
        return to_float(value) == 1
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return True


def format_motion(motion: Any, speed: Any) -> bool:
    if motion is None:
        return to_float(speed) > 1
    if isinstance(motion, str):
        return motion.strip().lower() not in ("", "0", "false", "off")
    return bool(motion)


def format_alarm(value: Any) -> str:
    return str(value) if value else ""


def extract_plate(record: RawTelemetryRecord) -> str:
    """Find a licence plate in the label-like fields of a record."""
    for field in PLATE_FIELDS:
        raw = record.get(field)
        if not raw:
            continue
        plate = str(raw).strip()
        # Labels such as "C-14, EGN-802" carry the plate after the comma.
        if "," in plate:
            plate = plate.split(",")[1].strip()
        plate = re.sub(r"[^A-Z0-9\-]", "", plate.upper())
        if len(plate) >= MIN_PLATE_LENGTH:
            return plate
    return f"IMEI-{sanitize_imei(record.get('imei'))[-6:]}"


def _as_area_code(value: Any) -> str | None:
    if value is None:
        return None
    code = str(value).strip()
    return code if AREA_CODE_PATTERN.match(code) else None


def extract_area_code(record: RawTelemetryRecord, default: str) -> str:
    custom_fields = record.get("custom_fields")
    if isinstance(custom_fields, list):
        for tag in custom_fields:
            if isinstance(tag, dict) and tag.get("name") == "ubigeo":
                code = _as_area_code(tag.get("value"))
                if code:
                    return code

    return _as_area_code(record.get("ubigeo")) or default


class PayloadTransformer:
    """Transforms validated GPS records for one of the two destinations."""

    def __init__(
        self,
        settings: Settings,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        relay_logger: RelayLogger | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.id_factory = id_factory
        self.relay_logger = relay_logger or RelayLogger()

    def transform(
        self, records: list[RawTelemetryRecord], entity: SourceEntity,
    ) -> list[TransformedRecord]:
        """Transform for whichever destination `entity` is registered with."""
        match entity.variant:
            case DestinationVariant.MUNICIPAL:
                return self.transform_for_municipal(records, entity)
            case DestinationVariant.POLICE:
                return self.transform_for_police(records, entity)
        raise ValueError(f"Unknown destination variant: {entity.variant!r}")

    def transform_for_municipal(
        self, records: list[RawTelemetryRecord], entity: SourceEntity,
    ) -> list[TransformedRecord]:
        transformed = [
            TransformedRecord(
                variant=DestinationVariant.MUNICIPAL,
                municipality_id=entity.id,
                **self._base_fields(record),
            )
            for record in records
            if self._has_required_fields(record)
        ]
        self._log_counts(entity, records, transformed)
        return transformed

    def transform_for_police(
        self, records: list[RawTelemetryRecord], entity: SourceEntity,
    ) -> list[TransformedRecord]:
        transformed = [
            TransformedRecord(
                variant=DestinationVariant.POLICE,
                transmission_id=self.id_factory(),
                station_code=entity.station_code,
                **self._base_fields(record),
            )
            for record in records
            if self._has_required_fields(record)
        ]
        self._log_counts(entity, records, transformed)
        return transformed

    def summarize(
        self,
        original: list[Any],
        transformed: list[TransformedRecord],
        variant_label: str,
    ) -> TransformationSummary:
        return TransformationSummary(
            variant_label=variant_label,
            original_count=len(original),
            transformed_count=len(transformed),
            success_rate=success_rate(len(transformed), len(original)),
            timestamp=self.clock().isoformat(),
        )

    @staticmethod
    def _has_required_fields(record: Any) -> bool:
        return isinstance(record, dict) and all(
            record.get(field) is not None for field in REQUIRED_FIELDS
        )

    def _base_fields(self, record: RawTelemetryRecord) -> dict[str, Any]:
        precision = self.settings.coordinate_precision
        engine_hours = round_to_int(record.get("engine_hours", 0))
        return {
            "alarm": format_alarm(record.get("alarm")),
            "altitude": round_to_int(record.get("altitude", 0)),
            "heading": format_course(record.get("angle", record.get("course", 0))),
            "distance": round_to_int(record.get("distance", 0)),
            "timestamp": self.format_timestamp(record["dt_server"]),
            "engine_hours": engine_hours,
            "ignition": format_ignition(record.get("ignition", 0)),
            "device_id": sanitize_imei(record["imei"]),
            "latitude": round_half_up(to_float(record["lat"]), precision),
            "longitude": round_half_up(to_float(record["lng"]), precision),
            "motion": format_motion(record.get("motion"), record.get("speed", 0)),
            "plate": extract_plate(record),
            "total_distance": format_total_distance(record.get("odometer", 0)),
            "total_engine_hours": engine_hours,
            "area_code": extract_area_code(record, self.settings.default_area_code),
            "valid": format_valid(record.get("loc_valid", 1)),
            "speed": format_speed(record.get("speed", 0)),
        }

    def format_timestamp(self, value: Any) -> str:
        """Render a capture time as local civil time in the destination format."""
        tz = self.settings.local_timezone
        try:
            moment = parse_timestamp(value)
        except ValueError as e:
            self.relay_logger.warning(
                TELEMETRY,
                "Could not parse capture time, using current time",
                dt_server=repr(value),
                error=str(e),
            )
            moment = self.clock()
        return moment.astimezone(tz).strftime(self.settings.datetime_format)

    def _log_counts(
        self,
        entity: SourceEntity,
        records: list[Any],
        transformed: list[TransformedRecord],
    ) -> None:
        self.relay_logger.info(
            TELEMETRY,
            f"GPS data transformed for {entity.variant.value}",
            entity_id=entity.id,
            entity_name=entity.name,
            station_code=entity.station_code,
            original_count=len(records),
            transformed_count=len(transformed),
        )
