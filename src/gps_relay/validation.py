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
"""Business-rule validation of raw GPS records."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from .config import Settings
from .logging_service import TELEMETRY, RelayLogger
from .models import (
    DestinationVariant,
    InvalidRecord,
    RawTelemetryRecord,
    RecordValidation,
    TransformedRecord,
    ValidationReport,
    Violation,
)
from .utils import Clock, digits_only, is_numeric, parse_timestamp, to_float, utc_now

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("imei", "lat", "lng", "dt_server")
IMEI_MIN_DIGITS = 14
IMEI_MAX_DIGITS = 17
SUSPICIOUS_MAGNITUDE = 0.001


def success_rate(valid: int, total: int) -> float:
    """Percentage of `valid` over `total`, two decimals, 0 for an empty batch."""
    if total == 0:
        return 0
    return round(valid / total * 100, 2)


class RecordValidator:
    """Validates GPS records against structural, geographic and temporal rules.

    Every rule is evaluated; a record is valid only when no rule is violated.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Clock = utc_now,
        relay_logger: RelayLogger | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.relay_logger = relay_logger or RelayLogger()

    def validate(self, records: list[Any]) -> ValidationReport:
        """Partition `records` into valid and invalid ones."""
        report = ValidationReport(total=len(records))

        for index, record in enumerate(records):
            outcome = self.validate_record(record, index)
            if outcome.valid:
                report.valid.append(record)
            else:
                report.invalid.append(
                    InvalidRecord(index=index, record=record, violations=outcome.violations),
                )
                report.errors.extend(outcome.violations)

        report.valid_count = len(report.valid)
        report.invalid_count = len(report.invalid)
        report.success_rate = success_rate(report.valid_count, report.total)

        self.relay_logger.info(
            TELEMETRY,
            "GPS validation completed",
            total=report.total,
            valid=report.valid_count,
            invalid=report.invalid_count,
            success_rate=report.success_rate,
        )
        return report

    def validate_record(self, record: Any, index: int = 0) -> RecordValidation:
        if not isinstance(record, dict):
            return RecordValidation(
                valid=False,
                violations=[
                    Violation(
                        kind="INVALID_TYPE",
                        value=type(record).__name__,
                        message=f"GPS object at index {index} is not an object",
                    ),
                ],
            )

        violations = [
            *self._check_structure(record),
            *self._check_coordinates(record),
            *self._check_capture_time(record),
            *self._check_imei(record),
            *self._check_optional_fields(record),
        ]
        return RecordValidation(valid=not violations, violations=violations)

    def _check_structure(self, record: RawTelemetryRecord) -> list[Violation]:
        violations = []
        for field in REQUIRED_FIELDS:
            if field not in record:
                violations.append(
                    Violation(
                        kind="MISSING_FIELD",
                        field=field,
                        message=f"Required field '{field}' is missing",
                    ),
                )
            elif record[field] is None or record[field] == "":
                violations.append(
                    Violation(
                        kind="EMPTY_FIELD",
                        field=field,
                        message=f"Required field '{field}' is empty",
                    ),
                )
        return violations

    def in_bounds(self, lat: float, lng: float) -> bool:
        s = self.settings
        return (
            s.bounds_lat_min <= lat <= s.bounds_lat_max
            and s.bounds_lng_min <= lng <= s.bounds_lng_max
        )

    def _check_coordinates(self, record: RawTelemetryRecord) -> list[Violation]:
        raw_lat, raw_lng = record.get("lat"), record.get("lng")
        # Absence is already reported by the structure check.
        if raw_lat is None or raw_lng is None:
            return []

        violations = []
        if not is_numeric(raw_lat):
            violations.append(
                Violation(
                    kind="INVALID_LATITUDE",
                    field="lat",
                    value=raw_lat,
                    message=f"Latitude is not numeric: {raw_lat!r}",
                ),
            )
        if not is_numeric(raw_lng):
            violations.append(
                Violation(
                    kind="INVALID_LONGITUDE",
                    field="lng",
                    value=raw_lng,
                    message=f"Longitude is not numeric: {raw_lng!r}",
                ),
            )
        if violations:
            return violations

        lat, lng = to_float(raw_lat), to_float(raw_lng)
        if not -90 <= lat <= 90:
            violations.append(
                Violation(
                    kind="INVALID_LATITUDE",
                    field="lat",
                    value=lat,
                    message=f"Invalid latitude: {lat} (must be between -90 and 90)",
                ),
            )
        if not -180 <= lng <= 180:
            violations.append(
                Violation(
                    kind="INVALID_LONGITUDE",
                    field="lng",
                    value=lng,
                    message=f"Invalid longitude: {lng} (must be between -180 and 180)",
                ),
            )
        if abs(lat) < SUSPICIOUS_MAGNITUDE and abs(lng) < SUSPICIOUS_MAGNITUDE:
            violations.append(
                Violation(
                    kind="SUSPICIOUS_COORDINATES",
                    field="lat,lng",
                    value=f"({lat}, {lng})",
                    message="Suspicious coordinates: probably a null fix",
                ),
            )
        if self.settings.enable_bounds_check and not self.in_bounds(lat, lng):
            violations.append(
                Violation(
                    kind="COORDINATES_OUT_OF_BOUNDS",
                    field="lat,lng",
                    value=f"({lat}, {lng})",
                    message="Coordinates outside the configured territory",
                ),
            )
        return violations

    def _check_capture_time(self, record: RawTelemetryRecord) -> list[Violation]:
        value = record.get("dt_server")
        if value is None or value == "":
            return []

        latest = self.clock() + timedelta(seconds=self.settings.max_future_seconds)

        if is_numeric(value):
            epoch = int(to_float(value))
            violations = []
            if epoch < self.settings.min_epoch:
                violations.append(
                    Violation(
                        kind="TIMESTAMP_TOO_OLD",
                        field="dt_server",
                        value=epoch,
                        message=f"Timestamp too old: {epoch}",
                    ),
                )
            if epoch > latest.timestamp():
                violations.append(
                    Violation(
                        kind="TIMESTAMP_IN_FUTURE",
                        field="dt_server",
                        value=epoch,
                        message=f"Timestamp in the future: {epoch}",
                    ),
                )
            return violations

        try:
            parsed = parse_timestamp(value)
        except ValueError:
            return [
                Violation(
                    kind="INVALID_DATETIME_FORMAT",
                    field="dt_server",
                    value=value,
                    message=f"Invalid date-time format: {value!r}",
                ),
            ]

        earliest = datetime.fromtimestamp(self.settings.min_epoch, tz=timezone.utc)
        violations = []
        if parsed < earliest:
            violations.append(
                Violation(
                    kind="DATE_TOO_OLD",
                    field="dt_server",
                    value=value,
                    message=f"Date too old: {value}",
                ),
            )
        if parsed > latest:
            violations.append(
                Violation(
                    kind="DATE_IN_FUTURE",
                    field="dt_server",
                    value=value,
                    message=f"Date in the future: {value}",
                ),
            )
        return violations

    def _check_imei(self, record: RawTelemetryRecord) -> list[Violation]:
        if record.get("imei") is None:
            return []

        imei = str(record["imei"])
        digits = digits_only(imei)
        violations = []
        if not IMEI_MIN_DIGITS <= len(digits) <= IMEI_MAX_DIGITS:
            violations.append(
                Violation(
                    kind="INVALID_IMEI_LENGTH",
                    field="imei",
                    value=imei,
                    message=(
                        f"IMEI has invalid length: {imei} "
                        f"(must have {IMEI_MIN_DIGITS}-{IMEI_MAX_DIGITS} digits)"
                    ),
                ),
            )
        if digits and set(digits) == {"0"}:
            violations.append(
                Violation(
                    kind="IMEI_ALL_ZEROS",
                    field="imei",
                    value=imei,
                    message="Invalid IMEI: every digit is zero",
                ),
            )
        return violations

    def _check_optional_fields(self, record: RawTelemetryRecord) -> list[Violation]:
        violations = []

        if record.get("speed") is not None:
            speed = to_float(record["speed"])
            if not 0 <= speed <= self.settings.max_speed_kmh:
                violations.append(
                    Violation(
                        kind="INVALID_SPEED",
                        field="speed",
                        value=speed,
                        message=(
                            f"Invalid speed: {speed} (must be between 0 and "
                            f"{self.settings.max_speed_kmh:g} km/h)"
                        ),
                    ),
                )

        if record.get("course") is not None:
            course = to_float(record["course"])
            if not 0 <= course < 360:
                violations.append(
                    Violation(
                        kind="INVALID_COURSE",
                        field="course",
                        value=course,
                        message=f"Invalid course: {course} (must be between 0 and 359)",
                    ),
                )

        if record.get("battery") is not None:
            battery = int(to_float(record["battery"]))
            if not 0 <= battery <= 100:
                violations.append(
                    Violation(
                        kind="INVALID_BATTERY",
                        field="battery",
                        value=battery,
                        message=f"Invalid battery level: {battery} (must be between 0 and 100)",
                    ),
                )

        return violations

    def validate_transformed(
        self, records: list[TransformedRecord], variant: DestinationVariant,
    ) -> list[Violation]:
        """Check that mapped payloads carry every field the destination needs."""
        violations = []
        for index, record in enumerate(records):
            payload = record.to_payload()
            for field in ("imei", "latitud", "longitud", "fechaHora"):
                if payload.get(field) in (None, ""):
                    violations.append(
                        Violation(
                            kind="MISSING_TRANSFORMED_FIELD",
                            field=field,
                            value=index,
                            message=f"Field '{field}' missing from record {index}",
                        ),
                    )
            if variant is DestinationVariant.MUNICIPAL and not payload.get("idMunicipalidad"):
                violations.append(
                    Violation(
                        kind="MISSING_MUNICIPALITY_ID",
                        field="idMunicipalidad",
                        value=index,
                        message=f"'idMunicipalidad' is required for {variant.value}",
                    ),
                )
            if variant is DestinationVariant.POLICE:
                if not payload.get("idTransmision"):
                    violations.append(
                        Violation(
                            kind="MISSING_TRANSMISSION_ID",
                            field="idTransmision",
                            value=index,
                            message=f"'idTransmision' is required for {variant.value}",
                        ),
                    )
                if not payload.get("codigoComisaria"):
                    violations.append(
                        Violation(
                            kind="MISSING_STATION_CODE",
                            field="codigoComisaria",
                            value=index,
                            message=f"'codigoComisaria' is required for {variant.value}",
                        ),
                    )
        if violations:
            logger.warning(
                "%d problems found in %d transformed %s records",
                len(violations),
                len(records),
                variant.value,
            )
        return violations
