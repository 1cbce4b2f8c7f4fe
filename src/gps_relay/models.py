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
"""Defines the Pydantic data models for the relay."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import InvalidTransitionError

# One GPS fix exactly as the upstream API returned it.
RawTelemetryRecord = dict[str, Any]


class DestinationVariant(str, Enum):
    """The two destination integration profiles."""

    MUNICIPAL = "SERENAZGO"
    POLICE = "POLICIAL"

    @property
    def requires_station_code(self) -> bool:
        return self is DestinationVariant.POLICE


class SourceEntity(BaseModel):
    """A registered fleet owner whose devices report location.

    Entities are managed outside the relay and are read-only to the pipeline.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    token: str = Field(..., min_length=1, max_length=32)
    area_code: str = Field(..., pattern=r"^\d{6}$")
    variant: DestinationVariant
    station_code: str | None = Field(default=None, max_length=6)
    active: bool = True

    @model_validator(mode="after")
    def check_station_code(self) -> "SourceEntity":
        if self.variant.requires_station_code and not self.station_code:
            raise ValueError(f"station_code is required for {self.variant.value}")
        if not self.variant.requires_station_code and self.station_code:
            raise ValueError(f"station_code is not allowed for {self.variant.value}")
        return self


class Violation(BaseModel):
    """A single broken validation rule."""

    kind: str
    field: str | None = None
    value: Any = None
    message: str


class RecordValidation(BaseModel):
    """Pass/fail classification of one raw record."""

    valid: bool
    violations: list[Violation] = Field(default_factory=list)


class InvalidRecord(BaseModel):
    index: int
    record: Any
    violations: list[Violation]


class ValidationReport(BaseModel):
    """Partition of a fetched batch into valid and invalid records."""

    valid: list[RawTelemetryRecord] = Field(default_factory=list)
    invalid: list[InvalidRecord] = Field(default_factory=list)
    total: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    success_rate: float = 0
    errors: list[Violation] = Field(default_factory=list)


class TransformedRecord(BaseModel):
    """One GPS fix in the destination schema.

    Field aliases are the wire names expected by the ingestion service.
    Exactly one set of variant-specific identifiers is present.
    """

    model_config = ConfigDict(populate_by_name=True)

    variant: DestinationVariant = Field(..., exclude=True)

    alarm: str = Field("", alias="alarma")
    altitude: int = Field(0, alias="altitud")
    heading: int = Field(0, alias="angulo", ge=0, lt=360)
    distance: int = Field(0, alias="distancia")
    timestamp: str = Field(..., alias="fechaHora")
    engine_hours: int = Field(0, alias="horasMotor")
    ignition: bool = False
    device_id: str = Field(..., alias="imei")
    latitude: float = Field(..., alias="latitud")
    longitude: float = Field(..., alias="longitud")
    motion: bool = False
    plate: str = Field(..., alias="placa")
    total_distance: int = Field(0, alias="totalDistancia")
    total_engine_hours: int = Field(0, alias="totalHorasMotor")
    area_code: str = Field(..., alias="ubigeo")
    valid: bool = True
    speed: int = Field(0, alias="velocidad", ge=0)

    municipality_id: str | None = Field(None, alias="idMunicipalidad")
    transmission_id: str | None = Field(None, alias="idTransmision")
    station_code: str | None = Field(None, alias="codigoComisaria")

    @model_validator(mode="after")
    def check_variant_fields(self) -> "TransformedRecord":
        if self.variant is DestinationVariant.MUNICIPAL:
            if not self.municipality_id:
                raise ValueError("municipality_id is required for SERENAZGO")
            if self.transmission_id or self.station_code:
                raise ValueError("police fields are not allowed for SERENAZGO")
        else:
            if not self.transmission_id or not self.station_code:
                raise ValueError(
                    "transmission_id and station_code are required for POLICIAL",
                )
            if self.municipality_id:
                raise ValueError("municipality_id is not allowed for POLICIAL")
        return self

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON body sent to the destination."""
        return self.model_dump(by_alias=True, exclude_none=True)


class TransformationSummary(BaseModel):
    variant_label: str
    original_count: int
    transformed_count: int
    success_rate: float
    timestamp: str


class TransmissionStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class TransmissionRecord(BaseModel):
    """Durable audit row for one delivery attempt of one entity's batch."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    entity_id: str
    payload: list[dict[str, Any]]
    status: TransmissionStatus = TransmissionStatus.PENDING
    response_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    retry_count: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def _ensure_pending(self, target: TransmissionStatus) -> None:
        if self.status is not TransmissionStatus.PENDING:
            raise InvalidTransitionError(
                f"Transmission {self.id} cannot move from "
                f"{self.status.value} to {target.value}",
            )

    def mark_sent(
        self,
        response_code: int | None,
        response_body: str | None,
        sent_at: datetime,
    ) -> None:
        self._ensure_pending(TransmissionStatus.SENT)
        self.status = TransmissionStatus.SENT
        self.response_code = response_code
        self.response_body = response_body
        self.sent_at = sent_at

    def mark_failed(
        self,
        error_message: str,
        sent_at: datetime,
        response_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self._ensure_pending(TransmissionStatus.FAILED)
        self.status = TransmissionStatus.FAILED
        self.error_message = error_message
        self.response_code = response_code
        self.response_body = response_body
        self.sent_at = sent_at

    def increment_retry_count(self) -> None:
        self.retry_count += 1


class ErrorKind(str, Enum):
    CLIENT_ERROR = "CLIENT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class DeliveryResult(BaseModel):
    """Outcome of delivering a single record."""

    index: int
    success: bool
    status_code: int = 0
    response_body: str | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None


class DeliveryReport(BaseModel):
    """Aggregated outcome of delivering one batch, record by record."""

    success: bool = True
    total: int = 0
    successful_count: int = 0
    failed_count: int = 0
    results: list[DeliveryResult] = Field(default_factory=list)
    first_error: str | None = None

    def add(self, result: DeliveryResult) -> None:
        self.results.append(result)
        if result.success:
            self.successful_count += 1
            return
        self.failed_count += 1
        self.success = False
        if self.first_error is None:
            self.first_error = result.message or "Unknown error"


class EndpointHealth(BaseModel):
    accessible: bool
    status_code: int | None = None
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.accessible and (self.status_code or 0) < 500


class SyncState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    FETCHING = "FETCHING"
    VALIDATING = "VALIDATING"
    TRANSFORMING = "TRANSFORMING"
    DELIVERING = "DELIVERING"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class SyncOutcome(BaseModel):
    """What one orchestrator run did for one entity."""

    entity_id: str
    job_id: str
    state: SyncState = SyncState.NOT_STARTED
    reason: str | None = None
    fetched: int = 0
    valid: int = 0
    transformed: int = 0
    transmission_id: str | None = None
