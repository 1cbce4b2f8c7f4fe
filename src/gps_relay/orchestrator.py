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
"""Runs the fetch, validate, transform and deliver pipeline for one entity."""

import asyncio
import uuid

import httpx

from .config import Settings
from .destination import MininterClient
from .errors import DeliveryError, TransformationError
from .leases import LeaseManager
from .logging_service import ERROR, TELEMETRY, RelayLogger
from .models import (
    DeliveryReport,
    SourceEntity,
    SyncOutcome,
    SyncState,
    TransformedRecord,
    TransmissionRecord,
)
from .source import GpsSourceClient
from .stores.base import BaseTransmissionStore
from .transformer import PayloadTransformer
from .utils import Clock, utc_now
from .validation import RecordValidator


class SyncOrchestrator:
    """Coordinates one synchronization run per entity.

    A run either ends in a returned outcome (SENT or SKIPPED) or raises, in
    which case the caller decides whether to retry the whole run.
    """

    def __init__(
        self,
        source: GpsSourceClient,
        validator: RecordValidator,
        transformer: PayloadTransformer,
        destination: MininterClient,
        store: BaseTransmissionStore,
        relay_logger: RelayLogger | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        leases: LeaseManager | None = None,
    ) -> None:
        self.source = source
        self.validator = validator
        self.transformer = transformer
        self.destination = destination
        self.store = store
        self.relay_logger = relay_logger or RelayLogger()
        self.settings = settings or Settings()
        self.clock = clock
        self.leases = leases or LeaseManager(ttl=self.settings.lease_ttl)

    async def run(
        self, entity: SourceEntity, job_id: str | None = None, attempt: int = 1,
    ) -> SyncOutcome:
        """Synchronize one entity.

        Raises:
            httpx.HTTPError: When the upstream API cannot be read.
            TransformationError: When valid input produced no records.
            DeliveryError: When at least one record was not delivered.
        """
        job_id = job_id or str(uuid.uuid4())
        outcome = SyncOutcome(entity_id=entity.id, job_id=job_id)

        token = self.leases.acquire(entity.id)
        if token is None:
            self.relay_logger.warning(
                TELEMETRY,
                "Sync already running for entity, skipping",
                job_id=job_id,
                entity_id=entity.id,
            )
            return self._skip(outcome, "already_running")

        try:
            return await self._run(entity, outcome, attempt)
        finally:
            self.leases.release(entity.id, token)

    async def _run(
        self, entity: SourceEntity, outcome: SyncOutcome, attempt: int,
    ) -> SyncOutcome:
        job_id = outcome.job_id
        if not entity.active:
            self.relay_logger.info(
                TELEMETRY, "Entity is inactive, skipping", job_id=job_id, entity_id=entity.id,
            )
            return self._skip(outcome, "inactive")

        self.relay_logger.sync_start(entity, job_id)
        try:
            return await self._pipeline(entity, outcome, attempt)
        except (Exception, asyncio.CancelledError) as e:
            self.relay_logger.error(
                ERROR,
                "Sync failed",
                job_id=job_id,
                entity_id=entity.id,
                state=outcome.state.value,
                attempt=attempt,
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome.state = SyncState.FAILED
            raise

    async def _pipeline(
        self, entity: SourceEntity, outcome: SyncOutcome, attempt: int,
    ) -> SyncOutcome:
        job_id = outcome.job_id

        outcome.state = SyncState.FETCHING
        try:
            records = await self.source.fetch(entity.token)
        except httpx.HTTPError as e:
            self.relay_logger.connection_error(
                "GPServer", self.settings.source_base_url, str(e), job_id,
            )
            raise
        outcome.fetched = len(records)
        self.relay_logger.data_received(entity, len(records), job_id)
        if not records:
            self.relay_logger.warning(
                TELEMETRY, "No GPS data received", job_id=job_id, entity_id=entity.id,
            )
            return self._skip(outcome, "no_data")

        outcome.state = SyncState.VALIDATING
        report = self.validator.validate(records)
        outcome.valid = report.valid_count
        if report.success_rate < self.settings.low_success_rate_threshold:
            self.relay_logger.warning(
                TELEMETRY,
                "Low validation success rate",
                job_id=job_id,
                entity_id=entity.id,
                success_rate=report.success_rate,
                invalid=report.invalid_count,
            )
        if not report.valid:
            self.relay_logger.validation_error(entity, report.errors, job_id)
            return self._skip(outcome, "no_valid_records")

        outcome.state = SyncState.TRANSFORMING
        transformed = self.transformer.transform(report.valid, entity)
        summary = self.transformer.summarize(
            report.valid, transformed, entity.variant.value,
        )
        self.relay_logger.transformation(entity, summary, job_id)
        if not transformed:
            self.relay_logger.error(
                TELEMETRY,
                "Transformation produced no records",
                job_id=job_id,
                entity_id=entity.id,
                valid=report.valid_count,
            )
            raise TransformationError(
                f"No records transformed for entity {entity.id}",
            )
        outcome.transformed = len(transformed)

        outcome.state = SyncState.DELIVERING
        transmission = await self._deliver(entity, transformed, job_id, attempt)
        outcome.transmission_id = transmission.id

        outcome.state = SyncState.SENT
        self.relay_logger.sync_end(
            entity,
            job_id,
            state=outcome.state.value,
            fetched=outcome.fetched,
            valid=outcome.valid,
            transformed=outcome.transformed,
            transmission_id=transmission.id,
        )
        return outcome

    async def _deliver(
        self,
        entity: SourceEntity,
        records: list[TransformedRecord],
        job_id: str,
        attempt: int,
    ) -> TransmissionRecord:
        """Send the batch and persist its audit record in one unit of work."""
        transmission = TransmissionRecord(
            entity_id=entity.id,
            payload=[record.to_payload() for record in records],
            retry_count=attempt - 1,
            created_at=self.clock(),
        )
        report: DeliveryReport | None = None
        send_error: BaseException | None = None

        async with self.store.async_unit_of_work() as conn:
            await asyncio.to_thread(self.store.create, transmission, conn)
            try:
                report = await self.destination.send(records, entity.id, entity.variant)
            except (Exception, asyncio.CancelledError) as e:
                # Recorded as FAILED and committed before it propagates.
                send_error = e
                transmission.mark_failed(
                    str(e) or "Delivery cancelled or timed out", sent_at=self.clock(),
                )
            else:
                self._apply_report(transmission, report)
            await asyncio.to_thread(self.store.update, transmission, conn)

        if send_error is not None:
            self.relay_logger.transmission_error(
                transmission, entity, transmission.error_message, job_id,
            )
            raise send_error

        self.relay_logger.transmission_sent(transmission, entity, report, job_id)
        if not report.success:
            raise DeliveryError(
                f"{report.failed_count} of {report.total} records failed: "
                f"{report.first_error}",
                report,
            )
        return transmission

    def _apply_report(self, transmission: TransmissionRecord, report: DeliveryReport) -> None:
        if report.success:
            first = report.results[0] if report.results else None
            transmission.mark_sent(
                response_code=first.status_code if first else None,
                response_body=first.response_body if first else None,
                sent_at=self.clock(),
            )
            return

        failed = next(r for r in report.results if not r.success)
        transmission.mark_failed(
            report.first_error or "Unknown error",
            sent_at=self.clock(),
            response_code=failed.status_code or None,
            response_body=failed.response_body,
        )

    def _skip(self, outcome: SyncOutcome, reason: str) -> SyncOutcome:
        outcome.state = SyncState.SKIPPED
        outcome.reason = reason
        return outcome

