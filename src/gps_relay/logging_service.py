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
"""Channel-based structured logging for the relay.

Every message goes to a stdlib logger named ``gps_relay.<channel>`` and
carries its structured context in ``record.context`` so that the JSON
formatter installed by :func:`setup_logging` can emit it verbatim.
"""

import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

from .models import (
    DeliveryReport,
    SourceEntity,
    TransformationSummary,
    TransmissionRecord,
    Violation,
)

TELEMETRY = "telemetry"
TRANSMISSION = "transmission"
SYSTEM = "system"
ERROR = "error"

CHANNELS = (TELEMETRY, TRANSMISSION, SYSTEM, ERROR)

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class ChannelJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that flattens the channel and context into the record."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record.setdefault("channel", getattr(record, "channel", SYSTEM))


def setup_logging(level: str = "INFO", format_type: str = "json") -> None:
    """Configure the root handler for the relay process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format_type: "json" for machine-readable output, "text" for local use.
    """
    handler = logging.StreamHandler(sys.stdout)
    if format_type == "json":
        handler.setFormatter(
            ChannelJsonFormatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            ),
        )
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            ),
        )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVELS.get(level.upper(), logging.INFO))


def mask_token(token: str) -> str:
    return f"{token[:8]}..."


class RelayLogger:
    """Structured logger accepting (severity, channel, message, context)."""

    def __init__(self, prefix: str = "gps_relay") -> None:
        self.prefix = prefix

    def get_logger(self, channel: str) -> logging.Logger:
        return logging.getLogger(f"{self.prefix}.{channel}")

    def log(self, level: int, channel: str, message: str, **context: Any) -> None:
        self.get_logger(channel).log(
            level, message, extra={"channel": channel, "context": context},
        )

    def debug(self, channel: str, message: str, **context: Any) -> None:
        self.log(logging.DEBUG, channel, message, **context)

    def info(self, channel: str, message: str, **context: Any) -> None:
        self.log(logging.INFO, channel, message, **context)

    def warning(self, channel: str, message: str, **context: Any) -> None:
        self.log(logging.WARNING, channel, message, **context)

    def error(self, channel: str, message: str, **context: Any) -> None:
        self.log(logging.ERROR, channel, message, **context)

    # Pipeline events

    def sync_start(self, entity: SourceEntity, job_id: str) -> None:
        self.info(
            TELEMETRY,
            "Sync started",
            job_id=job_id,
            entity_id=entity.id,
            entity_name=entity.name,
            variant=entity.variant.value,
        )

    def sync_end(self, entity: SourceEntity, job_id: str, **results: Any) -> None:
        self.info(
            TELEMETRY,
            "Sync finished",
            job_id=job_id,
            entity_id=entity.id,
            entity_name=entity.name,
            **results,
        )

    def data_received(self, entity: SourceEntity, count: int, job_id: str) -> None:
        self.info(
            TELEMETRY,
            "GPS data received",
            job_id=job_id,
            entity_id=entity.id,
            record_count=count,
        )

    def validation_error(
        self, entity: SourceEntity, violations: list[Violation], job_id: str,
    ) -> None:
        self.warning(
            TELEMETRY,
            "No valid GPS records after validation",
            job_id=job_id,
            entity_id=entity.id,
            error_count=len(violations),
            errors=[v.model_dump() for v in violations],
        )

    def transformation(
        self, entity: SourceEntity, summary: TransformationSummary, job_id: str,
    ) -> None:
        self.info(
            TELEMETRY,
            "GPS data transformed",
            job_id=job_id,
            entity_id=entity.id,
            **summary.model_dump(),
        )

    def transmission_sent(
        self,
        transmission: TransmissionRecord,
        entity: SourceEntity,
        report: DeliveryReport,
        job_id: str,
    ) -> None:
        level = logging.INFO if report.success else logging.WARNING
        self.log(
            level,
            TRANSMISSION,
            "Transmission completed",
            job_id=job_id,
            transmission_id=transmission.id,
            entity_id=entity.id,
            status=transmission.status.value,
            total=report.total,
            successful=report.successful_count,
            failed=report.failed_count,
            first_error=report.first_error,
        )

    def transmission_error(
        self,
        transmission: TransmissionRecord,
        entity: SourceEntity,
        error: str,
        job_id: str,
    ) -> None:
        self.error(
            TRANSMISSION,
            "Transmission failed",
            job_id=job_id,
            transmission_id=transmission.id,
            entity_id=entity.id,
            error=error,
        )

    def connection_error(
        self, service: str, endpoint: str, error: str, job_id: str,
    ) -> None:
        self.error(
            ERROR,
            f"Connection error with {service}",
            job_id=job_id,
            service=service,
            endpoint=endpoint,
            error=error,
        )

    def job_retry(
        self,
        entity: SourceEntity,
        job_id: str,
        attempt: int,
        next_delay: float,
        error: str,
    ) -> None:
        self.warning(
            TRANSMISSION,
            "Retrying sync job",
            job_id=job_id,
            entity_id=entity.id,
            attempt=attempt,
            next_delay_seconds=next_delay,
            error=error,
        )

    def job_failed(
        self, entity: SourceEntity, job_id: str, attempts: int, error: str,
    ) -> None:
        self.error(
            ERROR,
            "Sync job failed permanently",
            job_id=job_id,
            entity_id=entity.id,
            entity_name=entity.name,
            final_attempt=attempts,
            error=error,
        )

    def health_check(self, service: str, **results: Any) -> None:
        self.info(SYSTEM, f"Health check for {service}", service=service, **results)
