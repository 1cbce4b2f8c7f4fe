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
"""Manages the application's configuration using Pydantic."""

import logging
from datetime import timedelta, timezone
from typing import Any

import yaml
from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import DestinationVariant

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Manages configuration for the relay.

    Reads settings from environment variables with the prefix 'GPS_RELAY_'.
    """

    model_config = SettingsConfigDict(env_prefix="GPS_RELAY_")

    # Upstream GPS aggregation API (GPServer)
    source_base_url: str = "https://www.gipies.pe/api/api.php"
    source_timeout: float = 30.0
    source_connect_timeout: float = 10.0
    source_retry_attempts: int = 3
    source_retry_delay: float = 0.1

    # Destination ingestion service
    municipal_endpoint: str = (
        "https://transmision.mininter.gob.pe/retransmisionGPS/ubicacionGPS"
    )
    police_endpoint: str = (
        "https://transmision.mininter.gob.pe/retransmisionpolicial/ubicacion/gps-policial"
    )
    destination_timeout: float = 30.0
    destination_connect_timeout: float = 10.0
    destination_retry_attempts: int = 3
    destination_retry_delay: float = 1.0
    verify_ssl: bool = True
    ssl_min_version: str = "TLSv1.2"
    user_agent: str = "gps-relay/0.1.0"

    # Health probes use a shorter budget than regular traffic.
    health_timeout: float = 5.0
    health_connect_timeout: float = 3.0

    # Validation rules
    enable_bounds_check: bool = True
    bounds_lat_min: float = -18.4
    bounds_lat_max: float = 0.0
    bounds_lng_min: float = -81.4
    bounds_lng_max: float = -68.7
    min_epoch: int = 946684800  # 2000-01-01T00:00:00Z
    max_future_seconds: int = 3600
    max_speed_kmh: float = 500.0
    low_success_rate_threshold: float = 50.0

    # Field transformation
    coordinate_precision: int = 6
    local_utc_offset_hours: int = -5
    datetime_format: str = "%d/%m/%Y %H:%M:%S"
    default_area_code: str = "230101"

    # Job-level retry policy
    job_max_attempts: int = 5
    job_backoff: list[float] = [1.0, 2.0, 4.0, 8.0, 16.0]
    job_timeout: float = 300.0
    worker_concurrency: int = 4
    stagger_min: float = 1.0
    stagger_max: float = 10.0
    lease_ttl: float = 310.0

    # Database connection settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    # S105: Hardcoded password is used for local development.
    # In production, this should be set via environment variables.
    db_password: str = "postgres"
    db_name: str = "gps_relay"
    db_schema: str = "gps_relay"

    @computed_field
    @property
    def db_connection_string(self) -> str:
        """Construct the libpq connection string from individual settings."""
        return (
            f"host='{self.db_host}' port='{self.db_port}' "
            f"user='{self.db_user}' password='{self.db_password}' "
            f"dbname='{self.db_name}'"
        )

    @property
    def local_timezone(self) -> timezone:
        """The fixed civil-time zone the destination expects timestamps in."""
        return timezone(timedelta(hours=self.local_utc_offset_hours))

    def endpoint_for(self, variant: DestinationVariant) -> str:
        """Return the destination URL for a variant."""
        match variant:
            case DestinationVariant.MUNICIPAL:
                return self.municipal_endpoint
            case DestinationVariant.POLICE:
                return self.police_endpoint
        raise ValueError(f"Unknown destination variant: {variant!r}")


def load_config(config_file: str | None) -> dict[str, Any]:
    """Loads configuration overrides from a YAML file."""
    if config_file:
        try:
            with open(config_file, "r") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s", config_file)
    return {}


def load_settings(config_file: str | None = None) -> Settings:
    """Build settings from the environment, overlaid with a YAML file if given."""
    return Settings(**load_config(config_file))
