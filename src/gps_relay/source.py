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
"""Provides a client that pulls GPS fixes from the upstream GPServer API."""

import asyncio
import logging
import types
from datetime import datetime
from typing import Any

import httpx

from .config import Settings
from .logging_service import mask_token
from .models import RawTelemetryRecord
from .utils import Clock, digits_only, is_blank, is_numeric, to_float, utc_now

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("imei", "lat", "lng", "dt_server")
MIN_IMEI_DIGITS = 10
SOURCE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _is_valid_capture_time(value: Any, now: datetime, max_future_seconds: int) -> bool:
    if is_numeric(value):
        epoch = to_float(value)
        return 0 < epoch <= now.timestamp() + max_future_seconds
    if not isinstance(value, str):
        return False
    try:
        datetime.strptime(value.strip(), SOURCE_DATETIME_FORMAT)
    except ValueError:
        return False
    return True


def is_structurally_valid(
    record: Any, now: datetime, max_future_seconds: int = 3600,
) -> bool:
    """Cheap pre-validation applied to every fetched record.

    This is advisory only; the full rule set lives in the record validator.
    """
    if not isinstance(record, dict):
        return False

    if any(is_blank(record.get(field)) for field in REQUIRED_FIELDS):
        return False

    imei = str(record["imei"]).strip()
    if len(digits_only(imei)) < MIN_IMEI_DIGITS:
        logger.debug("Discarding record with short IMEI %r", imei)
        return False

    if not is_numeric(record["lat"]) or not is_numeric(record["lng"]):
        logger.debug(
            "Discarding record %s with non-numeric coordinates (%r, %r)",
            imei,
            record["lat"],
            record["lng"],
        )
        return False

    lat, lng = to_float(record["lat"]), to_float(record["lng"])
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        logger.debug("Discarding record %s with coordinates (%s, %s)", imei, lat, lng)
        return False

    if not _is_valid_capture_time(record["dt_server"], now, max_future_seconds):
        logger.debug(
            "Discarding record %s with capture time %r", imei, record["dt_server"],
        )
        return False

    return True


class GpsSourceClient:
    """Client for fetching one entity's GPS objects from GPServer."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the client with settings and an optional HTTP client."""
        self.settings = settings
        self.clock = clock
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
            timeout=httpx.Timeout(
                settings.source_timeout, connect=settings.source_connect_timeout,
            ),
        )

    async def __aenter__(self) -> "GpsSourceClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _get_with_retry(self, params: dict[str, str]) -> httpx.Response:
        """GET the API, retrying connection failures and 5xx responses.

        Client errors are raised immediately. Once the attempts are used up
        the last error is raised to the caller.
        """
        attempts = self.settings.source_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.get(
                    self.settings.source_base_url, params=params,
                )
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500 or attempt == attempts:
                    raise
                logger.warning(
                    "GPServer returned %d on attempt %d/%d",
                    e.response.status_code,
                    attempt,
                    attempts,
                )
            except httpx.TransportError as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    "GPServer connection failed on attempt %d/%d: %s",
                    attempt,
                    attempts,
                    e,
                )
            await asyncio.sleep(self.settings.source_retry_delay)
        raise RuntimeError("source_retry_attempts must be at least 1")

    async def fetch(self, token: str) -> list[RawTelemetryRecord]:
        """Fetch the GPS objects visible to `token`.

        Returns:
            The records that pass structural filtering. A malformed response
            body yields an empty list.

        Raises:
            httpx.TransportError: When the API cannot be reached.
            httpx.HTTPStatusError: When the API answers with an error status.
        """
        masked = mask_token(token)
        logger.info(
            "Fetching GPS objects for token %s from %s",
            masked,
            self.settings.source_base_url,
        )
        params = {"api": "user", "key": token, "cmd": "USER_GET_OBJECTS"}

        try:
            response = await self._get_with_retry(params)
        except httpx.HTTPStatusError as e:
            logger.error(
                "GPServer HTTP error for token %s: status %d",
                masked,
                e.response.status_code,
            )
            raise
        except httpx.TransportError as e:
            logger.error("GPServer connection error for token %s: %s", masked, e)
            raise

        try:
            data = response.json()
        except ValueError:
            logger.warning("GPServer returned a non-JSON body for token %s", masked)
            return []

        if not isinstance(data, list):
            logger.warning(
                "GPServer response for token %s is a %s, not an array",
                masked,
                type(data).__name__,
            )
            return []

        now = self.clock()
        records = [
            record
            for record in data
            if is_structurally_valid(record, now, self.settings.max_future_seconds)
        ]
        logger.info(
            "GPServer returned %d objects for token %s, %d passed filtering",
            len(data),
            masked,
            len(records),
        )
        return records

    async def health_check(self) -> bool:
        """Probe the API without credentials. Healthy means no 5xx."""
        try:
            response = await self.client.get(
                self.settings.source_base_url,
                timeout=httpx.Timeout(
                    self.settings.health_timeout,
                    connect=self.settings.health_connect_timeout,
                ),
            )
        except httpx.HTTPError as e:
            logger.error("GPServer health check failed: %s", e)
            return False
        return response.status_code < 500
