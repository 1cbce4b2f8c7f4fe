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
"""Provides a client that delivers transformed GPS records to the ingestion service."""

import asyncio
import logging
import ssl
import types

import httpx

from .config import Settings
from .models import (
    DeliveryReport,
    DeliveryResult,
    DestinationVariant,
    EndpointHealth,
    ErrorKind,
    TransformedRecord,
)

logger = logging.getLogger(__name__)

TLS_VERSIONS = {
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}

STATUS_MESSAGES = {
    400: "Invalid data sent",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Endpoint not found",
    408: "Request timeout",
    429: "Too many requests",
    500: "Destination internal server error",
    502: "Bad gateway",
    503: "Service unavailable",
    504: "Gateway timeout",
}


def build_ssl_context(min_version: str) -> ssl.SSLContext:
    """Create a verifying TLS context that refuses anything older than `min_version`."""
    try:
        version = TLS_VERSIONS[min_version]
    except KeyError:
        raise ValueError(f"Unsupported TLS version: {min_version}") from None
    context = ssl.create_default_context()
    context.minimum_version = version
    return context


def classify_status(status_code: int) -> ErrorKind:
    if 400 <= status_code < 500:
        return ErrorKind.CLIENT_ERROR
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNEXPECTED_ERROR


def status_message(status_code: int) -> str:
    return STATUS_MESSAGES.get(status_code, f"HTTP error: {status_code}")


class MininterClient:
    """Client for the government GPS ingestion endpoints.

    Each record is posted on its own so that one rejected fix does not hide
    the outcome of the others.
    """

    def __init__(
        self, settings: Settings, client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        verify: ssl.SSLContext | bool = (
            build_ssl_context(settings.ssl_min_version) if settings.verify_ssl else False
        )
        self.client = client or httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": settings.user_agent,
            },
            verify=verify,
            timeout=httpx.Timeout(
                settings.destination_timeout,
                connect=settings.destination_connect_timeout,
            ),
        )

    async def __aenter__(self) -> "MininterClient":
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

    async def send(
        self,
        records: list[TransformedRecord],
        entity_id: str,
        variant: DestinationVariant,
    ) -> DeliveryReport:
        """Deliver every record to the variant's endpoint and aggregate the outcome."""
        endpoint = self.settings.endpoint_for(variant)
        logger.info(
            "Sending %d %s records for entity %s", len(records), variant.value, entity_id,
        )

        report = DeliveryReport(total=len(records))
        for index, record in enumerate(records):
            report.add(await self._send_one(endpoint, record, index, variant))

        logger.info(
            "%s delivery for entity %s finished: %d sent, %d failed",
            variant.value,
            entity_id,
            report.successful_count,
            report.failed_count,
        )
        return report

    async def _post_with_retry(self, endpoint: str, body: dict) -> httpx.Response:
        """POST `body`, retrying connection failures and 5xx responses.

        The final 5xx response is returned rather than raised; the final
        connection failure is raised.
        """
        attempts = self.settings.destination_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.post(endpoint, json=body)
            except httpx.TransportError as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Connection to %s failed on attempt %d/%d: %s",
                    endpoint,
                    attempt,
                    attempts,
                    e,
                )
            else:
                if response.status_code < 500 or attempt == attempts:
                    return response
                logger.warning(
                    "%s returned %d on attempt %d/%d",
                    endpoint,
                    response.status_code,
                    attempt,
                    attempts,
                )
            await asyncio.sleep(self.settings.destination_retry_delay)
        raise RuntimeError("destination_retry_attempts must be at least 1")

    async def _send_one(
        self,
        endpoint: str,
        record: TransformedRecord,
        index: int,
        variant: DestinationVariant,
    ) -> DeliveryResult:
        try:
            response = await self._post_with_retry(endpoint, record.to_payload())
        except httpx.TransportError as e:
            logger.error("Connection error sending %s record %d: %s", variant.value, index, e)
            return DeliveryResult(
                index=index,
                success=False,
                error_kind=ErrorKind.CONNECTION_ERROR,
                message=f"Connection error with {endpoint}",
            )
        except Exception as e:
            logger.error("Unexpected error sending %s record %d: %s", variant.value, index, e)
            return DeliveryResult(
                index=index,
                success=False,
                error_kind=ErrorKind.UNEXPECTED_ERROR,
                message=f"Unexpected error while sending data: {e}",
            )

        if response.is_success:
            return DeliveryResult(
                index=index,
                success=True,
                status_code=response.status_code,
                response_body=response.text,
            )

        logger.warning(
            "%s record %d rejected with status %d: %s",
            variant.value,
            index,
            response.status_code,
            response.text,
        )
        return DeliveryResult(
            index=index,
            success=False,
            status_code=response.status_code,
            response_body=response.text,
            error_kind=classify_status(response.status_code),
            message=status_message(response.status_code),
        )

    async def check_endpoint(self, variant: DestinationVariant) -> EndpointHealth:
        endpoint = self.settings.endpoint_for(variant)
        try:
            response = await self.client.head(
                endpoint,
                timeout=httpx.Timeout(
                    self.settings.health_timeout,
                    connect=self.settings.health_connect_timeout,
                ),
            )
        except httpx.HTTPError as e:
            logger.error("Health check failed for %s: %s", variant.value, e)
            return EndpointHealth(accessible=False, error=str(e))
        return EndpointHealth(accessible=True, status_code=response.status_code)

    async def health_check(self) -> dict[str, EndpointHealth]:
        return {
            variant.value: await self.check_endpoint(variant)
            for variant in DestinationVariant
        }

    async def is_healthy(self, variant: DestinationVariant) -> bool:
        return (await self.check_endpoint(variant)).healthy
