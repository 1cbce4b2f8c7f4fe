from datetime import datetime, timezone

import httpx
import pytest
from pytest_httpx import HTTPXMock

from gps_relay.config import Settings
from gps_relay.source import GpsSourceClient, is_structurally_valid

pytestmark = pytest.mark.unit

NOW = datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)


def _client(settings: Settings, handler) -> GpsSourceClient:
    transport = httpx.MockTransport(handler)
    return GpsSourceClient(
        settings, client=httpx.AsyncClient(transport=transport), clock=lambda: NOW,
    )


def test_structural_filter_accepts_good_record(raw_record):
    assert is_structurally_valid(raw_record, NOW)


@pytest.mark.parametrize(
    "overrides",
    [
        {"imei": "12345"},
        {"imei": ""},
        {"lat": "north"},
        {"lng": "200"},
        {"dt_server": "15/01/2025 14:30"},
        {"dt_server": NOW.timestamp() + 7200},
        {"dt_server": None},
    ],
)
def test_structural_filter_rejects_bad_records(raw_record, overrides):
    raw_record.update(overrides)
    assert not is_structurally_valid(raw_record, NOW)


def test_structural_filter_rejects_non_objects():
    assert not is_structurally_valid(["imei"], NOW)


@pytest.mark.asyncio
async def test_fetch_sends_token_and_filters(settings, raw_record):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        bad = dict(raw_record, imei="1")
        return httpx.Response(200, json=[raw_record, bad, "junk"])

    async with _client(settings, handler) as source:
        records = await source.fetch("secret-token")

    assert records == [raw_record]
    params = seen[0].url.params
    assert params["api"] == "user"
    assert params["key"] == "secret-token"
    assert params["cmd"] == "USER_GET_OBJECTS"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json={"error": "invalid key"}),
        httpx.Response(200, json=[]),
    ],
)
async def test_fetch_malformed_body_returns_empty(settings, response):
    async with _client(settings, lambda request: response) as source:
        assert await source.fetch("token") == []


@pytest.mark.asyncio
async def test_fetch_client_error_is_not_retried(settings):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401)

    async with _client(settings, handler) as source:
        with pytest.raises(httpx.HTTPStatusError):
            await source.fetch("token")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_fetch_retries_server_errors_then_succeeds(settings, raw_record):
    responses = iter([httpx.Response(502), httpx.Response(200, json=[raw_record])])

    async with _client(settings, lambda request: next(responses)) as source:
        assert await source.fetch("token") == [raw_record]


@pytest.mark.asyncio
async def test_fetch_connection_error_raises_after_retries(settings):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    async with _client(settings, handler) as source:
        with pytest.raises(httpx.ConnectError):
            await source.fetch("token")
    assert len(calls) == settings.source_retry_attempts


@pytest.mark.asyncio
async def test_health_check(settings: Settings, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=settings.source_base_url, status_code=200)
    async with GpsSourceClient(settings) as source:
        assert await source.health_check() is True


@pytest.mark.asyncio
async def test_health_check_unreachable(settings: Settings, httpx_mock: HTTPXMock):
    httpx_mock.add_exception(httpx.ConnectTimeout("timed out"))
    async with GpsSourceClient(settings) as source:
        assert await source.health_check() is False
