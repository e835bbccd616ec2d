"""Tests for the Dexcom API client and its retry loop."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx

from glucose_sync.auth.dexcom_client import (
    DexcomApiClient,
    DexcomAPIError,
    DexcomAuthError,
    extract_records,
    fetch_with_retry,
)

BASE_URL = "https://api.dexcom.com"
START = datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)
END = START + timedelta(days=1)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def status_error(status):
    request = httpx.Request("GET", f"{BASE_URL}/v3/users/self/egvs")
    return httpx.HTTPStatusError("error", request=request, response=httpx.Response(status, request=request))


@pytest.mark.asyncio
async def test_fetch_with_retry_backs_off_exponentially():
    sleep = RecordingSleep()
    outcomes = [httpx.ConnectError("down"), status_error(503), "ok"]

    async def request():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert await fetch_with_retry(request, attempts=3, base_delay_ms=500, sleep=sleep) == "ok"
    assert sleep.delays == [0.5, 1.0]
    assert sum(sleep.delays) >= 1.5


@pytest.mark.asyncio
async def test_fetch_with_retry_does_not_retry_client_errors():
    sleep = RecordingSleep()
    calls = []

    async def request():
        calls.append(1)
        raise status_error(400)

    with pytest.raises(httpx.HTTPStatusError):
        await fetch_with_retry(request, attempts=3, sleep=sleep)
    assert len(calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_fetch_with_retry_gives_up_after_attempts():
    sleep = RecordingSleep()
    calls = []

    async def request():
        calls.append(1)
        raise status_error(429)

    with pytest.raises(httpx.HTTPStatusError):
        await fetch_with_retry(request, attempts=3, base_delay_ms=100, sleep=sleep)
    assert len(calls) == 3
    assert sleep.delays == [0.1, 0.2]


def test_extract_records():
    assert extract_records({"records": [1, 2]}, "v3", "egvs") == [1, 2]
    assert extract_records({"egvs": [1]}, "v2", "egvs") == [1]
    assert extract_records({"egvs": [3]}, "v3", "egvs") == [3]
    assert extract_records({"records": None}, "v3", "events") == []
    assert extract_records(None, "v3", "egvs") == []


@pytest.fixture
def client():
    return DexcomApiClient(
        base_url=BASE_URL,
        max_retries=3,
        base_delay_ms=1,
        http_client=httpx.AsyncClient(),
        sleep=RecordingSleep(),
    )


@pytest.mark.asyncio
@respx.mock
async def test_get_egvs_v3(client):
    route = respx.get(f"{BASE_URL}/v3/users/self/egvs").mock(
        return_value=httpx.Response(200, json={"records": [{"systemTime": "2024-06-01T10:00:00", "value": 120}]})
    )
    egvs = await client.get_egvs("token", START, END, api_version="v3")
    assert egvs == [{"systemTime": "2024-06-01T10:00:00", "value": 120}]
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer token"
    assert request.url.params["startDate"] == "2024-06-01T00:00:00"
    assert request.url.params["endDate"] == "2024-06-02T00:00:00"


@pytest.mark.asyncio
@respx.mock
async def test_get_events_v2(client):
    respx.get(f"{BASE_URL}/v2/users/self/events").mock(
        return_value=httpx.Response(200, json={"events": [{"eventType": "carbs", "value": 30}]})
    )
    events = await client.get_events("token", START, END, api_version="v2")
    assert events == [{"eventType": "carbs", "value": 30}]


@pytest.mark.asyncio
@respx.mock
async def test_get_data_range(client):
    respx.get(f"{BASE_URL}/v2/users/self/dataRange").mock(
        return_value=httpx.Response(200, json={"egvs": {"end": {"systemTime": "2024-06-01T10:00:00"}}})
    )
    data_range = await client.get_data_range("token")
    assert data_range["egvs"]["end"]["systemTime"] == "2024-06-01T10:00:00"


@pytest.mark.asyncio
@respx.mock
async def test_retries_server_errors_then_succeeds(client):
    route = respx.get(f"{BASE_URL}/v3/users/self/egvs").mock(side_effect=[
        httpx.Response(500),
        httpx.Response(502),
        httpx.Response(200, json={"records": []}),
    ])
    assert await client.get_egvs("token", START, END) == []
    assert route.call_count == 3


@pytest.mark.asyncio
@respx.mock
async def test_unauthorized_raises_auth_error_without_retry(client):
    route = respx.get(f"{BASE_URL}/v3/users/self/egvs").mock(return_value=httpx.Response(401))
    with pytest.raises(DexcomAuthError) as exc:
        await client.get_egvs("token", START, END)
    assert exc.value.status_code == 401
    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_exhausted_retries_raise_api_error(client):
    respx.get(f"{BASE_URL}/v3/users/self/events").mock(return_value=httpx.Response(503))
    with pytest.raises(DexcomAPIError) as exc:
        await client.get_events("token", START, END)
    assert exc.value.status_code == 503
    assert not isinstance(exc.value, DexcomAuthError)


@pytest.mark.asyncio
@respx.mock
async def test_network_failure_raises_api_error(client):
    respx.get(f"{BASE_URL}/v3/users/self/egvs").mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(DexcomAPIError) as exc:
        await client.get_egvs("token", START, END)
    assert exc.value.status_code is None


@pytest.mark.asyncio
async def test_window_end_must_follow_start(client):
    with pytest.raises(ValueError):
        await client.get_egvs("token", END, START)
