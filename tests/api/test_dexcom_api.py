"""Tests for the Dexcom connection endpoints."""

import urllib.parse
from unittest import mock

from botocore.exceptions import ClientError

from glucose_sync.auth.dexcom_client import DexcomAPIError, DexcomAuthError
from glucose_sync.auth.oauth import TokenError
from glucose_sync.models.sync import SyncState, SyncStats, SyncTrigger
from glucose_sync.models.tokens import TokenRecord, now_ms
from glucose_sync.sync.job import to_iso, utc_now
from glucose_sync.utils.config import Settings, get_settings


def connect(token_repo, expires_in_ms=3_600_000):
    token_repo.save(TokenRecord(access_token="access", refresh_token="refresh", expires_at=now_ms() + expires_in_ms))


def query_of(location):
    return urllib.parse.parse_qs(urllib.parse.urlparse(location).query)


def test_login_redirects_to_dexcom(client):
    response = client.get("/api/dexcom/login", follow_redirects=False)
    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith("https://api.dexcom.com/v2/oauth2/login?")
    query = query_of(location)
    assert query["client_id"] == ["client-id"]
    assert query["response_type"] == ["code"]
    assert query["state"][0]


def test_login_without_configuration(app, client):
    app.dependency_overrides[get_settings] = lambda: Settings(_env_file=None, dexcom_client_id=None)
    response = client.get("/api/dexcom/login", follow_redirects=False)
    assert response.status_code == 500
    assert response.json() == {"error": "Missing DEXCOM_CLIENT_ID or DEXCOM_REDIRECT_URI in env"}


def test_callback_stores_token_and_queues_sync(client, sync_worker):
    with mock.patch("glucose_sync.api.dexcom.exchange_code_and_store", new_callable=mock.AsyncMock) as exchange:
        response = client.get("/api/dexcom/callback", params={"code": "abc"}, follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "http://localhost:3001?dexcom=connected"
    assert exchange.await_args.args[0] == "abc"
    assert sync_worker.submitted == [SyncTrigger.CALLBACK]


def test_callback_exchange_failure(client, sync_worker):
    with mock.patch(
        "glucose_sync.api.dexcom.exchange_code_and_store",
        new_callable=mock.AsyncMock,
        side_effect=TokenError("invalid_grant", status_code=400),
    ):
        response = client.get("/api/dexcom/callback", params={"code": "abc"}, follow_redirects=False)
    assert query_of(response.headers["location"]) == {"dexcom_error": ["AUTH_FAILED"]}
    assert sync_worker.submitted == []


def test_callback_provider_error(client):
    response = client.get("/api/dexcom/callback", params={"error": "access_denied"}, follow_redirects=False)
    assert response.status_code == 302
    assert query_of(response.headers["location"]) == {"dexcom_error": ["access_denied"]}


def test_callback_without_code(client):
    response = client.get("/api/dexcom/callback", follow_redirects=False)
    assert response.status_code == 400


def test_status_not_connected(client):
    body = client.get("/api/dexcom/status").json()
    assert body["connected"] is False
    assert body["stale"] is False
    assert body["last_sync_at"] is None
    assert body["stats"] is None
    assert body["environment"] == "production"


def test_status_connected_and_fresh(client, token_repo, sync_state_repo):
    connect(token_repo)
    sync_state_repo.save(SyncState(last_sync_at=to_iso(utc_now()), stats=SyncStats(count=12, valid_range=True)))
    body = client.get("/api/dexcom/status").json()
    assert body["connected"] is True
    assert body["stale"] is False
    assert 3500 <= body["expires_in_seconds"] <= 3600
    assert body["stats"]["count"] == 12
    assert body["stats"]["validRange"] is True
    assert body["sync_pending"] is False


def test_status_connected_but_never_synced_is_stale(client, token_repo):
    connect(token_repo)
    assert client.get("/api/dexcom/status").json()["stale"] is True


def test_sync_requires_connection(client, sync_worker):
    response = client.get("/api/dexcom/sync")
    assert response.status_code == 401
    assert response.json() == {"status": "not_connected"}
    assert sync_worker.submitted == []


def test_sync_with_unreadable_token_store(client, token_repo, sync_worker):
    error = ClientError({"Error": {"Code": "ResourceNotFoundException", "Message": "no table"}}, "GetItem")
    with mock.patch.object(token_repo, "get", side_effect=error):
        response = client.get("/api/dexcom/sync")
    assert response.status_code == 401
    assert response.json() == {"status": "not_connected"}
    assert sync_worker.submitted == []


def test_sync_is_queued_and_coalesced(client, token_repo, sync_worker):
    connect(token_repo)
    first = client.get("/api/dexcom/sync")
    second = client.get("/api/dexcom/sync")
    assert first.status_code == 202
    assert first.json() == {"status": "queued"}
    assert second.json() == {"status": "already_queued"}
    assert sync_worker.submitted == [SyncTrigger.MANUAL]


def test_stored_events(client, glucose_repo):
    glucose_repo.list_events.return_value = []
    assert client.get("/api/dexcom/events", params={"limit": 20}).json() == []
    glucose_repo.list_events.assert_awaited_once_with(limit=20)


def test_raw_event_summary_without_sync(client):
    body = client.get("/api/dexcom/events/raw").json()
    assert body["event_summary"] == {}
    assert body["carb_events"] == 0


def test_raw_event_summary(client, sync_state_repo):
    stats = SyncStats(event_summary={"carbs|none|grams": 3}, carb_events=3, last_carb="2024-06-01T08:00:00Z")
    sync_state_repo.save(SyncState(last_sync_at="2024-06-01T12:00:00Z", stats=stats))
    body = client.get("/api/dexcom/events/raw").json()
    assert body["event_summary"] == {"carbs|none|grams": 3}
    assert body["last_carb"] == "2024-06-01T08:00:00Z"


def test_live_events(client, token_repo, live_client):
    connect(token_repo)
    live_client.events = [
        {"systemTime": "2024-06-01T08:00:00", "eventType": "carbs", "unit": "grams", "value": 30},
        {"systemTime": "2024-06-01T09:00:00", "eventType": "exercise", "value": 20},
    ]
    response = client.get("/api/dexcom/events/live", params={"hours": 6})
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert body["events"][0]["kind"] == "carb"
    assert body["events"][0]["carbs_grams"] == 30
    assert body["events"][1]["kind"] is None
    access_token, start, end, api_version = live_client.calls[0]
    assert access_token == "access"
    assert (end - start).total_seconds() == 6 * 3600
    assert api_version == "v3"


def test_live_event_summary(client, token_repo, live_client):
    connect(token_repo)
    live_client.events = [
        {"eventType": "carbs", "unit": "grams", "value": 30},
        {"eventType": "insulin", "eventSubType": "fastActing", "unit": "units", "value": 3},
        {"eventType": "insulin", "eventSubType": "fastActing", "unit": "units", "value": 2},
    ]
    body = client.get("/api/dexcom/events/live/summary").json()
    assert body["hours"] == 24
    assert body["carb_events"] == 1
    assert body["insulin_events"] == 2
    assert body["unclassified"] == 0
    assert body["event_summary"]["insulin|fastActing|units"] == 2


def test_live_events_hours_out_of_range(client, token_repo):
    connect(token_repo)
    assert client.get("/api/dexcom/events/live", params={"hours": 0}).status_code == 422
    assert client.get("/api/dexcom/events/live", params={"hours": 721}).status_code == 422


def test_live_events_not_connected(client):
    assert client.get("/api/dexcom/events/live").status_code == 401


def test_live_events_rejected_token(client, token_repo, live_client):
    connect(token_repo)
    live_client.error = DexcomAuthError("unauthorized", status_code=401)
    assert client.get("/api/dexcom/events/live").status_code == 401


def test_live_events_provider_failure(client, token_repo, live_client):
    connect(token_repo)
    live_client.error = DexcomAPIError("unavailable", status_code=503)
    assert client.get("/api/dexcom/events/live/summary").status_code == 502
