"""Fixtures for API tests: an app with its dependencies replaced."""

from unittest import mock

import pytest
from fastapi.testclient import TestClient

from glucose_sync.api.dexcom import get_dexcom_client, get_sync_worker
from glucose_sync.data.glucose_repository import GlucoseRepository, get_glucose_repository
from glucose_sync.data.sync_repository import get_sync_state_repository
from glucose_sync.data.token_repository import get_token_repository
from glucose_sync.main import create_app
from glucose_sync.models.sync import SyncTrigger
from glucose_sync.utils.config import get_settings


class FakeSyncWorker:
    """Sync worker double that records submissions and coalesces like the real one."""

    def __init__(self):
        self.submitted = []
        self.pending = False
        self.running = False

    def submit(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> bool:
        if self.pending:
            return False
        self.pending = True
        self.submitted.append(trigger)
        return True


class StubLiveClient:
    """Dexcom client double for the live event endpoints."""

    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error
        self.calls = []

    async def get_events(self, access_token, start, end, api_version="v3"):
        self.calls.append((access_token, start, end, api_version))
        if self.error is not None:
            raise self.error
        return self.events


@pytest.fixture
def glucose_repo():
    return mock.AsyncMock(spec=GlucoseRepository)


@pytest.fixture
def sync_worker():
    return FakeSyncWorker()


@pytest.fixture
def live_client():
    return StubLiveClient()


@pytest.fixture
def app(test_settings, glucose_repo, token_repo, sync_state_repo, sync_worker, live_client):
    """App with repositories, worker and Dexcom client replaced."""
    application = create_app(test_settings)
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_glucose_repository] = lambda: glucose_repo
    application.dependency_overrides[get_token_repository] = lambda: token_repo
    application.dependency_overrides[get_sync_state_repository] = lambda: sync_state_repo
    application.dependency_overrides[get_sync_worker] = lambda: sync_worker
    application.dependency_overrides[get_dexcom_client] = lambda: live_client
    return application


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)
