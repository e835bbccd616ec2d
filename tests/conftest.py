"""Test configuration and shared fixtures."""

import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import pytest

# Make sure the package directory is in the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Keep tests away from real files, databases and AWS accounts
os.environ.setdefault("STATE_BACKEND", "memory")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

from glucose_sync.data.state_store import InMemoryStateStore
from glucose_sync.data.sync_repository import SyncStateRepository
from glucose_sync.data.token_repository import TokenRepository
from glucose_sync.utils.config import Settings
from glucose_sync.utils.normalization import parse_dexcom_time


class InMemoryReadingStore:
    """
    Readings store double with the conflict semantics of the Postgres upserts.

    Glucose values only fill rows that have none. Events keep the
    stored carb/insulin values and append the new note to the stored one.
    """

    def __init__(self):
        self.rows: Dict[tuple, Dict[str, Any]] = {}
        self.egv_calls = 0
        self.event_calls = 0

    @staticmethod
    def _key(row: Dict[str, Any]) -> tuple:
        return (row["measured_at"], row["source"])

    def _blank(self, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = {
            "glucose_mgdl": None,
            "carbs_grams": None,
            "insulin_units": None,
            "notes": None,
        }
        stored.update(row)
        return stored

    async def insert_egvs(self, rows: Sequence[Dict[str, Any]], batch_size: int = 500) -> int:
        self.egv_calls += 1
        inserted = 0
        for row in rows:
            key = self._key(row)
            existing = self.rows.get(key)
            if existing is None:
                self.rows[key] = self._blank(row)
            elif existing["glucose_mgdl"] is None:
                existing["glucose_mgdl"] = row["glucose_mgdl"]
            else:
                continue
            inserted += 1
        return inserted

    async def upsert_events(self, rows: Sequence[Dict[str, Any]], batch_size: int = 500) -> int:
        self.event_calls += 1
        keys = [self._key(row) for row in rows]
        if len(keys) != len(set(keys)):
            raise ValueError("ON CONFLICT DO UPDATE command cannot affect row a second time")
        for row in rows:
            key = self._key(row)
            existing = self.rows.get(key)
            if existing is None:
                self.rows[key] = self._blank(row)
                continue
            for field in ("carbs_grams", "insulin_units"):
                if existing[field] is None:
                    existing[field] = row.get(field)
            if existing["notes"] is not None and row.get("notes") is not None:
                existing["notes"] = f"{existing['notes']} | {row['notes']}"
            else:
                existing["notes"] = row.get("notes")
        return len(rows)

    async def event_stats(self) -> Dict[str, Any]:
        carbs = [r["measured_at"] for r in self.rows.values() if (r["carbs_grams"] or 0) > 0]
        insulin = [r["measured_at"] for r in self.rows.values() if (r["insulin_units"] or 0) > 0]
        return {
            "carb_events": len(carbs),
            "insulin_events": len(insulin),
            "last_carb": max(carbs) if carbs else None,
            "last_insulin": max(insulin) if insulin else None,
        }

    def glucose_rows(self) -> List[Dict[str, Any]]:
        return [r for r in self.rows.values() if r["glucose_mgdl"] is not None]


class FakeDexcomClient:
    """Dexcom client double returning canned payloads per fetch window."""

    def __init__(
        self,
        data_range: Optional[Dict[str, Any]] = None,
        egvs: Optional[List[Dict[str, Any]]] = None,
        events: Optional[List[Dict[str, Any]]] = None,
        fail_windows: Sequence[int] = (),
        data_range_error: Optional[Exception] = None,
    ):
        self.data_range = data_range or {}
        self.egvs = egvs or []
        self.events = events or []
        self.fail_windows = set(fail_windows)
        self.data_range_error = data_range_error
        self.windows: List[tuple] = []
        self.api_versions: List[str] = []
        self.tokens: List[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def get_data_range(self, access_token: str) -> Dict[str, Any]:
        self.tokens.append(access_token)
        if self.data_range_error is not None:
            raise self.data_range_error
        return self.data_range

    def _window_index(self, start: datetime, end: datetime) -> int:
        if (start, end) not in self.windows:
            self.windows.append((start, end))
        return self.windows.index((start, end))

    async def get_egvs(self, access_token, start, end, api_version="v3"):
        index = self._window_index(start, end)
        self.api_versions.append(api_version)
        if index in self.fail_windows:
            raise RuntimeError(f"window {index} unavailable")
        return [e for e in self.egvs if _in_window(e, start, end)]

    async def get_events(self, access_token, start, end, api_version="v3"):
        index = self._window_index(start, end)
        if index in self.fail_windows:
            raise RuntimeError(f"window {index} unavailable")
        return [e for e in self.events if _in_window(e, start, end)]


def _in_window(record: Dict[str, Any], start: datetime, end: datetime) -> bool:
    at = parse_dexcom_time(record.get("systemTime"))
    return at is not None and start <= at < end


def data_range_payload(start: str, end: str) -> Dict[str, Any]:
    """A dataRange response with the given egvs systemTimes."""
    return {
        "egvs": {
            "start": {"systemTime": start, "displayTime": start},
            "end": {"systemTime": end, "displayTime": end},
        }
    }


@pytest.fixture
def test_settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        service_env="test",
        state_backend="memory",
        dexcom_environment="production",
        dexcom_client_id="client-id",
        dexcom_client_secret="client-secret",
        dexcom_redirect_uri="http://localhost:4000/api/dexcom/callback",
        frontend_url="http://localhost:3001",
        database_url=None,
        openai_api_key=None,
        metrics_user=None,
    )


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def token_repo(state_store):
    return TokenRepository(store=state_store)


@pytest.fixture
def sync_state_repo(state_store):
    return SyncStateRepository(store=state_store)


@pytest.fixture
def reading_store():
    return InMemoryReadingStore()


@pytest.fixture
def make_dexcom_client():
    """Factory for FakeDexcomClient instances."""
    return FakeDexcomClient


@pytest.fixture
def make_data_range():
    return data_range_payload
