"""Tests for the file and memory state stores and the repositories on top."""

import json
import logging

import pytest

from glucose_sync.data.state_store import (
    SYNC_STATE_KEY,
    TOKEN_KEY,
    InMemoryStateStore,
    JsonFileStateStore,
    create_state_store,
)
from glucose_sync.data.sync_repository import SyncStateRepository
from glucose_sync.data.token_repository import TokenRepository
from glucose_sync.models.sync import SyncState, SyncStats
from glucose_sync.models.tokens import TokenRecord
from glucose_sync.utils.config import Settings


@pytest.fixture
def file_store(tmp_path):
    return JsonFileStateStore({
        TOKEN_KEY: str(tmp_path / "dexcom_tokens.json"),
        SYNC_STATE_KEY: str(tmp_path / "state" / "dexcom_sync_state.json"),
    })


def test_file_store_missing_file_loads_none(file_store):
    assert file_store.load(TOKEN_KEY) is None


def test_file_store_save_and_load(file_store, tmp_path):
    file_store.save(TOKEN_KEY, {"access_token": "a", "expires_at": 1})
    assert file_store.load(TOKEN_KEY) == {"access_token": "a", "expires_at": 1}
    # Pretty-printed JSON on disk, no temp files left behind
    text = (tmp_path / "dexcom_tokens.json").read_text()
    assert text.startswith("{\n")
    assert not [p for p in tmp_path.iterdir() if p.name.startswith(".tmp-")]


def test_file_store_creates_parent_directory(file_store, tmp_path):
    file_store.save(SYNC_STATE_KEY, {"last_sync_at": None})
    assert (tmp_path / "state" / "dexcom_sync_state.json").exists()


def test_file_store_corrupt_file_loads_none(file_store, tmp_path, caplog):
    (tmp_path / "dexcom_tokens.json").write_text("{not json")
    with caplog.at_level(logging.ERROR):
        assert file_store.load(TOKEN_KEY) is None
    assert "Could not read state file" in caplog.text


def test_file_store_non_object_loads_none(file_store, tmp_path):
    (tmp_path / "dexcom_tokens.json").write_text(json.dumps([1, 2, 3]))
    assert file_store.load(TOKEN_KEY) is None


def test_file_store_unknown_key(file_store):
    with pytest.raises(KeyError):
        file_store.load("other")


def test_memory_store_returns_copies():
    store = InMemoryStateStore()
    data = {"nested": {"a": 1}}
    store.save("k", data)
    loaded = store.load("k")
    loaded["nested"]["a"] = 2
    assert store.load("k") == {"nested": {"a": 1}}


def test_create_state_store_selects_backend(tmp_path):
    memory = create_state_store(Settings(_env_file=None, state_backend="memory"))
    assert isinstance(memory, InMemoryStateStore)
    files = create_state_store(Settings(
        _env_file=None,
        state_backend="file",
        token_file=str(tmp_path / "t.json"),
        sync_state_file=str(tmp_path / "s.json"),
    ))
    assert isinstance(files, JsonFileStateStore)
    assert files.path_for(TOKEN_KEY) == str(tmp_path / "t.json")


def test_token_repository_round_trip(token_repo):
    assert token_repo.get() is None
    token = TokenRecord.from_token_payload("access", expires_in=3600, refresh_token="refresh", issued_at_ms=0)
    token_repo.save(token)
    stored = token_repo.get()
    assert stored.access_token.get_secret_value() == "access"
    assert stored.refresh_token.get_secret_value() == "refresh"


def test_token_repository_invalid_record(state_store):
    state_store.save(TOKEN_KEY, {"refresh_token": "only"})
    assert TokenRepository(store=state_store).get() is None


def test_token_file_survives_restart(file_store):
    token = TokenRecord.from_token_payload("access", expires_in=3600, refresh_token="refresh", issued_at_ms=0)
    TokenRepository(store=file_store).save(token)
    reopened = TokenRepository(store=JsonFileStateStore(file_store.paths))
    assert reopened.get().expires_at == token.expires_at


def test_sync_state_repository_replaces_state(sync_state_repo):
    assert sync_state_repo.get() is None
    sync_state_repo.save(SyncState(last_sync_at="2024-06-01T00:00:00Z", stats=SyncStats(count=10)))
    sync_state_repo.save(SyncState(last_sync_at="2024-06-02T00:00:00Z", stats=SyncStats(count=2)))
    state = sync_state_repo.get()
    assert state.last_sync_at == "2024-06-02T00:00:00Z"
    assert state.stats.count == 2


def test_sync_state_repository_invalid_record(state_store):
    state_store.save(SYNC_STATE_KEY, {"stats": {"count": "many"}})
    assert SyncStateRepository(store=state_store).get() is None
