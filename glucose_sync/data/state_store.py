"""Key/value persistence for the token record and the sync state.

Three backends share one small interface: JSON files on disk (the default),
process memory (tests), and a DynamoDB table.
"""

import json
import logging
import os
import tempfile
from typing import Any, Dict, Optional, Protocol

from glucose_sync.data.dynamodb import DynamoDBStateStore
from glucose_sync.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

TOKEN_KEY = "dexcom_tokens"
SYNC_STATE_KEY = "dexcom_sync_state"


class StateStore(Protocol):
    """Loads and saves whole JSON documents by key."""

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def save(self, key: str, data: Dict[str, Any]) -> None:
        ...


class InMemoryStateStore:
    """State store kept in a dict; contents are lost on restart."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        data = self._data.get(key)
        return json.loads(json.dumps(data)) if data is not None else None

    def save(self, key: str, data: Dict[str, Any]) -> None:
        self._data[key] = json.loads(json.dumps(data, default=str))


class JsonFileStateStore:
    """
    State store writing one pretty-printed JSON file per key.

    A missing or unreadable file loads as None. Writes go to a temporary
    file that replaces the target, so readers never see a half-written file.
    """

    def __init__(self, paths: Dict[str, str]):
        """
        Initialize the store.

        Args:
            paths: Mapping of state key to file path
        """
        self.paths = dict(paths)

    def path_for(self, key: str) -> str:
        try:
            return self.paths[key]
        except KeyError:
            raise KeyError(f"No file configured for state key '{key}'")

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(
                f"Could not read state file {path}: {e}",
                extra={"log_type": "state_read_error", "state_key": key},
            )
            return None
        if not isinstance(data, dict):
            logger.error(
                f"State file {path} does not hold a JSON object",
                extra={"log_type": "state_read_error", "state_key": key},
            )
            return None
        return data

    def save(self, key: str, data: Dict[str, Any]) -> None:
        path = self.path_for(key)
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


def create_state_store(settings: Settings) -> StateStore:
    """
    Build the state store selected by STATE_BACKEND.

    Args:
        settings: The application settings

    Returns:
        StateStore: The configured backend
    """
    if settings.state_backend == "memory":
        return InMemoryStateStore()
    if settings.state_backend == "dynamodb":
        return DynamoDBStateStore(table_name=settings.dynamodb_state_table)
    return JsonFileStateStore({
        TOKEN_KEY: settings.token_file,
        SYNC_STATE_KEY: settings.sync_state_file,
    })


# Singleton instance for reuse
_state_store: Optional[StateStore] = None


def get_state_store() -> StateStore:
    """
    Get a singleton instance of the configured state store.

    Returns:
        StateStore: State store
    """
    global _state_store
    if _state_store is None:
        _state_store = create_state_store(get_settings())
    return _state_store
