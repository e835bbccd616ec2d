"""Data access and persistence layer."""

from glucose_sync.data.glucose_repository import get_glucose_repository
from glucose_sync.data.state_store import get_state_store
from glucose_sync.data.sync_repository import get_sync_state_repository
from glucose_sync.data.token_repository import get_token_repository

__all__ = [
    "get_glucose_repository",
    "get_state_store",
    "get_sync_state_repository",
    "get_token_repository",
]
