"""Repository for the persisted outcome of the last sync run."""

import logging
from typing import Optional

from pydantic import ValidationError

from glucose_sync.data.state_store import SYNC_STATE_KEY, StateStore, get_state_store
from glucose_sync.models.sync import SyncState

logger = logging.getLogger(__name__)


class SyncStateRepository:
    """Repository for the sync state record."""

    def __init__(self, store: Optional[StateStore] = None):
        """
        Initialize the repository.

        Args:
            store: State store; the configured one is used when omitted
        """
        self.store = store if store is not None else get_state_store()

    def get(self) -> Optional[SyncState]:
        """
        Get the last sync state.

        Returns:
            Optional[SyncState]: The state, or None if never written or unreadable
        """
        data = self.store.load(SYNC_STATE_KEY)
        if not data:
            return None
        try:
            return SyncState.from_state(data)
        except (TypeError, ValueError, ValidationError) as e:
            logger.error(f"Stored sync state is invalid: {e}", extra={"log_type": "sync_state_read_error"})
            return None

    def save(self, state: SyncState) -> SyncState:
        """
        Replace the stored sync state wholesale.

        Args:
            state: The state to store

        Returns:
            SyncState: The stored state
        """
        self.store.save(SYNC_STATE_KEY, state.to_state())
        return state


# Singleton instance
_sync_state_repository: Optional[SyncStateRepository] = None


def get_sync_state_repository() -> SyncStateRepository:
    """
    Get a singleton instance of the sync state repository.

    Returns:
        SyncStateRepository: The sync state repository
    """
    global _sync_state_repository
    if _sync_state_repository is None:
        _sync_state_repository = SyncStateRepository()
    return _sync_state_repository
