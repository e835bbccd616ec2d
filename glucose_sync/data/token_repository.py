"""Repository for the stored Dexcom OAuth token."""

import logging
from typing import Optional

from pydantic import ValidationError

from glucose_sync.data.state_store import TOKEN_KEY, StateStore, get_state_store
from glucose_sync.models.tokens import TokenRecord

logger = logging.getLogger(__name__)


class TokenRepository:
    """Repository for the single Dexcom token record."""

    def __init__(self, store: Optional[StateStore] = None):
        """
        Initialize the repository.

        Args:
            store: State store; the configured one is used when omitted
        """
        self.store = store if store is not None else get_state_store()

    def get(self) -> Optional[TokenRecord]:
        """
        Get the stored token.

        Returns:
            Optional[TokenRecord]: The token, or None if absent or unreadable
        """
        data = self.store.load(TOKEN_KEY)
        if not data:
            return None
        try:
            return TokenRecord.from_state(data)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.error(f"Stored token record is invalid: {e}", extra={"log_type": "token_read_error"})
            return None

    def save(self, token: TokenRecord) -> TokenRecord:
        """
        Replace the stored token.

        Args:
            token: The token to store

        Returns:
            TokenRecord: The stored token
        """
        self.store.save(TOKEN_KEY, token.to_state())
        logger.info(
            "Token record saved",
            extra={"log_type": "token_saved", "expires_at": token.expires_at},
        )
        return token


# Singleton instance
_token_repository: Optional[TokenRepository] = None


def get_token_repository() -> TokenRepository:
    """
    Get a singleton instance of the token repository.

    Returns:
        TokenRepository: The token repository
    """
    global _token_repository
    if _token_repository is None:
        _token_repository = TokenRepository()
    return _token_repository
