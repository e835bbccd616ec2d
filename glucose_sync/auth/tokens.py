"""
OAuth2 token lifecycle for the Dexcom connection.

This module exchanges authorization codes, hands out a valid access token
before each provider call, and refreshes the stored token when it is
about to expire.
"""
import logging
from typing import Optional

from glucose_sync.auth.oauth import TokenError, TokenResponse, exchange_code_for_tokens, refresh_access_token
from glucose_sync.data.token_repository import TokenRepository, get_token_repository
from glucose_sync.models.tokens import EXPIRY_BUFFER_MS, TokenRecord, now_ms
from glucose_sync.utils.config import get_settings

logger = logging.getLogger(__name__)


class NotConnectedError(Exception):
    """Raised when no usable Dexcom token is available."""


def _client_credentials():
    settings = get_settings()
    client_secret = settings.dexcom_client_secret.get_secret_value() if settings.dexcom_client_secret else None
    return settings.dexcom_client_id, client_secret


def token_record_from_response(
    token_response: TokenResponse,
    fallback_refresh_token: Optional[str] = None,
) -> TokenRecord:
    """
    Build the stored record from a token response.

    The provider may omit refresh_token on refresh; the previous one is kept then.
    """
    issued_at_ms = int(token_response.issued_at.timestamp() * 1000)
    return TokenRecord.from_token_payload(
        access_token=token_response.access_token,
        expires_in=token_response.expires_in,
        refresh_token=token_response.refresh_token or fallback_refresh_token,
        issued_at_ms=issued_at_ms,
    )


async def exchange_code_and_store(code: str, repo: Optional[TokenRepository] = None) -> TokenRecord:
    """
    Exchange an authorization code and persist the initial token record.

    Args:
        code: Authorization code from the OAuth callback
        repo: Token repository; the shared one is used when omitted

    Returns:
        TokenRecord: The stored token

    Raises:
        TokenError: If the exchange failed
    """
    repo = repo or get_token_repository()
    settings = get_settings()
    client_id, client_secret = _client_credentials()
    token_response = await exchange_code_for_tokens(
        code=code,
        client_id=client_id,
        redirect_uri=settings.dexcom_redirect_uri,
        client_secret=client_secret,
    )
    record = repo.save(token_record_from_response(token_response))
    logger.info(
        "Dexcom authorization code exchanged",
        extra={"log_type": "token_exchange", "expires_at": record.expires_at},
    )
    return record


async def refresh_dexcom_token(refresh_token: str, repo: Optional[TokenRepository] = None) -> TokenRecord:
    """
    Refresh the access token and persist the new pair.

    Args:
        refresh_token: The current refresh token
        repo: Token repository; the shared one is used when omitted

    Returns:
        TokenRecord: The stored, refreshed token

    Raises:
        TokenError: If the refresh failed; there is no retry at this layer
    """
    repo = repo or get_token_repository()
    client_id, client_secret = _client_credentials()
    logger.info("Refreshing access token", extra={"log_type": "token_refresh"})
    token_response = await refresh_access_token(
        refresh_token=refresh_token,
        client_id=client_id,
        client_secret=client_secret,
    )
    record = repo.save(token_record_from_response(token_response, fallback_refresh_token=refresh_token))
    logger.info(
        "Token refresh successful",
        extra={"log_type": "token_refresh_success", "expires_in": token_response.expires_in},
    )
    return record


async def get_valid_token(
    repo: Optional[TokenRepository] = None,
    buffer_ms: int = EXPIRY_BUFFER_MS,
    at_ms: Optional[int] = None,
) -> Optional[str]:
    """
    Return an access token that is good for at least *buffer_ms*.

    Args:
        repo: Token repository; the shared one is used when omitted
        buffer_ms: Refresh when less than this is left (default 5 minutes)
        at_ms: Current time in epoch milliseconds, for tests

    Returns:
        Optional[str]: The access token, or None when no token is stored

    Raises:
        TokenError: If a needed refresh failed or no refresh token is stored
    """
    repo = repo or get_token_repository()
    token = repo.get()
    if token is None:
        return None

    at_ms = at_ms if at_ms is not None else now_ms()
    if not token.is_expiring(buffer_ms=buffer_ms, at_ms=at_ms):
        return token.access_token.get_secret_value()

    if token.refresh_token is None:
        logger.warning("Access token expiring and no refresh token stored", extra={"log_type": "token_refresh_error"})
        raise TokenError("no_refresh_token", "Stored token cannot be refreshed")

    refreshed = await refresh_dexcom_token(token.refresh_token.get_secret_value(), repo=repo)
    return refreshed.access_token.get_secret_value()


async def require_valid_token(repo: Optional[TokenRepository] = None) -> str:
    """
    Like get_valid_token but raise NotConnectedError instead of returning None.

    Raises:
        NotConnectedError: If no token is stored or it could not be refreshed
    """
    try:
        token = await get_valid_token(repo=repo)
    except TokenError as e:
        raise NotConnectedError(str(e)) from e
    if token is None:
        raise NotConnectedError("Dexcom is not connected")
    return token
