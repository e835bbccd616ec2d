"""
Dexcom OAuth2 endpoints: the consent URL and the token endpoint.

Both grant types post a form to /v2/oauth2/token; any non-200 answer or
network failure surfaces as TokenError.
"""
import logging
import urllib.parse
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, Field, ValidationError

from glucose_sync.utils.config import get_settings

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v2/oauth2/token"
LOGIN_PATH = "/v2/oauth2/login"
DEFAULT_SCOPE = ["offline_access"]


class TokenResponse(BaseModel):
    """Body of a successful token endpoint call."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TokenError(Exception):
    """The token endpoint refused the grant or could not be reached."""

    def __init__(self, error: str, error_description: Optional[str] = None, status_code: Optional[int] = None):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        message = f"Token error: {error}"
        if error_description:
            message += f" - {error_description}"
        super().__init__(message)


def build_dexcom_auth_url(
    client_id: str,
    redirect_uri: str,
    state: Optional[str] = None,
    scope: Optional[Union[str, List[str]]] = None,
    base_url: Optional[str] = None,
) -> str:
    """
    URL of the Dexcom consent page for the authorization code flow.

    Args:
        client_id: Registered application id
        redirect_uri: Where Dexcom sends the browser back with ?code=
        state: Opaque value echoed back on the callback
        scope: Space separated string or list; offline_access when omitted
        base_url: Dexcom base URL; the configured one is used when omitted
    """
    base_url = base_url or get_settings().dexcom_base_url

    if scope is None:
        scope = DEFAULT_SCOPE
    elif isinstance(scope, str):
        scope = [s for s in scope.split(" ") if s.strip()]

    params: Dict[str, str] = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scope),
    }
    if state:
        params["state"] = state

    return f"{base_url}{LOGIN_PATH}?{urllib.parse.urlencode(params)}"


async def _request_token(form: Dict[str, str], base_url: Optional[str], action: str) -> TokenResponse:
    settings = get_settings()
    url = f"{base_url or settings.dexcom_base_url}{TOKEN_PATH}"
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "Accept": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout_seconds)) as client:
            response = await client.post(url, data=form, headers=headers)
    except httpx.RequestError as e:
        logger.error(f"Network error during token {action}: {e}", extra={"log_type": "token_error"})
        raise TokenError("network_error", f"Request failed: {e}")

    if response.status_code != 200:
        try:
            body = response.json()
            error = body.get("error", "unknown_error")
            description = body.get("error_description")
        except (ValueError, AttributeError):
            error, description = "invalid_response", f"Received status {response.status_code}"
        logger.error(
            f"Token {action} failed",
            extra={"log_type": "token_error", "status_code": response.status_code, "error": error},
        )
        raise TokenError(error, description, response.status_code)

    try:
        return TokenResponse(**response.json())
    except (ValueError, TypeError, ValidationError) as e:
        logger.error(f"Unreadable token response: {e}", extra={"log_type": "token_error"})
        raise TokenError("invalid_response", f"Unreadable token response: {e}")


async def exchange_code_for_tokens(
    code: str,
    client_id: str,
    redirect_uri: str,
    client_secret: Optional[str] = None,
    base_url: Optional[str] = None,
) -> TokenResponse:
    """
    Trade the callback's authorization code for the first token pair.

    The redirect_uri must match the one used on the consent page.

    Raises:
        TokenError: On a refused grant or a network failure
    """
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
    }
    if client_secret:
        form["client_secret"] = client_secret
    return await _request_token(form, base_url, "exchange")


async def refresh_access_token(
    refresh_token: str,
    client_id: str,
    client_secret: Optional[str] = None,
    base_url: Optional[str] = None,
) -> TokenResponse:
    """Use the refresh_token grant; the response may omit a new refresh token."""
    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    if client_secret:
        form["client_secret"] = client_secret
    return await _request_token(form, base_url, "refresh")
