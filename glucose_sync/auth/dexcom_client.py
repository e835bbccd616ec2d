import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from glucose_sync.metrics import (
    dexcom_api_call_latency_seconds,
    dexcom_api_call_total,
    dexcom_api_retries_total,
)
from glucose_sync.utils.logging_utils import redact_sensitive_data
from glucose_sync.utils.normalization import format_dexcom_time

T = TypeVar('T')

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429}


class DexcomAPIError(Exception):
    """Raised when a Dexcom API call fails for good."""

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: Optional[str] = None):
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class DexcomAuthError(DexcomAPIError):
    """Raised when Dexcom rejects the access token (HTTP 401)."""


def is_retryable(error: Exception) -> bool:
    """
    Retry on network problems and on 429/5xx responses.
    Other 4xx responses are final.
    """
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status in RETRYABLE_STATUS_CODES or 500 <= status < 600
    return False


async def fetch_with_retry(
    request: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay_ms: int = 500,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    endpoint: str = "unknown",
) -> T:
    """
    Call *request* up to *attempts* times with exponential backoff.

    After failed attempt n the loop waits ``base_delay_ms * 2**(n-1)`` ms.
    Non-retryable errors and the last failure propagate unchanged.
    """
    attempts = max(1, attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await request()
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            if not is_retryable(e) or attempt >= attempts:
                raise
            delay_ms = base_delay_ms * (2 ** (attempt - 1))
            dexcom_api_retries_total.labels(endpoint=endpoint).inc()
            logger.warning(
                "Retrying Dexcom API call",
                extra={
                    "log_type": "retry",
                    "attempt": attempt,
                    "endpoint": endpoint,
                    "error": str(e),
                    "delay_ms": delay_ms,
                }
            )
            await sleep(delay_ms / 1000)


def extract_records(payload: Any, api_version: str, v2_key: str) -> List[Dict[str, Any]]:
    """
    Pull the record list out of an egvs/events response.
    v3 responses use "records"; v2 responses use "egvs" or "events".
    """
    if not isinstance(payload, dict):
        return []
    primary, fallback = ("records", v2_key) if api_version == "v3" else (v2_key, "records")
    records = payload.get(primary)
    if records is None:
        records = payload.get(fallback)
    return list(records or [])


class DexcomApiClient:
    """
    Dexcom API client: authenticated GETs retried on transient errors,
    with request/response logging (tokens redacted) and Prometheus metrics.
    The access token is passed per call; token storage lives in auth.tokens.
    """
    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        base_delay_ms: int = 500,
        timeout_seconds: float = 30,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the Dexcom API client.
        :param base_url: Dexcom API base URL (sandbox or production)
        :param max_retries: Total attempts per request
        :param base_delay_ms: Base delay for exponential backoff
        :param timeout_seconds: HTTP timeout
        :param http_client: Optional preconfigured httpx client
        :param sleep: Awaitable sleep used between retries
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def get(self, path: str, access_token: str, params: Optional[dict] = None, correlation_id: str = None) -> Any:
        """
        Perform an authenticated GET request to the Dexcom API and return the JSON body.
        Raises DexcomAuthError on 401 and DexcomAPIError on any other final failure.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        logger.info(
            "Dexcom API request",
            extra={
                "log_type": "request",
                "correlation_id": correlation_id,
                "method": "GET",
                "url": url,
                "headers": redact_sensitive_data(headers),
                "params": params,
            }
        )

        async def do_get():
            response = await self._client.get(url, params=params, headers=headers)
            response.raise_for_status()
            return response

        start_time = time.monotonic()
        status = "error"
        try:
            response = await fetch_with_retry(
                do_get,
                attempts=self.max_retries,
                base_delay_ms=self.base_delay_ms,
                sleep=self._sleep,
                endpoint=path,
            )
            status = "success"
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            logger.error(
                "Dexcom API error response",
                extra={
                    "log_type": "response_error",
                    "correlation_id": correlation_id,
                    "url": url,
                    "status_code": code,
                    "body": e.response.text[:500],
                }
            )
            error_cls = DexcomAuthError if code == 401 else DexcomAPIError
            raise error_cls(f"Dexcom API returned {code} for {path}", status_code=code, endpoint=path) from e
        except httpx.TransportError as e:
            logger.error(
                "Dexcom API request failed",
                extra={"log_type": "response_error", "correlation_id": correlation_id, "url": url, "error": str(e)}
            )
            raise DexcomAPIError(f"Dexcom API request to {path} failed: {e}", endpoint=path) from e
        finally:
            latency = time.monotonic() - start_time
            dexcom_api_call_latency_seconds.labels(endpoint=path).observe(latency)
            dexcom_api_call_total.labels(endpoint=path, status=status).inc()

        logger.info(
            "Dexcom API response",
            extra={
                "log_type": "response",
                "correlation_id": correlation_id,
                "url": url,
                "status_code": response.status_code,
                "latency": round(time.monotonic() - start_time, 3),
            }
        )
        return response.json()

    async def get_data_range(self, access_token: str) -> Dict[str, Any]:
        """
        Fetch the provider's dataRange: egvs.start/end systemTime of the user's data.
        dataRange is read from the v2 API.
        """
        return await self.get("/v2/users/self/dataRange", access_token)

    @staticmethod
    def _window_params(start: datetime, end: datetime) -> Dict[str, str]:
        if end <= start:
            raise ValueError(f"Window end {end} must be after start {start}")
        return {"startDate": format_dexcom_time(start), "endDate": format_dexcom_time(end)}

    async def get_egvs(self, access_token: str, start: datetime, end: datetime, api_version: str = "v3") -> List[Dict[str, Any]]:
        """Fetch estimated glucose values between start and end."""
        params = self._window_params(start, end)
        payload = await self.get(f"/{api_version}/users/self/egvs", access_token, params=params)
        return extract_records(payload, api_version, "egvs")

    async def get_events(self, access_token: str, start: datetime, end: datetime, api_version: str = "v3") -> List[Dict[str, Any]]:
        """Fetch user-entered events (carbs, insulin, exercise...) between start and end."""
        params = self._window_params(start, end)
        payload = await self.get(f"/{api_version}/users/self/events", access_token, params=params)
        return extract_records(payload, api_version, "events")
