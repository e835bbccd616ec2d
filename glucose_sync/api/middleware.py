"""HTTP middlewares: request IDs, request logging and basic auth for /metrics."""

import base64
import binascii
import logging
import secrets
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.status import HTTP_401_UNAUTHORIZED

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to track and propagate a unique request ID for each request.
    Adds X-Request-ID to response headers and attaches to request.state.
    """
    async def dispatch(self, request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, path, status and duration of every request."""

    async def dispatch(self, request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} {response.status_code}",
            extra={
                "log_type": "request",
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
                "request_id": getattr(request.state, "request_id", None),
            }
        )
        return response


class MetricsAuthMiddleware:
    """
    ASGI wrapper requiring HTTP basic auth in front of the metrics app.
    Without a configured username the wrapped app is served openly.
    """
    def __init__(self, app, username: Optional[str], password: Optional[str]):
        self.app = app
        self.username = username
        self.password = password or ""

    def _authorized(self, auth_header: Optional[bytes]) -> bool:
        if not auth_header or not auth_header.startswith(b"Basic "):
            return False
        try:
            decoded = base64.b64decode(auth_header.split(b" ", 1)[1]).decode()
            username, password = decoded.split(":", 1)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return False
        return secrets.compare_digest(username, self.username) and secrets.compare_digest(password, self.password)

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and self.username:
            headers = dict(scope.get("headers") or [])
            if not self._authorized(headers.get(b"authorization")):
                response = Response(
                    status_code=HTTP_401_UNAUTHORIZED,
                    headers={"WWW-Authenticate": "Basic"},
                )
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)
