"""Models for the stored Dexcom OAuth token."""

import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, SecretStr

# Refresh when the access token has less than this left
EXPIRY_BUFFER_MS = 5 * 60 * 1000


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class TokenRecord(BaseModel):
    """The current access/refresh token pair and its absolute expiry."""

    access_token: SecretStr = Field(..., description="Access token for API calls")
    refresh_token: Optional[SecretStr] = Field(None, description="Refresh token for obtaining new access tokens")
    expires_at: int = Field(..., description="Expiry of the access token in epoch milliseconds")
    updated_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="When the record was last written",
    )

    @classmethod
    def from_token_payload(
        cls,
        access_token: str,
        expires_in: int,
        refresh_token: Optional[str] = None,
        issued_at_ms: Optional[int] = None,
    ) -> "TokenRecord":
        """Build a record from the fields of an OAuth token response."""
        issued = issued_at_ms if issued_at_ms is not None else now_ms()
        return cls(
            access_token=SecretStr(access_token),
            refresh_token=SecretStr(refresh_token) if refresh_token else None,
            expires_at=issued + int(expires_in) * 1000,
        )

    def expires_in_ms(self, at_ms: Optional[int] = None) -> int:
        """Milliseconds until expiry; negative once expired."""
        return self.expires_at - (at_ms if at_ms is not None else now_ms())

    def is_expiring(self, buffer_ms: int = EXPIRY_BUFFER_MS, at_ms: Optional[int] = None) -> bool:
        """True when the token is expired or within *buffer_ms* of expiring."""
        return self.expires_in_ms(at_ms) <= buffer_ms

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at / 1000, tz=timezone.utc)

    def to_state(self) -> dict:
        """Convert to the JSON shape of the token file."""
        return {
            "access_token": self.access_token.get_secret_value(),
            "refresh_token": self.refresh_token.get_secret_value() if self.refresh_token else None,
            "expires_at": self.expires_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_state(cls, data: dict) -> "TokenRecord":
        """Create a TokenRecord from the token file's JSON shape."""
        return cls(
            access_token=SecretStr(data["access_token"]),
            refresh_token=SecretStr(data["refresh_token"]) if data.get("refresh_token") else None,
            expires_at=int(data["expires_at"]),
            updated_at=data.get("updated_at") or datetime.now(timezone.utc).isoformat(),
        )
