"""
Credential and identity models.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


DEFAULT_EXPIRES_IN = 3600
STATE_TTL = timedelta(minutes=10)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds, as older installs stored the expiry
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Credential:
    """An OAuth2 credential for one identity.

    The refresh token survives access-token rotations: a refresh response
    without a new refresh token keeps the previous one.
    """
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: str = ""

    def is_fresh(self, skew: timedelta, now: Optional[datetime] = None) -> bool:
        """Whether the access token is usable for at least ``skew`` longer."""
        now = now or utc_now()
        return bool(self.access_token) and now < (self.expires_at - skew)

    def expired_copy(self) -> "Credential":
        """Same credential, marked as already expired (forces a renewal)."""
        return replace(self, expires_at=utc_now() - timedelta(seconds=1))

    @classmethod
    def from_token_response(
        cls,
        data: Dict[str, Any],
        previous_refresh_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Credential":
        """Build a credential from a token endpoint JSON body."""
        now = now or utc_now()
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN
        return cls(
            access_token=data["access_token"],
            expires_at=now + timedelta(seconds=int(expires_in)),
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        expires_at = _parse_datetime(data.get("expires_at"))
        return cls(
            access_token=data.get("access_token", ""),
            # A record without expiry is treated as already expired
            expires_at=expires_at or datetime.fromtimestamp(0, tz=timezone.utc),
            refresh_token=data.get("refresh_token") or None,
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", ""),
        )

    def __repr__(self) -> str:
        return (
            f"Credential(token_type={self.token_type!r}, "
            f"expires_at={self.expires_at.isoformat()}, "
            f"has_refresh_token={bool(self.refresh_token)})"
        )


@dataclass(frozen=True)
class Identity:
    """The authenticated account, as reported by the provider."""
    id: str
    email: str
    display_name: str = ""

    @classmethod
    def from_userinfo(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            id=str(data.get("id") or data.get("sub") or ""),
            email=data.get("email", ""),
            display_name=data.get("name") or data.get("given_name") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "display_name": self.display_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            id=data.get("id", ""),
            email=data.get("email", ""),
            display_name=data.get("display_name", ""),
        )


@dataclass
class AuthorizationRequest:
    """A pending authorization: the URL to open and what the callback must match."""
    url: str
    state: str
    redirect_uri: str
    code_verifier: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def is_expired(self) -> bool:
        """State tokens expire after 10 minutes."""
        return utc_now() > (self.created_at + STATE_TTL)


@dataclass
class AuthorizationResult:
    """Query parameters delivered to the redirect URI."""
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
