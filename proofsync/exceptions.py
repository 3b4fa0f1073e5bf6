"""
Error taxonomy for the credential and upload subsystem.

Every error is classified where it is raised: callers read ``kind`` and
``retryable`` instead of inspecting message text.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Classification carried by errors and local fallback records."""
    CONFIGURATION = "configuration"
    AUTHORIZATION_DENIED = "authorization_denied"
    NETWORK = "network"
    TIMEOUT = "timeout"
    PROVIDER = "provider"
    TOKEN_EXPIRED = "token_expired"
    REAUTH_REQUIRED = "reauth_required"
    EXCHANGE = "exchange"
    VALIDATION = "validation"
    SOURCE_UNAVAILABLE = "source_unavailable"
    STORAGE = "storage"
    CANCELLED = "cancelled"
    INVALID_TRANSITION = "invalid_transition"
    INTERNAL = "internal"


class ProofSyncError(Exception):
    """Base class for all errors raised by proofsync."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ConfigurationError(ProofSyncError):
    """Required configuration is missing or invalid. Raised before any network call."""
    kind = ErrorKind.CONFIGURATION


class AuthorizationDenied(ProofSyncError):
    """The user declined consent (or never answered the consent prompt)."""
    kind = ErrorKind.AUTHORIZATION_DENIED


class NetworkError(ProofSyncError):
    """Transport-level failure talking to the provider."""
    kind = ErrorKind.NETWORK
    retryable = True


class RequestTimeoutError(NetworkError):
    """A single network call exceeded its time budget."""
    kind = ErrorKind.TIMEOUT


class ProviderError(ProofSyncError):
    """Non-2xx response from the provider.

    Retryable only for server errors and rate limiting.
    """
    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str,
        status: int,
        code: Optional[str] = None,
        payload: Any = None,
    ):
        super().__init__(message, {"status": status, "code": code})
        self.status = status
        self.code = code
        self.payload = payload

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status >= 500 or self.status == 429


class TokenExpiredError(ProviderError):
    """The provider rejected the access token (HTTP 401)."""
    kind = ErrorKind.TOKEN_EXPIRED

    def __init__(self, message: str = "Access token rejected", code: Optional[str] = None,
                 payload: Any = None):
        super().__init__(message, status=401, code=code, payload=payload)


class ReauthRequired(ProofSyncError):
    """The refresh token is invalid or revoked; a new authorization is needed."""
    kind = ErrorKind.REAUTH_REQUIRED


class ExchangeError(ProofSyncError):
    """Authorization code exchange failed (redirect, verifier or state mismatch)."""
    kind = ErrorKind.EXCHANGE

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message, {"status": status} if status else None)
        self.status = status
        self.payload = payload


class ValidationError(ProofSyncError):
    """The input cannot be uploaded as given; the caller must change it."""
    kind = ErrorKind.VALIDATION


class SourceUnavailable(ProofSyncError):
    """The local media referenced by a source ref cannot be read."""
    kind = ErrorKind.SOURCE_UNAVAILABLE


class StorageError(ProofSyncError):
    """Credential backend I/O failed; the value must be treated as not persisted."""
    kind = ErrorKind.STORAGE


class UploadCancelled(ProofSyncError):
    """The upload was cancelled by the caller."""
    kind = ErrorKind.CANCELLED


class InvalidTransition(ProofSyncError):
    """An upload task was asked to move to a state it cannot reach."""
    kind = ErrorKind.INVALID_TRANSITION


_REAUTH_CODES = {"invalid_grant", "invalid_token", "unauthorized_client"}


def error_code_from_payload(payload: Any) -> Optional[str]:
    """Extract the provider error code from an OAuth or Google API error body."""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        # Google API style: {"error": {"code": 403, "status": "PERMISSION_DENIED", ...}}
        status = error.get("status")
        if status:
            return str(status)
        errors = error.get("errors") or []
        if errors and isinstance(errors[0], dict):
            return errors[0].get("reason")
    return None


def is_reauth_code(code: Optional[str]) -> bool:
    """Whether an OAuth error code means the grant itself is gone."""
    return code in _REAUTH_CODES
