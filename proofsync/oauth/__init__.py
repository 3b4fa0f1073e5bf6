"""
OAuth 2.0 client, loopback authorizer and token guard.
"""

from .callback import LoopbackAuthorizer, build_callback_app
from .client import OAuthClient, pkce_challenge
from .guard import RefreshLock, TokenGuard, get_refresh_lock

__all__ = [
    "LoopbackAuthorizer",
    "build_callback_app",
    "OAuthClient",
    "pkce_challenge",
    "RefreshLock",
    "TokenGuard",
    "get_refresh_lock",
]
