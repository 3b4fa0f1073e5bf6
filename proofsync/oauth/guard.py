"""
Token guard: owns the valid credential for each identity.

Renews access tokens shortly before they expire, keeps exactly one refresh
in flight per identity and falls back to a full authorization when no
refresh token is available.
"""

import asyncio
import logging
import threading
from datetime import timedelta
from functools import partial
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from ..credentials.store import CredentialStore
from ..exceptions import (
    ProviderError,
    ReauthRequired,
    StorageError,
    TokenExpiredError,
)
from ..models.credential import Credential, Identity
from .client import OAuthClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SKEW_BUFFER = timedelta(minutes=5)

CREDENTIAL_KEY = "google_drive_credential"
IDENTITY_KEY = "google_drive_user_info"


class RefreshLock:
    """
    Table of in-flight refreshes, one per identity.

    The first caller for an identity starts the refresh; everyone arriving
    while it runs awaits the same task. The entry is removed as soon as the
    refresh settles, whatever the outcome.
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}
        self._mutex = threading.Lock()

    def in_flight(self, identity: str) -> bool:
        with self._mutex:
            return identity in self._inflight

    async def run(self, identity: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``factory`` for ``identity`` unless a run is already in flight.

        Args:
            identity: Identity the refresh belongs to
            factory: Coroutine function performing the refresh

        Returns:
            The result of the single shared run
        """
        loop = asyncio.get_running_loop()
        with self._mutex:
            task = self._inflight.get(identity)
            if task is None or task.get_loop() is not loop:
                task = loop.create_task(factory())
                self._inflight[identity] = task
                task.add_done_callback(partial(self._settled, identity))
            else:
                logger.debug(f"Joining in-flight refresh for {identity}")

        # A cancelled waiter must not cancel the shared refresh
        return await asyncio.shield(task)

    async def settle(self, identity: str) -> None:
        """Wait until nothing is in flight for ``identity``, ignoring the outcome."""
        loop = asyncio.get_running_loop()
        while True:
            with self._mutex:
                task = self._inflight.get(identity)
            if task is None or task.get_loop() is not loop:
                return
            logger.debug(f"Waiting for in-flight refresh for {identity} to settle")
            await asyncio.wait({task})

    def _settled(self, identity: str, task: asyncio.Task) -> None:
        with self._mutex:
            if self._inflight.get(identity) is task:
                del self._inflight[identity]
        if not task.cancelled():
            # Mark retrieved; waiters that are still around re-raise it
            task.exception()


_refresh_lock: Optional[RefreshLock] = None


def get_refresh_lock() -> RefreshLock:
    """Get or create the process-wide refresh lock."""
    global _refresh_lock
    if _refresh_lock is None:
        _refresh_lock = RefreshLock()
    return _refresh_lock


class TokenGuard:
    """Hands out valid credentials, renewing them on demand."""

    def __init__(
        self,
        oauth: OAuthClient,
        store: CredentialStore,
        skew_buffer: timedelta = DEFAULT_SKEW_BUFFER,
        authorizer=None,
        refresh_lock: Optional[RefreshLock] = None,
    ):
        """
        Initialize token guard.

        Args:
            oauth: Protocol client
            store: Credential persistence
            skew_buffer: Renew this long before the access token expires
            authorizer: Object with ``async authorize(request)`` running the
                browser step; without one a missing credential raises ReauthRequired
            refresh_lock: Refresh table (defaults to the process-wide one)
        """
        self.oauth = oauth
        self.store = store
        self.skew_buffer = skew_buffer
        self.authorizer = authorizer
        self.refresh_lock = refresh_lock or get_refresh_lock()
        self._credentials: Dict[str, Credential] = {}
        self._identities: Dict[str, Identity] = {}
        # Bumped on sign-out; renewals started under an older value are dropped
        self._generations: Dict[str, int] = {}

    @staticmethod
    def _key(identity: str, name: str) -> str:
        return f"{identity}/{name}"

    def _generation(self, identity: str) -> int:
        return self._generations.get(identity, 0)

    async def _load(self, identity: str) -> Optional[Credential]:
        credential = self._credentials.get(identity)
        if credential is not None:
            return credential

        data = await self.store.get_object(self._key(identity, CREDENTIAL_KEY))
        if not data:
            return None

        credential = Credential.from_dict(data)
        self._credentials[identity] = credential
        return credential

    async def _persist(self, identity: str, credential: Credential, generation: int) -> None:
        if self._generation(identity) != generation:
            logger.info(f"Discarding credential renewed for {identity} after sign-out")
            raise ReauthRequired(f"{identity} was signed out while its credential was renewed")

        self._credentials[identity] = credential
        try:
            await self.store.put_object(self._key(identity, CREDENTIAL_KEY), credential.to_dict())
        except StorageError as e:
            # Still usable for this session
            logger.warning(f"Credential for {identity} not persisted: {e}")

    async def _purge(self, identity: str) -> None:
        self._credentials.pop(identity, None)
        self._identities.pop(identity, None)
        for name in (CREDENTIAL_KEY, IDENTITY_KEY):
            try:
                await self.store.delete(self._key(identity, name))
            except StorageError as e:
                logger.error(f"Failed to purge {name} for {identity}: {e}")

    async def get_valid_credential(self, identity: str) -> Credential:
        """
        Get a credential that stays valid for at least the skew buffer.

        A fresh cached credential is returned without any network call.
        Otherwise a single shared refresh (or authorization) runs.

        Args:
            identity: Identity to get a credential for

        Returns:
            Valid credential

        Raises:
            ReauthRequired: If the grant is gone; stored state has been purged
        """
        credential = await self._load(identity)
        if credential is not None and credential.is_fresh(self.skew_buffer):
            return credential

        return await self.refresh_lock.run(identity, partial(self._renew, identity))

    async def _renew(self, identity: str) -> Credential:
        generation = self._generation(identity)
        # Another run may have renewed it since the caller looked
        credential = await self._load(identity)
        if credential is not None and credential.is_fresh(self.skew_buffer):
            return credential

        if credential is None or not credential.refresh_token:
            logger.info(f"No refresh token for {identity}, starting authorization")
            return await self._authorize(identity)

        logger.info(f"Refreshing access token for {identity}")
        try:
            renewed = await self.oauth.refresh(credential.refresh_token)
        except ReauthRequired:
            await self._purge(identity)
            raise
        except ProviderError as e:
            if e.retryable:
                raise
            await self._purge(identity)
            raise ReauthRequired(
                f"Token refresh rejected with status {e.status}",
                {"status": e.status, "code": e.code},
            ) from e

        await self._persist(identity, renewed, generation)
        return renewed

    async def _authorize(self, identity: str) -> Credential:
        if self.authorizer is None:
            raise ReauthRequired(f"Authorization required for {identity}")

        generation = self._generation(identity)
        request = self.oauth.build_authorization_request()
        result = await self.authorizer.authorize(request)
        code = self.oauth.validate_callback(request, result)
        credential = await self.oauth.exchange_code(
            code,
            request.redirect_uri,
            verifier=request.code_verifier,
            request=request,
        )
        await self._persist(identity, credential, generation)
        logger.info(f"Authorized {identity}")
        return credential

    async def authorize(self, identity: str) -> Credential:
        """Run a fresh authorization, replacing any stored credential."""
        # Joining an in-flight refresh would skip the consent step
        await self.refresh_lock.settle(identity)
        return await self.refresh_lock.run(identity, partial(self._authorize, identity))

    async def invalidate(self, identity: str, access_token: Optional[str] = None) -> None:
        """
        Mark the cached access token as expired so the next call renews it.

        Args:
            identity: Identity whose token was rejected
            access_token: Only invalidate if this is still the current token
        """
        credential = await self._load(identity)
        if credential is None:
            return
        if access_token is not None and credential.access_token != access_token:
            return
        self._credentials[identity] = credential.expired_copy()

    async def call_with_credential(
        self,
        identity: str,
        fn: Callable[[Credential], Awaitable[T]],
    ) -> T:
        """
        Call ``fn`` with a valid credential, renewing and retrying once on 401.

        Args:
            identity: Identity to act as
            fn: Coroutine function taking the credential

        Returns:
            Whatever ``fn`` returns
        """
        credential = await self.get_valid_credential(identity)
        try:
            return await fn(credential)
        except TokenExpiredError:
            logger.info(f"Access token for {identity} rejected, renewing once")
            await self.invalidate(identity, credential.access_token)

        credential = await self.get_valid_credential(identity)
        return await fn(credential)

    async def get_identity(self, identity: str) -> Identity:
        """Get the account behind ``identity``, fetching it once per session."""
        cached = self._identities.get(identity)
        if cached is not None:
            return cached

        data = await self.store.get_object(self._key(identity, IDENTITY_KEY))
        if data:
            account = Identity.from_dict(data)
        else:
            account = await self.call_with_credential(
                identity, lambda credential: self.oauth.fetch_identity(credential.access_token)
            )
            try:
                await self.store.put_object(self._key(identity, IDENTITY_KEY), account.to_dict())
            except StorageError as e:
                logger.warning(f"Identity for {identity} not persisted: {e}")

        self._identities[identity] = account
        return account

    async def save_credential(self, identity: str, credential: Credential) -> None:
        """Store a credential obtained elsewhere. Raises StorageError on failure."""
        await self.store.put_object(self._key(identity, CREDENTIAL_KEY), credential.to_dict())
        self._credentials[identity] = credential

    async def is_authorized(self, identity: str) -> bool:
        credential = await self._load(identity)
        if credential is None:
            return False
        return bool(credential.refresh_token) or credential.is_fresh(self.skew_buffer)

    async def sign_out(self, identity: str) -> bool:
        """
        Revoke at the provider (best effort) and clear everything stored locally.

        A refresh still in flight is allowed to finish first; its result is
        discarded and its waiters get ReauthRequired.

        Returns:
            True if the provider confirmed the revocation
        """
        try:
            credential = await self._load(identity)
        except StorageError as e:
            logger.warning(f"Could not read credential for {identity} during sign-out: {e}")
            credential = None

        self._generations[identity] = self._generation(identity) + 1
        self._credentials.pop(identity, None)
        await self.refresh_lock.settle(identity)

        revoked = False
        if credential is not None:
            # Revoking the refresh token also invalidates its access tokens
            revoked = await self.oauth.revoke(credential.refresh_token or credential.access_token)

        await self._purge(identity)
        try:
            await self.store.clear(prefix=f"{identity}/")
        except StorageError as e:
            logger.error(f"Failed to clear stored entries for {identity}: {e}")

        logger.info(f"Signed out {identity} (revoked={revoked})")
        return revoked
