"""
Tests for the token guard and the single-flight refresh lock.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from proofsync.credentials import CredentialStore, FileBackend
from proofsync.exceptions import (
    ProviderError,
    ReauthRequired,
    StorageError,
    TokenExpiredError,
)
from proofsync.models import AuthorizationResult, Credential, utc_now
from proofsync.oauth import OAuthClient, RefreshLock, TokenGuard
from proofsync.oauth.guard import CREDENTIAL_KEY

from tests.unit.fakes import RecordingHandler, error_response, token_response, unexpected


IDENTITY = "default"
STORED_KEY = f"{IDENTITY}/{CREDENTIAL_KEY}"


def stale_credential(refresh_token="refresh-1"):
    # Inside the 5 minute skew buffer
    return Credential(
        access_token="stale",
        refresh_token=refresh_token,
        expires_at=utc_now() + timedelta(minutes=2),
    )


def fresh_credential():
    return Credential(
        access_token="fresh",
        refresh_token="refresh-1",
        expires_at=utc_now() + timedelta(hours=1),
    )


class FakeAuthorizer:
    """Answers the consent step as if the user approved it."""

    def __init__(self, error=None):
        self.error = error
        self.requests = []

    async def authorize(self, request):
        self.requests.append(request)
        if self.error:
            return AuthorizationResult(error=self.error, state=request.state)
        return AuthorizationResult(code="auth-code", state=request.state)


class FailingWriteBackend(FileBackend):
    async def write(self, key, value):
        raise StorageError("disk full")


def make_guard(tmp_path, oauth_config, refresh_lock, responder=unexpected, authorizer=None,
               backend=None):
    handler = RecordingHandler(responder)
    oauth = OAuthClient(oauth_config, transport=handler.transport())
    store = CredentialStore(backend or FileBackend(tmp_path / "credentials.json"))
    guard = TokenGuard(oauth, store, authorizer=authorizer, refresh_lock=refresh_lock)
    return guard, store, handler


class TestGetValidCredential:
    """Tests for TokenGuard.get_valid_credential."""

    @pytest.mark.asyncio
    async def test_fresh_credential_needs_no_network(self, tmp_path, oauth_config, refresh_lock):
        guard, store, handler = make_guard(tmp_path, oauth_config, refresh_lock)
        await store.put_object(STORED_KEY, fresh_credential().to_dict())

        credential = await guard.get_valid_credential(IDENTITY)

        assert credential.access_token == "fresh"
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_stale_credential_is_refreshed_and_persisted(self, tmp_path, oauth_config, refresh_lock):
        guard, store, handler = make_guard(
            tmp_path, oauth_config, refresh_lock, lambda request: token_response("access-2")
        )
        await store.put_object(STORED_KEY, stale_credential().to_dict())

        credential = await guard.get_valid_credential(IDENTITY)

        assert credential.access_token == "access-2"
        assert credential.refresh_token == "refresh-1"
        assert handler.calls == 1

        reloaded = CredentialStore(FileBackend(tmp_path / "credentials.json"))
        stored = Credential.from_dict(await reloaded.get_object(STORED_KEY))
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, tmp_path, oauth_config, refresh_lock):
        async def slow_token(request):
            await asyncio.sleep(0.05)
            return token_response("access-2")

        guard, store, handler = make_guard(tmp_path, oauth_config, refresh_lock, slow_token)
        await store.put_object(STORED_KEY, stale_credential().to_dict())

        results = await asyncio.gather(*[guard.get_valid_credential(IDENTITY) for _ in range(10)])

        assert handler.calls == 1
        assert {credential.access_token for credential in results} == {"access-2"}
        assert not refresh_lock.in_flight(IDENTITY)

    @pytest.mark.asyncio
    async def test_invalid_grant_purges_and_is_not_retried(self, tmp_path, oauth_config, refresh_lock):
        guard, store, handler = make_guard(
            tmp_path, oauth_config, refresh_lock, lambda request: error_response("invalid_grant")
        )
        await store.put_object(STORED_KEY, stale_credential().to_dict())

        with pytest.raises(ReauthRequired):
            await guard.get_valid_credential(IDENTITY)

        assert await store.get(STORED_KEY) is None

        with pytest.raises(ReauthRequired):
            await guard.get_valid_credential(IDENTITY)
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_reauth_reaches_every_waiter(self, tmp_path, oauth_config, refresh_lock):
        async def revoked(request):
            await asyncio.sleep(0.02)
            return error_response("invalid_grant")

        guard, store, handler = make_guard(tmp_path, oauth_config, refresh_lock, revoked)
        await store.put_object(STORED_KEY, stale_credential().to_dict())

        results = await asyncio.gather(
            *[guard.get_valid_credential(IDENTITY) for _ in range(5)], return_exceptions=True
        )

        assert handler.calls == 1
        assert all(isinstance(result, ReauthRequired) for result in results)

    @pytest.mark.asyncio
    async def test_client_error_on_refresh_becomes_reauth(self, tmp_path, oauth_config, refresh_lock):
        guard, store, _ = make_guard(
            tmp_path, oauth_config, refresh_lock, lambda request: error_response("invalid_request")
        )
        await store.put_object(STORED_KEY, stale_credential().to_dict())

        with pytest.raises(ReauthRequired):
            await guard.get_valid_credential(IDENTITY)
        assert await store.get(STORED_KEY) is None

    @pytest.mark.asyncio
    async def test_server_error_keeps_credential(self, tmp_path, oauth_config, refresh_lock):
        guard, store, _ = make_guard(
            tmp_path, oauth_config, refresh_lock, lambda request: httpx.Response(503)
        )
        await store.put_object(STORED_KEY, stale_credential().to_dict())

        with pytest.raises(ProviderError) as exc_info:
            await guard.get_valid_credential(IDENTITY)

        assert exc_info.value.retryable is True
        assert await store.get(STORED_KEY) is not None

    @pytest.mark.asyncio
    async def test_no_refresh_token_runs_authorization(self, tmp_path, oauth_config, refresh_lock):
        authorizer = FakeAuthorizer()
        guard, store, handler = make_guard(
            tmp_path,
            oauth_config,
            refresh_lock,
            lambda request: token_response("access-1", "refresh-1"),
            authorizer=authorizer,
        )

        credential = await guard.get_valid_credential(IDENTITY)

        assert credential.refresh_token == "refresh-1"
        assert len(authorizer.requests) == 1
        assert handler.form()["grant_type"] == "authorization_code"
        assert handler.form()["code"] == "auth-code"
        assert handler.form()["code_verifier"] == authorizer.requests[0].code_verifier
        assert await store.get_object(STORED_KEY) is not None

    @pytest.mark.asyncio
    async def test_no_credential_without_authorizer(self, tmp_path, oauth_config, refresh_lock):
        guard, _, handler = make_guard(tmp_path, oauth_config, refresh_lock)

        with pytest.raises(ReauthRequired):
            await guard.get_valid_credential(IDENTITY)
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_unpersisted_credential_is_still_returned(self, tmp_path, oauth_config, refresh_lock):
        guard, _, _ = make_guard(
            tmp_path,
            oauth_config,
            refresh_lock,
            lambda request: token_response("access-1", "refresh-1"),
            authorizer=FakeAuthorizer(),
            backend=FailingWriteBackend(tmp_path / "credentials.json"),
        )

        credential = await guard.get_valid_credential(IDENTITY)

        assert credential.access_token == "access-1"


class TestCallWithCredential:
    """Tests for the transparent refresh-and-retry on 401."""

    @pytest.mark.asyncio
    async def test_retries_once_after_rejection(self, tmp_path, oauth_config, refresh_lock):
        guard, store, handler = make_guard(
            tmp_path, oauth_config, refresh_lock, lambda request: token_response("access-2")
        )
        await store.put_object(STORED_KEY, fresh_credential().to_dict())
        seen = []

        async def call(credential):
            seen.append(credential.access_token)
            if credential.access_token == "fresh":
                raise TokenExpiredError()
            return "ok"

        result = await guard.call_with_credential(IDENTITY, call)

        assert result == "ok"
        assert seen == ["fresh", "access-2"]
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_second_rejection_propagates(self, tmp_path, oauth_config, refresh_lock):
        guard, store, handler = make_guard(
            tmp_path, oauth_config, refresh_lock, lambda request: token_response("access-2")
        )
        await store.put_object(STORED_KEY, fresh_credential().to_dict())

        async def call(credential):
            raise TokenExpiredError()

        with pytest.raises(TokenExpiredError):
            await guard.call_with_credential(IDENTITY, call)
        assert handler.calls == 1


class TestIdentityAndSignOut:
    """Tests for identity caching and sign-out."""

    @pytest.mark.asyncio
    async def test_identity_fetched_once(self, tmp_path, oauth_config, refresh_lock):
        guard, store, handler = make_guard(
            tmp_path,
            oauth_config,
            refresh_lock,
            lambda request: httpx.Response(200, json={"id": "42", "email": "member@club.org"}),
        )
        await store.put_object(STORED_KEY, fresh_credential().to_dict())

        first = await guard.get_identity(IDENTITY)
        second = await guard.get_identity(IDENTITY)

        assert first == second
        assert first.email == "member@club.org"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_sign_out_revokes_and_clears(self, tmp_path, oauth_config, refresh_lock):
        guard, store, handler = make_guard(
            tmp_path, oauth_config, refresh_lock, lambda request: httpx.Response(200)
        )
        await store.put_object(STORED_KEY, fresh_credential().to_dict())
        await store.put("other-identity/google_drive_credential", "{}")

        revoked = await guard.sign_out(IDENTITY)

        assert revoked is True
        assert handler.form()["token"] == "refresh-1"
        assert await store.list_known_keys() == {"other-identity/google_drive_credential"}
        assert await guard.is_authorized(IDENTITY) is False

    @pytest.mark.asyncio
    async def test_sign_out_clears_even_if_revoke_fails(self, tmp_path, oauth_config, refresh_lock):
        def offline(request):
            raise httpx.ConnectError("offline", request=request)

        guard, store, _ = make_guard(tmp_path, oauth_config, refresh_lock, offline)
        await store.put_object(STORED_KEY, fresh_credential().to_dict())

        assert await guard.sign_out(IDENTITY) is False
        assert await store.get(STORED_KEY) is None

    @pytest.mark.asyncio
    async def test_sign_out_discards_refresh_in_flight(self, tmp_path, oauth_config, refresh_lock):
        release = asyncio.Event()

        async def endpoints(request):
            if request.url.path == "/token":
                await release.wait()
                return token_response("access-2")
            return httpx.Response(200)

        guard, store, handler = make_guard(tmp_path, oauth_config, refresh_lock, endpoints)
        await store.put_object(STORED_KEY, stale_credential().to_dict())

        refreshing = asyncio.create_task(guard.get_valid_credential(IDENTITY))
        while handler.calls == 0:
            await asyncio.sleep(0)
        signing_out = asyncio.create_task(guard.sign_out(IDENTITY))
        await asyncio.sleep(0.01)
        release.set()

        assert await signing_out is True
        with pytest.raises(ReauthRequired):
            await refreshing

        assert await store.list_known_keys() == set()
        assert await guard.is_authorized(IDENTITY) is False
        assert [request.url.path for request in handler.requests] == ["/token", "/revoke"]

    @pytest.mark.asyncio
    async def test_authorize_waits_for_refresh_then_runs_consent(self, tmp_path, oauth_config, refresh_lock):
        release = asyncio.Event()

        async def endpoints(request):
            if b"grant_type=refresh_token" in request.content:
                await release.wait()
                return token_response("refreshed")
            return token_response("authorized", "refresh-2")

        authorizer = FakeAuthorizer()
        guard, store, handler = make_guard(
            tmp_path, oauth_config, refresh_lock, endpoints, authorizer=authorizer
        )
        await store.put_object(STORED_KEY, stale_credential().to_dict())

        refreshing = asyncio.create_task(guard.get_valid_credential(IDENTITY))
        while handler.calls == 0:
            await asyncio.sleep(0)
        authorizing = asyncio.create_task(guard.authorize(IDENTITY))
        await asyncio.sleep(0.01)
        release.set()

        assert (await refreshing).access_token == "refreshed"
        credential = await authorizing

        assert credential.access_token == "authorized"
        assert credential.refresh_token == "refresh-2"
        assert len(authorizer.requests) == 1
        stored = Credential.from_dict(await store.get_object(STORED_KEY))
        assert stored.access_token == "authorized"


class TestRefreshLock:
    """Tests for the single-flight table itself."""

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_refresh(self, refresh_lock):
        started = asyncio.Event()
        release = asyncio.Event()
        runs = []

        async def refresh():
            runs.append(1)
            started.set()
            await release.wait()
            return "token"

        first = asyncio.create_task(refresh_lock.run(IDENTITY, refresh))
        await started.wait()
        second = asyncio.create_task(refresh_lock.run(IDENTITY, refresh))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        release.set()
        assert await second == "token"
        assert runs == [1]

    @pytest.mark.asyncio
    async def test_entry_removed_after_failure(self, refresh_lock):
        async def boom():
            raise RuntimeError("refresh failed")

        with pytest.raises(RuntimeError):
            await refresh_lock.run(IDENTITY, boom)

        await asyncio.sleep(0)
        assert not refresh_lock.in_flight(IDENTITY)
