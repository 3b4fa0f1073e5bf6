"""
OAuth 2.0 protocol operations against the Google identity platform.

The client is stateless: every operation takes what it needs and returns a
value or raises a typed error. Persistence and refresh scheduling belong to
TokenGuard.
"""

import base64
import hashlib
import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from ..config.settings import OAuthConfig
from ..exceptions import (
    AuthorizationDenied,
    ConfigurationError,
    ExchangeError,
    NetworkError,
    ProviderError,
    ReauthRequired,
    RequestTimeoutError,
    TokenExpiredError,
    error_code_from_payload,
    is_reauth_code,
)
from ..models.credential import (
    AuthorizationRequest,
    AuthorizationResult,
    Credential,
    Identity,
)

logger = logging.getLogger(__name__)

_EXCHANGE_MISMATCH_CODES = {"invalid_grant", "redirect_uri_mismatch"}


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge for a PKCE verifier."""
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


class OAuthClient:
    """
    OAuth 2.0 authorization-code client.

    Builds consent URLs, exchanges codes, refreshes and revokes tokens and
    fetches the authenticated identity.
    """

    def __init__(
        self,
        config: OAuthConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize OAuth client.

        Args:
            config: OAuth client registration and endpoints
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.config = config
        self._transport = transport

    def _require_configured(self) -> None:
        missing = []
        if not self.config.client_id:
            missing.append("client_id")
        if not self.config.redirect_uri:
            missing.append("redirect_uri")
        if not self.config.scopes:
            missing.append("scopes")
        if missing:
            raise ConfigurationError(
                f"Google OAuth not configured: missing {', '.join(missing)}",
                {"missing": missing},
            )

    def build_authorization_request(self, redirect_uri: Optional[str] = None) -> AuthorizationRequest:
        """
        Build the consent URL for a new authorization.

        Offline access and forced consent guarantee a refresh token on the
        first authorization.

        Args:
            redirect_uri: Override for the configured redirect URI

        Returns:
            Authorization request with URL, state and PKCE verifier
        """
        self._require_configured()
        redirect_uri = redirect_uri or self.config.redirect_uri

        # State token for CSRF protection
        state = secrets.token_urlsafe(32)

        params: Dict[str, Any] = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "access_type": "offline",  # Get refresh token
            "prompt": "consent",  # Always show consent to get refresh token
            "include_granted_scopes": "true",
            "state": state,
        }

        verifier = None
        if self.config.use_pkce:
            verifier = secrets.token_urlsafe(64)
            params["code_challenge"] = pkce_challenge(verifier)
            params["code_challenge_method"] = "S256"

        url = f"{self.config.auth_endpoint}?{urlencode(params)}"
        logger.debug("Built authorization request")
        return AuthorizationRequest(
            url=url,
            state=state,
            redirect_uri=redirect_uri,
            code_verifier=verifier,
        )

    def validate_callback(self, request: AuthorizationRequest, result: AuthorizationResult) -> str:
        """
        Check a redirect against the request that started it.

        Args:
            request: The pending authorization request
            result: Parameters received on the redirect URI

        Returns:
            The authorization code
        """
        if result.error:
            description = result.error_description or result.error
            if result.error == "access_denied":
                raise AuthorizationDenied(f"Authorization was declined: {description}")
            raise ExchangeError(f"Authorization failed: {description}")

        if request.is_expired():
            raise ExchangeError("Authorization request expired; start again")

        if not result.state or not secrets.compare_digest(result.state, request.state):
            raise ExchangeError("Authorization state mismatch")

        if not result.code:
            raise ExchangeError("Authorization response did not include a code")

        return result.code

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        verifier: Optional[str] = None,
        request: Optional[AuthorizationRequest] = None,
    ) -> Credential:
        """
        Exchange an authorization code for a credential.

        Args:
            code: Authorization code from the callback
            redirect_uri: Redirect URI used for the authorization
            verifier: PKCE verifier, if the request used one
            request: The originating request, checked for redirect/verifier mismatch

        Returns:
            Newly issued credential
        """
        self._require_configured()

        if request is not None:
            if request.redirect_uri != redirect_uri:
                raise ExchangeError("Redirect URI does not match the authorization request")
            if request.code_verifier and request.code_verifier != verifier:
                raise ExchangeError("PKCE verifier does not match the authorization request")

        data = {
            "client_id": self.config.client_id,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        if self.config.client_secret:
            data["client_secret"] = self.config.client_secret
        if verifier:
            data["code_verifier"] = verifier

        response = await self._send("POST", self.config.token_endpoint, data=data)
        payload = self._json(response)

        if response.status_code != 200 or self._has_error(payload):
            code_name = error_code_from_payload(payload)
            status = response.status_code if response.status_code != 200 else 400
            if code_name in _EXCHANGE_MISMATCH_CODES:
                raise ExchangeError(
                    f"Token exchange rejected: {self._describe(payload)}",
                    status=status,
                    payload=payload,
                )
            raise self._provider_error("Token exchange failed", status, payload)

        credential = self._credential_from(payload, response.status_code)
        logger.info("Authorization code exchanged")
        return credential

    async def refresh(self, refresh_token: str) -> Credential:
        """
        Mint a new access token from a refresh token.

        Args:
            refresh_token: The stored refresh token

        Returns:
            New credential; keeps ``refresh_token`` if the provider did not rotate it
        """
        self._require_configured()

        data = {
            "client_id": self.config.client_id,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self.config.client_secret:
            data["client_secret"] = self.config.client_secret

        response = await self._send("POST", self.config.token_endpoint, data=data)
        payload = self._json(response)

        if response.status_code != 200 or self._has_error(payload):
            code_name = error_code_from_payload(payload)
            status = response.status_code if response.status_code != 200 else 400
            if is_reauth_code(code_name):
                logger.warning(f"Refresh token rejected by provider ({code_name})")
                raise ReauthRequired(
                    f"Refresh token is no longer valid: {self._describe(payload)}",
                    {"status": status, "code": code_name},
                )
            raise self._provider_error("Token refresh failed", status, payload)

        credential = self._credential_from(payload, response.status_code, refresh_token)
        logger.info("Access token refreshed")
        return credential

    async def revoke(self, token: str) -> bool:
        """
        Revoke a token at the provider. Best effort: never raises.

        Returns:
            True if the provider confirmed the revocation
        """
        try:
            response = await self._send(
                "POST",
                self.config.revoke_endpoint,
                data={"token": token},
            )
        except NetworkError as e:
            logger.warning(f"Failed to revoke token: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Token revocation returned {response.status_code}")
            return False

        logger.info("Token revoked at provider")
        return True

    async def fetch_identity(self, access_token: str) -> Identity:
        """
        Fetch the account the access token belongs to.

        Raises:
            TokenExpiredError: If the provider rejects the token (401)
        """
        response = await self._send(
            "GET",
            self.config.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        payload = self._json(response)

        if response.status_code == 401:
            raise TokenExpiredError(
                "User info request rejected the access token",
                code=error_code_from_payload(payload),
                payload=payload,
            )
        if response.status_code != 200:
            raise self._provider_error("User info request failed", response.status_code, payload)
        if not isinstance(payload, dict):
            raise ProviderError("User info response was not JSON", response.status_code, "invalid_response")

        return Identity.from_userinfo(payload)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        timeout = httpx.Timeout(self.config.request_timeout)
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Request to {url} timed out") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Unable to reach {url}: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _has_error(payload: Any) -> bool:
        return isinstance(payload, dict) and "error" in payload

    @staticmethod
    def _describe(payload: Any) -> str:
        if isinstance(payload, dict):
            return payload.get("error_description") or str(payload.get("error"))
        return "no details"

    def _provider_error(self, message: str, status: int, payload: Any) -> ProviderError:
        code = error_code_from_payload(payload)
        logger.error(f"{message}: status={status} code={code}")
        return ProviderError(f"{message}: {status} {self._describe(payload)}", status, code, payload)

    @staticmethod
    def _credential_from(
        payload: Any,
        status: int,
        previous_refresh_token: Optional[str] = None,
    ) -> Credential:
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ProviderError(
                "Token response missing access_token", status, "invalid_response", payload
            )
        return Credential.from_token_response(payload, previous_refresh_token)
