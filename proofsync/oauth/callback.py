"""
Loopback redirect listener for the browser authorization step.

The authorization code is handed back on the redirect URI and resolved in
the same flow that opened the consent page.
"""

import asyncio
import logging
import webbrowser
from typing import Optional
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.responses import HTMLResponse
import uvicorn

from ..config.settings import OAuthConfig
from ..exceptions import AuthorizationDenied, ConfigurationError
from ..models.credential import AuthorizationRequest, AuthorizationResult

logger = logging.getLogger(__name__)

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>ProofSync</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
<h2>{title}</h2>
<p>{message}</p>
<p>You can close this tab.</p>
</body>
</html>
"""


def build_callback_app(callback_path: str, result: "asyncio.Future[AuthorizationResult]") -> FastAPI:
    """
    Build the app serving the redirect URI.

    Args:
        callback_path: Path component of the redirect URI
        result: Future resolved with the first redirect received

    Returns:
        FastAPI application
    """
    app = FastAPI(title="ProofSync OAuth callback", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(callback_path, response_class=HTMLResponse)
    async def oauth_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ):
        if not result.done():
            result.set_result(AuthorizationResult(
                code=code,
                state=state,
                error=error,
                error_description=error_description,
            ))

        if error:
            page = SUCCESS_PAGE.format(
                title="Authorization failed",
                message=error_description or error,
            )
            return HTMLResponse(page, status_code=400)

        return HTMLResponse(SUCCESS_PAGE.format(
            title="Authorization complete",
            message="ProofSync is now connected to Google Drive.",
        ))

    return app


class LoopbackAuthorizer:
    """Opens the consent page and waits for the redirect on a local port."""

    def __init__(self, config: OAuthConfig, open_browser: bool = True):
        self.config = config
        self.open_browser = open_browser

    def _listen_address(self, redirect_uri: str):
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or parsed.hostname not in ("127.0.0.1", "localhost", "::1"):
            raise ConfigurationError(
                f"Redirect URI {redirect_uri} is not a loopback address",
                {"redirect_uri": redirect_uri},
            )
        return parsed.hostname, parsed.port or 80, parsed.path or "/"

    async def authorize(self, request: AuthorizationRequest) -> AuthorizationResult:
        """
        Run the browser step of an authorization.

        Args:
            request: Request built by OAuthClient.build_authorization_request

        Returns:
            Parameters delivered to the redirect URI

        Raises:
            AuthorizationDenied: If no redirect arrives within the callback timeout
        """
        host, port, path = self._listen_address(request.redirect_uri)
        loop = asyncio.get_running_loop()
        result: asyncio.Future = loop.create_future()

        server_config = uvicorn.Config(
            app=build_callback_app(path, result),
            host=host,
            port=port,
            log_level="warning",
            access_log=False,
            loop="asyncio",
        )
        server = uvicorn.Server(server_config)
        server_task = asyncio.create_task(server.serve())
        logger.info(f"Waiting for authorization on http://{host}:{port}{path}")

        try:
            if not self.open_browser or not webbrowser.open(request.url):
                logger.warning("Could not open a browser; open this URL to continue:")
                print(request.url)

            return await asyncio.wait_for(result, timeout=self.config.callback_timeout)
        except asyncio.TimeoutError:
            raise AuthorizationDenied(
                f"No authorization response within {self.config.callback_timeout:.0f}s"
            )
        finally:
            server.should_exit = True
            try:
                await asyncio.wait_for(server_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Callback server shutdown timed out, cancelling task")
                server_task.cancel()
                try:
                    await server_task
                except asyncio.CancelledError:
                    pass
