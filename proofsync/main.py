"""
Application wiring for ProofSync.

Builds the credential store, OAuth client, token guard, Drive client and
upload pipeline from one AppConfig.
"""

import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .config import AppConfig, ConfigValidator, EnvironmentLoader
from .credentials import CredentialStore, select_backend
from .drive import DriveClient, LocalFileResolver, MediaResolver
from .exceptions import ProofSyncError
from .oauth import LoopbackAuthorizer, OAuthClient, TokenGuard
from .upload import SQLiteFallbackRepository, UploadPipeline


def setup_logging(config: AppConfig) -> None:
    """Log to stdout and, when the path is writable, to a file."""
    log_handlers = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        try:
            log_path = Path(config.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handlers.append(logging.FileHandler(str(log_path)))
        except (OSError, PermissionError):
            # File logging not available, use stdout only
            pass

    logging.basicConfig(
        level=config.log_level.value,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=log_handlers,
        force=True,
    )
    # Request lines from httpx would carry Drive file ids at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class ProofSyncApp:
    """Main application class: owns every component for one identity."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
        drive_transport: Optional[httpx.AsyncBaseTransport] = None,
        media: Optional[MediaResolver] = None,
        open_browser: bool = True,
    ):
        self.config = config
        self._oauth_transport = oauth_transport
        self._drive_transport = drive_transport
        self._media = media
        self._open_browser = open_browser

        self.store: Optional[CredentialStore] = None
        self.oauth: Optional[OAuthClient] = None
        self.token_guard: Optional[TokenGuard] = None
        self.drive: Optional[DriveClient] = None
        self.fallback_store: Optional[SQLiteFallbackRepository] = None
        self.pipeline: Optional[UploadPipeline] = None
        self.logger = logging.getLogger(__name__)

    @property
    def identity(self) -> str:
        return self.config.identity

    async def initialize(self, env_file: Optional[str] = None) -> None:
        """
        Load configuration (if not given) and build all components.

        Args:
            env_file: Optional .env file to load
        """
        if self.config is None:
            self.config = EnvironmentLoader.load_config(env_file)

        for error in ConfigValidator.validate_config(self.config):
            self.logger.warning(f"Configuration: {error}")

        self.store = CredentialStore(select_backend(self.config.storage))
        self.oauth = OAuthClient(self.config.oauth, transport=self._oauth_transport)
        self.token_guard = TokenGuard(
            self.oauth,
            self.store,
            skew_buffer=timedelta(seconds=self.config.oauth.skew_buffer_seconds),
            authorizer=LoopbackAuthorizer(self.config.oauth, open_browser=self._open_browser),
        )
        self.drive = DriveClient(
            self.config.drive,
            transport=self._drive_transport,
            timeout=max(self.config.upload.upload_timeout, self.config.upload.publish_timeout),
        )

        if self.config.storage.fallback_db_path:
            self.fallback_store = SQLiteFallbackRepository(self.config.storage.fallback_db_path)
            await self.fallback_store.initialize()

        self.pipeline = UploadPipeline(
            self.config.upload,
            self.drive,
            self.token_guard,
            self._media or LocalFileResolver(),
            identity=self.identity,
            fallback_store=self.fallback_store,
        )
        self.logger.info(f"ProofSync ready (storage={self.store.backend.name})")

    async def close(self) -> None:
        if self.fallback_store is not None:
            await self.fallback_store.close()

    async def __aenter__(self) -> "ProofSyncApp":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def check_folder(self) -> Dict[str, Any]:
        """
        Check that the destination folder is reachable with the stored credential.

        Returns:
            ``folder_accessible`` plus the folder name, or the classified error
        """
        if not self.config.drive.folder_id:
            return {"folder_accessible": False, "folder_error": "GOOGLE_DRIVE_FOLDER_ID is not set"}

        try:
            folder = await self.token_guard.call_with_credential(
                self.identity, lambda credential: self.drive.check_folder(credential.access_token)
            )
        except ProofSyncError as e:
            self.logger.warning(f"Drive folder {self.config.drive.folder_id} is not reachable: {e}")
            result: Dict[str, Any] = {"folder_accessible": False, "folder_error": e.to_dict()}
            code = getattr(e, "status", None)
            if code in (403, 404):
                result["folder_hint"] = (
                    "Folder not found or not shared with this account"
                    if code == 404
                    else "This account cannot access the folder"
                )
            return result

        return {"folder_accessible": True, "folder_name": (folder or {}).get("name")}

    async def status(self) -> Dict[str, Any]:
        """Summarise storage, authorization and pending uploads."""
        status: Dict[str, Any] = {
            "identity": self.identity,
            "storage": self.store.storage_info(),
            "oauth_configured": self.config.oauth.is_configured(),
            "folder_id": self.config.drive.folder_id,
        }

        try:
            status["authorized"] = await self.token_guard.is_authorized(self.identity)
        except ProofSyncError as e:
            status["authorized"] = False
            status["error"] = e.to_dict()

        if status["authorized"]:
            try:
                account = await self.token_guard.get_identity(self.identity)
                status["account"] = account.to_dict()
            except ProofSyncError as e:
                self.logger.warning(f"Could not fetch account details: {e}")
                status["error"] = e.to_dict()

            status.update(await self.check_folder())

        if self.fallback_store is not None:
            pending = await self.fallback_store.list_pending()
            status["pending_uploads"] = len(pending)
            status["retryable_uploads"] = sum(1 for record in pending if record.retryable)

        return status
