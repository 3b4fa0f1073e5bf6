"""
Environment variable handling for ProofSync configuration.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .settings import (
    AppConfig, BackendChoice, DriveConfig, LogLevel, OAuthConfig,
    StorageConfig, UploadConfig, DEFAULT_ALLOWED_TYPES, DEFAULT_SCOPES,
)


class EnvironmentLoader:
    """Loads configuration from environment variables."""

    @staticmethod
    def load_config(env_file: Optional[str] = None) -> AppConfig:
        """Load configuration from environment variables."""
        # Values already exported in the shell win over the .env file
        load_dotenv(env_file, override=False)

        oauth = OAuthConfig(
            client_id=os.getenv('GOOGLE_OAUTH_CLIENT_ID', ''),
            client_secret=os.getenv('GOOGLE_OAUTH_CLIENT_SECRET', ''),
            redirect_uri=os.getenv(
                'GOOGLE_OAUTH_REDIRECT_URI', 'http://127.0.0.1:8765/oauth/callback'
            ),
            scopes=EnvironmentLoader._parse_list(
                os.getenv('GOOGLE_OAUTH_SCOPES', ''), delimiter=' '
            ) or list(DEFAULT_SCOPES),
            use_pkce=os.getenv('GOOGLE_OAUTH_USE_PKCE', 'true').lower() == 'true',
            request_timeout=float(os.getenv('GOOGLE_OAUTH_TIMEOUT', '10')),
            skew_buffer_seconds=int(os.getenv('PROOFSYNC_SKEW_BUFFER', '300')),
            callback_timeout=float(os.getenv('GOOGLE_OAUTH_CALLBACK_TIMEOUT', '120')),
        )

        drive = DriveConfig(
            folder_id=os.getenv('GOOGLE_DRIVE_FOLDER_ID', ''),
            public_read=os.getenv('GOOGLE_DRIVE_PUBLIC_READ', 'true').lower() == 'true',
        )

        upload = UploadConfig(
            max_file_size=int(os.getenv('PROOFSYNC_MAX_FILE_SIZE', str(10 * 1024 * 1024))),
            allowed_types=EnvironmentLoader._parse_list(
                os.getenv('PROOFSYNC_ALLOWED_TYPES', '')
            ) or list(DEFAULT_ALLOWED_TYPES),
            upload_timeout=float(os.getenv('PROOFSYNC_UPLOAD_TIMEOUT', '60')),
            publish_timeout=float(os.getenv('PROOFSYNC_PUBLISH_TIMEOUT', '30')),
            max_attempts=int(os.getenv('PROOFSYNC_MAX_ATTEMPTS', '3')),
            retry_base_delay=float(os.getenv('PROOFSYNC_RETRY_BASE_DELAY', '1.0')),
            retry_max_delay=float(os.getenv('PROOFSYNC_RETRY_MAX_DELAY', '30.0')),
            max_workers=int(os.getenv('PROOFSYNC_MAX_WORKERS', '1')),
        )

        backend_str = os.getenv('PROOFSYNC_STORAGE_BACKEND', 'auto').lower()
        backend = BackendChoice.AUTO
        try:
            backend = BackendChoice(backend_str)
        except ValueError:
            pass  # Unknown names fall back to auto

        fallback_db = os.getenv('PROOFSYNC_FALLBACK_DB', 'data/fallback.db')
        storage = StorageConfig(
            backend=backend,
            credentials_path=Path(os.getenv('PROOFSYNC_CREDENTIALS_PATH', 'data/credentials.json')),
            encryption_key=os.getenv('PROOFSYNC_TOKEN_ENCRYPTION_KEY') or None,
            keyring_service=os.getenv('PROOFSYNC_KEYRING_SERVICE', 'proofsync'),
            fallback_db_path=Path(fallback_db) if fallback_db else None,
        )

        log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
        log_level = LogLevel.INFO  # default
        try:
            log_level = LogLevel(log_level_str)
        except ValueError:
            pass  # Use default

        log_file = os.getenv('PROOFSYNC_LOG_FILE', 'data/proofsync.log')

        return AppConfig(
            oauth=oauth,
            drive=drive,
            upload=upload,
            storage=storage,
            identity=os.getenv('PROOFSYNC_IDENTITY', 'default'),
            log_level=log_level,
            log_file=Path(log_file) if log_file else None,
        )

    @staticmethod
    def _parse_list(value: str, delimiter: str = ',') -> List[str]:
        """Parse a delimited string into a list."""
        if not value:
            return []
        if delimiter == ' ':
            value = value.replace(',', ' ')
            return [item for item in value.split() if item]
        return [item.strip() for item in value.split(delimiter) if item.strip()]
