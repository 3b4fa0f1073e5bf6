"""
Configuration dataclasses for ProofSync.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/drive.file",  # Create/access app files
    "https://www.googleapis.com/auth/userinfo.email",
]

DEFAULT_ALLOWED_TYPES = ["image/jpeg", "image/png"]


class LogLevel(Enum):
    """Supported log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class BackendChoice(Enum):
    """Which credential backend to use."""
    AUTO = "auto"
    KEYRING = "keyring"
    FILE = "file"


@dataclass
class OAuthConfig:
    """OAuth2 client registration and endpoints."""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://127.0.0.1:8765/oauth/callback"
    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    auth_endpoint: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint: str = "https://oauth2.googleapis.com/token"
    revoke_endpoint: str = "https://oauth2.googleapis.com/revoke"
    userinfo_endpoint: str = "https://www.googleapis.com/oauth2/v2/userinfo"
    use_pkce: bool = True
    request_timeout: float = 10.0
    skew_buffer_seconds: int = 300  # Renew 5 minutes before expiry
    callback_timeout: float = 120.0

    def is_configured(self) -> bool:
        """Check if the client identifiers needed for authorization are present."""
        return bool(self.client_id and self.redirect_uri and self.scopes)


@dataclass
class DriveConfig:
    """Remote object store settings."""
    folder_id: str = ""
    upload_endpoint: str = "https://www.googleapis.com/upload/drive/v3/files"
    files_endpoint: str = "https://www.googleapis.com/drive/v3/files"
    public_read: bool = True


@dataclass
class UploadConfig:
    """Limits and retry policy for proof photo uploads."""
    max_file_size: int = 10 * 1024 * 1024  # 10MB limit
    allowed_types: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TYPES))
    upload_timeout: float = 60.0
    publish_timeout: float = 30.0
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_workers: int = 1


@dataclass
class StorageConfig:
    """Credential persistence settings."""
    backend: BackendChoice = BackendChoice.AUTO
    credentials_path: Path = Path("data/credentials.json")
    encryption_key: Optional[str] = None
    keyring_service: str = "proofsync"
    fallback_db_path: Optional[Path] = Path("data/fallback.db")


@dataclass
class AppConfig:
    """Top-level configuration."""
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    drive: DriveConfig = field(default_factory=DriveConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    identity: str = "default"
    log_level: LogLevel = LogLevel.INFO
    log_file: Optional[Path] = Path("data/proofsync.log")
