"""
Configuration for ProofSync.
"""

from .settings import (
    AppConfig,
    BackendChoice,
    DriveConfig,
    LogLevel,
    OAuthConfig,
    StorageConfig,
    UploadConfig,
)
from .environment import EnvironmentLoader
from .validation import ConfigValidator

__all__ = [
    "AppConfig",
    "BackendChoice",
    "DriveConfig",
    "LogLevel",
    "OAuthConfig",
    "StorageConfig",
    "UploadConfig",
    "EnvironmentLoader",
    "ConfigValidator",
]
