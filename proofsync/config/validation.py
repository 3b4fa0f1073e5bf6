"""
Configuration validation for ProofSync.
"""

import re
from typing import List

from .settings import AppConfig, OAuthConfig, UploadConfig


class ConfigValidator:
    """Validates configuration settings."""

    @staticmethod
    def validate_config(config: AppConfig) -> List[str]:
        """Validate the entire configuration."""
        errors = []

        errors.extend(ConfigValidator.validate_oauth(config.oauth))

        if not config.drive.folder_id:
            errors.append("GOOGLE_DRIVE_FOLDER_ID is required")

        errors.extend(ConfigValidator._validate_upload(config.upload))

        if not config.identity:
            errors.append("Identity name must not be empty")

        return errors

    @staticmethod
    def validate_oauth(oauth: OAuthConfig) -> List[str]:
        """Validate the OAuth client registration."""
        errors = []

        if not oauth.client_id:
            errors.append("GOOGLE_OAUTH_CLIENT_ID is required")

        if not oauth.redirect_uri:
            errors.append("GOOGLE_OAUTH_REDIRECT_URI is required")
        elif not ConfigValidator._is_valid_url(oauth.redirect_uri):
            errors.append(f"Invalid redirect URI: {oauth.redirect_uri}")

        if not oauth.scopes:
            errors.append("At least one OAuth scope is required")

        if oauth.request_timeout <= 0:
            errors.append("OAuth request timeout must be positive")

        if oauth.skew_buffer_seconds < 0:
            errors.append("Skew buffer must not be negative")

        return errors

    @staticmethod
    def _validate_upload(upload: UploadConfig) -> List[str]:
        """Validate upload limits and retry policy."""
        errors = []

        if upload.max_file_size <= 0:
            errors.append("Max file size must be positive")

        if not upload.allowed_types:
            errors.append("At least one allowed media type is required")

        for media_type in upload.allowed_types:
            if '/' not in media_type:
                errors.append(f"Invalid media type: {media_type}")

        if upload.upload_timeout <= 0 or upload.publish_timeout <= 0:
            errors.append("Upload and publish timeouts must be positive")

        if upload.max_attempts < 1:
            errors.append("Max attempts must be at least 1")

        if upload.max_workers < 1:
            errors.append("Max workers must be at least 1")

        return errors

    @staticmethod
    def _is_valid_url(url: str) -> bool:
        """Check that a redirect target is an absolute http(s) URL."""
        url_pattern = r'^https?://[a-zA-Z0-9.-]+(?::[0-9]+)?(?:/.*)?$'
        return bool(re.match(url_pattern, url))
