"""
Data models for ProofSync.
"""

from .credential import (
    AuthorizationRequest,
    AuthorizationResult,
    Credential,
    Identity,
    utc_now,
)
from .upload import (
    CANCELLABLE_STATES,
    EncodedPayload,
    LocalFallbackRecord,
    MediaInfo,
    RemoteRef,
    UploadState,
    UploadTask,
)

__all__ = [
    # Credentials
    'AuthorizationRequest',
    'AuthorizationResult',
    'Credential',
    'Identity',
    'utc_now',

    # Uploads
    'CANCELLABLE_STATES',
    'EncodedPayload',
    'LocalFallbackRecord',
    'MediaInfo',
    'RemoteRef',
    'UploadState',
    'UploadTask',
]
