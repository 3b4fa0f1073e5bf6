"""
Google Drive access and local media resolution.
"""

from .client import DriveClient, build_multipart_body
from .media import LocalFileResolver, MediaResolver, sniff_media_type

__all__ = [
    "DriveClient",
    "build_multipart_body",
    "LocalFileResolver",
    "MediaResolver",
    "sniff_media_type",
]
