"""
Upload pipeline and local fallback ledger.
"""

from .fallback import FallbackRepository, SQLiteFallbackRepository
from .pipeline import UploadPipeline, build_remote_name, encode_payload

__all__ = [
    "FallbackRepository",
    "SQLiteFallbackRepository",
    "UploadPipeline",
    "build_remote_name",
    "encode_payload",
]
