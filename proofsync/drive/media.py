"""
Local media resolution.

A source ref is an opaque handle to a local photo: a filesystem path, a
``file://`` URI or a ``data:`` URI produced by an in-app camera capture.
"""

import asyncio
import base64
import binascii
import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

from ..exceptions import SourceUnavailable
from ..models.upload import MediaInfo

logger = logging.getLogger(__name__)

_SIGNATURES = [
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
]


def sniff_media_type(head: bytes) -> Optional[str]:
    """Detect an image type from its leading bytes."""
    for signature, media_type in _SIGNATURES:
        if head.startswith(signature):
            return media_type
    return None


class MediaResolver(ABC):
    """Resolves source refs into size, type and bytes."""

    @abstractmethod
    async def stat(self, source_ref: str) -> MediaInfo:
        """
        Get size and media type without reading the whole source.

        Raises:
            SourceUnavailable: If the source cannot be read
        """
        pass

    @abstractmethod
    async def read(self, source_ref: str) -> bytes:
        """
        Read the raw bytes of a source.

        Raises:
            SourceUnavailable: If the source cannot be read
        """
        pass


class LocalFileResolver(MediaResolver):
    """Resolver for local paths, file URIs and data URIs."""

    def _decode_data_uri(self, source_ref: str) -> Tuple[str, bytes]:
        header, sep, data = source_ref.partition(",")
        if not sep:
            raise SourceUnavailable("Malformed data URI", {"source_ref": source_ref[:32]})
        media_type = header[len("data:"):].split(";")[0] or "application/octet-stream"
        try:
            if header.endswith(";base64"):
                return media_type, base64.b64decode(data, validate=True)
            return media_type, unquote(data).encode()
        except (binascii.Error, ValueError) as e:
            raise SourceUnavailable("Data URI payload is not valid base64") from e

    @staticmethod
    def _path(source_ref: str) -> Path:
        if source_ref.startswith("file://"):
            return Path(unquote(urlparse(source_ref).path))
        return Path(source_ref).expanduser()

    def _stat_file(self, path: Path) -> MediaInfo:
        try:
            size = path.stat().st_size
            with open(path, "rb") as f:
                head = f.read(16)
        except OSError as e:
            raise SourceUnavailable(f"Cannot read {path}: {e.strerror or e}") from e

        media_type = (
            sniff_media_type(head)
            or mimetypes.guess_type(str(path))[0]
            or "application/octet-stream"
        )
        return MediaInfo(size=size, media_type=media_type)

    async def stat(self, source_ref: str) -> MediaInfo:
        if source_ref.startswith("data:"):
            media_type, data = self._decode_data_uri(source_ref)
            return MediaInfo(size=len(data), media_type=media_type)

        path = self._path(source_ref)
        if not path.is_file():
            raise SourceUnavailable(f"Source not found: {path}", {"source_ref": source_ref})
        return await asyncio.to_thread(self._stat_file, path)

    async def read(self, source_ref: str) -> bytes:
        if source_ref.startswith("data:"):
            return self._decode_data_uri(source_ref)[1]

        path = self._path(source_ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise SourceUnavailable(f"Cannot read {path}: {e.strerror or e}") from e
