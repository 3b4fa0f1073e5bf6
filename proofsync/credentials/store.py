"""
Durable key/value persistence for secrets.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from ..exceptions import StorageError
from .backends import BackendKind, FileBackend, StorageBackend

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Key/value store for credentials over a single storage backend.

    All access is serialised; a failed write raises StorageError and must be
    treated as "not persisted".
    """

    def __init__(self, backend: StorageBackend):
        """
        Initialize credential store.

        Args:
            backend: Backend selected at startup
        """
        self.backend = backend
        self._lock = asyncio.Lock()

    @property
    def backend_kind(self) -> BackendKind:
        return self.backend.kind

    @property
    def is_secure(self) -> bool:
        """Whether secrets are held by a hardware/OS-backed secure store."""
        return self.backend.kind == BackendKind.SECURE

    def storage_info(self) -> Dict[str, Any]:
        """Describe the active backend."""
        info: Dict[str, Any] = {
            "backend": self.backend.name,
            "kind": self.backend.kind.value,
            "is_secure": self.is_secure,
        }
        if isinstance(self.backend, FileBackend):
            info["path"] = str(self.backend.path)
            info["encrypted"] = self.backend.encrypted
        return info

    async def put(self, key: str, value: str) -> None:
        async with self._lock:
            await self.backend.write(key, value)
        logger.debug(f"Stored {key} in {self.backend.name} backend")

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return await self.backend.read(key)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            deleted = await self.backend.remove(key)
        if deleted:
            logger.debug(f"Deleted {key} from {self.backend.name} backend")
        return deleted

    async def list_known_keys(self) -> Set[str]:
        async with self._lock:
            return await self.backend.keys()

    async def put_object(self, key: str, value: Dict[str, Any]) -> None:
        """Store a structured value as JSON."""
        await self.put(key, json.dumps(value))

    async def get_object(self, key: str) -> Optional[Dict[str, Any]]:
        """Load a structured value stored with put_object."""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StorageError(f"Stored value for {key} is not valid JSON") from e

    async def clear(self, prefix: str = "") -> int:
        """
        Delete every known key (optionally only those under a prefix).

        Returns:
            Number of keys deleted
        """
        async with self._lock:
            keys = await self.backend.keys()
            deleted = 0
            for key in sorted(keys):
                if prefix and not key.startswith(prefix):
                    continue
                if await self.backend.remove(key):
                    deleted += 1
        logger.info(f"Cleared {deleted} credential entries")
        return deleted
