"""
Credential storage backends.

Two implementations behind one interface, chosen once at startup:
- OS keyring (macOS Keychain, Windows Credential Locker, Secret Service)
- JSON file on disk, optionally Fernet-encrypted at rest
"""

import asyncio
import base64
import hashlib
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Set

import keyring
from cryptography.fernet import Fernet, InvalidToken
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError

from ..config.settings import BackendChoice, StorageConfig
from ..exceptions import StorageError

logger = logging.getLogger(__name__)


class BackendKind(Enum):
    """Security guarantee offered by a backend."""
    SECURE = "secure"
    PLAIN = "plain"


class StorageBackend(ABC):
    """Abstract base class for credential storage backends."""

    kind: BackendKind = BackendKind.PLAIN
    name: str = "abstract"

    @abstractmethod
    async def read(self, key: str) -> Optional[str]:
        """
        Retrieve a value.

        Args:
            key: Storage key

        Returns:
            Stored value or None if not found
        """
        pass

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        """
        Store a value.

        Args:
            key: Storage key
            value: Value to store
        """
        pass

    @abstractmethod
    async def remove(self, key: str) -> bool:
        """
        Delete a value.

        Args:
            key: Storage key

        Returns:
            True if deleted
        """
        pass

    @abstractmethod
    async def keys(self) -> Set[str]:
        """
        List stored keys.

        Returns:
            Set of keys currently stored
        """
        pass


class KeyringBackend(StorageBackend):
    """
    OS keyring backend.

    The keyring API cannot enumerate entries, so the backend keeps its own
    index of keys under a reserved entry.
    """

    kind = BackendKind.SECURE
    name = "keyring"
    INDEX_KEY = "__proofsync_index__"
    PROBE_KEY = "__proofsync_probe__"

    def __init__(self, service: str = "proofsync"):
        """
        Initialize keyring backend.

        Args:
            service: Keyring service name all entries are filed under
        """
        self.service = service

    @classmethod
    def is_available(cls, service: str = "proofsync") -> bool:
        """Probe whether a usable keyring is installed on this machine."""
        try:
            backend = keyring.get_keyring()
            if isinstance(backend, fail.Keyring):
                return False
            if getattr(backend, "priority", 0) <= 0:
                return False
            keyring.set_password(service, cls.PROBE_KEY, "1")
            keyring.delete_password(service, cls.PROBE_KEY)
            return True
        except Exception as e:
            logger.debug(f"Keyring probe failed: {e}")
            return False

    async def _call(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (KeyringError, OSError, RuntimeError) as e:
            raise StorageError(f"Keyring operation failed: {e}") from e

    async def _read_index(self) -> Set[str]:
        raw = await self._call(keyring.get_password, self.service, self.INDEX_KEY)
        if not raw:
            return set()
        try:
            return set(json.loads(raw))
        except ValueError as e:
            raise StorageError("Keyring index is corrupted") from e

    async def _write_index(self, keys: Set[str]) -> None:
        await self._call(
            keyring.set_password, self.service, self.INDEX_KEY, json.dumps(sorted(keys))
        )

    async def read(self, key: str) -> Optional[str]:
        return await self._call(keyring.get_password, self.service, key)

    async def write(self, key: str, value: str) -> None:
        await self._call(keyring.set_password, self.service, key, value)
        index = await self._read_index()
        if key not in index:
            index.add(key)
            await self._write_index(index)

    async def remove(self, key: str) -> bool:
        try:
            await asyncio.to_thread(keyring.delete_password, self.service, key)
            deleted = True
        except PasswordDeleteError:
            deleted = False
        except (KeyringError, OSError, RuntimeError) as e:
            raise StorageError(f"Keyring delete failed: {e}") from e

        index = await self._read_index()
        if key in index:
            index.discard(key)
            await self._write_index(index)
        return deleted

    async def keys(self) -> Set[str]:
        return await self._read_index()


def build_cipher(key: str) -> Fernet:
    """Build a Fernet cipher, deriving a valid key from arbitrary passphrases."""
    # Fernet keys are 44 chars base64
    if len(key) != 44:
        key = base64.urlsafe_b64encode(hashlib.sha256(key.encode()).digest()).decode()
    return Fernet(key.encode())


class FileBackend(StorageBackend):
    """
    Durable file backend.

    All entries live in one JSON document, replaced atomically on every write
    and readable only by the owner. With an encryption key the document is
    Fernet-encrypted at rest; it is still not hardware-backed.
    """

    kind = BackendKind.PLAIN
    name = "file"

    def __init__(self, path: Path, encryption_key: Optional[str] = None):
        """
        Initialize file backend.

        Args:
            path: Path of the credentials document
            encryption_key: Optional key (or passphrase) for encryption at rest
        """
        self.path = Path(path)
        self._cipher = build_cipher(encryption_key) if encryption_key else None

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    def _load(self) -> Dict[str, str]:
        try:
            if not self.path.exists():
                return {}
            raw = self.path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e

        if not raw:
            return {}

        if self._cipher is not None:
            try:
                raw = self._cipher.decrypt(raw)
            except InvalidToken as e:
                raise StorageError(f"Failed to decrypt {self.path}: wrong key or corrupted file") from e

        try:
            data = json.loads(raw.decode())
        except ValueError as e:
            raise StorageError(f"Credentials file {self.path} is corrupted") from e
        if not isinstance(data, dict):
            raise StorageError(f"Credentials file {self.path} has an unexpected layout")
        return data

    def _save(self, data: Dict[str, str]) -> None:
        payload = json.dumps(data, indent=2, sort_keys=True).encode()
        if self._cipher is not None:
            payload = self._cipher.encrypt(payload)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".credentials-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    async def read(self, key: str) -> Optional[str]:
        return self._load().get(key)

    async def write(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    async def remove(self, key: str) -> bool:
        data = self._load()
        if key not in data:
            return False
        del data[key]
        self._save(data)
        return True

    async def keys(self) -> Set[str]:
        return set(self._load().keys())


def select_backend(config: StorageConfig) -> StorageBackend:
    """
    Choose the credential backend once, by capability probe.

    Args:
        config: Storage configuration

    Returns:
        The keyring backend when requested or available, else the file backend
    """
    if config.backend == BackendChoice.KEYRING:
        return KeyringBackend(config.keyring_service)

    if config.backend == BackendChoice.AUTO and KeyringBackend.is_available(config.keyring_service):
        logger.info("Using OS keyring for credential storage")
        return KeyringBackend(config.keyring_service)

    backend = FileBackend(config.credentials_path, config.encryption_key)
    logger.warning(
        f"Secrets will be stored without hardware backing in {config.credentials_path} "
        f"(encrypted={backend.encrypted})"
    )
    return backend
