"""
Credential persistence.

Secrets go to the OS keyring when one is usable, otherwise to a file
(optionally encrypted at rest).
"""

from .backends import (
    BackendKind,
    FileBackend,
    KeyringBackend,
    StorageBackend,
    select_backend,
)
from .store import CredentialStore

__all__ = [
    "BackendKind",
    "FileBackend",
    "KeyringBackend",
    "StorageBackend",
    "select_backend",
    "CredentialStore",
]
