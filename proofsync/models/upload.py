"""
Upload task models and the per-task state machine.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..exceptions import ErrorKind, InvalidTransition, ProofSyncError
from .credential import utc_now


class UploadState(Enum):
    """Stage of an upload task."""
    PENDING = "pending"
    VALIDATING = "validating"
    ENCODING = "encoding"
    TRANSMITTING = "transmitting"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"


_FAILED = {UploadState.FAILED_RETRYABLE, UploadState.FAILED_FATAL}

# Forward-only, plus the explicit retry edge FAILED_RETRYABLE -> TRANSMITTING.
# PENDING may only fail fatally (cancelled before it started).
TRANSITIONS: Dict[UploadState, set] = {
    UploadState.PENDING: {UploadState.VALIDATING, UploadState.FAILED_FATAL},
    UploadState.VALIDATING: {UploadState.ENCODING} | _FAILED,
    UploadState.ENCODING: {UploadState.TRANSMITTING} | _FAILED,
    UploadState.TRANSMITTING: {UploadState.PUBLISHING} | _FAILED,
    UploadState.PUBLISHING: {UploadState.COMPLETED} | _FAILED,
    UploadState.COMPLETED: set(),
    UploadState.FAILED_RETRYABLE: {UploadState.TRANSMITTING},
    UploadState.FAILED_FATAL: set(),
}

CANCELLABLE_STATES = {
    UploadState.PENDING,
    UploadState.VALIDATING,
    UploadState.ENCODING,
    UploadState.TRANSMITTING,
}


@dataclass
class RemoteRef:
    """Where a completed upload lives in the remote store."""
    id: str
    name: str = ""
    view_url: str = ""
    download_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "view_url": self.view_url,
            "download_url": self.download_url,
        }


@dataclass
class MediaInfo:
    """Size and type of a local source, as reported by the media resolver."""
    size: int
    media_type: str


@dataclass
class EncodedPayload:
    """Transport-ready body produced by the encoding stage."""
    data_b64: str
    media_type: str
    size_bytes: int
    checksum: str


@dataclass
class LocalFallbackRecord:
    """The original data kept locally because the remote upload did not finish."""
    task_id: str
    source_ref: str
    owner_id: str
    destination_name: str
    error_kind: ErrorKind
    error_message: str
    retryable: bool
    attempt_count: int = 0
    failed_at: datetime = field(default_factory=utc_now)
    # Object created server-side before the failure; never deleted automatically
    orphaned_remote_id: Optional[str] = None

    @classmethod
    def from_task(cls, task: "UploadTask") -> "LocalFallbackRecord":
        return cls(
            task_id=task.task_id,
            source_ref=task.source_ref,
            owner_id=task.owner_id,
            destination_name=task.destination_name,
            error_kind=task.error_kind or ErrorKind.INTERNAL,
            error_message=task.last_error or "",
            retryable=task.state == UploadState.FAILED_RETRYABLE,
            attempt_count=task.attempt_count,
            orphaned_remote_id=task.remote_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "source_ref": self.source_ref,
            "owner_id": self.owner_id,
            "destination_name": self.destination_name,
            "error_kind": self.error_kind.value,
            "error_message": self.error_message,
            "retryable": self.retryable,
            "attempt_count": self.attempt_count,
            "failed_at": self.failed_at.isoformat(),
            "orphaned_remote_id": self.orphaned_remote_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalFallbackRecord":
        return cls(
            task_id=data["task_id"],
            source_ref=data["source_ref"],
            owner_id=data["owner_id"],
            destination_name=data["destination_name"],
            error_kind=ErrorKind(data["error_kind"]),
            error_message=data.get("error_message", ""),
            retryable=bool(data.get("retryable")),
            attempt_count=int(data.get("attempt_count", 0)),
            failed_at=datetime.fromisoformat(data["failed_at"]),
            orphaned_remote_id=data.get("orphaned_remote_id"),
        )


@dataclass
class UploadTask:
    """One proof photo moving through the upload pipeline."""
    source_ref: str
    owner_id: str
    destination_name: str
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: UploadState = UploadState.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    remote_ref: Optional[RemoteRef] = None
    remote_id: Optional[str] = None
    remote_name: Optional[str] = None
    media: Optional[MediaInfo] = None
    encoded: Optional[EncodedPayload] = None
    fallback: Optional[LocalFallbackRecord] = None
    cancel_requested: bool = False
    history: List[UploadState] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in (UploadState.COMPLETED, UploadState.FAILED_FATAL)

    @property
    def is_retryable(self) -> bool:
        return self.state == UploadState.FAILED_RETRYABLE

    def transition(self, new_state: UploadState) -> None:
        """Move to ``new_state``, enforcing the allowed edges."""
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Task {self.task_id} cannot move from {self.state.value} to {new_state.value}"
            )
        self.history.append(self.state)
        self.state = new_state
        self.updated_at = utc_now()

    def complete(self, remote_ref: RemoteRef) -> None:
        self.transition(UploadState.COMPLETED)
        self.remote_ref = remote_ref
        self.last_error = None
        self.error_kind = None
        self.fallback = None

    def fail(self, error: ProofSyncError) -> LocalFallbackRecord:
        """Record a failure and produce the matching fallback record."""
        target = UploadState.FAILED_RETRYABLE if error.retryable else UploadState.FAILED_FATAL
        self.transition(target)
        self.last_error = error.message
        self.error_kind = error.kind
        self.fallback = LocalFallbackRecord.from_task(self)
        return self.fallback

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "source_ref": self.source_ref,
            "owner_id": self.owner_id,
            "destination_name": self.destination_name,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "remote_ref": self.remote_ref.to_dict() if self.remote_ref else None,
            "remote_id": self.remote_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
