"""
Proof photo upload pipeline.

Each task moves through validation, encoding, transmission and publishing.
Retryable failures are retried a bounded number of times with exponential
backoff; a task that cannot finish ends with a local fallback record.
"""

import asyncio
import base64
import hashlib
import inspect
import logging
import re
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..config.settings import UploadConfig
from ..drive.client import DriveClient
from ..drive.media import MediaResolver
from ..exceptions import (
    InvalidTransition,
    ProofSyncError,
    RequestTimeoutError,
    StorageError,
    UploadCancelled,
    ValidationError,
)
from ..models.credential import Credential, utc_now
from ..models.upload import (
    CANCELLABLE_STATES,
    EncodedPayload,
    LocalFallbackRecord,
    UploadState,
    UploadTask,
)
from ..oauth.guard import TokenGuard
from .fallback import FallbackRepository

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
}

FallbackListener = Callable[[LocalFallbackRecord], Any]


def encode_payload(data: bytes, media_type: str) -> EncodedPayload:
    """Turn raw media bytes into the base64 body part used for transmission."""
    return EncodedPayload(
        data_b64=base64.b64encode(data).decode("ascii"),
        media_type=media_type,
        size_bytes=len(data),
        checksum=hashlib.sha256(data).hexdigest(),
    )


def _safe(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", value)


def build_remote_name(
    owner_id: str,
    destination_name: str,
    media_type: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Unique remote file name: ``{owner}_{timestamp}_{destination}.{ext}``.

    Args:
        owner_id: Member the photo belongs to
        destination_name: Human name of what the photo proves (e.g. the event)
        media_type: Media type of the payload
        now: Timestamp override

    Returns:
        Remote file name
    """
    now = now or utc_now()
    timestamp = int(now.timestamp() * 1000)
    extension = EXTENSIONS.get(media_type, "bin")
    return f"{_safe(owner_id)}_{timestamp}_{_safe(destination_name)}.{extension}"


class UploadPipeline:
    """
    Drives upload tasks to Google Drive.

    Callers always get the task back: either COMPLETED with a remote ref, or
    failed with ``task.fallback`` describing what happened and whether a
    retry can help.
    """

    def __init__(
        self,
        config: UploadConfig,
        drive: DriveClient,
        token_guard: TokenGuard,
        media: MediaResolver,
        identity: str = "default",
        folder_id: Optional[str] = None,
        fallback_store: Optional[FallbackRepository] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize upload pipeline.

        Args:
            config: Size/type limits, timeouts and retry policy
            drive: Drive client
            token_guard: Source of valid credentials
            media: Resolver for source refs
            identity: Identity whose credential is used for uploads
            folder_id: Destination folder (defaults to the Drive config)
            fallback_store: Optional ledger for fallback records
            sleep: Backoff sleep (overridable for tests)
        """
        self.config = config
        self.drive = drive
        self.token_guard = token_guard
        self.media = media
        self.identity = identity
        self.folder_id = folder_id or drive.config.folder_id
        self.fallback_store = fallback_store
        self._sleep = sleep

        self._workers = asyncio.Semaphore(max(1, config.max_workers))
        self._tasks: Dict[str, UploadTask] = {}
        self._running: Set[str] = set()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._listeners: List[FallbackListener] = []

    def on_fallback(self, listener: FallbackListener) -> None:
        """Register a callback (sync or async) for every fallback record emitted."""
        self._listeners.append(listener)

    def get_task(self, task_id: str) -> Optional[UploadTask]:
        return self._tasks.get(task_id)

    def create_task(self, source_ref: str, destination_name: str, owner_id: str) -> UploadTask:
        task = UploadTask(
            source_ref=source_ref,
            owner_id=owner_id,
            destination_name=destination_name,
        )
        self._tasks[task.task_id] = task
        return task

    async def submit(self, source_ref: str, destination_name: str, owner_id: str) -> UploadTask:
        """
        Upload a local photo.

        Args:
            source_ref: Local path or URI of the photo
            destination_name: What the photo is proof of (used in the remote name)
            owner_id: Member submitting the photo

        Returns:
            The finished task (COMPLETED or failed with a fallback record)
        """
        task = self.create_task(source_ref, destination_name, owner_id)
        return await self.run(task)

    async def run(self, task: UploadTask) -> UploadTask:
        """Run a PENDING task through every stage."""
        if task.state != UploadState.PENDING:
            raise InvalidTransition(f"Task {task.task_id} already started ({task.state.value})")
        self._tasks[task.task_id] = task
        return await self._execute(task, self._run_stages)

    async def retry(self, task: UploadTask) -> UploadTask:
        """
        Retry a FAILED_RETRYABLE task from the transmitting stage.

        Validation and encoding are not repeated: the cached payload is reused,
        and an object already created remotely is only published.

        Raises:
            InvalidTransition: If the task is not in FAILED_RETRYABLE
        """
        if task.state != UploadState.FAILED_RETRYABLE:
            raise InvalidTransition(
                f"Task {task.task_id} is {task.state.value}; only failed_retryable tasks can be retried"
            )
        if task.encoded is None:
            raise InvalidTransition(f"Task {task.task_id} has no cached payload; resubmit it instead")

        task.transition(UploadState.TRANSMITTING)
        task.fallback = None
        task.cancel_requested = False
        logger.info(f"Retrying upload {task.task_id}")
        return await self._execute(task, self._deliver)

    async def resubmit(self, record: LocalFallbackRecord, force: bool = False) -> UploadTask:
        """
        Restart the full flow for a persisted fallback record.

        Used after a restart, when the encoded payload is no longer in memory.

        Args:
            record: Fallback record to restart
            force: Also restart a record that failed fatally

        Raises:
            InvalidTransition: If the record is not retryable and ``force`` is not set
        """
        if not record.retryable and not force:
            raise InvalidTransition(
                f"Upload {record.task_id} is not retryable ({record.error_kind.value}): "
                f"{record.error_message}"
            )
        if not record.retryable:
            logger.warning(f"Forcing resubmission of non-retryable upload {record.task_id}")

        task = UploadTask(
            source_ref=record.source_ref,
            owner_id=record.owner_id,
            destination_name=record.destination_name,
            task_id=record.task_id,
        )
        if record.orphaned_remote_id:
            logger.warning(
                f"Resubmitting {record.task_id}; earlier remote object "
                f"{record.orphaned_remote_id} is left in place"
            )
        return await self.run(task)

    async def cancel(self, task: UploadTask) -> bool:
        """
        Cancel a task that has not finished transmitting.

        Objects already created remotely are not deleted; they are reported in
        the fallback record's ``orphaned_remote_id``.

        Returns:
            True if the cancellation was accepted
        """
        if task.state not in CANCELLABLE_STATES:
            logger.info(f"Task {task.task_id} cannot be cancelled in state {task.state.value}")
            return False

        task.cancel_requested = True

        if task.task_id not in self._running:
            # Never started, or still queued for a worker
            await self._fail(task, UploadCancelled("Upload cancelled before it started"))
            return True

        inflight = self._inflight.get(task.task_id)
        if inflight is not None and not inflight.done():
            inflight.cancel()
        logger.info(f"Cancellation requested for upload {task.task_id}")
        return True

    def backoff_delay(self, attempt: int) -> float:
        """Delay before automatic retry number ``attempt`` (1-based)."""
        delay = self.config.retry_base_delay * (2 ** (attempt - 1))
        return min(delay, self.config.retry_max_delay)

    async def _execute(self, task: UploadTask, stages: Callable[[UploadTask], Awaitable[None]]) -> UploadTask:
        try:
            async with self._workers:
                if task.is_terminal:
                    # Cancelled while waiting for a worker
                    return task
                self._running.add(task.task_id)
                await stages(task)
        except ProofSyncError as e:
            if task.cancel_requested and not isinstance(e, UploadCancelled):
                e = UploadCancelled(f"Upload cancelled ({e.message})")
            await self._fail(task, e)
        except asyncio.CancelledError:
            if not task.cancel_requested:
                raise
            await self._fail(task, UploadCancelled("Upload cancelled during transmission"))
        except Exception as e:
            logger.exception(f"Unexpected error in upload {task.task_id}")
            await self._fail(task, ProofSyncError(f"Unexpected error: {e}"))
        finally:
            self._running.discard(task.task_id)
        return task

    async def _run_stages(self, task: UploadTask) -> None:
        await self._validate(task)
        await self._encode(task)
        task.transition(UploadState.TRANSMITTING)
        await self._deliver(task)

    def _check_cancelled(self, task: UploadTask) -> None:
        if task.cancel_requested:
            raise UploadCancelled(f"Upload {task.task_id} cancelled")

    async def _validate(self, task: UploadTask) -> None:
        self._check_cancelled(task)
        task.transition(UploadState.VALIDATING)

        if not task.owner_id:
            raise ValidationError("Upload has no owner")
        if not task.destination_name:
            raise ValidationError("Upload has no destination name")

        info = await self.media.stat(task.source_ref)

        if info.size <= 0:
            raise ValidationError("Photo is empty", {"size": info.size})
        if info.size > self.config.max_file_size:
            max_mb = self.config.max_file_size / (1024 * 1024)
            raise ValidationError(
                f"Photo is too large ({info.size} bytes); the limit is {max_mb:.0f}MB",
                {"size": info.size, "max_file_size": self.config.max_file_size},
            )
        if info.media_type not in self.config.allowed_types:
            raise ValidationError(
                f"Unsupported photo type {info.media_type}",
                {"media_type": info.media_type, "allowed_types": self.config.allowed_types},
            )

        task.media = info

    async def _encode(self, task: UploadTask) -> None:
        self._check_cancelled(task)
        task.transition(UploadState.ENCODING)

        data = await self.media.read(task.source_ref)
        if len(data) > self.config.max_file_size:
            raise ValidationError("Photo grew past the size limit while reading", {"size": len(data)})

        task.encoded = encode_payload(data, task.media.media_type)
        task.remote_name = build_remote_name(task.owner_id, task.destination_name, task.media.media_type)
        logger.debug(f"Encoded {task.encoded.size_bytes} bytes for {task.task_id}")

    async def _deliver(self, task: UploadTask) -> None:
        attempt = 0
        while True:
            self._check_cancelled(task)
            attempt += 1
            task.attempt_count += 1
            try:
                await self._transmit(task)
                await self._publish(task)
                return
            except ProofSyncError as e:
                if not e.retryable or attempt >= self.config.max_attempts or task.cancel_requested:
                    raise
                task.last_error = e.message
                task.error_kind = e.kind
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Upload {task.task_id} attempt {attempt} failed ({e.kind.value}): "
                    f"{e.message}; retrying in {delay:.1f}s"
                )
                await self._guarded(task, self._sleep(delay))

    async def _transmit(self, task: UploadTask) -> None:
        if task.state == UploadState.PUBLISHING:
            return

        if task.remote_id is None:
            created = await self._guarded(
                task,
                self.token_guard.call_with_credential(self.identity, partial(self._create_remote, task)),
            )
            task.remote_id = created["id"]
            task.remote_name = created.get("name") or task.remote_name
        else:
            logger.info(f"Upload {task.task_id} already created as {task.remote_id}; publishing only")

        self._check_cancelled(task)
        task.transition(UploadState.PUBLISHING)

    async def _create_remote(self, task: UploadTask, credential: Credential) -> Dict[str, Any]:
        description = (
            f"Hour request proof photo from {task.owner_id} for {task.destination_name}\n"
            f"Uploaded: {utc_now().isoformat()}"
        )
        return await self._with_timeout(
            self.drive.create_file(
                credential.access_token,
                task.remote_name,
                task.encoded,
                parent_id=self.folder_id,
                description=description,
            ),
            self.config.upload_timeout,
            "Upload",
        )

    async def _publish(self, task: UploadTask) -> None:
        if self.drive.config.public_read:
            await self._guarded(
                task,
                self.token_guard.call_with_credential(self.identity, partial(self._grant_public_read, task)),
            )

        task.complete(self.drive.remote_ref(task.remote_id, task.remote_name or ""))
        logger.info(f"Upload {task.task_id} completed as {task.remote_id}")
        await self._clear_fallback(task)

    async def _grant_public_read(self, task: UploadTask, credential: Credential) -> None:
        await self._with_timeout(
            self.drive.grant_public_read(credential.access_token, task.remote_id),
            self.config.publish_timeout,
            "Publish",
        )

    @staticmethod
    async def _with_timeout(coro: Awaitable[Any], timeout: float, operation: str) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"{operation} did not finish within {timeout:.0f}s")

    async def _guarded(self, task: UploadTask, coro: Awaitable[Any]) -> Any:
        # Registered so cancel() can interrupt the call in flight
        inner = asyncio.ensure_future(coro)
        self._inflight[task.task_id] = inner
        try:
            return await inner
        finally:
            self._inflight.pop(task.task_id, None)

    async def _fail(self, task: UploadTask, error: ProofSyncError) -> None:
        record = task.fail(error)
        log = logger.warning if record.retryable else logger.error
        log(
            f"Upload {task.task_id} failed ({error.kind.value}, retryable={record.retryable}): "
            f"{error.message}"
        )
        if record.orphaned_remote_id:
            logger.warning(
                f"Upload {task.task_id} left remote object {record.orphaned_remote_id} in place"
            )

        if self.fallback_store is not None:
            try:
                await self.fallback_store.save(record)
            except StorageError as e:
                logger.error(f"Failed to persist fallback record for {task.task_id}: {e}")

        for listener in self._listeners:
            try:
                result = listener(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Fallback listener failed: {e}")

    async def _clear_fallback(self, task: UploadTask) -> None:
        if self.fallback_store is None:
            return
        try:
            await self.fallback_store.delete(task.task_id)
        except StorageError as e:
            logger.warning(f"Failed to clear fallback record for {task.task_id}: {e}")
