"""
Client-side upload submission.

Handles:
- Input validation before any network call (size ceiling, readable source)
- Push token capture (permission denial is not an error)
- Transfer to object storage with cooperative cancellation
- Creating the tracking row in state ``queued``
- The attempt state machine driven by the upload screen (UploadFlow)

Retry always re-runs the whole submission with a fresh identifier; a
partially transferred binary is never resumed.
"""

import io
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional, Union

from highlight_reel.config import MAX_UPLOAD_BYTES
from highlight_reel.database import TrackingStore, TrackingStoreError, UploadRecord
from highlight_reel.identifiers import new_id
from highlight_reel.storage import (
    CancelToken, ObjectStore, ObjectStoreError, TransferCancelled
)

logger = logging.getLogger(__name__)

Source = Union[str, Path, BinaryIO]
PushTokenProvider = Callable[[], Optional[str]]

# Transfer progress stops short of 100 until the tracking row exists
TRANSFER_PROGRESS_CEILING = 99.0


class SubmissionState(Enum):
    IDLE = "idle"
    PICKING = "picking"
    READY_TO_SEND = "ready_to_send"
    TRANSFERRING = "transferring"
    RECORDING = "recording"
    DONE = "done"


# =============================================================================
# Errors
# =============================================================================

class UploadError(Exception):
    """Base class for submission failures."""
    retryable = False
    user_message = "Upload failed. Please try again."


class FileTooLarge(UploadError):
    def __init__(self, declared_size: int, max_size: int):
        self.declared_size = declared_size
        self.max_size = max_size
        self.user_message = f"File is too large. Max {max_size / 1024 ** 3:g} GB."
        super().__init__(f"Declared size {declared_size} exceeds maximum {max_size}")


class SourceUnavailable(UploadError):
    user_message = "Could not read the selected video."


class TransferInterrupted(UploadError):
    retryable = True
    user_message = "Upload interrupted. Tap Retry."


class RecordCreationFailed(UploadError):
    retryable = True


class UploadCancelled(UploadError):
    """User-initiated; not shown as a failure."""
    user_message = ""


# =============================================================================
# Progress
# =============================================================================

class ProgressReporter:
    """Forwards a monotonically non-decreasing percentage to an observer."""

    def __init__(self, callback: Optional[Callable[[float], Any]] = None):
        self.callback = callback
        self.percent = 0.0

    def update(self, percent: float) -> None:
        percent = max(self.percent, min(float(percent), 100.0))
        if percent == self.percent and percent != 0.0:
            return
        self.percent = percent
        if self.callback:
            self.callback(percent)

    def transfer(self, bytes_sent: int, total_bytes: int) -> None:
        if total_bytes > 0:
            self.update(TRANSFER_PROGRESS_CEILING * min(bytes_sent / total_bytes, 1.0))


# =============================================================================
# Submitter
# =============================================================================

def extension_for(filename: Optional[str], default: str = "mp4") -> str:
    """Extension after the last dot, or ``default`` when there is none."""
    if filename and "." in filename:
        ext = filename.rsplit(".", 1)[1].strip()
        if ext and "/" not in ext:
            return ext
    return default


class UploadSubmitter:
    """
    Hands a video to object storage and records a tracking row.

    The session is never read from a global: the owner id is passed to
    every submit() and the push token comes from the injected provider.
    """

    def __init__(
        self,
        object_store: ObjectStore,
        tracking_store: TrackingStore,
        push_token_provider: Optional[PushTokenProvider] = None,
        max_size_bytes: int = MAX_UPLOAD_BYTES,
        default_extension: str = "mp4",
        default_filename: str = "video.mp4",
        id_factory: Callable[[], str] = new_id,
    ):
        self.object_store = object_store
        self.tracking_store = tracking_store
        self.push_token_provider = push_token_provider
        self.max_size_bytes = max_size_bytes
        self.default_extension = default_extension
        self.default_filename = default_filename
        self.id_factory = id_factory

    @classmethod
    def from_config(cls, config, object_store: ObjectStore, tracking_store: TrackingStore,
                    push_token_provider: Optional[PushTokenProvider] = None) -> "UploadSubmitter":
        return cls(
            object_store,
            tracking_store,
            push_token_provider=push_token_provider,
            max_size_bytes=config.upload.max_size_bytes,
            default_extension=config.upload.default_extension,
            default_filename=config.upload.default_filename,
        )

    def submit(
        self,
        source: Source,
        declared_size: int,
        mime_type: str,
        owner_id: str,
        filename: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
        progress: Optional[Callable[[float], Any]] = None,
        on_state: Optional[Callable[[SubmissionState], Any]] = None,
    ) -> UploadRecord:
        """
        Submit one video.

        Args:
            source: Path to the video or an open binary file object
            declared_size: Size reported by the picker, in bytes
            mime_type: Content type stored with the object
            owner_id: Authenticated user submitting the video
            filename: Original filename; derived from ``source`` when omitted
            cancel: Token that abandons the transfer when set
            progress: Receives percentages; 100 only after the row exists
            on_state: Notified when entering transferring / recording

        Returns:
            The inserted UploadRecord (status ``queued``)

        Raises:
            FileTooLarge, SourceUnavailable, TransferInterrupted,
            RecordCreationFailed, UploadCancelled
        """
        if declared_size > self.max_size_bytes:
            raise FileTooLarge(declared_size, self.max_size_bytes)

        filename = filename or self.filename_for(source)
        stream, owned = self._open_source(source)

        try:
            push_token = self._request_push_token()

            upload_id = self.id_factory()
            key = f"{owner_id}/{upload_id}.{extension_for(filename, self.default_extension)}"
            reporter = ProgressReporter(progress)
            reporter.update(0)

            if on_state:
                on_state(SubmissionState.TRANSFERRING)

            try:
                if cancel:
                    cancel.raise_if_cancelled()
                self.object_store.put(
                    key,
                    stream,
                    declared_size,
                    mime_type,
                    progress=reporter.transfer,
                    cancel=cancel,
                )
            except TransferCancelled:
                logger.info(f"Upload {upload_id} cancelled during transfer")
                raise UploadCancelled(f"Upload {upload_id} cancelled") from None
            except ObjectStoreError as e:
                logger.warning(f"Transfer of {key} interrupted: {e}")
                raise TransferInterrupted(str(e)) from e
        finally:
            if owned:
                stream.close()

        if on_state:
            on_state(SubmissionState.RECORDING)

        try:
            record = self.tracking_store.insert_upload(
                upload_id=upload_id,
                user_id=owner_id,
                storage_path=self.object_store.location(key),
                original_filename=filename,
                file_size_bytes=declared_size,
                push_token=push_token,
            )
        except TrackingStoreError as e:
            # The stored binary stays behind; no reconciliation happens here
            logger.warning(
                f"Tracking row for {upload_id} not created, orphaned object "
                f"{self.object_store.location(key)}: {e}"
            )
            raise RecordCreationFailed(str(e)) from e

        reporter.update(100)
        logger.info(f"Upload {upload_id} queued for {owner_id} ({declared_size} bytes)")
        return record

    def filename_for(self, source: Source) -> str:
        if isinstance(source, (str, Path)):
            return Path(source).name or self.default_filename
        name = getattr(source, "name", None)
        if isinstance(name, str) and name:
            return Path(name).name
        return self.default_filename

    def _open_source(self, source: Source):
        """Returns (stream, owned) where owned streams are closed after transfer."""
        if isinstance(source, (str, Path)):
            try:
                return open(source, "rb"), True
            except OSError as e:
                raise SourceUnavailable(f"Cannot read {source}: {e}") from e

        read = getattr(source, "read", None)
        if not callable(read):
            raise SourceUnavailable(f"Source is not readable: {source!r}")

        try:
            readable = source.readable() if hasattr(source, "readable") else True
        except (OSError, ValueError) as e:
            raise SourceUnavailable(f"Source is not readable: {e}") from e
        if not readable:
            raise SourceUnavailable("Source is not open for reading")

        return source, False

    def _request_push_token(self) -> Optional[str]:
        if not self.push_token_provider:
            return None
        try:
            return self.push_token_provider() or None
        except Exception as e:
            logger.info(f"Push token unavailable, notifications disabled: {e}")
            return None


# =============================================================================
# Attempt state machine
# =============================================================================

class FlowStateError(RuntimeError):
    """Operation not allowed in the current submission state."""


@dataclass
class SelectedFile:
    source: Source
    name: str
    size: int
    mime_type: str


class UploadFlow:
    """
    Single-threaded controller for one upload screen.

    idle -> picking -> ready_to_send -> transferring -> recording -> done

    Failures from transferring/recording fall back to idle with an error and
    keep the selection so retry() can resubmit from scratch.
    """

    def __init__(self, submitter: UploadSubmitter, owner_id: str,
                 on_change: Optional[Callable[["UploadFlow"], Any]] = None,
                 default_mime_type: str = "video/mp4"):
        self.submitter = submitter
        self.owner_id = owner_id
        self.on_change = on_change
        self.default_mime_type = default_mime_type

        self.state = SubmissionState.IDLE
        self.selected: Optional[SelectedFile] = None
        self.progress = 0.0
        self.error: Optional[str] = None
        self.last_error: Optional[UploadError] = None
        self.record: Optional[UploadRecord] = None
        self._cancel: Optional[CancelToken] = None

    def _set_state(self, state: SubmissionState) -> None:
        self.state = state
        self._changed()

    def _changed(self) -> None:
        if self.on_change:
            self.on_change(self)

    def _require(self, *states: SubmissionState) -> None:
        if self.state not in states:
            raise FlowStateError(f"Not allowed while {self.state.value}")

    @property
    def can_retry(self) -> bool:
        return (
            self.state == SubmissionState.IDLE
            and self.error is not None
            and self.selected is not None
        )

    def begin_pick(self) -> None:
        self._require(SubmissionState.IDLE, SubmissionState.READY_TO_SEND, SubmissionState.DONE)
        self.error = None
        self.last_error = None
        self._set_state(SubmissionState.PICKING)

    def cancel_pick(self) -> None:
        self._require(SubmissionState.PICKING)
        self._set_state(SubmissionState.READY_TO_SEND if self.selected else SubmissionState.IDLE)

    def pick(self, source: Source, name: Optional[str] = None, size: int = 0,
             mime_type: Optional[str] = None) -> bool:
        """Accept a picked video; oversize files are rejected back to idle."""
        self._require(SubmissionState.PICKING)

        if size > self.submitter.max_size_bytes:
            self.last_error = FileTooLarge(size, self.submitter.max_size_bytes)
            self.error = self.last_error.user_message
            self.selected = None
            self._set_state(SubmissionState.IDLE)
            return False

        if not name:
            name = self.submitter.filename_for(source)

        self.selected = SelectedFile(
            source=source,
            name=name,
            size=size,
            mime_type=mime_type or self.default_mime_type,
        )
        self._set_state(SubmissionState.READY_TO_SEND)
        return True

    def clear(self) -> None:
        """Drop the selection ("Choose Different File")."""
        self._require(SubmissionState.READY_TO_SEND, SubmissionState.IDLE)
        self.selected = None
        self.error = None
        self._set_state(SubmissionState.IDLE)

    def send(self) -> Optional[UploadRecord]:
        """Run one full submission; returns the record on success."""
        self._require(SubmissionState.READY_TO_SEND, SubmissionState.IDLE)
        if self.selected is None:
            raise FlowStateError("No file selected")

        selected = self.selected
        self.error = None
        self.last_error = None
        self.progress = 0.0
        self._cancel = CancelToken()

        if isinstance(selected.source, io.IOBase) and selected.source.seekable():
            selected.source.seek(0)

        try:
            record = self.submitter.submit(
                selected.source,
                selected.size,
                selected.mime_type,
                self.owner_id,
                filename=selected.name,
                cancel=self._cancel,
                progress=self._on_progress,
                on_state=self._set_state,
            )
        except UploadCancelled:
            self.progress = 0.0
            self._set_state(SubmissionState.IDLE)
            return None
        except UploadError as e:
            self.last_error = e
            self.error = e.user_message
            self.progress = 0.0
            self._set_state(SubmissionState.IDLE)
            return None
        except Exception as e:
            logger.exception(f"Upload attempt for {selected.name} failed unexpectedly")
            self.last_error = UploadError(str(e))
            self.error = self.last_error.user_message
            self.progress = 0.0
            self._set_state(SubmissionState.IDLE)
            return None
        finally:
            self._cancel = None

        self.record = record
        self.selected = None
        self._set_state(SubmissionState.DONE)
        return record

    def retry(self) -> Optional[UploadRecord]:
        if not self.can_retry:
            raise FlowStateError("Nothing to retry")
        return self.send()

    def cancel(self) -> bool:
        """Abandon the in-flight transfer; ignored outside transferring."""
        if self.state != SubmissionState.TRANSFERRING or self._cancel is None:
            return False
        self._cancel.cancel()
        return True

    def _on_progress(self, percent: float) -> None:
        self.progress = percent
        self._changed()
