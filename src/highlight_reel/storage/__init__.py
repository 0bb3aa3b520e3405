"""
Object storage for raw video uploads.

Backends:
- LocalObjectStore: files under a base directory, one folder per bucket
- S3ObjectStore: S3-compatible bucket via boto3

Both refuse to overwrite an existing key and support cooperative
cancellation of an in-flight transfer.
"""

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]  # (bytes_sent, total_bytes)


class ObjectStoreError(Exception):
    """Transfer to the object store failed."""


class ObjectExistsError(ObjectStoreError):
    """The target key is already taken."""


class TransferCancelled(Exception):
    """The transfer was abandoned on request."""


class CancelToken:
    """Cooperative cancellation flag shared between a transfer and its owner."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TransferCancelled("Transfer cancelled")


class ObjectStore(ABC):
    """Narrow write/exists contract used by the upload submitter."""

    def __init__(self, bucket: str):
        self.bucket = bucket

    def location(self, key: str) -> str:
        """Bucket-qualified path recorded in the tracking row."""
        return f"{self.bucket}/{key}"

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether ``key`` is already stored."""

    @abstractmethod
    def put(
        self,
        key: str,
        source: BinaryIO,
        size: int,
        content_type: str,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> int:
        """
        Store ``source`` at ``key`` without overwriting.

        Returns:
            Number of bytes written

        Raises:
            ObjectExistsError: key already present
            TransferCancelled: ``cancel`` was set mid-transfer
            ObjectStoreError: any other transfer failure
        """


class LocalObjectStore(ObjectStore):
    """
    Filesystem-backed store.

    Directory structure:
    /base_path/
        BUCKET/
            OWNER_ID/
                ID.EXT
        .tmp/
            (in-flight transfers)
    """

    def __init__(self, base_path: str, bucket: str = "raw-uploads", chunk_size_mb: int = 8):
        super().__init__(bucket)
        self.base_path = Path(base_path)
        self.bucket_path = self.base_path / bucket
        self.temp_path = self.base_path / ".tmp"
        self.chunk_size = chunk_size_mb * 1024 * 1024

        self.bucket_path.mkdir(parents=True, exist_ok=True)
        self.temp_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.bucket_path / key).resolve()
        if self.bucket_path.resolve() not in path.parents:
            raise ObjectStoreError(f"Key escapes bucket: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self._path_for(key).exists()

    def put(self, key, source, size, content_type, progress=None, cancel=None) -> int:
        final_path = self._path_for(key)
        if final_path.exists():
            raise ObjectExistsError(f"Object already exists: {self.location(key)}")

        fd, temp_name = tempfile.mkstemp(dir=self.temp_path, suffix=".part")
        temp_file = Path(temp_name)
        written = 0

        try:
            with os.fdopen(fd, "wb") as f:
                while True:
                    if cancel:
                        cancel.raise_if_cancelled()

                    chunk = source.read(self.chunk_size)
                    if not chunk:
                        break
                    f.write(chunk)
                    written += len(chunk)

                    if progress:
                        progress(written, size)

            if cancel:
                cancel.raise_if_cancelled()

            final_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                # link() fails on an existing target, so a racing writer cannot be clobbered
                os.link(temp_file, final_path)
            except FileExistsError:
                raise ObjectExistsError(f"Object already exists: {self.location(key)}")

        except (TransferCancelled, ObjectStoreError):
            raise
        except OSError as e:
            raise ObjectStoreError(f"Write failed for {self.location(key)}: {e}") from e
        finally:
            if temp_file.exists():
                temp_file.unlink()

        logger.info(f"Stored {self.location(key)}: {written} bytes ({content_type})")
        return written


class S3ObjectStore(ObjectStore):
    """Push files to S3-compatible storage."""

    def __init__(self, bucket: str, endpoint: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 client=None):
        super().__init__(bucket)
        self.endpoint = endpoint

        if client is not None:
            self.client = client
            return

        import boto3
        if endpoint:
            self.client = boto3.client(
                's3',
                endpoint_url=endpoint,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
            )
        else:
            self.client = boto3.client('s3')

    def exists(self, key: str) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise ObjectStoreError(f"S3 head_object failed: {e}") from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"S3 unreachable: {e}") from e

    def put(self, key, source, size, content_type, progress=None, cancel=None) -> int:
        from boto3.exceptions import S3UploadFailedError
        from botocore.exceptions import BotoCoreError, ClientError

        # head_object then upload is check-then-act: a concurrent writer of the
        # same key can still win. Keys embed a fresh random id, so only a
        # duplicate id collides.
        if self.exists(key):
            raise ObjectExistsError(f"Object already exists: s3://{self.bucket}/{key}")

        class TransferTracker:
            def __init__(self, total, cb, token):
                self.total = total
                self.uploaded = 0
                self.cb = cb
                self.token = token

            def __call__(self, bytes_amount):
                # Raising here aborts the managed transfer
                if self.token:
                    self.token.raise_if_cancelled()
                self.uploaded += bytes_amount
                if self.cb:
                    self.cb(self.uploaded, self.total)

        tracker = TransferTracker(size, progress, cancel)

        try:
            if cancel:
                cancel.raise_if_cancelled()
            self.client.upload_fileobj(
                source,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
                Callback=tracker,
            )
        except TransferCancelled:
            raise
        except (BotoCoreError, ClientError, S3UploadFailedError) as e:
            raise ObjectStoreError(f"S3 upload failed: {e}") from e

        logger.info(f"Uploaded s3://{self.bucket}/{key}: {tracker.uploaded} bytes")
        return tracker.uploaded


def create_object_store(config) -> ObjectStore:
    """Build the configured object store backend."""
    storage = config.storage

    if storage.backend == "local":
        return LocalObjectStore(storage.base_path, storage.bucket, storage.chunk_size_mb)
    elif storage.backend == "s3":
        return S3ObjectStore(
            storage.bucket,
            endpoint=storage.s3_endpoint,
            access_key=storage.s3_access_key,
            secret_key=storage.s3_secret_key,
        )

    raise ValueError(f"Unknown storage backend: {storage.backend}")
