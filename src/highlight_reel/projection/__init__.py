"""
Client read path for upload status.

The app has no live channel back from the server apart from the push
notification, so the upload list is re-read whenever the status screen
regains focus. Every read here is side-effect free.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from highlight_reel.database import TrackingStore, UploadRecord, UploadStatus

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    UploadStatus.QUEUED: "Queued",
    UploadStatus.PROCESSING: "Processing…",
    UploadStatus.READY: "Ready",
    UploadStatus.FAILED: "Failed",
}


def format_bytes(num_bytes: int) -> str:
    """Human-readable size: B, KB, MB (one decimal) or GB (two decimals)."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    if num_bytes < 1024 * 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.1f} MB"
    return f"{num_bytes / (1024 * 1024 * 1024):.2f} GB"


@dataclass
class UploadStatusRow:
    """One line of the upload status screen."""
    id: str
    filename: str
    status: str
    label: str
    size_label: str
    created_at: Optional[str]
    is_terminal: bool
    can_retry: bool

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadStatusRow":
        status = UploadStatus(data["status"])
        return cls(
            id=data["id"],
            filename=data.get("original_filename", ""),
            status=status.value,
            label=STATUS_LABELS[status],
            size_label=format_bytes(int(data.get("file_size_bytes") or 0)),
            created_at=data.get("created_at"),
            is_terminal=status.is_terminal,
            # Failed uploads are resubmitted as new records
            can_retry=status == UploadStatus.FAILED,
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class StatusProjection:
    """Reads a user's uploads straight from the tracking store."""

    def __init__(self, tracking_store: TrackingStore):
        self.tracking_store = tracking_store

    def list_uploads(self, owner_id: str) -> List[UploadRecord]:
        """All uploads for ``owner_id``, newest first."""
        return self.tracking_store.list_uploads(owner_id)

    def rows(self, owner_id: str) -> List[UploadStatusRow]:
        return [UploadStatusRow.from_dict(r.to_dict()) for r in self.list_uploads(owner_id)]


class StatusClient:
    """Same listing over the server's HTTP API, for the mobile client."""

    def __init__(self, api_url: str, timeout_sec: int = 15, retries: int = 3):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout_sec

        # Reads are idempotent, so transient failures are retried
        self.session = requests.Session()
        retry_strategy = Retry(
            total=retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def list_uploads(self, owner_id: str) -> List[Dict[str, Any]]:
        response = self.session.get(
            f"{self.api_url}/api/v1/uploads",
            params={"owner_id": owner_id},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json().get("uploads", [])

    def rows(self, owner_id: str) -> List[UploadStatusRow]:
        return [UploadStatusRow.from_dict(u) for u in self.list_uploads(owner_id)]

    def close(self) -> None:
        self.session.close()
