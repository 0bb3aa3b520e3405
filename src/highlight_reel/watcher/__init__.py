"""
Status-change watcher.

Invoked by the tracking store's row trigger with the old and new snapshot
of one upload. A transition is notification-worthy only when the status
actually changed, the new status is terminal (ready/failed) and the row
carries a push token. Worthy transitions are dispatched exactly once per
invocation; everything else is skipped with a machine-readable reason.

Triggers are delivered at least once and possibly out of order, so a
short-lived ledger of (upload id, status) pairs already notified suppresses
duplicate sends.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from highlight_reel.database import UploadSnapshot, UploadStatus, TERMINAL_STATUSES
from highlight_reel.push import (
    DEFAULT_DEEP_LINK, DispatchReceipt, NotificationDispatcher, build_message
)

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    NO_CHANGE = "no_change"
    NON_TERMINAL = "non_terminal"
    NO_PUSH_TOKEN = "no_push_token"
    DUPLICATE = "duplicate"


class TriggerPayloadError(ValueError):
    """The trigger payload is malformed."""


@dataclass
class WatchResult:
    """Outcome of one trigger invocation."""
    upload_id: str
    sent: bool
    reason: Optional[SkipReason] = None
    receipt: Optional[DispatchReceipt] = None

    @property
    def skipped(self) -> bool:
        return not self.sent

    def to_response(self) -> Dict[str, Any]:
        if self.sent:
            return {"sent": True, "result": self.receipt.to_dict() if self.receipt else None}
        return {"skipped": True, "reason": self.reason.value if self.reason else None}


# =============================================================================
# Trigger payload
# =============================================================================

def _snapshot(data: Any, name: str, full: bool) -> UploadSnapshot:
    if not isinstance(data, dict):
        raise TriggerPayloadError(f"'{name}' must be an object")

    for key in ("id", "status"):
        if not data.get(key):
            raise TriggerPayloadError(f"'{name}.{key}' is required")

    try:
        status = UploadStatus(data["status"]).value
    except ValueError:
        raise TriggerPayloadError(f"'{name}.status' has unknown value: {data['status']!r}")

    if not full:
        return UploadSnapshot(id=str(data["id"]), status=status)

    return UploadSnapshot(
        id=str(data["id"]),
        status=status,
        push_token=data.get("push_token") or None,
        original_filename=data.get("original_filename") or "",
    )


def parse_trigger_payload(payload: Any) -> Tuple[UploadSnapshot, UploadSnapshot]:
    """
    Parse a row-update webhook body into (old, new) snapshots.

    Expected shape::

        {"type": "UPDATE", "table": "uploads", "schema": "public",
         "record": {"id", "status", "push_token", "original_filename"},
         "old_record": {"id", "status"}}
    """
    if not isinstance(payload, dict):
        raise TriggerPayloadError("Payload must be a JSON object")

    if payload.get("type") != "UPDATE":
        raise TriggerPayloadError(f"Unsupported trigger type: {payload.get('type')!r}")

    new = _snapshot(payload.get("record"), "record", full=True)
    old = _snapshot(payload.get("old_record"), "old_record", full=False)

    if old.id != new.id:
        raise TriggerPayloadError(f"Record id mismatch: {old.id} != {new.id}")

    return old, new


# =============================================================================
# Predicate
# =============================================================================

def skip_reason(old: UploadSnapshot, new: UploadSnapshot) -> Optional[SkipReason]:
    """Why a transition does not warrant a notification, or None if it does."""
    if old.status == new.status:
        return SkipReason.NO_CHANGE
    if UploadStatus(new.status) not in TERMINAL_STATUSES:
        return SkipReason.NON_TERMINAL
    if not new.push_token:
        return SkipReason.NO_PUSH_TOKEN
    return None


def is_notification_worthy(old: UploadSnapshot, new: UploadSnapshot) -> bool:
    return skip_reason(old, new) is None


# =============================================================================
# Dedupe ledger
# =============================================================================

class DeliveryLedger:
    """
    Thread-safe, TTL-bounded set of (upload_id, status) keys already sent.

    A key is claimed before dispatch and released when the dispatch fails,
    so a redelivered trigger can still notify after a gateway error.
    """

    def __init__(self, window_sec: float = 600, clock=time.monotonic):
        self.window_sec = window_sec
        self._clock = clock
        self._seen: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [k for k, t in self._seen.items() if now - t >= self.window_sec]
        for key in expired:
            del self._seen[key]

    def claim(self, upload_id: str, status: str) -> bool:
        """Reserve a key; False when it was claimed inside the window."""
        key = (upload_id, status)
        with self._lock:
            now = self._clock()
            self._prune(now)
            if key in self._seen:
                return False
            self._seen[key] = now
            return True

    def release(self, upload_id: str, status: str) -> None:
        with self._lock:
            self._seen.pop((upload_id, status), None)

    def __len__(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._seen)


# =============================================================================
# Watcher
# =============================================================================

class StatusChangeWatcher:
    """Reacts to upload row updates by sending at most one push per transition."""

    def __init__(self, dispatcher: NotificationDispatcher,
                 deep_link_target: str = DEFAULT_DEEP_LINK,
                 ledger: Optional[DeliveryLedger] = None):
        self.dispatcher = dispatcher
        self.deep_link_target = deep_link_target
        self.ledger = ledger

    @classmethod
    def from_config(cls, push_config, dispatcher: NotificationDispatcher) -> "StatusChangeWatcher":
        ledger = None
        if push_config.dedupe_window_sec > 0:
            ledger = DeliveryLedger(push_config.dedupe_window_sec)
        return cls(dispatcher, deep_link_target=push_config.deep_link_screen, ledger=ledger)

    def handle_payload(self, payload: Any) -> WatchResult:
        old, new = parse_trigger_payload(payload)
        return self.handle(old, new)

    def handle(self, old: UploadSnapshot, new: UploadSnapshot) -> WatchResult:
        """
        Evaluate one (old, new) pair and dispatch if worthy.

        Dispatcher errors propagate to the caller unchanged.
        """
        reason = skip_reason(old, new)

        if reason is None and self.ledger is not None and not self.ledger.claim(new.id, new.status):
            reason = SkipReason.DUPLICATE

        if reason is not None:
            logger.info(
                f"Upload {new.id}: {old.status} -> {new.status} skipped ({reason.value})"
            )
            return WatchResult(upload_id=new.id, sent=False, reason=reason)

        message = build_message(
            new.status, new.original_filename, new.push_token, self.deep_link_target
        )

        try:
            receipt = self.dispatcher.send(
                message.token, message.title, message.body, message.deep_link_target
            )
        except Exception:
            if self.ledger is not None:
                self.ledger.release(new.id, new.status)
            logger.error(f"Upload {new.id}: push dispatch for {new.status} failed")
            raise

        logger.info(f"Upload {new.id}: {old.status} -> {new.status} notified")
        return WatchResult(upload_id=new.id, sent=True, receipt=receipt)

    def __call__(self, old: UploadSnapshot, new: UploadSnapshot) -> WatchResult:
        return self.handle(old, new)
