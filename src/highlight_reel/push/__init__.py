"""
Push notification dispatch.

Sends a single message to the Expo-style push gateway for a device token.
The dispatcher never retries: a failed send is raised to the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from highlight_reel.database import UploadStatus

logger = logging.getLogger(__name__)

READY_TITLE = "Your highlight reel is ready!"
FAILED_TITLE = "Processing failed — please retry"

DEFAULT_DEEP_LINK = "UploadStatus"


class DispatchError(Exception):
    """The push gateway did not accept the message."""


class GatewayUnreachable(DispatchError):
    """Connection error or timeout talking to the gateway."""


class GatewayError(DispatchError):
    """Gateway answered with an error status or an unreadable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TokenRejected(DispatchError):
    """Gateway refused the device token (e.g. DeviceNotRegistered)."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


@dataclass
class PushMessage:
    """A push message for one device."""
    token: str
    title: str
    body: str
    deep_link_target: str = DEFAULT_DEEP_LINK

    def to_payload(self) -> Dict[str, Any]:
        return {
            "to": self.token,
            "title": self.title,
            "body": self.body,
            "data": {"screen": self.deep_link_target},
            "sound": "default",
        }


@dataclass
class DispatchReceipt:
    """What the gateway returned for an accepted message."""
    status: str
    ticket_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return self.raw


def build_message(status: str, original_filename: str, token: str,
                  deep_link_target: str = DEFAULT_DEEP_LINK) -> PushMessage:
    """Title/body for a terminal status change."""
    status = UploadStatus(status)

    if status == UploadStatus.READY:
        title = READY_TITLE
    elif status == UploadStatus.FAILED:
        title = FAILED_TITLE
    else:
        raise ValueError(f"No notification for non-terminal status: {status.value}")

    return PushMessage(
        token=token,
        title=title,
        body=original_filename or "",
        deep_link_target=deep_link_target,
    )


class NotificationDispatcher:
    """Posts push messages to the gateway, one call per send()."""

    def __init__(self, gateway_url: str, access_token: str = "", timeout_sec: int = 15,
                 session: Optional[requests.Session] = None):
        self.gateway_url = gateway_url
        self.timeout = timeout_sec

        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        })
        if access_token:
            self.session.headers["Authorization"] = f"Bearer {access_token}"

    @classmethod
    def from_config(cls, push_config) -> "NotificationDispatcher":
        return cls(
            push_config.gateway_url,
            access_token=push_config.access_token,
            timeout_sec=push_config.timeout_sec,
        )

    def send(self, token: str, title: str, body: str,
             deep_link_target: str = DEFAULT_DEEP_LINK) -> DispatchReceipt:
        """
        Send one push message.

        Returns:
            DispatchReceipt with the gateway's response

        Raises:
            GatewayUnreachable, GatewayError, TokenRejected
        """
        message = PushMessage(token, title, body, deep_link_target)
        return self.send_message(message)

    def send_message(self, message: PushMessage) -> DispatchReceipt:
        try:
            response = self.session.post(
                self.gateway_url,
                json=message.to_payload(),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.error(f"Push gateway unreachable: {e}")
            raise GatewayUnreachable(f"Push gateway unreachable: {e}") from e
        except requests.RequestException as e:
            raise GatewayError(f"Push request failed: {e}") from e

        try:
            result = response.json()
        except ValueError:
            result = None

        if response.status_code >= 400:
            detail = self._error_detail(result) or response.text[:200]
            raise GatewayError(
                f"Push gateway returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        if not isinstance(result, dict):
            raise GatewayError("Push gateway returned a non-JSON body",
                               status_code=response.status_code)

        ticket = result.get("data")
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        ticket = ticket or {}

        if ticket.get("status") == "error":
            code = (ticket.get("details") or {}).get("error")
            raise TokenRejected(
                f"Push rejected for token: {ticket.get('message', code or 'unknown error')}",
                code=code,
            )

        receipt = DispatchReceipt(
            status=ticket.get("status", "ok"),
            ticket_id=ticket.get("id"),
            raw=result,
        )
        logger.info(f"Push sent: {message.title!r} (ticket {receipt.ticket_id})")
        return receipt

    @staticmethod
    def _error_detail(result) -> Optional[str]:
        if isinstance(result, dict) and result.get("errors"):
            return "; ".join(
                str(err.get("message", err)) if isinstance(err, dict) else str(err)
                for err in result["errors"]
            )
        return None
