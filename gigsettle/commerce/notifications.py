"""Notification dispatch.

Notifications are sent after the settlement transaction commits. Delivery is
attempted once; a failing dispatcher is logged and reported as a warning on
the operation result, never raised to the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


class NotificationEvent:
    """Event type names carried in notification payloads."""

    BID_RECEIVED = "bid_received"
    BID_STATUS_UPDATE = "bid_status_update"
    JOB_CANCELLED = "job_cancelled"
    JOB_COMPLETED = "job_completed"
    ESCROW_FUNDED = "escrow_funded"
    TRADE_EXPIRED = "trade_expired"
    MILESTONE_STARTED = "milestone_started"
    MILESTONE_SUBMITTED = "milestone_submitted"
    MILESTONE_APPROVED = "milestone_approved"
    MILESTONE_AUTO_RELEASED = "milestone_auto_released"
    MILESTONE_DISPUTED = "milestone_disputed"
    MILESTONE_OVERDUE = "milestone_overdue"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_PROCESSED = "withdrawal_processed"


@dataclass(frozen=True)
class Notification:
    """Payload delivered to one recipient."""

    recipient_id: str
    event_type: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "event_type": self.event_type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
        }


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Delivers a single notification. May raise on failure."""

    def dispatch(self, notification: Notification) -> None:
        ...


class LoggingNotificationDispatcher:
    """Writes notifications to the log. Default for local development."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def dispatch(self, notification: Notification) -> None:
        logger.log(
            self.level,
            f"NOTIFY | {notification.event_type} -> {notification.recipient_id} | "
            f"{notification.title}",
        )


class WebhookNotificationDispatcher:
    """POSTs each notification as JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Webhook URL must be http(s): {url}")
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = headers or {}

    def dispatch(self, notification: Notification) -> None:
        response = self._client.post(
            self.url, json=notification.to_dict(), headers=self._headers
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def dispatch_all(
    dispatcher: Optional[NotificationDispatcher], notifications: Iterable[Notification]
) -> List[str]:
    """Attempt delivery of each notification once.

    Returns:
        Warning strings for notifications that could not be delivered
    """
    if dispatcher is None:
        return []
    warnings = []
    for notification in notifications:
        try:
            dispatcher.dispatch(notification)
        except Exception as e:
            logger.warning(
                f"Notification {notification.event_type} to {notification.recipient_id} "
                f"failed: {e}"
            )
            warnings.append(
                f"notification {notification.event_type} to {notification.recipient_id} "
                "was not delivered"
            )
    return warnings
