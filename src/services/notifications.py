"""
Notification Sink

Fire-and-forget delivery of package-ready, document-reminder and SLA events.
Events carry ids and a download URL only, never client contact data or
clinical content. Delivery failures are logged and swallowed by
``dispatch_notification`` so they can never fail the operation that emitted
the event.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

logger = structlog.get_logger(__name__)


class NotificationKind(str, Enum):
    PACKAGE_READY = "package_ready"
    DOCUMENT_REMINDER = "document_reminder"
    SLA_VIOLATION = "sla_violation"


class NotificationError(Exception):
    """Exception for notification delivery failures."""
    pass


@dataclass(frozen=True)
class NotificationEvent:
    """Something staff should hear about."""
    kind: NotificationKind
    referral_id: str
    package_id: Optional[str] = None
    url: Optional[str] = None
    url_expires_at: Optional[datetime] = None
    recipient: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    def send(self, event: NotificationEvent) -> None: ...


class LoggingNotificationSink:
    """Development sink: writes a structured log line per event (URL omitted)."""

    def send(self, event: NotificationEvent) -> None:
        logger.info(
            "notification_sent",
            kind=event.kind.value,
            referral_id=event.referral_id,
            package_id=event.package_id,
            has_url=event.url is not None,
            details=event.details,
        )


class SesNotificationSink:
    """
    Sends plain-text notification emails through Amazon SES.

    Args:
        sender: From address. Defaults to NOTIFICATION_SENDER.
        default_recipient: Used when an event has no recipient. Defaults to
            NOTIFICATION_RECIPIENT.
        region: AWS region. Defaults to AWS_REGION.
        ses_client: Optional pre-built client (tests).
    """

    def __init__(
        self,
        sender: Optional[str] = None,
        default_recipient: Optional[str] = None,
        region: Optional[str] = None,
        ses_client=None,
    ):
        self.sender = sender or os.environ.get("NOTIFICATION_SENDER", "noreply@mindfithealth.com")
        self.default_recipient = default_recipient or os.environ.get("NOTIFICATION_RECIPIENT")
        region = region or os.environ.get("AWS_REGION", "us-east-1")
        self._ses = ses_client or boto3.client("ses", region_name=region)

    def _render(self, event: NotificationEvent) -> tuple[str, str]:
        if event.kind == NotificationKind.PACKAGE_READY:
            subject = "Intake package ready for download"
            lines = [
                f"An encrypted intake package is ready (referral {event.referral_id}).",
                f"Package: {event.package_id}",
                f"Download: {event.url}",
            ]
            if event.url_expires_at:
                lines.append(f"Link expires at {event.url_expires_at.isoformat()} UTC.")
        elif event.kind == NotificationKind.DOCUMENT_REMINDER:
            subject = "Referral documents still outstanding"
            lines = [
                f"Referral {event.referral_id} has been waiting on documents for "
                f"{event.details.get('days_waiting', '?')} days."
            ]
        else:
            subject = "Referral SLA violation"
            lines = [
                f"Referral {event.referral_id} exceeded its {event.details.get('phase', '')} target "
                f"({event.details.get('days_elapsed', '?')} days, severity "
                f"{event.details.get('severity', '?')})."
            ]
        return subject, "\n".join(lines)

    def send(self, event: NotificationEvent) -> None:
        recipient = event.recipient or self.default_recipient
        if not recipient:
            raise NotificationError("No notification recipient configured")

        subject, body = self._render(event)
        try:
            self._ses.send_email(
                Source=self.sender,
                Destination={"ToAddresses": [recipient]},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Text": {"Data": body}},
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise NotificationError(f"SES send failed: {type(e).__name__}") from e

        logger.info(
            "notification_sent",
            kind=event.kind.value,
            referral_id=event.referral_id,
            package_id=event.package_id,
            channel="ses",
        )


def dispatch_notification(sink: Optional[NotificationSink], event: NotificationEvent) -> bool:
    """
    Deliver *event*, never raising.

    Returns:
        True if the sink accepted the event, False if there was no sink or
        delivery failed.
    """
    if sink is None:
        return False
    try:
        sink.send(event)
        return True
    except Exception as e:
        logger.warning(
            "notification_failed",
            kind=event.kind.value,
            referral_id=event.referral_id,
            package_id=event.package_id,
            error_type=type(e).__name__,
        )
        return False


def get_notification_sink() -> NotificationSink:
    """SES when NOTIFICATION_SENDER is configured, structured logging otherwise."""
    if os.environ.get("NOTIFICATION_SENDER"):
        return SesNotificationSink()
    return LoggingNotificationSink()
