"""
sms_gateway.py — SMS delivery channel.

Body layout (≤160 chars, GSM 7-bit):

    "[{PRIORITY}] {title}: {message}"

The message is truncated with "..." to fit one segment. Recipients without
a phone number on file are reported as SKIPPED, never FAILED, so the
dispatcher does not retry them.

Only the "simulation" provider is wired up; it logs the rendered body and
reports delivery. Any other provider name fails the attempt.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from skyguard.alerts.models import (
    DeliveryAttempt,
    DeliveryMethod,
    DeliveryStatus,
    OutboundMessage,
    UserRecord,
)
from skyguard.alerts.sanitize import format_phone_number

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160
SUPPORTED_PROVIDERS = ("simulation",)


def format_sms(message: OutboundMessage) -> str:
    """Render the SMS body within the 160-char GSM limit."""
    prefix = f"[{message.priority.value.upper()}] {message.title}: "
    body = message.message
    available = SMS_MAX_GSM7 - len(prefix)
    if available < 4:
        return prefix[: SMS_MAX_GSM7 - 3] + "..."
    if len(body) > available:
        body = body[: available - 3] + "..."
    return f"{prefix}{body}"


def send(
    message: OutboundMessage,
    recipient: UserRecord,
    *,
    provider: str = "simulation",
) -> DeliveryAttempt:
    """
    Send an SMS alert to a recipient.

    Parameters
    ----------
    message : OutboundMessage
    recipient : UserRecord
        Must have ``phone_number`` set.
    provider : str
        SMS gateway provider; "simulation" in development.

    Returns
    -------
    DeliveryAttempt
    """
    attempt = DeliveryAttempt(
        channel=DeliveryMethod.SMS,
        recipient_id=recipient.user_id,
        status=DeliveryStatus.PENDING,
    )

    if not recipient.phone_number:
        attempt.status = DeliveryStatus.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No phone number on file"
        return attempt

    sms_body = format_sms(message)

    if provider == "simulation":
        logger.info(
            "[SMS] Alert %s → %s (%s): %d chars → '%s'",
            message.alert_id,
            format_phone_number(recipient.phone_number),
            recipient.username or recipient.user_id,
            len(sms_body),
            sms_body[:80] + ("..." if len(sms_body) > 80 else ""),
            extra={"alert_id": message.alert_id, "channel": "sms"},
        )
        attempt.status = DeliveryStatus.DELIVERED
        attempt.provider_response = {
            "mode": "simulated",
            "message_length": len(sms_body),
            "phone": recipient.phone_number,
        }
    else:
        attempt.status = DeliveryStatus.FAILED
        attempt.error_message = f"Unknown SMS provider: {provider}"

    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
