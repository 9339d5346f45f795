"""
email_alert.py — Email alert delivery channel.

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: {icon} [PRIORITY] {Type} Alert: {title}
    Body:
        ┌─────────────────────────────────────────┐
        │  {TYPE} ALERT — priority {priority}      │
        ├─────────────────────────────────────────┤
        │  {title}                                  │
        │  {message}                                │
        │                                          │
        │  [View Alert]                             │
        └─────────────────────────────────────────┘

Both an HTML and a plain-text part are rendered; the simulation provider
only logs the subject and sizes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from html import escape

from skyguard.alerts.models import (
    AlertPriority,
    DeliveryAttempt,
    DeliveryMethod,
    DeliveryStatus,
    OutboundMessage,
    UserRecord,
)

logger = logging.getLogger(__name__)

_PRIORITY_ICONS = {
    AlertPriority.LOW: "ℹ️",
    AlertPriority.MEDIUM: "⚠️",
    AlertPriority.HIGH: "🚨",
    AlertPriority.CRITICAL: "🆘",
}

_PRIORITY_COLOURS = {
    AlertPriority.LOW: "#4CAF50",
    AlertPriority.MEDIUM: "#FF9800",
    AlertPriority.HIGH: "#F44336",
    AlertPriority.CRITICAL: "#B71C1C",
}


def build_subject(message: OutboundMessage) -> str:
    icon = _PRIORITY_ICONS.get(message.priority, "⚠️")
    return (
        f"{icon} [{message.priority.value.upper()}] "
        f"{message.alert_type.value.title()} Alert: {message.title}"
    )


def build_html_body(message: OutboundMessage) -> str:
    colour = _PRIORITY_COLOURS.get(message.priority, "#FF9800")
    body = escape(message.message).replace("\n", "<br>")
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">{message.alert_type.value.upper()} ALERT</h2>
        <p style="margin:4px 0 0;">Priority: {message.priority.value}</p>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <h3>{escape(message.title)}</h3>
        <p>{body}</p>
        <a href="/alerts/{message.alert_id}"
           style="background:{colour};color:white;padding:10px 20px;text-decoration:none;border-radius:4px;">
          View Alert
        </a>
      </div>
    </div>
    """


def build_plain_body(message: OutboundMessage) -> str:
    return (
        f"{message.alert_type.value.upper()} ALERT\n"
        f"Priority: {message.priority.value}\n\n"
        f"{message.title}\n"
        f"{message.message}\n"
    )


def send(
    message: OutboundMessage,
    recipient: UserRecord,
    *,
    provider: str = "simulation",
) -> DeliveryAttempt:
    """
    Send an email alert to a recipient.

    Parameters
    ----------
    message : OutboundMessage
    recipient : UserRecord
        Must have ``email`` set.
    provider : str
        "simulation" in development.

    Returns
    -------
    DeliveryAttempt
    """
    attempt = DeliveryAttempt(
        channel=DeliveryMethod.EMAIL,
        recipient_id=recipient.user_id,
        status=DeliveryStatus.PENDING,
    )

    if not recipient.email:
        attempt.status = DeliveryStatus.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No email address on file"
        return attempt

    subject = build_subject(message)

    if provider == "simulation":
        html_body = build_html_body(message)
        logger.info(
            "[EMAIL] Alert %s → %s: Subject='%s'",
            message.alert_id,
            recipient.email,
            subject,
            extra={"alert_id": message.alert_id, "channel": "email"},
        )
        attempt.status = DeliveryStatus.DELIVERED
        attempt.provider_response = {
            "mode": "simulated",
            "subject": subject,
            "html_size": len(html_body),
            "text_size": len(build_plain_body(message)),
            "to": recipient.email,
        }
    else:
        attempt.status = DeliveryStatus.FAILED
        attempt.error_message = f"Unknown email provider: {provider}"

    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
