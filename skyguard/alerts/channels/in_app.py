"""
in_app.py — In-app ("system") channel.

The alert row itself is the notification: it shows up in the recipient's
alert list as soon as the recipient row exists. Sending therefore always
succeeds immediately.
"""

from __future__ import annotations

from datetime import datetime, timezone

from skyguard.alerts.models import (
    DeliveryAttempt,
    DeliveryMethod,
    DeliveryStatus,
    OutboundMessage,
    UserRecord,
)


def send(message: OutboundMessage, recipient: UserRecord) -> DeliveryAttempt:
    now = datetime.now(timezone.utc)
    return DeliveryAttempt(
        channel=DeliveryMethod.SYSTEM,
        recipient_id=recipient.user_id,
        status=DeliveryStatus.DELIVERED,
        attempted_at=now,
        completed_at=now,
        provider_response={"mode": "in_app", "alert_id": message.alert_id},
    )
