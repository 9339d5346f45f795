"""
web_push.py — Web push notification channel.

Builds the notification payload a service worker would display (title,
body, tag = alert id, link to the alert) and, in simulation mode, logs it
and reports delivery. High and critical alerts request interaction so the
notification stays on screen until dismissed.

Real delivery would sign the request with the VAPID key pair from settings.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from skyguard.alerts.models import (
    DeliveryAttempt,
    DeliveryMethod,
    DeliveryStatus,
    OutboundMessage,
    UserRecord,
)

logger = logging.getLogger(__name__)


def build_push_payload(message: OutboundMessage) -> Dict[str, Any]:
    return {
        "notification": {
            "title": message.title,
            "body": message.message,
            "tag": message.alert_id,
            "data": {
                "alert_id": message.alert_id,
                "alert_type": message.alert_type.value,
                "priority": message.priority.value,
                "url": f"/alerts/{message.alert_id}",
            },
            "requireInteraction": message.is_urgent,
        },
    }


def send(
    message: OutboundMessage,
    recipient: UserRecord,
    *,
    vapid_private_key: Optional[str] = None,
) -> DeliveryAttempt:
    """Send a web push notification to a recipient."""
    attempt = DeliveryAttempt(
        channel=DeliveryMethod.PUSH,
        recipient_id=recipient.user_id,
        status=DeliveryStatus.PENDING,
    )

    push_data = build_push_payload(message)

    logger.info(
        "[WEB_PUSH] Alert %s → %s: %s%s",
        message.alert_id,
        recipient.user_id,
        message.title,
        "" if vapid_private_key else " (simulated)",
        extra={"alert_id": message.alert_id, "channel": "push"},
    )

    attempt.status = DeliveryStatus.DELIVERED
    attempt.completed_at = datetime.now(timezone.utc)
    attempt.provider_response = {
        "mode": "vapid" if vapid_private_key else "simulated",
        "push_payload_size": len(json.dumps(push_data)),
    }
    return attempt
