"""
tracker.py — Read receipts and channel dispatch for persisted recipients.

Read state only ever moves forward (unread → read) through one conditional
UPDATE, so marking an alert read twice, or concurrently from two tabs,
changes nothing the second time.

Delivery state is advanced by ``dispatch_pending``, which runs after the
send request has returned (FastAPI background task) and commits each
recipient's outcome as soon as its retries finish.

═══════════════════════════════════════════════════════════════════════════
RETRY STRATEGY
═══════════════════════════════════════════════════════════════════════════

    Channel     Max Retries    Backoff Base    Backoff Type
    ───────     ───────────    ────────────    ────────────
    push        2              1.0s            Exponential
    email       3              2.0s            Exponential
    sms         3              5.0s            Exponential
    system      —              —               delivered immediately

Backoff formula (exponential):
    delay = base × 2^(attempt - 1)

A SKIPPED attempt (no contact details for the channel) is not retried and
the recipient is marked failed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skyguard.alerts.channels import email_alert, in_app, sms_gateway, web_push
from skyguard.alerts.directory import to_user_record
from skyguard.alerts.models import (
    AlertPriority,
    AlertType,
    DeliveryAttempt,
    DeliveryMethod,
    DeliveryStatus,
    OutboundMessage,
    ReadReceiptEntry,
    ReadReceiptReport,
    ReadStatus,
    UserRecord,
    as_utc,
    utcnow,
)
from skyguard.core.config import settings
from skyguard.core.errors import NotFoundError
from skyguard.core.tables import AlertRecipientRow, AlertRow, Profile

logger = logging.getLogger(__name__)

Sender = Callable[[OutboundMessage, UserRecord], DeliveryAttempt]
Sleeper = Callable[[float], Awaitable[Any]]


# ═══════════════════════════════════════════════════════════════════════════
# Read Tracking
# ═══════════════════════════════════════════════════════════════════════════

async def mark_alert_as_read(session: AsyncSession, alert_id: str, user_id: str) -> bool:
    """
    Mark one recipient row read.

    Returns
    -------
    bool
        True if the row changed; False when it was already read or the
        user is not a recipient of the alert.
    """
    stmt = (
        update(AlertRecipientRow)
        .where(
            AlertRecipientRow.alert_id == alert_id,
            AlertRecipientRow.user_id == user_id,
            or_(
                AlertRecipientRow.read_status.is_(None),
                AlertRecipientRow.read_status != ReadStatus.READ.value,
            ),
        )
        .values(read_status=ReadStatus.READ.value, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    changed = (result.rowcount or 0) > 0
    if changed:
        logger.debug("Alert %s read by %s", alert_id, user_id, extra={"alert_id": alert_id})
    return changed


async def _require_alert(session: AsyncSession, alert_id: str) -> AlertRow:
    alert = await session.get(AlertRow, alert_id)
    if alert is None:
        raise NotFoundError("Alert", alert_id=alert_id)
    return alert


async def get_read_receipts(session: AsyncSession, alert_id: str) -> ReadReceiptReport:
    """Recipients of an alert split into read / unread, newest first in each."""
    await _require_alert(session, alert_id)

    stmt = (
        select(AlertRecipientRow, Profile)
        .outerjoin(Profile, Profile.user_id == AlertRecipientRow.user_id)
        .where(AlertRecipientRow.alert_id == alert_id)
    )
    result = await session.execute(stmt)

    report = ReadReceiptReport(alert_id=alert_id)
    for recipient, profile in result.all():
        entry = ReadReceiptEntry(
            user_id=recipient.user_id,
            username=profile.username if profile else None,
            role=profile.role if profile else "unknown",
            read_status=(
                ReadStatus.READ
                if recipient.read_status == ReadStatus.READ.value
                else ReadStatus.UNREAD
            ),
            read_at=as_utc(recipient.read_at),
            sent_at=as_utc(recipient.sent_at),
        )
        if entry.read_status == ReadStatus.READ:
            report.read.append(entry)
        else:
            report.unread.append(entry)

    report.read.sort(key=lambda e: e.read_at or e.sent_at or utcnow(), reverse=True)
    report.unread.sort(key=lambda e: e.sent_at or utcnow(), reverse=True)
    return report


async def get_read_summary(session: AsyncSession, alert_id: str) -> Dict[str, Any]:
    report = await get_read_receipts(session, alert_id)
    return {
        "alert_id": alert_id,
        "total": report.total,
        "read": len(report.read),
        "unread": len(report.unread),
        "read_rate": round(report.read_rate, 3),
    }


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Per-channel retry parameters."""
    max_retries: int
    backoff_base_seconds: float
    backoff_type: str  # "exponential" or "linear"


RETRY_CONFIGS: Dict[DeliveryMethod, RetryConfig] = {
    DeliveryMethod.PUSH:  RetryConfig(2, 1.0, "exponential"),
    DeliveryMethod.EMAIL: RetryConfig(3, 2.0, "exponential"),
    DeliveryMethod.SMS:   RetryConfig(3, 5.0, "exponential"),
}


def compute_backoff(config: RetryConfig, attempt: int) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based)."""
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt


def default_senders() -> Dict[DeliveryMethod, Sender]:
    return {
        DeliveryMethod.SMS: partial(sms_gateway.send, provider=settings.SMS_PROVIDER),
        DeliveryMethod.PUSH: partial(web_push.send, vapid_private_key=settings.VAPID_PRIVATE_KEY),
        DeliveryMethod.EMAIL: email_alert.send,
        DeliveryMethod.SYSTEM: in_app.send,
    }


async def deliver_with_retry(
    method: DeliveryMethod,
    message: OutboundMessage,
    recipient: UserRecord,
    sender: Sender,
    *,
    sleep: Sleeper = asyncio.sleep,
) -> DeliveryAttempt:
    """Attempt delivery via one channel, retrying FAILED attempts with backoff."""
    config = RETRY_CONFIGS.get(method, RetryConfig(0, 0.0, "exponential"))
    last: Optional[DeliveryAttempt] = None

    for attempt_num in range(1, config.max_retries + 2):
        try:
            result = sender(message, recipient)
        except Exception as exc:
            logger.error("[%s] Sink raised for %s: %s", method.value, recipient.user_id, exc)
            result = DeliveryAttempt(
                channel=method,
                recipient_id=recipient.user_id,
                status=DeliveryStatus.FAILED,
                completed_at=utcnow(),
                error_message=str(exc),
            )
        result.retry_count = attempt_num - 1
        last = result

        if result.status in (DeliveryStatus.DELIVERED, DeliveryStatus.SKIPPED):
            return result

        if attempt_num <= config.max_retries:
            delay = compute_backoff(config, attempt_num)
            logger.info(
                "Retry %d/%d for %s via %s in %.1fs",
                attempt_num, config.max_retries, recipient.user_id, method.value, delay,
            )
            await sleep(delay)

    assert last is not None
    last.status = DeliveryStatus.FAILED
    return last


# ═══════════════════════════════════════════════════════════════════════════
# Dispatch
# ═══════════════════════════════════════════════════════════════════════════

# At most this many recipients of one alert are in their retry loop at once
DISPATCH_CONCURRENCY = 10

PendingDelivery = Tuple[str, DeliveryMethod, UserRecord]


async def _load_pending(
    session_factory: async_sessionmaker[AsyncSession], alert_id: str
) -> Tuple[Optional[OutboundMessage], List[PendingDelivery]]:
    async with session_factory() as session:
        alert = await session.get(AlertRow, alert_id)
        if alert is None:
            return None, []

        message = OutboundMessage(
            alert_id=alert.id,
            title=alert.title,
            message=alert.message,
            alert_type=AlertType(alert.alert_type),
            priority=AlertPriority(alert.priority),
        )

        result = await session.execute(
            select(AlertRecipientRow, Profile)
            .outerjoin(Profile, Profile.user_id == AlertRecipientRow.user_id)
            .where(
                AlertRecipientRow.alert_id == alert_id,
                AlertRecipientRow.delivery_status == DeliveryStatus.SENT.value,
            )
        )
        pending = [
            (
                recipient.id,
                DeliveryMethod(recipient.delivery_method),
                to_user_record(profile) if profile else UserRecord(user_id=recipient.user_id),
            )
            for recipient, profile in result.all()
        ]
    return message, pending


async def _record_outcome(
    session_factory: async_sessionmaker[AsyncSession],
    write_lock: asyncio.Lock,
    row_id: str,
    attempt: DeliveryAttempt,
) -> None:
    """Commit one recipient's final delivery state, only if it is still ``sent``."""
    if attempt.status == DeliveryStatus.DELIVERED:
        values: Dict[str, Any] = {
            "delivery_status": DeliveryStatus.DELIVERED.value,
            "delivered_at": attempt.completed_at or utcnow(),
        }
    else:
        values = {"delivery_status": DeliveryStatus.FAILED.value}

    async with write_lock:
        async with session_factory() as session:
            await session.execute(
                update(AlertRecipientRow)
                .where(
                    AlertRecipientRow.id == row_id,
                    AlertRecipientRow.delivery_status == DeliveryStatus.SENT.value,
                )
                .values(**values)
            )
            await session.commit()


async def dispatch_pending(
    session_factory: async_sessionmaker[AsyncSession],
    alert_id: str,
    *,
    senders: Optional[Dict[DeliveryMethod, Sender]] = None,
    sleep: Sleeper = asyncio.sleep,
) -> Dict[str, int]:
    """
    Deliver every ``sent`` recipient of an alert through its channel.

    Recipients are delivered concurrently, up to ``DISPATCH_CONCURRENCY``
    at a time, and each outcome is committed as soon as it is known. If one
    delivery raises, the others still finish and are recorded before the
    first error is re-raised; the failed recipient stays ``sent`` and is
    picked up by the next dispatch.

    Returns
    -------
    dict
        Counts of recipients marked delivered and failed.
    """
    senders = senders or default_senders()
    counts = {"delivered": 0, "failed": 0}

    message, pending = await _load_pending(session_factory, alert_id)
    if message is None:
        logger.warning("Dispatch skipped: alert %s not found", alert_id)
        return counts

    semaphore = asyncio.Semaphore(DISPATCH_CONCURRENCY)
    write_lock = asyncio.Lock()

    async def deliver(row_id: str, method: DeliveryMethod, user: UserRecord) -> None:
        async with semaphore:
            attempt = await deliver_with_retry(method, message, user, senders[method], sleep=sleep)
        await _record_outcome(session_factory, write_lock, row_id, attempt)

        if attempt.status == DeliveryStatus.DELIVERED:
            counts["delivered"] += 1
        else:
            counts["failed"] += 1
            logger.warning(
                "Delivery failed for %s via %s: %s",
                user.user_id, method.value, attempt.error_message,
                extra={"alert_id": alert_id, "channel": method.value},
            )

    outcomes = await asyncio.gather(
        *(deliver(*item) for item in pending), return_exceptions=True,
    )
    errors = [o for o in outcomes if isinstance(o, BaseException)]

    logger.info(
        "Dispatch for alert %s: %d delivered, %d failed, %d interrupted",
        alert_id, counts["delivered"], counts["failed"], len(errors),
        extra={"alert_id": alert_id},
    )
    if errors:
        raise errors[0]
    return counts
