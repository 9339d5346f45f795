"""
alert_service.py — Alert fan-out engine.

This is the central coordinator that:
    1. Checks there is an authenticated sender
    2. Sanitizes and validates the submission
    3. Applies the per-sender rate limit
    4. Persists the alert (committed on its own)
    5. Resolves eligible recipients from roles + preferences
    6. Persists one recipient row per eligible user
    7. Records an audit entry for admin sends

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Validate        │  strip markup, trim, bounds, enum values
    └─────────┬───────────┘  ✗ ValidationError → nothing written
              ▼
    ┌─────────────────────┐
    │  2. Rate limit      │  key "send_alert:<sender>", 5 per 60 s
    └─────────┬───────────┘  ✗ RateLimitError → nothing written
              ▼
    ┌─────────────────────┐
    │  3. Persist alert   │  status=sent, sent_at=now, COMMIT
    └─────────┬───────────┘  ✗ PersistenceError → nothing written
              ▼
    ┌─────────────────────┐
    │  4. Resolve         │  eligibility.resolve_recipients
    └─────────┬───────────┘  (missing preference rows created, all on)
              ▼
    ┌─────────────────────┐
    │  5. Persist         │  one batch INSERT, COMMIT
    │     recipients      │  ✗ batch fails → retry row by row,
    └─────────┬───────────┘    skip rows that still fail
              ▼
        FanoutResult(alert_id, recipient_count)

A failure in step 5 never un-sends the alert: the returned count reflects
the rows that were actually stored and the shortfall is logged as a
PartialFanoutError.

A submission rejected in step 1 does not count against the sender's rate
limit.

System-generated alerts (weather monitor, Q&A notifications) go through
``send_system_alert``: no rate limit, no audit entry, and over-long
synthesized text is clipped instead of rejected.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Type, TypeVar

from sqlalchemy import func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts import directory, preferences
from skyguard.alerts.eligibility import resolve_recipients, select_candidates
from skyguard.alerts.models import (
    AlertPriority,
    AlertRequest,
    AlertStats,
    AlertStatus,
    AlertType,
    DeliveryMethod,
    DeliveryStatus,
    FanoutResult,
    ReadStatus,
    RecipientTarget,
    UserRole,
    isoformat,
    new_id,
    utcnow,
)
from skyguard.alerts.rate_limiter import SlidingWindowRateLimiter
from skyguard.alerts.sanitize import clip, sanitize_text, validate_message, validate_title
from skyguard.core.config import settings
from skyguard.core.errors import (
    AuthRequiredError,
    PartialFanoutError,
    PersistenceError,
    RateLimitError,
    ValidationError,
)
from skyguard.core.tables import AlertRecipientRow, AlertRow, Profile, UserPreferenceRow

if TYPE_CHECKING:
    from skyguard.audit.monitor import RequestMeta, SecurityMonitor

logger = logging.getLogger(__name__)

E = TypeVar("E")

STATS_RESPONSE_WINDOW_DAYS = 30


# ═══════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════

def _parse_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)  # type: ignore[call-arg]
    except ValueError:
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            field=field,
            allowed=[m.value for m in enum_cls],  # type: ignore[attr-defined]
        )


def validate_alert_request(submission: Mapping[str, Any]) -> AlertRequest:
    """
    Turn a raw submission into an AlertRequest.

    Raises
    ------
    ValidationError
        Empty or over-long title/message after markup stripping, or an
        unknown type / priority / target / delivery method. The
        ``specific`` target is reserved for system notifications.
    """
    title = validate_title(submission.get("title"))
    message = validate_message(submission.get("message"))
    alert_type = _parse_enum(AlertType, submission.get("alert_type", "company"), "alert_type")
    priority = _parse_enum(AlertPriority, submission.get("priority", "medium"), "priority")
    target = _parse_enum(RecipientTarget, submission.get("recipients", "all"), "recipients")
    if target == RecipientTarget.SPECIFIC:
        raise ValidationError(
            "Recipients must be one of: all, emergency, staff, management",
            field="recipients",
        )

    method_raw = submission.get("delivery_method")
    delivery_method = (
        _parse_enum(DeliveryMethod, method_raw, "delivery_method") if method_raw else None
    )

    return AlertRequest(
        title=title,
        message=message,
        alert_type=alert_type,
        priority=priority,
        recipients=target,
        delivery_method=delivery_method,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Persistence Steps
# ═══════════════════════════════════════════════════════════════════════════

async def _persist_alert(
    session: AsyncSession, request: AlertRequest, sent_by: Optional[str]
) -> str:
    now = utcnow()
    alert_id = new_id()
    session.add(
        AlertRow(
            id=alert_id,
            alert_type=request.alert_type.value,
            title=request.title,
            message=request.message,
            priority=request.priority.value,
            recipients=request.recipients.value,
            status=AlertStatus.SENT.value,
            sent_by=sent_by,
            created_at=now,
            sent_at=now,
        )
    )
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Failed to persist alert '%s'", request.title)
        raise PersistenceError("create_alert")
    return alert_id


async def _resolve(
    session: AsyncSession, request: AlertRequest
) -> Dict[str, DeliveryMethod]:
    users = await directory.list_users(session)
    candidates = select_candidates(request.recipients, users, request.specific_user_ids)
    try:
        prefs = await preferences.ensure_preferences(session, candidates.keys())
        await session.commit()
    except SQLAlchemyError:
        # Stored opt-outs still apply; only users with no row fall back to defaults
        await session.rollback()
        logger.exception("Could not create default preferences during fan-out")
        prefs = await preferences.load_preferences(session, candidates.keys())

    return resolve_recipients(
        request.recipients,
        request.alert_type,
        candidates.values(),
        prefs,
        delivery_method=request.delivery_method,
        emergency_always_on=settings.EMERGENCY_ALERTS_ALWAYS_ON,
        specific_user_ids=request.specific_user_ids,
    )


async def persist_recipients(
    session: AsyncSession,
    alert_id: str,
    assignments: Mapping[str, DeliveryMethod],
) -> int:
    """
    Insert one recipient row per assignment and return how many landed.

    One batch INSERT is tried first. If the store rejects it the rows are
    inserted one at a time, each in its own transaction, and rows that
    still fail are skipped.
    """
    now = utcnow()
    rows: List[Dict[str, Any]] = [
        {
            "id": new_id(),
            "alert_id": alert_id,
            "user_id": user_id,
            "delivery_method": method.value,
            "delivery_status": DeliveryStatus.SENT.value,
            "read_status": ReadStatus.UNREAD.value,
            "sent_at": now,
            "created_at": now,
        }
        for user_id, method in assignments.items()
    ]
    if not rows:
        return 0

    try:
        await session.execute(insert(AlertRecipientRow), rows)
        await session.commit()
        return len(rows)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "Batch recipient insert for alert %s failed (%s); retrying row by row",
            alert_id, exc.__class__.__name__,
            extra={"alert_id": alert_id},
        )

    persisted = 0
    for row in rows:
        try:
            await session.execute(insert(AlertRecipientRow), [row])
            await session.commit()
            persisted += 1
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error(
                "Skipping recipient %s for alert %s: %s",
                row["user_id"], alert_id, exc.__class__.__name__,
                extra={"alert_id": alert_id},
            )
    return persisted


async def _fan_out(
    session: AsyncSession, request: AlertRequest, sent_by: Optional[str]
) -> FanoutResult:
    alert_id = await _persist_alert(session, request, sent_by)
    assignments = await _resolve(session, request)
    persisted = await persist_recipients(session, alert_id, assignments)

    result = FanoutResult(
        alert_id=alert_id,
        recipient_count=persisted,
        expected_count=len(assignments),
    )
    if result.is_partial:
        err = PartialFanoutError(alert_id, len(assignments), persisted)
        logger.error(err.message, extra={"alert_id": alert_id, "recipient_count": persisted})

    logger.info(
        "Alert %s (%s/%s) sent to %d recipients",
        alert_id, request.alert_type.value, request.priority.value, persisted,
        extra={"alert_id": alert_id, "recipient_count": persisted},
    )
    return result


# ═══════════════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════════════

async def send_alert(
    session: AsyncSession,
    submission: Mapping[str, Any],
    sender_id: Optional[str],
    *,
    limiter: SlidingWindowRateLimiter,
    monitor: "SecurityMonitor",
    meta: Optional["RequestMeta"] = None,
) -> FanoutResult:
    """
    Compose, persist and fan out one alert.

    Parameters
    ----------
    session : AsyncSession
    submission : mapping
        Raw fields: title, message, alert_type, priority, recipients and an
        optional delivery_method.
    sender_id : str | None
        Authenticated user sending the alert.
    limiter : SlidingWindowRateLimiter
        Shared per-process limiter.
    monitor : SecurityMonitor
        Receives the admin_action entry.
    meta : RequestMeta, optional
        Caller IP / user agent for the audit entry.

    Returns
    -------
    FanoutResult

    Raises
    ------
    AuthRequiredError, ValidationError, RateLimitError, PersistenceError
    """
    if not sender_id:
        raise AuthRequiredError()

    request = validate_alert_request(submission)

    key = f"send_alert:{sender_id}"
    if not limiter.allow(key):
        retry_after = math.ceil(limiter.retry_after(key)) or int(limiter.window_seconds)
        raise RateLimitError(
            "Too many alerts sent. Please wait before sending again.",
            retry_after=retry_after,
        )

    sender = await directory.get_user(session, sender_id)
    result = await _fan_out(session, request, sender_id)

    if sender is not None and sender.role == UserRole.ADMIN:
        await monitor.monitor_admin_action(
            sender_id,
            "send_alert",
            {
                "alert_id": result.alert_id,
                "alert_type": request.alert_type.value,
                "priority": request.priority.value,
                "recipients": request.recipients.value,
                "title": request.title,
                "recipient_count": result.recipient_count,
            },
            meta,
        )
    return result


async def send_system_alert(
    session: AsyncSession,
    *,
    title: str,
    message: str,
    alert_type: AlertType,
    priority: AlertPriority,
    recipients: RecipientTarget = RecipientTarget.ALL,
    specific_user_ids: Sequence[str] = (),
    sent_by: Optional[str] = None,
) -> FanoutResult:
    """Fan out a synthesized alert: no rate limit, no audit, text clipped to bounds."""
    clean_title = clip(sanitize_text(title), settings.TITLE_MAX_LENGTH)
    clean_message = clip(sanitize_text(message), settings.MESSAGE_MAX_LENGTH)
    if not clean_title or not clean_message:
        raise ValidationError("System alert needs a title and a message")

    request = AlertRequest(
        title=clean_title,
        message=clean_message,
        alert_type=alert_type,
        priority=priority,
        recipients=recipients,
        specific_user_ids=list(specific_user_ids),
    )
    return await _fan_out(session, request, sent_by)


# ═══════════════════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════════════════

async def get_user_alerts(
    session: AsyncSession, user_id: str, *, limit: int = 50
) -> List[Dict[str, Any]]:
    """Alerts delivered to one user, newest first, with their read state."""
    stmt = (
        select(AlertRow, AlertRecipientRow)
        .join(AlertRecipientRow, AlertRecipientRow.alert_id == AlertRow.id)
        .where(AlertRecipientRow.user_id == user_id)
        .order_by(AlertRow.created_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [
        {
            "id": alert.id,
            "alert_type": alert.alert_type,
            "title": alert.title,
            "message": alert.message,
            "priority": alert.priority,
            "created_at": isoformat(alert.created_at),
            "sent_at": isoformat(alert.sent_at),
            "delivery_method": recipient.delivery_method,
            "delivery_status": recipient.delivery_status,
            "read_status": recipient.read_status or ReadStatus.UNREAD.value,
            "read_at": isoformat(recipient.read_at),
        }
        for alert, recipient in result.all()
    ]


async def get_all_alerts(
    session: AsyncSession, *, limit: int = 100
) -> List[Dict[str, Any]]:
    """Every alert, newest first, with recipient and read counts."""
    counts = (
        select(
            AlertRecipientRow.alert_id.label("alert_id"),
            func.count(AlertRecipientRow.id).label("recipient_count"),
            func.count(AlertRecipientRow.id)
            .filter(AlertRecipientRow.read_status == ReadStatus.READ.value)
            .label("read_count"),
        )
        .group_by(AlertRecipientRow.alert_id)
        .subquery()
    )
    stmt = (
        select(AlertRow, counts.c.recipient_count, counts.c.read_count)
        .outerjoin(counts, counts.c.alert_id == AlertRow.id)
        .order_by(AlertRow.created_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [
        {
            "id": alert.id,
            "alert_type": alert.alert_type,
            "title": alert.title,
            "message": alert.message,
            "priority": alert.priority,
            "recipients": alert.recipients,
            "status": alert.status,
            "sent_by": alert.sent_by,
            "created_at": isoformat(alert.created_at),
            "sent_at": isoformat(alert.sent_at),
            "recipient_count": recipient_count or 0,
            "read_count": read_count or 0,
        }
        for alert, recipient_count, read_count in result.all()
    ]


async def get_stats(session: AsyncSession, *, now: Optional[datetime] = None) -> AlertStats:
    """
    Dashboard counters.

    active_users counts users with at least one delivery channel enabled;
    users who never saved preferences count as active. response_rate is
    the percentage of recipient rows from the last 30 days that were read.
    """
    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    window_start = now - timedelta(days=STATS_RESPONSE_WINDOW_DAYS)

    total_users = await session.scalar(select(func.count(Profile.user_id))) or 0
    silenced = await session.scalar(
        select(func.count(UserPreferenceRow.id)).where(
            UserPreferenceRow.sms_enabled.is_(False),
            UserPreferenceRow.push_enabled.is_(False),
            UserPreferenceRow.email_enabled.is_(False),
        )
    ) or 0
    sent_today = await session.scalar(
        select(func.count(AlertRow.id)).where(
            AlertRow.status == AlertStatus.SENT.value,
            AlertRow.sent_at >= midnight,
        )
    ) or 0
    recent = await session.execute(
        select(
            func.count(AlertRecipientRow.id),
            func.count(AlertRecipientRow.id).filter(
                AlertRecipientRow.read_status == ReadStatus.READ.value
            ),
        ).where(AlertRecipientRow.created_at >= window_start)
    )
    delivered, read = recent.one()

    return AlertStats(
        total_users=total_users,
        active_users=max(0, total_users - silenced),
        alerts_sent_today=sent_today,
        response_rate=round(read / delivered * 100, 1) if delivered else 0.0,
    )
