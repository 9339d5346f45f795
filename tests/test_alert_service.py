"""
test_alert_service.py — Fan-out engine against a real (in-memory) database.

Covers:
    • End-to-end sends (preference filtering, role targeting, bounds)
    • No duplicate recipients, store-level uniqueness
    • Per-sender rate limiting
    • Partial recipient persistence (batch failure → row-by-row)
    • System alerts (no sender, clipping)
    • Dashboard queries (all alerts, stats)

Run with:
    pytest tests/test_alert_service.py -v
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from skyguard.alerts import preferences, tracker
from skyguard.alerts.alert_service import (
    get_all_alerts,
    get_stats,
    get_user_alerts,
    persist_recipients,
    send_alert,
    send_system_alert,
    validate_alert_request,
)
from skyguard.alerts.models import (
    AlertPriority,
    AlertType,
    DeliveryMethod,
    RecipientTarget,
    UserRole,
    new_id,
    utcnow,
)
from skyguard.core.errors import AuthRequiredError, RateLimitError, ValidationError
from skyguard.core.tables import AlertRecipientRow, AlertRow, AuditLogRow, UserPreferenceRow

from conftest import make_user

SENDER = "ops-console"


def _alert(**overrides):
    data = {
        "title": "Test",
        "message": "Evacuate",
        "alert_type": "emergency",
        "priority": "critical",
        "recipients": "all",
    }
    data.update(overrides)
    return data


async def _count(session, model, *where):
    stmt = select(func.count()).select_from(model)
    if where:
        stmt = stmt.where(*where)
    return await session.scalar(stmt)


async def _recipient_ids(session, alert_id):
    result = await session.execute(
        select(AlertRecipientRow.user_id).where(AlertRecipientRow.alert_id == alert_id)
    )
    return sorted(result.scalars())


# ═══════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════

class TestValidateAlertRequest:

    def test_defaults(self):
        req = validate_alert_request({"title": "Hi", "message": "There"})
        assert req.alert_type == AlertType.COMPANY
        assert req.priority == AlertPriority.MEDIUM
        assert req.recipients == RecipientTarget.ALL
        assert req.delivery_method is None

    def test_unknown_priority(self):
        with pytest.raises(ValidationError) as exc:
            validate_alert_request(_alert(priority="apocalyptic"))
        assert exc.value.details["field"] == "priority"

    def test_specific_target_rejected(self):
        with pytest.raises(ValidationError):
            validate_alert_request(_alert(recipients="specific"))

    def test_markup_stripped(self):
        req = validate_alert_request(_alert(title="<i>Fire</i> drill"))
        assert req.title == "Fire drill"


# ═══════════════════════════════════════════════════════════════════════════
# End-to-end sends
# ═══════════════════════════════════════════════════════════════════════════

class TestSendAlert:

    async def test_preference_filtering_scenario(self, session, limiter, monitor):
        await make_user(session, "emp-in", emergency_alerts=True)
        await make_user(session, "emp-out", emergency_alerts=False)

        result = await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)

        assert result.recipient_count == 1
        assert await _recipient_ids(session, result.alert_id) == ["emp-in"]
        assert result.to_dict() == {
            "success": True, "alert_id": result.alert_id, "recipients": 1,
        }

    async def test_over_long_title_writes_nothing(self, session, limiter, monitor):
        await make_user(session, "emp1")
        with pytest.raises(ValidationError):
            await send_alert(
                session, _alert(title="x" * 101), SENDER, limiter=limiter, monitor=monitor,
            )
        assert await _count(session, AlertRow) == 0
        assert await _count(session, AlertRecipientRow) == 0

    async def test_requires_sender(self, session, limiter, monitor):
        with pytest.raises(AuthRequiredError):
            await send_alert(session, _alert(), None, limiter=limiter, monitor=monitor)

    async def test_alert_row_fields(self, session, limiter, monitor):
        result = await send_alert(
            session, _alert(alert_type="company", priority="low"), SENDER,
            limiter=limiter, monitor=monitor,
        )
        row = await session.get(AlertRow, result.alert_id)
        assert row.status == "sent"
        assert row.sent_by == SENDER
        assert row.sent_at is not None
        assert row.alert_type == "company"
        assert row.priority == "low"

    async def test_empty_directory_is_not_an_error(self, session, limiter, monitor):
        result = await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)
        assert result.recipient_count == 0
        assert await _count(session, AlertRow) == 1

    async def test_role_targeting(self, session, limiter, monitor):
        await make_user(session, "boss", role=UserRole.ADMIN)
        await make_user(session, "worker1")
        await make_user(session, "worker2")

        staff = await send_alert(
            session, _alert(alert_type="company", recipients="staff"), SENDER,
            limiter=limiter, monitor=monitor,
        )
        mgmt = await send_alert(
            session, _alert(alert_type="company", recipients="management"), SENDER,
            limiter=limiter, monitor=monitor,
        )
        assert await _recipient_ids(session, staff.alert_id) == ["worker1", "worker2"]
        assert await _recipient_ids(session, mgmt.alert_id) == ["boss"]

    async def test_preference_flip_applies_to_next_alert(self, session, limiter, monitor):
        await make_user(session, "emp1", weather_alerts=False)
        first = await send_alert(
            session, _alert(alert_type="weather"), SENDER, limiter=limiter, monitor=monitor,
        )
        assert first.recipient_count == 0

        await preferences.update_preferences(session, "emp1", {"weather_alerts": True})
        await session.commit()

        second = await send_alert(
            session, _alert(alert_type="weather"), SENDER, limiter=limiter, monitor=monitor,
        )
        assert second.recipient_count == 1

    async def test_missing_preferences_created_with_defaults(self, session, limiter, monitor):
        await make_user(session, "newcomer")
        result = await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)

        assert result.recipient_count == 1
        row = await session.scalar(
            select(UserPreferenceRow).where(UserPreferenceRow.user_id == "newcomer")
        )
        assert row is not None
        assert row.emergency_alerts and row.sms_enabled and row.push_enabled

    async def test_opt_outs_hold_when_default_rows_conflict(
        self, session, limiter, monitor, monkeypatch,
    ):
        await make_user(session, "emp-out", weather_alerts=False)
        await make_user(session, "emp-new")

        async def conflicting_insert(session, user_ids):
            raise IntegrityError(
                "INSERT INTO user_preferences", {},
                Exception("UNIQUE constraint failed: user_preferences.user_id"),
            )

        monkeypatch.setattr(preferences, "ensure_preferences", conflicting_insert)
        result = await send_alert(
            session, _alert(alert_type="weather"), SENDER, limiter=limiter, monitor=monitor,
        )

        assert await _recipient_ids(session, result.alert_id) == ["emp-new"]

    async def test_load_preferences_writes_nothing(self, session):
        await make_user(session, "emp-out", weather_alerts=False)
        prefs = await preferences.load_preferences(session, ["emp-out", "ghost"])

        assert prefs["emp-out"].weather_alerts is False
        assert prefs["ghost"].weather_alerts is True
        assert await _count(session, UserPreferenceRow) == 1

    async def test_delivery_method_recorded(self, session, limiter, monitor):
        await make_user(session, "with-phone", phone_number="5552345678")
        await make_user(session, "no-phone")
        result = await send_alert(
            session, _alert(alert_type="company"), SENDER, limiter=limiter, monitor=monitor,
        )
        rows = (await session.execute(
            select(AlertRecipientRow).where(AlertRecipientRow.alert_id == result.alert_id)
        )).scalars().all()
        methods = {r.user_id: r.delivery_method for r in rows}
        assert methods == {"with-phone": "sms", "no-phone": "push"}
        assert all(r.delivery_status == "sent" and r.read_status == "unread" for r in rows)

    async def test_admin_send_is_audited(self, session, limiter, monitor):
        await make_user(session, "admin1", role=UserRole.ADMIN)
        result = await send_alert(session, _alert(), "admin1", limiter=limiter, monitor=monitor)

        entries = await monitor.list_entries(session, event_type="admin_action")
        assert len(entries) == 1
        details = entries[0]["details"]
        assert details["action"] == "send_alert"
        assert details["alert_id"] == result.alert_id
        assert details["priority"] == "critical"
        assert details["title"] == "Test"

    async def test_non_admin_send_not_audited(self, session, limiter, monitor):
        await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)
        assert await _count(session, AuditLogRow) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Uniqueness
# ═══════════════════════════════════════════════════════════════════════════

class TestNoDuplicates:

    async def test_one_row_per_user(self, session, limiter, monitor):
        for i in range(5):
            await make_user(session, f"u{i}", phone_number=f"555234567{i}")
        result = await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)

        total = await _count(session, AlertRecipientRow, AlertRecipientRow.alert_id == result.alert_id)
        distinct = await session.scalar(
            select(func.count(func.distinct(AlertRecipientRow.user_id)))
            .where(AlertRecipientRow.alert_id == result.alert_id)
        )
        assert total == distinct == 5

    async def test_store_rejects_duplicate_pair(self, session):
        alert_id = new_id()
        now = utcnow()
        session.add(AlertRow(
            id=alert_id, alert_type="company", title="t", message="m",
            priority="low", recipients="all", status="sent", created_at=now, sent_at=now,
        ))
        session.add(AlertRecipientRow(alert_id=alert_id, user_id="u1", delivery_method="push"))
        await session.commit()

        session.add(AlertRecipientRow(alert_id=alert_id, user_id="u1", delivery_method="sms"))
        with pytest.raises(IntegrityError):
            await session.commit()
        await session.rollback()


# ═══════════════════════════════════════════════════════════════════════════
# Rate limiting
# ═══════════════════════════════════════════════════════════════════════════

class TestRateLimit:

    async def test_sixth_send_blocked(self, session, limiter, monitor, clock):
        for _ in range(5):
            await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)

        with pytest.raises(RateLimitError) as exc:
            await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)
        assert exc.value.status_code == 429
        assert exc.value.details["retry_after_seconds"] > 0
        assert await _count(session, AlertRow) == 5

        clock.advance(61)
        await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)
        assert await _count(session, AlertRow) == 6

    async def test_limit_is_per_sender(self, session, limiter, monitor):
        for _ in range(5):
            await send_alert(session, _alert(), "sender-a", limiter=limiter, monitor=monitor)
        await send_alert(session, _alert(), "sender-b", limiter=limiter, monitor=monitor)

    async def test_invalid_submission_does_not_consume_quota(self, session, limiter, monitor):
        for _ in range(3):
            with pytest.raises(ValidationError):
                await send_alert(session, _alert(title=""), SENDER, limiter=limiter, monitor=monitor)
        assert limiter.remaining(f"send_alert:{SENDER}") == 5


# ═══════════════════════════════════════════════════════════════════════════
# Partial fan-out
# ═══════════════════════════════════════════════════════════════════════════

class TestPersistRecipients:

    async def test_batch_failure_falls_back_to_row_by_row(self, session):
        alert_id = new_id()
        now = utcnow()
        session.add(AlertRow(
            id=alert_id, alert_type="company", title="t", message="m",
            priority="low", recipients="all", status="sent", created_at=now, sent_at=now,
        ))
        session.add(AlertRecipientRow(alert_id=alert_id, user_id="a", delivery_method="push"))
        await session.commit()

        persisted = await persist_recipients(
            session, alert_id, {"a": DeliveryMethod.PUSH, "b": DeliveryMethod.SMS},
        )

        assert persisted == 1
        assert await _recipient_ids(session, alert_id) == ["a", "b"]

    async def test_empty_assignments(self, session):
        assert await persist_recipients(session, new_id(), {}) == 0


# ═══════════════════════════════════════════════════════════════════════════
# System alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestSendSystemAlert:

    async def test_no_sender_and_clipped(self, session):
        await make_user(session, "emp1")
        result = await send_system_alert(
            session,
            title="W" * 150,
            message="Details",
            alert_type=AlertType.WEATHER,
            priority=AlertPriority.HIGH,
        )
        row = await session.get(AlertRow, result.alert_id)
        assert row.sent_by is None
        assert len(row.title) == 100
        assert result.recipient_count == 1

    async def test_specific_recipients(self, session):
        await make_user(session, "asker")
        await make_user(session, "bystander")
        result = await send_system_alert(
            session,
            title="Reply",
            message="Someone answered",
            alert_type=AlertType.COMPANY,
            priority=AlertPriority.MEDIUM,
            recipients=RecipientTarget.SPECIFIC,
            specific_user_ids=["asker"],
        )
        assert await _recipient_ids(session, result.alert_id) == ["asker"]


# ═══════════════════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestQueries:

    async def test_user_and_all_alerts(self, session, limiter, monitor):
        await make_user(session, "emp1")
        await make_user(session, "emp2")
        result = await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)
        await tracker.mark_alert_as_read(session, result.alert_id, "emp1")
        await session.commit()

        mine = await get_user_alerts(session, "emp1")
        assert len(mine) == 1
        assert mine[0]["read_status"] == "read"

        every = await get_all_alerts(session)
        assert every[0]["recipient_count"] == 2
        assert every[0]["read_count"] == 1

    async def test_stats(self, session, limiter, monitor):
        await make_user(session, "emp1")
        await make_user(session, "emp2")
        await make_user(
            session, "silent", sms_enabled=False, push_enabled=False, email_enabled=False,
        )
        result = await send_alert(session, _alert(), SENDER, limiter=limiter, monitor=monitor)
        await tracker.mark_alert_as_read(session, result.alert_id, "emp1")
        await session.commit()

        stats = (await get_stats(session)).to_dict()
        assert stats["total_users"] == 3
        assert stats["active_users"] == 2
        assert stats["alerts_sent_today"] == 1
        # silent falls back to the in-app channel for emergencies: 3 recipients, 1 read
        assert stats["response_rate"] == pytest.approx(33.3)
