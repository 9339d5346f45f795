"""
test_api.py — HTTP surface: identity, admin gate, error envelope, routers.

Uses httpx.AsyncClient over ASGITransport against the real app with the
database, limiter, security monitor and weather source swapped for the
fixtures in conftest.py.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

from sqlalchemy import select

from skyguard.alerts.models import UserRole
from skyguard.core.config import settings
from skyguard.core.health import HealthStatus, check_channels
from skyguard.core.tables import AuditLogRow

from conftest import as_user, make_user

ADMIN = as_user("boss", name="Boss")
EMPLOYEE = as_user("emp1", name="Ann", email="ann@example.com")


def _alert(**overrides):
    data = {
        "title": "Severe Weather Warning",
        "message": "Tornado warning in effect until 6 PM.",
        "alert_type": "weather",
        "priority": "critical",
        "recipients": "all",
    }
    data.update(overrides)
    return data


async def _seed_admin(session_factory):
    async with session_factory() as s:
        await make_user(s, "boss", role=UserRole.ADMIN, username="Boss")


async def _audit_types(session_factory):
    async with session_factory() as s:
        return list((await s.execute(select(AuditLogRow.event_type))).scalars())


# ═══════════════════════════════════════════════════════════════════════════
# Identity and the admin gate
# ═══════════════════════════════════════════════════════════════════════════

class TestIdentity:

    async def test_missing_identity_is_401(self, client):
        resp = await client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_REQUIRED"

    async def test_first_visit_creates_employee(self, client):
        resp = await client.get("/api/v1/users/me", headers=EMPLOYEE)
        assert resp.status_code == 200
        assert resp.json() == {
            "user_id": "emp1",
            "username": "Ann",
            "role": "employee",
            "phone_number": None,
            "email": "ann@example.com",
        }

    async def test_non_admin_send_is_403_and_audited(self, client, session_factory):
        resp = await client.post("/api/v1/alerts/send", json=_alert(), headers=EMPLOYEE)

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"
        assert await _audit_types(session_factory) == ["unauthorized_access"]


# ═══════════════════════════════════════════════════════════════════════════
# Sending
# ═══════════════════════════════════════════════════════════════════════════

class TestSendAlert:

    async def test_admin_send(self, client, session_factory):
        await _seed_admin(session_factory)
        await client.get("/api/v1/users/me", headers=EMPLOYEE)

        resp = await client.post("/api/v1/alerts/send", json=_alert(), headers=ADMIN)

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["recipients"] == 2
        assert body["alert_id"]
        assert "admin_action" in await _audit_types(session_factory)

        inbox = await client.get("/api/v1/alerts/mine", headers=EMPLOYEE)
        assert [a["title"] for a in inbox.json()["alerts"]] == ["Severe Weather Warning"]

    async def test_validation_envelope(self, client, session_factory):
        await _seed_admin(session_factory)
        resp = await client.post(
            "/api/v1/alerts/send", json=_alert(title="x" * 101), headers=ADMIN,
        )

        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["status"] == 422
        assert error["details"]["field"] == "title"

    async def test_missing_field_envelope(self, client, session_factory):
        await _seed_admin(session_factory)
        resp = await client.post("/api/v1/alerts/send", json={"title": "Only"}, headers=ADMIN)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_rate_limited(self, client, session_factory):
        await _seed_admin(session_factory)
        for _ in range(5):
            ok = await client.post("/api/v1/alerts/send", json=_alert(), headers=ADMIN)
            assert ok.status_code == 200

        resp = await client.post("/api/v1/alerts/send", json=_alert(), headers=ADMIN)
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0
        assert resp.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"

    async def test_mark_read_and_receipts(self, client, session_factory):
        await _seed_admin(session_factory)
        await client.get("/api/v1/users/me", headers=EMPLOYEE)
        alert_id = (await client.post(
            "/api/v1/alerts/send", json=_alert(), headers=ADMIN,
        )).json()["alert_id"]

        first = await client.post(f"/api/v1/alerts/{alert_id}/read", headers=EMPLOYEE)
        again = await client.post(f"/api/v1/alerts/{alert_id}/read", headers=EMPLOYEE)
        assert first.json() == {"alert_id": alert_id, "updated": True}
        assert again.json()["updated"] is False

        summary = await client.get(f"/api/v1/alerts/{alert_id}/receipts/summary", headers=ADMIN)
        assert summary.json()["read"] == 1
        assert summary.json()["total"] == 2

    async def test_unknown_alert_receipts_404(self, client, session_factory):
        await _seed_admin(session_factory)
        resp = await client.get("/api/v1/alerts/nope/receipts", headers=ADMIN)
        assert resp.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Preferences and users
# ═══════════════════════════════════════════════════════════════════════════

class TestPreferences:

    async def test_defaults_then_patch(self, client):
        resp = await client.get("/api/v1/preferences", headers=EMPLOYEE)
        assert resp.status_code == 200
        assert resp.json()["weather_alerts"] is True

        resp = await client.patch(
            "/api/v1/preferences", json={"weather_alerts": False}, headers=EMPLOYEE,
        )
        assert resp.json()["weather_alerts"] is False
        assert resp.json()["sms_enabled"] is True

    async def test_non_boolean_rejected(self, client):
        resp = await client.patch(
            "/api/v1/preferences", json={"sms_enabled": "yes"}, headers=EMPLOYEE,
        )
        assert resp.status_code == 422


class TestUsers:

    async def test_set_own_phone(self, client):
        resp = await client.patch(
            "/api/v1/users/emp1/phone", json={"phone_number": "(555) 234-5678"}, headers=EMPLOYEE,
        )
        assert resp.status_code == 200
        assert resp.json()["phone_number"] == "5552345678"

    async def test_other_users_phone_forbidden(self, client, session_factory):
        await _seed_admin(session_factory)
        resp = await client.patch(
            "/api/v1/users/boss/phone", json={"phone_number": "5552345678"}, headers=EMPLOYEE,
        )
        assert resp.status_code == 403
        assert "unauthorized_access" in await _audit_types(session_factory)

    async def test_invalid_phone(self, client):
        resp = await client.patch(
            "/api/v1/users/emp1/phone", json={"phone_number": "123"}, headers=EMPLOYEE,
        )
        assert resp.status_code == 422

    async def test_role_change(self, client, session_factory):
        await _seed_admin(session_factory)
        await client.get("/api/v1/users/me", headers=EMPLOYEE)

        resp = await client.patch("/api/v1/users/emp1/role", json={"role": "admin"}, headers=ADMIN)
        assert resp.json()["role"] == "admin"

        listing = await client.get("/api/v1/users", headers=ADMIN)
        assert listing.json()["summary"]["admins"] == 2

    async def test_self_demotion_forbidden(self, client, session_factory):
        await _seed_admin(session_factory)
        resp = await client.patch("/api/v1/users/boss/role", json={"role": "employee"}, headers=ADMIN)
        assert resp.status_code == 403


# ═══════════════════════════════════════════════════════════════════════════
# Audit, weather, Q&A, system
# ═══════════════════════════════════════════════════════════════════════════

class TestAudit:

    async def test_failed_auth_report(self, client):
        resp = await client.post(
            "/api/v1/audit/failed-auth", json={"email": "  Eve@Example.com "},
        )
        assert resp.status_code == 202
        assert resp.json() == {"logged": True, "attempt_count": 1}

    async def test_admin_listing_and_filter_validation(self, client, session_factory):
        await _seed_admin(session_factory)
        await client.post("/api/v1/audit/failed-auth", json={"email": "eve@example.com"})

        resp = await client.get("/api/v1/audit?event_type=failed_auth", headers=ADMIN)
        entries = resp.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["details"]["email"] == "eve@example.com"

        bad = await client.get("/api/v1/audit?event_type=nonsense", headers=ADMIN)
        assert bad.status_code == 422


class TestWeather:

    async def test_current_widget(self, client):
        resp = await client.get(
            "/api/v1/weather/current", params={"lat": 40.71, "lon": -74.0}, headers=EMPLOYEE,
        )
        assert resp.status_code == 200
        assert resp.json()["location"] == "New York"
        assert resp.json()["temperature"] == 70

    async def test_rule_lifecycle(self, client, session_factory):
        await _seed_admin(session_factory)
        created = await client.post("/api/v1/weather/rules", headers=ADMIN, json={
            "alert_type": "temperature",
            "condition_operator": "greater_than",
            "threshold_value": 95,
            "alert_title": "Extreme Heat",
            "alert_message": "Take frequent water breaks.",
        })
        assert created.status_code == 201
        rule_id = created.json()["id"]

        toggled = await client.patch(
            f"/api/v1/weather/rules/{rule_id}", json={"is_active": False}, headers=ADMIN,
        )
        assert toggled.json()["is_active"] is False

        listing = await client.get("/api/v1/weather/rules", headers=ADMIN)
        assert [r["id"] for r in listing.json()["rules"]] == [rule_id]

        deleted = await client.delete(f"/api/v1/weather/rules/{rule_id}", headers=ADMIN)
        assert deleted.status_code in (200, 204)

        actions = await _audit_types(session_factory)
        assert actions.count("admin_action") == 3

    async def test_rules_admin_only(self, client):
        resp = await client.get("/api/v1/weather/rules", headers=EMPLOYEE)
        assert resp.status_code == 403


class TestQA:

    async def test_ask_and_answer(self, client, session_factory):
        await _seed_admin(session_factory)
        asked = await client.post("/api/v1/qa/questions", headers=EMPLOYEE, json={
            "title": "Scaffold inspection schedule",
            "question": "Who signs off on the scaffold at site 4?",
            "category": "safety",
        })
        assert asked.status_code == 201
        qid = asked.json()["id"]

        answered = await client.post(
            f"/api/v1/qa/questions/{qid}/answers",
            json={"answer": "The site supervisor, every Monday."},
            headers=ADMIN,
        )
        assert answered.status_code == 201
        assert answered.json()["is_official"] is True
        assert answered.json()["notified"] == 1

        detail = await client.get(f"/api/v1/qa/questions/{qid}", headers=EMPLOYEE)
        assert detail.json()["status"] == "answered"
        assert len(detail.json()["answers"]) == 1

        inbox = await client.get("/api/v1/alerts/mine", headers=EMPLOYEE)
        assert len(inbox.json()["alerts"]) == 1


class TestSystem:

    async def test_liveness(self, client):
        resp = await client.get("/health/live")
        assert resp.json() == {"status": "alive"}

    async def test_self_test(self, client, session_factory):
        await _seed_admin(session_factory)
        resp = await client.get("/api/v1/system/test", headers=ADMIN)
        assert resp.status_code == 200
        results = resp.json()["results"]
        assert results["database"] is True
        assert results["weather"] is True
        assert set(results) == {"sms", "push", "email", "weather", "database"}

    async def test_unsupported_sms_provider_fails_self_test(
        self, client, session_factory, monkeypatch,
    ):
        await _seed_admin(session_factory)
        monkeypatch.setattr(settings, "SMS_PROVIDER", "twilio")

        resp = await client.get("/api/v1/system/test", headers=ADMIN)

        assert resp.json()["results"]["sms"] is False
        assert resp.json()["results"]["email"] is True

    def test_channels_report_simulation(self, monkeypatch):
        monkeypatch.setattr(settings, "SMS_PROVIDER", "simulation")
        monkeypatch.setattr(settings, "VAPID_PRIVATE_KEY", None)

        channels = {c.name: c for c in check_channels()}

        assert all(c.status == HealthStatus.HEALTHY for c in channels.values())
        assert channels["sms"].message == "Simulation mode"
        assert channels["email"].message == "Simulation mode"
