"""
monitor.py — Security event trail.

Every write goes through ``SecurityMonitor.log``, which opens its own
session and commits independently of the request that triggered it: an
``unauthorized_access`` entry must survive even though the request that
caused it is about to be rolled back with a 403.

═══════════════════════════════════════════════════════════════════════════
EVENT TYPES
═══════════════════════════════════════════════════════════════════════════

    Event                  Emitted by                    details
    ─────────────────────  ────────────────────────────  ─────────────────────────────
    failed_auth            login failure reports         email, error_message,
                                                         attempt_count
    role_change_attempt    directory.change_role         target_user_id, old_role,
                                                         new_role, success, action
    admin_action           admin send / rule edits       action + free-form fields
    suspicious_activity    repeated auth failures        email, attempt_count
    unauthorized_access    admin-only route, non-admin   path, method, role

═══════════════════════════════════════════════════════════════════════════
RETENTION
═══════════════════════════════════════════════════════════════════════════

After each insert the table is pruned to the newest ``max_entries`` rows
(``AUDIT_LOG_MAX_ENTRIES``, 0 disables pruning). Failed-login counters are
kept in memory per identity and expire one hour after the first failure.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skyguard.alerts.models import isoformat
from skyguard.core.tables import AuditLogRow

logger = logging.getLogger(__name__)

FAILED_ATTEMPT_TTL_SECONDS = 60 * 60
FAILED_ATTEMPT_SWEEP_SECONDS = 5 * 60
SUSPICIOUS_ATTEMPT_THRESHOLD = 5


class AuditEventType(str, Enum):
    FAILED_AUTH         = "failed_auth"
    ROLE_CHANGE_ATTEMPT = "role_change_attempt"
    ADMIN_ACTION        = "admin_action"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


@dataclass
class RequestMeta:
    """Caller network details copied onto each audit entry."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def entry_to_dict(row: AuditLogRow) -> Dict[str, Any]:
    return {
        "id": row.id,
        "event_type": row.event_type,
        "user_id": row.user_id,
        "details": row.details or {},
        "ip_address": row.ip_address,
        "user_agent": row.user_agent,
        "created_at": isoformat(row.created_at),
    }


class SecurityMonitor:
    """
    Append-only audit logger with bounded retention.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Used to open a dedicated session per event.
    max_entries : int
        Rows kept after pruning; 0 keeps everything.
    clock : callable
        Monotonic seconds, used only for failed-attempt expiry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self.max_entries = max_entries
        self._clock = clock
        self._failed: Dict[str, Tuple[int, float]] = {}
        self._failed_lock = threading.Lock()
        self._last_sweep = clock()

    # ── core write ──

    async def log(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """
        Append one event. Never raises.

        Returns
        -------
        bool
            False when the event type is unknown or the write failed; the
            failure is logged.
        """
        try:
            event = AuditEventType(event_type)
        except ValueError:
            logger.error("Rejected audit event with unknown type %r", event_type)
            return False

        try:
            async with self._session_factory() as session:
                session.add(
                    AuditLogRow(
                        event_type=event.value,
                        user_id=user_id,
                        details=dict(details or {}),
                        ip_address=ip_address,
                        user_agent=user_agent,
                    )
                )
                await session.flush()
                if self.max_entries > 0:
                    await self._prune(session)
                await session.commit()
        except Exception:
            logger.exception("Failed to log security event %s", event.value)
            return False

        logger.warning(
            "Security event: %s user=%s details=%s",
            event.value, user_id, details or {},
        )
        return True

    async def _prune(self, session: AsyncSession) -> None:
        stale = (
            select(AuditLogRow.id)
            .order_by(AuditLogRow.created_at.desc(), AuditLogRow.id.desc())
            .offset(self.max_entries)
        )
        ids = list((await session.execute(stale)).scalars())
        if ids:
            await session.execute(delete(AuditLogRow).where(AuditLogRow.id.in_(ids)))
            logger.debug("Pruned %d audit log entries", len(ids))

    # ── convenience emitters ──

    async def monitor_failed_auth(
        self, email: str, error: str, meta: Optional[RequestMeta] = None
    ) -> bool:
        meta = meta or RequestMeta()
        count = self.increment_failed_attempts(email)
        ok = await self.log(
            AuditEventType.FAILED_AUTH.value,
            details={"email": email, "error_message": error, "attempt_count": count},
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        if count == SUSPICIOUS_ATTEMPT_THRESHOLD:
            await self.log(
                AuditEventType.SUSPICIOUS_ACTIVITY.value,
                details={
                    "email": email,
                    "attempt_count": count,
                    "reason": "repeated_failed_auth",
                },
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
        return ok

    async def monitor_role_change(
        self,
        actor_id: Optional[str],
        target_user_id: str,
        old_role: str,
        new_role: str,
        *,
        success: bool,
        meta: Optional[RequestMeta] = None,
    ) -> bool:
        meta = meta or RequestMeta()
        return await self.log(
            AuditEventType.ROLE_CHANGE_ATTEMPT.value,
            user_id=actor_id,
            details={
                "target_user_id": target_user_id,
                "old_role": old_role,
                "new_role": new_role,
                "success": success,
                "action": "role_change",
            },
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )

    async def monitor_admin_action(
        self,
        actor_id: Optional[str],
        action: str,
        details: Optional[Dict[str, Any]] = None,
        meta: Optional[RequestMeta] = None,
    ) -> bool:
        meta = meta or RequestMeta()
        return await self.log(
            AuditEventType.ADMIN_ACTION.value,
            user_id=actor_id,
            details={"action": action, **(details or {})},
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )

    async def monitor_unauthorized_access(
        self,
        user_id: Optional[str],
        path: str,
        method: str,
        role: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> bool:
        meta = meta or RequestMeta()
        return await self.log(
            AuditEventType.UNAUTHORIZED_ACCESS.value,
            user_id=user_id,
            details={"path": path, "method": method, "role": role},
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )

    # ── failed-attempt counters ──

    def _live_entry(self, identity: str, now: float) -> Optional[Tuple[int, float]]:
        entry = self._failed.get(identity)
        if entry and now - entry[1] >= FAILED_ATTEMPT_TTL_SECONDS:
            del self._failed[identity]
            return None
        return entry

    def _sweep(self, now: float) -> None:
        """Drop every expired counter. Caller holds the lock."""
        if now - self._last_sweep < FAILED_ATTEMPT_SWEEP_SECONDS:
            return
        stale = [
            identity for identity, (_count, first_at) in self._failed.items()
            if now - first_at >= FAILED_ATTEMPT_TTL_SECONDS
        ]
        for identity in stale:
            del self._failed[identity]
        self._last_sweep = now
        if stale:
            logger.debug("Expired %d failed-attempt counters", len(stale))

    def increment_failed_attempts(self, identity: str) -> int:
        with self._failed_lock:
            now = self._clock()
            self._sweep(now)
            entry = self._live_entry(identity, now)
            count, first_at = entry if entry else (0, now)
            self._failed[identity] = (count + 1, first_at)
            return count + 1

    def failed_attempt_count(self, identity: str) -> int:
        with self._failed_lock:
            entry = self._live_entry(identity, self._clock())
            return entry[0] if entry else 0

    def clear_failed_attempts(self, identity: str) -> None:
        with self._failed_lock:
            self._failed.pop(identity, None)

    def tracked_identities(self) -> int:
        with self._failed_lock:
            return len(self._failed)

    # ── reads ──

    async def list_entries(
        self,
        session: AsyncSession,
        *,
        event_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Newest-first audit entries for the admin view."""
        stmt = select(AuditLogRow).order_by(
            AuditLogRow.created_at.desc(), AuditLogRow.id.desc()
        )
        if event_type:
            stmt = stmt.where(AuditLogRow.event_type == event_type)
        stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return [entry_to_dict(row) for row in result.scalars()]
