"""
models.py — Shared data structures for the alert fan-out system.

Defines:
    • AlertType / AlertPriority / RecipientTarget — alert composition enums
    • DeliveryMethod / DeliveryStatus / ReadStatus — per-recipient tracking
    • Preferences     — fixed-field per-user opt-in flags
    • UserRecord      — directory entry used by eligibility resolution
    • AlertRequest    — a validated, sanitized send request
    • FanoutResult    — outcome of one send
    • DeliveryAttempt — single channel send record
    • ReadReceiptEntry / ReadReceiptReport — admin read-receipt view
    • AlertStats      — dashboard counters

═══════════════════════════════════════════════════════════════════════════
TARGETING
═══════════════════════════════════════════════════════════════════════════

    Target        Candidate users
    ──────────    ───────────────────────────────
    all           every user
    emergency     role = admin
    management    role = admin
    staff         role = employee
    specific      explicit user ids (internal: Q&A notifications only)

Candidates are then filtered by the per-type preference flag
(emergency_alerts / weather_alerts / company_alerts / system_alerts).

═══════════════════════════════════════════════════════════════════════════
DELIVERY STATE MACHINE (per recipient)
═══════════════════════════════════════════════════════════════════════════

    pending ─→ sent ─→ delivered
                  └──→ failed

    read_status:  unread ─→ read      (never back)

Alerts are persisted with recipients already in ``sent``; the background
dispatcher moves them to ``delivered`` or ``failed``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertType(str, Enum):
    """Alert category; each maps to one preference flag."""
    EMERGENCY = "emergency"
    WEATHER   = "weather"
    COMPANY   = "company"
    SYSTEM    = "system"


class AlertPriority(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class RecipientTarget(str, Enum):
    """Which role group receives an alert."""
    ALL        = "all"
    EMERGENCY  = "emergency"
    STAFF      = "staff"
    MANAGEMENT = "management"
    SPECIFIC   = "specific"


class UserRole(str, Enum):
    ADMIN    = "admin"
    EMPLOYEE = "employee"


class DeliveryMethod(str, Enum):
    """Channel a single recipient is reached through."""
    SMS    = "sms"
    SYSTEM = "system"   # in-app only
    PUSH   = "push"
    EMAIL  = "email"


class DeliveryStatus(str, Enum):
    PENDING   = "pending"
    SENT      = "sent"
    DELIVERED = "delivered"
    FAILED    = "failed"
    SKIPPED   = "skipped"   # DeliveryAttempt only, never stored on a recipient


class ReadStatus(str, Enum):
    UNREAD = "unread"
    READ   = "read"


class AlertStatus(str, Enum):
    DRAFT = "draft"
    SENT  = "sent"


# Preference flag consulted for each alert type
TYPE_PREFERENCE_FLAG: Dict[AlertType, str] = {
    AlertType.EMERGENCY: "emergency_alerts",
    AlertType.WEATHER:   "weather_alerts",
    AlertType.COMPANY:   "company_alerts",
    AlertType.SYSTEM:    "system_alerts",
}

# Role group for each role-based target
TARGET_ROLES: Dict[RecipientTarget, Optional[UserRole]] = {
    RecipientTarget.ALL:        None,
    RecipientTarget.EMERGENCY:  UserRole.ADMIN,
    RecipientTarget.MANAGEMENT: UserRole.ADMIN,
    RecipientTarget.STAFF:      UserRole.EMPLOYEE,
}

# Automatic channel choice, first usable wins
AUTO_CHANNEL_ORDER: List[DeliveryMethod] = [
    DeliveryMethod.SMS,
    DeliveryMethod.PUSH,
    DeliveryMethod.EMAIL,
]


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


@dataclass
class Preferences:
    """
    Per-user opt-in flags.

    A closed set of fields: unknown keys are rejected by
    ``Preferences.field_names`` checks in the preference store.
    """
    user_id: str
    emergency_alerts: bool = True
    weather_alerts: bool = True
    company_alerts: bool = True
    system_alerts: bool = True
    sms_enabled: bool = True
    push_enabled: bool = True
    email_enabled: bool = True

    @classmethod
    def field_names(cls) -> List[str]:
        return [
            "emergency_alerts", "weather_alerts", "company_alerts",
            "system_alerts", "sms_enabled", "push_enabled", "email_enabled",
        ]

    def wants(self, alert_type: AlertType) -> bool:
        return bool(getattr(self, TYPE_PREFERENCE_FLAG[alert_type]))

    def channel_enabled(self, method: DeliveryMethod) -> bool:
        if method == DeliveryMethod.SYSTEM:
            return True
        return bool(getattr(self, f"{method.value}_enabled"))

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"user_id": self.user_id}
        for name in self.field_names():
            d[name] = getattr(self, name)
        return d


@dataclass
class UserRecord:
    """A directory entry: identity, role and contact capability."""
    user_id: str
    role: UserRole = UserRole.EMPLOYEE
    username: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None

    @property
    def has_phone(self) -> bool:
        return bool(self.phone_number)

    def can_receive(self, method: DeliveryMethod) -> bool:
        """Whether contact details exist for the channel."""
        if method == DeliveryMethod.SMS:
            return self.has_phone
        if method == DeliveryMethod.EMAIL:
            return bool(self.email)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "role": self.role.value,
            "phone_number": self.phone_number,
            "email": self.email,
        }


@dataclass
class AlertRequest:
    """A send request after sanitization and validation."""
    title: str
    message: str
    alert_type: AlertType = AlertType.COMPANY
    priority: AlertPriority = AlertPriority.MEDIUM
    recipients: RecipientTarget = RecipientTarget.ALL
    delivery_method: Optional[DeliveryMethod] = None
    specific_user_ids: List[str] = field(default_factory=list)


@dataclass
class FanoutResult:
    alert_id: str
    recipient_count: int
    expected_count: int = 0

    @property
    def is_partial(self) -> bool:
        return self.recipient_count < self.expected_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "alert_id": self.alert_id,
            "recipients": self.recipient_count,
        }


@dataclass
class OutboundMessage:
    """What a channel sink renders for one recipient."""
    alert_id: str
    title: str
    message: str
    alert_type: AlertType = AlertType.COMPANY
    priority: AlertPriority = AlertPriority.MEDIUM

    @property
    def is_urgent(self) -> bool:
        return self.priority in (AlertPriority.HIGH, AlertPriority.CRITICAL)


@dataclass
class DeliveryAttempt:
    """Record of a single delivery attempt to one recipient via one channel."""
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    channel: DeliveryMethod = DeliveryMethod.SYSTEM
    recipient_id: str = ""
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempted_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "channel": self.channel.value,
            "recipient_id": self.recipient_id,
            "status": self.status.value,
            "attempted_at": self.attempted_at.isoformat(),
            "completed_at": isoformat(self.completed_at),
            "retry_count": self.retry_count,
            "error_message": self.error_message,
        }


@dataclass
class ReadReceiptEntry:
    user_id: str
    username: Optional[str]
    role: str
    read_status: ReadStatus
    read_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "role": self.role,
            "read_status": self.read_status.value,
            "read_at": isoformat(self.read_at),
            "sent_at": isoformat(self.sent_at),
        }


@dataclass
class ReadReceiptReport:
    """Recipients of one alert partitioned into read / unread."""
    alert_id: str
    read: List[ReadReceiptEntry] = field(default_factory=list)
    unread: List[ReadReceiptEntry] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.read) + len(self.unread)

    @property
    def read_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return len(self.read) / self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "total": self.total,
            "read_count": len(self.read),
            "unread_count": len(self.unread),
            "read_rate": f"{self.read_rate:.1%}",
            "read": [e.to_dict() for e in self.read],
            "unread": [e.to_dict() for e in self.unread],
        }


@dataclass
class AlertStats:
    total_users: int = 0
    active_users: int = 0
    alerts_sent_today: int = 0
    response_rate: float = 0.0   # percent of recipients who read, last 30 days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_users": self.total_users,
            "active_users": self.active_users,
            "alerts_sent_today": self.alerts_sent_today,
            "response_rate": self.response_rate,
        }
