"""
eligibility.py — Who receives an alert, and through which channel.

Pure function of (target, alert type, requested channel) × users ×
preferences. No I/O: the fan-out engine loads users and preferences, calls
``resolve_recipients`` and persists whatever comes back.

═══════════════════════════════════════════════════════════════════════════
RESOLUTION STEPS
═══════════════════════════════════════════════════════════════════════════

    1. Candidates by role     all → everyone, emergency/management → admin,
                              staff → employee, specific → listed ids
    2. Per-type opt-in        drop users whose flag for the alert type is off
                              (emergency ignores the flag when forced on)
    3. Channel                requested method: keep only users for whom it
                              is enabled and who have contact details for it
                              auto: first usable of sms → push → email
    4. No usable channel      excluded, except emergency alerts which fall
                              back to the in-app "system" channel

The result is keyed by user id, so a user can appear at most once per alert
no matter how the candidate list was assembled.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Sequence

from skyguard.alerts.models import (
    AUTO_CHANNEL_ORDER,
    TARGET_ROLES,
    AlertType,
    DeliveryMethod,
    Preferences,
    RecipientTarget,
    UserRecord,
)

logger = logging.getLogger(__name__)


def select_candidates(
    target: RecipientTarget,
    users: Iterable[UserRecord],
    specific_user_ids: Sequence[str] = (),
) -> Dict[str, UserRecord]:
    """Step 1: filter the directory down to the target group."""
    if target == RecipientTarget.SPECIFIC:
        wanted = set(specific_user_ids)
        return {u.user_id: u for u in users if u.user_id in wanted}

    role = TARGET_ROLES[target]
    return {
        u.user_id: u
        for u in users
        if role is None or u.role == role
    }


def choose_channel(
    user: UserRecord,
    prefs: Preferences,
    alert_type: AlertType,
    requested: Optional[DeliveryMethod] = None,
) -> Optional[DeliveryMethod]:
    """Step 3/4 for a single user; None means the user is excluded."""
    if requested is not None:
        if prefs.channel_enabled(requested) and user.can_receive(requested):
            return requested
        return None

    for method in AUTO_CHANNEL_ORDER:
        if prefs.channel_enabled(method) and user.can_receive(method):
            return method

    if alert_type == AlertType.EMERGENCY:
        return DeliveryMethod.SYSTEM
    return None


def resolve_recipients(
    target: RecipientTarget,
    alert_type: AlertType,
    users: Iterable[UserRecord],
    preferences: Mapping[str, Preferences],
    *,
    delivery_method: Optional[DeliveryMethod] = None,
    emergency_always_on: bool = False,
    specific_user_ids: Sequence[str] = (),
) -> Dict[str, DeliveryMethod]:
    """
    Resolve the eligible recipient set for one alert.

    Parameters
    ----------
    target : RecipientTarget
        Role group to address.
    alert_type : AlertType
        Selects the preference flag consulted.
    users : iterable of UserRecord
        The user directory.
    preferences : mapping user_id → Preferences
        Must cover every candidate; a candidate without preferences is
        treated as having all flags on.
    delivery_method : DeliveryMethod, optional
        Force a single channel instead of automatic selection.
    emergency_always_on : bool
        Ignore the emergency_alerts flag.
    specific_user_ids : sequence of str
        Used only with ``RecipientTarget.SPECIFIC``.

    Returns
    -------
    dict
        user_id → chosen DeliveryMethod. Empty when nobody qualifies.
    """
    candidates = select_candidates(target, users, specific_user_ids)

    resolved: Dict[str, DeliveryMethod] = {}
    opted_out = 0
    unreachable = 0

    for user_id, user in candidates.items():
        prefs = preferences.get(user_id) or Preferences(user_id=user_id)

        forced = alert_type == AlertType.EMERGENCY and emergency_always_on
        if not forced and not prefs.wants(alert_type):
            opted_out += 1
            continue

        method = choose_channel(user, prefs, alert_type, delivery_method)
        if method is None:
            unreachable += 1
            continue
        resolved[user_id] = method

    logger.debug(
        "Resolved %s/%s: %d candidates → %d eligible (%d opted out, %d unreachable)",
        target.value, alert_type.value, len(candidates),
        len(resolved), opted_out, unreachable,
    )
    return resolved
