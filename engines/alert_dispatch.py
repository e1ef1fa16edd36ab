"""Stores proposed alerts and escalates critical ones to organization managers."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, List, Sequence, Tuple

import db
from db import StoreError
from engines.alerts import ProposedAlert

if TYPE_CHECKING:
    from engines.pattern_detection import DetectionConfig

logger = logging.getLogger(__name__)

DEFAULT_MEMBER_NAME = "Membro"
TEAM_PREFIX = "[Equipe]"


def persist_alerts(
    alerts: Sequence[ProposedAlert],
    now: datetime,
    store=db,
    config: "DetectionConfig | None" = None,
) -> Tuple[int, int]:
    """Insert every alert, then notify managers about critical ones.

    Returns ``(alerts_created, notifications_created)``. Each insert is
    independent: a failure is logged and the loop moves on.
    """
    created = 0
    for alert in alerts:
        try:
            store.insert_evolution_alert(alert.to_row(), created_at=now)
            created += 1
        except StoreError as exc:
            logger.error("Failed to insert %s alert for user %s: %s",
                         alert.alert_type.value, alert.user_id, exc)

    cap = config.max_managers_per_alert if config else None
    notified = 0
    for alert in alerts:
        if alert.is_critical and alert.organization_id:
            notified += notify_managers(alert, store, max_managers=cap, now=now)
    return created, notified


def notify_managers(
    alert: ProposedAlert,
    store=db,
    max_managers: int | None = None,
    now: datetime | None = None,
) -> int:
    """Create one notification per manager of the alert's organization."""
    try:
        managers = store.fetch_org_managers(alert.organization_id)
    except StoreError as exc:
        logger.error("Failed to fetch managers of organization %s: %s", alert.organization_id, exc)
        return 0

    recipients: List[str] = []
    for manager_id in managers:
        # Never escalate an alert to its own subject
        if manager_id == alert.user_id or manager_id in recipients:
            continue
        recipients.append(manager_id)
    if max_managers is not None and len(recipients) > max_managers:
        logger.warning("Capping notifications for %s alert of user %s at %d of %d managers",
                       alert.alert_type.value, alert.user_id, max_managers, len(recipients))
        recipients = recipients[:max_managers]
    if not recipients:
        return 0

    subject = _display_name(alert.user_id, store)
    title = f"{TEAM_PREFIX} {subject}: {alert.title}"
    data = {
        "alert_type": alert.alert_type.value,
        "severity": alert.severity.value,
        "target_user_id": alert.user_id,
        "suggested_action": alert.suggested_action,
    }

    sent = 0
    for manager_id in recipients:
        try:
            store.insert_notification(manager_id, title, alert.description, data, created_at=now)
            sent += 1
        except StoreError as exc:
            logger.error("Failed to notify manager %s about user %s: %s", manager_id, alert.user_id, exc)
    return sent


def _display_name(user_id: str, store=db) -> str:
    try:
        name = store.get_profile_name(user_id)
    except StoreError as exc:
        logger.warning("Profile lookup failed for user %s: %s", user_id, exc)
        return DEFAULT_MEMBER_NAME
    return name or DEFAULT_MEMBER_NAME
