"""Batch detection of evolution patterns over activity data.

Each pass is a plain function ``(now, store, config) -> list[ProposedAlert]``.
``store`` is anything exposing the read functions of :mod:`db`; the module
itself is the default. A failed read is logged and the pass yields what it has
gathered so far instead of aborting the run.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from statistics import mean
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import db
from db import StoreError
from engines.alerts import (
    AlertType,
    EventType,
    GoalOverdueMetadata,
    InactivityMetadata,
    PerformanceDropMetadata,
    PositiveStreakMetadata,
    ProposedAlert,
    Severity,
    StagnationMetadata,
    StreakBrokenMetadata,
    SuggestedActionType,
    count_by_type,
)
from engines.alert_dispatch import persist_alerts

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)
WEEK = timedelta(days=7)
TWO_WEEKS = timedelta(days=14)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Types deduplicated only when a cooldown is configured
COOLDOWN_TYPES = frozenset({
    AlertType.SKILL_STAGNATION,
    AlertType.STREAK_BROKEN,
    AlertType.PERFORMANCE_DROP,
    AlertType.GOAL_OVERDUE,
})


@dataclass
class DetectionConfig:
    """Thresholds and policies for one detection run."""

    stagnation_warning_days: int = 21
    broken_streak_min: int = 7
    broken_streak_critical: int = 14
    inactivity_days: int = 7
    min_samples: int = 3
    drop_alert_percent: float = 20.0
    drop_critical_percent: float = 40.0
    overdue_critical_days: int = 14
    positive_streak_min: int = 7
    cooldown_days: int = 0
    max_managers_per_alert: Optional[int] = None

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        from env_validation import get_env_int

        cap = get_env_int("MAX_MANAGERS_PER_ALERT", 0)
        return cls(
            cooldown_days=get_env_int("ALERT_COOLDOWN_DAYS", 0),
            max_managers_per_alert=cap or None,
        )


DEFAULT_CONFIG = DetectionConfig()


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# -------------- pass 1 --------------
def detect_stagnant_skills(now: datetime, store=db, config: DetectionConfig = DEFAULT_CONFIG) -> List[ProposedAlert]:
    """Unlocked skills not practiced for two weeks."""
    try:
        skills = store.fetch_stale_skills(now - TWO_WEEKS)
    except StoreError as exc:
        logger.error("[skill_stagnation] failed to fetch skill levels: %s", exc)
        return []

    alerts: List[ProposedAlert] = []
    for skill in skills:
        last_practiced = skill.get("last_practiced_at")
        name = skill.get("skill_name") or skill.get("skill_id")
        # Unlocked but never practiced counts from the Unix epoch
        days = (now - (last_practiced or EPOCH)).days
        severity = Severity.WARNING if days > config.stagnation_warning_days else Severity.INFO

        alerts.append(
            ProposedAlert(
                user_id=skill["user_id"],
                organization_id=skill.get("organization_id"),
                alert_type=AlertType.SKILL_STAGNATION,
                severity=severity,
                title=f"Skill estagnada há {days} dias",
                description=f"Você não pratica {name} há {days} dias. Um jogo rápido ajuda a manter o nível.",
                metadata=StagnationMetadata(
                    days_inactive=days,
                    skill_level=_as_int(skill.get("current_level"), 1),
                    skill_id=skill["skill_id"],
                    never_practiced=last_practiced is None,
                ),
                suggested_action=f"Pratique {name} em um jogo",
                suggested_action_type=SuggestedActionType.GAME,
                related_entity_type="skill",
                related_entity_id=skill["skill_id"],
            )
        )

    logger.info("[skill_stagnation] %d stale skills, %d alerts", len(skills), len(alerts))
    return alerts


# -------------- pass 2 --------------
def detect_broken_streaks(now: datetime, store=db, config: DetectionConfig = DEFAULT_CONFIG) -> List[ProposedAlert]:
    """Long streaks broken during the last 24 hours."""
    try:
        events = store.fetch_events(EventType.STREAK_BROKEN.value, now - DAY)
    except StoreError as exc:
        logger.error("[streak_broken] failed to fetch broken streaks: %s", exc)
        return []

    alerts: List[ProposedAlert] = []
    for event in events:
        metadata = event.get("metadata") or {}
        previous = _as_int(metadata.get("previous_streak", metadata.get("previousStreak")), 0)
        if previous < config.broken_streak_min:
            continue

        alerts.append(
            ProposedAlert(
                user_id=event["user_id"],
                organization_id=event.get("organization_id") or "",
                alert_type=AlertType.STREAK_BROKEN,
                severity=Severity.CRITICAL if previous >= config.broken_streak_critical else Severity.WARNING,
                title=f"Streak de {previous} dias quebrado",
                description=f"Um streak de {previous} dias consecutivos foi interrompido. Retome hoje para começar um novo.",
                metadata=StreakBrokenMetadata(previous_streak=previous, event_id=event["id"]),
                suggested_action="Jogue uma partida para iniciar um novo streak",
                suggested_action_type=SuggestedActionType.GAME,
            )
        )

    logger.info("[streak_broken] %d events, %d alerts", len(events), len(alerts))
    return alerts


# -------------- pass 3 --------------
def detect_inactivity(now: datetime, store=db, config: DetectionConfig = DEFAULT_CONFIG) -> List[ProposedAlert]:
    """Active members without any event in the last week."""
    week_ago = now - timedelta(days=config.inactivity_days)
    try:
        active_users = store.fetch_active_user_ids(week_ago)
        members = store.fetch_active_members()
    except StoreError as exc:
        logger.error("[inactivity] failed to fetch activity: %s", exc)
        return []

    alerts: List[ProposedAlert] = []
    seen: set[str] = set()
    for member in members:
        user_id = member["user_id"]
        if user_id in active_users or user_id in seen:
            continue
        seen.add(user_id)

        try:
            if store.alert_exists(user_id, AlertType.INACTIVITY.value, week_ago, undismissed_only=True):
                continue
        except StoreError as exc:
            logger.error("[inactivity] dedup check failed for user %s: %s", user_id, exc)
            continue

        alerts.append(
            ProposedAlert(
                user_id=user_id,
                organization_id=member.get("organization_id"),
                alert_type=AlertType.INACTIVITY,
                severity=Severity.WARNING,
                title=f"Você está inativo há {config.inactivity_days}+ dias",
                description=f"Nenhuma atividade registrada nos últimos {config.inactivity_days} dias.",
                metadata=InactivityMetadata(days_inactive=config.inactivity_days),
                suggested_action="Retome um treinamento em andamento",
                suggested_action_type=SuggestedActionType.TRAINING,
            )
        )

    logger.info("[inactivity] %d active users, %d members checked, %d alerts",
                len(active_users), len(members), len(alerts))
    return alerts


# -------------- pass 4 --------------
def detect_performance_drops(now: datetime, store=db, config: DetectionConfig = DEFAULT_CONFIG) -> List[ProposedAlert]:
    """Average game score this week vs. the week before."""
    week_ago = now - WEEK
    try:
        events = store.fetch_events(EventType.GAME_COMPLETED.value, now - TWO_WEEKS, scored_only=True)
    except StoreError as exc:
        logger.error("[performance_drop] failed to fetch scores: %s", exc)
        return []

    buckets: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"recent": [], "previous": [], "org": None})
    for event in events:
        if event.get("score") is None:
            continue
        bucket = buckets[event["user_id"]]
        if bucket["org"] is None:
            bucket["org"] = event.get("organization_id") or ""
        key = "recent" if event["created_at"] >= week_ago else "previous"
        bucket[key].append(float(event["score"]))

    alerts: List[ProposedAlert] = []
    for user_id, bucket in buckets.items():
        recent, previous = bucket["recent"], bucket["previous"]
        if len(recent) < config.min_samples or len(previous) < config.min_samples:
            continue

        recent_avg = mean(recent)
        previous_avg = mean(previous)
        if previous_avg <= 0:
            continue

        drop = (previous_avg - recent_avg) / previous_avg * 100
        if drop < config.drop_alert_percent:
            continue

        drop_rounded = _round_half_up(drop)
        alerts.append(
            ProposedAlert(
                user_id=user_id,
                organization_id=bucket["org"],
                alert_type=AlertType.PERFORMANCE_DROP,
                severity=Severity.CRITICAL if drop >= config.drop_critical_percent else Severity.WARNING,
                title=f"Queda de performance: {drop_rounded}%",
                description=f"Sua pontuação média caiu {drop_rounded}% em relação à semana anterior.",
                metadata=PerformanceDropMetadata(
                    drop_percent=drop_rounded,
                    recent_avg=_round_half_up(recent_avg),
                    previous_avg=_round_half_up(previous_avg),
                    recent_samples=len(recent),
                    previous_samples=len(previous),
                ),
                suggested_action="Revise o conteúdo em um treinamento de reforço",
                suggested_action_type=SuggestedActionType.TRAINING,
            )
        )

    logger.info("[performance_drop] %d users scored, %d alerts", len(buckets), len(alerts))
    return alerts


# -------------- pass 5 --------------
def detect_overdue_goals(now: datetime, store=db, config: DetectionConfig = DEFAULT_CONFIG) -> List[ProposedAlert]:
    """Unfinished development goals past their target date."""
    try:
        goals = store.fetch_overdue_goals(now)
    except StoreError as exc:
        logger.error("[goal_overdue] failed to fetch goals: %s", exc)
        return []

    alerts: List[ProposedAlert] = []
    for goal in goals:
        target = goal.get("target_date")
        if (
            target is None
            or target >= now
            or goal.get("status") != "active"
            or goal.get("plan_status") != "active"
            or _as_int(goal.get("progress_percent")) >= 100
        ):
            continue

        days = (now - target).days
        progress = _as_int(goal.get("progress_percent"))
        alerts.append(
            ProposedAlert(
                user_id=goal["user_id"],
                organization_id=goal.get("organization_id"),
                alert_type=AlertType.GOAL_OVERDUE,
                severity=Severity.CRITICAL if days > config.overdue_critical_days else Severity.WARNING,
                title=f"Meta atrasada há {days} dias",
                description=f'A meta "{goal["title"]}" está {progress}% concluída e o prazo venceu há {days} dias.',
                metadata=GoalOverdueMetadata(days_overdue=days, progress_percent=progress, goal_title=goal["title"]),
                suggested_action="Atualize o progresso ou revise o prazo no seu PDI",
                suggested_action_type=SuggestedActionType.PDI,
                suggested_action_id=goal["plan_id"],
                related_entity_type="goal",
                related_entity_id=goal["id"],
            )
        )

    logger.info("[goal_overdue] %d goals fetched, %d alerts", len(goals), len(alerts))
    return alerts


# -------------- pass 6 --------------
def detect_positive_streaks(now: datetime, store=db, config: DetectionConfig = DEFAULT_CONFIG) -> List[ProposedAlert]:
    """Praise for active streaks, at most once per week per user."""
    week_ago = now - WEEK
    try:
        streaks = store.fetch_active_streaks(config.positive_streak_min)
    except StoreError as exc:
        logger.error("[positive_streak] failed to fetch streaks: %s", exc)
        return []

    alerts: List[ProposedAlert] = []
    for streak in streaks:
        user_id = streak["user_id"]
        current = _as_int(streak.get("current_streak"))
        if current < config.positive_streak_min:
            continue
        try:
            if store.alert_exists(user_id, AlertType.POSITIVE_STREAK.value, week_ago):
                continue
        except StoreError as exc:
            logger.error("[positive_streak] dedup check failed for user %s: %s", user_id, exc)
            continue

        alerts.append(
            ProposedAlert(
                user_id=user_id,
                organization_id=streak.get("organization_id"),
                alert_type=AlertType.POSITIVE_STREAK,
                severity=Severity.POSITIVE,
                title=f"🔥 {current} dias de streak!",
                description=f"Você treinou {current} dias seguidos. Continue assim!",
                metadata=PositiveStreakMetadata(current_streak=current),
                suggested_action="Veja sua evolução",
                suggested_action_type=SuggestedActionType.VIEW,
            )
        )

    logger.info("[positive_streak] %d streaks, %d alerts", len(streaks), len(alerts))
    return alerts


PASSES: Sequence[Tuple[str, Callable[..., List[ProposedAlert]]]] = (
    ("skill_stagnation", detect_stagnant_skills),
    ("streak_broken", detect_broken_streaks),
    ("inactivity", detect_inactivity),
    ("performance_drop", detect_performance_drops),
    ("goal_overdue", detect_overdue_goals),
    ("positive_streak", detect_positive_streaks),
)


def apply_cooldown(alerts: List[ProposedAlert], now: datetime, store=db,
                   config: DetectionConfig = DEFAULT_CONFIG) -> List[ProposedAlert]:
    """Drop alerts whose user already has an undismissed one of the same type."""
    if config.cooldown_days <= 0:
        return alerts

    since = now - timedelta(days=config.cooldown_days)
    kept: List[ProposedAlert] = []
    for alert in alerts:
        if alert.alert_type not in COOLDOWN_TYPES:
            kept.append(alert)
            continue
        try:
            exists = store.alert_exists(alert.user_id, alert.alert_type.value, since, undismissed_only=True)
        except StoreError as exc:
            logger.error("Cooldown check failed for user %s (%s): %s", alert.user_id, alert.alert_type.value, exc)
            exists = False
        if not exists:
            kept.append(alert)

    if len(kept) != len(alerts):
        logger.info("Cooldown of %d days suppressed %d alerts", config.cooldown_days, len(alerts) - len(kept))
    return kept


@dataclass
class DetectionReport:
    alerts_generated: int = 0
    alerts_created: int = 0
    manager_notifications: int = 0
    summary: Dict[str, int] = field(default_factory=lambda: count_by_type([]))

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "alertsGenerated": self.alerts_generated,
            "alertsCreated": self.alerts_created,
            "managerNotifications": self.manager_notifications,
            "summary": dict(self.summary),
        }


def collect_alerts(now: datetime, store=db, config: DetectionConfig = DEFAULT_CONFIG) -> List[ProposedAlert]:
    """Run every pass and return the proposed alerts, in pass order."""
    alerts: List[ProposedAlert] = []
    for name, detect in PASSES:
        found = detect(now, store, config)
        logger.debug("Pass %s proposed %d alerts", name, len(found))
        alerts.extend(found)
    return apply_cooldown(alerts, now, store, config)


def run_detection(now: Optional[datetime] = None, store=db,
                  config: Optional[DetectionConfig] = None) -> DetectionReport:
    """Detect patterns, store the alerts and escalate critical ones to managers."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    config = config or DetectionConfig.from_env()

    logger.info("Starting pattern detection at %s", now.isoformat())
    alerts = collect_alerts(now, store, config)
    logger.info("Generated %d alerts", len(alerts))

    created, notified = persist_alerts(alerts, now, store, config)
    logger.info("Created %d alerts and %d manager notifications", created, notified)

    return DetectionReport(
        alerts_generated=len(alerts),
        alerts_created=created,
        manager_notifications=notified,
        summary=count_by_type(alerts),
    )
