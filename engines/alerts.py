"""Evolution alert types, typed metadata and read-side statistics."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Union


class EventType(str, Enum):
    """Activity event types stored in ``core_events``."""

    STREAK_BROKEN = "STREAK_QUEBRADO"
    GAME_COMPLETED = "JOGO_CONCLUIDO"


class AlertType(str, Enum):
    SKILL_STAGNATION = "skill_stagnation"
    STREAK_BROKEN = "streak_broken"
    INACTIVITY = "inactivity"
    PERFORMANCE_DROP = "performance_drop"
    GOAL_OVERDUE = "goal_overdue"
    POSITIVE_STREAK = "positive_streak"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    POSITIVE = "positive"


class SuggestedActionType:
    TRAINING = "training"
    GAME = "game"
    PDI = "pdi"
    VIEW = "view"


# Response summary keys, in report order
SUMMARY_KEYS: Dict[AlertType, str] = {
    AlertType.SKILL_STAGNATION: "skillStagnation",
    AlertType.STREAK_BROKEN: "streakBroken",
    AlertType.INACTIVITY: "inactivity",
    AlertType.PERFORMANCE_DROP: "performanceDrop",
    AlertType.GOAL_OVERDUE: "goalOverdue",
    AlertType.POSITIVE_STREAK: "positiveStreak",
}


@dataclass(frozen=True)
class StagnationMetadata:
    days_inactive: int
    skill_level: int
    skill_id: str
    never_practiced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StreakBrokenMetadata:
    previous_streak: int
    event_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class InactivityMetadata:
    days_inactive: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PerformanceDropMetadata:
    drop_percent: int
    recent_avg: int
    previous_avg: int
    recent_samples: int
    previous_samples: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GoalOverdueMetadata:
    days_overdue: int
    progress_percent: int
    goal_title: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PositiveStreakMetadata:
    current_streak: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


AlertMetadata = Union[
    StagnationMetadata,
    StreakBrokenMetadata,
    InactivityMetadata,
    PerformanceDropMetadata,
    GoalOverdueMetadata,
    PositiveStreakMetadata,
]

_METADATA_TYPES = {
    AlertType.SKILL_STAGNATION: StagnationMetadata,
    AlertType.STREAK_BROKEN: StreakBrokenMetadata,
    AlertType.INACTIVITY: InactivityMetadata,
    AlertType.PERFORMANCE_DROP: PerformanceDropMetadata,
    AlertType.GOAL_OVERDUE: GoalOverdueMetadata,
    AlertType.POSITIVE_STREAK: PositiveStreakMetadata,
}


@dataclass
class ProposedAlert:
    """An alert produced by a detection pass, not yet stored."""

    user_id: str
    organization_id: Optional[str]
    alert_type: AlertType
    severity: Severity
    title: str
    description: str
    metadata: AlertMetadata
    suggested_action: Optional[str] = None
    suggested_action_type: Optional[str] = None
    suggested_action_id: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None

    def __post_init__(self) -> None:
        expected = _METADATA_TYPES[self.alert_type]
        if not isinstance(self.metadata, expected):
            raise TypeError(
                f"{self.alert_type.value} alerts carry {expected.__name__}, "
                f"got {type(self.metadata).__name__}"
            )

    @property
    def is_critical(self) -> bool:
        return self.severity is Severity.CRITICAL

    def to_row(self) -> Dict[str, Any]:
        """Column mapping for the ``evolution_alerts`` table."""
        return {
            "user_id": self.user_id,
            "organization_id": self.organization_id or None,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "suggested_action": self.suggested_action,
            "suggested_action_type": self.suggested_action_type,
            "suggested_action_id": self.suggested_action_id,
            "related_entity_type": self.related_entity_type,
            "related_entity_id": self.related_entity_id,
            "metadata": self.metadata.to_dict(),
        }


def count_by_type(alerts: Iterable[ProposedAlert]) -> Dict[str, int]:
    """Per-type counts keyed by the camelCase summary names."""
    counts = {key: 0 for key in SUMMARY_KEYS.values()}
    for alert in alerts:
        counts[SUMMARY_KEYS[alert.alert_type]] += 1
    return counts


def alert_stats(alerts: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Totals for a list of stored alert rows."""
    stats: Dict[str, Any] = {"total": 0, "unread": 0, "critical": 0, "positive": 0, "by_type": {}}
    for alert in alerts:
        stats["total"] += 1
        if not alert.get("is_read"):
            stats["unread"] += 1
        severity = alert.get("severity")
        if severity == Severity.CRITICAL.value:
            stats["critical"] += 1
        elif severity == Severity.POSITIVE.value:
            stats["positive"] += 1
        alert_type = alert.get("alert_type") or "unknown"
        stats["by_type"][alert_type] = stats["by_type"].get(alert_type, 0) + 1
    return stats
