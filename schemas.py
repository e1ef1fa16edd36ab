"""Pydantic schemas for the detection service responses."""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "DetectionSummary",
    "DetectionResponse",
    "DetectionFailure",
    "EvolutionAlertRecord",
    "AlertStats",
    "AlertListResponse",
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DetectionSummary(_CamelModel):
    skill_stagnation: int = Field(default=0, alias="skillStagnation")
    streak_broken: int = Field(default=0, alias="streakBroken")
    inactivity: int = 0
    performance_drop: int = Field(default=0, alias="performanceDrop")
    goal_overdue: int = Field(default=0, alias="goalOverdue")
    positive_streak: int = Field(default=0, alias="positiveStreak")


class DetectionResponse(_CamelModel):
    """Body returned by ``POST /detect-patterns`` on success."""
    success: bool = True
    alerts_generated: int = Field(alias="alertsGenerated")
    alerts_created: int = Field(alias="alertsCreated")
    manager_notifications: int = Field(alias="managerNotifications")
    summary: DetectionSummary


class DetectionFailure(BaseModel):
    success: bool = False
    error: str


class EvolutionAlertRecord(BaseModel):
    id: str
    user_id: str
    organization_id: str | None = None
    alert_type: str
    severity: str
    title: str
    description: str | None = None
    suggested_action: str | None = None
    suggested_action_type: str | None = None
    suggested_action_id: str | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    is_dismissed: bool = False
    created_at: str
    expires_at: str | None = None


class AlertStats(BaseModel):
    total: int
    unread: int
    critical: int
    positive: int
    by_type: Dict[str, int] = Field(default_factory=dict)


class AlertListResponse(BaseModel):
    alerts: List[EvolutionAlertRecord]
    stats: AlertStats
