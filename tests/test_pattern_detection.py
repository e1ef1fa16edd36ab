"""Test cases for the evolution pattern detection passes."""

from datetime import datetime, timedelta, timezone

import pytest

import db
from engines.alerts import AlertType, EventType, Severity, SuggestedActionType
from engines.pattern_detection import (
    DetectionConfig,
    detect_broken_streaks,
    detect_inactivity,
    detect_overdue_goals,
    detect_performance_drops,
    detect_positive_streaks,
    detect_stagnant_skills,
    run_detection,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _scores(user_id, recent, previous, org="org-1"):
    for i, score in enumerate(recent, start=1):
        db.record_event(user_id, EventType.GAME_COMPLETED.value, NOW - timedelta(days=i),
                        organization_id=org, score=score)
    for i, score in enumerate(previous, start=8):
        db.record_event(user_id, EventType.GAME_COMPLETED.value, NOW - timedelta(days=i),
                        organization_id=org, score=score)


# ---------- stagnant skills ----------
def test_stagnant_skill_severity_follows_whole_days(temp_db):
    db.upsert_skill_level("u1", "sk-a", "Negociação", current_level=3,
                          last_practiced_at=NOW - timedelta(days=22, hours=12))
    db.upsert_skill_level("u2", "sk-b", "Oratória", current_level=2,
                          last_practiced_at=NOW - timedelta(days=21, hours=20))
    db.upsert_skill_level("u3", "sk-c", "Vendas", last_practiced_at=NOW - timedelta(days=3))
    db.upsert_skill_level("u4", "sk-d", "Excel", is_unlocked=False,
                          last_practiced_at=NOW - timedelta(days=40))

    alerts = {a.user_id: a for a in detect_stagnant_skills(NOW)}

    assert set(alerts) == {"u1", "u2"}
    assert alerts["u1"].metadata.days_inactive == 22
    assert alerts["u1"].severity is Severity.WARNING
    assert alerts["u1"].title == "Skill estagnada há 22 dias"
    assert alerts["u1"].metadata.to_dict()["skill_level"] == 3
    assert alerts["u2"].metadata.days_inactive == 21
    assert alerts["u2"].severity is Severity.INFO
    assert alerts["u2"].suggested_action_type == SuggestedActionType.GAME


def test_never_practiced_unlocked_skill_is_stagnant(temp_db):
    db.upsert_skill_level("u1", "sk-a", "Negociação", last_practiced_at=None)

    alerts = detect_stagnant_skills(NOW)

    assert len(alerts) == 1
    assert alerts[0].metadata.never_practiced is True
    assert alerts[0].metadata.days_inactive == (NOW - datetime(1970, 1, 1, tzinfo=timezone.utc)).days
    assert alerts[0].title == f"Skill estagnada há {alerts[0].metadata.days_inactive} dias"
    assert alerts[0].severity is Severity.WARNING


def test_practiced_skill_is_not_flagged_as_never_practiced(temp_db):
    db.upsert_skill_level("u1", "sk-a", "Negociação", last_practiced_at=NOW - timedelta(days=15))

    [alert] = detect_stagnant_skills(NOW)

    assert alert.metadata.to_dict() == {
        "days_inactive": 15,
        "skill_level": 1,
        "skill_id": "sk-a",
        "never_practiced": False,
    }


def test_stagnation_is_proposed_on_every_run(temp_db):
    db.upsert_skill_level("u1", "sk-a", "Negociação", last_practiced_at=NOW - timedelta(days=15))

    first = run_detection(NOW, config=DetectionConfig())
    second = run_detection(NOW + timedelta(hours=1), config=DetectionConfig())

    assert first.summary["skillStagnation"] == 1
    assert second.summary["skillStagnation"] == 1


# ---------- broken streaks ----------
@pytest.mark.parametrize(
    "previous,expected",
    [(6, None), (7, Severity.WARNING), (13, Severity.WARNING), (14, Severity.CRITICAL), (30, Severity.CRITICAL)],
)
def test_broken_streak_thresholds(temp_db, previous, expected):
    db.record_event("u1", EventType.STREAK_BROKEN.value, NOW - timedelta(hours=2),
                    organization_id="org-1", metadata={"previous_streak": previous})

    alerts = detect_broken_streaks(NOW)

    if expected is None:
        assert alerts == []
    else:
        assert len(alerts) == 1
        assert alerts[0].severity is expected
        assert alerts[0].title == f"Streak de {previous} dias quebrado"
        assert alerts[0].metadata.previous_streak == previous


def test_broken_streak_outside_last_day_is_ignored(temp_db):
    db.record_event("u1", EventType.STREAK_BROKEN.value, NOW - timedelta(hours=25),
                    metadata={"previous_streak": 20})
    db.record_event("u2", EventType.STREAK_BROKEN.value, NOW - timedelta(hours=1))

    assert detect_broken_streaks(NOW) == []


def test_broken_streak_stored_with_space_separator_is_detected(temp_db):
    event_id = db.record_event("u1", EventType.STREAK_BROKEN.value, NOW,
                               metadata={"previous_streak": 9})
    db._exec("UPDATE core_events SET created_at = ? WHERE id = ?", ["2026-10-18 23:00:00", event_id])

    report = run_detection(NOW, config=DetectionConfig())

    assert report.summary["streakBroken"] == 1


def test_corrupt_event_timestamp_does_not_abort_the_run(temp_db):
    event_id = db.record_event("u1", EventType.STREAK_BROKEN.value, NOW - timedelta(hours=1),
                               metadata={"previous_streak": 20})
    db._exec("UPDATE core_events SET created_at = ? WHERE id = ?", ["not-a-date", event_id])
    db.upsert_streak("u2", 9)
    db.upsert_skill_level("u3", "sk-a", "Negociação", last_practiced_at=NOW - timedelta(days=30))

    report = run_detection(NOW, config=DetectionConfig())

    assert report.summary["streakBroken"] == 0
    assert report.summary["positiveStreak"] == 1
    assert report.summary["skillStagnation"] == 1
    assert report.alerts_created == report.alerts_generated


# ---------- inactivity ----------
def test_inactive_member_gets_one_alert(temp_db):
    db.add_member("idle", "org-1")
    db.add_member("idle", "org-2")
    db.add_member("busy", "org-1")
    db.add_member("gone", "org-1", is_active=False)
    db.record_event("busy", EventType.GAME_COMPLETED.value, NOW - timedelta(days=2), score=50)
    db.record_event("idle", EventType.GAME_COMPLETED.value, NOW - timedelta(days=9), score=50)

    alerts = detect_inactivity(NOW)

    assert [a.user_id for a in alerts] == ["idle"]
    assert alerts[0].severity is Severity.WARNING
    assert alerts[0].title == "Você está inativo há 7+ dias"
    assert alerts[0].suggested_action_type == SuggestedActionType.TRAINING


def test_inactivity_is_idempotent_within_the_week(temp_db):
    db.add_member("idle", "org-1")

    first = run_detection(NOW, config=DetectionConfig())
    second = run_detection(NOW + timedelta(days=2), config=DetectionConfig())

    assert first.summary["inactivity"] == 1
    assert second.summary["inactivity"] == 0


def test_dismissed_inactivity_alert_does_not_block(temp_db):
    db.add_member("idle", "org-1")
    run_detection(NOW, config=DetectionConfig())
    stored = db.list_alerts("idle")
    db.set_alert_dismissed(stored[0]["id"])

    assert len(detect_inactivity(NOW + timedelta(days=1))) == 1


# ---------- performance drop ----------
@pytest.mark.parametrize(
    "recent,previous,expected",
    [
        ([50, 50, 50], [100, 100, 100], Severity.CRITICAL),
        ([75, 75, 75], [100, 100, 100], Severity.WARNING),
        ([90, 90, 90], [100, 100, 100], None),
    ],
)
def test_performance_drop_severity(temp_db, recent, previous, expected):
    _scores("u1", recent, previous)

    alerts = detect_performance_drops(NOW)

    if expected is None:
        assert alerts == []
    else:
        assert len(alerts) == 1
        assert alerts[0].severity is expected
        assert alerts[0].organization_id == "org-1"


def test_performance_drop_metadata_is_rounded(temp_db):
    _scores("u1", [50, 51, 52], [100, 100, 101])

    alert = detect_performance_drops(NOW)[0]

    meta = alert.metadata.to_dict()
    assert meta["recent_avg"] == 51
    assert meta["previous_avg"] == 100
    assert meta["drop_percent"] == 49
    assert alert.title == "Queda de performance: 49%"


def test_performance_drop_requires_minimum_samples(temp_db):
    _scores("u1", [10, 10, 10, 10], [])
    _scores("u2", [10, 10], [100, 100, 100])

    assert detect_performance_drops(NOW) == []


def test_performance_drop_skips_zero_baseline(temp_db):
    _scores("u1", [0, 0, 0], [0, 0, 0])

    assert detect_performance_drops(NOW) == []


# ---------- overdue goals ----------
def test_overdue_goal_severity(temp_db):
    plan = db.create_plan("u1", organization_id="org-1", plan_id="plan-1")
    db.add_goal(plan, "Liderança", (NOW - timedelta(days=10)).date(), progress_percent=40, goal_id="g-10")
    db.add_goal(plan, "Feedback", (NOW - timedelta(days=15)).date(), progress_percent=40, goal_id="g-15")

    alerts = {a.related_entity_id: a for a in detect_overdue_goals(NOW)}

    assert alerts["g-10"].metadata.days_overdue == 10
    assert alerts["g-10"].severity is Severity.WARNING
    assert alerts["g-15"].metadata.days_overdue == 15
    assert alerts["g-15"].severity is Severity.CRITICAL
    assert alerts["g-10"].suggested_action_type == SuggestedActionType.PDI
    assert alerts["g-10"].suggested_action_id == "plan-1"
    assert alerts["g-10"].related_entity_type == "goal"


def test_overdue_goal_filters(temp_db):
    active = db.create_plan("u1")
    archived = db.create_plan("u2", status="archived")
    past = (NOW - timedelta(days=5)).date()
    db.add_goal(active, "Done", past, progress_percent=100)
    db.add_goal(active, "Paused", past, status="paused")
    db.add_goal(active, "Future", (NOW + timedelta(days=5)).date())
    db.add_goal(archived, "Old plan", past)

    assert detect_overdue_goals(NOW) == []


# ---------- positive streaks ----------
def test_positive_streak_once_per_week(temp_db):
    db.upsert_streak("u1", 10, organization_id="org-1")
    db.upsert_streak("u2", 6)
    db.upsert_streak("u3", 20, is_active=False)

    alerts = detect_positive_streaks(NOW)
    assert [a.user_id for a in alerts] == ["u1"]
    assert alerts[0].severity is Severity.POSITIVE
    assert "🔥" in alerts[0].title
    assert alerts[0].suggested_action_type == SuggestedActionType.VIEW

    run_detection(NOW, config=DetectionConfig())
    assert detect_positive_streaks(NOW + timedelta(days=3)) == []
    assert len(detect_positive_streaks(NOW + timedelta(days=8))) == 1


def test_dismissed_positive_streak_still_blocks(temp_db):
    db.upsert_streak("u1", 10)
    run_detection(NOW, config=DetectionConfig())
    db.set_alert_dismissed(db.list_alerts("u1")[0]["id"])

    assert detect_positive_streaks(NOW + timedelta(days=1)) == []


# ---------- cooldown policy ----------
def test_cooldown_suppresses_repeat_stagnation(temp_db):
    db.upsert_skill_level("u1", "sk-a", "Negociação", last_practiced_at=NOW - timedelta(days=15))
    config = DetectionConfig(cooldown_days=3)

    first = run_detection(NOW, config=config)
    second = run_detection(NOW + timedelta(days=1), config=config)
    third = run_detection(NOW + timedelta(days=4), config=config)

    assert first.alerts_created == 1
    assert second.summary["skillStagnation"] == 0
    assert third.summary["skillStagnation"] == 1


# ---------- in-memory store ----------
class FakeStore:
    """Minimal store exposing only what the passes read."""

    def __init__(self, events=(), alerts=()):
        self.events = list(events)
        self.alerts = list(alerts)

    def fetch_events(self, event_type, since, *, scored_only=False):
        return [
            e for e in self.events
            if e["event_type"] == event_type and e["created_at"] >= since
            and (not scored_only or e["score"] is not None)
        ]

    def fetch_active_streaks(self, min_streak):
        return [{"user_id": "u1", "organization_id": None, "current_streak": 9}]

    def alert_exists(self, user_id, alert_type, since, *, undismissed_only=False):
        return any(a["user_id"] == user_id and a["alert_type"] == alert_type for a in self.alerts)


def _event(user_id, event_type, days_ago, score=None, metadata=None):
    return {
        "id": f"{user_id}-{days_ago}",
        "user_id": user_id,
        "organization_id": "org-1",
        "event_type": event_type,
        "score": score,
        "metadata": metadata or {},
        "created_at": NOW - timedelta(days=days_ago),
    }


def test_passes_run_against_an_in_memory_store():
    store = FakeStore(events=[
        _event("u1", EventType.STREAK_BROKEN.value, 0.5, metadata={"previousStreak": 8}),
        *[_event("u2", EventType.GAME_COMPLETED.value, d, score=s)
          for d, s in ((1, 40), (2, 40), (3, 40), (8, 80), (9, 80), (10, 80))],
    ])

    streaks = detect_broken_streaks(NOW, store)
    drops = detect_performance_drops(NOW, store)

    assert [(a.user_id, a.severity) for a in streaks] == [("u1", Severity.WARNING)]
    assert [(a.user_id, a.severity) for a in drops] == [("u2", Severity.CRITICAL)]
    assert drops[0].alert_type is AlertType.PERFORMANCE_DROP


def test_positive_streak_skips_user_with_recent_praise():
    store = FakeStore(alerts=[{"user_id": "u1", "alert_type": "positive_streak"}])

    assert detect_positive_streaks(NOW, store) == []
