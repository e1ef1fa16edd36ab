import json
import logging
import os
import sqlite3
from queue import Empty
from uuid import uuid4
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from db_pool import SQLiteConnectionPool

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

MANAGER_ROLES = ("owner", "admin", "manager")
_ORG_ROLES = MANAGER_ROLES + ("member",)

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


class StoreError(Exception):
    """Raised when a read or write against the store fails."""


def configure(path: str, max_connections: int = 10) -> None:
    """Point the module at another database file."""
    global DB_PATH, _pool
    _pool.close_all()
    DB_PATH = path
    _pool = SQLiteConnectionPool(path, max_connections=max_connections)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, tuple(params))
            con.commit()
            return cur
    except sqlite3.Error as exc:
        raise StoreError(f"{exc} [{_statement_name(sql)}]") from exc
    except Empty as exc:
        raise StoreError(f"no pooled connection available [{_statement_name(sql)}]") from exc

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, tuple(params))
            return cur.fetchall()
    except sqlite3.Error as exc:
        raise StoreError(f"{exc} [{_statement_name(sql)}]") from exc
    except Empty as exc:
        raise StoreError(f"no pooled connection available [{_statement_name(sql)}]") from exc


def _statement_name(sql: str) -> str:
    words = sql.split()
    return " ".join(words[:4]) if words else "<empty>"


# -------------- time helpers --------------
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Interpret a ``YYYY-MM-DD`` column as UTC midnight."""
    if not value:
        return None
    day = date.fromisoformat(str(value)[:10])
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _parse_column(
    row: sqlite3.Row, column: str, parser: Callable[[Optional[str]], Optional[datetime]]
) -> tuple[bool, Optional[datetime]]:
    """Parse a time column, returning ``(False, None)`` and logging when it is malformed."""
    try:
        return True, parser(row[column])
    except (TypeError, ValueError):
        logger.warning("Skipping row %s: unparseable %s %r", row["id"], column, row[column])
        return False, None


def _load_json(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


# -------------- schema --------------
_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id          TEXT PRIMARY KEY,
        full_name   TEXT,
        nickname    TEXT,
        created_at  TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS organization_members (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id          TEXT NOT NULL,
        organization_id  TEXT NOT NULL,
        org_role         TEXT NOT NULL DEFAULT 'member'
                         CHECK (org_role IN ({", ".join(repr(r) for r in _ORG_ROLES)})),
        is_active        INTEGER NOT NULL DEFAULT 1,
        UNIQUE(user_id, organization_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS core_events (
        id               TEXT PRIMARY KEY,
        user_id          TEXT NOT NULL,
        organization_id  TEXT,
        event_type       TEXT NOT NULL,
        score            REAL,
        metadata         TEXT,
        created_at       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_skill_levels (
        id                TEXT PRIMARY KEY,
        user_id           TEXT NOT NULL,
        skill_id          TEXT NOT NULL,
        skill_name        TEXT NOT NULL,
        organization_id   TEXT,
        current_level     INTEGER NOT NULL DEFAULT 1,
        last_practiced_at TEXT,
        is_unlocked       INTEGER NOT NULL DEFAULT 0,
        UNIQUE(user_id, skill_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_streaks (
        user_id          TEXT PRIMARY KEY,
        organization_id  TEXT,
        current_streak   INTEGER NOT NULL DEFAULT 0,
        is_active        INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS development_plans (
        id               TEXT PRIMARY KEY,
        user_id          TEXT NOT NULL,
        organization_id  TEXT,
        status           TEXT NOT NULL DEFAULT 'active'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS development_goals (
        id                TEXT PRIMARY KEY,
        plan_id           TEXT NOT NULL,
        title             TEXT NOT NULL,
        progress_percent  INTEGER NOT NULL DEFAULT 0
                          CHECK (progress_percent BETWEEN 0 AND 100),
        target_date       TEXT,
        status            TEXT NOT NULL DEFAULT 'active',
        FOREIGN KEY(plan_id) REFERENCES development_plans(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evolution_alerts (
        id                    TEXT PRIMARY KEY,
        user_id               TEXT NOT NULL,
        organization_id       TEXT,
        alert_type            TEXT NOT NULL,
        severity              TEXT NOT NULL
                              CHECK (severity IN ('info', 'warning', 'critical', 'positive')),
        title                 TEXT NOT NULL,
        description           TEXT,
        suggested_action      TEXT,
        suggested_action_type TEXT,
        suggested_action_id   TEXT,
        related_entity_type   TEXT,
        related_entity_id     TEXT,
        metadata              TEXT,
        is_read               INTEGER NOT NULL DEFAULT 0,
        is_dismissed          INTEGER NOT NULL DEFAULT 0,
        created_at            TEXT NOT NULL,
        expires_at            TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        type        TEXT NOT NULL,
        title       TEXT NOT NULL,
        message     TEXT,
        data        TEXT,
        is_read     INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_core_events_type_created ON core_events(event_type, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_core_events_created ON core_events(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_skill_levels_practiced ON user_skill_levels(is_unlocked, last_practiced_at)",
    "CREATE INDEX IF NOT EXISTS idx_goals_plan ON development_goals(plan_id)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_user_type ON evolution_alerts(user_id, alert_type, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_members_org ON organization_members(organization_id, org_role)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)",
)


def init() -> None:
    """Create every table and index used by the detector."""
    try:
        with _conn() as con:
            for statement in _SCHEMA:
                con.execute(statement)
            con.commit()
    except sqlite3.Error as exc:
        raise StoreError(f"schema initialisation failed: {exc}") from exc


# -------------- detection reads --------------
# Time windows compare through julianday() so any ISO form SQLite understands
# ("T" or space separator, offset or Z) is ordered by instant. Values it cannot
# parse become NULL and fall outside every window.
def fetch_stale_skills(before: datetime) -> List[Dict[str, Any]]:
    """Unlocked skills last practiced before ``before`` or never practiced."""
    rows = _query(
        """
        SELECT id, user_id, skill_id, skill_name, organization_id, current_level, last_practiced_at
        FROM user_skill_levels
        WHERE is_unlocked = 1
          AND (last_practiced_at IS NULL OR julianday(last_practiced_at) < julianday(?))
        ORDER BY user_id, skill_id
        """,
        [to_iso(before)],
    )
    skills = []
    for r in rows:
        ok, last_practiced = _parse_column(r, "last_practiced_at", parse_iso)
        if not ok:
            continue
        skills.append({
            "id": r["id"],
            "user_id": r["user_id"],
            "skill_id": r["skill_id"],
            "skill_name": r["skill_name"],
            "organization_id": r["organization_id"],
            "current_level": r["current_level"],
            "last_practiced_at": last_practiced,
        })
    return skills


def fetch_events(event_type: str, since: datetime, *, scored_only: bool = False) -> List[Dict[str, Any]]:
    """Events of ``event_type`` created at or after ``since``, newest first."""
    sql = """
        SELECT id, user_id, organization_id, event_type, score, metadata, created_at
        FROM core_events
        WHERE event_type = ? AND julianday(created_at) >= julianday(?)
    """
    if scored_only:
        sql += " AND score IS NOT NULL"
    sql += " ORDER BY julianday(created_at) DESC"
    rows = _query(sql, [event_type, to_iso(since)])
    events = []
    for r in rows:
        ok, created_at = _parse_column(r, "created_at", parse_iso)
        if not ok or created_at is None:
            continue
        events.append({
            "id": r["id"],
            "user_id": r["user_id"],
            "organization_id": r["organization_id"],
            "event_type": r["event_type"],
            "score": r["score"],
            "metadata": _load_json(r["metadata"]),
            "created_at": created_at,
        })
    return events


def fetch_active_user_ids(since: datetime) -> Set[str]:
    rows = _query(
        "SELECT DISTINCT user_id FROM core_events WHERE julianday(created_at) >= julianday(?)",
        [to_iso(since)],
    )
    return {r["user_id"] for r in rows}


def fetch_active_members() -> List[Dict[str, Any]]:
    rows = _query(
        """
        SELECT user_id, organization_id, org_role
        FROM organization_members
        WHERE is_active = 1
        ORDER BY organization_id, user_id
        """
    )
    return [dict(r) for r in rows]


def fetch_overdue_goals(now: datetime) -> List[Dict[str, Any]]:
    """Unfinished active goals past their target date, with their plan."""
    # julianday() of a bare date is midnight UTC
    rows = _query(
        """
        SELECT g.id, g.plan_id, g.title, g.progress_percent, g.target_date, g.status,
               p.user_id, p.organization_id, p.status AS plan_status
        FROM development_goals g
        JOIN development_plans p ON p.id = g.plan_id
        WHERE g.status = 'active'
          AND p.status = 'active'
          AND g.progress_percent < 100
          AND g.target_date IS NOT NULL
          AND julianday(g.target_date) < julianday(?)
        ORDER BY g.target_date
        """,
        [to_iso(now)],
    )
    goals = []
    for r in rows:
        ok, target_date = _parse_column(r, "target_date", parse_date)
        if not ok:
            continue
        goal = dict(r)
        goal["target_date"] = target_date
        goals.append(goal)
    return goals


def fetch_active_streaks(min_streak: int) -> List[Dict[str, Any]]:
    rows = _query(
        """
        SELECT user_id, organization_id, current_streak
        FROM user_streaks
        WHERE is_active = 1 AND current_streak >= ?
        ORDER BY current_streak DESC
        """,
        [min_streak],
    )
    return [dict(r) for r in rows]


def alert_exists(user_id: str, alert_type: str, since: datetime, *, undismissed_only: bool = False) -> bool:
    sql = """
        SELECT 1 FROM evolution_alerts
        WHERE user_id = ? AND alert_type = ? AND julianday(created_at) >= julianday(?)
    """
    if undismissed_only:
        sql += " AND is_dismissed = 0"
    sql += " LIMIT 1"
    return bool(_query(sql, [user_id, alert_type, to_iso(since)]))


def fetch_org_managers(organization_id: str, roles: Sequence[str] = MANAGER_ROLES) -> List[str]:
    placeholders = ", ".join("?" for _ in roles)
    rows = _query(
        f"""
        SELECT user_id FROM organization_members
        WHERE organization_id = ? AND org_role IN ({placeholders})
        ORDER BY id
        """,
        [organization_id, *roles],
    )
    return [r["user_id"] for r in rows]


def get_profile_name(user_id: str) -> Optional[str]:
    rows = _query("SELECT full_name, nickname FROM profiles WHERE id = ?", [user_id])
    if not rows:
        return None
    return rows[0]["full_name"] or rows[0]["nickname"] or None


# -------------- alert writes --------------
def insert_evolution_alert(alert: Mapping[str, Any], created_at: Optional[datetime] = None) -> str:
    """Insert one unread, undismissed evolution alert and return its id."""
    alert_id = str(uuid4())
    _exec(
        """
        INSERT INTO evolution_alerts
        (id, user_id, organization_id, alert_type, severity, title, description,
         suggested_action, suggested_action_type, suggested_action_id,
         related_entity_type, related_entity_id, metadata, is_read, is_dismissed,
         created_at, expires_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
        """,
        (
            alert_id,
            alert["user_id"],
            alert.get("organization_id") or None,
            alert["alert_type"],
            alert["severity"],
            alert["title"],
            alert.get("description"),
            alert.get("suggested_action"),
            alert.get("suggested_action_type"),
            alert.get("suggested_action_id"),
            alert.get("related_entity_type"),
            alert.get("related_entity_id"),
            json.dumps(alert.get("metadata") or {}),
            to_iso(created_at or utc_now()),
            alert.get("expires_at"),
        ),
    )
    return alert_id


def insert_notification(
    user_id: str,
    title: str,
    message: Optional[str],
    data: Mapping[str, Any],
    notification_type: str = "alert",
    created_at: Optional[datetime] = None,
) -> str:
    notification_id = str(uuid4())
    _exec(
        """
        INSERT INTO notifications (id, user_id, type, title, message, data, is_read, created_at)
        VALUES (?, ?, ?, ?, ?, ?, 0, ?)
        """,
        (notification_id, user_id, notification_type, title, message, json.dumps(dict(data)),
         to_iso(created_at or utc_now())),
    )
    return notification_id


def _alert_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    alert = dict(row)
    alert["metadata"] = _load_json(row["metadata"])
    alert["is_read"] = bool(row["is_read"])
    alert["is_dismissed"] = bool(row["is_dismissed"])
    return alert


def list_alerts(user_id: str, include_dismissed: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
    """Stored alerts for ``user_id``, newest first."""
    sql = "SELECT * FROM evolution_alerts WHERE user_id = ?"
    if not include_dismissed:
        sql += " AND is_dismissed = 0"
    sql += " ORDER BY created_at DESC LIMIT ?"
    return [_alert_from_row(r) for r in _query(sql, [user_id, int(limit)])]


def list_notifications(user_id: str) -> List[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at, id",
        [user_id],
    )
    notifications = []
    for r in rows:
        item = dict(r)
        item["data"] = _load_json(r["data"])
        item["is_read"] = bool(r["is_read"])
        notifications.append(item)
    return notifications


# -------------- seeding helpers --------------
def upsert_profile(user_id: str, full_name: Optional[str] = None, nickname: Optional[str] = None) -> None:
    _exec(
        """
        INSERT INTO profiles (id, full_name, nickname, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            full_name = excluded.full_name,
            nickname = excluded.nickname
        """,
        [user_id, full_name, nickname, to_iso(utc_now())],
    )


def add_member(user_id: str, organization_id: str, org_role: str = "member", is_active: bool = True) -> None:
    _exec(
        """
        INSERT INTO organization_members (user_id, organization_id, org_role, is_active)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(user_id, organization_id) DO UPDATE SET
            org_role = excluded.org_role,
            is_active = excluded.is_active
        """,
        [user_id, organization_id, org_role, int(is_active)],
    )


def record_event(
    user_id: str,
    event_type: str,
    created_at: datetime,
    *,
    organization_id: Optional[str] = None,
    score: Optional[float] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> str:
    event_id = str(uuid4())
    _exec(
        """
        INSERT INTO core_events (id, user_id, organization_id, event_type, score, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [event_id, user_id, organization_id, event_type, score,
         json.dumps(dict(metadata or {})), to_iso(created_at)],
    )
    return event_id


def upsert_skill_level(
    user_id: str,
    skill_id: str,
    skill_name: str,
    *,
    organization_id: Optional[str] = None,
    current_level: int = 1,
    last_practiced_at: Optional[datetime] = None,
    is_unlocked: bool = True,
) -> None:
    _exec(
        """
        INSERT INTO user_skill_levels
        (id, user_id, skill_id, skill_name, organization_id, current_level, last_practiced_at, is_unlocked)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, skill_id) DO UPDATE SET
            skill_name = excluded.skill_name,
            organization_id = excluded.organization_id,
            current_level = excluded.current_level,
            last_practiced_at = excluded.last_practiced_at,
            is_unlocked = excluded.is_unlocked
        """,
        [
            str(uuid4()), user_id, skill_id, skill_name, organization_id, current_level,
            to_iso(last_practiced_at) if last_practiced_at else None, int(is_unlocked),
        ],
    )


def upsert_streak(user_id: str, current_streak: int, *, organization_id: Optional[str] = None,
                  is_active: bool = True) -> None:
    _exec(
        """
        INSERT INTO user_streaks (user_id, organization_id, current_streak, is_active)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            organization_id = excluded.organization_id,
            current_streak = excluded.current_streak,
            is_active = excluded.is_active
        """,
        [user_id, organization_id, current_streak, int(is_active)],
    )


def create_plan(user_id: str, *, organization_id: Optional[str] = None, status: str = "active",
                plan_id: Optional[str] = None) -> str:
    plan_id = plan_id or str(uuid4())
    _exec(
        "INSERT INTO development_plans (id, user_id, organization_id, status) VALUES (?, ?, ?, ?)",
        [plan_id, user_id, organization_id, status],
    )
    return plan_id


def add_goal(plan_id: str, title: str, target_date: date, *, progress_percent: int = 0,
             status: str = "active", goal_id: Optional[str] = None) -> str:
    goal_id = goal_id or str(uuid4())
    _exec(
        """
        INSERT INTO development_goals (id, plan_id, title, progress_percent, target_date, status)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [goal_id, plan_id, title, progress_percent, target_date.isoformat(), status],
    )
    return goal_id


def set_alert_dismissed(alert_id: str, dismissed: bool = True) -> None:
    _exec("UPDATE evolution_alerts SET is_dismissed = ? WHERE id = ?", [int(dismissed), alert_id])
