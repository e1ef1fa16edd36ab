"""Seed a database with one organization that exhibits every detected pattern."""
from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from engines.alerts import EventType

ORG_ID = "org-demo"

# user_id -> (full name, role)
USERS = {
    "ana": ("Ana Souza", "owner"),
    "bruno": ("Bruno Lima", "manager"),
    "carla": ("Carla Dias", "member"),
    "diego": ("Diego Rocha", "member"),
    "elisa": ("Elisa Prado", "member"),
    "fabio": ("Fabio Nunes", "member"),
}


def seed(path: str | None = None) -> None:
    if path:
        db.configure(path)
    db.init()
    now = db.utc_now()

    for user_id, (name, role) in USERS.items():
        db.upsert_profile(user_id, full_name=name, nickname=user_id)
        db.add_member(user_id, ORG_ID, org_role=role)

    # ana and bruno keep playing; everyone else gets a storyline
    for user_id in ("ana", "bruno"):
        db.record_event(user_id, EventType.GAME_COMPLETED.value, now - timedelta(days=1),
                        organization_id=ORG_ID, score=80)

    # carla: stale skill and an overdue PDI goal
    db.record_event("carla", EventType.GAME_COMPLETED.value, now - timedelta(days=2),
                    organization_id=ORG_ID, score=70)
    db.upsert_skill_level("carla", "negotiation", "Negociação", organization_id=ORG_ID,
                          current_level=3, last_practiced_at=now - timedelta(days=25))
    plan_id = db.create_plan("carla", organization_id=ORG_ID)
    db.add_goal(plan_id, "Concluir trilha de liderança", (now - timedelta(days=16)).date(),
                progress_percent=40)

    # diego: lost a 15-day streak a few hours ago
    db.record_event("diego", EventType.STREAK_BROKEN.value, now - timedelta(hours=3),
                    organization_id=ORG_ID, metadata={"previous_streak": 15})

    # elisa: scores collapsed this week
    for days, score in ((10, 90), (11, 95), (12, 85), (1, 40), (2, 45), (3, 50)):
        db.record_event("elisa", EventType.GAME_COMPLETED.value, now - timedelta(days=days),
                        organization_id=ORG_ID, score=score)

    # fabio has no events at all; ana is on a long streak
    db.upsert_streak("ana", 12, organization_id=ORG_ID)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: $DB_PATH or data.db)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    seed(args.db)
    print(f"Seeded {len(USERS)} members of {ORG_ID} into {db.DB_PATH}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
