import json

import pytest

from scripts import run_detection, seed_demo_data


def test_seeded_demo_produces_every_alert_type(temp_db, tmp_path, capsys):
    path = str(tmp_path / "demo.db")
    assert seed_demo_data.main(["--db", path]) == 0
    capsys.readouterr()

    assert run_detection.main(["--db", path]) == 0
    report = json.loads(capsys.readouterr().out)

    assert report["success"] is True
    assert report["summary"] == {
        "skillStagnation": 1,
        "streakBroken": 1,
        "inactivity": 1,
        "performanceDrop": 1,
        "goalOverdue": 1,
        "positiveStreak": 1,
    }
    assert report["alertsGenerated"] == 6
    assert report["alertsCreated"] == 6
    # three critical alerts, two managers each
    assert report["managerNotifications"] == 6


def test_rerun_with_cooldown_suppresses_repeats(temp_db, tmp_path, capsys):
    path = str(tmp_path / "demo.db")
    seed_demo_data.main(["--db", path])
    run_detection.main(["--db", path])
    capsys.readouterr()

    assert run_detection.main(["--db", path, "--cooldown-days", "1"]) == 0
    report = json.loads(capsys.readouterr().out)

    assert report["alertsGenerated"] == 0


def test_invalid_now_is_rejected(temp_db):
    with pytest.raises(SystemExit) as excinfo:
        run_detection.main(["--now", "yesterday"])
    assert excinfo.value.code == 2


@pytest.mark.parametrize("args", [["--max-managers", "0"], ["--max-managers", "-3"], ["--cooldown-days", "-1"]])
def test_out_of_range_limits_are_rejected(temp_db, tmp_path, capsys, args):
    path = str(tmp_path / "demo.db")

    assert run_detection.main(["--db", path, *args]) == 2
    assert capsys.readouterr().out == ""
