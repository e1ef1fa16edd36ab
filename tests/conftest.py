import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    original_path = db.DB_PATH
    monkeypatch.delenv("ALERT_COOLDOWN_DAYS", raising=False)
    monkeypatch.delenv("MAX_MANAGERS_PER_ALERT", raising=False)

    # Fresh pool per test
    db.configure(str(db_path))
    db.init()
    yield str(db_path)
    db.configure(original_path)
