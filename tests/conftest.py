import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MEDIARANK_DB", str(db_path))
    import mediarank.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB, create the schema and
    close the connection after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MEDIARANK_DB", str(db_path))

    import mediarank.config as config
    import mediarank.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_db()


@pytest.fixture
def fresh_jobs(fresh_db):
    """Jobs module bound to the reloaded database."""
    import mediarank.jobs as jobs

    importlib.reload(jobs)
    return jobs, fresh_db


def make_item(item_id, title, year=2020, media_type="movie", genres=None, scores=None, **extra):
    """Build an in-memory catalog row shaped like load_items_with_scores output."""
    item = {
        "id": item_id,
        "title": title,
        "year": year,
        "type": media_type,
        "genres": list(genres or []),
        "scores": [
            {"source": source, "score_normalized": score, "votes_count": votes}
            for source, score, votes in (scores or [])
        ],
    }
    item.update(extra)
    return item
