import importlib
import json
import logging
import sys

import pytest

from mediarank import cli


@pytest.fixture
def cli_env(fresh_db):
    """CLI module bound to the reloaded temp database."""
    import mediarank.jobs as jobs

    importlib.reload(jobs)
    module = importlib.reload(cli)
    return module, fresh_db


def _run(monkeypatch, module, *argv):
    monkeypatch.setattr(sys, "argv", ["prog", *argv])
    module.main()


def test_cli_dispatch_stats(monkeypatch):
    called = {}

    def fake_stats(args):
        called["command"] = args.command

    monkeypatch.setattr(cli, "cmd_stats", fake_stats)
    monkeypatch.setattr(sys, "argv", ["prog", "stats"])

    cli.main()
    assert called["command"] == "stats"


def test_cli_parses_top_args(monkeypatch):
    captured = {}

    def fake_top(args):
        captured["ranking_type"] = args.ranking_type
        captured["genres"] = args.genres
        captured["limit"] = args.limit

    monkeypatch.setattr(cli, "cmd_top", fake_top)
    monkeypatch.setattr(sys, "argv", ["prog", "top", "recent", "--genres", "Terror", "Drama", "--limit", "5"])

    cli.main()
    assert captured == {"ranking_type": "recent", "genres": ["Terror", "Drama"], "limit": 5}


def test_cli_rejects_unknown_ranking_type(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["prog", "top", "weekly"])
    with pytest.raises(SystemExit):
        cli.main()


def test_ingest_rank_top_and_export(cli_env, monkeypatch, tmp_path, caplog):
    module, db = cli_env
    records = [
        {"title": "Alien", "year": 1979, "type": "movie", "source": "filmaffinity",
         "score": 8.0, "votes": 50000, "genres": ["27", "878"]},
        {"title": "Alien", "year": 1979, "type": "movie", "source": "reddit", "score": 9.0, "votes": 1000},
        {"title": "Twin Peaks", "year": 1990, "type": "series", "source": "forocoches",
         "score": 8.8, "votes": 500, "genres": ["Drama", "9648"]},
        {"title": "Sin nota", "year": 2000, "type": "movie", "source": "reddit"},
    ]
    source_file = tmp_path / "records.json"
    source_file.write_text(json.dumps(records), encoding="utf-8")

    caplog.set_level(logging.INFO)
    _run(monkeypatch, module, "ingest", str(source_file), "--rank")

    stats = db.get_stats()
    assert stats["media_items"] == 2
    assert stats["scores"] == 3
    assert stats["rankings"] == 2

    caplog.clear()
    _run(monkeypatch, module, "top", "historical", "--genres", "Terror")
    assert "Alien (1979)" in caplog.text
    assert "Twin Peaks" not in caplog.text

    export_file = tmp_path / "export.json"
    _run(monkeypatch, module, "export", str(export_file))
    exported = json.loads(export_file.read_text(encoding="utf-8"))
    assert len(exported["media_items"]) == 2
    assert len(exported["sources_scores"]) == 3
    assert "exported_at" in exported


def test_favorite_unknown_item_exits(cli_env, monkeypatch):
    module, _ = cli_env
    with pytest.raises(SystemExit) as excinfo:
        _run(monkeypatch, module, "favorite", "alice", "does-not-exist")
    assert excinfo.value.code == 1


def test_recommend_without_favorites(cli_env, monkeypatch, caplog):
    module, _ = cli_env
    caplog.set_level(logging.INFO)

    _run(monkeypatch, module, "recommend", "alice")

    assert "no favorites" in caplog.text


def test_favorite_then_recommend(cli_env, monkeypatch, caplog):
    module, db = cli_env
    fav = db.upsert_media_item("Hereditary", 2018, "movie", genres=["27"])
    other = db.upsert_media_item("Talk to Me", 2023, "movie", genres=["27"])
    db.upsert_source_score(other, "reddit", 7.0, 100)
    caplog.set_level(logging.INFO)

    _run(monkeypatch, module, "favorite", "alice", fav)
    _run(monkeypatch, module, "recommend", "alice", "--limit", "2")

    assert "Added favorite 'Hereditary'" in caplog.text
    assert "Talk to Me (2023)" in caplog.text
    assert [r["media_item_id"] for r in db.load_recommendations("alice")] == [other]


def test_ingest_rejects_non_list_file(cli_env, monkeypatch, tmp_path):
    module, _ = cli_env
    bad_file = tmp_path / "bad.json"
    bad_file.write_text(json.dumps({"title": "Alien"}), encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        _run(monkeypatch, module, "ingest", str(bad_file))
    assert excinfo.value.code == 2


def test_cleanup_dry_run_leaves_catalog(cli_env, monkeypatch, caplog):
    module, db = cli_env
    db.upsert_media_item("Dark", 2017, "series")
    db.upsert_media_item("Dark T1", 2017, "series")
    caplog.set_level(logging.INFO)

    _run(monkeypatch, module, "cleanup", "--dry-run")

    assert "[dry-run] merge 1 duplicates" in caplog.text
    assert db.get_stats()["media_items"] == 2


def test_load_records_json_drops_non_object_entries(tmp_path, caplog):
    path = tmp_path / "records.json"
    path.write_text(json.dumps([
        "oops",
        {"title": "Dune", "year": 2021, "type": "movie", "source": "reddit", "score": 8.0},
    ]), encoding="utf-8")

    records = cli.load_records_json(path)

    assert [r.title for r in records] == ["Dune"]
    assert "Dropping record" in caplog.text


def test_enrich_without_api_key_exits(cli_env, monkeypatch):
    module, _ = cli_env
    from mediarank import scraper

    monkeypatch.setattr(module, "TmdbClient", lambda: scraper.TmdbClient(api_key=""))

    with pytest.raises(SystemExit) as excinfo:
        _run(monkeypatch, module, "enrich")
    assert excinfo.value.code == 2


class _StubTmdb:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        pass

    def search(self, title, year, media_type):
        return {"tmdb_id": 1, "poster_url": f"https://img/{year}.jpg", "synopsis": None, "genres": []}


def test_enrich_updates_posters(cli_env, monkeypatch, caplog):
    module, db = cli_env
    item_id = db.upsert_media_item("Alien", 1979, "movie")
    monkeypatch.setattr(module, "TmdbClient", _StubTmdb)
    caplog.set_level(logging.INFO)

    _run(monkeypatch, module, "enrich", "--limit", "5")

    assert db.get_media_item(item_id)["poster_url"] == "https://img/1979.jpg"
    assert "Enriched 1 of 1 items" in caplog.text
