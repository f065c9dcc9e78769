import pytest

from mediarank.aggregation import AggregatedScore
from mediarank.recommender import Recommendation


def _rec(media_item_id, score=5.0):
    return Recommendation(
        media_item_id=media_item_id,
        title="",
        media_type="movie",
        year=None,
        score=score,
        reason="Motivo",
        reason_code="fallback",
    )


def test_init_db_creates_expected_tables(fresh_db):
    db = fresh_db

    with db.get_db(read_only=True) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }

    expected = {"media_items", "sources_scores", "aggregated_scores", "user_favorites", "recommendations"}
    assert expected.issubset(tables)


def test_nested_transactions_commit_once(fresh_db):
    db = fresh_db

    with pytest.raises(RuntimeError):
        with db.get_db() as conn:
            conn.execute(
                "INSERT INTO media_items (id, type, title, year, created_at) VALUES (?, ?, ?, ?, ?)",
                ("x", "movie", "Inner", 2020, "2024-01-01"),
            )
            with db.get_db() as inner:
                inner.execute("SELECT 1")
            raise RuntimeError("boom")

    assert db.get_media_item("x") is None


def test_driver_errors_become_store_errors(fresh_db):
    db = fresh_db

    with pytest.raises(db.StoreError) as excinfo:
        with db.get_db(operation="bad query") as conn:
            conn.execute("SELECT * FROM no_such_table")

    assert excinfo.value.operation == "bad query"
    assert isinstance(excinfo.value, RuntimeError)


def test_upsert_media_item_identity_is_title_and_year(fresh_db):
    db = fresh_db

    first = db.upsert_media_item("Dune", 2021, "movie", genres=["878", "878", "12"])
    again = db.upsert_media_item("Dune", 2021, "movie")
    remake = db.upsert_media_item("Dune", 1984, "movie")
    undated = db.upsert_media_item("Dune", None, "movie")

    assert first == again
    assert remake != first
    assert db.upsert_media_item("Dune", None, "movie") == undated
    assert db.get_media_item(first)["genres"] == ["878", "12"]


def test_upsert_media_item_rejects_bad_input(fresh_db):
    db = fresh_db
    with pytest.raises(ValueError):
        db.upsert_media_item("Dune", 2021, "podcast")
    with pytest.raises(ValueError):
        db.upsert_media_item("   ", 2021, "movie")


def test_upsert_source_score_updates_in_place(fresh_db):
    db = fresh_db
    item_id = db.upsert_media_item("Poor Things", 2023, "movie")

    db.upsert_source_score(item_id, "filmaffinity", 7.9, 30000)
    db.upsert_source_score(item_id, "filmaffinity", 8.2, 40000)

    scores = db.get_media_item(item_id)["scores"]
    assert len(scores) == 1
    assert scores[0]["score_normalized"] == 8.2
    assert scores[0]["votes_count"] == 40000

    with pytest.raises(ValueError):
        db.upsert_source_score(item_id, "imdb", 8.0)


def test_delete_media_item_cascades(fresh_db):
    db = fresh_db
    item_id = db.upsert_media_item("Alien", 1979, "movie")
    db.upsert_source_score(item_id, "reddit", 9.0, 10)
    db.toggle_favorite("alice", item_id)
    db.replace_recommendations("bob", [_rec(item_id)])
    db.upsert_aggregated_scores([AggregatedScore(item_id, 9.0, "historical", 9.0, 10, 1)])

    assert db.delete_media_item(item_id)

    stats = db.get_stats()
    assert stats["scores"] == 0
    assert stats["favorites"] == 0
    assert stats["recommendations"] == 0
    assert stats["rankings"] == 0


def test_toggle_favorite_flips(fresh_db):
    db = fresh_db
    item_id = db.upsert_media_item("Fargo", 2014, "series")

    assert db.toggle_favorite("alice", item_id) is True
    assert db.load_favorite_ids("alice") == [item_id]
    assert db.toggle_favorite("alice", item_id) is False
    assert db.load_favorite_ids("alice") == []


def test_update_media_enrichment_only_writes_given_fields(fresh_db):
    db = fresh_db
    item_id = db.upsert_media_item("Dark", 2017, "series", synopsis="Original")

    assert db.update_media_enrichment(item_id, poster_url="http://img/dark.jpg")
    item = db.get_media_item(item_id)
    assert item["poster_url"] == "http://img/dark.jpg"
    assert item["synopsis"] == "Original"
    assert db.update_media_enrichment(item_id) is False


def test_load_candidate_items_excludes_and_limits(fresh_db):
    db = fresh_db
    ids = [db.upsert_media_item(f"Movie {i}", 2020, "movie") for i in range(4)]
    db.upsert_media_item("Series", 2020, "series")

    candidates = db.load_candidate_items("movie", exclude_ids=[ids[0]], limit=2)
    assert [c["id"] for c in candidates] == ids[1:3]


def test_upsert_aggregated_scores_prunes_stale_entries(fresh_db):
    db = fresh_db
    a = db.upsert_media_item("A", 2024, "movie")
    b = db.upsert_media_item("B", 2024, "movie")

    db.upsert_aggregated_scores([
        AggregatedScore(a, 8.0, "recent", 8.0, 0, 1),
        AggregatedScore(b, 7.0, "recent", 7.0, 0, 1),
    ])
    db.upsert_aggregated_scores([AggregatedScore(a, 8.5, "historical", 8.5, 0, 1)])

    with db.get_db(read_only=True) as conn:
        rows = conn.execute("SELECT media_item_id, ranking_type, final_score FROM aggregated_scores").fetchall()
    assert [tuple(r) for r in rows] == [(a, "historical", 8.5)]


def test_get_top_rankings_filters_by_genre_tokens(fresh_db):
    db = fresh_db
    horror = db.upsert_media_item("Hereditary", 2018, "movie", genres=["27"])
    drama = db.upsert_media_item("Aftersun", 2022, "movie", genres=["Drama"])
    db.upsert_aggregated_scores([
        AggregatedScore(horror, 7.5, "historical", 7.5, 0, 1),
        AggregatedScore(drama, 8.0, "historical", 8.0, 0, 1),
    ])

    everything = db.get_top_rankings("historical")
    assert [e["id"] for e in everything] == [drama, horror]

    filtered = db.get_top_rankings("historical", genres=["27", "Horror"])
    assert [e["id"] for e in filtered] == [horror]
    assert filtered[0]["genres"] == ["27"]

    with pytest.raises(ValueError):
        db.get_top_rankings("weekly")


def test_replace_recommendations_rolls_back_on_failure(fresh_db):
    db = fresh_db
    item_id = db.upsert_media_item("Alien", 1979, "movie")
    db.replace_recommendations("alice", [_rec(item_id)])

    # Unknown media id violates the foreign key mid-insert
    with pytest.raises(db.StoreError):
        db.replace_recommendations("alice", [_rec(item_id, 9.0), _rec("missing")])

    stored = db.load_recommendations("alice")
    assert len(stored) == 1
    assert stored[0]["score"] == 5.0


def test_merge_media_items_moves_non_conflicting_rows(fresh_db):
    db = fresh_db
    keep = db.upsert_media_item("Shogun", 2024, "series")
    lose = db.upsert_media_item("Shogun S1", 2024, "series")

    db.upsert_source_score(keep, "reddit", 9.0, 10)
    db.upsert_source_score(lose, "reddit", 8.0, 10)
    db.upsert_source_score(lose, "filmaffinity", 8.4, 5000)
    db.toggle_favorite("alice", lose)
    db.toggle_favorite("bob", keep)
    db.toggle_favorite("bob", lose)
    db.replace_recommendations("carol", [_rec(lose)])

    counts = db.merge_media_items(keep, [lose])

    assert counts == {"scores": 1, "favorites": 1, "recommendations": 1, "deleted": 1}
    assert db.get_media_item(lose) is None
    scores = {s["source"]: s["score_normalized"] for s in db.get_media_item(keep)["scores"]}
    assert scores == {"reddit": 9.0, "filmaffinity": 8.4}
    assert db.load_favorite_ids("alice") == [keep]
    assert db.load_favorite_ids("bob") == [keep]
    assert db.load_recommendations("carol")[0]["media_item_id"] == keep


def test_iter_table_rows_rejects_unknown_table(fresh_db):
    db = fresh_db
    db.upsert_media_item("Alien", 1979, "movie")

    assert len(list(db.iter_table_rows("media_items", chunk_size=1))) == 1
    with pytest.raises(ValueError):
        list(db.iter_table_rows("sqlite_master"))


def test_merge_media_items_keeps_one_recommendation_per_user(fresh_db):
    db = fresh_db
    keep = db.upsert_media_item("Shogun", 2024, "series")
    lose = db.upsert_media_item("Shogun S1", 2024, "series")
    db.replace_recommendations("dave", [_rec(keep, 9.0), _rec(lose, 8.0)])
    db.replace_recommendations("erin", [_rec(lose, 7.0)])

    counts = db.merge_media_items(keep, [lose])

    assert counts["recommendations"] == 1
    dave = db.load_recommendations("dave")
    assert [(r["media_item_id"], r["score"]) for r in dave] == [(keep, 9.0)]
    assert [r["media_item_id"] for r in db.load_recommendations("erin")] == [keep]


def test_load_candidate_items_with_large_exclude_list(fresh_db):
    db = fresh_db
    ids = [db.upsert_media_item(f"Movie {i}", 2020, "movie") for i in range(3)]
    exclude = [f"gone-{i}" for i in range(1500)] + [ids[1]]

    candidates = db.load_candidate_items("movie", exclude_ids=exclude, limit=50)

    assert [c["id"] for c in candidates] == [ids[0], ids[2]]


def test_update_media_enrichment_writes_genres(fresh_db):
    db = fresh_db
    item_id = db.upsert_media_item("Dune", 2021, "movie")

    assert db.update_media_enrichment(item_id, genres=["878", "12", "878"])
    assert db.get_media_item(item_id)["genres"] == ["878", "12"]
    assert db.update_media_enrichment("missing", synopsis="x") is False


def test_load_items_needing_enrichment(fresh_db):
    db = fresh_db
    full = db.upsert_media_item(
        "Dark", 2017, "series", genres=["9648"], poster_url="http://img/dark.jpg", synopsis="x" * 400,
    )
    no_poster = db.upsert_media_item("Dune", 2021, "movie", genres=["878"], synopsis="y" * 400)
    short_synopsis = db.upsert_media_item(
        "Alien", 1979, "movie", genres=["27"], poster_url="http://img/alien.jpg", synopsis="Corta",
    )
    no_genres = db.upsert_media_item("Aftersun", 2022, "movie", poster_url="http://img/a.jpg", synopsis="z" * 400)

    pending = {i["id"] for i in db.load_items_needing_enrichment(limit=10, min_synopsis_length=300)}
    assert pending == {no_poster, short_synopsis, no_genres}
    assert full not in pending

    assert len(db.load_items_needing_enrichment(limit=2, min_synopsis_length=300)) == 2


def test_close_db_reopens_on_next_use(fresh_db):
    db = fresh_db
    item_id = db.upsert_media_item("Alien", 1979, "movie")

    db.close_db()

    assert db.get_media_item(item_id)["title"] == "Alien"
