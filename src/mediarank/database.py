import sqlite3
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable

from .config import DB_PATH, SOURCES, MEDIA_TYPES, RANKING_TYPES

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """A persistence operation failed; carries the underlying driver message."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message


class StoreConnection:
    """
    The process's SQLite connection plus the nesting depth of get_db().

    The CLI is single-threaded, so one lazily opened connection is shared by
    every operation; nesting is tracked so only the outermost block commits.
    """

    def __init__(self, db_path):
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self.depth = 0

    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self._db_path)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("PRAGMA journal_mode = WAL")
            # Scores, favorites, rankings and recommendations die with their media item
            conn.execute("PRAGMA foreign_keys = ON")
            self._conn = conn
            logger.debug(f"Opened database {self._db_path}")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self.depth = 0


_store: StoreConnection | None = None


def _get_store() -> StoreConnection:
    global _store
    if _store is None:
        DB_PATH.parent.mkdir(exist_ok=True, parents=True)
        _store = StoreConnection(DB_PATH)
    return _store


@contextmanager
def get_db(read_only: bool = False, operation: str = "database operation"):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit
        operation: Name reported in StoreError when the driver fails

    Only the outermost context commits or rolls back, so nesting get_db()
    calls groups their statements into one transaction. sqlite3 errors are
    re-raised as StoreError.
    """
    store = _get_store()
    try:
        conn = store.connection()
    except sqlite3.Error as e:
        raise StoreError(operation, str(e)) from e

    is_outermost = store.depth == 0
    store.depth += 1

    try:
        yield conn

        if is_outermost and not read_only:
            conn.commit()

    except sqlite3.Error as e:
        if is_outermost:
            conn.rollback()
        raise StoreError(operation, str(e)) from e

    except Exception:
        if is_outermost:
            conn.rollback()
        raise

    finally:
        store.depth -= 1


def close_db():
    """Close the shared connection. Call on application shutdown."""
    global _store
    if _store is not None:
        _store.close()
        _store = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db(operation="init_db") as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS media_items (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                year INTEGER,
                genres TEXT,        -- JSON list of raw tokens
                poster_url TEXT,
                synopsis TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (title, year)
            );

            CREATE TABLE IF NOT EXISTS sources_scores (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                media_item_id TEXT NOT NULL REFERENCES media_items(id) ON DELETE CASCADE,
                source TEXT NOT NULL,
                score_normalized REAL NOT NULL,
                votes_count INTEGER DEFAULT 0,
                scraped_at TEXT,
                UNIQUE (media_item_id, source)
            );

            CREATE TABLE IF NOT EXISTS aggregated_scores (
                media_item_id TEXT NOT NULL REFERENCES media_items(id) ON DELETE CASCADE,
                ranking_type TEXT NOT NULL,
                final_score REAL NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (media_item_id, ranking_type)
            );

            CREATE TABLE IF NOT EXISTS user_favorites (
                user_id TEXT NOT NULL,
                media_item_id TEXT NOT NULL REFERENCES media_items(id) ON DELETE CASCADE,
                created_at TEXT,
                PRIMARY KEY (user_id, media_item_id)
            );

            CREATE TABLE IF NOT EXISTS recommendations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                media_item_id TEXT NOT NULL REFERENCES media_items(id) ON DELETE CASCADE,
                reason_text TEXT,
                reason_code TEXT,
                score REAL,
                created_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_media_type ON media_items(type);
            CREATE INDEX IF NOT EXISTS idx_media_year ON media_items(year);
            CREATE INDEX IF NOT EXISTS idx_scores_item ON sources_scores(media_item_id);
            CREATE INDEX IF NOT EXISTS idx_agg_type_score ON aggregated_scores(ranking_type, final_score);
            CREATE INDEX IF NOT EXISTS idx_fav_user ON user_favorites(user_id);
            CREATE INDEX IF NOT EXISTS idx_fav_item ON user_favorites(media_item_id);
            CREATE INDEX IF NOT EXISTS idx_recs_user ON recommendations(user_id);
        """)


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


def _item_from_row(row) -> dict:
    item = dict(row)
    item['genres'] = load_json(item.get('genres'))
    item['scores'] = []
    return item


def _attach_scores(conn, items: list[dict]) -> list[dict]:
    """Attach score rows to items in one query (chunked for SQLite's parameter limit)."""
    by_id = {item['id']: item for item in items}
    ids = list(by_id)
    CHUNK_SIZE = 900
    for i in range(0, len(ids), CHUNK_SIZE):
        chunk = ids[i:i + CHUNK_SIZE]
        placeholders = ','.join('?' * len(chunk))
        rows = conn.execute(f"""
            SELECT media_item_id, source, score_normalized, votes_count, scraped_at
            FROM sources_scores
            WHERE media_item_id IN ({placeholders})
            ORDER BY id
        """, chunk).fetchall()
        for row in rows:
            score = dict(row)
            by_id[score.pop('media_item_id')]['scores'].append(score)
    return items


# --- media items -----------------------------------------------------------

def upsert_media_item(
    title: str,
    year: int | None,
    media_type: str,
    genres: Iterable[str] | None = None,
    poster_url: str | None = None,
    synopsis: str | None = None,
) -> str:
    """
    Return the id of the (title, year) row, inserting it if missing.

    Existing rows are left as they are; use update_media_enrichment to
    backfill posters and synopses.
    """
    if media_type not in MEDIA_TYPES:
        raise ValueError(f"Unknown media type: {media_type}")
    if not title or not title.strip():
        raise ValueError("Media item title cannot be empty")

    title = title.strip()
    with get_db(operation="upsert_media_item") as conn:
        row = conn.execute(
            "SELECT id FROM media_items WHERE title = ? AND year IS ?",
            (title, year),
        ).fetchone()
        if row:
            return row['id']

        item_id = str(uuid.uuid4())
        conn.execute("""
            INSERT INTO media_items (id, type, title, year, genres, poster_url, synopsis, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            item_id, media_type, title, year,
            json.dumps(list(dict.fromkeys(genres or []))),
            poster_url, synopsis, datetime.now().isoformat(),
        ))
        logger.debug(f"Inserted media item {title!r} ({year}) as {item_id}")
        return item_id


def update_media_enrichment(
    media_item_id: str,
    poster_url: str | None = None,
    synopsis: str | None = None,
    genres: Iterable[str] | None = None,
) -> bool:
    """Backfill poster, synopsis or genres. Only provided fields are written."""
    updates = {}
    if poster_url is not None:
        updates['poster_url'] = poster_url
    if synopsis is not None:
        updates['synopsis'] = synopsis
    if genres is not None:
        updates['genres'] = json.dumps(list(dict.fromkeys(str(g) for g in genres)))
    if not updates:
        return False

    assignments = ', '.join(f"{col} = ?" for col in updates)
    with get_db(operation="update_media_enrichment") as conn:
        cursor = conn.execute(
            f"UPDATE media_items SET {assignments} WHERE id = ?",
            (*updates.values(), media_item_id),
        )
        return cursor.rowcount > 0


def load_items_needing_enrichment(limit: int, min_synopsis_length: int) -> list[dict]:
    """
    Newest items that lack a poster, lack genres or have a missing or
    suspiciously short synopsis.
    """
    with get_db(read_only=True, operation="load_items_needing_enrichment") as conn:
        rows = conn.execute("""
            SELECT * FROM media_items
            WHERE poster_url IS NULL OR poster_url = ''
               OR synopsis IS NULL OR length(synopsis) < ?
               OR genres IS NULL OR genres = '[]'
            ORDER BY created_at DESC, id
            LIMIT ?
        """, (min_synopsis_length, limit)).fetchall()
        return [_item_from_row(r) for r in rows]


def get_media_item(media_item_id: str) -> dict | None:
    with get_db(read_only=True, operation="get_media_item") as conn:
        row = conn.execute("SELECT * FROM media_items WHERE id = ?", (media_item_id,)).fetchone()
        if not row:
            return None
        return _attach_scores(conn, [_item_from_row(row)])[0]


def delete_media_item(media_item_id: str) -> bool:
    """Delete an item; scores, favorites, aggregates and recommendations cascade."""
    with get_db(operation="delete_media_item") as conn:
        cursor = conn.execute("DELETE FROM media_items WHERE id = ?", (media_item_id,))
        return cursor.rowcount > 0


def upsert_source_score(media_item_id: str, source: str, score: float, votes: int = 0) -> None:
    """Insert or replace the single score a source holds for an item."""
    if source not in SOURCES:
        raise ValueError(f"Unknown source: {source}")

    with get_db(operation="upsert_source_score") as conn:
        conn.execute("""
            INSERT INTO sources_scores (media_item_id, source, score_normalized, votes_count, scraped_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (media_item_id, source) DO UPDATE SET
                score_normalized = excluded.score_normalized,
                votes_count = excluded.votes_count,
                scraped_at = excluded.scraped_at
        """, (media_item_id, source, float(score), int(votes or 0), datetime.now().isoformat()))


def load_items_with_scores(media_type: str | None = None) -> list[dict]:
    """All media items with their source scores attached under 'scores'."""
    with get_db(read_only=True, operation="load_items_with_scores") as conn:
        if media_type:
            rows = conn.execute(
                "SELECT * FROM media_items WHERE type = ? ORDER BY created_at, id", (media_type,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM media_items ORDER BY created_at, id").fetchall()
        return _attach_scores(conn, [_item_from_row(r) for r in rows])


def load_genre_sets() -> list[list[str]]:
    with get_db(read_only=True, operation="load_genre_sets") as conn:
        rows = conn.execute("SELECT genres FROM media_items").fetchall()
        return [load_json(r['genres']) for r in rows]


# --- favorites -------------------------------------------------------------

def toggle_favorite(user_id: str, media_item_id: str) -> bool:
    """Flip favorite membership. Returns True if the item is now a favorite."""
    with get_db(operation="toggle_favorite") as conn:
        cursor = conn.execute(
            "DELETE FROM user_favorites WHERE user_id = ? AND media_item_id = ?",
            (user_id, media_item_id),
        )
        if cursor.rowcount:
            return False
        conn.execute(
            "INSERT INTO user_favorites (user_id, media_item_id, created_at) VALUES (?, ?, ?)",
            (user_id, media_item_id, datetime.now().isoformat()),
        )
        return True


def load_favorite_ids(user_id: str) -> list[str]:
    with get_db(read_only=True, operation="load_favorite_ids") as conn:
        rows = conn.execute(
            "SELECT media_item_id FROM user_favorites WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        ).fetchall()
        return [r['media_item_id'] for r in rows]


def load_favorite_items(user_id: str) -> list[dict]:
    with get_db(read_only=True, operation="load_favorite_items") as conn:
        rows = conn.execute("""
            SELECT m.* FROM user_favorites f
            JOIN media_items m ON m.id = f.media_item_id
            WHERE f.user_id = ?
            ORDER BY f.created_at
        """, (user_id,)).fetchall()
        return _attach_scores(conn, [_item_from_row(r) for r in rows])


def load_candidate_items(media_type: str, exclude_ids: Iterable[str] = (), limit: int = 50) -> list[dict]:
    """
    Up to ``limit`` items of one type that are not in ``exclude_ids``.

    Exclusion happens while streaming the cursor rather than in SQL, so the
    exclude list is not bound by SQLite's host parameter limit.
    """
    exclude = set(exclude_ids)
    with get_db(read_only=True, operation="load_candidate_items") as conn:
        cursor = conn.execute(
            "SELECT * FROM media_items WHERE type = ? ORDER BY created_at, id", (media_type,)
        )
        items = []
        for row in cursor:
            if len(items) >= limit:
                break
            if row['id'] in exclude:
                continue
            items.append(_item_from_row(row))
        return _attach_scores(conn, items)


# --- aggregated scores -----------------------------------------------------

def upsert_aggregated_scores(aggregates: Iterable, prune: bool = True) -> int:
    """
    Write ranking entries keyed by (media_item_id, ranking_type).

    With ``prune`` the table ends up holding exactly this run's entries:
    rows for items that moved bucket or lost all their scores are removed
    in the same transaction.
    """
    now = datetime.now().isoformat()
    rows = [(a.media_item_id, a.ranking_type, a.final_score, now) for a in aggregates]

    with get_db(operation="upsert_aggregated_scores") as conn:
        if rows:
            conn.executemany("""
                INSERT INTO aggregated_scores (media_item_id, ranking_type, final_score, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (media_item_id, ranking_type) DO UPDATE SET
                    final_score = excluded.final_score,
                    updated_at = excluded.updated_at
            """, rows)

        if prune:
            # Every row written by this run carries this run's timestamp
            cursor = conn.execute(
                "DELETE FROM aggregated_scores WHERE updated_at IS NOT ?", (now,)
            )
            if cursor.rowcount:
                logger.info(f"Removed {cursor.rowcount} stale ranking entries")

    return len(rows)


def get_top_rankings(ranking_type: str, genres: Iterable[str] | None = None, limit: int = 20) -> list[dict]:
    """
    Best entries of one ranking bucket, optionally restricted to items that
    share at least one raw genre token with ``genres``.
    """
    if ranking_type not in RANKING_TYPES:
        raise ValueError(f"Unknown ranking type: {ranking_type}")

    genres = list(genres or [])
    query = """
        SELECT a.final_score, a.ranking_type, a.updated_at,
               m.id, m.type, m.title, m.year, m.genres, m.poster_url, m.synopsis
        FROM aggregated_scores a
        JOIN media_items m ON m.id = a.media_item_id
        WHERE a.ranking_type = ?
    """
    params: list = [ranking_type]
    if genres:
        query += f"""
          AND EXISTS (
              SELECT 1 FROM json_each(m.genres) g
              WHERE g.value IN ({','.join('?' * len(genres))})
          )
        """
        params.extend(genres)
    query += " ORDER BY a.final_score DESC, m.title LIMIT ?"
    params.append(limit)

    with get_db(read_only=True, operation="get_top_rankings") as conn:
        rows = conn.execute(query, params).fetchall()

    results = []
    for row in rows:
        entry = dict(row)
        entry['genres'] = load_json(entry['genres'])
        results.append(entry)
    return results


# --- recommendations -------------------------------------------------------

def replace_recommendations(user_id: str, recommendations: Iterable) -> int:
    """
    Delete the user's stored recommendations and insert the new set.

    Both statements share one transaction: if the insert fails the old
    rows are restored by the rollback.
    """
    now = datetime.now().isoformat()
    rows = [
        (user_id, r.media_item_id, r.reason, r.reason_code, r.score, now)
        for r in recommendations
    ]
    with get_db(operation="replace_recommendations") as conn:
        conn.execute("DELETE FROM recommendations WHERE user_id = ?", (user_id,))
        conn.executemany("""
            INSERT INTO recommendations (user_id, media_item_id, reason_text, reason_code, score, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, rows)
    return len(rows)


def load_recommendations(user_id: str) -> list[dict]:
    with get_db(read_only=True, operation="load_recommendations") as conn:
        rows = conn.execute("""
            SELECT r.media_item_id, r.reason_text, r.reason_code, r.score, r.created_at,
                   m.title, m.type, m.year
            FROM recommendations r
            JOIN media_items m ON m.id = r.media_item_id
            WHERE r.user_id = ?
            ORDER BY r.id
        """, (user_id,)).fetchall()
        return [dict(r) for r in rows]


# --- catalog maintenance ---------------------------------------------------

def merge_media_items(keep_id: str, delete_ids: Iterable[str]) -> dict[str, int]:
    """
    Fold duplicate rows into ``keep_id`` and delete them.

    Scores move only for sources the keeper lacks; favorites move only for
    users that have not favorited the keeper; recommendations move only for
    users that hold none for the keeper. Whatever is left on a loser
    disappears with it via cascade. Runs as a single transaction.
    """
    counts = {'scores': 0, 'favorites': 0, 'recommendations': 0, 'deleted': 0}
    with get_db(operation="merge_media_items") as conn:
        for delete_id in delete_ids:
            if delete_id == keep_id:
                continue
            cursor = conn.execute("""
                UPDATE sources_scores SET media_item_id = ?
                WHERE media_item_id = ?
                  AND source NOT IN (SELECT source FROM sources_scores WHERE media_item_id = ?)
            """, (keep_id, delete_id, keep_id))
            counts['scores'] += cursor.rowcount

            cursor = conn.execute("""
                UPDATE user_favorites SET media_item_id = ?
                WHERE media_item_id = ?
                  AND user_id NOT IN (SELECT user_id FROM user_favorites WHERE media_item_id = ?)
            """, (keep_id, delete_id, keep_id))
            counts['favorites'] += cursor.rowcount

            conn.execute("""
                DELETE FROM recommendations
                WHERE media_item_id = ?
                  AND user_id IN (SELECT user_id FROM recommendations WHERE media_item_id = ?)
            """, (delete_id, keep_id))
            cursor = conn.execute(
                "UPDATE recommendations SET media_item_id = ? WHERE media_item_id = ?",
                (keep_id, delete_id),
            )
            counts['recommendations'] += cursor.rowcount

            cursor = conn.execute("DELETE FROM media_items WHERE id = ?", (delete_id,))
            counts['deleted'] += cursor.rowcount

    return counts


def get_stats() -> dict:
    with get_db(read_only=True, operation="get_stats") as conn:
        stats = {
            'media_items': conn.execute("SELECT COUNT(*) FROM media_items").fetchone()[0],
            'scores': conn.execute("SELECT COUNT(*) FROM sources_scores").fetchone()[0],
            'rankings': conn.execute("SELECT COUNT(*) FROM aggregated_scores").fetchone()[0],
            'favorites': conn.execute("SELECT COUNT(*) FROM user_favorites").fetchone()[0],
            'recommendations': conn.execute("SELECT COUNT(*) FROM recommendations").fetchone()[0],
        }
        by_source = conn.execute("""
            SELECT source, COUNT(*) AS count FROM sources_scores GROUP BY source ORDER BY count DESC
        """).fetchall()
        stats['by_source'] = {r['source']: r['count'] for r in by_source}
        by_type = conn.execute("""
            SELECT type, COUNT(*) AS count FROM media_items GROUP BY type
        """).fetchall()
        stats['by_type'] = {r['type']: r['count'] for r in by_type}
        return stats


def iter_table_rows(table: str, chunk_size: int = 500):
    """Stream rows from an exportable table in chunks."""
    allowed = {'media_items', 'sources_scores', 'aggregated_scores', 'user_favorites', 'recommendations'}
    if table not in allowed:
        raise ValueError(f"Unknown table: {table}")

    with get_db(read_only=True, operation=f"export {table}") as conn:
        cursor = conn.execute(f"SELECT * FROM {table}")
        while True:
            rows = cursor.fetchmany(chunk_size)
            if not rows:
                break
            for row in rows:
                yield dict(row)
