"""
Jobs that glue the pure ranking/recommendation logic to the record store.

Store failures surface as ``database.StoreError`` and are never swallowed
here. Missing input (no favorites, nothing to recommend) is reported through
the result ``status`` instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from . import database
from .aggregation import aggregate_all
from .catalog import MergePlan, find_blacklisted, plan_duplicate_merges
from .config import (
    CANDIDATE_POOL_PER_TYPE,
    RECOMMENDATION_LIMIT,
    RECENT_WINDOW_YEARS,
    ENRICH_BATCH_SIZE,
    MIN_SYNOPSIS_LENGTH,
)
from .recommender import CandidateScorer, Recommendation, average_score
from .scraper import ScrapedRecord, TmdbClient
from .titles import clean_media_list, is_blacklisted, normalize_title

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NO_FAVORITES = "no_favorites"
STATUS_NO_CANDIDATES = "no_candidates"


@dataclass
class RankingRunResult:
    processed: int
    excluded: int
    by_type: dict[str, int] = field(default_factory=dict)


@dataclass
class RecommendationRunResult:
    user_id: str
    status: str
    recommendations: list[Recommendation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.recommendations


@dataclass
class CleanupResult:
    blacklisted: list[str] = field(default_factory=list)
    merges: list[MergePlan] = field(default_factory=list)
    moved: dict[str, int] = field(default_factory=dict)
    dry_run: bool = False


@dataclass
class IngestResult:
    items: int = 0
    scores: int = 0
    skipped: int = 0


@dataclass
class EnrichResult:
    processed: int = 0
    updated: int = 0
    failed: int = 0


def _title(item: dict) -> str:
    return item.get('title', '')


def calculate_rankings(current_year: int | None = None, window: int = RECENT_WINDOW_YEARS) -> RankingRunResult:
    """
    Recompute every ranking entry.

    Blacklisted rows and lower-scoring duplicates are dropped before
    aggregation; items without scores are excluded. The stored table is
    replaced by this run's entries.
    """
    items = database.load_items_with_scores()
    cleaned = clean_media_list(items, _title, average_score)
    aggregates = aggregate_all(cleaned, current_year, window)
    database.upsert_aggregated_scores(aggregates, prune=True)

    by_type: dict[str, int] = {}
    for agg in aggregates:
        by_type[agg.ranking_type] = by_type.get(agg.ranking_type, 0) + 1

    result = RankingRunResult(
        processed=len(aggregates),
        excluded=len(items) - len(aggregates),
        by_type=by_type,
    )
    logger.info(f"Rankings calculated: {result.processed} entries, {result.excluded} items excluded")
    return result


def generate_recommendations(
    user_id: str,
    limit: int = RECOMMENDATION_LIMIT,
    pool_size: int = CANDIDATE_POOL_PER_TYPE,
) -> RecommendationRunResult:
    """
    Recompute a user's stored recommendations.

    Reads and scoring happen first; stored rows are only replaced once a
    non-empty result exists, so a failure or an empty pool keeps the
    previous set. Callers must not run this concurrently for one user.
    """
    favorites = database.load_favorite_items(user_id)
    if not favorites:
        logger.info(f"No favorites for user {user_id}; nothing to recommend")
        return RecommendationRunResult(user_id=user_id, status=STATUS_NO_FAVORITES)

    favorite_ids = [f['id'] for f in favorites]
    candidates = (
        database.load_candidate_items('movie', favorite_ids, pool_size)
        + database.load_candidate_items('series', favorite_ids, pool_size)
    )
    # Another row of an already favorited title is not a new suggestion
    favorite_keys = {normalize_title(f.get('title')) for f in favorites}
    candidates = [c for c in candidates if normalize_title(c.get('title')) not in favorite_keys]
    candidates = clean_media_list(candidates, _title, average_score)
    if not candidates:
        logger.info(f"No candidates available for user {user_id}")
        return RecommendationRunResult(user_id=user_id, status=STATUS_NO_CANDIDATES)

    scorer = CandidateScorer(favorites)
    recs = scorer.recommend(candidates, limit)
    if not recs:
        return RecommendationRunResult(user_id=user_id, status=STATUS_NO_CANDIDATES)

    database.replace_recommendations(user_id, recs)
    logger.info(f"Stored {len(recs)} recommendations for user {user_id}")
    return RecommendationRunResult(user_id=user_id, status=STATUS_OK, recommendations=recs)


def cleanup_catalog(dry_run: bool = False, current_year: int | None = None) -> CleanupResult:
    """
    Delete blacklisted rows, merge duplicate titles and re-aggregate.

    With ``dry_run`` only the plan is computed.
    """
    items = database.load_items_with_scores()
    blacklisted = find_blacklisted(items)
    plans = plan_duplicate_merges(items)
    result = CleanupResult(
        blacklisted=[item['id'] for item in blacklisted],
        merges=plans,
        dry_run=dry_run,
    )
    if dry_run:
        return result

    for item in blacklisted:
        database.delete_media_item(item['id'])
        logger.info(f"Deleted blacklisted item {item['title']!r} ({item['id']})")

    moved = {'scores': 0, 'favorites': 0, 'recommendations': 0, 'deleted': 0}
    for plan in plans:
        counts = database.merge_media_items(plan.keep_id, plan.delete_ids)
        for key, value in counts.items():
            moved[key] += value
        logger.info(f"Merged {len(plan.delete_ids)} duplicates into {plan.label!r} ({plan.keep_id})")
    result.moved = moved

    if blacklisted or plans:
        calculate_rankings(current_year)
    return result


def ingest_records(records: Iterable[ScrapedRecord]) -> IngestResult:
    """
    Store scraped records: upsert the media item by (title, year), then
    upsert its score for the record's source. Blacklisted titles are skipped.
    """
    result = IngestResult()
    seen_items: set[str] = set()
    for record in records:
        if not record.is_valid():
            logger.warning(f"Skipping invalid scraped record: {record}")
            result.skipped += 1
            continue
        if is_blacklisted(record.title):
            logger.info(f"Skipping blacklisted title {record.title!r}")
            result.skipped += 1
            continue

        item_id = database.upsert_media_item(
            record.title,
            record.year,
            record.media_type,
            genres=record.genres,
            poster_url=record.poster_url,
            synopsis=record.synopsis,
        )
        database.upsert_source_score(item_id, record.source, record.score, record.votes)
        seen_items.add(item_id)
        result.scores += 1

    result.items = len(seen_items)
    logger.info(f"Ingested {result.scores} scores for {result.items} items ({result.skipped} skipped)")
    return result


def enrich_catalog(
    client: TmdbClient,
    limit: int = ENRICH_BATCH_SIZE,
    min_synopsis_length: int = MIN_SYNOPSIS_LENGTH,
) -> EnrichResult:
    """
    Backfill posters, synopses and genres from TMDB.

    A field is only written when TMDB has something better: a poster when
    one is found, a synopsis when it is longer than the stored one, genres
    only for items that have none. Items without a TMDB match count as
    failed and stay in the queue for the next run.
    """
    items = database.load_items_needing_enrichment(limit, min_synopsis_length)
    result = EnrichResult(processed=len(items))

    for item in items:
        match = client.search(item['title'], item.get('year'), item['type'])
        if match is None:
            logger.warning(f"No TMDB match for {item['title']!r} ({item.get('year')})")
            result.failed += 1
            continue

        current_synopsis = item.get('synopsis') or ''
        synopsis = match['synopsis']
        if synopsis and len(synopsis) <= len(current_synopsis):
            synopsis = None
        poster_url = match['poster_url'] if match['poster_url'] != item.get('poster_url') else None
        genres = match['genres'] if match['genres'] and not item.get('genres') else None

        if database.update_media_enrichment(item['id'], poster_url=poster_url, synopsis=synopsis, genres=genres):
            logger.info(f"Enriched {item['title']!r} ({item['id']})")
            result.updated += 1
        else:
            logger.debug(f"Nothing new on TMDB for {item['title']!r}")
            result.failed += 1

    logger.info(f"Enrichment: {result.updated} updated, {result.failed} failed of {result.processed}")
    return result
