import argparse
import atexit
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from tqdm import tqdm

from . import jobs
from .config import (
    DEFAULT_TOP_LIMIT, EXPORT_CHUNK_SIZE, RANKING_TYPES, RECENT_WINDOW_YEARS, RECOMMENDATION_LIMIT,
    DEFAULT_SCRAPER_DELAY, ENRICH_BATCH_SIZE,
)
from .database import (
    init_db, close_db, toggle_favorite, get_media_item, get_top_rankings,
    load_genre_sets, load_recommendations, get_stats, iter_table_rows, StoreError,
)
from .genres import build_genre_index
from .scraper import ScrapedRecord, SourceScraper, TmdbClient

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_db)

EXPORT_TABLES = ('media_items', 'sources_scores', 'aggregated_scores', 'user_favorites', 'recommendations')


def load_records_json(path: Path) -> list[ScrapedRecord]:
    """
    Read a JSON list of score records.

    Entries without a usable score are logged and dropped; everything else
    is validated later at ingestion time.
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list of records")

    records = []
    for entry in data:
        try:
            records.append(ScrapedRecord.from_dict(entry))
        except ValueError as e:
            logger.warning(f"Dropping record: {e}")
    return records


def _format_entry(rank: int, entry: dict) -> str:
    year = entry.get('year') or '?'
    return f"{rank:2}. {entry['title']} ({year}) [{entry['type']}] - {entry['final_score']:.1f}"


def cmd_init_db(args: argparse.Namespace) -> None:
    init_db()
    logger.info("Database initialized")


def cmd_ingest(args: argparse.Namespace) -> None:
    """Ingest score records from a JSON file."""
    init_db()
    records = load_records_json(Path(args.file))
    result = jobs.ingest_records(tqdm(records, desc="Ingesting", unit="record"))
    logger.info(f"Stored {result.scores} scores across {result.items} items; skipped {result.skipped}")

    if args.rank:
        jobs.calculate_rankings()


def cmd_scrape(args: argparse.Namespace) -> None:
    init_db()
    with SourceScraper(delay=args.delay) as scraper:
        records = scraper.scrape(args.source)

    if not records:
        logger.warning(f"No records scraped from {args.source}")
        return

    result = jobs.ingest_records(records)
    logger.info(f"{args.source}: stored {result.scores} scores ({result.skipped} skipped)")

    if args.rank:
        jobs.calculate_rankings()


def cmd_enrich(args: argparse.Namespace) -> None:
    """Backfill posters, synopses and genres from TMDB."""
    with TmdbClient() as client:
        result = jobs.enrich_catalog(client, limit=args.limit)
    if not result.processed:
        logger.info("Every item already has a poster, synopsis and genres")
        return
    logger.info(f"Enriched {result.updated} of {result.processed} items ({result.failed} without a match)")


def cmd_rank(args: argparse.Namespace) -> None:
    result = jobs.calculate_rankings(window=args.window)
    for ranking_type in RANKING_TYPES:
        logger.info(f"  {ranking_type}: {result.by_type.get(ranking_type, 0)}")


def cmd_top(args: argparse.Namespace) -> None:
    """Show the best entries of a ranking bucket."""
    tokens = None
    if args.genres:
        index = build_genre_index(load_genre_sets())
        tokens = index.expand_selection(args.genres)
        logger.debug(f"Genre filter {args.genres} -> {tokens}")

    entries = get_top_rankings(args.ranking_type, genres=tokens, limit=args.limit)
    if not entries:
        logger.info(f"No {args.ranking_type} rankings yet. Run 'rank' first.")
        return

    logger.info(f"\nTop {len(entries)} {args.ranking_type}:")
    for i, entry in enumerate(entries, 1):
        logger.info(_format_entry(i, entry))


def cmd_genres(args: argparse.Namespace) -> None:
    index = build_genre_index(load_genre_sets())
    if not index.groups:
        logger.info("No genres in the catalog")
        return
    for name in index.display_names:
        tokens = ", ".join(sorted(index.groups[name]))
        logger.info(f"{name}: {tokens}")


def cmd_favorite(args: argparse.Namespace) -> None:
    item = get_media_item(args.media_id)
    if item is None:
        logger.error(f"Unknown media item: {args.media_id}")
        sys.exit(1)

    added = toggle_favorite(args.user, args.media_id)
    verb = "Added" if added else "Removed"
    logger.info(f"{verb} favorite {item['title']!r} for {args.user}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Recompute and print a user's recommendations."""
    result = jobs.generate_recommendations(args.user, limit=args.limit)

    if result.status == jobs.STATUS_NO_FAVORITES:
        logger.info(f"{args.user} has no favorites yet. Use 'favorite' first.")
        return
    if result.status == jobs.STATUS_NO_CANDIDATES:
        logger.info("Nothing left to recommend.")
        stored = load_recommendations(args.user)
        if stored:
            logger.info(f"Keeping {len(stored)} previously stored recommendations")
        return

    logger.info(f"\nRecommendations for {args.user}:")
    for i, rec in enumerate(result.recommendations, 1):
        year = rec.year or '?'
        logger.info(f"{i:2}. {rec.title} ({year}) [{rec.media_type}] - {rec.score:.1f}")
        logger.info(f"    {rec.reason}")


def cmd_cleanup(args: argparse.Namespace) -> None:
    result = jobs.cleanup_catalog(dry_run=args.dry_run)

    prefix = "[dry-run] " if result.dry_run else ""
    logger.info(f"{prefix}{len(result.blacklisted)} blacklisted items")
    for plan in result.merges:
        logger.info(f"{prefix}merge {len(plan.delete_ids)} duplicates into {plan.label!r} ({plan.keep_id})")
    if not result.dry_run and result.moved:
        moved = ", ".join(f"{k}={v}" for k, v in result.moved.items())
        logger.info(f"Moved: {moved}")


def cmd_stats(args: argparse.Namespace) -> None:
    stats = get_stats()
    logger.info("\nDatabase stats:")
    for key in ('media_items', 'scores', 'rankings', 'favorites', 'recommendations'):
        logger.info(f"  {key}: {stats[key]}")
    for source, count in stats['by_source'].items():
        logger.info(f"  source {source}: {count}")
    for media_type, count in stats['by_type'].items():
        logger.info(f"  type {media_type}: {count}")


def cmd_export(args: argparse.Namespace) -> None:
    """Export every table to a JSON file, streaming rows."""
    counts = {}
    with open(args.file, 'w', encoding='utf-8') as f:
        f.write('{')
        for t_index, table in enumerate(EXPORT_TABLES):
            if t_index:
                f.write(',')
            f.write(f'"{table}":[')
            count = 0
            rows = iter_table_rows(table, chunk_size=EXPORT_CHUNK_SIZE)
            for row in tqdm(rows, desc=table, unit="row", leave=False):
                if count:
                    f.write(',')
                json.dump(row, f, ensure_ascii=False)
                count += 1
            f.write(']')
            counts[table] = count
        f.write(', "exported_at": "%s"}' % datetime.now().isoformat())

    summary = ", ".join(f"{count} {table}" for table, count in counts.items())
    logger.info(f"Exported {summary} to {args.file}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Media score aggregator and recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    ingest_parser = subparsers.add_parser("ingest", help="Ingest score records from a JSON file")
    ingest_parser.add_argument("file", help="JSON list of {title, year, type, source, score, votes, ...}")
    ingest_parser.add_argument("--rank", action="store_true", help="Recalculate rankings afterwards")
    ingest_parser.set_defaults(func=cmd_ingest)

    scrape_parser = subparsers.add_parser("scrape", help="Scrape a rating source")
    scrape_parser.add_argument("source", choices=['filmaffinity', 'reddit'], help="Source to scrape")
    scrape_parser.add_argument("--delay", type=float, default=DEFAULT_SCRAPER_DELAY, help="Delay between requests (seconds)")
    scrape_parser.add_argument("--rank", action="store_true", help="Recalculate rankings afterwards")
    scrape_parser.set_defaults(func=cmd_scrape)

    enrich_parser = subparsers.add_parser("enrich", help="Backfill posters, synopses and genres from TMDB")
    enrich_parser.add_argument("--limit", type=int, default=ENRICH_BATCH_SIZE, help="Items to look up in this run")
    enrich_parser.set_defaults(func=cmd_enrich)

    rank_parser = subparsers.add_parser("rank", help="Recalculate aggregated rankings")
    rank_parser.add_argument("--window", type=int, default=RECENT_WINDOW_YEARS, help="Years counted as recent")
    rank_parser.set_defaults(func=cmd_rank)

    top_parser = subparsers.add_parser("top", help="Show a ranking")
    top_parser.add_argument("ranking_type", choices=list(RANKING_TYPES), help="Ranking bucket")
    top_parser.add_argument("--genres", nargs="+", help="Only items in any of these genres (display names)")
    top_parser.add_argument("--limit", type=int, default=DEFAULT_TOP_LIMIT, help="Number of entries")
    top_parser.set_defaults(func=cmd_top)

    genres_parser = subparsers.add_parser("genres", help="List genre groups")
    genres_parser.set_defaults(func=cmd_genres)

    favorite_parser = subparsers.add_parser("favorite", help="Toggle a favorite")
    favorite_parser.add_argument("user", help="User id")
    favorite_parser.add_argument("media_id", help="Media item id")
    favorite_parser.set_defaults(func=cmd_favorite)

    recommend_parser = subparsers.add_parser("recommend", help="Recompute recommendations for a user")
    recommend_parser.add_argument("user", help="User id")
    recommend_parser.add_argument("--limit", type=int, default=RECOMMENDATION_LIMIT, help="Number of recommendations")
    recommend_parser.set_defaults(func=cmd_recommend)

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove blacklisted rows and merge duplicates")
    cleanup_parser.add_argument("--dry-run", action="store_true", help="Only show what would change")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    export_parser = subparsers.add_parser("export", help="Export the database to JSON")
    export_parser.add_argument("file", help="Output file")
    export_parser.set_defaults(func=cmd_export)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except StoreError as e:
        logger.error(f"{e}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"{e}")
        sys.exit(2)


if __name__ == "__main__":
    main()
