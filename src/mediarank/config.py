"""
Configuration constants for the media ranking engine.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("MEDIARANK_DB", "data/mediarank.db"))

# Sources and media types accepted by the store
SOURCES = ("forocoches", "filmaffinity", "reddit")
MEDIA_TYPES = ("movie", "series")
RANKING_TYPES = ("recent", "historical")

# Score scale
SCORE_MIN = 0.0
SCORE_MAX = 10.0

# Ranking Configuration
RECENT_WINDOW_YEARS = _get_int_env("MEDIARANK_RECENT_WINDOW_YEARS", 2, min_val=0)
POPULARITY_BONUS_CAP = 0.5
POPULARITY_VOTES_DIVISOR = 100_000  # votes needed for +1.0 before the cap
DEFAULT_TOP_LIMIT = 20

# Recommendation Configuration
CANDIDATE_POOL_PER_TYPE = _get_int_env("MEDIARANK_CANDIDATE_POOL", 50, min_val=1)
RECOMMENDATION_LIMIT = _get_int_env("MEDIARANK_RECOMMENDATION_LIMIT", 10, min_val=1)
GENRE_MATCH_WEIGHT = 3.0

# Reason rule thresholds
REASON_HIGH_AVG = 7.5
REASON_CONSENSUS_AVG = 8.5
REASON_CULT_REDDIT_MIN = 8.2
REASON_CULT_FILMAFFINITY_MAX = 7.0
REASON_SINGLE_SOURCE_MIN = 8.5
REASON_CLASSIC_YEAR = 2015

# Scraper Configuration
DEFAULT_SCRAPER_DELAY = _get_float_env("MEDIARANK_SCRAPER_DELAY", 1.0, min_val=0.0)
HTTP_TIMEOUT = _get_float_env("MEDIARANK_HTTP_TIMEOUT", 15.0, min_val=1.0)
MAX_HTTP_RETRIES = 3
RETRY_INITIAL_DELAY = 1.0  # seconds; doubles after every failed attempt
MAX_RETRY_AFTER_SECONDS = 60.0  # cap on a 429 Retry-After wait
SCRAPER_USER_AGENT = "Mozilla/5.0 (compatible; mediarank/0.1)"
SCRAPER_MAX_PER_PAGE = 20

# Default vote estimates per source when the page does not expose a count
SOURCE_DEFAULT_VOTES = {
    'filmaffinity': 50000,
    'reddit': 1000,
    'forocoches': 500,
}

FILMAFFINITY_RANKING_URLS = [
    ("https://www.filmaffinity.com/es/ranking.php?rn=ranking_2025_topmovies", "movie"),
    ("https://www.filmaffinity.com/es/ranking.php?rn=ranking_2025_topseries", "series"),
    ("https://www.filmaffinity.com/es/ranking.php?rn=ranking_2024_topmovies", "movie"),
    ("https://www.filmaffinity.com/es/ranking.php?rn=ranking_2024_topseries", "series"),
]
REDDIT_TOP_URL = "https://www.reddit.com/r/movies/top.json?limit=10&t=week"
REDDIT_DEFAULT_SCORE = 8.5

# Enrichment (TMDB search for posters, synopses and genre ids)
TMDB_API_KEY = os.environ.get("MEDIARANK_TMDB_API_KEY", "")
TMDB_BASE_URL = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p/w500"
TMDB_LANGUAGE = "es-ES"
ENRICH_BATCH_SIZE = _get_int_env("MEDIARANK_ENRICH_BATCH", 25, min_val=1)
MIN_SYNOPSIS_LENGTH = 300  # shorter synopses are treated as truncated

# Batch Processing
EXPORT_CHUNK_SIZE = 500
