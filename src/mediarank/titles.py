"""
Title normalization, blacklist filtering and deduplication for catalog rows.

Scraped titles arrive with season/edition suffixes ("The Bear - Temporada 3",
"Shogun S1") and the forum sources occasionally leak thread headings that are
not media at all. Everything here works on a comparison key produced by
``normalize_title``; the key is never shown to users.
"""
import logging
import re
from typing import Callable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Trailing noise, applied until the title stops changing
_SEASON_SUFFIX = re.compile(r"\s*[-–:]?\s*(?<!\w)(?:temporada|season)\s*\d+\s*$")
_SHORT_SEASON_SUFFIX = re.compile(r"\s*[-–:]?\s*(?<!\w)[ts]\d+\s*$")
_SITE_SUFFIX = re.compile(r"\s*[-–:]?\s*(?<!\w)opiniones\s*$")
_DANGLING_PUNCT = re.compile(r"\s*[-–:]\s*$")
_WHITESPACE = re.compile(r"\s+")

# Normalized phrases; matched as substrings of the normalized title
TITLE_BLACKLIST: tuple[str, ...] = (
    'el hilo de las series',
    'hilo de las series',
    'hilo series',
    'test connectivity',
    'test connection movie',
    'las mejores series de',
    'las mejores peliculas de',
    'las mejores películas de',
)


def _strip_suffixes(title: str) -> str:
    for pattern in (_SEASON_SUFFIX, _SHORT_SEASON_SUFFIX, _SITE_SUFFIX, _DANGLING_PUNCT):
        title = pattern.sub('', title)
    return _WHITESPACE.sub(' ', title).strip()


def normalize_title(title: str | None) -> str:
    """
    Normalize a title for comparison purposes.

    Lowercases, trims, removes trailing season markers ("temporada 2",
    "season 3", "T1", "S2") and the "opiniones" site suffix, drops any
    dangling ``-``/``–``/``:`` and collapses whitespace.

    Suffix stripping repeats until a fixed point so stacked suffixes
    ("Fargo - Season 5 - Opiniones") are fully removed and the function
    stays idempotent.
    """
    if not title:
        return ""

    current = title.lower().strip()
    while True:
        stripped = _strip_suffixes(current)
        if stripped == current:
            return current
        current = stripped


def is_blacklisted(title: str | None) -> bool:
    """Check whether a title contains any denylisted phrase."""
    normalized = normalize_title(title)
    if not normalized:
        return False
    return any(phrase in normalized for phrase in TITLE_BLACKLIST)


def filter_blacklisted(items: Iterable[T], title_of: Callable[[T], str | None]) -> list[T]:
    """Return the items whose title is not blacklisted. Items are not copied."""
    kept = []
    for item in items:
        if is_blacklisted(title_of(item)):
            logger.debug(f"Dropping blacklisted row: {title_of(item)!r}")
            continue
        kept.append(item)
    return kept


def deduplicate_by_title(
    items: Iterable[T],
    title_of: Callable[[T], str | None],
    score_of: Optional[Callable[[T], float | None]] = None,
) -> list[T]:
    """
    Deduplicate items by normalized title, keeping the highest-scoring one.

    Args:
        items: Items to deduplicate, in priority order
        title_of: Extracts the title string from an item
        score_of: Extracts a numeric score (higher is better). When omitted
            every item ties and the first one seen wins. ``None`` scores
            count as 0.

    Returns:
        One item per normalized title, in first-occurrence order of the keys.
    """
    def _score(item: T) -> float:
        if score_of is None:
            return 0.0
        value = score_of(item)
        return float(value) if value is not None else 0.0

    best: dict[str, T] = {}
    best_score: dict[str, float] = {}

    for item in items:
        key = normalize_title(title_of(item))
        score = _score(item)
        if key not in best:
            best[key] = item
            best_score[key] = score
        elif score > best_score[key]:
            # Reassigning an existing key keeps its original position
            best[key] = item
            best_score[key] = score

    return list(best.values())


def clean_media_list(
    items: Iterable[T],
    title_of: Callable[[T], str | None],
    score_of: Optional[Callable[[T], float | None]] = None,
) -> list[T]:
    """Apply blacklist filtering and then deduplication."""
    filtered = filter_blacklisted(items, title_of)
    return deduplicate_by_title(filtered, title_of, score_of)
