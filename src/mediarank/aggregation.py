"""
Score aggregation: per-source ratings -> one ranking entry per title.

Items are plain dicts as returned by ``database.load_items_with_scores``::

    {"id": ..., "year": 2024, "scores": [
        {"source": "filmaffinity", "score_normalized": 8.2, "votes_count": 40000},
    ]}
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from .config import (
    RECENT_WINDOW_YEARS,
    POPULARITY_BONUS_CAP,
    POPULARITY_VOTES_DIVISOR,
    SCORE_MIN,
    SCORE_MAX,
)

logger = logging.getLogger(__name__)


@dataclass
class AggregatedScore:
    media_item_id: str
    final_score: float
    ranking_type: str
    average: float
    total_votes: int
    source_count: int


def _round1(value: float) -> float:
    """Half-up rounding to one decimal (avoids banker's rounding on .x5)."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _clean_scores(item: dict) -> list[tuple[float, int]]:
    """Extract (score, votes) pairs, skipping malformed rows."""
    pairs = []
    for s in item.get('scores') or []:
        try:
            score = float(s.get('score_normalized'))
        except (TypeError, ValueError):
            logger.warning(
                f"Skipping non-numeric score {s.get('score_normalized')!r} "
                f"for item {item.get('id')} ({s.get('source')})"
            )
            continue
        score = max(SCORE_MIN, min(SCORE_MAX, score))
        try:
            votes = max(0, int(s.get('votes_count') or 0))
        except (TypeError, ValueError):
            votes = 0
        pairs.append((score, votes))
    return pairs


def popularity_bonus(total_votes: int) -> float:
    """Bonus grows linearly with votes and saturates at POPULARITY_BONUS_CAP."""
    return min(POPULARITY_BONUS_CAP, max(0, total_votes) / POPULARITY_VOTES_DIVISOR)


def ranking_type_for(year: int | None, current_year: int, window: int = RECENT_WINDOW_YEARS) -> str:
    """'recent' if the release year is within the window (inclusive), else 'historical'."""
    if year is None:
        return "historical"
    return "recent" if int(year) >= current_year - window else "historical"


def aggregate_item(
    item: dict,
    current_year: int | None = None,
    window: int = RECENT_WINDOW_YEARS,
) -> AggregatedScore | None:
    """
    Combine an item's source scores into one ranking score.

    Returns None when the item has no usable scores; such items are
    excluded from rankings rather than ranked at zero.
    """
    pairs = _clean_scores(item)
    if not pairs:
        return None

    if current_year is None:
        current_year = datetime.now().year

    avg = sum(score for score, _ in pairs) / len(pairs)
    total_votes = sum(votes for _, votes in pairs)
    final = min(SCORE_MAX, _round1(avg + popularity_bonus(total_votes)))

    return AggregatedScore(
        media_item_id=item['id'],
        final_score=final,
        ranking_type=ranking_type_for(item.get('year'), current_year, window),
        average=avg,
        total_votes=total_votes,
        source_count=len(pairs),
    )


def aggregate_all(
    items: Iterable[dict],
    current_year: int | None = None,
    window: int = RECENT_WINDOW_YEARS,
) -> list[AggregatedScore]:
    """Aggregate every item, dropping the ones without scores."""
    if current_year is None:
        current_year = datetime.now().year

    results = []
    skipped = 0
    for item in items:
        agg = aggregate_item(item, current_year, window)
        if agg is None:
            skipped += 1
            continue
        results.append(agg)

    if skipped:
        logger.debug(f"Excluded {skipped} items without scores from ranking")
    return results
