"""
Genre-overlap recommendation heuristic.

Not a learned model: each unseen candidate gets
``GENRE_MATCH_WEIGHT * |shared genres| + average source score`` and the
best ones are picked half from movies, half from series.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .config import (
    GENRE_MATCH_WEIGHT,
    RECOMMENDATION_LIMIT,
    REASON_HIGH_AVG,
    REASON_CONSENSUS_AVG,
    REASON_CULT_REDDIT_MIN,
    REASON_CULT_FILMAFFINITY_MAX,
    REASON_SINGLE_SOURCE_MIN,
    REASON_CLASSIC_YEAR,
)
from .genres import resolve_genre

logger = logging.getLogger(__name__)


@dataclass
class Recommendation:
    media_item_id: str
    title: str
    media_type: str
    year: int | None
    score: float
    reason: str
    reason_code: str
    matching_genres: list[str] = field(default_factory=list)


@dataclass
class ReasonContext:
    """Everything a reason predicate may look at for one candidate."""
    item: dict
    average: float
    by_source: dict[str, float]
    matching_genres: list[str]


@dataclass
class ReasonRule:
    code: str
    applies: Callable[[ReasonContext], bool]
    build: Callable[[ReasonContext], str]


def average_score(item: dict) -> float:
    """Mean of the item's source scores; 0 when it has none."""
    values = []
    for s in item.get('scores') or []:
        try:
            values.append(float(s.get('score_normalized')))
        except (TypeError, ValueError):
            continue
    return sum(values) / len(values) if values else 0.0


def _scores_by_source(item: dict) -> dict[str, float]:
    by_source = {}
    for s in item.get('scores') or []:
        try:
            by_source[s.get('source')] = float(s.get('score_normalized'))
        except (TypeError, ValueError):
            continue
    return by_source


def _is_cult_hit(ctx: ReasonContext) -> bool:
    fa = ctx.by_source.get('filmaffinity')
    return (
        ctx.by_source.get('reddit', 0.0) > REASON_CULT_REDDIT_MIN
        and fa is not None
        and fa < REASON_CULT_FILMAFFINITY_MAX
    )


def _is_classic(ctx: ReasonContext) -> bool:
    year = ctx.item.get('year')
    return year is not None and year < REASON_CLASSIC_YEAR and ctx.average > REASON_HIGH_AVG


# First matching rule wins; the order is the contract
REASON_RULES: list[ReasonRule] = [
    ReasonRule(
        "personal_match",
        lambda ctx: bool(ctx.matching_genres) and ctx.average > REASON_HIGH_AVG,
        lambda ctx: (
            f"Encaja con tu interés en {ctx.matching_genres[0]} "
            f"y tiene una media de {ctx.average:.1f}."
        ),
    ),
    ReasonRule(
        "critical_consensus",
        lambda ctx: ctx.average > REASON_CONSENSUS_AVG,
        lambda ctx: f"Consenso crítico: media global de {ctx.average:.1f} en todas las fuentes.",
    ),
    ReasonRule(
        "cult_hit",
        _is_cult_hit,
        lambda ctx: "Fenómeno de nicho: Reddit la adora aunque la crítica tradicional es más fría.",
    ),
    ReasonRule(
        "single_source_standout",
        lambda ctx: ctx.by_source.get('forocoches', 0.0) > REASON_SINGLE_SOURCE_MIN,
        lambda ctx: "Alto impacto: destacada por la comunidad de Forocoches.",
    ),
    ReasonRule(
        "classic",
        _is_classic,
        lambda ctx: f"Valor histórico: estrenada en {ctx.item.get('year')} y sigue muy bien valorada.",
    ),
    ReasonRule(
        "fallback",
        lambda ctx: True,
        lambda ctx: (
            f"Recomendado según tu interés en "
            f"{ctx.matching_genres[0] if ctx.matching_genres else 'novedades'} "
            f"y su valoración de {ctx.average:.1f}."
        ),
    ),
]


def choose_reason(ctx: ReasonContext, rules: list[ReasonRule] | None = None) -> tuple[str, str]:
    """Return (code, text) of the first rule whose predicate holds."""
    for rule in rules or REASON_RULES:
        if rule.applies(ctx):
            return rule.code, rule.build(ctx)
    return "none", ""


def display_genres(item: dict) -> list[str]:
    """An item's genres as canonical display names, first occurrence order."""
    return list(dict.fromkeys(resolve_genre(g) for g in item.get('genres') or [] if g not in (None, "")))


def favorite_genres(favorites: Iterable[dict]) -> set[str]:
    """Display names across all favorites, so "28" and "Action" count as one genre."""
    genres: set[str] = set()
    for fav in favorites:
        genres.update(display_genres(fav))
    return genres


class CandidateScorer:
    """Score unseen catalog items against the genres of a user's favorites."""

    def __init__(
        self,
        favorites: list[dict],
        genre_weight: float = GENRE_MATCH_WEIGHT,
        rules: list[ReasonRule] | None = None,
    ):
        self.favorite_ids = {f['id'] for f in favorites if f.get('id') is not None}
        self.favorite_genres = favorite_genres(favorites)
        self.genre_weight = genre_weight
        self.rules = rules or REASON_RULES

    def matching_genres(self, item: dict) -> list[str]:
        return [g for g in display_genres(item) if g in self.favorite_genres]

    def score(self, item: dict) -> float:
        return self.genre_weight * len(self.matching_genres(item)) + average_score(item)

    def rank(self, candidates: Iterable[dict]) -> list[tuple[dict, float]]:
        """
        Score and sort candidates by descending score.

        Favorites and repeated ids are skipped; ties keep input order.
        """
        seen: set = set()
        scored = []
        for item in candidates:
            item_id = item.get('id')
            if item_id in self.favorite_ids or item_id in seen:
                continue
            seen.add(item_id)
            scored.append((item, self.score(item)))
        scored.sort(key=lambda pair: -pair[1])
        return scored

    def explain(self, item: dict) -> tuple[str, str]:
        ctx = ReasonContext(
            item=item,
            average=average_score(item),
            by_source=_scores_by_source(item),
            matching_genres=self.matching_genres(item),
        )
        return choose_reason(ctx, self.rules)

    def recommend(self, candidates: Iterable[dict], limit: int = RECOMMENDATION_LIMIT) -> list[Recommendation]:
        """
        Pick the top ``limit`` candidates, balanced between movies and series.

        Each type gets half the slots (movies take the odd one); when one pool
        runs short the other fills the remaining slots. The result keeps the
        global score order.
        """
        ranked = self.rank(candidates)
        if not ranked or limit <= 0:
            return []

        movies = [i for i, (item, _) in enumerate(ranked) if item.get('type') == 'movie']
        series = [i for i, (item, _) in enumerate(ranked) if item.get('type') != 'movie']

        movie_slots = limit - limit // 2
        series_slots = limit // 2
        if len(movies) < movie_slots:
            series_slots += movie_slots - len(movies)
        elif len(series) < series_slots:
            movie_slots += series_slots - len(series)

        chosen = sorted(movies[:movie_slots] + series[:series_slots])

        recs = []
        for idx in chosen:
            item, score = ranked[idx]
            code, text = self.explain(item)
            recs.append(Recommendation(
                media_item_id=item['id'],
                title=item.get('title', ''),
                media_type=item.get('type', ''),
                year=item.get('year'),
                score=score,
                reason=text,
                reason_code=code,
                matching_genres=self.matching_genres(item),
            ))

        logger.debug(
            f"Selected {len(recs)} recommendations from {len(ranked)} candidates "
            f"({len(movies)} movies, {len(series)} series)"
        )
        return recs
