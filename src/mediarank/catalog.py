"""
Catalog maintenance: find blacklisted rows and duplicate groups in the
stored catalog and fold each group into a single surviving item.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .titles import normalize_title, is_blacklisted
from .recommender import average_score

logger = logging.getLogger(__name__)


@dataclass
class MergePlan:
    label: str
    keep_id: str
    delete_ids: list[str] = field(default_factory=list)


def keeper_key(item: dict) -> tuple:
    """
    How good a row is as the surviving copy of a title.

    More sources first, then higher average score, then having a poster,
    then a longer synopsis.
    """
    scores = item.get('scores') or []
    return (
        len(scores),
        average_score(item),
        1 if item.get('poster_url') else 0,
        len(item.get('synopsis') or ''),
    )


def find_blacklisted(items: list[dict]) -> list[dict]:
    return [item for item in items if is_blacklisted(item.get('title'))]


def plan_duplicate_merges(items: list[dict]) -> list[MergePlan]:
    """
    Group items by normalized title and pick a keeper for each group.

    Blacklisted rows are ignored here (they are deleted outright). The
    keeper is the first item with the strictly best ``keeper_key``, so ties
    go to the row seen first.
    """
    groups: dict[str, list[dict]] = {}
    for item in items:
        if is_blacklisted(item.get('title')):
            continue
        key = normalize_title(item.get('title'))
        if not key:
            continue
        groups.setdefault(key, []).append(item)

    plans = []
    for members in groups.values():
        if len(members) < 2:
            continue
        keeper = members[0]
        for candidate in members[1:]:
            if keeper_key(candidate) > keeper_key(keeper):
                keeper = candidate
        plans.append(MergePlan(
            label=keeper.get('title', ''),
            keep_id=keeper['id'],
            delete_ids=[m['id'] for m in members if m['id'] != keeper['id']],
        ))

    logger.debug(f"Planned {len(plans)} duplicate merges over {len(items)} items")
    return plans
