"""
Genre token resolution and grouping.

Catalog rows carry genre tokens from several places: TMDB numeric ids
("28"), English names from the TMDB API ("Action", "Sci-Fi & Fantasy") and
Spanish labels typed by scrapers ("Acción", "Suspense"). The filter UI shows
one chip per canonical display name, and a chip stands for every raw token
that resolves to it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

logger = logging.getLogger(__name__)


# Exact-match table: raw token -> canonical display name
GENRE_LOOKUP: dict[str, str] = {
    # TMDB movie genre ids
    "28": "Acción",
    "12": "Aventura",
    "16": "Animación",
    "35": "Comedia",
    "80": "Crimen",
    "99": "Documental",
    "18": "Drama",
    "10751": "Familia",
    "14": "Fantasía",
    "36": "Historia",
    "27": "Terror",
    "10402": "Música",
    "9648": "Misterio",
    "10749": "Romance",
    "878": "Ciencia ficción",
    "10770": "Película de TV",
    "53": "Suspense",
    "10752": "Bélica",
    "37": "Western",
    # TMDB tv genre ids
    "10759": "Acción y Aventura",
    "10762": "Infantil",
    "10763": "Noticias",
    "10764": "Reality",
    "10765": "Ciencia ficción y Fantasía",
    "10766": "Telenovela",
    "10767": "Talk show",
    "10768": "Guerra y Política",
    # English names
    "Action": "Acción",
    "Adventure": "Aventura",
    "Animation": "Animación",
    "Comedy": "Comedia",
    "Crime": "Crimen",
    "Documentary": "Documental",
    "Family": "Familia",
    "Fantasy": "Fantasía",
    "History": "Historia",
    "Horror": "Terror",
    "Music": "Música",
    "Mystery": "Misterio",
    "Science Fiction": "Ciencia ficción",
    "Sci-Fi": "Ciencia ficción",
    "TV Movie": "Película de TV",
    "Thriller": "Suspense",
    "War": "Bélica",
    "Action & Adventure": "Acción y Aventura",
    "Kids": "Infantil",
    "News": "Noticias",
    "Sci-Fi & Fantasy": "Ciencia ficción y Fantasía",
    "Soap": "Telenovela",
    "Talk": "Talk show",
    "War & Politics": "Guerra y Política",
    # Spanish spellings scrapers produce without accents
    "Accion": "Acción",
    "Animacion": "Animación",
    "Fantasia": "Fantasía",
    "Musica": "Música",
    "Ciencia Ficción": "Ciencia ficción",
    "Ciencia Ficcion": "Ciencia ficción",
    "Belica": "Bélica",
    "Bélico": "Bélica",
    "Intriga": "Suspense",
    "Thriller psicológico": "Suspense",
}


def resolve_genre(token: str) -> str:
    """
    Map a raw genre token to its canonical display name.

    Exact match against GENRE_LOOKUP first, then the token itself.
    Unknown tokens never raise.
    """
    key = str(token)
    return GENRE_LOOKUP.get(key, key)


@dataclass
class GenreIndex:
    """Display name -> raw tokens, rebuilt from the catalog on every read."""

    groups: dict[str, set[str]] = field(default_factory=dict)

    @property
    def display_names(self) -> list[str]:
        return sorted(self.groups)

    def tokens_for(self, display_name: str) -> set[str]:
        return set(self.groups.get(display_name, {display_name}))

    def is_active(self, display_name: str, selection: Iterable[str]) -> bool:
        """A group is active when any of its raw tokens is selected."""
        return is_group_active(selection, self.tokens_for(display_name))

    def toggle(self, selection: list[str], display_name: str | None) -> list[str]:
        """Toggle a whole group; ``None`` clears the selection."""
        if display_name is None:
            return toggle_genres(selection, [])
        return toggle_genres(selection, sorted(self.tokens_for(display_name)))

    def expand_selection(self, display_names: Iterable[str]) -> list[str]:
        """Turn selected display names into the raw tokens they stand for."""
        tokens: set[str] = set()
        for name in display_names:
            tokens |= self.tokens_for(name)
        return sorted(tokens)


def build_genre_index(genre_sets: Iterable[Iterable[str] | None]) -> GenreIndex:
    """
    Group every raw token across the corpus under its display name.

    Args:
        genre_sets: One genre collection per media item (None treated as empty)
    """
    groups: dict[str, set[str]] = {}
    for genres in genre_sets:
        for token in genres or ():
            if token is None or token == "":
                continue
            token = str(token)
            groups.setdefault(resolve_genre(token), set()).add(token)

    logger.debug(f"Built {len(groups)} genre groups")
    return GenreIndex(groups=groups)


def is_group_active(selection: Iterable[str], tokens: Iterable[str]) -> bool:
    selected = set(selection)
    return any(t in selected for t in tokens)


def toggle_genres(selection: list[str], tokens: Iterable[str]) -> list[str]:
    """
    Multi-valued toggle over raw tokens.

    - empty ``tokens`` clears the selection
    - if any token is selected, all of them are removed
    - otherwise all of them are appended (selection order is kept)
    """
    tokens = list(tokens)
    if not tokens:
        return []

    if is_group_active(selection, tokens):
        remove = set(tokens)
        return [g for g in selection if g not in remove]

    result = list(selection)
    for token in tokens:
        if token not in result:
            result.append(token)
    return result
