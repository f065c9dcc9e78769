import httpx
import logging
import re
import time
from dataclasses import dataclass, field
from selectolax.parser import HTMLParser
from .config import (
    SOURCES,
    MEDIA_TYPES,
    SCORE_MIN,
    SCORE_MAX,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
    RETRY_INITIAL_DELAY,
    MAX_RETRY_AFTER_SECONDS,
    DEFAULT_SCRAPER_DELAY,
    SCRAPER_USER_AGENT,
    SCRAPER_MAX_PER_PAGE,
    SOURCE_DEFAULT_VOTES,
    FILMAFFINITY_RANKING_URLS,
    REDDIT_TOP_URL,
    REDDIT_DEFAULT_SCORE,
    TMDB_API_KEY,
    TMDB_BASE_URL,
    TMDB_IMAGE_BASE,
    TMDB_LANGUAGE,
)

logger = logging.getLogger(__name__)

_YEAR_IN_PARENS = re.compile(r"\((\d{4})\)")
_YEAR_AND_REST = re.compile(r"\(\d{4}\).*$")


@dataclass
class ScrapedRecord:
    """One title's score as seen by one source."""
    title: str
    year: int | None
    media_type: str
    source: str
    score: float
    votes: int = 0
    genres: list[str] = field(default_factory=list)
    poster_url: str | None = None
    synopsis: str | None = None

    def is_valid(self) -> bool:
        return (
            bool(self.title and self.title.strip())
            and self.media_type in MEDIA_TYPES
            and self.source in SOURCES
            and SCORE_MIN <= self.score <= SCORE_MAX
            and self.votes >= 0
        )

    @classmethod
    def from_dict(cls, payload: dict) -> "ScrapedRecord":
        """
        Build a record from the JSON ingestion format.

        Accepts ``type`` or ``media_type`` and ``votes`` or ``votes_count``.
        Raises ValueError when the entry is not an object or has a missing
        or non-numeric score.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Record must be a JSON object, got {type(payload).__name__}")

        title = str(payload.get('title') or '').strip()
        try:
            score = float(payload['score'])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Record {title!r} has no usable score") from exc

        year = payload.get('year')
        source = payload.get('source', '')
        return cls(
            title=title,
            year=int(year) if year not in (None, '') else None,
            media_type=payload.get('type') or payload.get('media_type') or 'movie',
            source=source,
            score=score,
            votes=int(payload.get('votes', payload.get('votes_count', SOURCE_DEFAULT_VOTES.get(source, 0))) or 0),
            genres=_as_list(payload.get('genres')),
            poster_url=payload.get('poster_url'),
            synopsis=payload.get('synopsis'),
        )


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (str, int)):
        return [value]
    return list(value)


def _parse_decimal(text: str) -> float | None:
    """Parse '8,2' or '8.2'; None if not a number."""
    cleaned = text.strip().replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_filmaffinity_ranking(tree: HTMLParser, media_type: str, limit: int = SCRAPER_MAX_PER_PAGE) -> list[ScrapedRecord]:
    """
    Parse a FilmAffinity ranking page.

    Cards expose the title in ``.mc-title a``, the year as ``(2024)`` in
    ``.mc-year`` and the average in ``.avgrat-box`` ("8,2"). The three are
    read in document order and paired up.
    """
    titles = tree.css(".mc-title a")
    years = tree.css(".mc-year")
    ratings = tree.css(".avgrat-box")

    records = []
    for title_node, year_node, rating_node in zip(titles, years, ratings):
        if len(records) >= limit:
            break
        title = title_node.text(strip=True)
        year_match = _YEAR_IN_PARENS.search(year_node.text())
        score = _parse_decimal(rating_node.text())
        if not title or score is None:
            logger.debug(f"Skipping unparsable FilmAffinity card: {title!r}")
            continue
        records.append(ScrapedRecord(
            title=title,
            year=int(year_match.group(1)) if year_match else None,
            media_type=media_type,
            source='filmaffinity',
            score=score,
            votes=SOURCE_DEFAULT_VOTES['filmaffinity'],
        ))
    return records


def parse_reddit_listing(payload: dict) -> list[ScrapedRecord]:
    """
    Parse a subreddit ``top.json`` listing.

    Only posts whose title contains a "(YYYY)" year are kept; everything
    from the year onwards is cut from the title. Reddit has no 0-10 score,
    so every hit gets REDDIT_DEFAULT_SCORE.
    """
    records = []
    children = (payload.get('data') or {}).get('children') or []
    for child in children:
        raw_title = (child.get('data') or {}).get('title') or ''
        year_match = _YEAR_IN_PARENS.search(raw_title)
        if not year_match:
            continue
        title = _YEAR_AND_REST.sub('', raw_title).strip()
        if not title:
            continue
        records.append(ScrapedRecord(
            title=title,
            year=int(year_match.group(1)),
            media_type='movie',
            source='reddit',
            score=REDDIT_DEFAULT_SCORE,
            votes=SOURCE_DEFAULT_VOTES['reddit'],
        ))
    return records


def parse_tmdb_search(payload: dict) -> dict | None:
    """
    Take the first TMDB search hit as the match.

    Returns ``poster_url`` (None without a poster path), ``synopsis`` (None
    when the overview is blank) and ``genres`` (TMDB genre ids as strings),
    or None when the search found nothing.
    """
    results = payload.get('results') or []
    if not results:
        return None

    hit = results[0]
    poster_path = hit.get('poster_path')
    overview = (hit.get('overview') or '').strip()
    return {
        'tmdb_id': hit.get('id'),
        'poster_url': f"{TMDB_IMAGE_BASE}{poster_path}" if poster_path else None,
        'synopsis': overview or None,
        'genres': [str(g) for g in hit.get('genre_ids') or []],
    }


def _retry_after_seconds(resp: httpx.Response, default: float) -> float:
    try:
        wait = float(resp.headers.get("Retry-After", default))
    except ValueError:
        wait = default
    return min(max(wait, 0.0), MAX_RETRY_AFTER_SECONDS)


class SourceScraper:
    """Fetches ranking pages from the supported sources."""

    def __init__(self, delay: float = DEFAULT_SCRAPER_DELAY):
        self.client = httpx.Client(
            headers={"User-Agent": SCRAPER_USER_AGENT},
            follow_redirects=True,
            timeout=HTTP_TIMEOUT,
        )
        self.delay = delay

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _get(self, url: str, params: dict | None = None, max_retries: int = MAX_HTTP_RETRIES) -> httpx.Response | None:
        """
        Fetch a URL after the politeness delay.

        Transport failures (timeouts, refused connections) and 429 responses
        are retried with exponential backoff; a 429 honours Retry-After.
        Other HTTP errors are logged and yield None for that target.
        """
        time.sleep(self.delay)
        wait = RETRY_INITIAL_DELAY

        for attempt in range(1, max_retries + 1):
            try:
                resp = self.client.get(url, params=params)
                if resp.status_code == 429 and attempt < max_retries:
                    retry_after = _retry_after_seconds(resp, wait)
                    logger.warning(f"Rate limited (429) on {url}, waiting {retry_after:.1f}s...")
                    time.sleep(retry_after)
                    wait *= 2
                    continue
                resp.raise_for_status()
                return resp
            except httpx.TransportError as e:
                if attempt == max_retries:
                    logger.error(f"Max retries exceeded for {url}: {e}")
                    return None
                logger.warning(
                    f"{type(e).__name__} on {url}, retrying in {wait:.1f}s... "
                    f"(attempt {attempt}/{max_retries})"
                )
                time.sleep(wait)
                wait *= 2
            except httpx.HTTPStatusError as e:
                logger.error(f"HTTP error on {url}: {e.response.status_code}")
                return None
            except httpx.HTTPError as e:
                logger.error(f"Request error on {url}: {e}")
                return None

        return None

    def scrape_filmaffinity(self, targets: list[tuple[str, str]] | None = None) -> list[ScrapedRecord]:
        records = []
        for url, media_type in targets or FILMAFFINITY_RANKING_URLS:
            resp = self._get(url)
            if resp is None:
                logger.info(f"Skipping target {url}")
                continue
            page_records = parse_filmaffinity_ranking(HTMLParser(resp.text), media_type)
            logger.info(f"FilmAffinity {media_type}: {len(page_records)} titles from {url}")
            records.extend(page_records)
        return records

    def scrape_reddit(self, url: str = REDDIT_TOP_URL) -> list[ScrapedRecord]:
        resp = self._get(url)
        if resp is None:
            return []
        try:
            payload = resp.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from {url}: {e}")
            return []
        records = parse_reddit_listing(payload)
        logger.info(f"Reddit: {len(records)} titles from {url}")
        return records

    def scrape(self, source: str) -> list[ScrapedRecord]:
        if source == 'filmaffinity':
            return self.scrape_filmaffinity()
        if source == 'reddit':
            return self.scrape_reddit()
        raise ValueError(f"No scraper for source: {source}")


class TmdbClient(SourceScraper):
    """Looks titles up on TMDB to backfill posters, synopses and genres."""

    def __init__(self, api_key: str = TMDB_API_KEY, delay: float = 0.1, language: str = TMDB_LANGUAGE):
        if not api_key:
            raise ValueError("MEDIARANK_TMDB_API_KEY is not set")
        super().__init__(delay=delay)
        self.api_key = api_key
        self.language = language

    def search(self, title: str, year: int | None, media_type: str) -> dict | None:
        """First TMDB match for a catalog item, or None if nothing usable came back."""
        endpoint = 'tv' if media_type == 'series' else 'movie'
        params = {'api_key': self.api_key, 'query': title, 'language': self.language}
        if year:
            params['first_air_date_year' if endpoint == 'tv' else 'year'] = year

        resp = self._get(f"{TMDB_BASE_URL}/search/{endpoint}", params=params)
        if resp is None:
            return None
        try:
            payload = resp.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from TMDB for {title!r}: {e}")
            return None
        return parse_tmdb_search(payload)
