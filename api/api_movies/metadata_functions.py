import logging
import re
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock

import requests

logger = logging.getLogger(__name__)

OMDB_BASE_URL = "https://www.omdbapi.com/"
TMDB_SEARCH_URL = "https://api.themoviedb.org/3/search/movie"
TMDB_IMAGE_BASE_URL = "https://image.tmdb.org/t/p/w500"

NOISE_TOKENS = [
    # resolution
    r"2160p", r"1080p", r"720p", r"480p", r"360p", r"4k", r"uhd",
    # source
    r"web[-. ]?dl", r"web[-. ]?rip", r"web", r"blu[-. ]?ray", r"brrip", r"bdrip", r"hdrip",
    r"dvdrip", r"hdtv", r"hdcam", r"camrip", r"pre[-. ]?dvd", r"hdts",
    # video codec
    r"x264", r"x265", r"h[.]?264", r"h[.]?265", r"hevc", r"avc", r"10bit", r"xvid",
    # audio codec
    r"aac(?:2[.]0)?", r"e?ac3", r"dts", r"ddp?5[.]1", r"atmos", r"mp3",
    # distribution
    r"amzn", r"nf", r"dsnp", r"hmax", r"hulu", r"zee5", r"proper", r"repack",
    r"extended", r"uncut", r"esubs?",
    # container
    r"mkv", r"mp4", r"avi", r"mov", r"webm", r"m4v",
    # season / episode
    r"s\d{1,2}e\d{1,3}", r"s\d{1,2}", r"e\d{1,3}", r"\d{1,2}x\d{2,3}",
]

# Alternatives are tried in order, so longer forms such as "web-dl" win over "web".
NOISE_PATTERN = re.compile(r"(?<![a-z0-9])(?:" + "|".join(NOISE_TOKENS) + r")(?![a-z0-9])", re.IGNORECASE)
TAG_PATTERN = re.compile(r"\[[^\]]*\]|\((?:[^)]*?(?:rip|web|\d{3,4}p)[^)]*)\)|@\w+|(?:https?://)?www\.\S+", re.IGNORECASE)
SEPARATOR_PATTERN = re.compile(r"[._\-]+")
WHITESPACE_PATTERN = re.compile(r"\s+")
YEAR_PATTERN = re.compile(r"(?:19|20)\d{2}")


def clean_title(raw_title: str):
    """
    Turn a release-style file name into a search query.

    Strips bracketed tags, channel handles, quality/source/codec/container
    tokens and season or episode markers, then turns separators into single
    spaces. This is a heuristic, not a parser of release naming conventions.

    Args:
        raw_title (str): File name as stored with the record.

    Returns:
        str: Cleaned query text, possibly empty.
    """
    if not raw_title:
        return ""
    text = TAG_PATTERN.sub(" ", raw_title)
    text = NOISE_PATTERN.sub(" ", text)
    text = SEPARATOR_PATTERN.sub(" ", text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def extract_title_and_year(query: str):
    """
    Split a cleaned query into the title and its release year.

    The last 19xx/20xx word after the first word is taken as the year and
    everything from it onwards is dropped, so "Blade Runner 2049 2017" gives
    ("Blade Runner 2049", "2017") while "2012" stays a title.

    Args:
        query (str): Output of `clean_title`.

    Returns:
        tuple: (title, year) with year None when no year is found.
    """
    words = query.split()
    for index in range(len(words) - 1, 0, -1):
        if YEAR_PATTERN.fullmatch(words[index]):
            return " ".join(words[:index]), words[index]
    return query, None


@dataclass(frozen=True)
class Enrichment:
    """Outcome of a metadata lookup: either metadata or nothing."""

    metadata: dict | None = None

    @property
    def found(self):
        return self.metadata is not None


NOT_AVAILABLE = Enrichment()


class EnrichmentCache:
    """In-process map from raw title to provider metadata, never evicted."""

    def __init__(self):
        self._entries: dict[str, dict] = {}
        # title -> [lock, number of threads holding or waiting for it]
        self._key_locks: dict[str, list] = {}
        self._guard = Lock()

    def get(self, title: str):
        return self._entries.get(title)

    def put_if_absent(self, title: str, metadata: dict):
        """
        Store metadata for a title unless an entry already exists.

        Returns:
            dict: The entry now held for the title.
        """
        with self._guard:
            return self._entries.setdefault(title, metadata)

    @contextmanager
    def lock_for(self, title: str):
        """
        Hold the lock for one title while its lookup is in flight.

        The lock is discarded once no thread holds or waits for it.
        """
        with self._guard:
            entry = self._key_locks.get(title)
            if entry is None:
                entry = self._key_locks[title] = [Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[title]

    def in_flight(self):
        return len(self._key_locks)

    def __len__(self):
        return len(self._entries)

    def __contains__(self, title: str):
        return title in self._entries


class OmdbProvider:
    """Search OMDb by title and keep the first hit."""

    def __init__(self, api_key: str, session: requests.Session | None = None, timeout: float = 10):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def lookup(self, query: str, year: str | None = None):
        params = {"apikey": self.api_key, "s": query}
        if year:
            params["y"] = year
        response = self.session.get(OMDB_BASE_URL, params=params, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        if data.get("Response") != "True":
            return None
        results = data.get("Search") or []
        return results[0] if results else None


class TmdbProvider:
    """Search TMDb by title and keep the first hit, with a full poster URL."""

    def __init__(self, api_key: str, session: requests.Session | None = None, timeout: float = 10):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def lookup(self, query: str, year: str | None = None):
        params = {"api_key": self.api_key, "query": query}
        if year:
            params["year"] = year
        response = self.session.get(TMDB_SEARCH_URL, params=params, timeout=self.timeout)
        response.raise_for_status()
        results = response.json().get("results") or []
        if not results:
            return None
        details = dict(results[0])
        poster_path = details.get("poster_path")
        details["poster_url"] = f"{TMDB_IMAGE_BASE_URL}{poster_path}" if poster_path else None
        return details


PROVIDERS = {"omdb": OmdbProvider, "tmdb": TmdbProvider}


def build_provider(name: str | None, api_key: str | None, timeout: float = 10):
    """
    Create the configured metadata provider.

    Args:
        name (str | None): Provider name, `omdb` or `tmdb`.
        api_key (str | None): Key for that provider.
        timeout (float): Per-request timeout in seconds.

    Returns:
        OmdbProvider | TmdbProvider | None: None when enrichment is disabled.
    """
    if not api_key:
        logger.info("No metadata API key configured, enrichment disabled")
        return None
    provider_class = PROVIDERS.get((name or "omdb").strip().lower())
    if provider_class is None:
        raise ValueError(f"Unknown metadata provider: {name}")
    return provider_class(api_key, timeout=timeout)


class MetadataEnricher:
    """Best-effort metadata lookup memoized by the raw title."""

    def __init__(self, provider: object | None, cache: EnrichmentCache | None = None, max_workers: int = 8):
        self.provider = provider
        self.cache = cache if cache is not None else EnrichmentCache()
        self.max_workers = max(1, int(max_workers))

    def enrich(self, raw_title: str):
        """
        Look up metadata for a title, never raising.

        Args:
            raw_title (str): Uncleaned file name; also the cache key.

        Returns:
            Enrichment: Found metadata or NOT_AVAILABLE.
        """
        if self.provider is None or not raw_title:
            return NOT_AVAILABLE

        cached = self.cache.get(raw_title)
        if cached is not None:
            logger.debug("Metadata cache hit for %r", raw_title)
            return Enrichment(cached)

        # First lookups for one title run one at a time so only one reaches the provider.
        with self.cache.lock_for(raw_title):
            cached = self.cache.get(raw_title)
            if cached is not None:
                return Enrichment(cached)

            query, year = extract_title_and_year(clean_title(raw_title))
            if not query:
                return NOT_AVAILABLE
            try:
                metadata = self.provider.lookup(query, year)
            except Exception as exc:
                logger.warning("Metadata lookup failed for %r (query %r): %s", raw_title, query, exc)
                return NOT_AVAILABLE

            if not metadata:
                logger.info("No metadata match for %r (query %r)", raw_title, query)
                return NOT_AVAILABLE
            return Enrichment(self.cache.put_if_absent(raw_title, metadata))

    def enrich_many(self, raw_titles: list[str]):
        """
        Enrich several titles concurrently.

        Args:
            raw_titles (list[str]): Titles in output order.

        Returns:
            list[Enrichment]: One outcome per title, same order.
        """
        if not raw_titles:
            return []
        if self.provider is None:
            return [NOT_AVAILABLE for _ in raw_titles]
        worker_count = min(self.max_workers, len(raw_titles))
        with ThreadPoolExecutor(max_workers=worker_count) as executor:
            return list(executor.map(self.enrich, raw_titles))


def attach_metadata(record: dict, enrichment: Enrichment):
    """
    Return a copy of a record with its `metadata` field set.

    Args:
        record (dict): Serialized movie record.
        enrichment (Enrichment): Outcome of the lookup.

    Returns:
        dict: Record plus `metadata`, None when unavailable.
    """
    enriched = dict(record)
    enriched["metadata"] = enrichment.metadata
    return enriched
