"""Cache-aware orchestration of proxy fetch, extraction, and fallback."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from metric_cache import CACHE_PATH, JsonFileStore, MetricCache
from metric_extractor import extract_metrics
from models import CACHED, FALLBACK, LIVE, MetricSnapshot
from proxy_transport import AllProxiesExhausted, configured_proxies, fetch_via_proxies

PROFILE_URL = os.getenv("PROFILE_URL", "https://www.researchgate.net/profile/Wu-Hanshuo")

# Last known good counts, shown whenever nothing live or cached is available.
FALLBACK_COUNTS: dict[str, int] = {
    "publications": 105,
    "citations": 1041,
    "reads": 16593,
}

LOGGER = logging.getLogger(__name__)


def fallback_snapshot() -> MetricSnapshot:
    return MetricSnapshot(**FALLBACK_COUNTS, last_updated=datetime.now(UTC), provenance=FALLBACK)


class MetricsFetcher:
    """Serve profile metrics from cache, live fetch, or the static fallback.

    ``fetch_data`` and ``refresh_data`` always return a valid snapshot; every
    failure ends in the fallback snapshot and is only visible through its
    provenance.
    """

    def __init__(
        self,
        cache: MetricCache,
        target_url: str = PROFILE_URL,
        proxies: Sequence[str] | None = None,
        fetch: Callable[[str, Sequence[str] | None], str] = fetch_via_proxies,
        extract: Callable[[str], MetricSnapshot] = extract_metrics,
        fallback: Callable[[], MetricSnapshot] = fallback_snapshot,
    ) -> None:
        self.cache = cache
        self.target_url = target_url
        self.proxies = proxies
        self._fetch = fetch
        self._extract = extract
        self._fallback = fallback

    def fetch_data(self) -> MetricSnapshot:
        cached = self._read_cache()
        if cached is not None:
            LOGGER.info("Using cached data from: %s", cached.to_dict()["lastUpdated"])
            return cached.with_provenance(CACHED)

        try:
            live = self._fetch_live()
        except AllProxiesExhausted as exc:
            LOGGER.error("Failed to fetch profile data: %s", exc)
            live = None
        except Exception as exc:  # fetch_data never raises
            LOGGER.exception("Unexpected failure fetching profile data: %s", exc)
            live = None

        if live is not None:
            return live

        LOGGER.info("Using fallback data")
        return self._fallback().with_provenance(FALLBACK)

    def refresh_data(self) -> MetricSnapshot:
        """Drop the cached snapshot, then fetch as usual."""
        try:
            self.cache.invalidate()
        except Exception as exc:
            LOGGER.exception("Cache invalidation failed: %s", exc)
        return self.fetch_data()

    def _read_cache(self) -> MetricSnapshot | None:
        try:
            return self.cache.read()
        except Exception as exc:  # a custom store may raise anything
            LOGGER.exception("Cache read failed, treating as a miss: %s", exc)
            return None

    def _fetch_live(self) -> MetricSnapshot | None:
        LOGGER.info("Fetching fresh data from %s", self.target_url)
        html = self._fetch(self.target_url, self.proxies)
        snapshot = self._extract(html)

        if not snapshot.has_signal():
            LOGGER.warning("Extraction found no metrics in %s chars of markup", len(html))
            return None

        snapshot = snapshot.with_provenance(LIVE)
        self.cache.write(snapshot)
        return snapshot


def build_default_fetcher(cache_path: str | None = None) -> MetricsFetcher:
    """Wire a file-backed cache and the environment configuration."""
    store = JsonFileStore(cache_path or CACHE_PATH)
    return MetricsFetcher(
        cache=MetricCache(store),
        target_url=PROFILE_URL,
        proxies=configured_proxies(),
    )
