from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

import data_fetcher
from data_fetcher import FALLBACK_COUNTS, MetricsFetcher, build_default_fetcher, fallback_snapshot
from metric_cache import InMemoryStore, JsonFileStore, MetricCache
from models import MetricSnapshot

TARGET_URL = "https://www.researchgate.net/profile/Some-One"
PROXIES = ("https://relay-a.test/?url=", "https://relay-b.test/?url=")
KEY = "researchgate_data_cache"

LIVE_PAGE = (
    "<div>Publications (120)</div><span>2,000 Citations</span>"
    "<div>Reads</div><div>30,500</div>"
)


def _mock_resp(text: str, status: int = 200) -> MagicMock:
    """Return a mock streamed requests.Response whose raise_for_status is a no-op."""
    mock = MagicMock()
    mock.status_code = status
    mock.encoding = "utf-8"
    mock.iter_content.return_value = [text.encode("utf-8")]
    return mock


def _fetcher(store: InMemoryStore | None = None) -> tuple[MetricsFetcher, InMemoryStore]:
    store = store if store is not None else InMemoryStore()
    return MetricsFetcher(MetricCache(store, key=KEY), target_url=TARGET_URL, proxies=PROXIES), store


def _seed(store: InMemoryStore, age: timedelta) -> MetricSnapshot:
    snapshot = MetricSnapshot(
        publications=7,
        citations=8,
        reads=9,
        last_updated=(datetime.now(UTC) - age).replace(microsecond=0),
    )
    MetricCache(store, key=KEY).write(snapshot)
    return snapshot


def test_fresh_cache_is_served_without_network() -> None:
    fetcher, store = _fetcher()
    seeded = _seed(store, timedelta(hours=2))

    with patch("proxy_transport.requests.get") as mock_get:
        result = fetcher.fetch_data()

    mock_get.assert_not_called()
    assert result.provenance == "cached"
    assert result.from_cache is True
    assert (result.publications, result.citations, result.reads) == (7, 8, 9)
    assert result.last_updated == seeded.last_updated


def test_stale_cache_triggers_live_fetch_and_rewrites_cache() -> None:
    fetcher, store = _fetcher()
    _seed(store, timedelta(hours=25))

    with patch("proxy_transport.requests.get", return_value=_mock_resp(LIVE_PAGE)) as mock_get:
        result = fetcher.fetch_data()

    assert mock_get.call_count == 1
    assert result.provenance == "live"
    assert (result.publications, result.citations, result.reads) == (120, 2000, 30500)

    cached = MetricCache(store, key=KEY).read()
    assert cached is not None
    assert cached.publications == 120


def test_refresh_bypasses_fresh_cache_and_overwrites_it() -> None:
    fetcher, store = _fetcher()
    _seed(store, timedelta(minutes=5))

    with patch("proxy_transport.requests.get", return_value=_mock_resp(LIVE_PAGE)) as mock_get:
        result = fetcher.refresh_data()

    assert mock_get.call_count == 1
    assert result.provenance == "live"
    assert MetricCache(store, key=KEY).read().reads == 30500


def test_all_proxies_failing_returns_fallback_and_leaves_cache_alone(caplog: pytest.LogCaptureFixture) -> None:
    fetcher, store = _fetcher()

    with patch("proxy_transport.requests.get", side_effect=requests.ConnectionError("down")) as mock_get, \
         caplog.at_level("WARNING"):
        result = fetcher.fetch_data()

    assert mock_get.call_count == len(PROXIES)
    assert result.is_fallback is True
    assert result.from_cache is False
    assert (result.publications, result.citations, result.reads) == (105, 1041, 16593)
    assert store.items == {}
    assert any(r.levelname == "ERROR" and r.name == "data_fetcher" for r in caplog.records)


def test_all_zero_extraction_is_treated_as_failure() -> None:
    fetcher, store = _fetcher()

    with patch("proxy_transport.requests.get", return_value=_mock_resp("<html>maintenance</html>")):
        result = fetcher.fetch_data()

    assert result.provenance == "fallback"
    assert store.items == {}


def test_refresh_failure_drops_cache_and_falls_back() -> None:
    """Invalidation happens before the fetch, so a failed refresh leaves no cache behind."""
    fetcher, store = _fetcher()
    _seed(store, timedelta(minutes=5))

    with patch("proxy_transport.requests.get", side_effect=requests.Timeout("slow")):
        result = fetcher.refresh_data()

    assert result.is_fallback is True
    assert KEY not in store.items


def test_unexpected_errors_never_escape() -> None:
    def broken_extract(raw: str) -> MetricSnapshot:
        raise RuntimeError("parser exploded")

    fetcher = MetricsFetcher(
        MetricCache(InMemoryStore(), key=KEY),
        target_url=TARGET_URL,
        fetch=lambda url, proxies: "<html></html>",
        extract=broken_extract,
    )
    assert fetcher.fetch_data().is_fallback is True


def test_cache_read_crash_is_a_miss() -> None:
    cache = MagicMock()
    cache.read.side_effect = RuntimeError("store gone")
    fetcher = MetricsFetcher(cache, target_url=TARGET_URL, fetch=lambda url, proxies: LIVE_PAGE)

    result = fetcher.fetch_data()

    assert result.provenance == "live"
    cache.write.assert_called_once()


def test_fetch_receives_target_and_proxies() -> None:
    fetch = MagicMock(return_value=LIVE_PAGE)
    fetcher = MetricsFetcher(
        MetricCache(InMemoryStore(), key=KEY), target_url=TARGET_URL, proxies=PROXIES, fetch=fetch
    )
    fetcher.fetch_data()
    fetch.assert_called_once_with(TARGET_URL, PROXIES)


def test_second_call_after_live_fetch_is_cached() -> None:
    fetcher, _ = _fetcher()

    with patch("proxy_transport.requests.get", return_value=_mock_resp(LIVE_PAGE)) as mock_get:
        first = fetcher.fetch_data()
        second = fetcher.fetch_data()

    assert mock_get.call_count == 1
    assert first.provenance == "live"
    assert second.provenance == "cached"
    assert second.reads == first.reads


def test_fallback_snapshot_is_stamped_now() -> None:
    before = datetime.now(UTC)
    snapshot = fallback_snapshot()

    assert snapshot.provenance == "fallback"
    assert snapshot.publications == FALLBACK_COUNTS["publications"]
    assert before <= snapshot.last_updated <= datetime.now(UTC)


def test_build_default_fetcher_uses_file_store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(data_fetcher, "PROFILE_URL", TARGET_URL)
    fetcher = build_default_fetcher(cache_path=str(tmp_path / "cache.json"))

    assert isinstance(fetcher.cache.store, JsonFileStore)
    assert fetcher.cache.store.path == tmp_path / "cache.json"
    assert fetcher.target_url == TARGET_URL
    assert fetcher.proxies


class _QuotaStore(InMemoryStore):
    def set_item(self, key: str, value: str) -> None:
        raise RuntimeError("quota exceeded")


def test_cache_write_failure_still_returns_live_data() -> None:
    """Caching is best-effort: a store that refuses writes must not discard the fetched snapshot."""
    fetcher = MetricsFetcher(
        MetricCache(_QuotaStore(), key=KEY),
        target_url=TARGET_URL,
        fetch=lambda url, proxies: LIVE_PAGE,
    )

    result = fetcher.fetch_data()

    assert result.provenance == "live"
    assert (result.publications, result.citations, result.reads) == (120, 2000, 30500)


def test_corrupt_cache_file_does_not_disable_caching(tmp_path: Path) -> None:
    path = tmp_path / "cache.json"
    path.write_text("{not json", encoding="utf-8")
    fetch = MagicMock(return_value=LIVE_PAGE)
    fetcher = MetricsFetcher(MetricCache(JsonFileStore(path), key=KEY), target_url=TARGET_URL, fetch=fetch)

    first = fetcher.fetch_data()
    second = fetcher.fetch_data()

    assert first.provenance == "live"
    assert second.provenance == "cached"
    assert fetch.call_count == 1
