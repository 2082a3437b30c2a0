"""Fetch a page through an ordered list of CORS relay endpoints."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from urllib.parse import quote

import requests

# Public relays that forward a GET for the percent-encoded URL appended to
# their prefix. Order matters: later relays are only tried after earlier ones fail.
DEFAULT_PROXIES: tuple[str, ...] = (
    "https://api.allorigins.win/raw?url=",
    "https://corsproxy.io/?",
    "https://api.codetabs.com/v1/proxy?quest=",
)
REQUEST_TIMEOUT_SECONDS = float(os.getenv("PROXY_TIMEOUT_SECONDS", "10"))
REQUEST_HEADERS = {"Accept": "text/html,application/xhtml+xml"}
_CHUNK_SIZE = 16 * 1024

LOGGER = logging.getLogger(__name__)


class ProxyAttemptFailed(RuntimeError):
    """A single relay failed: network error, timeout, or non-2xx status."""

    def __init__(self, proxy: str, reason: str) -> None:
        super().__init__(f"Proxy {proxy} failed: {reason}")
        self.proxy = proxy
        self.reason = reason


class AllProxiesExhausted(RuntimeError):
    """Every configured relay failed for a target URL."""

    def __init__(self, target_url: str, failures: list[ProxyAttemptFailed]) -> None:
        super().__init__(f"All CORS proxies failed for {target_url} ({len(failures)} attempted)")
        self.target_url = target_url
        self.failures = failures


@dataclass(frozen=True, slots=True)
class ProxyFetchResult:
    """Outcome of walking the relay list: the first success, or every failure."""

    target_url: str
    text: str | None = None
    proxy: str | None = None
    failures: list[ProxyAttemptFailed] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.text is not None


def configured_proxies() -> tuple[str, ...]:
    """Return relay prefixes from METRICS_PROXIES, or the defaults when unset."""
    raw = os.getenv("METRICS_PROXIES", "")
    proxies = tuple(item.strip() for item in raw.split(",") if item.strip())
    return proxies or DEFAULT_PROXIES


def build_proxy_url(proxy: str, target_url: str) -> str:
    return proxy + quote(target_url, safe="")


def try_proxies(target_url: str, proxies: tuple[str, ...] | list[str] | None = None) -> ProxyFetchResult:
    """Try each relay in order and stop at the first success.

    Attempts are strictly sequential. Each failure is logged as a warning and
    recorded on the result; it never propagates.
    """
    if proxies is None:
        proxies = configured_proxies()

    failures: list[ProxyAttemptFailed] = []
    for proxy in proxies:
        try:
            text = _attempt(proxy, target_url)
        except ProxyAttemptFailed as exc:
            failures.append(exc)
            LOGGER.warning("%s", exc)
            continue

        LOGGER.info("Proxy fetch: succeeded via %s after %s failed attempt(s)", proxy, len(failures))
        return ProxyFetchResult(target_url=target_url, text=text, proxy=proxy, failures=failures)

    return ProxyFetchResult(target_url=target_url, failures=failures)


def fetch_via_proxies(target_url: str, proxies: tuple[str, ...] | list[str] | None = None) -> str:
    """Return the raw page text from the first relay that answers with 2xx.

    Raises:
        AllProxiesExhausted: when every relay failed.
    """
    result = try_proxies(target_url, proxies)
    if not result.ok:
        raise AllProxiesExhausted(target_url, result.failures)
    return result.text


def _attempt(proxy: str, target_url: str) -> str:
    """One relay request, bounded by REQUEST_TIMEOUT_SECONDS end to end.

    requests applies its timeout per connect and per read, so the body is
    streamed and the overall deadline is checked after every chunk.
    """
    deadline = time.monotonic() + REQUEST_TIMEOUT_SECONDS
    try:
        response = requests.get(
            build_proxy_url(proxy, target_url),
            headers=REQUEST_HEADERS,
            timeout=REQUEST_TIMEOUT_SECONDS,
            stream=True,
        )
        try:
            response.raise_for_status()
            # raise_for_status lets 1xx/3xx through; only 2xx counts as success.
            if not 200 <= response.status_code < 300:
                raise ProxyAttemptFailed(proxy, f"HTTP {response.status_code}")

            chunks: list[bytes] = []
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                if time.monotonic() > deadline:
                    raise ProxyAttemptFailed(proxy, f"timed out after {REQUEST_TIMEOUT_SECONDS}s")
                chunks.append(chunk)
        finally:
            response.close()
    except requests.Timeout as exc:
        raise ProxyAttemptFailed(proxy, f"timed out after {REQUEST_TIMEOUT_SECONDS}s") from exc
    except requests.RequestException as exc:
        raise ProxyAttemptFailed(proxy, str(exc)) from exc

    return _decode(b"".join(chunks), response.encoding)


def _decode(body: bytes, encoding: str | None) -> str:
    try:
        return body.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")
