"""CLI entrypoint that fetches and displays the profile metrics."""

from __future__ import annotations

import argparse
import json
import logging
import os
import time
from collections.abc import Callable

from dotenv import load_dotenv

from data_fetcher import MetricsFetcher, build_default_fetcher
from models import MetricSnapshot

POLL_INTERVAL_MINUTES = float(os.getenv("POLL_INTERVAL_MINUTES", "30"))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Fetch publication, citation and read counts for a profile")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Ignore the cached snapshot and fetch live data",
    )
    parser.add_argument("--json", action="store_true", help="Print the snapshot as JSON")
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and re-check on a fixed interval (served from cache while fresh)",
    )
    parser.add_argument(
        "--interval-minutes",
        type=float,
        default=POLL_INTERVAL_MINUTES,
        help="Polling interval for --watch (default: POLL_INTERVAL_MINUTES or 30)",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Stop --watch after this many polls (default: run forever)",
    )
    parser.add_argument("--cache-path", default=None, help="Override METRICS_CACHE_PATH")
    return parser.parse_args(argv)


def format_count(value: int) -> str:
    return f"{value:,}"


def render_status(snapshot: MetricSnapshot) -> str:
    """Pick the status line the way the profile page does."""
    if snapshot.from_cache:
        cached_time = snapshot.last_updated.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        return f"Data cached from {cached_time} | run with --refresh to refresh"
    if snapshot.is_fallback:
        return "Using fallback data | run with --refresh to retry"
    return f"Data updated: {snapshot.last_updated.astimezone().strftime('%Y-%m-%d %H:%M:%S')}"


def render(snapshot: MetricSnapshot, as_json: bool = False) -> str:
    if as_json:
        return json.dumps(snapshot.as_display_dict(), indent=2)

    return "\n".join(
        [
            f"Publications: {format_count(snapshot.publications)}",
            f"Citations:    {format_count(snapshot.citations)}",
            f"Reads:        {format_count(snapshot.reads)}",
            render_status(snapshot),
        ]
    )


def run_periodic(
    fetcher: MetricsFetcher,
    interval_minutes: float,
    iterations: int | None = None,
    on_snapshot: Callable[[MetricSnapshot], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Sleep one interval, then re-invoke fetch_data; returns the number of polls made.

    Most polls are answered from cache. Only snapshots that did not come from
    the cache are logged and handed to on_snapshot.
    """
    polls = 0
    while iterations is None or polls < iterations:
        sleep(interval_minutes * 60)
        snapshot = fetcher.fetch_data()
        polls += 1
        if not snapshot.from_cache:
            logging.info("Auto-refreshed data: %s", snapshot.as_display_dict())
            if on_snapshot is not None:
                on_snapshot(snapshot)
    return polls


def main(argv: list[str] | None = None) -> None:
    """Initialize config and display the metrics."""
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    args = parse_args(argv)

    fetcher = build_default_fetcher(cache_path=args.cache_path)
    snapshot = fetcher.refresh_data() if args.refresh else fetcher.fetch_data()
    print(render(snapshot, as_json=args.json))

    if args.watch:
        try:
            run_periodic(
                fetcher,
                interval_minutes=args.interval_minutes,
                iterations=args.iterations,
                on_snapshot=lambda s: print(render(s, as_json=args.json)),
            )
        except KeyboardInterrupt:
            logging.info("Watch stopped")


if __name__ == "__main__":
    main()
