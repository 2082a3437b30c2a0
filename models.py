"""Shared typed models for the metrics pipeline."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Literal

Provenance = Literal["live", "cached", "fallback"]

LIVE: Provenance = "live"
CACHED: Provenance = "cached"
FALLBACK: Provenance = "fallback"

METRIC_FIELDS: tuple[str, ...] = ("publications", "citations", "reads")


@dataclass(frozen=True, slots=True)
class MetricSnapshot:
    """One complete set of the three profile counts plus the time it was taken.

    ``provenance`` describes how the snapshot reached the caller and is never
    persisted.
    """

    publications: int
    citations: int
    reads: int
    last_updated: datetime
    provenance: Provenance = LIVE

    def __post_init__(self) -> None:
        for name in METRIC_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{name} cannot be negative, got {value}")
        if self.provenance not in (LIVE, CACHED, FALLBACK):
            raise ValueError(f"Unknown provenance: {self.provenance!r}")

    @property
    def from_cache(self) -> bool:
        return self.provenance == CACHED

    @property
    def is_fallback(self) -> bool:
        return self.provenance == FALLBACK

    def has_signal(self) -> bool:
        """Return True if at least one count is non-zero."""
        return any(getattr(self, name) > 0 for name in METRIC_FIELDS)

    def with_provenance(self, provenance: Provenance) -> MetricSnapshot:
        return replace(self, provenance=provenance)

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted form (no provenance)."""
        return {
            "publications": self.publications,
            "citations": self.citations,
            "reads": self.reads,
            "lastUpdated": format_timestamp(self.last_updated),
        }

    def as_display_dict(self) -> dict[str, Any]:
        """Persisted fields plus the status flags the display layer reads."""
        payload = self.to_dict()
        payload["fromCache"] = self.from_cache
        payload["isFallback"] = self.is_fallback
        return payload

    @classmethod
    def from_dict(cls, payload: Any, provenance: Provenance = CACHED) -> MetricSnapshot:
        """Parse a persisted snapshot, raising ValueError on any structural problem."""
        if not isinstance(payload, dict):
            raise ValueError("Snapshot payload must be a JSON object")

        missing = [key for key in (*METRIC_FIELDS, "lastUpdated") if key not in payload]
        if missing:
            raise ValueError(f"Snapshot payload missing keys: {', '.join(missing)}")

        return cls(
            publications=payload["publications"],
            citations=payload["citations"],
            reads=payload["reads"],
            last_updated=parse_timestamp(payload["lastUpdated"]),
            provenance=provenance,
        )


def format_timestamp(value: datetime) -> str:
    """Format as an ISO-8601 UTC instant, e.g. ``2026-10-19T08:15:00.000Z``."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(raw: Any) -> datetime:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"Invalid timestamp: {raw!r}")

    # Stored timestamps carry a trailing Z like JavaScript's toISOString().
    parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
