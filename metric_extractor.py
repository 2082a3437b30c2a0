"""Heuristic extraction of profile counts from unversioned third-party markup."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from models import LIVE, METRIC_FIELDS, MetricSnapshot

LOGGER = logging.getLogger(__name__)

ExtractorRule = Callable[[str], dict[str, int]]

_COUNT = r"(\d[\d,]*)"
_LABELS: dict[str, str] = {
    "publications": "Publications",
    "citations": "Citations",
    "reads": "Reads",
}

# Positional fallback only looks at the first few bare numbers on the page.
_POSITIONAL_WINDOW = 5
_POSITIONAL_MIN_TOKENS = 3
_BARE_NUMBER_RE = re.compile(r">\s*(\d[\d,]*)\s*<", re.ASCII)


@dataclass(frozen=True, slots=True)
class LabeledPatternRule:
    """One extraction rule: a regex per metric whose first group is the count."""

    name: str
    patterns: Mapping[str, re.Pattern[str]]

    def __call__(self, raw_text: str) -> dict[str, int]:
        found: dict[str, int] = {}
        for metric, pattern in self.patterns.items():
            match = pattern.search(raw_text)
            if not match:
                continue
            value = parse_count(match.group(1))
            if value is not None:
                found[metric] = value
        return found


def _label_rule(name: str, template: str, metrics: tuple[str, ...] = METRIC_FIELDS) -> LabeledPatternRule:
    return LabeledPatternRule(
        name=name,
        patterns={
            metric: re.compile(template.format(label=_LABELS[metric], count=_COUNT), re.IGNORECASE | re.ASCII)
            for metric in metrics
        },
    )


# Adjacent forms must run before the loose "label, end of tag, next number"
# form, which can reach into a neighbouring metric. The lookbehind keeps it
# off digits inside tag names and class tokens (h3, grey-700).
PARENTHESIZED_RULE = _label_rule("parenthesized", r"\b{label}\s*\(\s*{count}\s*\)")
COUNT_BEFORE_LABEL_RULE = _label_rule("count_before_label", r"{count}\s*{label}\b")
LABEL_BEFORE_COUNT_RULE = _label_rule(
    "label_before_count",
    r"\b{label}\b[^>]*>[\s\S]*?(?<![\w-]){count}",
    metrics=("citations", "reads"),
)
STYLED_SPAN_RULE = LabeledPatternRule(
    name="styled_span",
    patterns={
        "publications": re.compile(
            r'class="nova-legacy-e-text nova-legacy-e-text--size-xl[^"]*"[^>]*>\s*' + _COUNT + r"\s*<",
            re.ASCII,
        ),
        "citations": re.compile(
            r'class="nova-legacy-e-text[^"]*nova-legacy-e-text--color-grey-700[^"]*"[^>]*>\s*'
            + _COUNT
            + r"\s*<",
            re.ASCII,
        ),
    },
)

LABELED_RULES: tuple[ExtractorRule, ...] = (
    PARENTHESIZED_RULE,
    COUNT_BEFORE_LABEL_RULE,
    LABEL_BEFORE_COUNT_RULE,
    STYLED_SPAN_RULE,
)


def parse_count(raw: str) -> int | None:
    """Strip thousands separators and parse; None for anything non-numeric."""
    cleaned = raw.replace(",", "").strip()
    if not (cleaned.isascii() and cleaned.isdecimal()):
        return None
    return int(cleaned)


def apply_rules(raw_text: str, rules: tuple[ExtractorRule, ...] = LABELED_RULES) -> dict[str, int]:
    """Run rules in priority order; for each metric the first rule to yield a value wins."""
    resolved: dict[str, int] = {}
    for rule in rules:
        if all(metric in resolved for metric in METRIC_FIELDS):
            break
        for metric, value in rule(raw_text).items():
            resolved.setdefault(metric, value)
    return resolved


def positional_rule(raw_text: str) -> dict[str, int]:
    """Rank the first bare numeric element texts when no label survived.

    Largest goes to publications, second to reads, third to citations.
    """
    tokens = _BARE_NUMBER_RE.findall(raw_text)
    if len(tokens) < _POSITIONAL_MIN_TOKENS:
        return {}

    numbers = [parse_count(token) for token in tokens[:_POSITIONAL_WINDOW]]
    positives = [value for value in numbers if value is not None and value > 0]
    if len(positives) < _POSITIONAL_MIN_TOKENS:
        return {}

    positives.sort(reverse=True)
    return {
        "publications": positives[0],
        "reads": positives[1],
        "citations": positives[2],
    }


def extract_metrics(raw_text: str, now: datetime | None = None) -> MetricSnapshot:
    """Derive the three counts from raw markup. Never raises.

    An all-zero result means no confident signal was found; deciding what to
    do about it is left to the caller.
    """
    counts = apply_rules(raw_text or "")
    strategy = "labeled"

    if not any(counts.get(metric, 0) > 0 for metric in METRIC_FIELDS):
        counts = positional_rule(raw_text or "")
        strategy = "positional"

    snapshot = MetricSnapshot(
        publications=counts.get("publications", 0),
        citations=counts.get("citations", 0),
        reads=counts.get("reads", 0),
        last_updated=now or datetime.now(UTC),
        provenance=LIVE,
    )
    LOGGER.info(
        "Extract: strategy=%s publications=%s citations=%s reads=%s",
        strategy if snapshot.has_signal() else "none",
        snapshot.publications,
        snapshot.citations,
        snapshot.reads,
    )
    return snapshot
