"""Configurable online / in-store classification of opportunities.

There is no canonical answer to whether a WhatsApp-sourced sale that closed at
the counter is "online" or "in-store", so the split is driven by explicit
rules the administrators can edit. A record may land in both buckets or in
neither; both outcomes are reported as-is.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from .models import Opportunity

logger = logging.getLogger(__name__)

ONLINE = "online"
IN_STORE = "in_store"
UNCLASSIFIED = "unclassified"
BUCKETS: tuple[str, ...] = (ONLINE, IN_STORE)
BUCKET_LABELS = {
    ONLINE: "Online",
    IN_STORE: "Manual / in-store",
    UNCLASSIFIED: "Unclassified",
}
RULE_FIELDS: tuple[str, ...] = ("source", "sales_channel")


class ClassificationRuleError(ValueError):
    """Raised for rules that reference unknown fields or buckets."""


@dataclass(frozen=True)
class ClassificationRule:
    field: str
    pattern: str
    bucket: str

    def __post_init__(self) -> None:
        if self.field not in RULE_FIELDS:
            raise ClassificationRuleError(f"Unknown rule field: {self.field!r}")
        if self.bucket not in BUCKETS:
            raise ClassificationRuleError(f"Unknown bucket: {self.bucket!r}")
        if not self.pattern.strip():
            raise ClassificationRuleError("Rule pattern cannot be empty")

    def matches(self, record: Opportunity) -> bool:
        value = getattr(record, self.field, "") or ""
        return self.pattern.strip().lower() in value.lower()


DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("source", "Social media", ONLINE),
    ClassificationRule("source", "Google", ONLINE),
    ClassificationRule("source", "Marketplace", ONLINE),
    ClassificationRule("source", "WhatsApp", ONLINE),
    ClassificationRule("sales_channel", "WhatsApp", ONLINE),
    ClassificationRule("sales_channel", "Website", ONLINE),
    ClassificationRule("sales_channel", "Marketplace", ONLINE),
    ClassificationRule("source", "Walk-in", IN_STORE),
    ClassificationRule("sales_channel", "In-store", IN_STORE),
    ClassificationRule("sales_channel", "Phone", IN_STORE),
)


def classify(record: Opportunity, rules: Sequence[ClassificationRule]) -> frozenset[str]:
    """Return every bucket whose rules match ``record``."""

    return frozenset(rule.bucket for rule in rules if rule.matches(record))


def bucket_label(buckets: frozenset[str]) -> str:
    if not buckets:
        return BUCKET_LABELS[UNCLASSIFIED]
    return " + ".join(BUCKET_LABELS[bucket] for bucket in BUCKETS if bucket in buckets)


def filter_by_bucket(
    records: Iterable[Opportunity],
    bucket: Optional[str],
    rules: Sequence[ClassificationRule],
) -> list[Opportunity]:
    """Keep records in ``bucket``; ``None`` keeps everything."""

    if bucket is None:
        return list(records)
    if bucket == UNCLASSIFIED:
        return [record for record in records if not classify(record, rules)]
    if bucket not in BUCKETS:
        raise ClassificationRuleError(f"Unknown bucket: {bucket!r}")
    return [record for record in records if bucket in classify(record, rules)]


def bucket_counts(records: Iterable[Opportunity], rules: Sequence[ClassificationRule]) -> dict[str, int]:
    counts = {ONLINE: 0, IN_STORE: 0, UNCLASSIFIED: 0, "overlap": 0}
    for record in records:
        buckets = classify(record, rules)
        if not buckets:
            counts[UNCLASSIFIED] += 1
            continue
        for bucket in buckets:
            counts[bucket] += 1
        if len(buckets) > 1:
            counts["overlap"] += 1
    return counts


def rules_from_dicts(items: Iterable[Any]) -> list[ClassificationRule]:
    rules = []
    for item in items:
        if not isinstance(item, Mapping):
            raise ClassificationRuleError(f"Rule must be an object, got {item!r}")
        try:
            rules.append(
                ClassificationRule(
                    field=str(item["field"]).strip(),
                    pattern=str(item["pattern"]),
                    bucket=str(item["bucket"]).strip(),
                )
            )
        except KeyError as exc:
            raise ClassificationRuleError(f"Rule is missing {exc.args[0]!r}") from None
    return rules


def load_rules(path: Path) -> list[ClassificationRule]:
    """Read rules from ``path``, falling back to the defaults when absent."""

    if not path.exists():
        return list(DEFAULT_RULES)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError):
        logger.warning("Could not read classification rules from %s; using defaults", path)
        return list(DEFAULT_RULES)
    if not isinstance(data, list):
        logger.warning("Classification rules in %s are not a list; using defaults", path)
        return list(DEFAULT_RULES)
    return rules_from_dicts(data)


def save_rules(path: Path, rules: Sequence[ClassificationRule]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        json.dump([asdict(rule) for rule in rules], handle, ensure_ascii=False, indent=2)
    temp_path.replace(path)
    logger.info("Saved %d classification rules to %s", len(rules), path)
