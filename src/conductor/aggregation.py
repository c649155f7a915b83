from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from conductor.findings import Finding, Severity


def _check_threshold(threshold: float) -> float:
    value = float(threshold)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"Confidence threshold must be within [0, 1], got {threshold!r}")
    return value


def filter_by_confidence(findings: Iterable[Finding], threshold: float) -> list[Finding]:
    """Return the findings whose confidence is at least ``threshold``, in input order."""
    minimum = _check_threshold(threshold)
    return [finding for finding in findings if finding.confidence >= minimum]


def _sort_key(finding: Finding) -> tuple[int, float, str, str, str]:
    return (
        -int(finding.severity),
        -finding.confidence,
        finding.category,
        finding.location,
        finding.detail,
    )


@dataclass(slots=True, frozen=True)
class AggregatedResult:
    findings: tuple[Finding, ...] = ()
    counts: dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.findings)

    def __iter__(self) -> Iterator[Finding]:
        return iter(self.findings)

    @property
    def max_severity(self) -> Severity | None:
        if not self.findings:
            return None
        return max(finding.severity for finding in self.findings)

    def count_at_least(self, severity: Severity) -> int:
        return sum(1 for finding in self.findings if finding.severity >= severity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "findings": [finding.to_dict() for finding in self.findings],
            "counts": dict(self.counts),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AggregatedResult:
        raw = data.get("findings", [])
        findings = tuple(Finding.from_dict(item) for item in raw if isinstance(item, Mapping))
        return cls(findings=findings, counts=_category_counts(findings))


def _category_counts(findings: Sequence[Finding]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for finding in findings:
        counts[finding.category] = counts.get(finding.category, 0) + 1
    return dict(sorted(counts.items()))


def aggregate(
    finding_sets: Iterable[Iterable[Finding]],
    threshold: float = 0.0,
) -> AggregatedResult:
    """Merge findings from several workers into one deduplicated, ordered result.

    Duplicates share category, location and severity; the most confident one is
    kept and the first seen wins ties. Output is ordered by severity, then
    confidence, both descending.
    """
    minimum = _check_threshold(threshold)
    kept: dict[tuple[str, str, Severity], Finding] = {}
    for finding_set in finding_sets:
        for finding in finding_set:
            if finding.confidence < minimum:
                continue
            key = finding.dedup_key
            current = kept.get(key)
            if current is None or finding.confidence > current.confidence:
                kept[key] = finding

    ordered = tuple(sorted(kept.values(), key=_sort_key))
    return AggregatedResult(findings=ordered, counts=_category_counts(ordered))
