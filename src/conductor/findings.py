from __future__ import annotations

import json
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

SEVERITY_LINE_PATTERN = re.compile(
    r"^\s*(?:[-*]\s*)?\[?(BLOCKER|CRITICAL|MAJOR|MINOR|SUGGESTION|INFO)\]?\s*[:\-]\s*(.+)$",
    re.IGNORECASE,
)


class Severity(IntEnum):
    INFO = 1
    MINOR = 2
    MAJOR = 3
    CRITICAL = 4

    @classmethod
    def parse(cls, value: Any) -> Severity:
        if isinstance(value, Severity):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        normalized = str(value).strip().upper()
        aliases = {"BLOCKER": "CRITICAL", "SUGGESTION": "INFO"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls[normalized]
        except KeyError as exc:
            raise ValueError(f"Unknown severity: {value!r}") from exc


@dataclass(slots=True, frozen=True)
class Finding:
    category: str
    severity: Severity
    confidence: float
    location: str = ""
    detail: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.severity, Severity):
            object.__setattr__(self, "severity", Severity.parse(self.severity))
        confidence = float(self.confidence)
        if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Finding confidence must be within [0, 1], got {self.confidence!r}")
        object.__setattr__(self, "confidence", confidence)

    @property
    def dedup_key(self) -> tuple[str, str, Severity]:
        return (self.category, self.location, self.severity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "severity": self.severity.name,
            "confidence": self.confidence,
            "location": self.location,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Finding:
        return cls(
            category=str(data.get("category", "general")),
            severity=Severity.parse(data.get("severity", Severity.INFO)),
            confidence=float(data.get("confidence", 1.0)),
            location=str(data.get("location", "")),
            detail=str(data.get("detail", "")),
        )


def findings_from_result(result: Any) -> list[Finding]:
    """Pull findings out of an executor result.

    Accepts a sequence of findings, an object exposing ``findings``, or a mapping
    with a ``findings`` list of finding dicts. Anything else yields nothing.
    """
    if result is None or isinstance(result, (str, bytes)):
        return []
    if isinstance(result, Finding):
        return [result]
    if isinstance(result, Mapping):
        items = result.get("findings")
    elif hasattr(result, "findings"):
        items = getattr(result, "findings")
    elif isinstance(result, (list, tuple)):
        items = result
    else:
        return []
    if not isinstance(items, Iterable) or isinstance(items, (str, bytes)):
        return []

    findings: list[Finding] = []
    for item in items:
        if isinstance(item, Finding):
            findings.append(item)
        elif isinstance(item, Mapping):
            findings.append(Finding.from_dict(item))
    return findings


def parse_findings(
    raw_text: str,
    *,
    default_category: str = "review",
    default_confidence: float = 0.5,
) -> list[Finding]:
    """Parse findings from worker output.

    JSON lines carrying either a single finding or a ``findings`` list win; when
    none are present, ``SEVERITY: detail`` lines are read as low-certainty findings.
    """
    structured: list[Finding] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        items = payload.get("findings")
        if isinstance(items, list):
            for item in items:
                if isinstance(item, dict) and "severity" in item:
                    structured.append(_finding_with_defaults(item, default_category))
            continue
        if "severity" in payload:
            structured.append(_finding_with_defaults(payload, default_category))

    if structured:
        return structured

    findings: list[Finding] = []
    for raw_line in raw_text.splitlines():
        match = SEVERITY_LINE_PATTERN.match(raw_line)
        if match is None:
            continue
        findings.append(
            Finding(
                category=default_category,
                severity=Severity.parse(match.group(1)),
                confidence=default_confidence,
                detail=match.group(2).strip(),
            )
        )
    return findings


def _finding_with_defaults(item: dict[str, Any], default_category: str) -> Finding:
    payload = dict(item)
    payload.setdefault("category", default_category)
    return Finding.from_dict(payload)
