import random

import pytest

from conductor.aggregation import filter_by_confidence
from conductor.findings import Finding, Severity, findings_from_result, parse_findings


def _random_findings(rng: random.Random, count: int) -> list[Finding]:
    return [
        Finding(
            category=rng.choice(["security", "style", "tests"]),
            severity=rng.choice(list(Severity)),
            confidence=round(rng.random(), 2),
            location=f"src/mod_{rng.randint(0, 4)}.py:{rng.randint(1, 50)}",
        )
        for _ in range(count)
    ]


def test_filter_keeps_exactly_findings_at_or_above_threshold() -> None:
    rng = random.Random(1234)
    for _ in range(50):
        findings = _random_findings(rng, rng.randint(0, 25))
        threshold = round(rng.random(), 2)

        kept = filter_by_confidence(findings, threshold)

        assert kept == [finding for finding in findings if finding.confidence >= threshold]
        assert all(finding.confidence >= threshold for finding in kept)


def test_filter_threshold_edges() -> None:
    findings = [
        Finding("style", Severity.MINOR, 0.0),
        Finding("style", Severity.MINOR, 0.5, location="a"),
        Finding("style", Severity.MINOR, 1.0, location="b"),
    ]

    assert filter_by_confidence(findings, 0.0) == findings
    assert filter_by_confidence(findings, 0.5) == findings[1:]
    assert filter_by_confidence(findings, 1.0) == findings[2:]
    assert filter_by_confidence([], 0.7) == []


def test_filter_rejects_threshold_outside_unit_interval() -> None:
    with pytest.raises(ValueError):
        filter_by_confidence([], 1.5)
    with pytest.raises(ValueError):
        filter_by_confidence([], -0.1)


def test_finding_validates_confidence_and_parses_severity() -> None:
    with pytest.raises(ValueError):
        Finding("security", Severity.MAJOR, 1.2)
    with pytest.raises(ValueError):
        Finding("security", Severity.MAJOR, float("nan"))

    finding = Finding("security", "blocker", 0.9)  # type: ignore[arg-type]
    assert finding.severity is Severity.CRITICAL
    assert Severity.parse("suggestion") is Severity.INFO
    assert Severity.CRITICAL > Severity.MAJOR > Severity.MINOR > Severity.INFO


def test_finding_dict_roundtrip_uses_severity_names() -> None:
    finding = Finding("tests", Severity.MAJOR, 0.75, location="tests/test_x.py", detail="flaky")

    payload = finding.to_dict()

    assert payload["severity"] == "MAJOR"
    assert Finding.from_dict(payload) == finding


def test_findings_from_result_shapes() -> None:
    finding = Finding("style", Severity.INFO, 0.4)

    assert findings_from_result(None) == []
    assert findings_from_result("text output") == []
    assert findings_from_result(finding) == [finding]
    assert findings_from_result([finding, "ignored"]) == [finding]
    assert findings_from_result({"findings": [finding.to_dict()]}) == [finding]


def test_parse_findings_prefers_json_lines() -> None:
    output = "\n".join(
        [
            "running checks...",
            '{"severity": "CRITICAL", "confidence": 0.9, "location": "app.py:3", "detail": "sql"}',
            '{"findings": [{"category": "style", "severity": "MINOR", "confidence": 0.3}]}',
            "MAJOR: this line is ignored when JSON is present",
        ]
    )

    findings = parse_findings(output, default_category="security")

    assert [finding.severity for finding in findings] == [Severity.CRITICAL, Severity.MINOR]
    assert findings[0].category == "security"
    assert findings[0].location == "app.py:3"
    assert findings[1].category == "style"


def test_parse_findings_falls_back_to_severity_lines() -> None:
    output = "- BLOCKER: secret committed\n[MINOR] - naming\nnothing here\n"

    findings = parse_findings(output, default_confidence=0.6)

    assert [(finding.severity, finding.detail) for finding in findings] == [
        (Severity.CRITICAL, "secret committed"),
        (Severity.MINOR, "naming"),
    ]
    assert all(finding.confidence == 0.6 for finding in findings)
    assert all(finding.category == "review" for finding in findings)
