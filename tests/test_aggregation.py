import random

import pytest

from conductor.aggregation import AggregatedResult, aggregate
from conductor.findings import Finding, Severity


def _finding_sets(rng: random.Random) -> list[list[Finding]]:
    return [
        [
            Finding(
                category=rng.choice(["security", "style", "tests"]),
                severity=rng.choice(list(Severity)),
                confidence=round(rng.random(), 1),
                location=f"src/mod_{rng.randint(0, 3)}.py",
            )
            for _ in range(rng.randint(0, 8))
        ]
        for _ in range(rng.randint(1, 5))
    ]


def test_aggregate_scenario_dedups_and_sorts_by_severity() -> None:
    first = [
        Finding("security", Severity.CRITICAL, 0.9, "app.py:10", "sql injection"),
        Finding("style", Severity.MINOR, 0.9, "app.py:20", "long line"),
    ]
    second = [
        Finding("security", Severity.CRITICAL, 0.95, "app.py:10", "unsanitized query"),
        Finding("tests", Severity.MAJOR, 0.9, "tests/test_app.py", "missing case"),
        Finding("docs", Severity.INFO, 0.9, "README.md", "typo"),
    ]

    result = aggregate([first, second])

    assert len(result) == 4
    assert [finding.severity for finding in result] == [
        Severity.CRITICAL,
        Severity.MAJOR,
        Severity.MINOR,
        Severity.INFO,
    ]
    assert result.findings[0].detail == "unsanitized query"
    assert result.counts == {"docs": 1, "security": 1, "style": 1, "tests": 1}
    assert result.max_severity is Severity.CRITICAL
    assert result.count_at_least(Severity.MAJOR) == 2


def test_aggregate_tie_keeps_first_seen() -> None:
    first = Finding("security", Severity.MAJOR, 0.8, "a.py", "first")
    second = Finding("security", Severity.MAJOR, 0.8, "a.py", "second")

    assert aggregate([[first], [second]]).findings == (first,)
    assert aggregate([[second], [first]]).findings == (second,)


def test_aggregate_applies_threshold_before_dedup() -> None:
    low = Finding("style", Severity.MINOR, 0.2, "a.py")
    high = Finding("style", Severity.MAJOR, 0.7, "b.py")

    result = aggregate([[low, high]], threshold=0.5)

    assert result.findings == (high,)
    with pytest.raises(ValueError):
        aggregate([[low]], threshold=2.0)


def test_aggregate_is_idempotent() -> None:
    rng = random.Random(7)
    for _ in range(40):
        once = aggregate(_finding_sets(rng))
        assert aggregate([once.findings]) == once


def test_aggregate_ignores_finding_set_order() -> None:
    rng = random.Random(99)
    for _ in range(40):
        sets = _finding_sets(rng)
        baseline = aggregate(sets)
        shuffled = list(sets)
        rng.shuffle(shuffled)
        assert aggregate(shuffled) == baseline
        assert aggregate(list(reversed(sets))) == baseline


def test_aggregated_result_roundtrip_recomputes_counts() -> None:
    result = aggregate(
        [[Finding("style", Severity.MINOR, 0.5, "a.py"), Finding("style", Severity.INFO, 0.5)]]
    )

    restored = AggregatedResult.from_dict(result.to_dict())

    assert restored == result
    assert restored.counts == {"style": 2}
    assert aggregate([]).max_severity is None
