import pytest

from mailflow.quality_gate import QualityGate, rate_score


def test_passing_score_passes_regardless_of_attempt() -> None:
    gate = QualityGate(threshold=70.0, max_quality_iterations=3)

    for attempt in (1, 2, 3, 7):
        decision = gate.evaluate(70.0, attempt)
        assert decision.passed is True
        assert decision.should_retry_stage is False
        assert decision.escalate is False


def test_failing_score_retries_until_iterations_exhausted() -> None:
    gate = QualityGate(threshold=70.0, max_quality_iterations=3)

    first = gate.evaluate(55.0, 1)
    second = gate.evaluate(60.0, 2)
    third = gate.evaluate(65.0, 3)

    assert first.should_retry_stage and not first.escalate
    assert second.should_retry_stage and not second.escalate
    assert third.escalate and not third.should_retry_stage


def test_decisions_are_mutually_exclusive() -> None:
    gate = QualityGate()
    for score in (0.0, 30.0, 69.9, 70.0, 100.0):
        for attempt in (1, 2, 3, 4):
            decision = gate.evaluate(score, attempt)
            flags = [decision.passed, decision.should_retry_stage, decision.escalate]
            assert flags.count(True) == 1


def test_hard_floor_escalates_immediately() -> None:
    gate = QualityGate(threshold=70.0, max_quality_iterations=3, hard_floor=40.0)

    decision = gate.evaluate(20.0, 1)

    assert decision.escalate is True
    assert decision.should_retry_stage is False


def test_per_call_overrides() -> None:
    gate = QualityGate(threshold=70.0, max_quality_iterations=3)

    decision = gate.evaluate(75.0, 1, threshold=80.0, max_quality_iterations=1)

    assert decision.passed is False
    assert decision.escalate is True
    assert decision.threshold == 80.0


@pytest.mark.parametrize("score", [-1.0, 100.5])
def test_out_of_range_scores_are_rejected(score: float) -> None:
    with pytest.raises(ValueError):
        QualityGate().evaluate(score, 1)


def test_attempt_is_one_based() -> None:
    with pytest.raises(ValueError):
        QualityGate().evaluate(80.0, 0)


@pytest.mark.parametrize(
    ("score", "rating"),
    [(92.0, "excellent"), (85.0, "excellent"), (70.0, "good"), (50.0, "needs_improvement"), (10.0, "poor")],
)
def test_rating_bands(score: float, rating: str) -> None:
    assert rate_score(score) == rating
    assert QualityGate().evaluate(score, 1).rating == rating
