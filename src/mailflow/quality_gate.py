from __future__ import annotations

from dataclasses import dataclass

from mailflow.models import QualityGateDecision

DEFAULT_THRESHOLD = 70.0
DEFAULT_MAX_QUALITY_ITERATIONS = 3

RATING_BANDS: tuple[tuple[float, str], ...] = (
    (85.0, "excellent"),
    (70.0, "good"),
    (50.0, "needs_improvement"),
)


def rate_score(score: float) -> str:
    for floor, label in RATING_BANDS:
        if score >= floor:
            return label
    return "poor"


@dataclass(slots=True, frozen=True)
class QualityGate:
    """Turns a 0-100 quality score into pass / iterate / escalate.

    ``attempt`` is the 1-based number of attempts already made for the
    gated stage. A score under ``hard_floor`` escalates at once.
    """

    threshold: float = DEFAULT_THRESHOLD
    max_quality_iterations: int = DEFAULT_MAX_QUALITY_ITERATIONS
    hard_floor: float = 0.0

    def evaluate(
        self,
        score: float,
        attempt: int,
        *,
        threshold: float | None = None,
        max_quality_iterations: int | None = None,
    ) -> QualityGateDecision:
        limit = self.threshold if threshold is None else threshold
        iterations = (
            self.max_quality_iterations
            if max_quality_iterations is None
            else max_quality_iterations
        )
        value = float(score)
        if not 0.0 <= value <= 100.0:
            raise ValueError(f"Quality score must be within 0-100, got {score!r}")
        if attempt < 1:
            raise ValueError(f"Quality gate attempt is 1-based, got {attempt}")

        passed = value >= limit
        should_retry = False
        escalate = False
        if not passed:
            if attempt < max(1, iterations) and value >= self.hard_floor:
                should_retry = True
            else:
                escalate = True
        return QualityGateDecision(
            passed=passed,
            should_retry_stage=should_retry,
            escalate=escalate,
            score=value,
            threshold=float(limit),
            attempt=attempt,
            rating=rate_score(value),
        )
