import asyncio

from mailflow.errors import RateLimitError, TransientServiceError, ValidationFailure
from mailflow.models import StageResult, WorkflowContext
from mailflow.retry import AttemptOutcome, RetryPolicy
from mailflow.stages.base import StageDefinition, StageExecutor


class ScriptedStage:
    """Raises the queued exceptions in order, then succeeds."""

    def __init__(self, failures: list[Exception]) -> None:
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self, context: WorkflowContext) -> StageResult:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return StageResult.ok({"value": self.calls})


def _run(policy: RetryPolicy, stage: StageDefinition, outcomes: list[AttemptOutcome], events: list):
    context = WorkflowContext({"topic": "x"})
    return asyncio.run(
        policy.run(
            StageExecutor(),
            stage,
            context,
            on_attempt=outcomes.append,
            event_hook=events.append,
        )
    )


def test_delays_grow_exponentially_and_are_capped() -> None:
    policy = RetryPolicy(max_retries=5, backoff_base_ms=500, max_backoff_ms=1500)

    assert [policy.delay_seconds(i) for i in range(4)] == [0.5, 1.0, 1.5, 1.5]


def test_transient_failure_is_retried_then_succeeds() -> None:
    sleeps: list[float] = []

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    behaviour = ScriptedStage([TransientServiceError("503", status_code=503)])
    stage = StageDefinition(name="pricing", execute=behaviour, max_retries=2, backoff_base_ms=100)
    outcomes: list[AttemptOutcome] = []
    events: list = []

    result = _run(RetryPolicy.for_stage(stage, sleep=_sleep), stage, outcomes, events)

    assert result.success is True
    assert behaviour.calls == 2
    assert [outcome.attempt for outcome in outcomes] == [1, 2]
    assert [outcome.result.success for outcome in outcomes] == [False, True]
    assert sleeps == [0.1]
    assert [event["event"] for event in events] == ["stage_retry"]


def test_retries_exhausted_after_max_retries_plus_one_attempts() -> None:
    async def _sleep(delay: float) -> None:
        return None

    behaviour = ScriptedStage([TransientServiceError("down")] * 5)
    stage = StageDefinition(name="pricing", execute=behaviour, max_retries=2, backoff_base_ms=0)
    outcomes: list[AttemptOutcome] = []

    result = _run(RetryPolicy.for_stage(stage, sleep=_sleep), stage, outcomes, [])

    assert result.success is False
    assert result.retries_exhausted is True
    assert behaviour.calls == 3
    assert len(outcomes) == 3
    assert outcomes[-1].result.retries_exhausted is True


def test_non_retriable_failure_returns_immediately() -> None:
    async def _sleep(delay: float) -> None:
        raise AssertionError("should not sleep")

    behaviour = ScriptedStage([ValidationFailure("bad input")])
    stage = StageDefinition(name="content", execute=behaviour, max_retries=3)
    outcomes: list[AttemptOutcome] = []

    result = _run(RetryPolicy.for_stage(stage, sleep=_sleep), stage, outcomes, [])

    assert result.success is False
    assert result.error_kind == "validation"
    assert result.retries_exhausted is False
    assert behaviour.calls == 1
    assert len(outcomes) == 1


def test_retry_after_stretches_backoff_up_to_the_cap() -> None:
    policy = RetryPolicy(max_retries=3, backoff_base_ms=100, max_backoff_ms=5000)

    assert policy.delay_seconds(0, retry_after=2.0) == 2.0
    assert policy.delay_seconds(0, retry_after=0.01) == 0.1
    assert policy.delay_seconds(0, retry_after=60.0) == 5.0


def test_rate_limited_stage_waits_as_asked() -> None:
    sleeps: list[float] = []

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    behaviour = ScriptedStage(
        [RateLimitError("slow down", retry_after=4.0), RateLimitError("slow down")]
    )
    stage = StageDefinition(name="pricing", execute=behaviour, max_retries=2, backoff_base_ms=100)
    outcomes: list[AttemptOutcome] = []
    events: list = []

    result = _run(RetryPolicy.for_stage(stage, sleep=_sleep), stage, outcomes, events)

    assert result.success is True
    assert outcomes[0].result.error_kind == "rate_limit"
    assert outcomes[0].result.retry_after == 4.0
    assert sleeps == [4.0, 0.2]
    assert events[0]["delay_seconds"] == 4.0
