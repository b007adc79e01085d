import asyncio
from typing import Any

import pytest

from mailflow.coordinator import HandoffCoordinator
from mailflow.errors import TransientServiceError
from mailflow.models import CampaignBrief, StageResult, WorkflowContext, WorkflowStatus
from mailflow.stages.base import StageDefinition, StageExecutor
from mailflow.stages.content import ContentStage
from mailflow.stages.pricing import PricingStage

from fakes import FakeContentGenerator, FakePricingClient


async def _no_sleep(delay: float) -> None:
    return None


def _coordinator(pipeline: list[StageDefinition], **kwargs: Any) -> HandoffCoordinator:
    kwargs.setdefault("sleep", _no_sleep)
    return HandoffCoordinator(pipeline, **kwargs)


def _writer(key: str, value: Any):
    async def _execute(context: WorkflowContext) -> StageResult:
        return StageResult.ok({key: value})

    return _execute


def _scorer(scores: list[float]):
    remaining = list(scores)

    async def _execute(context: WorkflowContext) -> StageResult:
        score = remaining.pop(0)
        return StageResult.ok({"quality": {"score": score}}, quality_score=score)

    return _execute


def _three_stage_pipeline(scores: list[float]) -> list[StageDefinition]:
    return [
        StageDefinition(name="content", execute=_writer("content", {"subject": "Hi"})),
        StageDefinition(name="design", execute=_writer("email", {"html": "<p>Hi</p>"})),
        StageDefinition(
            name="quality",
            execute=_scorer(scores),
            is_gated=True,
            threshold=70.0,
            max_quality_iterations=3,
        ),
    ]


def test_passing_quality_score_succeeds_without_retries() -> None:
    coordinator = _coordinator(_three_stage_pipeline([85.0]))

    report = asyncio.run(coordinator.run({"topic": "Sochi"}))

    assert report.status == WorkflowStatus.SUCCEEDED
    assert [entry.stage for entry in report.trace] == ["content", "design", "quality"]
    assert all(entry.retry_count == 0 for entry in report.trace)
    assert report.summary["retries"] == 0
    assert report.summary["quality_score"] == 85.0
    assert report.summary["quality_rating"] == "excellent"
    assert report.summary["handoff_chain"] == "content -> design -> quality"
    assert report.error is None


def test_quality_gate_escalation_fails_workflow() -> None:
    coordinator = _coordinator(_three_stage_pipeline([50.0, 50.0, 50.0]))

    report = asyncio.run(coordinator.run({"topic": "Sochi"}))

    assert report.status == WorkflowStatus.FAILED
    assert [entry.stage for entry in report.trace] == [
        "content",
        "design",
        "quality",
        "quality",
        "quality",
    ]
    assert [entry.quality_iteration for entry in report.trace[2:]] == [1, 2, 3]
    final_gate = report.trace[-1].gate
    assert final_gate is not None
    assert final_gate["escalate"] is True
    assert report.trace[2].gate["should_retry_stage"] is True
    assert "Quality gate escalated" in (report.error or "")


def test_quality_feedback_is_injected_before_rerun() -> None:
    seen_feedback: list[list[dict[str, Any]]] = []
    scores = [60.0, 80.0]

    async def _quality(context: WorkflowContext) -> StageResult:
        seen_feedback.append(context.feedback_for("quality"))
        score = scores.pop(0)
        return StageResult.ok(
            {"quality": {"score": score}},
            quality_score=score,
            recommendations=["Add alt text"] if score < 70 else [],
        )

    pipeline = [
        StageDefinition(name="content", execute=_writer("content", {"subject": "Hi"})),
        StageDefinition(name="quality", execute=_quality, is_gated=True),
    ]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "Sochi"}))

    assert report.succeeded
    assert seen_feedback[0] == []
    assert seen_feedback[1][0]["recommendations"] == ["Add alt text"]
    assert seen_feedback[1][0]["score"] == 60.0
    assert report.artifacts["quality"] == {"score": 80.0}


def test_transport_errors_are_retried_then_workflow_proceeds() -> None:
    client = FakePricingClient(
        [TransientServiceError("502", status_code=502), TransientServiceError("timeout")]
    )
    pipeline = [
        StageDefinition(name="content", execute=_writer("content", {"subject": "Hi"})),
        StageDefinition(name="pricing", execute=PricingStage(client), max_retries=3),
        StageDefinition(name="design", execute=_writer("email", {"html": "<p/>"})),
    ]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "Sochi", "destination": "AER"}))

    pricing_entries = [entry for entry in report.trace if entry.stage == "pricing"]
    assert [entry.success for entry in pricing_entries] == [False, False, True]
    assert [entry.attempt for entry in pricing_entries] == [1, 2, 3]
    assert report.succeeded
    assert report.trace[-1].stage == "design"
    assert report.artifacts["pricing"]["cheapest"]["price"] == 4990


def test_no_flights_is_a_success_without_retry_budget() -> None:
    client = FakePricingClient(["no_flights"])
    pipeline = [
        StageDefinition(name="pricing", execute=PricingStage(client), max_retries=3),
        StageDefinition(name="design", execute=_writer("email", {"html": "<p/>"})),
    ]

    report = asyncio.run(
        _coordinator(pipeline).run({"topic": "Weekend", "origin": "MOW", "destination": "XXX"})
    )

    pricing_entries = [entry for entry in report.trace if entry.stage == "pricing"]
    assert len(pricing_entries) == 1
    assert pricing_entries[0].success is True
    assert pricing_entries[0].retry_count == 0
    assert report.artifacts["pricing"]["prices"] == []
    assert report.artifacts["pricing"]["no_flights"] is True
    assert report.succeeded
    assert len(client.calls) == 1


def test_missing_topic_fails_immediately_with_field_name() -> None:
    generator = FakeContentGenerator()
    pipeline = [
        StageDefinition(name="content", execute=ContentStage(generator), input_model=CampaignBrief),
        StageDefinition(name="design", execute=_writer("email", {"html": "<p/>"})),
    ]

    report = asyncio.run(_coordinator(pipeline).run({"destination": "AER"}))

    assert report.status == WorkflowStatus.FAILED
    assert len(report.trace) == 1
    assert report.trace[0].retry_count == 0
    assert report.trace[0].error_kind == "validation"
    assert "topic" in (report.error or "")
    assert generator.calls == []


def test_stages_run_in_order_after_previous_artifacts_merge() -> None:
    observed: list[tuple[str, list[str]]] = []

    def _observer(name: str):
        async def _execute(context: WorkflowContext) -> StageResult:
            observed.append((name, sorted(context.artifacts)))
            return StageResult.ok({name: True})

        return _execute

    pipeline = [StageDefinition(name=name, execute=_observer(name)) for name in ("a", "b", "c")]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "x"}))

    assert report.succeeded
    assert observed == [("a", []), ("b", ["a"]), ("c", ["a", "b"])]
    starts = [entry.started_at for entry in report.trace]
    assert starts == sorted(starts)


def test_retry_bound_holds_for_failing_stage() -> None:
    calls = 0

    async def _always_down(context: WorkflowContext) -> StageResult:
        nonlocal calls
        calls += 1
        raise TransientServiceError("down")

    pipeline = [StageDefinition(name="pricing", execute=_always_down, max_retries=2)]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "x"}))

    assert report.status == WorkflowStatus.FAILED
    assert calls == 3
    assert len(report.trace) == 3
    assert "after 3 attempt(s)" in (report.error or "")


def test_earlier_artifacts_survive_later_stages() -> None:
    content = {"subject": "Hi", "body": "Hello"}
    seen: dict[str, Any] = {}

    async def _reader(context: WorkflowContext) -> StageResult:
        seen["content"] = context.artifact("content")
        return StageResult.ok({"checked": True})

    pipeline = [
        StageDefinition(name="content", execute=_writer("content", content)),
        StageDefinition(name="pricing", execute=_writer("pricing", {"prices": []})),
        StageDefinition(name="design", execute=_reader),
    ]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "x"}))

    assert seen["content"] == content
    assert report.artifacts["content"] == content


def test_overwriting_another_stage_artifact_fails_workflow() -> None:
    pipeline = [
        StageDefinition(name="content", execute=_writer("content", {"subject": "Hi"})),
        StageDefinition(name="design", execute=_writer("content", {"subject": "Hijacked"})),
    ]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "x"}))

    assert report.status == WorkflowStatus.FAILED
    assert report.trace[-1].error_kind == "artifact_conflict"
    assert len(report.trace) == 2
    assert report.artifacts["content"] == {"subject": "Hi"}


def test_stage_timeout_is_retried() -> None:
    calls = 0

    async def _slow_once(context: WorkflowContext) -> StageResult:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(5)
        return StageResult.ok({"rendered": True})

    pipeline = [
        StageDefinition(name="design", execute=_slow_once, timeout_seconds=0.05, max_retries=1)
    ]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "x"}))

    assert report.succeeded
    assert [entry.error_kind for entry in report.trace] == ["timeout", None]


def test_cancel_event_stops_workflow_and_keeps_partial_artifacts() -> None:
    async def _scenario():
        started = asyncio.Event()
        cancel = asyncio.Event()

        async def _hang(context: WorkflowContext) -> StageResult:
            started.set()
            await asyncio.sleep(30)
            return StageResult.ok({"never": True})

        pipeline = [
            StageDefinition(name="content", execute=_writer("content", {"subject": "Hi"})),
            StageDefinition(name="design", execute=_hang),
            StageDefinition(name="delivery", execute=_writer("delivery", {"url": "x"})),
        ]

        async def _trigger() -> None:
            await started.wait()
            cancel.set()

        report, _ = await asyncio.gather(
            _coordinator(pipeline).run({"topic": "x"}, cancel_event=cancel), _trigger()
        )
        return report

    report = asyncio.run(_scenario())

    assert report.status == WorkflowStatus.CANCELLED
    assert report.artifacts == {"content": {"subject": "Hi"}}
    assert report.trace[-1].stage == "design"
    assert report.trace[-1].error_kind == "cancelled"
    assert all(entry.stage != "delivery" for entry in report.trace)


def test_caller_cancellation_propagates_and_keeps_partial_report() -> None:
    async def _scenario() -> HandoffCoordinator:
        started = asyncio.Event()

        async def _hang(context: WorkflowContext) -> StageResult:
            started.set()
            await asyncio.sleep(30)
            return StageResult.ok({})

        coordinator = _coordinator(
            [
                StageDefinition(name="content", execute=_writer("content", {"subject": "Hi"})),
                StageDefinition(name="design", execute=_hang),
            ]
        )
        task = asyncio.create_task(coordinator.run({"topic": "x"}, workflow_id="wf-cancelled"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return coordinator

    coordinator = asyncio.run(_scenario())

    report = coordinator.reports["wf-cancelled"]
    assert report.status == WorkflowStatus.CANCELLED
    assert report.trace[-1].error_kind == "cancelled"


def test_run_many_keeps_workflows_isolated() -> None:
    async def _echo_topic(context: WorkflowContext) -> StageResult:
        await asyncio.sleep(0)
        return StageResult.ok({"content": {"topic": context.brief["topic"]}})

    coordinator = _coordinator([StageDefinition(name="content", execute=_echo_topic)])

    reports = asyncio.run(
        coordinator.run_many([{"topic": "Sochi"}, {"topic": "Kazan"}, {"topic": "Minsk"}], concurrency=2)
    )

    assert [report.artifacts["content"]["topic"] for report in reports] == ["Sochi", "Kazan", "Minsk"]
    assert len({report.workflow_id for report in reports}) == 3
    assert all(len(report.trace) == 1 for report in reports)


def test_unexpected_exception_becomes_structured_failure() -> None:
    async def _broken(context: WorkflowContext) -> StageResult:
        raise KeyError("subject")

    pipeline = [StageDefinition(name="design", execute=_broken, max_retries=0)]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "x"}))

    assert report.status == WorkflowStatus.FAILED
    assert report.trace[0].error_kind == "unexpected"
    assert "KeyError" in (report.error or "")


def test_gated_stage_without_score_is_a_contract_failure() -> None:
    pipeline = [StageDefinition(name="quality", execute=_writer("quality", {}), is_gated=True)]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "x"}))

    assert report.status == WorkflowStatus.FAILED
    assert report.trace[0].error_kind == "contract"
    assert len(report.trace) == 1


def test_events_cover_workflow_lifecycle() -> None:
    events: list[dict[str, Any]] = []
    coordinator = _coordinator(_three_stage_pipeline([60.0, 90.0]), event_hook=events.append)

    report = asyncio.run(coordinator.run({"topic": "x"}))

    names = [event["event"] for event in events]
    assert report.succeeded
    assert names[0] == "workflow_started"
    assert names[-1] == "workflow_finished"
    assert names.count("quality_gate") == 2
    assert names.count("stage_completed") == 3


def test_duplicate_stage_names_are_rejected() -> None:
    stage = StageDefinition(name="content", execute=_writer("content", {}))

    with pytest.raises(ValueError, match="Duplicate"):
        HandoffCoordinator([stage, stage])


def test_gated_trace_is_bounded_by_retries_times_quality_iterations() -> None:
    calls = 0

    async def _flaky_scorer(context: WorkflowContext) -> StageResult:
        nonlocal calls
        calls += 1
        if calls % 2:
            raise TransientServiceError("scorer unavailable", status_code=503)
        return StageResult.ok({"quality": {"score": 40.0}}, quality_score=40.0)

    pipeline = [
        StageDefinition(
            name="quality",
            execute=_flaky_scorer,
            is_gated=True,
            max_retries=1,
            max_quality_iterations=3,
        )
    ]

    report = asyncio.run(_coordinator(pipeline).run({"topic": "x"}))

    assert report.status == WorkflowStatus.FAILED
    assert "Quality gate escalated" in (report.error or "")
    assert len(report.trace) == (1 + 1) * 3
    assert [entry.attempt for entry in report.trace] == [1, 2, 1, 2, 1, 2]
    assert [entry.quality_iteration for entry in report.trace] == [1, 1, 2, 2, 3, 3]
    assert [entry.gate is not None for entry in report.trace] == [False, True] * 3


def test_coordinator_rejects_gated_success_without_score_from_custom_executor() -> None:
    class LaxExecutor(StageExecutor):
        async def run(self, stage: StageDefinition, context: WorkflowContext) -> StageResult:
            return StageResult.ok({"quality": {}})

    pipeline = [StageDefinition(name="quality", execute=_writer("quality", {}), is_gated=True)]

    report = asyncio.run(_coordinator(pipeline, executor=LaxExecutor()).run({"topic": "x"}))

    assert report.status == WorkflowStatus.FAILED
    assert report.error == "Gated stage 'quality' returned no quality score"


def test_run_many_keeps_one_report_per_workflow() -> None:
    async def _echo_topic(context: WorkflowContext) -> StageResult:
        await asyncio.sleep(0)
        return StageResult.ok({"content": {"topic": context.brief["topic"]}})

    coordinator = _coordinator([StageDefinition(name="content", execute=_echo_topic)])

    reports = asyncio.run(coordinator.run_many([{"topic": "Sochi"}, {"topic": "Kazan"}]))

    assert set(coordinator.reports) == {report.workflow_id for report in reports}
    for report in reports:
        assert coordinator.reports[report.workflow_id] is report
