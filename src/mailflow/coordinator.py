from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Iterable, Mapping
from typing import Any, TypeVar

from pydantic import BaseModel

from mailflow.models import (
    StageExecutionRecord,
    StageResult,
    WorkflowContext,
    WorkflowReport,
    WorkflowStatus,
    utcnow_iso,
)
from mailflow.quality_gate import QualityGate, rate_score
from mailflow.retry import DEFAULT_MAX_BACKOFF_MS, AttemptOutcome, EventHook, RetryPolicy, Sleep
from mailflow.stages.base import StageDefinition, StageExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

Brief = Mapping[str, Any] | BaseModel


def build_summary(context: WorkflowContext) -> dict[str, Any]:
    trace = context.trace
    stages_run: list[str] = []
    durations: dict[str, int] = {}
    for entry in trace:
        if entry.stage not in durations:
            stages_run.append(entry.stage)
            durations[entry.stage] = 0
        durations[entry.stage] += entry.duration_ms

    gated = [entry for entry in trace if entry.gate is not None]
    quality_score = gated[-1].quality_score if gated else None
    return {
        "stages_run": stages_run,
        "handoff_chain": " -> ".join(stages_run),
        "stage_durations_ms": durations,
        "total_duration_ms": sum(durations.values()),
        "total_attempts": len(trace),
        "successful_attempts": sum(1 for entry in trace if entry.success),
        "failed_attempts": sum(1 for entry in trace if not entry.success),
        "retries": sum(1 for entry in trace if entry.retry_count > 0),
        "quality_score": quality_score,
        "quality_rating": rate_score(quality_score) if quality_score is not None else None,
        "issues_resolved": sum(entry.issues_resolved for entry in trace),
    }


class HandoffCoordinator:
    """Runs a fixed, ordered pipeline of stages for one campaign brief.

    Every stage attempt lands in the context trace. Stage failures and
    quality escalations end the run with a failed report; nothing but
    caller-initiated task cancellation escapes ``run``.
    """

    def __init__(
        self,
        pipeline: Iterable[StageDefinition],
        *,
        quality_gate: QualityGate | None = None,
        executor: StageExecutor | None = None,
        max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS,
        cache_ttl_seconds: float = 300.0,
        sleep: Sleep = asyncio.sleep,
        event_hook: EventHook | None = None,
    ) -> None:
        self.pipeline: tuple[StageDefinition, ...] = tuple(pipeline)
        if not self.pipeline:
            raise ValueError("Pipeline must contain at least one stage.")
        names = [stage.name for stage in self.pipeline]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names in pipeline: {', '.join(duplicates)}")
        self.quality_gate = quality_gate or QualityGate()
        self.executor = executor or StageExecutor()
        self.max_backoff_ms = max_backoff_ms
        self.cache_ttl_seconds = cache_ttl_seconds
        self.event_hook = event_hook
        self._sleep = sleep
        # finished reports by workflow id, including runs the caller cancelled
        self.reports: dict[str, WorkflowReport] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _brief_payload(brief: Brief) -> dict[str, Any]:
        if isinstance(brief, BaseModel):
            return brief.model_dump(exclude_none=True)
        return dict(brief)

    def new_context(self, brief: Brief, *, workflow_id: str | None = None) -> WorkflowContext:
        return WorkflowContext(
            self._brief_payload(brief),
            workflow_id=workflow_id,
            cache_ttl_seconds=self.cache_ttl_seconds,
        )

    async def run(
        self,
        brief: Brief,
        *,
        workflow_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> WorkflowReport:
        context = self.new_context(brief, workflow_id=workflow_id)
        return await self.run_context(context, cancel_event=cancel_event)

    async def run_context(
        self,
        context: WorkflowContext,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> WorkflowReport:
        if context.status != WorkflowStatus.PENDING:
            raise ValueError(f"Workflow {context.workflow_id} already ran ({context.status}).")
        context.status = WorkflowStatus.RUNNING
        logger.info(
            "Workflow %s started with %d stage(s)", context.workflow_id, len(self.pipeline)
        )
        self._emit(
            {
                "event": "workflow_started",
                "workflow_id": context.workflow_id,
                "stages": [stage.name for stage in self.pipeline],
            }
        )

        error: str | None = None
        try:
            for index, stage in enumerate(self.pipeline):
                if cancel_event is not None and cancel_event.is_set():
                    context.status = WorkflowStatus.CANCELLED
                    error = f"Workflow cancelled before stage '{stage.name}'"
                    break
                error = await self._run_stage(index, stage, context, cancel_event)
                if error is not None:
                    break
            else:
                context.status = WorkflowStatus.SUCCEEDED
        except asyncio.CancelledError:
            context.status = WorkflowStatus.CANCELLED
            self.reports[context.workflow_id] = self._finish(
                context, "Workflow cancelled by caller"
            )
            raise

        report = self._finish(context, error)
        self.reports[context.workflow_id] = report
        return report

    async def run_many(
        self,
        briefs: Iterable[Brief],
        *,
        concurrency: int = 4,
    ) -> list[WorkflowReport]:
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _run_one(brief: Brief) -> WorkflowReport:
            async with semaphore:
                return await self.run(brief)

        return list(await asyncio.gather(*(_run_one(brief) for brief in briefs)))

    def _finish(self, context: WorkflowContext, error: str | None) -> WorkflowReport:
        summary = build_summary(context)
        report = WorkflowReport(
            workflow_id=context.workflow_id,
            status=context.status,
            brief=dict(context.brief),
            artifacts={key: context.artifact(key) for key in context.artifacts},
            trace=list(context.trace),
            summary=summary,
            error=error,
            started_at=context.started_at,
            ended_at=utcnow_iso(),
        )
        if report.succeeded:
            logger.info(
                "Workflow %s succeeded: %s (quality %s)",
                context.workflow_id,
                summary["handoff_chain"],
                summary["quality_score"],
            )
        else:
            logger.warning(
                "Workflow %s ended %s: %s", context.workflow_id, context.status.value, error
            )
        self._emit(
            {
                "event": "workflow_finished",
                "workflow_id": context.workflow_id,
                "status": context.status.value,
                "error": error,
                "total_attempts": summary["total_attempts"],
            }
        )
        return report

    @staticmethod
    def _record(outcome: AttemptOutcome, quality_iteration: int) -> StageExecutionRecord:
        result = outcome.result
        return StageExecutionRecord(
            stage=outcome.stage,
            attempt=outcome.attempt,
            quality_iteration=quality_iteration,
            started_at=outcome.started_at,
            ended_at=outcome.ended_at,
            duration_ms=outcome.duration_ms,
            success=result.success,
            retry_count=outcome.attempt - 1,
            error=result.error,
            error_kind=result.error_kind,
            quality_score=result.quality_score,
            issues_resolved=result.issues_resolved if result.success else 0,
        )

    async def _until_cancelled(
        self, awaitable: Awaitable[T], cancel_event: asyncio.Event | None
    ) -> tuple[bool, T | None]:
        if cancel_event is None:
            return True, await awaitable
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return True, work.result()
        work.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await work
        return False, None

    def _record_cancelled(
        self,
        context: WorkflowContext,
        stage: StageDefinition,
        quality_iteration: int,
        attempts_seen: int,
        started_at: str,
        started: float,
    ) -> None:
        context.record(
            StageExecutionRecord(
                stage=stage.name,
                attempt=attempts_seen + 1,
                quality_iteration=quality_iteration,
                started_at=started_at,
                ended_at=utcnow_iso(),
                duration_ms=int((time.monotonic() - started) * 1000),
                success=False,
                retry_count=attempts_seen,
                error="cancelled",
                error_kind="cancelled",
            )
        )

    async def _run_stage(
        self,
        index: int,
        stage: StageDefinition,
        context: WorkflowContext,
        cancel_event: asyncio.Event | None,
    ) -> str | None:
        policy = RetryPolicy.for_stage(stage, max_backoff_ms=self.max_backoff_ms, sleep=self._sleep)
        quality_iteration = 1

        while True:
            self._emit(
                {
                    "event": "stage_started",
                    "workflow_id": context.workflow_id,
                    "stage": stage.name,
                    "index": index,
                    "quality_iteration": quality_iteration,
                }
            )
            records: list[StageExecutionRecord] = []

            def _on_attempt(outcome: AttemptOutcome, iteration: int = quality_iteration) -> None:
                record = self._record(outcome, iteration)
                context.record(record)
                records.append(record)
                if not outcome.result.success:
                    logger.warning(
                        "Stage %s attempt %d failed (%s): %s",
                        stage.name,
                        outcome.attempt,
                        outcome.result.error_kind,
                        outcome.result.error,
                    )
                    self._emit(
                        {
                            "event": "stage_attempt_failed",
                            "workflow_id": context.workflow_id,
                            "stage": stage.name,
                            "attempt": outcome.attempt,
                            "error": outcome.result.error,
                            "error_kind": outcome.result.error_kind,
                            "retriable": outcome.result.retriable,
                        }
                    )

            started_at = utcnow_iso()
            started = time.monotonic()
            try:
                finished, result = await self._until_cancelled(
                    policy.run(
                        self.executor,
                        stage,
                        context,
                        on_attempt=_on_attempt,
                        event_hook=self.event_hook,
                    ),
                    cancel_event,
                )
            except asyncio.CancelledError:
                self._record_cancelled(
                    context, stage, quality_iteration, len(records), started_at, started
                )
                raise

            if not finished or result is None:
                self._record_cancelled(
                    context, stage, quality_iteration, len(records), started_at, started
                )
                context.status = WorkflowStatus.CANCELLED
                return f"Workflow cancelled during stage '{stage.name}'"

            if not result.success:
                context.status = WorkflowStatus.FAILED
                return self._failure_message(stage, result, len(records))

            context.merge_artifacts(stage.name, result.produced_artifacts)

            if not stage.is_gated:
                self._emit_completed(context, stage, result)
                return None

            if result.quality_score is None:
                context.status = WorkflowStatus.FAILED
                return f"Gated stage '{stage.name}' returned no quality score"
            decision = self.quality_gate.evaluate(
                result.quality_score,
                quality_iteration,
                threshold=stage.threshold,
                max_quality_iterations=stage.max_quality_iterations,
            )
            if records:
                records[-1].gate = decision.to_dict()
            self._emit(
                {
                    "event": "quality_gate",
                    "workflow_id": context.workflow_id,
                    "stage": stage.name,
                    **decision.to_dict(),
                }
            )
            logger.info(
                "Quality gate for %s: score %.1f vs threshold %.1f (%s)",
                stage.name,
                decision.score,
                decision.threshold,
                "passed" if decision.passed else ("escalate" if decision.escalate else "retry"),
            )

            if decision.passed:
                self._emit_completed(context, stage, result)
                return None
            if decision.escalate:
                context.status = WorkflowStatus.FAILED
                return (
                    f"Quality gate escalated for stage '{stage.name}': score "
                    f"{decision.score:g} below threshold {decision.threshold:g} after "
                    f"{quality_iteration} attempt(s)"
                )

            context.add_feedback(
                stage.name,
                {
                    "attempt": quality_iteration,
                    "score": decision.score,
                    "threshold": decision.threshold,
                    "recommendations": list(result.recommendations),
                },
            )
            quality_iteration += 1

    def _emit_completed(
        self, context: WorkflowContext, stage: StageDefinition, result: StageResult
    ) -> None:
        self._emit(
            {
                "event": "stage_completed",
                "workflow_id": context.workflow_id,
                "stage": stage.name,
                "artifacts": sorted(result.produced_artifacts),
            }
        )

    @staticmethod
    def _failure_message(stage: StageDefinition, result: StageResult, attempts: int) -> str:
        message = f"Stage '{stage.name}' failed"
        if result.retries_exhausted:
            message += f" after {attempts} attempt(s)"
        return f"{message}: {result.error}"
