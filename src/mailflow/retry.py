from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

from mailflow.models import StageResult, WorkflowContext, utcnow_iso
from mailflow.stages.base import StageDefinition, StageExecutor

EventHook = Callable[[dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[Any]]

DEFAULT_MAX_BACKOFF_MS = 30_000


@dataclass(slots=True)
class AttemptOutcome:
    stage: str
    attempt: int
    result: StageResult
    started_at: str
    ended_at: str
    duration_ms: int


AttemptHook = Callable[[AttemptOutcome], None]


@dataclass(slots=True)
class RetryPolicy:
    """Bounded retries with capped exponential backoff around one stage."""

    max_retries: int = 2
    backoff_base_ms: int = 500
    max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS
    sleep: Sleep = field(default=asyncio.sleep, repr=False, compare=False)

    @classmethod
    def for_stage(
        cls,
        stage: StageDefinition,
        *,
        max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS,
        sleep: Sleep = asyncio.sleep,
    ) -> RetryPolicy:
        return cls(
            max_retries=stage.max_retries,
            backoff_base_ms=stage.backoff_base_ms,
            max_backoff_ms=max_backoff_ms,
            sleep=sleep,
        )

    def delay_seconds(self, retry_index: int, retry_after: float | None = None) -> float:
        delay_ms = self.backoff_base_ms * (2**retry_index)
        if retry_after is not None:
            # the service asked for at least this long
            delay_ms = max(delay_ms, retry_after * 1000)
        return min(delay_ms, self.max_backoff_ms) / 1000.0

    async def run(
        self,
        executor: StageExecutor,
        stage: StageDefinition,
        context: WorkflowContext,
        *,
        on_attempt: AttemptHook | None = None,
        event_hook: EventHook | None = None,
    ) -> StageResult:
        attempt = 0
        while True:
            started_at = utcnow_iso()
            started = time.monotonic()
            result = await executor.run(stage, context)
            outcome = AttemptOutcome(
                stage=stage.name,
                attempt=attempt + 1,
                result=result,
                started_at=started_at,
                ended_at=utcnow_iso(),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

            if result.success:
                if on_attempt:
                    on_attempt(outcome)
                return result

            if not result.retriable:
                if on_attempt:
                    on_attempt(outcome)
                return result

            if attempt >= self.max_retries:
                exhausted = replace(result, retries_exhausted=True)
                outcome.result = exhausted
                if on_attempt:
                    on_attempt(outcome)
                return exhausted

            if on_attempt:
                on_attempt(outcome)
            delay = self.delay_seconds(attempt, result.retry_after)
            if event_hook:
                event_hook(
                    {
                        "event": "stage_retry",
                        "stage": stage.name,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                        "error": result.error,
                        "error_kind": result.error_kind,
                    }
                )
            await self.sleep(delay)
            attempt += 1
