from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from mailflow.errors import MailflowError, RateLimitError
from mailflow.models import StageResult, WorkflowContext

logger = logging.getLogger(__name__)

StageCallable = Callable[[WorkflowContext], Awaitable[StageResult | Mapping[str, Any]]]


@dataclass(slots=True, frozen=True)
class StageDefinition:
    name: str
    execute: StageCallable
    is_gated: bool = False
    max_retries: int = 2
    backoff_base_ms: int = 500
    threshold: float = 70.0
    max_quality_iterations: int = 3
    timeout_seconds: float | None = 120.0
    input_model: type[BaseModel] | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("Stage name must be a non-empty string.")
        if self.max_retries < 0:
            raise ValueError(f"Stage '{self.name}': max_retries must be >= 0.")
        if self.backoff_base_ms < 0:
            raise ValueError(f"Stage '{self.name}': backoff_base_ms must be >= 0.")
        if self.max_quality_iterations < 1:
            raise ValueError(f"Stage '{self.name}': max_quality_iterations must be >= 1.")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Stage '{self.name}': timeout_seconds must be positive.")


def describe_validation_error(stage_name: str, exc: ValidationError) -> str:
    problems: list[str] = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "<input>"
        if item.get("type") == "missing":
            problems.append(f"missing required field '{location}'")
        else:
            problems.append(f"invalid field '{location}': {item.get('msg', 'invalid value')}")
    return f"Invalid input for stage '{stage_name}': " + "; ".join(problems)


class StageExecutor:
    """Runs exactly one attempt of a stage and always returns a StageResult.

    Retrying and quality gating are left to the caller.
    """

    async def run(self, stage: StageDefinition, context: WorkflowContext) -> StageResult:
        if stage.input_model is not None:
            try:
                stage.input_model.model_validate(context.stage_input())
            except ValidationError as exc:
                return StageResult.failure(
                    describe_validation_error(stage.name, exc),
                    kind="validation",
                    retriable=False,
                )

        try:
            if stage.timeout_seconds is None:
                outcome = await stage.execute(context)
            else:
                outcome = await asyncio.wait_for(
                    stage.execute(context), timeout=stage.timeout_seconds
                )
        except TimeoutError:
            return StageResult.failure(
                f"Stage '{stage.name}' timed out after {stage.timeout_seconds:.1f}s",
                kind="timeout",
                retriable=True,
            )
        except RateLimitError as exc:
            return StageResult.failure(
                str(exc), kind=exc.kind, retriable=True, retry_after=exc.retry_after
            )
        except MailflowError as exc:
            return StageResult.failure(str(exc), kind=exc.kind, retriable=exc.retriable)
        except ValidationError as exc:
            return StageResult.failure(
                describe_validation_error(stage.name, exc),
                kind="validation",
                retriable=False,
            )
        except Exception as exc:
            logger.warning("Stage %s raised unexpected %s", stage.name, type(exc).__name__)
            return StageResult.failure(
                f"{type(exc).__name__}: {exc}", kind="unexpected", retriable=True
            )

        result = self._normalize(stage, outcome)
        if result.success:
            try:
                context.check_artifacts(stage.name, result.produced_artifacts)
            except MailflowError as exc:
                return StageResult.failure(str(exc), kind=exc.kind, retriable=exc.retriable)
        return result

    @staticmethod
    def _normalize(stage: StageDefinition, outcome: Any) -> StageResult:
        if isinstance(outcome, StageResult):
            result = outcome
        elif isinstance(outcome, Mapping):
            result = StageResult.ok(dict(outcome))
        else:
            return StageResult.failure(
                f"Stage '{stage.name}' returned unsupported type {type(outcome).__name__}",
                kind="contract",
                retriable=False,
            )
        if stage.is_gated and result.success and result.quality_score is None:
            return StageResult.failure(
                f"Gated stage '{stage.name}' returned no quality score",
                kind="contract",
                retriable=False,
            )
        if result.quality_score is not None and not 0.0 <= result.quality_score <= 100.0:
            return StageResult.failure(
                f"Stage '{stage.name}' returned quality score {result.quality_score!r} "
                "outside 0-100",
                kind="contract",
                retriable=False,
            )
        return result


class CampaignStage:
    """Callable unit of campaign work; instances are used as ``StageDefinition.execute``."""

    name: str = "stage"

    async def run(self, context: WorkflowContext) -> StageResult:
        raise NotImplementedError

    async def __call__(self, context: WorkflowContext) -> StageResult:
        return await self.run(context)
