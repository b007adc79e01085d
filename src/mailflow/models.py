from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mailflow.cache import ResponseCache
from mailflow.errors import ArtifactConflictError


_IATA_RE = re.compile(r"^[A-Z]{3}$")


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def new_workflow_id() -> str:
    return f"wf-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class WorkflowStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CampaignBrief(BaseModel):
    """Campaign request submitted by the caller."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    topic: str = Field(..., min_length=1, description="Campaign topic or headline idea")
    destination: str | None = Field(None, description="Destination IATA airport or city code")
    origin: str | None = Field(None, description="Departure IATA airport or city code")
    audience: str | None = Field(None, description="Target audience description")
    tone: str | None = Field(None, description="Emotional tone of the campaign")
    language: str = Field("ru", description="Campaign language")
    date_range: str | None = Field(
        None, description="Travel window as 'YYYY-MM-DD,YYYY-MM-DD'"
    )
    brand: str | None = None
    campaign_type: Literal["promotional", "transactional", "newsletter", "announcement"] = (
        "promotional"
    )

    @field_validator("origin", "destination")
    @classmethod
    def _check_iata(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        code = value.strip().upper()
        if not _IATA_RE.match(code):
            raise ValueError(f"expected a 3-letter IATA code, got {value!r}")
        return code

    @field_validator("date_range")
    @classmethod
    def _check_date_range(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        parts = [part.strip() for part in value.split(",")]
        if len(parts) != 2:
            raise ValueError("date_range must look like 'YYYY-MM-DD,YYYY-MM-DD'")
        start, end = (date.fromisoformat(part) for part in parts)
        if end < start:
            raise ValueError("date_range end precedes start")
        if start < date.today():
            raise ValueError(f"date_range starts in the past ({start.isoformat()})")
        return f"{start.isoformat()},{end.isoformat()}"


@dataclass(slots=True)
class StageResult:
    success: bool
    produced_artifacts: dict[str, Any] = field(default_factory=dict)
    quality_score: float | None = None
    error: str | None = None
    error_kind: str | None = None
    retriable: bool = True
    retries_exhausted: bool = False
    issues_resolved: int = 0
    recommendations: list[str] = field(default_factory=list)
    retry_after: float | None = None

    @classmethod
    def ok(
        cls,
        produced_artifacts: dict[str, Any] | None = None,
        *,
        quality_score: float | None = None,
        issues_resolved: int = 0,
        recommendations: list[str] | None = None,
    ) -> StageResult:
        return cls(
            success=True,
            produced_artifacts=dict(produced_artifacts or {}),
            quality_score=quality_score,
            issues_resolved=issues_resolved,
            recommendations=list(recommendations or []),
        )

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        kind: str = "error",
        retriable: bool = True,
        retry_after: float | None = None,
    ) -> StageResult:
        return cls(
            success=False,
            error=error,
            error_kind=kind,
            retriable=retriable,
            retry_after=retry_after,
        )


@dataclass(slots=True, frozen=True)
class QualityGateDecision:
    passed: bool
    should_retry_stage: bool
    escalate: bool
    score: float
    threshold: float
    attempt: int
    rating: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class StageExecutionRecord:
    stage: str
    attempt: int
    quality_iteration: int
    started_at: str
    ended_at: str
    duration_ms: int
    success: bool
    retry_count: int
    error: str | None = None
    error_kind: str | None = None
    quality_score: float | None = None
    issues_resolved: int = 0
    gate: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StageExecutionRecord:
        return cls(
            stage=str(payload["stage"]),
            attempt=int(payload.get("attempt", 1)),
            quality_iteration=int(payload.get("quality_iteration", 1)),
            started_at=str(payload.get("started_at", "")),
            ended_at=str(payload.get("ended_at", "")),
            duration_ms=int(payload.get("duration_ms", 0)),
            success=bool(payload.get("success")),
            retry_count=int(payload.get("retry_count", 0)),
            error=payload.get("error"),
            error_kind=payload.get("error_kind"),
            quality_score=payload.get("quality_score"),
            issues_resolved=int(payload.get("issues_resolved", 0)),
            gate=payload.get("gate"),
        )


class WorkflowContext:
    """Per-workflow accumulator handed from stage to stage.

    The brief is frozen at construction. Artifacts are append-only across
    stages: every key belongs to the stage that first produced it, and only
    that stage may replace it on a later attempt. The trace only grows.
    """

    def __init__(
        self,
        brief: Mapping[str, Any],
        *,
        workflow_id: str | None = None,
        cache_ttl_seconds: float = 300.0,
    ) -> None:
        self._workflow_id = workflow_id or new_workflow_id()
        self._brief: Mapping[str, Any] = MappingProxyType(copy.deepcopy(dict(brief)))
        self._artifacts: dict[str, Any] = {}
        self._owners: dict[str, str] = {}
        self._trace: list[StageExecutionRecord] = []
        self._feedback: dict[str, list[dict[str, Any]]] = {}
        self.status = WorkflowStatus.PENDING
        self.started_at = utcnow_iso()
        self.cache = ResponseCache(ttl_seconds=cache_ttl_seconds)

    @property
    def workflow_id(self) -> str:
        return self._workflow_id

    @property
    def brief(self) -> Mapping[str, Any]:
        return self._brief

    @property
    def artifacts(self) -> Mapping[str, Any]:
        return MappingProxyType(self._artifacts)

    @property
    def trace(self) -> tuple[StageExecutionRecord, ...]:
        return tuple(self._trace)

    def artifact(self, key: str, default: Any = None) -> Any:
        if key not in self._artifacts:
            return default
        return copy.deepcopy(self._artifacts[key])

    def artifact_owner(self, key: str) -> str | None:
        return self._owners.get(key)

    def check_artifacts(self, stage: str, produced: Mapping[str, Any]) -> None:
        conflicts = [
            key for key in produced if self._owners.get(key) not in (None, stage)
        ]
        if conflicts:
            details = ", ".join(f"{key} (owned by {self._owners[key]})" for key in conflicts)
            raise ArtifactConflictError(
                f"Stage '{stage}' attempted to overwrite artifacts: {details}"
            )

    def merge_artifacts(self, stage: str, produced: Mapping[str, Any]) -> None:
        self.check_artifacts(stage, produced)
        for key, value in produced.items():
            self._artifacts[key] = copy.deepcopy(value)
            self._owners[key] = stage

    def record(self, entry: StageExecutionRecord) -> None:
        self._trace.append(entry)

    def add_feedback(self, stage: str, entry: dict[str, Any]) -> None:
        self._feedback.setdefault(stage, []).append(dict(entry))

    def feedback_for(self, stage: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._feedback.get(stage, []))

    def stage_input(self) -> dict[str, Any]:
        """Flat view used to validate stage input contracts."""
        payload = copy.deepcopy(dict(self._brief))
        payload.update(copy.deepcopy(self._artifacts))
        return payload


@dataclass(slots=True)
class WorkflowReport:
    workflow_id: str
    status: WorkflowStatus
    brief: dict[str, Any]
    artifacts: dict[str, Any]
    trace: list[StageExecutionRecord]
    summary: dict[str, Any]
    error: str | None = None
    started_at: str | None = None
    ended_at: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == WorkflowStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "brief": self.brief,
            "artifacts": self.artifacts,
            "trace": [entry.to_dict() for entry in self.trace],
            "summary": self.summary,
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowReport:
        trace = payload.get("trace", [])
        return cls(
            workflow_id=str(payload["workflow_id"]),
            status=WorkflowStatus(str(payload.get("status", WorkflowStatus.FAILED.value))),
            brief=dict(payload.get("brief") or {}),
            artifacts=dict(payload.get("artifacts") or {}),
            trace=[
                StageExecutionRecord.from_dict(item)
                for item in trace
                if isinstance(item, dict)
            ],
            summary=dict(payload.get("summary") or {}),
            error=payload.get("error"),
            started_at=payload.get("started_at"),
            ended_at=payload.get("ended_at"),
        )
