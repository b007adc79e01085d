from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from mailflow.models import StageResult, WorkflowContext
from mailflow.quality_gate import rate_score
from mailflow.services.base import QualityScorer
from mailflow.stages.base import CampaignStage


class RenderedEmail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    html: str = Field(..., min_length=1)


class QualityInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: RenderedEmail


class QualityStage(CampaignStage):
    """Scores the rendered email.

    On a re-run the previous round's recommendations are applied to the
    latest reviewed HTML before scoring again.
    """

    name = "quality"

    def __init__(self, scorer: QualityScorer) -> None:
        self.scorer = scorer

    async def run(self, context: WorkflowContext) -> StageResult:
        reviewed = context.artifact("reviewed_email") or context.artifact("email")
        html = reviewed["html"]
        feedback = context.feedback_for(self.name)
        previous = list(feedback[-1].get("recommendations", [])) if feedback else []
        if previous:
            html = await self.scorer.repair(html, previous)

        report = await self.scorer.score_quality(
            html,
            context.artifact("content") or {},
            {**dict(context.brief), "pricing": context.artifact("pricing")},
        )
        score = float(report["overall_score"])
        recommendations = [str(item) for item in report.get("recommendations", [])]
        issues_resolved = len(set(previous) - set(recommendations))
        return StageResult.ok(
            {
                "reviewed_email": {"html": html},
                "quality": {
                    "overall_score": score,
                    "rating": rate_score(score),
                    "dimension_scores": dict(report.get("dimension_scores") or {}),
                    "recommendations": recommendations,
                    "iteration": len(feedback) + 1,
                },
            },
            quality_score=score,
            issues_resolved=issues_resolved,
            recommendations=recommendations,
        )
