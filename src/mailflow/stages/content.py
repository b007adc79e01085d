from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mailflow.errors import StageContractError
from mailflow.models import StageResult, WorkflowContext
from mailflow.services.base import ContentGenerator
from mailflow.stages.base import CampaignStage


class EmailContent(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    subject: str = Field(..., min_length=1)
    preheader: str = ""
    body: str = Field(..., min_length=1)
    cta: str = ""


class ContentStage(CampaignStage):
    name = "content"

    def __init__(self, generator: ContentGenerator) -> None:
        self.generator = generator

    async def run(self, context: WorkflowContext) -> StageResult:
        generated = await self.generator.generate_content(
            dict(context.brief), {key: context.artifact(key) for key in context.artifacts}
        )
        try:
            content = EmailContent.model_validate(generated)
        except ValidationError as exc:
            fields = ", ".join(
                ".".join(str(part) for part in item["loc"]) for item in exc.errors()
            )
            raise StageContractError(
                f"Content generator returned incomplete copy ({fields})", retriable=True
            ) from exc
        return StageResult.ok({"content": content.model_dump()})
