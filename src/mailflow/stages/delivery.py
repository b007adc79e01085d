from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from mailflow.errors import StageContractError
from mailflow.models import StageResult, WorkflowContext
from mailflow.services.base import Publisher
from mailflow.stages.base import CampaignStage
from mailflow.stages.quality import RenderedEmail


class DeliveryInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: RenderedEmail
    quality: dict


class DeliveryStage(CampaignStage):
    name = "delivery"

    def __init__(self, publisher: Publisher) -> None:
        self.publisher = publisher

    async def run(self, context: WorkflowContext) -> StageResult:
        final = context.artifact("reviewed_email") or context.artifact("email")
        published = await self.publisher.publish(
            final["html"], context.artifact("assets") or [], context.workflow_id
        )
        if not published.get("url"):
            raise StageContractError("Publisher returned no URL", retriable=True)
        return StageResult.ok({"delivery": dict(published)})
