from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

from mailflow.errors import StageContractError
from mailflow.models import StageResult, WorkflowContext
from mailflow.services.base import AssetStore, Renderer
from mailflow.stages.base import CampaignStage
from mailflow.stages.content import EmailContent

_WORD_RE = re.compile(r"\w{3,}", re.UNICODE)


class DesignInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: EmailContent


def asset_tags(brief: dict, limit: int = 8) -> list[str]:
    tags: list[str] = []
    for key in ("destination", "campaign_type"):
        value = brief.get(key)
        if value:
            tags.append(str(value).lower())
    tags.extend(word.lower() for word in _WORD_RE.findall(str(brief.get("topic", ""))))
    return list(dict.fromkeys(tags))[:limit]


class DesignStage(CampaignStage):
    name = "design"

    def __init__(self, assets: AssetStore, renderer: Renderer) -> None:
        self.assets = assets
        self.renderer = renderer

    async def run(self, context: WorkflowContext) -> StageResult:
        brief = dict(context.brief)
        content = context.artifact("content")
        found = await self.assets.search_assets(asset_tags(brief), brief.get("tone"))
        rendered = await self.renderer.render(content, found, context.artifact("pricing"))
        if not rendered.get("html"):
            raise StageContractError("Renderer returned no HTML", retriable=True)
        return StageResult.ok(
            {
                "assets": found,
                "email": {
                    "html": rendered["html"],
                    "mjml_source": rendered.get("mjml_source", ""),
                },
            }
        )
