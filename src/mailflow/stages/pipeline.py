from __future__ import annotations

from pathlib import Path

from mailflow.config import MailflowConfig
from mailflow.models import CampaignBrief
from mailflow.services import (
    CampaignServices,
    FilePublisher,
    HttpPricingClient,
    LocalAssetStore,
    MjmlRenderer,
    OpenAIChat,
    OpenAIContentGenerator,
    OpenAIQualityScorer,
)
from mailflow.stages.base import StageDefinition
from mailflow.stages.content import ContentStage
from mailflow.stages.delivery import DeliveryInput, DeliveryStage
from mailflow.stages.design import DesignInput, DesignStage
from mailflow.stages.pricing import PricingStage
from mailflow.stages.quality import QualityInput, QualityStage

STAGE_ORDER = ("content", "pricing", "design", "quality", "delivery")


def build_services(config: MailflowConfig, *, root: Path | None = None) -> CampaignServices:
    base = root or Path.cwd()
    chat = OpenAIChat(
        model=config.llm.model,
        temperature=config.llm.temperature,
        api_key_env=config.llm.api_key_env,
    )
    return CampaignServices(
        content=OpenAIContentGenerator(chat),
        pricing=HttpPricingClient(
            base_url=config.pricing.base_url,
            currency=config.pricing.currency,
            timeout_seconds=config.pricing.timeout_seconds,
        ),
        assets=LocalAssetStore(base / config.assets.directory, limit=config.assets.limit),
        renderer=MjmlRenderer(
            config.render.mjml_binary,
            max_width=config.render.max_width,
            timeout_seconds=config.render.timeout_seconds,
        ),
        quality=OpenAIQualityScorer(chat),
        publisher=FilePublisher(base / config.output.directory),
    )


def build_campaign_pipeline(
    services: CampaignServices,
    config: MailflowConfig | None = None,
) -> list[StageDefinition]:
    cfg = config or MailflowConfig.default()
    common = {
        "max_retries": cfg.retry.max_retries,
        "backoff_base_ms": cfg.retry.backoff_base_ms,
        "timeout_seconds": cfg.retry.stage_timeout_seconds,
    }
    return [
        StageDefinition(
            name="content",
            execute=ContentStage(services.content),
            input_model=CampaignBrief,
            **common,
        ),
        StageDefinition(
            name="pricing",
            execute=PricingStage(services.pricing, default_origin=cfg.pricing.default_origin),
            **common,
        ),
        StageDefinition(
            name="design",
            execute=DesignStage(services.assets, services.renderer),
            input_model=DesignInput,
            **common,
        ),
        StageDefinition(
            name="quality",
            execute=QualityStage(services.quality),
            is_gated=True,
            threshold=cfg.quality.threshold,
            max_quality_iterations=cfg.quality.max_quality_iterations,
            input_model=QualityInput,
            **common,
        ),
        StageDefinition(
            name="delivery",
            execute=DeliveryStage(services.publisher),
            input_model=DeliveryInput,
            **common,
        ),
    ]
