from mailflow.services.assets import LocalAssetStore
from mailflow.services.base import (
    AssetStore,
    CampaignServices,
    ContentGenerator,
    PriceQuote,
    PricingClient,
    Publisher,
    QualityScorer,
    Renderer,
)
from mailflow.services.mjml import MjmlRenderer
from mailflow.services.openai_llm import OpenAIChat, OpenAIContentGenerator, OpenAIQualityScorer
from mailflow.services.pricing import HttpPricingClient
from mailflow.services.publisher import FilePublisher

__all__ = [
    "AssetStore",
    "CampaignServices",
    "ContentGenerator",
    "FilePublisher",
    "HttpPricingClient",
    "LocalAssetStore",
    "MjmlRenderer",
    "OpenAIChat",
    "OpenAIContentGenerator",
    "OpenAIQualityScorer",
    "PriceQuote",
    "PricingClient",
    "Publisher",
    "QualityScorer",
    "Renderer",
]
