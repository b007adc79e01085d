from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(slots=True)
class PriceQuote:
    origin: str
    destination: str
    date_range: str
    currency: str
    prices: list[dict[str, Any]] = field(default_factory=list)

    @property
    def cheapest(self) -> dict[str, Any] | None:
        if not self.prices:
            return None
        return min(self.prices, key=lambda offer: float(offer.get("price", 0)))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["cheapest"] = self.cheapest
        return payload


class ContentGenerator(ABC):
    @abstractmethod
    async def generate_content(
        self,
        brief: Mapping[str, Any],
        prior_artifacts: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Return ``subject``, ``preheader``, ``body`` and ``cta`` for the email."""


class PricingClient(ABC):
    @abstractmethod
    async def get_prices(
        self,
        origin: str,
        destination: str,
        date_range: str | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> PriceQuote:
        """Look up fares. Raises NoFlightsAvailable when the route has no offers."""


class AssetStore(ABC):
    @abstractmethod
    async def search_assets(
        self,
        tags: list[str],
        emotional_tone: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return matching assets, best first. An empty list is a valid answer."""


class Renderer(ABC):
    @abstractmethod
    async def render(
        self,
        content: Mapping[str, Any],
        assets: list[dict[str, Any]],
        pricing: Mapping[str, Any] | None = None,
    ) -> dict[str, str]:
        """Return ``html`` and ``mjml_source``."""


class QualityScorer(ABC):
    @abstractmethod
    async def score_quality(
        self,
        html: str,
        content: Mapping[str, Any],
        campaign_context: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Return ``overall_score`` (0-100), ``dimension_scores`` and ``recommendations``."""

    @abstractmethod
    async def repair(self, html: str, recommendations: list[str]) -> str:
        """Return HTML with the recommendations applied."""


class Publisher(ABC):
    @abstractmethod
    async def publish(
        self,
        html: str,
        assets: list[dict[str, Any]],
        workflow_id: str,
    ) -> dict[str, Any]:
        """Deliver the campaign and return at least ``url``."""


@dataclass(slots=True)
class CampaignServices:
    content: ContentGenerator
    pricing: PricingClient
    assets: AssetStore
    renderer: Renderer
    quality: QualityScorer
    publisher: Publisher
