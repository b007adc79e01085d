from __future__ import annotations

import logging
from typing import Any

from mailflow.errors import NoFlightsAvailable
from mailflow.models import StageResult, WorkflowContext
from mailflow.services.base import PricingClient
from mailflow.stages.base import CampaignStage

logger = logging.getLogger(__name__)

NO_FLIGHTS_SUGGESTIONS = (
    "Try a wider or later travel window",
    "Consider nearby departure or arrival airports",
    "Promote the destination without quoting a fare",
)


class PricingStage(CampaignStage):
    """Fetches fares for the brief's route.

    A route with no offers is a normal outcome: the stage succeeds with an
    empty price list and suggestions for the copy instead of a fare.
    """

    name = "pricing"

    def __init__(self, client: PricingClient, *, default_origin: str = "MOW") -> None:
        self.client = client
        self.default_origin = default_origin

    async def run(self, context: WorkflowContext) -> StageResult:
        brief = context.brief
        destination = brief.get("destination")
        origin = brief.get("origin") or self.default_origin
        date_range = brief.get("date_range")
        if not destination:
            return StageResult.ok(
                {"pricing": {"prices": [], "cheapest": None, "skipped": "no destination"}}
            )

        params = {"origin": origin, "destination": destination, "date_range": date_range}

        async def _fetch() -> dict[str, Any]:
            quote = await self.client.get_prices(origin, destination, date_range)
            return quote.to_dict()

        try:
            pricing = await context.cache.get_or_fetch("pricing", params, _fetch)
        except NoFlightsAvailable as exc:
            logger.info("No flights for %s -> %s, continuing without fares", origin, destination)
            return StageResult.ok(
                {
                    "pricing": {
                        "origin": exc.origin,
                        "destination": exc.destination,
                        "date_range": exc.date_range,
                        "prices": [],
                        "cheapest": None,
                        "no_flights": True,
                        "message": str(exc),
                    }
                },
                recommendations=list(NO_FLIGHTS_SUGGESTIONS),
            )
        return StageResult.ok({"pricing": pricing})
