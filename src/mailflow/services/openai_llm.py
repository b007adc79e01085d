from __future__ import annotations

import asyncio
import json
import math
import os
import re
from collections.abc import Mapping
from typing import Any

import openai

from mailflow.errors import (
    ConfigError,
    RateLimitError,
    ServiceError,
    TransientServiceError,
    parse_retry_after,
)
from mailflow.services.base import ContentGenerator, QualityScorer

CONTENT_PROMPT = """
You write promotional emails for a travel agency.
Reply with one JSON object with the keys subject, preheader, body and cta.
Keep the subject under 60 characters and write in the requested language.
""".strip()

QUALITY_PROMPT = """
You review rendered marketing emails.
Reply with one JSON object: overall_score (0-100), dimension_scores
(object of 0-100 numbers for content, design, accessibility, deliverability)
and recommendations (list of short actionable strings).
""".strip()

REPAIR_PROMPT = """
You fix rendered marketing email HTML.
Apply every recommendation and return only the complete corrected HTML document.
""".strip()

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


class OpenAIChat:
    """Thin async wrapper over the synchronous OpenAI responses API."""

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        api_key_env: str = "OPENAI_API_KEY",
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.api_key_env = api_key_env
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            api_key = os.environ.get(self.api_key_env, "").strip()
            if not api_key:
                raise ConfigError(f"Environment variable {self.api_key_env} is not set.")
            self._client = openai.OpenAI(api_key=api_key)
        return self._client

    @staticmethod
    def _build_user_input(instruction: str, payload: Mapping[str, Any]) -> str:
        parts = [instruction]
        if payload:
            parts.append("Context JSON:")
            parts.append(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
        return "\n\n".join(parts)

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def complete(
        self,
        system_prompt: str,
        instruction: str,
        payload: Mapping[str, Any] | None = None,
    ) -> str:
        client = self._get_client()
        prompt = self._build_user_input(instruction, payload or {})

        def _request() -> Any:
            return client.responses.create(
                model=self.model,
                temperature=self.temperature,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            response = await asyncio.to_thread(_request)
        except openai.RateLimitError as exc:
            raise RateLimitError(
                f"OpenAI rate limit: {exc}",
                service="openai",
                retry_after=parse_retry_after(exc.response.headers.get("retry-after")),
            ) from exc
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            raise TransientServiceError(
                f"OpenAI request failed: {exc}", service="openai"
            ) from exc
        except openai.APIStatusError as exc:
            raise ServiceError(
                f"OpenAI request rejected: {exc}",
                service="openai",
                status_code=exc.status_code,
            ) from exc

        text = _FENCE_RE.sub("", self._extract_text(response).strip())
        if not text:
            raise TransientServiceError("OpenAI returned an empty response", service="openai")
        return text

    async def complete_json(
        self,
        system_prompt: str,
        instruction: str,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        text = await self.complete(system_prompt, instruction, payload)
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TransientServiceError(
                f"OpenAI returned malformed JSON: {exc.msg}", service="openai"
            ) from exc
        if not isinstance(parsed, dict):
            raise TransientServiceError("OpenAI returned non-object JSON", service="openai")
        return parsed


class OpenAIContentGenerator(ContentGenerator):
    def __init__(self, chat: OpenAIChat) -> None:
        self.chat = chat

    async def generate_content(
        self,
        brief: Mapping[str, Any],
        prior_artifacts: Mapping[str, Any],
    ) -> dict[str, Any]:
        payload = {"brief": dict(brief), "artifacts": dict(prior_artifacts)}
        result = await self.chat.complete_json(
            CONTENT_PROMPT, "Write the campaign email copy.", payload
        )
        return {
            "subject": str(result.get("subject", "")).strip(),
            "preheader": str(result.get("preheader", "")).strip(),
            "body": str(result.get("body", "")).strip(),
            "cta": str(result.get("cta", "")).strip(),
        }


class OpenAIQualityScorer(QualityScorer):
    def __init__(self, chat: OpenAIChat) -> None:
        self.chat = chat

    async def score_quality(
        self,
        html: str,
        content: Mapping[str, Any],
        campaign_context: Mapping[str, Any],
    ) -> dict[str, Any]:
        result = await self.chat.complete_json(
            QUALITY_PROMPT,
            "Score this email.",
            {"html": html, "content": dict(content), "campaign": dict(campaign_context)},
        )
        if result.get("overall_score") is None:
            raise TransientServiceError("OpenAI reply has no overall_score", service="openai")
        try:
            score = float(result["overall_score"])
        except (TypeError, ValueError) as exc:
            raise TransientServiceError(
                "OpenAI returned a non-numeric quality score", service="openai"
            ) from exc
        if not math.isfinite(score):
            raise TransientServiceError(
                "OpenAI returned a non-numeric quality score", service="openai"
            )
        dimensions = result.get("dimension_scores")
        recommendations = result.get("recommendations")
        return {
            "overall_score": min(100.0, max(0.0, score)),
            "dimension_scores": dimensions if isinstance(dimensions, dict) else {},
            "recommendations": [str(item) for item in recommendations]
            if isinstance(recommendations, list)
            else [],
        }

    async def repair(self, html: str, recommendations: list[str]) -> str:
        if not recommendations:
            return html
        return await self.chat.complete(
            REPAIR_PROMPT,
            "Fix this email.",
            {"html": html, "recommendations": list(recommendations)},
        )
