from __future__ import annotations

import asyncio
import contextlib
import html
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from mailflow.errors import ServiceError, StageTimeoutError
from mailflow.services.base import Renderer

logger = logging.getLogger(__name__)


class MjmlRenderer(Renderer):
    """Builds an MJML document and compiles it with the ``mjml`` CLI."""

    def __init__(
        self,
        binary: str = "mjml",
        *,
        max_width: str = "600px",
        timeout_seconds: float = 60.0,
        working_directory: Path | None = None,
    ) -> None:
        self.binary = binary
        self.max_width = max_width
        self.timeout_seconds = timeout_seconds
        self.working_directory = working_directory

    def build_command(self) -> list[str]:
        return [self.binary, "--stdin", "--stdout"]

    def build_document(
        self,
        content: Mapping[str, Any],
        assets: list[dict[str, Any]],
        pricing: Mapping[str, Any] | None = None,
    ) -> str:
        subject = html.escape(str(content.get("subject", "")))
        preheader = html.escape(str(content.get("preheader", "")))
        cta = html.escape(str(content.get("cta", "")) or "Book now")
        paragraphs = [
            f"<mj-text>{html.escape(chunk.strip())}</mj-text>"
            for chunk in str(content.get("body", "")).split("\n\n")
            if chunk.strip()
        ]

        hero = ""
        if assets:
            hero = (
                f'<mj-image src="{html.escape(str(assets[0].get("path", "")), quote=True)}" '
                f'alt="{subject}" />'
            )

        price_line = ""
        cheapest = (pricing or {}).get("cheapest")
        if isinstance(cheapest, Mapping) and cheapest.get("price") is not None:
            currency = html.escape(str(cheapest.get("currency") or (pricing or {}).get("currency", "")))
            price_line = (
                f'<mj-text font-weight="bold">From {html.escape(str(cheapest["price"]))} '
                f"{currency}</mj-text>"
            )

        body = "\n".join(
            [hero, f'<mj-text font-size="22px">{subject}</mj-text>', *paragraphs, price_line]
        )
        return (
            "<mjml>\n"
            "<mj-head>\n"
            f"<mj-title>{subject}</mj-title>\n"
            f"<mj-preview>{preheader}</mj-preview>\n"
            "</mj-head>\n"
            f'<mj-body width="{self.max_width}">\n'
            "<mj-section><mj-column>\n"
            f"{body}\n"
            f'<mj-button href="#">{cta}</mj-button>\n'
            "</mj-column></mj-section>\n"
            "</mj-body>\n"
            "</mjml>\n"
        )

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        await process.wait()

    async def compile(self, source: str) -> str:
        command = self.build_command()
        cwd = str(self.working_directory) if self.working_directory else None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ServiceError(
                f"MJML binary not found: {self.binary}",
                service="mjml",
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(source.encode("utf-8")), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            await self._reap(process)
            raise StageTimeoutError(
                f"MJML compilation exceeded {self.timeout_seconds:.1f}s"
            ) from exc
        except asyncio.CancelledError:
            await self._reap(process)
            raise

        stderr_output = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise ServiceError(
                f"MJML compilation failed with exit code {process.returncode}: {stderr_output}",
                service="mjml",
                retriable=False,
            )
        if stderr_output:
            logger.debug("mjml stderr: %s", stderr_output[:400])
        rendered = stdout.decode("utf-8", errors="replace").strip()
        if not rendered:
            raise ServiceError("MJML produced no output", service="mjml", retriable=True)
        return rendered

    async def render(
        self,
        content: Mapping[str, Any],
        assets: list[dict[str, Any]],
        pricing: Mapping[str, Any] | None = None,
    ) -> dict[str, str]:
        source = self.build_document(content, assets, pricing)
        return {"html": await self.compile(source), "mjml_source": source}
