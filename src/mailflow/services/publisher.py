from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Any

from mailflow.errors import ServiceError
from mailflow.services.base import Publisher

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class FilePublisher(Publisher):
    """Writes the finished campaign under ``<directory>/<workflow_id>/``."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def write(self, html: str, assets: list[dict[str, Any]], workflow_id: str) -> dict[str, Any]:
        if not _SAFE_ID_RE.match(workflow_id):
            raise ServiceError(
                f"Refusing to publish unsafe workflow id: {workflow_id!r}",
                service="publisher",
                retriable=False,
            )
        target = (self.directory / workflow_id).resolve()
        try:
            target.mkdir(parents=True, exist_ok=True)
            index = target / "index.html"
            index.write_text(html, encoding="utf-8")
            (target / "assets.json").write_text(
                json.dumps(assets, ensure_ascii=False, indent=2), encoding="utf-8"
            )
        except OSError as exc:
            raise ServiceError(
                f"Failed to publish campaign to {target}: {exc}",
                service="publisher",
                retriable=True,
            ) from exc
        return {
            "url": index.as_uri(),
            "path": str(index),
            "bytes": len(html.encode("utf-8")),
        }

    async def publish(
        self,
        html: str,
        assets: list[dict[str, Any]],
        workflow_id: str,
    ) -> dict[str, Any]:
        return await asyncio.to_thread(self.write, html, assets, workflow_id)
