from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from mailflow.errors import ServiceError
from mailflow.services.base import AssetStore

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp"}


class LocalAssetStore(AssetStore):
    """Searches a local Figma export directory.

    ``tags.json`` maps file names to ``{"tags": [...], "tone": "..."}``.
    Files missing from the manifest are tagged by the words in their name.
    """

    MANIFEST = "tags.json"

    def __init__(self, directory: Path, *, limit: int = 5) -> None:
        self.directory = directory
        self.limit = limit

    def _load_manifest(self) -> dict[str, Any]:
        manifest = self.directory / self.MANIFEST
        if not manifest.exists():
            return {}
        try:
            payload = json.loads(manifest.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ServiceError(
                f"Asset manifest is not valid JSON: {manifest}",
                service="assets",
                retriable=False,
            ) from exc
        return payload if isinstance(payload, dict) else {}

    def _index(self) -> list[dict[str, Any]]:
        if not self.directory.is_dir():
            return []
        manifest = self._load_manifest()
        entries: list[dict[str, Any]] = []
        for path in sorted(self.directory.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in IMAGE_SUFFIXES:
                continue
            relative = path.relative_to(self.directory).as_posix()
            meta = manifest.get(relative) or manifest.get(path.name) or {}
            tags = meta.get("tags") if isinstance(meta, dict) else None
            if not isinstance(tags, list):
                tags = [part for part in path.stem.lower().replace("_", "-").split("-") if part]
            entries.append(
                {
                    "name": path.name,
                    "path": str(path),
                    "tags": [str(tag).lower() for tag in tags],
                    "tone": str(meta.get("tone", "")).lower() if isinstance(meta, dict) else "",
                }
            )
        return entries

    def search(self, tags: list[str], emotional_tone: str | None = None) -> list[dict[str, Any]]:
        wanted = {tag.strip().lower() for tag in tags if tag and tag.strip()}
        tone = (emotional_tone or "").strip().lower()
        ranked: list[tuple[float, str, dict[str, Any]]] = []
        for entry in self._index():
            overlap = len(wanted.intersection(entry["tags"]))
            tone_match = bool(tone) and entry["tone"] == tone
            if not overlap and not tone_match:
                continue
            score = overlap + (0.5 if tone_match else 0.0)
            ranked.append((score, entry["name"], {**entry, "score": score}))
        ranked.sort(key=lambda item: (-item[0], item[1]))
        return [entry for _, _, entry in ranked[: self.limit]]

    async def search_assets(
        self,
        tags: list[str],
        emotional_tone: str | None = None,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.search, tags, emotional_tone)
