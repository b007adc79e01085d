from __future__ import annotations

import json
import os
import re
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mailflow.errors import MailflowError
from mailflow.models import WorkflowReport

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class RunStoreError(MailflowError):
    kind = "store"


class RunStore:
    """Saved workflow reports, one JSON envelope per run."""

    SCHEMA_VERSION = 1

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _path(self, workflow_id: str) -> Path:
        if not _SAFE_ID_RE.match(workflow_id):
            raise RunStoreError(f"Invalid workflow id: {workflow_id!r}")
        return self.directory / f"{workflow_id}.json"

    def save(self, report: WorkflowReport) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._path(report.workflow_id)
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "saved_at": self._utcnow_iso(),
            "data": report.to_dict(),
        }
        fd, temp_path = tempfile.mkstemp(prefix=".run-", suffix=".json", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(envelope, handle, ensure_ascii=False, indent=2, default=str)
            os.replace(temp_path, target)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
        return target

    def _read_envelope(self, path: Path) -> dict[str, Any]:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RunStoreError(f"Corrupt run file: {path}") from exc
        if not isinstance(payload, dict) or "data" not in payload:
            raise RunStoreError(f"Unrecognized run file: {path}")
        version = int(payload.get("schema_version") or 0)
        if version > self.SCHEMA_VERSION:
            raise RunStoreError(
                f"Run file {path.name} uses schema {version}, newer than {self.SCHEMA_VERSION}"
            )
        return payload

    def load(self, workflow_id: str) -> WorkflowReport:
        path = self._path(workflow_id)
        if not path.exists():
            raise RunStoreError(f"No saved run with id {workflow_id}")
        return WorkflowReport.from_dict(self._read_envelope(path)["data"])

    def list_runs(self) -> list[dict[str, Any]]:
        if not self.directory.is_dir():
            return []
        runs: list[dict[str, Any]] = []
        for path in self.directory.glob("*.json"):
            if path.name.startswith("."):
                continue
            envelope = self._read_envelope(path)
            data = envelope["data"]
            summary = data.get("summary") or {}
            runs.append(
                {
                    "workflow_id": data.get("workflow_id", path.stem),
                    "status": data.get("status"),
                    "topic": (data.get("brief") or {}).get("topic"),
                    "quality_score": summary.get("quality_score"),
                    "saved_at": envelope.get("saved_at", ""),
                }
            )
        runs.sort(key=lambda item: (item["saved_at"], item["workflow_id"]), reverse=True)
        return runs
