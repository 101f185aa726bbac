from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class DeploymentHistory:
    """
    Append-only record of orchestrated deployments.
    Each run appends one JSONL line and refreshes a Markdown digest of the
    most recent runs for humans.
    """

    def __init__(self, history_dir: Path, index_limit: int = 20):
        self.history_dir = history_dir
        self.history_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.history_dir / "deployments.jsonl"
        self.index_file = self.history_dir / "index.md"
        self.index_limit = index_limit

    # --------------- public API ---------------
    def record(
        self,
        status: str,
        *,
        cluster: Optional[str] = None,
        url: Optional[str] = None,
        program_id: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "status": status,
        }
        if cluster:
            entry["cluster"] = cluster
        if url:
            entry["url"] = url
        if program_id:
            entry["program_id"] = program_id
        if duration_seconds is not None:
            entry["duration_seconds"] = duration_seconds
        if error:
            entry["error"] = error
        if error_kind:
            entry["error_kind"] = error_kind
        if details:
            entry["details"] = details

        self._append_jsonl(entry)
        self.render_index(limit=self.index_limit)
        return entry

    def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Newest first."""
        if not self.log_file.exists():
            return []
        try:
            lines = self.log_file.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []
        entries: List[Dict[str, Any]] = []
        for line in reversed(lines):
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
            if len(entries) >= limit:
                break
        return entries

    def last_program_id(self, cluster: Optional[str] = None) -> Optional[str]:
        for entry in self.recent(limit=200):
            if entry.get("status") != "success" or not entry.get("program_id"):
                continue
            if cluster and entry.get("cluster") != cluster:
                continue
            return entry["program_id"]
        return None

    def render_index(self, limit: int = 20) -> Path:
        lines = ["# Deployment History", "", "Newest first.", ""]
        for entry in self.recent(limit=limit):
            lines.append(f"## {entry.get('timestamp', '')} - {entry.get('status', 'unknown')}")
            if entry.get("cluster"):
                lines.append(f"- Cluster: {entry['cluster']}")
            if entry.get("url"):
                lines.append(f"- RPC URL: {entry['url']}")
            if entry.get("program_id"):
                lines.append(f"- Program ID: {entry['program_id']}")
            if entry.get("duration_seconds") is not None:
                lines.append(f"- Duration: {entry['duration_seconds']}s")
            if entry.get("error_kind"):
                lines.append(f"- Error kind: {entry['error_kind']}")
            if entry.get("error"):
                lines.append(f"- Error: {entry['error'].strip()}")
            lines.append("")

        try:
            self.index_file.write_text("\n".join(lines), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write deployment history digest: %s", exc)
        return self.index_file

    # --------------- internals ---------------
    def _append_jsonl(self, entry: Dict[str, Any]) -> None:
        try:
            with self.log_file.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Failed to record deployment history: %s", exc)
