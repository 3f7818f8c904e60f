from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from sprintfoundry.models import utcnow_iso

logger = logging.getLogger(__name__)


class EventLog:
    """Append-only JSONL log of run events, mirrored in memory."""

    def __init__(self, workspace: Path | None = None, events_dir: Path | None = None) -> None:
        self.workspace_file = Path(workspace) / ".events.jsonl" if workspace else None
        self.global_file = Path(events_dir) / "events.jsonl" if events_dir else None
        self.events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def emit(self, run_id: str, event_type: str, data: dict[str, Any] | None = None) -> dict:
        event = {
            "event_type": event_type,
            "run_id": run_id,
            "timestamp": utcnow_iso(),
            "data": dict(data or {}),
        }
        line = json.dumps(event, ensure_ascii=False) + "\n"
        with self._lock:
            self.events.append(event)
            for path in (self.workspace_file, self.global_file):
                if path is None:
                    continue
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
        logger.debug("%s %s %s", run_id, event_type, event["data"])
        return event

    def for_run(self, run_id: str) -> list[dict[str, Any]]:
        return [event for event in self.events if event["run_id"] == run_id]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.events if event["event_type"] == event_type]

    @staticmethod
    def load(path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                events.append(payload)
        return events
