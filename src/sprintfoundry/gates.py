from __future__ import annotations

import json
import logging
import os
from collections.abc import Collection
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sprintfoundry.models import GateStatus, HumanGate, utcnow_iso

logger = logging.getLogger(__name__)

DECISION_STATUSES = frozenset({"approved", "rejected", "changes_requested"})


@dataclass(slots=True, frozen=True)
class GateDecision:
    status: GateStatus
    reviewer_feedback: str = ""
    decided_at: str | None = None

    @property
    def fingerprint(self) -> str:
        return f"{self.status}:{self.decided_at}:{self.reviewer_feedback}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reviewer_feedback": self.reviewer_feedback,
            "decided_at": self.decided_at,
        }


PENDING = GateDecision("pending")


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp")
    temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(temp_path, path)


class HumanGateResolver:
    """Reads review decisions written next to the workspace by an external reviewer."""

    def __init__(self, review_dir: str = ".sprintfoundry/reviews") -> None:
        self.review_dir = review_dir

    def _dir(self, workspace: Path) -> Path:
        return Path(workspace) / self.review_dir

    def decision_path(self, workspace: Path, gate_id: str) -> Path:
        return self._dir(workspace) / f"{gate_id}.decision.json"

    def pending_path(self, workspace: Path, gate_id: str) -> Path:
        return self._dir(workspace) / f"{gate_id}.pending.json"

    def request(
        self,
        gate: HumanGate,
        workspace: Path,
        *,
        run_id: str,
        summary: str = "",
        artifacts: list[str] | None = None,
    ) -> Path:
        path = self.pending_path(workspace, gate.gate_id)
        if path.exists():
            return path
        _write_json_atomic(
            path,
            {
                "review_id": gate.gate_id,
                "run_id": run_id,
                "step_number": gate.step_number,
                "reason": gate.reason,
                "summary": summary,
                "artifacts_to_review": list(artifacts or []),
                "requested_at": utcnow_iso(),
            },
        )
        logger.info("Human review requested for %s at %s", gate.gate_id, path)
        return path

    def resolve(
        self,
        gate: HumanGate,
        workspace: Path,
        *,
        handled: Collection[str] = (),
    ) -> GateDecision:
        path = self.decision_path(workspace, gate.gate_id)
        if not path.exists():
            return PENDING
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            # The reviewer may still be writing the file.
            logger.warning("Unreadable decision for %s: %s", gate.gate_id, exc)
            return PENDING
        if not isinstance(payload, dict):
            return PENDING
        status = payload.get("status")
        if status not in DECISION_STATUSES:
            logger.warning("Ignoring decision for %s with status %r", gate.gate_id, status)
            return PENDING
        decision = GateDecision(
            status=status,
            reviewer_feedback=str(payload.get("reviewer_feedback") or ""),
            decided_at=payload.get("decided_at"),
        )
        if decision.fingerprint in handled:
            return PENDING
        return decision

    def clear_request(self, gate: HumanGate, workspace: Path) -> None:
        try:
            self.pending_path(workspace, gate.gate_id).unlink()
        except FileNotFoundError:
            pass

    def write_decision(
        self,
        workspace: Path,
        gate_id: str,
        status: str,
        reviewer_feedback: str = "",
    ) -> Path:
        if status not in DECISION_STATUSES:
            raise ValueError(f"Unsupported decision status: {status}")
        path = self.decision_path(workspace, gate_id)
        _write_json_atomic(
            path,
            {
                "status": status,
                "reviewer_feedback": reviewer_feedback,
                "decided_at": utcnow_iso(),
            },
        )
        return path

    def pending_requests(self, workspace: Path) -> list[dict[str, Any]]:
        directory = self._dir(workspace)
        if not directory.exists():
            return []
        requests: list[dict[str, Any]] = []
        for path in sorted(directory.glob("*.pending.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            if isinstance(payload, dict):
                requests.append(payload)
        return requests
