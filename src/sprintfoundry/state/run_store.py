from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sprintfoundry.models import Run, utcnow_iso


class RunStoreError(RuntimeError):
    """Raised when persisted run state cannot be read or written."""


class RunStore:
    SCHEMA_VERSION = 1

    def __init__(self, workspace: Path) -> None:
        self.workspace = Path(workspace).resolve()
        self.runs_dir = self.workspace / ".sprintfoundry" / "runs"
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.runs_dir / ".lock"

    def _run_file(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise RunStoreError("Timed out waiting for run state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self, run_id: str) -> dict[str, Any] | None:
        path = self._run_file(run_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RunStoreError(f"Corrupt run state for {run_id}: {exc}") from exc
        if not isinstance(payload, dict) or "data" not in payload:
            raise RunStoreError(f"Run state for {run_id} is not an envelope.")
        return payload

    def save(self, run: Run) -> int:
        """Atomically replace the persisted run and return the new revision."""
        run.updated_at = utcnow_iso()
        with self._state_lock():
            current = self._read_envelope(run.run_id)
            revision = int(current.get("revision", 0)) + 1 if current else 1
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": run.updated_at,
                "data": run.to_dict(),
            }
            path = self._run_file(run.run_id)
            temp_path = path.with_name(f".{path.name}.tmp")
            temp_path.write_text(
                json.dumps(envelope, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(temp_path, path)
        return revision

    def get_envelope(self, run_id: str) -> dict[str, Any]:
        envelope = self._read_envelope(run_id)
        if envelope is None:
            raise RunStoreError(f"Unknown run: {run_id}")
        return envelope

    def load(self, run_id: str) -> dict[str, Any]:
        return self.get_envelope(run_id)["data"]

    def list_runs(self) -> list[dict[str, Any]]:
        runs: list[dict[str, Any]] = []
        for path in sorted(self.runs_dir.glob("*.json")):
            try:
                envelope = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                continue
            data = envelope.get("data") if isinstance(envelope, dict) else None
            if not isinstance(data, dict):
                continue
            runs.append(
                {
                    "run_id": data.get("run_id"),
                    "status": data.get("status"),
                    "error": data.get("error"),
                    "updated_at": envelope.get("updated_at"),
                    "revision": envelope.get("revision"),
                }
            )
        runs.sort(key=lambda item: str(item.get("updated_at") or ""))
        return runs

    def latest_run_id(self) -> str | None:
        runs = self.list_runs()
        if not runs:
            return None
        return runs[-1].get("run_id")
