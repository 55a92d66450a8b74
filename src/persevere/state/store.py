from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from persevere.phases import is_resumable
from persevere.state.checkpoint import CheckpointError, RunCheckpoint, parse_checkpoint

CHECKPOINT_FILE = "execution-state.json"


class CheckpointStore:
    """Keeps one JSON checkpoint per run directory.

    Files are wrapped in an envelope carrying ``schema_version``, a
    ``revision`` bumped on every save, and ``updated_at``. A bare payload
    without the envelope is read as revision 1.
    """

    SCHEMA_VERSION = 1

    def __init__(self, file_name: str = CHECKPOINT_FILE) -> None:
        self.file_name = file_name

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def path_for(self, run_dir: Path) -> Path:
        return run_dir / self.file_name

    def _read_raw(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise CheckpointError(f"Cannot read checkpoint {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise CheckpointError(f"Checkpoint {path} is not valid JSON: {exc.msg}") from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data"),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": raw_payload,
        }

    def get_envelope(self, run_dir: Path) -> dict[str, Any] | None:
        path = self.path_for(run_dir)
        if not path.exists():
            return None
        envelope = self._normalize_envelope(self._read_raw(path))
        if envelope["schema_version"] > self.SCHEMA_VERSION:
            raise CheckpointError(
                f"Checkpoint {path} uses schema version {envelope['schema_version']}, "
                f"newer than supported version {self.SCHEMA_VERSION}"
            )
        return envelope

    def save(self, run_dir: Path, checkpoint: RunCheckpoint) -> int:
        run_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(run_dir)
        revision = 0
        if path.exists():
            try:
                revision = int(self._normalize_envelope(self._read_raw(path))["revision"])
            except CheckpointError:
                revision = 0
        checkpoint.last_saved = self._utcnow_iso()
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision + 1,
            "updated_at": checkpoint.last_saved,
            "data": checkpoint.model_dump(mode="json"),
        }
        temp_path = path.with_name(f".{path.name}.tmp")
        temp_path.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(temp_path, path)
        return revision + 1

    def load(self, run_dir: Path) -> RunCheckpoint | None:
        envelope = self.get_envelope(run_dir)
        if envelope is None:
            return None
        return parse_checkpoint(envelope["data"], source=str(self.path_for(run_dir)))

    def _candidates(self, base_dir: Path) -> list[Path]:
        if not base_dir.is_dir():
            return []
        candidates = [
            self.path_for(entry)
            for entry in base_dir.iterdir()
            if entry.is_dir() and self.path_for(entry).is_file()
        ]
        candidates.sort(key=lambda path: path.stat().st_mtime, reverse=True)
        return candidates

    def find_latest(self, base_dir: Path) -> RunCheckpoint | None:
        for path in self._candidates(base_dir):
            return self.load(path.parent)
        return None

    def find_latest_resumable(self, base_dir: Path) -> RunCheckpoint | None:
        """Return the newest checkpoint under ``base_dir`` that has not completed."""
        for path in self._candidates(base_dir):
            checkpoint = self.load(path.parent)
            if checkpoint is not None and is_resumable(checkpoint.context.phase):
                return checkpoint
        return None
