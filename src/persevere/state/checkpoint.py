from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from persevere.artifacts import RunLayout
from persevere.config import PersevereConfig
from persevere.phases import Phase, RunContext


class CheckpointError(RuntimeError):
    """Raised when a checkpoint cannot be read, validated or resumed."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class _CheckpointModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CheckpointContext(_CheckpointModel):
    phase: Phase
    plan_revision_count: int = Field(ge=0)
    exec_iteration_count: int = Field(ge=0)
    follow_up_iteration_count: int = Field(ge=0)
    has_done_initial_follow_up: bool
    last_confidence: float = Field(default=0.0, ge=0, le=100)
    started_at: str
    last_transition_at: str
    failure_reason: str | None = None
    failed_phase: Phase | None = None


class CheckpointPaths(_CheckpointModel):
    working_dir: str
    run_dir: str
    plan_dir: str
    plan_path: str
    execute_dir: str
    gap_audit_dir: str


class RunCheckpoint(_CheckpointModel):
    run_id: str = Field(min_length=1)
    requirements: str
    context: CheckpointContext
    config: dict[str, Any]
    paths: CheckpointPaths
    last_saved: str = Field(default_factory=_utcnow_iso)

    def resolved_config(self) -> PersevereConfig:
        try:
            return PersevereConfig.from_dict(self.config)
        except (TypeError, ValueError) as exc:
            raise CheckpointError(f"Checkpoint {self.run_id} has invalid config: {exc}") from exc


def paths_for(
    layout: RunLayout,
    context: RunContext,
    *,
    working_dir: Path,
    plan_path: Path | None = None,
) -> CheckpointPaths:
    iteration = max(1, context.exec_iteration_count)
    return CheckpointPaths(
        working_dir=str(working_dir),
        run_dir=str(layout.root),
        plan_dir=str(layout.plan_dir),
        plan_path=str(plan_path or layout.plan_path),
        execute_dir=str(layout.execute_dir(iteration)),
        gap_audit_dir=str(layout.gap_audit_dir(iteration)),
    )


def to_checkpoint(
    context: RunContext,
    config: PersevereConfig,
    paths: CheckpointPaths,
    *,
    run_id: str,
    requirements: str,
) -> RunCheckpoint:
    return RunCheckpoint(
        run_id=run_id,
        requirements=requirements,
        context=CheckpointContext(
            phase=context.current_phase,
            plan_revision_count=context.plan_revision_count,
            exec_iteration_count=context.exec_iteration_count,
            follow_up_iteration_count=context.follow_up_iteration_count,
            has_done_initial_follow_up=context.has_done_initial_follow_up,
            last_confidence=context.last_confidence,
            started_at=context.started_at,
            last_transition_at=context.last_transition_at,
            failure_reason=context.failure_reason,
            failed_phase=context.failed_phase,
        ),
        config=config.to_dict(),
        paths=paths,
    )


def from_checkpoint(checkpoint: RunCheckpoint) -> RunContext:
    """Rebuild the run context. Transition history is not part of a checkpoint."""
    saved = checkpoint.context
    return RunContext(
        current_phase=saved.phase,
        plan_revision_count=saved.plan_revision_count,
        exec_iteration_count=saved.exec_iteration_count,
        follow_up_iteration_count=saved.follow_up_iteration_count,
        has_done_initial_follow_up=saved.has_done_initial_follow_up,
        last_confidence=saved.last_confidence,
        started_at=saved.started_at,
        last_transition_at=saved.last_transition_at,
        failure_reason=saved.failure_reason,
        failed_phase=saved.failed_phase,
    )


def parse_checkpoint(data: Any, *, source: str) -> RunCheckpoint:
    try:
        return RunCheckpoint.model_validate(data)
    except ValidationError as exc:
        raise CheckpointError(f"Invalid checkpoint {source}: {exc}") from exc
