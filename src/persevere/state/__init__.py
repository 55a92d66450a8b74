from persevere.state.checkpoint import (
    CheckpointError,
    RunCheckpoint,
    from_checkpoint,
    paths_for,
    to_checkpoint,
)
from persevere.state.reconcile import ReconciliationReport, reconcile_with_artifacts
from persevere.state.store import CheckpointStore

__all__ = [
    "CheckpointError",
    "CheckpointStore",
    "ReconciliationReport",
    "RunCheckpoint",
    "from_checkpoint",
    "paths_for",
    "reconcile_with_artifacts",
    "to_checkpoint",
]
