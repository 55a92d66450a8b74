from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path

from persevere.artifacts import scan_execution_artifacts
from persevere.phases import RunContext

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ReconciliationReport:
    context: RunContext
    changed: bool
    warnings: list[str] = field(default_factory=list)


def reconcile_with_artifacts(context: RunContext, execute_dir: Path) -> ReconciliationReport:
    """Re-derive follow-up counters from the files in ``execute_dir``.

    Artifacts win whenever they disagree with the checkpoint. The mismatch is
    only logged when the checkpoint had recorded progress of its own.
    """
    iteration = context.exec_iteration_count
    if iteration < 1:
        return ReconciliationReport(context=context, changed=False)

    scan = scan_execution_artifacts(execute_dir, iteration)
    artifact_follow_up = scan.next_follow_up_iteration
    artifact_initial = scan.has_done_initial_follow_up

    mismatch = (
        context.follow_up_iteration_count != artifact_follow_up
        or context.has_done_initial_follow_up != artifact_initial
    )
    if not mismatch:
        return ReconciliationReport(context=context, changed=False)

    warnings: list[str] = []
    state_advanced = context.follow_up_iteration_count > 0 or context.has_done_initial_follow_up
    if state_advanced:
        message = (
            "Checkpoint disagrees with artifacts in "
            f"{execute_dir}: follow-up iteration {context.follow_up_iteration_count} "
            f"(initial done: {context.has_done_initial_follow_up}) vs artifacts "
            f"{artifact_follow_up} (initial done: {artifact_initial}); using artifacts"
        )
        LOGGER.warning("%s", message)
        warnings.append(message)

    reconciled = replace(
        context,
        follow_up_iteration_count=artifact_follow_up,
        has_done_initial_follow_up=artifact_initial,
    )
    return ReconciliationReport(context=reconciled, changed=True, warnings=warnings)
