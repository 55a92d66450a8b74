from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from pathlib import Path

from persevere.artifacts import (
    EXECUTE_METADATA_FILE,
    GAP_AUDIT_METADATA_FILE,
    PLAN_FILE,
    PLAN_METADATA_FILE,
    TOOL_CURATION_METADATA_FILE,
    TOOL_CURATION_REPORT_FILE,
    ExecuteMetadata,
    GapAuditMetadata,
    HardBlocker,
    OpenQuestion,
    PlanMetadata,
    ToolCurationMetadata,
    execution_summary_name,
    follow_up_summary_name,
    gap_audit_summary_name,
    gap_plan_name,
    write_metadata,
)
from persevere.backends.base import (
    BackendInvocationResult,
    BackendTask,
    InvocationMetadata,
    TaskBackend,
)
from persevere.config import FakeBackendConfig
from persevere.tasks import TaskKind

FINAL_SUMMARY_FILE = "final-summary.md"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class FakeBackend(TaskBackend):
    """Deterministic in-process backend that writes every artifact a phase expects.

    All cadence counters live on the instance, so each test builds its own
    isolated fake. Behaviour is selected by ``task.kind`` alone.

    ``exit_codes`` scripts the exit code of successive calls per task kind
    (calls beyond the script exit 0). ``skip_artifacts`` makes the first N
    calls of a kind exit 0 without writing anything, which breaks the
    artifact contract.
    """

    name = "mock"

    def __init__(
        self,
        config: FakeBackendConfig | None = None,
        *,
        name: str = "mock",
        exit_codes: dict[TaskKind, list[int]] | None = None,
        skip_artifacts: dict[TaskKind, int] | None = None,
        available: bool = True,
        version: str | None = "fake-1.0.0",
    ) -> None:
        self.config = config or FakeBackendConfig()
        self.name = name
        self._exit_codes = {kind: list(codes) for kind, codes in (exit_codes or {}).items()}
        self._skip_artifacts = dict(skip_artifacts or {})
        self._available = available
        self._version = version
        self.calls: list[BackendTask] = []
        self.questions_answered = 0
        self.improvements = 0
        self.gap_audits = 0
        self.follow_up_counts: dict[int, int] = defaultdict(int)
        self._confidence = float(self.config.starting_confidence)

    async def is_available(self) -> bool:
        return self._available

    async def version(self) -> str | None:
        return self._version

    def _next_exit_code(self, kind: TaskKind) -> int:
        scripted = self._exit_codes.get(kind)
        if scripted:
            return scripted.pop(0)
        return 0

    def _should_skip_artifacts(self, kind: TaskKind) -> bool:
        remaining = self._skip_artifacts.get(kind, 0)
        if remaining <= 0:
            return False
        self._skip_artifacts[kind] = remaining - 1
        return True

    async def execute(self, task: BackendTask) -> BackendInvocationResult:
        started_at = _utcnow_iso()
        self.calls.append(task)
        await asyncio.sleep(0)

        exit_code = self._next_exit_code(task.kind)
        if exit_code == 0 and not self._should_skip_artifacts(task.kind):
            task.working_dir.mkdir(parents=True, exist_ok=True)
            self._write_artifacts(task)

        return BackendInvocationResult(
            exit_code=exit_code,
            duration_ms=0,
            invocation=InvocationMetadata(
                command=self.name,
                args=[task.kind.value],
                cwd=str(task.working_dir),
                started_at=started_at,
                ended_at=_utcnow_iso(),
            ),
            stdout_tail=[f"{self.name} {task.kind.value} exited {exit_code}"],
            model_used=task.model or "fake-model",
        )

    def _write_artifacts(self, task: BackendTask) -> None:
        directory = task.working_dir
        if task.kind is TaskKind.PLAN_GENERATION:
            self._write_plan(directory, "Initial plan")
        elif task.kind is TaskKind.ANSWER_QUESTIONS:
            self.questions_answered += 1
            self._write_plan(directory, f"Plan revised after answers ({self.questions_answered})")
        elif task.kind is TaskKind.IMPROVE_PLAN:
            self.improvements += 1
            self._confidence = self._improved_confidence()
            self._write_plan(directory, f"Plan improved ({self.improvements})")
        elif task.kind is TaskKind.TOOL_CURATION:
            self._write_tool_curation(directory)
        elif task.kind is TaskKind.EXECUTE_PLAN:
            self._write_execution(directory, task.execution_iteration)
        elif task.kind is TaskKind.EXECUTE_FOLLOW_UPS:
            self._write_follow_up(directory, task.execution_iteration, task.follow_up_iteration)
        elif task.kind is TaskKind.GAP_AUDIT:
            self._write_gap_audit(directory, task.execution_iteration)
        elif task.kind is TaskKind.GAP_PLAN:
            path = directory / gap_plan_name(task.execution_iteration)
            path.write_text(f"# Gap Closure Plan {task.execution_iteration}\n", encoding="utf-8")
        elif task.kind is TaskKind.GENERATE_SUMMARY:
            (directory / FINAL_SUMMARY_FILE).write_text(self._summary_text(), encoding="utf-8")

    def _improved_confidence(self) -> float:
        start = self.config.starting_confidence
        target = self.config.target_confidence
        steps = self.config.plan_revision_iterations
        if steps <= 0:
            return float(target)
        step = (target - start) / steps
        return float(round(min(start + self.improvements * step, target)))

    def _write_plan(self, directory: Path, title: str) -> None:
        questions: list[OpenQuestion] = []
        if self.questions_answered < self.config.open_question_iterations:
            questions.append(
                OpenQuestion(
                    question=f"Question {self.questions_answered + 1}: which approach?",
                    suggested_answers=["Option A", "Option B"],
                )
            )
        (directory / PLAN_FILE).write_text(f"# {title}\n", encoding="utf-8")
        write_metadata(
            directory / PLAN_METADATA_FILE,
            PlanMetadata(
                confidence=self._confidence,
                open_questions=questions,
                summary=f"{title} at {self._confidence:g}% confidence.",
            ),
        )

    def _write_tool_curation(self, directory: Path) -> None:
        (directory / TOOL_CURATION_REPORT_FILE).write_text(
            "# Tool Curation\n\n1. `pytest -q`\n", encoding="utf-8"
        )
        write_metadata(
            directory / TOOL_CURATION_METADATA_FILE,
            ToolCurationMetadata(summary="Selected `pytest -q` as the verification command."),
        )

    def _write_execution(self, directory: Path, iteration: int) -> None:
        blockers: list[HardBlocker] = []
        if self.config.hard_blockers and iteration == 1:
            blockers.append(
                HardBlocker(
                    description="Docker is not running",
                    reason="Container tests need a running Docker daemon",
                )
            )
        (directory / execution_summary_name(iteration)).write_text(
            f"# Execution Summary {iteration}\n", encoding="utf-8"
        )
        write_metadata(
            directory / EXECUTE_METADATA_FILE,
            ExecuteMetadata(
                has_follow_ups=self.config.follow_up_iterations > 0,
                hard_blockers=blockers,
                summary=f"Execution iteration {iteration} complete.",
            ),
        )

    def _write_follow_up(self, directory: Path, iteration: int, follow_up: int) -> None:
        self.follow_up_counts[iteration] += 1
        (directory / follow_up_summary_name(iteration, follow_up)).write_text(
            f"# Follow-up {follow_up} of execution {iteration}\n", encoding="utf-8"
        )
        write_metadata(
            directory / EXECUTE_METADATA_FILE,
            ExecuteMetadata(
                has_follow_ups=self.follow_up_counts[iteration] < self.config.follow_up_iterations,
                hard_blockers=[],
                summary=f"Follow-up {follow_up} of execution {iteration} complete.",
            ),
        )

    def _write_gap_audit(self, directory: Path, iteration: int) -> None:
        self.gap_audits += 1
        gaps = self.gap_audits < self.config.execution_iterations
        (directory / gap_audit_summary_name(iteration)).write_text(
            f"# Gap Audit {iteration}\n", encoding="utf-8"
        )
        write_metadata(
            directory / GAP_AUDIT_METADATA_FILE,
            GapAuditMetadata(
                gaps_identified=gaps,
                summary=(
                    f"Gaps found in audit {self.gap_audits}."
                    if gaps
                    else f"No gaps found in audit {self.gap_audits}."
                ),
            ),
        )

    def _summary_text(self) -> str:
        follow_ups = sum(self.follow_up_counts.values())
        return (
            "# Run Summary\n\n"
            f"- Questions answered: {self.questions_answered}\n"
            f"- Plan improvements: {self.improvements}\n"
            f"- Follow-up passes: {follow_ups}\n"
            f"- Gap audits: {self.gap_audits}\n"
        )
