"""Driver loop that walks a run through its phases.

Each phase handler runs one backend task through the resilient executor,
reads the metadata the task left behind, asks the stop-condition policy
what to do next and sends exactly one event to the state machine. The
checkpoint is saved after every accepted transition.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from persevere.artifacts import (
    EXECUTE_METADATA_FILE,
    GAP_AUDIT_METADATA_FILE,
    PLAN_METADATA_FILE,
    TOOL_CURATION_METADATA_FILE,
    TOOL_CURATION_REPORT_FILE,
    ExecuteMetadata,
    GapAuditMetadata,
    HardBlocker,
    MetadataError,
    OpenQuestion,
    PlanMetadata,
    RunLayout,
    append_qa_history,
    execution_summary_name,
    follow_up_summary_name,
    gap_audit_summary_name,
    read_metadata,
    read_qa_history,
)
from persevere.backends.base import BackendExecutionError, BackendTask
from persevere.backends.resilient import ResilientExecutor, ResilientResult
from persevere.config import PersevereConfig
from persevere.phases import (
    ConfidenceLow,
    ErrorOccurred,
    Event,
    ExecutionComplete,
    FollowUpsComplete,
    GapAuditComplete,
    GapPlanComplete,
    HardBlockersResolved,
    MaxExecIterationsReached,
    MaxFollowUpsReached,
    MaxPlanIterationsReached,
    NoMoreFollowUps,
    OpenQuestionsFound,
    Phase,
    PlanComplete,
    PlanGenerated,
    PlanImproved,
    QuestionsAnswered,
    Resume,
    RunContext,
    StartPlan,
    StateMachine,
    SummaryComplete,
    ToolCurationComplete,
    TransitionError,
    TransitionRecord,
    is_resumable,
    is_terminal,
)
from persevere.policy import (
    StopDecision,
    StopReason,
    check_exec_iteration,
    check_follow_ups,
    check_plan_revision,
)
from persevere.state.checkpoint import (
    CheckpointError,
    RunCheckpoint,
    from_checkpoint,
    paths_for,
    to_checkpoint,
)
from persevere.state.reconcile import reconcile_with_artifacts
from persevere.state.store import CheckpointStore
from persevere.tasks import TaskKind, build_message

LOGGER = logging.getLogger(__name__)

AnswerProvider = Callable[[list[OpenQuestion]], list[str]]
BlockerResolver = Callable[[list[HardBlocker]], list[str]]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def auto_answer(questions: list[OpenQuestion]) -> list[str]:
    """Pick the first suggested answer for every question."""
    answers: list[str] = []
    for question in questions:
        if question.suggested_answers:
            answers.append(question.suggested_answers[0])
        else:
            answers.append("Use your best judgement and record the assumption in the plan.")
    return answers


def auto_resolve(blockers: list[HardBlocker]) -> list[str]:
    return [
        f"Work around or skip '{blocker.description}' and document it in the summary."
        for blocker in blockers
    ]


@dataclass(slots=True)
class RunOutcome:
    run_id: str
    run_dir: Path
    context: RunContext
    history: list[TransitionRecord] = field(default_factory=list)
    notices: list[StopDecision] = field(default_factory=list)
    error: str | None = None

    @property
    def phase(self) -> Phase:
        return self.context.current_phase

    @property
    def succeeded(self) -> bool:
        return self.context.current_phase is Phase.COMPLETE

    @property
    def next_steps(self) -> list[str]:
        steps: list[str] = []
        for notice in self.notices:
            for step in notice.next_steps:
                if step not in steps:
                    steps.append(step)
        return steps


class Orchestrator:
    """Runs one workflow from requirements to final summary.

    ``config`` is copied per run; fallback selections made while the run is
    in progress are written back into that copy so they survive a resume.
    """

    def __init__(
        self,
        config: PersevereConfig,
        executor: ResilientExecutor,
        *,
        working_dir: Path,
        store: CheckpointStore | None = None,
        answer_provider: AnswerProvider = auto_answer,
        blocker_resolver: BlockerResolver = auto_resolve,
    ) -> None:
        self.config = PersevereConfig.from_dict(config.to_dict())
        self.executor = executor
        self.working_dir = working_dir.resolve()
        self.store = store or CheckpointStore()
        self.answer_provider = answer_provider
        self.blocker_resolver = blocker_resolver
        self.machine = StateMachine()
        self.layout: RunLayout | None = None
        self.run_id = ""
        self.requirements = ""
        self.plan_path: Path | None = None
        self.notices: list[StopDecision] = []
        self._handlers: dict[Phase, Callable[[], Awaitable[None]]] = {
            Phase.PLAN_GENERATION: self._plan_generation,
            Phase.PLAN_REVISION: self._plan_revision,
            Phase.TOOL_CURATION: self._tool_curation,
            Phase.EXECUTION: self._execution,
            Phase.FOLLOW_UPS: self._follow_ups,
            Phase.GAP_AUDIT: self._gap_audit,
            Phase.GAP_PLAN: self._gap_plan,
            Phase.SUMMARY_GENERATION: self._summary,
        }

    def _artifact_base(self) -> Path:
        base = Path(self.config.run.artifact_dir)
        if not base.is_absolute():
            base = self.working_dir / base
        return base

    def _require_layout(self) -> RunLayout:
        if self.layout is None:
            raise RuntimeError("No run is active")
        return self.layout

    async def start(self, requirements: str) -> RunOutcome:
        self.run_id = new_run_id()
        self.requirements = requirements
        self.layout = RunLayout(self._artifact_base() / self.run_id)
        self.layout.root.mkdir(parents=True, exist_ok=True)
        self.plan_path = self.layout.plan_path
        self.layout.requirements_path.write_text(requirements, encoding="utf-8")
        self.layout.effective_config_path.write_text(
            json.dumps(
                {
                    "run_id": self.run_id,
                    "resolved_at": _utcnow_iso(),
                    "working_dir": str(self.working_dir),
                    "config": self.config.to_dict(),
                },
                indent=2,
            ),
            encoding="utf-8",
        )
        LOGGER.info("Starting run %s in %s", self.run_id, self.layout.root)
        self.machine = StateMachine(RunContext())
        self._send(StartPlan())
        return await self._drive()

    async def resume(
        self, checkpoint: RunCheckpoint, *, config: PersevereConfig | None = None
    ) -> RunOutcome:
        """Continue a saved run. ``config`` replaces the saved configuration when given.

        A failed run re-enters the phase it failed in with its failure cleared.
        """
        phase = checkpoint.context.phase
        if not is_resumable(phase):
            raise CheckpointError(f"Run {checkpoint.run_id} is {phase.value} and cannot be resumed")
        if phase is Phase.FAILED:
            failed_phase = checkpoint.context.failed_phase
            if failed_phase is None or not is_resumable(failed_phase):
                raise CheckpointError(
                    f"Run {checkpoint.run_id} failed without a resumable phase recorded"
                )
            LOGGER.info(
                "Retrying run %s from %s after failure: %s",
                checkpoint.run_id,
                failed_phase.value,
                checkpoint.context.failure_reason,
            )
            phase = failed_phase

        if config is not None:
            self.config = PersevereConfig.from_dict(config.to_dict())
        else:
            self.config = checkpoint.resolved_config()
        self.run_id = checkpoint.run_id
        self.requirements = checkpoint.requirements
        self.layout = RunLayout(Path(checkpoint.paths.run_dir))
        self.plan_path = Path(checkpoint.paths.plan_path)

        context = from_checkpoint(checkpoint)
        report = reconcile_with_artifacts(
            context, self.layout.execute_dir(context.exec_iteration_count)
        )
        context = report.context
        LOGGER.info("Resuming run %s at %s", self.run_id, phase.value)
        self.machine = StateMachine(
            replace(context, current_phase=Phase.IDLE, failure_reason=None, failed_phase=None)
        )
        self._send(Resume(from_phase=phase))
        return await self._drive()

    async def _drive(self) -> RunOutcome:
        error: str | None = None
        try:
            while not is_terminal(self.machine.phase):
                handler = self._handlers.get(self.machine.phase)
                if handler is None:
                    raise TransitionError(f"No handler for phase {self.machine.phase.value}")
                await handler()
        except (BackendExecutionError, MetadataError, TransitionError) as exc:
            error = str(exc)
            LOGGER.error("Run %s failed in %s: %s", self.run_id, self.machine.phase.value, error)
            self._send(ErrorOccurred(cause=error))
        if error is None and self.machine.context.failure_reason:
            error = self.machine.context.failure_reason
        return RunOutcome(
            run_id=self.run_id,
            run_dir=self._require_layout().root,
            context=self.machine.context,
            history=self.machine.history,
            notices=list(self.notices),
            error=error,
        )

    def _send(self, event: Event) -> None:
        self.machine.send(event, strict=True)
        self._persist()

    def _persist(self) -> None:
        layout = self._require_layout()
        context = self.machine.context
        checkpoint = to_checkpoint(
            context,
            self.config,
            paths_for(layout, context, working_dir=self.working_dir, plan_path=self.plan_path),
            run_id=self.run_id,
            requirements=self.requirements,
        )
        self.store.save(layout.root, checkpoint)

    def _notice(self, decision: StopDecision) -> None:
        LOGGER.warning("%s", decision.message)
        for step in decision.next_steps:
            LOGGER.info("Next step: %s", step)
        self.notices.append(decision)

    async def _run_task(
        self,
        kind: TaskKind,
        directory: Path,
        message: str,
        *,
        execution_iteration: int = 1,
        follow_up_iteration: int = 0,
    ) -> ResilientResult:
        group = kind.group
        layout = self._require_layout()
        directory.mkdir(parents=True, exist_ok=True)
        timeout = self.config.backends.timeout_seconds or None
        task = BackendTask(
            kind=kind,
            message=message,
            working_dir=directory,
            model=self.config.models.for_group(group),
            timeout_seconds=timeout,
            execution_iteration=execution_iteration,
            follow_up_iteration=follow_up_iteration,
            transcript_dir=layout.transcripts_dir if self.config.run.capture_transcripts else None,
        )
        primary = self.config.backends.for_group(group)
        result = await self.executor.execute(primary, task, self.config.backends.fallback)
        if result.fallback_occurred:
            LOGGER.warning(
                "%s now uses %s for %s tasks after fallback from %s",
                self.run_id,
                result.used_backend,
                group,
                primary,
            )
            setattr(self.config.backends, group, result.used_backend)
            setattr(self.config.models, group, "")
            self.config.backends.fallback = list(result.remaining_fallback_chain)
        return result

    def _answer_questions(self, questions: list[OpenQuestion]) -> list[str]:
        """Answer ``questions``, reusing answers already recorded for this run."""
        history_path = self._require_layout().qa_history_path
        recorded = read_qa_history(history_path)
        pending = [question for question in questions if question.question not in recorded]
        fresh = iter(self.answer_provider(pending) if pending else [])
        answers: list[str] = []
        for question in questions:
            if question.question in recorded:
                LOGGER.info("Reusing recorded answer for: %s", question.question)
                answers.append(recorded[question.question])
                continue
            answer = next(fresh, None)
            if answer is None:
                answer = auto_answer([question])[0]
            append_qa_history(history_path, question.question, answer)
            answers.append(answer)
        return answers

    async def _plan_generation(self) -> None:
        layout = self._require_layout()
        await self._run_task(
            TaskKind.PLAN_GENERATION,
            layout.plan_dir,
            build_message(
                TaskKind.PLAN_GENERATION,
                plan_path=layout.plan_path,
                metadata_path=layout.plan_dir / PLAN_METADATA_FILE,
                requirements=self.requirements,
            ),
        )
        self._send(PlanGenerated())

    async def _plan_revision(self) -> None:
        layout = self._require_layout()
        limits = self.config.limits
        plan_only = self.config.run.plan_only
        metadata_path = layout.plan_dir / PLAN_METADATA_FILE
        metadata = read_metadata(metadata_path, PlanMetadata)
        questions = metadata.open_questions

        decision = check_plan_revision(
            limits, self.machine.context.plan_revision_count, len(questions), metadata.confidence
        )
        if decision.should_stop:
            if decision.reason is StopReason.CONDITION_MET:
                LOGGER.info("%s", decision.message)
                self._send(PlanComplete(confidence=metadata.confidence, plan_only=plan_only))
                return
            self._notice(decision)
            if limits.plan_limit_action == "fail":
                self._send(ErrorOccurred(cause=decision.message))
                return
            self._send(MaxPlanIterationsReached(plan_only=plan_only))
            return

        LOGGER.info("%s", decision.message)
        if questions:
            self._send(OpenQuestionsFound(count=len(questions)))
            answers = self._answer_questions(questions)
            lines = [
                f"- Q: {question.question}\n  A: {answer}"
                for question, answer in zip(questions, answers, strict=False)
            ]
            await self._run_task(
                TaskKind.ANSWER_QUESTIONS,
                layout.plan_dir,
                build_message(
                    TaskKind.ANSWER_QUESTIONS,
                    plan_path=layout.plan_path,
                    answers="\n".join(lines),
                    qa_history_path=layout.qa_history_path,
                    metadata_path=metadata_path,
                ),
            )
            self._send(QuestionsAnswered())
            return

        self._send(ConfidenceLow(confidence=metadata.confidence, threshold=limits.plan_confidence))
        await self._run_task(
            TaskKind.IMPROVE_PLAN,
            layout.plan_dir,
            build_message(
                TaskKind.IMPROVE_PLAN,
                plan_path=layout.plan_path,
                confidence=f"{metadata.confidence:g}",
                threshold=limits.plan_confidence,
                metadata_path=metadata_path,
            ),
        )
        improved = read_metadata(metadata_path, PlanMetadata)
        self._send(PlanImproved(confidence=improved.confidence))

    async def _tool_curation(self) -> None:
        layout = self._require_layout()
        directory = layout.tool_curation_dir
        await self._run_task(
            TaskKind.TOOL_CURATION,
            directory,
            build_message(
                TaskKind.TOOL_CURATION,
                plan_path=self.plan_path,
                report_path=directory / TOOL_CURATION_REPORT_FILE,
                metadata_path=directory / TOOL_CURATION_METADATA_FILE,
            ),
        )
        self._send(ToolCurationComplete())

    async def _execution(self) -> None:
        layout = self._require_layout()
        iteration = self.machine.context.exec_iteration_count
        directory = layout.execute_dir(iteration)
        await self._run_task(
            TaskKind.EXECUTE_PLAN,
            directory,
            build_message(
                TaskKind.EXECUTE_PLAN,
                plan_path=self.plan_path,
                iteration=iteration,
                tool_report_path=layout.tool_curation_dir / TOOL_CURATION_REPORT_FILE,
                summary_path=directory / execution_summary_name(iteration),
                metadata_path=directory / EXECUTE_METADATA_FILE,
            ),
            execution_iteration=iteration,
        )
        metadata = read_metadata(directory / EXECUTE_METADATA_FILE, ExecuteMetadata)
        self._send(
            ExecutionComplete(
                has_follow_ups=metadata.has_follow_ups,
                has_hard_blockers=bool(metadata.hard_blockers),
            )
        )

    async def _run_follow_up_pass(
        self, iteration: int, follow_up: int, blockers: list[HardBlocker]
    ) -> ExecuteMetadata:
        directory = self._require_layout().execute_dir(iteration)
        if follow_up == 0:
            previous = execution_summary_name(iteration)
        else:
            previous = follow_up_summary_name(iteration, follow_up - 1)
        resolutions = ""
        if blockers:
            answers = self.blocker_resolver(blockers)
            lines = [
                f"- Blocker: {blocker.description}\n  Resolution: {answer}"
                for blocker, answer in zip(blockers, answers, strict=False)
            ]
            resolutions = "\nResolve these hard blockers first:\n" + "\n".join(lines)
        await self._run_task(
            TaskKind.EXECUTE_FOLLOW_UPS,
            directory,
            build_message(
                TaskKind.EXECUTE_FOLLOW_UPS,
                previous_summary_path=directory / previous,
                iteration=iteration,
                follow_up=follow_up,
                resolutions=resolutions,
                summary_path=directory / follow_up_summary_name(iteration, follow_up),
                metadata_path=directory / EXECUTE_METADATA_FILE,
            ),
            execution_iteration=iteration,
            follow_up_iteration=follow_up,
        )
        return read_metadata(directory / EXECUTE_METADATA_FILE, ExecuteMetadata)

    async def _follow_ups(self) -> None:
        layout = self._require_layout()
        context = self.machine.context
        iteration = context.exec_iteration_count
        metadata_path = layout.execute_dir(iteration) / EXECUTE_METADATA_FILE
        metadata = read_metadata(metadata_path, ExecuteMetadata)
        blockers = list(metadata.hard_blockers)

        if blockers and not context.has_done_initial_follow_up:
            LOGGER.info("Resolving %d hard blocker(s) before follow-ups", len(blockers))
            await self._run_follow_up_pass(iteration, context.follow_up_iteration_count, blockers)
            self._send(HardBlockersResolved())
            return

        decision = check_follow_ups(
            self.config.limits,
            context.follow_up_iteration_count,
            metadata.has_follow_ups,
            bool(blockers),
        )
        if decision.should_stop:
            if decision.reason is StopReason.LIMIT_REACHED:
                self._notice(decision)
                self._send(MaxFollowUpsReached())
            else:
                LOGGER.info("%s", decision.message)
                self._send(NoMoreFollowUps())
            return

        LOGGER.info("%s", decision.message)
        after = await self._run_follow_up_pass(
            iteration, context.follow_up_iteration_count, blockers
        )
        self._send(FollowUpsComplete(has_more=after.has_follow_ups or bool(after.hard_blockers)))

    async def _gap_audit(self) -> None:
        layout = self._require_layout()
        iteration = self.machine.context.exec_iteration_count
        directory = layout.gap_audit_dir(iteration)
        await self._run_task(
            TaskKind.GAP_AUDIT,
            directory,
            build_message(
                TaskKind.GAP_AUDIT,
                requirements_path=layout.requirements_path,
                plan_path=self.plan_path,
                iteration=iteration,
                summary_path=directory / gap_audit_summary_name(iteration),
                metadata_path=directory / GAP_AUDIT_METADATA_FILE,
            ),
            execution_iteration=iteration,
        )
        metadata = read_metadata(directory / GAP_AUDIT_METADATA_FILE, GapAuditMetadata)
        decision = check_exec_iteration(self.config.limits, iteration, metadata.gaps_identified)
        LOGGER.info("%s", decision.message)
        self._send(GapAuditComplete(gaps_found=metadata.gaps_identified))

    async def _gap_plan(self) -> None:
        layout = self._require_layout()
        iteration = self.machine.context.exec_iteration_count
        await self._run_task(
            TaskKind.GAP_PLAN,
            layout.gap_plan_dir(iteration),
            build_message(
                TaskKind.GAP_PLAN,
                audit_path=layout.gap_audit_dir(iteration) / gap_audit_summary_name(iteration),
                plan_path=layout.gap_plan_path(iteration),
            ),
            execution_iteration=iteration,
        )
        self.plan_path = layout.gap_plan_path(iteration)

        decision = check_exec_iteration(self.config.limits, iteration, gaps_found=True)
        if decision.should_stop:
            self._notice(decision)
            self._send(MaxExecIterationsReached())
            return
        self._send(GapPlanComplete())

    async def _summary(self) -> None:
        layout = self._require_layout()
        await self._run_task(
            TaskKind.GENERATE_SUMMARY,
            layout.root,
            build_message(
                TaskKind.GENERATE_SUMMARY,
                run_dir=layout.root,
                summary_path=layout.final_summary_path,
            ),
        )
        self._send(SummaryComplete())
