from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

LOGGER = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TransitionError(RuntimeError):
    """Raised when a strict transition is rejected by the phase graph."""


class Phase(str, Enum):
    IDLE = "idle"
    PLAN_GENERATION = "plan_generation"
    PLAN_REVISION = "plan_revision"
    TOOL_CURATION = "tool_curation"
    EXECUTION = "execution"
    FOLLOW_UPS = "follow_ups"
    GAP_AUDIT = "gap_audit"
    GAP_PLAN = "gap_plan"
    SUMMARY_GENERATION = "summary_generation"
    COMPLETE = "complete"
    FAILED = "failed"


PHASE_DESCRIPTIONS: dict[Phase, str] = {
    Phase.IDLE: "Waiting to start",
    Phase.PLAN_GENERATION: "Generating initial plan",
    Phase.PLAN_REVISION: "Revising plan (answering questions or improving confidence)",
    Phase.TOOL_CURATION: "Curating verification tools",
    Phase.EXECUTION: "Executing plan",
    Phase.FOLLOW_UPS: "Executing follow-up items",
    Phase.GAP_AUDIT: "Auditing implementation for gaps",
    Phase.GAP_PLAN: "Planning gap closure",
    Phase.SUMMARY_GENERATION: "Generating final summary",
    Phase.COMPLETE: "Run complete",
    Phase.FAILED: "Run failed",
}

TERMINAL_PHASES = frozenset({Phase.COMPLETE, Phase.FAILED})


def describe_phase(phase: Phase) -> str:
    return PHASE_DESCRIPTIONS[phase]


def is_terminal(phase: Phase) -> bool:
    return phase in TERMINAL_PHASES


def is_resumable(phase: Phase) -> bool:
    """A run can be resumed from any phase except an unstarted or completed one.

    Failed runs are resumable; they re-enter the phase they failed in.
    """
    return phase not in (Phase.IDLE, Phase.COMPLETE)


@dataclass(slots=True, frozen=True)
class StartPlan:
    pass


@dataclass(slots=True, frozen=True)
class PlanGenerated:
    pass


@dataclass(slots=True, frozen=True)
class OpenQuestionsFound:
    count: int


@dataclass(slots=True, frozen=True)
class QuestionsAnswered:
    pass


@dataclass(slots=True, frozen=True)
class ConfidenceLow:
    confidence: float
    threshold: float


@dataclass(slots=True, frozen=True)
class PlanImproved:
    confidence: float


@dataclass(slots=True, frozen=True)
class PlanComplete:
    confidence: float
    plan_only: bool = False


@dataclass(slots=True, frozen=True)
class MaxPlanIterationsReached:
    plan_only: bool = False


@dataclass(slots=True, frozen=True)
class ToolCurationComplete:
    pass


@dataclass(slots=True, frozen=True)
class ExecutionComplete:
    has_follow_ups: bool
    has_hard_blockers: bool


@dataclass(slots=True, frozen=True)
class HardBlockersResolved:
    pass


@dataclass(slots=True, frozen=True)
class FollowUpsComplete:
    has_more: bool


@dataclass(slots=True, frozen=True)
class NoMoreFollowUps:
    pass


@dataclass(slots=True, frozen=True)
class MaxFollowUpsReached:
    pass


@dataclass(slots=True, frozen=True)
class GapAuditComplete:
    gaps_found: bool


@dataclass(slots=True, frozen=True)
class GapPlanComplete:
    pass


@dataclass(slots=True, frozen=True)
class MaxExecIterationsReached:
    pass


@dataclass(slots=True, frozen=True)
class SummaryComplete:
    pass


@dataclass(slots=True, frozen=True)
class ErrorOccurred:
    cause: str


@dataclass(slots=True, frozen=True)
class Resume:
    from_phase: Phase


Event = (
    StartPlan
    | PlanGenerated
    | OpenQuestionsFound
    | QuestionsAnswered
    | ConfidenceLow
    | PlanImproved
    | PlanComplete
    | MaxPlanIterationsReached
    | ToolCurationComplete
    | ExecutionComplete
    | HardBlockersResolved
    | FollowUpsComplete
    | NoMoreFollowUps
    | MaxFollowUpsReached
    | GapAuditComplete
    | GapPlanComplete
    | MaxExecIterationsReached
    | SummaryComplete
    | ErrorOccurred
    | Resume
)


def event_name(event: Event) -> str:
    return type(event).__name__


@dataclass(slots=True, frozen=True)
class RunContext:
    current_phase: Phase = Phase.IDLE
    plan_revision_count: int = 0
    exec_iteration_count: int = 0
    follow_up_iteration_count: int = 0
    has_done_initial_follow_up: bool = False
    last_confidence: float = 0.0
    started_at: str = field(default_factory=_utcnow_iso)
    last_transition_at: str = field(default_factory=_utcnow_iso)
    failure_reason: str | None = None
    failed_phase: Phase | None = None


@dataclass(slots=True, frozen=True)
class TransitionRecord:
    from_phase: Phase
    to_phase: Phase
    event: str
    valid: bool
    description: str
    at: str


@dataclass(slots=True, frozen=True)
class TransitionResult:
    valid: bool
    context: RunContext
    description: str
    record: TransitionRecord


Outcome = tuple[Phase, dict[str, Any], str]
_Handler = Callable[[RunContext, Any], Outcome]


def _start_plan(ctx: RunContext, event: StartPlan) -> Outcome:
    return Phase.PLAN_GENERATION, {}, "Starting plan generation"


def _plan_generated(ctx: RunContext, event: PlanGenerated) -> Outcome:
    return Phase.PLAN_REVISION, {}, "Initial plan generated, entering revision"


def _open_questions_found(ctx: RunContext, event: OpenQuestionsFound) -> Outcome:
    return Phase.PLAN_REVISION, {}, f"Found {event.count} open question(s)"


def _questions_answered(ctx: RunContext, event: QuestionsAnswered) -> Outcome:
    count = ctx.plan_revision_count + 1
    return (
        Phase.PLAN_REVISION,
        {"plan_revision_count": count},
        f"Questions answered, plan revision {count}",
    )


def _confidence_low(ctx: RunContext, event: ConfidenceLow) -> Outcome:
    count = ctx.plan_revision_count + 1
    return (
        Phase.PLAN_REVISION,
        {"plan_revision_count": count, "last_confidence": event.confidence},
        (
            f"Confidence {event.confidence:g}% below threshold {event.threshold:g}%, "
            f"plan revision {count}"
        ),
    )


def _plan_improved(ctx: RunContext, event: PlanImproved) -> Outcome:
    return (
        Phase.PLAN_REVISION,
        {"last_confidence": event.confidence},
        f"Plan improved, confidence now {event.confidence:g}%",
    )


def _plan_complete(ctx: RunContext, event: PlanComplete) -> Outcome:
    target = Phase.SUMMARY_GENERATION if event.plan_only else Phase.TOOL_CURATION
    return (
        target,
        {"last_confidence": event.confidence},
        f"Plan complete with confidence {event.confidence:g}%",
    )


def _max_plan_iterations(ctx: RunContext, event: MaxPlanIterationsReached) -> Outcome:
    target = Phase.SUMMARY_GENERATION if event.plan_only else Phase.TOOL_CURATION
    return (
        target,
        {},
        f"Plan revision limit reached after {ctx.plan_revision_count} revision(s), "
        "proceeding with best plan",
    )


def _tool_curation_complete(ctx: RunContext, event: ToolCurationComplete) -> Outcome:
    return Phase.EXECUTION, {"exec_iteration_count": 1}, "Tool curation complete, starting execution"


def _execution_complete(ctx: RunContext, event: ExecutionComplete) -> Outcome:
    if event.has_hard_blockers:
        return (
            Phase.FOLLOW_UPS,
            {"follow_up_iteration_count": 0, "has_done_initial_follow_up": False},
            "Execution reported hard blockers, resolving before follow-ups",
        )
    if event.has_follow_ups:
        return (
            Phase.FOLLOW_UPS,
            {"follow_up_iteration_count": 0, "has_done_initial_follow_up": False},
            "Execution reported follow-ups",
        )
    return Phase.GAP_AUDIT, {}, "Execution complete without follow-ups, starting gap audit"


def _hard_blockers_resolved(ctx: RunContext, event: HardBlockersResolved) -> Outcome:
    return (
        Phase.FOLLOW_UPS,
        {
            "has_done_initial_follow_up": True,
            "follow_up_iteration_count": ctx.follow_up_iteration_count + 1,
        },
        "Hard blockers resolved",
    )


def _follow_ups_complete(ctx: RunContext, event: FollowUpsComplete) -> Outcome:
    count = ctx.follow_up_iteration_count + 1
    updates = {"follow_up_iteration_count": count, "has_done_initial_follow_up": True}
    if event.has_more:
        return Phase.FOLLOW_UPS, updates, f"Follow-up iteration {count} done, more remain"
    return Phase.GAP_AUDIT, updates, f"Follow-ups finished after {count} iteration(s)"


def _no_more_follow_ups(ctx: RunContext, event: NoMoreFollowUps) -> Outcome:
    return Phase.GAP_AUDIT, {}, "No follow-ups remain, starting gap audit"


def _max_follow_ups(ctx: RunContext, event: MaxFollowUpsReached) -> Outcome:
    return (
        Phase.GAP_AUDIT,
        {},
        f"Follow-up limit reached after {ctx.follow_up_iteration_count} iteration(s)",
    )


def _gap_audit_complete(ctx: RunContext, event: GapAuditComplete) -> Outcome:
    if event.gaps_found:
        return Phase.GAP_PLAN, {}, "Gap audit found gaps, planning closure"
    return Phase.SUMMARY_GENERATION, {}, "Gap audit found no gaps"


def _gap_plan_complete(ctx: RunContext, event: GapPlanComplete) -> Outcome:
    iteration = ctx.exec_iteration_count + 1
    return (
        Phase.EXECUTION,
        {
            "exec_iteration_count": iteration,
            "follow_up_iteration_count": 0,
            "has_done_initial_follow_up": False,
        },
        f"Gap plan ready, starting execution iteration {iteration}",
    )


def _max_exec_iterations(ctx: RunContext, event: MaxExecIterationsReached) -> Outcome:
    return (
        Phase.SUMMARY_GENERATION,
        {},
        f"Execution iteration limit reached after {ctx.exec_iteration_count} iteration(s)",
    )


def _summary_complete(ctx: RunContext, event: SummaryComplete) -> Outcome:
    return Phase.COMPLETE, {}, "Summary generated, run complete"


_TRANSITIONS: dict[Phase, dict[type, _Handler]] = {
    Phase.IDLE: {StartPlan: _start_plan},
    Phase.PLAN_GENERATION: {PlanGenerated: _plan_generated},
    Phase.PLAN_REVISION: {
        OpenQuestionsFound: _open_questions_found,
        QuestionsAnswered: _questions_answered,
        ConfidenceLow: _confidence_low,
        PlanImproved: _plan_improved,
        PlanComplete: _plan_complete,
        MaxPlanIterationsReached: _max_plan_iterations,
    },
    Phase.TOOL_CURATION: {ToolCurationComplete: _tool_curation_complete},
    Phase.EXECUTION: {
        ExecutionComplete: _execution_complete,
        MaxExecIterationsReached: _max_exec_iterations,
    },
    Phase.FOLLOW_UPS: {
        HardBlockersResolved: _hard_blockers_resolved,
        FollowUpsComplete: _follow_ups_complete,
        NoMoreFollowUps: _no_more_follow_ups,
        MaxFollowUpsReached: _max_follow_ups,
    },
    Phase.GAP_AUDIT: {GapAuditComplete: _gap_audit_complete},
    Phase.GAP_PLAN: {
        GapPlanComplete: _gap_plan_complete,
        MaxExecIterationsReached: _max_exec_iterations,
    },
    Phase.SUMMARY_GENERATION: {SummaryComplete: _summary_complete},
    Phase.COMPLETE: {},
    Phase.FAILED: {},
}


def accepted_events(phase: Phase) -> frozenset[type]:
    accepted = set(_TRANSITIONS[phase])
    if not is_terminal(phase):
        accepted.add(ErrorOccurred)
    if phase is Phase.IDLE:
        accepted.add(Resume)
    return frozenset(accepted)


def apply(context: RunContext, event: Event) -> TransitionResult:
    """Compute the transition for ``event`` without touching ``context``.

    Rejected events return the original context object together with
    ``valid=False``.
    """
    now = _utcnow_iso()
    from_phase = context.current_phase
    name = event_name(event)

    outcome: Outcome | None = None
    if isinstance(event, ErrorOccurred) and not is_terminal(from_phase):
        outcome = (
            Phase.FAILED,
            {"failure_reason": event.cause, "failed_phase": from_phase},
            f"Error: {event.cause}",
        )
    elif isinstance(event, Resume) and from_phase is Phase.IDLE:
        outcome = (event.from_phase, {}, f"Resumed into {event.from_phase.value}")
    else:
        handler = _TRANSITIONS[from_phase].get(type(event))
        if handler is not None:
            outcome = handler(context, event)

    if outcome is None:
        description = f"Invalid transition from {from_phase.value} via {name}"
        record = TransitionRecord(from_phase, from_phase, name, False, description, now)
        return TransitionResult(valid=False, context=context, description=description, record=record)

    to_phase, updates, description = outcome
    new_context = replace(context, current_phase=to_phase, last_transition_at=now, **updates)
    record = TransitionRecord(from_phase, to_phase, name, True, description, now)
    return TransitionResult(valid=True, context=new_context, description=description, record=record)


class StateMachine:
    """Holds the current run context and its transition history."""

    def __init__(self, context: RunContext | None = None) -> None:
        self._context = context or RunContext()
        self._history: list[TransitionRecord] = []

    @property
    def context(self) -> RunContext:
        return self._context

    @property
    def phase(self) -> Phase:
        return self._context.current_phase

    @property
    def history(self) -> list[TransitionRecord]:
        return list(self._history)

    def can_accept(self, event: Event) -> bool:
        return type(event) in accepted_events(self._context.current_phase)

    def send(self, event: Event, *, strict: bool = False) -> TransitionResult:
        result = apply(self._context, event)
        self._history.append(result.record)
        if result.valid:
            self._context = result.context
            LOGGER.info(
                "%s -> %s: %s",
                result.record.from_phase.value,
                result.record.to_phase.value,
                result.description,
            )
            return result

        LOGGER.warning("Rejected transition: %s", result.description)
        if strict:
            raise TransitionError(result.description)
        return result
