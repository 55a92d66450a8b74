from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from persevere.config import LimitsConfig

UNLIMITED_HINT = "Use --unlimited to remove all iteration limits"


class StopReason(str, Enum):
    LIMIT_REACHED = "limit_reached"
    CONDITION_MET = "condition_met"
    NO_MORE_WORK = "no_more_work"
    CONFIDENCE_MET = "confidence_met"
    ERROR = "error"
    USER_CANCELLED = "user_cancelled"


@dataclass(slots=True, frozen=True)
class StopDecision:
    should_stop: bool
    message: str
    reason: StopReason | None = None
    next_steps: list[str] = field(default_factory=list)


def format_limit(value: int, unlimited: bool) -> str:
    return "∞" if unlimited else str(value)


def format_progress(current: int, maximum: int, unlimited: bool) -> str:
    return f"{current}/{format_limit(maximum, unlimited)}"


def _limit_reached(limit: int, count: int, unlimited: bool) -> bool:
    return not unlimited and count >= limit


def check_plan_revision(
    limits: LimitsConfig,
    revision_count: int,
    open_question_count: int,
    confidence: float,
) -> StopDecision:
    unlimited = limits.unlimited
    threshold = limits.plan_confidence
    maximum = limits.max_plan_iterations
    progress = format_progress(revision_count, maximum, unlimited)

    if open_question_count == 0 and confidence >= threshold:
        return StopDecision(
            should_stop=True,
            reason=StopReason.CONDITION_MET,
            message=f"Plan complete with {confidence:g}% confidence (threshold: {threshold}%)",
        )

    if _limit_reached(maximum, revision_count, unlimited):
        next_steps: list[str] = []
        if open_question_count:
            next_steps.append("Answer the remaining open questions and resume with --resume")
        if confidence < threshold:
            next_steps.append(f"Improve plan confidence from {confidence:g}% to {threshold}%")
            next_steps.append("Consider lowering --plan-confidence")
        next_steps.append("Increase --max-plan-iterations to allow more revisions")
        next_steps.append(UNLIMITED_HINT)
        return StopDecision(
            should_stop=True,
            reason=StopReason.LIMIT_REACHED,
            message=f"Reached maximum plan revisions ({maximum})",
            next_steps=next_steps,
        )

    if open_question_count:
        return StopDecision(
            should_stop=False,
            message=f"{open_question_count} open question(s) remain, continuing revision ({progress})",
        )
    return StopDecision(
        should_stop=False,
        message=(
            f"Confidence {confidence:g}% below threshold {threshold}%, "
            f"continuing improvement ({progress})"
        ),
    )


def check_follow_ups(
    limits: LimitsConfig,
    follow_up_count: int,
    has_follow_ups: bool,
    has_hard_blockers: bool,
) -> StopDecision:
    unlimited = limits.unlimited
    maximum = limits.max_follow_up_iterations
    progress = format_progress(follow_up_count, maximum, unlimited)

    if not has_follow_ups and not has_hard_blockers:
        return StopDecision(
            should_stop=True,
            reason=StopReason.NO_MORE_WORK,
            message="All follow-ups complete",
        )

    if _limit_reached(maximum, follow_up_count, unlimited):
        next_steps: list[str] = []
        if has_follow_ups:
            next_steps.append("Some follow-ups remain, review the execution summary for details")
        if has_hard_blockers:
            next_steps.append("Hard blockers need resolution, resume with --resume")
        next_steps.append("Increase --max-follow-up-iterations to allow more iterations")
        next_steps.append(UNLIMITED_HINT)
        return StopDecision(
            should_stop=True,
            reason=StopReason.LIMIT_REACHED,
            message=f"Reached maximum follow-up iterations ({maximum})",
            next_steps=next_steps,
        )

    if has_hard_blockers:
        return StopDecision(
            should_stop=False,
            message=f"Hard blockers detected, resolving ({progress})",
        )
    return StopDecision(should_stop=False, message=f"Follow-ups remain, continuing ({progress})")


def check_exec_iteration(
    limits: LimitsConfig,
    exec_count: int,
    gaps_found: bool,
) -> StopDecision:
    unlimited = limits.unlimited
    maximum = limits.max_exec_iterations

    if not gaps_found:
        return StopDecision(
            should_stop=True,
            reason=StopReason.CONDITION_MET,
            message="No gaps identified, implementation complete",
        )

    if _limit_reached(maximum, exec_count, unlimited):
        return StopDecision(
            should_stop=True,
            reason=StopReason.LIMIT_REACHED,
            message=f"Reached maximum execution iterations ({maximum})",
            next_steps=[
                "Gaps remain, review the gap audit summary for details",
                "Increase --max-exec-iterations to allow more iterations",
                UNLIMITED_HINT,
            ],
        )

    return StopDecision(
        should_stop=False,
        message=(
            "Gaps identified, creating gap plan "
            f"({format_progress(exec_count, maximum, unlimited)})"
        ),
    )
