from __future__ import annotations

from enum import Enum
from typing import Any

from persevere.config import PhaseGroup


class TaskKind(str, Enum):
    """Structured tag sent with every backend task."""

    PLAN_GENERATION = "plan-generation"
    ANSWER_QUESTIONS = "answer-questions"
    IMPROVE_PLAN = "improve-plan"
    TOOL_CURATION = "tool-curation"
    EXECUTE_PLAN = "execute-plan"
    EXECUTE_FOLLOW_UPS = "execute-follow-ups"
    GAP_AUDIT = "gap-audit"
    GAP_PLAN = "gap-plan"
    GENERATE_SUMMARY = "generate-summary"

    @property
    def group(self) -> PhaseGroup:
        if self in (TaskKind.EXECUTE_PLAN, TaskKind.EXECUTE_FOLLOW_UPS):
            return "execute"
        if self is TaskKind.GAP_AUDIT:
            return "audit"
        return "plan"


_TEMPLATES: dict[TaskKind, str] = {
    TaskKind.PLAN_GENERATION: (
        "Create an implementation plan for the requirements below.\n"
        "Write the plan to `{plan_path}` and its metadata to `{metadata_path}` "
        "(schemaVersion, confidence 0-100, openQuestions, summary).\n\n"
        "Requirements:\n{requirements}"
    ),
    TaskKind.ANSWER_QUESTIONS: (
        "Revise the plan at `{plan_path}` using these answers to its open questions:\n"
        "{answers}\n\nEvery answer given so far is recorded in `{qa_history_path}`. "
        "Update `{metadata_path}` to reflect the revised plan."
    ),
    TaskKind.IMPROVE_PLAN: (
        "Improve the completeness of the plan at `{plan_path}`. Current confidence is "
        "{confidence}% and the target is {threshold}%. Update `{metadata_path}`."
    ),
    TaskKind.TOOL_CURATION: (
        "Discover the verification commands (lint, test, build) in this repository that "
        "must pass for the plan at `{plan_path}`. Write the report to `{report_path}` and "
        "its metadata to `{metadata_path}`."
    ),
    TaskKind.EXECUTE_PLAN: (
        "Execute the plan at `{plan_path}` (execution iteration {iteration}).\n"
        "Verification report: `{tool_report_path}`.\n"
        "Write the execution summary to `{summary_path}` and metadata to `{metadata_path}` "
        "(hasFollowUps, hardBlockers, summary)."
    ),
    TaskKind.EXECUTE_FOLLOW_UPS: (
        "Continue the follow-up items from the previous execution summary at "
        "`{previous_summary_path}` (execution iteration {iteration}, follow-up iteration "
        "{follow_up}).{resolutions}\n"
        "Write the follow-up summary to `{summary_path}` and update `{metadata_path}`."
    ),
    TaskKind.GAP_AUDIT: (
        "Audit the implementation against the requirements in `{requirements_path}` and the "
        "plan at `{plan_path}` (execution iteration {iteration}). Write the audit to "
        "`{summary_path}` and metadata to `{metadata_path}` (gapsIdentified, summary)."
    ),
    TaskKind.GAP_PLAN: (
        "Create a gap closure plan from the audit at `{audit_path}`. Write it to `{plan_path}`."
    ),
    TaskKind.GENERATE_SUMMARY: (
        "Summarize the work recorded under `{run_dir}`: original requirements, work "
        "accomplished, and iteration statistics. Write the summary to `{summary_path}`."
    ),
}


def build_message(kind: TaskKind, **details: Any) -> str:
    return _TEMPLATES[kind].format(**details)
