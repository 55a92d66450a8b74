"""Machine-readable artifacts written by backends, and the contracts that gate them.

Every phase task is considered successful only once the files listed by its
contract exist and the metadata JSON validates against the models below.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from persevere.tasks import TaskKind

METADATA_SCHEMA_VERSION = "1.0.0"

PLAN_FILE = "plan.md"
PLAN_METADATA_FILE = "plan-metadata.json"
TOOL_CURATION_REPORT_FILE = "tool-curation-report.md"
TOOL_CURATION_METADATA_FILE = "tool-curation-metadata.json"
EXECUTE_METADATA_FILE = "execute-metadata.json"
GAP_AUDIT_METADATA_FILE = "gap-audit-metadata.json"


class _MetadataModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_version: Literal["1.0.0"] = Field(
        default=METADATA_SCHEMA_VERSION, alias="schemaVersion"
    )

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), ensure_ascii=False, indent=2)


class OpenQuestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(min_length=1)
    suggested_answers: list[str] = Field(default_factory=list, alias="suggestedAnswers")


class PlanMetadata(_MetadataModel):
    confidence: float = Field(ge=0, le=100)
    open_questions: list[OpenQuestion] = Field(default_factory=list, alias="openQuestions")
    summary: str = Field(min_length=1, max_length=3000)


class HardBlocker(BaseModel):
    description: str = Field(min_length=1)
    reason: str = Field(min_length=1)


class ExecuteMetadata(_MetadataModel):
    has_follow_ups: bool = Field(alias="hasFollowUps")
    hard_blockers: list[HardBlocker] = Field(default_factory=list, alias="hardBlockers")
    summary: str = Field(min_length=1, max_length=3000)


class GapAuditMetadata(_MetadataModel):
    gaps_identified: bool = Field(alias="gapsIdentified")
    summary: str = Field(min_length=1, max_length=3000)


class ToolCurationMetadata(_MetadataModel):
    summary: str = Field(min_length=1, max_length=1000)


MetadataT = TypeVar("MetadataT", bound=_MetadataModel)


class MetadataError(RuntimeError):
    """Raised when a metadata file is missing or does not match its schema."""


def _format_validation_errors(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
        for error in exc.errors()
    ]


def parse_metadata(path: Path, model: type[MetadataT]) -> tuple[MetadataT | None, list[str]]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        return None, [f"Invalid {path.name}: invalid JSON: {exc.msg}"]
    try:
        return model.model_validate(raw), []
    except ValidationError as exc:
        return None, [f"Invalid {path.name}: {detail}" for detail in _format_validation_errors(exc)]


def read_metadata(path: Path, model: type[MetadataT]) -> MetadataT:
    if not path.exists():
        raise MetadataError(f"Metadata file not found: {path}")
    metadata, errors = parse_metadata(path, model)
    if metadata is None:
        raise MetadataError("; ".join(errors))
    return metadata


def write_metadata(path: Path, metadata: _MetadataModel) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(metadata.to_json() + "\n", encoding="utf-8")


_QA_ENTRY = re.compile(
    r"\*\*Question:\*\* (?P<question>.*?)\n\n\*\*Answer:\*\* (?P<answer>.*?)\n\n---\n", re.S
)


def append_qa_history(path: Path, question: str, answer: str) -> None:
    stamp = datetime.now(UTC).isoformat()
    entry = f"## {stamp}\n\n**Question:** {question}\n\n**Answer:** {answer}\n\n---\n\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(entry)


def read_qa_history(path: Path) -> dict[str, str]:
    """Map every recorded question to its most recent answer."""
    if not path.is_file():
        return {}
    text = path.read_text(encoding="utf-8")
    return {match["question"]: match["answer"] for match in _QA_ENTRY.finditer(text)}


def _iteration_dir_name(base: str, iteration: int) -> str:
    return base if iteration <= 1 else f"{base}-{iteration}"


def execution_summary_name(iteration: int) -> str:
    return f"execution-summary-{iteration}.md"


def follow_up_summary_name(iteration: int, follow_up: int) -> str:
    return f"execution-summary-{iteration}-followup-{follow_up}.md"


def gap_audit_summary_name(iteration: int) -> str:
    return f"gap-audit-summary-{iteration}.md"


def gap_plan_name(iteration: int) -> str:
    return f"gap-plan-{iteration}.md"


@dataclass(slots=True, frozen=True)
class RunLayout:
    """Paths inside a single run directory."""

    root: Path

    @property
    def run_id(self) -> str:
        return self.root.name

    @property
    def plan_dir(self) -> Path:
        return self.root / "plan"

    @property
    def plan_path(self) -> Path:
        return self.plan_dir / PLAN_FILE

    @property
    def tool_curation_dir(self) -> Path:
        return self.root / "tool-curation"

    @property
    def transcripts_dir(self) -> Path:
        return self.root / "transcripts"

    @property
    def requirements_path(self) -> Path:
        return self.root / "requirements.txt"

    @property
    def effective_config_path(self) -> Path:
        return self.root / "effective-config.json"

    @property
    def qa_history_path(self) -> Path:
        return self.root / "qa-history.md"

    @property
    def final_summary_path(self) -> Path:
        return self.root / "final-summary.md"

    @property
    def events_path(self) -> Path:
        return self.root / "events.jsonl"

    def execute_dir(self, iteration: int) -> Path:
        return self.root / _iteration_dir_name("execute", iteration)

    def gap_audit_dir(self, iteration: int) -> Path:
        return self.root / _iteration_dir_name("gap-audit", iteration)

    def gap_plan_dir(self, iteration: int) -> Path:
        return self.root / _iteration_dir_name("gap-plan", iteration)

    def gap_plan_path(self, iteration: int) -> Path:
        return self.gap_plan_dir(iteration) / gap_plan_name(iteration)


@dataclass(slots=True)
class ContractResult:
    valid: bool
    missing: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def describe(self) -> str:
        parts: list[str] = []
        if self.missing:
            parts.append(f"Missing files: {self.missing}")
        if self.errors:
            parts.append(f"Validation errors: {self.errors}")
        return ". ".join(parts) or "ok"


def _require_file(directory: Path, name: str, result: ContractResult) -> None:
    if not (directory / name).is_file():
        result.missing.append(name)


def _require_metadata(
    directory: Path, name: str, model: type[_MetadataModel], result: ContractResult
) -> None:
    path = directory / name
    if not path.is_file():
        result.missing.append(name)
        return
    _, errors = parse_metadata(path, model)
    result.errors.extend(errors)


def validate_artifacts(
    kind: TaskKind,
    directory: Path,
    *,
    execution_iteration: int = 1,
    follow_up_iteration: int = 0,
) -> ContractResult:
    """Evaluate the artifact contract of ``kind`` against ``directory``."""
    result = ContractResult(valid=True)
    if kind in (TaskKind.PLAN_GENERATION, TaskKind.ANSWER_QUESTIONS, TaskKind.IMPROVE_PLAN):
        _require_file(directory, PLAN_FILE, result)
        _require_metadata(directory, PLAN_METADATA_FILE, PlanMetadata, result)
    elif kind is TaskKind.TOOL_CURATION:
        _require_file(directory, TOOL_CURATION_REPORT_FILE, result)
        _require_metadata(directory, TOOL_CURATION_METADATA_FILE, ToolCurationMetadata, result)
    elif kind is TaskKind.EXECUTE_PLAN:
        _require_file(directory, execution_summary_name(execution_iteration), result)
        _require_metadata(directory, EXECUTE_METADATA_FILE, ExecuteMetadata, result)
    elif kind is TaskKind.EXECUTE_FOLLOW_UPS:
        _require_file(
            directory, follow_up_summary_name(execution_iteration, follow_up_iteration), result
        )
        _require_metadata(directory, EXECUTE_METADATA_FILE, ExecuteMetadata, result)
    elif kind is TaskKind.GAP_AUDIT:
        _require_file(directory, gap_audit_summary_name(execution_iteration), result)
        _require_metadata(directory, GAP_AUDIT_METADATA_FILE, GapAuditMetadata, result)
    # Gap plans and the final summary are free-form and carry no contract.
    result.valid = not result.missing and not result.errors
    return result


@dataclass(slots=True, frozen=True)
class ExecutionArtifactScan:
    initial_execution_done: bool
    last_follow_up_iteration: int | None
    has_done_initial_follow_up: bool
    follow_up_iterations: tuple[int, ...]

    @property
    def next_follow_up_iteration(self) -> int:
        if self.last_follow_up_iteration is None:
            return 0
        return self.last_follow_up_iteration + 1


def scan_execution_artifacts(directory: Path, iteration: int) -> ExecutionArtifactScan:
    pattern = re.compile(rf"^execution-summary-{iteration}-followup-(\d+)\.md$")
    follow_ups: list[int] = []
    initial_done = False
    if directory.is_dir():
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            if entry.name == execution_summary_name(iteration):
                initial_done = True
                continue
            match = pattern.match(entry.name)
            if match:
                follow_ups.append(int(match.group(1)))
    follow_ups.sort()
    return ExecutionArtifactScan(
        initial_execution_done=initial_done,
        last_follow_up_iteration=follow_ups[-1] if follow_ups else None,
        has_done_initial_follow_up=0 in follow_ups,
        follow_up_iterations=tuple(follow_ups),
    )
