import json
from pathlib import Path

import pytest

from persevere.artifacts import (
    EXECUTE_METADATA_FILE,
    PLAN_FILE,
    PLAN_METADATA_FILE,
    ExecuteMetadata,
    MetadataError,
    PlanMetadata,
    RunLayout,
    append_qa_history,
    read_metadata,
    read_qa_history,
    scan_execution_artifacts,
    validate_artifacts,
    write_metadata,
)
from persevere.tasks import TaskKind, build_message


def _write_json(path: Path, payload: dict) -> None:
    path.write_text(json.dumps(payload), encoding="utf-8")


def test_plan_contract_requires_both_files(tmp_path: Path) -> None:
    result = validate_artifacts(TaskKind.PLAN_GENERATION, tmp_path)

    assert not result.valid
    assert result.missing == [PLAN_FILE, PLAN_METADATA_FILE]
    assert "Missing files" in result.describe()


def test_plan_contract_reports_schema_errors(tmp_path: Path) -> None:
    (tmp_path / PLAN_FILE).write_text("# Plan\n", encoding="utf-8")
    _write_json(tmp_path / PLAN_METADATA_FILE, {"confidence": 140, "summary": "x"})

    result = validate_artifacts(TaskKind.IMPROVE_PLAN, tmp_path)

    assert not result.valid
    assert result.missing == []
    assert any("confidence" in error for error in result.errors)
    assert "Validation errors" in result.describe()


def test_plan_contract_accepts_camel_case_metadata(tmp_path: Path) -> None:
    (tmp_path / PLAN_FILE).write_text("# Plan\n", encoding="utf-8")
    _write_json(
        tmp_path / PLAN_METADATA_FILE,
        {
            "schemaVersion": "1.0.0",
            "confidence": 72,
            "openQuestions": [{"question": "Which DB?", "suggestedAnswers": ["sqlite"]}],
            "summary": "Draft plan.",
        },
    )

    assert validate_artifacts(TaskKind.ANSWER_QUESTIONS, tmp_path).valid
    metadata = read_metadata(tmp_path / PLAN_METADATA_FILE, PlanMetadata)
    assert metadata.open_questions[0].suggested_answers == ["sqlite"]


def test_invalid_json_is_a_contract_error(tmp_path: Path) -> None:
    (tmp_path / "execution-summary-1.md").write_text("done\n", encoding="utf-8")
    (tmp_path / EXECUTE_METADATA_FILE).write_text("{not json", encoding="utf-8")

    result = validate_artifacts(TaskKind.EXECUTE_PLAN, tmp_path, execution_iteration=1)

    assert not result.valid
    assert "invalid JSON" in result.errors[0]


def test_follow_up_contract_uses_iteration_names(tmp_path: Path) -> None:
    write_metadata(
        tmp_path / EXECUTE_METADATA_FILE,
        ExecuteMetadata(has_follow_ups=False, summary="done"),
    )

    missing = validate_artifacts(
        TaskKind.EXECUTE_FOLLOW_UPS, tmp_path, execution_iteration=2, follow_up_iteration=1
    )
    assert missing.missing == ["execution-summary-2-followup-1.md"]

    (tmp_path / "execution-summary-2-followup-1.md").write_text("ok\n", encoding="utf-8")
    assert validate_artifacts(
        TaskKind.EXECUTE_FOLLOW_UPS, tmp_path, execution_iteration=2, follow_up_iteration=1
    ).valid


def test_free_form_tasks_have_no_contract(tmp_path: Path) -> None:
    assert validate_artifacts(TaskKind.GAP_PLAN, tmp_path).valid
    assert validate_artifacts(TaskKind.GENERATE_SUMMARY, tmp_path).valid


def test_read_metadata_raises_for_missing_file(tmp_path: Path) -> None:
    with pytest.raises(MetadataError, match="not found"):
        read_metadata(tmp_path / PLAN_METADATA_FILE, PlanMetadata)


def test_written_metadata_uses_wire_names(tmp_path: Path) -> None:
    path = tmp_path / EXECUTE_METADATA_FILE
    write_metadata(path, ExecuteMetadata(has_follow_ups=True, summary="more to do"))

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["schemaVersion"] == "1.0.0"
    assert payload["hasFollowUps"] is True
    assert payload["hardBlockers"] == []


def test_scan_execution_artifacts(tmp_path: Path) -> None:
    for name in (
        "execution-summary-1.md",
        "execution-summary-1-followup-0.md",
        "execution-summary-1-followup-1.md",
        "execution-summary-1-followup-3.md",
        "execution-summary-2-followup-7.md",
        "notes.md",
    ):
        (tmp_path / name).write_text("x\n", encoding="utf-8")

    scan = scan_execution_artifacts(tmp_path, 1)

    assert scan.initial_execution_done
    assert scan.follow_up_iterations == (0, 1, 3)
    assert scan.last_follow_up_iteration == 3
    assert scan.next_follow_up_iteration == 4
    assert scan.has_done_initial_follow_up


def test_scan_of_missing_directory_is_empty(tmp_path: Path) -> None:
    scan = scan_execution_artifacts(tmp_path / "absent", 1)

    assert not scan.initial_execution_done
    assert scan.last_follow_up_iteration is None
    assert scan.next_follow_up_iteration == 0
    assert not scan.has_done_initial_follow_up


def test_run_layout_iteration_directories(tmp_path: Path) -> None:
    layout = RunLayout(tmp_path / "run-20260101000000-abcdef12")

    assert layout.run_id == "run-20260101000000-abcdef12"
    assert layout.execute_dir(1).name == "execute"
    assert layout.execute_dir(3).name == "execute-3"
    assert layout.gap_audit_dir(2).name == "gap-audit-2"
    assert layout.gap_plan_path(2) == layout.root / "gap-plan-2" / "gap-plan-2.md"


def test_task_kind_groups_and_messages() -> None:
    assert TaskKind.EXECUTE_FOLLOW_UPS.group == "execute"
    assert TaskKind.GAP_AUDIT.group == "audit"
    assert TaskKind.GAP_PLAN.group == "plan"

    message = build_message(TaskKind.GAP_PLAN, audit_path="a.md", plan_path="p.md")
    assert "`a.md`" in message
    assert "`p.md`" in message


def test_qa_history_keeps_latest_answer_per_question(tmp_path: Path) -> None:
    path = RunLayout(tmp_path / "run-a").qa_history_path

    assert read_qa_history(path) == {}

    append_qa_history(path, "Which DB?", "sqlite")
    append_qa_history(path, "Auth?", "Session cookies\nwith CSRF tokens")
    append_qa_history(path, "Which DB?", "postgres")

    text = path.read_text(encoding="utf-8")
    assert text.startswith("## ")
    assert text.count("---\n") == 3
    assert read_qa_history(path) == {
        "Which DB?": "postgres",
        "Auth?": "Session cookies\nwith CSRF tokens",
    }
