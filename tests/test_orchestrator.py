import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from persevere.artifacts import (
    EXECUTE_METADATA_FILE,
    ExecuteMetadata,
    OpenQuestion,
    RunLayout,
    read_qa_history,
    write_metadata,
)
from persevere.backends import FakeBackend, ResilientExecutor, RetryPolicy, TaskBackend
from persevere.config import PersevereConfig
from persevere.orchestrator import Orchestrator, auto_answer
from persevere.phases import Phase
from persevere.policy import StopReason
from persevere.state import CheckpointError, CheckpointStore
from persevere.tasks import TaskKind


async def _no_sleep(delay: float) -> None:
    _ = delay


def _config(tmp_path: Path, **fake: Any) -> PersevereConfig:
    config = PersevereConfig.default()
    config.backends.plan = "mock"
    config.backends.execute = "mock"
    config.backends.audit = "mock"
    config.backends.retry_delay_seconds = 0.0
    config.run.artifact_dir = str(tmp_path / "runs")
    config.run.capture_transcripts = False
    for key, value in fake.items():
        setattr(config.fake, key, value)
    return config


def _orchestrator(
    config: PersevereConfig,
    tmp_path: Path,
    backends: dict[str, TaskBackend] | None = None,
    events: list[dict[str, Any]] | None = None,
) -> tuple[Orchestrator, dict[str, TaskBackend]]:
    backends = backends or {"mock": FakeBackend(config.fake)}
    executor = ResilientExecutor(
        backends,
        RetryPolicy(max_retries=config.backends.max_retries, delay_seconds=0.0),
        event_hook=events.append if events is not None else None,
        sleep=_no_sleep,
    )
    return Orchestrator(config, executor, working_dir=tmp_path), backends


def _kinds(backend: FakeBackend) -> list[TaskKind]:
    return [task.kind for task in backend.calls]


def test_single_improvement_cycle_reaches_execution(tmp_path: Path) -> None:
    config = _config(tmp_path, starting_confidence=60, target_confidence=90)
    config.limits.max_plan_iterations = 2
    config.limits.plan_confidence = 85
    orchestrator, backends = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    assert outcome.context.plan_revision_count == 1
    assert outcome.context.last_confidence == 90
    assert outcome.notices == []
    kinds = _kinds(backends["mock"])
    assert kinds.count(TaskKind.IMPROVE_PLAN) == 1
    assert kinds[:4] == [
        TaskKind.PLAN_GENERATION,
        TaskKind.IMPROVE_PLAN,
        TaskKind.TOOL_CURATION,
        TaskKind.EXECUTE_PLAN,
    ]
    phases = [record.to_phase for record in outcome.history]
    assert Phase.TOOL_CURATION in phases
    assert Phase.EXECUTION in phases


def test_exec_limit_stops_after_first_gap_plan(tmp_path: Path) -> None:
    config = _config(tmp_path, execution_iterations=99, follow_up_iterations=0)
    config.limits.max_exec_iterations = 1
    orchestrator, backends = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    assert outcome.context.exec_iteration_count == 1
    kinds = _kinds(backends["mock"])
    assert kinds.count(TaskKind.GAP_PLAN) == 1
    assert kinds.count(TaskKind.EXECUTE_PLAN) == 1
    assert kinds[-2:] == [TaskKind.GAP_PLAN, TaskKind.GENERATE_SUMMARY]
    assert outcome.history[-2].event == "MaxExecIterationsReached"
    assert outcome.history[-2].to_phase is Phase.SUMMARY_GENERATION
    assert [notice.reason for notice in outcome.notices] == [StopReason.LIMIT_REACHED]
    assert any("--max-exec-iterations" in step for step in outcome.next_steps)
    assert (outcome.run_dir / "gap-plan" / "gap-plan-1.md").exists()
    assert (outcome.run_dir / "final-summary.md").exists()


def test_gap_loop_runs_next_iteration_from_gap_plan(tmp_path: Path) -> None:
    config = _config(tmp_path, execution_iterations=2, follow_up_iterations=0)
    orchestrator, backends = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    assert outcome.context.exec_iteration_count == 2
    second = [task for task in backends["mock"].calls if task.kind is TaskKind.EXECUTE_PLAN][1]
    assert second.execution_iteration == 2
    assert second.working_dir == outcome.run_dir / "execute-2"
    assert "gap-plan-1.md" in second.message
    assert (outcome.run_dir / "gap-audit-2" / "gap-audit-summary-2.md").exists()


def test_open_questions_are_answered_automatically(tmp_path: Path) -> None:
    config = _config(tmp_path, open_question_iterations=2, starting_confidence=90)
    orchestrator, backends = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    assert outcome.context.plan_revision_count == 2
    answer_calls = [
        task for task in backends["mock"].calls if task.kind is TaskKind.ANSWER_QUESTIONS
    ]
    assert len(answer_calls) == 2
    assert "A: Option A" in answer_calls[0].message
    history = read_qa_history(RunLayout(outcome.run_dir).qa_history_path)
    assert history == {
        "Question 1: which approach?": "Option A",
        "Question 2: which approach?": "Option A",
    }
    assert "qa-history.md" in answer_calls[0].message


def test_recorded_answers_survive_a_failed_answer_task(tmp_path: Path) -> None:
    config = _config(tmp_path, open_question_iterations=1, starting_confidence=90)
    asked: list[str] = []

    def _provider(questions):
        asked.extend(question.question for question in questions)
        return ["Option B"] * len(questions)

    backend = FakeBackend(config.fake, exit_codes={TaskKind.ANSWER_QUESTIONS: [1, 1, 1]})
    executor = ResilientExecutor({"mock": backend}, RetryPolicy(2, 0.0), sleep=_no_sleep)
    orchestrator = Orchestrator(config, executor, working_dir=tmp_path, answer_provider=_provider)
    failed = asyncio.run(orchestrator.start("Build a todo app"))
    assert failed.phase is Phase.FAILED
    assert asked == ["Question 1: which approach?"]

    fresh = FakeBackend(config.fake)
    executor = ResilientExecutor({"mock": fresh}, RetryPolicy(2, 0.0), sleep=_no_sleep)
    resumed = Orchestrator(config, executor, working_dir=tmp_path, answer_provider=_provider)
    outcome = asyncio.run(resumed.resume(CheckpointStore().load(failed.run_dir)))

    assert outcome.succeeded
    assert asked == ["Question 1: which approach?"]
    answer_calls = [task for task in fresh.calls if task.kind is TaskKind.ANSWER_QUESTIONS]
    assert "A: Option B" in answer_calls[0].message
    history = (failed.run_dir / "qa-history.md").read_text(encoding="utf-8")
    assert history.count("**Question:**") == 1


def test_follow_ups_and_hard_blockers(tmp_path: Path) -> None:
    config = _config(tmp_path, follow_up_iterations=2, hard_blockers=True)
    resolved: list[str] = []

    def _resolver(blockers):
        resolved.extend(blocker.description for blocker in blockers)
        return ["Start Docker first"] * len(blockers)

    backend = FakeBackend(config.fake)
    executor = ResilientExecutor({"mock": backend}, RetryPolicy(0, 0.0), sleep=_no_sleep)
    orchestrator = Orchestrator(
        config, executor, working_dir=tmp_path, blocker_resolver=_resolver
    )

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    assert resolved == ["Docker is not running"]
    follow_ups = [task for task in backend.calls if task.kind is TaskKind.EXECUTE_FOLLOW_UPS]
    assert [task.follow_up_iteration for task in follow_ups] == [0, 1]
    assert "Start Docker first" in follow_ups[0].message
    assert "HardBlockersResolved" in [record.event for record in outcome.history]
    execute_dir = outcome.run_dir / "execute"
    assert (execute_dir / "execution-summary-1-followup-0.md").exists()
    assert (execute_dir / "execution-summary-1-followup-1.md").exists()


def test_follow_up_limit_is_a_soft_stop(tmp_path: Path) -> None:
    config = _config(tmp_path, follow_up_iterations=5)
    config.limits.max_follow_up_iterations = 2
    orchestrator, backends = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    assert _kinds(backends["mock"]).count(TaskKind.EXECUTE_FOLLOW_UPS) == 2
    assert "MaxFollowUpsReached" in [record.event for record in outcome.history]
    assert any("--max-follow-up-iterations" in step for step in outcome.next_steps)


def test_plan_only_skips_execution(tmp_path: Path) -> None:
    config = _config(tmp_path)
    config.run.plan_only = True
    orchestrator, backends = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    kinds = _kinds(backends["mock"])
    assert TaskKind.TOOL_CURATION not in kinds
    assert TaskKind.EXECUTE_PLAN not in kinds
    assert kinds[-1] is TaskKind.GENERATE_SUMMARY


def test_plan_limit_can_fail_the_run(tmp_path: Path) -> None:
    config = _config(tmp_path, starting_confidence=10, target_confidence=20)
    config.limits.max_plan_iterations = 1
    config.limits.plan_limit_action = "fail"
    orchestrator, _ = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.phase is Phase.FAILED
    assert outcome.error == "Reached maximum plan revisions (1)"


def test_plan_limit_proceeds_by_default(tmp_path: Path) -> None:
    config = _config(tmp_path, starting_confidence=10, target_confidence=20)
    config.limits.max_plan_iterations = 1
    orchestrator, _ = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    assert "MaxPlanIterationsReached" in [record.event for record in outcome.history]
    assert outcome.context.plan_revision_count == 1


def test_exhausted_chain_fails_run_and_persists(tmp_path: Path) -> None:
    config = _config(tmp_path)
    config.backends.max_retries = 1
    backend = FakeBackend(config.fake, exit_codes={TaskKind.TOOL_CURATION: [1, 1]})
    events: list[dict[str, Any]] = []
    orchestrator, _ = _orchestrator(config, tmp_path, {"mock": backend}, events)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.phase is Phase.FAILED
    assert outcome.error.startswith("All backends failed for tool-curation")
    saved = CheckpointStore().load(outcome.run_dir)
    assert saved.context.phase is Phase.FAILED
    assert saved.context.failure_reason == outcome.error
    assert events[-1]["event"] == "backend_chain_exhausted"


def test_fallback_switches_group_backend(tmp_path: Path) -> None:
    config = _config(tmp_path)
    config.backends.execute = "claude"
    config.models.execute = "opus"
    config.backends.fallback = ["mock"]
    config.backends.max_retries = 0
    fake = FakeBackend(config.fake)
    broken = FakeBackend(config.fake, name="claude", exit_codes={TaskKind.EXECUTE_PLAN: [1]})
    orchestrator, _ = _orchestrator(config, tmp_path, {"mock": fake, "claude": broken})

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    assert outcome.succeeded
    assert orchestrator.config.backends.execute == "mock"
    assert orchestrator.config.models.execute == ""
    assert orchestrator.config.backends.fallback == []
    follow_ups = [task for task in fake.calls if task.kind is TaskKind.EXECUTE_FOLLOW_UPS]
    assert follow_ups and follow_ups[0].model is None
    assert broken.calls[0].model == "opus"
    saved = CheckpointStore().load(outcome.run_dir)
    assert saved.config["backends"]["execute"] == "mock"


def test_run_directory_contents(tmp_path: Path) -> None:
    config = _config(tmp_path)
    orchestrator, _ = _orchestrator(config, tmp_path)

    outcome = asyncio.run(orchestrator.start("Build a todo app"))

    layout = RunLayout(outcome.run_dir)
    assert outcome.run_id.startswith("run-")
    assert layout.requirements_path.read_text(encoding="utf-8") == "Build a todo app"
    effective = json.loads(layout.effective_config_path.read_text(encoding="utf-8"))
    assert effective["run_id"] == outcome.run_id
    assert effective["config"]["backends"]["plan"] == "mock"
    assert (layout.tool_curation_dir / "tool-curation-report.md").exists()
    envelope = CheckpointStore().get_envelope(outcome.run_dir)
    assert envelope["revision"] == len([record for record in outcome.history if record.valid])
    assert envelope["data"]["context"]["phase"] == "complete"


def test_resume_retries_phase_a_failed_run_stopped_in(tmp_path: Path) -> None:
    config = _config(tmp_path, execution_iterations=2, follow_up_iterations=0)
    backend = FakeBackend(config.fake, exit_codes={TaskKind.GAP_AUDIT: [1, 1, 1]})
    orchestrator, _ = _orchestrator(config, tmp_path, {"mock": backend})
    failed = asyncio.run(orchestrator.start("Build a todo app"))
    assert failed.phase is Phase.FAILED

    store = CheckpointStore()
    checkpoint = store.find_latest_resumable(tmp_path / "runs")
    assert checkpoint is not None
    assert checkpoint.context.phase is Phase.FAILED
    assert checkpoint.context.failed_phase is Phase.GAP_AUDIT

    fresh = FakeBackend(config.fake)
    resumed_orchestrator, _ = _orchestrator(config, tmp_path, {"mock": fresh})
    outcome = asyncio.run(resumed_orchestrator.resume(checkpoint))

    assert outcome.succeeded
    assert outcome.error is None
    assert outcome.run_id == failed.run_id
    assert outcome.history[0].event == "Resume"
    assert outcome.history[0].to_phase is Phase.GAP_AUDIT
    assert _kinds(fresh)[0] is TaskKind.GAP_AUDIT
    assert TaskKind.PLAN_GENERATION not in _kinds(fresh)
    saved = store.load(failed.run_dir).context
    assert saved.phase is Phase.COMPLETE
    assert saved.failure_reason is None
    assert saved.failed_phase is None


def test_resume_rejects_failed_run_without_recorded_phase(tmp_path: Path) -> None:
    config = _config(tmp_path)
    config.backends.max_retries = 0
    backend = FakeBackend(config.fake, exit_codes={TaskKind.TOOL_CURATION: [1]})
    orchestrator, _ = _orchestrator(config, tmp_path, {"mock": backend})
    failed = asyncio.run(orchestrator.start("Build a todo app"))

    checkpoint = CheckpointStore().load(failed.run_dir)
    checkpoint.context.failed_phase = None
    resumed, _ = _orchestrator(config, tmp_path)

    with pytest.raises(CheckpointError, match="without a resumable phase"):
        asyncio.run(resumed.resume(checkpoint))


def test_resume_reconciles_follow_up_counters(tmp_path: Path) -> None:
    config = _config(tmp_path, follow_up_iterations=3)
    orchestrator, _ = _orchestrator(config, tmp_path)
    done = asyncio.run(orchestrator.start("Build a todo app"))

    store = CheckpointStore()
    saved = store.load(done.run_dir)
    saved.context.phase = Phase.FOLLOW_UPS
    saved.context.follow_up_iteration_count = 0
    saved.context.has_done_initial_follow_up = False
    execute_dir = done.run_dir / "execute"
    (execute_dir / "execution-summary-1-followup-2.md").unlink()
    write_metadata(
        execute_dir / EXECUTE_METADATA_FILE,
        ExecuteMetadata(has_follow_ups=True, summary="Follow-up 1 left work behind."),
    )
    store.save(done.run_dir, saved)

    fresh = FakeBackend(config.fake)
    resumed, _ = _orchestrator(config, tmp_path, {"mock": fresh})
    outcome = asyncio.run(resumed.resume(store.load(done.run_dir)))

    assert outcome.succeeded
    follow_ups = [task for task in fresh.calls if task.kind is TaskKind.EXECUTE_FOLLOW_UPS]
    assert follow_ups[0].follow_up_iteration == 2


def test_resume_rejects_finished_run(tmp_path: Path) -> None:
    config = _config(tmp_path)
    orchestrator, _ = _orchestrator(config, tmp_path)
    done = asyncio.run(orchestrator.start("Build a todo app"))

    checkpoint = CheckpointStore().load(done.run_dir)
    resumed, _ = _orchestrator(config, tmp_path)

    with pytest.raises(CheckpointError, match="cannot be resumed"):
        asyncio.run(resumed.resume(checkpoint))


def test_auto_answer_falls_back_without_suggestions() -> None:
    answers = auto_answer(
        [
            OpenQuestion(question="Which DB?", suggested_answers=["sqlite", "postgres"]),
            OpenQuestion(question="Anything else?"),
        ]
    )

    assert answers[0] == "sqlite"
    assert "best judgement" in answers[1]
