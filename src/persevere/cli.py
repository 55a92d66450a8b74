from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from persevere.artifacts import HardBlocker, OpenQuestion
from persevere.backends import (
    ClaudeCodeBackend,
    CodexBackend,
    CopilotBackend,
    CursorAgentBackend,
    FakeBackend,
    ResilientExecutor,
    RetryPolicy,
    TaskBackend,
)
from persevere.config import (
    BACKEND_NAMES,
    PHASE_GROUPS,
    PersevereConfig,
    load_config,
    save_config,
)
from persevere.orchestrator import Orchestrator, RunOutcome, auto_answer, auto_resolve
from persevere.phases import Phase, describe_phase
from persevere.policy import format_progress
from persevere.state import CheckpointError, CheckpointStore, RunCheckpoint

CONFIG_FILE = "persevere.toml"

LOGGER = logging.getLogger(__name__)


class EventLog:
    """Appends backend events to ``events.jsonl`` of the active run."""

    def __init__(self) -> None:
        self.orchestrator: Orchestrator | None = None

    def __call__(self, event: dict[str, Any]) -> None:
        if self.orchestrator is None or self.orchestrator.layout is None:
            return
        payload = dict(event)
        payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
        path = self.orchestrator.layout.events_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")


@dataclass(slots=True)
class Runtime:
    working_dir: Path
    config_path: Path
    config: PersevereConfig
    store: CheckpointStore
    events: EventLog
    orchestrator: Orchestrator


def _resolve_config_path(working_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = working_dir / config_path
    return config_path.resolve()


def _artifact_base(working_dir: Path, config: PersevereConfig) -> Path:
    base = Path(config.run.artifact_dir)
    if not base.is_absolute():
        base = working_dir / base
    return base


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_backends(
    config: PersevereConfig, working_dir: Path, events: EventLog
) -> dict[str, TaskBackend]:
    return {
        "claude": ClaudeCodeBackend(working_directory=working_dir, event_hook=events),
        "codex": CodexBackend(working_directory=working_dir, event_hook=events),
        "cursor": CursorAgentBackend(working_directory=working_dir, event_hook=events),
        "copilot": CopilotBackend(working_directory=working_dir, event_hook=events),
        "mock": FakeBackend(config.fake),
    }


async def _check_backends(config: PersevereConfig, backends: dict[str, TaskBackend]) -> list[str]:
    """Fail when a selected backend is missing; return the usable fallback chain."""
    selected = dict.fromkeys(config.backends.for_group(group) for group in PHASE_GROUPS)
    for name in selected:
        backend = backends[name]
        if not await backend.is_available():
            raise click.ClickException(
                f"Backend {name} is not available. Install it or choose another backend."
            )
        LOGGER.info("Using %s (%s)", name, await backend.version() or "unknown version")

    usable: list[str] = []
    for name in config.backends.fallback:
        if name in selected or await backends[name].is_available():
            usable.append(name)
        else:
            LOGGER.warning("Dropping fallback backend %s: not available", name)
    return usable


def _prompt_answers(questions: list[OpenQuestion]) -> list[str]:
    answers: list[str] = []
    for index, question in enumerate(questions, start=1):
        click.echo(f"\nQuestion {index}: {question.question}")
        for option, suggestion in enumerate(question.suggested_answers, start=1):
            click.echo(f"  {option}. {suggestion}")
        default = question.suggested_answers[0] if question.suggested_answers else ""
        answer = click.prompt("Answer", default=default, show_default=bool(default))
        if answer.isdigit() and 1 <= int(answer) <= len(question.suggested_answers):
            answer = question.suggested_answers[int(answer) - 1]
        answers.append(answer)
    return answers


def _prompt_resolutions(blockers: list[HardBlocker]) -> list[str]:
    resolutions: list[str] = []
    for blocker in blockers:
        click.echo(f"\nHard blocker: {blocker.description}")
        click.echo(f"  Reason: {blocker.reason}")
        resolutions.append(click.prompt("Resolution", default="Skip and document it"))
    return resolutions


def _load_runtime(
    working_dir: Path, config_path: Path, config: PersevereConfig, *, interactive: bool
) -> Runtime:
    events = EventLog()
    policy = RetryPolicy(
        max_retries=max(0, int(config.backends.max_retries)),
        delay_seconds=max(0.0, float(config.backends.retry_delay_seconds)),
    )
    backends = _build_backends(config, working_dir, events)
    config.backends.fallback = asyncio.run(_check_backends(config, backends))
    executor = ResilientExecutor(backends, policy, event_hook=events)
    store = CheckpointStore()
    orchestrator = Orchestrator(
        config,
        executor,
        working_dir=working_dir,
        store=store,
        answer_provider=_prompt_answers if interactive else auto_answer,
        blocker_resolver=_prompt_resolutions if interactive else auto_resolve,
    )
    events.orchestrator = orchestrator
    return Runtime(
        working_dir=working_dir,
        config_path=config_path,
        config=config,
        store=store,
        events=events,
        orchestrator=orchestrator,
    )


def _apply_overrides(config: PersevereConfig, overrides: dict[str, Any]) -> PersevereConfig:
    for key in ("max_plan_iterations", "max_exec_iterations", "max_follow_up_iterations"):
        if overrides.get(key) is not None:
            setattr(config.limits, key, int(overrides[key]))
    if overrides.get("plan_confidence") is not None:
        config.limits.plan_confidence = int(overrides["plan_confidence"])
    if overrides.get("unlimited"):
        config.limits.unlimited = True
    for group in PHASE_GROUPS:
        backend = overrides.get(f"{group}_backend")
        if backend:
            setattr(config.backends, group, backend)
        model = overrides.get(f"{group}_model")
        if model is not None:
            setattr(config.models, group, model)
    if overrides.get("fallback"):
        config.backends.fallback = list(overrides["fallback"])
    if overrides.get("plan_only"):
        config.run.plan_only = True
    if overrides.get("mock"):
        config.backends.plan = "mock"
        config.backends.execute = "mock"
        config.backends.audit = "mock"
        config.backends.fallback = []
    config.validate()
    return config


def _echo_outcome(outcome: RunOutcome) -> None:
    context = outcome.context
    click.echo(f"Run ID: {outcome.run_id}")
    click.echo(f"Run directory: {outcome.run_dir}")
    click.echo(f"Phase: {context.current_phase.value} ({describe_phase(context.current_phase)})")
    click.echo(
        f"Plan revisions: {context.plan_revision_count}, "
        f"execution iterations: {context.exec_iteration_count}"
    )
    for notice in outcome.notices:
        click.echo(f"Limit reached: {notice.message}")
    if outcome.next_steps:
        click.echo("Next steps:")
        for step in outcome.next_steps:
            click.echo(f"  - {step}")


def _read_requirements(requirements: str | None, file_path: Path | None) -> str:
    if file_path is not None:
        return file_path.read_text(encoding="utf-8")
    return (requirements or "").strip()


@click.group()
def cli() -> None:
    """Persevere CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_NAMES), default=None)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    working_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(working_dir, config_value)
    config = load_config(config_path)
    if backend:
        config.backends.plan = backend  # type: ignore[assignment]
        config.backends.execute = backend  # type: ignore[assignment]
        config.backends.audit = backend  # type: ignore[assignment]
    save_config(config_path, config)
    _artifact_base(working_dir, config).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Persevere in {working_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(
        f"Backends: plan={config.backends.plan} execute={config.backends.execute} "
        f"audit={config.backends.audit}"
    )


@cli.command("run")
@click.argument("requirements", required=False)
@click.option("--file", "file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--resume", is_flag=True, default=False, help="Resume the latest unfinished run.")
@click.option("--max-plan-iterations", type=click.IntRange(min=1), default=None)
@click.option("--max-exec-iterations", type=click.IntRange(min=1), default=None)
@click.option("--max-follow-up-iterations", type=click.IntRange(min=1), default=None)
@click.option("--plan-confidence", type=click.IntRange(0, 100), default=None)
@click.option("--plan-backend", type=click.Choice(BACKEND_NAMES), default=None)
@click.option("--execute-backend", type=click.Choice(BACKEND_NAMES), default=None)
@click.option("--audit-backend", type=click.Choice(BACKEND_NAMES), default=None)
@click.option("--plan-model", default=None)
@click.option("--execute-model", default=None)
@click.option("--audit-model", default=None)
@click.option("--fallback", multiple=True, type=click.Choice(BACKEND_NAMES))
@click.option("--unlimited", is_flag=True, default=False)
@click.option("--plan-only", is_flag=True, default=False)
@click.option("--non-interactive", is_flag=True, default=False)
@click.option("--mock", is_flag=True, default=False, help="Use the deterministic fake backend.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def run_command(
    requirements: str | None,
    file_path: Path | None,
    resume: bool,
    non_interactive: bool,
    verbose: bool,
    config_value: str,
    **overrides: Any,
) -> None:
    _configure_logging(verbose)
    working_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(working_dir, config_value)
    try:
        base_config = load_config(config_path)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc

    checkpoint: RunCheckpoint | None = None
    text = ""
    if resume:
        try:
            checkpoint = CheckpointStore().find_latest_resumable(
                _artifact_base(working_dir, base_config)
            )
            if checkpoint is None:
                raise click.ClickException("No resumable run found.")
            base_config = checkpoint.resolved_config()
        except CheckpointError as exc:
            raise click.ClickException(str(exc)) from exc
    else:
        text = _read_requirements(requirements, file_path)
        if not text:
            raise click.UsageError("Provide REQUIREMENTS or --file, or pass --resume.")

    try:
        config = _apply_overrides(base_config, overrides)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    interactive = config.run.interactive and not non_interactive
    runtime = _load_runtime(working_dir, config_path, config, interactive=interactive)

    try:
        if checkpoint is not None:
            saved = checkpoint.context
            origin = saved.failed_phase if saved.phase is Phase.FAILED else saved.phase
            click.echo(f"Resuming {checkpoint.run_id} from {(origin or saved.phase).value}")
            outcome = asyncio.run(runtime.orchestrator.resume(checkpoint, config=config))
        else:
            outcome = asyncio.run(runtime.orchestrator.start(text))
    except CheckpointError as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_outcome(outcome)
    if not outcome.succeeded:
        reason = outcome.error or "unknown error"
        raise click.ClickException(f"Run {outcome.run_id} failed: {reason}")


@cli.command("status")
@click.option("--run-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def status_command(run_dir: Path | None, config_value: str) -> None:
    working_dir = Path.cwd().resolve()
    config = load_config(_resolve_config_path(working_dir, config_value))
    store = CheckpointStore()
    try:
        if run_dir is not None:
            checkpoint = store.load(run_dir)
            envelope = store.get_envelope(run_dir)
        else:
            checkpoint = store.find_latest(_artifact_base(working_dir, config))
            envelope = store.get_envelope(Path(checkpoint.paths.run_dir)) if checkpoint else None
        if checkpoint is None:
            click.echo("No runs found.")
            return
        limits = checkpoint.resolved_config().limits
    except CheckpointError as exc:
        raise click.ClickException(str(exc)) from exc

    saved = checkpoint.context
    payload = {
        "run_id": checkpoint.run_id,
        "run_dir": checkpoint.paths.run_dir,
        "phase": saved.phase.value,
        "description": describe_phase(saved.phase),
        "progress": {
            "plan_revisions": format_progress(
                saved.plan_revision_count, limits.max_plan_iterations, limits.unlimited
            ),
            "exec_iterations": format_progress(
                saved.exec_iteration_count, limits.max_exec_iterations, limits.unlimited
            ),
            "follow_up_iterations": format_progress(
                saved.follow_up_iteration_count, limits.max_follow_up_iterations, limits.unlimited
            ),
        },
        "last_confidence": saved.last_confidence,
        "started_at": saved.started_at,
        "last_transition_at": saved.last_transition_at,
        "failure_reason": saved.failure_reason,
        "failed_phase": saved.failed_phase.value if saved.failed_phase else None,
        "revision": envelope["revision"] if envelope else None,
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
