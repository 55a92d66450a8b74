from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, get_args

BackendName = Literal["claude", "codex", "cursor", "copilot", "mock"]
PlanLimitAction = Literal["proceed", "fail"]
PhaseGroup = Literal["plan", "execute", "audit"]

BACKEND_NAMES: tuple[str, ...] = get_args(BackendName)
PHASE_GROUPS: tuple[PhaseGroup, ...] = get_args(PhaseGroup)


@dataclass(slots=True)
class LimitsConfig:
    max_plan_iterations: int = 10
    max_exec_iterations: int = 5
    max_follow_up_iterations: int = 10
    plan_confidence: int = 85
    unlimited: bool = False
    plan_limit_action: PlanLimitAction = "proceed"


@dataclass(slots=True)
class BackendsConfig:
    plan: BackendName = "claude"
    execute: BackendName = "claude"
    audit: BackendName = "claude"
    fallback: list[BackendName] = field(default_factory=list)
    max_retries: int = 2
    retry_delay_seconds: float = 10.0
    timeout_seconds: float = 0.0

    def for_group(self, group: PhaseGroup) -> BackendName:
        return getattr(self, group)


@dataclass(slots=True)
class ModelsConfig:
    plan: str = ""
    execute: str = ""
    audit: str = ""

    def for_group(self, group: PhaseGroup) -> str | None:
        value = getattr(self, group)
        return value or None


@dataclass(slots=True)
class RunConfig:
    artifact_dir: str = ".persevere/runs"
    plan_only: bool = False
    interactive: bool = False
    capture_transcripts: bool = True


@dataclass(slots=True)
class FakeBackendConfig:
    open_question_iterations: int = 0
    plan_revision_iterations: int = 1
    starting_confidence: int = 60
    target_confidence: int = 90
    execution_iterations: int = 1
    follow_up_iterations: int = 1
    hard_blockers: bool = False


@dataclass(slots=True)
class PersevereConfig:
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    backends: BackendsConfig = field(default_factory=BackendsConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    run: RunConfig = field(default_factory=RunConfig)
    fake: FakeBackendConfig = field(default_factory=FakeBackendConfig)

    @classmethod
    def default(cls) -> PersevereConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PersevereConfig:
        backends = dict(data.get("backends", {}))
        if "fallback" in backends:
            backends["fallback"] = list(backends["fallback"])
        config = cls(
            limits=LimitsConfig(**data.get("limits", {})),
            backends=BackendsConfig(**backends),
            models=ModelsConfig(**data.get("models", {})),
            run=RunConfig(**data.get("run", {})),
            fake=FakeBackendConfig(**data.get("fake", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        for group in ("plan", "execute", "audit"):
            name = getattr(self.backends, group)
            if name not in BACKEND_NAMES:
                raise ValueError(f"Unknown backend for {group}: {name}")
        for name in self.backends.fallback:
            if name not in BACKEND_NAMES:
                raise ValueError(f"Unknown fallback backend: {name}")
        if self.limits.plan_limit_action not in get_args(PlanLimitAction):
            raise ValueError(f"Unknown plan_limit_action: {self.limits.plan_limit_action}")
        if not 0 <= self.limits.plan_confidence <= 100:
            raise ValueError("plan_confidence must be between 0 and 100")

    def to_dict(self) -> dict:
        return {
            "limits": {
                "max_plan_iterations": self.limits.max_plan_iterations,
                "max_exec_iterations": self.limits.max_exec_iterations,
                "max_follow_up_iterations": self.limits.max_follow_up_iterations,
                "plan_confidence": self.limits.plan_confidence,
                "unlimited": self.limits.unlimited,
                "plan_limit_action": self.limits.plan_limit_action,
            },
            "backends": {
                "plan": self.backends.plan,
                "execute": self.backends.execute,
                "audit": self.backends.audit,
                "fallback": list(self.backends.fallback),
                "max_retries": self.backends.max_retries,
                "retry_delay_seconds": self.backends.retry_delay_seconds,
                "timeout_seconds": self.backends.timeout_seconds,
            },
            "models": {
                "plan": self.models.plan,
                "execute": self.models.execute,
                "audit": self.models.audit,
            },
            "run": {
                "artifact_dir": self.run.artifact_dir,
                "plan_only": self.run.plan_only,
                "interactive": self.run.interactive,
                "capture_transcripts": self.run.capture_transcripts,
            },
            "fake": {
                "open_question_iterations": self.fake.open_question_iterations,
                "plan_revision_iterations": self.fake.plan_revision_iterations,
                "starting_confidence": self.fake.starting_confidence,
                "target_confidence": self.fake.target_confidence,
                "execution_iterations": self.fake.execution_iterations,
                "follow_up_iterations": self.fake.follow_up_iterations,
                "hard_blockers": self.fake.hard_blockers,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PersevereConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["limits", "backends", "models", "run", "fake"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PersevereConfig:
    if not path.exists():
        return PersevereConfig.default()
    return PersevereConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PersevereConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
