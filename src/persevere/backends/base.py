from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from persevere.tasks import TaskKind


class BackendExecutionError(RuntimeError):
    """Raised when a backend invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class FallbackChainExhaustedError(BackendExecutionError):
    """Raised when the primary backend and every fallback failed."""

    def __init__(self, message: str, *, failures: list[tuple[str, str]]) -> None:
        backend = failures[0][0] if failures else None
        super().__init__(message, backend=backend, retriable=False)
        self.failures = failures


@dataclass(slots=True)
class BackendTask:
    kind: TaskKind
    message: str
    working_dir: Path
    model: str | None = None
    timeout_seconds: float | None = None
    execution_iteration: int = 1
    follow_up_iteration: int = 0
    transcript_dir: Path | None = None

    @property
    def mode(self) -> str:
        return self.kind.group


@dataclass(slots=True)
class InvocationMetadata:
    command: str
    args: list[str]
    cwd: str
    started_at: str
    ended_at: str


@dataclass(slots=True)
class BackendInvocationResult:
    exit_code: int
    duration_ms: int
    invocation: InvocationMetadata
    stdout_tail: list[str] = field(default_factory=list)
    stderr_tail: list[str] = field(default_factory=list)
    interrupted: bool = False
    signal: str | None = None
    timed_out: bool = False
    model_used: str | None = None
    stdout_transcript: Path | None = None
    stderr_transcript: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.interrupted and not self.timed_out

    def summary(self) -> str:
        if self.timed_out:
            return f"timed out after {self.duration_ms}ms"
        if self.interrupted:
            return f"interrupted by {self.signal or 'unknown signal'}"
        if self.exit_code == 0:
            return f"succeeded in {self.duration_ms}ms"
        return f"failed with exit code {self.exit_code} in {self.duration_ms}ms"


class TaskBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def execute(self, task: BackendTask) -> BackendInvocationResult:
        """Run one task to completion and report how the process ended."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Return whether the backend can be invoked on this machine."""

    @abstractmethod
    async def version(self) -> str | None:
        """Return the backend version string, if it reports one."""
