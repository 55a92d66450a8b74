from __future__ import annotations

import asyncio
import signal
import time
from abc import abstractmethod
from collections import deque
from collections.abc import Callable
from contextlib import ExitStack
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

from persevere.backends.base import (
    BackendInvocationResult,
    BackendProcessError,
    BackendTask,
    InvocationMetadata,
    TaskBackend,
)

TAIL_LINES = 50

BackendEventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TailBuffer:
    def __init__(self, max_lines: int = TAIL_LINES) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)

    def append(self, line: str) -> None:
        self._lines.append(line)

    def lines(self) -> list[str]:
        return list(self._lines)


class CliBackend(TaskBackend):
    """Runs an external agent CLI once per task, tailing its output."""

    name = "cli"
    default_binary = ""
    availability_args: tuple[str, ...] = ("--version",)

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary or self.default_binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_args(self, task: BackendTask) -> list[str]:
        """Return the CLI arguments that run ``task``."""

    def build_command(self, task: BackendTask) -> list[str]:
        return [self.binary, *self.build_args(task)]

    def _cwd(self, task: BackendTask) -> str:
        if task.working_dir:
            return str(task.working_dir)
        return str(self.working_directory or Path.cwd())

    def _transcript_paths(self, task: BackendTask) -> tuple[Path, Path] | None:
        if task.transcript_dir is None:
            return None
        task.transcript_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
        prefix = f"{self.name}-{task.kind.value}"
        return (
            task.transcript_dir / f"{prefix}-stdout-{stamp}.log",
            task.transcript_dir / f"{prefix}-stderr-{stamp}.log",
        )

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader | None,
        tail: TailBuffer,
        transcript: IO[str] | None,
    ) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace")
            if transcript is not None:
                transcript.write(line)
            tail.append(line.rstrip("\r\n"))

    async def execute(self, task: BackendTask) -> BackendInvocationResult:
        command = self.build_command(task)
        cwd = self._cwd(task)
        started_at = _utcnow_iso()
        started = time.monotonic()
        self._emit(
            {
                "event": "backend_process_start",
                "backend": self.name,
                "kind": task.kind.value,
                "command": command[0],
                "model": task.model,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        stdout_tail = TailBuffer()
        stderr_tail = TailBuffer()
        transcripts = self._transcript_paths(task)
        timed_out = False
        with ExitStack() as stack:
            stdout_file = stderr_file = None
            if transcripts is not None:
                stdout_file = stack.enter_context(transcripts[0].open("w", encoding="utf-8"))
                stderr_file = stack.enter_context(transcripts[1].open("w", encoding="utf-8"))
            pumps = asyncio.gather(
                self._pump(process.stdout, stdout_tail, stdout_file),
                self._pump(process.stderr, stderr_tail, stderr_file),
            )
            try:
                if task.timeout_seconds:
                    await asyncio.wait_for(pumps, timeout=task.timeout_seconds)
                else:
                    await pumps
            except TimeoutError:
                timed_out = True
                process.kill()
            except asyncio.CancelledError:
                process.terminate()
                await process.wait()
                raise
            return_code = await process.wait()

        interrupted = False
        signal_name: str | None = None
        exit_code = return_code
        if return_code < 0:
            signal_name = signal.Signals(-return_code).name
            exit_code = 128 - return_code
            interrupted = not timed_out

        duration_ms = int((time.monotonic() - started) * 1000)
        self._emit(
            {
                "event": "backend_process_exit",
                "backend": self.name,
                "kind": task.kind.value,
                "exit_code": exit_code,
                "duration_ms": duration_ms,
                "interrupted": interrupted,
                "timed_out": timed_out,
            }
        )
        return BackendInvocationResult(
            exit_code=exit_code,
            duration_ms=duration_ms,
            invocation=InvocationMetadata(
                command=command[0],
                args=command[1:],
                cwd=cwd,
                started_at=started_at,
                ended_at=_utcnow_iso(),
            ),
            stdout_tail=stdout_tail.lines(),
            stderr_tail=stderr_tail.lines(),
            interrupted=interrupted,
            signal=signal_name,
            timed_out=timed_out,
            model_used=task.model,
            stdout_transcript=transcripts[0] if transcripts else None,
            stderr_transcript=transcripts[1] if transcripts else None,
        )

    async def _probe(self, args: tuple[str, ...]) -> tuple[int, list[str]] | None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError):
            return None
        stdout, _ = await process.communicate()
        lines = stdout.decode("utf-8", errors="replace").splitlines()
        return process.returncode or 0, lines

    async def is_available(self) -> bool:
        probe = await self._probe(self.availability_args)
        return probe is not None and probe[0] == 0

    async def version(self) -> str | None:
        probe = await self._probe(("--version",))
        if probe is None or probe[0] != 0 or not probe[1]:
            return None
        return probe[1][0].strip() or None
