from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from persevere.artifacts import ContractResult, validate_artifacts
from persevere.backends.base import (
    BackendExecutionError,
    BackendInvocationResult,
    BackendTask,
    FallbackChainExhaustedError,
    TaskBackend,
)

LOGGER = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]
ArtifactValidator = Callable[[BackendTask], ContractResult]
Sleeper = Callable[[float], Awaitable[None]]


def validate_task_artifacts(task: BackendTask) -> ContractResult:
    return validate_artifacts(
        task.kind,
        task.working_dir,
        execution_iteration=task.execution_iteration,
        follow_up_iteration=task.follow_up_iteration,
    )


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    delay_seconds: float = 10.0


@dataclass(slots=True)
class ResilientResult:
    success: bool
    used_backend: str
    used_model: str | None
    fallback_occurred: bool
    remaining_fallback_chain: list[str]
    result: BackendInvocationResult
    attempts: int = 1
    failures: list[tuple[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class _BackendOutcome:
    result: BackendInvocationResult | None
    attempts: int
    error: str


class ResilientExecutor:
    """Runs a task with same-backend retries, artifact gating and an ordered fallback chain."""

    def __init__(
        self,
        backends: Mapping[str, TaskBackend],
        retry_policy: RetryPolicy,
        *,
        validator: ArtifactValidator = validate_task_artifacts,
        event_hook: BackendEventHook | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.backends = backends
        self.retry_policy = retry_policy
        self.validator = validator
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempt_failed(
        self, backend_name: str, task: BackendTask, attempt: int, error: str, retriable: bool
    ) -> None:
        LOGGER.warning(
            "%s attempt %d for %s failed: %s", backend_name, attempt + 1, task.kind.value, error
        )
        self._emit(
            {
                "event": "backend_attempt_failed",
                "backend": backend_name,
                "attempt": attempt,
                "kind": task.kind.value,
                "error": error,
                "retriable": retriable,
            }
        )

    async def _run_backend(self, backend_name: str, task: BackendTask) -> _BackendOutcome:
        backend = self.backends.get(backend_name)
        if backend is None:
            return _BackendOutcome(None, 0, f"Unknown backend: {backend_name}")

        error = ""
        attempts = 0
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.delay_seconds
                LOGGER.info("Retrying %s for %s in %.1fs", backend_name, task.kind.value, delay)
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": backend_name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "kind": task.kind.value,
                    }
                )
                await self._sleep(delay)
            attempts = attempt + 1
            self._emit(
                {
                    "event": "backend_attempt_start",
                    "backend": backend_name,
                    "attempt": attempt,
                    "kind": task.kind.value,
                    "model": task.model,
                }
            )
            try:
                result = await backend.execute(task)
            except BackendExecutionError as exc:
                error = str(exc)
                self._attempt_failed(backend_name, task, attempt, error, exc.retriable)
                if not exc.retriable:
                    break
                continue
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                self._attempt_failed(backend_name, task, attempt, error, True)
                continue

            if result.interrupted:
                # An interrupted process only counts if it still left its artifacts behind.
                contract = self.validator(task)
                if contract.valid:
                    return _BackendOutcome(result, attempts, "")
                error = f"{backend_name} was interrupted by {result.signal or 'a signal'}"
                self._attempt_failed(backend_name, task, attempt, error, False)
                break

            if not result.succeeded:
                if result.timed_out:
                    error = f"{backend_name} execution timed out after {result.duration_ms}ms"
                else:
                    error = f"{backend_name} execution failed with exit code {result.exit_code}"
                self._attempt_failed(backend_name, task, attempt, error, True)
                continue

            contract = self.validator(task)
            if not contract.valid:
                error = f"Artifact validation failed: {contract.describe()}"
                self._emit(
                    {
                        "event": "artifact_contract_failed",
                        "backend": backend_name,
                        "attempt": attempt,
                        "kind": task.kind.value,
                        "missing": list(contract.missing),
                        "errors": list(contract.errors),
                    }
                )
                self._attempt_failed(backend_name, task, attempt, error, True)
                continue

            return _BackendOutcome(result, attempts, "")

        return _BackendOutcome(None, attempts, error)

    async def execute(
        self,
        primary: str,
        task: BackendTask,
        fallback_chain: Sequence[str] = (),
    ) -> ResilientResult:
        chain = list(fallback_chain)
        failures: list[tuple[str, str]] = []

        outcome = await self._run_backend(primary, task)
        if outcome.result is not None:
            return ResilientResult(
                success=True,
                used_backend=primary,
                used_model=task.model,
                fallback_occurred=False,
                remaining_fallback_chain=chain,
                result=outcome.result,
                attempts=outcome.attempts,
            )
        failures.append((primary, f"failed after {outcome.attempts} attempt(s): {outcome.error}"))

        tried = {primary}
        # Fallback backends do not share the primary's model catalog.
        fallback_task = replace(task, model=None)
        while chain:
            candidate = chain.pop(0)
            if candidate in tried:
                continue
            tried.add(candidate)
            LOGGER.warning("Falling back to %s for %s", candidate, task.kind.value)
            self._emit(
                {
                    "event": "backend_fallback_start",
                    "backend": candidate,
                    "failed_backend": failures[-1][0],
                    "kind": task.kind.value,
                }
            )
            outcome = await self._run_backend(candidate, fallback_task)
            if outcome.result is not None:
                self._emit(
                    {
                        "event": "backend_fallback_success",
                        "backend": candidate,
                        "attempt": outcome.attempts - 1,
                        "kind": task.kind.value,
                    }
                )
                return ResilientResult(
                    success=True,
                    used_backend=candidate,
                    used_model=None,
                    fallback_occurred=True,
                    remaining_fallback_chain=chain,
                    result=outcome.result,
                    attempts=outcome.attempts,
                    failures=failures,
                )
            failures.append(
                (candidate, f"failed after {outcome.attempts} attempt(s): {outcome.error}")
            )

        primary_error = f"{failures[0][0]} {failures[0][1]}"
        message = f"All backends failed for {task.kind.value}. Primary error: {primary_error}"
        if len(failures) > 1:
            fallback_errors = "; ".join(f"{name} {error}" for name, error in failures[1:])
            message += f". Fallback errors: {fallback_errors}"
        self._emit(
            {
                "event": "backend_chain_exhausted",
                "kind": task.kind.value,
                "backends": [name for name, _ in failures],
            }
        )
        raise FallbackChainExhaustedError(message, failures=failures)
