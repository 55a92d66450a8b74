from persevere.backends.base import (
    BackendExecutionError,
    BackendInvocationResult,
    BackendProcessError,
    BackendTask,
    BackendTimeoutError,
    FallbackChainExhaustedError,
    InvocationMetadata,
    TaskBackend,
)
from persevere.backends.claude import ClaudeCodeBackend
from persevere.backends.codex import CodexBackend
from persevere.backends.copilot import CopilotBackend
from persevere.backends.cursor import CursorAgentBackend
from persevere.backends.fake import FakeBackend
from persevere.backends.resilient import ResilientExecutor, ResilientResult, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendInvocationResult",
    "BackendProcessError",
    "BackendTask",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CopilotBackend",
    "CursorAgentBackend",
    "FakeBackend",
    "FallbackChainExhaustedError",
    "InvocationMetadata",
    "ResilientExecutor",
    "ResilientResult",
    "RetryPolicy",
    "TaskBackend",
]
