from __future__ import annotations

from persevere.backends.base import BackendTask
from persevere.backends.process import CliBackend


class ClaudeCodeBackend(CliBackend):
    name = "claude"
    default_binary = "claude"

    def build_args(self, task: BackendTask) -> list[str]:
        args = ["-p", task.message, "--dangerously-skip-permissions"]
        if task.model:
            args.extend(["--model", task.model])
        return args
