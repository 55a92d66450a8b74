from __future__ import annotations

from persevere.backends.base import BackendTask
from persevere.backends.process import CliBackend


class CodexBackend(CliBackend):
    name = "codex"
    default_binary = "codex"
    availability_args = ("--help",)

    def build_args(self, task: BackendTask) -> list[str]:
        args = ["exec", "--dangerously-bypass-approvals-and-sandbox", task.message]
        if task.model:
            args.extend(["--model", task.model])
        return args
