from __future__ import annotations

from persevere.backends.base import BackendTask
from persevere.backends.process import CliBackend


class CursorAgentBackend(CliBackend):
    name = "cursor"
    default_binary = "cursor-agent"

    def build_args(self, task: BackendTask) -> list[str]:
        args = ["-p", task.message, "--force"]
        if task.model:
            args.extend(["--model", task.model])
        return args
