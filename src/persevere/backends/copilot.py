from __future__ import annotations

from persevere.backends.base import BackendTask
from persevere.backends.process import CliBackend


class CopilotBackend(CliBackend):
    name = "copilot"
    default_binary = "copilot"

    def build_args(self, task: BackendTask) -> list[str]:
        args = ["-p", task.message, "--yolo"]
        if task.model:
            args.extend(["--model", task.model])
        return args
