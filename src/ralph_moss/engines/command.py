"""Generic engine: any operator-supplied command reading the prompt on stdin."""

from __future__ import annotations

import re
import shlex
import shutil

from ralph_moss.engines.base import EngineBase, EngineResult

_TOKENS_RE = re.compile(r"(input|output)[_ ]tokens[=: ]+([0-9,]+)", re.IGNORECASE)
_COST_RE = re.compile(r"total[_ ]cost[=: ]+\$?([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE)


class CommandEngine(EngineBase):
    """Run ``command`` with the prompt on stdin; stdout is the agent transcript.

    Usage lines such as ``input_tokens=1200 output_tokens=300`` and
    ``total_cost=$0.42`` are picked up when present.
    """

    name = "command"
    prompt_via_stdin = True

    def __init__(self, command: str) -> None:
        super().__init__()
        if not command.strip():
            raise ValueError("CommandEngine requires a non-empty command")
        self.command = command

    def build_cmd(self, prompt: str) -> list[str]:
        return shlex.split(self.command)

    def parse_output(self, raw: str) -> EngineResult:
        result = EngineResult(text=raw)
        for kind, value in _TOKENS_RE.findall(raw):
            count = int(value.replace(",", ""))
            if kind.lower() == "input":
                result.input_tokens = count
            else:
                result.output_tokens = count
        cost = _COST_RE.findall(raw)
        if cost:
            result.cost = float(cost[-1])
        return result

    def check_available(self) -> str | None:
        exe = self.build_cmd("")[0]
        if not shutil.which(exe):
            return f"{exe} not found in PATH"
        return None
