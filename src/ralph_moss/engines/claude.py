"""Claude Code engine adapter."""

from __future__ import annotations

import json
import shutil

from ralph_moss.engines.base import EngineBase, EngineResult


class ClaudeEngine(EngineBase):
    name = "claude"

    def build_cmd(self, prompt: str) -> list[str]:
        claude = shutil.which("claude") or "claude"
        return [
            claude,
            "--dangerously-skip-permissions",
            "--verbose",
            "-p",
            prompt,
            "--output-format",
            "stream-json",
        ]

    def parse_output(self, raw: str) -> EngineResult:
        result = EngineResult()
        texts: list[str] = []
        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped.startswith("{"):
                continue
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue

            if obj.get("type") == "assistant":
                content = (obj.get("message") or {}).get("content") or []
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "text":
                        texts.append(str(block.get("text", "")))
            elif obj.get("type") == "result":
                result.text = str(obj.get("result", ""))
                usage = obj.get("usage") or {}
                try:
                    result.input_tokens = int(usage.get("input_tokens", 0))
                    result.output_tokens = int(usage.get("output_tokens", 0))
                    result.cost = float(obj.get("total_cost_usd", 0) or 0)
                    result.duration_ms = int(obj.get("duration_ms", 0) or 0)
                except (TypeError, ValueError):
                    pass
                if obj.get("is_error"):
                    result.error = result.text or "agent reported an error"

        if not result.text:
            result.text = "\n".join(texts) if texts else raw
        return result

    def check_available(self) -> str | None:
        if not shutil.which("claude"):
            return "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"
        return None
