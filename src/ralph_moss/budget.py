"""Budget / termination guard: rounds, spend and wall-clock across a run."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ralph_moss.io_utils import append_line

# Flat per-token pricing (USD per million tokens) used when the engine
# does not report a cost of its own.
INPUT_PRICE_PER_M = 3.0
OUTPUT_PRICE_PER_M = 15.0
DEFAULT_INPUT_TOKENS = 3000
CHARS_PER_TOKEN = 4
WARN_RATIO = 0.8


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    return (input_tokens * INPUT_PRICE_PER_M + output_tokens * OUTPUT_PRICE_PER_M) / 1_000_000


@dataclass
class Usage:
    input_tokens: int
    output_tokens: int
    cost: float
    estimated: bool


def usage_for(result) -> Usage:
    """Return the usage for a worker result, estimating what is missing."""
    if result.cost > 0:
        return Usage(result.input_tokens, result.output_tokens, result.cost, False)
    estimated = False
    input_tokens = result.input_tokens
    output_tokens = result.output_tokens
    if input_tokens <= 0:
        input_tokens = DEFAULT_INPUT_TOKENS
        estimated = True
    if output_tokens <= 0:
        output_tokens = len(result.output or "") // CHARS_PER_TOKEN
        estimated = True
    return Usage(input_tokens, output_tokens, estimate_cost(input_tokens, output_tokens), estimated)


class BudgetGuard:
    """Decide when the scheduler must stop dispatching new rounds.

    A limit of ``0`` means unlimited. The guard is consulted between
    rounds only, so an in-flight batch always drains and reconciles.
    """

    def __init__(
        self,
        max_iterations: int = 0,
        max_cost: float = 0.0,
        max_duration: float = 0,
        *,
        cost_log: Path | None = None,
        clock=time.monotonic,
    ) -> None:
        self.max_iterations = max_iterations
        self.max_cost = max_cost
        self.max_duration = max_duration
        self.cost_log = cost_log
        self._clock = clock
        self._started = clock()
        self.rounds = 0
        self.total_cost = 0.0
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.cost_estimated = False
        self._warned = False

    def start_round(self) -> int:
        self.rounds += 1
        return self.rounds

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def record(self, result) -> Usage:
        """Account for one worker result and append it to the cost log."""
        usage = usage_for(result)
        self.total_cost += usage.cost
        self.total_input_tokens += usage.input_tokens
        self.total_output_tokens += usage.output_tokens
        self.cost_estimated = self.cost_estimated or usage.estimated
        if self.cost_log is not None:
            stamp = datetime.now().astimezone().isoformat(timespec="seconds")
            append_line(
                self.cost_log,
                f"{stamp}|{self.rounds}|{result.story_id}|{usage.input_tokens}|"
                f"{usage.output_tokens}|{usage.cost:.6f}|{result.duration_ms / 1000:.0f}s",
            )
        return usage

    def exceeded(self) -> str:
        """Return the reason the run must stop, or ``""``."""
        if self.max_iterations and self.rounds >= self.max_iterations:
            return f"Reached max iterations ({self.max_iterations})"
        if self.max_cost and self.total_cost > self.max_cost:
            return f"Cost budget exceeded: ${self.total_cost:.4f} spent of ${self.max_cost:.2f}"
        if self.max_duration and self.elapsed >= self.max_duration:
            return f"Time budget exceeded: {self.elapsed:.0f}s of {self.max_duration:.0f}s"
        return ""

    def near_limit(self) -> bool:
        """True once per run when spend first crosses 80% of the cost budget."""
        if not self.max_cost or self._warned:
            return False
        if self.total_cost >= self.max_cost * WARN_RATIO:
            self._warned = True
            return True
        return False

    def totals(self) -> dict:
        return {
            "rounds": self.rounds,
            "cost": round(self.total_cost, 6),
            "costEstimated": self.cost_estimated,
            "inputTokens": self.total_input_tokens,
            "outputTokens": self.total_output_tokens,
            "durationSeconds": round(self.elapsed, 1),
        }
