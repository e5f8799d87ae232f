"""Tests for cost estimation and the budget guard."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralph_moss.budget import BudgetGuard, estimate_cost, usage_for
from ralph_moss.io_utils import read_text
from ralph_moss.worker import WorkerOutcome, WorkerResult


def _result(sid: str = "A", **kwargs) -> WorkerResult:
    return WorkerResult(story_id=sid, outcome=WorkerOutcome.COMPLETE, **kwargs)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_estimate_cost():
    assert estimate_cost(1_000_000, 0) == pytest.approx(3.0)
    assert estimate_cost(0, 1_000_000) == pytest.approx(15.0)
    assert estimate_cost(0, 0) == 0.0


class TestUsageFor:
    def test_reported_cost_is_trusted(self):
        usage = usage_for(_result(input_tokens=10, output_tokens=20, cost=0.5))
        assert usage.cost == 0.5
        assert usage.estimated is False

    def test_reported_tokens_are_priced(self):
        usage = usage_for(_result(input_tokens=2000, output_tokens=1000))
        assert usage.cost == pytest.approx(estimate_cost(2000, 1000))
        assert usage.estimated is False

    def test_missing_tokens_are_estimated(self):
        usage = usage_for(_result(output="x" * 400))
        assert usage.input_tokens == 3000
        assert usage.output_tokens == 100
        assert usage.estimated is True


class TestBudgetGuard:
    def test_unlimited_by_default(self):
        guard = BudgetGuard()
        for _ in range(100):
            guard.start_round()
        guard.record(_result(cost=1000.0))
        assert guard.exceeded() == ""

    def test_max_iterations(self):
        guard = BudgetGuard(max_iterations=2)
        guard.start_round()
        assert guard.exceeded() == ""
        guard.start_round()
        assert guard.exceeded() == "Reached max iterations (2)"

    def test_max_cost(self):
        guard = BudgetGuard(max_cost=1.0)
        guard.record(_result(cost=0.6))
        assert guard.exceeded() == ""
        guard.record(_result("B", cost=0.6))
        assert guard.exceeded().startswith("Cost budget exceeded")

    def test_max_duration(self):
        clock = FakeClock()
        guard = BudgetGuard(max_duration=60, clock=clock)
        clock.now += 59
        assert guard.exceeded() == ""
        clock.now += 1
        assert guard.exceeded().startswith("Time budget exceeded")

    def test_near_limit_fires_once(self):
        guard = BudgetGuard(max_cost=1.0)
        guard.record(_result(cost=0.5))
        assert guard.near_limit() is False
        guard.record(_result("B", cost=0.4))
        assert guard.near_limit() is True
        assert guard.near_limit() is False

    def test_near_limit_needs_a_cost_budget(self):
        guard = BudgetGuard()
        guard.record(_result(cost=50.0))
        assert guard.near_limit() is False

    def test_cost_log(self, tmp_path: Path):
        log_file = tmp_path / "state" / "costs.log"
        guard = BudgetGuard(cost_log=log_file)
        guard.start_round()
        guard.record(_result("US-001", input_tokens=1000, output_tokens=500, duration_ms=42_000))

        line = read_text(log_file).strip()
        _stamp, rnd, sid, tokens_in, tokens_out, cost, secs = line.split("|")
        assert (rnd, sid, tokens_in, tokens_out) == ("1", "US-001", "1000", "500")
        assert float(cost) == pytest.approx(estimate_cost(1000, 500))
        assert secs == "42s"

    def test_totals(self):
        clock = FakeClock()
        guard = BudgetGuard(clock=clock)
        guard.start_round()
        guard.record(_result(input_tokens=100, output_tokens=50, cost=0.25))
        guard.record(_result("B", output="y" * 40))
        clock.now += 12.34

        totals = guard.totals()
        assert totals["rounds"] == 1
        assert totals["inputTokens"] == 3100
        assert totals["outputTokens"] == 60
        assert totals["costEstimated"] is True
        assert totals["durationSeconds"] == 12.3
