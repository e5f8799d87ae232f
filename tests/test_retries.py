"""Tests for persisted retry counters."""

from __future__ import annotations

from pathlib import Path

from ralph_moss.io_utils import read_json, write_text
from ralph_moss.retries import RetryTracker


def test_counts_and_exhaustion(tmp_path: Path):
    tracker = RetryTracker(tmp_path / "retries.json", max_retries=2)
    assert tracker.attempts("A") == 0
    assert tracker.record_failure("A") == 1
    assert not tracker.exhausted("A")
    assert tracker.record_failure("A") == 2
    assert tracker.exhausted("A")
    assert not tracker.exhausted("B")


def test_counts_survive_restart(tmp_path: Path):
    path = tmp_path / "retries.json"
    RetryTracker(path).record_failure("A")
    assert read_json(path) == {"A": 1}
    assert RetryTracker(path).attempts("A") == 1


def test_reset(tmp_path: Path):
    path = tmp_path / "retries.json"
    tracker = RetryTracker(path)
    tracker.record_failure("A")
    tracker.record_failure("B")
    tracker.reset("A")
    assert tracker.attempts("A") == 0
    assert read_json(path) == {"B": 1}


def test_zero_means_unbounded(tmp_path: Path):
    tracker = RetryTracker(tmp_path / "retries.json", max_retries=0)
    for _ in range(10):
        tracker.record_failure("A")
    assert not tracker.exhausted("A")


def test_unreadable_file_is_ignored(tmp_path: Path):
    path = tmp_path / "retries.json"
    write_text(path, "{not json")
    tracker = RetryTracker(path)
    assert tracker.attempts("A") == 0
    assert tracker.record_failure("A") == 1
