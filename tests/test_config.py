"""Tests for ralph_moss.config.Config defaults and normalisation."""

from __future__ import annotations

from pathlib import Path

from ralph_moss.config import STATE_DIR, Config, resolve_repo_root


def test_defaults(monkeypatch):
    monkeypatch.delenv("RALPH_MOSS_AGENT_CMD", raising=False)
    monkeypatch.delenv("RALPH_MOSS_WORKTREE_DIR", raising=False)
    cfg = Config()
    assert cfg.ai_engine == "claude"
    assert cfg.agent_cmd == ""
    assert cfg.max_parallel == 3
    assert cfg.max_iterations == 50
    assert cfg.max_retries == 3
    assert cfg.isolation is True


def test_agent_cmd_selects_command_engine(monkeypatch):
    monkeypatch.delenv("RALPH_MOSS_AGENT_CMD", raising=False)
    cfg = Config(agent_cmd="my-agent --fast")
    assert cfg.ai_engine == "command"


def test_agent_cmd_from_env(monkeypatch):
    monkeypatch.setenv("RALPH_MOSS_AGENT_CMD", "env-agent")
    cfg = Config()
    assert cfg.agent_cmd == "env-agent"
    assert cfg.ai_engine == "command"


def test_worktree_dir_from_env(monkeypatch):
    monkeypatch.setenv("RALPH_MOSS_WORKTREE_DIR", "/tmp/wt")
    assert Config().worktree_dir == "/tmp/wt"


def test_shared_checkout_runs_one_story_at_a_time():
    cfg = Config(isolation=False, max_parallel=4)
    assert cfg.max_parallel == 1


def test_limits_are_clamped():
    cfg = Config(max_parallel=0, max_retries=-1, max_iterations=-5, max_cost=-1.0, max_duration=-10)
    assert cfg.max_parallel == 1
    assert cfg.max_retries == 0
    assert cfg.max_iterations == 0
    assert cfg.max_cost == 0.0
    assert cfg.max_duration == 0


def test_state_dir_sits_beside_store(tmp_path: Path):
    cfg = Config(prd_file=str(tmp_path / "tasks" / "prd.json"))
    assert cfg.prd_path == (tmp_path / "tasks" / "prd.json").resolve()
    assert cfg.state_dir == (tmp_path / "tasks").resolve() / STATE_DIR


def test_resolve_repo_root(git_repo: Path, tmp_path: Path):
    sub = git_repo / "pkg"
    sub.mkdir()
    assert resolve_repo_root(sub).resolve() == git_repo.resolve()

    outside = tmp_path / "plain"
    outside.mkdir()
    assert resolve_repo_root(outside) == outside
