"""Shared fixtures for ralph-moss tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use ralph_moss.io_utils read_text/write_text for consistent UTF-8 I/O.
- Agents are played by ``sys.executable -c`` scripts, never a real CLI.
"""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import pytest

from ralph_moss import git_ops
from ralph_moss.budget import BudgetGuard
from ralph_moss.engines.base import EngineBase, EngineResult
from ralph_moss.hooks import HookRunner
from ralph_moss.io_utils import write_text
from ralph_moss.reconciler import Reconciler
from ralph_moss.retries import RetryTracker
from ralph_moss.scheduler import BatchScheduler
from ralph_moss.tasks.io import save_store
from ralph_moss.tasks.model import Story, TaskStore
from ralph_moss.worker import Worker
from ralph_moss.workspace import WorkspaceProvisioner, prepare_repo

INTEGRATION_BRANCH = "ralph-moss/feature"


def _git(repo: Path, *args: str) -> str:
    r = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return r.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo on ``main`` for testing."""
    repo = tmp_path / "repo"
    repo.mkdir()
    subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=repo, capture_output=True)
    subprocess.run(["git", "config", "user.email", "test@test"], cwd=repo, capture_output=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=repo, capture_output=True)
    write_text(repo / "README.md", "# Test\n")
    subprocess.run(["git", "add", "README.md"], cwd=repo, capture_output=True)
    subprocess.run(["git", "commit", "-m", "Initial"], cwd=repo, capture_output=True)
    subprocess.run(["git", "branch", "-M", "main"], cwd=repo, capture_output=True)
    return repo


def _make_story(
    id: str,
    title: str = "",
    depends_on: list[str] | None = None,
    passes: bool = False,
    blocked: bool = False,
    **extra,
) -> Story:
    return Story(
        id=id,
        title=title or f"Story {id}",
        description=f"Implement {id}",
        depends_on=depends_on or [],
        passes=passes,
        blocked=blocked,
        extra=dict(extra),
    )


def _make_store(stories: list[Story], branch_name: str = INTEGRATION_BRANCH) -> TaskStore:
    return TaskStore(branch_name=branch_name, stories=stories, project="Test")


@pytest.fixture
def make_story():
    """Factory fixture that creates Story instances."""
    return _make_story


@pytest.fixture
def make_store():
    """Factory fixture that creates TaskStore instances."""
    return _make_store


# ── Fake agent ───────────────────────────────────────────────────────

# Reads the prompt on stdin, then acts on the story according to the JSON
# plan passed as argv[1]: {"<story id>" or "*": action}.
AGENT_SCRIPT = r'''
import json, pathlib, re, subprocess, sys, time

plan = json.loads(sys.argv[1])
prompt = sys.stdin.read()
sid = re.search(r"STORY ID: (\S+)", prompt).group(1)
store_rel = re.search(r"from (\S+)\. Focus ONLY", prompt).group(1)
action = plan.get(sid, plan.get("*", "pass"))

if action == "crash":
    sys.stderr.write("agent crashed\n")
    sys.exit(1)
if action == "sleep":
    time.sleep(60)
if action == "incomplete":
    print("still working on " + sid + ", " + "x" * 200)
    sys.exit(0)

root = pathlib.Path.cwd()
if action == "flip-hang":
    (root / "partial.txt").write_text("half done\n")
    subprocess.run(["git", "add", "partial.txt"], check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", "partial " + sid], check=True, capture_output=True)
(root / (sid + ".txt")).write_text("done " + sid + "\n")
if action == "shared":
    (root / "shared.txt").write_text("written by " + sid + "\n")

if action != "marker-only":
    path = root / store_rel
    data = json.loads(path.read_text(encoding="utf-8"))
    for story in data["userStories"]:
        if story["id"] == sid:
            story["passes"] = True
    if action == "store-note":
        data["lastStory"] = sid
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")

if action == "flip-hang":
    time.sleep(60)

print("implemented " + sid)
print("input_tokens=1000 output_tokens=500")
print("<promise>COMPLETE</promise>")
'''


class ScriptAgent(EngineBase):
    """Fake agent engine driven by a per-story plan."""

    name = "script"
    prompt_via_stdin = True

    def __init__(self, plan: dict[str, str] | None = None) -> None:
        super().__init__()
        self.plan = plan or {}

    def build_cmd(self, prompt: str) -> list[str]:
        return [sys.executable, "-c", AGENT_SCRIPT, json.dumps(self.plan)]

    def parse_output(self, raw: str) -> EngineResult:
        return EngineResult(text=raw)


@pytest.fixture
def script_agent():
    """Factory fixture: ``script_agent({"A": "crash"})``."""
    return ScriptAgent


@pytest.fixture
def store_repo(git_repo: Path):
    """Write a store into ``git_repo`` and commit it. Returns the store path."""

    def _write(store: TaskStore, name: str = "prd.json") -> Path:
        path = git_repo / name
        save_store(store, path)
        _git(git_repo, "add", name)
        _git(git_repo, "commit", "-m", f"add {name}")
        return path

    return _write


@pytest.fixture
def make_scheduler(git_repo: Path, tmp_path: Path):
    """Wire a BatchScheduler against ``git_repo/prd.json`` with a fake agent."""

    def _build(
        agent: EngineBase,
        *,
        max_parallel: int = 2,
        isolated: bool = True,
        max_iterations: int = 0,
        max_retries: int = 3,
        worker_timeout: float | None = 30,
        keep: bool = False,
        hooks: HookRunner | None = None,
    ) -> BatchScheduler:
        store_path = git_repo / "prd.json"
        state_dir = git_repo / ".ralph-moss"
        integration = git_ops.ensure_run_branch(INTEGRATION_BRANCH, "main", cwd=git_repo)
        prepare_repo(git_repo, store_path, state_dir, isolated=isolated)
        provisioner = WorkspaceProvisioner(
            git_repo,
            integration,
            isolated=isolated,
            base_dir=tmp_path / "worktrees",
        )
        worker = Worker(
            agent,
            Path("prd.json"),
            integration_branch=integration,
            timeout=worker_timeout,
            log_dir=state_dir / "logs",
        )
        return BatchScheduler(
            store_path,
            provisioner,
            worker,
            Reconciler(git_repo),
            BudgetGuard(max_iterations, cost_log=state_dir / "costs.log"),
            RetryTracker(state_dir / "retries.json", max_retries),
            max_parallel=max_parallel,
            keep_workspaces=keep,
            hooks=hooks,
            report_path=state_dir / "run-report.json",
        )

    return _build
