"""Configuration defaults, env vars, and runtime options for ralph-moss."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

BRANCH_PREFIX = "ralph-moss"
STORY_BRANCH_PREFIX = f"{BRANCH_PREFIX}/story-"
COMPLETION_MARKER = "<promise>COMPLETE</promise>"
PROGRESS_FILE = "progress.txt"
COSTS_FILE = "costs.log"
STATE_DIR = ".ralph-moss"


@dataclass
class Config:
    """Runtime configuration — mirrors the CLI flags."""

    # Task store
    prd_file: str = "prd.json"

    # Agent
    ai_engine: str = "claude"
    agent_cmd: str = ""

    # Execution
    max_parallel: int = 3
    isolation: bool = True
    keep_worktrees: bool = False
    worker_timeout: int = 1800
    min_output_chars: int = 50
    max_retries: int = 3
    dry_run: bool = False
    skip_preflight: bool = False

    # Budget
    max_iterations: int = 50
    max_cost: float = 0.0
    max_duration: int = 0
    track_costs: bool = True

    # Hooks
    quality_gate: str = ""
    quality_gate_timeout: int = 900
    review: bool = False

    # Git / PR
    create_pr: bool = False
    draft_pr: bool = False
    worktree_dir: str = ""

    # Misc
    verbose: bool = False

    def __post_init__(self) -> None:
        if not self.agent_cmd:
            self.agent_cmd = os.environ.get("RALPH_MOSS_AGENT_CMD", "")
        if self.agent_cmd and self.ai_engine == "claude":
            self.ai_engine = "command"
        if not self.worktree_dir:
            self.worktree_dir = os.environ.get("RALPH_MOSS_WORKTREE_DIR", "")
        if self.max_parallel < 1:
            self.max_parallel = 1
        if not self.isolation:
            # A shared checkout cannot host two agents at once.
            self.max_parallel = 1
        self.max_retries = max(self.max_retries, 0)
        self.max_iterations = max(self.max_iterations, 0)
        self.max_cost = max(self.max_cost, 0.0)
        self.max_duration = max(self.max_duration, 0)

    @property
    def prd_path(self) -> Path:
        return Path(self.prd_file).resolve()

    @property
    def state_dir(self) -> Path:
        """Per-store bookkeeping (retry counters, run reports)."""
        return self.prd_path.parent / STATE_DIR


def resolve_repo_root(start: Path | None = None) -> Path:
    """Return the git repository root, falling back to *start* or cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
            cwd=start,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return start or Path.cwd()
