"""Post-worker hooks: quality gate command and review agent.

Both are advisory. Their verdicts never change a story's outcome; a failed
gate or a review asking for changes is saved as feedback and handed to the
next attempt of the same story.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from ralph_moss import git_ops, log
from ralph_moss.engines.base import EngineBase
from ralph_moss.io_utils import read_text, write_text
from ralph_moss.prompts import build_review_prompt
from ralph_moss.tasks.model import Story
from ralph_moss.workspace import Workspace

MAX_FEEDBACK_CHARS = 4000


@dataclass
class GateResult:
    passed: bool
    output: str = ""
    return_code: int = 0
    duration_s: float = 0.0


@dataclass
class ReviewResult:
    verdict: str
    text: str = ""

    @property
    def approved(self) -> bool:
        return self.verdict == "PASS"


def run_quality_gate(command: str, cwd: Path, timeout: float | None = 900) -> GateResult:
    """Run the gate *command* through the shell inside *cwd*."""
    start = time.monotonic()
    try:
        r = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        out = e.stdout if isinstance(e.stdout, str) else ""
        return GateResult(False, f"{out}\nquality gate timed out after {timeout}s", -1, time.monotonic() - start)
    except OSError as e:
        return GateResult(False, f"quality gate could not start: {e}", -1, time.monotonic() - start)
    output = (r.stdout or "") + (r.stderr or "")
    return GateResult(r.returncode == 0, output, r.returncode, time.monotonic() - start)


def parse_verdict(text: str) -> str:
    for line in text.splitlines():
        line = line.strip().lstrip("#* ").upper()
        if line.startswith("VERDICT:"):
            verdict = line.split(":", 1)[1].strip()
            if verdict.startswith("PASS"):
                return "PASS"
            if verdict.startswith("CHANGES"):
                return "CHANGES REQUESTED"
    return "UNKNOWN"


def run_review(
    engine: EngineBase,
    story: Story,
    cwd: Path,
    *,
    diff_summary: str = "",
    timeout: float | None = 600,
) -> ReviewResult:
    result = engine.run_sync(build_review_prompt(story, diff_summary), cwd=cwd, timeout=timeout)
    text = (result.text or result.raw or "").strip()
    if result.timed_out or (result.return_code != 0 and not text):
        return ReviewResult("UNKNOWN", result.error or "review agent failed")
    return ReviewResult(parse_verdict(text), text)


class HookRunner:
    """Run the configured hooks for a finished worker and keep feedback.

    Feedback lives in ``state_dir/feedback/<story>.md`` so it survives the
    workspace being discarded.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        quality_gate: str = "",
        gate_timeout: float | None = 900,
        review_engine: EngineBase | None = None,
        review_timeout: float | None = 600,
        integration_branch: str = "",
    ) -> None:
        self.state_dir = state_dir
        self.quality_gate = quality_gate
        self.gate_timeout = gate_timeout
        self.review_engine = review_engine
        self.review_timeout = review_timeout
        self.integration_branch = integration_branch

    @property
    def enabled(self) -> bool:
        return bool(self.quality_gate) or self.review_engine is not None

    def _feedback_path(self, story_id: str) -> Path:
        return self.state_dir / "feedback" / f"{story_id}.md"

    def feedback_for(self, story_id: str) -> str:
        path = self._feedback_path(story_id)
        if not path.exists():
            return ""
        return read_text(path, errors="replace")

    def clear_feedback(self, story_id: str) -> None:
        self._feedback_path(story_id).unlink(missing_ok=True)

    def after_worker(self, story: Story, workspace: Workspace) -> tuple[GateResult | None, ReviewResult | None]:
        notes: list[str] = []
        gate: GateResult | None = None
        review: ReviewResult | None = None

        if self.quality_gate:
            gate = run_quality_gate(self.quality_gate, workspace.path, self.gate_timeout)
            if gate.passed:
                log.story("gate", story.id, f"passed ({gate.duration_s:.0f}s)", style="green")
            else:
                log.warn(f"Quality gate failed for {story.id} (exit {gate.return_code})")
                notes.append(f"## Quality gate failed (exit {gate.return_code})\n\n{gate.output[-MAX_FEEDBACK_CHARS:]}")

        if self.review_engine is not None:
            if workspace.isolated and self.integration_branch:
                files = git_ops.changed_files(self.integration_branch, cwd=workspace.path)
            else:
                files = git_ops.dirty_worktree_entries(cwd=workspace.path)
            review = run_review(
                self.review_engine,
                story,
                workspace.path,
                diff_summary="\n".join(files),
                timeout=self.review_timeout,
            )
            self.state_dir.mkdir(parents=True, exist_ok=True)
            write_text(self.state_dir / "last-review.md", f"# Review: {story.id}\n\n{review.text}\n")
            if review.approved:
                log.story("review", story.id, "PASS", style="green")
            else:
                log.warn(f"Review for {story.id}: {review.verdict}")
                notes.append(f"## Review: {review.verdict}\n\n{review.text[-MAX_FEEDBACK_CHARS:]}")

        if notes:
            path = self._feedback_path(story.id)
            path.parent.mkdir(parents=True, exist_ok=True)
            write_text(path, "\n\n".join(notes) + "\n")
        return gate, review
