"""Worker: one agent invocation for one story in one workspace."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ralph_moss import git_ops, log
from ralph_moss.config import COMPLETION_MARKER
from ralph_moss.engines.base import EngineBase, EngineResult
from ralph_moss.prompts import build_story_prompt
from ralph_moss.tasks.io import story_passes
from ralph_moss.tasks.model import Story
from ralph_moss.workspace import Workspace


class WorkerOutcome(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    INFRA_FAILURE = "infra_failure"
    TIMEOUT = "timeout"


@dataclass
class WorkerResult:
    story_id: str
    outcome: WorkerOutcome
    changed: bool = False
    output: str = ""
    error: str = ""
    return_code: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0
    store_passes: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == WorkerOutcome.COMPLETE

    @property
    def failed(self) -> bool:
        """Crashed, timed out, or never meaningfully ran."""
        return self.outcome in (WorkerOutcome.INFRA_FAILURE, WorkerOutcome.TIMEOUT)


def classify(
    result: EngineResult,
    *,
    marker_seen: bool,
    store_passes: bool,
    min_output_chars: int,
) -> WorkerOutcome:
    """Map an engine result to a :class:`WorkerOutcome`.

    The exit code is advisory: a nonzero exit with substantial output is
    judged by the marker and the store like any other run.
    """
    if result.timed_out:
        return WorkerOutcome.TIMEOUT
    if marker_seen or store_passes:
        return WorkerOutcome.COMPLETE
    output = (result.raw or result.text or "").strip()
    if result.return_code != 0 and len(output) < min_output_chars:
        return WorkerOutcome.INFRA_FAILURE
    return WorkerOutcome.INCOMPLETE


class Worker:
    """Run the agent against a story and report what happened.

    The worker never flips ``passes`` itself; it only observes the
    workspace's copy of the store.
    """

    def __init__(
        self,
        engine: EngineBase,
        store_rel: Path,
        *,
        integration_branch: str,
        timeout: float | None = None,
        min_output_chars: int = 50,
        log_dir: Path | None = None,
    ) -> None:
        self.engine = engine
        self.store_rel = store_rel
        self.integration_branch = integration_branch
        self.timeout = timeout
        self.min_output_chars = min_output_chars
        self.log_dir = log_dir

    def run(self, story: Story, workspace: Workspace, feedback: str = "") -> WorkerResult:
        prompt = build_story_prompt(story, self.store_rel.as_posix(), str(workspace.path), feedback)
        log_file = self.log_dir / f"{story.id}.log" if self.log_dir else None

        result = self.engine.run_sync(
            prompt,
            cwd=workspace.path,
            log_file=log_file,
            timeout=self.timeout,
        )

        output = result.raw or result.text or ""
        marker_seen = COMPLETION_MARKER in output or COMPLETION_MARKER in (result.text or "")
        passes = story_passes(workspace.path / self.store_rel, story.id)
        outcome = classify(
            result,
            marker_seen=marker_seen,
            store_passes=passes,
            min_output_chars=self.min_output_chars,
        )

        if workspace.isolated and outcome != WorkerOutcome.TIMEOUT:
            self._commit_leftovers(story, workspace)
        changed = self._has_changes(workspace)

        if outcome == WorkerOutcome.COMPLETE and not passes:
            log.debug(f"{story.id}: completion marker seen but store copy still shows passes=false")

        return WorkerResult(
            story_id=story.id,
            outcome=outcome,
            changed=changed,
            output=output,
            error=result.error,
            return_code=result.return_code,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost=result.cost,
            duration_ms=result.duration_ms,
            store_passes=passes,
        )

    def _commit_leftovers(self, story: Story, workspace: Workspace) -> None:
        if git_ops.has_dirty_worktree(cwd=workspace.path):
            log.debug(f"{story.id}: auto-committing remaining changes")
            git_ops.add_and_commit(f"chore: {story.id} auto-commit remaining changes", cwd=workspace.path)

    def _has_changes(self, workspace: Workspace) -> bool:
        if git_ops.has_dirty_worktree(cwd=workspace.path):
            return True
        if not workspace.isolated:
            return False
        return git_ops.commit_count(self.integration_branch, cwd=workspace.path) > 0
