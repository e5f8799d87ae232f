"""Batch scheduler: round-based dispatch of ready stories.

Each round re-reads the task store, runs up to ``max_parallel`` ready
stories concurrently in their own workspaces, waits for all of them, then
merges the finished ones into the integration branch one at a time in
dispatch order.
"""

from __future__ import annotations

import signal
import subprocess
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ralph_moss import git_ops, log
from ralph_moss.budget import BudgetGuard
from ralph_moss.errors import (
    IntegrationFailure,
    MossError,
    StuckCondition,
    ValidationError,
    WorkerFailure,
    WorkspaceError,
    looks_like_external_failure,
)
from ralph_moss.hooks import HookRunner
from ralph_moss.reconciler import Reconciler
from ralph_moss.report import RunReport, TerminalReason
from ralph_moss.resolver import explain_block, ready
from ralph_moss.retries import RetryTracker
from ralph_moss.tasks.io import load_store, mark_blocked, story_passes
from ralph_moss.tasks.model import Story, TaskStore
from ralph_moss.worker import Worker, WorkerOutcome, WorkerResult
from ralph_moss.workspace import Workspace, WorkspaceProvisioner


class RunState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    DISPATCHING = "dispatching"
    AWAITING_BATCH = "awaiting_batch"
    RECONCILING = "reconciling"
    DONE = "done"
    STUCK = "stuck"
    BUDGET_EXCEEDED = "budget_exceeded"
    INTERRUPTED = "interrupted"


_TERMINAL_STATE = {
    TerminalReason.DONE: RunState.DONE,
    TerminalReason.STUCK: RunState.STUCK,
    TerminalReason.BUDGET_EXCEEDED: RunState.BUDGET_EXCEEDED,
    TerminalReason.INTERRUPTED: RunState.INTERRUPTED,
}


@dataclass
class BatchMember:
    """One (story, workspace, worker result) triple in a round."""

    story: Story
    workspace: Workspace | None = None
    result: WorkerResult | None = None
    error: str = ""


class BatchScheduler:
    """Drive a run from the first round to a terminal state."""

    def __init__(
        self,
        store_path: Path,
        provisioner: WorkspaceProvisioner,
        worker: Worker,
        reconciler: Reconciler,
        guard: BudgetGuard,
        retries: RetryTracker,
        *,
        max_parallel: int = 3,
        keep_workspaces: bool = False,
        hooks: HookRunner | None = None,
        report_path: Path | None = None,
    ) -> None:
        self.store_path = store_path
        self.provisioner = provisioner
        self.worker = worker
        self.reconciler = reconciler
        self.guard = guard
        self.retries = retries
        self.hooks = hooks
        self.report_path = report_path
        self.keep_workspaces = keep_workspaces
        # A shared checkout can host only one agent.
        self.max_parallel = max(max_parallel, 1) if provisioner.isolated else 1

        self.repo_dir = provisioner.repo_dir
        self.integration_branch = provisioner.integration_branch
        self.store_rel = store_path.relative_to(self.repo_dir)

        self.state = RunState.IDLE
        self.batches: list[list[str]] = []
        self.failed_to_integrate: set[str] = set()
        self.notes: dict[str, str] = {}
        self._last_store: TaskStore | None = None
        self._stop_requested = False
        self._interrupt_count = 0
        self._orig_signal_handlers: dict[int, object] = {}

    # ── public ───────────────────────────────────────────────────

    def run(self) -> RunReport:
        """Run rounds until Done, Stuck, BudgetExceeded or Interrupted."""
        self._install_signal_handlers()
        pool = ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="ralph-moss")
        try:
            try:
                return self._main_loop(pool)
            except KeyboardInterrupt:
                self.request_stop()
                return self._finish(TerminalReason.INTERRUPTED, "Interrupted by operator")
        finally:
            pool.shutdown(wait=True)
            self._restore_signal_handlers()
            self.provisioner.release_all(keep=self.keep_workspaces)
            self.provisioner.close()

    def request_stop(self) -> None:
        """Stop after killing every in-flight agent; nothing more is merged."""
        self._stop_requested = True
        killed = self.worker.engine.terminate_all()
        if self.hooks is not None and self.hooks.review_engine is not None:
            killed += self.hooks.review_engine.terminate_all()
        if killed:
            log.warn(f"Terminated {killed} running agent process(es)")

    # ── main loop ────────────────────────────────────────────────

    def _main_loop(self, pool: ThreadPoolExecutor) -> RunReport:
        while True:
            if self._stop_requested:
                return self._finish(TerminalReason.INTERRUPTED, "Interrupted by operator")

            self.state = RunState.RESOLVING
            store = load_store(self.store_path)
            self._last_store = store
            ready_ids = ready(store)

            if not ready_ids:
                remaining = store.remaining_ids()
                if not remaining:
                    blocked = store.blocked_ids()
                    detail = "All stories complete"
                    if blocked:
                        detail += f" ({len(blocked)} blocked: {', '.join(blocked)})"
                    return self._finish(TerminalReason.DONE, detail)
                return self._stuck(store, remaining)

            batch_ids = ready_ids[: self.max_parallel]
            round_no = self.guard.start_round()
            self.batches.append(list(batch_ids))
            log.rule(f"Round {round_no}")
            log.info(
                f"Ready: {len(ready_ids)}  Dispatching: {', '.join(batch_ids)}  "
                f"Remaining: {len(store.remaining_ids())}"
            )

            self.state = RunState.DISPATCHING
            members = self._dispatch(store, batch_ids, pool)

            if self._stop_requested:
                self._abandon(members)
                return self._finish(TerminalReason.INTERRUPTED, "Interrupted by operator")

            self.state = RunState.RECONCILING
            for member in members:
                self._reconcile(member)

            if self.guard.near_limit():
                log.warn(
                    f"{self.guard.total_cost / self.guard.max_cost:.0%} of budget used "
                    f"(${self.guard.max_cost:.2f} limit)"
                )
            reason = self.guard.exceeded()
            if reason and not load_store(self.store_path).is_complete():
                log.warn(reason)
                return self._finish(TerminalReason.BUDGET_EXCEEDED, reason)

    def _dispatch(self, store: TaskStore, batch_ids: list[str], pool: ThreadPoolExecutor) -> list[BatchMember]:
        """Acquire workspaces, start workers and wait for every one of them."""
        members: list[BatchMember] = []
        futures = {}
        for sid in batch_ids:
            story = store.get_story(sid)
            member = BatchMember(story)
            members.append(member)
            if self._stop_requested:
                member.error = "not started (interrupted)"
                continue
            try:
                member.workspace = self.provisioner.acquire(sid)
            except WorkspaceError as e:
                log.error(f"Workspace for {sid} failed: {e}")
                member.error = str(e)
                continue
            log.story("▶", sid, f"{story.title} ({member.workspace.branch})")
            futures[pool.submit(self._execute, member)] = member

        self.state = RunState.AWAITING_BATCH
        if futures:
            wait(futures)
        for future, member in futures.items():
            member.result = future.result()
        return members

    def _execute(self, member: BatchMember) -> WorkerResult:
        """Runs on a pool thread: the agent, then the advisory hooks."""
        story, ws = member.story, member.workspace
        feedback = self.hooks.feedback_for(story.id) if self.hooks is not None else ""
        try:
            result = self.worker.run(story, ws, feedback)
        except (OSError, subprocess.SubprocessError, MossError) as e:
            result = WorkerResult(story.id, WorkerOutcome.INFRA_FAILURE, error=str(e), return_code=-1)

        if self.hooks is not None and self.hooks.enabled and not result.failed and not self._stop_requested:
            try:
                self.hooks.after_worker(story, ws)
            except (OSError, subprocess.SubprocessError) as e:
                log.warn(f"Hooks for {story.id} failed: {e}")
        return result

    # ── reconcile ────────────────────────────────────────────────

    def _reconcile(self, member: BatchMember) -> None:
        story, ws, result = member.story, member.workspace, member.result
        sid = story.id

        if ws is None:
            self._record_failure(sid, member.error or "workspace unavailable")
            return

        self.guard.record(result)
        # A crashed or killed agent may leave a half-done branch behind; never merge it.
        finished = result is not None and not result.failed
        passes = finished and story_passes(ws.path / self.store_rel, sid)

        if not ws.isolated:
            self.provisioner.release(ws)
            if passes:
                if git_ops.has_dirty_worktree(cwd=self.repo_dir):
                    git_ops.add_and_commit(f"feat: {sid} - {story.title}", cwd=self.repo_dir)
                self._record_success(sid, "completed")
            else:
                self._record_worker_failure(sid, result)
            return

        if not passes:
            self.provisioner.release(ws, keep=self.keep_workspaces, delete_branch=not self.keep_workspaces)
            self._record_worker_failure(sid, result)
            return

        before = git_ops.rev_parse(self.integration_branch, cwd=self.repo_dir)
        merge = self.reconciler.merge(ws.branch, self.integration_branch)
        integrated = merge.ok and story_passes(self.store_path, sid)
        if merge.ok and not integrated and before:
            log.warn(f"Rolling back merge of {ws.branch}: {sid} is not marked passing after it")
            if not git_ops.reset_hard(before, cwd=self.repo_dir):
                log.error(f"Could not reset {self.integration_branch} to {before[:12]}")
        self.provisioner.release(
            ws,
            keep=self.keep_workspaces,
            delete_branch=integrated and not self.keep_workspaces,
        )
        if integrated:
            self._record_success(sid, merge.outcome.value.replace("_", " "))
            return

        failure = IntegrationFailure(ws.branch, merge.error or "store does not show passes=true after merge")
        log.error(f"Failed to integrate {sid}: {failure}")
        self.failed_to_integrate.add(sid)
        self._record_failure(sid, str(failure))

    def _record_success(self, sid: str, how: str) -> None:
        log.success(f"{sid} integrated ({how})")
        self.failed_to_integrate.discard(sid)
        self.notes.pop(sid, None)
        self.retries.reset(sid)
        if self.hooks is not None:
            self.hooks.clear_feedback(sid)

    def _record_worker_failure(self, sid: str, result: WorkerResult | None) -> None:
        failure = WorkerFailure(self._describe(result))
        if result is not None and result.failed and looks_like_external_failure(result.error):
            log.warn(f"{sid}: failure looks external (rate limit, network or missing tool)")
        self._record_failure(sid, str(failure))

    def _record_failure(self, sid: str, note: str) -> None:
        self.notes[sid] = note
        attempts = self.retries.record_failure(sid)
        if not self.retries.exhausted(sid):
            limit = f"/{self.retries.max_retries}" if self.retries.max_retries else ""
            log.warn(f"{sid} attempt {attempts}{limit} did not complete: {note}")
            return
        log.error(f"{sid} failed {attempts} times, marking it blocked")
        if mark_blocked(self.store_path, sid):
            ok = git_ops.commit_paths(
                f"chore: block {sid} after {attempts} failed attempts",
                [self.store_rel],
                cwd=self.repo_dir,
            )
            if not ok:
                log.warn(f"Could not commit blocked flag for {sid}")

    @staticmethod
    def _describe(result: WorkerResult | None) -> str:
        if result is None:
            return "no result"
        match result.outcome:
            case WorkerOutcome.TIMEOUT:
                return result.error or "timed out"
            case WorkerOutcome.INFRA_FAILURE:
                return f"agent failed to run: {result.error or f'exit {result.return_code}'}"
            case WorkerOutcome.COMPLETE:
                return "completion marker seen but passes is still false"
            case _:
                return "passes still false after agent run"

    # ── terminal states ──────────────────────────────────────────

    def _stuck(self, store: TaskStore, remaining: list[str]) -> RunReport:
        reasons = {sid: explain_block(store, sid) for sid in remaining}
        condition = StuckCondition(remaining, reasons)
        log.error(str(condition))
        for sid, why in reasons.items():
            log.story("✗", sid, why, style="red")
        return self._finish(TerminalReason.STUCK, str(condition), stuck=reasons)

    def _abandon(self, members: list[BatchMember]) -> None:
        """Release every workspace of an interrupted round without merging."""
        for member in members:
            if member.workspace is not None:
                self.provisioner.release(member.workspace, keep=self.keep_workspaces)
                self.failed_to_integrate.add(member.story.id)
                self.notes[member.story.id] = "interrupted before integration"

    def _finish(self, reason: TerminalReason, detail: str, stuck: dict[str, str] | None = None) -> RunReport:
        self.state = _TERMINAL_STATE[reason]
        try:
            store = load_store(self.store_path)
        except ValidationError:
            store = self._last_store
        attempts = {s.id: self.retries.attempts(s.id) for s in store.stories} if store else {}
        report = RunReport.from_store(
            store,
            reason,
            detail,
            failed_to_integrate=self.failed_to_integrate,
            attempts=attempts,
            notes=self.notes,
            stuck=stuck,
            totals=self.guard.totals(),
        )
        if self.report_path is not None:
            report.save(self.report_path)
        return report

    # ── signals ──────────────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        self._orig_signal_handlers = {}
        signals_to_handle = [signal.SIGINT]
        if hasattr(signal, "SIGBREAK"):
            signals_to_handle.append(signal.SIGBREAK)
        if hasattr(signal, "SIGTERM"):
            signals_to_handle.append(signal.SIGTERM)

        for sig in signals_to_handle:
            try:
                self._orig_signal_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except (OSError, RuntimeError, ValueError):
                continue

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._orig_signal_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, RuntimeError, ValueError):
                continue
        self._orig_signal_handlers = {}

    def _on_signal(self, signum: int, _frame: object) -> None:
        self._interrupt_count += 1
        if self._interrupt_count == 1:
            log.warn(f"Interrupt received (signal {signum}). Stopping agents...")
        else:
            log.warn(f"Interrupt received again (signal {signum}). Forcing stop...")
        self.request_stop()
