"""Workspace provisioner: one isolated git worktree per in-flight story."""

from __future__ import annotations

import re
import shutil
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

from ralph_moss import git_ops, log
from ralph_moss.config import STORY_BRANCH_PREFIX
from ralph_moss.errors import WorkspaceError
from ralph_moss.io_utils import write_text


def slugify(text: str, max_len: int = 50) -> str:
    """Convert text to a branch/path-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len] or "story"


def story_branch(story_id: str) -> str:
    return f"{STORY_BRANCH_PREFIX}{slugify(story_id)}"


@dataclass(frozen=True)
class Workspace:
    """A checkout bound to exactly one in-flight story."""

    story_id: str
    path: Path
    branch: str
    isolated: bool = True


class WorkspaceProvisioner:
    """Create and tear down workspaces.

    With isolation enabled each story gets its own worktree under
    *base_dir* on its own branch, forked from the integration branch. With
    isolation disabled every story shares *repo_dir*; the caller must then
    run one story at a time.
    """

    def __init__(
        self,
        repo_dir: Path,
        integration_branch: str,
        *,
        isolated: bool = True,
        base_dir: Path | None = None,
    ) -> None:
        self.repo_dir = repo_dir
        self.integration_branch = integration_branch
        self.isolated = isolated
        self._owns_base_dir = base_dir is None
        self._base_dir = base_dir
        self._lock = threading.Lock()
        self._active: dict[str, Workspace] = {}  # branch -> workspace

    @property
    def base_dir(self) -> Path:
        if self._base_dir is None:
            self._base_dir = Path(tempfile.mkdtemp(prefix="ralph-moss-"))
        return self._base_dir

    def active(self) -> list[Workspace]:
        with self._lock:
            return list(self._active.values())

    # ── acquire ──────────────────────────────────────────────────

    def acquire(self, story_id: str, branch_name: str | None = None) -> Workspace:
        """Return a workspace for *story_id*. Raises :class:`WorkspaceError`."""
        branch = branch_name or story_branch(story_id)

        if not self.isolated:
            ws = Workspace(story_id, self.repo_dir, self.integration_branch, isolated=False)
            with self._lock:
                if self._active:
                    holder = next(iter(self._active.values())).story_id
                    raise WorkspaceError(story_id, f"shared workspace is in use by {holder}")
                self._active[ws.branch] = ws
            return ws

        with self._lock:
            if branch in self._active:
                holder = self._active[branch].story_id
                raise WorkspaceError(story_id, f"branch {branch} is already claimed by {holder}")
            # Claim before touching git so a concurrent acquire cannot race us.
            placeholder = Workspace(story_id, self.base_dir / slugify(story_id), branch)
            self._active[branch] = placeholder

        try:
            self._create_worktree(placeholder)
        except WorkspaceError:
            with self._lock:
                self._active.pop(branch, None)
            raise

        log.debug(f"Workspace for {story_id}: {placeholder.path} [{branch}]")
        return placeholder

    def _create_worktree(self, ws: Workspace) -> None:
        repo = self.repo_dir
        git_ops.worktree_prune(cwd=repo)

        # Never trust leftovers from an earlier attempt.
        stale = git_ops.worktree_paths(cwd=repo).get(ws.branch)
        if stale is not None:
            log.debug(f"Removing stale worktree for {ws.branch} at {stale}")
            git_ops.worktree_remove(stale, cwd=repo)
        if ws.path.exists():
            git_ops.worktree_remove(ws.path, cwd=repo)
            shutil.rmtree(ws.path, ignore_errors=True)
        git_ops.worktree_prune(cwd=repo)
        if git_ops.branch_exists(ws.branch, cwd=repo):
            git_ops.delete_branch(ws.branch, force=True, cwd=repo)

        r = git_ops._git("branch", ws.branch, self.integration_branch, cwd=repo)
        if r.returncode != 0:
            raise WorkspaceError(
                ws.story_id,
                f"failed to create branch {ws.branch} from {self.integration_branch}: {r.stderr.strip()}",
            )

        ws.path.parent.mkdir(parents=True, exist_ok=True)
        r = git_ops.worktree_add(ws.path, ws.branch, cwd=repo)
        if r.returncode != 0:
            git_ops.delete_branch(ws.branch, force=True, cwd=repo)
            raise WorkspaceError(ws.story_id, f"failed to create worktree at {ws.path}: {r.stderr.strip()}")

    # ── release ──────────────────────────────────────────────────

    def release(self, ws: Workspace, keep: bool = False, *, delete_branch: bool = False) -> None:
        """Drop *ws* from the active set; remove it from disk unless *keep*."""
        with self._lock:
            self._active.pop(ws.branch, None)

        if not ws.isolated:
            return

        if keep:
            log.debug(f"Keeping workspace for {ws.story_id} at {ws.path}")
            return

        if ws.path.exists() and git_ops.has_dirty_worktree(cwd=ws.path):
            log.debug(f"Workspace dirty, forcing cleanup: {ws.path}")
        if not git_ops.worktree_remove(ws.path, cwd=self.repo_dir):
            shutil.rmtree(ws.path, ignore_errors=True)
            git_ops.worktree_prune(cwd=self.repo_dir)
        if delete_branch:
            git_ops.delete_branch(ws.branch, force=True, cwd=self.repo_dir)

    def release_all(self, keep: bool = False) -> None:
        for ws in self.active():
            self.release(ws, keep=keep)

    def close(self) -> None:
        """Remove the temporary base directory when we created it."""
        if self._owns_base_dir and self._base_dir is not None and self._base_dir.exists():
            if not any(self._base_dir.iterdir()):
                shutil.rmtree(self._base_dir, ignore_errors=True)


def prune_stale(repo_dir: Path) -> list[str]:
    """Delete leftover story branches that no worktree has checked out.

    Branches still checked out (kept workspaces) are left for
    :meth:`WorkspaceProvisioner.acquire` to recycle. Returns deleted names.
    """
    git_ops.worktree_prune(cwd=repo_dir)
    checked_out = git_ops.worktree_paths(cwd=repo_dir)
    removed: list[str] = []
    for branch in git_ops.list_branches(f"{STORY_BRANCH_PREFIX}*", cwd=repo_dir):
        if branch in checked_out:
            continue
        if git_ops.delete_branch(branch, force=True, cwd=repo_dir):
            log.debug(f"Cleaned up stale branch: {branch}")
            removed.append(branch)
    return removed


def prepare_repo(repo_dir: Path, store_path: Path, state_dir: Path, *, isolated: bool = True) -> None:
    """Get the integration checkout ready for a run.

    Worktrees only see committed files, so an untracked or modified store
    is committed first. The state directory ignores itself.
    """
    state_dir.mkdir(parents=True, exist_ok=True)
    ignore = state_dir / ".gitignore"
    if not ignore.exists():
        write_text(ignore, "*\n")

    git_ops.ensure_clean_git_state(cwd=repo_dir)
    if not isolated:
        return

    for branch in prune_stale(repo_dir):
        log.debug(f"Pruned {branch}")

    rel = store_path.relative_to(repo_dir)
    if not git_ops.is_tracked(rel, cwd=repo_dir):
        log.info(f"Committing {rel} so workspaces can see it")
        git_ops.commit_paths(f"chore: track {rel.as_posix()}", [rel], cwd=repo_dir)
    elif git_ops.path_is_dirty(rel, cwd=repo_dir):
        log.info(f"Committing local changes to {rel}")
        git_ops.commit_paths(f"chore: update {rel.as_posix()}", [rel], cwd=repo_dir)

    if git_ops.has_dirty_worktree(cwd=repo_dir):
        log.warn("Integration checkout has uncommitted changes; merges touching them will fail")
