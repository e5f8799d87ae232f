"""Git operations: branches, worktrees, merges, conflict sides, PRs."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from ralph_moss import log


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=cwd,
        check=check,
    )


def is_git_repo(cwd: Path | None = None) -> bool:
    r = _git("rev-parse", "--is-inside-work-tree", cwd=cwd)
    return r.returncode == 0 and r.stdout.strip() == "true"


def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else "main"


def branch_exists(name: str, cwd: Path | None = None) -> bool:
    r = _git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.returncode == 0


def checkout(branch: str, cwd: Path | None = None) -> bool:
    r = _git("checkout", branch, cwd=cwd)
    return r.returncode == 0


def create_branch(name: str, base: str, cwd: Path | None = None) -> bool:
    r = _git("checkout", "-b", name, base, cwd=cwd)
    return r.returncode == 0


def push(branch: str, cwd: Path | None = None) -> bool:
    r = _git("push", "-u", "origin", branch, cwd=cwd)
    return r.returncode == 0


def delete_branch(name: str, force: bool = False, cwd: Path | None = None) -> bool:
    flag = "-D" if force else "-d"
    r = _git("branch", flag, name, cwd=cwd)
    return r.returncode == 0


def list_branches(pattern: str, cwd: Path | None = None) -> list[str]:
    """Local branches matching *pattern* (e.g. ``ralph-moss/*``)."""
    r = _git("branch", "--list", pattern, "--format=%(refname:short)", cwd=cwd)
    if r.returncode != 0:
        return []
    return [line.strip() for line in r.stdout.splitlines() if line.strip()]


def is_tracked(path: Path, cwd: Path | None = None) -> bool:
    r = _git("ls-files", "--error-unmatch", str(path), cwd=cwd)
    return r.returncode == 0


# ── Commits and status ───────────────────────────────────────────────

def has_dirty_worktree(cwd: Path | None = None) -> bool:
    r = _git("status", "--porcelain", cwd=cwd)
    return bool(r.stdout.strip())


def path_is_dirty(path: Path, cwd: Path | None = None) -> bool:
    r = _git("status", "--porcelain", "--", str(path), cwd=cwd)
    return bool(r.stdout.strip())


def dirty_worktree_entries(cwd: Path | None = None) -> list[str]:
    """Return concise dirty entries from ``git status --porcelain``."""
    r = _git("status", "--porcelain", cwd=cwd)
    if r.returncode != 0:
        return []
    return [line.strip() for line in r.stdout.splitlines() if line.strip()]


def add_and_commit(message: str, cwd: Path | None = None) -> bool:
    _git("add", "-A", cwd=cwd)
    r = _git("commit", "-m", message, cwd=cwd)
    return r.returncode == 0


def commit_paths(message: str, paths: list[Path], cwd: Path | None = None) -> bool:
    """Stage and commit only *paths*."""
    _git("add", "--", *[str(p) for p in paths], cwd=cwd)
    r = _git("commit", "-m", message, "--", *[str(p) for p in paths], cwd=cwd)
    return r.returncode == 0


def commit_count(base: str, cwd: Path | None = None) -> int:
    r = _git("rev-list", "--count", f"{base}..HEAD", cwd=cwd)
    if r.returncode != 0:
        return 0
    try:
        return int(r.stdout.strip())
    except ValueError:
        return 0


def changed_files(base: str, cwd: Path | None = None) -> list[str]:
    r = _git("diff", "--name-only", f"{base}...HEAD", cwd=cwd)
    if r.returncode != 0:
        return []
    return [f.strip() for f in r.stdout.splitlines() if f.strip()]


def log_oneline(base: str, head: str, cwd: Path | None = None) -> list[str]:
    r = _git("log", "--oneline", f"{base}..{head}", cwd=cwd)
    if r.returncode != 0:
        return []
    return [line for line in r.stdout.splitlines() if line.strip()]


def rev_parse(ref: str, cwd: Path | None = None) -> str:
    """Return the commit sha *ref* points at, or ``""``."""
    r = _git("rev-parse", "--verify", "-q", f"{ref}^{{commit}}", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def show_file(ref: str, rel_path: str, cwd: Path | None = None) -> str | None:
    """Return the content of *rel_path* at *ref*, or ``None`` if absent."""
    r = _git("show", f"{ref}:{rel_path}", cwd=cwd)
    return r.stdout if r.returncode == 0 else None


# ── Merging ──────────────────────────────────────────────────────────

def merge_no_edit_result(branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Run ``git merge --no-edit`` and return the raw result for inspection."""
    return _git("merge", "--no-edit", branch, cwd=cwd)


def merge_abort(cwd: Path | None = None) -> None:
    _git("merge", "--abort", cwd=cwd)


def reset_hard(ref: str, cwd: Path | None = None) -> bool:
    return _git("reset", "-q", "--hard", ref, cwd=cwd).returncode == 0


def merge_in_progress(cwd: Path | None = None) -> bool:
    r = _git("rev-parse", "-q", "--verify", "MERGE_HEAD", cwd=cwd)
    return r.returncode == 0


def conflicted_files(cwd: Path | None = None) -> list[str]:
    r = _git("diff", "--name-only", "--diff-filter=U", cwd=cwd)
    if r.returncode != 0:
        return []
    return [f.strip() for f in r.stdout.splitlines() if f.strip()]


def checkout_side(path: str, side: str, cwd: Path | None = None) -> bool:
    """Resolve a conflicted *path* with ``--ours`` or ``--theirs`` and stage it.

    A side that deleted the file resolves by removing it.
    """
    if side not in ("ours", "theirs"):
        raise ValueError(f"Unknown merge side: {side}")
    r = _git("checkout", f"--{side}", "--", path, cwd=cwd)
    if r.returncode != 0:
        r = _git("rm", "-f", "--", path, cwd=cwd)
        return r.returncode == 0
    r = _git("add", "--", path, cwd=cwd)
    return r.returncode == 0


def stage(path: str, cwd: Path | None = None) -> bool:
    r = _git("add", "--", path, cwd=cwd)
    return r.returncode == 0


def commit_no_edit(message: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("commit", "--no-edit", "-m", message, cwd=cwd)


# ── Worktree management ─────────────────────────────────────────────

def worktree_prune(cwd: Path | None = None) -> None:
    _git("worktree", "prune", cwd=cwd)


def worktree_add(worktree_dir: Path, branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("worktree", "add", "--force", str(worktree_dir), branch, cwd=cwd)


def worktree_remove(worktree_dir: Path, cwd: Path | None = None) -> bool:
    r = _git("worktree", "remove", "--force", str(worktree_dir), cwd=cwd)
    return r.returncode == 0


def worktree_paths(cwd: Path | None = None) -> dict[str, Path]:
    """Map checked-out branch name -> worktree path."""
    r = _git("worktree", "list", "--porcelain", cwd=cwd)
    if r.returncode != 0:
        return {}
    out: dict[str, Path] = {}
    current: Path | None = None
    for line in r.stdout.splitlines():
        if line.startswith("worktree "):
            current = Path(line.split(" ", 1)[1])
        elif line.startswith("branch ") and current is not None:
            ref = line.split(" ", 1)[1]
            out[ref.removeprefix("refs/heads/")] = current
    return out


# ── Clean git state ──────────────────────────────────────────────────

def ensure_clean_git_state(cwd: Path | None = None) -> None:
    """Abort any interrupted merge/rebase/cherry-pick."""
    git_dir_r = _git("rev-parse", "--git-dir", cwd=cwd)
    if git_dir_r.returncode != 0:
        return
    git_dir = Path(git_dir_r.stdout.strip())
    if not git_dir.is_absolute():
        git_dir = (cwd or Path.cwd()) / git_dir

    if (git_dir / "MERGE_HEAD").exists():
        log.warn("Detected interrupted git merge. Aborting…")
        merge_abort(cwd=cwd)
    if (git_dir / "REBASE_HEAD").exists():
        log.warn("Detected interrupted git rebase. Aborting…")
        _git("rebase", "--abort", cwd=cwd)
    if (git_dir / "CHERRY_PICK_HEAD").exists():
        log.warn("Detected interrupted git cherry-pick. Aborting…")
        _git("cherry-pick", "--abort", cwd=cwd)


# ── Integration branch ───────────────────────────────────────────────

def ensure_run_branch(branch_name: str, base_branch: str = "", cwd: Path | None = None) -> str:
    """Switch to (or create) *branch_name*. Returns the effective integration branch."""
    base = base_branch or current_branch(cwd=cwd)
    if not branch_name:
        return base

    if current_branch(cwd=cwd) == branch_name:
        return branch_name

    if branch_exists(branch_name, cwd=cwd):
        log.info(f"Switching to integration branch: {branch_name}")
        if not checkout(branch_name, cwd=cwd):
            raise RuntimeError(f"Failed to checkout integration branch: {branch_name}")
    else:
        log.info(f"Creating integration branch: {branch_name} from {base}")
        if not create_branch(branch_name, base, cwd=cwd):
            raise RuntimeError(f"Failed to create integration branch: {branch_name}")

    return branch_name


# ── PR creation ──────────────────────────────────────────────────────

def create_pull_request(
    branch: str,
    base: str,
    title: str,
    body: str,
    draft: bool = False,
    cwd: Path | None = None,
) -> str | None:
    """Push *branch* and open a GitHub PR with the ``gh`` CLI. Returns the URL or None."""
    if not shutil.which("gh"):
        log.warn("gh CLI not found — cannot create PR")
        return None

    auth = subprocess.run(["gh", "auth", "status"], capture_output=True, text=True, cwd=cwd)
    if auth.returncode != 0:
        log.warn("gh CLI not authenticated. Run 'gh auth login' first.")
        return None

    if not push(branch, cwd=cwd):
        log.warn(f"Failed to push {branch} to origin")

    existing = subprocess.run(
        ["gh", "pr", "view", branch, "--json", "url", "-q", ".url"],
        capture_output=True,
        text=True,
        cwd=cwd,
    )
    if existing.returncode == 0 and existing.stdout.strip():
        url = existing.stdout.strip()
        log.info(f"PR already exists: {url}")
        return url

    cmd = ["gh", "pr", "create", "--base", base, "--head", branch, "--title", title, "--body", body]
    if draft:
        cmd.append("--draft")

    r = subprocess.run(cmd, capture_output=True, text=True, cwd=cwd)
    if r.returncode != 0:
        log.warn(f"Failed to create PR for {branch}: {r.stderr.strip()}")
        return None

    url = r.stdout.strip().splitlines()[-1] if r.stdout.strip() else ""
    log.success(f"PR created: {url}")
    return url or None
