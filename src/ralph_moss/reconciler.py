"""Result reconciler: merge workspace branches into the integration branch.

Conflicts are settled by an ordered table of ``(pattern, Resolution)``
rules, first match wins. Files no rule claims for a side are escalated to
an optional resolver (usually the AI agent) and fall back to the incoming
version when that fails.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Callable

from ralph_moss import git_ops, log
from ralph_moss.config import COSTS_FILE, PROGRESS_FILE
from ralph_moss.engines.base import EngineBase
from ralph_moss.io_utils import read_text, write_text
from ralph_moss.prompts import build_conflict_prompt


class Resolution(str, Enum):
    TAKE_INCOMING = "theirs"
    TAKE_EXISTING = "ours"
    ESCALATE = "escalate"


class MergeOutcome(str, Enum):
    MERGED = "merged"
    CONFLICT_RESOLVED = "conflict_resolved"
    FAILED = "failed"


LOCKFILE_PATTERNS: tuple[str, ...] = (
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "uv.lock",
    "Pipfile.lock",
    "Cargo.lock",
    "go.sum",
)


def default_rules(store_rel: str = "prd.json") -> list[tuple[str, Resolution]]:
    """Build the rule table. *store_rel* is the task store path inside the repo."""
    rules: list[tuple[str, Resolution]] = [
        (store_rel, Resolution.TAKE_INCOMING),
        ("prd.json", Resolution.TAKE_INCOMING),
        (PROGRESS_FILE, Resolution.TAKE_INCOMING),
        (COSTS_FILE, Resolution.TAKE_INCOMING),
    ]
    rules += [(pattern, Resolution.TAKE_EXISTING) for pattern in LOCKFILE_PATTERNS]
    rules.append(("*", Resolution.ESCALATE))
    return rules


DEFAULT_RULES = default_rules()


def resolution_for(path: str, rules: list[tuple[str, Resolution]]) -> Resolution:
    """First matching rule wins. Patterns match the full path or the file name."""
    posix = PurePosixPath(path)
    for pattern, resolution in rules:
        if fnmatch(posix.as_posix(), pattern) or fnmatch(posix.name, pattern):
            return resolution
    return Resolution.ESCALATE


ConflictResolver = Callable[[str, Path], bool]


class EngineConflictResolver:
    """Ask the agent for a merged version of one conflicted file."""

    def __init__(self, engine: EngineBase, timeout: float | None = 600) -> None:
        self.engine = engine
        self.timeout = timeout

    def __call__(self, path: str, cwd: Path) -> bool:
        target = cwd / path
        if not target.is_file():
            return False
        content = read_text(target, errors="replace")
        result = self.engine.run_sync(build_conflict_prompt(path, content), cwd=cwd, timeout=self.timeout)
        resolved = (result.text or "").strip("\n")
        if result.return_code != 0 or not resolved.strip():
            return False
        if "<<<<<<<" in resolved or ">>>>>>>" in resolved:
            return False
        write_text(target, resolved + "\n")
        return True


@dataclass
class MergeResult:
    branch: str
    outcome: MergeOutcome
    resolutions: dict[str, Resolution] = field(default_factory=dict)
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome != MergeOutcome.FAILED


class Reconciler:
    def __init__(
        self,
        repo_dir: Path,
        *,
        store_rel: str = "prd.json",
        rules: list[tuple[str, Resolution]] | None = None,
        resolver: ConflictResolver | None = None,
        manual_escalation: bool = False,
    ) -> None:
        self.repo_dir = repo_dir
        self.store_rel = store_rel
        self.rules = rules if rules is not None else default_rules(store_rel)
        self.resolver = resolver
        self.manual_escalation = manual_escalation

    def merge(self, branch: str, integration_branch: str) -> MergeResult:
        """Merge *branch* into *integration_branch* inside ``repo_dir``.

        On failure the merge is aborted and the integration branch is left
        exactly as it was.
        """
        repo = self.repo_dir
        if git_ops.current_branch(cwd=repo) != integration_branch:
            if not git_ops.checkout(integration_branch, cwd=repo):
                return MergeResult(branch, MergeOutcome.FAILED, error=f"cannot checkout {integration_branch}")

        ours_store = git_ops.show_file("HEAD", self.store_rel, cwd=repo)

        r = git_ops.merge_no_edit_result(branch, cwd=repo)
        if r.returncode == 0:
            return MergeResult(branch, MergeOutcome.MERGED)

        conflicts = git_ops.conflicted_files(cwd=repo)
        if not conflicts:
            git_ops.merge_abort(cwd=repo)
            detail = (r.stderr or r.stdout or "").strip()
            return MergeResult(branch, MergeOutcome.FAILED, error=detail.splitlines()[0] if detail else "merge failed")

        log.warn(f"Merge conflicts in {branch}: {', '.join(conflicts)}")
        resolutions: dict[str, Resolution] = {}
        for path in conflicts:
            resolution = resolution_for(path, self.rules)
            applied = self._apply(path, resolution)
            if applied is None:
                git_ops.merge_abort(cwd=repo)
                return MergeResult(
                    branch,
                    MergeOutcome.FAILED,
                    resolutions,
                    error=f"{path} requires manual resolution",
                )
            resolutions[path] = applied
            log.story(applied.value, path, style="dim")
            if path == self.store_rel and applied == Resolution.TAKE_INCOMING and ours_store:
                self._carry_forward_flags(path, ours_store)

        remaining = git_ops.conflicted_files(cwd=repo)
        if remaining:
            git_ops.merge_abort(cwd=repo)
            return MergeResult(branch, MergeOutcome.FAILED, resolutions, error=f"unresolved: {', '.join(remaining)}")

        commit = git_ops.commit_no_edit(f"Merge branch '{branch}' into {integration_branch} (auto-resolved)", cwd=repo)
        if commit.returncode != 0:
            git_ops.merge_abort(cwd=repo)
            detail = (commit.stderr or commit.stdout or "").strip()
            return MergeResult(branch, MergeOutcome.FAILED, resolutions, error=f"merge commit failed: {detail}")

        return MergeResult(branch, MergeOutcome.CONFLICT_RESOLVED, resolutions)

    def _apply(self, path: str, resolution: Resolution) -> Resolution | None:
        repo = self.repo_dir
        if resolution == Resolution.TAKE_EXISTING:
            return resolution if git_ops.checkout_side(path, "ours", cwd=repo) else None
        if resolution == Resolution.TAKE_INCOMING:
            return resolution if git_ops.checkout_side(path, "theirs", cwd=repo) else None

        if self.manual_escalation:
            return None
        if self.resolver is not None:
            try:
                if self.resolver(path, repo) and git_ops.stage(path, cwd=repo):
                    return Resolution.ESCALATE
            except OSError as e:
                log.debug(f"Conflict resolver failed for {path}: {e}")
            log.warn(f"AI resolution failed for {path}, falling back to incoming version")
        return Resolution.TAKE_INCOMING if git_ops.checkout_side(path, "theirs", cwd=repo) else None

    def _carry_forward_flags(self, path: str, ours_text: str) -> None:
        """Keep ``passes`` and ``blocked`` flags already set on the integration side.

        The incoming store is taken whole, but it was forked before sibling
        stories of the same round merged; ``passes`` never goes back to false.
        """
        target = self.repo_dir / path
        try:
            ours = json.loads(ours_text)
            theirs = json.loads(read_text(target))
        except (json.JSONDecodeError, OSError):
            return
        if not isinstance(ours, dict) or not isinstance(theirs, dict):
            return

        ours_stories = [s for s in ours.get("userStories", []) if isinstance(s, dict)]
        passed = {s.get("id") for s in ours_stories if s.get("passes") is True}
        blocked = {s.get("id") for s in ours_stories if s.get("blocked") is True}
        changed = False
        for story in theirs.get("userStories", []):
            if not isinstance(story, dict):
                continue
            sid = story.get("id")
            if sid in passed and story.get("passes") is not True:
                story["passes"] = True
                changed = True
            elif sid in blocked and story.get("passes") is not True and story.get("blocked") is not True:
                story["blocked"] = True
                changed = True
        if changed:
            write_text(target, json.dumps(theirs, indent=2, ensure_ascii=False) + "\n")
            git_ops.stage(path, cwd=self.repo_dir)


def merge_branches(
    reconciler: Reconciler,
    branches: list[str],
    target: str,
    *,
    dry_run: bool = False,
) -> list[MergeResult]:
    """Merge *branches* into *target* one at a time, in the given order."""
    results: list[MergeResult] = []
    for branch in branches:
        if dry_run:
            commits = git_ops.log_oneline(target, branch, cwd=reconciler.repo_dir)
            log.console.print(f"[cyan]\\[WOULD MERGE][/cyan] {branch}")
            if commits:
                for line in commits:
                    log.console.print(f"      {line}")
            else:
                log.console.print("[dim]      No new commits[/dim]")
            continue

        log.console.print(f"[cyan]\\[MERGING][/cyan] {branch}")
        result = reconciler.merge(branch, target)
        if result.ok:
            log.success(f"{branch}: {result.outcome.value}")
        else:
            log.error(f"{branch}: {result.error}")
        results.append(result)
    return results
