"""Unit tests for ralph_moss.git_ops against real temporary git repos."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from ralph_moss import git_ops


# ── helpers ──────────────────────────────────────────────────────────


def _commit_file(repo: Path, name: str, content: str, msg: str) -> None:
    (repo / name).write_text(content)
    subprocess.run(["git", "add", name], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", msg], cwd=repo, capture_output=True, check=True)


def _conflict(repo: Path, branch: str, name: str = "conflict.txt") -> None:
    """Leave *repo* on main with *branch* holding a conflicting change to *name*."""
    git_ops.create_branch(branch, "main", cwd=repo)
    _commit_file(repo, name, "branch version\n", "branch change")
    git_ops.checkout("main", cwd=repo)
    _commit_file(repo, name, "main version\n", "main change")


# ── TestBasicBranchOps ───────────────────────────────────────────────


class TestBasicBranchOps:
    def test_current_branch(self, git_repo: Path) -> None:
        assert git_ops.current_branch(cwd=git_repo) == "main"

    def test_is_git_repo(self, git_repo: Path, tmp_path: Path) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        assert git_ops.is_git_repo(cwd=git_repo)
        assert not git_ops.is_git_repo(cwd=plain)

    def test_create_branch_and_exists(self, git_repo: Path) -> None:
        assert git_ops.create_branch("feature-x", "main", cwd=git_repo)
        assert git_ops.branch_exists("feature-x", cwd=git_repo)
        assert not git_ops.branch_exists("nonexistent-branch", cwd=git_repo)

    def test_delete_branch_force(self, git_repo: Path) -> None:
        git_ops.create_branch("force-del", "main", cwd=git_repo)
        _commit_file(git_repo, "unmerged.txt", "data", "unmerged commit")
        git_ops.checkout("main", cwd=git_repo)
        # -d refuses unmerged work; -D does not
        assert not git_ops.delete_branch("force-del", cwd=git_repo)
        assert git_ops.delete_branch("force-del", force=True, cwd=git_repo)
        assert not git_ops.branch_exists("force-del", cwd=git_repo)

    def test_list_branches(self, git_repo: Path) -> None:
        for name in ("ralph-moss/story-a", "ralph-moss/story-b", "other"):
            subprocess.run(["git", "branch", name], cwd=git_repo, capture_output=True, check=True)
        assert git_ops.list_branches("ralph-moss/story-*", cwd=git_repo) == [
            "ralph-moss/story-a",
            "ralph-moss/story-b",
        ]


# ── TestEnsureRunBranch ──────────────────────────────────────────────


class TestEnsureRunBranch:
    def test_creates_new_branch(self, git_repo: Path) -> None:
        assert git_ops.ensure_run_branch("ralph-moss/feature", "main", cwd=git_repo) == "ralph-moss/feature"
        assert git_ops.current_branch(cwd=git_repo) == "ralph-moss/feature"

    def test_switches_to_existing(self, git_repo: Path) -> None:
        subprocess.run(["git", "branch", "run-existing"], cwd=git_repo, capture_output=True, check=True)
        assert git_ops.ensure_run_branch("run-existing", "main", cwd=git_repo) == "run-existing"
        assert git_ops.current_branch(cwd=git_repo) == "run-existing"

    def test_empty_name_returns_base(self, git_repo: Path) -> None:
        assert git_ops.ensure_run_branch("", cwd=git_repo) == "main"

    def test_raises_on_checkout_failure(self, git_repo: Path) -> None:
        subprocess.run(["git", "branch", "bad-branch"], cwd=git_repo, capture_output=True)
        with patch.object(git_ops, "checkout", return_value=False):
            with pytest.raises(RuntimeError, match="Failed to checkout"):
                git_ops.ensure_run_branch("bad-branch", "main", cwd=git_repo)


# ── TestWorktreeOperations ───────────────────────────────────────────


class TestWorktreeOperations:
    def test_worktree_add_list_remove(self, git_repo: Path, tmp_path: Path) -> None:
        subprocess.run(["git", "branch", "wt-branch"], cwd=git_repo, capture_output=True, check=True)
        wt = tmp_path / "wt"

        assert git_ops.worktree_add(wt, "wt-branch", cwd=git_repo).returncode == 0
        assert (wt / "README.md").exists()
        assert git_ops.worktree_paths(cwd=git_repo)["wt-branch"].resolve() == wt.resolve()

        assert git_ops.worktree_remove(wt, cwd=git_repo)
        assert not wt.exists()
        assert "wt-branch" not in git_ops.worktree_paths(cwd=git_repo)

    def test_remove_missing_worktree(self, git_repo: Path, tmp_path: Path) -> None:
        assert not git_ops.worktree_remove(tmp_path / "nope", cwd=git_repo)


# ── TestMergeOperations ──────────────────────────────────────────────


class TestMergeOperations:
    def test_merge_clean(self, git_repo: Path) -> None:
        git_ops.create_branch("merge-src", "main", cwd=git_repo)
        _commit_file(git_repo, "new.txt", "content", "add new file")
        git_ops.checkout("main", cwd=git_repo)

        assert git_ops.merge_no_edit_result("merge-src", cwd=git_repo).returncode == 0
        assert (git_repo / "new.txt").exists()

    def test_conflict_then_abort(self, git_repo: Path) -> None:
        _conflict(git_repo, "conflict-src")

        assert git_ops.merge_no_edit_result("conflict-src", cwd=git_repo).returncode != 0
        assert git_ops.merge_in_progress(cwd=git_repo)
        assert git_ops.conflicted_files(cwd=git_repo) == ["conflict.txt"]

        git_ops.merge_abort(cwd=git_repo)
        assert not git_ops.merge_in_progress(cwd=git_repo)
        assert git_ops.conflicted_files(cwd=git_repo) == []

    @pytest.mark.parametrize(("side", "expected"), [("ours", "main version\n"), ("theirs", "branch version\n")])
    def test_checkout_side(self, git_repo: Path, side: str, expected: str) -> None:
        _conflict(git_repo, "side-src")
        git_ops.merge_no_edit_result("side-src", cwd=git_repo)

        assert git_ops.checkout_side("conflict.txt", side, cwd=git_repo)
        assert (git_repo / "conflict.txt").read_text() == expected
        assert git_ops.conflicted_files(cwd=git_repo) == []
        assert git_ops.commit_no_edit("resolved", cwd=git_repo).returncode == 0

    def test_checkout_side_rejects_unknown_side(self, git_repo: Path) -> None:
        with pytest.raises(ValueError):
            git_ops.checkout_side("x", "both", cwd=git_repo)

    def test_show_file(self, git_repo: Path) -> None:
        assert git_ops.show_file("HEAD", "README.md", cwd=git_repo) == "# Test\n"
        assert git_ops.show_file("HEAD", "missing.txt", cwd=git_repo) is None

    def test_log_oneline(self, git_repo: Path) -> None:
        git_ops.create_branch("log-src", "main", cwd=git_repo)
        _commit_file(git_repo, "a.txt", "a", "feat: add a")
        lines = git_ops.log_oneline("main", "log-src", cwd=git_repo)
        assert len(lines) == 1
        assert lines[0].endswith("feat: add a")


# ── TestCleanGitState ────────────────────────────────────────────────


class TestCleanGitState:
    def test_aborts_interrupted_merge(self, git_repo: Path) -> None:
        _conflict(git_repo, "int-merge")
        git_ops.merge_no_edit_result("int-merge", cwd=git_repo)
        assert (git_repo / ".git" / "MERGE_HEAD").exists()

        git_ops.ensure_clean_git_state(cwd=git_repo)
        assert not (git_repo / ".git" / "MERGE_HEAD").exists()

    def test_noop_on_clean_repo(self, git_repo: Path) -> None:
        git_ops.ensure_clean_git_state(cwd=git_repo)


# ── TestGitUtilities ─────────────────────────────────────────────────


class TestGitUtilities:
    def test_dirty_state(self, git_repo: Path) -> None:
        assert not git_ops.has_dirty_worktree(cwd=git_repo)
        (git_repo / "new.txt").write_text("x")
        assert git_ops.has_dirty_worktree(cwd=git_repo)
        assert git_ops.path_is_dirty(Path("new.txt"), cwd=git_repo)
        assert not git_ops.path_is_dirty(Path("README.md"), cwd=git_repo)
        assert git_ops.dirty_worktree_entries(cwd=git_repo) == ["?? new.txt"]

    def test_add_and_commit(self, git_repo: Path) -> None:
        (git_repo / "new.txt").write_text("x")
        assert git_ops.add_and_commit("add new", cwd=git_repo)
        assert not git_ops.has_dirty_worktree(cwd=git_repo)

    def test_commit_paths_leaves_other_changes(self, git_repo: Path) -> None:
        (git_repo / "prd.json").write_text("{}")
        (git_repo / "other.txt").write_text("x")
        assert not git_ops.is_tracked(Path("prd.json"), cwd=git_repo)

        assert git_ops.commit_paths("chore: track prd.json", [Path("prd.json")], cwd=git_repo)
        assert git_ops.is_tracked(Path("prd.json"), cwd=git_repo)
        assert git_ops.dirty_worktree_entries(cwd=git_repo) == ["?? other.txt"]

    def test_commit_count_and_changed_files(self, git_repo: Path) -> None:
        git_ops.create_branch("count-src", "main", cwd=git_repo)
        assert git_ops.commit_count("main", cwd=git_repo) == 0
        _commit_file(git_repo, "a.txt", "a", "one")
        _commit_file(git_repo, "b.txt", "b", "two")
        assert git_ops.commit_count("main", cwd=git_repo) == 2
        assert git_ops.changed_files("main", cwd=git_repo) == ["a.txt", "b.txt"]
