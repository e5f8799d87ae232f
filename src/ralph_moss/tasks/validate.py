"""Task store validation: unique ids, dangling dependencies, cycles, stale file references."""

from __future__ import annotations

from pathlib import Path

from ralph_moss import log
from ralph_moss.errors import ValidationError
from ralph_moss.tasks.model import TaskStore
from ralph_moss.workspace import story_branch


def validate(store: TaskStore) -> list[str]:
    """Return a list of problems with *store* (empty when valid)."""
    problems: list[str] = []

    if not store.stories:
        problems.append("task store has no user stories")
        return problems

    seen: set[str] = set()
    for story in store.stories:
        if story.id in seen:
            problems.append(f"duplicate story id: {story.id}")
        seen.add(story.id)

    # Each story gets its own branch and worktree, named after a slug of its id.
    branches: dict[str, str] = {}
    for sid in dict.fromkeys(s.id for s in store.stories):
        branch = story_branch(sid)
        if branch in branches:
            problems.append(f"story ids {branches[branch]} and {sid} both map to branch {branch}")
        else:
            branches[branch] = sid

    for story in store.stories:
        for dep in story.depends_on:
            if dep not in seen:
                problems.append(f"{story.id} depends on unknown story {dep}")

    return problems


def detect_cycles(store: TaskStore) -> str:
    """Return the first dependency cycle as ``"A -> B -> A"``, or ``""``."""
    deps = {s.id: s.depends_on for s in store.stories}
    WHITE, GREY, BLACK = 0, 1, 2
    color = dict.fromkeys(deps, WHITE)
    stack: list[str] = []

    def visit(node: str) -> str:
        color[node] = GREY
        stack.append(node)
        for dep in deps.get(node, []):
            if dep not in color:
                continue
            if color[dep] == GREY:
                start = stack.index(dep)
                return " -> ".join(stack[start:] + [dep])
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return ""

    for sid in deps:
        if color[sid] == WHITE:
            found = visit(sid)
            if found:
                return found
    return ""


def validate_or_raise(store: TaskStore) -> None:
    """Raise :class:`ValidationError` when *store* is invalid.

    Cycles are only warned about here; the scheduler reports them as a stuck
    run once nothing else can make progress.
    """
    problems = validate(store)
    if problems:
        raise ValidationError(problems)

    cycle = detect_cycles(store)
    if cycle:
        log.warn(f"Dependency cycle detected: {cycle}")


# ── Preflight ────────────────────────────────────────────────────────


def _clean_path(ref: str) -> str:
    """Strip trailing ``:45-67`` line ranges and `` - description`` notes."""
    return ref.split(":", 1)[0].split(" -", 1)[0].strip()


def _referenced_files(store: TaskStore) -> list[str]:
    refs: list[str] = []
    context = store.extra.get("context")
    if isinstance(context, dict):
        refs += [f for f in context.get("keyFiles") or [] if isinstance(f, str)]
    for pattern in store.extra.get("referencePatterns") or []:
        if isinstance(pattern, dict) and isinstance(pattern.get("file"), str):
            refs.append(pattern["file"])
    for story in store.stories:
        details = story.extra.get("technicalDetails")
        if isinstance(details, dict):
            refs += [f for f in details.get("filesAffected") or [] if isinstance(f, str)]
    return list(dict.fromkeys(p for p in map(_clean_path, refs) if p))


def _visual_assets(store: TaskStore) -> list[str]:
    assets: list[str] = []
    specs = store.extra.get("visualSpecs")
    if isinstance(specs, dict):
        for key in ("mockups", "htmlPrototypes"):
            for item in specs.get(key) or []:
                if isinstance(item, dict) and isinstance(item.get("path"), str):
                    assets.append(item["path"])
    for story in store.stories:
        ref = story.extra.get("visualRef")
        if isinstance(ref, str) and ref:
            assets.append(ref)
    return assets


def preflight(store: TaskStore, repo_dir: Path, store_dir: Path | None = None) -> tuple[list[str], list[str]]:
    """Check the store against the repository before a run.

    Returns ``(errors, warnings)``. Errors are stale references: files named
    in ``context.keyFiles``, ``referencePatterns[].file``,
    ``technicalDetails.filesAffected`` or ``visualSpecs`` that do not exist.
    Warnings cover thin descriptions, few acceptance criteria and files
    that only exist under ``src/``.
    """
    errors: list[str] = []
    warnings: list[str] = []
    store_dir = store_dir or repo_dir

    if not store.branch_name:
        warnings.append("no branchName; stories will run on the current branch")
    if not store.description:
        warnings.append("store has no description")
    elif len(store.description) < 20:
        warnings.append(f"description is very short ({len(store.description)} chars)")

    for rel in _referenced_files(store):
        if (repo_dir / rel).is_file():
            continue
        if (repo_dir / "src" / rel).is_file():
            warnings.append(f"file found at a different path: src/{rel}")
        else:
            errors.append(f"file not found: {rel} (the store may be stale)")

    for rel in _visual_assets(store):
        if not (store_dir / rel).is_file() and not (repo_dir / rel).is_file():
            errors.append(f"visual asset not found: {rel}")

    for story in store.stories:
        criteria = story.extra.get("acceptanceCriteria")
        if isinstance(criteria, list) and len(criteria) < 2:
            warnings.append(f"{story.id}: only {len(criteria)} acceptance criteria (recommend 2+)")

    return errors, warnings
