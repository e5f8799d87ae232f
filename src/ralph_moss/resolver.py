"""Dependency resolver: which stories may run right now."""

from __future__ import annotations

from ralph_moss.tasks.model import TaskStore


def ready(store: TaskStore) -> list[str]:
    """Return ids of stories whose dependencies all pass, in store order.

    A story is eligible when ``passes`` is false, it is not ``blocked`` and
    every id in ``dependsOn`` names a story with ``passes`` true. Blocked
    stories never satisfy a dependency. Pure: the same store always yields
    the same list.
    """
    passed = {s.id for s in store.stories if s.passes}
    out: list[str] = []
    for story in store.stories:
        if not story.remaining:
            continue
        if all(dep in passed for dep in story.depends_on):
            out.append(story.id)
    return out


def explain_block(store: TaskStore, story_id: str) -> str:
    """Human-readable reason *story_id* is not ready."""
    story = store.get_story(story_id)
    if story is None:
        return "unknown story"
    if story.passes:
        return "already passes"
    if story.blocked:
        return "blocked (retries exhausted)"

    waiting: list[str] = []
    for dep in story.depends_on:
        dep_story = store.get_story(dep)
        if dep_story is None:
            waiting.append(f"{dep} (missing)")
        elif dep_story.blocked:
            waiting.append(f"{dep} (blocked)")
        elif not dep_story.passes:
            waiting.append(f"{dep} (pending)")
    if waiting:
        return f"dependsOn: {' '.join(waiting)}"
    return "ready"


def plan_rounds(store: TaskStore, max_parallel: int) -> list[list[str]]:
    """Simulate the batches a run would dispatch if every story succeeded.

    Stops early when nothing further can become ready (a cycle, or stories
    waiting on blocked dependencies).
    """
    passed = {s.id for s in store.stories if s.passes}
    remaining = [s for s in store.stories if s.remaining]
    rounds: list[list[str]] = []
    while remaining:
        batch = [s.id for s in remaining if all(d in passed for d in s.depends_on)][: max(max_parallel, 1)]
        if not batch:
            break
        rounds.append(batch)
        passed.update(batch)
        remaining = [s for s in remaining if s.id not in passed]
    return rounds
