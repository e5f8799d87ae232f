"""Load and persist the task store (``prd.json``).

The file is the single source of truth for completion. Callers re-read it at
every scheduling round instead of holding on to an old :class:`TaskStore`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ralph_moss.errors import ValidationError
from ralph_moss.io_utils import read_json, write_json
from ralph_moss.tasks.model import Story, TaskStore

_STORY_KEYS = {"id", "title", "description", "dependsOn", "passes", "blocked", "priority"}
_STORE_KEYS = {"branchName", "userStories", "project", "description"}


def _as_bool(value: Any, *, where: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise ValidationError(f"{where} must be a boolean, got {value!r}")


def _parse_story(raw: Any, index: int) -> Story:
    where = f"userStories[{index}]"
    if not isinstance(raw, dict):
        raise ValidationError(f"{where} must be an object")

    sid = raw.get("id")
    if not isinstance(sid, str) or not sid.strip():
        raise ValidationError(f"{where} is missing a string 'id'")

    deps = raw.get("dependsOn") or []
    if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
        raise ValidationError(f"{sid}: 'dependsOn' must be a list of story ids")

    priority = raw.get("priority")
    if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
        raise ValidationError(f"{sid}: 'priority' must be an integer")

    return Story(
        id=sid.strip(),
        title=str(raw.get("title", "")),
        description=str(raw.get("description", "")),
        depends_on=[d.strip() for d in deps if d.strip()],
        passes=_as_bool(raw.get("passes"), where=f"{sid}.passes"),
        blocked=_as_bool(raw.get("blocked"), where=f"{sid}.blocked"),
        priority=priority,
        extra={k: v for k, v in raw.items() if k not in _STORY_KEYS},
    )


def parse_store(data: Any) -> TaskStore:
    """Build a :class:`TaskStore` from a decoded JSON document."""
    if not isinstance(data, dict):
        raise ValidationError("task store must be a JSON object")
    stories_raw = data.get("userStories")
    if not isinstance(stories_raw, list):
        raise ValidationError("task store is missing the 'userStories' list")

    branch = data.get("branchName", "")
    if not isinstance(branch, str):
        raise ValidationError("'branchName' must be a string")

    return TaskStore(
        branch_name=branch.strip(),
        stories=[_parse_story(raw, i) for i, raw in enumerate(stories_raw)],
        project=str(data.get("project", "")),
        description=str(data.get("description", "")),
        extra={k: v for k, v in data.items() if k not in _STORE_KEYS},
    )


def _read_raw(path: Path) -> Any:
    try:
        return read_json(path)
    except FileNotFoundError:
        raise ValidationError(f"task store not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON: {e}") from None
    except UnicodeDecodeError as e:
        raise ValidationError(f"{path} is not valid UTF-8: {e}") from None
    except OSError as e:
        raise ValidationError(f"cannot read task store {path}: {e}") from None


def load_store(path: Path) -> TaskStore:
    """Read *path* and return the parsed store. Raises :class:`ValidationError`."""
    return parse_store(_read_raw(path))


def story_to_dict(story: Story) -> dict[str, Any]:
    out: dict[str, Any] = {"id": story.id, "title": story.title}
    if story.description:
        out["description"] = story.description
    out.update(story.extra)
    if story.depends_on:
        out["dependsOn"] = list(story.depends_on)
    if story.priority is not None:
        out["priority"] = story.priority
    out["passes"] = story.passes
    if story.blocked:
        out["blocked"] = True
    return out


def store_to_dict(store: TaskStore) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if store.project:
        out["project"] = store.project
    out["branchName"] = store.branch_name
    if store.description:
        out["description"] = store.description
    out.update(store.extra)
    out["userStories"] = [story_to_dict(s) for s in store.stories]
    return out


def save_store(store: TaskStore, path: Path) -> None:
    write_json(path, store_to_dict(store))


def mark_blocked(path: Path, story_id: str) -> bool:
    """Set ``blocked: true`` for *story_id* in the file. Returns ``True`` if changed.

    The decoded document is edited in place so key order and unknown keys
    stay exactly as the agents wrote them.
    """
    data = _read_raw(path)
    store = parse_store(data)
    story = store.get_story(story_id)
    if story is None or story.blocked or story.passes:
        return False
    for raw in data["userStories"]:
        if raw["id"].strip() == story_id:
            raw["blocked"] = True
    write_json(path, data)
    return True


def set_pr_url(path: Path, url: str) -> None:
    data = _read_raw(path)
    parse_store(data)
    data["prUrl"] = url
    write_json(path, data)


def story_passes(path: Path, story_id: str) -> bool:
    """Read *path* fresh and report whether *story_id* is marked as passing.

    A missing or unreadable file counts as "not passing".
    """
    try:
        store = load_store(path)
    except ValidationError:
        return False
    story = store.get_story(story_id)
    return bool(story and story.passes)
