"""Per-story retry counters that outlive a single run."""

from __future__ import annotations

import json
import threading
from pathlib import Path

from ralph_moss import log
from ralph_moss.io_utils import read_json, write_json


class RetryTracker:
    """Count failed attempts per story, persisted as JSON.

    Once a story has failed ``max_retries`` times it is *exhausted* and
    the caller marks it ``blocked`` in the store. ``max_retries=0``
    disables the bound.
    """

    def __init__(self, path: Path, max_retries: int = 3) -> None:
        self.path = path
        self.max_retries = max_retries
        self._lock = threading.Lock()
        self._counts: dict[str, int] = self._load()

    def _load(self) -> dict[str, int]:
        if not self.path.exists():
            return {}
        try:
            data = read_json(self.path)
        except (OSError, json.JSONDecodeError) as e:
            log.warn(f"Ignoring unreadable retry file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): int(v) for k, v in data.items() if isinstance(v, int)}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        write_json(self.path, self._counts)

    def attempts(self, story_id: str) -> int:
        with self._lock:
            return self._counts.get(story_id, 0)

    def record_failure(self, story_id: str) -> int:
        with self._lock:
            count = self._counts.get(story_id, 0) + 1
            self._counts[story_id] = count
            self._save()
            return count

    def exhausted(self, story_id: str) -> bool:
        if self.max_retries <= 0:
            return False
        return self.attempts(story_id) >= self.max_retries

    def reset(self, story_id: str) -> None:
        with self._lock:
            if self._counts.pop(story_id, None) is not None:
                self._save()
