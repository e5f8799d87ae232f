"""Story and TaskStore data models shared by loading, scheduling and reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Story:
    id: str
    title: str = ""
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    passes: bool = False
    blocked: bool = False
    priority: int | None = None
    # Keys we do not interpret (acceptanceCriteria, notes, ...), kept for round-trips.
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def remaining(self) -> bool:
        """Not yet passing and not given up on."""
        return not self.passes and not self.blocked


@dataclass
class TaskStore:
    branch_name: str = ""
    stories: list[Story] = field(default_factory=list)
    project: str = ""
    description: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def ids(self) -> list[str]:
        return [s.id for s in self.stories]

    def get_story(self, story_id: str) -> Story | None:
        for s in self.stories:
            if s.id == story_id:
                return s
        return None

    def remaining_ids(self) -> list[str]:
        """Stories still to do: ``passes`` false and not ``blocked``."""
        return [s.id for s in self.stories if s.remaining]

    def blocked_ids(self) -> list[str]:
        return [s.id for s in self.stories if s.blocked and not s.passes]

    def passed_ids(self) -> list[str]:
        return [s.id for s in self.stories if s.passes]

    def is_complete(self) -> bool:
        return not self.remaining_ids()
