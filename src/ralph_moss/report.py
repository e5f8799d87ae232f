"""Terminal reasons, per-story final status and the end-of-run report."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from rich.table import Table

from ralph_moss import log
from ralph_moss.io_utils import write_json
from ralph_moss.tasks.model import TaskStore


class TerminalReason(str, Enum):
    DONE = "Done"
    STUCK = "Stuck"
    BUDGET_EXCEEDED = "BudgetExceeded"
    VALIDATION_ERROR = "ValidationError"
    INTERRUPTED = "Interrupted"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]


EXIT_CODES: dict[TerminalReason, int] = {
    TerminalReason.DONE: 0,
    TerminalReason.BUDGET_EXCEEDED: 2,
    TerminalReason.STUCK: 3,
    TerminalReason.VALIDATION_ERROR: 4,
    TerminalReason.INTERRUPTED: 130,
}


class StoryStatus(str, Enum):
    PASSED = "passed"
    PENDING = "pending"
    BLOCKED = "blocked"
    FAILED_TO_INTEGRATE = "failed_to_integrate"


_STATUS_STYLE = {
    StoryStatus.PASSED: "[green]✓ passed[/green]",
    StoryStatus.PENDING: "[yellow]○ pending[/yellow]",
    StoryStatus.BLOCKED: "[red]✗ blocked[/red]",
    StoryStatus.FAILED_TO_INTEGRATE: "[red]⚠ failed to integrate[/red]",
}

_REASON_STYLE = {
    TerminalReason.DONE: "green",
    TerminalReason.BUDGET_EXCEEDED: "yellow",
    TerminalReason.STUCK: "red",
    TerminalReason.VALIDATION_ERROR: "red",
    TerminalReason.INTERRUPTED: "yellow",
}


@dataclass
class RunReport:
    reason: TerminalReason
    detail: str = ""
    statuses: dict[str, StoryStatus] = field(default_factory=dict)
    titles: dict[str, str] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    notes: dict[str, str] = field(default_factory=dict)
    stuck: dict[str, str] = field(default_factory=dict)
    totals: dict = field(default_factory=dict)
    finished_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds"))

    @property
    def exit_code(self) -> int:
        return self.reason.exit_code

    @classmethod
    def from_store(
        cls,
        store: TaskStore | None,
        reason: TerminalReason,
        detail: str = "",
        *,
        failed_to_integrate: set[str] | None = None,
        attempts: dict[str, int] | None = None,
        notes: dict[str, str] | None = None,
        stuck: dict[str, str] | None = None,
        totals: dict | None = None,
    ) -> RunReport:
        """Derive per-story status from the final integration store."""
        failed = failed_to_integrate or set()
        statuses: dict[str, StoryStatus] = {}
        titles: dict[str, str] = {}
        for story in store.stories if store else []:
            titles[story.id] = story.title
            if story.passes:
                statuses[story.id] = StoryStatus.PASSED
            elif story.blocked:
                statuses[story.id] = StoryStatus.BLOCKED
            elif story.id in failed:
                statuses[story.id] = StoryStatus.FAILED_TO_INTEGRATE
            else:
                statuses[story.id] = StoryStatus.PENDING
        return cls(
            reason=reason,
            detail=detail,
            statuses=statuses,
            titles=titles,
            attempts=dict(attempts or {}),
            notes=dict(notes or {}),
            stuck=dict(stuck or {}),
            totals=dict(totals or {}),
        )

    def count(self, status: StoryStatus) -> int:
        return sum(1 for s in self.statuses.values() if s == status)

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "exitCode": self.exit_code,
            "detail": self.detail,
            "finishedAt": self.finished_at,
            "stories": [
                {
                    "id": sid,
                    "title": self.titles.get(sid, ""),
                    "status": status.value,
                    "attempts": self.attempts.get(sid, 0),
                    "note": self.notes.get(sid, ""),
                }
                for sid, status in self.statuses.items()
            ],
            "stuck": self.stuck,
            "totals": self.totals,
        }

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_json(path, self.to_dict())

    def render(self) -> None:
        style = _REASON_STYLE[self.reason]
        log.rule(f"[bold {style}]{self.reason.value}[/bold {style}]")
        if self.detail:
            log.console.print(f"  {self.detail}")

        table = Table(show_header=True, header_style="bold")
        table.add_column("Story", style="cyan")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Note", style="dim")
        for sid, status in self.statuses.items():
            note = self.stuck.get(sid) or self.notes.get(sid, "")
            table.add_row(
                sid,
                self.titles.get(sid, ""),
                _STATUS_STYLE[status],
                str(self.attempts.get(sid, 0)),
                note[:60],
            )
        if self.statuses:
            log.console.print(table)

        passed = self.count(StoryStatus.PASSED)
        log.console.print(f"  Passed: [green]{passed}[/green]/{len(self.statuses)}")
        if self.totals:
            cost = self.totals.get("cost", 0.0)
            approx = "~" if self.totals.get("costEstimated") else ""
            log.console.print(
                f"  Rounds: {self.totals.get('rounds', 0)}  "
                f"Cost: {approx}${cost:.4f}  "
                f"Time: {self.totals.get('durationSeconds', 0):.0f}s"
            )
