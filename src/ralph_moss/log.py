"""Console output for a run: leveled messages plus per-story progress lines.

Everything goes through one rich Console; worker threads print through it
too, so lines from concurrent stories never interleave mid-line.
"""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)

_verbose = False


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def info(msg: str) -> None:
    console.print(f"[blue]\\[INFO][/blue] {msg}")


def success(msg: str) -> None:
    console.print(f"[green]\\[OK][/green] {msg}")


def warn(msg: str) -> None:
    console.print(f"[yellow]\\[WARN][/yellow] {msg}")


def error(msg: str) -> None:
    _err_console.print(f"[red]\\[ERROR][/red] {msg}")


def debug(msg: str) -> None:
    if _verbose:
        console.print(f"[dim]\\[DEBUG] {msg}[/dim]")


def story(tag: str, story_id: str, detail: str = "", *, style: str = "cyan") -> None:
    """One indented progress line for *story_id*, e.g. ``▶ US-001: Add login``."""
    line = f"  [{style}]{escape(tag)}[/{style}] {escape(story_id)}"
    if detail:
        line += f": {escape(detail)}"
    console.print(line)


def rule(title: str = "") -> None:
    """Print a horizontal separator, optionally titled."""
    if title:
        console.rule(f"[bold]{title}[/bold]")
    else:
        console.rule()
