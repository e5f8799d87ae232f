"""Error taxonomy for a run and shared text classifiers for agent output."""

from __future__ import annotations


class MossError(RuntimeError):
    """Base class for all ralph-moss errors."""


class ValidationError(MossError):
    """The task store is malformed or references unknown stories.

    Fatal at startup: the run never begins.
    """

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid task store")


class WorkspaceError(MossError):
    """An isolated workspace could not be created or destroyed."""

    def __init__(self, story_id: str, message: str) -> None:
        self.story_id = story_id
        super().__init__(f"{story_id}: {message}")


class WorkerFailure(MossError):
    """The agent process crashed, timed out, or produced nothing actionable."""


class IntegrationFailure(MossError):
    """A workspace branch could not be merged into the integration branch."""

    def __init__(self, branch: str, message: str) -> None:
        self.branch = branch
        super().__init__(f"{branch}: {message}")


class StuckCondition(MossError):
    """Stories remain but none of them can ever become ready."""

    def __init__(self, remaining: list[str], reasons: dict[str, str] | None = None) -> None:
        self.remaining = list(remaining)
        self.reasons = dict(reasons or {})
        super().__init__(
            f"No runnable stories but {len(self.remaining)} remain: "
            f"{', '.join(self.remaining)}. Possible circular dependency."
        )


# ── Output classifiers ───────────────────────────────────────────────

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "usage limit",
    "you've hit your limit",
    "quota",
    "429",
    "too many requests",
)

EXTERNAL_FAILURE_PATTERNS: tuple[str, ...] = (
    "command not found",
    "not found in path",
    "enoent",
    "eacces",
    "permission denied",
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "etimedout",
    "certificate",
    "ssl",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_rate_limit(text: str) -> bool:
    """Return ``True`` when text matches a rate/usage/quota limit."""
    if not text:
        return False
    return _contains_any(text, RATE_LIMIT_PATTERNS)


def looks_like_external_failure(text: str) -> bool:
    """Return ``True`` when a failure looks infrastructural rather than task related."""
    if not text:
        return False
    if looks_like_rate_limit(text):
        return True
    return _contains_any(text, EXTERNAL_FAILURE_PATTERNS)
