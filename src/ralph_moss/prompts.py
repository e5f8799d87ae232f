"""Instruction payloads handed to the agent and to the conflict resolver."""

from __future__ import annotations

from ralph_moss.config import COMPLETION_MARKER, PROGRESS_FILE
from ralph_moss.tasks.model import Story


def build_story_prompt(story: Story, store_rel: str, workdir: str, feedback: str = "") -> str:
    criteria = story.extra.get("acceptanceCriteria") or []
    criteria_text = ""
    if isinstance(criteria, list) and criteria:
        criteria_text = "\nAcceptance criteria:\n" + "\n".join(f"- {c}" for c in criteria) + "\n"
    feedback_text = ""
    if feedback.strip():
        feedback_text = "\nThe previous attempt left this feedback, address it first:\n" + feedback.strip() + "\n"

    return f"""Working directory: {workdir}

You are executing story {story.id} from {store_rel}. Focus ONLY on this story.

STORY ID: {story.id}
TITLE: {story.title}
DESCRIPTION: {story.description or "(none)"}
{criteria_text}{feedback_text}
Instructions:
1. Read {store_rel} and {PROGRESS_FILE} for context.
2. Implement ONLY story {story.id}.
3. Run the project's quality checks (typecheck, lint, tests) and fix failures.
4. Set "passes": true for {story.id} in {store_rel} once it is done. Do not touch other stories.
5. Append a short summary of what you did to {PROGRESS_FILE}.
6. Commit your changes with a message starting with "feat: {story.id}".
7. When the story is fully complete, print {COMPLETION_MARKER} on its own line."""


def build_conflict_prompt(path: str, content: str) -> str:
    return f"""You are resolving a git merge conflict. Here is the conflicted file:

File: {path}

{content}

Please provide the resolved content that intelligently merges both changes.
Keep both sets of changes where possible, or choose the most appropriate version.
Output ONLY the resolved file content with no explanation or markdown formatting."""


def build_review_prompt(story: Story, diff_summary: str) -> str:
    return f"""Review the changes made for story {story.id}: {story.title}

Diff summary:
{diff_summary or "(no changes)"}

Check for bugs, missing tests, broken imports and anything that does not satisfy
the story. Reply with a short markdown review. Start the first line with
"VERDICT: PASS" or "VERDICT: CHANGES REQUESTED"."""
