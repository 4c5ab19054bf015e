"""Iteration prompt assembly."""

from __future__ import annotations

from pathlib import Path

from ralph_loop.errors import TaskDocumentError
from ralph_loop.orchestrator.backend.base import COMPLETION_SIGNAL
from ralph_loop.orchestrator.tasks import PRD_FILE, PROGRESS_FILE, read_document

DEFAULT_PROMPT = (
    "Read the PRD and the progress log. Pick the next incomplete task, implement it, "
    "run the checks, and commit your work."
)
NO_PROGRESS = "(No progress yet)"


def build_iteration_prompt(ralph_dir: Path, prompt: str | None = None) -> str:
    """Wrap the user prompt with the task document, progress log and completion contract."""

    prd_path = ralph_dir / PRD_FILE
    prd_content = read_document(prd_path)
    if prd_content is None:
        raise TaskDocumentError(
            f"{PRD_FILE} not found at {prd_path}",
            hint="create it from a template ('ralph templates')",
        )
    progress = read_document(ralph_dir / PROGRESS_FILE) or ""

    return (
        "# PRD (Product Requirements Document)\n"
        "\n"
        f"{prd_content}\n"
        "\n"
        "---\n"
        "\n"
        "# Progress Log\n"
        "\n"
        f"{progress.strip() or NO_PROGRESS}\n"
        "\n"
        "---\n"
        "\n"
        "# Task\n"
        "\n"
        f"{(prompt or DEFAULT_PROMPT).strip()}\n"
        "\n"
        f"After completing work, update {ralph_dir / PROGRESS_FILE} with what you accomplished.\n"
        f"If all tasks in the PRD are complete, include {COMPLETION_SIGNAL} in your response.\n"
    )
