"""Task document (PRD) parsing, templates and progress file helpers."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from pathlib import Path

from ralph_loop.errors import TaskDocumentError, wrap_os_error
from ralph_loop.orchestrator.models import PrdTemplate, Task

logger = logging.getLogger(__name__)

PRD_FILE = "PRD.md"
PROGRESS_FILE = "progress.txt"
PLACEHOLDER = "..."

# "- task", "* task", "1. task", "  - nested", "[ ] task"; "[x] task" is not open work.
_LIST_ITEM = re.compile(r"^\s*(?:[-*]|\d+\.|\[ \])\s+(?P<content>.*)$")
_CHECKBOX = re.compile(r"^\s*(?:[-*]\s+)?\[(?P<mark>[xX\s])\]\s+(?P<text>.+)$")
_CHECKMARK = re.compile(r"^\s*✅\s+(?P<text>.+)$")
_PHASE = re.compile(r"^###\s+(?P<phase>.+)$")

_TEMPLATE_DESCRIPTION_LIMIT = 80


def read_document(path: Path) -> str | None:
    """Return document text, ``None`` when absent, raise on any other read failure."""

    try:
        return path.read_text("utf-8", errors="replace")
    except FileNotFoundError:
        return None
    except OSError as error:
        raise wrap_os_error(
            error,
            f"Failed to read task document at {path}",
            TaskDocumentError,
        ) from error


def has_tasks(path: Path) -> bool:
    """Whether the document lists at least one real (non-placeholder) open item."""

    text = read_document(path)
    if text is None:
        return False
    return text_has_tasks(text)


def text_has_tasks(text: str) -> bool:
    for line in text.splitlines():
        match = _LIST_ITEM.match(line)
        if match is None:
            continue
        content = match.group("content").strip()
        if content and not content.startswith(PLACEHOLDER):
            return True
    return False


def extract_tasks(path: Path) -> list[Task]:
    """Parse checkbox and checkmark tasks with their enclosing phase heading."""

    text = read_document(path)
    if text is None:
        return []
    return list(iter_tasks(text.splitlines()))


def iter_tasks(lines: Iterable[str]) -> Iterator[Task]:
    """Lazily scan lines, attaching the most recent ``###`` phase to each task."""

    phase: str | None = None
    for line in lines:
        phase_match = _PHASE.match(line)
        if phase_match is not None:
            phase = phase_match.group("phase").strip()
            continue

        checkbox = _CHECKBOX.match(line)
        if checkbox is not None:
            yield Task(
                text=checkbox.group("text").strip(),
                completed=checkbox.group("mark").lower() == "x",
                phase=phase,
            )
            continue

        checkmark = _CHECKMARK.match(line)
        if checkmark is not None:
            yield Task(text=checkmark.group("text").strip(), completed=True, phase=phase)


def remaining_tasks(tasks: Iterable[Task]) -> list[Task]:
    return [task for task in tasks if not task.completed]


def list_templates(templates_dir: Path) -> list[PrdTemplate]:
    """List ``*.md`` templates sorted by name, described by their first content line."""

    try:
        entries = list(templates_dir.iterdir())
    except OSError:
        return []

    templates: list[PrdTemplate] = []
    for entry in entries:
        if entry.suffix != ".md" or not entry.is_file():
            continue
        templates.append(
            PrdTemplate(
                name=entry.stem,
                path=str(entry),
                description=_template_description(entry),
            ),
        )
    return sorted(templates, key=lambda template: template.name.lower())


def _template_description(path: Path) -> str | None:
    try:
        lines = path.read_text("utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        logger.debug("Could not read template %s", path, exc_info=True)
        return None
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if len(stripped) > _TEMPLATE_DESCRIPTION_LIMIT:
            return stripped[: _TEMPLATE_DESCRIPTION_LIMIT - 3] + PLACEHOLDER
        return stripped
    return None


def progress_has_content(ralph_dir: Path) -> bool:
    """Whether ``progress.txt`` holds notes from an earlier session."""

    try:
        return bool((ralph_dir / PROGRESS_FILE).read_text("utf-8").strip())
    except (OSError, UnicodeDecodeError):
        return False


def clear_progress(ralph_dir: Path) -> None:
    """Truncate ``progress.txt`` if it exists."""

    path = ralph_dir / PROGRESS_FILE
    if not path.exists():
        return
    path.write_text("", "utf-8")
