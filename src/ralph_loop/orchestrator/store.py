"""Durable, checkpointed session record stored as ``<ralph_dir>/session.json``."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from uuid import uuid4

from ralph_loop.errors import SessionStoreError, wrap_os_error
from ralph_loop.orchestrator.git import GitInfoProvider
from ralph_loop.orchestrator.models import Checkpoint, IterationResult, Session, utc_now

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"
UNKNOWN = "unknown"


@dataclass(slots=True)
class ResumePoint:
    """Loaded session and the first iteration that still has to run."""

    session: Session
    resume_iteration: int


class SessionStore:
    """Session persistence facade.

    Every mutation rewrites the whole file. Absent or corrupt files read as
    "no session"; any other IO failure raises ``SessionStoreError``.
    """

    def __init__(self, ralph_dir: Path, *, git: GitInfoProvider) -> None:
        self.ralph_dir = ralph_dir
        self.git = git

    @property
    def path(self) -> Path:
        return self.ralph_dir / SESSION_FILE

    def load(self) -> Session | None:
        """Load the stored session, or ``None`` when absent, corrupt or incomplete."""

        try:
            content = self.path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except OSError as error:
            raise wrap_os_error(
                error,
                f"Failed to read session file {self.path}",
                SessionStoreError,
            ) from error

        try:
            raw = json.loads(content)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("Session file %s is not valid JSON; ignoring", self.path)
            return None
        if not isinstance(raw, dict):
            logger.debug("Session file %s does not hold an object; ignoring", self.path)
            return None

        try:
            return Session.from_dict(raw)
        except (KeyError, TypeError, ValueError) as error:
            logger.debug("Session file %s is incomplete (%s); ignoring", self.path, error)
            return None

    def create(self, branch: str | None = None) -> Session:
        """Start a fresh session anchored at the current branch and commit."""

        session = Session(
            id=str(uuid4()),
            started_at=utc_now(),
            start_commit=self.git.current_commit() or UNKNOWN,
            branch=branch or self.git.current_branch() or UNKNOWN,
        )
        logger.info(
            "Created session %s on branch=%s commit=%s",
            session.id,
            session.branch,
            session.start_commit,
        )
        return session

    def save(self, session: Session) -> None:
        """Rewrite the session file via a temporary file and atomic rename."""

        payload = json.dumps(session.to_dict(), ensure_ascii=False, indent=2)
        try:
            self.ralph_dir.mkdir(parents=True, exist_ok=True)
            _atomic_write(self.path, payload)
        except OSError as error:
            raise wrap_os_error(
                error,
                f"Failed to write session file {self.path}",
                SessionStoreError,
            ) from error

    def checkpoint(self, session: Session, iteration: int) -> Session:
        """Persist a resume marker for a completed iteration and return the updated session."""

        if session.checkpoint is not None and iteration < session.checkpoint.iteration:
            raise ValueError(
                f"Checkpoint must not move backwards: {iteration} < {session.checkpoint.iteration}",
            )
        if iteration > len(session.iterations):
            raise ValueError(
                f"Checkpoint iteration {iteration} exceeds recorded iterations "
                f"({len(session.iterations)})",
            )

        updated = replace(
            session,
            checkpoint=Checkpoint(
                iteration=iteration,
                timestamp=utc_now(),
                commit=self.git.current_commit() or UNKNOWN,
            ),
        )
        self.save(updated)
        logger.debug("Checkpoint saved: session=%s iteration=%s", session.id, iteration)
        return updated

    def resume_from(self) -> ResumePoint | None:
        """Resume strictly after the last checkpoint; ``None`` without one."""

        session = self.load()
        if session is None or session.checkpoint is None:
            return None
        return ResumePoint(session=session, resume_iteration=session.checkpoint.iteration + 1)

    def append_iteration(self, session: Session, result: IterationResult) -> Session:
        """Append one iteration result, persist, and return the updated session."""

        updated = replace(session, iterations=[*session.iterations, result])
        self.save(updated)
        return updated

    def reset(self) -> bool:
        """Replace an existing session file with an empty marker object.

        Returns ``False`` when there was no session file to reset.
        """

        if not self.path.exists():
            return False
        try:
            _atomic_write(self.path, "{}")
        except OSError as error:
            raise wrap_os_error(
                error,
                f"Failed to reset session file {self.path}",
                SessionStoreError,
            ) from error
        logger.info("Session file %s reset", self.path)
        return True

    def can_resume(self) -> bool:
        session = self.load()
        return session is not None and session.checkpoint is not None


def _atomic_write(path: Path, content: str) -> None:
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
