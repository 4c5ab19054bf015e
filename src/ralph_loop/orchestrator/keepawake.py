"""Process-wide system sleep prevention tied to the top-level run."""

from __future__ import annotations

import logging
import subprocess
import sys
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

CAFFEINATE_ARGS = ("caffeinate", "-i")


class KeepAwake:
    """Owns at most one ``caffeinate -i`` child; a no-op outside macOS.

    ``acquire`` and ``release`` are both idempotent.
    """

    def __init__(self, *, platform: str | None = None) -> None:
        self.platform = platform or sys.platform
        self._process: subprocess.Popen[bytes] | None = None

    @property
    def active(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def acquire(self) -> bool:
        """Start the helper; returns whether sleep prevention is in effect."""

        if self.platform != "darwin":
            logger.debug("caffeinate: skipped (platform=%s)", self.platform)
            return False
        if self.active:
            return True
        try:
            self._process = subprocess.Popen(  # noqa: S603
                CAFFEINATE_ARGS,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as error:
            logger.debug("caffeinate failed to start: %s", error)
            self._process = None
            return False
        logger.debug("caffeinate started (pid=%s)", self._process.pid)
        return True

    def release(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        try:
            process.terminate()
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            process.kill()
        except OSError as error:
            logger.debug("caffeinate stop failed: %s", error)
        logger.debug("caffeinate stopped (pid=%s)", process.pid)


_KEEP_AWAKE = KeepAwake()


def get_keep_awake() -> KeepAwake:
    return _KEEP_AWAKE


@contextmanager
def keep_awake(helper: KeepAwake | None = None) -> Iterator[bool]:
    """Hold sleep prevention for the duration of the block, on every exit path."""

    resource = helper or _KEEP_AWAKE
    acquired = resource.acquire()
    try:
        yield acquired
    finally:
        resource.release()
