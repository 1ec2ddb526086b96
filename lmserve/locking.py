"""Exclusive lock for orchestration runs.

One run at a time may target a given container name and port, across
processes. The lock is an ``fcntl.flock`` on a per-target file.
"""

import fcntl
import logging
import os
import re
from pathlib import Path
from typing import Optional

from .exceptions import DeploymentLockedError

logger = logging.getLogger(__name__)


class DeploymentLock:
    """Non-blocking exclusive lock keyed on a deployment target."""

    def __init__(self, key: str, lock_dir: Path):
        self.key = key
        safe_key = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        self.path = Path(lock_dir) / f"{safe_key}.lock"
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock or raise DeploymentLockedError immediately."""
        if self._fd is not None:
            raise DeploymentLockedError(self.key, str(self.path))

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise DeploymentLockedError(self.key, str(self.path)) from None

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"Acquired run lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released run lock {self.path}")

    def __enter__(self) -> "DeploymentLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
