"""
Single Instance Lock

The state store does whole-file overwrites with no locking, so two engines
pointed at the same state directory would silently clobber each other's
ledger. A PID file in the state directory makes that a startup failure.

Released on clean exit (atexit); a lock left by a dead process is treated as
stale and replaced.
"""

import atexit
import os
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    PID-file lock.

    Usage:
        lock = SingleInstanceLock("pulse-trader", state_dir)
        if not lock.acquire():
            raise StartupError("another engine owns this state directory")
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def owner_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if acquired, False if another live process holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            existing_pid = self.owner_pid()
            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). "
                    f"Cannot start. Lock file: {self.lock_file}"
                )
                return False
            logger.warning(f"Removing stale lock file {self.lock_file} (PID={existing_pid})")
            try:
                self.lock_file.unlink()
            except OSError as e:
                logger.error(f"Could not remove stale lock file: {e}")
                return False

        try:
            # O_EXCL so two processes racing past the stale check cannot both win
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
        except FileExistsError:
            logger.error(f"Lost lock race for {self.lock_file}")
            return False
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self.lock_file.exists() and self.owner_pid() == os.getpid():
                self.lock_file.unlink()
                logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
