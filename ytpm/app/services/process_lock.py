from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import IO

LOGGER = logging.getLogger("ytpm.lock")

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


class ProcessLock:
    """Non-blocking exclusive lock on a file, held until `release()`.

    Excludes other processes through `flock` and other threads of this
    process through an in-memory lock; a second `acquire()` while held
    fails. Only contention counts as failure: a lock file that cannot be
    opened or locked for other reasons is treated as acquired.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._guard = threading.Lock()
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._guard.locked()

    def acquire(self) -> bool:
        if not self._guard.acquire(blocking=False):
            return False
        if not self._lock_file():
            self._guard.release()
            return False
        return True

    def release(self) -> None:
        if not self._guard.locked():
            return
        handle, self._handle = self._handle, None
        try:
            if handle is not None:
                try:
                    if fcntl is not None:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                finally:
                    handle.close()
        finally:
            self._guard.release()

    def _lock_file(self) -> bool:
        if fcntl is None:
            LOGGER.warning("flock unavailable; lock is process-local path=%s", self.path)
            return True

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = self.path.open("a+", encoding="utf-8")
        except OSError:
            LOGGER.warning("lock file unusable path=%s", self.path, exc_info=True)
            return True

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                return False
            LOGGER.warning("lock attempt failed path=%s", self.path, exc_info=True)
            return True

        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
        except OSError:
            LOGGER.debug("lock pid write failed path=%s", self.path, exc_info=True)
        self._handle = handle
        return True
