"""Per-interface exclusive lock shared by every process on the host."""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Callable, IO, Optional

from .exceptions import LockTimeout

LOG = logging.getLogger(__name__)

DEFAULT_LOCK_DIR = Path("/run/flow-steering")


class InterfaceLock:
    """``flock`` on ``<lock_dir>/<interface>.lock`` held for a whole run.

    The lock is released when the context exits, whatever the outcome, and by
    the kernel if the process dies.
    """

    def __init__(
        self,
        interface: str,
        lock_dir: Path = DEFAULT_LOCK_DIR,
        *,
        timeout: Optional[float] = 30.0,
        poll_interval: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._interface = interface
        self._path = Path(lock_dir) / f"{interface}.lock"
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._handle: Optional[IO[str]] = None

    @property
    def path(self) -> Path:
        return self._path

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._path, "a+")
        deadline = None if self._timeout is None else time.monotonic() + self._timeout
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if deadline is not None and time.monotonic() >= deadline:
                    handle.close()
                    raise LockTimeout(self._interface, self._timeout)
                LOG.debug("Waiting for lock %s", self._path)
                self._sleep(self._poll_interval)

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        LOG.debug("Acquired lock %s", self._path)

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
            LOG.debug("Released lock %s", self._path)

    def __enter__(self) -> "InterfaceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
