"""Per-workspace exclusive lock serialising concurrent build invocations."""
from __future__ import annotations

from pathlib import Path
from types import TracebackType
from typing import IO
import fcntl
import os
import time

from .errors import WorkspaceLockedError


LOCK_NAME = "lock"


class WorkspaceLock:
    """Advisory ``flock`` on ``<state_dir>/lock``.

    ``wait=None`` fails fast when another process holds the lock; a number of
    seconds polls until the lock frees up or the deadline passes. The kernel
    drops the lock if the holder dies, so a crashed build never wedges the
    workspace.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        wait: float | None = None,
        poll_interval: float = 0.2,
    ) -> None:
        self.path = state_dir / LOCK_NAME
        self._workspace = str(state_dir.parent)
        self._wait = wait
        self._poll_interval = poll_interval
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def _holder(self, handle: IO[str]) -> str | None:
        handle.seek(0)
        text = handle.read().strip()
        return f"pid {text}" if text else None

    def acquire(self) -> None:
        if self._handle is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        deadline = None if self._wait is None else time.monotonic() + max(0.0, self._wait)
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if deadline is None or time.monotonic() >= deadline:
                    holder = self._holder(handle)
                    handle.close()
                    raise WorkspaceLockedError(self._workspace, holder=holder) from None
                time.sleep(self._poll_interval)
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            handle.truncate()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def __enter__(self) -> "WorkspaceLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["LOCK_NAME", "WorkspaceLock"]
