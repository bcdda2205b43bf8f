"""File-based locking primitives.

A single run lock file under the runtime directory coordinates every process
that touches the deployment:

* ``exclusive`` holders (provision, deploy, credential rotation, restore,
  manual and monitor-driven restarts) exclude everybody else;
* ``shared`` holders (status snapshots, backup creation) only exclude
  exclusive holders, so backups may run alongside health probes.

Locks are ``fcntl.flock`` based, so they are released by the kernel when a
process dies. Each acquisition opens its own file descriptor, which means two
handles inside one process conflict exactly like two processes would.
Acquisition polls until a bounded timeout and raises
:class:`LockTimeoutError` instead of waiting forever.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .errors import StackError
from .exit_codes import ExitCode

LOCK_FILENAME = "stackctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(StackError):
    """Raised when a lock cannot be acquired before the timeout expires."""

    exit_code = ExitCode.LOCKED

    def __init__(self, path: Path, timeout: float, *, operation: str | None = None) -> None:
        self.path = path
        self.timeout = timeout
        self.operation = operation
        holder = _read_holder(path)
        suffix = f" (held by {holder})" if holder else ""
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for {path}{suffix}.",
            check="lock",
        )


@dataclass(slots=True)
class LockHandle:
    """An acquired lock; release happens when the owning context exits."""

    path: Path
    mode: str
    operation: str
    wait_ms: int
    _fd: int = field(repr=False, default=-1)

    def release(self) -> None:
        """Release the lock and close the descriptor (idempotent)."""
        if self._fd < 0:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = -1


class LockManager:
    """Hand out exclusive and shared run-lock handles."""

    def __init__(
        self,
        runtime_dir: Path,
        default_timeout: float = 30.0,
        *,
        filename: str = LOCK_FILENAME,
    ) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout
        self.filename = filename

    @property
    def lock_path(self) -> Path:
        """Return the path of the lock file."""
        return self.runtime_dir / self.filename

    def named(self, name: str, *, timeout: float | None = None) -> LockManager:
        """Return a manager for the independent lock file ``<name>.lock``.

        Named locks guard small read-modify-write sections (the backup index,
        for one) that may run while the run lock is only held shared.
        """
        return LockManager(
            self.runtime_dir,
            self.default_timeout if timeout is None else timeout,
            filename=f"{name}.lock",
        )

    @contextmanager
    def exclusive(self, operation: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the run lock exclusively for the duration of the context."""
        handle = self._acquire(operation, exclusive=True, timeout=timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def shared(self, operation: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the run lock in shared mode for the duration of the context."""
        handle = self._acquire(operation, exclusive=False, timeout=timeout)
        try:
            yield handle
        finally:
            handle.release()

    def _acquire(self, operation: str, *, exclusive: bool, timeout: float | None) -> LockHandle:
        limit = self.default_timeout if timeout is None else timeout
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        flags = (fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH) | fcntl.LOCK_NB
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, flags)
                break
            except BlockingIOError:
                if time.monotonic() - start >= limit:
                    os.close(fd)
                    raise LockTimeoutError(path, limit, operation=operation) from None
                time.sleep(_POLL_INTERVAL)
        wait_ms = int((time.monotonic() - start) * 1000)
        mode = "exclusive" if exclusive else "shared"
        if exclusive:
            _write_metadata(fd, path, operation=operation, mode=mode)
        return LockHandle(path=path, mode=mode, operation=operation, wait_ms=wait_ms, _fd=fd)


def _write_metadata(fd: int, path: Path, *, operation: str, mode: str) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "operation": operation,
        "mode": mode,
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    data = json.dumps(payload, sort_keys=True).encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, data, 0)


def _read_holder(path: Path) -> str | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict) or "pid" not in payload:
        return None
    return f"pid {payload['pid']} ({payload.get('operation', 'unknown')})"


__all__ = ["LOCK_FILENAME", "LockHandle", "LockManager", "LockTimeoutError"]
