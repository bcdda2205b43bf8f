"""Tests for the run-lock primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from stackctl.exit_codes import ExitCode
from stackctl.locking import LockManager, LockTimeoutError


def test_exclusive_lock_writes_metadata(tmp_path: Path) -> None:
    """Acquiring the exclusive lock records the holder and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "stackctl.lock"
    with manager.exclusive("deploy") as handle:
        assert handle.wait_ms >= 0
        assert handle.mode == "exclusive"
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["operation"] == "deploy"

    # The file persists for diagnostics but no longer holds the lock.
    with manager.exclusive("deploy", timeout=0.2):
        pass


def test_exclusive_lock_times_out_while_held(tmp_path: Path) -> None:
    """A second exclusive acquisition fails with ``LockTimeoutError``."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.exclusive("deploy"):
        with pytest.raises(LockTimeoutError) as excinfo:
            with manager.exclusive("restart", timeout=0.1):
                pass

    assert excinfo.value.exit_code is ExitCode.LOCKED
    assert "deploy" in excinfo.value.message


def test_shared_locks_coexist(tmp_path: Path) -> None:
    """Shared holders do not exclude each other."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.shared("status"):
        with manager.shared("backup", timeout=0.1) as handle:
            assert handle.mode == "shared"


def test_shared_lock_blocked_by_exclusive(tmp_path: Path) -> None:
    """A deploy holding the exclusive lock keeps backups out."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.exclusive("deploy"):
        with pytest.raises(LockTimeoutError):
            with manager.shared("backup", timeout=0.1):
                pass


def test_exclusive_blocked_by_shared(tmp_path: Path) -> None:
    """A running backup keeps a restart from taking the exclusive lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.shared("backup"):
        with pytest.raises(LockTimeoutError):
            with manager.exclusive("restart", timeout=0.1):
                pass


def test_named_lock_is_independent_of_run_lock(tmp_path: Path) -> None:
    """A named lock uses its own file and does not contend with the run lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    index = manager.named("backups", timeout=0.1)

    with manager.exclusive("deploy"):
        with index.exclusive("backup-index"):
            assert (tmp_path / "run" / "backups.lock").exists()
        with index.exclusive("backup-index"):
            with pytest.raises(LockTimeoutError):
                with manager.named("backups").exclusive("backup-index", timeout=0.1):
                    pass
