"""Tests for backup creation, retention and restore."""
from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from contextlib import ExitStack
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from stackctl.backups import (
    BackupError,
    BackupManager,
    BackupRegistryError,
    BackupsRegistry,
)
from stackctl.config import AppConfig
from stackctl.lifecycle import ServiceLifecycleController
from stackctl.locking import LockManager, LockTimeoutError
from stackctl.models import BackupRecord, DeploymentStrategy, ServiceRole
from stackctl.services import build_service_specs

from conftest import FakeAdapter

NOW = datetime(2026, 5, 20, 3, 0, tzinfo=UTC)


class FakeDatabase:
    """Database backend writing a fixed dump and recording restores."""

    def __init__(self) -> None:
        self.restored: list[Path] = []

    def is_ready(self, *, timeout: float = 5.0) -> bool:
        return True

    def dump(self, destination: Path) -> int:
        destination.write_text("-- dump\nCREATE TABLE posts ();\n", encoding="utf-8")
        return destination.stat().st_size

    def restore(self, source: Path) -> None:
        self.restored.append(source)

    def set_password(self, password: str) -> None:
        pass


@pytest.fixture()
def config(config_factory: Callable[..., AppConfig]) -> AppConfig:
    config = config_factory(backups={"compression": {"algorithm": "gzip"}})
    shared = config.app.shared_dir
    shared.mkdir(parents=True)
    (shared / "uploads").mkdir()
    (shared / "uploads" / "photo.txt").write_text("original", encoding="utf-8")
    return config


@pytest.fixture()
def locks(config: AppConfig) -> LockManager:
    return LockManager(config.runtime_dir, default_timeout=1.0)


@pytest.fixture()
def database() -> FakeDatabase:
    return FakeDatabase()


def _manager(
    config: AppConfig,
    locks: LockManager,
    database: FakeDatabase | None,
    *,
    sleep: Callable[[float], None] = lambda _: None,
) -> BackupManager:
    return BackupManager(
        BackupsRegistry(config.backups.root, config.backups.index),
        database,
        locks,
        config.backups,
        project=config.project,
        app=config.app,
        artifacts_dir=config.artifacts_dir,
        lock_timeout=0.1,
        clock=lambda: NOW,
        sleep=sleep,
    )


def test_create_writes_dump_archive_and_index(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    manager = _manager(config, locks, database)

    record = manager.create()

    assert record.id.startswith("20260520-030000-portfolio-")
    assert record.database_dump.read_text(encoding="utf-8").startswith("-- dump")
    assert record.archive.name == "app-state.tar.gz"
    assert record.archive.with_name("app-state.tar.gz.sha256").exists()
    assert record.database_dump.with_name("database.sql.sha256").exists()
    assert record.size_bytes > 0
    index = json.loads(config.backups.index.read_text(encoding="utf-8"))
    assert [entry["id"] for entry in index["backups"]] == [record.id]
    assert index["backups"][0]["algorithm"] == "gzip"
    assert manager.list_records() == [record]


def test_create_without_database_fails(config: AppConfig, locks: LockManager) -> None:
    with pytest.raises(BackupError, match="no database"):
        _manager(config, locks, None).create()


def test_create_blocked_while_deploy_holds_lock(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    with locks.exclusive("deploy"):
        with pytest.raises(LockTimeoutError):
            _manager(config, locks, database).create()


def _seed(registry: BackupsRegistry, age_days: int) -> BackupRecord:
    backup_id = f"backup-{age_days:02d}"
    directory = registry.root / backup_id
    directory.mkdir(parents=True)
    dump = directory / "database.sql"
    archive = directory / "app-state.tar.gz"
    dump.write_text("dump", encoding="utf-8")
    archive.write_bytes(b"archive")
    record = BackupRecord(
        id=backup_id,
        timestamp=NOW - timedelta(days=age_days),
        database_dump=dump,
        archive=archive,
        size_bytes=11,
        checksum="",
    )
    registry.append(record.to_dict())
    return record


def test_prune_removes_only_backups_past_retention(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    """With seven days of retention, backups aged 8 and 10 days are removed."""
    manager = _manager(config, locks, database)
    for age in (1, 6, 7, 8, 10):
        _seed(manager.registry, age)

    pruned = manager.prune(7)

    assert sorted(record.id for record in pruned) == ["backup-08", "backup-10"]
    assert not (manager.registry.root / "backup-08").exists()
    assert not (manager.registry.root / "backup-10").exists()
    assert (manager.registry.root / "backup-07").exists()
    assert [record.id for record in manager.list_records()] == [
        "backup-07",
        "backup-06",
        "backup-01",
    ]
    removed = manager.registry.find_by_id("backup-10")
    assert removed is not None
    assert removed["status"] == "removed"
    assert removed["removed_at"] == NOW.isoformat()
    assert len(manager.registry.records(include_removed=True)) == 5


def test_prune_is_idempotent(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    manager = _manager(config, locks, database)
    _seed(manager.registry, 30)

    assert len(manager.prune()) == 1
    assert manager.prune() == []


def test_scheduled_backup_defers_then_skips(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    """A busy lock defers once and then skips the run with a warning."""
    sleeps: list[float] = []
    manager = _manager(config, locks, database, sleep=sleeps.append)

    with locks.exclusive("deploy"):
        result = manager.run_scheduled()

    assert result is None
    assert sleeps == [config.backups.defer_seconds]
    assert manager.list_records() == []


def test_scheduled_backup_runs_after_deferral(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    stack = ExitStack()
    stack.enter_context(locks.exclusive("deploy"))

    def release_lock(_: float) -> None:
        stack.close()

    manager = _manager(config, locks, database, sleep=release_lock)

    record = manager.run_scheduled()

    assert record is not None
    assert [item.id for item in manager.list_records()] == [record.id]


def test_restore_reloads_database_and_shared_state(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    manager = _manager(config, locks, database)
    record = manager.create()
    photo = config.app.shared_dir / "uploads" / "photo.txt"
    photo.write_text("changed", encoding="utf-8")

    adapter = FakeAdapter(config, config.artifacts_dir)
    adapter.alive = {role: True for role in ServiceRole}
    controller = ServiceLifecycleController(
        adapter, build_service_specs(config, DeploymentStrategy.NATIVE), locks
    )

    restored = manager.restore(record.id, controller)

    assert restored.id == record.id
    assert database.restored == [record.database_dump]
    assert photo.read_text(encoding="utf-8") == "original"
    assert adapter.calls == [("stop", "app"), ("start", "app")]


def test_restore_rejects_tampered_archive(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    manager = _manager(config, locks, database)
    record = manager.create()
    record.archive.write_bytes(b"tampered")
    controller = ServiceLifecycleController(
        FakeAdapter(config, config.artifacts_dir),
        build_service_specs(config, DeploymentStrategy.NATIVE),
        locks,
    )

    with pytest.raises(BackupError, match="checksum"):
        manager.restore(record.id, controller)
    assert database.restored == []


def test_restore_unknown_or_removed_backup(
    config: AppConfig, locks: LockManager, database: FakeDatabase
) -> None:
    manager = _manager(config, locks, database)
    _seed(manager.registry, 30)
    manager.prune()
    controller = ServiceLifecycleController(
        FakeAdapter(config, config.artifacts_dir),
        build_service_specs(config, DeploymentStrategy.NATIVE),
        locks,
    )

    with pytest.raises(BackupError, match="not found"):
        manager.restore("nope", controller)
    with pytest.raises(BackupError, match="removed"):
        manager.restore("backup-30", controller)


def test_registry_rejects_corrupt_index(tmp_path: Path) -> None:
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")
    registry.ensure_root()
    registry.index.write_text("{not json", encoding="utf-8")

    with pytest.raises(BackupRegistryError, match="corrupted"):
        registry.read()


def test_registry_update_unknown_entry(tmp_path: Path) -> None:
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")

    with pytest.raises(BackupRegistryError, match="not found"):
        registry.update_entry("missing", lambda entry: None)
    with pytest.raises(BackupRegistryError, match="non-empty"):
        registry.find_by_id("  ")


def test_concurrent_backups_both_reach_the_index(
    config: AppConfig,
    locks: LockManager,
    database: FakeDatabase,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Two shared-lock backups racing on the index must not drop an entry."""
    original = BackupsRegistry.list_entries

    def slow_list_entries(self: BackupsRegistry) -> list[dict[str, object]]:
        entries = original(self)
        time.sleep(0.2)
        return entries

    monkeypatch.setattr(BackupsRegistry, "list_entries", slow_list_entries)
    manager = _manager(config, locks, database)
    errors: list[Exception] = []

    def run() -> None:
        try:
            manager.create()
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(json.loads(config.backups.index.read_text(encoding="utf-8"))["backups"]) == 2


def test_prune_waits_for_deploy(config: AppConfig, locks: LockManager) -> None:
    manager = _manager(config, locks, None)

    with locks.exclusive("deploy"):
        with pytest.raises(LockTimeoutError):
            manager.prune()
