"""Database dumps, application-state archives and retention.

Backup creation only takes the *shared* run lock: it may run next to health
probes and status queries but never while a deploy holds the exclusive lock.
Restores are mutating and take the exclusive lock. Since several backups may
run at once, every change to the JSON index goes through its own lock file.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from .archive import (
    ArchiveError,
    compression_extension,
    compute_checksum,
    create_archive,
    extract_archive,
    resolve_algorithm,
    write_checksum_file,
)
from .config import AppServiceConfig, BackupConfig
from .locking import LockManager, LockTimeoutError
from .models import BackupRecord, ServiceRole
from .providers import DatabaseBackend, DatabaseError

if TYPE_CHECKING:
    from .lifecycle import ServiceLifecycleController

LOGGER = logging.getLogger(__name__)

DUMP_NAME = "database.sql"
ARCHIVE_STEM = "app-state"
STATUS_AVAILABLE = "available"
STATUS_REMOVED = "removed"
INDEX_LOCK_FILENAME = ".backups.lock"
INDEX_LOCK_TIMEOUT = 30.0


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = Path(self.root).expanduser()
        self.index = Path(self.index).expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        try:
            text = self.index.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {"backups": []}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def index_lock(self) -> LockManager:
        """Return the lock serialising read-modify-write cycles on the index."""
        return LockManager(self.root, INDEX_LOCK_TIMEOUT, filename=INDEX_LOCK_FILENAME)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        self.ensure_root()
        with self.index_lock().exclusive("backup-index"):
            entries = self.list_entries()
            entries.append(dict(entry))
            self.write({"backups": entries})

    def list_entries(self) -> list[dict[str, object]]:
        """Return every entry in the index."""
        backups = self.read().get("backups", [])
        if not isinstance(backups, list):
            return []
        return [dict(item) for item in backups if isinstance(item, Mapping)]

    def records(self, *, include_removed: bool = False) -> list[BackupRecord]:
        """Return parsed records, oldest first."""
        records: list[BackupRecord] = []
        for entry in self.list_entries():
            try:
                record = BackupRecord.from_dict(entry)
            except (KeyError, ValueError) as exc:
                LOGGER.warning("Skipping malformed backup entry %r: %s", entry.get("id"), exc)
                continue
            if record.status == STATUS_REMOVED and not include_removed:
                continue
            records.append(record)
        return sorted(records, key=lambda item: item.timestamp)

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def update_entry(
        self,
        backup_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *backup_id* and persist changes."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        self.ensure_root()
        with self.index_lock().exclusive("backup-index"):
            entries = self.list_entries()
            updated_entry: dict[str, object] | None = None
            for index, entry in enumerate(entries):
                if str(entry.get("id", "")).strip() == normalized:
                    mutator(entry)
                    entries[index] = entry
                    updated_entry = entry
                    break
            if updated_entry is None:
                raise BackupRegistryError(f"Backup '{normalized}' not found in index.")
            self.write({"backups": entries})
        return updated_entry

    def generate_identifier(self, project: str, now: datetime | None = None) -> str:
        """Return a unique backup identifier for *project*."""
        moment = now or datetime.now(tz=UTC)
        timestamp = moment.strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        safe_project = "".join(
            char if char.isalnum() or char in {"-", "_"} else "-" for char in project
        )
        return f"{timestamp}-{safe_project}-{token}"


def copy_into(source: Path, destination: Path) -> None:
    """Copy or mirror *source* into *destination*."""
    if not source.exists():
        destination.mkdir(parents=True, exist_ok=True)
        return
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


class BackupManager:
    """Create, prune and restore backups."""

    def __init__(
        self,
        registry: BackupsRegistry,
        database: DatabaseBackend | None,
        locks: LockManager,
        settings: BackupConfig,
        *,
        project: str,
        app: AppServiceConfig,
        artifacts_dir: Path,
        lock_timeout: float | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.database = database
        self.locks = locks
        self.settings = settings
        self.project = project
        self.app = app
        self.artifacts_dir = Path(artifacts_dir)
        self.lock_timeout = lock_timeout
        self.clock = clock
        self.sleep = sleep

    def list_records(self) -> list[BackupRecord]:
        """Return available backups, oldest first."""
        return self.registry.records()

    def create(self) -> BackupRecord:
        """Take a backup under the shared lock."""
        with self.locks.shared("backup", timeout=self.lock_timeout):
            return self._create()

    def prune(
        self,
        retention_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[BackupRecord]:
        """Delete backups older than the retention window; return the pruned records."""
        with self.locks.shared("backup-prune", timeout=self.lock_timeout):
            return self._prune(retention_days, now=now)

    def _prune(
        self,
        retention_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[BackupRecord]:
        days = self.settings.retention_days if retention_days is None else retention_days
        moment = now or self.clock()
        limit = timedelta(days=days)
        pruned: list[BackupRecord] = []
        for record in self.registry.records():
            if record.age(moment) <= limit:
                continue
            for path in (record.database_dump, record.archive):
                path.unlink(missing_ok=True)
                path.with_name(f"{path.name}.sha256").unlink(missing_ok=True)
            directory = record.archive.parent
            if directory.is_dir() and directory.parent == self.registry.root:
                shutil.rmtree(directory, ignore_errors=True)

            def _mark_removed(entry: dict[str, object]) -> None:
                entry["status"] = STATUS_REMOVED
                entry["removed_at"] = moment.isoformat()

            self.registry.update_entry(record.id, _mark_removed)
            pruned.append(record)
            LOGGER.info("Pruned backup %s (age %s)", record.id, record.age(moment))
        return pruned

    def run_scheduled(self) -> BackupRecord | None:
        """Create and prune, deferring once when a deploy holds the run lock."""
        for attempt in (1, 2):
            try:
                with self.locks.shared("scheduled-backup", timeout=self.lock_timeout):
                    record = self._create()
                    self._prune()
                    return record
            except LockTimeoutError:
                if attempt == 1:
                    LOGGER.info(
                        "Run lock busy; deferring scheduled backup by %.0fs",
                        self.settings.defer_seconds,
                    )
                    self.sleep(self.settings.defer_seconds)
                    continue
                LOGGER.warning("Run lock still busy; skipping this scheduled backup.")
        return None

    def restore(
        self,
        backup_id: str,
        controller: ServiceLifecycleController,
    ) -> BackupRecord:
        """Load a backup's dump and shared state with the app stopped."""
        entry = self.registry.find_by_id(backup_id)
        if entry is None:
            raise BackupError(f"Backup '{backup_id}' not found.")
        record = BackupRecord.from_dict(entry)
        if record.status != STATUS_AVAILABLE:
            raise BackupError(f"Backup '{backup_id}' is {record.status}.")
        if self.database is None:
            raise BackupError("This strategy has no database to restore into.")
        if not record.database_dump.exists() or not record.archive.exists():
            raise BackupError(f"Backup '{backup_id}' files are missing.")
        if record.checksum and compute_checksum(record.archive) != record.checksum:
            raise BackupError(f"Backup '{backup_id}' archive failed checksum verification.")

        app_specs = [spec for spec in controller.services if spec.role is ServiceRole.APP]
        with self.locks.exclusive("restore", timeout=self.lock_timeout):
            for spec in app_specs:
                controller.adapter.stop(spec)
            try:
                self.database.restore(record.database_dump)
                with tempfile.TemporaryDirectory(prefix="stackctl-restore-") as workdir:
                    extract_archive(record.archive, Path(workdir))
                    shared = Path(workdir) / self.app.shared_dir.name
                    if shared.is_dir():
                        copy_into(shared, self.app.shared_dir)
            except (ArchiveError, DatabaseError, OSError) as exc:
                raise BackupError(f"Restore of '{backup_id}' failed: {exc}") from exc
            finally:
                for spec in app_specs:
                    controller.adapter.start(spec)
        LOGGER.info("Restored backup %s", backup_id)
        return record

    # ------------------------------------------------------------------
    def _create(self) -> BackupRecord:
        if self.database is None:
            raise BackupError("This strategy has no database to back up.")
        moment = self.clock()
        self.registry.ensure_root()
        backup_id = self.registry.generate_identifier(self.project, moment)
        directory = self.registry.root / backup_id
        algorithm = resolve_algorithm(self.settings.compression)
        dump_path = directory / DUMP_NAME
        archive_path = directory / f"{ARCHIVE_STEM}.{compression_extension(algorithm)}"
        try:
            directory.mkdir(parents=True, exist_ok=False)
            os.chmod(directory, 0o750)
            dump_size = self.database.dump(dump_path)
            write_checksum_file(dump_path, compute_checksum(dump_path))
            create_archive(
                [self.app.current_link, self.app.shared_dir, self.artifacts_dir / "active"],
                archive_path,
                algorithm,
                self.settings.compression_level,
                exclude=("node_modules", ".git"),
            )
            checksum = compute_checksum(archive_path)
            write_checksum_file(archive_path, checksum)
        except (ArchiveError, DatabaseError, OSError) as exc:
            shutil.rmtree(directory, ignore_errors=True)
            raise BackupError(f"Backup {backup_id} failed: {exc}") from exc

        record = BackupRecord(
            id=backup_id,
            timestamp=moment,
            database_dump=dump_path,
            archive=archive_path,
            size_bytes=dump_size + archive_path.stat().st_size,
            checksum=checksum,
            status=STATUS_AVAILABLE,
        )
        entry = record.to_dict()
        entry["algorithm"] = algorithm
        self.registry.append(entry)
        LOGGER.info("Created backup %s (%d bytes)", backup_id, record.size_bytes)
        return record


__all__ = [
    "BackupError",
    "BackupManager",
    "BackupRegistryError",
    "BackupsRegistry",
    "copy_into",
]
