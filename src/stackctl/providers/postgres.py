"""PostgreSQL access for provisioning, readiness checks and backups.

Two backends expose the same operations: :class:`PostgresProvider` talks to a
host-installed server through ``sudo -u postgres``; :class:`ComposePostgres`
runs the same client tools inside the ``db`` container.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..config import DatabaseConfig
from .compose import ComposeError, ComposeProvider
from .process import run_command


class DatabaseError(RuntimeError):
    """Raised when a database command fails."""


class DatabaseBackend(Protocol):
    """Operations the orchestrator needs from the database."""

    def is_ready(self, *, timeout: float = 5.0) -> bool: ...

    def dump(self, destination: Path) -> int: ...

    def restore(self, source: Path) -> None: ...

    def set_password(self, password: str) -> None: ...


def quote_literal(value: str) -> str:
    """Return *value* as a SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def quote_identifier(value: str) -> str:
    """Return *value* as a SQL identifier."""
    return '"' + value.replace('"', '""') + '"'


def ensure_role_sql(user: str, password: str) -> str:
    """Return SQL creating *user* or resetting its password when it exists."""
    return (
        "DO $$\nBEGIN\n"
        f"  IF NOT EXISTS (SELECT FROM pg_roles WHERE rolname = {quote_literal(user)}) THEN\n"
        f"    CREATE ROLE {quote_identifier(user)} LOGIN PASSWORD {quote_literal(password)};\n"
        "  ELSE\n"
        f"    ALTER ROLE {quote_identifier(user)} WITH LOGIN PASSWORD {quote_literal(password)};\n"
        "  END IF;\n"
        "END\n$$;\n"
    )


def ensure_database_sql(name: str, owner: str) -> str:
    """Return psql input creating *name* owned by *owner* unless it exists."""
    return (
        f"SELECT 'CREATE DATABASE {quote_identifier(name)} OWNER {quote_identifier(owner)}'\n"
        f"WHERE NOT EXISTS (SELECT FROM pg_database WHERE datname = {quote_literal(name)})\\gexec\n"
        f"GRANT ALL PRIVILEGES ON DATABASE {quote_identifier(name)} TO {quote_identifier(owner)};\n"
    )


@dataclass(slots=True)
class PostgresProvider:
    """Host-installed PostgreSQL, administered as the database superuser."""

    database: DatabaseConfig
    sudo_bin: str = "sudo"
    psql_bin: str = "psql"
    pg_dump_bin: str = "pg_dump"
    pg_isready_bin: str = "pg_isready"
    timeout: float = 600.0

    def is_ready(self, *, timeout: float = 5.0) -> bool:
        """Return ``True`` when the server accepts connections."""
        args = [
            self.pg_isready_bin,
            "-h",
            self.database.host,
            "-p",
            str(self.database.port),
            "-t",
            str(max(1, int(timeout))),
        ]
        try:
            result = run_command(
                args,
                error=DatabaseError,
                check=False,
                timeout=timeout + 1,
            )
        except DatabaseError:
            return False
        return result.returncode == 0

    def ensure_role(self, password: str) -> None:
        """Create the application role or reset its password."""
        self._psql(ensure_role_sql(self.database.user, password), database="postgres")

    def ensure_database(self) -> None:
        """Create the application database when missing."""
        self._psql(
            ensure_database_sql(self.database.name, self.database.user),
            database="postgres",
        )

    def set_password(self, password: str) -> None:
        """Change the application role's password."""
        self.ensure_role(password)

    def dump(self, destination: Path) -> int:
        """Write a plain SQL dump to *destination*; return its size in bytes."""
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        args = [
            *self._as_superuser(),
            self.pg_dump_bin,
            "--no-owner",
            "--clean",
            "--if-exists",
            self.database.name,
        ]
        with destination.open("w", encoding="utf-8") as handle:
            run_command(
                args,
                error=DatabaseError,
                error_prefix=f"{self.pg_dump_bin} {self.database.name}",
                stdout=handle,
                timeout=self.timeout,
            )
        destination.chmod(0o600)
        return destination.stat().st_size

    def restore(self, source: Path) -> None:
        """Load a dump produced by :meth:`dump`."""
        sql = Path(source).read_text(encoding="utf-8")
        self._psql(sql, database=self.database.name)

    # ------------------------------------------------------------------
    def _as_superuser(self) -> list[str]:
        return [self.sudo_bin, "-n", "-u", self.database.superuser]

    def _psql(self, sql: str, *, database: str) -> subprocess.CompletedProcess[str]:
        args = [
            *self._as_superuser(),
            self.psql_bin,
            "--no-psqlrc",
            "-q",
            "-v",
            "ON_ERROR_STOP=1",
            "-d",
            database,
        ]
        return run_command(
            args,
            error=DatabaseError,
            error_prefix=f"{self.psql_bin} -d {database}",
            input_text=sql,
            timeout=self.timeout,
        )


@dataclass(slots=True)
class ComposePostgres:
    """PostgreSQL running as the ``db`` compose service."""

    compose: ComposeProvider
    database: DatabaseConfig
    service: str = "db"

    def is_ready(self, *, timeout: float = 5.0) -> bool:
        try:
            self.compose.exec(
                self.service,
                ["pg_isready", "-U", self.database.user, "-d", self.database.name],
                timeout=timeout,
            )
        except ComposeError:
            return False
        return True

    def dump(self, destination: Path) -> int:
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        with destination.open("w", encoding="utf-8") as handle:
            try:
                self.compose.exec(
                    self.service,
                    [
                        "pg_dump",
                        "--no-owner",
                        "--clean",
                        "--if-exists",
                        "-U",
                        self.database.user,
                        self.database.name,
                    ],
                    stdout=handle,
                )
            except ComposeError as exc:
                raise DatabaseError(str(exc)) from exc
        destination.chmod(0o600)
        return destination.stat().st_size

    def restore(self, source: Path) -> None:
        sql = Path(source).read_text(encoding="utf-8")
        self._psql(sql, database=self.database.name)

    def set_password(self, password: str) -> None:
        statement = (
            f"ALTER ROLE {quote_identifier(self.database.user)} "
            f"WITH PASSWORD {quote_literal(password)};\n"
        )
        self._psql(statement, database=self.database.name)

    def _psql(self, sql: str, *, database: str) -> None:
        try:
            self.compose.exec(
                self.service,
                ["psql", "-q", "-v", "ON_ERROR_STOP=1", "-U", self.database.user, "-d", database],
                input_text=sql,
            )
        except ComposeError as exc:
            raise DatabaseError(str(exc)) from exc


__all__ = [
    "ComposePostgres",
    "DatabaseBackend",
    "DatabaseError",
    "PostgresProvider",
    "ensure_database_sql",
    "ensure_role_sql",
    "quote_identifier",
    "quote_literal",
]
