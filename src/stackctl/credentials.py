"""Generation and persistence of deployment secrets.

Each credential lives in its own JSON file inside an owner-only directory.
``ensure`` is idempotent: an existing credential is always returned unchanged,
which is what keeps repeated provisioning from minting a second database
password. ``rotate`` is the only operation that replaces a value.
"""
from __future__ import annotations

import json
import logging
import os
import re
import secrets
import tempfile
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path

from .models import Credential, DeploymentStrategy

LOGGER = logging.getLogger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600
TOKEN_BYTES = 32
_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")

DATABASE_PASSWORD = "database-password"
SESSION_SECRET = "session-secret"


class CredentialError(RuntimeError):
    """Raised when a credential cannot be read or persisted."""


def required_credentials(strategy: DeploymentStrategy) -> dict[str, tuple[str, ...]]:
    """Return credential names needed by *strategy* mapped to their consumers."""
    required: dict[str, tuple[str, ...]] = {SESSION_SECRET: ("app",)}
    if strategy is not DeploymentStrategy.QUICK_DEV:
        required[DATABASE_PASSWORD] = ("app", "database")
    return required


def generate_secret(nbytes: int = TOKEN_BYTES) -> str:
    """Return a URL-safe random secret carrying ``nbytes`` of entropy."""
    return secrets.token_urlsafe(nbytes)


class CredentialStore:
    """Owner-only credential files under *root*."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, name: str) -> Path:
        """Return the file path storing credential *name*."""
        return self.root / f"{_validate_name(name)}.json"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def get(self, name: str) -> Credential | None:
        """Return credential *name* or ``None`` when it was never provisioned."""
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CredentialError(f"Credential {name} at {path} is unreadable: {exc}") from exc
        return _credential_from_payload(name, payload, path)

    def ensure(self, name: str, consumers: Iterable[str] = ()) -> Credential:
        """Return credential *name*, generating and persisting it on first use."""
        wanted = tuple(sorted(set(consumers)))
        existing = self.get(name)
        if existing is not None:
            merged = tuple(sorted(set(existing.consumers) | set(wanted)))
            if merged == existing.consumers:
                return existing
            updated = Credential(
                name=existing.name,
                value=existing.value,
                created_at=existing.created_at,
                consumers=merged,
            )
            self._persist(updated)
            return updated

        credential = Credential(
            name=name,
            value=generate_secret(),
            created_at=_now_iso(),
            consumers=wanted,
        )
        self._persist(credential)
        LOGGER.info("Generated credential %s for %s", name, ", ".join(wanted) or "-")
        return credential

    def rotate(
        self,
        name: str,
        *,
        apply: Callable[[Credential], None] | None = None,
    ) -> Credential:
        """Replace the value of an existing credential.

        *apply* receives the new credential before it is stored, so a consumer
        that rejects it (``ALTER ROLE`` failing) leaves the stored value as it
        was. If storing fails after *apply* succeeded, *apply* is called again
        with the previous credential.
        """
        existing = self.get(name)
        if existing is None:
            raise CredentialError(f"Credential {name} has not been provisioned.")
        rotated = Credential(
            name=name,
            value=generate_secret(),
            created_at=_now_iso(),
            consumers=existing.consumers,
        )
        if apply is not None:
            apply(rotated)
        try:
            self._persist(rotated)
        except CredentialError:
            if apply is not None:
                LOGGER.warning("Restoring the previous value of %s after a failed write", name)
                apply(existing)
            raise
        LOGGER.info("Rotated credential %s", name)
        return rotated

    def list_credentials(self) -> list[Credential]:
        """Return all stored credentials sorted by name."""
        if not self.root.exists():
            return []
        credentials: list[Credential] = []
        for path in sorted(self.root.glob("*.json")):
            credential = self.get(path.stem)
            if credential is not None:
                credentials.append(credential)
        return credentials

    def values(self, names: Iterable[str]) -> dict[str, Credential]:
        """Return credentials for *names*, failing when any is missing."""
        resolved: dict[str, Credential] = {}
        for name in names:
            credential = self.get(name)
            if credential is None:
                raise CredentialError(f"Credential {name} has not been provisioned.")
            resolved[name] = credential
        return resolved

    # ------------------------------------------------------------------
    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, DIR_MODE)
        except OSError as exc:
            raise CredentialError(f"Failed to prepare credential directory {self.root}: {exc}") from exc

    def _persist(self, credential: Credential) -> None:
        self._ensure_root()
        destination = self.path_for(credential.name)
        payload = {
            "name": credential.name,
            "value": credential.value,
            "created_at": credential.created_at,
            "consumers": list(credential.consumers),
        }
        tmp_path: Path | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{destination.name}.")
            tmp_path = Path(tmp_name)
            os.fchmod(fd, FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, destination)
        except OSError as exc:
            raise CredentialError(
                f"Failed to persist credential {credential.name}: {exc}"
            ) from exc
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)


def _credential_from_payload(name: str, payload: object, path: Path) -> Credential:
    if not isinstance(payload, Mapping):
        raise CredentialError(f"Credential file {path} must contain a JSON object.")
    value = payload.get("value")
    if not isinstance(value, str) or not value:
        raise CredentialError(f"Credential file {path} has no value.")
    consumers = payload.get("consumers") or []
    if not isinstance(consumers, list):
        raise CredentialError(f"Credential file {path} has malformed consumers.")
    return Credential(
        name=name,
        value=value,
        created_at=str(payload.get("created_at", "")),
        consumers=tuple(sorted(str(item) for item in consumers)),
    )


def _validate_name(name: str) -> str:
    if not _NAME_PATTERN.match(name):
        raise CredentialError(
            f"Invalid credential name {name!r}; use lowercase letters, digits, '.', '-' or '_'."
        )
    return name


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "DATABASE_PASSWORD",
    "SESSION_SECRET",
    "CredentialError",
    "CredentialStore",
    "generate_secret",
    "required_credentials",
]
