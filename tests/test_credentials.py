"""Tests for credential generation and storage."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from stackctl.credentials import (
    DATABASE_PASSWORD,
    SESSION_SECRET,
    CredentialError,
    CredentialStore,
    required_credentials,
)
from stackctl.models import Credential, DeploymentStrategy
from stackctl.providers import DatabaseError


def test_ensure_is_idempotent(tmp_path: Path) -> None:
    """A second ensure returns the stored value instead of minting a new one."""
    store = CredentialStore(tmp_path / "credentials")

    first = store.ensure(DATABASE_PASSWORD, ["app", "database"])
    second = store.ensure(DATABASE_PASSWORD, ["database", "app"])

    assert second.value == first.value
    assert second.consumers == ("app", "database")
    assert len(first.value) >= 40


def test_ensure_merges_new_consumers(tmp_path: Path) -> None:
    """New consumers are added without touching the value."""
    store = CredentialStore(tmp_path / "credentials")
    first = store.ensure(SESSION_SECRET, ["app"])

    updated = store.ensure(SESSION_SECRET, ["worker"])

    assert updated.value == first.value
    assert updated.consumers == ("app", "worker")
    assert store.get(SESSION_SECRET) == updated


def test_credentials_written_owner_only(tmp_path: Path) -> None:
    """Credential files and their directory are private to the owner."""
    root = tmp_path / "credentials"
    store = CredentialStore(root)

    store.ensure(SESSION_SECRET, ["app"])

    assert root.stat().st_mode & 0o777 == 0o700
    assert store.path_for(SESSION_SECRET).stat().st_mode & 0o777 == 0o600


def test_rotate_replaces_value(tmp_path: Path) -> None:
    """Rotation produces a fresh value and keeps the consumers."""
    store = CredentialStore(tmp_path / "credentials")
    original = store.ensure(DATABASE_PASSWORD, ["app", "database"])

    rotated = store.rotate(DATABASE_PASSWORD)

    assert rotated.value != original.value
    assert rotated.consumers == original.consumers
    assert store.get(DATABASE_PASSWORD) == rotated


def test_rotate_unknown_credential_fails(tmp_path: Path) -> None:
    store = CredentialStore(tmp_path / "credentials")

    with pytest.raises(CredentialError, match="has not been provisioned"):
        store.rotate("api-key")


def test_invalid_name_rejected(tmp_path: Path) -> None:
    store = CredentialStore(tmp_path / "credentials")

    with pytest.raises(CredentialError, match="Invalid credential name"):
        store.ensure("../escape")


def test_corrupt_file_reported(tmp_path: Path) -> None:
    """A credential file without a value is refused rather than regenerated."""
    root = tmp_path / "credentials"
    root.mkdir()
    (root / f"{SESSION_SECRET}.json").write_text(json.dumps({"name": "x"}), encoding="utf-8")
    store = CredentialStore(root)

    with pytest.raises(CredentialError, match="has no value"):
        store.ensure(SESSION_SECRET, ["app"])


def test_list_and_values(tmp_path: Path) -> None:
    store = CredentialStore(tmp_path / "credentials")
    assert store.list_credentials() == []

    store.ensure(SESSION_SECRET, ["app"])
    store.ensure(DATABASE_PASSWORD, ["app", "database"])

    assert [item.name for item in store.list_credentials()] == [DATABASE_PASSWORD, SESSION_SECRET]
    assert set(store.values([SESSION_SECRET])) == {SESSION_SECRET}
    with pytest.raises(CredentialError):
        store.values(["missing"])


def test_credential_repr_hides_value(tmp_path: Path) -> None:
    """Neither repr nor to_dict leaks the secret."""
    store = CredentialStore(tmp_path / "credentials")
    credential = store.ensure(SESSION_SECRET, ["app"])

    assert credential.value not in repr(credential)
    assert "value" not in credential.to_dict()


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        (DeploymentStrategy.QUICK_DEV, {SESSION_SECRET}),
        (DeploymentStrategy.NATIVE, {SESSION_SECRET, DATABASE_PASSWORD}),
        (DeploymentStrategy.CONTAINERIZED, {SESSION_SECRET, DATABASE_PASSWORD}),
    ],
)
def test_required_credentials_per_strategy(
    strategy: DeploymentStrategy, expected: set[str]
) -> None:
    assert set(required_credentials(strategy)) == expected


def test_rotate_applies_before_storing(tmp_path: Path) -> None:
    store = CredentialStore(tmp_path / "credentials")
    original = store.ensure(DATABASE_PASSWORD, ["app", "database"])

    def reject(credential: Credential) -> None:
        raise DatabaseError("ALTER ROLE failed")

    with pytest.raises(DatabaseError):
        store.rotate(DATABASE_PASSWORD, apply=reject)

    assert store.get(DATABASE_PASSWORD) == original


def test_failed_write_keeps_previous_file_and_rolls_back(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path / "credentials"
    store = CredentialStore(root)
    original = store.ensure(DATABASE_PASSWORD, ["app", "database"])
    applied: list[str] = []

    def refuse(src: object, dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("stackctl.credentials.os.replace", refuse)

    with pytest.raises(CredentialError, match="disk full"):
        store.rotate(DATABASE_PASSWORD, apply=lambda credential: applied.append(credential.value))

    assert store.get(DATABASE_PASSWORD) == original
    assert len(applied) == 2
    assert applied[0] != original.value
    assert applied[1] == original.value
    assert sorted(path.name for path in root.iterdir()) == [f"{DATABASE_PASSWORD}.json"]
