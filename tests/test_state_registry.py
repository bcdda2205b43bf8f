"""Tests for the provisioning state registry."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from stackctl.models import CertificateRecord, DeploymentStrategy
from stackctl.state import (
    PROVISIONING_FILE,
    ProvisioningState,
    StateRegistry,
    StateRegistryError,
)


def _state() -> ProvisioningState:
    return ProvisioningState(
        strategy=DeploymentStrategy.NATIVE,
        provisioned_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-02T00:00:00+00:00",
        credentials=["session", "database"],
        bundle_checksum="abc123",
        artifact_checksums={"nginx/site.conf": "1", "env/app.env": "2"},
        release="20260102000000",
        last_deploy={"release": "20260102000000", "status": "healthy"},
        certificate=CertificateRecord(
            domain="example.com",
            issued_at=datetime(2026, 1, 1, tzinfo=UTC),
            expires_at=datetime(2026, 4, 1, tzinfo=UTC),
            cert_path=Path("/etc/letsencrypt/live/example.com/fullchain.pem"),
            key_path=Path("/etc/letsencrypt/live/example.com/privkey.pem"),
        ),
    )


def test_load_returns_none_before_first_provision(tmp_path: Path) -> None:
    """An empty registry has no provisioning record."""
    registry = StateRegistry(tmp_path / "registry")

    assert registry.load_provisioning() is None


def test_round_trip_provisioning_state(tmp_path: Path) -> None:
    """Saved state is read back unchanged and written with restrictive perms."""
    registry = StateRegistry(tmp_path / "registry")
    state = _state()

    registry.save_provisioning(state)
    loaded = registry.load_provisioning()

    assert loaded == ProvisioningState.from_dict(state.to_dict())
    assert loaded is not None
    assert loaded.strategy is DeploymentStrategy.NATIVE
    assert loaded.credentials == ["database", "session"]
    assert loaded.certificate is not None
    assert loaded.certificate.expires_at == datetime(2026, 4, 1, tzinfo=UTC)
    path = registry.path_for(PROVISIONING_FILE)
    assert path.stat().st_mode & 0o777 == 0o640
    assert not list(path.parent.glob(f".{PROVISIONING_FILE}.*"))


def test_read_default_is_copied(tmp_path: Path) -> None:
    """Missing files return a copy of the default, not the default itself."""
    registry = StateRegistry(tmp_path / "registry")
    default: dict[str, list[str]] = {"items": []}

    value = registry.read("missing.yml", default=default)

    assert value == default
    assert value is not default


def test_unknown_schema_version_rejected(tmp_path: Path) -> None:
    """Records written by a newer tool are refused."""
    registry = StateRegistry(tmp_path / "registry")
    payload = _state().to_dict()
    payload["schema_version"] = 99
    registry.write(PROVISIONING_FILE, payload)

    with pytest.raises(StateRegistryError, match="schema version"):
        registry.load_provisioning()


def test_invalid_strategy_rejected(tmp_path: Path) -> None:
    """A record naming an unknown strategy is reported as malformed."""
    registry = StateRegistry(tmp_path / "registry")
    payload = _state().to_dict()
    payload["strategy"] = "mainframe"
    registry.write(PROVISIONING_FILE, payload)

    with pytest.raises(StateRegistryError, match="invalid strategy"):
        registry.load_provisioning()


def test_non_mapping_document_rejected(tmp_path: Path) -> None:
    """A list at the top level is not a provisioning record."""
    registry = StateRegistry(tmp_path / "registry")
    registry.ensure_root()
    registry.path_for(PROVISIONING_FILE).write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(StateRegistryError, match="must contain a mapping"):
        registry.load_provisioning()


def test_update_provisioning_requires_a_record(tmp_path: Path) -> None:
    """Updates before first provision do nothing and report ``None``."""
    registry = StateRegistry(tmp_path / "registry")
    calls: list[ProvisioningState] = []

    assert registry.update_provisioning(calls.append) is None
    assert calls == []
    assert registry.load_provisioning() is None


def test_update_provisioning_keeps_other_fields(tmp_path: Path) -> None:
    """Only the fields touched by the update change; the pending flag round-trips."""
    registry = StateRegistry(tmp_path / "registry")
    registry.save_provisioning(_state())

    def _mark(state: ProvisioningState) -> None:
        state.reload_pending = True

    updated = registry.update_provisioning(_mark)
    loaded = registry.load_provisioning()

    assert updated is not None and updated.reload_pending
    assert loaded is not None
    assert loaded.reload_pending is True
    assert loaded.release == "20260102000000"
    assert loaded.artifact_checksums == {"nginx/site.conf": "1", "env/app.env": "2"}
