"""Tests for certificate loading, renewal decisions and failure handling."""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from stackctl.certificates import CertificateManager, verify_key_pair
from stackctl.config import AppConfig
from stackctl.errors import RenewalFailure
from stackctl.models import CertificateRecord, DeploymentStrategy
from stackctl.providers import CertbotError, FileInstaller
from stackctl.state import ProvisioningState, StateRegistry

from conftest import write_certificate

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


class FakeCertbot:
    """Certbot stand-in that writes a fresh 90-day certificate or fails."""

    def __init__(self, live_dir: Path, *, fail: bool = False) -> None:
        self.live_dir = live_dir
        self.fail = fail
        self.calls: list[tuple[list[str], bool]] = []

    def certonly(
        self,
        domains: Sequence[str],
        *,
        webroot: Path,
        email: str | None,
        force: bool = False,
    ) -> None:
        self.calls.append((list(domains), force))
        if self.fail:
            raise CertbotError("certbot certonly example.com failed (exit 1): rate limited")
        write_certificate(
            self.live_dir / domains[0],
            domains[0],
            not_before=NOW,
            not_after=NOW + timedelta(days=90),
        )


def _existing(config: AppConfig, days_left: int) -> None:
    write_certificate(
        config.tls.live_dir / "example.com",
        "example.com",
        not_before=NOW + timedelta(days=days_left) - timedelta(days=90),
        not_after=NOW + timedelta(days=days_left),
    )


def _manager(
    config: AppConfig,
    certbot: FakeCertbot,
    *,
    registry: StateRegistry | None = None,
    renewed: list[CertificateRecord] | None = None,
) -> CertificateManager:
    return CertificateManager(
        certbot,  # type: ignore[arg-type]
        FileInstaller(),
        config.tls,
        config.hostnames,
        registry=registry,
        clock=lambda: NOW,
        on_renewed=renewed.append if renewed is not None else None,
    )


def test_certificate_with_plenty_of_time_is_left_alone(app_config: AppConfig) -> None:
    """Sixty of ninety days remaining is outside the renewal window."""
    _existing(app_config, 60)
    certbot = FakeCertbot(app_config.tls.live_dir)
    renewed: list[CertificateRecord] = []

    record = _manager(app_config, certbot, renewed=renewed).obtain_or_renew("example.com")

    assert certbot.calls == []
    assert renewed == []
    assert record.expires_at == NOW + timedelta(days=60)


def test_certificate_close_to_expiry_is_renewed(app_config: AppConfig) -> None:
    """Five days remaining triggers renewal and the new expiry is recorded."""
    _existing(app_config, 5)
    certbot = FakeCertbot(app_config.tls.live_dir)
    renewed: list[CertificateRecord] = []

    record = _manager(app_config, certbot, renewed=renewed).obtain_or_renew("example.com")

    assert certbot.calls == [
        (["example.com", "www.example.com", "admin.example.com"], True),
    ]
    assert record.expires_at == NOW + timedelta(days=90)
    assert renewed == [record]


def test_failed_renewal_keeps_previous_certificate(
    app_config: AppConfig, caplog: pytest.LogCaptureFixture
) -> None:
    _existing(app_config, 5)
    certbot = FakeCertbot(app_config.tls.live_dir, fail=True)
    renewed: list[CertificateRecord] = []

    with caplog.at_level(logging.WARNING, logger="stackctl.certificates"):
        record = _manager(app_config, certbot, renewed=renewed).obtain_or_renew("example.com")

    assert record.expires_at == NOW + timedelta(days=5)
    assert renewed == []
    assert "rate limited" in caplog.text
    assert "still serving" in caplog.text


def test_first_issuance_failure_raises(app_config: AppConfig) -> None:
    certbot = FakeCertbot(app_config.tls.live_dir, fail=True)

    with pytest.raises(RenewalFailure) as excinfo:
        _manager(app_config, certbot).obtain_or_renew("example.com")

    assert excinfo.value.domain == "example.com"
    assert certbot.calls[0][1] is False


def test_first_issuance_stores_record(app_config: AppConfig) -> None:
    registry = StateRegistry(app_config.registry_dir)
    registry.save_provisioning(
        ProvisioningState(
            strategy=DeploymentStrategy.NATIVE,
            provisioned_at=NOW.isoformat(),
            updated_at=NOW.isoformat(),
        )
    )
    certbot = FakeCertbot(app_config.tls.live_dir)

    record = _manager(app_config, certbot, registry=registry).obtain_or_renew("example.com")

    state = registry.load_provisioning()
    assert state is not None
    assert state.certificate == record
    assert record.cert_path == app_config.tls.live_dir / "example.com" / "fullchain.pem"


def test_forced_renewal_ignores_window(app_config: AppConfig) -> None:
    _existing(app_config, 60)
    certbot = FakeCertbot(app_config.tls.live_dir)

    record = _manager(app_config, certbot).obtain_or_renew("example.com", force=True)

    assert len(certbot.calls) == 1
    assert record.expires_at == NOW + timedelta(days=90)


def test_mismatched_key_is_a_failed_renewal(app_config: AppConfig) -> None:
    _existing(app_config, 5)

    class WrongKeyCertbot(FakeCertbot):
        def certonly(self, domains: Sequence[str], **kwargs: object) -> None:  # type: ignore[override]
            super().certonly(domains, **kwargs)  # type: ignore[arg-type]
            other = ec.generate_private_key(ec.SECP256R1())
            write_certificate(
                self.live_dir / "scratch",
                domains[0],
                not_before=NOW,
                not_after=NOW + timedelta(days=90),
                key=other,
            )
            key_path = self.live_dir / domains[0] / "privkey.pem"
            key_path.write_bytes((self.live_dir / "scratch" / "privkey.pem").read_bytes())

    record = _manager(app_config, WrongKeyCertbot(app_config.tls.live_dir)).obtain_or_renew(
        "example.com"
    )

    assert record.expires_at == NOW + timedelta(days=5)


def test_needs_renewal_boundaries(app_config: AppConfig) -> None:
    manager = _manager(app_config, FakeCertbot(app_config.tls.live_dir))
    base = CertificateRecord(
        domain="example.com",
        issued_at=NOW - timedelta(days=60),
        expires_at=NOW + timedelta(days=30),
        cert_path=Path("/c"),
        key_path=Path("/k"),
    )

    assert manager.needs_renewal(base) is True
    assert manager.needs_renewal(base, NOW - timedelta(days=1)) is False
    assert manager.needs_renewal(base, NOW + timedelta(days=31)) is True


def test_load_missing_certificate_returns_none(app_config: AppConfig) -> None:
    manager = _manager(app_config, FakeCertbot(app_config.tls.live_dir))

    assert manager.load("example.com") is None


def test_domains_for_non_public_host(app_config: AppConfig) -> None:
    manager = _manager(app_config, FakeCertbot(app_config.tls.live_dir))

    assert manager.domains_for("status.example.com") == ["status.example.com"]


def test_verify_key_pair(
    tmp_path: Path, certificate_writer: Callable[..., tuple[Path, Path]]
) -> None:
    cert_path, key_path = certificate_writer(
        tmp_path / "a", "a.example", not_before=NOW, not_after=NOW + timedelta(days=1)
    )
    _, other_key = certificate_writer(
        tmp_path / "b", "b.example", not_before=NOW, not_after=NOW + timedelta(days=1)
    )

    assert verify_key_pair(cert_path.read_bytes(), key_path.read_bytes()) is True
    assert verify_key_pair(cert_path.read_bytes(), other_key.read_bytes()) is False
    assert verify_key_pair(b"garbage", key_path.read_bytes()) is False
