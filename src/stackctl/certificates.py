"""Certificate issuance, renewal and key/cert verification.

Renewal is attempted once less than ``tls.renewal_fraction`` of the
certificate's lifetime remains. A failed renewal is reported but never takes
a working certificate away: the previous record keeps being served until it
expires.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .config import HostnamesConfig, TLSConfig
from .errors import RenewalFailure
from .locking import LockTimeoutError
from .models import CertificateRecord
from .providers import CertbotError, CertbotProvider, FileInstaller, FileInstallError
from .state import ProvisioningState, StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)

CERT_FILE = "fullchain.pem"
KEY_FILE = "privkey.pem"


class CertificateError(RuntimeError):
    """Raised when certificate material cannot be read or does not match."""


def load_certificate(cert_pem: bytes, *, domain: str, cert_path: Path, key_path: Path) -> CertificateRecord:
    """Build a :class:`CertificateRecord` from PEM encoded certificate bytes."""
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as exc:
        raise CertificateError(f"Invalid certificate at {cert_path}: {exc}") from exc
    return CertificateRecord(
        domain=domain,
        issued_at=certificate.not_valid_before_utc,
        expires_at=certificate.not_valid_after_utc,
        cert_path=cert_path,
        key_path=key_path,
    )


def verify_key_pair(cert_pem: bytes, key_pem: bytes) -> bool:
    """Return ``True`` when the private key belongs to the certificate."""
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except (TypeError, ValueError):
        return False
    encoding = serialization.Encoding.PEM
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    return certificate.public_key().public_bytes(encoding, fmt) == (
        private_key.public_key().public_bytes(encoding, fmt)
    )


class CertificateManager:
    """Obtain, renew and track the certificate for the public hostnames."""

    def __init__(
        self,
        certbot: CertbotProvider,
        files: FileInstaller,
        settings: TLSConfig,
        hostnames: HostnamesConfig,
        *,
        registry: StateRegistry | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
        on_renewed: Callable[[CertificateRecord], None] | None = None,
    ) -> None:
        self.certbot = certbot
        self.files = files
        self.settings = settings
        self.hostnames = hostnames
        self.registry = registry
        self.clock = clock
        self.on_renewed = on_renewed

    def paths(self, domain: str) -> tuple[Path, Path]:
        """Return the live certificate and key paths for *domain*."""
        live = self.settings.live_dir / domain
        return live / CERT_FILE, live / KEY_FILE

    def domains_for(self, domain: str) -> list[str]:
        """Return every name the certificate for *domain* must cover."""
        if domain != self.hostnames.public:
            return [domain]
        names = [*self.hostnames.public_names, self.hostnames.admin]
        return list(dict.fromkeys(names))

    def load(self, domain: str) -> CertificateRecord | None:
        """Return the live certificate record for *domain*, if one exists."""
        cert_path, key_path = self.paths(domain)
        try:
            cert_pem = self.files.read_bytes(cert_path)
        except (FileNotFoundError, NotADirectoryError):
            return None
        except (OSError, FileInstallError) as exc:
            LOGGER.warning("Cannot read certificate %s: %s", cert_path, exc)
            return None
        return load_certificate(cert_pem, domain=domain, cert_path=cert_path, key_path=key_path)

    def needs_renewal(self, record: CertificateRecord, now: datetime | None = None) -> bool:
        """Return ``True`` when *record* is inside its renewal window or expired."""
        moment = now or self.clock()
        return record.is_expired(moment) or record.in_renewal_window(
            moment, self.settings.renewal_fraction
        )

    def obtain_or_renew(self, domain: str, *, force: bool = False) -> CertificateRecord:
        """Issue a first certificate, or renew one that is due.

        Returns the unchanged record when no renewal is due. When renewal
        fails and a previous certificate exists, a :class:`RenewalFailure`
        warning is logged and the previous record is returned.
        """
        previous = self._load_safely(domain)
        if previous is not None and not force and not self.needs_renewal(previous):
            LOGGER.info(
                "Certificate for %s valid until %s; no renewal due.",
                domain,
                previous.expires_at.isoformat(),
            )
            return previous

        try:
            record = self._issue(domain, renew=previous is not None)
        except (CertbotError, CertificateError, FileInstallError, OSError) as exc:
            failure = RenewalFailure(domain, str(exc))
            if previous is None:
                raise failure from exc
            LOGGER.warning(
                "%s; still serving the certificate expiring %s.",
                failure.message,
                previous.expires_at.isoformat(),
            )
            return previous

        self._store(record)
        if self.on_renewed is not None:
            self.on_renewed(record)
        return record

    # ------------------------------------------------------------------
    def _load_safely(self, domain: str) -> CertificateRecord | None:
        try:
            return self.load(domain)
        except CertificateError as exc:
            LOGGER.warning("Ignoring unreadable certificate for %s: %s", domain, exc)
            return None

    def _issue(self, domain: str, *, renew: bool) -> CertificateRecord:
        self.certbot.certonly(
            self.domains_for(domain),
            webroot=self.settings.webroot,
            email=self.settings.email,
            force=renew,
        )
        cert_path, key_path = self.paths(domain)
        cert_pem = self.files.read_bytes(cert_path)
        key_pem = self.files.read_bytes(key_path)
        if not verify_key_pair(cert_pem, key_pem):
            raise CertificateError(f"Private key {key_path} does not match {cert_path}.")
        record = load_certificate(cert_pem, domain=domain, cert_path=cert_path, key_path=key_path)
        LOGGER.info(
            "Certificate for %s %s; valid until %s.",
            domain,
            "renewed" if renew else "issued",
            record.expires_at.isoformat(),
        )
        return record

    def _store(self, record: CertificateRecord) -> None:
        if self.registry is None:
            return
        stamp = self.clock().isoformat(timespec="seconds")

        def _record(state: ProvisioningState) -> None:
            state.certificate = record
            state.reload_pending = True
            state.updated_at = stamp

        try:
            self.registry.update_provisioning(_record)
        except (StateRegistryError, LockTimeoutError, OSError) as exc:
            LOGGER.warning("Could not record certificate for %s: %s", record.domain, exc)


__all__ = [
    "CertificateError",
    "CertificateManager",
    "load_certificate",
    "verify_key_pair",
]
