"""Certbot provider for webroot issuance and renewal."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .process import run_command


class CertbotError(RuntimeError):
    """Raised when certbot cannot issue or renew a certificate."""


@dataclass(slots=True)
class CertbotProvider:
    """Obtain certificates with the ACME HTTP-01 webroot challenge."""

    certbot_bin: str = "certbot"
    elevate: tuple[str, ...] = ()
    timeout: float = 300.0

    def certonly(
        self,
        domains: Sequence[str],
        *,
        webroot: Path,
        email: str | None,
        force: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Issue or renew a certificate covering *domains* (first is the primary)."""
        if not domains:
            raise CertbotError("At least one domain is required.")
        args = [
            "certonly",
            "--webroot",
            "-w",
            str(webroot),
            "--non-interactive",
            "--agree-tos",
            "--cert-name",
            domains[0],
        ]
        if email:
            args.extend(["--email", email])
        else:
            args.append("--register-unsafely-without-email")
        for domain in domains:
            args.extend(["-d", domain])
        args.append("--force-renewal" if force else "--keep-until-expiring")
        return run_command(
            [*self.elevate, self.certbot_bin, *args],
            error=CertbotError,
            error_prefix=f"{self.certbot_bin} certonly {domains[0]}",
            timeout=self.timeout,
        )


__all__ = ["CertbotError", "CertbotProvider"]
