"""UFW firewall rules for provisioned hosts."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .process import run_command


class FirewallError(RuntimeError):
    """Raised when ufw rejects a rule."""


@dataclass(slots=True)
class UfwProvider:
    """Allow the configured rules and enable the firewall."""

    ufw_bin: str = "ufw"
    elevate: tuple[str, ...] = ()

    def apply(self, rules: Iterable[str]) -> list[str]:
        """Allow every rule in *rules*, then enable ufw; return the rules applied."""
        applied: list[str] = []
        for rule in rules:
            run_command(
                [*self.elevate, self.ufw_bin, "allow", rule],
                error=FirewallError,
                error_prefix=f"{self.ufw_bin} allow {rule}",
            )
            applied.append(rule)
        run_command(
            [*self.elevate, self.ufw_bin, "--force", "enable"],
            error=FirewallError,
            error_prefix=f"{self.ufw_bin} enable",
        )
        return applied


__all__ = ["FirewallError", "UfwProvider"]
