"""Failure taxonomy shared by the orchestrator, lifecycle and CLI layers.

Every failure carries enough structure (service, artifact, check) for the CLI
to print a precise remediation message and for the operation log to record
what went wrong. Provider wrappers raise their own ``RuntimeError`` subclasses
(``NginxError``, ``ComposeError`` ...); the components translate those into the
types below at their boundaries.
"""
from __future__ import annotations

from collections.abc import Iterable

from .exit_codes import ExitCode


class StackError(RuntimeError):
    """Base class for failures surfaced to operators."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        artifact: str | None = None,
        check: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.service = service
        self.artifact = artifact
        self.check = check

    def details(self) -> list[str]:
        """Return human readable detail lines (defaults to the message)."""
        return [self.message]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"type": type(self).__name__, "message": self.message}
        for key in ("service", "artifact", "check"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        details = self.details()
        if details != [self.message]:
            payload["details"] = details
        return payload


class PreflightFailure(StackError):
    """Host does not meet requirements; nothing was mutated."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(self, failures: Iterable[str]) -> None:
        self.failures = tuple(failures)
        super().__init__(
            f"Preflight failed with {len(self.failures)} issue(s).", check="preflight"
        )

    def details(self) -> list[str]:
        return list(self.failures)


class ValidationFailure(StackError):
    """A candidate configuration (or requested change) was rejected."""

    exit_code = ExitCode.VALIDATION

    def __init__(
        self,
        failures: Iterable[str],
        *,
        artifact: str | None = None,
        message: str | None = None,
    ) -> None:
        self.failures = tuple(failures)
        super().__init__(
            message or f"Validation failed with {len(self.failures)} issue(s).",
            artifact=artifact,
            check="validation",
        )

    def details(self) -> list[str]:
        return list(self.failures)


class PartialApplyFailure(StackError):
    """A mutation failed after the point where the previous state was replaced."""

    exit_code = ExitCode.PROVIDER


class DeploymentDegraded(StackError):
    """New release is in place but health checks did not pass within the grace period."""

    exit_code = ExitCode.DEGRADED

    def __init__(self, services: Iterable[str], *, release: str | None = None) -> None:
        self.services = tuple(services)
        self.release = release
        joined = ", ".join(self.services) or "unknown"
        super().__init__(
            f"Release {release or '?'} is live but unhealthy: {joined}.",
            service=self.services[0] if self.services else None,
            check="health",
        )


class DeployCancelled(StackError):
    """Deploy was cancelled before the swap began."""

    exit_code = ExitCode.CANCELLED


class TransientProbeFailure(StackError):
    """A single health probe attempt failed; callers retry."""

    exit_code = ExitCode.DEGRADED


class PersistentFailure(StackError):
    """A service keeps failing after the restart budget was spent."""

    exit_code = ExitCode.DEGRADED

    def __init__(self, service: str, *, restarts: int) -> None:
        self.restarts = restarts
        super().__init__(
            f"Service {service} is still failing after {restarts} restart(s); "
            "manual intervention required.",
            service=service,
            check="crash-loop",
        )


class RenewalFailure(StackError):
    """Certificate issuance or renewal failed."""

    exit_code = ExitCode.PROVIDER

    def __init__(self, domain: str, reason: str) -> None:
        self.domain = domain
        self.reason = reason
        super().__init__(
            f"Certificate renewal for {domain} failed: {reason}",
            artifact=domain,
            check="certificate",
        )


__all__ = [
    "DeployCancelled",
    "DeploymentDegraded",
    "PartialApplyFailure",
    "PersistentFailure",
    "PreflightFailure",
    "RenewalFailure",
    "StackError",
    "TransientProbeFailure",
    "ValidationFailure",
]
