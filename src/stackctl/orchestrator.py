"""Top-level workflows tying generator, adapters and background managers together.

Every mutating workflow holds the exclusive run lock for its whole duration.
Nested lock acquisition deadlocks (flock locks are per open file), so helpers
documented as "caller holds the lock" never take it themselves.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .adapters import (
    ADAPTER_ERRORS,
    ContainerizedAdapter,
    LifecycleAdapter,
    NativeAdapter,
    adapter_for,
)
from .backups import BackupManager, BackupsRegistry
from .certificates import CertificateError, CertificateManager
from .config import AppConfig
from .credentials import CredentialStore, required_credentials
from .errors import DeploymentDegraded, PreflightFailure, ValidationFailure
from .generator import ArtifactWriter, ConfigGenerator
from .health import CrashLoopGuard, HealthMonitor, HealthProber, HealthReport
from .lifecycle import (
    CancellationToken,
    DeployResult,
    ReleaseBuilder,
    ServiceLifecycleController,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope
from .models import (
    ArtifactBundle,
    BackupRecord,
    CertificateRecord,
    Credential,
    DeploymentStrategy,
    ServiceRole,
    ServiceSpec,
)
from .preflight import (
    HostInfo,
    PreflightReport,
    PreflightValidator,
    collect_host_info,
    required_binaries,
)
from .providers import CertbotProvider, FileInstaller, UfwProvider, elevation_prefix
from .scheduler import Scheduler
from .services import build_service_specs, ordered
from .state import ProvisioningState, StateRegistry
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

KEEP_BUNDLES = 3


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds")


@dataclass
class ProvisionResult:
    """What a provision run produced."""

    strategy: DeploymentStrategy
    bundle: ArtifactBundle
    credentials: list[str] = field(default_factory=list)
    changed_roles: set[ServiceRole] = field(default_factory=set)
    touched: list[str] = field(default_factory=list)
    firewall_rules: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "strategy": self.strategy.value,
            "bundle": self.bundle.checksum,
            "tls_ready": self.bundle.tls_ready,
            "credentials": list(self.credentials),
            "changed_roles": sorted(role.value for role in self.changed_roles),
            "touched": list(self.touched),
            "firewall_rules": list(self.firewall_rules),
            "warnings": list(self.warnings),
        }


class Orchestrator:
    """Run provision, deploy, rotation and the recurring tasks for one host."""

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: StateRegistry,
        locks: LockManager,
        credentials: CredentialStore,
        templates: TemplateEngine,
        elevate: tuple[str, ...] | None = None,
        adapter_factory: Callable[..., LifecycleAdapter] = adapter_for,
        host_info: Callable[..., HostInfo] = collect_host_info,
    ) -> None:
        self.config = config
        self.registry = registry
        self.locks = locks
        self.credentials = credentials
        self.generator = ConfigGenerator(templates, config)
        self.writer = ArtifactWriter(config.artifacts_dir)
        self.elevate = elevation_prefix(config.tools.sudo_bin) if elevate is None else elevate
        self.adapter_factory = adapter_factory
        self.host_info = host_info
        self._adapters: dict[DeploymentStrategy, LifecycleAdapter] = {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def state(self) -> ProvisioningState | None:
        return self.registry.load_provisioning()

    def current_strategy(self) -> DeploymentStrategy:
        """Return the provisioned strategy, falling back to the configured one."""
        state = self.state()
        if state is not None:
            return state.strategy
        if self.config.strategy:
            return DeploymentStrategy.parse(self.config.strategy)
        raise ValidationFailure(
            ["No strategy has been provisioned and none is configured."],
            message="Host is not provisioned; run 'stackctl provision STRATEGY' first.",
        )

    def adapter(self, strategy: DeploymentStrategy) -> LifecycleAdapter:
        if strategy not in self._adapters:
            self._adapters[strategy] = self.adapter_factory(
                strategy, self.config, elevate=self.elevate
            )
        return self._adapters[strategy]

    def services(self, strategy: DeploymentStrategy) -> tuple[ServiceSpec, ...]:
        return build_service_specs(self.config, strategy)

    def controller(
        self,
        strategy: DeploymentStrategy | None = None,
        *,
        services: Iterable[ServiceSpec] | None = None,
    ) -> ServiceLifecycleController:
        """Return a lifecycle controller for *strategy* (default: the current one)."""
        strategy = strategy or self.current_strategy()
        health = self.config.health
        return ServiceLifecycleController(
            self.adapter(strategy),
            list(services if services is not None else self.services(strategy)),
            self.locks,
            prober=HealthProber(retries=health.probe_retries, retry_delay=1.0),
            writer=self.writer,
            grace_period=self.config.deploy.grace_period,
            poll_interval=self.config.deploy.poll_interval,
            registry=self.registry,
        )

    def certificate_manager(self) -> CertificateManager:
        return CertificateManager(
            CertbotProvider(certbot_bin=self.config.tools.certbot_bin, elevate=self.elevate),
            FileInstaller(elevate=self.elevate),
            self.config.tls,
            self.config.hostnames,
            registry=self.registry,
            on_renewed=self._on_certificate_renewed,
        )

    def backup_manager(self, strategy: DeploymentStrategy | None = None) -> BackupManager:
        strategy = strategy or self.current_strategy()
        settings = self.config.backups
        return BackupManager(
            BackupsRegistry(settings.root, settings.index),
            self.adapter(strategy).database(),
            self.locks,
            settings,
            project=self.config.project,
            app=self.config.app,
            artifacts_dir=self.config.artifacts_dir,
            lock_timeout=self.config.lock_timeout,
        )

    # ------------------------------------------------------------------
    # Strategy and preflight
    # ------------------------------------------------------------------
    def select_strategy(
        self,
        requested: str | DeploymentStrategy | None,
        *,
        reprovision: bool = False,
    ) -> DeploymentStrategy:
        """Resolve the strategy for a provision run.

        The stored strategy wins; switching requires ``reprovision``.
        """
        state = self.state()
        if requested is None:
            return self.current_strategy()
        try:
            strategy = DeploymentStrategy.parse(requested)
        except ValueError as exc:
            raise ValidationFailure([str(exc)], message=str(exc)) from exc
        if state is not None and state.strategy is not strategy and not reprovision:
            raise ValidationFailure(
                [
                    f"Host is provisioned with '{state.strategy.value}'; "
                    f"pass --reprovision to switch to '{strategy.value}'."
                ],
                message="Strategy change requires --reprovision.",
            )
        return strategy

    def preflight(self, strategy: DeploymentStrategy) -> PreflightReport:
        """Inspect the host without changing anything."""
        host = self.host_info(
            self.config.state_dir,
            required_binaries(strategy, self.config.tools),
            sudo_bin=self.config.tools.sudo_bin,
        )
        return PreflightValidator(self.config.preflight).validate(host, strategy)

    # ------------------------------------------------------------------
    # Provision
    # ------------------------------------------------------------------
    def provision(
        self,
        strategy: DeploymentStrategy,
        *,
        reprovision: bool = False,
        start: bool = True,
        scope: OperationScope | None = None,
        lock_timeout: float | None = None,
    ) -> ProvisionResult:
        """Bring the host to the desired configuration for *strategy*."""
        report = self.preflight(strategy)
        _step(scope, "preflight", status="success" if report.ok else "failed", detail=report.to_dict())
        if not report.ok:
            raise PreflightFailure(report.failures)

        with self.locks.exclusive("provision", timeout=lock_timeout) as handle:
            if scope is not None:
                scope.set_lock_wait_ms(handle.wait_ms)
            previous = self.state()
            if previous is not None and previous.strategy is not strategy:
                if not reprovision:
                    raise ValidationFailure(
                        [f"Host is provisioned with '{previous.strategy.value}'."],
                        message="Strategy change requires --reprovision.",
                    )
                self._retire(previous.strategy)
                _step(scope, "retire", detail=previous.strategy.value)

            credentials = self._ensure_credentials(strategy)
            _step(scope, "credentials", detail=sorted(credentials))
            adapter = self.adapter(strategy)
            specs = self.services(strategy)

            if isinstance(adapter, NativeAdapter):
                self._prepare_native_database(adapter, specs, credentials)
                _step(scope, "database", detail=self.config.database.name)

            rules: list[str] = []
            if self.config.firewall.enabled and strategy is not DeploymentStrategy.QUICK_DEV:
                rules = UfwProvider(ufw_bin=self.config.tools.ufw_bin, elevate=self.elevate).apply(
                    self.config.firewall.allow
                )
                _step(scope, "firewall", detail=rules)

            certificate = self._current_certificate(previous)
            same_strategy = previous is not None and previous.strategy is strategy
            bundle = self._render_and_validate(strategy, specs, credentials, certificate)
            _step(scope, "validate", detail={"bundle": bundle.checksum[:16]})
            changed = self._activate(
                adapter,
                bundle,
                previous.artifact_checksums if same_strategy and previous else None,
            )
            _step(scope, "install", detail=sorted(role.value for role in changed))

            result = ProvisionResult(
                strategy=strategy,
                bundle=bundle,
                credentials=sorted(credentials),
                changed_roles=changed,
                firewall_rules=rules,
                warnings=list(bundle.warnings),
            )
            release = previous.release if same_strategy and previous else None
            if start:
                startable = self._startable(strategy, specs, release)
                result.touched = self.controller(strategy, services=startable).apply_changes(changed)
                _step(scope, "start", detail=result.touched)
                if len(startable) < len(specs):
                    result.warnings.append(
                        "The application starts after the first 'stackctl deploy'."
                    )

            now = _now_iso()
            state = ProvisioningState(
                strategy=strategy,
                provisioned_at=previous.provisioned_at if same_strategy and previous else now,
                updated_at=now,
                credentials=sorted(credentials),
                bundle_checksum=bundle.checksum,
                artifact_checksums=bundle.checksums(),
                release=release,
                last_deploy=previous.last_deploy if same_strategy and previous else None,
                certificate=certificate,
            )
            if previous is None:
                self.registry.save_provisioning(state)
            else:

                def _provisioned(current: ProvisioningState) -> None:
                    for item in fields(state):
                        if item.name not in {"certificate", "reload_pending"}:
                            setattr(current, item.name, getattr(state, item.name))

                self._commit(_provisioned, certificate)
            self.writer.prune(KEEP_BUNDLES)
        return result

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------
    def deploy(
        self,
        *,
        token: CancellationToken | None = None,
        scope: OperationScope | None = None,
        lock_timeout: float | None = None,
    ) -> DeployResult:
        """Build and roll out a new release of the application.

        The provisioning record is read again once the run lock is held, so a
        certificate renewed while the release was waiting for the lock is the
        one rendered into the new bundle.
        """
        state = self._require_state()
        strategy = state.strategy
        adapter = self.adapter(strategy)
        controller = self.controller(strategy)
        compose = adapter.compose if isinstance(adapter, ContainerizedAdapter) else None
        builder = ReleaseBuilder(self.config, strategy, compose=compose)
        specs = self.services(strategy)
        rendered: dict[str, Any] = {}

        def render_candidate() -> ArtifactBundle:
            current = self._require_state()
            if current.strategy is not strategy:
                raise ValidationFailure(
                    [f"Host was reprovisioned with '{current.strategy.value}'."],
                    message="Strategy changed while the deploy waited for the run lock.",
                )
            certificate = self._current_certificate(current)
            rendered["certificate"] = certificate
            rendered["checksums"] = current.artifact_checksums
            credentials = self.credentials.values(required_credentials(strategy))
            return self.generator.render(strategy, specs, credentials, certificate)

        def record_swap(result: DeployResult) -> None:
            stamp = _now_iso()

            def _swapped(current: ProvisioningState) -> None:
                current.release = result.release.id
                current.bundle_checksum = result.bundle.checksum
                current.artifact_checksums = result.bundle.checksums()
                current.last_deploy = {
                    "release": result.release.id,
                    "status": "swapped",
                    "timestamp": stamp,
                }
                current.updated_at = stamp

            self._commit(_swapped, rendered.get("certificate"))

        protect = [state.release] if state.release else []
        try:
            result = controller.deploy(
                builder,
                render_candidate,
                previous_checksums=lambda: rendered.get("checksums"),
                token=token,
                scope=scope,
                on_swapped=record_swap,
                keep_releases=self.config.deploy.keep_releases,
                protect_releases=protect,
                lock_timeout=lock_timeout,
            )
        except DeploymentDegraded as exc:
            self._finish_deploy(exc.release, "degraded", unhealthy=list(exc.services))
            raise
        self._finish_deploy(result.release.id, "healthy")
        self.writer.prune(KEEP_BUNDLES)
        return result

    # ------------------------------------------------------------------
    # Credentials and certificates
    # ------------------------------------------------------------------
    def rotate_credential(
        self,
        name: str,
        *,
        scope: OperationScope | None = None,
        lock_timeout: float | None = None,
    ) -> Credential:
        """Rotate *name* and roll the new value out to its consumers."""
        state = self._require_state()
        strategy = state.strategy
        required = required_credentials(strategy)
        if name not in required:
            raise ValidationFailure(
                [f"Unknown credential '{name}'. Known: {', '.join(sorted(required))}."],
                message=f"Credential '{name}' is not used by the {strategy.value} strategy.",
            )
        adapter = self.adapter(strategy)
        with self.locks.exclusive("credentials-rotate", timeout=lock_timeout) as handle:
            if scope is not None:
                scope.set_lock_wait_ms(handle.wait_ms)
            database = adapter.database()

            def push_to_database(credential: Credential) -> None:
                if database is not None and "database" in credential.consumers:
                    database.set_password(credential.value)
                    _step(scope, "database.password", detail=self.config.database.user)

            # The role password changes before the new value is stored; a
            # failure leaves both on the old value.
            rotated = self.credentials.rotate(name, apply=push_to_database)
            _step(scope, "rotate", detail=name)
            current = self._require_state()
            certificate = self._current_certificate(current)
            self._reapply(strategy, current, adapter, certificate, scope=scope)
        return rotated

    def renew_certificate(
        self, domain: str | None = None, *, force: bool = False
    ) -> CertificateRecord:
        """Obtain or renew the certificate for *domain* (default: the public hostname).

        A proxy reload deferred by an earlier renewal is retried here.
        """
        pending = self._reload_pending()
        record = self.certificate_manager().obtain_or_renew(
            domain or self.config.hostnames.public, force=force
        )
        if pending and self._reload_pending():
            self._on_certificate_renewed(record)
        return record

    def regenerate_and_reload(
        self,
        record: CertificateRecord | None = None,
        *,
        lock_timeout: float | None = None,
    ) -> bool:
        """Re-render with the current certificate and reload the proxy, leaving the app alone.

        The certificate on disk wins over *record*, which only stands in when
        none can be loaded.
        """
        with self.locks.exclusive("certificate-reload", timeout=lock_timeout):
            state = self._require_state()
            strategy = state.strategy
            adapter = self.adapter(strategy)
            specs = self.services(strategy)
            certificate = self._current_certificate(state) or record
            credentials = self.credentials.values(required_credentials(strategy))
            bundle = self._render_and_validate(strategy, specs, credentials, certificate)
            changed = self._activate(adapter, bundle, state.artifact_checksums)
            reloaded = self.controller(strategy).reload_proxy(config_changed=bool(changed))
            stamp = _now_iso()

            def _reloaded(current: ProvisioningState) -> None:
                current.bundle_checksum = bundle.checksum
                current.artifact_checksums = bundle.checksums()
                current.updated_at = stamp

            self._commit(_reloaded, certificate)
        if certificate is not None:
            LOGGER.info("Proxy reloaded with certificate for %s", certificate.domain)
        return reloaded

    # ------------------------------------------------------------------
    # Monitoring and scheduling
    # ------------------------------------------------------------------
    def monitor(self, *, disk_path: Path | None = None) -> HealthReport:
        """Run one health cycle for the provisioned stack."""
        health = self.config.health
        guard = CrashLoopGuard(health.max_restarts, health.restart_window, registry=self.registry)
        monitor = HealthMonitor(
            self.controller(),
            health,
            guard=guard,
            disk_path=disk_path or self.config.app.root,
        )
        return monitor.run_once()

    def backup(self) -> BackupRecord:
        """Create a backup now under the shared lock."""
        return self.backup_manager().create()

    def scheduler(self) -> Scheduler:
        """Return a scheduler wired with the recurring tasks for this host."""
        strategy = self.current_strategy()
        scheduler = Scheduler()
        scheduler.add("health", self.config.health.interval, self.monitor)
        if strategy is not DeploymentStrategy.QUICK_DEV:
            scheduler.add(
                "backups", self.config.backups.interval, self.backup_manager(strategy).run_scheduled
            )
            if self.config.tls.enabled:
                scheduler.add("certificates", self.config.tls.check_interval, self.renew_certificate)
        return scheduler

    # ------------------------------------------------------------------
    # Internals (caller holds the exclusive lock unless noted)
    # ------------------------------------------------------------------
    def _require_state(self) -> ProvisioningState:
        state = self.state()
        if state is None:
            raise ValidationFailure(
                ["No provisioning record found."],
                message="Host is not provisioned; run 'stackctl provision STRATEGY' first.",
            )
        return state

    def _ensure_credentials(self, strategy: DeploymentStrategy) -> dict[str, Credential]:
        return {
            name: self.credentials.ensure(name, consumers)
            for name, consumers in required_credentials(strategy).items()
        }

    def _prepare_native_database(
        self,
        adapter: NativeAdapter,
        specs: Iterable[ServiceSpec],
        credentials: dict[str, Credential],
    ) -> None:
        database = [spec for spec in specs if spec.role is ServiceRole.DATABASE]
        controller = self.controller(DeploymentStrategy.NATIVE, services=database)
        controller.bring_up()
        controller.wait_for_database()
        password = next(
            credential.value
            for credential in credentials.values()
            if "database" in credential.consumers
        )
        adapter.postgres.ensure_role(password)
        adapter.postgres.ensure_database()

    def _current_certificate(self, state: ProvisioningState | None) -> CertificateRecord | None:
        if not self.config.tls.enabled:
            return None
        try:
            loaded = self.certificate_manager().load(self.config.hostnames.public)
        except CertificateError as exc:
            LOGGER.warning("Ignoring unreadable certificate: %s", exc)
            loaded = None
        if loaded is not None:
            return loaded
        return state.certificate if state is not None else None

    def _render_and_validate(
        self,
        strategy: DeploymentStrategy,
        specs: Iterable[ServiceSpec],
        credentials: dict[str, Credential],
        certificate: CertificateRecord | None,
    ) -> ArtifactBundle:
        bundle = self.generator.render(strategy, tuple(specs), credentials, certificate)
        staged = self.writer.stage(bundle)
        findings = self.adapter(strategy).validate(staged, bundle)
        if findings:
            raise ValidationFailure(findings, artifact=str(staged))
        return bundle

    def _activate(
        self,
        adapter: LifecycleAdapter,
        bundle: ArtifactBundle,
        previous_checksums: dict[str, str] | None,
    ) -> set[ServiceRole]:
        self.writer.activate(bundle)
        return bundle.roles_changed(previous_checksums) | adapter.install(bundle)

    def _reapply(
        self,
        strategy: DeploymentStrategy,
        state: ProvisioningState,
        adapter: LifecycleAdapter,
        certificate: CertificateRecord | None,
        *,
        scope: OperationScope | None = None,
    ) -> list[str]:
        specs = self.services(strategy)
        credentials = self.credentials.values(required_credentials(strategy))
        bundle = self._render_and_validate(strategy, specs, credentials, certificate)
        changed = self._activate(adapter, bundle, state.artifact_checksums)
        startable = self._startable(strategy, specs, state.release)
        touched = self.controller(strategy, services=startable).apply_changes(changed)
        _step(scope, "apply", detail=touched)
        stamp = _now_iso()

        def _applied(current: ProvisioningState) -> None:
            current.bundle_checksum = bundle.checksum
            current.artifact_checksums = bundle.checksums()
            current.updated_at = stamp

        self._commit(_applied, certificate)
        return touched

    def _startable(
        self,
        strategy: DeploymentStrategy,
        specs: tuple[ServiceSpec, ...],
        release: str | None,
    ) -> list[ServiceSpec]:
        if release is not None or strategy is DeploymentStrategy.QUICK_DEV:
            return list(specs)
        return [spec for spec in specs if spec.role is not ServiceRole.APP]

    def _retire(self, strategy: DeploymentStrategy) -> None:
        adapter = self.adapter(strategy)
        for spec in ordered(self.services(strategy), reverse=True):
            try:
                adapter.stop(spec)
            except ADAPTER_ERRORS as exc:
                LOGGER.warning("Could not stop %s of the %s stack: %s", spec.name, strategy.value, exc)

    def _finish_deploy(
        self,
        release: str | None,
        status: str,
        *,
        unhealthy: list[str] | None = None,
    ) -> None:
        stamp = _now_iso()

        def _finished(current: ProvisioningState) -> None:
            last = current.last_deploy
            if not last or last.get("release") != release:
                return
            current.last_deploy = {**last, "status": status, "timestamp": stamp}
            if unhealthy:
                current.last_deploy["unhealthy"] = unhealthy
            current.updated_at = stamp

        self.registry.update_provisioning(_finished)

    def _commit(
        self,
        update: Callable[[ProvisioningState], None],
        certificate: CertificateRecord | None,
    ) -> None:
        """Apply *update* to the freshest provisioning record.

        *certificate* is the one the active bundle was rendered with. A renewal
        stored after that render keeps its record and its pending reload.
        """

        def _apply(current: ProvisioningState) -> None:
            update(current)
            if current.reload_pending and current.certificate != certificate:
                return
            current.certificate = certificate
            current.reload_pending = False

        self.registry.update_provisioning(_apply)

    def _reload_pending(self) -> bool:
        state = self.state()
        return state is not None and state.reload_pending

    def _on_certificate_renewed(self, record: CertificateRecord) -> None:
        if self.state() is None:
            LOGGER.info("Certificate for %s stored; not provisioned yet, nothing to reload.", record.domain)
            return
        try:
            self.regenerate_and_reload(record)
        except LockTimeoutError:
            LOGGER.warning(
                "Run lock busy; proxy reload for %s deferred to the next certificate check.",
                record.domain,
            )


def _step(
    scope: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: object = None,
) -> None:
    if scope is not None:
        scope.add_step(name, status=status, detail=detail)


__all__ = ["Orchestrator", "ProvisionResult"]
