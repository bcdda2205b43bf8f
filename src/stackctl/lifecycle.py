"""Uniform start/stop/restart/status/deploy over any strategy adapter."""
from __future__ import annotations

import logging
import shlex
import shutil
import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .adapters import ADAPTER_ERRORS, LifecycleAdapter, Release
from .config import AppConfig
from .errors import (
    DeployCancelled,
    DeploymentDegraded,
    PartialApplyFailure,
    StackError,
    ValidationFailure,
)
from .generator import ArtifactWriter, app_image
from .health import HealthProber
from .locking import LockManager
from .logging import OperationScope
from .models import ArtifactBundle, DeploymentStrategy, ServiceRole, ServiceSpec, ServiceState
from .providers import ComposeError, ComposeProvider, run_command
from .services import ordered
from .state import StateRegistry

LOGGER = logging.getLogger(__name__)

_COPY_IGNORE = shutil.ignore_patterns("node_modules", ".git")
OPERATOR_STATE = "operator.yml"


class BuildError(RuntimeError):
    """Raised when fetching or building a release fails."""


class CancellationToken:
    """Cooperative cancellation for long-running deploys.

    Cancellation is honoured at every :meth:`check` until :meth:`begin_swap`
    is called. After that point a cancel request is logged and ignored so
    services are never left half swapped.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._swapping = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def swapping(self) -> bool:
        return self._swapping

    def cancel(self) -> bool:
        """Request cancellation; return ``False`` when the swap already started."""
        with self._lock:
            if self._swapping:
                LOGGER.warning("Cancellation refused: services are being swapped.")
                return False
            self._event.set()
            return True

    def check(self) -> None:
        """Raise :class:`DeployCancelled` when cancellation was requested."""
        if self._event.is_set():
            raise DeployCancelled("Deploy cancelled before services were touched.")

    def begin_swap(self) -> None:
        """Mark the point of no return (raises if already cancelled)."""
        with self._lock:
            self.check()
            self._swapping = True


def new_release_id(now: datetime | None = None) -> str:
    """Return a sortable release identifier."""
    moment = now or datetime.now(tz=UTC)
    return moment.strftime("%Y%m%d%H%M%S")


class ReleaseBuilder:
    """Fetch the application source and build a release."""

    def __init__(
        self,
        config: AppConfig,
        strategy: DeploymentStrategy,
        *,
        compose: ComposeProvider | None = None,
    ) -> None:
        self.config = config
        self.strategy = strategy
        self.compose = compose

    def build(self, release_id: str, token: CancellationToken | None = None) -> Release:
        """Produce the release *release_id*."""
        app = self.config.app
        if self.strategy is DeploymentStrategy.QUICK_DEV:
            source = app.source_dir or app.root
            self._run(app.install_command, cwd=source, token=token)
            return Release(id=release_id, path=source)

        target = app.releases_dir / release_id
        if target.exists():
            raise BuildError(f"Release directory already exists: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._fetch(target)
            if token is not None:
                token.check()
            if self.strategy is DeploymentStrategy.CONTAINERIZED:
                if self.compose is None:
                    raise BuildError("Containerized builds need a compose provider.")
                image = app_image(self.config, release_id)
                try:
                    self.compose.build(target, image)
                except ComposeError as exc:
                    raise BuildError(str(exc)) from exc
                return Release(id=release_id, path=target, image=image)
            self._run(app.install_command, cwd=target, token=token)
            self._run(app.build_command, cwd=target, token=token)
        except BaseException:
            shutil.rmtree(target, ignore_errors=True)
            raise
        return Release(id=release_id, path=target)

    def migration_argv(self, release: Release) -> list[str] | None:
        """Return the migration command for *release*, or ``None`` to skip it.

        A relative script path such as ``./scripts/migrate.sh`` is optional:
        releases that do not ship it simply have no migrations.
        """
        command = self.config.deploy.migrate_command.strip()
        if not command:
            return None
        argv = shlex.split(command)
        script = Path(argv[0])
        if release.path is not None and "/" in argv[0] and not script.is_absolute():
            if not (release.path / script).is_file():
                LOGGER.info("Release %s ships no %s; skipping migrations.", release.id, argv[0])
                return None
        return argv

    def discard(self, release: Release) -> None:
        """Remove a release that never went live."""
        if self.strategy is DeploymentStrategy.QUICK_DEV or release.path is None:
            return
        shutil.rmtree(release.path, ignore_errors=True)

    def prune(self, keep: int, protect: Iterable[str] = ()) -> list[str]:
        """Delete the oldest releases beyond *keep*, never those in *protect*."""
        releases_dir = self.config.app.releases_dir
        if self.strategy is DeploymentStrategy.QUICK_DEV or not releases_dir.exists():
            return []
        protected = {item for item in protect if item}
        candidates = sorted(
            (path for path in releases_dir.iterdir() if path.is_dir()),
            key=lambda path: path.name,
            reverse=True,
        )
        removed: list[str] = []
        for path in candidates[keep:]:
            if path.name in protected:
                continue
            shutil.rmtree(path, ignore_errors=True)
            removed.append(path.name)
        return removed

    def _fetch(self, target: Path) -> None:
        app = self.config.app
        if app.repository:
            run_command(
                [
                    self.config.tools.git_bin,
                    "clone",
                    "--depth",
                    "1",
                    "--branch",
                    app.branch,
                    app.repository,
                    str(target),
                ],
                error=BuildError,
                error_prefix="git clone",
                timeout=600,
            )
            return
        if app.source_dir is not None:
            if not app.source_dir.is_dir():
                raise BuildError(f"Source directory {app.source_dir} does not exist.")
            shutil.copytree(app.source_dir, target, ignore=_COPY_IGNORE, symlinks=True)
            return
        raise BuildError("Configure app.repository or app.source_dir to build releases.")

    def _run(self, command: str, *, cwd: Path, token: CancellationToken | None) -> None:
        if token is not None:
            token.check()
        if not command.strip():
            return
        run_command(
            shlex.split(command),
            error=BuildError,
            error_prefix=command,
            cwd=cwd,
            timeout=1800,
        )


@dataclass
class DeployResult:
    """What a deploy changed."""

    release: Release
    bundle: ArtifactBundle
    changed_roles: set[ServiceRole] = field(default_factory=set)
    restarted: list[str] = field(default_factory=list)
    unhealthy: list[str] = field(default_factory=list)
    pruned_releases: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "release": self.release.to_dict(),
            "bundle": self.bundle.checksum,
            "changed_roles": sorted(role.value for role in self.changed_roles),
            "restarted": list(self.restarted),
            "unhealthy": list(self.unhealthy),
            "pruned_releases": list(self.pruned_releases),
        }


class ServiceLifecycleController:
    """Drive the managed services in dependency order.

    Public operations take the run lock themselves. Methods documented as
    requiring the caller to hold the lock are used by the orchestrator while
    it already holds the exclusive lock.
    """

    def __init__(
        self,
        adapter: LifecycleAdapter,
        services: Sequence[ServiceSpec],
        locks: LockManager,
        *,
        prober: HealthProber | None = None,
        writer: ArtifactWriter | None = None,
        grace_period: float = 60.0,
        poll_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        registry: StateRegistry | None = None,
    ) -> None:
        self.adapter = adapter
        self.services = ordered(list(services))
        self.locks = locks
        self.prober = prober or HealthProber()
        self.writer = writer or ArtifactWriter(adapter.artifacts_dir)
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.registry = registry
        self._held: set[str] = set()

    # ------------------------------------------------------------------
    # Operator stops
    # ------------------------------------------------------------------
    def held_down(self) -> set[str]:
        """Return the services an operator stopped and nothing has started since."""
        if self.registry is None:
            return set(self._held)
        data = self.registry.read(OPERATOR_STATE, default={})
        stopped = data.get("stopped") if isinstance(data, Mapping) else None
        if not isinstance(stopped, list):
            return set()
        return {str(name) for name in stopped}

    def _set_held(self, names: Iterable[str]) -> None:
        held = sorted(set(names))
        if self.registry is None:
            self._held = set(held)
            return
        self.registry.write(OPERATOR_STATE, {"stopped": held})

    def _release_held(self, names: Iterable[str]) -> None:
        held = self.held_down()
        remaining = held - set(names)
        if remaining != held:
            self._set_held(remaining)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def select(self, names: Iterable[str] | None) -> list[ServiceSpec]:
        """Return the specs named in *names* (all when ``None``)."""
        if names is None:
            return list(self.services)
        wanted = set(names)
        unknown = wanted - {spec.name for spec in self.services}
        if unknown:
            raise ValidationFailure(
                [f"Unknown service: {name}" for name in sorted(unknown)],
                message="Unknown service requested.",
            )
        return [spec for spec in self.services if spec.name in wanted]

    def is_healthy(self, spec: ServiceSpec) -> bool:
        """Return the health verdict for *spec*."""
        verdict = self.adapter.check_health(spec)
        if verdict is not None:
            return verdict
        return self.prober.check(spec)

    def service_state(self, spec: ServiceSpec) -> ServiceState:
        """Return the observed state of *spec* without taking the lock."""
        try:
            alive = self.adapter.is_alive(spec)
        except ADAPTER_ERRORS as exc:
            LOGGER.debug("Could not query %s: %s", spec.name, exc)
            return ServiceState.UNKNOWN
        if alive is None:
            return ServiceState.UNKNOWN
        if not alive:
            return ServiceState.STOPPED
        return ServiceState.RUNNING if self.is_healthy(spec) else ServiceState.DEGRADED

    def snapshot(self) -> dict[str, ServiceState]:
        """Return the state of every service without taking the lock."""
        return {spec.name: self.service_state(spec) for spec in self.services}

    def logs(self, name: str, *, lines: int = 100) -> str:
        """Return the last *lines* lines of output of the service *name*."""
        (spec,) = self.select([name])
        return self.adapter.logs(spec, lines)

    def status(self, *, lock_timeout: float | None = None) -> dict[str, ServiceState]:
        """Return the state of every service under the shared lock."""
        with self.locks.shared("status", timeout=lock_timeout):
            return self.snapshot()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def start(self, *, lock_timeout: float | None = None) -> list[str]:
        """Start every stopped service in dependency order."""
        with self.locks.exclusive("start", timeout=lock_timeout):
            started = self.bring_up()
            self._set_held(())
            return started

    def stop(self, *, lock_timeout: float | None = None) -> list[str]:
        """Stop every service in reverse dependency order.

        Stopped services stay down: the health monitor leaves them alone
        until ``start``, ``restart`` or a deploy brings them back.
        """
        with self.locks.exclusive("stop", timeout=lock_timeout):
            stopped: list[str] = []
            for spec in ordered(self.services, reverse=True):
                self.adapter.stop(spec)
                stopped.append(spec.name)
                self._set_held(stopped)
            return stopped

    def restart(
        self,
        names: Iterable[str] | None = None,
        *,
        lock_timeout: float | None = None,
        operation: str = "restart",
    ) -> list[str]:
        """Restart *names* (all when ``None``) in dependency order.

        Only the named services are touched; one that is not running is
        started instead.
        """
        specs = self.select(names)
        with self.locks.exclusive(operation, timeout=lock_timeout):
            return self.restart_services(specs)

    def restart_services(self, specs: Sequence[ServiceSpec]) -> list[str]:
        """Restart exactly *specs*. Caller holds the run lock."""
        restarted: list[str] = []
        for spec in specs:
            if self.adapter.is_alive(spec):
                self.adapter.restart(spec)
            else:
                self.adapter.start(spec)
            restarted.append(spec.name)
            if spec.role is ServiceRole.DATABASE:
                self.wait_for_database()
        self._release_held(restarted)
        return restarted

    def bring_up(self) -> list[str]:
        """Start services that are not running. Caller holds the run lock."""
        started: list[str] = []
        for spec in self.services:
            if self.service_state(spec) in {ServiceState.RUNNING, ServiceState.DEGRADED}:
                continue
            self.adapter.start(spec)
            started.append(spec.name)
            if spec.role is ServiceRole.DATABASE:
                self.wait_for_database()
        return started

    def apply_changes(self, roles: set[ServiceRole], *, force: bool = False) -> list[str]:
        """Restart or reload services whose configuration changed.

        Services not running are started instead. The database is verified
        ready before the app, and the proxy is reloaded last. Caller holds
        the run lock.
        """
        touched: list[str] = []
        for spec in self.services:
            alive = self.adapter.is_alive(spec)
            if not alive:
                self.adapter.start(spec)
                touched.append(spec.name)
            elif spec.role in roles:
                if spec.role is ServiceRole.PROXY and not force:
                    self.adapter.reload(spec, config_changed=True)
                else:
                    self.adapter.restart(spec)
                touched.append(spec.name)
            if spec.role is ServiceRole.DATABASE:
                self.wait_for_database()
        self._release_held(touched)
        return touched

    def ensure_database(self) -> None:
        """Start the database when it is down and wait for it. Caller holds the run lock."""
        for spec in self.services:
            if spec.role is ServiceRole.DATABASE and not self.adapter.is_alive(spec):
                self.adapter.start(spec)
        self.wait_for_database()

    def reload_proxy(self, *, config_changed: bool) -> bool:
        """Reload the proxy in place. Caller holds the run lock."""
        for spec in self.services:
            if spec.role is ServiceRole.PROXY:
                self.adapter.reload(spec, config_changed=config_changed)
                return True
        return False

    def wait_for_database(self, timeout: float | None = None) -> None:
        """Block until the database is ready or raise after *timeout*."""
        limit = self.grace_period if timeout is None else timeout
        deadline = time.monotonic() + limit
        while True:
            if self.adapter.database_ready(timeout=min(5.0, max(limit, 0.1))):
                return
            if time.monotonic() >= deadline:
                raise StackError(
                    f"Database did not become ready within {limit:.0f}s.",
                    service="database",
                    check="readiness",
                )
            self.sleep(self.poll_interval)

    def await_healthy(self, specs: Sequence[ServiceSpec] | None = None) -> list[str]:
        """Poll until every spec is healthy; return those still failing at the deadline."""
        pending = list(specs if specs is not None else self.services)
        deadline = time.monotonic() + self.grace_period
        while True:
            pending = [spec for spec in pending if not self.is_healthy(spec)]
            if not pending or time.monotonic() >= deadline:
                return [spec.name for spec in pending]
            self.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------
    def deploy(
        self,
        builder: ReleaseBuilder,
        render_candidate: Callable[[], ArtifactBundle],
        *,
        previous_checksums: (
            Mapping[str, str] | Callable[[], Mapping[str, str] | None] | None
        ) = None,
        token: CancellationToken | None = None,
        scope: OperationScope | None = None,
        on_swapped: Callable[[DeployResult], None] | None = None,
        keep_releases: int = 5,
        protect_releases: Iterable[str] = (),
        lock_timeout: float | None = None,
    ) -> DeployResult:
        """Build, validate and swap in a new release.

        Nothing running is touched until the candidate bundle validates.
        Post-swap health failures raise :class:`DeploymentDegraded` after
        *on_swapped* has recorded the new release; there is no rollback.
        *previous_checksums* may be a callable, evaluated after
        *render_candidate* under the lock.
        """
        token = token or CancellationToken()
        with self.locks.exclusive("deploy", timeout=lock_timeout) as handle:
            if scope is not None:
                scope.set_lock_wait_ms(handle.wait_ms)
            token.check()
            release = builder.build(new_release_id(), token)
            _step(scope, "build", detail=release.to_dict())
            try:
                bundle = render_candidate()
                staged = self.writer.stage(bundle)
                findings = self.adapter.validate(staged, bundle)
                if findings:
                    _step(scope, "validate", status="failed", detail=findings)
                    raise ValidationFailure(findings, artifact=str(staged))
                _step(scope, "validate", detail={"bundle": bundle.checksum[:16]})
                token.begin_swap()
            except BaseException:
                builder.discard(release)
                raise

            result = DeployResult(release=release, bundle=bundle)
            try:
                self.writer.activate(bundle)
                previous = (
                    previous_checksums() if callable(previous_checksums) else previous_checksums
                )
                result.changed_roles = bundle.roles_changed(previous)
                result.changed_roles |= self.adapter.install(bundle)
                self.adapter.activate_release(release)
                result.changed_roles.add(ServiceRole.APP)
                _step(scope, "swap", detail={"release": release.id})
                self._migrate(builder, release, scope)
                result.restarted = self.apply_changes(result.changed_roles)
                _step(scope, "restart", detail=result.restarted)
            except PartialApplyFailure:
                raise
            except (StackError, *ADAPTER_ERRORS) as exc:
                LOGGER.critical("Deploy of %s failed after the swap began: %s", release.id, exc)
                raise PartialApplyFailure(
                    f"Release {release.id} was partially applied: {exc}",
                    check="swap",
                ) from exc

            if on_swapped is not None:
                on_swapped(result)
            result.pruned_releases = builder.prune(
                max(2, keep_releases), protect=[release.id, *protect_releases]
            )
            result.unhealthy = self.await_healthy()
            _step(
                scope,
                "health",
                status="failed" if result.unhealthy else "success",
                detail=result.unhealthy,
            )
        if result.unhealthy:
            raise DeploymentDegraded(result.unhealthy, release=release.id)
        return result

    def _migrate(
        self,
        builder: ReleaseBuilder,
        release: Release,
        scope: OperationScope | None,
    ) -> None:
        argv = builder.migration_argv(release)
        if argv is None:
            return
        try:
            self.ensure_database()
            self.adapter.run_migrations(release, argv)
        except (StackError, *ADAPTER_ERRORS) as exc:
            _step(scope, "migrate", status="failed", detail=str(exc))
            LOGGER.critical("Migrations for %s failed: %s", release.id, exc)
            raise PartialApplyFailure(
                f"Migrations for release {release.id} failed; the app was not restarted: {exc}",
                check="migrate",
            ) from exc
        _step(scope, "migrate", detail=argv)


def _step(
    scope: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: object = None,
) -> None:
    if scope is not None:
        scope.add_step(name, status=status, detail=detail)


__all__ = [
    "BuildError",
    "CancellationToken",
    "DeployResult",
    "ReleaseBuilder",
    "ServiceLifecycleController",
    "new_release_id",
]
