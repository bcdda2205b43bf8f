"""Service topology derived from configuration and strategy."""
from __future__ import annotations

from .config import AppConfig
from .models import (
    DeploymentStrategy,
    HealthCheck,
    ResourceLimits,
    RestartPolicy,
    ServiceRole,
    ServiceSpec,
)

DATABASE = "database"
APP = "app"
PROXY = "proxy"

START_ORDER: tuple[ServiceRole, ...] = (ServiceRole.DATABASE, ServiceRole.APP, ServiceRole.PROXY)


def build_service_specs(config: AppConfig, strategy: DeploymentStrategy) -> tuple[ServiceSpec, ...]:
    """Return the services run by *strategy*, in start order."""
    timeout = config.health.probe_timeout
    app = config.app
    app_spec = ServiceSpec(
        name=APP,
        role=ServiceRole.APP,
        port=app.port,
        health_check=HealthCheck.url(
            f"http://127.0.0.1:{app.port}{app.health_path}", timeout=timeout
        ),
        restart_policy=RestartPolicy(
            mode="always",
            max_restarts=app.max_restarts,
            backoff_ms=app.restart_delay_ms,
            min_uptime_s=_seconds(app.min_uptime),
        ),
        limits=ResourceLimits(
            memory=app.memory_limit,
            replicas="1" if strategy is DeploymentStrategy.QUICK_DEV else app.instances,
        ),
    )
    if strategy is DeploymentStrategy.QUICK_DEV:
        return (app_spec,)

    database = config.database
    database_spec = ServiceSpec(
        name=DATABASE,
        role=ServiceRole.DATABASE,
        port=database.port,
        health_check=HealthCheck.command(
            (
                config.tools.pg_isready_bin,
                "-h",
                database.host,
                "-p",
                str(database.port),
                "-U",
                database.user,
                "-d",
                database.name,
            ),
            timeout=timeout,
        ),
        restart_policy=RestartPolicy(mode="always"),
        limits=ResourceLimits(memory="", replicas="1"),
    )
    proxy_spec = ServiceSpec(
        name=PROXY,
        role=ServiceRole.PROXY,
        port=80,
        health_check=HealthCheck.tcp("127.0.0.1", 80, timeout=timeout),
        restart_policy=RestartPolicy(mode="always"),
        limits=ResourceLimits(memory="", replicas="1"),
    )
    return (database_spec, app_spec, proxy_spec)


def ordered(specs: tuple[ServiceSpec, ...] | list[ServiceSpec], *, reverse: bool = False) -> list[ServiceSpec]:
    """Return *specs* sorted by start order (or stop order with ``reverse``)."""
    rank = {role: index for index, role in enumerate(START_ORDER)}
    return sorted(specs, key=lambda spec: rank[spec.role], reverse=reverse)


def _seconds(value: str) -> int:
    text = value.strip().lower()
    multipliers = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}
    for suffix in ("ms", "s", "m", "h"):
        if text.endswith(suffix):
            number = text[: -len(suffix)]
            try:
                return int(float(number) * multipliers[suffix])
            except ValueError:
                return 0
    try:
        return int(text) // 1000
    except ValueError:
        return 0


__all__ = ["APP", "DATABASE", "PROXY", "START_ORDER", "build_service_specs", "ordered"]
