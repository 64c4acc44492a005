from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class MimirClientConfig:
    """Connection settings for the Mimir ruler API."""

    address: str
    tenant_id: str = ""
    user: str = ""
    key: str = ""
    auth_token: str = ""
    use_legacy_routes: bool = False
    tls_cert_path: str = ""
    tls_key_path: str = ""
    tls_ca_path: str = ""
    insecure_skip_verify: bool = False
    timeout_seconds: int = 30


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        cluster_name:   First segment of every ruler namespace (``cluster:ns:name``).
        pod_name / pod_namespace:
                        Where this replica runs; together they form the lease identity.
        watch_namespace:
                        Namespace to watch for MimirRules; empty watches all namespaces.
        lease_lock_name / lease_lock_namespace:
                        Lease object used for leader election.
    """

    cluster_name: str
    pod_name: str
    pod_namespace: str
    mimir: MimirClientConfig
    watch_namespace: str = ""
    lease_lock_name: str = "mimir-rules-controller"
    lease_lock_namespace: str = ""
    leader_election_enabled: bool = True
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    workers: int = 2
    resync_period_seconds: int = 30
    cache_sync_timeout_seconds: int = 120
    queue_base_delay_seconds: float = 0.005
    queue_max_delay_seconds: float = 1000.0
    health_port: int = 9000
    log_level: str = "INFO"

    @property
    def identity(self) -> str:
        return f"{self.pod_namespace}-{self.pod_name}"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _required(values: Mapping[str, str], name: str) -> str:
    value = values.get(name, "").strip()
    if not value:
        raise ConfigError(f"{name} is required")
    return value


def load_mimir_config(env: Mapping[str, str] | None = None) -> MimirClientConfig:
    values = env if env is not None else os.environ
    tls_cert_path = values.get("MIMIR_TLS_CERT_PATH", "")
    tls_key_path = values.get("MIMIR_TLS_KEY_PATH", "")
    if bool(tls_cert_path) != bool(tls_key_path):
        raise ConfigError("MIMIR_TLS_CERT_PATH and MIMIR_TLS_KEY_PATH must be set together")

    return MimirClientConfig(
        address=_required(values, "MIMIR_ADDRESS"),
        tenant_id=values.get("MIMIR_TENANT_ID", ""),
        user=values.get("MIMIR_USER", ""),
        key=values.get("MIMIR_KEY", ""),
        auth_token=values.get("MIMIR_AUTH_TOKEN", ""),
        use_legacy_routes=parse_bool(values.get("MIMIR_USE_LEGACY_ROUTES")),
        tls_cert_path=tls_cert_path,
        tls_key_path=tls_key_path,
        tls_ca_path=values.get("MIMIR_TLS_CA_PATH", ""),
        insecure_skip_verify=parse_bool(values.get("MIMIR_INSECURE_SKIP_VERIFY")),
        timeout_seconds=env_int("MIMIR_TIMEOUT_SECONDS", 30, minimum=1, env=values),
    )


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load the controller configuration from the environment.

    ``POD_NAME``, ``POD_NAMESPACE`` and ``MIMIR_ADDRESS`` are required;
    everything else has a default. Raises :class:`ConfigError` on the first
    invalid value so the process exits before touching any API.
    """
    values = env if env is not None else os.environ

    pod_name = _required(values, "POD_NAME")
    pod_namespace = _required(values, "POD_NAMESPACE")

    lease_duration_seconds = env_int(
        "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
    )
    renew_deadline_seconds = env_int(
        "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
    )
    retry_period_seconds = env_int(
        "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values
    )
    if renew_deadline_seconds >= lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    base_delay_ms = env_int("QUEUE_BASE_DELAY_MS", 5, minimum=1, env=values)
    max_delay_seconds = env_int("QUEUE_MAX_DELAY_SECONDS", 1000, minimum=1, env=values)
    if max_delay_seconds * 1000 < base_delay_ms:
        raise ConfigError("QUEUE_MAX_DELAY_SECONDS must not be shorter than QUEUE_BASE_DELAY_MS")

    return ControllerConfig(
        cluster_name=values.get("CLUSTER_NAME", "default").strip() or "default",
        pod_name=pod_name,
        pod_namespace=pod_namespace,
        mimir=load_mimir_config(values),
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip(),
        lease_lock_name=values.get("LEASE_LOCK_NAME", "mimir-rules-controller").strip()
        or "mimir-rules-controller",
        lease_lock_namespace=values.get("LEASE_LOCK_NAMESPACE", "").strip() or pod_namespace,
        leader_election_enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        workers=env_int("WORKERS", 2, minimum=1, maximum=64, env=values),
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 30, minimum=0, env=values),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=1, env=values
        ),
        queue_base_delay_seconds=base_delay_ms / 1000.0,
        queue_max_delay_seconds=float(max_delay_seconds),
        health_port=env_int("HEALTH_PORT", 9000, minimum=1, maximum=65535, env=values),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
    )
