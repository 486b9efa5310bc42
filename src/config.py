"""
Configuration module for the Redis PaaS status controller.

Loads configuration from environment variables. The resulting Config value
is passed explicitly to every component that needs it.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "redis_paas"
    user: str = "redis_paas"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "redis_paas"),
            user=os.getenv("DB_USER", "redis_paas"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class KubeConfig:
    """Kubernetes access configuration."""

    # Path to a kubeconfig file; in-cluster config is always tried first
    kubeconfig_path: Optional[str] = None

    instance_group: str = "databases.spotahome.com"
    instance_version: str = "v1"
    instance_plural: str = "redisfailovers"
    instance_kind: str = "RedisFailover"

    # Deadline in seconds for list/get calls and for opening a watch
    request_timeout: float = 10.0

    # Server-side lifetime of one watch session, in seconds
    watch_timeout: int = 300

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig_path=os.getenv("KUBECONFIG_PATH") or None,
            instance_group=os.getenv("INSTANCE_GROUP", "databases.spotahome.com"),
            instance_version=os.getenv("INSTANCE_VERSION", "v1"),
            instance_plural=os.getenv("INSTANCE_PLURAL", "redisfailovers"),
            instance_kind=os.getenv("INSTANCE_KIND", "RedisFailover"),
            request_timeout=float(os.getenv("KUBE_REQUEST_TIMEOUT", "10")),
            watch_timeout=int(os.getenv("WATCH_TIMEOUT_SECONDS", "300")),
        )

    @property
    def api_version(self) -> str:
        return f"{self.instance_group}/{self.instance_version}"


@dataclass
class ReconcilerConfig:
    """Status reconciler configuration."""

    sync_interval: float = 30.0  # seconds between full sync passes

    # Watch reconnect backoff
    backoff_initial: float = 0.5  # seconds
    backoff_max: float = 30.0  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            sync_interval=float(os.getenv("STATUS_SYNC_INTERVAL", "30")),
            backoff_initial=float(os.getenv("WATCH_BACKOFF_INITIAL", "0.5")),
            backoff_max=float(os.getenv("WATCH_BACKOFF_MAX", "30")),
        )


@dataclass
class ProbeConfig:
    """Health probe server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("PROBE_HOST", "0.0.0.0"),
            port=int(os.getenv("PROBE_PORT", "8080")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    kube: KubeConfig
    reconciler: ReconcilerConfig
    probes: ProbeConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            kube=KubeConfig.from_env(),
            reconciler=ReconcilerConfig.from_env(),
            probes=ProbeConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            kube=KubeConfig(),
            reconciler=ReconcilerConfig(),
            probes=ProbeConfig(),
        )
