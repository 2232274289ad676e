"""Application configuration using pydantic-settings.

Every section reads its own ``KATANACI_<SECTION>__`` prefixed variables, e.g.
``KATANACI_RECONCILE__ENABLED=true``. The two variables understood by earlier
deployments, ``KATANA_CI_IMAGE`` and ``KATANA_CI_USERS_FILE``, are accepted as
aliases.
"""

from functools import lru_cache

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseSettings):
    """Bind address for the HTTP server."""

    model_config = SettingsConfigDict(env_prefix="KATANACI_SERVER__")

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5050)


class DatabaseConfig(BaseSettings):
    """SQLite datastore configuration."""

    model_config = SettingsConfigDict(env_prefix="KATANACI_DATABASE__")

    url: str = Field(default="sqlite+aiosqlite:///./data.db")
    echo: bool = False
    busy_timeout_ms: int = Field(default=5000)


class DockerConfig(BaseSettings):
    """Docker engine and sequencer container configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KATANACI_DOCKER__", populate_by_name=True
    )

    host: str = Field(
        default="unix:///var/run/docker.sock",
        validation_alias=AliasChoices("KATANACI_DOCKER__HOST", "DOCKER_HOST"),
    )
    image: str | None = Field(
        default=None,
        validation_alias=AliasChoices("KATANACI_DOCKER__IMAGE", "KATANA_CI_IMAGE"),
    )
    api_timeout: float = Field(default=30.0)  # seconds (Docker API calls)
    image_pull_timeout: float = Field(default=600.0)  # seconds
    stop_timeout: int = Field(default=5)  # seconds before SIGKILL
    container_prefix: str = Field(default="katana-ci-")
    label: str = Field(default="katana-ci.instance")
    owner_label: str = Field(default="katana-ci.owner")
    publish_ip: str = Field(default="127.0.0.1")


class PortsConfig(BaseSettings):
    """Host port range handed out to instances (end is exclusive)."""

    model_config = SettingsConfigDict(env_prefix="KATANACI_PORTS__")

    range_start: int = Field(default=10001)
    range_end: int = Field(default=65000)
    max_attempts: int = Field(default=64)

    @model_validator(mode="after")
    def check_range(self) -> "PortsConfig":
        if not 0 < self.range_start < self.range_end <= 65536:
            raise ValueError(
                f"Invalid port range [{self.range_start}, {self.range_end})"
            )
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        return self


class InstancesConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KATANACI_INSTANCES__")

    name_max_attempts: int = Field(default=8)
    default_log_lines: int = Field(default=25)


class TenantsConfig(BaseSettings):
    """Tenant seeding and credential cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KATANACI_TENANTS__", populate_by_name=True
    )

    seed_file: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "KATANACI_TENANTS__SEED_FILE", "KATANA_CI_USERS_FILE"
        ),
    )
    cache_maxsize: int = Field(default=1000)
    cache_ttl: float = Field(default=3.0)  # seconds


class ProxyConfig(BaseSettings):
    """HTTP/WebSocket proxy configuration."""

    model_config = SettingsConfigDict(env_prefix="KATANACI_PROXY__")

    upstream_host: str = Field(default="127.0.0.1")

    # HTTP timeouts
    timeout_total: float = Field(default=60.0)  # seconds
    timeout_connect: float = Field(default=5.0)  # seconds
    timeout_pool: float = Field(default=5.0)  # seconds (wait for pooled connection)

    max_connections: int = Field(default=200)
    max_keepalive: int = Field(default=40)
    keepalive_expiry: float = Field(default=30.0)  # seconds

    # WebSocket settings
    ws_ping_interval: float = Field(default=20.0)  # seconds
    ws_ping_timeout: float = Field(default=20.0)  # seconds
    ws_max_size: int = Field(default=16 * 1024 * 1024)  # 16MB
    ws_max_queue: int = Field(default=64)


class ReconcileConfig(BaseSettings):
    """Periodic Registry/engine reconciliation."""

    model_config = SettingsConfigDict(env_prefix="KATANACI_RECONCILE__")

    enabled: bool = Field(default=False)
    interval: float = Field(default=60.0)  # seconds
    grace_seconds: float = Field(default=60.0)  # orphan age before removal


class CorsConfig(BaseSettings):
    """Cross-origin access for browser-based CI dashboards.

    Lists are read as JSON, e.g.
    ``KATANACI_CORS__ALLOW_ORIGINS='["https://ci.example"]'``.
    """

    model_config = SettingsConfigDict(env_prefix="KATANACI_CORS__")

    allow_origins: list[str] = Field(default=["*"])
    allow_credentials: bool = False


class MetricsConfig(BaseSettings):
    """Prometheus metrics configuration."""

    model_config = SettingsConfigDict(env_prefix="KATANACI_METRICS__")

    enabled: bool = Field(default=True)


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Standard fields added to all logs:
    - schema_version: Log schema version for backwards compatibility
    - service: Service name (katana-ci)

    Rate limiting:
    - Prevents log storms from repeated messages
    - ERROR logs bypass rate limiting (always logged)
    """

    model_config = SettingsConfigDict(env_prefix="KATANACI_LOGGING__")

    level: str = Field(default="INFO")
    json_output: bool = Field(default=True)
    schema_version: str = Field(default="1.0")
    slow_threshold_ms: float = Field(default=1000.0)
    rate_limit_per_minute: int = Field(default=100)
    service_name: str = Field(default="katana-ci")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KATANACI_", extra="ignore")

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    ports: PortsConfig = Field(default_factory=PortsConfig)
    instances: InstancesConfig = Field(default_factory=InstancesConfig)
    tenants: TenantsConfig = Field(default_factory=TenantsConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


@lru_cache
def get_settings() -> Settings:
    return Settings()
