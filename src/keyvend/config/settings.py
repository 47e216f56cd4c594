"""Frozen settings objects built from the validated config document.

Defaults live in the ``_build_*`` functions below; the JSON Schema only
describes them.  Code reads settings through :func:`keyvend.config.get_config`::

    orders = get_config().settings.orders
    orders.ttl_days, orders.price_per_key
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerSettings:
    """HTTP server configuration (bind address, workers, webhook)."""

    bind: str
    port: int
    workers: int
    worker_class: str
    timeout: int
    graceful_timeout: int
    keepalive: int
    webhook_path: str
    webhook_secret: str


def _build_server(data: dict | None) -> ServerSettings:
    d = data or {}
    return ServerSettings(
        bind=d.get("bind", "0.0.0.0"),  # noqa: S104
        port=d.get("port", 8080),
        workers=d.get("workers", 1),
        worker_class=d.get("worker_class", "gthread"),
        timeout=d.get("timeout", 60),
        graceful_timeout=d.get("graceful_timeout", 30),
        keepalive=d.get("keepalive", 2),
        webhook_path=d.get("webhook_path", "/webhook"),
        webhook_secret=d.get("webhook_secret", ""),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditLogSettings:
    """Where ``keyvend.audit`` records go and how the file rotates."""

    enabled: bool
    file: str | None
    max_file_size_bytes: int
    backup_count: int


@dataclass(frozen=True)
class LoggingSettings:
    """Console level and format plus the audit sub-section."""

    level: str
    format: str
    audit: AuditLogSettings


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    a = d.get("audit") or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "json"),
        audit=AuditLogSettings(
            enabled=a.get("enabled", True),
            file=a.get("file"),
            max_file_size_bytes=a.get("max_file_size_bytes", 104857600),
            backup_count=a.get("backup_count", 10),
        ),
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Order store connection and psycopg pool sizing."""

    host: str
    port: int
    database: str
    user: str
    password: str
    sslmode: str
    min_connections: int
    max_connections: int
    connection_timeout: float
    auto_setup: bool


def _build_database(data: dict | None) -> DatabaseSettings:
    d = data or {}
    return DatabaseSettings(
        host=d.get("host", "localhost"),
        port=d.get("port", 5432),
        database=d["database"],
        user=d["user"],
        password=d.get("password", ""),
        sslmode=d.get("sslmode", "prefer"),
        min_connections=d.get("min_connections", 2),
        max_connections=d.get("max_connections", 10),
        connection_timeout=d.get("connection_timeout", 30.0),
        auto_setup=d.get("auto_setup", False),
    )


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CircuitBreakerSettings:
    enabled: bool
    failure_threshold: int
    recovery_timeout_seconds: float


@dataclass(frozen=True)
class ProvisioningSettings:
    """Remote key-management API (backend, endpoint, transport)."""

    backend: str
    api_url: str
    timeout_seconds: float
    verify_tls: bool
    ca_cert_path: str | None
    max_retries: int
    retry_delay_seconds: float
    circuit_breaker: CircuitBreakerSettings
    cert_sha256: str | None = None


def _build_provisioning(data: dict | None) -> ProvisioningSettings:
    d = data or {}
    cb = d.get("circuit_breaker") or {}
    pin = d.get("cert_sha256")
    return ProvisioningSettings(
        backend=d.get("backend", "outline"),
        api_url=d["api_url"],
        timeout_seconds=d.get("timeout_seconds", 5.0),
        verify_tls=d.get("verify_tls", True),
        ca_cert_path=d.get("ca_cert_path"),
        max_retries=d.get("max_retries", 2),
        retry_delay_seconds=d.get("retry_delay_seconds", 1.0),
        circuit_breaker=CircuitBreakerSettings(
            enabled=cb.get("enabled", True),
            failure_threshold=cb.get("failure_threshold", 5),
            recovery_timeout_seconds=cb.get("recovery_timeout_seconds", 30.0),
        ),
        cert_sha256=pin.replace(":", "").upper() if pin else None,
    )


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatSettings:
    """Chat bot gateway, operator identity and payment instructions."""

    enabled: bool
    api_url: str
    timeout_seconds: float
    operator_id: int
    payment_url: str
    templates_path: str | None


def _build_chat(data: dict | None) -> ChatSettings:
    d = data or {}
    return ChatSettings(
        enabled=d.get("enabled", True),
        api_url=d.get("api_url", ""),
        timeout_seconds=d.get("timeout_seconds", 10.0),
        operator_id=int(d["operator_id"]),
        payment_url=d.get("payment_url", ""),
        templates_path=d.get("templates_path"),
    )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderSettings:
    """Pricing, lifetime and quota rules for orders."""

    ttl_days: int
    price_per_key: int
    max_keys_per_owner: int
    key_count_choices: tuple[int, ...]
    currency: str

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.ttl_days)


def _build_orders(data: dict | None) -> OrderSettings:
    d = data or {}
    return OrderSettings(
        ttl_days=d.get("ttl_days", 30),
        price_per_key=d.get("price_per_key", 150),
        max_keys_per_owner=d.get("max_keys_per_owner", 10),
        key_count_choices=tuple(d.get("key_count_choices", [1, 2, 3])),
        currency=d.get("currency", "RUB"),
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchedulerSettings:
    """Background expiration worker intervals."""

    enabled: bool
    loop_interval_seconds: int
    notify_before_expiry_seconds: int
    notify_interval_seconds: int
    deactivate_interval_seconds: int
    revocation_retry_interval_seconds: int

    @property
    def notify_window(self) -> timedelta:
        return timedelta(seconds=self.notify_before_expiry_seconds)


def _build_scheduler(data: dict | None) -> SchedulerSettings:
    d = data or {}
    return SchedulerSettings(
        enabled=d.get("enabled", True),
        loop_interval_seconds=d.get("loop_interval_seconds", 5),
        notify_before_expiry_seconds=d.get("notify_before_expiry_seconds", 259200),
        notify_interval_seconds=d.get("notify_interval_seconds", 30),
        deactivate_interval_seconds=d.get("deactivate_interval_seconds", 3600),
        revocation_retry_interval_seconds=d.get("revocation_retry_interval_seconds", 600),
    )


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InteractionSettings:
    """Per-owner pending conversation state (TTL and capacity)."""

    ttl_seconds: int
    max_entries: int


def _build_interactions(data: dict | None) -> InteractionSettings:
    d = data or {}
    return InteractionSettings(
        ttl_seconds=d.get("ttl_seconds", 86400),
        max_entries=d.get("max_entries", 100),
    )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricsSettings:
    enabled: bool
    path: str


def _build_metrics(data: dict | None) -> MetricsSettings:
    d = data or {}
    return MetricsSettings(
        enabled=d.get("enabled", False),
        path=d.get("path", "/metrics"),
    )


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyvendSettings:
    """Root settings object -- one attribute per config section."""

    server: ServerSettings
    logging: LoggingSettings
    database: DatabaseSettings
    provisioning: ProvisioningSettings
    chat: ChatSettings
    orders: OrderSettings
    scheduler: SchedulerSettings
    interactions: InteractionSettings
    metrics: MetricsSettings


def build_settings(data: dict) -> KeyvendSettings:
    """Turn the validated config mapping into :class:`KeyvendSettings`.

    Called once during :class:`KeyvendConfig` initialization after
    schema validation and environment-variable resolution.
    """
    return KeyvendSettings(
        server=_build_server(data.get("server")),
        logging=_build_logging(data.get("logging")),
        database=_build_database(data.get("database")),
        provisioning=_build_provisioning(data.get("provisioning")),
        chat=_build_chat(data.get("chat")),
        orders=_build_orders(data.get("orders")),
        scheduler=_build_scheduler(data.get("scheduler")),
        interactions=_build_interactions(data.get("interactions")),
        metrics=_build_metrics(data.get("metrics")),
    )
