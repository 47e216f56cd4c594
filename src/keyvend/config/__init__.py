"""Configuration subsystem for keyvend.

Public API::

    from keyvend.config import get_config, KeyvendConfig

    # At startup (CLI only):
    KeyvendConfig(config_file="config.yaml", schema_file="bundled")

    # Everywhere else:
    cfg   = get_config()
    price = cfg.settings.orders.price_per_key    # typed access
    url   = cfg.get("provisioning.api_url")      # dynamic dot-path
"""

from keyvend.config.keyvend_config import (
    ConfigValidationError,
    KeyvendConfig,
    get_config,
)
from keyvend.config.settings import (
    AuditLogSettings,
    ChatSettings,
    CircuitBreakerSettings,
    DatabaseSettings,
    InteractionSettings,
    KeyvendSettings,
    LoggingSettings,
    MetricsSettings,
    OrderSettings,
    ProvisioningSettings,
    SchedulerSettings,
    ServerSettings,
    build_settings,
)

__all__ = [
    "AuditLogSettings",
    "ChatSettings",
    "CircuitBreakerSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "InteractionSettings",
    "KeyvendConfig",
    "KeyvendSettings",
    "LoggingSettings",
    "MetricsSettings",
    "OrderSettings",
    "ProvisioningSettings",
    "SchedulerSettings",
    "ServerSettings",
    "build_settings",
    "get_config",
]
