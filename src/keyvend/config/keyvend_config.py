"""ConfigKit-backed loader for the keyvend YAML config.

The CLI (or the WSGI module) constructs :class:`KeyvendConfig` once; every
other module calls :func:`get_config`.  Typed values are read from
``cfg.settings``, raw dotted paths from ``cfg.get("provisioning.api_url")``.

String values may reference the environment as ``${VAR}`` or
``${VAR:-default}``, also inside a longer string
(``https://${OUTLINE_HOST}/${OUTLINE_PREFIX}``).  References are
expanded before schema validation, so expanded values are validated too.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from configkit import ConfigKit, ConfigKitMeta

from keyvend.config.settings import KeyvendSettings, build_settings

_SCHEMA_PATH = Path(__file__).parent / "schema.json"

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")
_CLASS_PATH = re.compile(r"^[A-Za-z_]\w*(\.[A-Za-z_]\w*)+$")
_CHAT_ID = re.compile(r"-?[0-9]+")

BUILTIN_BACKENDS = frozenset({"outline"})

log = logging.getLogger(__name__)

_instance: KeyvendConfig | None = None


def get_config() -> KeyvendConfig:
    """The loaded :class:`KeyvendConfig`; ``RuntimeError`` before startup."""
    if _instance is None:
        msg = "keyvend configuration not initialised; load KeyvendConfig first"
        raise RuntimeError(msg)
    return _instance


class ConfigValidationError(Exception):
    """Every problem found in a config file, reported together."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors))


# ---------------------------------------------------------------------------
# ${VAR} expansion
# ---------------------------------------------------------------------------


def _expand(value: str, path: str) -> str:
    def substitute(match: re.Match) -> str:
        name, default = match.groups()
        if name in os.environ:
            return os.environ[name]
        if default is not None:
            return default
        raise ConfigValidationError(
            [f"{path}: environment variable {name} is not set and has no default"],
        )

    return _ENV_REF.sub(substitute, value)


def _resolve_env_vars(node: Any, path: str = "") -> None:  # noqa: ANN401
    """Expand ``${VAR}`` references in the strings of *node*, in place."""
    if isinstance(node, dict):
        items = [(key, f"{path}.{key}" if path else str(key)) for key in node]
    elif isinstance(node, list):
        items = [(idx, f"{path}[{idx}]") for idx in range(len(node))]
    else:
        return
    for key, child_path in items:
        child = node[key]
        if isinstance(child, str):
            node[key] = _expand(child, child_path)
        else:
            _resolve_env_vars(child, child_path)


# ---------------------------------------------------------------------------
# Cross-field checks, one function per section
# ---------------------------------------------------------------------------


def _check_orders(orders: dict, errors: list[str], warnings: list[str]) -> None:  # noqa: ARG001
    quota = orders.get("max_keys_per_owner", 10)
    for choice in orders.get("key_count_choices", [1, 2, 3]):
        if choice <= 0:
            errors.append(f"orders.key_count_choices contains non-positive value {choice}")
        elif choice > quota:
            errors.append(
                f"orders.key_count_choices value {choice} exceeds "
                f"orders.max_keys_per_owner ({quota})",
            )


def _check_chat(chat: dict, errors: list[str], warnings: list[str]) -> None:
    operator_id = chat.get("operator_id")
    if isinstance(operator_id, str) and not _CHAT_ID.fullmatch(operator_id):
        errors.append(f"chat.operator_id must be a numeric chat id (got {operator_id!r})")
    if not chat.get("enabled", True):
        warnings.append("chat.enabled is false, messages will be logged but not sent")
    elif not chat.get("api_url"):
        errors.append("chat.api_url is required when chat.enabled is true")


def _check_provisioning(prov: dict, errors: list[str], warnings: list[str]) -> None:
    backend = prov.get("backend", "outline")
    if backend.startswith("ext:"):
        if not _CLASS_PATH.match(backend[4:]):
            errors.append(
                f"provisioning.backend '{backend}' must name a fully qualified class "
                "(ext:package.module.Class)",
            )
    elif backend not in BUILTIN_BACKENDS:
        errors.append(
            f"provisioning.backend '{backend}' is unknown; built-in backends are "
            f"{', '.join(sorted(BUILTIN_BACKENDS))}, or use ext:package.module.Class",
        )
    if prov.get("verify_tls", True) is False and prov.get("ca_cert_path"):
        warnings.append("provisioning.ca_cert_path is set, so verify_tls: false has no effect")


def _check_scheduler(sched: dict, errors: list[str], warnings: list[str]) -> None:  # noqa: ARG001
    loop = sched.get("loop_interval_seconds", 5)
    notify = sched.get("notify_interval_seconds", 30)
    if loop > notify:
        warnings.append(
            f"scheduler.loop_interval_seconds ({loop}) is longer than "
            f"notify_interval_seconds ({notify}); reminders follow the loop interval",
        )


def _check_server(server: dict, errors: list[str], warnings: list[str]) -> None:  # noqa: ARG001
    if not server.get("webhook_secret"):
        warnings.append("server.webhook_secret is empty, anyone can post updates to the webhook")


def _check_database(db: dict, errors: list[str], warnings: list[str]) -> None:  # noqa: ARG001
    low, high = db.get("min_connections", 2), db.get("max_connections", 10)
    if low > high:
        errors.append(
            f"database.min_connections ({low}) must be <= database.max_connections ({high})",
        )


_SECTION_CHECKS = (
    ("orders", _check_orders),
    ("chat", _check_chat),
    ("provisioning", _check_provisioning),
    ("scheduler", _check_scheduler),
    ("server", _check_server),
    ("database", _check_database),
)


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------


class KeyvendConfig(ConfigKit):
    """The keyvend config file, validated against the bundled ``schema.json``."""

    def __init__(
        self,
        *,
        config_file: str | Path,
        schema_file: str | Path | None = None,  # noqa: ARG002
    ) -> None:
        # ConfigKitMeta requires schema_file on first use; the bundled schema always wins
        global _instance  # noqa: PLW0603

        super().__init__(config_file=config_file, schema_file=_SCHEMA_PATH)
        self._settings: KeyvendSettings = build_settings(self.data)
        _instance = self

    def _load(self) -> None:
        super()._load()
        _resolve_env_vars(self._data)

    @property
    def settings(self) -> KeyvendSettings:
        return self._settings

    def additional_checks(self) -> None:
        """Run after schema validation; raises with every error at once."""
        errors: list[str] = []
        warnings: list[str] = []
        for section, check in _SECTION_CHECKS:
            check(self.data.get(section) or {}, errors, warnings)

        for warning in warnings:
            log.warning("Config warning: %s", warning)
        if errors:
            raise ConfigValidationError(errors)

    @classmethod
    def reset(cls) -> None:
        """Forget the loaded config (tests)."""
        global _instance  # noqa: PLW0603
        _instance = None
        ConfigKitMeta.reset()

    def __repr__(self) -> str:
        return f"<KeyvendConfig config_file={self.data.get('_source', '?')}>"
