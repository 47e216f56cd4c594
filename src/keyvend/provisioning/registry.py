"""Provisioning backend registry.

Loads the configured backend by name and returns a ready
:class:`KeyProvisioner`, wrapped in a circuit breaker when enabled.
Supports the built-in ``outline`` backend and custom backends via the
``ext:`` prefix.

Usage::

    from keyvend.provisioning.registry import load_provisioner

    provisioner = load_provisioner(settings.provisioning)
    key = provisioner.create_key("misty-river")
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING

from keyvend.provisioning.base import KeyProvisioner, ProvisioningError

if TYPE_CHECKING:
    from keyvend.config.settings import ProvisioningSettings

log = logging.getLogger(__name__)

# Maps config string -> (module_path, class_name)
_BUILTIN_BACKENDS: dict[str, tuple[str, str]] = {
    "outline": ("keyvend.provisioning.outline", "OutlineProvisioner"),
}


def load_provisioner(settings: ProvisioningSettings) -> KeyProvisioner:
    """Load and return the configured provisioning backend.

    Raises
    ------
    ProvisioningError
        If the backend cannot be loaded.

    """
    name = settings.backend
    if name in _BUILTIN_BACKENDS:
        mod_path, cls_name = _BUILTIN_BACKENDS[name]
        label = name
    elif name.startswith("ext:"):
        mod_path, _, cls_name = name[4:].rpartition(".")
        label = name
        if not mod_path:
            msg = (
                f"Invalid external provisioning backend '{name[4:]}': must be "
                "fully qualified (e.g. 'mypackage.module.ClassName')"
            )
            raise ProvisioningError(msg)
    else:
        msg = (
            f"Unknown provisioning backend '{name}'; "
            f"built-in options: {sorted(_BUILTIN_BACKENDS)}. "
            "Use 'ext:mypackage.module.ClassName' for custom backends."
        )
        raise ProvisioningError(msg)

    try:
        module = importlib.import_module(mod_path)
        cls = getattr(module, cls_name)
    except (ImportError, AttributeError) as exc:
        msg = f"Failed to load provisioning backend '{label}': {exc}"
        raise ProvisioningError(msg) from exc

    _validate_class(cls, label)
    backend: KeyProvisioner = cls(settings)
    log.info("Loaded provisioning backend: %s", label)

    breaker = settings.circuit_breaker
    if breaker.enabled:
        from keyvend.provisioning.circuit_breaker import (  # noqa: PLC0415
            CircuitBreakerProvisioner,
        )

        backend = CircuitBreakerProvisioner(
            backend,
            settings,
            failure_threshold=breaker.failure_threshold,
            recovery_timeout=breaker.recovery_timeout_seconds,
        )
    return backend


def _validate_class(cls: type, label: str) -> None:
    """Verify that a backend class implements the provisioner interface."""
    if not (isinstance(cls, type) and issubclass(cls, KeyProvisioner)):
        msg = f"Provisioning backend '{label}' is not a subclass of KeyProvisioner"
        raise ProvisioningError(msg)

    for method_name in ("create_key", "delete_key"):
        method = getattr(cls, method_name, None)
        if method is None or getattr(method, "__isabstractmethod__", False):
            msg = f"Provisioning backend '{label}' does not implement '{method_name}()'"
            raise ProvisioningError(msg)
