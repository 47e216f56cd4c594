"""Pluggable key provisioning backends.

Exports the abstract base class, the structured error type, the result
dataclass, the endpoint parser, the label generator and the registry
loader.
"""

from keyvend.provisioning.base import (
    KeyProvisioner,
    ProvisionedKey,
    ProvisioningError,
    parse_endpoint,
)
from keyvend.provisioning.names import generate_key_name
from keyvend.provisioning.registry import load_provisioner

__all__ = [
    "KeyProvisioner",
    "ProvisionedKey",
    "ProvisioningError",
    "generate_key_name",
    "load_provisioner",
    "parse_endpoint",
]
