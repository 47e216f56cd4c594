"""Entity models for the keyvend persistence layer.

All models are frozen dataclasses.  Use :func:`dataclasses.replace`
for modifications (copy-on-write).
"""

from keyvend.models.access_key import AccessKey, KeyContext
from keyvend.models.endpoint import ManagementEndpoint
from keyvend.models.order import Order, OwnerProfile
from keyvend.models.revocation import PendingRevocation

__all__ = [
    "AccessKey",
    "KeyContext",
    "ManagementEndpoint",
    "Order",
    "OwnerProfile",
    "PendingRevocation",
]
