"""Repository classes for the keyvend persistence layer.

Each repository extends :class:`pypgkit.BaseRepository` (or talks to the
:class:`pypgkit.Database` singleton directly) with custom queries for
orders, access keys, renewal notices, pending revocations and the
management endpoint.
"""

from keyvend.repositories.endpoint import EndpointRepository
from keyvend.repositories.notice import NoticeRepository
from keyvend.repositories.order import OrderRepository
from keyvend.repositories.revocation import RevocationRepository

__all__ = [
    "EndpointRepository",
    "NoticeRepository",
    "OrderRepository",
    "RevocationRepository",
]
