"""keyvend service layer.

:class:`OrderService` is the order lifecycle engine; the expiration
worker drives its scheduled jobs and the notification service carries
its outbound messages.
"""

from keyvend.services.expiration_worker import ExpirationWorker
from keyvend.services.notification import NotificationService
from keyvend.services.order import (
    ApprovedOrder,
    ClosedOrder,
    MigrationSummary,
    OrderKeys,
    OrderService,
    PlacedOrder,
)

__all__ = [
    "ApprovedOrder",
    "ClosedOrder",
    "ExpirationWorker",
    "MigrationSummary",
    "NotificationService",
    "OrderKeys",
    "OrderService",
    "PlacedOrder",
]
