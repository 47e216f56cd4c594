"""Object graph of a running keyvend process.

:class:`Container` is built by :func:`keyvend.app.create_app` when a
database is given and kept in ``app.extensions["container"]``; views
reach it with :func:`get_container`.  The CLI builds one directly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from flask import current_app

if TYPE_CHECKING:
    from pypgkit import Database

    from keyvend.app.shutdown import ShutdownCoordinator
    from keyvend.config.settings import KeyvendSettings
    from keyvend.frontend import CommandDispatcher, InteractionStore
    from keyvend.metrics.collector import MetricsCollector
    from keyvend.provisioning.base import KeyProvisioner
    from keyvend.repositories import (
        EndpointRepository,
        NoticeRepository,
        OrderRepository,
        RevocationRepository,
    )
    from keyvend.services import ExpirationWorker, NotificationService, OrderService


class Container:
    """Repositories, key server client, services and front-end, wired once.

    Everything shares the one pypgkit pool behind *db*.
    """

    def __init__(
        self,
        db: Database,
        settings: KeyvendSettings,
        shutdown_coordinator: ShutdownCoordinator | None = None,
    ) -> None:
        from keyvend.app.shutdown import ShutdownCoordinator as _SC  # noqa: N814, PLC0415
        from keyvend.frontend import CommandDispatcher as _CD  # noqa: N814, PLC0415
        from keyvend.frontend import InteractionStore as _IS  # noqa: N814, PLC0415
        from keyvend.notifications import ChatGateway as _CG  # noqa: N814, PLC0415
        from keyvend.notifications import TemplateRenderer as _TR  # noqa: N814, PLC0415
        from keyvend.provisioning import load_provisioner  # noqa: PLC0415
        from keyvend.repositories import EndpointRepository as _ER  # noqa: N814, PLC0415
        from keyvend.repositories import NoticeRepository as _NR  # noqa: N814, PLC0415
        from keyvend.repositories import OrderRepository as _OR  # noqa: N814, PLC0415
        from keyvend.repositories import RevocationRepository as _RR  # noqa: N814, PLC0415
        from keyvend.services import ExpirationWorker as _EW  # noqa: N814, PLC0415
        from keyvend.services import NotificationService as _NS  # noqa: N814, PLC0415
        from keyvend.services import OrderService as _OS  # noqa: N814, PLC0415

        self.db: Database = db
        self.settings: KeyvendSettings = settings
        self.shutdown_coordinator: ShutdownCoordinator = shutdown_coordinator or _SC(
            graceful_timeout=settings.server.graceful_timeout,
        )

        # Metrics collector (optional)
        self.metrics: MetricsCollector | None = None
        if settings.metrics.enabled:
            from keyvend.metrics.collector import MetricsCollector as _MC  # noqa: N814, PLC0415

            self.metrics = _MC()

        # Repositories
        self.orders: OrderRepository = _OR(db)
        self.revocations: RevocationRepository = _RR(db)
        self.notices: NoticeRepository = _NR()
        self.endpoints: EndpointRepository = _ER()

        # Remote key management (circuit breaker applied by the registry)
        self.provisioner: KeyProvisioner = load_provisioner(settings.provisioning)

        # Outbound messages
        self.notification_service: NotificationService = _NS(
            _CG(settings.chat),
            _TR(settings.chat.templates_path),
            settings.chat,
            metrics=self.metrics,
        )

        # Order lifecycle engine
        self.order_service: OrderService = _OS(
            self.orders,
            self.revocations,
            self.notices,
            self.provisioner,
            self.notification_service,
            settings.orders,
            settings.chat,
            settings.scheduler,
            metrics=self.metrics,
            endpoints=self.endpoints,
        )

        # Conversational front-end
        self.interactions: InteractionStore = _IS(
            ttl_seconds=settings.interactions.ttl_seconds,
            max_entries=settings.interactions.max_entries,
        )
        self.dispatcher: CommandDispatcher = _CD(
            self.order_service,
            self.interactions,
            self.notification_service,
            settings.orders,
        )

        # Expiration worker
        self.expiration_worker: ExpirationWorker = _EW(
            self.order_service,
            settings.scheduler,
            db=db,
            metrics=self.metrics,
        )


def get_container() -> Container:
    container = current_app.extensions.get("container")
    if container is None:
        raise RuntimeError("Container not available: the app was created without a database")
    return container
