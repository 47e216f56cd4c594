"""Logging subsystem for keyvend.

Public API::

    from keyvend.logging import configure_logging

    configure_logging(settings.logging)
"""

from keyvend.logging.setup import configure_logging

__all__ = ["configure_logging"]
