"""Translation of driver faults into :class:`~keyvend.app.errors.StoreError`.

Repositories wrap every statement in :func:`store_errors` so callers
see one tagged error type whatever psycopg or the pool raised.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

import psycopg

from keyvend.app.errors import StoreError

if TYPE_CHECKING:
    from collections.abc import Generator

log = logging.getLogger(__name__)


@contextmanager
def store_errors(operation: str, **context) -> Generator[None, None, None]:
    """Re-raise persistence faults raised inside the block as StoreError.

    Parameters
    ----------
    operation:
        Short name of the store operation, used in the error detail.
    context:
        Identifiers (``order_id``, ``owner_id``) attached to the log record.

    """
    try:
        yield
    except (psycopg.Error, TimeoutError) as exc:
        log.exception(
            "Store operation %s failed",
            operation,
            extra={"operation": operation, **context},
        )
        msg = f"{operation} failed: {exc.__class__.__name__}"
        raise StoreError(msg) from exc
