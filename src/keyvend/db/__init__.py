"""Database subsystem for keyvend.

Public API::

    from keyvend.db import init_database, store_errors, UnitOfWork
"""

from keyvend.db.errors import store_errors
from keyvend.db.init import init_database
from keyvend.db.unit_of_work import UnitOfWork

__all__ = [
    "UnitOfWork",
    "init_database",
    "store_errors",
]
