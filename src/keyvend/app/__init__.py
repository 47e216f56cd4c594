"""Flask application package for keyvend.

Public API::

    from keyvend.app import create_app
"""

from keyvend.app.factory import create_app

__all__ = ["create_app"]
