"""WSGI entry point for external servers (gunicorn, uWSGI, etc.).

The config file path is read from the ``KEYVEND_CONFIG`` environment
variable.

Example::

    export KEYVEND_CONFIG=/etc/keyvend/config.yaml
    gunicorn "keyvend.server.wsgi:app"
"""

from __future__ import annotations

import os
import sys

_config_path = os.environ.get("KEYVEND_CONFIG")
if _config_path is None:
    sys.stderr.write("KEYVEND_CONFIG environment variable is not set\n")
    sys.exit(1)

# Bootstrap the singleton before anything else imports it.
from keyvend.config import KeyvendConfig  # noqa: E402

_config = KeyvendConfig(config_file=_config_path, schema_file="bundled")

from keyvend.logging import configure_logging  # noqa: E402

configure_logging(_config.settings.logging)

from keyvend.db import init_database  # noqa: E402

_db = init_database(_config.settings.database)

from keyvend.app import create_app  # noqa: E402

app = create_app(config=_config, database=_db)
