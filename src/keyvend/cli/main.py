"""``keyvend`` command line.

::

    keyvend -c /etc/keyvend/config.yaml                 # serve (gunicorn)
    keyvend -c config.yaml --dev                        # serve (Flask dev server)
    keyvend -c config.yaml --validate-only
    keyvend -c config.yaml db status
    keyvend -c config.yaml inspect order 42
    keyvend -c config.yaml jobs run deactivate_expired
    keyvend -c config.yaml provisioning migrate https://203.0.113.7:4321/SeCrEt
    python -m keyvend -c config.yaml
"""

from __future__ import annotations

import argparse
import importlib
import logging
import sys
from pathlib import Path

from keyvend.services.expiration_worker import JOB_NAMES

log = logging.getLogger(__name__)

# subcommand -> (module under keyvend.cli.commands, handler)
COMMANDS: dict[str, tuple[str, str]] = {
    "serve": ("serve", "run_serve"),
    "db": ("db", "run_db"),
    "inspect": ("inspect", "run_inspect"),
    "jobs": ("jobs", "run_jobs"),
    "provisioning": ("provisioning", "run_provisioning"),
}


def _get_version() -> str:
    from keyvend import __version__  # noqa: PLC0415

    return __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="keyvend", description="VPN access key vending bot")
    parser.add_argument("-c", "--config", required=True, metavar="PATH", help="YAML or JSON file")
    parser.add_argument("--debug", action="store_true", help="verbose logging, full tracebacks")
    parser.add_argument("--validate-only", action="store_true", help="check the config and exit")
    parser.add_argument("--dev", action="store_true", help="use the Flask development server")
    parser.add_argument("-v", "--version", action="version", version=f"keyvend {_get_version()}")

    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="webhook server and expiration worker (default)")
    # SUPPRESS keeps `keyvend --dev serve` from being reset to False
    serve.add_argument("--dev", action="store_true", default=argparse.SUPPRESS)

    db = commands.add_parser("db", help="order store").add_subparsers(dest="db_command")
    db.add_parser("status", help="connectivity and schema check")

    inspect = commands.add_parser("inspect", help="read-only views").add_subparsers(
        dest="inspect_command",
    )
    inspect.add_parser("order", help="one order with its keys").add_argument(
        "resource_id",
        help="order id, '#7' accepted",
    )

    jobs = commands.add_parser("jobs", help="scheduler jobs").add_subparsers(dest="jobs_command")
    jobs.add_parser("run", help="run one job now").add_argument("job", choices=JOB_NAMES)

    prov = commands.add_parser("provisioning", help="key server").add_subparsers(
        dest="provisioning_command",
    )
    migrate = prov.add_parser(
        "migrate",
        help="re-create every active key on another management API",
    )
    migrate.add_argument(
        "api_url",
        help="management API URL of the new key server, or the installer's JSON line",
    )
    trust = migrate.add_mutually_exclusive_group()
    trust.add_argument("--cert-sha256", metavar="HEX", help="pin the server certificate")
    trust.add_argument("--ca-cert", metavar="PATH", help="CA bundle for the new server")
    trust.add_argument(
        "--insecure",
        action="store_true",
        help="skip TLS verification of the new server",
    )

    return parser


def _print_error(message: str) -> None:
    sys.stderr.write(f"keyvend: error: {message}\n")


def _fail(message: str) -> None:
    _print_error(message)
    sys.exit(1)


def _load_config(args):
    from keyvend.config import ConfigValidationError, KeyvendConfig  # noqa: PLC0415

    try:
        return KeyvendConfig(config_file=str(args.config), schema_file="bundled")
    except ConfigValidationError as exc:
        _fail(str(exc))
    except Exception as exc:
        if args.debug:
            raise
        _fail(f"failed to load configuration: {exc}")
    return None


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    if not Path(args.config).is_file():
        _fail(f"configuration file not found: {args.config}")

    # stderr only until the config says how to log
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    config = _load_config(args)

    from keyvend.logging import configure_logging  # noqa: PLC0415

    configure_logging(config.settings.logging)

    if args.validate_only:
        _print_settings_summary(config)
        sys.exit(0)

    command = args.command or "serve"
    module_name, handler_name = COMMANDS[command]
    handler = getattr(importlib.import_module(f"keyvend.cli.commands.{module_name}"), handler_name)

    if command != "serve":
        handler(config, args)
        return

    _print_settings_summary(config)
    try:
        handler(config, args)
    except RuntimeError as exc:
        _fail(str(exc))
    except Exception as exc:
        if args.debug:
            raise
        _fail(f"startup failed: {exc}")


def _print_settings_summary(config) -> None:
    s = config.settings
    db_name = s.database.database
    on_off = {True: "enabled", False: "disabled"}
    rows = (
        ("server", f"{s.server.bind}:{s.server.port} (webhook {s.server.webhook_path})"),
        ("database", f"{s.database.user}@{s.database.host}:{s.database.port}/{db_name}"),
        ("provisioning", s.provisioning.backend),
        (
            "orders",
            f"{s.orders.price_per_key} {s.orders.currency}/key, "
            f"{s.orders.ttl_days} days, max {s.orders.max_keys_per_owner} keys",
        ),
        ("scheduler", on_off[bool(s.scheduler.enabled)]),
        ("chat", on_off[bool(s.chat.enabled)]),
    )
    sys.stdout.write(f"keyvend {_get_version()}\n")
    sys.stdout.writelines(f"  {label + ':':<14}{value}\n" for label, value in rows)
