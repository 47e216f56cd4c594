"""Message bodies for chat notifications.

Each :class:`~keyvend.core.types.NotificationType` has a plain-text
Jinja2 template named ``<type>.txt``.  A file of the same name in
``notifications.templates_path`` replaces the built-in one; templates
starting with ``_`` are partials included by the others.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader

if TYPE_CHECKING:
    from datetime import datetime

    from keyvend.core.types import NotificationType

DATE_FORMAT = "%d.%m.%Y"


def _format_date(value: datetime | None) -> str:
    return "-" if value is None else value.strftime(DATE_FORMAT)


def _environment(templates_path: str | None) -> Environment:
    builtin = PackageLoader("keyvend.notifications", "templates")
    loader = ChoiceLoader([FileSystemLoader(templates_path), builtin]) if templates_path else builtin
    env = Environment(
        loader=loader,
        # chat messages are sent as plain text
        autoescape=False,  # noqa: S701
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["date"] = _format_date
    return env


class TemplateRenderer:
    def __init__(self, templates_path: str | None = None) -> None:
        self._env = _environment(templates_path)

    def render(self, notification_type: NotificationType, context: dict[str, Any]) -> str:
        """Return the text for *notification_type*, without surrounding whitespace."""
        template = self._env.get_template(f"{notification_type.value}.txt")
        return template.render(context).strip()
