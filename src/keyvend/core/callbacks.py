"""Inline-button callback payloads.

Buttons carry ``"<step>|<data>"`` (at most 64 bytes on the wire).
The step names a :class:`~keyvend.core.types.Step`; data is usually an
order id or a key count.
"""

from __future__ import annotations

from dataclasses import dataclass

from keyvend.core.types import Step

_SEPARATOR = "|"
MAX_CALLBACK_BYTES = 64


@dataclass(frozen=True)
class Callback:
    step: Step
    data: str = ""


def encode_callback(step: Step, data: object = "") -> str:
    raw = f"{step.value}{_SEPARATOR}{data}"
    if len(raw.encode("utf-8")) > MAX_CALLBACK_BYTES:
        msg = f"Callback payload too long: {raw!r}"
        raise ValueError(msg)
    return raw


def decode_callback(raw: str) -> Callback:
    """Parse ``step`` or ``step|data``; unknown steps raise :class:`ValueError`."""
    # Some clients prefix legacy payloads with a form feed.
    parts = raw.lstrip("\f").split(_SEPARATOR)
    if len(parts) > 2:  # noqa: PLR2004
        msg = f"Unsupported callback data: {raw!r}"
        raise ValueError(msg)
    step = Step(parts[0])
    return Callback(step=step, data=parts[1] if len(parts) == 2 else "")  # noqa: PLR2004
