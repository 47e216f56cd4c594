"""The management endpoint the live keys were issued by."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class ManagementEndpoint:
    """Where keys are created and deleted, and how its TLS certificate is trusted.

    ``cert_sha256`` pins the server certificate by its SHA-256
    fingerprint (what the Outline installer prints next to ``apiUrl``)
    and takes precedence over ``ca_cert_path`` and ``verify_tls``.
    Equality ignores ``updated_at``.
    """

    api_url: str
    cert_sha256: str | None = None
    ca_cert_path: str | None = None
    verify_tls: bool = True
    updated_at: datetime = field(default=_EPOCH, compare=False)
