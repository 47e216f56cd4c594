"""Sensitive data sanitization for log output.

Access URLs are bearer credentials: anyone holding one can use the
key.  The Outline management URL embeds a secret path prefix.  Both
are redacted here before values reach the audit log.
"""

from __future__ import annotations

import re
from typing import Any

# ss://<userinfo>@host:port/... -- the userinfo carries the key secret
_ACCESS_URL_RE = re.compile(r"\b(ss)://[^@\s]+@")

# https://host:port/<secret-prefix>/...
_API_URL_RE = re.compile(r"\b(https?://[^/\s]+)/[^\s\"']+")

_SECRET_FIELDS = frozenset({"url", "access_url", "accessUrl", "api_url", "webhook_secret"})


def sanitize_url(value: str) -> str:
    """Redact credentials embedded in access or management URLs."""
    value = _ACCESS_URL_RE.sub(r"\1://[REDACTED]@", value)
    return _API_URL_RE.sub(r"\1/[REDACTED]", value)


def sanitize_for_logs(data: Any) -> Any:  # noqa: ANN401
    """Recursively sanitize sensitive material in *data*.

    Handles dicts (fields named like URLs or secrets are redacted),
    lists, and plain strings.  Non-sensitive data passes through
    unchanged.
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if k in _SECRET_FIELDS and data[k] else sanitize_for_logs(v)
            for k, v in data.items()
        }

    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_for_logs(item) for item in data)

    if isinstance(data, str):
        if "://" in data:
            return sanitize_url(data)
        return data

    return data
