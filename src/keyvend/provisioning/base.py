"""Abstract base class for key provisioning backends.

A provisioner creates and deletes access credentials at a remote
key-management service.  It has no transactional semantics: a create
that succeeded remotely stays live even if the caller later fails to
persist it, and the caller owns any reconciliation.
"""

from __future__ import annotations

import abc
import dataclasses
import json
import logging
import urllib.parse
from dataclasses import dataclass
from typing import TYPE_CHECKING, Self

from keyvend.models.endpoint import ManagementEndpoint

if TYPE_CHECKING:
    from keyvend.config.settings import ProvisioningSettings

log = logging.getLogger(__name__)


class ProvisioningError(Exception):
    """Raised by provisioners on create or delete failure.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    retryable:
        Whether the failure is transient and the call may be retried.
    not_found:
        The remote service does not know the key.  Callers deleting a
        key treat this as already revoked.

    """

    def __init__(
        self,
        detail: str,
        *,
        retryable: bool = False,
        not_found: bool = False,
    ) -> None:
        self.detail = detail
        self.retryable = retryable
        self.not_found = not_found
        super().__init__(detail)


@dataclass(frozen=True)
class ProvisionedKey:
    """A credential as returned by the remote service.

    Attributes
    ----------
    id:
        Remote-assigned identifier; the only handle usable for revocation.
    name:
        The label the key was created with.
    url:
        The access URL handed to the owner.

    """

    id: str
    name: str
    url: str


class KeyProvisioner(abc.ABC):
    """Base class for all provisioning backends.

    Parameters
    ----------
    settings:
        The ``provisioning`` configuration section.

    """

    def __init__(self, settings: ProvisioningSettings) -> None:
        self._settings = settings

    @property
    def endpoint(self) -> str:
        return self._settings.api_url

    @abc.abstractmethod
    def create_key(self, name: str) -> ProvisionedKey:
        """Create one credential labelled *name*.

        Raises
        ------
        ProvisioningError
            On any network or remote fault.

        """

    @abc.abstractmethod
    def delete_key(self, key_id: str) -> None:
        """Revoke the credential *key_id*.

        Raises
        ------
        ProvisioningError
            With ``not_found=True`` when the remote does not know the id.

        """

    def startup_check(self) -> None:  # noqa: B027
        """Validate configuration at startup.  Override to add checks."""

    @property
    def management_endpoint(self) -> ManagementEndpoint:
        """The endpoint and trust settings this provisioner talks to."""
        s = self._settings
        return ManagementEndpoint(
            api_url=s.api_url,
            cert_sha256=s.cert_sha256,
            ca_cert_path=s.ca_cert_path,
            verify_tls=s.verify_tls,
        )

    def with_endpoint(self, endpoint: ManagementEndpoint) -> Self:
        """Return a provisioner of the same kind for another server.

        Trust settings come from *endpoint* only; a pinned certificate or
        CA bundle of the current server never carries over.
        """
        return type(self)(self._settings_for(endpoint))

    def _settings_for(self, endpoint: ManagementEndpoint) -> ProvisioningSettings:
        return dataclasses.replace(
            self._settings,
            api_url=endpoint.api_url,
            cert_sha256=endpoint.cert_sha256,
            ca_cert_path=endpoint.ca_cert_path,
            verify_tls=endpoint.verify_tls,
        )


# ---------------------------------------------------------------------------
# Endpoint parsing
# ---------------------------------------------------------------------------


def require_https(url: str) -> None:
    """Raise ``ValueError`` unless *url* is an absolute https:// URL."""
    parts = urllib.parse.urlsplit(url)
    if parts.scheme != "https" or not parts.netloc:
        msg = f"management API URL must be an https:// URL (got {url!r})"
        raise ValueError(msg)


def normalize_fingerprint(value: str) -> str:
    """``ab:cd:...`` or ``ABCD...`` to 64 upper-case hex digits."""
    digits = value.replace(":", "").strip().upper()
    if len(digits) != 64 or any(c not in "0123456789ABCDEF" for c in digits):  # noqa: PLR2004
        msg = f"not a SHA-256 fingerprint: {value!r}"
        raise ValueError(msg)
    return digits


def parse_endpoint(
    text: str,
    *,
    cert_sha256: str | None = None,
    ca_cert_path: str | None = None,
    verify_tls: bool = True,
) -> ManagementEndpoint:
    """Read a new management endpoint as an operator would paste it.

    Accepts a bare URL or the JSON line the Outline installer prints::

        {"apiUrl": "https://203.0.113.7:4321/SeCrEt", "certSha256": "AB12..."}

    A fingerprint in the JSON wins over *cert_sha256*.  Raises
    ``ValueError`` on anything else.
    """
    text = text.strip()
    api_url = text
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f"unreadable management config: {exc}"
            raise ValueError(msg) from exc
        if not isinstance(data, dict) or not isinstance(data.get("apiUrl"), str):
            msg = "management config has no 'apiUrl'"
            raise ValueError(msg)
        api_url = data["apiUrl"].strip()
        cert_sha256 = data.get("certSha256") or cert_sha256
    require_https(api_url)
    return ManagementEndpoint(
        api_url=api_url,
        cert_sha256=normalize_fingerprint(cert_sha256) if cert_sha256 else None,
        ca_cert_path=ca_cert_path,
        verify_tls=verify_tls,
    )
