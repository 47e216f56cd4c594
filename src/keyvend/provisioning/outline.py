"""Outline management API backend.

Talks JSON over HTTPS to an Outline server's management endpoint (the
``apiUrl`` printed by the installer, which embeds a secret path prefix).

API contract
------------
**Create** -- ``POST {api_url}/access-keys``

Request body (JSON)::

    {"name": "misty-river"}

Response body (JSON, HTTP 201)::

    {"id": "17", "name": "misty-river", "accessUrl": "ss://...", ...}

**Delete** -- ``DELETE {api_url}/access-keys/{id}``

Response: HTTP 204 on success, HTTP 404 when the id is unknown.

Outline servers usually present a self-signed certificate.  The installer
prints its SHA-256 fingerprint (``certSha256``); set ``cert_sha256`` to pin
it.  ``ca_cert_path`` and ``verify_tls: false`` are the fallbacks, in that
order.
"""

from __future__ import annotations

import contextlib
import functools
import hashlib
import http.client
import json
import logging
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import TYPE_CHECKING

from keyvend.provisioning.base import (
    KeyProvisioner,
    ProvisionedKey,
    ProvisioningError,
    require_https,
)

if TYPE_CHECKING:
    from keyvend.config.settings import ProvisioningSettings

log = logging.getLogger(__name__)

_HTTP_NOT_FOUND = 404
_HTTP_SERVER_ERROR = 500


class _PinnedHTTPSConnection(http.client.HTTPSConnection):
    """HTTPS connection that accepts exactly one server certificate."""

    def __init__(self, *args, fingerprint: str, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._fingerprint = fingerprint

    def connect(self) -> None:
        super().connect()
        der = self.sock.getpeercert(binary_form=True)
        seen = hashlib.sha256(der).hexdigest().upper() if der else None
        if seen != self._fingerprint:
            self.close()
            msg = f"server certificate sha256 {seen} does not match pinned {self._fingerprint}"
            raise ssl.SSLCertVerificationError(msg)


class _PinnedHTTPSHandler(urllib.request.HTTPSHandler):
    def __init__(self, context: ssl.SSLContext, fingerprint: str) -> None:
        super().__init__(context=context)
        self._fingerprint = fingerprint

    def https_open(self, req):
        connection = functools.partial(_PinnedHTTPSConnection, fingerprint=self._fingerprint)
        return self.do_open(connection, req, context=self._context)


class OutlineProvisioner(KeyProvisioner):
    """Creates and deletes Outline access keys."""

    def __init__(self, settings: ProvisioningSettings) -> None:
        super().__init__(settings)
        self._ssl_ctx: ssl.SSLContext | None = None

    def startup_check(self) -> None:
        """Verify the management URL is configured and looks like HTTPS."""
        url = self._settings.api_url
        if not url:
            msg = "provisioning.api_url is required for the outline backend"
            raise ProvisioningError(msg)
        try:
            require_https(url)
        except ValueError as exc:
            msg = f"provisioning.api_url: {exc}"
            raise ProvisioningError(msg) from exc

    # -- public API -----------------------------------------------------------

    def create_key(self, name: str) -> ProvisionedKey:
        log.debug("Creating Outline access key %r", name)
        data = self._request("POST", "/access-keys", {"name": name}, idempotent=False)
        key_id = data.get("id")
        access_url = data.get("accessUrl")
        if key_id is None or not access_url:
            msg = "Outline response missing 'id' or 'accessUrl'"
            raise ProvisioningError(msg)
        key = ProvisionedKey(
            id=str(key_id),
            name=data.get("name") or name,
            url=access_url,
        )
        log.info("Created Outline access key id=%s name=%s", key.id, key.name)
        return key

    def delete_key(self, key_id: str) -> None:
        log.debug("Deleting Outline access key %s", key_id)
        self._request(
            "DELETE",
            f"/access-keys/{urllib.parse.quote(str(key_id), safe='')}",
            None,
            idempotent=True,
        )
        log.info("Deleted Outline access key id=%s", key_id)

    # -- transport ------------------------------------------------------------

    def _get_ssl_context(self) -> ssl.SSLContext:
        """Build (and cache) the TLS context from the trust settings."""
        if self._ssl_ctx is not None:
            return self._ssl_ctx

        ctx = ssl.create_default_context()
        if self._settings.cert_sha256:
            # The pinned handler checks the fingerprint after the handshake.
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        elif self._settings.ca_cert_path:
            ctx.load_verify_locations(self._settings.ca_cert_path)
        elif not self._settings.verify_tls:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE

        self._ssl_ctx = ctx
        return ctx

    def _https_handler(self) -> urllib.request.HTTPSHandler:
        ctx = self._get_ssl_context()
        if self._settings.cert_sha256:
            return _PinnedHTTPSHandler(ctx, self._settings.cert_sha256)
        return urllib.request.HTTPSHandler(context=ctx)

    def _request(
        self,
        method: str,
        path: str,
        payload: dict | None,
        *,
        idempotent: bool,
    ) -> dict:
        """Send a request with bounded retries and return the parsed JSON body."""
        max_retries = self._settings.max_retries
        delay = self._settings.retry_delay_seconds
        last_exc = None

        for attempt in range(max_retries + 1):
            try:
                return self._do_single_request(method, path, payload, idempotent=idempotent)
            except ProvisioningError as exc:
                if not exc.retryable or attempt == max_retries:
                    raise
                last_exc = exc
                log.warning(
                    "Outline %s %s attempt %d/%d failed: %s",
                    method,
                    path.split("/")[1],
                    attempt + 1,
                    max_retries + 1,
                    exc.detail,
                )
                time.sleep(delay * (2**attempt))

        raise last_exc  # type: ignore[misc]

    def _do_single_request(
        self,
        method: str,
        path: str,
        payload: dict | None,
        *,
        idempotent: bool,
    ) -> dict:
        url = self._settings.api_url.rstrip("/") + path
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(
            url,
            data=data,
            method=method,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        handler = self._https_handler()
        opener = urllib.request.build_opener(handler)

        try:
            resp = opener.open(req, timeout=self._settings.timeout_seconds)
        except urllib.error.HTTPError as exc:
            body = ""
            with contextlib.suppress(Exception):
                body = exc.read().decode("utf-8", errors="replace")[:300]
            msg = f"Outline returned HTTP {exc.code} for {method}: {body}"
            raise ProvisioningError(
                msg,
                retryable=exc.code >= _HTTP_SERVER_ERROR,
                not_found=exc.code == _HTTP_NOT_FOUND,
            ) from exc
        except TimeoutError as exc:
            # A timed-out create may have succeeded remotely; never repeat it.
            msg = f"Outline {method} timed out after {self._settings.timeout_seconds}s"
            raise ProvisioningError(msg, retryable=idempotent) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, ssl.SSLCertVerificationError):
                msg = f"Outline certificate rejected: {exc.reason}"
                raise ProvisioningError(msg) from exc
            msg = f"Failed to reach Outline management API: {exc}"
            raise ProvisioningError(msg, retryable=True) from exc
        except OSError as exc:
            msg = f"Failed to reach Outline management API: {exc}"
            raise ProvisioningError(msg, retryable=True) from exc

        with resp:
            raw = resp.read()
        if not raw:
            return {}
        try:
            return json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            msg = f"Outline returned invalid JSON: {exc}"
            raise ProvisioningError(msg) from exc
