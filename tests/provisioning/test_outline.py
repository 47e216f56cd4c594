"""Tests for keyvend.provisioning.outline.OutlineProvisioner.

The urllib opener is patched; no network traffic is generated.
"""

from __future__ import annotations

import hashlib
import http.client
import json
import ssl
import urllib.error
from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest

from keyvend.config.settings import CircuitBreakerSettings, ProvisioningSettings
from keyvend.models import ManagementEndpoint
from keyvend.provisioning.base import ProvisioningError
from keyvend.provisioning.outline import (
    OutlineProvisioner,
    _PinnedHTTPSConnection,
    _PinnedHTTPSHandler,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides) -> ProvisioningSettings:
    defaults = {
        "backend": "outline",
        "api_url": "https://203.0.113.7:4321/SeCrEt/",
        "timeout_seconds": 5.0,
        "verify_tls": True,
        "ca_cert_path": None,
        "max_retries": 2,
        "retry_delay_seconds": 0.5,
        "circuit_breaker": CircuitBreakerSettings(
            enabled=False,
            failure_threshold=5,
            recovery_timeout_seconds=30.0,
        ),
    }
    defaults.update(overrides)
    return ProvisioningSettings(**defaults)


def _response(body: dict | None = None):
    resp = MagicMock()
    resp.read.return_value = json.dumps(body).encode() if body is not None else b""
    resp.__enter__ = MagicMock(return_value=resp)
    resp.__exit__ = MagicMock(return_value=False)
    return resp


def _http_error(code: int, body: str = "") -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        "https://203.0.113.7:4321/SeCrEt/access-keys",
        code,
        "error",
        {},
        BytesIO(body.encode()),
    )


@pytest.fixture
def opener():
    with patch("keyvend.provisioning.outline.urllib.request.build_opener") as build:
        mock_opener = MagicMock()
        build.return_value = mock_opener
        yield mock_opener


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("keyvend.provisioning.outline.time.sleep") as mock_sleep:
        yield mock_sleep


# ---------------------------------------------------------------------------
# create_key
# ---------------------------------------------------------------------------


class TestCreateKey:
    def test_success(self, opener):
        opener.open.return_value = _response(
            {"id": 17, "name": "misty-river", "accessUrl": "ss://abc@203.0.113.7:1234"},
        )
        key = OutlineProvisioner(_make_settings()).create_key("misty-river")

        assert key.id == "17"
        assert key.name == "misty-river"
        assert key.url == "ss://abc@203.0.113.7:1234"

        req = opener.open.call_args[0][0]
        assert req.get_method() == "POST"
        assert req.full_url == "https://203.0.113.7:4321/SeCrEt/access-keys"
        assert json.loads(req.data) == {"name": "misty-river"}

    def test_missing_access_url(self, opener):
        opener.open.return_value = _response({"id": "1"})
        with pytest.raises(ProvisioningError, match="missing"):
            OutlineProvisioner(_make_settings()).create_key("x")

    def test_invalid_json(self, opener):
        resp = _response()
        resp.read.return_value = b"<html>"
        opener.open.return_value = resp
        with pytest.raises(ProvisioningError, match="invalid JSON"):
            OutlineProvisioner(_make_settings()).create_key("x")

    def test_server_error_retried(self, opener, no_sleep):
        opener.open.side_effect = [
            _http_error(503),
            _response({"id": "2", "name": "x", "accessUrl": "ss://2"}),
        ]
        key = OutlineProvisioner(_make_settings()).create_key("x")
        assert key.id == "2"
        no_sleep.assert_called_once_with(0.5)

    def test_client_error_not_retried(self, opener):
        opener.open.side_effect = _http_error(400, "bad name")
        with pytest.raises(ProvisioningError, match="HTTP 400") as exc_info:
            OutlineProvisioner(_make_settings()).create_key("x")
        assert exc_info.value.retryable is False
        assert opener.open.call_count == 1

    def test_retries_exhausted(self, opener):
        opener.open.side_effect = urllib.error.URLError("refused")
        with pytest.raises(ProvisioningError, match="Failed to reach"):
            OutlineProvisioner(_make_settings(max_retries=1)).create_key("x")
        assert opener.open.call_count == 2

    def test_timeout_on_create_not_repeated(self, opener):
        opener.open.side_effect = TimeoutError
        with pytest.raises(ProvisioningError, match="timed out") as exc_info:
            OutlineProvisioner(_make_settings()).create_key("x")
        assert exc_info.value.retryable is False
        assert opener.open.call_count == 1


# ---------------------------------------------------------------------------
# delete_key
# ---------------------------------------------------------------------------


class TestDeleteKey:
    def test_success(self, opener):
        opener.open.return_value = _response()
        OutlineProvisioner(_make_settings()).delete_key("17")
        req = opener.open.call_args[0][0]
        assert req.get_method() == "DELETE"
        assert req.full_url.endswith("/access-keys/17")

    def test_id_is_quoted(self, opener):
        opener.open.return_value = _response()
        OutlineProvisioner(_make_settings()).delete_key("a/b")
        assert opener.open.call_args[0][0].full_url.endswith("/access-keys/a%2Fb")

    def test_not_found(self, opener):
        opener.open.side_effect = _http_error(404)
        with pytest.raises(ProvisioningError) as exc_info:
            OutlineProvisioner(_make_settings()).delete_key("17")
        assert exc_info.value.not_found is True

    def test_timeout_on_delete_retried(self, opener):
        opener.open.side_effect = [TimeoutError, _response()]
        OutlineProvisioner(_make_settings()).delete_key("17")
        assert opener.open.call_count == 2


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfiguration:
    def test_startup_check_requires_https(self):
        with pytest.raises(ProvisioningError, match="https"):
            OutlineProvisioner(_make_settings(api_url="http://example.com/x")).startup_check()

    def test_startup_check_requires_url(self):
        with pytest.raises(ProvisioningError, match="required"):
            OutlineProvisioner(_make_settings(api_url="")).startup_check()

    def test_verify_tls_off(self):
        ctx = OutlineProvisioner(_make_settings(verify_tls=False))._get_ssl_context()
        assert ctx.verify_mode == ssl.CERT_NONE
        assert ctx.check_hostname is False

    def test_ssl_context_cached(self):
        prov = OutlineProvisioner(_make_settings())
        assert prov._get_ssl_context() is prov._get_ssl_context()

    def test_with_endpoint(self):
        prov = OutlineProvisioner(_make_settings())
        moved = prov.with_endpoint(ManagementEndpoint("https://198.51.100.1:9999/New"))
        assert isinstance(moved, OutlineProvisioner)
        assert moved.endpoint == "https://198.51.100.1:9999/New"
        assert prov.endpoint == "https://203.0.113.7:4321/SeCrEt/"

    def test_with_endpoint_drops_old_trust(self):
        prov = OutlineProvisioner(_make_settings(ca_cert_path="/etc/keyvend/old-server.pem"))
        pin = "AB" * 32
        moved = prov.with_endpoint(
            ManagementEndpoint("https://198.51.100.1:9999/New", cert_sha256=pin),
        )
        assert moved.management_endpoint == ManagementEndpoint(
            "https://198.51.100.1:9999/New",
            cert_sha256=pin,
        )
        assert moved._settings.ca_cert_path is None
        # Never loads the retired server's CA bundle.
        assert moved._get_ssl_context().verify_mode == ssl.CERT_NONE


# ---------------------------------------------------------------------------
# Certificate pinning
# ---------------------------------------------------------------------------

DER = b"0\x82 fake certificate"
PIN = hashlib.sha256(DER).hexdigest().upper()


def _connect_with_cert(der):
    sock = MagicMock()
    sock.getpeercert.return_value = der

    def fake_connect(conn):
        conn.sock = sock

    return patch.object(
        http.client.HTTPSConnection,
        "connect",
        autospec=True,
        side_effect=fake_connect,
    )


class TestPinning:
    def test_pinned_handler_used(self):
        with patch("keyvend.provisioning.outline.urllib.request.build_opener") as build:
            build.return_value.open.return_value = _response()
            OutlineProvisioner(_make_settings(cert_sha256=PIN)).delete_key("1")
        handler = build.call_args[0][0]
        assert isinstance(handler, _PinnedHTTPSHandler)
        assert handler._fingerprint == PIN

    def test_unpinned_uses_plain_handler(self):
        with patch("keyvend.provisioning.outline.urllib.request.build_opener") as build:
            build.return_value.open.return_value = _response()
            OutlineProvisioner(_make_settings()).delete_key("1")
        assert not isinstance(build.call_args[0][0], _PinnedHTTPSHandler)

    def test_matching_certificate_accepted(self):
        conn = _PinnedHTTPSConnection("203.0.113.7", 4321, fingerprint=PIN)
        with _connect_with_cert(DER):
            conn.connect()
        assert conn.sock is not None

    def test_other_certificate_rejected(self):
        conn = _PinnedHTTPSConnection("203.0.113.7", 4321, fingerprint="00" * 32)
        with (
            _connect_with_cert(DER),
            pytest.raises(ssl.SSLCertVerificationError, match="does not match"),
        ):
            conn.connect()

    def test_rejected_certificate_not_retried(self, opener):
        mismatch = ssl.SSLCertVerificationError("does not match")
        opener.open.side_effect = urllib.error.URLError(mismatch)
        with pytest.raises(ProvisioningError, match="certificate rejected") as exc_info:
            OutlineProvisioner(_make_settings(cert_sha256=PIN)).delete_key("1")
        assert exc_info.value.retryable is False
        assert opener.open.call_count == 1

    def test_pinned_context_skips_chain_validation(self):
        ctx = OutlineProvisioner(
            _make_settings(cert_sha256=PIN, ca_cert_path="/unused.pem"),
        )._get_ssl_context()
        assert ctx.verify_mode == ssl.CERT_NONE
