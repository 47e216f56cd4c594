"""Fail-fast wrapper for an unreachable key server.

After ``failure_threshold`` consecutive retryable failures the breaker
opens and every approval or scheduler tick gets a retryable
``ProvisioningError`` at once, instead of waiting out the backend's
timeout and retry budget.  Once ``recovery_timeout`` seconds have passed
a single probe is let through: if the key server answers the breaker
closes, otherwise it opens for another period.

::

    backend = CircuitBreakerProvisioner(OutlineProvisioner(settings), settings)
    backend.state  # "closed", "open" or "half_open"
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Self

from keyvend.provisioning.base import KeyProvisioner, ProvisionedKey, ProvisioningError

if TYPE_CHECKING:
    from collections.abc import Callable

    from keyvend.config.settings import ProvisioningSettings
    from keyvend.models.endpoint import ManagementEndpoint

log = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreakerProvisioner(KeyProvisioner):
    """Counts key server outages around another :class:`KeyProvisioner`.

    A ``not_found`` answer to a delete counts as a healthy response, and
    non-retryable errors (a 4xx from the management API) are passed on
    without being counted.
    """

    def __init__(
        self,
        backend: KeyProvisioner,
        settings: ProvisioningSettings,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ) -> None:
        super().__init__(settings)
        self._backend = backend
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout

        self._lock = threading.Lock()
        self._state = CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probing = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def endpoint(self) -> str:
        return self._backend.endpoint

    def create_key(self, name: str) -> ProvisionedKey:
        return self._guarded(lambda: self._backend.create_key(name))

    def delete_key(self, key_id: str) -> None:
        self._guarded(lambda: self._backend.delete_key(key_id))

    def startup_check(self) -> None:
        self._backend.startup_check()

    @property
    def management_endpoint(self) -> ManagementEndpoint:
        return self._backend.management_endpoint

    def with_endpoint(self, endpoint: ManagementEndpoint) -> Self:
        # the new server gets its own failure history
        return type(self)(
            self._backend.with_endpoint(endpoint),
            self._settings_for(endpoint),
            failure_threshold=self._failure_threshold,
            recovery_timeout=self._recovery_timeout,
        )

    # ------------------------------------------------------------------

    def _guarded(self, call: Callable[[], ProvisionedKey | None]):
        self._admit()
        try:
            result = call()
        except ProvisioningError as exc:
            self._record(exc if not exc.not_found else None)
            raise
        except Exception as exc:
            wrapped = ProvisioningError(str(exc), retryable=True)
            self._record(wrapped)
            raise wrapped from exc
        self._record(None)
        return result

    def _transition(self, new_state: str, reason: str) -> None:
        if new_state != self._state:
            level = logging.WARNING if new_state == OPEN else logging.INFO
            log.log(level, "Key server circuit %s -> %s (%s)", self._state, new_state, reason)
        self._state = new_state
        if new_state == OPEN:
            self._opened_at = time.monotonic()

    def _admit(self) -> None:
        """Let the call through, or raise a retryable error without calling out."""
        with self._lock:
            if self._state == OPEN:
                waited = time.monotonic() - self._opened_at
                if waited < self._recovery_timeout:
                    remaining = self._recovery_timeout - waited
                    raise ProvisioningError(
                        f"Key server circuit breaker is open; retry in {remaining:.0f}s",
                        retryable=True,
                    )
                self._transition(HALF_OPEN, f"{waited:.1f}s since opening")
                self._probing = False

            if self._state == HALF_OPEN:
                if self._probing:
                    raise ProvisioningError(
                        "Key server circuit breaker is half-open; probe in progress",
                        retryable=True,
                    )
                self._probing = True

    def _record(self, error: ProvisioningError | None) -> None:
        with self._lock:
            probing, self._probing = self._probing, False
            if error is None:
                self._failures = 0
                self._transition(CLOSED, "probe succeeded" if probing else "ok")
            elif probing:
                self._transition(OPEN, f"probe failed: {error}")
            elif error.retryable:
                self._failures += 1
                if self._failures >= self._failure_threshold:
                    self._transition(OPEN, f"{self._failures} failures, last: {error}")
