"""Expiration scheduler -- renewal reminders, expiry and revocation retries.

Single daemon thread running three jobs on independent intervals:

- ``notify_expiring``: remind owners (and prompt the operator) before
  an order expires.
- ``deactivate_expired``: close orders past their expiry and revoke
  their keys.
- ``retry_revocations``: retry remote key deletions that failed when
  their order closed.

Exceptions in one job do not block the others.  Stopping lets the
current job finish; no new job starts afterwards.

Usage::

    worker = ExpirationWorker(order_service, settings.scheduler, db)
    worker.start()
    ...
    worker.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from pypgkit import Database

    from keyvend.config.settings import SchedulerSettings
    from keyvend.metrics.collector import MetricsCollector
    from keyvend.services.order import OrderService

log = logging.getLogger(__name__)

JOB_NAMES = ("notify_expiring", "deactivate_expired", "retry_revocations")


class _ScheduledJob:
    """Internal: a named job with its own interval and last-run tracking."""

    __slots__ = ("_last_run", "consecutive_failures", "func", "interval_seconds", "name")

    def __init__(
        self,
        name: str,
        interval_seconds: int,
        func: Callable[[], object],
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self._last_run: float | None = None
        self.consecutive_failures: int = 0

    def is_due(self, now: float) -> bool:
        """Return whether the job is due; a job that never ran is due."""
        return self._last_run is None or (now - self._last_run) >= self.interval_seconds

    def run(self, now: float) -> object:
        """Execute the job and record the current time as last run."""
        self._last_run = now
        return self.func()


class ExpirationWorker:
    """Daemon thread that runs the order expiration jobs.

    When a database is provided, a transaction-scoped
    ``pg_try_advisory_xact_lock`` held for the whole tick ensures only
    one instance across the cluster runs the jobs at a time.
    """

    # Advisory lock ID for leader election (arbitrary but stable)
    _ADVISORY_LOCK_ID = 712_101

    def __init__(
        self,
        order_service: OrderService,
        settings: SchedulerSettings,
        db: Database | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._service = order_service
        self._settings = settings
        self._db = db
        self._metrics = metrics
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._loop_interval = settings.loop_interval_seconds
        self._jobs: list[_ScheduledJob] = [
            _ScheduledJob(
                "notify_expiring",
                settings.notify_interval_seconds,
                order_service.notify_expiring,
            ),
            _ScheduledJob(
                "deactivate_expired",
                settings.deactivate_interval_seconds,
                order_service.deactivate_expired,
            ),
            _ScheduledJob(
                "retry_revocations",
                settings.revocation_retry_interval_seconds,
                order_service.retry_revocations,
            ),
        ]

    @property
    def jobs(self) -> list[_ScheduledJob]:
        return list(self._jobs)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background worker thread."""
        if not self._settings.enabled:
            log.info("Expiration worker disabled by configuration")
            return
        if self.is_running():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="expiration-worker",
            daemon=True,
        )
        self._thread.start()
        log.info(
            "Expiration worker started (jobs: %s)",
            {j.name: j.interval_seconds for j in self._jobs},
        )

    def stop(self) -> None:
        """Signal the worker to stop and wait for the current tick to end."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._loop_interval + 30)
            log.info("Expiration worker stopped")

    def run_job(self, name: str) -> object:
        """Run one job synchronously, without leader election.

        Failures propagate to the caller.
        """
        for job in self._jobs:
            if job.name == name:
                log.info("Running job '%s' on demand", name)
                return job.run(time.monotonic())
        msg = f"Unknown job {name!r}; expected one of {', '.join(JOB_NAMES)}"
        raise ValueError(msg)

    def _run(self) -> None:
        """Run main loop -- wake periodically, check which jobs are due."""
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception:  # noqa: BLE001
                log.exception("Expiration worker tick failed")
            self._stop_event.wait(timeout=self._loop_interval)

    def _tick(self) -> None:
        if self._db is None:
            self._run_due_jobs()
            return

        # Lock lives as long as this transaction; commit releases it.
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT pg_try_advisory_xact_lock(%s)",
                (self._ADVISORY_LOCK_ID,),
            ).fetchone()
            if not row or not row[0]:
                log.debug("Another instance holds the scheduler lock, skipping tick")
                return
            self._run_due_jobs()

    def _run_due_jobs(self) -> None:
        now = time.monotonic()
        for job in self._jobs:
            if self._stop_event.is_set():
                break
            if job.is_due(now):
                self._execute_job(job, now)

    def _execute_job(self, job: _ScheduledJob, now: float) -> None:
        """Execute a single job with error tracking and metrics."""
        try:
            job.run(now)
            job.consecutive_failures = 0
            if self._metrics:
                self._metrics.increment(
                    "keyvend_worker_runs_total",
                    labels={"job": job.name},
                )
        except Exception:  # noqa: BLE001
            job.consecutive_failures += 1
            log.exception(
                "Scheduled job '%s' failed (consecutive: %d)",
                job.name,
                job.consecutive_failures,
            )
            if self._metrics:
                self._metrics.increment(
                    "keyvend_worker_errors_total",
                    labels={"job": job.name},
                )
