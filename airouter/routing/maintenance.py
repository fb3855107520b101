"""Periodic routing housekeeping.

- open decisions older than the decision timeout are moved to TIMEOUT
- quota counters from previous UTC days are purged

run_once() is what a scheduler (cron, k8s CronJob, APScheduler) should
call. run_forever() / start() provide an in-process loop for single-node
deployments.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from airouter.config import Settings, get_settings
from airouter.routing.ledger import DecisionLedger
from airouter.routing.quota import QuotaLedger

log = structlog.get_logger(__name__)


@dataclass
class MaintenanceReport:
    timed_out: int = 0
    quota_keys_purged: int = 0
    quota_purge_ok: bool = True


class RoutingMaintenance:
    """Timeout sweep and stale quota purge.

    Args:
        ledger: Decision ledger to sweep
        quota: Quota ledger to purge
        settings: Supplies decision_timeout_seconds
    """

    def __init__(
        self,
        ledger: DecisionLedger,
        quota: QuotaLedger,
        settings: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._quota = quota
        self._settings = settings or get_settings()
        self._task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    async def run_once(self) -> MaintenanceReport:
        timed_out = await self._ledger.sweep_timeouts(self._settings.decision_timeout_seconds)
        purge = await self._quota.purge_stale()
        report = MaintenanceReport(
            timed_out=timed_out,
            quota_keys_purged=purge.value if purge.ok else 0,
            quota_purge_ok=purge.ok,
        )
        log.info(
            "maintenance.run_complete",
            timed_out=report.timed_out,
            quota_keys_purged=report.quota_keys_purged,
            quota_purge_ok=report.quota_purge_ok,
        )
        return report

    async def run_forever(
        self,
        interval_seconds: float,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run maintenance every ``interval_seconds`` until stopped."""
        stop = stop_event or self._stop
        while not stop.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error("maintenance.loop_error", error=str(exc), exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def start(self, interval_seconds: float) -> None:
        """Start the loop as a background task (no-op if already running)."""
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run_forever(interval_seconds))
            log.info("maintenance.started", interval_seconds=interval_seconds)

    async def shutdown(self) -> None:
        """Stop the background loop."""
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("maintenance.stopped")
