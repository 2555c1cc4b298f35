"""Health check poller: one cycle probes every enabled check of every active site.

Probes run in a bounded thread pool; persistence and classification happen
back on the event loop. A cycle can be triggered on demand (``run_cycle``)
or on a fixed cadence (``start`` / ``stop``).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from .classifier import SeverityClassifier
from .engine import ProbeResult, execute_check
from .models import HealthCheck, HealthEvent, MonitoredSite, Result
from .store import MonitorStore

logger = logging.getLogger(__name__)

_ICONS = {Result.OK: "✅", Result.WARN: "⚠️", Result.FAIL: "❌"}


@dataclass
class CheckRun:
    check_id: str
    site_name: str
    result: Result
    event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"check_id": self.check_id, "site_name": self.site_name, "result": self.result.value}


@dataclass
class PollSummary:
    """Aggregate outcome of one poll cycle."""

    results: list[CheckRun] = field(default_factory=list)

    @property
    def checks_run(self) -> int:
        return len(self.results)

    def count(self, result: Result) -> int:
        return sum(1 for r in self.results if r.result == result)

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "checks_run": self.checks_run,
            "summary": {
                "ok": self.count(Result.OK),
                "warn": self.count(Result.WARN),
                "fail": self.count(Result.FAIL),
            },
            "results": [r.to_dict() for r in self.results],
        }


class HealthPoller:
    """Runs poll cycles over all enabled checks of active sites."""

    def __init__(
        self,
        store: MonitorStore,
        classifier: SeverityClassifier,
        max_concurrency: int = 16,
        interval: int = 0,
        on_result: Callable[[CheckRun], Any] | None = None,
        probe: Callable[[HealthCheck, str], ProbeResult] = execute_check,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.interval = interval
        self.on_result = on_result
        self._probe = probe
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_concurrency), thread_name_prefix="probe",
        )
        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def start(self) -> None:
        """Start the cadence loop (no-op when interval is 0)."""
        if self.interval <= 0:
            logger.info("Poll interval is 0; poller idle until triggered")
            return
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="health-poller")
        logger.info("Health poller started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        """Stop the cadence loop and release the probe pool."""
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._executor.shutdown(wait=False)
        logger.info("Health poller stopped")

    async def run_cycle(self) -> PollSummary:
        """Probe every eligible check concurrently and wait for all to settle."""
        checks = self.store.list_active_checks()
        if not checks:
            logger.info("No health checks to run")
            return PollSummary()

        logger.info("Running %d health checks...", len(checks))
        runs = await asyncio.gather(*(self._run_one(site, check) for site, check in checks))
        summary = PollSummary(results=list(runs))

        logger.info(
            "Polling complete: %d ok, %d warn, %d fail",
            summary.count(Result.OK), summary.count(Result.WARN), summary.count(Result.FAIL),
        )
        return summary

    async def _run_one(self, site: MonitoredSite, check: HealthCheck) -> CheckRun:
        loop = asyncio.get_running_loop()
        probe = await loop.run_in_executor(
            self._executor, self._probe, check, site.primary_domain,
        )

        event: HealthEvent | None = None
        try:
            event = self.store.append_event(HealthEvent(
                site_id=site.id,
                check_id=check.id,
                check_type=check.check_type.value,
                result=probe.result,
                latency_ms=probe.latency_ms,
                http_status=probe.http_status,
                error_message=probe.error_message,
                raw_payload=probe.raw_payload,
            ))
        except Exception:
            logger.exception("Failed to record event for %s", site.name)

        if probe.result == Result.FAIL and event is not None:
            try:
                self.classifier.classify(site.id, check.check_type.value, event.id)
            except Exception:
                logger.exception("Severity classification failed for %s", site.name)

        run = CheckRun(
            check_id=check.id,
            site_name=site.name,
            result=probe.result,
            event_id=event.id if event else None,
        )
        if self.on_result:
            try:
                self.on_result(run)
            except Exception:
                logger.exception("Poll result callback error")

        logger.info(
            "%s %s [%s]: %s (%sms)",
            _ICONS[probe.result], site.name, check.check_type.value,
            probe.result.value, probe.latency_ms,
        )
        return run

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Poll cycle failed")
            await asyncio.sleep(self.interval)
