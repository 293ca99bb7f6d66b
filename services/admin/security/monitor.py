"""
Security Monitor
================

Runs the incident scan, compliance checks and backup cleanup on fixed
intervals inside the admin service process.

A task whose previous run has not finished skips the tick instead of
running twice.

Version: 0.1.0
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)


class PeriodicTask:
    """
    Call an async function every ``interval_seconds``.

    Example:
        >>> task = PeriodicTask("incident_scan", 300, incidents.detect_security_incidents)
        >>> task.start()
        >>> await task.stop()
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._loop_task: asyncio.Task[None] | None = None
        self._run_task: asyncio.Task[None] | None = None

        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self.last_run_at: datetime | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def busy(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def tick(self) -> bool:
        """
        Run once unless the previous run is still in progress.

        Returns:
            True if the function ran
        """
        if self.busy:
            self.skipped += 1
            logger.warning("periodic_task_skipped", task=self.name, skipped=self.skipped)
            return False

        self._run_task = asyncio.current_task()
        self.last_run_at = datetime.now(UTC)
        try:
            await self._func()
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.error("periodic_task_failed", task=self.name, error=str(e), exc_info=True)
        else:
            self.last_error = None
        finally:
            self.runs += 1
            self._run_task = None
        return True

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            if self.busy:
                self.skipped += 1
                logger.warning("periodic_task_skipped", task=self.name, skipped=self.skipped)
                continue
            asyncio.create_task(self.tick())

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("periodic_task_started", task=self.name, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        for task in (self._loop_task, self._run_task):
            if task is None or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._loop_task = None
        self._run_task = None
        logger.info("periodic_task_stopped", task=self.name, runs=self.runs)

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "running": self.running,
            "busy": self.busy,
            "runs": self.runs,
            "failures": self.failures,
            "skipped": self.skipped,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


class SecurityMonitor:
    """The admin service's scheduled security jobs."""

    def __init__(self, incidents: Any, compliance: Any, backups: Any) -> None:
        security = settings.security
        self.tasks = [
            PeriodicTask(
                "incident_scan",
                security.incident_scan_interval_seconds,
                incidents.detect_security_incidents,
            ),
            PeriodicTask(
                "compliance_daily",
                security.compliance_daily_interval_seconds,
                compliance.run_daily_checks,
            ),
            PeriodicTask(
                "compliance_weekly",
                security.compliance_weekly_interval_seconds,
                compliance.run_weekly_assessments,
            ),
            PeriodicTask(
                "backup_cleanup",
                security.backup_cleanup_interval_seconds,
                backups.delete_expired_backups,
            ),
        ]

    def start_all(self) -> None:
        for task in self.tasks:
            task.start()
        logger.info("security_monitor_started", tasks=len(self.tasks))

    async def stop_all(self) -> None:
        for task in self.tasks:
            await task.stop()
        logger.info("security_monitor_stopped")

    def status(self) -> list[dict[str, Any]]:
        return [task.status() for task in self.tasks]
