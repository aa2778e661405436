"""Per-installation sync scheduling.

SyncScheduler owns one ticker task and one cancellation token (an
asyncio.Event) per scheduled installation. Each tick:

1. Re-reads the installation. A missing or disabled installation cancels
   its own ticker.
2. Skips the tick if a pass for that installation is still running.
3. Otherwise starts a pass in its own task, so the ticker keeps its rhythm
   while a slow pass runs.

Cancelling a schedule stops the ticker only. A pass already in flight runs
to completion and persists its SyncLog. shutdown() stops every ticker and
waits for in-flight passes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from src.pmsync.core.exceptions import SyncAlreadyRunningError
from src.pmsync.core.monitoring import active_schedules as active_schedules_gauge
from src.pmsync.sync.orchestrator import SyncOrchestrator
from src.pmsync.sync.schemas import Installation, SyncDirection, SyncLog
from src.pmsync.sync.store import InstallationStore

logger = structlog.get_logger(__name__)


@dataclass
class ScheduleHandle:
    """Ticker state for one installation."""

    installation_id: str
    interval_seconds: float
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    paused: bool = False
    ticks: int = 0


class SyncScheduler:
    """Supervisor for per-installation sync tickers.

    Args:
        orchestrator: Runs the actual passes.
        installations: Re-read before every scheduled pass.
        actor: Identity recorded on scheduled passes.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        installations: InstallationStore,
        actor: str = "system:scheduler",
    ) -> None:
        self._orchestrator = orchestrator
        self._installations = installations
        self._actor = actor
        self._schedules: dict[str, ScheduleHandle] = {}
        self._active: set[str] = set()
        self._inflight: set[asyncio.Task] = set()

    # ── Schedule management ─────────────────────────────────────────────

    def schedule(self, installation_id: str, interval_minutes: float) -> ScheduleHandle:
        """Register (or replace) the recurring trigger for an installation.

        The first pass fires one interval after scheduling.

        Raises:
            ValueError: If interval_minutes is not positive.
        """
        if interval_minutes <= 0:
            raise ValueError(f"interval_minutes must be positive, got {interval_minutes}")

        self.cancel(installation_id)
        handle = ScheduleHandle(
            installation_id=installation_id,
            interval_seconds=interval_minutes * 60,
        )
        handle.task = asyncio.create_task(
            self._tick_loop(handle),
            name=f"pm-sync-ticker:{installation_id}",
        )
        self._schedules[installation_id] = handle
        active_schedules_gauge.set(len(self._schedules))
        logger.info(
            "scheduler.scheduled",
            installation_id=installation_id,
            interval_minutes=interval_minutes,
        )
        return handle

    def cancel(self, installation_id: str) -> bool:
        """Stop an installation's ticker. In-flight passes still finish.

        Returns:
            True if a schedule was removed.
        """
        handle = self._schedules.pop(installation_id, None)
        if handle is None:
            return False
        handle.stop.set()
        active_schedules_gauge.set(len(self._schedules))
        logger.info("scheduler.cancelled", installation_id=installation_id)
        return True

    def pause(self, installation_id: str) -> bool:
        handle = self._schedules.get(installation_id)
        if handle is None:
            return False
        handle.paused = True
        logger.info("scheduler.paused", installation_id=installation_id)
        return True

    def resume(self, installation_id: str) -> bool:
        handle = self._schedules.get(installation_id)
        if handle is None:
            return False
        handle.paused = False
        logger.info("scheduler.resumed", installation_id=installation_id)
        return True

    def active_schedules(self) -> list[str]:
        """Installation IDs with a live ticker, sorted."""
        return sorted(self._schedules)

    def is_scheduled(self, installation_id: str) -> bool:
        return installation_id in self._schedules

    def is_running(self, installation_id: str) -> bool:
        """True while a pass for the installation is in flight."""
        return installation_id in self._active

    # ── Running passes ──────────────────────────────────────────────────

    async def trigger(
        self,
        installation: Installation,
        direction: SyncDirection | str = SyncDirection.BIDIRECTIONAL,
        *,
        actor: str,
    ) -> SyncLog:
        """Run a pass now, under the same per-installation exclusion as ticks.

        Raises:
            SyncAlreadyRunningError: If a pass for the installation is active.
        """
        if installation.id in self._active:
            raise SyncAlreadyRunningError(installation.id)
        return await self._run(installation, direction, actor)

    async def run_once(self, installation_id: str) -> SyncLog | None:
        """Perform one scheduled check and pass, awaiting the result.

        Returns:
            The SyncLog, or None if the tick was skipped.
        """
        installation = await self._check(installation_id)
        if installation is None:
            return None
        return await self._run(installation, SyncDirection.BIDIRECTIONAL, self._actor)

    async def shutdown(self, wait: bool = True) -> None:
        """Stop every ticker and (optionally) wait for in-flight passes."""
        handles = list(self._schedules.values())
        for installation_id in list(self._schedules):
            self.cancel(installation_id)

        tickers = [h.task for h in handles if h.task is not None]
        if tickers:
            await asyncio.gather(*tickers, return_exceptions=True)
        if wait and self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info("scheduler.shutdown", stopped=len(handles))

    # ── Internals ───────────────────────────────────────────────────────

    async def _tick_loop(self, handle: ScheduleHandle) -> None:
        while not handle.stop.is_set():
            try:
                await asyncio.wait_for(handle.stop.wait(), timeout=handle.interval_seconds)
            except asyncio.TimeoutError:
                pass
            if handle.stop.is_set():
                break
            if handle.paused:
                continue

            handle.ticks += 1
            try:
                installation = await self._check(handle.installation_id)
            except Exception:
                logger.warning(
                    "scheduler.tick_failed",
                    installation_id=handle.installation_id,
                    exc_info=True,
                )
                continue
            if installation is None or handle.stop.is_set():
                continue
            if installation.sync_config.interval_minutes <= 0:
                logger.info("scheduler.installation_unscheduled", installation_id=handle.installation_id)
                self.cancel(handle.installation_id)
                continue
            self._start_pass(installation)

    async def _check(self, installation_id: str) -> Installation | None:
        """Return the installation if a scheduled pass should run now."""
        installation = await self._installations.get(installation_id)
        if installation is None or not installation.enabled:
            logger.info(
                "scheduler.installation_gone",
                installation_id=installation_id,
                reason="missing" if installation is None else "disabled",
            )
            self.cancel(installation_id)
            return None
        if installation_id in self._active:
            logger.info("scheduler.tick_skipped", installation_id=installation_id, reason="pass_running")
            return None
        return installation

    def _start_pass(self, installation: Installation) -> None:
        # Claim before the task starts; the next tick must see it
        self._active.add(installation.id)
        task = asyncio.create_task(
            self._run_background(installation),
            name=f"pm-sync-pass:{installation.id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(
        self,
        installation: Installation,
        direction: SyncDirection | str,
        actor: str,
    ) -> SyncLog:
        self._active.add(installation.id)
        return await self._run_claimed(installation, direction, actor)

    async def _run_background(self, installation: Installation) -> None:
        try:
            await self._run_claimed(installation, SyncDirection.BIDIRECTIONAL, self._actor)
        except Exception:
            logger.exception("scheduler.pass_failed", installation_id=installation.id)

    async def _run_claimed(
        self,
        installation: Installation,
        direction: SyncDirection | str,
        actor: str,
    ) -> SyncLog:
        try:
            return await self._orchestrator.run_pass(installation, direction, actor=actor)
        finally:
            self._active.discard(installation.id)
