"""Periodic driver for the fleet cycle and the autoscaler."""

import asyncio

import structlog

from convoy.core.errors import LeaseHeldError
from convoy.core.models import AutoSpawnSummary, CycleOutcome
from convoy.orchestrator.autoscaler import FleetAutoscaler
from convoy.orchestrator.cycle import FleetCycle
from convoy.utils.clock import Clock, now_ms

logger = structlog.get_logger(__name__)


class FleetScheduler:
    """Runs the fleet cycle every poll interval and the autoscaler on its own interval.

    Single-instance behaviour comes from the run leases held by the cycle and
    the autoscaler; a tick that finds a lease held is skipped.
    """

    def __init__(
        self,
        cycle: FleetCycle,
        autoscaler: FleetAutoscaler,
        poll_interval_seconds: int = 30,
        autoscale_interval_seconds: int = 300,
        clock: Clock = now_ms,
    ):
        self.cycle = cycle
        self.autoscaler = autoscaler
        self.poll_interval_seconds = poll_interval_seconds
        self.autoscale_interval_ms = autoscale_interval_seconds * 1000
        self.clock = clock

        self.running = False
        self.last_autoscale_at: int | None = None

    def _autoscale_due(self) -> bool:
        if self.last_autoscale_at is None:
            return True
        return self.clock() - self.last_autoscale_at >= self.autoscale_interval_ms

    def run_once(self) -> tuple[list[CycleOutcome] | None, AutoSpawnSummary | None]:
        """Run one tick: a fleet cycle, plus an autoscaler pass when due."""
        outcomes = None
        summary = None

        try:
            outcomes = self.cycle.run_cycle()
        except LeaseHeldError as e:
            logger.info("fleet_cycle_skipped_lease_held", holder=e.holder)

        if self._autoscale_due():
            try:
                summary = self.autoscaler.check_and_auto_spawn()
                self.last_autoscale_at = self.clock()
            except LeaseHeldError as e:
                logger.info("autoscale_skipped_lease_held", holder=e.holder)

        return outcomes, summary

    async def start(self) -> None:
        """Loop until ``stop`` is called."""
        self.running = True
        logger.info(
            "scheduler_started",
            poll_interval=self.poll_interval_seconds,
            autoscale_interval=self.autoscale_interval_ms // 1000,
        )

        while self.running:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.error("scheduler_tick_failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.poll_interval_seconds)

        logger.info("scheduler_stopped")

    def stop(self) -> None:
        self.running = False
