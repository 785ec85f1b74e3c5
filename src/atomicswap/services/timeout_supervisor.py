"""Timeout supervisor.

Periodically sweeps every non-terminal swap: expires swaps past their
deadline, drives rollbacks until all locks are refunded, and (when
enabled) advances in-flight swaps. Also expires stale balance reservations.

Usage:
    python -m atomicswap.services.timeout_supervisor --interval 30

Environment variables:
    DATABASE_URL: Swap state database
    SUPERVISOR_INTERVAL_SECONDS: Seconds between sweeps (default: 30)
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from atomicswap.config import Settings, get_settings
from atomicswap.ledger.repository import SwapRepository
from atomicswap.services.reservations import BalanceReservationLedger
from atomicswap.swap.engine import AtomicSwapEngine
from atomicswap.swap.models import SwapStatus

logger = logging.getLogger(__name__)


@dataclass
class SupervisorReport:
    """Outcome of one sweep."""

    scanned: int = 0
    expired: int = 0
    rolled_back: int = 0
    advanced: int = 0
    completed: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    reservations: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "expired": self.expired,
            "rolled_back": self.rolled_back,
            "advanced": self.advanced,
            "completed": self.completed,
            "errors": dict(self.errors),
            "reservations": dict(self.reservations),
        }


class TimeoutSupervisor:
    """Background sweeper for swap deadlines and rollbacks."""

    def __init__(
        self,
        engine: AtomicSwapEngine,
        swaps: SwapRepository,
        reservations: BalanceReservationLedger,
        settings: Optional[Settings] = None,
        interval: Optional[float] = None,
    ):
        """Initialize supervisor.

        Args:
            engine: Swap engine used for every transition
            swaps: Repository listing active swaps
            reservations: Reservation ledger swept for stale holds
            settings: Application settings
            interval: Seconds between sweeps (defaults to settings)
        """
        self.engine = engine
        self.swaps = swaps
        self.reservations = reservations
        self.settings = settings or get_settings()
        self.interval = interval if interval is not None else self.settings.supervisor_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SupervisorReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> SupervisorReport:
        """Run a single sweep.

        A failure on one swap is logged and reported; the sweep continues
        with the remaining swaps.
        """
        report = SupervisorReport()
        active = await self.swaps.list_active()
        report.scanned = len(active)

        for swap in active:
            try:
                action = await self.engine.supervise(swap.swap_id)
            except Exception as e:
                logger.error(f"Supervisor failed on swap {swap.swap_id}: {e}")
                report.errors[swap.swap_id] = str(e)
                continue

            if action is None:
                continue

            status = (await self.engine.get_swap(swap.swap_id))["status"]
            if action == "expire":
                report.expired += 1
            elif action in ("lock_initiator", "lock_responder"):
                report.advanced += 1

            if status == SwapStatus.ROLLED_BACK.value:
                report.rolled_back += 1
            elif status == SwapStatus.COMPLETED.value:
                report.completed += 1

        try:
            sweep = await self.reservations.expire_stale()
            report.reservations = sweep.to_dict()
        except Exception as e:
            logger.error(f"Reservation sweep failed: {e}")
            report.errors["reservations"] = str(e)

        if report.expired or report.rolled_back or report.completed or report.errors:
            logger.info(f"Supervisor sweep: {report.to_dict()}")
        self.last_report = report
        return report

    async def run(self) -> None:
        """Run the sweep loop until cancelled."""
        logger.info(f"Starting timeout supervisor (interval: {self.interval}s)")

        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Supervisor error: {e}")

            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start the loop as a background task."""
        if self.running:
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Cancel the background task and wait for it."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Timeout supervisor stopped")


async def main():
    """Main entry point."""
    from atomicswap.ledger.database import init_db
    from atomicswap.runtime import build_runtime

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Run the swap timeout supervisor")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between sweeps (default: SUPERVISOR_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sweep and exit",
    )
    args = parser.parse_args()

    runtime = build_runtime()
    await init_db(runtime.db_engine)
    supervisor = runtime.supervisor
    if args.interval is not None:
        supervisor.interval = args.interval

    try:
        if args.once:
            report = await supervisor.tick()
            print(report.to_dict())
        else:
            await supervisor.run()
    finally:
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
