"""Wiring of the swap engine and its collaborators."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from atomicswap.chains.factory import AdapterRegistry, create_default_registry
from atomicswap.config import Settings, get_settings
from atomicswap.ledger.database import create_engine, create_session_factory
from atomicswap.ledger.repository import (
    ConfirmationRepository,
    ReservationRepository,
    SwapRepository,
)
from atomicswap.notifications.alerts import OperatorAlerter
from atomicswap.services.confirmations import ConfirmationRecorder
from atomicswap.services.reservations import BalanceReservationLedger
from atomicswap.services.timeout_supervisor import TimeoutSupervisor
from atomicswap.swap.engine import AtomicSwapEngine
from atomicswap.swap.events import SwapEventBus
from atomicswap.swap.secrets import SecretManager, create_secret_manager
from atomicswap.utils.retry import Sleep

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a process needs to run swaps."""

    settings: Settings
    db_engine: AsyncEngine
    swaps: SwapRepository
    adapters: AdapterRegistry
    secrets: SecretManager
    reservations: BalanceReservationLedger
    recorder: ConfirmationRecorder
    events: SwapEventBus
    alerter: OperatorAlerter
    engine: AtomicSwapEngine
    supervisor: TimeoutSupervisor

    async def close(self) -> None:
        await self.supervisor.stop()
        await self.alerter.close()
        await self.db_engine.dispose()


def build_runtime(
    settings: Optional[Settings] = None,
    adapters: Optional[AdapterRegistry] = None,
    secrets: Optional[SecretManager] = None,
    alerter: Optional[OperatorAlerter] = None,
    clock: Optional[Callable[[], datetime]] = None,
    sleep: Optional[Sleep] = None,
) -> Runtime:
    """Build a runtime from settings.

    Args:
        settings: Application settings (defaults to environment)
        adapters: Ledger adapters (defaults to the configured registry)
        secrets: Secret manager (defaults to MASTER_KEY)
        alerter: Operator alerter (defaults to the Telegram alerter)
        clock: Time source shared by every component
        sleep: Backoff sleep used by retries
    """
    settings = settings or get_settings()
    db_engine = create_engine(settings.database_url, echo=settings.debug and not settings.is_production)
    session_factory = create_session_factory(db_engine)

    swaps = SwapRepository(session_factory)
    adapters = adapters or create_default_registry(settings, clock=clock)
    secrets = secrets or create_secret_manager(settings)
    alerter = alerter or OperatorAlerter(settings)
    events = SwapEventBus()

    reservations = BalanceReservationLedger(
        ReservationRepository(session_factory),
        adapters,
        settings=settings,
        clock=clock,
        sleep=sleep,
    )
    recorder = ConfirmationRecorder(ConfirmationRepository(session_factory), clock=clock)

    engine = AtomicSwapEngine(
        swaps=swaps,
        reservations=reservations,
        recorder=recorder,
        adapters=adapters,
        secrets=secrets,
        events=events,
        alerter=alerter,
        settings=settings,
        clock=clock,
        sleep=sleep,
    )
    supervisor = TimeoutSupervisor(engine, swaps, reservations, settings=settings)

    logger.info(f"Runtime ready: ledgers {', '.join(adapters.chains) or 'none'}")
    return Runtime(
        settings=settings,
        db_engine=db_engine,
        swaps=swaps,
        adapters=adapters,
        secrets=secrets,
        reservations=reservations,
        recorder=recorder,
        events=events,
        alerter=alerter,
        engine=engine,
        supervisor=supervisor,
    )
