"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DEBUG"] = "false"

from atomicswap.chains.base import LedgerAdapter
from atomicswap.chains.dry_run import DryRunLedgerAdapter
from atomicswap.chains.factory import AdapterRegistry
from atomicswap.config import Settings
from atomicswap.ledger.database import init_db
from atomicswap.notifications.alerts import OperatorAlerter
from atomicswap.runtime import Runtime, build_runtime
from atomicswap.swap.models import LegRequest, SwapRequest
from atomicswap.swap.secrets import SecretManager, generate_master_key

START = datetime(2026, 1, 1, 12, 0, 0)


class FakeClock:
    """Controllable naive-UTC clock shared by every component under test."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings backed by a per-test SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'atomicswap.db'}",
        environment="test",
        debug=False,
        admin_token="test-admin-token",
        participant_tokens="alice:alice-token,bob:bob-token,mallory:mallory-token",
        telegram_bot_token="",
        admin_user_ids="1001",
        master_key=generate_master_key(),
        dry_run=True,
        dry_run_chains="ethereum,hedera",
        reservation_ttl_seconds=300,
        reservation_grace_seconds=3600,
        timelock_safety_margin_seconds=120,
        default_required_confirmations=3,
        retry_max_attempts=3,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        refund_max_attempts=4,
        swap_lock_timeout_seconds=5.0,
        supervisor_interval_seconds=0.05,
        supervisor_auto_advance=True,
    )


@pytest.fixture
def ethereum(clock) -> DryRunLedgerAdapter:
    adapter = DryRunLedgerAdapter("ethereum", clock=clock)
    adapter.credit("alice", "USDC", Decimal("1000"))
    return adapter


@pytest.fixture
def hedera(clock) -> DryRunLedgerAdapter:
    adapter = DryRunLedgerAdapter("hedera", clock=clock)
    adapter.credit("bob", "HBAR", Decimal("500"))
    return adapter


@pytest.fixture
def secret_manager(settings) -> SecretManager:
    return SecretManager(settings.master_key)


@pytest.fixture
def bot() -> AsyncMock:
    """Stand-in for the aiogram Bot; alerts land in ``send_message`` calls."""
    mock_bot = AsyncMock()
    mock_bot.send_message = AsyncMock(return_value=True)
    return mock_bot


@pytest.fixture
def alerter(settings, bot) -> OperatorAlerter:
    return OperatorAlerter(settings, bot=bot)


@pytest_asyncio.fixture
async def make_runtime(settings, clock, ethereum, hedera, secret_manager, alerter):
    """Factory building runtimes over the same database (a new one simulates a restart)."""
    built: list[Runtime] = []

    async def factory(*adapters: LedgerAdapter) -> Runtime:
        registry = AdapterRegistry(adapters or [ethereum, hedera])
        runtime = build_runtime(
            settings,
            adapters=registry,
            secrets=secret_manager,
            alerter=alerter,
            clock=clock,
            sleep=no_sleep,
        )
        await init_db(runtime.db_engine)
        built.append(runtime)
        return runtime

    yield factory

    for runtime in built:
        await runtime.close()


@pytest_asyncio.fixture
async def runtime(make_runtime) -> Runtime:
    return await make_runtime()


@pytest.fixture
def engine(runtime):
    return runtime.engine


@pytest.fixture
def swap_request() -> Callable[..., SwapRequest]:
    """Factory for the reference swap: 100 USDC on ethereum for 50 HBAR on hedera."""

    def factory(
        initiator_timeout: int = 1000,
        responder_timeout: int = 400,
        secret: Optional[str] = None,
        secret_hash: Optional[str] = None,
        **overrides,
    ) -> SwapRequest:
        values = dict(
            initiator_id="alice",
            responder_id="bob",
            initiator_leg=LegRequest(
                chain="ethereum",
                asset_id="USDC",
                amount=Decimal("100"),
                timeout_seconds=initiator_timeout,
            ),
            responder_leg=LegRequest(
                chain="hedera",
                asset_id="HBAR",
                amount=Decimal("50"),
                timeout_seconds=responder_timeout,
            ),
            secret=secret,
            secret_hash=secret_hash,
        )
        values.update(overrides)
        return SwapRequest(**values)

    return factory
