"""Registry of ledger adapters, one per chain."""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from atomicswap.chains.base import LedgerAdapter
from atomicswap.chains.dry_run import DryRunLedgerAdapter
from atomicswap.config import Settings, get_settings
from atomicswap.swap.errors import ValidationError

logger = logging.getLogger(__name__)


class UnsupportedChainError(ValidationError):
    """No adapter is registered for the chain."""

    code = "unsupported_chain"


class AdapterRegistry:
    """Looks up the ledger adapter serving a chain."""

    def __init__(self, adapters: Optional[Iterable[LedgerAdapter]] = None):
        self._adapters: dict[str, LedgerAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: LedgerAdapter) -> None:
        """Add (or replace) the adapter for its chain."""
        chain = adapter.chain.lower()
        if chain in self._adapters:
            logger.warning(f"Replacing ledger adapter for {chain}")
        self._adapters[chain] = adapter

    def get(self, chain: str) -> LedgerAdapter:
        """Get the adapter for a chain.

        Raises:
            UnsupportedChainError: If no adapter serves the chain
        """
        adapter = self._adapters.get(chain.lower())
        if adapter is None:
            raise UnsupportedChainError(f"Ledger {chain} not supported")
        return adapter

    def supports(self, chain: str) -> bool:
        return chain.lower() in self._adapters

    @property
    def chains(self) -> list[str]:
        return sorted(self._adapters)


def create_default_registry(
    settings: Optional[Settings] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> AdapterRegistry:
    """Build the registry for the configured environment.

    In dry-run mode every configured chain is served by a simulated HTLC
    ledger. Production adapters live outside this package and must be
    registered by the embedding application.
    """
    settings = settings or get_settings()
    registry = AdapterRegistry()

    if settings.dry_run:
        for chain in settings.chains:
            registry.register(DryRunLedgerAdapter(chain, clock=clock))
        logger.info(f"Dry-run ledgers enabled: {', '.join(registry.chains)}")
    else:
        logger.warning("Dry-run disabled - no ledger adapters registered by default")

    return registry
