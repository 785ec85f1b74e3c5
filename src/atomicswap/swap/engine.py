"""Atomic swap engine.

Drives a two-leg swap through the hash-time-locked contract protocol:

1. Both legs are reserved and locked under the same hash lock. The responder
   leg is locked only after the initiator leg is confirmed, and its timelock
   is shorter than the initiator's by at least the safety margin.
2. Once both locks are confirmed the secret is used to claim both legs,
   responder leg first.
3. If the swap fails or expires before any claim, every lock is refunded once
   its timelock passes and every reservation is released.
4. A claim seen on-ledger makes the secret public. From then on nothing is
   refunded: the remaining leg is claimed for its recipient, or an operator
   is alerted when that is no longer possible.

All state lives in the repository. Every transition of a swap runs under a
per-swap lock, and each leg's new state is persisted before the ledger call
it announces, so a restarted process can pick up any swap from its stored
state alone.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from atomicswap.chains.base import (
    LedgerAdapterError,
    LockStatus,
    TimelockActiveError,
)
from atomicswap.chains.factory import AdapterRegistry
from atomicswap.config import Settings, get_settings
from atomicswap.ledger.repository import SwapRepository
from atomicswap.notifications.alerts import OperatorAlerter
from atomicswap.services.confirmations import ConfirmationRecorder
from atomicswap.services.reservations import BalanceReservationLedger
from atomicswap.swap.errors import (
    ClaimFailedError,
    InsufficientBalanceError,
    InvalidTransitionError,
    LockFailedError,
    LockOrderingError,
    LockOutcomeUnknownError,
    ReservationNotFoundError,
    RollbackFailedError,
    SwapNotFoundError,
    SwapTimeoutError,
    ValidationError,
)
from atomicswap.swap.events import SwapEvent, SwapEventBus, SwapEventType
from atomicswap.swap.models import (
    IN_FLIGHT_STATUSES,
    ROLLBACK_STATUSES,
    SECRET_VISIBLE_STATUSES,
    AtomicSwap,
    AtomicSwapAsset,
    ConfirmationStatus,
    LegRequest,
    LegState,
    ReservationState,
    SwapFilter,
    SwapProgress,
    SwapRequest,
    SwapStage,
    SwapStatus,
    can_transition,
)
from atomicswap.swap.secrets import SecretManager, SecretSealError
from atomicswap.utils import KeyedLock, retry_async, utcnow
from atomicswap.utils.retry import Sleep

logger = logging.getLogger(__name__)

STATUS_STAGES: dict[SwapStatus, SwapStage] = {
    SwapStatus.PENDING: SwapStage.INITIATED,
    SwapStatus.LOCKING_INITIATOR: SwapStage.LOCKING_ASSETS,
    SwapStatus.LOCKING_RESPONDER: SwapStage.LOCKING_ASSETS,
    SwapStatus.LOCKED: SwapStage.ASSETS_LOCKED,
    SwapStatus.COMPLETING: SwapStage.COMPLETING_SWAP,
    SwapStatus.COMPLETED: SwapStage.SWAP_COMPLETED,
    SwapStatus.FAILED: SwapStage.FAILED,
    SwapStatus.EXPIRED: SwapStage.EXPIRED,
    SwapStatus.ROLLING_BACK: SwapStage.ROLLING_BACK,
    SwapStatus.ROLLED_BACK: SwapStage.ROLLED_BACK,
}

# Fraction of the longest leg timeout used as completion estimate
ESTIMATE_FRACTION = 0.7

# Leg states whose on-ledger lock may still change hands
WATCHED_LEG_STATES = frozenset({LegState.LOCKED, LegState.CLAIMING, LegState.REFUNDING})

# Outcomes already persisted on the swap by the time they are raised
RECORDED_OUTCOMES = (
    LockFailedError,
    InsufficientBalanceError,
    ClaimFailedError,
    SwapTimeoutError,
    RollbackFailedError,
)


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, LedgerAdapterError) and error.retryable


@dataclass
class AdvanceResult:
    """Outcome of one driver step."""

    swap: dict
    action: Optional[str] = None

    @property
    def progressed(self) -> bool:
        return self.action is not None


class AtomicSwapEngine:
    """Coordinates HTLC swaps across two ledgers."""

    def __init__(
        self,
        swaps: SwapRepository,
        reservations: BalanceReservationLedger,
        recorder: ConfirmationRecorder,
        adapters: AdapterRegistry,
        secrets: SecretManager,
        events: Optional[SwapEventBus] = None,
        alerter: Optional[OperatorAlerter] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Sleep] = None,
    ):
        self._swaps = swaps
        self._reservations = reservations
        self._recorder = recorder
        self._adapters = adapters
        self._secrets = secrets
        self._events = events or SwapEventBus()
        self._settings = settings or get_settings()
        self._alerter = alerter or OperatorAlerter(self._settings)
        self._clock = clock or utcnow
        self._sleep = sleep
        self._locks = KeyedLock("swap", timeout=self._settings.swap_lock_timeout_seconds)
        self._outbox: dict[str, list[SwapEvent]] = {}

    @property
    def events(self) -> SwapEventBus:
        return self._events

    @property
    def margin(self) -> timedelta:
        return timedelta(seconds=self._settings.timelock_safety_margin_seconds)

    # ======================================================================
    # Initiation
    # ======================================================================

    def _validate(self, request: SwapRequest) -> None:
        if not request.initiator_id or not request.responder_id:
            raise ValidationError("Both initiator_id and responder_id are required")
        if request.initiator_id == request.responder_id:
            raise ValidationError("Initiator and responder must be different parties")

        for name, leg in (("initiator", request.initiator_leg), ("responder", request.responder_leg)):
            if not leg.chain:
                raise ValidationError(f"{name} leg chain is required")
            # Raises UnsupportedChainError
            self._adapters.get(leg.chain)
            if not leg.asset_id:
                raise ValidationError(f"{name} leg asset_id is required")
            if leg.amount is None or leg.amount <= 0:
                raise ValidationError(f"{name} leg amount must be positive")
            if leg.timeout_seconds is None or leg.timeout_seconds <= 0:
                raise ValidationError(f"{name} leg timeout must be positive")
            if leg.required_confirmations is not None and leg.required_confirmations < 0:
                raise ValidationError(f"{name} leg required_confirmations must not be negative")

        margin = self._settings.timelock_safety_margin_seconds
        initiator_timeout = request.initiator_leg.timeout_seconds
        responder_timeout = request.responder_leg.timeout_seconds
        if not responder_timeout < initiator_timeout - margin:
            raise ValidationError(
                f"Responder timelock ({responder_timeout}s) must be shorter than the initiator "
                f"timelock ({initiator_timeout}s) by more than {margin}s"
            )

    def _resolve_secret(self, request: SwapRequest) -> tuple[str, Optional[str]]:
        """Return (secret_hash, sealed_secret) for a request."""
        if request.secret:
            if request.secret_hash and not SecretManager.verify(request.secret, request.secret_hash):
                raise ValidationError("Secret does not match secret_hash")
            try:
                secret_hash = SecretManager.hash(request.secret)
            except ValueError:
                raise ValidationError("Secret must be hex encoded")
            return secret_hash, self._secrets.seal(request.secret)

        if request.secret_hash:
            if not SecretManager.is_valid_hash(request.secret_hash):
                raise ValidationError("secret_hash must be a 32-byte hex digest")
            return request.secret_hash.lower(), None

        secret = self._secrets.generate_secret()
        return SecretManager.hash(secret), self._secrets.seal(secret)

    def _build_leg(
        self, index: int, leg: LegRequest, funder: str, counterparty: str, now: datetime
    ) -> AtomicSwapAsset:
        required = leg.required_confirmations
        if required is None:
            required = self._settings.default_required_confirmations
        return AtomicSwapAsset(
            index=index,
            chain=leg.chain.lower(),
            asset_id=leg.asset_id,
            amount=leg.amount,
            account_id=leg.account_id or funder,
            recipient_id=leg.recipient_id or counterparty,
            timeout_seconds=leg.timeout_seconds,
            timelock_at=now + timedelta(seconds=leg.timeout_seconds),
            required_confirmations=required,
        )

    async def initiate(self, request: SwapRequest) -> dict:
        """Create a swap in PENDING.

        Returns:
            Snapshot of the new swap (never includes the secret)

        Raises:
            ValidationError: Invalid legs, parties, secret or timelock ordering
        """
        self._validate(request)
        secret_hash, sealed = self._resolve_secret(request)

        if await self._swaps.get_by_secret_hash(secret_hash) is not None:
            raise ValidationError("Hash lock already used by another swap")

        swap_id = request.swap_id or f"swap_{uuid4().hex}"
        if await self._swaps.get(swap_id) is not None:
            raise ValidationError(f"Swap {swap_id} already exists", swap_id)

        now = self._clock()
        legs = [
            self._build_leg(0, request.initiator_leg, request.initiator_id, request.responder_id, now),
            self._build_leg(1, request.responder_leg, request.responder_id, request.initiator_id, now),
        ]
        longest = max(leg.timeout_seconds for leg in legs)

        swap = AtomicSwap(
            swap_id=swap_id,
            initiator_id=request.initiator_id,
            responder_id=request.responder_id,
            legs=legs,
            secret_hash=secret_hash,
            sealed_secret=sealed,
            status=SwapStatus.PENDING,
            progress=SwapProgress.initial(now),
            timeout_at=now + timedelta(seconds=longest),
            auto_rollback=request.auto_rollback,
            created_at=now,
            updated_at=now,
        )
        swap.rollback.unlock = {leg.index: {"required": False, "completed": False} for leg in legs}
        self._emit(
            swap,
            SwapEventType.INITIATED,
            "Atomic swap initiated and ready for asset locking",
            initiator_chain=legs[0].chain,
            responder_chain=legs[1].chain,
            timeout_at=swap.timeout_at.isoformat(),
        )

        await self._swaps.create(swap)
        self._flush_events(swap)

        logger.info(
            f"Swap {swap_id} initiated: {legs[0].amount} {legs[0].asset_id} on {legs[0].chain} "
            f"<-> {legs[1].amount} {legs[1].asset_id} on {legs[1].chain}, "
            f"timeout {swap.timeout_at.isoformat()}"
        )
        return swap.to_dict()

    async def initiate_swap(self, request: SwapRequest) -> dict:
        """Initiate and return the client-facing summary."""
        snapshot = await self.initiate(request)
        created_at = datetime.fromisoformat(snapshot["created_at"])
        longest = max(request.initiator_leg.timeout_seconds, request.responder_leg.timeout_seconds)
        estimate = created_at + timedelta(seconds=longest * ESTIMATE_FRACTION)
        return {
            "swap_id": snapshot["swap_id"],
            "status": snapshot["status"],
            "progress": snapshot["progress"],
            "estimated_completion": estimate.isoformat(),
            "next_action": "Waiting for both chains to lock assets",
        }

    # ======================================================================
    # Queries
    # ======================================================================

    async def _load(self, swap_id: str) -> AtomicSwap:
        swap = await self._swaps.get(swap_id)
        if swap is None:
            raise SwapNotFoundError(f"Swap {swap_id} not found", swap_id)
        return swap

    def _snapshot(self, swap: AtomicSwap, caller: Optional[str] = None) -> dict:
        secret = None
        if (
            caller is not None
            and caller == swap.initiator_id
            and swap.status in SECRET_VISIBLE_STATUSES
            and swap.sealed_secret
        ):
            try:
                secret = self._secrets.unseal(swap.sealed_secret)
            except SecretSealError:
                logger.warning(f"Sealed secret of swap {swap.swap_id} cannot be opened")
        return swap.to_dict(secret=secret)

    async def get_swap(self, swap_id: str, caller: Optional[str] = None) -> dict:
        """Snapshot of a swap.

        The secret is included only for the initiator, and only once the swap
        is COMPLETING or COMPLETED.
        """
        return self._snapshot(await self._load(swap_id), caller)

    async def list_swaps(self, swap_filter: Optional[SwapFilter] = None) -> list[dict]:
        return [swap.to_dict() for swap in await self._swaps.find(swap_filter)]

    # ======================================================================
    # Locking
    # ======================================================================

    async def lock_leg(self, swap_id: str, leg_index: int) -> dict:
        """Reserve and lock one leg.

        Raises:
            LockOrderingError: Responder leg requested before the initiator
                leg is confirmed (no state change)
            InsufficientBalanceError: Reservation refused; swap marked FAILED
            LockFailedError: Ledger refused the lock; swap marked FAILED
            SwapTimeoutError: Deadline passed; swap marked EXPIRED
        """
        if leg_index not in (0, 1):
            raise ValidationError(f"Invalid leg index {leg_index}", swap_id)
        async with self._locks.hold(swap_id, operation=f"lock_leg {leg_index}"):
            swap = await self._load(swap_id)
            await self._lock_leg(swap, leg_index)
            return self._snapshot(swap)

    async def _lock_leg(self, swap: AtomicSwap, index: int) -> None:
        leg = swap.leg(index)
        if leg.state in (LegState.LOCKED, LegState.CLAIMING, LegState.CLAIMED):
            return

        expected = SwapStatus.LOCKING_RESPONDER if index == 1 else None
        if index == 0 and swap.status not in (SwapStatus.PENDING, SwapStatus.LOCKING_INITIATOR):
            raise InvalidTransitionError(
                f"Cannot lock initiator leg while swap is {swap.status.value}", swap.swap_id
            )
        if index == 1 and swap.status != expected:
            if swap.status in (SwapStatus.PENDING, SwapStatus.LOCKING_INITIATOR):
                raise LockOrderingError(
                    "Responder leg cannot be locked before the initiator leg", swap.swap_id
                )
            raise InvalidTransitionError(
                f"Cannot lock responder leg while swap is {swap.status.value}", swap.swap_id
            )

        reason = self._deadline_reason(swap)
        if reason:
            await self._expire(swap, reason)
            raise SwapTimeoutError(f"Swap {swap.swap_id} expired: {reason}", swap.swap_id)

        if index == 1:
            await self._refresh(swap)
            initiator = swap.initiator_leg
            if not initiator.is_confirmed:
                raise LockOrderingError(
                    f"Initiator leg has {initiator.confirmations}/"
                    f"{initiator.required_confirmations} confirmations",
                    swap.swap_id,
                )

        if swap.status == SwapStatus.PENDING:
            self._transition(swap, SwapStatus.LOCKING_INITIATOR)

        if leg.state == LegState.PENDING:
            result = await self._reservations.reserve(
                leg.chain,
                leg.account_id,
                leg.asset_id,
                leg.amount,
                reservation_id=f"{swap.swap_id}:leg{index}",
                owner_ref=swap.swap_id,
            )
            if not result.success:
                leg.error = f"reservation refused: {result.reason}"
                await self._fail(swap, f"{leg.role} leg reservation refused: {result.reason}")
                result.raise_for_status()
            leg.reservation_id = result.reservation_id
            leg.state = LegState.RESERVED

        leg.state = LegState.LOCKING
        self._emit(
            swap,
            SwapEventType.LOCK_STARTED,
            f"Locking {leg.amount} {leg.asset_id} on {leg.chain}",
            leg=leg,
        )
        await self._persist(swap)

        try:
            receipt = await self._reservations.lock_reserved(
                leg.reservation_id, swap.secret_hash, leg.timelock_at, leg.recipient_id
            )
        except LockFailedError as e:
            leg.error = str(e)
            if not isinstance(e, LockOutcomeUnknownError):
                leg.state = LegState.RESERVED
            await self._recorder.append(
                swap.swap_id,
                leg.index,
                ConfirmationStatus.FAILED,
                leg.chain,
                leg.asset_id,
                leg.amount,
                reason=str(e),
            )
            await self._fail(swap, f"{leg.role} leg lock failed on {leg.chain}: {e}")
            raise

        now = self._clock()
        leg.lock_ref = receipt.lock_ref
        leg.lock_tx_hash = receipt.tx_hash
        leg.state = LegState.LOCKED
        leg.locked_at = now
        leg.error = None
        swap.rollback.unlock[leg.index] = {"required": True, "completed": False}
        swap.progress.complete_sub_stage(f"{leg.role}_lock_pending", now, receipt.tx_hash)
        self._emit(
            swap,
            SwapEventType.LOCK_COMPLETED,
            f"Assets locked on {leg.chain}",
            leg=leg,
            tx_hash=receipt.tx_hash,
        )

        if index == 0:
            self._transition(
                swap,
                SwapStatus.LOCKING_RESPONDER,
                f"Asset locked on {leg.chain} - waiting for counterparty",
            )
        else:
            self._transition(swap, SwapStatus.LOCKED)
        await self._persist(swap)

        logger.info(
            f"Swap {swap.swap_id}: {leg.role} leg locked on {leg.chain} ({receipt.lock_ref})"
        )
        await self._refresh(swap)

    # ======================================================================
    # Confirmations and deadlines
    # ======================================================================

    async def refresh_confirmations(self, swap_id: str) -> dict:
        """Re-read confirmation depth of every locked leg."""
        async with self._locks.hold(swap_id, operation="refresh"):
            swap = await self._load(swap_id)
            await self._refresh(swap)
            return self._snapshot(swap)

    async def _query(self, leg: AtomicSwapAsset) -> LockStatus:
        adapter = self._adapters.get(leg.chain)
        return await retry_async(
            lambda: adapter.query_lock(leg.lock_ref),
            attempts=self._settings.retry_max_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            max_delay=self._settings.retry_max_delay_seconds,
            should_retry=_is_retryable,
            description=f"query {leg.lock_ref} on {leg.chain}",
            sleep=self._sleep,
        )

    async def _refresh(self, swap: AtomicSwap) -> bool:
        """Update confirmations and book claims made directly on-ledger.

        Returns True if any chain reports an unsettled lock past its timelock.
        """
        changed = False
        chain_expired = False
        for leg in swap.legs:
            if leg.lock_ref is None or leg.state not in WATCHED_LEG_STATES:
                continue
            status = await self._query(leg)
            if status.confirmations != leg.confirmations:
                leg.confirmations = status.confirmations
                changed = True
            if status.claimed:
                logger.warning(
                    f"Swap {swap.swap_id}: {leg.role} leg on {leg.chain} was claimed on-ledger "
                    f"({status.claim_ref})"
                )
                await self._record_claim(swap, leg, status.claim_ref, status.secret)
            elif status.expired and not status.refunded:
                chain_expired = True
        if changed:
            await self._persist(swap)
        return chain_expired

    def _claim_deadline(self, swap: AtomicSwap) -> datetime:
        """Last moment the responder leg may be claimed."""
        return swap.responder_leg.timelock_at - self.margin

    def _deadline_reason(self, swap: AtomicSwap, chain_expired: bool = False) -> Optional[str]:
        now = self._clock()
        if now >= swap.timeout_at:
            return "swap timeout"
        for leg in swap.legs:
            if now >= leg.timelock_at:
                return f"{leg.chain} timelock expired"
        if chain_expired:
            return "ledger reports timelock expired"
        if swap.status == SwapStatus.LOCKED and now >= self._claim_deadline(swap):
            return "claim deadline passed"
        return None

    # ======================================================================
    # Completion
    # ======================================================================

    def _unseal(self, swap: AtomicSwap) -> Optional[str]:
        if not swap.sealed_secret:
            return None
        return self._secrets.unseal(swap.sealed_secret)

    async def _start_completing(self, swap: AtomicSwap, message: str) -> None:
        self._transition(swap, SwapStatus.COMPLETING)
        self._emit(swap, SwapEventType.COMPLETION_STARTED, message)
        await self._persist(swap)

    async def _begin_completion(self, swap: AtomicSwap, chain_expired: bool = False) -> None:
        """Move a refreshed LOCKED swap to COMPLETING once both legs are confirmed."""
        if swap.claimed_legs:
            # Secret already public: no deadline or depth check can stop completion
            await self._start_completing(swap, "Leg claimed on-ledger - claiming the other leg")
            return

        reason = self._deadline_reason(swap, chain_expired)
        if reason:
            await self._expire(swap, reason)
            raise SwapTimeoutError(f"Swap {swap.swap_id} expired: {reason}", swap.swap_id)

        pending = [leg for leg in swap.legs if not leg.is_confirmed]
        if pending:
            raise InvalidTransitionError(
                "Waiting for confirmations: "
                + ", ".join(
                    f"{leg.chain} {leg.confirmations}/{leg.required_confirmations}" for leg in pending
                ),
                swap.swap_id,
            )

        await self._start_completing(swap, "Both legs confirmed - claiming")

    async def complete(self, swap_id: str) -> dict:
        """Claim both legs with the stored secret.

        Raises:
            InvalidTransitionError: Legs not locked/confirmed, or no stored secret
            SwapTimeoutError: Claim deadline passed; swap expired
            ClaimFailedError: A claim failed; swap stays COMPLETING
        """
        async with self._locks.hold(swap_id, operation="complete"):
            swap = await self._load(swap_id)
            await self._complete(swap)
            return self._snapshot(swap)

    async def _complete(self, swap: AtomicSwap) -> None:
        if swap.status == SwapStatus.COMPLETED:
            return
        if swap.status not in (SwapStatus.LOCKED, SwapStatus.COMPLETING):
            raise InvalidTransitionError(
                f"Cannot complete swap in {swap.status.value}", swap.swap_id
            )

        # Picks up claims that landed without an acknowledgement
        chain_expired = await self._refresh(swap)
        if swap.sealed_secret is None and not swap.claimed_legs:
            raise InvalidTransitionError(
                "No stored secret - the initiator must claim with the secret", swap.swap_id
            )

        if swap.status == SwapStatus.LOCKED:
            await self._begin_completion(swap, chain_expired)
        elif not swap.claimed_legs and self._clock() >= self._claim_deadline(swap):
            await self._expire(swap, "claim deadline passed")
            raise SwapTimeoutError(f"Swap {swap.swap_id} expired before any claim", swap.swap_id)

        await self._claim_remaining(swap)

    async def _claim_remaining(self, swap: AtomicSwap) -> None:
        """Claim every unclaimed leg of a COMPLETING swap, then finish it.

        Raises:
            ClaimFailedError: A leg cannot be claimed (secret unknown, lock
                gone or refused); escalated once a leg is already claimed
        """
        secret = self._unseal(swap)
        # Responder leg first: it has the shorter timelock
        for leg in (swap.responder_leg, swap.initiator_leg):
            if leg.state == LegState.CLAIMED:
                continue
            if secret is None or leg.lock_ref is None or leg.state not in WATCHED_LEG_STATES:
                problem = "secret unknown" if secret is None else f"leg is {leg.state.value}"
                await self._escalate(
                    swap,
                    "Claim stuck after secret revealed",
                    f"{leg.role} leg on {leg.chain} cannot be claimed: {problem}",
                )
                raise ClaimFailedError(
                    f"{leg.role} leg on {leg.chain} cannot be claimed: {problem}", swap.swap_id
                )
            await self._claim(swap, leg, secret)

        await self._finish(swap)

    async def _resume_completion(self, swap: AtomicSwap) -> None:
        """Drive a swap with a claimed leg to completion instead of refunding it."""
        if swap.status in (SwapStatus.LOCKED, SwapStatus.ROLLING_BACK):
            await self._start_completing(swap, "Leg claimed on-ledger - claiming the other leg")
        elif swap.status != SwapStatus.COMPLETING:
            await self._escalate(
                swap,
                "Leg claimed before both legs were locked",
                f"Swap is {swap.status.value} with claimed legs "
                f"{[leg.index for leg in swap.claimed_legs]}",
            )
            return
        await self._claim_remaining(swap)

    async def claim_leg(self, swap_id: str, leg_index: int, secret: str) -> str:
        """Claim one leg with the secret.

        Returns:
            Claim transaction reference (the original one on repeat calls)

        Raises:
            ClaimFailedError: Wrong secret or the ledger refused the claim
            InvalidTransitionError: Legs not both locked and confirmed
        """
        if leg_index not in (0, 1):
            raise ValidationError(f"Invalid leg index {leg_index}", swap_id)
        async with self._locks.hold(swap_id, operation=f"claim_leg {leg_index}"):
            swap = await self._load(swap_id)
            if not SecretManager.verify(secret, swap.secret_hash):
                raise ClaimFailedError("Secret does not match the swap hash lock", swap_id)

            leg = swap.leg(leg_index)
            if leg.state == LegState.CLAIMED:
                return leg.claim_tx_hash

            if swap.status == SwapStatus.LOCKED:
                await self._begin_completion(swap, await self._refresh(swap))
            elif swap.status != SwapStatus.COMPLETING:
                raise InvalidTransitionError(
                    f"Cannot claim while swap is {swap.status.value}", swap_id
                )

            if swap.sealed_secret is None:
                swap.sealed_secret = self._secrets.seal(secret)

            claim_ref = await self._claim(swap, leg, secret)
            if all(item.state == LegState.CLAIMED for item in swap.legs):
                await self._finish(swap)
            else:
                await self._persist(swap)
            return claim_ref

    async def _claim(self, swap: AtomicSwap, leg: AtomicSwapAsset, secret: str) -> str:
        if leg.state == LegState.CLAIMED:
            return leg.claim_tx_hash

        leg.state = LegState.CLAIMING
        await self._persist(swap)

        adapter = self._adapters.get(leg.chain)
        try:
            claim_ref = await retry_async(
                lambda: adapter.claim(leg.lock_ref, secret),
                attempts=self._settings.retry_max_attempts,
                base_delay=self._settings.retry_base_delay_seconds,
                max_delay=self._settings.retry_max_delay_seconds,
                should_retry=_is_retryable,
                description=f"claim {leg.lock_ref} on {leg.chain}",
                sleep=self._sleep,
            )
        except LedgerAdapterError as e:
            claim_ref = await self._landed_claim(leg)
            if claim_ref is None:
                leg.state = LegState.LOCKED
                leg.error = f"claim failed: {e}"
                await self._persist(swap)
                await self._on_claim_failure(swap, leg, e)
                raise ClaimFailedError(
                    f"Claim of {leg.role} leg on {leg.chain} failed: {e}", swap.swap_id
                ) from e
            logger.warning(
                f"Swap {swap.swap_id}: claim on {leg.chain} went through unacknowledged ({e})"
            )

        await self._record_claim(swap, leg, claim_ref)
        logger.info(f"Swap {swap.swap_id}: {leg.role} leg claimed on {leg.chain} ({claim_ref})")
        return claim_ref

    async def _landed_claim(self, leg: AtomicSwapAsset) -> Optional[str]:
        """Claim reference of a lock already claimed on-ledger, if any."""
        try:
            status = await self._query(leg)
        except LedgerAdapterError as e:
            logger.warning(f"Cannot check claim state of {leg.lock_ref} on {leg.chain}: {e}")
            return None
        return status.claim_ref if status.claimed else None

    async def _record_claim(
        self,
        swap: AtomicSwap,
        leg: AtomicSwapAsset,
        claim_ref: str,
        secret: Optional[str] = None,
    ) -> None:
        """Book a leg as claimed: reservation, confirmation record and leg state.

        A preimage published by the claim is sealed for the swap when none
        is stored yet.
        """
        if (
            secret
            and swap.sealed_secret is None
            and SecretManager.verify(secret, swap.secret_hash)
        ):
            swap.sealed_secret = self._secrets.seal(secret)

        now = self._clock()
        first_claim = not swap.claimed_legs
        await self._reservations.consume(leg.reservation_id, claim_ref)
        await self._recorder.append(
            swap.swap_id,
            leg.index,
            ConfirmationStatus.CONFIRMED,
            leg.chain,
            leg.asset_id,
            leg.amount,
            tx_hash=claim_ref,
        )
        leg.claim_tx_hash = claim_ref
        leg.state = LegState.CLAIMED
        leg.claimed_at = now
        leg.error = None
        if first_claim:
            swap.progress.complete_sub_stage("completion_pending", now, claim_ref)
        await self._persist(swap)

    async def _on_claim_failure(
        self, swap: AtomicSwap, leg: AtomicSwapAsset, error: LedgerAdapterError
    ) -> None:
        """Decide what a failed claim means for the swap.

        Before any claim the secret is still private, so a permanent failure
        fails the swap and rolls it back. After a claim the swap can only
        move forward; if the remaining claim can no longer succeed an
        operator is alerted.
        """
        if not swap.claimed_legs:
            if not error.retryable:
                await self._fail(swap, f"claim of {leg.role} leg failed: {error}")
            return

        if not error.retryable or self._clock() >= leg.timelock_at:
            await self._escalate(
                swap,
                "Claim stuck after secret revealed",
                f"{leg.role} leg on {leg.chain} ({leg.lock_ref}) cannot be claimed: {error}",
            )

    async def _finish(self, swap: AtomicSwap) -> None:
        now = self._clock()
        self._transition(swap, SwapStatus.COMPLETED)
        swap.completed_at = now
        swap.progress.complete_sub_stage("ownership_transfer_pending", now)
        self._emit(
            swap,
            SwapEventType.COMPLETED,
            "Atomic swap completed - ownership transferred",
            claims={leg.chain: leg.claim_tx_hash for leg in swap.legs},
        )
        await self._persist(swap)
        logger.info(f"Swap {swap.swap_id} completed")

    # ======================================================================
    # Failure, expiry and rollback
    # ======================================================================

    def _can_abort(self, swap: AtomicSwap) -> bool:
        if swap.claimed_legs:
            return False
        if swap.status in IN_FLIGHT_STATUSES:
            return True
        return swap.status == SwapStatus.COMPLETING

    async def _fail(self, swap: AtomicSwap, reason: str, force_rollback: bool = False) -> None:
        """Mark FAILED and, with auto-rollback, compensate."""
        if not self._can_abort(swap):
            return
        now = self._clock()
        self._transition(swap, SwapStatus.FAILED, f"Swap failed: {reason}")
        swap.failure_reason = reason
        swap.failed_at = now
        self._emit(swap, SwapEventType.FAILED, f"Swap failed: {reason}", reason=reason)
        await self._persist(swap)
        logger.error(f"Swap {swap.swap_id} failed: {reason}")

        if swap.auto_rollback or force_rollback:
            await self._rollback(swap, reason)

    async def expire(self, swap_id: str, reason: str = "swap timeout") -> dict:
        """Expire a swap that has not begun claiming and roll it back."""
        async with self._locks.hold(swap_id, operation="expire"):
            swap = await self._load(swap_id)
            if not self._can_abort(swap):
                raise InvalidTransitionError(
                    f"Cannot expire swap in {swap.status.value}", swap_id
                )
            await self._expire(swap, reason)
            return self._snapshot(swap)

    async def _expire(self, swap: AtomicSwap, reason: str) -> None:
        if not self._can_abort(swap):
            return
        now = self._clock()
        self._transition(swap, SwapStatus.EXPIRED, f"Swap expired due to {reason}")
        swap.failure_reason = reason
        swap.failed_at = now
        self._emit(swap, SwapEventType.EXPIRED, f"Swap expired due to {reason}", reason=reason)
        await self._persist(swap)
        logger.warning(f"Swap {swap.swap_id} expired: {reason}")

        if swap.auto_rollback:
            await self._rollback(swap, reason)

    async def cancel(self, swap_id: str, caller: Optional[str] = None) -> dict:
        """Cancel a swap that has not started locking.

        Raises:
            InvalidTransitionError: Swap is past PENDING
            ValidationError: Caller is not a participant
        """
        async with self._locks.hold(swap_id, operation="cancel"):
            swap = await self._load(swap_id)
            if caller is not None and not swap.is_participant(caller):
                raise ValidationError("Only swap participants may cancel", swap_id)
            if swap.status != SwapStatus.PENDING:
                raise InvalidTransitionError(
                    f"Only pending swaps can be cancelled (swap is {swap.status.value})", swap_id
                )
            await self._fail(swap, "cancelled", force_rollback=True)
            return self._snapshot(swap)

    async def rollback(self, swap_id: str, reason: str = "manual rollback") -> dict:
        """Roll back a swap that has not been claimed.

        Legs still inside their timelock stay locked and the swap stays
        ROLLING_BACK until a later pass can refund them. A leg found claimed
        on-ledger turns the rollback into completion of the other leg.

        Raises:
            InvalidTransitionError: Swap completed or already claiming
            RollbackFailedError: Refund retries exhausted; operator alerted
            ClaimFailedError: Leg found claimed but the other leg cannot be
                claimed; operator alerted
        """
        async with self._locks.hold(swap_id, operation="rollback"):
            swap = await self._load(swap_id)
            if swap.status == SwapStatus.ROLLED_BACK:
                return self._snapshot(swap)
            if self._can_abort(swap):
                await self._fail(swap, reason, force_rollback=True)
            elif swap.status in ROLLBACK_STATUSES:
                await self._rollback(swap, reason)
            else:
                raise InvalidTransitionError(
                    f"Cannot roll back swap in {swap.status.value}", swap_id
                )

            if swap.status == SwapStatus.ROLLING_BACK and swap.rollback.escalated:
                raise RollbackFailedError(
                    f"Rollback of swap {swap_id} needs operator attention", swap_id
                )
            return self._snapshot(swap)

    async def _rollback(self, swap: AtomicSwap, reason: Optional[str]) -> None:
        if swap.status == SwapStatus.ROLLED_BACK:
            return
        if swap.status not in ROLLBACK_STATUSES:
            raise InvalidTransitionError(
                f"Cannot roll back swap in {swap.status.value}", swap.swap_id
            )

        now = self._clock()
        if swap.status in (SwapStatus.FAILED, SwapStatus.EXPIRED):
            self._transition(swap, SwapStatus.ROLLING_BACK)
            swap.rollback.reason = reason or swap.failure_reason
            swap.rollback.started_at = now
            for leg in swap.legs:
                required = leg.state in (
                    LegState.LOCKING,
                    LegState.LOCKED,
                    LegState.CLAIMING,
                    LegState.REFUNDING,
                )
                swap.rollback.unlock[leg.index] = {"required": required, "completed": False}
            self._emit(
                swap,
                SwapEventType.ROLLBACK_STARTED,
                f"Rollback started due to {swap.rollback.reason}",
                reason=swap.rollback.reason,
            )
            await self._persist(swap)
            logger.info(f"Swap {swap.swap_id}: rollback started ({swap.rollback.reason})")

        swap.rollback.attempts += 1
        # Settle unfinished lock attempts first so every lock is checked for claims
        for leg in swap.legs:
            await self._resolve_lock_attempt(swap, leg)
        await self._refresh(swap)

        settled = True
        for leg in swap.legs:
            if swap.claimed_legs:
                break
            if not await self._unwind_leg(swap, leg):
                settled = False

        if swap.claimed_legs:
            logger.warning(
                f"Swap {swap.swap_id}: leg claimed during rollback - completing instead of refunding"
            )
            await self._resume_completion(swap)
            return

        if settled:
            now = self._clock()
            self._transition(swap, SwapStatus.ROLLED_BACK)
            swap.rollback.completed_at = now
            self._emit(
                swap,
                SwapEventType.ROLLBACK_COMPLETED,
                "Assets returned to their original owners",
                legs={leg.index: leg.state.value for leg in swap.legs},
            )
            logger.info(f"Swap {swap.swap_id} rolled back")
        else:
            pending = [leg.chain for leg in swap.legs if not leg.is_settled]
            swap.progress.move_to(
                SwapStage.ROLLING_BACK,
                self._clock(),
                f"Waiting to refund locks on {', '.join(pending)}",
            )
        await self._persist(swap)

    async def _resolve_lock_attempt(self, swap: AtomicSwap, leg: AtomicSwapAsset) -> None:
        """Release never-locked legs and find out whether a LOCKING leg was locked."""
        if leg.state == LegState.PENDING:
            leg.state = LegState.RELEASED
            self._mark_unlocked(swap, leg)
            return

        if leg.state == LegState.RESERVED:
            try:
                await self._reservations.release(leg.reservation_id)
            except ReservationNotFoundError:
                logger.info(f"Reservation {leg.reservation_id} already purged")
            leg.state = LegState.RELEASED
            self._mark_unlocked(swap, leg)
            await self._persist(swap)
            return

        if leg.state == LegState.LOCKING:
            # Outcome unknown: re-issuing is idempotent and reveals the lock if it exists
            try:
                receipt = await self._reservations.lock_reserved(
                    leg.reservation_id, swap.secret_hash, leg.timelock_at, leg.recipient_id
                )
            except LockFailedError as e:
                if isinstance(e, LockOutcomeUnknownError):
                    logger.warning(f"Swap {swap.swap_id}: lock outcome still unknown: {e}")
                    return
                await self._reservations.release(leg.reservation_id)
                leg.state = LegState.RELEASED
                self._mark_unlocked(swap, leg)
                await self._persist(swap)
                return
            leg.lock_ref = receipt.lock_ref
            leg.lock_tx_hash = receipt.tx_hash
            leg.state = LegState.LOCKED
            await self._persist(swap)

    async def _unwind_leg(self, swap: AtomicSwap, leg: AtomicSwapAsset) -> bool:
        """Refund one leg. Returns True once the leg is settled."""
        if leg.is_settled:
            return True
        if leg.state == LegState.LOCKING:
            return False
        return await self._refund_leg(swap, leg)

    async def _refund_leg(self, swap: AtomicSwap, leg: AtomicSwapAsset) -> bool:
        status = await self._query(leg)

        if status.claimed:
            await self._record_claim(swap, leg, status.claim_ref, status.secret)
            return False

        if not status.refunded and self._clock() < leg.timelock_at and not status.expired:
            if leg.state != LegState.LOCKED:
                leg.state = LegState.LOCKED
                await self._persist(swap)
            logger.info(
                f"Swap {swap.swap_id}: refund of {leg.role} leg on {leg.chain} waits for "
                f"timelock {leg.timelock_at.isoformat()}"
            )
            return False

        leg.state = LegState.REFUNDING
        await self._persist(swap)

        try:
            reservation = await retry_async(
                lambda: self._reservations.release(leg.reservation_id, unlock=True),
                attempts=self._settings.refund_max_attempts,
                base_delay=self._settings.retry_base_delay_seconds,
                max_delay=self._settings.retry_max_delay_seconds,
                should_retry=_is_retryable,
                description=f"refund {leg.lock_ref} on {leg.chain}",
                sleep=self._sleep,
            )
        except TimelockActiveError:
            # Ledger clock behind ours; try again next pass
            leg.state = LegState.LOCKED
            await self._persist(swap)
            return False
        except LedgerAdapterError as e:
            leg.state = LegState.LOCKED
            leg.error = f"refund failed: {e}"
            await self._persist(swap)
            await self._escalate(
                swap,
                "Refund failed",
                f"{leg.role} leg on {leg.chain} ({leg.lock_ref}) could not be refunded: {e}",
            )
            return False

        now = self._clock()
        if reservation.state == ReservationState.CONSUMED:
            # Claimed between the query and the refund
            status = await self._query(leg)
            await self._record_claim(swap, leg, reservation.claim_ref, status.secret)
            return False

        leg.state = LegState.REFUNDED
        leg.refund_tx_hash = reservation.refund_ref
        leg.refunded_at = now
        leg.error = None
        self._mark_unlocked(swap, leg)
        await self._recorder.append(
            swap.swap_id,
            leg.index,
            ConfirmationStatus.ROLLED_BACK,
            leg.chain,
            leg.asset_id,
            leg.amount,
            tx_hash=reservation.refund_ref,
            reason=swap.rollback.reason,
        )
        await self._persist(swap)
        logger.info(
            f"Swap {swap.swap_id}: {leg.role} leg refunded on {leg.chain} ({reservation.refund_ref})"
        )
        return True

    @staticmethod
    def _mark_unlocked(swap: AtomicSwap, leg: AtomicSwapAsset) -> None:
        entry = swap.rollback.unlock.setdefault(leg.index, {"required": False, "completed": False})
        entry["completed"] = True

    async def _escalate(self, swap: AtomicSwap, title: str, details: str) -> None:
        """Flag the swap for an operator. Alerts once per swap."""
        if swap.rollback.escalated:
            return
        swap.rollback.escalated = True
        await self._persist(swap)
        logger.critical(f"Swap {swap.swap_id} escalated: {title}: {details}")
        await self._alerter.alert(title, details, swap_id=swap.swap_id)

    # ======================================================================
    # Drivers
    # ======================================================================

    async def advance(self, swap_id: str) -> AdvanceResult:
        """Take the next protocol step for a swap, derived from stored state only."""
        async with self._locks.hold(swap_id, operation="advance"):
            swap = await self._load(swap_id)
            action = await self._step(swap, drive=True)
            return AdvanceResult(swap=self._snapshot(swap), action=action)

    async def execute(self, swap_id: str, max_steps: int = 10) -> dict:
        """Advance until the swap is terminal or no step makes progress."""
        snapshot = await self.get_swap(swap_id)
        for _ in range(max_steps):
            result = await self.advance(swap_id)
            snapshot = result.swap
            if not result.progressed or snapshot["status"] in (
                SwapStatus.COMPLETED.value,
                SwapStatus.ROLLED_BACK.value,
            ):
                break
        return snapshot

    async def supervise(self, swap_id: str) -> Optional[str]:
        """One supervisor pass over a swap. Returns the action taken, if any."""
        async with self._locks.hold(swap_id, operation="supervise"):
            swap = await self._load(swap_id)
            return await self._step(swap, drive=self._settings.supervisor_auto_advance)

    @staticmethod
    def _fingerprint(swap: AtomicSwap) -> tuple:
        return (swap.status, tuple(leg.state for leg in swap.legs))

    async def _step(self, swap: AtomicSwap, drive: bool) -> Optional[str]:
        before = self._fingerprint(swap)
        try:
            action = await self._next_action(swap, drive)
        except RECORDED_OUTCOMES as e:
            logger.warning(f"Swap {swap.swap_id}: step ended with {type(e).__name__}: {e}")
            action = "failed"
        except (InvalidTransitionError, LockOrderingError) as e:
            logger.debug(f"Swap {swap.swap_id}: nothing to do yet: {e}")
            action = None
        if self._fingerprint(swap) == before:
            return None
        return action

    async def _next_action(self, swap: AtomicSwap, drive: bool) -> Optional[str]:
        if swap.is_terminal:
            return None

        if swap.status in ROLLBACK_STATUSES:
            if swap.status == SwapStatus.ROLLING_BACK or swap.auto_rollback:
                await self._rollback(swap, swap.rollback.reason or swap.failure_reason)
                return "rollback"
            return None

        if swap.status == SwapStatus.COMPLETING:
            await self._complete(swap)
            return "complete"

        # In flight: on-ledger claims first, then deadlines
        chain_expired = await self._refresh(swap)
        if swap.claimed_legs:
            await self._resume_completion(swap)
            return "complete"

        reason = self._deadline_reason(swap, chain_expired)
        if reason:
            await self._expire(swap, reason)
            return "expire"

        if not drive:
            return None

        if swap.status in (SwapStatus.PENDING, SwapStatus.LOCKING_INITIATOR):
            await self._lock_leg(swap, 0)
            return "lock_initiator"
        if swap.status == SwapStatus.LOCKING_RESPONDER:
            if not swap.initiator_leg.is_confirmed:
                return None
            await self._lock_leg(swap, 1)
            return "lock_responder"
        if swap.status == SwapStatus.LOCKED:
            if not all(leg.is_confirmed for leg in swap.legs) or swap.sealed_secret is None:
                return None
            await self._complete(swap)
            return "complete"
        return None

    # ======================================================================
    # Internals
    # ======================================================================

    def _transition(
        self, swap: AtomicSwap, status: SwapStatus, description: Optional[str] = None
    ) -> None:
        if not can_transition(swap.status, status):
            raise InvalidTransitionError(
                f"Invalid transition {swap.status.value} -> {status.value}", swap.swap_id
            )
        logger.debug(f"Swap {swap.swap_id}: {swap.status.value} -> {status.value}")
        swap.status = status
        swap.progress.move_to(STATUS_STAGES[status], self._clock(), description)

    def _emit(
        self,
        swap: AtomicSwap,
        event_type: SwapEventType,
        message: str,
        leg: Optional[AtomicSwapAsset] = None,
        tx_hash: Optional[str] = None,
        **data,
    ) -> SwapEvent:
        event = SwapEvent(
            swap_id=swap.swap_id,
            event_type=event_type,
            message=message,
            created_at=self._clock(),
            event_id=f"{swap.swap_id}_{len(swap.events) + 1:03d}_{event_type.value}",
            leg_index=leg.index if leg else None,
            chain=leg.chain if leg else None,
            tx_hash=tx_hash,
            data=data,
        )
        swap.events.append(event)
        self._outbox.setdefault(swap.swap_id, []).append(event)
        return event

    async def _persist(self, swap: AtomicSwap) -> None:
        swap.updated_at = self._clock()
        await self._swaps.save(swap)
        self._flush_events(swap)

    def _flush_events(self, swap: AtomicSwap) -> None:
        for event in self._outbox.pop(swap.swap_id, []):
            self._events.publish(event)
