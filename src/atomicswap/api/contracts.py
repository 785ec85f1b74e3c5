"""Request and response contracts for the swap API."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from atomicswap.swap.models import LegRequest, SwapFilter, SwapRequest, SwapStatus


class LegSpec(BaseModel):
    """One leg of a swap request."""

    chain: str = Field(..., description="Ledger id (ethereum, hedera, ...)")
    asset_id: str = Field(..., description="Asset identifier on that ledger")
    amount: Decimal = Field(..., gt=0, description="Amount to lock")
    timeout_seconds: int = Field(..., gt=0, description="Relative timelock of this leg")
    account_id: Optional[str] = Field(
        None, description="Funding account (defaults to the funding party id)"
    )
    recipient_id: Optional[str] = Field(
        None, description="Receiving account (defaults to the counterparty id)"
    )
    required_confirmations: Optional[int] = Field(
        None, ge=0, description="Confirmations required before the leg counts as locked"
    )

    def to_domain(self) -> LegRequest:
        return LegRequest(
            chain=self.chain,
            asset_id=self.asset_id,
            amount=self.amount,
            timeout_seconds=self.timeout_seconds,
            account_id=self.account_id,
            recipient_id=self.recipient_id,
            required_confirmations=self.required_confirmations,
        )


class InitiateSwapRequest(BaseModel):
    """Request to initiate an atomic swap."""

    initiator_id: str = Field(..., min_length=1)
    responder_id: str = Field(..., min_length=1)
    initiator_leg: LegSpec
    responder_leg: LegSpec
    secret_hash: Optional[str] = Field(
        None, description="Hash lock chosen by the initiator (hex SHA-256)"
    )
    secret: Optional[str] = Field(
        None, description="Secret chosen by the initiator; generated when omitted"
    )
    auto_rollback: bool = Field(default=True, description="Roll back automatically on failure")

    def to_domain(self) -> SwapRequest:
        return SwapRequest(
            initiator_id=self.initiator_id,
            responder_id=self.responder_id,
            initiator_leg=self.initiator_leg.to_domain(),
            responder_leg=self.responder_leg.to_domain(),
            secret_hash=self.secret_hash,
            secret=self.secret,
            auto_rollback=self.auto_rollback,
        )


class InitiateSwapResponse(BaseModel):
    """Summary returned after initiation."""

    success: bool = True
    swap_id: str
    status: str
    progress: dict[str, Any]
    estimated_completion: str
    next_action: Optional[str] = None


class ClaimRequest(BaseModel):
    """Claim one leg with the secret."""

    secret: str = Field(..., min_length=1)


class ClaimResponse(BaseModel):
    success: bool = True
    swap_id: str
    leg_index: int
    claim_ref: str


class RollbackRequest(BaseModel):
    reason: str = Field(default="manual rollback")


class AdvanceResponse(BaseModel):
    """Result of one driver step."""

    success: bool = True
    action: Optional[str] = Field(None, description="Step taken, None if blocked")
    swap: dict[str, Any]


class SwapListParams(BaseModel):
    """Query parameters for listing swaps."""

    status: Optional[SwapStatus] = None
    participant_id: Optional[str] = None
    chain: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)

    def to_domain(self) -> SwapFilter:
        return SwapFilter(
            status=self.status,
            participant_id=self.participant_id,
            chain=self.chain,
            created_after=self.created_after,
            created_before=self.created_before,
            limit=self.limit,
        )


class SwapListResponse(BaseModel):
    success: bool = True
    swaps: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0


class ConfirmationsResponse(BaseModel):
    """Confirmation history of a swap."""

    success: bool = True
    swap_id: str
    dual_status: str
    records: list[dict[str, Any]] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str
    swap_id: Optional[str] = None
