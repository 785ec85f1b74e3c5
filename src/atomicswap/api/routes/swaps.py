"""Atomic swap endpoints."""

import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from atomicswap.api.contracts import (
    AdvanceResponse,
    ClaimRequest,
    ClaimResponse,
    ConfirmationsResponse,
    InitiateSwapRequest,
    InitiateSwapResponse,
    RollbackRequest,
    SwapListParams,
    SwapListResponse,
)
from atomicswap.runtime import Runtime
from atomicswap.swap.errors import (
    ClaimFailedError,
    InsufficientBalanceError,
    InvalidTransitionError,
    LockFailedError,
    LockOrderingError,
    RollbackFailedError,
    SwapError,
    SwapNotFoundError,
    SwapTimeoutError,
    ValidationError,
)
from atomicswap.swap.models import SwapStatus
from atomicswap.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/swaps", tags=["Swaps"])

# Most specific first
ERROR_STATUS: list[tuple[type[SwapError], int]] = [
    (SwapNotFoundError, 404),
    (LockOrderingError, 409),
    (ValidationError, 400),
    (InvalidTransitionError, 409),
    (InsufficientBalanceError, 422),
    (ClaimFailedError, 400),
    (LockFailedError, 502),
    (SwapTimeoutError, 410),
    (RollbackFailedError, 500),
]


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def to_http_error(error: Exception) -> HTTPException:
    """Map a domain error to an HTTP error."""
    if isinstance(error, LockTimeoutError):
        return HTTPException(status_code=503, detail="Swap is busy, retry later")
    if isinstance(error, SwapError):
        for error_type, status_code in ERROR_STATUS:
            if isinstance(error, error_type):
                return HTTPException(
                    status_code=status_code,
                    detail={"error": str(error), "code": error.code, "swap_id": error.swap_id},
                )
    logger.error(f"Unhandled swap API error: {error}")
    return HTTPException(status_code=500, detail="Internal error")


async def require_admin_token(request: Request, x_admin_token: str = Header(None)) -> bool:
    """Verify admin token from header.

    If ADMIN_TOKEN is not set, allows access (dev mode).
    """
    settings = get_runtime(request).settings

    if not settings.admin_token:
        return True

    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return True


async def authenticated_participant(
    request: Request,
    x_participant_id: Optional[str] = Header(None),
    x_participant_token: Optional[str] = Header(None),
) -> Optional[str]:
    """Resolve the calling participant from the identity headers.

    Returns None when no X-Participant-Id is sent. With PARTICIPANT_TOKENS set
    the id must come with its matching X-Participant-Token. Without it the bare
    id is trusted outside production only (dev mode).
    """
    if not x_participant_id:
        return None

    settings = get_runtime(request).settings
    tokens = settings.participant_token_map

    if not tokens:
        if settings.is_production:
            raise HTTPException(status_code=401, detail="Participant authentication not configured")
        return x_participant_id

    expected = tokens.get(x_participant_id)
    if expected is None or not x_participant_token:
        raise HTTPException(status_code=401, detail="Invalid participant token")
    if not hmac.compare_digest(expected.encode(), x_participant_token.encode()):
        raise HTTPException(status_code=401, detail="Invalid participant token")

    return x_participant_id


@router.post("", response_model=InitiateSwapResponse, status_code=201)
async def initiate_swap(
    body: InitiateSwapRequest, runtime: Runtime = Depends(get_runtime)
) -> InitiateSwapResponse:
    """Initiate an atomic swap."""
    try:
        result = await runtime.engine.initiate_swap(body.to_domain())
    except (SwapError, LockTimeoutError) as e:
        raise to_http_error(e)
    return InitiateSwapResponse(**result)


@router.get("", response_model=SwapListResponse)
async def list_swaps(
    status: Optional[SwapStatus] = None,
    participant_id: Optional[str] = None,
    chain: Optional[str] = None,
    created_after: Optional[datetime] = None,
    created_before: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
) -> SwapListResponse:
    """List swaps, newest first."""
    params = SwapListParams(
        status=status,
        participant_id=participant_id,
        chain=chain,
        created_after=created_after,
        created_before=created_before,
        limit=limit,
    )
    swaps = await runtime.engine.list_swaps(params.to_domain())
    return SwapListResponse(swaps=swaps, total=len(swaps))


@router.get("/{swap_id}")
async def get_swap(
    swap_id: str,
    participant: Optional[str] = Depends(authenticated_participant),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    """Swap snapshot. The authenticated initiator sees the secret once the swap is completing."""
    try:
        return await runtime.engine.get_swap(swap_id, caller=participant)
    except SwapError as e:
        raise to_http_error(e)


@router.post("/{swap_id}/advance", response_model=AdvanceResponse)
async def advance_swap(swap_id: str, runtime: Runtime = Depends(get_runtime)) -> AdvanceResponse:
    """Take the next protocol step."""
    try:
        result = await runtime.engine.advance(swap_id)
    except (SwapError, LockTimeoutError) as e:
        raise to_http_error(e)
    return AdvanceResponse(action=result.action, swap=result.swap)


@router.post("/{swap_id}/legs/{leg_index}/claim", response_model=ClaimResponse)
async def claim_leg(
    swap_id: str,
    leg_index: int,
    body: ClaimRequest,
    runtime: Runtime = Depends(get_runtime),
) -> ClaimResponse:
    """Claim one leg with the secret."""
    try:
        claim_ref = await runtime.engine.claim_leg(swap_id, leg_index, body.secret)
    except (SwapError, LockTimeoutError) as e:
        raise to_http_error(e)
    return ClaimResponse(swap_id=swap_id, leg_index=leg_index, claim_ref=claim_ref)


@router.post("/{swap_id}/cancel")
async def cancel_swap(
    swap_id: str,
    participant: Optional[str] = Depends(authenticated_participant),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    """Cancel a swap that has not started locking."""
    if not participant:
        raise HTTPException(status_code=401, detail="X-Participant-Id header required")
    try:
        return await runtime.engine.cancel(swap_id, caller=participant)
    except (SwapError, LockTimeoutError) as e:
        raise to_http_error(e)


@router.post("/{swap_id}/rollback")
async def rollback_swap(
    swap_id: str,
    body: Optional[RollbackRequest] = None,
    _: bool = Depends(require_admin_token),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    """Force a rollback (operator only)."""
    reason = body.reason if body else "manual rollback"
    try:
        return await runtime.engine.rollback(swap_id, reason)
    except (SwapError, LockTimeoutError) as e:
        raise to_http_error(e)


@router.get("/{swap_id}/confirmations", response_model=ConfirmationsResponse)
async def get_confirmations(
    swap_id: str, runtime: Runtime = Depends(get_runtime)
) -> ConfirmationsResponse:
    """Confirmation record history of a swap."""
    try:
        await runtime.engine.get_swap(swap_id)
    except SwapError as e:
        raise to_http_error(e)

    records = await runtime.recorder.get(swap_id)
    dual_status = await runtime.recorder.dual_status(swap_id)
    return ConfirmationsResponse(
        swap_id=swap_id,
        dual_status=dual_status.value,
        records=[record.to_dict() for record in records],
    )


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


reports_router = APIRouter(prefix="/reports", tags=["Reports"])


@reports_router.get("/confirmations")
async def confirmations_report(
    start: datetime,
    end: datetime,
    _: bool = Depends(require_admin_token),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    """Regulatory report of confirmation records in [start, end)."""
    start, end = _naive_utc(start), _naive_utc(end)
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be after start")
    return await runtime.recorder.regulatory_report(start, end)
