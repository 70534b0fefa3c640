"""Escrow API endpoints: create, capture, refund, payout, proof of work, disputes."""

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from marketplace.api.schemas import (
    CreateEscrowRequest,
    DisputeEvidenceRequest,
    DisputeRequest,
    EscrowDetailResponse,
    EscrowPayoutResponse,
    EscrowResponse,
    EscrowStatsResponse,
    PaginatedEscrowResponse,
    PayoutResponse,
    ProofOfWorkRequest,
    RefundRequest,
    ResolveDisputeRequest,
    TransactionResponse,
)
from marketplace.core.config import settings
from marketplace.core.deps import get_escrow_engine
from marketplace.core.idempotency import claim_request, release_request
from marketplace.core.rate_limit import limiter
from marketplace.core.rbac import require_admin
from marketplace.core.security import get_current_user
from marketplace.models.user import User
from marketplace.services.escrow.disputes import resolve_dispute
from marketplace.services.escrow.engine import Caller, EscrowEngine
from marketplace.services.escrow.errors import NotFoundError
from marketplace.services.escrow.ledger import list_transactions
from marketplace.services.escrow.payouts import get_latest_payout
from marketplace.services.escrow.state_machine import EscrowStatus

router = APIRouter(prefix="/escrows", tags=["escrows"])


@router.post("", response_model=EscrowResponse, status_code=201)
@limiter.limit(settings.rate_limit_escrow)
async def create_escrow(
    request: Request,
    body: CreateEscrowRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    """Hold the client's funds for a booking. Returns the escrow in FUNDS_HELD."""
    caller = Caller.from_user(user)
    client_id = body.client_id if caller.is_admin and body.client_id else user.id
    key = idempotency_key or f"{body.booking_id}:{client_id}"

    if not await claim_request("escrow:create", key, ttl=60):
        # Duplicate submit: hand back the escrow the first request created
        items, _ = await engine.list_escrows(
            caller,
            booking_id=body.booking_id,
            client_id=client_id,
            exclude_statuses=(EscrowStatus.REFUNDED,),
            limit=1,
        )
        if items:
            return items[0]
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An identical request is already being processed",
        )

    try:
        return await engine.create_escrow(
            caller,
            booking_id=body.booking_id,
            client_id=client_id,
            provider_id=body.provider_id,
            amount=body.amount,
            currency=body.currency,
            hold_provider=body.hold_provider,
            description=body.description,
        )
    except Exception:
        await release_request("escrow:create", key)
        raise


@router.get("", response_model=PaginatedEscrowResponse)
async def list_escrows(
    status_filter: str | None = Query(default=None, alias="status"),
    booking_id: int | None = Query(default=None),
    client_id: int | None = Query(default=None),
    provider_id: int | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    """List escrows, newest first. Non-admins only see escrows they are party to."""
    items, total = await engine.list_escrows(
        Caller.from_user(user),
        status=status_filter,
        booking_id=booking_id,
        client_id=client_id,
        provider_id=provider_id,
        offset=offset,
        limit=limit,
    )
    return PaginatedEscrowResponse(
        items=[EscrowResponse.model_validate(e) for e in items],
        total=total,
        offset=offset,
        limit=limit,
        has_more=(offset + limit) < total,
    )


@router.get("/stats", response_model=EscrowStatsResponse)
async def escrow_stats(
    user: User = Depends(require_admin),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.get_stats()


@router.get("/{escrow_id}", response_model=EscrowDetailResponse)
async def get_escrow(
    escrow_id: int,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    escrow, transactions, payout = await engine.get_escrow_details(escrow_id, Caller.from_user(user))
    return EscrowDetailResponse(
        **EscrowResponse.model_validate(escrow).model_dump(),
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        payout=PayoutResponse.model_validate(payout) if payout else None,
    )


@router.get("/{escrow_id}/transactions", response_model=list[TransactionResponse])
async def get_escrow_transactions(
    escrow_id: int,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    escrow = await engine.get_escrow(escrow_id, Caller.from_user(user))
    return await list_transactions(engine.db, escrow.id)


@router.get("/{escrow_id}/payout", response_model=PayoutResponse)
async def get_escrow_payout(
    escrow_id: int,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    escrow = await engine.get_escrow(escrow_id, Caller.from_user(user))
    payout = await get_latest_payout(engine.db, escrow.id)
    if payout is None:
        raise NotFoundError(f"No payout for escrow {escrow_id}")
    return payout


@router.post("/{escrow_id}/approve", response_model=EscrowResponse)
@limiter.limit(settings.rate_limit_escrow)
async def approve_escrow(
    request: Request,
    escrow_id: int,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    """Client approves the work; the hold is captured by the auto-capture sweep."""
    return await engine.approve_work(escrow_id, Caller.from_user(user))


@router.post("/{escrow_id}/capture", response_model=EscrowResponse)
@limiter.limit(settings.rate_limit_escrow)
async def capture_escrow(
    request: Request,
    escrow_id: int,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.capture_payment(escrow_id, Caller.from_user(user))


@router.post("/{escrow_id}/refund", response_model=EscrowResponse)
@limiter.limit(settings.rate_limit_escrow)
async def refund_escrow(
    request: Request,
    escrow_id: int,
    body: RefundRequest,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.refund_payment(escrow_id, Caller.from_user(user), body.reason)


@router.post("/{escrow_id}/payout", response_model=EscrowPayoutResponse)
@limiter.limit(settings.rate_limit_escrow)
async def payout_escrow(
    request: Request,
    escrow_id: int,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    escrow, payout = await engine.process_payout(escrow_id, Caller.from_user(user))
    return EscrowPayoutResponse(
        escrow=EscrowResponse.model_validate(escrow),
        payout=PayoutResponse.model_validate(payout),
    )


@router.post("/{escrow_id}/proof-of-work", response_model=EscrowResponse)
@limiter.limit(settings.rate_limit_escrow)
async def upload_proof_of_work(
    request: Request,
    escrow_id: int,
    body: ProofOfWorkRequest,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.upload_proof_of_work(
        escrow_id,
        Caller.from_user(user),
        [doc.model_dump(exclude_none=True) for doc in body.documents],
        body.notes,
    )


@router.post("/{escrow_id}/dispute", response_model=EscrowResponse, status_code=201)
@limiter.limit(settings.rate_limit_escrow)
async def raise_dispute(
    request: Request,
    escrow_id: int,
    body: DisputeRequest,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.initiate_dispute(
        escrow_id,
        Caller.from_user(user),
        body.reason,
        [item.model_dump(exclude_none=True) for item in body.evidence],
    )


@router.post("/{escrow_id}/dispute/evidence", response_model=EscrowResponse)
@limiter.limit(settings.rate_limit_escrow)
async def add_dispute_evidence(
    request: Request,
    escrow_id: int,
    body: DisputeEvidenceRequest,
    user: User = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.add_dispute_evidence(
        escrow_id,
        Caller.from_user(user),
        [item.model_dump(exclude_none=True) for item in body.evidence],
    )


@router.post("/{escrow_id}/dispute/resolve", response_model=EscrowResponse)
async def resolve_escrow_dispute(
    escrow_id: int,
    body: ResolveDisputeRequest,
    user: User = Depends(require_admin),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await resolve_dispute(engine, escrow_id, Caller.from_user(user), body.decision, body.notes)
