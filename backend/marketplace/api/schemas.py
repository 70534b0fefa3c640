from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Escrow requests
# ---------------------------------------------------------------------------


class CreateEscrowRequest(BaseModel):
    booking_id: int
    provider_id: int
    client_id: int | None = None  # admins may create on a client's behalf
    amount: int = Field(..., description="Amount in minor units (cents / centavos)")
    currency: str = Field(..., min_length=3, max_length=3)
    hold_provider: Literal["paymongo", "xendit", "stripe", "paypal", "paymaya"]
    description: str | None = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class ProofDocument(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)
    type: str | None = Field(default=None, max_length=50)
    name: str | None = Field(default=None, max_length=255)


class ProofOfWorkRequest(BaseModel):
    documents: list[ProofDocument] = Field(..., min_length=1, max_length=20)
    notes: str | None = Field(default=None, max_length=2000)


class EvidenceItem(BaseModel):
    url: str | None = Field(default=None, max_length=2048)
    description: str | None = Field(default=None, max_length=2000)
    type: str | None = Field(default=None, max_length=50)


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    evidence: list[EvidenceItem] = Field(default_factory=list, max_length=20)


class DisputeEvidenceRequest(BaseModel):
    evidence: list[EvidenceItem] = Field(..., min_length=1, max_length=20)


class ResolveDisputeRequest(BaseModel):
    decision: Literal["REFUND_CLIENT", "PAYOUT_PROVIDER", "SPLIT"]
    notes: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Escrow responses
# ---------------------------------------------------------------------------


class EscrowResponse(BaseModel):
    id: int
    booking_id: int
    client_id: int
    provider_id: int
    amount: int
    currency: str
    hold_provider: str
    provider_hold_id: str | None
    provider_capture_id: str | None
    status: str
    proof_documents: list[Any] = []
    proof_notes: str | None = None
    proof_uploaded_at: datetime | None = None
    client_approved: bool
    client_approved_at: datetime | None = None
    dispute_raised: bool
    dispute_raised_at: datetime | None = None
    dispute_raised_by: int | None = None
    dispute_reason: str | None = None
    dispute_evidence: list[Any] = []
    resolution_decision: str | None = None
    resolution_decided_by: int | None = None
    resolution_decided_at: datetime | None = None
    resolution_notes: str | None = None
    flagged_as_stuck: bool
    stuck_since: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TransactionResponse(BaseModel):
    id: int
    escrow_id: int
    transaction_type: str
    amount: int
    currency: str
    status: str
    initiated_by: int | None
    gateway_provider: str | None
    gateway_transaction_id: str | None
    gateway_message: str | None
    details: dict[str, Any]
    previous_balance: int | None
    new_balance: int | None
    timestamp: datetime

    model_config = {"from_attributes": True}


class PayoutResponse(BaseModel):
    id: int
    escrow_id: int
    provider_id: int
    amount: int
    currency: str
    payout_provider: str
    gateway_payout_id: str | None
    destination_type: str
    status: str
    reference: str | None
    initiated_at: datetime | None
    completed_at: datetime | None
    failure_reason: str | None

    model_config = {"from_attributes": True}


class EscrowPayoutResponse(BaseModel):
    escrow: EscrowResponse
    payout: PayoutResponse


class EscrowDetailResponse(EscrowResponse):
    transactions: list[TransactionResponse] = []
    payout: PayoutResponse | None = None


class EscrowStatsResponse(BaseModel):
    by_status: dict[str, int]
    total_escrows: int
    volume: dict[str, dict[str, int]]
    top_providers: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Paginated Responses
# ---------------------------------------------------------------------------


class PaginatedEscrowResponse(BaseModel):
    items: list[EscrowResponse]
    total: int
    offset: int
    limit: int
    has_more: bool
