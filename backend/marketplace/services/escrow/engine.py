"""Escrow engine: every escrow and payout state change goes through here.

Each mutating operation follows the same sequence:
  1. load the escrow under a row lock and check caller + transition,
  2. call the gateway adapter,
  3. on success persist the new state and exactly one ledger entry,
  4. commit, then notify the parties best-effort.

Gateway declines and transport failures raise GatewayError before any status
change. A FAILED ledger entry is committed for them when an escrow exists.
"""

import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.db.base import utcnow
from marketplace.models.booking import Booking
from marketplace.models.escrow import Escrow
from marketplace.models.escrow_transaction import EscrowTransaction
from marketplace.models.payout import Payout
from marketplace.models.user import User
from marketplace.services.escrow.errors import (
    EscrowValidationError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from marketplace.services.escrow.ledger import (
    TransactionStatus,
    TransactionType,
    list_transactions,
    record_transaction,
)
from marketplace.services.escrow.payouts import (
    OPEN_PAYOUT_STATUSES,
    PayoutStatus,
    get_latest_payout,
    get_open_payout,
    get_payout,
    payout_reference,
    resolve_destination,
)
from marketplace.services.escrow.state_machine import (
    Actor,
    EscrowAction,
    EscrowStatus,
    validate_transition,
)
from marketplace.services.gateways.base import GatewayResult, GatewayTransportError
from marketplace.services.gateways.registry import SUPPORTED_PROVIDERS, GatewayRegistry
from marketplace.services.notification import notify_escrow_event
from marketplace.services.user import get_user_by_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """Who is performing an operation: a user (by role) or the scheduler."""

    user_id: int | None
    role: str

    @classmethod
    def system(cls) -> "Caller":
        return cls(user_id=None, role=Actor.SYSTEM.value)

    @classmethod
    def from_user(cls, user: User) -> "Caller":
        return cls(user_id=user.id, role=user.role)

    @property
    def is_admin(self) -> bool:
        return self.role == Actor.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == Actor.SYSTEM


def actor_for(escrow: Escrow, caller: Caller) -> Actor:
    """Map a caller onto the escrow's actors; strangers are rejected."""
    if caller.is_system:
        return Actor.SYSTEM
    if caller.user_id is not None and caller.user_id == escrow.client_id:
        return Actor.CLIENT
    if caller.user_id is not None and caller.user_id == escrow.provider_id:
        return Actor.PROVIDER
    if caller.is_admin:
        return Actor.ADMIN
    raise UnauthorizedError("Only the escrow's client or provider can access this escrow")


class EscrowEngine:
    def __init__(self, db: AsyncSession, gateways: GatewayRegistry) -> None:
        self.db = db
        self.gateways = gateways

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_escrow(self, escrow_id: int, *, for_update: bool = True) -> Escrow:
        stmt = select(Escrow).where(Escrow.id == escrow_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        escrow = result.scalar_one_or_none()
        if escrow is None:
            raise NotFoundError(f"Escrow {escrow_id} not found")
        return escrow

    async def _load_payout(self, payout_id: int) -> tuple[Payout, Escrow]:
        payout = await get_payout(self.db, payout_id, for_update=True)
        if payout is None:
            raise NotFoundError(f"Payout {payout_id} not found")
        escrow = await self.load_escrow(payout.escrow_id)
        return payout, escrow

    # ------------------------------------------------------------------
    # Gateway plumbing
    # ------------------------------------------------------------------

    async def _gateway_call(
        self,
        provider: str,
        operation: str,
        call: Awaitable[GatewayResult],
        *,
        escrow: Escrow | None = None,
        transaction_type: TransactionType | None = None,
        initiated_by: int | None = None,
        related_payout_id: int | None = None,
    ) -> GatewayResult:
        """Await an adapter call; any non-success becomes GatewayError.

        When the call concerns an existing escrow a FAILED ledger entry is
        committed before raising.
        """
        try:
            result = await call
        except GatewayTransportError as exc:
            result = GatewayResult(success=False, message=str(exc), code="transport_error")

        if result.success:
            return result

        logger.warning(
            "Gateway %s %s failed: %s (code=%s)",
            provider, operation, result.message, result.code,
            extra={"escrow_id": escrow.id if escrow is not None else None},
        )
        if escrow is not None and transaction_type is not None:
            await record_transaction(
                self.db,
                escrow,
                transaction_type,
                TransactionStatus.FAILED,
                operation=operation,
                initiated_by=initiated_by,
                gateway_provider=provider,
                gateway_message=result.message,
                related_payout_id=related_payout_id,
                reason=f"{operation} failed",
                tags=[operation, "gateway_failure"],
            )
            await self.db.commit()
        raise GatewayError(
            result.message or f"{provider} {operation} failed",
            provider=provider,
            gateway_code=result.code,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        caller: Caller,
        *,
        booking_id: int,
        client_id: int,
        provider_id: int,
        amount: int,
        currency: str,
        hold_provider: str,
        description: str | None = None,
    ) -> Escrow:
        """Place a payment hold and persist the escrow in FUNDS_HELD.

        A failed hold leaves nothing behind.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise EscrowValidationError("Amount must be a positive integer in minor units")
        currency = (currency or "").upper()
        if currency not in settings.supported_currencies:
            raise EscrowValidationError(f"Unsupported currency: {currency}")
        if hold_provider not in SUPPORTED_PROVIDERS:
            raise EscrowValidationError(f"Unsupported payment provider: {hold_provider}")
        adapter = self.gateways.for_holds(hold_provider)
        if not (caller.is_system or caller.is_admin or caller.user_id == client_id):
            raise UnauthorizedError("Only the paying client can create an escrow")
        if client_id == provider_id:
            raise EscrowValidationError("Client and provider must be different users")

        if await get_user_by_id(self.db, client_id) is None:
            raise NotFoundError(f"Client {client_id} not found")
        if await get_user_by_id(self.db, provider_id) is None:
            raise NotFoundError(f"Provider {provider_id} not found")

        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.client_id != client_id or booking.provider_id != provider_id:
            raise EscrowValidationError("Booking does not belong to this client and provider")
        if booking.status == "cancelled":
            raise EscrowValidationError("Booking is cancelled")

        result = await self.db.execute(
            select(Escrow).where(
                Escrow.booking_id == booking_id,
                Escrow.status != EscrowStatus.REFUNDED,
            )
        )
        existing = result.scalars().first()
        if existing is not None:
            raise InvalidStateError(existing.status, "create another escrow for this booking")

        new_status = validate_transition(
            EscrowStatus.CREATED,
            EscrowAction.HOLD,
            Actor.SYSTEM if caller.is_system or caller.is_admin else Actor.CLIENT,
        )
        hold = await self._gateway_call(
            hold_provider,
            "hold",
            adapter.create_hold(
                amount,
                currency,
                client_ref=f"booking-{booking_id}",
                description=description or f"Escrow for booking #{booking_id}",
            ),
        )
        if not hold.reference_id:
            logger.error("Gateway %s returned a hold without reference id", hold_provider)
            raise GatewayError("Payment provider did not return a hold reference", provider=hold_provider)

        escrow = Escrow(
            booking_id=booking_id,
            client_id=client_id,
            provider_id=provider_id,
            amount=amount,
            currency=currency,
            hold_provider=hold_provider,
            provider_hold_id=hold.reference_id,
            status=new_status.value,
        )
        self.db.add(escrow)
        await self.db.flush()

        await record_transaction(
            self.db,
            escrow,
            TransactionType.HOLD,
            TransactionStatus.SUCCESS,
            initiated_by=caller.user_id,
            gateway_provider=hold_provider,
            gateway_transaction_id=hold.reference_id,
            gateway_message=hold.message,
            reason="Payment hold created",
            tags=["hold"],
            previous_balance=0,
            new_balance=amount,
        )
        await self.db.commit()

        logger.info(
            "Escrow %s created for booking %s: %s %s via %s",
            escrow.id, booking_id, amount, currency, hold_provider,
        )
        await notify_escrow_event(escrow, "escrow_created", to=("client", "provider"))
        return escrow

    # ------------------------------------------------------------------
    # Client approval and capture
    # ------------------------------------------------------------------

    async def approve_work(self, escrow_id: int, caller: Caller) -> Escrow:
        """Record the client's approval; the auto-capture sweep captures later."""
        escrow = await self.load_escrow(escrow_id)
        if actor_for(escrow, caller) is not Actor.CLIENT:
            raise UnauthorizedError("Only the client can approve the work")
        if escrow.status != EscrowStatus.FUNDS_HELD:
            raise InvalidStateError(escrow.status, "approve")
        if not escrow.client_approved:
            escrow.client_approved = True
            escrow.client_approved_at = utcnow()
            await self.db.commit()
            logger.info("Escrow %s approved by client", escrow.id)
        return escrow

    async def capture_hold(self, escrow: Escrow, initiated_by: int | None, tags: list[str]) -> None:
        """Capture the hold and write the CAPTURE entry. Caller checks the transition."""
        if not escrow.provider_hold_id:
            raise InvalidStateError(escrow.status, "capture without a payment hold")
        adapter = self.gateways.get(escrow.hold_provider)
        result = await self._gateway_call(
            escrow.hold_provider,
            "capture",
            adapter.capture(escrow.provider_hold_id, escrow.amount, escrow.currency),
            escrow=escrow,
            transaction_type=TransactionType.CAPTURE,
            initiated_by=initiated_by,
        )
        now = utcnow()
        escrow.provider_capture_id = result.reference_id or escrow.provider_hold_id
        if not escrow.client_approved:
            escrow.client_approved = True
            escrow.client_approved_at = now
        await record_transaction(
            self.db,
            escrow,
            TransactionType.CAPTURE,
            TransactionStatus.SUCCESS,
            initiated_by=initiated_by,
            gateway_provider=escrow.hold_provider,
            gateway_transaction_id=escrow.provider_capture_id,
            gateway_message=result.message,
            reason="Payment captured",
            tags=tags,
            previous_balance=escrow.amount,
            new_balance=escrow.amount,
        )

    async def capture_payment(self, escrow_id: int, caller: Caller) -> Escrow:
        escrow = await self.load_escrow(escrow_id)
        actor = actor_for(escrow, caller)
        if actor not in (Actor.CLIENT, Actor.SYSTEM):
            raise UnauthorizedError("Only the client can capture the payment")
        new_status = validate_transition(escrow.status, EscrowAction.CAPTURE, actor)

        tags = ["capture"] if actor is Actor.CLIENT else ["capture", "auto_capture"]
        await self.capture_hold(escrow, caller.user_id, tags)
        escrow.status = new_status.value
        await self.db.commit()

        logger.info("Escrow %s captured by %s", escrow.id, actor.value)
        await notify_escrow_event(escrow, "payment_captured", to=("client", "provider"))
        return escrow

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund_payment(
        self,
        escrow_id: int,
        caller: Caller,
        reason: str,
        *,
        dispute_resolution: bool = False,
    ) -> Escrow:
        """Release the hold (or refund the charge) back to the client.

        Refunding a disputed escrow is reserved for an admin dispute ruling.
        """
        escrow = await self.load_escrow(escrow_id)
        actor = actor_for(escrow, caller)
        if escrow.status == EscrowStatus.DISPUTE and not dispute_resolution:
            raise InvalidStateError(escrow.status, "refund outside a dispute resolution")
        new_status = validate_transition(escrow.status, EscrowAction.REFUND, actor)
        if escrow.status == EscrowStatus.DISPUTE:
            open_payout = await get_open_payout(self.db, escrow.id)
            if open_payout is not None:
                logger.warning(
                    "Escrow %s refund blocked: payout %s is %s", escrow.id, open_payout.id, open_payout.status,
                )
                raise InvalidStateError(escrow.status, "refund with a payout in flight on")

        gateway_ref = None
        message = "No payment hold to release"
        if escrow.provider_hold_id:
            adapter = self.gateways.get(escrow.hold_provider)
            result = await self._gateway_call(
                escrow.hold_provider,
                "refund",
                adapter.release(escrow.provider_hold_id),
                escrow=escrow,
                transaction_type=TransactionType.REFUND,
                initiated_by=caller.user_id,
            )
            gateway_ref = result.reference_id
            message = result.message

        escrow.status = new_status.value
        tags = ["refund", "dispute_resolution"] if dispute_resolution else ["refund"]
        await record_transaction(
            self.db,
            escrow,
            TransactionType.REFUND,
            TransactionStatus.SUCCESS,
            initiated_by=caller.user_id,
            gateway_provider=escrow.hold_provider,
            gateway_transaction_id=gateway_ref,
            gateway_message=message,
            reason=reason,
            tags=tags,
            previous_balance=escrow.amount,
            new_balance=0,
        )
        await self.db.commit()

        logger.info("Escrow %s refunded: %s", escrow.id, reason)
        await notify_escrow_event(
            escrow, "payment_refunded", to=("client", "provider"), reason=reason,
        )
        return escrow

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def _initiate_payout(self, escrow: Escrow, initiated_by: int | None) -> Payout:
        """Send the escrowed amount to the provider. Caller checks the transition."""
        if not escrow.client_approved:
            raise EscrowValidationError("Client approval is required before payout")

        provider = await get_user_by_id(self.db, escrow.provider_id)
        if provider is None:
            raise NotFoundError(f"Provider {escrow.provider_id} not found")
        destination_type, method_provider, details = resolve_destination(provider)
        adapter = self.gateways.for_payouts(method_provider)

        payout = Payout(
            escrow_id=escrow.id,
            provider_id=escrow.provider_id,
            amount=escrow.amount,
            currency=escrow.currency,
            payout_provider=adapter.name,
            destination_type=destination_type,
            destination_details=details,
            status=PayoutStatus.PENDING.value,
            description=f"Payout for escrow #{escrow.id}",
        )
        self.db.add(payout)
        await self.db.flush()
        payout.reference = payout_reference(escrow.id, payout.id)

        try:
            result = await self._gateway_call(
                adapter.name,
                "payout",
                adapter.initiate_payout(escrow.amount, escrow.currency, details, payout.reference),
                escrow=escrow,
                transaction_type=TransactionType.PAYOUT,
                initiated_by=initiated_by,
                related_payout_id=payout.id,
            )
        except GatewayError as exc:
            payout.status = PayoutStatus.FAILED.value
            payout.failure_reason = exc.message
            await self.db.commit()
            raise

        payout.gateway_payout_id = result.reference_id
        payout.status = PayoutStatus.PROCESSING.value
        payout.initiated_at = utcnow()
        escrow.status = EscrowStatus.PAYOUT_INITIATED.value

        await record_transaction(
            self.db,
            escrow,
            TransactionType.PAYOUT,
            TransactionStatus.PENDING,
            initiated_by=initiated_by,
            gateway_provider=adapter.name,
            gateway_transaction_id=result.reference_id,
            gateway_message=result.message,
            reason="Payout initiated",
            tags=["payout"],
            related_payout_id=payout.id,
            previous_balance=escrow.amount,
            new_balance=escrow.amount,
        )
        return payout

    async def process_payout(self, escrow_id: int, caller: Caller) -> tuple[Escrow, Payout]:
        escrow = await self.load_escrow(escrow_id)
        actor = actor_for(escrow, caller)
        if actor is Actor.CLIENT:
            raise UnauthorizedError("Only the provider can request a payout")
        validate_transition(escrow.status, EscrowAction.PAYOUT, actor)

        payout = await self._initiate_payout(escrow, caller.user_id)
        await self.db.commit()

        logger.info("Payout %s initiated for escrow %s via %s", payout.id, escrow.id, payout.payout_provider)
        await notify_escrow_event(escrow, "payout_initiated", to=("provider",))
        return escrow, payout

    async def complete_payout(
        self, payout_id: int, caller: Caller | None = None,
    ) -> tuple[Escrow, Payout]:
        """Mark a payout as completed (webhook or status poll). Repeat calls are no-ops."""
        caller = caller or Caller.system()
        payout, escrow = await self._load_payout(payout_id)
        if payout.status == PayoutStatus.COMPLETED:
            return escrow, payout
        if payout.status not in OPEN_PAYOUT_STATUSES:
            raise InvalidStateError(payout.status, "complete payout")
        actor = Actor.ADMIN if caller.is_admin else Actor.SYSTEM
        new_status = validate_transition(escrow.status, EscrowAction.COMPLETE_PAYOUT, actor)

        payout.status = PayoutStatus.COMPLETED.value
        payout.completed_at = utcnow()
        escrow.status = new_status.value
        await record_transaction(
            self.db,
            escrow,
            TransactionType.PAYOUT,
            TransactionStatus.SUCCESS,
            operation="payout_completed",
            initiated_by=caller.user_id,
            gateway_provider=payout.payout_provider,
            gateway_transaction_id=payout.gateway_payout_id,
            gateway_message="Payout completed",
            reason="Payout completed",
            tags=["payout_completed"],
            related_payout_id=payout.id,
            previous_balance=escrow.amount,
            new_balance=0,
        )
        await self.db.commit()

        logger.info("Payout %s completed for escrow %s", payout.id, escrow.id)
        await notify_escrow_event(escrow, "payout_completed", to=("provider",))
        return escrow, payout

    async def fail_payout(
        self, payout_id: int, reason: str | None = None, caller: Caller | None = None,
    ) -> tuple[Escrow, Payout]:
        """Mark a payout as failed and put the escrow back to IN_PROGRESS for a retry."""
        caller = caller or Caller.system()
        payout, escrow = await self._load_payout(payout_id)
        if payout.status == PayoutStatus.FAILED:
            return escrow, payout
        if payout.status not in OPEN_PAYOUT_STATUSES:
            raise InvalidStateError(payout.status, "fail payout")
        actor = Actor.ADMIN if caller.is_admin else Actor.SYSTEM
        new_status = validate_transition(escrow.status, EscrowAction.FAIL_PAYOUT, actor)

        reason = reason or "Payout failed at provider"
        payout.status = PayoutStatus.FAILED.value
        payout.failure_reason = reason
        escrow.status = new_status.value
        await record_transaction(
            self.db,
            escrow,
            TransactionType.PAYOUT,
            TransactionStatus.FAILED,
            operation="payout_failed",
            initiated_by=caller.user_id,
            gateway_provider=payout.payout_provider,
            gateway_transaction_id=payout.gateway_payout_id,
            gateway_message=reason,
            reason=reason,
            tags=["payout_failed"],
            related_payout_id=payout.id,
            previous_balance=escrow.amount,
            new_balance=escrow.amount,
        )
        await self.db.commit()

        logger.warning("Payout %s failed for escrow %s: %s", payout.id, escrow.id, reason)
        await notify_escrow_event(escrow, "payout_failed", to=("provider", "admins"), reason=reason)
        return escrow, payout

    # ------------------------------------------------------------------
    # Work lifecycle
    # ------------------------------------------------------------------

    async def release_escrow(self, escrow_id: int, caller: Caller | None = None) -> Escrow:
        """IN_PROGRESS -> COMPLETE once the work period has passed without a dispute."""
        caller = caller or Caller.system()
        escrow = await self.load_escrow(escrow_id)
        actor = Actor.ADMIN if caller.is_admin else Actor.SYSTEM
        if escrow.dispute_raised:
            raise InvalidStateError(escrow.status, "release a disputed escrow")
        new_status = validate_transition(escrow.status, EscrowAction.RELEASE, actor)

        escrow.status = new_status.value
        await record_transaction(
            self.db,
            escrow,
            TransactionType.PAYOUT,
            TransactionStatus.SUCCESS,
            operation="release",
            initiated_by=caller.user_id,
            reason="Escrow released after the work period",
            tags=["auto_release"],
            previous_balance=escrow.amount,
            new_balance=escrow.amount,
        )
        await self.db.commit()

        logger.info("Escrow %s released", escrow.id)
        await notify_escrow_event(escrow, "escrow_released", to=("provider",))
        return escrow

    async def upload_proof_of_work(
        self,
        escrow_id: int,
        caller: Caller,
        documents: list[dict[str, Any]],
        notes: str | None = None,
    ) -> Escrow:
        escrow = await self.load_escrow(escrow_id)
        actor = actor_for(escrow, caller)
        if actor is not Actor.PROVIDER:
            raise UnauthorizedError("Only the provider can upload proof of work")
        if not documents:
            raise EscrowValidationError("At least one document is required")
        validate_transition(escrow.status, EscrowAction.UPLOAD_PROOF, actor)

        escrow.proof_documents = list(documents)
        escrow.proof_notes = notes
        escrow.proof_uploaded_at = utcnow()
        await self.db.commit()

        logger.info("Proof of work uploaded for escrow %s (%d documents)", escrow.id, len(documents))
        await notify_escrow_event(escrow, "proof_uploaded", to=("client",))
        return escrow

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def initiate_dispute(
        self,
        escrow_id: int,
        caller: Caller,
        reason: str,
        evidence: list[dict[str, Any]] | None = None,
    ) -> Escrow:
        escrow = await self.load_escrow(escrow_id)
        actor = actor_for(escrow, caller)
        if actor not in (Actor.CLIENT, Actor.PROVIDER):
            raise UnauthorizedError("Only the client or provider can raise a dispute")
        if not reason or not reason.strip():
            raise EscrowValidationError("A dispute reason is required")
        new_status = validate_transition(escrow.status, EscrowAction.DISPUTE, actor)

        escrow.dispute_previous_status = escrow.status
        escrow.dispute_raised = True
        escrow.dispute_raised_at = utcnow()
        escrow.dispute_raised_by = caller.user_id
        escrow.dispute_reason = reason.strip()
        escrow.dispute_evidence = list(evidence or [])
        escrow.resolution_decision = None
        escrow.resolution_decided_by = None
        escrow.resolution_decided_at = None
        escrow.resolution_notes = None
        escrow.status = new_status.value

        await record_transaction(
            self.db,
            escrow,
            TransactionType.DISPUTE_INITIATED,
            TransactionStatus.SUCCESS,
            initiated_by=caller.user_id,
            reason=escrow.dispute_reason,
            tags=["dispute"],
            extra={"raised_at": escrow.dispute_raised_at.isoformat()},
        )
        await self.db.commit()

        logger.info("Dispute raised on escrow %s by %s", escrow.id, actor.value)
        counterparty = "provider" if actor is Actor.CLIENT else "client"
        await notify_escrow_event(
            escrow, "escrow_dispute_raised", to=(counterparty, "admins"), reason=escrow.dispute_reason,
        )
        return escrow

    async def add_dispute_evidence(
        self, escrow_id: int, caller: Caller, evidence: list[dict[str, Any]],
    ) -> Escrow:
        escrow = await self.load_escrow(escrow_id)
        actor = actor_for(escrow, caller)
        if actor not in (Actor.CLIENT, Actor.PROVIDER):
            raise UnauthorizedError("Only the client or provider can add dispute evidence")
        if escrow.status != EscrowStatus.DISPUTE:
            raise InvalidStateError(escrow.status, "add dispute evidence")
        if not evidence:
            raise EscrowValidationError("Evidence must not be empty")

        submitted_at = utcnow().isoformat()
        escrow.dispute_evidence = [
            *(escrow.dispute_evidence or []),
            *({**item, "submitted_by": caller.user_id, "submitted_at": submitted_at} for item in evidence),
        ]
        await self.db.commit()
        return escrow

    # ------------------------------------------------------------------
    # Automation helpers
    # ------------------------------------------------------------------

    async def flag_stuck(self, escrow_id: int) -> bool:
        """Flag a long-held escrow once. Returns False when nothing changed."""
        escrow = await self.load_escrow(escrow_id)
        if escrow.status != EscrowStatus.FUNDS_HELD or escrow.flagged_as_stuck:
            return False
        escrow.flagged_as_stuck = True
        escrow.stuck_since = utcnow()
        await self.db.commit()

        logger.warning("Escrow %s flagged as stuck", escrow.id)
        await notify_escrow_event(
            escrow, "escrow_stuck", to=("client", "admins"), since=escrow.created_at.isoformat(),
        )
        return True

    async def mark_auto_refund_attempted(self, escrow_id: int) -> None:
        escrow = await self.load_escrow(escrow_id)
        escrow.auto_refund_attempted = True
        await self.db.commit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: int, caller: Caller) -> Escrow:
        escrow = await self.load_escrow(escrow_id, for_update=False)
        actor_for(escrow, caller)
        return escrow

    async def get_escrow_details(
        self, escrow_id: int, caller: Caller,
    ) -> tuple[Escrow, list[EscrowTransaction], Payout | None]:
        escrow = await self.get_escrow(escrow_id, caller)
        transactions = await list_transactions(self.db, escrow.id)
        payout = await get_latest_payout(self.db, escrow.id)
        return escrow, transactions, payout

    async def list_escrows(
        self,
        caller: Caller,
        *,
        status: str | None = None,
        booking_id: int | None = None,
        client_id: int | None = None,
        provider_id: int | None = None,
        exclude_statuses: tuple[str, ...] = (),
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Escrow], int]:
        """Paginated escrows, newest first. Non-admins only see their own."""
        stmt = select(Escrow)
        if not (caller.is_admin or caller.is_system):
            stmt = stmt.where(
                or_(Escrow.client_id == caller.user_id, Escrow.provider_id == caller.user_id)
            )
        if status:
            stmt = stmt.where(Escrow.status == status)
        if booking_id is not None:
            stmt = stmt.where(Escrow.booking_id == booking_id)
        if client_id is not None:
            stmt = stmt.where(Escrow.client_id == client_id)
        if provider_id is not None:
            stmt = stmt.where(Escrow.provider_id == provider_id)
        if exclude_statuses:
            stmt = stmt.where(Escrow.status.not_in(exclude_statuses))

        total_result = await self.db.execute(select(func.count()).select_from(stmt.subquery()))
        total = total_result.scalar_one()

        result = await self.db.execute(
            stmt.order_by(Escrow.created_at.desc(), Escrow.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_stats(self, top: int = 5) -> dict[str, Any]:
        by_status_result = await self.db.execute(
            select(Escrow.status, func.count(Escrow.id)).group_by(Escrow.status)
        )
        by_status = {status: count for status, count in by_status_result.all()}

        volume_result = await self.db.execute(
            select(Escrow.currency, func.sum(Escrow.amount), func.count(Escrow.id))
            .where(Escrow.status != EscrowStatus.REFUNDED)
            .group_by(Escrow.currency)
        )
        volume = {
            currency: {"amount": int(total or 0), "count": count}
            for currency, total, count in volume_result.all()
        }

        top_result = await self.db.execute(
            select(Escrow.provider_id, Escrow.currency, func.sum(Escrow.amount), func.count(Escrow.id))
            .where(Escrow.status == EscrowStatus.PAYOUT_COMPLETED)
            .group_by(Escrow.provider_id, Escrow.currency)
            .order_by(func.sum(Escrow.amount).desc())
            .limit(top)
        )
        top_providers = [
            {"provider_id": provider_id, "currency": currency, "amount": int(total or 0), "count": count}
            for provider_id, currency, total, count in top_result.all()
        ]

        return {
            "by_status": by_status,
            "total_escrows": sum(by_status.values()),
            "volume": volume,
            "top_providers": top_providers,
        }
