"""Escrow state machine: pure logic, no DB dependency.

Defines the escrow statuses, the actions that move between them and which
actors may perform each action. Ownership checks (is this user the escrow's
client?) live in the engine; this table only knows roles.
"""

from enum import StrEnum

from marketplace.services.escrow.errors import InvalidStateError


class EscrowStatus(StrEnum):
    CREATED = "CREATED"
    FUNDS_HELD = "FUNDS_HELD"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    DISPUTE = "DISPUTE"
    REFUNDED = "REFUNDED"
    PAYOUT_INITIATED = "PAYOUT_INITIATED"
    PAYOUT_COMPLETED = "PAYOUT_COMPLETED"


class EscrowAction(StrEnum):
    HOLD = "hold"
    CAPTURE = "capture"
    REFUND = "refund"
    PAYOUT = "payout"
    COMPLETE_PAYOUT = "complete_payout"
    FAIL_PAYOUT = "fail_payout"
    RELEASE = "release"
    UPLOAD_PROOF = "upload_proof"
    DISPUTE = "dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    RESTORE = "restore"


class Actor(StrEnum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class DisputeDecision(StrEnum):
    REFUND_CLIENT = "REFUND_CLIENT"
    PAYOUT_PROVIDER = "PAYOUT_PROVIDER"
    SPLIT = "SPLIT"


_PARTIES = frozenset({Actor.CLIENT, Actor.PROVIDER})

# Mapping: (current_status, action) → (new_status, frozenset_of_allowed_actors)
TRANSITIONS: dict[tuple[EscrowStatus, EscrowAction], tuple[EscrowStatus, frozenset[Actor]]] = {
    # Happy path
    (EscrowStatus.CREATED, EscrowAction.HOLD): (
        EscrowStatus.FUNDS_HELD,
        frozenset({Actor.CLIENT, Actor.SYSTEM}),
    ),
    (EscrowStatus.FUNDS_HELD, EscrowAction.CAPTURE): (
        EscrowStatus.IN_PROGRESS,
        frozenset({Actor.CLIENT, Actor.SYSTEM}),
    ),
    (EscrowStatus.IN_PROGRESS, EscrowAction.RELEASE): (
        EscrowStatus.COMPLETE,
        frozenset({Actor.SYSTEM, Actor.ADMIN}),
    ),
    (EscrowStatus.IN_PROGRESS, EscrowAction.PAYOUT): (
        EscrowStatus.PAYOUT_INITIATED,
        frozenset({Actor.PROVIDER, Actor.SYSTEM, Actor.ADMIN}),
    ),
    (EscrowStatus.COMPLETE, EscrowAction.PAYOUT): (
        EscrowStatus.PAYOUT_INITIATED,
        frozenset({Actor.PROVIDER, Actor.SYSTEM, Actor.ADMIN}),
    ),
    (EscrowStatus.PAYOUT_INITIATED, EscrowAction.COMPLETE_PAYOUT): (
        EscrowStatus.PAYOUT_COMPLETED,
        frozenset({Actor.SYSTEM, Actor.ADMIN}),
    ),
    (EscrowStatus.PAYOUT_INITIATED, EscrowAction.FAIL_PAYOUT): (
        EscrowStatus.IN_PROGRESS,
        frozenset({Actor.SYSTEM, Actor.ADMIN}),
    ),
    # Refund: before capture by anyone entitled, from a dispute only by an admin ruling
    (EscrowStatus.CREATED, EscrowAction.REFUND): (
        EscrowStatus.REFUNDED,
        frozenset({Actor.CLIENT, Actor.PROVIDER, Actor.SYSTEM, Actor.ADMIN}),
    ),
    (EscrowStatus.FUNDS_HELD, EscrowAction.REFUND): (
        EscrowStatus.REFUNDED,
        frozenset({Actor.CLIENT, Actor.PROVIDER, Actor.SYSTEM, Actor.ADMIN}),
    ),
    (EscrowStatus.DISPUTE, EscrowAction.REFUND): (
        EscrowStatus.REFUNDED,
        frozenset({Actor.ADMIN}),
    ),
    # Proof of work does not move the escrow
    (EscrowStatus.FUNDS_HELD, EscrowAction.UPLOAD_PROOF): (
        EscrowStatus.FUNDS_HELD,
        frozenset({Actor.PROVIDER}),
    ),
    (EscrowStatus.IN_PROGRESS, EscrowAction.UPLOAD_PROOF): (
        EscrowStatus.IN_PROGRESS,
        frozenset({Actor.PROVIDER}),
    ),
    # Dispute: from any non-terminal status except an open dispute
    (EscrowStatus.CREATED, EscrowAction.DISPUTE): (EscrowStatus.DISPUTE, _PARTIES),
    (EscrowStatus.FUNDS_HELD, EscrowAction.DISPUTE): (EscrowStatus.DISPUTE, _PARTIES),
    (EscrowStatus.IN_PROGRESS, EscrowAction.DISPUTE): (EscrowStatus.DISPUTE, _PARTIES),
    (EscrowStatus.COMPLETE, EscrowAction.DISPUTE): (EscrowStatus.DISPUTE, _PARTIES),
    (EscrowStatus.PAYOUT_INITIATED, EscrowAction.DISPUTE): (EscrowStatus.DISPUTE, _PARTIES),
    (EscrowStatus.DISPUTE, EscrowAction.RESOLVE_DISPUTE): (
        EscrowStatus.DISPUTE,
        frozenset({Actor.ADMIN}),
    ),
    # PAYOUT_PROVIDER ruling puts a captured escrow back to work
    (EscrowStatus.DISPUTE, EscrowAction.RESTORE): (
        EscrowStatus.IN_PROGRESS,
        frozenset({Actor.ADMIN}),
    ),
}

TERMINAL_STATUSES: frozenset[EscrowStatus] = frozenset({
    EscrowStatus.REFUNDED,
    EscrowStatus.PAYOUT_COMPLETED,
})

# Statuses in which the hold has been converted into a charge
CAPTURED_STATUSES: frozenset[EscrowStatus] = frozenset({
    EscrowStatus.IN_PROGRESS,
    EscrowStatus.COMPLETE,
    EscrowStatus.PAYOUT_INITIATED,
})


def validate_transition(current: str, action: str, actor: str) -> EscrowStatus:
    """Validate and return the new status for a transition.

    Raises InvalidStateError if the transition is not allowed.
    """
    try:
        current_status = EscrowStatus(current)
        escrow_action = EscrowAction(action)
        actor_enum = Actor(actor)
    except ValueError:
        raise InvalidStateError(current, action, actor)

    key = (current_status, escrow_action)
    if key not in TRANSITIONS:
        raise InvalidStateError(current, action, actor)

    new_status, allowed_actors = TRANSITIONS[key]

    if actor_enum not in allowed_actors:
        raise InvalidStateError(current, action, actor)

    return new_status


def get_available_actions(current: str, actor: str) -> list[str]:
    """Return list of action names available for the given status and actor."""
    try:
        current_status = EscrowStatus(current)
        actor_enum = Actor(actor)
    except ValueError:
        return []

    if current_status in TERMINAL_STATUSES:
        return []

    actions: list[str] = []
    for (status, action), (_, allowed_actors) in TRANSITIONS.items():
        if status != current_status:
            continue
        if actor_enum in allowed_actors:
            actions.append(action.value)

    return actions
