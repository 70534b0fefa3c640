"""Tests for the escrow state machine: transitions, actor enforcement, terminal states."""

import pytest

from marketplace.services.escrow.errors import InvalidStateError
from marketplace.services.escrow.state_machine import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    EscrowAction,
    EscrowStatus,
    get_available_actions,
    validate_transition,
)


class TestHappyPathLifecycle:
    """CREATED → FUNDS_HELD → IN_PROGRESS → COMPLETE → PAYOUT_INITIATED → PAYOUT_COMPLETED."""

    def test_full_happy_path(self):
        status = EscrowStatus.CREATED

        status = validate_transition(status, "hold", "client")
        assert status == EscrowStatus.FUNDS_HELD

        status = validate_transition(status, "capture", "client")
        assert status == EscrowStatus.IN_PROGRESS

        status = validate_transition(status, "release", "system")
        assert status == EscrowStatus.COMPLETE

        status = validate_transition(status, "payout", "provider")
        assert status == EscrowStatus.PAYOUT_INITIATED

        status = validate_transition(status, "complete_payout", "system")
        assert status == EscrowStatus.PAYOUT_COMPLETED

    def test_payout_directly_from_in_progress(self):
        assert validate_transition("IN_PROGRESS", "payout", "system") == EscrowStatus.PAYOUT_INITIATED

    def test_failed_payout_returns_to_in_progress(self):
        assert validate_transition("PAYOUT_INITIATED", "fail_payout", "system") == EscrowStatus.IN_PROGRESS

    def test_proof_upload_keeps_status(self):
        assert validate_transition("FUNDS_HELD", "upload_proof", "provider") == EscrowStatus.FUNDS_HELD
        assert validate_transition("IN_PROGRESS", "upload_proof", "provider") == EscrowStatus.IN_PROGRESS


class TestRefunds:
    @pytest.mark.parametrize("status", ["CREATED", "FUNDS_HELD"])
    def test_refund_before_capture(self, status):
        assert validate_transition(status, "refund", "client") == EscrowStatus.REFUNDED

    @pytest.mark.parametrize("status", ["IN_PROGRESS", "COMPLETE", "PAYOUT_INITIATED"])
    def test_no_refund_after_capture(self, status):
        with pytest.raises(InvalidStateError):
            validate_transition(status, "refund", "admin")

    def test_dispute_refund_is_admin_only(self):
        assert validate_transition("DISPUTE", "refund", "admin") == EscrowStatus.REFUNDED
        with pytest.raises(InvalidStateError):
            validate_transition("DISPUTE", "refund", "client")
        with pytest.raises(InvalidStateError):
            validate_transition("DISPUTE", "refund", "system")


class TestDisputes:
    @pytest.mark.parametrize(
        "status", ["CREATED", "FUNDS_HELD", "IN_PROGRESS", "COMPLETE", "PAYOUT_INITIATED"],
    )
    def test_either_party_can_dispute(self, status):
        assert validate_transition(status, "dispute", "client") == EscrowStatus.DISPUTE
        assert validate_transition(status, "dispute", "provider") == EscrowStatus.DISPUTE

    def test_cannot_dispute_twice(self):
        with pytest.raises(InvalidStateError):
            validate_transition("DISPUTE", "dispute", "client")

    def test_admin_and_system_cannot_raise(self):
        with pytest.raises(InvalidStateError):
            validate_transition("IN_PROGRESS", "dispute", "admin")
        with pytest.raises(InvalidStateError):
            validate_transition("IN_PROGRESS", "dispute", "system")

    def test_resolve_admin_only(self):
        assert validate_transition("DISPUTE", "resolve_dispute", "admin") == EscrowStatus.DISPUTE
        with pytest.raises(InvalidStateError):
            validate_transition("DISPUTE", "resolve_dispute", "provider")


class TestInvalidTransitions:
    def test_provider_cannot_capture(self):
        with pytest.raises(InvalidStateError):
            validate_transition("FUNDS_HELD", "capture", "provider")

    def test_admin_cannot_capture(self):
        with pytest.raises(InvalidStateError):
            validate_transition("FUNDS_HELD", "capture", "admin")
        assert "capture" not in get_available_actions("FUNDS_HELD", "admin")

    def test_client_cannot_payout(self):
        with pytest.raises(InvalidStateError):
            validate_transition("COMPLETE", "payout", "client")

    def test_cannot_payout_from_funds_held(self):
        with pytest.raises(InvalidStateError):
            validate_transition("FUNDS_HELD", "payout", "system")

    def test_invalid_action_string(self):
        with pytest.raises(InvalidStateError):
            validate_transition("CREATED", "nonexistent_action", "client")

    def test_invalid_status_string(self):
        with pytest.raises(InvalidStateError):
            validate_transition("INVALID_STATUS", "hold", "client")

    def test_error_message_names_status_and_action(self):
        with pytest.raises(InvalidStateError) as exc_info:
            validate_transition("REFUNDED", "capture", "client")
        assert exc_info.value.current == "REFUNDED"
        assert "capture" in exc_info.value.message
        assert exc_info.value.status_code == 409


class TestTerminalStatuses:
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {EscrowStatus.REFUNDED, EscrowStatus.PAYOUT_COMPLETED}

    def test_no_transitions_out_of_terminal(self):
        for status, _ in TRANSITIONS:
            assert status not in TERMINAL_STATUSES

    @pytest.mark.parametrize("action", list(EscrowAction))
    def test_refunded_rejects_everything(self, action):
        with pytest.raises(InvalidStateError):
            validate_transition("REFUNDED", action, "admin")


class TestAvailableActions:
    def test_client_on_funds_held(self):
        actions = get_available_actions("FUNDS_HELD", "client")
        assert set(actions) == {"capture", "refund", "dispute"}

    def test_provider_on_in_progress(self):
        actions = get_available_actions("IN_PROGRESS", "provider")
        assert set(actions) == {"payout", "upload_proof", "dispute"}

    def test_terminal_has_no_actions(self):
        assert get_available_actions("PAYOUT_COMPLETED", "admin") == []

    def test_unknown_actor(self):
        assert get_available_actions("FUNDS_HELD", "stranger") == []
