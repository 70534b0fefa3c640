"""Tests for admin dispute resolution and the escalation reminders."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from marketplace.models.escrow import Escrow
from marketplace.services.escrow.disputes import (
    nudge_parties_for_evidence,
    remind_admins_of_unresolved,
    resolve_dispute,
    split_amount,
)
from marketplace.services.escrow.engine import Caller, EscrowEngine
from marketplace.services.escrow.errors import (
    EscrowValidationError,
    InvalidStateError,
    UnauthorizedError,
)
from marketplace.services.escrow.ledger import TransactionStatus, TransactionType
from marketplace.services.gateways.base import GatewayAdapter, GatewayResult
from marketplace.services.gateways.registry import GatewayRegistry

ENGINE = "marketplace.services.escrow.engine"
DISPUTES = "marketplace.services.escrow.disputes"

ADMIN = Caller(user_id=9, role="admin")
CLIENT = Caller(user_id=1, role="client")

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeGateway(GatewayAdapter):
    name = "paymongo"
    supports_holds = True

    def __init__(self):
        self.capture = AsyncMock(
            return_value=GatewayResult(success=True, message="Payment captured", reference_id="cap_1")
        )
        self.release = AsyncMock(
            return_value=GatewayResult(success=True, message="Refund issued", reference_id="ref_1")
        )

    @property
    def configured(self) -> bool:
        return True


class FakeResult:
    def __init__(self, items=None, item=None):
        self._items = items or []
        self._item = item

    def scalars(self):
        return self

    def all(self):
        return self._items

    def scalar_one_or_none(self):
        return self._item


def _make_escrow(previous="IN_PROGRESS", **overrides) -> Escrow:
    fields = dict(
        booking_id=10,
        client_id=1,
        provider_id=2,
        amount=50000,
        currency="USD",
        hold_provider="paymongo",
        provider_hold_id="hold_1",
        provider_capture_id="cap_1",
        status="DISPUTE",
        client_approved=True,
        dispute_raised=True,
        dispute_raised_at=NOW - timedelta(days=4),
        dispute_reason="Not delivered",
        dispute_evidence=[],
        dispute_previous_status=previous,
    )
    fields.update(overrides)
    escrow = Escrow(**fields)
    escrow.id = 1
    return escrow


@pytest.fixture
def ledger():
    mock_record = AsyncMock()
    with (
        patch(f"{ENGINE}.record_transaction", new=mock_record),
        patch(f"{DISPUTES}.record_transaction", new=mock_record),
    ):
        yield mock_record


@pytest.fixture(autouse=True)
def notify():
    mock_notify = AsyncMock()
    with (
        patch(f"{ENGINE}.notify_escrow_event", new=mock_notify),
        patch(f"{DISPUTES}.notify_escrow_event", new=mock_notify),
    ):
        yield mock_notify


@pytest.fixture(autouse=True)
def open_payout():
    with patch(f"{ENGINE}.get_open_payout", new_callable=AsyncMock, return_value=None) as mock_lookup:
        yield mock_lookup


@pytest.fixture
def gateway():
    return FakeGateway()


def _engine_for(escrow, gateway) -> EscrowEngine:
    db = AsyncMock()
    db.add = MagicMock()
    engine = EscrowEngine(db, GatewayRegistry({"paymongo": gateway}))
    engine.load_escrow = AsyncMock(return_value=escrow)
    return engine


def _ledger_types(ledger):
    return [(c.args[2], c.args[3]) for c in ledger.await_args_list]


class TestSplitAmount:
    def test_even(self):
        assert split_amount(50000) == (25000, 25000)

    def test_odd_remainder_goes_to_provider(self):
        assert split_amount(50001) == (25000, 25001)


class TestResolveDispute:
    @pytest.mark.asyncio
    async def test_refund_client(self, gateway, ledger, notify):
        escrow = _make_escrow(previous="FUNDS_HELD", provider_capture_id=None)
        engine = _engine_for(escrow, gateway)

        result = await resolve_dispute(engine, 1, ADMIN, "REFUND_CLIENT", "Provider no-show")

        assert result.status == "REFUNDED"
        assert result.dispute_raised is False
        assert result.resolution_decision == "REFUND_CLIENT"
        assert result.resolution_decided_by == 9
        assert result.resolution_notes == "Provider no-show"
        gateway.release.assert_awaited_once_with("hold_1")
        assert _ledger_types(ledger) == [
            (TransactionType.REFUND, TransactionStatus.SUCCESS),
            (TransactionType.DISPUTE_RESOLVED, TransactionStatus.SUCCESS),
        ]
        assert notify.await_args.kwargs["decision"] == "REFUND_CLIENT"

    @pytest.mark.asyncio
    async def test_refund_client_rejected_while_payout_processing(self, gateway, ledger, notify, open_payout):
        escrow = _make_escrow(previous="PAYOUT_INITIATED")
        open_payout.return_value = MagicMock(id=101, status="PROCESSING")
        engine = _engine_for(escrow, gateway)

        with pytest.raises(InvalidStateError):
            await resolve_dispute(engine, 1, ADMIN, "REFUND_CLIENT", "Provider no-show")

        assert escrow.status == "DISPUTE"
        assert escrow.dispute_raised is True
        assert escrow.resolution_decision is None
        gateway.release.assert_not_awaited()
        ledger.assert_not_awaited()
        notify.assert_not_awaited()
        engine.db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payout_provider_captures_uncaptured_hold(self, gateway, ledger):
        escrow = _make_escrow(previous="FUNDS_HELD", provider_capture_id=None)
        engine = _engine_for(escrow, gateway)
        engine.process_payout = AsyncMock(return_value=(escrow, MagicMock()))

        await resolve_dispute(engine, 1, ADMIN, "PAYOUT_PROVIDER")

        gateway.capture.assert_awaited_once_with("hold_1", 50000, "USD")
        assert escrow.provider_capture_id == "cap_1"
        assert escrow.status == "IN_PROGRESS"
        assert escrow.dispute_raised is False
        engine.process_payout.assert_awaited_once_with(1, ADMIN)
        assert _ledger_types(ledger) == [
            (TransactionType.CAPTURE, TransactionStatus.SUCCESS),
            (TransactionType.DISPUTE_RESOLVED, TransactionStatus.SUCCESS),
        ]

    @pytest.mark.asyncio
    async def test_payout_provider_after_capture(self, gateway, ledger):
        escrow = _make_escrow(previous="COMPLETE")
        engine = _engine_for(escrow, gateway)
        engine.process_payout = AsyncMock(return_value=(escrow, MagicMock()))

        await resolve_dispute(engine, 1, ADMIN, "PAYOUT_PROVIDER")

        gateway.capture.assert_not_awaited()
        engine.process_payout.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_payout_provider_with_payout_in_flight(self, gateway, ledger):
        escrow = _make_escrow(previous="PAYOUT_INITIATED")
        engine = _engine_for(escrow, gateway)
        engine.process_payout = AsyncMock()

        await resolve_dispute(engine, 1, ADMIN, "PAYOUT_PROVIDER")

        assert escrow.status == "PAYOUT_INITIATED"
        engine.process_payout.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_split_records_shares_only(self, gateway, ledger, notify):
        escrow = _make_escrow(amount=50001)
        engine = _engine_for(escrow, gateway)

        await resolve_dispute(engine, 1, ADMIN, "SPLIT", "Partial delivery")

        assert escrow.status == "DISPUTE"
        assert escrow.dispute_raised is True
        assert escrow.resolution_decision == "SPLIT"
        gateway.capture.assert_not_awaited()
        gateway.release.assert_not_awaited()
        assert ledger.await_args.kwargs["extra"] == {"split": {"client": 25000, "provider": 25001}}
        types = [c.args[1] for c in notify.await_args_list]
        assert types == ["escrow_dispute_split", "escrow_dispute_resolved"]

    @pytest.mark.asyncio
    async def test_admin_only(self, gateway):
        with pytest.raises(UnauthorizedError):
            await resolve_dispute(_engine_for(_make_escrow(), gateway), 1, CLIENT, "SPLIT")

    @pytest.mark.asyncio
    async def test_unknown_decision(self, gateway):
        with pytest.raises(EscrowValidationError):
            await resolve_dispute(_engine_for(_make_escrow(), gateway), 1, ADMIN, "COIN_FLIP")

    @pytest.mark.asyncio
    async def test_requires_open_dispute(self, gateway, ledger):
        escrow = _make_escrow(status="IN_PROGRESS", dispute_raised=False)
        with pytest.raises(InvalidStateError):
            await resolve_dispute(_engine_for(escrow, gateway), 1, ADMIN, "REFUND_CLIENT")
        ledger.assert_not_awaited()


class TestRemindAdmins:
    @pytest.mark.asyncio
    async def test_skips_recently_notified_admins(self):
        escrow = _make_escrow()
        db = AsyncMock()
        db.execute = AsyncMock(
            side_effect=[
                FakeResult(items=[escrow]),
                FakeResult(items=[9, 10]),
                FakeResult(item=123),  # admin 9 already reminded
                FakeResult(item=None),
            ]
        )

        with patch(f"{DISPUTES}.notify_users", new_callable=AsyncMock) as mock_notify:
            sent = await remind_admins_of_unresolved(db, now=NOW)

        assert sent == 1
        mock_notify.assert_awaited_once_with(
            [10], "escrow_dispute_unresolved", {"escrow_id": 1, "booking_id": 10, "days": 4},
        )

    @pytest.mark.asyncio
    async def test_nothing_open(self):
        db = AsyncMock()
        db.execute = AsyncMock(return_value=FakeResult(items=[]))

        with patch(f"{DISPUTES}.notify_users", new_callable=AsyncMock) as mock_notify:
            sent = await remind_admins_of_unresolved(db, now=NOW)

        assert sent == 0
        assert db.execute.await_count == 1
        mock_notify.assert_not_awaited()


class TestNudgeParties:
    @pytest.mark.asyncio
    async def test_nudges_both_parties_without_evidence(self):
        with_evidence = _make_escrow(dispute_evidence=[{"description": "photo"}])
        without_evidence = _make_escrow()
        without_evidence.id = 2
        db = AsyncMock()
        db.execute = AsyncMock(
            side_effect=[
                FakeResult(items=[with_evidence, without_evidence]),
                FakeResult(item=None),
                FakeResult(item=None),
            ]
        )

        with patch(f"{DISPUTES}.notify_users", new_callable=AsyncMock) as mock_notify:
            sent = await nudge_parties_for_evidence(db, now=NOW)

        assert sent == 2
        mock_notify.assert_awaited_once_with(
            [1, 2], "escrow_dispute_evidence_needed", {"escrow_id": 2, "booking_id": 10},
        )

    @pytest.mark.asyncio
    async def test_respects_dedup_window(self):
        db = AsyncMock()
        db.execute = AsyncMock(
            side_effect=[
                FakeResult(items=[_make_escrow()]),
                FakeResult(item=1),
                FakeResult(item=1),
            ]
        )

        with patch(f"{DISPUTES}.notify_users", new_callable=AsyncMock) as mock_notify:
            sent = await nudge_parties_for_evidence(db, now=NOW)

        assert sent == 0
        mock_notify.assert_not_awaited()
