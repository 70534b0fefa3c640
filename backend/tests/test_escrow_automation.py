"""Tests for the escrow automation sweeps and the dispute escalation tasks."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from marketplace.models.escrow import Escrow
from marketplace.models.payout import Payout
from marketplace.services.escrow.engine import Caller, EscrowEngine
from marketplace.services.escrow.errors import GatewayError
from marketplace.services.escrow.ledger import TransactionStatus, TransactionType
from marketplace.services.gateways.base import GatewayAdapter, GatewayResult, PayoutStatusResult
from marketplace.services.gateways.registry import GatewayRegistry
from marketplace.workers import cron
from marketplace.workers.dispute_escalation import dispute_nudge_parties, dispute_remind_admins
from marketplace.workers.escrow_automation import (
    ProcessingTracker,
    _run_each,
    auto_capture,
    auto_payout,
    auto_refund_cancelled,
    auto_release,
    flag_stuck,
    poll_payouts,
)

ENGINE = "marketplace.services.escrow.engine"
AUTOMATION = "marketplace.workers.escrow_automation"

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeGateway(GatewayAdapter):
    name = "paymongo"
    supports_holds = True
    supports_payouts = True

    def __init__(self):
        self.capture = AsyncMock(
            return_value=GatewayResult(success=True, message="Payment captured", reference_id="cap_1")
        )
        self.get_payout_status = AsyncMock()

    @property
    def configured(self) -> bool:
        return True


class FakeResult:
    def __init__(self, items):
        self._items = items

    def scalars(self):
        return self

    def all(self):
        return self._items


def _make_engine(candidate_ids, gateway=None) -> EscrowEngine:
    db = AsyncMock()
    db.add = MagicMock()
    db.execute = AsyncMock(return_value=FakeResult(candidate_ids))
    return EscrowEngine(db, GatewayRegistry({"paymongo": gateway or FakeGateway()}, payout_provider="paymongo"))


def _approved_escrow(escrow_id: int = 1) -> Escrow:
    escrow = Escrow(
        booking_id=10,
        client_id=1,
        provider_id=2,
        amount=50000,
        currency="PHP",
        hold_provider="paymongo",
        provider_hold_id="hold_1",
        status="FUNDS_HELD",
        client_approved=True,
        client_approved_at=NOW - timedelta(hours=25),
        dispute_raised=False,
    )
    escrow.id = escrow_id
    return escrow


@pytest.fixture
def ledger():
    with patch(f"{ENGINE}.record_transaction", new_callable=AsyncMock) as mock_record:
        yield mock_record


@pytest.fixture(autouse=True)
def notify():
    with patch(f"{ENGINE}.notify_escrow_event", new_callable=AsyncMock) as mock_notify:
        yield mock_notify


class TestProcessingTracker:
    def test_claim_and_release(self):
        tracker = ProcessingTracker(30, clock=FakeClock())
        assert tracker.claim(1) is True
        assert tracker.claim(1) is False
        assert tracker.claim(2) is True

    def test_release_starts_cooldown(self):
        clock = FakeClock()
        tracker = ProcessingTracker(30, clock=clock)
        tracker.claim(1)
        tracker.release(1)

        assert tracker.is_busy(1) is True
        clock.now += 29
        assert tracker.claim(1) is False
        clock.now += 1
        assert tracker.claim(1) is True


class TestCron:
    def test_five_fields(self):
        schedule = cron("0 */6 * * *")
        assert schedule.hour == set(range(0, 24, 6))
        assert schedule.minute == {0}

    def test_rejects_bad_expression(self):
        with pytest.raises(ValueError):
            cron("every hour")


class TestRunEach:
    @pytest.mark.asyncio
    async def test_skips_escrows_in_flight(self):
        engine = _make_engine([])
        tracker = ProcessingTracker(30, clock=FakeClock())
        tracker.claim(2)
        operation = AsyncMock(return_value=object())

        done = await _run_each(engine, [1, 2, 3], "test", operation, tracker)

        assert done == 2
        assert [c.args[0] for c in operation.await_args_list] == [1, 3]

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self):
        engine = _make_engine([])
        tracker = ProcessingTracker(30, clock=FakeClock())
        operation = AsyncMock(side_effect=[GatewayError("declined"), object()])

        done = await _run_each(engine, [1, 2], "test", operation, tracker)

        assert done == 1
        engine.db.rollback.assert_awaited_once()
        assert tracker.is_busy(1) and tracker.is_busy(2)

    @pytest.mark.asyncio
    async def test_false_result_not_counted(self):
        engine = _make_engine([])
        tracker = ProcessingTracker(30, clock=FakeClock())
        done = await _run_each(engine, [1], "test", AsyncMock(return_value=False), tracker)
        assert done == 0


class TestAutoCapture:
    @pytest.mark.asyncio
    async def test_approved_escrow_is_captured(self, ledger, notify):
        escrow = _approved_escrow()
        engine = _make_engine([1])
        engine.load_escrow = AsyncMock(return_value=escrow)

        done = await auto_capture(engine, now=NOW, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert done == 1
        assert escrow.status == "IN_PROGRESS"
        assert escrow.provider_capture_id == "cap_1"
        args, kwargs = ledger.await_args
        assert (args[2], args[3]) == (TransactionType.CAPTURE, TransactionStatus.SUCCESS)
        assert kwargs["tags"] == ["capture", "auto_capture"]
        assert kwargs["initiated_by"] is None
        engine.db.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_second_sweep_does_not_recapture(self, ledger):
        escrow = _approved_escrow()
        gateway = FakeGateway()
        engine = _make_engine([1], gateway)
        engine.load_escrow = AsyncMock(return_value=escrow)
        tracker = ProcessingTracker(30, clock=FakeClock())

        await auto_capture(engine, now=NOW, tracker=tracker)
        second = await auto_capture(engine, now=NOW, tracker=tracker)

        assert second == 0
        gateway.capture.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rerun_after_cooldown_is_rejected_by_status(self, ledger):
        escrow = _approved_escrow()
        gateway = FakeGateway()
        engine = _make_engine([1], gateway)
        engine.load_escrow = AsyncMock(return_value=escrow)
        clock = FakeClock()
        tracker = ProcessingTracker(30, clock=clock)

        await auto_capture(engine, now=NOW, tracker=tracker)
        clock.now += 60
        second = await auto_capture(engine, now=NOW, tracker=tracker)

        assert second == 0
        gateway.capture.assert_awaited_once()
        engine.db.rollback.assert_awaited_once()


class TestAutoRelease:
    @pytest.mark.asyncio
    async def test_releases_each_candidate_once(self):
        engine = _make_engine([1, 2])
        engine.release_escrow = AsyncMock(return_value=MagicMock())

        done = await auto_release(engine, now=NOW, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert done == 2
        assert [c.args for c in engine.release_escrow.await_args_list] == [(1,), (2,)]

    @pytest.mark.asyncio
    async def test_second_sweep_within_cooldown_is_noop(self):
        engine = _make_engine([1, 2])
        engine.release_escrow = AsyncMock(return_value=MagicMock())
        tracker = ProcessingTracker(30, clock=FakeClock())

        await auto_release(engine, now=NOW, tracker=tracker)
        second = await auto_release(engine, now=NOW, tracker=tracker)

        assert second == 0
        assert engine.release_escrow.await_count == 2

    @pytest.mark.asyncio
    async def test_moves_escrow_to_complete(self, ledger, notify):
        escrow = _approved_escrow()
        escrow.status = "IN_PROGRESS"
        engine = _make_engine([1])
        engine.load_escrow = AsyncMock(return_value=escrow)

        done = await auto_release(engine, now=NOW, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert done == 1
        assert escrow.status == "COMPLETE"
        assert ledger.await_args.kwargs["operation"] == "release"
        assert ledger.await_args.kwargs["initiated_by"] is None
        assert notify.await_args.args[1] == "escrow_released"

    @pytest.mark.asyncio
    async def test_disputed_escrow_is_not_released(self, ledger):
        escrow = _approved_escrow()
        escrow.status = "IN_PROGRESS"
        escrow.dispute_raised = True
        engine = _make_engine([1])
        engine.load_escrow = AsyncMock(return_value=escrow)

        done = await auto_release(engine, now=NOW, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert done == 0
        assert escrow.status == "IN_PROGRESS"
        ledger.assert_not_awaited()
        engine.db.rollback.assert_awaited_once()


class TestAutoPayout:
    @pytest.mark.asyncio
    async def test_pays_each_candidate_as_system(self):
        engine = _make_engine([1, 2])
        engine.process_payout = AsyncMock(return_value=(MagicMock(), MagicMock()))

        done = await auto_payout(engine, now=NOW, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert done == 2
        engine.process_payout.assert_any_await(1, Caller.system())
        engine.process_payout.assert_any_await(2, Caller.system())


class TestFlagStuck:
    @pytest.mark.asyncio
    async def test_only_changed_escrows_counted(self):
        engine = _make_engine([1, 2])
        engine.flag_stuck = AsyncMock(side_effect=[True, False])

        done = await flag_stuck(engine, now=NOW, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert done == 1


class TestAutoRefund:
    @pytest.mark.asyncio
    async def test_marks_attempt_before_refunding(self):
        engine = _make_engine([5])
        calls = []
        engine.mark_auto_refund_attempted = AsyncMock(side_effect=lambda i: calls.append(("mark", i)))
        engine.refund_payment = AsyncMock(side_effect=lambda i, c, r: calls.append(("refund", i)) or MagicMock())

        done = await auto_refund_cancelled(engine, now=NOW, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert done == 1
        assert calls == [("mark", 5), ("refund", 5)]
        assert engine.refund_payment.await_args.args[1] == Caller.system()

    @pytest.mark.asyncio
    async def test_failed_refund_is_not_retried_by_the_sweep(self):
        engine = _make_engine([5])
        engine.mark_auto_refund_attempted = AsyncMock()
        engine.refund_payment = AsyncMock(side_effect=GatewayError("declined"))

        done = await auto_refund_cancelled(engine, now=NOW, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert done == 0
        engine.mark_auto_refund_attempted.assert_awaited_once_with(5)


class TestPollPayouts:
    def _payout(self, payout_id, escrow_id):
        payout = Payout(
            escrow_id=escrow_id,
            provider_id=2,
            amount=50000,
            currency="PHP",
            payout_provider="paymongo",
            gateway_payout_id=f"po_{payout_id}",
            status="PROCESSING",
        )
        payout.id = payout_id
        return payout

    @pytest.mark.asyncio
    async def test_settles_finished_payouts(self):
        gateway = FakeGateway()
        gateway.get_payout_status = AsyncMock(
            side_effect=[
                PayoutStatusResult(state="completed", reference_id="po_1"),
                PayoutStatusResult(state="failed", reference_id="po_2", failure_reason="Account closed"),
                PayoutStatusResult(state="processing", reference_id="po_3"),
            ]
        )
        engine = _make_engine([], gateway)
        engine.complete_payout = AsyncMock()
        engine.fail_payout = AsyncMock()
        payouts = [self._payout(1, 11), self._payout(2, 12), self._payout(3, 13)]

        with patch(f"{AUTOMATION}.list_processing_payouts", new_callable=AsyncMock, return_value=payouts):
            settled = await poll_payouts(engine, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert settled == 2
        engine.complete_payout.assert_awaited_once_with(1)
        engine.fail_payout.assert_awaited_once_with(2, "Account closed")
        assert [c.args[0] for c in gateway.get_payout_status.await_args_list] == ["po_1", "po_2", "po_3"]

    @pytest.mark.asyncio
    async def test_provider_error_is_logged_and_skipped(self):
        gateway = FakeGateway()
        gateway.get_payout_status = AsyncMock(side_effect=RuntimeError("boom"))
        engine = _make_engine([], gateway)
        engine.complete_payout = AsyncMock()

        with patch(
            f"{AUTOMATION}.list_processing_payouts", new_callable=AsyncMock, return_value=[self._payout(1, 11)],
        ):
            settled = await poll_payouts(engine, tracker=ProcessingTracker(30, clock=FakeClock()))

        assert settled == 0
        engine.db.rollback.assert_awaited_once()
        engine.complete_payout.assert_not_awaited()


class TestDisputeEscalationTasks:
    def test_disabled_by_flag(self):
        with (
            patch("marketplace.workers.dispute_escalation.settings") as mock_settings,
            patch("marketplace.services.escrow.disputes.remind_admins_of_unresolved") as mock_remind,
            patch("marketplace.services.escrow.disputes.nudge_parties_for_evidence") as mock_nudge,
        ):
            mock_settings.enable_dispute_escalations = False
            assert dispute_remind_admins() == 0
            assert dispute_nudge_parties() == 0

        mock_remind.assert_not_called()
        mock_nudge.assert_not_called()
