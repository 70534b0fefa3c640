"""Tests for the append-only escrow ledger."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from marketplace.models.escrow_transaction import EscrowTransaction
from marketplace.services.escrow.errors import LedgerImmutableError
from marketplace.services.escrow.ledger import (
    TransactionStatus,
    TransactionType,
    _reject_delete,
    _reject_update,
    build_idempotency_key,
    entry_fingerprint,
    record_transaction,
)


class FakeEscrow:
    def __init__(self, id=7, amount=500000, currency="PHP"):
        self.id = id
        self.amount = amount
        self.currency = currency


class FakeScalarResult:
    def __init__(self, item):
        self._item = item

    def scalar_one_or_none(self):
        return self._item


class TestIdempotencyKey:
    def test_key_format(self):
        at = datetime(2026, 1, 1, 12, 0, 30, tzinfo=timezone.utc)
        key = build_idempotency_key(7, "capture", "SUCCESS", at)
        escrow_id, operation, status, bucket = key.split(":")
        assert (escrow_id, operation, status) == ("7", "capture", "SUCCESS")
        assert int(bucket) % 60 == 0

    def test_same_window_same_key(self):
        a = datetime(2026, 1, 1, 12, 0, 1, tzinfo=timezone.utc)
        b = datetime(2026, 1, 1, 12, 0, 59, tzinfo=timezone.utc)
        assert build_idempotency_key(1, "hold", "SUCCESS", a) == build_idempotency_key(1, "hold", "SUCCESS", b)

    def test_next_window_new_key(self):
        a = datetime(2026, 1, 1, 12, 0, 59, tzinfo=timezone.utc)
        b = datetime(2026, 1, 1, 12, 1, 0, tzinfo=timezone.utc)
        assert build_idempotency_key(1, "hold", "SUCCESS", a) != build_idempotency_key(1, "hold", "SUCCESS", b)

    def test_status_distinguishes_keys(self):
        at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert build_idempotency_key(1, "capture", "FAILED", at) != build_idempotency_key(1, "capture", "SUCCESS", at)

    def test_fingerprint_appended(self):
        at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        key = build_idempotency_key(7, "payout_pending", "PENDING", at, "abc123")
        assert key.endswith(":abc123")
        assert key.split(":")[:3] == ["7", "payout_pending", "PENDING"]

    def test_fingerprint_tracks_content(self):
        assert entry_fingerprint(related_payout_id=101) == entry_fingerprint(related_payout_id=101)
        assert entry_fingerprint(related_payout_id=101) != entry_fingerprint(related_payout_id=102)


class TestRecordTransaction:
    @pytest.mark.asyncio
    async def test_appends_entry(self):
        db = AsyncMock()
        db.add = MagicMock()
        db.execute = AsyncMock(return_value=FakeScalarResult(None))
        escrow = FakeEscrow()

        entry = await record_transaction(
            db,
            escrow,
            TransactionType.CAPTURE,
            TransactionStatus.SUCCESS,
            initiated_by=3,
            gateway_provider="xendit",
            gateway_transaction_id="cap_1",
            reason="Payment captured",
            tags=["capture"],
            previous_balance=500000,
            new_balance=500000,
        )

        db.add.assert_called_once_with(entry)
        db.flush.assert_awaited_once()
        db.commit.assert_not_awaited()
        assert entry.escrow_id == 7
        assert entry.amount == 500000
        assert entry.currency == "PHP"
        assert entry.transaction_type == "CAPTURE"
        assert entry.status == "SUCCESS"
        assert entry.details == {"tags": ["capture"], "reason": "Payment captured"}
        assert entry.idempotency_key.startswith("7:capture:SUCCESS:")

    @pytest.mark.asyncio
    async def test_operation_overrides_key_segment(self):
        db = AsyncMock()
        db.add = MagicMock()
        db.execute = AsyncMock(return_value=FakeScalarResult(None))

        entry = await record_transaction(
            db,
            FakeEscrow(),
            TransactionType.PAYOUT,
            TransactionStatus.SUCCESS,
            operation="payout_completed",
            related_payout_id=4,
        )
        assert entry.idempotency_key.startswith("7:payout_completed:SUCCESS:")
        assert entry.details["related_payout_id"] == 4

    @pytest.mark.asyncio
    async def test_retry_in_same_window_reuses_entry(self):
        existing = EscrowTransaction(idempotency_key="7:hold:SUCCESS:0")
        db = AsyncMock()
        db.add = MagicMock()
        db.execute = AsyncMock(return_value=FakeScalarResult(existing))

        entry = await record_transaction(db, FakeEscrow(), TransactionType.HOLD, TransactionStatus.SUCCESS)

        assert entry is existing
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_extra_details_merged(self):
        db = AsyncMock()
        db.add = MagicMock()
        db.execute = AsyncMock(return_value=FakeScalarResult(None))

        entry = await record_transaction(
            db,
            FakeEscrow(),
            TransactionType.DISPUTE_RESOLVED,
            TransactionStatus.SUCCESS,
            notes="Half each",
            extra={"split": {"client": 250000, "provider": 250000}},
        )
        assert entry.details["split"] == {"client": 250000, "provider": 250000}
        assert entry.details["notes"] == "Half each"

    @pytest.mark.asyncio
    async def test_bucket_follows_configured_window(self):
        db = AsyncMock()
        db.add = MagicMock()
        db.execute = AsyncMock(return_value=FakeScalarResult(None))
        fixed = datetime(2026, 1, 1, 12, 7, 0, tzinfo=timezone.utc)

        with (
            patch("marketplace.services.escrow.ledger.utcnow", return_value=fixed),
            patch("marketplace.services.escrow.ledger.settings") as mock_settings,
        ):
            mock_settings.ledger_idempotency_window_seconds = 600
            entry = await record_transaction(db, FakeEscrow(), TransactionType.HOLD, TransactionStatus.SUCCESS)

        expected_bucket = int(fixed.timestamp()) // 600 * 600
        assert entry.idempotency_key.startswith(f"7:hold:SUCCESS:{expected_bucket}:")
        assert entry.timestamp == fixed

    @pytest.mark.asyncio
    async def test_distinct_payouts_in_one_window_get_own_entries(self):
        db = AsyncMock()
        db.add = MagicMock()
        db.execute = AsyncMock(return_value=FakeScalarResult(None))
        fixed = datetime(2026, 1, 1, 12, 0, 5, tzinfo=timezone.utc)
        escrow = FakeEscrow()

        with patch("marketplace.services.escrow.ledger.utcnow", return_value=fixed):
            first = await record_transaction(
                db, escrow, TransactionType.PAYOUT, TransactionStatus.PENDING,
                operation="payout_pending", related_payout_id=101,
            )
            second = await record_transaction(
                db, escrow, TransactionType.PAYOUT, TransactionStatus.PENDING,
                operation="payout_pending", related_payout_id=102,
            )

        assert first.idempotency_key != second.idempotency_key
        assert db.add.call_count == 2
        assert [e.details["related_payout_id"] for e in (first, second)] == [101, 102]

    @pytest.mark.asyncio
    async def test_identical_retry_targets_same_key(self):
        db = AsyncMock()
        db.add = MagicMock()
        db.execute = AsyncMock(return_value=FakeScalarResult(None))
        fixed = datetime(2026, 1, 1, 12, 0, 5, tzinfo=timezone.utc)

        with patch("marketplace.services.escrow.ledger.utcnow", return_value=fixed):
            first = await record_transaction(
                db, FakeEscrow(), TransactionType.PAYOUT, TransactionStatus.PENDING,
                operation="payout_pending", related_payout_id=101,
            )
            retry = await record_transaction(
                db, FakeEscrow(), TransactionType.PAYOUT, TransactionStatus.PENDING,
                operation="payout_pending", related_payout_id=101,
            )

        assert first.idempotency_key == retry.idempotency_key


class TestImmutability:
    def test_update_rejected(self):
        entry = EscrowTransaction(id=1)
        with pytest.raises(LedgerImmutableError):
            _reject_update(None, None, entry)

    def test_delete_rejected(self):
        entry = EscrowTransaction(id=1)
        with pytest.raises(LedgerImmutableError):
            _reject_delete(None, None, entry)

    def test_listeners_registered(self):
        from sqlalchemy import event

        assert event.contains(EscrowTransaction, "before_update", _reject_update)
        assert event.contains(EscrowTransaction, "before_delete", _reject_delete)
