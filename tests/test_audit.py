import json
from datetime import date, datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from tagpay_ussd.audit import (
    FeeStatus,
    TransactionType,
    TransferAttempt,
    TransferStatus,
    WebhookStatus,
    day_bounds,
)

from tests.conftest import fetch_transfer


def bank_attempt(reference="ref-1", amount="3000", status=TransferStatus.SUBMITTED, created_at=None, **kw):
    attempt = TransferAttempt(
        transaction_type=kw.pop("transaction_type", TransactionType.BANK_TRANSFER),
        reference=reference,
        customer_id=kw.pop("customer_id", "cust_001"),
        phone_number="+2348031234567",
        amount=Decimal(amount),
        fee=Decimal("10"),
        vat=Decimal("0.75"),
        bank_code="044",
        account_number="0123456789",
        account_name="CHIDI OKAFOR",
        status=status,
        transaction_reference=kw.pop("transaction_reference", "LEDGER-1"),
        session_id="ATUid_1",
        **kw,
    )
    if created_at is not None:
        attempt.created_at = created_at
    return attempt


def test_day_bounds_are_lagos_midnights_in_utc():
    start, end = day_bounds(date(2026, 3, 10), ZoneInfo("Africa/Lagos"))
    assert start == datetime(2026, 3, 9, 23, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc)


class TestRecord:
    @pytest.mark.asyncio
    async def test_writes_row(self, audit_log, db_sessions):
        await audit_log.record(bank_attempt(merchant_fee=Decimal("10"), merchant_fee_status=FeeStatus.SUCCESS))
        row = await fetch_transfer(db_sessions, "ref-1")
        assert row.transaction_type == "BANK_TRANSFER"
        assert row.total == Decimal("3010.75")
        assert row.session_id == "ATUid_1"
        assert row.merchant_fee_status == "success"
        assert row.cbn_fee_status == "n/a"
        assert row.webhook_sent == WebhookStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_same_reference_updates_outcome(self, audit_log, db_sessions):
        await audit_log.record(bank_attempt(status=TransferStatus.FAILED, message="timeout"))
        await audit_log.record(bank_attempt(status=TransferStatus.SUBMITTED, message="queued"))
        row = await fetch_transfer(db_sessions, "ref-1")
        assert row.status == "submitted"
        assert row.message == "queued"

    @pytest.mark.asyncio
    async def test_raw_response_stored_as_json(self, audit_log, db_sessions):
        await audit_log.record(bank_attempt(raw_response={"status": True, "amount": Decimal("3000")}))
        row = await fetch_transfer(db_sessions, "ref-1")
        assert json.loads(row.raw_response) == {"status": True, "amount": "3000"}


class TestDailyTotal:
    @pytest.mark.asyncio
    async def test_sums_submitted_bank_transfers_for_the_day(self, audit_log):
        today = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        await audit_log.record(bank_attempt("a", "50000", created_at=today))
        await audit_log.record(bank_attempt("b", "48000", created_at=today))
        await audit_log.record(bank_attempt("c", "7000", status=TransferStatus.FAILED, created_at=today))
        await audit_log.record(bank_attempt("d", "9000", customer_id="someone_else", created_at=today))
        await audit_log.record(
            bank_attempt("e", "2500", transaction_type=TransactionType.TAGPAY_TRANSFER, created_at=today)
        )

        assert await audit_log.daily_total("cust_001", date(2026, 3, 10)) == Decimal("98000")

    @pytest.mark.asyncio
    async def test_uses_local_calendar_day(self, audit_log):
        # 23:30 UTC on the 9th is already the 10th in Lagos
        await audit_log.record(bank_attempt("late", "1000", created_at=datetime(2026, 3, 9, 23, 30, tzinfo=timezone.utc)))
        assert await audit_log.daily_total("cust_001", date(2026, 3, 10)) == Decimal("1000")
        assert await audit_log.daily_total("cust_001", date(2026, 3, 9)) == Decimal("0")

    @pytest.mark.asyncio
    async def test_no_transfers(self, audit_log):
        assert await audit_log.daily_total("cust_001") == Decimal("0")


class TestSettlement:
    @pytest.mark.asyncio
    async def test_success_marks_delivered(self, audit_log, db_sessions):
        await audit_log.record(bank_attempt(raw_response={"status": True}))
        assert await audit_log.mark_settlement("LEDGER-1", "successful", raw={"status": "successful"}) is True
        row = await fetch_transfer(db_sessions, "ref-1")
        assert row.webhook_sent == "delivered"
        assert row.status == "submitted"
        assert json.loads(row.raw_response) == {"submission": {"status": True}, "settlement": {"status": "successful"}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["failed", "REVERSED"])
    async def test_failure_marks_transfer_failed(self, audit_log, db_sessions, status):
        await audit_log.record(bank_attempt())
        await audit_log.mark_settlement("LEDGER-1", status)
        row = await fetch_transfer(db_sessions, "ref-1")
        assert row.status == "failed"
        assert row.message == "Reversed by ledger settlement"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["pending", "processing"])
    async def test_interim_status_keeps_transfer_submitted(self, audit_log, db_sessions, status):
        await audit_log.record(bank_attempt(amount="60000", message="queued"))
        assert await audit_log.mark_settlement("LEDGER-1", status, raw={"status": status}) is True
        row = await fetch_transfer(db_sessions, "ref-1")
        assert row.status == "submitted"
        assert row.message == "queued"
        assert row.webhook_sent == "delivered"

    @pytest.mark.asyncio
    async def test_interim_status_still_counts_toward_daily_total(self, audit_log):
        await audit_log.record(
            bank_attempt(amount="60000", created_at=datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))
        )
        await audit_log.mark_settlement("LEDGER-1", "pending")
        assert await audit_log.daily_total("cust_001", date(2026, 3, 10)) == Decimal("60000")

    @pytest.mark.asyncio
    async def test_reversed_transfer_frees_daily_headroom(self, audit_log):
        await audit_log.record(bank_attempt(created_at=datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)))
        await audit_log.mark_settlement("LEDGER-1", "failed")
        assert await audit_log.daily_total("cust_001", date(2026, 3, 10)) == Decimal("0")

    @pytest.mark.asyncio
    async def test_unknown_reference(self, audit_log):
        assert await audit_log.mark_settlement("NOPE", "successful") is False
