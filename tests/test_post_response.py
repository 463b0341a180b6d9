from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from tagpay_ussd.audit import TransactionType, TransferAttempt, TransferStatus
from tagpay_ussd.post_response import record_audit_events

from tests.conftest import fetch_transfer


def attempt(reference="ref-1"):
    return TransferAttempt(
        transaction_type=TransactionType.TAGPAY_TRANSFER,
        reference=reference,
        customer_id="cust_001",
        phone_number="+2348031234567",
        amount=Decimal("2500"),
        status=TransferStatus.SUBMITTED,
    )


class TestRecordAuditEvents:
    @pytest.mark.asyncio
    async def test_records_each_event(self):
        audit = AsyncMock()
        written = await record_audit_events(audit, [attempt("a"), attempt("b")], retry_delay=0)
        assert written == 2
        assert audit.record.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_once(self):
        audit = AsyncMock()
        audit.record.side_effect = [ConnectionError("db down"), None]
        assert await record_audit_events(audit, [attempt()], retry_delay=0) == 1
        assert audit.record.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_quietly(self):
        audit = AsyncMock()
        audit.record.side_effect = ConnectionError("db down")
        assert await record_audit_events(audit, [attempt()], retry_delay=0) == 0
        assert audit.record.await_count == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_rest(self):
        audit = AsyncMock()
        audit.record.side_effect = [RuntimeError("x"), RuntimeError("x"), None]
        assert await record_audit_events(audit, [attempt("a"), attempt("b")], retry_delay=0) == 1

    @pytest.mark.asyncio
    async def test_no_audit_log(self):
        assert await record_audit_events(None, [attempt()]) == 0

    @pytest.mark.asyncio
    async def test_writes_to_real_audit_log(self, audit_log, db_sessions):
        await record_audit_events(audit_log, [attempt()], retry_delay=0)
        row = await fetch_transfer(db_sessions, "ref-1")
        assert row.transaction_type == "TAGPAY_TRANSFER"
