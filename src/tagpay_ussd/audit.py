"""Durable record of every money movement the USSD channel attempts.

Rows are keyed by the session's idempotency reference, so recording the
same attempt twice updates the outcome columns instead of adding a row.
The same table feeds the daily bank-transfer total.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import DateTime, Integer, Numeric, String, Text, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from tagpay_ussd.db import Base, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Africa/Lagos"

# Settlement callback statuses that undo a submitted transfer
REVERSAL_STATUSES = {"failed", "reversed"}


class TransactionType(str, Enum):
    TAGPAY_TRANSFER = "TAGPAY_TRANSFER"
    BANK_TRANSFER = "BANK_TRANSFER"
    BALANCE_CHECK = "BALANCE_CHECK"


class TransferStatus(str, Enum):
    SUBMITTED = "submitted"
    FAILED = "failed"


class FeeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    NOT_APPLICABLE = "n/a"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class TransferLog(Base):
    __tablename__ = "transfer_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(128))
    transaction_type: Mapped[str] = mapped_column(String(32))
    customer_id: Mapped[str] = mapped_column(String(64), index=True)
    phone_number: Mapped[str] = mapped_column(String(32))

    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    fee: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    vat: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2))

    bank_code: Mapped[Optional[str]] = mapped_column(String(16))
    account_number: Mapped[Optional[str]] = mapped_column(String(32))
    account_name: Mapped[Optional[str]] = mapped_column(String(255))

    transaction_reference: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    status: Mapped[str] = mapped_column(String(16))
    message: Mapped[Optional[str]] = mapped_column(Text)
    raw_response: Mapped[Optional[str]] = mapped_column(Text)

    merchant_fee: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    merchant_fee_status: Mapped[str] = mapped_column(String(16), default=FeeStatus.NOT_APPLICABLE.value)
    cbn_fee: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    cbn_fee_status: Mapped[str] = mapped_column(String(16), default=FeeStatus.NOT_APPLICABLE.value)
    webhook_sent: Mapped[str] = mapped_column(String(16), default=WebhookStatus.PENDING.value)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# Columns a repeated record() is allowed to change
UPSERT_COLUMNS = (
    "status",
    "message",
    "raw_response",
    "transaction_reference",
    "merchant_fee_status",
    "cbn_fee_status",
)


@dataclass
class TransferAttempt:
    """One attempted money movement, as emitted by the state machine."""

    transaction_type: TransactionType
    reference: str
    customer_id: str
    phone_number: str
    amount: Decimal
    status: TransferStatus
    session_id: str = ""
    fee: Decimal = Decimal("0")
    vat: Decimal = Decimal("0")
    bank_code: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    transaction_reference: Optional[str] = None
    message: str = ""
    raw_response: Any = field(default_factory=dict)
    merchant_fee: Decimal = Decimal("0")
    merchant_fee_status: FeeStatus = FeeStatus.NOT_APPLICABLE
    cbn_fee: Decimal = Decimal("0")
    cbn_fee_status: FeeStatus = FeeStatus.NOT_APPLICABLE
    created_at: datetime = field(default_factory=utcnow)

    @property
    def total(self) -> Decimal:
        return self.amount + self.fee + self.vat

    def to_row(self) -> dict:
        return {
            "reference": self.reference,
            "session_id": self.session_id or None,
            "transaction_type": self.transaction_type.value,
            "customer_id": self.customer_id,
            "phone_number": self.phone_number,
            "amount": self.amount,
            "fee": self.fee,
            "vat": self.vat,
            "total": self.total,
            "bank_code": self.bank_code,
            "account_number": self.account_number,
            "account_name": self.account_name,
            "transaction_reference": self.transaction_reference,
            "status": self.status.value,
            "message": self.message,
            "raw_response": json.dumps(self.raw_response, default=str),
            "merchant_fee": self.merchant_fee,
            "merchant_fee_status": self.merchant_fee_status.value,
            "cbn_fee": self.cbn_fee,
            "cbn_fee_status": self.cbn_fee_status.value,
            "webhook_sent": WebhookStatus.PENDING.value,
            "created_at": self.created_at,
        }


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC start (inclusive) and end (exclusive) of a local calendar day."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = start + timedelta(days=1)
    return start.astimezone(dt_timezone.utc), end.astimezone(dt_timezone.utc)


class AuditLog:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timezone: str = DEFAULT_TIMEZONE,
    ):
        self._sessions = session_factory
        self.tz = ZoneInfo(timezone)

    async def record(self, attempt: TransferAttempt) -> None:
        row = attempt.to_row()
        async with self._sessions() as db:
            async with db.begin():
                existing = (
                    await db.execute(select(TransferLog).where(TransferLog.reference == attempt.reference))
                ).scalar_one_or_none()
                if existing is None:
                    db.add(TransferLog(**row))
                else:
                    for column in UPSERT_COLUMNS:
                        setattr(existing, column, row[column])
        logger.info(
            "Audit %s ref=%s status=%s",
            attempt.transaction_type.value,
            attempt.reference,
            attempt.status.value,
        )

    async def daily_total(self, customer_id: str, day: Optional[date] = None) -> Decimal:
        """Sum of submitted bank transfers for the customer on a local calendar day."""
        day = day or datetime.now(self.tz).date()
        start, end = day_bounds(day, self.tz)
        async with self._sessions() as db:
            total = (
                await db.execute(
                    select(func.coalesce(func.sum(TransferLog.amount), 0)).where(
                        TransferLog.customer_id == customer_id,
                        TransferLog.transaction_type == TransactionType.BANK_TRANSFER.value,
                        TransferLog.status == TransferStatus.SUBMITTED.value,
                        TransferLog.created_at >= start,
                        TransferLog.created_at < end,
                    )
                )
            ).scalar_one()
        return Decimal(str(total or 0))

    async def mark_settlement(self, transaction_reference: str, status: str, raw: Any = None) -> bool:
        """Apply a ledger settlement callback. Returns False if no row matches.

        Only an explicit failure or reversal changes the transfer's status.
        Success and interim statuses (pending, processing) just record that
        the callback arrived.
        """
        status = (status or "").strip().lower()
        reversed_ = status in REVERSAL_STATUSES
        async with self._sessions() as db:
            async with db.begin():
                row = (
                    await db.execute(
                        select(TransferLog).where(TransferLog.transaction_reference == transaction_reference)
                    )
                ).scalar_one_or_none()
                if row is None:
                    return False
                row.webhook_sent = WebhookStatus.DELIVERED.value
                if reversed_:
                    row.status = TransferStatus.FAILED.value
                    row.message = "Reversed by ledger settlement"
                if raw is not None:
                    row.raw_response = json.dumps(
                        {"submission": _loads(row.raw_response), "settlement": raw},
                        default=str,
                    )
        logger.info("Settlement for %s: %s", transaction_reference, status or "unknown")
        return True


def _loads(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw
