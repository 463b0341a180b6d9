"""Transfer fee, VAT and daily-limit arithmetic.

Pure functions over Decimal. Thresholds and amounts come from
configuration (see config.Settings) so policy changes do not touch the
state machine.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from tagpay_ussd.validation import CENT

DEFAULT_FEE_TIERS = ((Decimal("5000"), Decimal("10")), (Decimal("50000"), Decimal("25")))
DEFAULT_FEE_CAP = Decimal("50")
DEFAULT_VAT_PERCENT = Decimal("7.5")
DEFAULT_DAILY_LIMIT = Decimal("100000")
DEFAULT_BALANCE_CHECK_FEE = Decimal("10")


def parse_fee_tiers(raw: str) -> tuple[tuple[Decimal, Decimal], ...]:
    """Parse "5000:10,50000:25" into ascending (upper_bound, fee) pairs."""
    tiers = []
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        bound, _, fee = chunk.partition(":")
        if not fee:
            raise ValueError(f"Malformed fee tier {chunk!r}, expected BOUND:FEE")
        tiers.append((Decimal(bound.strip()), Decimal(fee.strip())))
    tiers.sort(key=lambda t: t[0])
    return tuple(tiers)


@dataclass(frozen=True)
class FeeQuote:
    amount: Decimal
    fee: Decimal
    vat: Decimal

    @property
    def total(self) -> Decimal:
        return self.amount + self.fee + self.vat


@dataclass(frozen=True)
class DailyLimitCheck:
    allowed: bool
    already_transferred: Decimal
    remaining: Decimal


@dataclass(frozen=True)
class FeePolicy:
    """Bank-transfer fee schedule, VAT rate and daily ceiling."""

    tiers: tuple = field(default=DEFAULT_FEE_TIERS)
    cap_fee: Decimal = DEFAULT_FEE_CAP
    vat_percent: Decimal = DEFAULT_VAT_PERCENT
    daily_limit: Decimal = DEFAULT_DAILY_LIMIT
    balance_check_fee: Decimal = DEFAULT_BALANCE_CHECK_FEE

    def transfer_fee(self, amount: Decimal) -> Decimal:
        for upper_bound, fee in self.tiers:
            if amount < upper_bound:
                return fee
        return self.cap_fee

    def vat(self, fee: Decimal) -> Decimal:
        # Half-up to the kobo
        return (fee * self.vat_percent / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)

    def quote(self, amount: Decimal) -> FeeQuote:
        fee = self.transfer_fee(amount)
        return FeeQuote(amount=amount, fee=fee, vat=self.vat(fee))

    def check_daily_limit(self, already_transferred: Decimal, amount: Decimal) -> DailyLimitCheck:
        remaining = self.daily_limit - already_transferred
        return DailyLimitCheck(
            allowed=already_transferred + amount <= self.daily_limit,
            already_transferred=already_transferred,
            remaining=remaining,
        )
