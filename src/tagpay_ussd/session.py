import time
import uuid
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import ClassVar, Optional, Union

from tagpay_ussd.states import Step


def _dec(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class WalletTransferFlow:
    """TagPay-to-TagPay transfer in progress."""

    kind: ClassVar[str] = "wallet"

    recipient_account: str = ""
    recipient_customer_id: str = ""
    recipient_name: str = ""
    amount: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "recipient_account": self.recipient_account,
            "recipient_customer_id": self.recipient_customer_id,
            "recipient_name": self.recipient_name,
            "amount": _str_or_none(self.amount),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WalletTransferFlow":
        return cls(
            recipient_account=data.get("recipient_account", ""),
            recipient_customer_id=data.get("recipient_customer_id", ""),
            recipient_name=data.get("recipient_name", ""),
            amount=_dec(data.get("amount")),
        )


@dataclass
class BankTransferFlow:
    """Interbank transfer in progress, including the bank-search cursor."""

    kind: ClassVar[str] = "bank"

    bank_code: str = ""
    bank_name: str = ""

    # Bank search
    search_term: str = ""
    page: int = 0
    results: list = field(default_factory=list)

    # Destination + quote
    account_number: str = ""
    amount: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    vat: Optional[Decimal] = None
    account_name: str = ""

    @property
    def total(self) -> Decimal:
        return (self.amount or Decimal("0")) + (self.fee or Decimal("0")) + (self.vat or Decimal("0"))

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "bank_code": self.bank_code,
            "bank_name": self.bank_name,
            "search_term": self.search_term,
            "page": self.page,
            "results": list(self.results),
            "account_number": self.account_number,
            "amount": _str_or_none(self.amount),
            "fee": _str_or_none(self.fee),
            "vat": _str_or_none(self.vat),
            "account_name": self.account_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BankTransferFlow":
        return cls(
            bank_code=data.get("bank_code", ""),
            bank_name=data.get("bank_name", ""),
            search_term=data.get("search_term", ""),
            page=int(data.get("page", 0)),
            results=list(data.get("results", [])),
            account_number=data.get("account_number", ""),
            amount=_dec(data.get("amount")),
            fee=_dec(data.get("fee")),
            vat=_dec(data.get("vat")),
            account_name=data.get("account_name", ""),
        )


@dataclass
class PinFlow:
    """Set/change PIN in progress. Holds the first entry until it is confirmed."""

    kind: ClassVar[str] = "pin"

    new_pin: str = ""

    def to_dict(self) -> dict:
        return {"kind": self.kind, "new_pin": self.new_pin}

    @classmethod
    def from_dict(cls, data: dict) -> "PinFlow":
        return cls(new_pin=data.get("new_pin", ""))


Flow = Union[WalletTransferFlow, BankTransferFlow, PinFlow]

FLOW_KINDS = {
    WalletTransferFlow.kind: WalletTransferFlow,
    BankTransferFlow.kind: BankTransferFlow,
    PinFlow.kind: PinFlow,
}


class FlowMismatch(RuntimeError):
    """A step handler asked for flow state the session does not carry."""


def new_reference() -> str:
    return str(uuid.uuid4())


@dataclass
class UssdSession:
    phone_number: str
    step: Step = Step.START

    # One idempotency reference per session, reused for every submission
    reference: str = field(default_factory=new_reference)

    # Carrier correlation id (audit only, never a key)
    carrier_session_id: str = ""

    # From start
    customer_id: str = ""
    balance: Decimal = Decimal("0")

    # Balance-check yes/no gate
    confirmation_pending: bool = False

    flow: Optional[Flow] = None

    # Metadata
    created_at: float = field(default_factory=time.monotonic)
    last_active_at: float = field(default_factory=time.monotonic)
    turn_count: int = 0

    # Keystrokes already answered and the prompt sent for them
    input_count: int = 0
    last_prompt: str = ""

    def require(self, flow_type):
        """Return the current flow if it is a `flow_type`, else raise FlowMismatch."""
        if not isinstance(self.flow, flow_type):
            raise FlowMismatch(
                f"step {self.step.value} needs {flow_type.__name__}, "
                f"session has {type(self.flow).__name__}"
            )
        return self.flow

    def to_dict(self) -> dict:
        return {
            "phone_number": self.phone_number,
            "step": self.step.value,
            "reference": self.reference,
            "carrier_session_id": self.carrier_session_id,
            "customer_id": self.customer_id,
            "balance": str(self.balance),
            "confirmation_pending": self.confirmation_pending,
            "flow": self.flow.to_dict() if self.flow is not None else None,
            "turn_count": self.turn_count,
            "input_count": self.input_count,
            "last_prompt": self.last_prompt,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Optional["UssdSession"]:
        """Rebuild a session from `to_dict()` output.

        Returns None when the stored step is not a known Step, which callers
        treat the same as an expired session.
        """
        step = Step.parse(data.get("step"))
        if step is None:
            return None
        raw_flow = data.get("flow")
        flow = None
        if raw_flow:
            flow_cls = FLOW_KINDS.get(raw_flow.get("kind"))
            if flow_cls is None:
                return None
            flow = flow_cls.from_dict(raw_flow)
        return cls(
            phone_number=data["phone_number"],
            step=step,
            reference=data.get("reference") or new_reference(),
            carrier_session_id=data.get("carrier_session_id", ""),
            customer_id=data.get("customer_id", ""),
            balance=_dec(data.get("balance")) or Decimal("0"),
            confirmation_pending=bool(data.get("confirmation_pending", False)),
            flow=flow,
            turn_count=int(data.get("turn_count", 0)),
            input_count=int(data.get("input_count", 0)),
            last_prompt=data.get("last_prompt", ""),
        )

    def field_names(self) -> set[str]:
        return {f.name for f in fields(self)}
