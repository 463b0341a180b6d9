import logging
from dataclasses import dataclass, field
from decimal import Decimal

from tagpay_ussd.audit import FeeStatus, TransactionType, TransferAttempt, TransferStatus
from tagpay_ussd.banks import QUICK_PICKS, BankDirectory
from tagpay_ussd.fees import FeePolicy
from tagpay_ussd.ledger import LedgerUnavailable
from tagpay_ussd.session import BankTransferFlow, PinFlow, UssdSession, WalletTransferFlow
from tagpay_ussd.states import Step
from tagpay_ussd.validation import (
    current_input,
    format_naira,
    is_valid_account_number,
    is_valid_pin,
    mask_phone,
    parse_amount,
)

logger = logging.getLogger(__name__)

PREVIOUS_PAGE = "98"
NEXT_PAGE = "99"

MAIN_MENU = (
    "Welcome to TagPay\n"
    "1. Transfer to TagPay\n"
    "2. Transfer to Bank\n"
    "3. Check Balance\n"
    "4. Airtime/Data\n"
    "5. Manage PIN"
)
BANK_MENU = "Select Bank\n1. Search Bank\n2. Access Bank\n3. GTBank\n4. Zenith Bank"
MANAGE_PIN_MENU = "Manage PIN\n1. Set PIN\n2. Change PIN"

ENTER_ACCOUNT = "Enter 10-digit account number"
INVALID_ACCOUNT = "Enter a valid 10-digit account number"
ENTER_AMOUNT = "Enter amount"
INVALID_AMOUNT = "Enter a valid amount"
ENTER_BANK_NAME = "Enter bank name to search"
ENTER_NEW_PIN = "Enter new 4-digit PIN"
PIN_FORMAT = "PIN must be exactly 4 digits"
CONFIRM_NEW_PIN = "Confirm new PIN"
PIN_MISMATCH = "PIN mismatch. Enter new PIN again"

# Terminal messages
NOT_REGISTERED = "You are not registered on TagPay"
INVALID_OPTION = "Invalid option"
INVALID_BANK = "Invalid bank selection"
INVALID_SELECTION = "Invalid selection"
INVALID_PIN = "Invalid PIN"
INCORRECT_PIN = "Incorrect PIN"
PIN_NOT_SET = "You have not set a PIN. Dial again and select Manage PIN"
PIN_LOCKED = "PIN locked after too many wrong attempts. Try again later"
SUBMITTED = "Transaction submitted and is being processed"
SESSION_EXPIRED = "Session expired. Please dial again."
SYSTEM_ERROR = "System error. Please try again later."
SERVICE_UNAVAILABLE = "Service temporarily unavailable. Please try again later."


@dataclass
class Reply:
    text: str
    end: bool = False
    audit_events: list[TransferAttempt] = field(default_factory=list)

    def render(self) -> str:
        return ("END " if self.end else "CON ") + self.text


def con(text: str) -> Reply:
    return Reply(text)


def end(text: str, *events: TransferAttempt) -> Reply:
    return Reply(text, end=True, audit_events=list(events))


def _fee_status(result: dict | None) -> FeeStatus:
    if result is None:
        return FeeStatus.NOT_APPLICABLE
    return FeeStatus.SUCCESS if result["status"] else FeeStatus.FAILED


class UssdStateMachine:
    """Turns one page of subscriber input into the next page.

    Handlers are looked up by step (`_handle_<step>`), mutate the session
    in place and return a Reply. Money movements are reported through
    `Reply.audit_events`; writing them is the caller's job.
    """

    def __init__(
        self,
        ledger,
        pins,
        audit,
        banks: BankDirectory,
        fees: FeePolicy | None = None,
        fee_wallet_customer_id: str = "",
        regulator_wallet_customer_id: str = "",
    ):
        self.ledger = ledger
        self.pins = pins
        self.audit = audit
        self.banks = banks
        self.fees = fees or FeePolicy()
        self.fee_wallet_customer_id = fee_wallet_customer_id
        self.regulator_wallet_customer_id = regulator_wallet_customer_id

    async def process(self, session: UssdSession, text: str | None) -> Reply:
        session.turn_count += 1
        handler = getattr(self, session.step.handler_name, None)
        if handler is None:
            logger.warning("No handler for step %s", session.step.value)
            return end(SESSION_EXPIRED)
        try:
            return await handler(session, current_input(text))
        except LedgerUnavailable:
            logger.warning("Ledger unavailable at step %s", session.step.value)
            return end(SERVICE_UNAVAILABLE)

    # ── Menus ──

    async def _handle_start(self, session: UssdSession, value: str) -> Reply:
        customer = await self.ledger.resolve_customer(session.phone_number)
        if customer is None or not customer.get("customer_id"):
            logger.info("Unregistered subscriber %s", mask_phone(session.phone_number))
            return end(NOT_REGISTERED)
        session.customer_id = customer["customer_id"]
        session.balance = await self.ledger.get_balance(session.customer_id)
        session.step = Step.MAIN_MENU
        return con(MAIN_MENU)

    async def _handle_main_menu(self, session: UssdSession, value: str) -> Reply:
        if session.confirmation_pending:
            return await self._balance_confirmation(session, value)

        if value == "1":
            session.flow = WalletTransferFlow()
            session.step = Step.TAGPAY_ACCOUNT
            return con("Enter recipient TagPay account number")
        if value == "2":
            session.flow = BankTransferFlow()
            session.step = Step.BANK_MENU
            return con(BANK_MENU)
        if value == "3":
            session.confirmation_pending = True
            return con(
                "You are about to check your balance. "
                f"A fee of NGN {format_naira(self.fees.balance_check_fee)} will be deducted.\n"
                "Press 1 to proceed\nPress 2 to cancel"
            )
        if value == "4":
            return end("Airtime/Data coming soon")
        if value == "5":
            session.flow = PinFlow()
            session.step = Step.MANAGE_PIN_MENU
            return con(MANAGE_PIN_MENU)
        return end(INVALID_OPTION)

    async def _balance_confirmation(self, session: UssdSession, value: str) -> Reply:
        if value == "2":
            return end("Balance check cancelled.")
        if value != "1":
            return con("Invalid choice. Press 1 to proceed or 2 to cancel.")

        fee = self.fees.balance_check_fee
        if session.balance < fee:
            return end("Insufficient funds to check balance")

        result = await self.ledger.transfer_fee(
            from_customer_id=session.customer_id,
            to_customer_id=self.fee_wallet_customer_id,
            amount=fee,
            reference=session.reference,
        )
        event = TransferAttempt(
            transaction_type=TransactionType.BALANCE_CHECK,
            reference=session.reference,
            session_id=session.carrier_session_id,
            customer_id=session.customer_id,
            phone_number=session.phone_number,
            amount=Decimal("0"),
            fee=fee,
            status=TransferStatus.SUBMITTED if result["status"] else TransferStatus.FAILED,
            transaction_reference=result["reference"],
            message=result["message"],
            raw_response=result["raw"],
            merchant_fee=fee,
            merchant_fee_status=_fee_status(result),
        )
        if not result["status"]:
            return end("Could not process balance check fee. Try again later.", event)
        return end(f"Your balance is NGN {format_naira(session.balance - fee)}", event)

    # ── TagPay wallet transfer ──

    async def _handle_tagpay_account(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(WalletTransferFlow)
        if not is_valid_account_number(value):
            return con(INVALID_ACCOUNT)

        recipient = await self.ledger.resolve_wallet_account(value)
        if recipient is None or not recipient.get("customer_id"):
            return end("Invalid recipient")
        if recipient["customer_id"] == session.customer_id:
            return end("You cannot transfer to your own account")

        flow.recipient_account = value
        flow.recipient_customer_id = recipient["customer_id"]
        flow.recipient_name = recipient["account_name"]
        session.step = Step.TAGPAY_AMOUNT
        return con(ENTER_AMOUNT)

    async def _handle_tagpay_amount(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(WalletTransferFlow)
        amount = parse_amount(value)
        if amount is None:
            return con(INVALID_AMOUNT)
        if amount > session.balance:
            return end(f"Insufficient balance. Your balance is NGN {format_naira(session.balance)}")

        flow.amount = amount
        session.step = Step.TAGPAY_PIN
        return con(f"Send NGN {format_naira(amount)} to {flow.recipient_name}\nEnter PIN")

    async def _handle_tagpay_pin(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(WalletTransferFlow)
        denied = await self._check_pin(session, value, wrong=INVALID_PIN)
        if denied is not None:
            return denied

        result = await self.ledger.submit_wallet_transfer(
            from_customer_id=session.customer_id,
            to_customer_id=flow.recipient_customer_id,
            amount=flow.amount,
            reference=session.reference,
        )
        logger.info("Wallet transfer %s submitted=%s", session.reference, result["status"])
        event = TransferAttempt(
            transaction_type=TransactionType.TAGPAY_TRANSFER,
            reference=session.reference,
            session_id=session.carrier_session_id,
            customer_id=session.customer_id,
            phone_number=session.phone_number,
            amount=flow.amount,
            account_number=flow.recipient_account,
            account_name=flow.recipient_name,
            status=TransferStatus.SUBMITTED if result["status"] else TransferStatus.FAILED,
            transaction_reference=result["reference"],
            message=result["message"],
            raw_response=result["raw"],
        )
        if not result["status"]:
            return end(f"Transfer failed: {result['message'] or 'please try again later'}", event)
        return end(SUBMITTED, event)

    # ── Bank transfer ──

    async def _handle_bank_menu(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(BankTransferFlow)
        if value == "1":
            session.step = Step.BANK_SEARCH
            return con(ENTER_BANK_NAME)
        pick = QUICK_PICKS.get(value)
        if pick is None:
            return end(INVALID_BANK)
        flow.bank_code = pick["code"]
        flow.bank_name = pick["name"]
        session.step = Step.BANK_ACCOUNT
        return con(ENTER_ACCOUNT)

    def _render_bank_page(self, flow: BankTransferFlow) -> Reply:
        page = self.banks.search(flow.search_term, flow.page)
        flow.page = page["page"]
        flow.results = page["results"]
        lines = ["Select Bank"]
        lines += [f"{i}. {bank['name']}" for i, bank in enumerate(flow.results, start=1)]
        if page["has_prev"]:
            lines.append(f"{PREVIOUS_PAGE}. Previous")
        if page["has_next"]:
            lines.append(f"{NEXT_PAGE}. Next")
        return con("\n".join(lines))

    async def _handle_bank_search(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(BankTransferFlow)
        if not value:
            return con(ENTER_BANK_NAME)
        if not self.banks.search(value)["total"]:
            return end("No banks found")
        flow.search_term = value
        flow.page = 0
        session.step = Step.BANK_SEARCH_SELECT
        return self._render_bank_page(flow)

    async def _handle_bank_search_select(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(BankTransferFlow)
        if value == PREVIOUS_PAGE:
            flow.page = max(flow.page - 1, 0)
            return self._render_bank_page(flow)
        if value == NEXT_PAGE:
            flow.page += 1
            return self._render_bank_page(flow)

        if not value.isdigit() or not 1 <= int(value) <= len(flow.results):
            return end(INVALID_BANK)
        bank = flow.results[int(value) - 1]
        flow.bank_code = bank["code"]
        flow.bank_name = bank["name"]
        session.step = Step.BANK_ACCOUNT
        return con(ENTER_ACCOUNT)

    async def _handle_bank_account(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(BankTransferFlow)
        if not is_valid_account_number(value):
            return con(INVALID_ACCOUNT)
        flow.account_number = value
        session.step = Step.BANK_AMOUNT
        return con(ENTER_AMOUNT)

    async def _handle_bank_amount(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(BankTransferFlow)
        amount = parse_amount(value)
        if amount is None:
            return con(INVALID_AMOUNT)

        already = await self.audit.daily_total(session.customer_id)
        limit = self.fees.check_daily_limit(already, amount)
        if not limit.allowed:
            return end(
                "Daily transfer limit reached. "
                f"You can transfer up to NGN {format_naira(max(limit.remaining, Decimal('0')))} today."
            )

        quote = self.fees.quote(amount)
        if session.balance < quote.total:
            return end(
                f"Insufficient balance. Total: NGN {format_naira(quote.total)} "
                f"(Amount: NGN {format_naira(quote.amount)}, Fee: NGN {format_naira(quote.fee)}, "
                f"VAT: NGN {format_naira(quote.vat)})"
            )

        account = await self.ledger.resolve_account_name(flow.bank_code, flow.account_number)
        if account is None:
            return end("Unable to resolve account")

        flow.amount = quote.amount
        flow.fee = quote.fee
        flow.vat = quote.vat
        flow.account_name = account["account_name"]
        session.step = Step.BANK_PIN
        return con(
            f"Send NGN {format_naira(amount)} to {flow.account_name}\n"
            f"Fee: NGN {format_naira(quote.fee)}\n"
            f"VAT: NGN {format_naira(quote.vat)}\n"
            "Enter PIN"
        )

    async def _handle_bank_pin(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(BankTransferFlow)
        denied = await self._check_pin(session, value, wrong=INVALID_PIN)
        if denied is not None:
            return denied

        result = await self.ledger.submit_bank_transfer(
            customer_id=session.customer_id,
            bank_code=flow.bank_code,
            account_number=flow.account_number,
            account_name=flow.account_name,
            amount=flow.amount,
            narration=f"USSD transfer to {flow.account_name}",
            reference=session.reference,
        )
        logger.info("Bank transfer %s submitted=%s", session.reference, result["status"])

        merchant_fee = cbn_fee = None
        if result["status"]:
            merchant_fee = await self._collect(flow.fee, self.fee_wallet_customer_id, f"{session.reference}-fee", session)
            cbn_fee = await self._collect(flow.vat, self.regulator_wallet_customer_id, f"{session.reference}-vat", session)

        event = TransferAttempt(
            transaction_type=TransactionType.BANK_TRANSFER,
            reference=session.reference,
            session_id=session.carrier_session_id,
            customer_id=session.customer_id,
            phone_number=session.phone_number,
            amount=flow.amount,
            fee=flow.fee,
            vat=flow.vat,
            bank_code=flow.bank_code,
            account_number=flow.account_number,
            account_name=flow.account_name,
            status=TransferStatus.SUBMITTED if result["status"] else TransferStatus.FAILED,
            transaction_reference=result["reference"],
            message=result["message"],
            raw_response=result["raw"],
            merchant_fee=flow.fee,
            merchant_fee_status=_fee_status(merchant_fee),
            cbn_fee=flow.vat,
            cbn_fee_status=_fee_status(cbn_fee),
        )
        if not result["status"]:
            return end(f"Transfer failed: {result['message'] or 'please try again later'}", event)
        return end(SUBMITTED, event)

    async def _collect(self, amount: Decimal, wallet_customer_id: str, reference: str, session: UssdSession) -> dict | None:
        """Move one part of the transfer fee into its collection wallet."""
        if not amount or not wallet_customer_id:
            logger.warning("Skipping fee collection %s: no amount or wallet", reference)
            return None
        result = await self.ledger.transfer_fee(
            from_customer_id=session.customer_id,
            to_customer_id=wallet_customer_id,
            amount=amount,
            reference=reference,
        )
        if not result["status"]:
            logger.error("Fee collection %s failed: %s", reference, result["message"])
        return result

    # ── PIN management ──

    async def _check_pin(self, session: UssdSession, value: str, wrong: str) -> Reply | None:
        """Verify the subscriber's PIN. Returns the terminal reply on any failure."""
        if not is_valid_pin(value):
            return end(wrong)
        check = await self.pins.verify(session.phone_number, value)
        if check.not_set:
            return end(PIN_NOT_SET)
        if check.locked:
            return end(PIN_LOCKED)
        if not check.ok:
            return end(wrong)
        return None

    async def _handle_manage_pin_menu(self, session: UssdSession, value: str) -> Reply:
        session.require(PinFlow)
        if value == "1":
            session.step = Step.SET_PIN
            return con(ENTER_NEW_PIN)
        if value == "2":
            session.step = Step.CHANGE_PIN_OLD
            return con("Enter old PIN")
        return end(INVALID_SELECTION)

    def _take_new_pin(self, session: UssdSession, value: str, next_step: Step) -> Reply:
        flow = session.require(PinFlow)
        if not is_valid_pin(value):
            return con(PIN_FORMAT)
        flow.new_pin = value
        session.step = next_step
        return con(CONFIRM_NEW_PIN)

    async def _handle_set_pin(self, session: UssdSession, value: str) -> Reply:
        return self._take_new_pin(session, value, Step.SET_PIN_CONFIRM)

    async def _handle_set_pin_confirm(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(PinFlow)
        if not is_valid_pin(value):
            return con(PIN_FORMAT)
        if value != flow.new_pin:
            flow.new_pin = ""
            session.step = Step.SET_PIN
            return con(PIN_MISMATCH)
        await self.pins.set(session.phone_number, value)
        return end("PIN set successfully")

    async def _handle_change_pin_old(self, session: UssdSession, value: str) -> Reply:
        session.require(PinFlow)
        denied = await self._check_pin(session, value, wrong=INCORRECT_PIN)
        if denied is not None:
            return denied
        session.step = Step.CHANGE_PIN_NEW
        return con(ENTER_NEW_PIN)

    async def _handle_change_pin_new(self, session: UssdSession, value: str) -> Reply:
        return self._take_new_pin(session, value, Step.CHANGE_PIN_CONFIRM)

    async def _handle_change_pin_confirm(self, session: UssdSession, value: str) -> Reply:
        flow = session.require(PinFlow)
        if not is_valid_pin(value):
            return con(PIN_FORMAT)
        if value != flow.new_pin:
            flow.new_pin = ""
            session.step = Step.CHANGE_PIN_NEW
            return con(PIN_MISMATCH)
        await self.pins.change(session.phone_number, value)
        return end("PIN changed successfully")
