import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

INPUT_SEPARATOR = "*"

ACCOUNT_NUMBER_LENGTH = 10
PIN_LENGTH = 4

CENT = Decimal("0.01")

_ACCOUNT_RE = re.compile(rf"^\d{{{ACCOUNT_NUMBER_LENGTH}}}$")
_PIN_RE = re.compile(rf"^\d{{{PIN_LENGTH}}}$")
_AMOUNT_RE = re.compile(r"^\d+(\.\d{1,2})?$")

COUNTRY_CODE = "234"


# ── Input tokenizer ──

def split_input(text: str | None) -> list[str]:
    """Split the carrier's cumulative input ("1*2*0123456789") into keystrokes.

    The first page of a dialog arrives with empty or missing text.
    """
    if text is None:
        return []
    text = text.strip()
    if not text:
        return []
    return [part.strip() for part in text.split(INPUT_SEPARATOR)]


def current_input(text: str | None) -> str:
    """Return the most recent keystroke, or "" on the first page."""
    parts = split_input(text)
    return parts[-1] if parts else ""


# ── Field validators ──

def is_valid_account_number(value: str) -> bool:
    return bool(_ACCOUNT_RE.match(value or ""))


def is_valid_pin(value: str) -> bool:
    return bool(_PIN_RE.match(value or ""))


def parse_amount(value: str) -> Decimal | None:
    """Parse a keyed-in naira amount. Returns None unless it is a positive
    number with at most two decimal places."""
    value = (value or "").strip()
    if not _AMOUNT_RE.match(value):
        return None
    try:
        amount = Decimal(value)
    except InvalidOperation:
        return None
    if amount <= 0:
        return None
    return amount.quantize(CENT)


# ── Phone numbers ──

def normalize_phone(phone: str) -> str:
    """Canonicalise a Nigerian number to +234XXXXXXXXXX.

    0803..., 234803... and +234803... all map to the same identity.
    Anything else keeps its digits behind a plus sign.
    """
    phone = re.sub(r"[^\d+]", "", (phone or "").strip())
    digits = phone.lstrip("+")
    if phone.startswith("0"):
        return f"+{COUNTRY_CODE}{phone[1:]}"
    if digits.startswith(COUNTRY_CODE):
        return f"+{digits}"
    return f"+{digits}"


def ledger_phone(phone: str) -> str:
    """Phone format the ledger's customer lookup expects (234XXXXXXXXXX)."""
    return normalize_phone(phone).lstrip("+")


def mask_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"


# ── Money display ──

def format_naira(amount: Decimal | int | str | None) -> str:
    """Render an amount for the handset: whole naira without decimals,
    anything fractional with exactly two places."""
    value = Decimal(str(amount or 0)).quantize(CENT, rounding=ROUND_HALF_UP)
    if value == value.to_integral_value():
        return str(value.quantize(Decimal("1")))
    return f"{value:.2f}"
