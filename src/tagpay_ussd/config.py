"""Startup configuration.

`validate_config()` checks that required environment variables are set
before the server accepts callbacks, so a missing key is a clear startup
failure rather than every subscriber getting a system error.
`Settings.from_env()` turns the environment into typed values.
"""

import logging
import os
import sys
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from tagpay_ussd.fees import (
    DEFAULT_BALANCE_CHECK_FEE,
    DEFAULT_DAILY_LIMIT,
    DEFAULT_FEE_CAP,
    DEFAULT_VAT_PERCENT,
    FeePolicy,
    parse_fee_tiers,
)
from tagpay_ussd.ledger import DEFAULT_BASE_URL

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "LEDGER_API_KEY",
]

OPTIONAL_VARS = [
    "LEDGER_BASE_URL",
    "LEDGER_FEE_API_KEY",
    "DATABASE_URL",
    "REDIS_URL",
    "FEE_WALLET_CUSTOMER_ID",
    "REGULATOR_WALLET_CUSTOMER_ID",
    "USSD_SHARED_SECRET",
    "LEDGER_WEBHOOK_SECRET",
    "LOG_LEVEL",
]

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./tagpay_ussd.db"


def validate_config() -> None:
    """Fail fast when the ledger credentials are absent.

    Prints the missing names and exits with status 1. Unset optional
    variables only produce a warning each.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
    if missing:
        print(
            f"\nFATAL: cannot start without {', '.join(missing)}."
            f"\nAdd them to .env or the deployment's secret store.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, "").strip() or default


def _int(name: str, default: int) -> int:
    raw = _env(name)
    return int(raw) if raw else default


def _decimal(name: str, default: Decimal) -> Decimal:
    raw = _env(name)
    return Decimal(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    ledger_api_key: str = ""
    ledger_base_url: str = DEFAULT_BASE_URL
    ledger_fee_api_key: str = ""
    ledger_timeout: float = 10.0

    database_url: str = DEFAULT_DATABASE_URL
    redis_url: str = ""
    session_ttl_seconds: int = 180
    session_sweep_interval: int = 60

    fee_wallet_customer_id: str = ""
    regulator_wallet_customer_id: str = ""
    balance_check_fee: Decimal = DEFAULT_BALANCE_CHECK_FEE
    vat_percent: Decimal = DEFAULT_VAT_PERCENT
    daily_transfer_limit: Decimal = DEFAULT_DAILY_LIMIT
    transfer_fee_tiers: str = "5000:10,50000:25"
    transfer_fee_cap: Decimal = DEFAULT_FEE_CAP

    pin_max_attempts: int = 3
    pin_lockout_minutes: int = 30
    pin_bcrypt_rounds: int = 10

    timezone: str = "Africa/Lagos"
    bank_list_path: str = ""
    ussd_shared_secret: str = ""
    ledger_webhook_secret: str = ""
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            ledger_api_key=_env("LEDGER_API_KEY"),
            ledger_base_url=_env("LEDGER_BASE_URL", DEFAULT_BASE_URL),
            ledger_fee_api_key=_env("LEDGER_FEE_API_KEY"),
            ledger_timeout=float(_env("LEDGER_TIMEOUT", "10")),
            database_url=_env("DATABASE_URL", DEFAULT_DATABASE_URL),
            redis_url=_env("REDIS_URL"),
            session_ttl_seconds=_int("SESSION_TTL_SECONDS", 180),
            session_sweep_interval=_int("SESSION_SWEEP_INTERVAL", 60),
            fee_wallet_customer_id=_env("FEE_WALLET_CUSTOMER_ID"),
            regulator_wallet_customer_id=_env("REGULATOR_WALLET_CUSTOMER_ID"),
            balance_check_fee=_decimal("BALANCE_CHECK_FEE", DEFAULT_BALANCE_CHECK_FEE),
            vat_percent=_decimal("VAT_PERCENT", DEFAULT_VAT_PERCENT),
            daily_transfer_limit=_decimal("DAILY_TRANSFER_LIMIT", DEFAULT_DAILY_LIMIT),
            transfer_fee_tiers=_env("TRANSFER_FEE_TIERS", "5000:10,50000:25"),
            transfer_fee_cap=_decimal("TRANSFER_FEE_CAP", DEFAULT_FEE_CAP),
            pin_max_attempts=_int("PIN_MAX_ATTEMPTS", 3),
            pin_lockout_minutes=_int("PIN_LOCKOUT_MINUTES", 30),
            pin_bcrypt_rounds=_int("PIN_BCRYPT_ROUNDS", 10),
            timezone=_env("USSD_TIMEZONE", "Africa/Lagos"),
            bank_list_path=_env("BANK_LIST_PATH"),
            ussd_shared_secret=_env("USSD_SHARED_SECRET"),
            ledger_webhook_secret=_env("LEDGER_WEBHOOK_SECRET"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            port=_int("PORT", 8000),
        )

    @property
    def pin_lockout(self) -> timedelta:
        return timedelta(minutes=self.pin_lockout_minutes)

    def fee_policy(self) -> FeePolicy:
        return FeePolicy(
            tiers=parse_fee_tiers(self.transfer_fee_tiers),
            cap_fee=self.transfer_fee_cap,
            vat_percent=self.vat_percent,
            daily_limit=self.daily_transfer_limit,
            balance_check_fee=self.balance_check_fee,
        )
