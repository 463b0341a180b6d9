from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from tagpay_ussd.audit import AuditLog, TransferLog
from tagpay_ussd.banks import BankDirectory
from tagpay_ussd.db import create_engine, create_schema, create_session_factory
from tagpay_ussd.fees import FeePolicy
from tagpay_ussd.pins import PinCheck, PinService
from tagpay_ussd.session import UssdSession
from tagpay_ussd.state_machine import UssdStateMachine

PHONE = "+2348031234567"
CUSTOMER_ID = "cust_001"

BANKS = [
    {"name": "ACCESS BANK", "code": "044", "slug": "access-bank"},
    {"name": "CITIBANK NIGERIA", "code": "023", "slug": "citibank-nigeria"},
    {"name": "ECOBANK NIGERIA", "code": "050", "slug": "ecobank-nigeria"},
    {"name": "FIDELITY BANK", "code": "070", "slug": "fidelity-bank"},
    {"name": "FIRST BANK OF NIGERIA", "code": "011", "slug": "first-bank-of-nigeria"},
    {"name": "GUARANTY TRUST BANK", "code": "058", "slug": "guaranty-trust-bank"},
    {"name": "POLARIS BANK", "code": "076", "slug": "polaris-bank"},
    {"name": "WEMA BANK", "code": "035", "slug": "wema-bank"},
    {"name": "ZENITH BANK", "code": "057", "slug": "zenith-bank"},
]


def ok_transfer(reference="TP-REF-1"):
    return {"status": True, "reference": reference, "message": "Transfer queued", "raw": {"status": True}}


def failed_transfer(message="Insufficient wallet balance"):
    return {"status": False, "reference": None, "message": message, "raw": {"status": False}}


async def fetch_transfer(sessions, reference):
    async with sessions() as db:
        return (
            await db.execute(select(TransferLog).where(TransferLog.reference == reference))
        ).scalar_one_or_none()


@pytest.fixture
def ledger():
    mock = AsyncMock()
    mock.resolve_customer.return_value = {
        "customer_id": CUSTOMER_ID, "account_number": "9000000001", "name": "Ada Obi",
    }
    mock.get_balance.return_value = Decimal("50000")
    mock.resolve_wallet_account.return_value = {
        "customer_id": "cust_002", "account_number": "9000000002", "account_name": "Bayo Ade",
    }
    mock.resolve_account_name.return_value = {"account_name": "CHIDI OKAFOR"}
    mock.submit_wallet_transfer.return_value = ok_transfer()
    mock.submit_bank_transfer.return_value = ok_transfer()
    mock.transfer_fee.return_value = ok_transfer("TP-FEE-1")
    return mock


@pytest.fixture
def pins():
    mock = AsyncMock()
    mock.verify.return_value = PinCheck(ok=True)
    return mock


@pytest.fixture
def audit():
    mock = AsyncMock()
    mock.daily_total.return_value = Decimal("0")
    return mock


@pytest.fixture
def banks():
    return BankDirectory(BANKS)


@pytest.fixture
def machine(ledger, pins, audit, banks):
    return UssdStateMachine(
        ledger=ledger,
        pins=pins,
        audit=audit,
        banks=banks,
        fees=FeePolicy(),
        fee_wallet_customer_id="fee_wallet",
        regulator_wallet_customer_id="vat_wallet",
    )


@pytest.fixture
def session():
    return UssdSession(phone_number=PHONE, customer_id=CUSTOMER_ID, balance=Decimal("50000"))


@pytest_asyncio.fixture
async def db_sessions():
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await create_schema(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def audit_log(db_sessions):
    return AuditLog(db_sessions)


@pytest.fixture
def pin_service(db_sessions):
    return PinService(db_sessions, max_attempts=3, lockout=timedelta(minutes=30), bcrypt_rounds=4)
