import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import bcrypt
from sqlalchemy import DateTime, Integer, String, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from tagpay_ussd.db import Base, as_utc, utcnow
from tagpay_ussd.validation import mask_phone, normalize_phone

logger = logging.getLogger(__name__)


class UserPin(Base):
    __tablename__ = "user_pins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    pin_hash: Mapped[Optional[str]] = mapped_column(String(128))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


@dataclass(frozen=True)
class PinCheck:
    ok: bool = False
    locked: bool = False
    not_set: bool = False


class PinService:
    """Transaction PIN storage and verification.

    PINs are bcrypt-hashed with a fresh salt on every write. A wrong PIN
    increments the attempt counter; reaching `max_attempts` locks the PIN
    for `lockout`. A successful verify, set or change clears both.
    Phone numbers are normalised here so 0803..., 234803... and +234803...
    are the same identity.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
        lockout: timedelta = timedelta(minutes=30),
        bcrypt_rounds: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = session_factory
        self.max_attempts = max_attempts
        self.lockout = lockout
        self.bcrypt_rounds = bcrypt_rounds
        self._clock = clock

    async def _hash(self, pin: str) -> str:
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        hashed = await asyncio.to_thread(bcrypt.hashpw, pin.encode(), salt)
        return hashed.decode()

    async def _matches(self, pin: str, pin_hash: str) -> bool:
        return await asyncio.to_thread(bcrypt.checkpw, pin.encode(), pin_hash.encode())

    async def verify(self, phone: str, pin: str) -> PinCheck:
        phone = normalize_phone(phone)
        async with self._sessions() as db:
            async with db.begin():
                record = (
                    await db.execute(select(UserPin).where(UserPin.phone_number == phone))
                ).scalar_one_or_none()
                if record is None or not record.pin_hash:
                    return PinCheck(not_set=True)

                now = self._clock()
                locked_until = as_utc(record.locked_until)
                if locked_until and locked_until > now:
                    return PinCheck(locked=True)

                if await self._matches(pin, record.pin_hash):
                    record.attempts = 0
                    record.locked_until = None
                    return PinCheck(ok=True)

                record.attempts = (record.attempts or 0) + 1
                if record.attempts >= self.max_attempts:
                    record.locked_until = now + self.lockout
                    logger.warning(
                        "PIN locked for %s after %d failed attempts",
                        mask_phone(phone),
                        record.attempts,
                    )
                    return PinCheck(locked=True)
                return PinCheck()

    async def _write(self, phone: str, pin: str) -> None:
        phone = normalize_phone(phone)
        pin_hash = await self._hash(pin)
        async with self._sessions() as db:
            async with db.begin():
                record = (
                    await db.execute(select(UserPin).where(UserPin.phone_number == phone))
                ).scalar_one_or_none()
                if record is None:
                    db.add(UserPin(phone_number=phone, pin_hash=pin_hash, attempts=0))
                else:
                    record.pin_hash = pin_hash
                    record.attempts = 0
                    record.locked_until = None

    async def set(self, phone: str, pin: str) -> None:
        await self._write(phone, pin)
        logger.info("PIN set for %s", mask_phone(phone))

    async def change(self, phone: str, pin: str) -> None:
        await self._write(phone, pin)
        logger.info("PIN changed for %s", mask_phone(phone))
