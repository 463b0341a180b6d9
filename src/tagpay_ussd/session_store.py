"""USSD session stores.

Interface the gateway expects:
  start(phone, carrier_session_id) -> UssdSession   resume or create at START
  get(phone)                       -> UssdSession | None
  update(phone, field, value)                       set step / session / flow field
  save(session)                                     persist in-place mutations
  end(phone)                                        idempotent delete
  sweep_expired()                  -> int           drop idle sessions

InMemorySessionStore is for tests and single-process deployments;
RedisSessionStore lets several workers share dialogs and survive restarts.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from tagpay_ussd.session import UssdSession
from tagpay_ussd.states import Step
from tagpay_ussd.validation import mask_phone

logger = logging.getLogger(__name__)

# Carriers tear a dialog down after ~3 minutes of silence
DEFAULT_TTL_SECONDS = 180


def _apply_update(session: UssdSession, field_name: str, value: Any) -> None:
    if field_name == "step":
        step = Step.parse(value)
        if step is None:
            raise ValueError(f"Unknown step {value!r}")
        session.step = step
        return
    if field_name in session.field_names():
        setattr(session, field_name, value)
        return
    if session.flow is not None and hasattr(session.flow, field_name):
        setattr(session.flow, field_name, value)
        return
    raise KeyError(f"Session has no field {field_name!r}")


class SessionStore(ABC):
    ttl_seconds: int

    @abstractmethod
    async def start(self, phone_number: str, carrier_session_id: str = "") -> UssdSession: ...

    @abstractmethod
    async def get(self, phone_number: str) -> Optional[UssdSession]: ...

    @abstractmethod
    async def save(self, session: UssdSession) -> None: ...

    @abstractmethod
    async def end(self, phone_number: str) -> None: ...

    async def update(self, phone_number: str, field_name: str, value: Any) -> None:
        session = await self.get(phone_number)
        if session is None:
            logger.warning("Cannot update %s; no session for %s", field_name, mask_phone(phone_number))
            return
        _apply_update(session, field_name, value)
        await self.save(session)

    async def sweep_expired(self) -> int:
        return 0


class InMemorySessionStore(SessionStore):
    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, UssdSession] = {}

    def _expired(self, session: UssdSession) -> bool:
        return self.ttl_seconds > 0 and (self._clock() - session.last_active_at) > self.ttl_seconds

    def _live(self, phone_number: str) -> Optional[UssdSession]:
        session = self._sessions.get(phone_number)
        if session is not None and self._expired(session):
            logger.info("Session expired for %s at step %s", mask_phone(phone_number), session.step.value)
            del self._sessions[phone_number]
            return None
        return session

    async def start(self, phone_number: str, carrier_session_id: str = "") -> UssdSession:
        session = self._live(phone_number)
        if session is None:
            now = self._clock()
            session = UssdSession(
                phone_number=phone_number,
                carrier_session_id=carrier_session_id,
                created_at=now,
                last_active_at=now,
            )
            self._sessions[phone_number] = session
            logger.info("New session for %s", mask_phone(phone_number))
        else:
            session.last_active_at = self._clock()
            if carrier_session_id and not session.carrier_session_id:
                session.carrier_session_id = carrier_session_id
            logger.debug("Session resumed for %s at %s", mask_phone(phone_number), session.step.value)
        return session

    async def get(self, phone_number: str) -> Optional[UssdSession]:
        return self._live(phone_number)

    async def save(self, session: UssdSession) -> None:
        session.last_active_at = self._clock()
        if session.phone_number in self._sessions:
            self._sessions[session.phone_number] = session

    async def end(self, phone_number: str) -> None:
        if self._sessions.pop(phone_number, None) is not None:
            logger.info("Session ended for %s", mask_phone(phone_number))
        else:
            logger.debug("End requested for missing session %s", mask_phone(phone_number))

    async def sweep_expired(self) -> int:
        stale = [phone for phone, s in self._sessions.items() if self._expired(s)]
        for phone in stale:
            del self._sessions[phone]
        if stale:
            logger.info("Swept %d idle USSD sessions", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


class RedisSessionStore(SessionStore):
    """Sessions as JSON under ussd:session:<phone>, expired by Redis TTL."""

    def __init__(
        self,
        redis_url: str = "",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        client: "redis.Redis | None" = None,
    ):
        if client is None and not redis_url:
            raise RuntimeError("REDIS_URL is not set")
        self.ttl_seconds = ttl_seconds
        self._r = client if client is not None else redis.from_url(redis_url, decode_responses=True)

    def _key(self, phone_number: str) -> str:
        return f"ussd:session:{phone_number}"

    async def close(self) -> None:
        await self._r.aclose()

    async def get(self, phone_number: str) -> Optional[UssdSession]:
        raw = await self._r.get(self._key(phone_number))
        if not raw:
            return None
        try:
            session = UssdSession.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable session for %s: %s", mask_phone(phone_number), e)
            session = None
        if session is None:
            await self._r.delete(self._key(phone_number))
        return session

    async def start(self, phone_number: str, carrier_session_id: str = "") -> UssdSession:
        session = await self.get(phone_number)
        if session is None:
            session = UssdSession(phone_number=phone_number, carrier_session_id=carrier_session_id)
            await self.save(session)
            logger.info("New session for %s", mask_phone(phone_number))
        return session

    async def save(self, session: UssdSession) -> None:
        await self._r.set(
            self._key(session.phone_number),
            json.dumps(session.to_dict()),
            ex=self.ttl_seconds,
        )

    async def end(self, phone_number: str) -> None:
        deleted = await self._r.delete(self._key(phone_number))
        if deleted:
            logger.info("Session ended for %s", mask_phone(phone_number))
