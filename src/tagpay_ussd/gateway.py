import asyncio
import logging
from collections import defaultdict

from tagpay_ussd.session import UssdSession
from tagpay_ussd.session_store import SessionStore
from tagpay_ussd.states import Step
from tagpay_ussd.state_machine import SYSTEM_ERROR, Reply, UssdStateMachine, con, end
from tagpay_ussd.validation import mask_phone, normalize_phone, split_input

logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    def acquire(self, key: str) -> "_KeyedLockContext":
        return _KeyedLockContext(self, key)


class _KeyedLockContext:
    def __init__(self, owner: KeyedLock, key: str):
        self._owner = owner
        self._key = key

    async def __aenter__(self):
        owner = self._owner
        lock = owner._locks.setdefault(self._key, asyncio.Lock())
        owner._users[self._key] += 1
        try:
            await lock.acquire()
        except BaseException:
            self._leave()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._owner._locks[self._key].release()
        self._leave()
        return False

    def _leave(self):
        owner = self._owner
        owner._users[self._key] -= 1
        if owner._users[self._key] == 0:
            del owner._users[self._key]
            del owner._locks[self._key]


class UssdGateway:
    """Entry point for one carrier callback.

    Callbacks for the same subscriber are serialised. A terminal reply (or
    any unexpected error) always destroys the session, so the next callback
    starts a fresh dialog. A callback that carries no keystroke beyond the
    ones already answered is a carrier retry and gets the last prompt again.
    """

    def __init__(self, store: SessionStore, machine: UssdStateMachine):
        self.store = store
        self.machine = machine
        self._locks = KeyedLock()

    async def handle(self, phone_number: str, text: str | None, carrier_session_id: str = "") -> Reply:
        phone = normalize_phone(phone_number)
        async with self._locks.acquire(phone):
            try:
                session = await self.store.start(phone, carrier_session_id)
                if self._is_new_dialog(session, text, carrier_session_id):
                    logger.info(
                        "New dial from %s abandons session at %s",
                        mask_phone(phone),
                        session.step.value,
                    )
                    await self.store.end(phone)
                    session = await self.store.start(phone, carrier_session_id)

                keys = split_input(text)
                if session.step is not Step.START and len(keys) <= session.input_count:
                    logger.info(
                        "Repeated page from %s at %s, re-sending prompt",
                        mask_phone(phone),
                        session.step.value,
                    )
                    return con(session.last_prompt)

                self._log_input(phone, session.step, keys)
                reply = await self.machine.process(session, text)
                if reply.end:
                    await self.store.end(phone)
                else:
                    session.input_count = len(keys)
                    session.last_prompt = reply.text
                    await self.store.save(session)
                return reply
            except Exception:
                logger.exception("USSD step failed for %s", mask_phone(phone))
                try:
                    await self.store.end(phone)
                except Exception:
                    logger.exception("Could not end session for %s", mask_phone(phone))
                return end(SYSTEM_ERROR)

    @staticmethod
    def _is_new_dialog(session: UssdSession, text: str | None, carrier_session_id: str) -> bool:
        if session.step is Step.START:
            return False
        if carrier_session_id and session.carrier_session_id and carrier_session_id != session.carrier_session_id:
            return True
        # the first page of every dial arrives with empty input
        return not split_input(text)

    @staticmethod
    def _log_input(phone: str, step: Step, keys: list[str]) -> None:
        if not keys:
            return
        shown = "****" if step.takes_secret else keys[-1]
        logger.debug("%s at %s entered %s", mask_phone(phone), step.value, shown)
