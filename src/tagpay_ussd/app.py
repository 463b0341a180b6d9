import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import uvicorn
from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from tagpay_ussd.audit import AuditLog
from tagpay_ussd.banks import BankDirectory
from tagpay_ussd.config import Settings, validate_config
from tagpay_ussd.db import create_engine, create_schema, create_session_factory
from tagpay_ussd.gateway import UssdGateway
from tagpay_ussd.ledger import LedgerClient
from tagpay_ussd.pins import PinService
from tagpay_ussd.post_response import record_audit_events
from tagpay_ussd.session_store import InMemorySessionStore, RedisSessionStore, SessionStore
from tagpay_ussd.state_machine import UssdStateMachine

load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class Runtime:
    """Everything the lifespan builds and must tear down."""

    gateway: UssdGateway
    audit: AuditLog
    store: SessionStore
    ledger: LedgerClient
    engine: object
    tasks: list = field(default_factory=list)

    async def close(self):
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        await self.ledger.close()
        if isinstance(self.store, RedisSessionStore):
            await self.store.close()
        await self.engine.dispose()


async def _sweep_sessions(store: SessionStore, interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await store.sweep_expired()
        except Exception as e:
            logger.error("Session sweep failed: %s", e)


async def build_runtime(settings: Settings) -> Runtime:
    engine = create_engine(settings.database_url)
    await create_schema(engine)
    sessions = create_session_factory(engine)

    audit = AuditLog(sessions, timezone=settings.timezone)
    pins = PinService(
        sessions,
        max_attempts=settings.pin_max_attempts,
        lockout=settings.pin_lockout,
        bcrypt_rounds=settings.pin_bcrypt_rounds,
    )
    ledger = LedgerClient(
        base_url=settings.ledger_base_url,
        api_key=settings.ledger_api_key,
        fee_api_key=settings.ledger_fee_api_key,
        timeout=settings.ledger_timeout,
    )
    machine = UssdStateMachine(
        ledger=ledger,
        pins=pins,
        audit=audit,
        banks=BankDirectory.load(settings.bank_list_path or None),
        fees=settings.fee_policy(),
        fee_wallet_customer_id=settings.fee_wallet_customer_id,
        regulator_wallet_customer_id=settings.regulator_wallet_customer_id,
    )

    tasks = []
    if settings.redis_url:
        store = RedisSessionStore(settings.redis_url, ttl_seconds=settings.session_ttl_seconds)
        logger.info("Using Redis session store")
    else:
        store = InMemorySessionStore(ttl_seconds=settings.session_ttl_seconds)
        tasks.append(asyncio.create_task(_sweep_sessions(store, settings.session_sweep_interval)))
        logger.info("Using in-memory session store")

    return Runtime(
        gateway=UssdGateway(store, machine),
        audit=audit,
        store=store,
        ledger=ledger,
        engine=engine,
        tasks=tasks,
    )


def _secret_ok(expected: str, supplied: str | None) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(expected.encode(), (supplied or "").encode())


async def _read_payload(request: Request) -> dict:
    """Carriers post form-encoded fields; some aggregators send JSON."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return {k: v for k, v in form.items()}


def create_app(
    settings: Settings | None = None,
    gateway: UssdGateway | None = None,
    audit: AuditLog | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        runtime = None
        if app.state.gateway is None:
            validate_config()
            runtime = await build_runtime(settings)
            app.state.gateway = runtime.gateway
            app.state.audit = runtime.audit
        try:
            yield
        finally:
            if runtime is not None:
                await runtime.close()

    app = FastAPI(title="TagPay USSD", lifespan=lifespan)
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.audit = audit

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/ussd")
    async def ussd(request: Request, background_tasks: BackgroundTasks):
        if not _secret_ok(settings.ussd_shared_secret, request.headers.get("X-USSD-Secret")):
            logger.warning("Rejected USSD callback with bad shared secret")
            return PlainTextResponse("END Unauthorized", status_code=401)

        payload = await _read_payload(request)
        phone = str(payload.get("phoneNumber") or "").strip()
        if not phone:
            return PlainTextResponse("END Invalid request", status_code=400)

        reply = await app.state.gateway.handle(
            phone,
            payload.get("text") or "",
            str(payload.get("sessionId") or ""),
        )
        if reply.audit_events:
            background_tasks.add_task(record_audit_events, app.state.audit, reply.audit_events)
        return PlainTextResponse(reply.render())

    @app.post("/webhooks/ledger")
    async def ledger_webhook(request: Request):
        if not _secret_ok(settings.ledger_webhook_secret, request.headers.get("X-Webhook-Secret")):
            return JSONResponse({"success": False, "error": "unauthorized"}, status_code=401)
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"success": False, "error": "invalid json"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"success": False, "error": "invalid payload"}, status_code=400)

        data = body.get("data") if isinstance(body.get("data"), dict) else body
        reference = data.get("reference") or data.get("transactionReference")
        status = str(data.get("status") or "").lower()
        if not reference or not status:
            return JSONResponse({"success": False, "error": "reference and status required"}, status_code=400)

        if app.state.audit is None or not await app.state.audit.mark_settlement(reference, status, raw=body):
            logger.warning("Settlement for unknown reference %s", reference)
            return JSONResponse({"success": False, "error": "unknown reference"}, status_code=404)
        return {"success": True}

    return app


app = create_app()


if __name__ == "__main__":
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run("tagpay_ussd.app:app", host="0.0.0.0", port=settings.port)
