import decimal
import logging
from decimal import Decimal

import httpx

from tagpay_ussd.circuit_breaker import CircuitBreaker
from tagpay_ussd.validation import ledger_phone

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://core-api.tagpay.ng/v1"
UNAVAILABLE = "Service temporarily unavailable"


class LedgerUnavailable(Exception):
    """A lookup could not reach the ledger (timeout, 5xx, open circuit)."""


def _amount(value: Decimal) -> float | int:
    # The ledger takes JSON numbers in naira
    return int(value) if value == value.to_integral_value() else float(value)


def _error_message(e: Exception) -> str:
    if isinstance(e, httpx.TimeoutException):
        return "Request timed out"
    if isinstance(e, httpx.HTTPStatusError):
        try:
            body = e.response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"Ledger returned {e.response.status_code}"
    return str(e) or e.__class__.__name__


def _transfer_result(body: dict) -> dict:
    transfer = body.get("transfer") if isinstance(body.get("transfer"), dict) else {}
    return {
        "status": body.get("status") is True,
        "reference": transfer.get("reference") or body.get("reference"),
        "message": body.get("message", ""),
        "raw": body,
    }


class LedgerClient:
    """HTTP client for the TagPay core ledger API.

    Every call is bounded by the client timeout and wrapped with a circuit
    breaker. Transfer failures come back as failure results. Lookups return
    None when the ledger says the record does not exist and raise
    LedgerUnavailable when the ledger cannot be reached, so an outage is
    never mistaken for an unknown subscriber.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = "",
        fee_api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.fee_api_key = fee_api_key or api_key
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="TagPay ledger",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def _get(self, path: str, params: dict, label: str) -> dict | None:
        """GET a lookup. None means the ledger answered "no such record"."""
        if not self._circuit.should_try():
            logger.warning("Ledger circuit breaker open, skipping %s", label)
            raise LedgerUnavailable(label)
        try:
            resp = await self._client.get(path, params=params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code < 500:
                logger.info("%s: %s", label, _error_message(e))
                return None
            self._circuit.record_failure()
            logger.error("%s failed: %s", label, _error_message(e))
            raise LedgerUnavailable(label) from e
        except Exception as e:
            self._circuit.record_failure()
            logger.error("%s failed: %s", label, _error_message(e))
            raise LedgerUnavailable(label) from e
        self._circuit.record_success()
        try:
            return resp.json()
        except ValueError:
            logger.error("%s: ledger returned a non-JSON body", label)
            return None

    async def _post_transfer(self, path: str, payload: dict, label: str, headers: dict | None = None) -> dict:
        if not self._circuit.should_try():
            logger.warning("Ledger circuit breaker open, skipping %s", label)
            return {"status": False, "reference": None, "message": UNAVAILABLE, "raw": {}}
        try:
            resp = await self._client.post(path, json=payload, headers=headers)
            resp.raise_for_status()
            self._circuit.record_success()
            return _transfer_result(resp.json())
        except Exception as e:
            message = _error_message(e)
            # A 4xx is the ledger rejecting the request, not the ledger being down
            if not (isinstance(e, httpx.HTTPStatusError) and e.response.status_code < 500):
                self._circuit.record_failure()
            logger.error("%s failed: %s", label, message)
            raw = {}
            if isinstance(e, httpx.HTTPStatusError):
                try:
                    raw = e.response.json()
                except ValueError:
                    raw = {"body": e.response.text}
            return {"status": False, "reference": None, "message": message, "raw": raw}

    # ── Lookups ──

    async def resolve_customer(self, phone: str) -> dict | None:
        body = await self._get("/customer/phone", {"phoneNumber": ledger_phone(phone)}, "resolve_customer")
        if not body or not body.get("status") or not body.get("customer"):
            return None
        customer = body["customer"]
        return {
            "customer_id": str(customer.get("id", "")),
            "account_number": customer.get("accountNumber", ""),
            "name": " ".join(p for p in (customer.get("firstName"), customer.get("lastName")) if p),
        }

    async def get_balance(self, customer_id: str) -> Decimal:
        body = await self._get("/wallet/customer", {"customerId": customer_id}, "get_balance")
        if not body or not body.get("status") or not body.get("wallet"):
            return Decimal("0")
        try:
            return Decimal(str(body["wallet"].get("availableBalance") or 0))
        except decimal.InvalidOperation:
            logger.error("get_balance: unreadable availableBalance %r", body["wallet"].get("availableBalance"))
            return Decimal("0")

    async def resolve_wallet_account(self, account_number: str) -> dict | None:
        body = await self._get("/customer/account", {"accountNumber": account_number}, "resolve_wallet_account")
        if not body or not body.get("status") or not body.get("customer"):
            return None
        customer = body["customer"]
        name = customer.get("accountName") or " ".join(
            p for p in (customer.get("firstName"), customer.get("lastName")) if p
        )
        return {
            "customer_id": str(customer.get("id", "")),
            "account_number": customer.get("accountNumber", account_number),
            "account_name": name,
        }

    async def resolve_account_name(self, bank_code: str, account_number: str) -> dict | None:
        body = await self._get(
            "/transfer/account/details",
            {"sortCode": bank_code, "accountNumber": account_number},
            "resolve_account_name",
        )
        if not body or not body.get("status") or not body.get("account"):
            return None
        name = body["account"].get("accountName")
        if not name:
            return None
        return {"account_name": name}

    # ── Money movement ──

    async def submit_bank_transfer(
        self,
        *,
        customer_id: str,
        bank_code: str,
        account_number: str,
        account_name: str,
        amount: Decimal,
        narration: str,
        reference: str,
    ) -> dict:
        return await self._post_transfer(
            "/transfer/bank/customer",
            {
                "accountNumber": account_number,
                "sortCode": bank_code,
                "amount": _amount(amount),
                "narration": narration,
                "accountName": account_name,
                "customerId": customer_id,
                "metadata": {"source": "USSD"},
                "reference": reference,
            },
            "submit_bank_transfer",
        )

    async def submit_wallet_transfer(
        self,
        *,
        from_customer_id: str,
        to_customer_id: str,
        amount: Decimal,
        reference: str,
    ) -> dict:
        return await self._post_transfer(
            "/transfer/wallet",
            {
                "amount": _amount(amount),
                "fromCustomerId": from_customer_id,
                "toCustomerId": to_customer_id,
                "reference": reference,
            },
            "submit_wallet_transfer",
        )

    async def transfer_fee(
        self,
        *,
        from_customer_id: str,
        to_customer_id: str,
        amount: Decimal,
        reference: str,
    ) -> dict:
        """Move a fee (or its VAT portion) into a collection wallet using the fee credential."""
        return await self._post_transfer(
            "/transfer/wallet",
            {
                "amount": _amount(amount),
                "fromCustomerId": from_customer_id,
                "toCustomerId": to_customer_id,
                "reference": reference,
            },
            "transfer_fee",
            headers={"Authorization": f"Bearer {self.fee_api_key}"} if self.fee_api_key else None,
        )
