"""Refresh the packaged bank list from Paystack.

Only banks that are active, support transfers, are Nigerian and carry a
3-digit NIBSS code make it into the directory.
"""

import json
import logging
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

PAYSTACK_BANKS_URL = "https://api.paystack.co/bank"


def normalize_banks(raw_banks: list[dict]) -> list[dict]:
    seen: set[str] = set()
    banks = []
    for bank in raw_banks:
        code = bank.get("code")
        if not (
            bank.get("supports_transfer") is True
            and bank.get("active") is True
            and bank.get("country") == "Nigeria"
            and isinstance(code, str)
            and len(code) == 3
        ):
            continue
        if code in seen:
            continue
        seen.add(code)
        banks.append({
            "name": (bank.get("name") or "").strip().upper(),
            "code": code,
            "slug": bank.get("slug", ""),
        })
    banks.sort(key=lambda b: b["name"])
    return banks


async def fetch_banks(secret: str, client: httpx.AsyncClient | None = None, timeout: float = 15.0) -> list[dict]:
    headers = {"Authorization": f"Bearer {secret}"}
    if client is not None:
        resp = await client.get(PAYSTACK_BANKS_URL, headers=headers)
    else:
        async with httpx.AsyncClient(timeout=timeout) as http:
            resp = await http.get(PAYSTACK_BANKS_URL, headers=headers)
    resp.raise_for_status()
    return resp.json().get("data") or []


async def update_bank_list(secret: str, path: str | Path, client: httpx.AsyncClient | None = None) -> int:
    """Fetch, normalise and write the bank list. Returns the number of banks written.

    The existing file is left untouched if Paystack returns nothing usable.
    """
    if not secret:
        raise ValueError("PAYSTACK_SECRET is not set")

    raw = await fetch_banks(secret, client=client)
    logger.info("Fetched %d banks from Paystack", len(raw))
    banks = normalize_banks(raw)
    if not banks:
        raise RuntimeError("No transfer-capable banks returned from Paystack")

    path = Path(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(banks, indent=2), encoding="utf-8")
    tmp.replace(path)
    logger.info("%d transfer-capable banks saved to %s", len(banks), path)
    return len(banks)
