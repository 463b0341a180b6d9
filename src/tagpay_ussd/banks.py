import json
import logging
import re
from importlib import resources
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 4

# bank-menu options 2-4; option 1 is free-text search
QUICK_PICKS = {
    "2": {"name": "Access Bank", "code": "044"},
    "3": {"name": "GTBank", "code": "058"},
    "4": {"name": "Zenith Bank", "code": "057"},
}


def _squash(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (text or "").lower())


def default_bank_list_path() -> Path:
    return Path(str(resources.files("tagpay_ussd") / "data" / "banks.json"))


class BankDirectory:
    """Read-mostly list of transfer-capable banks, searchable by name."""

    def __init__(self, banks: list[dict] | None = None):
        self._banks = list(banks or [])

    @classmethod
    def load(cls, path: str | Path | None = None) -> "BankDirectory":
        path = Path(path) if path else default_bank_list_path()
        try:
            banks = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Failed to load bank list from %s: %s", path, e)
            banks = []
        logger.info("Bank list loaded: %d banks", len(banks))
        return cls(banks)

    def __len__(self) -> int:
        return len(self._banks)

    def search(self, term: str = "", page: int = 0, page_size: int = DEFAULT_PAGE_SIZE) -> dict:
        """Case-insensitive name search, ignoring spaces and punctuation.

        `page` is clamped to the available range, so paging past either
        end re-renders the nearest real page.
        """
        needle = _squash(term)
        matches = [b for b in self._banks if needle in _squash(b.get("name", ""))] if needle else list(self._banks)
        total = len(matches)
        last_page = max(0, (total - 1) // page_size) if total else 0
        page = min(max(page, 0), last_page)
        start = page * page_size
        results = [{"name": b["name"], "code": b["code"]} for b in matches[start:start + page_size]]
        return {
            "results": results,
            "page": page,
            "total": total,
            "has_prev": page > 0,
            "has_next": start + page_size < total,
        }
