import json

import httpx
import pytest
import respx

from tagpay_ussd.bank_updater import PAYSTACK_BANKS_URL, normalize_banks, update_bank_list

RAW = [
    {"name": " Zenith Bank ", "code": "057", "slug": "zenith-bank", "country": "Nigeria",
     "supports_transfer": True, "active": True},
    {"name": "Access Bank", "code": "044", "slug": "access-bank", "country": "Nigeria",
     "supports_transfer": True, "active": True},
    {"name": "Access Bank (Diamond)", "code": "044", "slug": "access-diamond", "country": "Nigeria",
     "supports_transfer": True, "active": True},
    {"name": "Kuda Microfinance", "code": "50211", "slug": "kuda", "country": "Nigeria",
     "supports_transfer": True, "active": True},
    {"name": "Dormant Bank", "code": "999", "slug": "dormant", "country": "Nigeria",
     "supports_transfer": True, "active": False},
    {"name": "No Transfers Bank", "code": "998", "slug": "nt", "country": "Nigeria",
     "supports_transfer": False, "active": True},
    {"name": "Absa Ghana", "code": "030", "slug": "absa", "country": "Ghana",
     "supports_transfer": True, "active": True},
]


class TestNormalize:
    def test_filters_dedupes_and_sorts(self):
        assert normalize_banks(RAW) == [
            {"name": "ACCESS BANK", "code": "044", "slug": "access-bank"},
            {"name": "ZENITH BANK", "code": "057", "slug": "zenith-bank"},
        ]

    def test_empty(self):
        assert normalize_banks([]) == []


class TestUpdateBankList:
    @respx.mock
    @pytest.mark.asyncio
    async def test_writes_file(self, tmp_path):
        route = respx.get(PAYSTACK_BANKS_URL).mock(
            return_value=httpx.Response(200, json={"status": True, "data": RAW})
        )
        path = tmp_path / "banks.json"
        count = await update_bank_list("sk_test_1", path)
        assert count == 2
        assert json.loads(path.read_text())[0]["code"] == "044"
        assert route.calls[0].request.headers["Authorization"] == "Bearer sk_test_1"

    @respx.mock
    @pytest.mark.asyncio
    async def test_empty_response_keeps_existing_file(self, tmp_path):
        respx.get(PAYSTACK_BANKS_URL).mock(return_value=httpx.Response(200, json={"status": True, "data": []}))
        path = tmp_path / "banks.json"
        path.write_text("[]")
        with pytest.raises(RuntimeError):
            await update_bank_list("sk_test_1", path)
        assert path.read_text() == "[]"

    @respx.mock
    @pytest.mark.asyncio
    async def test_http_error_propagates(self, tmp_path):
        respx.get(PAYSTACK_BANKS_URL).mock(return_value=httpx.Response(401))
        with pytest.raises(httpx.HTTPStatusError):
            await update_bank_list("bad", tmp_path / "banks.json")

    @pytest.mark.asyncio
    async def test_requires_secret(self, tmp_path):
        with pytest.raises(ValueError):
            await update_bank_list("", tmp_path / "banks.json")
