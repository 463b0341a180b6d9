import json

import pytest

from tagpay_ussd.banks import QUICK_PICKS, BankDirectory, default_bank_list_path

from tests.conftest import BANKS


@pytest.fixture
def directory():
    return BankDirectory(BANKS)


class TestSearch:
    def test_case_and_punctuation_insensitive(self, directory):
        result = directory.search("guaranty-trust")
        assert [b["code"] for b in result["results"]] == ["058"]

    def test_spaces_ignored(self, directory):
        assert directory.search("firstbank")["total"] == 1

    def test_paging(self, directory):
        first = directory.search("bank", page=0)
        assert first["total"] == 9
        assert len(first["results"]) == 4
        assert first["has_next"] and not first["has_prev"]

        last = directory.search("bank", page=2)
        assert [b["name"] for b in last["results"]] == ["ZENITH BANK"]
        assert last["has_prev"] and not last["has_next"]

    def test_page_is_clamped(self, directory):
        assert directory.search("bank", page=-1)["page"] == 0
        assert directory.search("bank", page=10)["page"] == 2

    def test_no_match(self, directory):
        result = directory.search("xyz")
        assert result == {"results": [], "page": 0, "total": 0, "has_prev": False, "has_next": False}

    def test_results_only_carry_name_and_code(self, directory):
        assert directory.search("wema")["results"] == [{"name": "WEMA BANK", "code": "035"}]


class TestLoad:
    def test_packaged_list(self):
        directory = BankDirectory.load()
        assert len(directory) > 0
        assert directory.search("guaranty")["total"] == 1
        assert all(len(b["code"]) == 3 for b in json.loads(default_bank_list_path().read_text()))

    def test_custom_path(self, tmp_path):
        path = tmp_path / "banks.json"
        path.write_text(json.dumps(BANKS[:2]))
        assert len(BankDirectory.load(path)) == 2

    def test_missing_file_is_empty(self, tmp_path):
        directory = BankDirectory.load(tmp_path / "missing.json")
        assert len(directory) == 0
        assert directory.search("bank")["total"] == 0


def test_quick_picks():
    assert {k: v["code"] for k, v in QUICK_PICKS.items()} == {"2": "044", "3": "058", "4": "057"}
