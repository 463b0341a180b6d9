from tagpay_ussd.states import Step


class TestStep:
    def test_all_steps_exist(self):
        expected = {
            "start", "main-menu",
            "tagpay-account", "tagpay-amount", "tagpay-pin",
            "bank-menu", "bank-search", "bank-search-select",
            "bank-account", "bank-amount", "bank-pin",
            "manage-pin-menu", "set-pin", "set-pin-confirm",
            "change-pin-old", "change-pin-new", "change-pin-confirm",
        }
        assert {s.value for s in Step} == expected

    def test_parse_known_and_unknown(self):
        assert Step.parse("bank-pin") is Step.BANK_PIN
        assert Step.parse(Step.SET_PIN) is Step.SET_PIN
        assert Step.parse("airtime") is None
        assert Step.parse(None) is None

    def test_handler_name(self):
        assert Step.BANK_SEARCH_SELECT.handler_name == "_handle_bank_search_select"
        assert Step.START.handler_name == "_handle_start"

    def test_secret_steps(self):
        secret = {s for s in Step if s.takes_secret}
        assert Step.TAGPAY_PIN in secret
        assert Step.BANK_PIN in secret
        assert Step.CHANGE_PIN_CONFIRM in secret
        assert Step.BANK_AMOUNT not in secret


class TestEveryStepHasAHandler:
    def test_machine_handles_every_step(self, machine):
        for step in Step:
            assert callable(getattr(machine, step.handler_name, None)), step
