from enum import Enum

# Steps whose input is a PIN and must never be echoed to logs
SECRET_INPUT_STEPS = {
    "tagpay-pin", "bank-pin", "set-pin", "set-pin-confirm",
    "change-pin-old", "change-pin-new", "change-pin-confirm",
}


class Step(Enum):
    START = "start"
    MAIN_MENU = "main-menu"
    TAGPAY_ACCOUNT = "tagpay-account"
    TAGPAY_AMOUNT = "tagpay-amount"
    TAGPAY_PIN = "tagpay-pin"
    BANK_MENU = "bank-menu"
    BANK_SEARCH = "bank-search"
    BANK_SEARCH_SELECT = "bank-search-select"
    BANK_ACCOUNT = "bank-account"
    BANK_AMOUNT = "bank-amount"
    BANK_PIN = "bank-pin"
    MANAGE_PIN_MENU = "manage-pin-menu"
    SET_PIN = "set-pin"
    SET_PIN_CONFIRM = "set-pin-confirm"
    CHANGE_PIN_OLD = "change-pin-old"
    CHANGE_PIN_NEW = "change-pin-new"
    CHANGE_PIN_CONFIRM = "change-pin-confirm"

    @classmethod
    def parse(cls, value) -> "Step | None":
        """Return the Step for a stored value, or None if it is not a known step."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def takes_secret(self) -> bool:
        return self.value in SECRET_INPUT_STEPS

    @property
    def handler_name(self) -> str:
        return "_handle_" + self.value.replace("-", "_")
