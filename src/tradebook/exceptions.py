from django.core.exceptions import ValidationError


class TradebookError(ValidationError):
    """Base class for every rejected engine operation.

    Subclasses Django's ValidationError so callers can surface the message
    through forms and admin like any other validation failure.
    """

    default_code = "invalid"

    def __init__(self, message, code=None, params=None):
        super().__init__(message, code=code or self.default_code, params=params)


class InsufficientStock(TradebookError):
    default_code = "insufficient_stock"


class QuantityExceedsRemaining(TradebookError):
    default_code = "quantity_exceeds_remaining"


class InvalidAmount(TradebookError):
    default_code = "invalid_amount"


class AccountNotFound(TradebookError):
    default_code = "account_not_found"


class PartyNotFound(TradebookError):
    default_code = "party_not_found"


class ReadOnlyHistorical(TradebookError):
    default_code = "read_only_historical"


class InsufficientBalance(TradebookError):
    default_code = "insufficient_balance"


class InvalidTransition(TradebookError):
    default_code = "invalid_transition"


class UnbalancedPosting(TradebookError):
    default_code = "unbalanced_posting"
