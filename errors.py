"""
error taxonomy for the promotions engine.

business-rule failures subclass PromotionError (a ValueError, so callers that
only know "bad input" still catch them). storage failures are a separate
hierarchy: they are never a reason to grant money.
"""


class PromotionError(ValueError):
    code = "promotion_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"code": self.code, "detail": self.message}


class IneligibleOffer(PromotionError):
    code = "ineligible_offer"


class MutuallyExclusive(PromotionError):
    code = "mutually_exclusive"


class ExceedsLimit(PromotionError):
    code = "exceeds_limit"


class InvalidState(PromotionError):
    code = "invalid_state"


class InsufficientFunds(PromotionError):
    code = "insufficient_funds"


class NotFound(PromotionError):
    code = "not_found"


class MinimumOrderNotMet(PromotionError):
    code = "minimum_order_not_met"


class StorageError(Exception):
    """a store round-trip failed (timeout, I/O, driver error)."""

    code = "storage_error"


class ConcurrentUpdate(StorageError):
    """a conditional write lost a race against another writer."""

    code = "concurrent_update"


class LedgerMismatch(StorageError):
    """ledger balance and the customer's live balance disagree."""

    code = "ledger_mismatch"
