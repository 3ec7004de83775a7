"""
errors.py — Exception Taxonomy for the Checkout Service

Every error that can end a checkout request derives from `CheckoutError` and
carries the HTTP status the API layer answers with. Errors that must never
escape their component (a single quote provider failing, a backend call
failing for one item) have their own base classes and are handled where they
are raised.
"""


class CheckoutError(Exception):
    """Base class for errors that reject a whole batch."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CartValidationError(CheckoutError):
    """Empty or malformed cart. Raised before any side effect."""


class CollectionResolutionError(CheckoutError):
    """An item has no collection id, or no wallet can be resolved for it."""


class SettlementCurrencyError(CheckoutError):
    """
    Items of one batch would settle in different currencies.

    A batch carries one settlement currency, one subtotal and one receiver
    payment, so a cart mixing strict-token collections with ordinary ones
    (or two different strict tokens) cannot be paid in a single transfer and
    is rejected before any order exists. The buyer checks out separately.
    """


class RateUnavailableError(CheckoutError):
    """Every quote provider failed for a conversion the checkout needs."""
    status_code = 503


class BatchCreationError(CheckoutError):
    """Order creation failed for every item of the batch."""


class QuoteUnavailable(Exception):
    """A single quote provider could not produce a usable rate."""


class StoreError(Exception):
    """A backend (order store, catalog, RPC node) call failed."""
