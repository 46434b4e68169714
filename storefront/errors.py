"""Error taxonomy for the storefront core.

Every error is recovered at the component boundary (the FastAPI handlers in
``main``); none of them is fatal to the process.
"""


class StorefrontError(Exception):
    """Base for all storefront errors."""

    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    """Bad user input. Raised before any network call is made."""

    status_code = 422

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class NetworkError(StorefrontError):
    """Transport or order service failure. Message is shown to the user verbatim."""

    status_code = 502


class AmbiguousSuccessError(StorefrontError):
    """The order was almost certainly created but its invoice number is unrecoverable."""

    status_code = 202

    def __init__(self, message: str = "Order created but invoice number not found. Please check your orders.", response=None):
        super().__init__(message)
        self.response = response


class NotFoundError(StorefrontError):
    status_code = 404


class NotOwnedError(StorefrontError):
    status_code = 403


class DomainError(StorefrontError):
    """Business rule violation, e.g. cancelling an order whose serials are assigned."""

    status_code = 409
