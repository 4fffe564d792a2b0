class SpecSheetError(Exception):
    """Base error for the app. `message` is safe to show to the merchant."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SpecSheetError):
    """Bad input or a conflicting write; raised before anything is persisted."""


class NotFoundError(SpecSheetError):
    pass


class ShopifyAPIError(SpecSheetError):
    """A Shopify Admin API round-trip failed or returned GraphQL errors."""
