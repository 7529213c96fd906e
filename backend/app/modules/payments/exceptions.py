# app/modules/payments/exceptions.py
from app.core.exceptions import DataError, MalformedPayloadError


class MalformedMetadataError(MalformedPayloadError):
    """Checkout metadata attached to the provider object is missing or unparseable."""
    pass


class OfferNotFoundError(DataError):
    def __init__(self, slug: str | None):
        super().__init__(f"Offer '{slug}' not found.")
        self.slug = slug


class SellerNotConfiguredError(DataError):
    def __init__(self, owner_id: str, provider: str):
        super().__init__(f"Seller '{owner_id}' has no {provider} account configured.")
        self.owner_id = owner_id
        self.provider = provider


class PaymentDeclinedError(Exception):
    """The provider explicitly declined a charge. Not a system failure."""
    def __init__(self, reason: str, message: str = "payment declined", status: str | None = None):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.status = status
