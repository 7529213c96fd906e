# app/modules/upsell/exceptions.py


class UpsellError(Exception):
    """Base exception for the one-click upsell module."""
    pass


class UpsellSessionNotFoundError(UpsellError):
    """Token unknown, already used, or older than the session TTL."""
    def __init__(self, token: str | None):
        super().__init__("Upsell session not found or expired.")
        self.token = token


class UpsellNotEligibleError(UpsellError):
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message
