# app/core/exceptions.py
# Core exceptions shared across modules.
# Domain-specific exceptions live in each module's exceptions.py


class EngineError(Exception):
    """Base exception for the payment engine."""
    pass


# --- Transient (the caller or provider retries later) ---

class RepositoryError(EngineError):
    """A data-store read or write failed."""
    pass


class IntegrationError(EngineError):
    """A downstream webhook or conversion API call failed."""
    def __init__(self, channel: str, message: str, status_code: int | None = None):
        super().__init__(f"[{channel}] {message}")
        self.channel = channel
        self.status_code = status_code


class ProviderAPIError(EngineError):
    """A payment provider API call failed (network, 5xx, unexpected payload)."""
    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider} API error: {message}")
        self.provider = provider
        self.status_code = status_code


# --- Authentication (never retried) ---

class WebhookAuthenticationError(EngineError):
    """Inbound webhook signature missing or invalid."""
    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider} webhook rejected: {reason}")
        self.provider = provider
        self.reason = reason


# --- Data errors (acknowledged, logged, not retried) ---

class DataError(EngineError):
    """Permanent problem with the event content or referenced records."""
    pass


class MalformedPayloadError(DataError):
    """The webhook body or its metadata could not be parsed."""
    pass


# --- Capacity (retryable by the provider) ---

class CapacityError(EngineError):
    """The engine is shedding load."""
    retry_after_seconds: int = 5


class LimiterTimeoutError(CapacityError):
    def __init__(self, name: str, timeout: float):
        super().__init__(f"Limiter '{name}' timed out after {timeout:.1f}s waiting for a permit.")
        self.name = name
        self.timeout = timeout


class LimiterQueueFullError(CapacityError):
    def __init__(self, name: str, max_waiting: int):
        super().__init__(f"Limiter '{name}' queue is full ({max_waiting} waiting).")
        self.name = name
        self.max_waiting = max_waiting
