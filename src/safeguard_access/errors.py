"""
Exception types raised by the access layer.

Every error derives from SafeguardError so callers can catch the whole family,
while the subclasses keep transport, authentication, protocol and state
failures apart.
"""

from typing import Optional


class SafeguardError(Exception):
    """Base class for all access-layer errors."""
    pass


class ConfigurationError(SafeguardError):
    """Raised for malformed origins, unknown schemes or unusable certificate bundles."""
    pass


class TransportError(SafeguardError):
    """Raised when the appliance cannot be reached (connection or TLS failure)."""
    pass


class AuthenticationError(SafeguardError):
    """Raised when a login or token exchange is rejected."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class RequestError(SafeguardError):
    """Raised when the appliance answers with a status outside 200/201/202."""

    def __init__(self, method: str, url: str, status: int, body: str):
        super().__init__(f"error during {method} request to {url}: HTTP {status} - {body}")
        self.method = method
        self.url = url
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status >= 500 or self.status in (408, 429)


class AccessRequestStateError(SafeguardError):
    """Raised when a secret cannot be fetched in the request's current state."""

    def __init__(self, state: str):
        super().__init__(f"cannot check out password for access request in state: {state}")
        self.state = state


class WaitTimeoutError(SafeguardError):
    """Raised when a wait deadline elapses (secret polling or redirect listener)."""
    pass


class WaitCancelledError(SafeguardError):
    """Raised when the caller's stop signal ends a wait early."""
    pass
