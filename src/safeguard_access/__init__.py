"""
Client-side access layer for a Safeguard privileged-access appliance.

Authenticates a caller, keeps a renewable session token, routes requests to
the right cluster node and waits for asynchronously provisioned secrets.
"""

__version__ = "0.3.0"

from .errors import (
    SafeguardError,
    ConfigurationError,
    TransportError,
    AuthenticationError,
    RequestError,
    AccessRequestStateError,
    WaitTimeoutError,
    WaitCancelledError,
)
from .config import ClientConfig
from .endpoint import EndpointCache, split_appliance_url, build_leader_url
from .session import AuthModality, Credentials, SessionStore
from .client import SafeguardClient
from .access_requests import AccessRequest, Bound, RequestPhase, classify_state
from .events import Event, EventStream

__all__ = [
    "__version__",
    # Errors
    "SafeguardError",
    "ConfigurationError",
    "TransportError",
    "AuthenticationError",
    "RequestError",
    "AccessRequestStateError",
    "WaitTimeoutError",
    "WaitCancelledError",
    # Configuration and state
    "ClientConfig",
    "EndpointCache",
    "split_appliance_url",
    "build_leader_url",
    "AuthModality",
    "Credentials",
    "SessionStore",
    # Client handle
    "SafeguardClient",
    # Secret checkout
    "AccessRequest",
    "Bound",
    "RequestPhase",
    "classify_state",
    # Events
    "Event",
    "EventStream",
]
