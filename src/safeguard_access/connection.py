"""
Connection utilities for talking to the appliance.

Contains SSL context, HTTP client, websocket timeout and connector factory
functions shared by the REST dispatcher and the event stream.
"""

import logging
import os
import ssl
from typing import Mapping, Optional

import aiohttp
import httpx

from .config import get_bool_env, REQUEST_TIMEOUT, WS_CONNECT_TIMEOUT
from .identity import ClientIdentity

logger = logging.getLogger(__name__)


# Default to True for security, allow override via environment
VERIFY_SSL_DEFAULT = get_bool_env("SAFEGUARD_VERIFY_SSL", True)
ALLOW_INSECURE = get_bool_env("SAFEGUARD_ALLOW_INSECURE", False)
CA_BUNDLE_DEFAULT = os.environ.get("SAFEGUARD_CA_BUNDLE", "")


def create_ssl_context(
    verify: Optional[bool] = None,
    ca_bundle: Optional[str] = None,
    identity: Optional[ClientIdentity] = None,
) -> ssl.SSLContext:
    """
    Create an SSL context for appliance connections.

    Args:
        verify: Whether to verify SSL certificates. If None, uses
                SAFEGUARD_VERIFY_SSL environment variable (default: True).
        ca_bundle: Path to a custom CA certificate file (the appliance's
                   root certificate). If None, uses SAFEGUARD_CA_BUNDLE.
        identity: Optional client certificate to present during the handshake.

    Returns:
        ssl.SSLContext limited to TLS 1.2 and 1.3.

    Note:
        Disabling verification requires both SAFEGUARD_VERIFY_SSL=false and
        SAFEGUARD_ALLOW_INSECURE=1. If ALLOW_INSECURE is not set, the request
        to disable verification is ignored and a warning is logged.
    """
    if verify is None:
        verify = VERIFY_SSL_DEFAULT

    ssl_ctx = ssl.create_default_context()
    ssl_ctx.minimum_version = ssl.TLSVersion.TLSv1_2

    if not verify:
        if ALLOW_INSECURE:
            ssl_ctx.check_hostname = False
            ssl_ctx.verify_mode = ssl.CERT_NONE
            logger.warning(
                "TLS certificate verification is DISABLED. "
                "Use --ca-bundle or SAFEGUARD_CA_BUNDLE for a safer alternative."
            )
        else:
            logger.warning(
                "SAFEGUARD_VERIFY_SSL=false ignored: "
                "set SAFEGUARD_ALLOW_INSECURE=1 to confirm"
            )

    effective_ca_bundle = ca_bundle or CA_BUNDLE_DEFAULT
    if effective_ca_bundle:
        ssl_ctx.load_verify_locations(cafile=effective_ca_bundle)

    if identity is not None:
        identity.install(ssl_ctx)

    return ssl_ctx


def create_http_client(
    ssl_context: Optional[ssl.SSLContext] = None,
    timeout: float = REQUEST_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create the HTTP client used for logins and API calls.

    Args:
        ssl_context: SSL context; created from environment defaults if None.
        timeout: Per-request timeout in seconds.
        transport: Optional transport override (tests pass httpx.MockTransport).
    """
    if transport is not None:
        return httpx.AsyncClient(transport=transport, timeout=timeout)
    if ssl_context is None:
        ssl_context = create_ssl_context()
    return httpx.AsyncClient(verify=ssl_context, timeout=timeout)


def create_ws_timeout(connect_timeout: float = WS_CONNECT_TIMEOUT) -> aiohttp.ClientTimeout:
    """
    Create a ClientTimeout for the event stream.

    No total timeout: the connection stays open until closed or cancelled.
    """
    return aiohttp.ClientTimeout(
        total=None,
        connect=connect_timeout,
        sock_connect=connect_timeout,
    )


def create_ws_connector(ssl_context: Optional[ssl.SSLContext] = None) -> aiohttp.TCPConnector:
    """Create a TCPConnector for the event stream."""
    if ssl_context is None:
        ssl_context = create_ssl_context()
    return aiohttp.TCPConnector(ssl=ssl_context)


def build_auth_headers(
    session_token: Optional[str],
    default_headers: Optional[Mapping[str, str]] = None,
    extra: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """
    Build the headers sent with every authenticated request.

    Order: Authorization and Accept, then configured default headers, then
    per-request headers; Content-Type defaults to application/json.
    """
    headers = {"Accept": "application/json"}
    if session_token:
        headers["Authorization"] = f"Bearer {session_token}"
    if default_headers:
        headers.update(default_headers)
    if extra:
        headers.update(extra)
    if not any(key.lower() == "content-type" for key in headers):
        headers["Content-Type"] = "application/json"
    return headers
