"""
Thread-safe cache for an appliance origin (scheme, host, domain, port).

Two caches exist per client: the fixed appliance origin, cached forever, and
the cluster-leader origin, cached for a short time and re-resolved on expiry.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Cache duration that never expires
CACHE_FOREVER = -1

_DEFAULT_PORTS = {
    "http": "80",
    "https": "443",
}


def split_appliance_url(url: str) -> tuple[str, str, str, str]:
    """
    Split an origin URL into its components.

    The hostname is split on ".": the first label is the host, the remaining
    labels form the domain suffix (empty for a bare host name).

    Args:
        url: Origin such as https://appliance.example.com or http://10.0.0.5:8080

    Returns:
        Tuple of (protocol, host_label, domain_suffix, port). A missing port
        becomes 80 for http and 443 for https.

    Raises:
        ConfigurationError: If the URL has no host or an unknown scheme.
    """
    try:
        parsed = urlsplit(url)
        port = parsed.port
    except ValueError as e:
        raise ConfigurationError(f"invalid URL format: {e}") from e

    protocol = parsed.scheme
    host = parsed.hostname or ""
    if not host:
        raise ConfigurationError(f"invalid URL format: no host in {url!r}")

    if protocol not in _DEFAULT_PORTS:
        raise ConfigurationError(f"unknown protocol: {protocol}")

    host_label, _, domain_suffix = host.partition(".")
    return protocol, host_label, domain_suffix, str(port) if port else _DEFAULT_PORTS[protocol]


def build_leader_url(appliance_url: str, leader_label: str) -> str:
    """
    Derive the cluster leader's origin from the appliance origin.

    The leader's host label replaces the appliance's; scheme, domain suffix
    and port are kept. The domain segment is omitted when the appliance has
    none, e.g. https://appliance -> https://leader:443.
    """
    protocol, _, domain_suffix, port = split_appliance_url(appliance_url)
    if not domain_suffix:
        return f"{protocol}://{leader_label}:{port}"
    return f"{protocol}://{leader_label}.{domain_suffix}:{port}"


@dataclass(frozen=True)
class Origin:
    """One immutable snapshot of a cached origin."""
    protocol: str = ""
    host_label: str = ""
    domain_suffix: str = ""
    port: str = ""
    url: str = ""
    cached_at: float = 0.0
    cache_duration: float = 0

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.cache_duration == 0:
            return True
        if self.cache_duration < 0:
            return False
        now = time.monotonic() if now is None else now
        return now - self.cached_at > self.cache_duration


class EndpointCache:
    """Holds a named origin; all fields are replaced together on write."""

    def __init__(self, name: str, url: Optional[str] = None, cache_duration: float = CACHE_FOREVER):
        self.name = name
        self._lock = threading.Lock()
        self._origin = Origin()
        if url:
            self.write(url, cache_duration)

    def read(self) -> str:
        """Return the current origin URL ("" if never written)."""
        with self._lock:
            return self._origin.url

    def snapshot(self) -> Origin:
        """Return all fields of the current origin as one consistent value."""
        with self._lock:
            return self._origin

    def write(self, url: str, cache_duration: float) -> None:
        """
        Parse *url* and atomically replace the cached origin.

        Raises:
            ConfigurationError: If the URL cannot be parsed.
        """
        url = url.rstrip("/")
        protocol, host_label, domain_suffix, port = split_appliance_url(url)
        origin = Origin(
            protocol=protocol,
            host_label=host_label,
            domain_suffix=domain_suffix,
            port=port,
            url=url,
            cached_at=time.monotonic(),
            cache_duration=cache_duration,
        )
        with self._lock:
            self._origin = origin
        logger.debug(f"{self.name} origin set to {url} (cache {cache_duration}s)")

    def is_expired(self) -> bool:
        """True if the cache must be re-resolved before use."""
        with self._lock:
            origin = self._origin
        return origin.is_expired()
