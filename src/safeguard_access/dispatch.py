"""
Request routing and dispatch.

Reads go to the appliance origin. Writes go to the cluster leader, whose
origin is discovered on demand and cached for a short time. POST is first
tried against the appliance origin and retried once against the leader,
because some deployments only expose the leader behind a load balancer.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import httpx

from .connection import build_auth_headers
from .endpoint import EndpointCache, build_leader_url
from .errors import RequestError, SafeguardError, TransportError
from .redact import safe_headers, safe_response_body
from .session import SessionStore

logger = logging.getLogger(__name__)

ACCEPTED_STATUSES = (200, 201, 202)

Body = Union[bytes, str, Mapping[str, Any], list, None]
LeaderLookup = Callable[[], Awaitable[str]]


class EndpointResolver:
    """Chooses the origin a request should target."""

    def __init__(
        self,
        appliance: EndpointCache,
        leader: EndpointCache,
        lookup_leader: LeaderLookup,
        leader_cache_seconds: float,
    ):
        self.appliance = appliance
        self.leader = leader
        self._lookup_leader = lookup_leader
        self._leader_cache_seconds = leader_cache_seconds

    def resolve_read_origin(self) -> str:
        """Read traffic may safely target any node."""
        return self.appliance.read()

    async def resolve_write_origin(self) -> str:
        """Return the leader origin, refreshing it first when the cache expired."""
        if self.leader.is_expired():
            await self.refresh_leader()
        # No leader known yet: the appliance is the best remaining guess
        return self.leader.read() or self.appliance.read()

    async def refresh_leader(self) -> None:
        """Re-discover the leader; on failure the stale origin is kept."""
        try:
            label = await self._lookup_leader()
            url = build_leader_url(self.appliance.read(), label)
        except SafeguardError as e:
            logger.error(f"Failed to get cluster leader host name: {e}")
            return

        previous = self.leader.read()
        self.leader.write(url, self._leader_cache_seconds)
        if previous != url:
            logger.debug(f"Cluster leader changed: {previous or '(none)'} -> {url}")


def _encode_body(body: Body) -> Optional[bytes]:
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(body).encode("utf-8")


class RequestDispatcher:
    """Sends authenticated API calls and returns the raw response body."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: SessionStore,
        appliance: EndpointCache,
        leader: EndpointCache,
        api_version: str,
        leader_cache_seconds: float,
        default_headers: Optional[Mapping[str, str]] = None,
    ):
        self.http = http
        self.store = store
        self.api_version = api_version
        self.default_headers = dict(default_headers or {})
        self.resolver = EndpointResolver(appliance, leader, self._lookup_leader, leader_cache_seconds)

    def root_url(self, origin: str) -> str:
        return f"{origin}/service/core/{self.api_version}"

    async def get(self, path: str, params: Optional[Mapping[str, str]] = None,
                  headers: Optional[Mapping[str, str]] = None) -> bytes:
        origin = self.resolver.resolve_read_origin()
        return await self._send("GET", origin, path, None, params, headers)

    async def post(self, path: str, body: Body = None,
                   headers: Optional[Mapping[str, str]] = None) -> bytes:
        """POST to the appliance origin, retrying once on the leader origin."""
        origin = self.resolver.resolve_read_origin()
        try:
            return await self._send("POST", origin, path, body, None, headers)
        except SafeguardError as e:
            logger.debug(f"POST {path} failed on read-only URL ({e}), retrying on read-write URL")

        origin = await self.resolver.resolve_write_origin()
        try:
            return await self._send("POST", origin, path, body, None, headers)
        except SafeguardError as e:
            logger.error(f"POST request failed on read-write URL {self.root_url(origin)}/{path}: {e}")
            raise

    async def put(self, path: str, body: Body = None,
                  headers: Optional[Mapping[str, str]] = None) -> bytes:
        origin = await self.resolver.resolve_write_origin()
        return await self._send("PUT", origin, path, body, None, headers)

    async def delete(self, path: str, headers: Optional[Mapping[str, str]] = None) -> bytes:
        origin = await self.resolver.resolve_write_origin()
        return await self._send("DELETE", origin, path, None, None, headers)

    async def _lookup_leader(self) -> str:
        response = await self.get(
            "Cluster/Members",
            params={"filter": "IsLeader eq true", "count": "false", "fields": "Name"},
        )
        try:
            members = json.loads(response)
            return members[0]["Name"]
        except (ValueError, LookupError, TypeError):
            raise SafeguardError("no cluster leader found") from None

    async def _send(
        self,
        method: str,
        origin: str,
        path: str,
        body: Body,
        params: Optional[Mapping[str, str]],
        headers: Optional[Mapping[str, str]],
    ) -> bytes:
        url = f"{self.root_url(origin)}/{path}"
        request_headers = build_auth_headers(self.store.get_session_token(), self.default_headers, headers)
        logger.debug(f"Sending {method} {url} headers={safe_headers(request_headers)}")

        try:
            response = await self.http.request(
                method, url, content=_encode_body(body), params=params, headers=request_headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"Request failed: {method} {url}: {type(e).__name__}: {e}")
            raise TransportError(f"request failed: {e}") from e

        logger.debug(
            f"Response {response.status_code} for {method} {url} "
            f"body={safe_response_body(response.content, path)}"
        )

        if response.status_code not in ACCEPTED_STATUSES:
            raise RequestError(method, url, response.status_code, safe_response_body(response.text, path))

        return response.content
