"""
The client handle.

A SafeguardClient owns everything one appliance connection needs: the
session, the appliance and leader origins, the HTTP client, the background
refresher and any event streams. Construct one per appliance and pass it to
whatever needs it.
"""

import asyncio
import json
import logging
import ssl
import webbrowser
from typing import Optional, Union

import httpx

from .access_requests import AccessRequest, Bound, SecretWaiter
from .auth import BrowserOpener, CertClientFactory, CredentialExchanger
from .config import CERTIFICATE_PROVIDER_SCOPE, REDIRECT_WAIT_TIMEOUT, ClientConfig
from .connection import create_http_client, create_ssl_context
from .dispatch import Body, RequestDispatcher
from .endpoint import EndpointCache
from .errors import AuthenticationError, ConfigurationError, RequestError
from .events import EventStream
from .refresh import SessionRefresher
from .session import Session, SessionStore, export_session, restore_session

logger = logging.getLogger(__name__)


class SafeguardClient:
    """
    Authenticated access to one appliance.

    Use as an async context manager so background tasks are started and
    stopped with the client:

        async with SafeguardClient(ClientConfig(appliance_url="https://pam")) as client:
            await client.login_with_password("admin", "secret")
            me = await client.me()
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cert_client_factory: Optional[CertClientFactory] = None,
        open_browser: BrowserOpener = webbrowser.open,
    ):
        if not config.appliance_url:
            raise ConfigurationError("appliance URL is required")

        self.config = config
        self.store = SessionStore()
        self.appliance = EndpointCache("appliance", config.appliance_url)
        self.leader = EndpointCache("leader")

        self.ssl_context: Optional[ssl.SSLContext] = None
        if transport is None:
            self.ssl_context = create_ssl_context(config.verify_ssl, config.ca_bundle)
        self.http = create_http_client(self.ssl_context, config.request_timeout, transport)

        self.dispatcher = RequestDispatcher(
            self.http,
            self.store,
            self.appliance,
            self.leader,
            config.api_version,
            config.leader_cache_seconds,
            config.default_headers,
        )
        self.exchanger = CredentialExchanger(
            self.http,
            self.store,
            self.appliance,
            config,
            cert_client_factory=cert_client_factory,
            open_browser=open_browser,
        )
        self.refresher = SessionRefresher(self.exchanger, self.store)
        self.secrets = SecretWaiter(self.dispatcher, config.poll_interval)

        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def __aenter__(self) -> "SafeguardClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def start(self) -> None:
        """Start the background session refresher."""
        if not self._tasks:
            self._tasks.append(asyncio.create_task(self.refresher.run(self._stop_event)))

    async def close(self) -> None:
        """Stop background tasks and release the HTTP client."""
        self._stop_event.set()
        for task in self._tasks:
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks.clear()
        await self.http.aclose()

    # Authentication

    async def login_with_password(self, username: str, password: str) -> Session:
        return await self.exchanger.login_with_password(username, password)

    async def login_with_certificate(
        self,
        cert_path: str,
        cert_password: str = "",
        provider_scope: str = CERTIFICATE_PROVIDER_SCOPE,
    ) -> Session:
        return await self.exchanger.login_with_certificate(cert_path, cert_password, provider_scope)

    async def login_interactive(self, timeout: float = REDIRECT_WAIT_TIMEOUT) -> Session:
        return await self.exchanger.login_interactive(timeout)

    @property
    def session(self) -> Session:
        return self.store.snapshot()

    async def validate_token(self) -> dict:
        """
        Check the current token against the appliance.

        Raises:
            AuthenticationError: If there is no token or the appliance rejects it.
        """
        if not self.store.get_session_token():
            raise AuthenticationError("access token is empty")
        try:
            body = await self.dispatcher.get("me")
        except RequestError as e:
            raise AuthenticationError(f"token validation failed: {e}", status=e.status, body=e.body) from e
        return json.loads(body)

    async def me(self) -> dict:
        """The user the current token belongs to."""
        return await self.validate_token()

    def export_session(self) -> None:
        export_session(self.store)

    def restore_session(self) -> Session:
        session = restore_session(self.store)
        logger.info(f"Restored access token from environment, valid for {int(session.valid_for)}s")
        return session

    # Requests

    async def get(self, path: str, params=None, headers=None) -> bytes:
        return await self.dispatcher.get(path, params, headers)

    async def post(self, path: str, body: Body = None, headers=None) -> bytes:
        return await self.dispatcher.post(path, body, headers)

    async def put(self, path: str, body: Body = None, headers=None) -> bytes:
        return await self.dispatcher.put(path, body, headers)

    async def delete(self, path: str, headers=None) -> bytes:
        return await self.dispatcher.delete(path, headers)

    # Access requests

    async def get_access_request(self, request_id: str) -> Bound[AccessRequest]:
        request = await self.secrets.get_access_request(request_id)
        return Bound(request, self)

    async def check_out_password(
        self,
        request: Union[AccessRequest, Bound[AccessRequest]],
        wait: bool = False,
        timeout: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> str:
        if isinstance(request, Bound):
            request = request.value
        return await self.secrets.check_out_password(request, wait, timeout, stop_event or self._stop_event)

    # Events

    def event_stream(self, queue_size: Optional[int] = None) -> EventStream:
        """Create an event stream subscribed through the cluster leader."""
        return EventStream(
            self.store,
            self.dispatcher.resolver.resolve_write_origin,
            self.ssl_context,
            queue_size=queue_size or self.config.event_queue_size,
        )

    def start_events(self, queue_size: Optional[int] = None) -> EventStream:
        """Create an event stream and run it until the client is closed."""
        stream = self.event_stream(queue_size)
        self._tasks.append(asyncio.create_task(stream.run(self._stop_event)))
        return stream
