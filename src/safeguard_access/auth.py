"""
Credential exchange against the appliance's rSTS identity endpoint.

Three logins are supported: username/password, client certificate and an
interactive browser login (authorization code with PKCE). Each one first
obtains an rSTS token and then exchanges it at Token/LoginResponse for the
appliance token that is sent with every API call.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import ssl
import webbrowser
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx
from aiohttp import web

from .config import (
    ClientConfig,
    LOCAL_PROVIDER_SCOPE,
    CERTIFICATE_PROVIDER_SCOPE,
    REDIRECT_WAIT_TIMEOUT,
)
from .connection import create_http_client, create_ssl_context
from .endpoint import EndpointCache
from .errors import AuthenticationError, ConfigurationError, TransportError, WaitTimeoutError
from .identity import ClientIdentity, load_client_identity_file
from .session import AuthModality, Credentials, Session, SessionStore

logger = logging.getLogger(__name__)

CertClientFactory = Callable[[ClientIdentity], httpx.AsyncClient]
BrowserOpener = Callable[[str], object]

# Used when the rSTS response carries no expires_in
DEFAULT_TOKEN_LIFETIME = 3600


def generate_code_verifier() -> str:
    """32 random bytes, base64url-encoded without padding."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def code_challenge_for(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class CallbackListener:
    """
    Local listener that receives the OAuth redirect.

    Exactly one request is honoured. A request carrying a code resolves
    ``code_received``; an error parameter, a missing code or a listener
    failure resolves ``failed`` with the exception to raise.
    """

    def __init__(self, port: int, ssl_context: Optional[ssl.SSLContext] = None, host: str = "localhost"):
        self.port = port
        self.host = host
        self.ssl_context = ssl_context
        loop = asyncio.get_running_loop()
        self.code_received: asyncio.Future = loop.create_future()
        self.failed: asyncio.Future = loop.create_future()
        self._runner: Optional[web.AppRunner] = None

    @property
    def handled(self) -> bool:
        return self.code_received.done() or self.failed.done()

    async def _handle_callback(self, request: web.Request) -> web.Response:
        if self.handled:
            return web.Response(status=410, text="This login has already been handled.")

        logger.info("Received callback request")
        error = request.query.get("error")
        if error:
            description = request.query.get("error_description", "")
            self.failed.set_result(AuthenticationError(f"{error}: {description}"))
            return web.Response(text="Authentication failed. You can close this window.")

        code = request.query.get("code")
        if not code:
            self.failed.set_result(AuthenticationError("no authorization code received"))
            return web.Response(status=400, text="Authentication failed. No authorization code received.")

        self.code_received.set_result(code)
        return web.Response(text="Authentication successful! You can close this window.")

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/callback", self._handle_callback)
        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port, ssl_context=self.ssl_context)
        try:
            await site.start()
        except OSError as e:
            self.failed.set_result(AuthenticationError(f"callback listener error: {e}"))
            return
        logger.info(f"Listening for the login redirect on port {self.port}")

    async def wait(self, timeout: float) -> str:
        """Return the authorization code, or raise the failure / a timeout."""
        done, _ = await asyncio.wait(
            {self.code_received, self.failed},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self.code_received in done:
            return self.code_received.result()
        if self.failed in done:
            raise self.failed.result()
        raise WaitTimeoutError(f"no login redirect received within {timeout}s")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None


class CredentialExchanger:
    """Performs logins and writes the resulting session into the store."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: SessionStore,
        appliance: EndpointCache,
        config: ClientConfig,
        cert_client_factory: Optional[CertClientFactory] = None,
        open_browser: BrowserOpener = webbrowser.open,
    ):
        self.http = http
        self.store = store
        self.appliance = appliance
        self.config = config
        self._cert_client_factory = cert_client_factory or self._default_cert_client
        self._open_browser = open_browser
        # Set after the first successful login; late waiters still see it
        self.authenticated = asyncio.Event()

    @property
    def token_url(self) -> str:
        return f"{self.appliance.read()}/RSTS/oauth2/token"

    @property
    def login_response_url(self) -> str:
        return f"{self.appliance.read()}/service/core/{self.config.api_version}/Token/LoginResponse"

    def authorization_url(self, code_challenge: str) -> str:
        query = urlencode({
            "response_type": "code",
            "code_challenge_method": "S256",
            "code_challenge": code_challenge,
            "redirect_uri": self.config.redirect_uri,
            "port": self.config.redirect_port,
        })
        return f"{self.appliance.read()}/RSTS/Login?{query}"

    def _default_cert_client(self, identity: ClientIdentity) -> httpx.AsyncClient:
        ssl_ctx = create_ssl_context(self.config.verify_ssl, self.config.ca_bundle, identity)
        return create_http_client(ssl_ctx, self.config.request_timeout)

    async def login_with_password(self, username: str, password: str) -> Session:
        """Log in with a local username and password."""
        logger.info(f"Making rSTS login request for {username}")
        rsts = await self._request_rsts_token(self.http, data={
            "grant_type": "password",
            "username": username,
            "password": password,
            "scope": LOCAL_PROVIDER_SCOPE,
        })
        user_token = await self._exchange(self.http, rsts["access_token"])
        return self._finish(rsts, user_token, AuthModality.PASSWORD, Credentials.for_password(username, password))

    async def login_with_certificate(
        self,
        cert_path: str,
        cert_password: str = "",
        provider_scope: str = CERTIFICATE_PROVIDER_SCOPE,
    ) -> Session:
        """
        Log in with a client certificate (PKCS#12 or PEM bundle).

        Raises:
            ConfigurationError: If the certificate file cannot be used.
            AuthenticationError: If the appliance rejects the certificate.
        """
        identity = load_client_identity_file(cert_path, cert_password)
        logger.info(f"Making rSTS certificate login request as {identity.subject}")

        async with self._cert_client_factory(identity) as client:
            rsts = await self._request_rsts_token(client, json={
                "grant_type": "client_credentials",
                "scope": provider_scope,
            })
            user_token = await self._exchange(client, rsts["access_token"])

        credentials = Credentials.for_certificate(cert_path, cert_password, provider_scope)
        return self._finish(rsts, user_token, AuthModality.CERTIFICATE, credentials)

    async def login_interactive(self, timeout: float = REDIRECT_WAIT_TIMEOUT) -> Session:
        """
        Log in through the browser using the authorization code flow with PKCE.

        Blocks until the redirect arrives, the listener fails, or *timeout*
        elapses. Sessions obtained this way cannot be renewed silently.
        """
        verifier = generate_code_verifier()
        challenge = code_challenge_for(verifier)

        listener = CallbackListener(self.config.redirect_port, self._redirect_ssl_context())
        await listener.start()
        try:
            if listener.failed.done():
                raise listener.failed.result()
            auth_url = self.authorization_url(challenge)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._open_browser, auth_url)
            logger.info("Please log in using your browser...")
            code = await listener.wait(timeout)
        finally:
            await listener.stop()

        logger.info("Authorization code received")
        rsts = await self._request_rsts_token(self.http, data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "code_verifier": verifier,
        })
        user_token = await self._exchange(self.http, rsts["access_token"])
        return self._finish(rsts, user_token, AuthModality.INTERACTIVE, Credentials())

    def _redirect_ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.config.redirect_cert:
            return None
        ssl_ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        try:
            ssl_ctx.load_cert_chain(self.config.redirect_cert, self.config.redirect_key)
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(f"Error loading redirect listener certificate: {e}") from e
        return ssl_ctx

    async def _post(self, client: httpx.AsyncClient, url: str, **kwargs) -> httpx.Response:
        try:
            return await client.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"request to {url} failed: {e}") from e

    async def _request_rsts_token(self, client: httpx.AsyncClient, **kwargs) -> dict:
        response = await self._post(client, self.token_url, **kwargs)
        if response.status_code != 200:
            raise AuthenticationError(
                f"rSTS login failed: {response.text}",
                status=response.status_code,
                body=response.text,
            )
        try:
            rsts = response.json()
        except ValueError as e:
            raise AuthenticationError(f"error decoding rSTS response: {e}") from e
        if not isinstance(rsts, dict):
            raise AuthenticationError(f"unexpected rSTS response: {type(rsts).__name__}")
        if not rsts.get("access_token") or not isinstance(rsts["access_token"], str):
            raise AuthenticationError("no access token received")
        expires_in = rsts.get("expires_in") or DEFAULT_TOKEN_LIFETIME
        try:
            rsts["expires_in"] = float(expires_in)
        except (TypeError, ValueError):
            raise AuthenticationError(f"invalid expires_in in rSTS response: {expires_in!r}") from None
        logger.debug(f"rSTS token received (expires in {rsts['expires_in']:.0f}s)")
        return rsts

    async def _exchange(self, client: httpx.AsyncClient, rsts_token: str) -> str:
        """Exchange an rSTS token for the appliance user token."""
        response = await self._post(
            client,
            self.login_response_url,
            json={"StsAccessToken": rsts_token},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            raise AuthenticationError(
                f"token exchange failed: {response.text}",
                status=response.status_code,
                body=response.text,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError(f"error decoding token response: {e}") from e
        if not isinstance(data, dict):
            raise AuthenticationError(f"unexpected token response: {type(data).__name__}")

        status = data.get("Status", "Success")
        user_token = data.get("UserToken")
        if status != "Success" or not user_token or not isinstance(user_token, str):
            raise AuthenticationError(f"token exchange failed: status {status}")
        return user_token

    def _finish(
        self,
        rsts: dict,
        user_token: str,
        modality: AuthModality,
        credentials: Credentials,
    ) -> Session:
        session = self.store.record_login(
            token=rsts["access_token"],
            session_token=user_token,
            valid_for=rsts["expires_in"],
            modality=modality,
            credentials=credentials,
            token_type=rsts.get("token_type", "Bearer"),
        )
        self.authenticated.set()
        logger.info(f"Login successful ({modality.value}), token valid for {int(session.valid_for)}s")
        return session
