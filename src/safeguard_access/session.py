"""
Session state for the access layer.

SessionStore holds the current appliance token, when it was issued, how long
it is valid, and what is needed to log in again silently. The state is kept
as one immutable Session snapshot that is swapped under a lock, so readers on
any thread never see fields from two different logins.
"""

import dataclasses
import enum
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .config import TOKEN_ENV_VAR, TOKEN_EXPIRES_ENV_VAR, CERTIFICATE_PROVIDER_SCOPE
from .errors import AuthenticationError

logger = logging.getLogger(__name__)


class AuthModality(str, enum.Enum):
    """How the current session was obtained."""
    PASSWORD = "password"
    CERTIFICATE = "certificate"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class Credentials:
    """Material needed to repeat a login without user interaction."""
    username: str = ""
    password: str = field(default="", repr=False)
    cert_path: str = ""
    cert_password: str = field(default="", repr=False)
    provider_scope: str = ""

    @classmethod
    def for_password(cls, username: str, password: str) -> "Credentials":
        return cls(username=username, password=password)

    @classmethod
    def for_certificate(
        cls,
        cert_path: str,
        cert_password: str,
        provider_scope: str = CERTIFICATE_PROVIDER_SCOPE,
    ) -> "Credentials":
        return cls(cert_path=cert_path, cert_password=cert_password, provider_scope=provider_scope)


@dataclass(frozen=True)
class Session:
    """Immutable snapshot of the authenticated state."""
    token: str = field(default="", repr=False)
    session_token: str = field(default="", repr=False)
    token_type: str = "Bearer"
    issued_at: float = 0.0
    valid_for: float = 0.0
    modality: Optional[AuthModality] = None
    credentials: Credentials = field(default_factory=Credentials)

    def expires_at(self) -> float:
        return self.issued_at + self.valid_for

    def is_expired(self, now: Optional[float] = None) -> bool:
        if not self.issued_at:
            return True
        now = time.time() if now is None else now
        return now > self.expires_at()

    def remaining(self, now: Optional[float] = None) -> float:
        if not self.issued_at:
            return 0.0
        now = time.time() if now is None else now
        return self.expires_at() - now


class SessionStore:
    """Thread-safe holder for the current Session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._session = Session()

    def snapshot(self) -> Session:
        """Return the whole current session as one consistent value."""
        with self._lock:
            return self._session

    def _update(self, **changes) -> None:
        with self._lock:
            self._session = dataclasses.replace(self._session, **changes)

    def get_token(self) -> str:
        """Raw identity-provider (rSTS) token of the last login."""
        return self.snapshot().token

    def set_token(self, token: str) -> None:
        self._update(token=token)

    def get_session_token(self) -> str:
        """Appliance-scoped token sent as the bearer credential."""
        return self.snapshot().session_token

    def set_session_token(self, session_token: str, valid_for: float, issued_at: Optional[float] = None) -> None:
        """Store a new appliance token together with its issue time and lifetime."""
        self._update(
            session_token=session_token,
            issued_at=time.time() if issued_at is None else issued_at,
            valid_for=valid_for,
        )

    def get_credentials(self) -> tuple[Optional[AuthModality], Credentials]:
        session = self.snapshot()
        return session.modality, session.credentials

    def set_credentials(self, modality: Optional[AuthModality], credentials: Credentials) -> None:
        self._update(modality=modality, credentials=credentials)

    def record_login(
        self,
        token: str,
        session_token: str,
        valid_for: float,
        modality: Optional[AuthModality],
        credentials: Credentials,
        token_type: str = "Bearer",
    ) -> Session:
        """Replace the session wholesale after a successful login."""
        session = Session(
            token=token,
            session_token=session_token,
            token_type=token_type,
            issued_at=time.time(),
            valid_for=valid_for,
            modality=modality,
            credentials=credentials,
        )
        with self._lock:
            self._session = session
        return session

    def clear(self) -> None:
        with self._lock:
            self._session = Session()

    def expires_at(self) -> float:
        return self.snapshot().expires_at()

    def is_expired(self) -> bool:
        return self.snapshot().is_expired()

    def remaining(self) -> float:
        """Seconds left on the token; zero or negative when unset or expired."""
        return self.snapshot().remaining()


def export_session(store: SessionStore) -> None:
    """Publish the current token in the environment for child processes."""
    session = store.snapshot()
    if not session.session_token:
        raise AuthenticationError("access token is empty")
    os.environ[TOKEN_ENV_VAR] = session.session_token
    os.environ[TOKEN_EXPIRES_ENV_VAR] = str(int(session.expires_at()))
    logger.info(f"Access token saved to environment variable: {TOKEN_ENV_VAR}")


def restore_session(store: SessionStore) -> Session:
    """
    Load a token previously published with export_session().

    The restored session has no modality, so it is never renewed.

    Raises:
        AuthenticationError: If no token is exported or it has already expired.
    """
    token = os.environ.get(TOKEN_ENV_VAR, "")
    if not token:
        raise AuthenticationError(f"{TOKEN_ENV_VAR} is not set")

    try:
        expires = float(os.environ.get(TOKEN_EXPIRES_ENV_VAR, ""))
    except ValueError:
        raise AuthenticationError(f"{TOKEN_EXPIRES_ENV_VAR} is missing or invalid") from None

    now = time.time()
    if expires <= now:
        raise AuthenticationError("exported access token has expired")

    return store.record_login(
        token="",
        session_token=token,
        valid_for=expires - now,
        modality=None,
        credentials=Credentials(),
    )
