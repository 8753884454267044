"""
Background session renewal.

SessionRefresher waits for the first login, then renews the token shortly
before it expires by repeating the login that produced it. How a modality is
renewed is decided by a RenewalStrategy looked up in RENEWAL_STRATEGIES.
"""

import asyncio
import logging
from typing import Optional, Protocol

from .auth import CredentialExchanger
from .config import MIN_REFRESH_INTERVAL, REFRESH_MARGIN
from .errors import SafeguardError
from .session import AuthModality, Credentials, SessionStore

logger = logging.getLogger(__name__)


class RenewalStrategy(Protocol):
    async def renew(self, exchanger: CredentialExchanger, credentials: Credentials) -> None:
        ...


class PasswordRenewal:
    async def renew(self, exchanger: CredentialExchanger, credentials: Credentials) -> None:
        await exchanger.login_with_password(credentials.username, credentials.password)


class CertificateRenewal:
    async def renew(self, exchanger: CredentialExchanger, credentials: Credentials) -> None:
        await exchanger.login_with_certificate(
            credentials.cert_path,
            credentials.cert_password,
            credentials.provider_scope,
        )


class InteractiveRenewal:
    """Browser logins need the user; there is nothing to do silently."""

    async def renew(self, exchanger: CredentialExchanger, credentials: Credentials) -> None:
        logger.info("Interactive session cannot be renewed silently, skipping")


RENEWAL_STRATEGIES: dict[AuthModality, RenewalStrategy] = {
    AuthModality.PASSWORD: PasswordRenewal(),
    AuthModality.CERTIFICATE: CertificateRenewal(),
    AuthModality.INTERACTIVE: InteractiveRenewal(),
}


def refresh_interval(remaining: float, margin: float = REFRESH_MARGIN,
                     minimum: float = MIN_REFRESH_INTERVAL) -> float:
    """Time to wait before the next renewal, never below *minimum*."""
    return max(remaining - margin, minimum)


class SessionRefresher:
    """Keeps the session in a SessionStore warm."""

    def __init__(
        self,
        exchanger: CredentialExchanger,
        store: SessionStore,
        strategies: Optional[dict[AuthModality, RenewalStrategy]] = None,
        margin: float = REFRESH_MARGIN,
        min_interval: float = MIN_REFRESH_INTERVAL,
    ):
        self.exchanger = exchanger
        self.store = store
        self.strategies = strategies if strategies is not None else RENEWAL_STRATEGIES
        self.margin = margin
        self.min_interval = min_interval

    async def renew_once(self) -> bool:
        """
        Run one renewal using the modality recorded in the store.

        Failures are logged and swallowed; the stale token stays in place.
        Returns True if a new session was obtained.
        """
        modality, credentials = self.store.get_credentials()
        if modality is None:
            logger.debug("Session has no login modality (restored token), not renewing")
            return False

        strategy = self.strategies.get(modality)
        if strategy is None:
            logger.warning(f"No renewal strategy for {modality.value} sessions")
            return False

        before = self.store.snapshot()
        try:
            await strategy.renew(self.exchanger, credentials)
        except SafeguardError as e:
            logger.error(f"Session renewal failed: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error during session renewal: {type(e).__name__}: {e}")
            return False

        renewed = self.store.snapshot() is not before
        if renewed:
            logger.info(f"Session renewed, token valid for {int(self.store.remaining())}s")
        return renewed

    async def run(self, stop_event: asyncio.Event) -> None:
        """Renew on a repeating timer until *stop_event* is set."""
        authenticated = asyncio.create_task(self.exchanger.authenticated.wait())
        stopped = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait({authenticated, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            authenticated.cancel()
            stopped.cancel()
        if stop_event.is_set():
            return

        interval = refresh_interval(self.store.remaining(), self.margin, self.min_interval)
        logger.debug(f"Session refresher started, renewing every {int(interval)}s")

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            await self.renew_once()

        logger.debug("Session refresher stopped")
