"""
Access requests and password checkout.

The appliance owns the access request state machine; this module only
classifies the reported state and polls until the secret can be fetched.
"""

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from .config import POLL_INTERVAL
from .dispatch import RequestDispatcher
from .errors import AccessRequestStateError, SafeguardError, WaitCancelledError, WaitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestPhase(str, enum.Enum):
    PENDING = "pending"
    RETRIEVABLE = "retrievable"
    TERMINAL = "terminal"
    UNKNOWN = "unknown"


PENDING_STATES = frozenset({
    "Pending",
    "PendingApproval",
    "PendingTimeRequested",
    "PendingAccountRestored",
    "PendingAccountElevated",
    "PendingReview",
    "PendingPasswordReset",
    "PendingAcknowledgment",
})

RETRIEVABLE_STATES = frozenset({
    "PasswordCheckedOut",
    "RequestAvailable",
    "Acknowledged",
})

TERMINAL_STATES = frozenset({
    "Complete",
    "Expired",
    "Denied",
    "Canceled",
    "Revoked",
})


def classify_state(state: str) -> RequestPhase:
    """Fold an access request state into the phase that decides what to do next."""
    if state in RETRIEVABLE_STATES:
        return RequestPhase.RETRIEVABLE
    if state in PENDING_STATES:
        return RequestPhase.PENDING
    if state in TERMINAL_STATES:
        return RequestPhase.TERMINAL
    return RequestPhase.UNKNOWN


@dataclass(frozen=True)
class AccessRequest:
    id: str
    state: str
    request_type: str = ""
    account_name: str = ""
    asset_name: str = ""
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def phase(self) -> RequestPhase:
        return classify_state(self.state)

    @classmethod
    def from_dict(cls, data: dict) -> "AccessRequest":
        return cls(
            id=str(data.get("Id", "")),
            state=data.get("State", ""),
            request_type=data.get("AccessRequestType", ""),
            account_name=data.get("AccountName", ""),
            asset_name=data.get("AssetName", ""),
            raw=data,
        )


@dataclass(frozen=True)
class Bound(Generic[T]):
    """An entity together with the client handle it was fetched through."""
    value: T
    client: Any = field(repr=False, compare=False)


class SecretWaiter:
    """Fetches checked-out passwords, waiting for pending requests if asked to."""

    def __init__(self, dispatcher: RequestDispatcher, poll_interval: float = POLL_INTERVAL):
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval

    async def get_access_request(self, request_id: str) -> AccessRequest:
        body = await self.dispatcher.get(f"AccessRequests/{request_id}")
        try:
            return AccessRequest.from_dict(json.loads(body))
        except (ValueError, AttributeError) as e:
            raise SafeguardError(f"error decoding access request {request_id}: {e}") from e

    async def check_out_password(
        self,
        request: AccessRequest,
        wait: bool = False,
        timeout: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> str:
        """
        Return the password for *request*.

        Args:
            request: The access request, as last fetched.
            wait: Poll while the request is pending instead of failing.
            timeout: Give up waiting after this many seconds (None waits until stopped).
            stop_event: Ends the wait early when set.

        Raises:
            AccessRequestStateError: Request is terminal, in an unknown state,
                or pending while wait is False.
            WaitTimeoutError: The timeout elapsed before the secret was available.
            WaitCancelledError: stop_event was set during the wait.
        """
        phase = request.phase
        if phase is RequestPhase.PENDING:
            if not wait:
                raise AccessRequestStateError(request.state)
            request = await self._wait_until_retrievable(request, timeout, stop_event or asyncio.Event())
        elif phase is not RequestPhase.RETRIEVABLE:
            raise AccessRequestStateError(request.state)

        return await self._fetch(request)

    async def _wait_until_retrievable(
        self,
        request: AccessRequest,
        timeout: Optional[float],
        stop_event: asyncio.Event,
    ) -> AccessRequest:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        logger.info(f"Access request {request.id} is {request.state}, waiting for it to become available")

        while True:
            delay = self.poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise WaitTimeoutError(
                        f"access request {request.id} still {request.state} after {timeout}s"
                    )
                delay = min(delay, remaining)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            else:
                raise WaitCancelledError(f"wait for access request {request.id} was cancelled")

            request = await self.get_access_request(request.id)
            phase = request.phase
            logger.debug(f"Access request {request.id} state: {request.state}")
            if phase is RequestPhase.RETRIEVABLE:
                return request
            if phase is not RequestPhase.PENDING:
                raise AccessRequestStateError(request.state)

    async def _fetch(self, request: AccessRequest) -> str:
        body = await self.dispatcher.post(f"AccessRequests/{request.id}/CheckOutPassword")
        try:
            secret = json.loads(body)
        except ValueError:
            return body.decode("utf-8")
        if not isinstance(secret, str):
            raise SafeguardError(f"unexpected checkout response for access request {request.id}")
        return secret
