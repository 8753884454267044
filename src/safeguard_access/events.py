"""
Appliance event subscription.

The appliance publishes events through a SignalR hub on the cluster leader.
EventStream keeps one websocket subscription open using the JSON hub
protocol, reconnects with exponential backoff, and hands decoded events to
consumers through a bounded queue. When the queue is full new events are
dropped so the read loop never blocks.
"""

import asyncio
import json
import logging
import ssl
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

import aiohttp

from .config import (
    EVENT_QUEUE_SIZE,
    HEARTBEAT_INTERVAL,
    RECONNECT_BACKOFF_FACTOR,
    RECONNECT_DELAY,
    RECONNECT_DELAY_MAX,
)
from .connection import build_auth_headers, create_ws_connector, create_ws_timeout
from .errors import SafeguardError
from .session import SessionStore

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = "\x1e"
HANDSHAKE = json.dumps({"protocol": "json", "version": 1}) + RECORD_SEPARATOR
PING = json.dumps({"type": 6}) + RECORD_SEPARATOR

# SignalR hub message types
INVOCATION = 1
PING_MESSAGE = 6
CLOSE = 7

EVENT_TARGET = "NotifyEventAsync"

OriginProvider = Callable[[], Awaitable[str]]


@dataclass(frozen=True)
class Event:
    """One appliance notification."""
    name: str
    time: str = ""
    message: str = ""
    appliance_id: str = ""
    data: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> "Event":
        return cls(
            name=raw.get("Name", ""),
            time=raw.get("Time", ""),
            message=raw.get("Message", ""),
            appliance_id=raw.get("ApplianceId", ""),
            data=raw.get("Data") or {},
        )


def decode_frames(text: str) -> list[dict]:
    """Split a websocket text message into hub protocol frames."""
    frames = []
    for record in text.split(RECORD_SEPARATOR):
        if not record.strip():
            continue
        try:
            frame = json.loads(record)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed hub frame: {record[:80]}")
            continue
        if not isinstance(frame, dict):
            logger.warning(f"Ignoring non-object hub frame: {record[:80]}")
            continue
        frames.append(frame)
    return frames


def events_from_frame(frame: dict) -> list[Event]:
    """Decode the events carried by an invocation frame."""
    if frame.get("type") != INVOCATION:
        return []
    target = frame.get("target")
    if not isinstance(target, str) or target.lower() != EVENT_TARGET.lower():
        logger.debug(f"Ignoring hub invocation: {frame.get('target')}")
        return []
    arguments = frame.get("arguments")
    if not isinstance(arguments, list):
        return []
    return [Event.from_dict(arg) for arg in arguments if isinstance(arg, dict)]


def next_delay(current: float, factor: float = RECONNECT_BACKOFF_FACTOR,
               maximum: float = RECONNECT_DELAY_MAX) -> float:
    return min(current * factor, maximum)


def websocket_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url[len("https://"):]
    if http_url.startswith("http://"):
        return "ws://" + http_url[len("http://"):]
    return http_url


class EventStream:
    """Persistent subscription to the appliance event hub."""

    def __init__(
        self,
        store: SessionStore,
        origin: OriginProvider,
        ssl_context: Optional[ssl.SSLContext] = None,
        queue_size: int = EVENT_QUEUE_SIZE,
        reconnect_delay: float = RECONNECT_DELAY,
        reconnect_delay_max: float = RECONNECT_DELAY_MAX,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        self.store = store
        self._origin = origin
        self.ssl_context = ssl_context
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=queue_size)
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self.heartbeat_interval = heartbeat_interval
        self.dropped = 0

    async def get(self) -> Event:
        """Wait for the next event."""
        return await self.queue.get()

    def publish(self, event: Event) -> bool:
        """Queue *event* without blocking; drop it if the queue is full."""
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Event queue is full, dropping event: {event.name}")
            return False
        logger.debug(f"Event received: {event.name}")
        return True

    def handle_message(self, text: str) -> bool:
        """
        Process one websocket text message.

        Returns False when the server sent a close frame.
        """
        for frame in decode_frames(text):
            frame_type = frame.get("type")
            if frame_type == CLOSE:
                error = frame.get("error")
                if error:
                    logger.warning(f"Event hub closed the connection: {error}")
                else:
                    logger.info("Event hub closed the connection")
                return False
            if frame_type == PING_MESSAGE:
                continue
            for event in events_from_frame(frame):
                self.publish(event)
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        """Keep the subscription open until *stop_event* is set."""
        current_delay = self.reconnect_delay

        while not stop_event.is_set():
            try:
                connected = await self.connect_and_read(stop_event)
                if stop_event.is_set():
                    break
                if connected:
                    current_delay = self.reconnect_delay
            except aiohttp.WSServerHandshakeError as e:
                logger.error(f"Event hub handshake failed: {e.status} {e.message}")
            except (aiohttp.ClientError, SafeguardError) as e:
                logger.error(f"Event hub connection error: {e}")
            except asyncio.TimeoutError:
                logger.error("Event hub connection timed out")
            except Exception as e:
                logger.error(f"Unexpected event hub error: {type(e).__name__}: {e}")

            if not stop_event.is_set():
                logger.info(f"Reconnecting to event hub in {current_delay}s...")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=current_delay)
                except asyncio.TimeoutError:
                    pass
                current_delay = next_delay(current_delay, maximum=self.reconnect_delay_max)

        logger.info("Event stream stopped")

    async def connect_and_read(self, stop_event: asyncio.Event) -> bool:
        """
        Open one hub connection and read from it until it ends.

        Returns True if the handshake completed.
        """
        base_url = f"{await self._origin()}/service/event/signalr"
        # The token is read once per connection
        headers = build_auth_headers(self.store.get_session_token())
        connector = create_ws_connector(self.ssl_context)

        async with aiohttp.ClientSession(connector=connector, timeout=create_ws_timeout()) as session:
            connection_token = await self._negotiate(session, base_url, headers)
            url = f"{websocket_url(base_url)}?id={quote(connection_token, safe='')}"

            async with session.ws_connect(url, headers=headers) as ws:
                await ws.send_str(HANDSHAKE)
                msg = await asyncio.wait_for(ws.receive(), timeout=10.0)
                if msg.type != aiohttp.WSMsgType.TEXT:
                    logger.warning(f"Unexpected handshake message type: {msg.type}")
                    return False
                # The handshake reply may share a message with the first frames
                handshake, _, rest = msg.data.partition(RECORD_SEPARATOR)
                reply = decode_frames(handshake)
                if reply and reply[0].get("error"):
                    raise SafeguardError(f"event hub handshake rejected: {reply[0]['error']}")
                logger.info("Connected to event hub")

                heartbeat_task = asyncio.create_task(self._heartbeat(ws, stop_event))
                try:
                    await self._read_loop(ws, stop_event, rest)
                finally:
                    heartbeat_task.cancel()
                    try:
                        await heartbeat_task
                    except asyncio.CancelledError:
                        pass
                return True

    async def _negotiate(self, session: aiohttp.ClientSession, base_url: str, headers: dict) -> str:
        async with session.post(f"{base_url}/negotiate?negotiateVersion=1", headers=headers) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise SafeguardError(f"event hub negotiate failed: HTTP {resp.status} - {text}")
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                raise SafeguardError("event hub negotiate returned a non-JSON body") from None
        if not isinstance(data, dict):
            raise SafeguardError("event hub negotiate returned an unexpected payload")
        token = data.get("connectionToken") or data.get("connectionId")
        if not token:
            raise SafeguardError("event hub negotiate returned no connection id")
        return token

    async def _read_loop(self, ws, stop_event: asyncio.Event, pending: str = "") -> None:
        if pending and not self.handle_message(pending):
            return

        while not stop_event.is_set():
            try:
                msg = await asyncio.wait_for(ws.receive(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            if msg.type == aiohttp.WSMsgType.TEXT:
                if not self.handle_message(msg.data):
                    break
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error(f"Event hub websocket error: {ws.exception()}")
                break
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING):
                logger.info("Event hub connection closed")
                break

    async def _heartbeat(self, ws, stop_event: asyncio.Event) -> None:
        """Send hub pings so the server keeps the connection."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.heartbeat_interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await asyncio.wait_for(ws.send_str(PING), timeout=5.0)
            except (ConnectionResetError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Event hub ping failed: {e}")
                break
