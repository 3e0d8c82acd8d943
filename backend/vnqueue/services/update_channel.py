"""
Push subscription to one visit number's queue updates.

Connection lifecycle:
- CONNECTING: opening the WebSocket
- CONNECTED: socket open, subscribe request sent
- DISCONNECTED: socket lost; one reconnect is scheduled after a fixed delay
- CLOSED: torn down by the owner; no callback fires after this point
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Callable, Optional

import aiohttp
from pydantic import ValidationError

from vnqueue.core.config import settings
from vnqueue.exceptions import MalformedMessageError
from vnqueue.schemas.messages import (
    KNOWN_SERVER_MESSAGE_TYPES,
    QueueUpdateMessage,
    SubscribeMessage,
    SubscribedMessage,
    server_message_adapter,
)
from vnqueue.schemas.queue_entry import QueueEntry

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[QueueEntry], None]
StateCallback = Callable[["ConnectionState"], None]


class ConnectionState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


def parse_server_message(raw: str):
    """
    Decode one server frame.

    Returns:
        QueueUpdateMessage, SubscribedMessage, or None for message types this client ignores

    Raises:
        MalformedMessageError: the frame is not JSON or does not match its declared type
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"Update message is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedMessageError("Update message is not a JSON object")

    if payload.get("type") not in KNOWN_SERVER_MESSAGE_TYPES:
        return None

    try:
        return server_message_adapter.validate_python(payload)
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid {payload.get('type')} message: {e.error_count()} error(s)") from e


class Subscription:
    """
    Handle for one live subscription. Created by UpdateChannel.open().
    """

    def __init__(
        self,
        ws_url: str,
        visit_number: str,
        on_snapshot: SnapshotCallback,
        on_state_change: Optional[StateCallback],
        session: aiohttp.ClientSession,
        reconnect_delay: float,
        heartbeat: Optional[float] = None,
    ):
        self.ws_url = ws_url
        self.visit_number = visit_number
        self._on_snapshot = on_snapshot
        self._on_state_change = on_state_change
        self._session = session
        self.reconnect_delay = reconnect_delay
        self.heartbeat = heartbeat

        self._state = ConnectionState.CONNECTING
        self._closed = False
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self.connect_attempts = 0
        self.messages_received = 0
        self.messages_dropped = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self):
        self._task = asyncio.create_task(self._run(), name=f"update-channel-{self.visit_number}")

    def _set_state(self, state: ConnectionState):
        if self._closed or state == self._state:
            return
        self._state = state
        logger.info(f"Update channel for {self.visit_number}: {state.value}")
        if self._on_state_change is not None:
            self._on_state_change(state)

    async def _run(self):
        while not self._closed:
            self._set_state(ConnectionState.CONNECTING)
            self.connect_attempts += 1
            try:
                async with self._session.ws_connect(self.ws_url, heartbeat=self.heartbeat) as ws:
                    self._ws = ws
                    await ws.send_str(SubscribeMessage(vn=self.visit_number).model_dump_json())
                    self._set_state(ConnectionState.CONNECTED)

                    async for msg in ws:
                        if self._closed:
                            break
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            self._handle_frame(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.warning(f"Update channel for {self.visit_number} errored: {ws.exception()}")
                            break
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.warning(f"Update channel for {self.visit_number} failed to connect: {e}")
            finally:
                self._ws = None

            if self._closed:
                break

            self._set_state(ConnectionState.DISCONNECTED)
            logger.info(f"Reconnecting update channel for {self.visit_number} in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    def _handle_frame(self, raw: str):
        try:
            message = parse_server_message(raw)
        except MalformedMessageError as e:
            self.messages_dropped += 1
            logger.warning(f"Dropped update for {self.visit_number}: {e.message}")
            return

        if message is None:
            logger.debug(f"Ignored unknown message type on update channel for {self.visit_number}")
            return

        if isinstance(message, SubscribedMessage):
            logger.info(f"Subscribed to {message.vn or self.visit_number}")
            return

        if isinstance(message, QueueUpdateMessage):
            if message.data.visit_number != self.visit_number:
                logger.debug(f"Ignored update for {message.data.visit_number} on channel for {self.visit_number}")
                return
            # Teardown may have raced the frame that is being handled
            if self._closed:
                return
            self.messages_received += 1
            self._on_snapshot(message.data)

    async def close(self):
        """Stop reconnecting, close the socket, and silence all callbacks."""
        if self._closed:
            return
        self._closed = True
        self._state = ConnectionState.CLOSED

        ws = self._ws
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if ws is not None and not ws.closed:
            await ws.close()
        logger.info(f"Update channel for {self.visit_number} closed")


class UpdateChannel:
    """
    Owns at most one Subscription. Opening a new visit number closes the previous one.

    Usage:
        channel = UpdateChannel()
        handle = await channel.open("VN260112-0001", on_snapshot, on_state_change)
        ...
        await channel.close(handle)
    """

    def __init__(
        self,
        ws_url: Optional[str] = None,
        reconnect_delay: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
        heartbeat: Optional[float] = None,
    ):
        self.ws_url = ws_url or settings.QUEUE_WS_URL
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else settings.RECONNECT_DELAY_SECONDS
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._subscription: Optional[Subscription] = None

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    async def open(
        self,
        visit_number: str,
        on_snapshot: SnapshotCallback,
        on_state_change: Optional[StateCallback] = None,
    ) -> Subscription:
        if self._subscription is not None:
            await self.close(self._subscription)

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        subscription = Subscription(
            ws_url=self.ws_url,
            visit_number=visit_number,
            on_snapshot=on_snapshot,
            on_state_change=on_state_change,
            session=self._session,
            reconnect_delay=self.reconnect_delay,
            heartbeat=self.heartbeat,
        )
        self._subscription = subscription
        subscription.start()
        return subscription

    async def close(self, handle: Optional[Subscription] = None):
        handle = handle or self._subscription
        if handle is None:
            return
        await handle.close()
        if handle is self._subscription:
            self._subscription = None

    async def shutdown(self):
        """Close the active subscription and the HTTP session if this channel created it."""
        await self.close()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
