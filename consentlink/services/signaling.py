"""
Real-time signaling channel used to negotiate calls before media flows.

``RealtimeChannel`` is what the call coordinator talks to. ``LocalSignalingHub``
is an in-process relay with the signaling server's behaviour, used in
development and tests: it routes call requests by wallet address, answers
``recipient_offline`` for unconnected callees and relays the remaining call
events to the other party of the room. Each connection delivers its events
in order, one at a time; there is no ordering across connections.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

from ..core.errors import SignalingUnavailable

logger = logging.getLogger(__name__)

CALL_REQUEST = "call_request"
INCOMING_CALL = "incoming_call"
CALL_ACCEPT = "call_accept"
CALL_REJECT = "call_reject"
CALL_CANCELLED = "call_cancelled"
CALL_STARTED = "call_started"
CALL_TIMED_OUT = "call_timed_out"
RECIPIENT_OFFLINE = "recipient_offline"
CALL_ERROR = "call_error"

# Events relayed verbatim to the other party of a room
RELAYED_EVENTS = (CALL_ACCEPT, CALL_REJECT, CALL_CANCELLED, CALL_STARTED, CALL_ERROR, CALL_TIMED_OUT)
# Events after which the room is forgotten
CLOSING_EVENTS = (CALL_REJECT, CALL_CANCELLED, CALL_ERROR, CALL_TIMED_OUT)

Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class RealtimeChannel(Protocol):
    @property
    def connected(self) -> bool: ...

    async def emit(self, event: str, payload: Dict[str, Any]) -> None: ...

    def on(self, event: str, handler: Handler) -> None: ...

    def off(self, event: str, handler: Handler) -> None: ...


class LocalChannel:
    """One client's connection to a ``LocalSignalingHub``."""

    def __init__(self, hub: "LocalSignalingHub", wallet_address: str, short_id: str):
        self.hub = hub
        self.wallet_address = wallet_address.lower()
        self.short_id = short_id
        self._handlers: Dict[str, List[Handler]] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None
        self._busy = False
        self._connected = True
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def idle(self) -> bool:
        return not self._busy and (self._queue is None or self._queue.empty())

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        if not self._connected:
            raise SignalingUnavailable("Not connected to the call server.")
        self.sent.append((event, dict(payload)))
        await self.hub.route(self, event, dict(payload))

    def deliver(self, event: str, payload: Dict[str, Any]) -> None:
        if not self._connected:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._queue.put_nowait((event, payload))
        if self._pump is None or self._pump.done():
            self._pump = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            event, payload = await self._queue.get()
            self._busy = True
            try:
                for handler in list(self._handlers.get(event, [])):
                    result = handler(payload)
                    if inspect.isawaitable(result):
                        await result
            except Exception:
                logger.exception("Handler for %s on %s failed", event, self.short_id)
            finally:
                self._busy = False
                self._queue.task_done()

    async def join_queue(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        self._connected = False
        self.hub.disconnect(self)
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None


class LocalSignalingHub:
    def __init__(self):
        self._channels: Dict[str, LocalChannel] = {}
        self._rooms: Dict[str, Tuple[str, str]] = {}

    def connect(self, wallet_address: str, short_id: str) -> LocalChannel:
        channel = LocalChannel(self, wallet_address, short_id)
        self._channels[channel.wallet_address] = channel
        return channel

    def disconnect(self, channel: LocalChannel) -> None:
        if self._channels.get(channel.wallet_address) is channel:
            del self._channels[channel.wallet_address]

    async def route(self, sender: LocalChannel, event: str, payload: Dict[str, Any]) -> None:
        room_id = payload.get("roomId")
        if event == CALL_REQUEST:
            callee = self._channels.get((payload.get("toWallet") or "").lower())
            if callee is None or not callee.connected:
                logger.info("Recipient of room %s is offline", room_id)
                sender.deliver(RECIPIENT_OFFLINE, {"roomId": room_id})
                return
            self._rooms[room_id] = (sender.wallet_address, callee.wallet_address)
            callee.deliver(
                INCOMING_CALL,
                {
                    "roomId": room_id,
                    "fromHH": payload.get("fromHH"),
                    "fromWallet": payload.get("fromWallet"),
                    "role": payload.get("role"),
                },
            )
            return

        if event not in RELAYED_EVENTS:
            raise ValueError(f"Unknown signaling event '{event}'")

        room = self._rooms.get(room_id)
        if room is None:
            logger.debug("Dropping %s for unknown room %s", event, room_id)
            return
        other = room[1] if sender.wallet_address == room[0] else room[0]
        target = self._channels.get(other)
        if target is None:
            sender.deliver(CALL_ERROR, {"roomId": room_id, "message": "The other party disconnected."})
            self._rooms.pop(room_id, None)
            return
        target.deliver(event, payload)
        if event in CLOSING_EVENTS:
            self._rooms.pop(room_id, None)

    async def drain(self) -> None:
        """Wait until every connection has handled everything queued for it."""
        while True:
            for channel in list(self._channels.values()):
                await channel.join_queue()
            if all(channel.idle for channel in self._channels.values()):
                return
