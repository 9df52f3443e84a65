"""
Realtime fanout of message events to browser subscribers.

Each connection belongs to at most one conversation group; joining a new
group leaves the previous one. Delivery is best effort: nothing is
persisted or replayed, and a failing connection is dropped without
affecting the caller.

Membership lives in this process only. Callers depend on the Broadcaster
contract, so a pub/sub backed implementation can replace RealtimeFanout
when several instances must share events.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from starlette.websockets import WebSocket, WebSocketState

from chatrelay.metrics import record_broadcast, set_realtime_connections

logger = logging.getLogger(__name__)

EVENT_NEW_MESSAGE = "new-message"
EVENT_STATUS_UPDATE = "message-status-update"
EVENT_MESSAGES_READ = "messages-read"
EVENT_PING = "ping"


class Broadcaster(ABC):
    """Publishes state-change events to the subscribers of a conversation."""

    @abstractmethod
    async def broadcast(self, conversation_id: str, event: str, payload: Any) -> int:
        """Deliver `payload` as `event`; returns the number of subscribers reached."""


class Connection(ABC):
    """A live bidirectional subscriber transport."""

    id: str

    @abstractmethod
    async def send(self, event: str, data: Any) -> None:
        ...

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        ...


class WebSocketConnection(Connection):
    """Connection over a Starlette/FastAPI WebSocket, framing events as JSON."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.id = connection_id or uuid.uuid4().hex

    async def send(self, event: str, data: Any) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    async def close(self, code: int = 1000) -> None:
        if self.websocket.application_state != WebSocketState.DISCONNECTED:
            await self.websocket.close(code=code)


@dataclass
class _Subscriber:
    connection: Connection
    connected_at: float
    last_activity: float
    conversation_id: Optional[str] = None


@dataclass
class RealtimeFanout(Broadcaster):
    """
    In-memory subscription registry with liveness checks.

    Attributes:
        inactivity_timeout: Seconds of silence before a connection is dropped
        sweep_interval: Seconds between liveness sweeps
        heartbeat_interval: Seconds between ping frames
        clock: Monotonic time source
    """

    inactivity_timeout: float = 300.0
    sweep_interval: float = 60.0
    heartbeat_interval: float = 25.0
    clock: Callable[[], float] = time.monotonic
    _subscribers: Dict[str, _Subscriber] = field(default_factory=dict, init=False, repr=False)
    _groups: Dict[str, Set[str]] = field(default_factory=dict, init=False, repr=False)
    _tasks: List[asyncio.Task] = field(default_factory=list, init=False, repr=False)

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    @property
    def connection_count(self) -> int:
        return len(self._subscribers)

    def members(self, conversation_id: str) -> Set[str]:
        return set(self._groups.get(conversation_id, ()))

    def conversation_of(self, connection_id: str) -> Optional[str]:
        subscriber = self._subscribers.get(connection_id)
        return subscriber.conversation_id if subscriber else None

    def register(self, connection: Connection) -> None:
        now = self.clock()
        self._subscribers[connection.id] = _Subscriber(connection, connected_at=now, last_activity=now)
        set_realtime_connections(len(self._subscribers))
        logger.info(f"Client connected: {connection.id}", extra={"total_clients": len(self._subscribers)})

    def unregister(self, connection_id: str) -> None:
        subscriber = self._subscribers.pop(connection_id, None)
        if subscriber is None:
            return
        self._leave(connection_id, subscriber)
        set_realtime_connections(len(self._subscribers))
        logger.info(
            f"Client disconnected: {connection_id}",
            extra={
                "total_clients": len(self._subscribers),
                "duration_s": round(self.clock() - subscriber.connected_at),
            },
        )

    def touch(self, connection_id: str) -> None:
        subscriber = self._subscribers.get(connection_id)
        if subscriber is not None:
            subscriber.last_activity = self.clock()

    def join(self, connection_id: str, conversation_id: Optional[str]) -> Dict[str, Any]:
        """
        Move a connection into a conversation group (last join wins).

        Returns:
            Acknowledgement, {"success": True, "room": ...} or
            {"success": False, "error": ...}
        """
        subscriber = self._subscribers.get(connection_id)
        if subscriber is None:
            return {"success": False, "error": "connection is not registered"}
        if not conversation_id or not isinstance(conversation_id, str):
            logger.error("Error joining room: conversationId is required", extra={"connection_id": connection_id})
            return {"success": False, "error": "conversationId is required"}

        subscriber.last_activity = self.clock()
        if subscriber.conversation_id != conversation_id:
            self._leave(connection_id, subscriber)
            self._groups.setdefault(conversation_id, set()).add(connection_id)
            subscriber.conversation_id = conversation_id
            logger.info(f"Client {connection_id} joined room {conversation_id}")
        return {"success": True, "room": conversation_id}

    def _leave(self, connection_id: str, subscriber: _Subscriber) -> None:
        previous = subscriber.conversation_id
        if previous is None:
            return
        group = self._groups.get(previous)
        if group is not None:
            group.discard(connection_id)
            if not group:
                del self._groups[previous]
        subscriber.conversation_id = None

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def broadcast(self, conversation_id: str, event: str, payload: Any) -> int:
        delivered = 0
        for connection_id in list(self._groups.get(conversation_id, ())):
            subscriber = self._subscribers.get(connection_id)
            if subscriber is None:
                continue
            try:
                await subscriber.connection.send(event, payload)
                delivered += 1
                record_broadcast(event, "delivered")
            except Exception as e:
                # A dead subscriber must not affect the originating request
                logger.warning(f"Error broadcasting to {connection_id} in room {conversation_id}: {e}")
                record_broadcast(event, "failed")
                self.unregister(connection_id)
        logger.debug(f"Broadcast {event} to room {conversation_id}: {delivered} subscribers")
        return delivered

    async def handle_frame(self, connection_id: str, frame: Any) -> Optional[Dict[str, Any]]:
        """
        Process one client frame: {"event": <name>, "data": <payload>}.

        Any frame counts as activity. Returns the acknowledgement to send
        back, or None when the event needs no answer.
        """
        self.touch(connection_id)
        if not isinstance(frame, dict):
            return {"event": "error", "data": {"success": False, "error": "frame must be a JSON object"}}

        event = frame.get("event")
        data = frame.get("data")

        if event == "join":
            conversation_id = data.get("conversationId") if isinstance(data, dict) else data
            return {"event": "ack", "ack": "join", "data": self.join(connection_id, conversation_id)}
        if event == "pong":
            return None
        if event == "message:ack":
            if not isinstance(data, dict) or not data.get("messageId") or not data.get("status"):
                return {
                    "event": "ack",
                    "ack": "message:ack",
                    "data": {"success": False, "error": "messageId and status are required"},
                }
            logger.info(
                f"Message {data['messageId']} acknowledged with status: {data['status']}",
                extra={"connection_id": connection_id},
            )
            return {"event": "ack", "ack": "message:ack", "data": {"success": True}}

        return {"event": "error", "data": {"success": False, "error": f"unknown event: {event}"}}

    # -------------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------------

    async def heartbeat(self) -> None:
        """Send a ping to every connection; failures drop the connection."""
        for connection_id, subscriber in list(self._subscribers.items()):
            try:
                await subscriber.connection.send(EVENT_PING, None)
            except Exception as e:
                logger.warning(f"Heartbeat failed for {connection_id}: {e}")
                self.unregister(connection_id)

    async def sweep(self) -> List[str]:
        """Disconnect connections silent for longer than the inactivity timeout."""
        now = self.clock()
        dropped = []
        for connection_id, subscriber in list(self._subscribers.items()):
            inactive_for = now - subscriber.last_activity
            if inactive_for <= self.inactivity_timeout:
                continue
            try:
                await subscriber.connection.close(code=1001)
            except Exception as e:
                logger.debug(f"Error closing inactive client {connection_id}: {e}")
            self.unregister(connection_id)
            dropped.append(connection_id)
            logger.warning(
                f"Disconnected inactive client: {connection_id}",
                extra={"inactive_for_s": round(inactive_for)},
            )
        return dropped

    async def _every(self, interval: float, job: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("Realtime liveness job failed")

    def start(self) -> None:
        """Start the heartbeat and sweep loops on the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._every(self.heartbeat_interval, self.heartbeat)),
            asyncio.create_task(self._every(self.sweep_interval, self.sweep)),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for connection_id, subscriber in list(self._subscribers.items()):
            try:
                await subscriber.connection.close(code=1001)
            except Exception as e:
                logger.debug(f"Error closing client {connection_id} on shutdown: {e}")
            self.unregister(connection_id)
