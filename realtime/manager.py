"""
WebSocket connection manager for survey studio.

Clients subscribe to ``project:<id>`` channels. When a project document is
saved or deleted, every subscriber of its channel is told, so the admin
preview and open participant pages can refresh.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from api.shared.logger import get_logger

logger = get_logger(__name__)


class MessageType(str, Enum):
    """Types of WebSocket messages."""

    # Document messages
    DOCUMENT_SAVED = "document_saved"
    DOCUMENT_DELETED = "document_deleted"

    # Client requests
    PING = "ping"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"

    # System messages
    PONG = "pong"
    ERROR = "error"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


def project_channel(project_id: str) -> str:
    return f"project:{project_id}"


@dataclass
class RealtimeMessage:
    """A message sent over a realtime connection."""

    type: MessageType
    channel: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type.value,
            "channel": self.channel,
            "data": self.data,
            "timestamp": self.timestamp,
        })

    @classmethod
    def from_json(cls, json_str: str) -> "RealtimeMessage":
        """Parse a client message. Raises ValueError on unknown types or bad JSON."""
        data = json.loads(json_str)
        if not isinstance(data, dict):
            raise ValueError("message must be a JSON object")
        payload = data.get("data") or {}
        if not isinstance(payload, dict):
            raise ValueError("message data must be a JSON object")
        return cls(
            type=MessageType(data.get("type", "error")),
            channel=data.get("channel", ""),
            data=payload,
            timestamp=data.get("timestamp"),
        )


class ConnectionManager:
    """
    Tracks WebSocket connections and their channel subscriptions.
    """

    def __init__(self):
        self._connections: Set[WebSocket] = set()
        # channel -> subscribers
        self._channels: Dict[str, Set[WebSocket]] = {}
        self._subscriptions: Dict[WebSocket, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: Optional[str] = None) -> None:
        """Accept a connection and confirm it to the client."""
        await websocket.accept()

        async with self._lock:
            self._connections.add(websocket)
            self._subscriptions[websocket] = set()

        await self.send_to_connection(
            websocket,
            RealtimeMessage(
                type=MessageType.CONNECTED,
                channel="system",
                data={"client_id": client_id, "message": "Connected to survey studio"},
            ),
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            for channel in self._subscriptions.pop(websocket, set()):
                subscribers = self._channels.get(channel)
                if subscribers is not None:
                    subscribers.discard(websocket)
                    if not subscribers:
                        del self._channels[channel]
            self._connections.discard(websocket)

    async def subscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            self._channels.setdefault(channel, set()).add(websocket)
            if websocket in self._subscriptions:
                self._subscriptions[websocket].add(channel)

        await self.send_to_connection(
            websocket,
            RealtimeMessage(type=MessageType.SUBSCRIBED, channel=channel, data={"channel": channel}),
        )

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(websocket)
                if not subscribers:
                    del self._channels[channel]
            if websocket in self._subscriptions:
                self._subscriptions[websocket].discard(channel)

        await self.send_to_connection(
            websocket,
            RealtimeMessage(type=MessageType.UNSUBSCRIBED, channel=channel, data={"channel": channel}),
        )

    async def send_to_connection(self, websocket: WebSocket, message: RealtimeMessage) -> bool:
        """Send to one connection; a dead connection is dropped and False returned."""
        try:
            await websocket.send_text(message.to_json())
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Dropping WebSocket connection after failed send: %s", e)
            await self.disconnect(websocket)
            return False

    async def broadcast_to_channel(self, channel: str, message: RealtimeMessage) -> int:
        """Send ``message`` to every subscriber of ``channel``; returns the delivery count."""
        async with self._lock:
            subscribers = list(self._channels.get(channel, set()))

        sent_count = 0
        for websocket in subscribers:
            if await self.send_to_connection(websocket, message):
                sent_count += 1
        return sent_count

    def get_channel_subscribers(self, channel: str) -> int:
        return len(self._channels.get(channel, set()))

    def get_connection_count(self) -> int:
        return len(self._connections)

    async def handle_message(self, websocket: WebSocket, message_text: str) -> Optional[RealtimeMessage]:
        """Handle one client message; returns the reply to send, if any."""
        try:
            message = RealtimeMessage.from_json(message_text)
        except ValueError as e:
            return RealtimeMessage(
                type=MessageType.ERROR,
                channel="system",
                data={"error": f"Invalid message format: {e}"},
            )

        if message.type == MessageType.PING:
            return RealtimeMessage(
                type=MessageType.PONG,
                channel="system",
                data={"timestamp": datetime.now().isoformat()},
            )

        channel = message.data.get("channel") or message.channel
        if message.type == MessageType.SUBSCRIBE and channel:
            await self.subscribe(websocket, channel)
        elif message.type == MessageType.UNSUBSCRIBE and channel:
            await self.unsubscribe(websocket, channel)
        return None


# Global connection manager instance
realtime_manager = ConnectionManager()


# ============= Document notifications =============


async def notify_document_saved(project_id: str, saved_at: Optional[str] = None) -> int:
    """Tell subscribers of ``project:<id>`` that the project document changed."""
    channel = project_channel(project_id)
    message = RealtimeMessage(
        type=MessageType.DOCUMENT_SAVED,
        channel=channel,
        data={"project_id": project_id, "saved_at": saved_at or datetime.now().isoformat()},
    )
    return await realtime_manager.broadcast_to_channel(channel, message)


async def notify_document_deleted(project_id: str) -> int:
    channel = project_channel(project_id)
    message = RealtimeMessage(
        type=MessageType.DOCUMENT_DELETED,
        channel=channel,
        data={"project_id": project_id},
    )
    return await realtime_manager.broadcast_to_channel(channel, message)
