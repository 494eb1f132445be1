"""Shared broker state: connected clients, subscriptions and retained messages."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .packet import send_packet
from .protocol import ProtocolVersion

logger = logging.getLogger(__name__)

ClientHook = Callable[[str], Any]
TopicHook = Callable[[str, str], Any]
PublishHook = Callable[[str, bytes, ProtocolVersion], Any]

SHARED_PREFIX = "$share/"
DEFAULT_QUEUE_SIZE = 1000


@dataclass
class Client:
    """A connected client and the topics it subscribed to."""

    client_id: str
    writer: Any
    subscriptions: set[str] = field(default_factory=set)


def _run_hook(description: str, hook: Optional[Callable[..., Any]], *args: Any) -> None:
    """Call a hook if one is set, logging instead of propagating its failure."""
    if hook is None:
        return
    try:
        hook(*args)
    except Exception as exc:  # hooks are user code; a failure must not break the broker
        logger.error("%s hook failed for %s: %s", description, args, exc)


class BrokerState:
    """Book-keeping for clients, topic subscribers and retained messages.

    Hooks signal failure by raising; failures are logged and otherwise ignored.
    """

    def __init__(
        self,
        message_queue: Optional[asyncio.Queue] = None,
        connect_hook: Optional[ClientHook] = None,
        disconnect_hook: Optional[ClientHook] = None,
        subscribe_hook: Optional[TopicHook] = None,
        unsubscribe_hook: Optional[TopicHook] = None,
        publish_hook: Optional[PublishHook] = None,
    ) -> None:
        self.message_queue: asyncio.Queue = (
            message_queue if message_queue is not None else asyncio.Queue(DEFAULT_QUEUE_SIZE)
        )
        self.connect_hook = connect_hook
        self.disconnect_hook = disconnect_hook
        self.subscribe_hook = subscribe_hook
        self.unsubscribe_hook = unsubscribe_hook
        self.publish_hook = publish_hook
        self.clients: dict[str, Client] = {}
        self.topic_subscribers: dict[str, set[str]] = {}
        self.retained_messages: dict[str, tuple[bytes, ProtocolVersion]] = {}
        self.shared_subscribers: dict[str, list[str]] = {}

    def add_client(self, client_id: str, writer: Any) -> None:
        """Register a client, replacing any earlier entry with the same id."""
        self.clients[client_id] = Client(client_id, writer)

    def remove_client(self, client_id: str) -> None:
        """Forget a client and all its subscriptions, then run the disconnect hook."""
        if self.clients.pop(client_id, None) is None:
            return
        for topic in list(self.topic_subscribers):
            subscribers = self.topic_subscribers[topic]
            subscribers.discard(client_id)
            if not subscribers:
                del self.topic_subscribers[topic]
        for group in list(self.shared_subscribers):
            members = [member for member in self.shared_subscribers[group] if member != client_id]
            if members:
                self.shared_subscribers[group] = members
            else:
                del self.shared_subscribers[group]
        _run_hook("Disconnect", self.disconnect_hook, client_id)

    async def add_subscription(self, client_id: str, topic: str) -> None:
        """Subscribe a known client to a topic and queue any retained message for it."""
        client = self.clients.get(client_id)
        if client is None:
            return
        if topic.startswith(SHARED_PREFIX):
            parts = topic.split("/", 2)
            if len(parts) >= 3:
                _, group, actual_topic = parts
                self.shared_subscribers.setdefault(group, []).append(client_id)
                self.topic_subscribers.setdefault(actual_topic, set()).add(client_id)
        else:
            self.topic_subscribers.setdefault(topic, set()).add(client_id)
        client.subscriptions.add(topic)

        retained = self.retained_messages.get(topic)
        if retained is not None:
            payload, version = retained
            await self.send_message(topic, payload, version)

    def remove_subscription(self, client_id: str, topic: str) -> None:
        """Drop a client's subscription to a topic."""
        subscribers = self.topic_subscribers.get(topic)
        if subscribers is not None:
            subscribers.discard(client_id)
            if not subscribers:
                del self.topic_subscribers[topic]
        client = self.clients.get(client_id)
        if client is not None:
            client.subscriptions.discard(topic)

    def get_subscribers(self, topic: str) -> list[str]:
        """Client ids a message on ``topic`` goes to.

        Direct subscribers come first; then, for every shared group, its first
        member is added whenever the topic has subscribers.
        """
        direct = self.topic_subscribers.get(topic)
        subscribers = list(direct) if direct is not None else []
        if direct is not None:
            subscribers.extend(members[0] for members in self.shared_subscribers.values() if members)
        return subscribers

    def store_retained_message(self, topic: str, payload: bytes, version: ProtocolVersion) -> None:
        """Keep the message as the topic's retained message; an empty payload clears it."""
        if payload:
            self.retained_messages[topic] = (bytes(payload), version)
        else:
            self.retained_messages.pop(topic, None)

    async def send_message(self, topic: str, payload: bytes, version: ProtocolVersion) -> None:
        """Queue a message for delivery."""
        await self.message_queue.put((topic, bytes(payload), version))

    async def publish(self, topic: str, payload: bytes, version: ProtocolVersion) -> None:
        """Write a PUBLISH packet to every subscriber; drop clients that cannot be written to."""
        topic_bytes = topic.encode("utf-8")
        packet = (
            bytes([0x30, (2 + len(topic_bytes) + len(payload)) & 0xFF, 0x00, len(topic_bytes) & 0xFF])
            + topic_bytes
            + bytes(payload)
        )
        disconnected: list[str] = []
        for subscriber in self.get_subscribers(topic):
            _run_hook("Publish", self.publish_hook, topic, payload, version)
            client = self.clients.get(subscriber)
            if client is None:
                continue
            try:
                await send_packet(client.writer, packet)
            except OSError as exc:
                logger.error("Delivery failed for client %s: %s", subscriber, exc)
                disconnected.append(subscriber)

        for client_id in disconnected:
            self.remove_client(client_id)