"""Broker configuration and the listeners that accept client connections."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .client import handle_client
from .errors import MqttError
from .protocol import ProtocolVersion
from .state import BrokerState, ClientHook, PublishHook, TopicHook

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONNECTIONS = 1000
DEFAULT_MAX_PACKET_SIZE = 1024 * 1024

_LABELS = {ProtocolVersion.V3_1_1: "v3.1.1", ProtocolVersion.V5_0: "v5.0"}


def _allow_all(username: str, secret: str) -> bool:
    return True


@dataclass
class BrokerConfig:
    """Listening addresses, limits, authentication and hooks of a broker.

    Addresses take the form ``host:port``; a listener is opened only for the
    versions whose address is set. Hooks signal failure by raising.
    """

    v3_address: Optional[str] = None
    v5_address: Optional[str] = None
    auth_callback: Callable[[str, str], bool] = _allow_all
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    max_packet_size: int = DEFAULT_MAX_PACKET_SIZE
    connect_hook: Optional[ClientHook] = None
    disconnect_hook: Optional[ClientHook] = None
    subscribe_hook: Optional[TopicHook] = None
    unsubscribe_hook: Optional[TopicHook] = None
    publish_hook: Optional[PublishHook] = None


def _split_address(address: str) -> tuple[str, int]:
    host, separator, port = address.rpartition(":")
    if not separator or not host or not port.isdigit():
        raise ValueError(f"Invalid listen address {address!r}; expected host:port")
    return host.strip("[]"), int(port)


class Broker:
    """An MQTT broker serving 3.1.1 and 5.0 clients on separate listeners."""

    def __init__(self, config: BrokerConfig) -> None:
        self.config = config
        self.state = BrokerState(
            None,
            config.connect_hook,
            config.disconnect_hook,
            config.subscribe_hook,
            config.unsubscribe_hook,
            config.publish_hook,
        )
        self.addresses: dict[ProtocolVersion, tuple[str, int]] = {}
        self.ready = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._servers: list[asyncio.AbstractServer] = []
        self._sessions: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Open the configured listeners and serve until :meth:`stop` is called."""
        if self._servers:
            raise MqttError("Broker is already running")
        self._shutdown.clear()

        listeners = [
            (version, address)
            for version, address in (
                (ProtocolVersion.V3_1_1, self.config.v3_address),
                (ProtocolVersion.V5_0, self.config.v5_address),
            )
            if address
        ]
        try:
            for version, address in listeners:
                host, port = _split_address(address)
                limiter = asyncio.Semaphore(self.config.max_connections)
                server = await asyncio.start_server(
                    functools.partial(self._serve, version, limiter), host, port
                )
                self._servers.append(server)
                sockname = server.sockets[0].getsockname()
                self.addresses[version] = (sockname[0], sockname[1])
                logger.info("MQTT %s Broker listening on %s", _LABELS[version], address)
        except BaseException:
            await self._close_servers()
            raise

        if not self._servers:
            return

        dispatcher = asyncio.create_task(self._dispatch())
        self.ready.set()
        try:
            await self._shutdown.wait()
            logger.info("Broker shutting down")
        finally:
            self.ready.clear()
            await self._close_servers()
            dispatcher.cancel()
            await asyncio.gather(dispatcher, return_exceptions=True)
            logger.info("Message receiver loop terminated")

    async def stop(self) -> None:
        """Ask a running broker to shut down; does nothing if it is not running."""
        if self._servers:
            self._shutdown.set()

    async def _close_servers(self) -> None:
        for server in self._servers:
            server.close()
        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        await asyncio.gather(*sessions, return_exceptions=True)
        for server in self._servers:
            await server.wait_closed()
        self._servers.clear()
        self.addresses.clear()

    async def _serve(
        self,
        version: ProtocolVersion,
        limiter: asyncio.Semaphore,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._sessions.add(task)
        try:
            async with limiter:
                peer = writer.get_extra_info("peername")
                logger.info("New TCP connection from %s (%s)", peer, _LABELS[version])
                await handle_client(
                    reader,
                    writer,
                    self.state,
                    self.config.auth_callback,
                    version,
                    self.config.max_packet_size,
                )
        finally:
            writer.close()
            if task is not None:
                self._sessions.discard(task)

    async def _dispatch(self) -> None:
        queue = self.state.message_queue
        while True:
            topic, payload, version = await queue.get()
            try:
                await self.state.publish(topic, payload, version)
            except (MqttError, OSError) as exc:
                logger.error("Failed to publish message: %s", exc)