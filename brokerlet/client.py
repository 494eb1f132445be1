"""Per-connection session loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Optional

from . import v3, v5
from .errors import MqttError
from .packet import read_packet, send_packet
from .protocol import ControlPacketType, ProtocolVersion
from .state import BrokerState

logger = logging.getLogger(__name__)

INITIAL_TIMEOUT = 10.0
PINGRESP = bytes([0xD0, 0x00])


async def _close(writer: Any) -> None:
    with contextlib.suppress(OSError):
        writer.close()
        await writer.wait_closed()


def _keep_alive_timeout(keep_alive: int) -> float:
    """Allow one and a half keep-alive periods, rounded down to whole seconds."""
    return float((keep_alive * 15) // 10)


async def handle_client(
    reader: asyncio.StreamReader,
    writer: Any,
    state: BrokerState,
    auth_callback: Callable[[str, str], bool],
    protocol_version: ProtocolVersion,
    max_packet_size: int,
) -> None:
    """Serve one connection until it disconnects, fails or times out."""
    handlers = v3 if protocol_version is ProtocolVersion.V3_1_1 else v5
    client_id: Optional[str] = None
    wait = INITIAL_TIMEOUT

    try:
        while True:
            try:
                packet_type, data = await asyncio.wait_for(
                    read_packet(reader, max_packet_size), wait
                )
            except asyncio.TimeoutError:
                logger.error("Client timed out")
                if client_id is not None:
                    logger.info("Client %s disconnected due to timeout", client_id)
                break
            except (MqttError, asyncio.IncompleteReadError, OSError) as exc:
                logger.error("Error reading packet: %s", exc)
                break

            if packet_type == ControlPacketType.CONNECT:
                try:
                    result = await handlers.handle_connect(writer, data, auth_callback)
                except (MqttError, OSError) as exc:
                    logger.error("Error handling CONNECT: %s", exc)
                    break
                if result.clean_session:
                    state.remove_client(result.client_id)
                state.add_client(result.client_id, writer)
                if state.connect_hook is not None:
                    try:
                        state.connect_hook(result.client_id)
                    except Exception as exc:
                        logger.error(
                            "Connect hook failed for client %s: %s", result.client_id, exc
                        )
                client_id = result.client_id
                wait = _keep_alive_timeout(result.keep_alive)
                logger.info(
                    "Client %s connected with protocol %s, keep_alive: %ss, timeout: %ss",
                    client_id, protocol_version.name, result.keep_alive, wait,
                )

            elif packet_type in (ControlPacketType.SUBSCRIBE, ControlPacketType.UNSUBSCRIBE):
                name = ControlPacketType(packet_type).name
                if client_id is None:
                    logger.error("%s received before CONNECT", name)
                    break
                handler = (
                    handlers.handle_subscribe
                    if packet_type == ControlPacketType.SUBSCRIBE
                    else handlers.handle_unsubscribe
                )
                try:
                    await handler(writer, data, client_id, state)
                except (MqttError, OSError) as exc:
                    logger.error("Error handling %s: %s", name, exc)
                    break

            elif packet_type == ControlPacketType.PUBLISH:
                try:
                    await handlers.handle_publish(data, state, writer)
                except (MqttError, OSError) as exc:
                    logger.error("Error handling PUBLISH: %s", exc)

            elif packet_type == ControlPacketType.PINGREQ:
                try:
                    await send_packet(writer, PINGRESP)
                except OSError as exc:
                    logger.error("Error sending PINGRESP: %s", exc)
                    break

            elif packet_type == ControlPacketType.DISCONNECT:
                if client_id is not None:
                    logger.info("Client %s disconnected", client_id)
                break

            else:
                logger.error("Unsupported packet type: %s", packet_type)
                break
    finally:
        if client_id is not None:
            state.remove_client(client_id)
        await _close(writer)