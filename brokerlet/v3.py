"""Packet handlers for MQTT 3.1.1 clients."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from .errors import AuthFailedError, ProtocolError
from .packet import parse_mqtt_string, send_packet
from .protocol import ConnectResult, ProtocolVersion
from .state import BrokerState

logger = logging.getLogger(__name__)

PROTOCOL_NAME = "MQTT"
PROTOCOL_LEVEL = 4
SEND_TIMEOUT = 5.0

CONNACK_ACCEPTED = 0x00
CONNACK_UNSUPPORTED_VERSION = 0x01
CONNACK_IDENTIFIER_REJECTED = 0x02
CONNACK_BAD_CREDENTIALS = 0x04
SUBACK_FAILURE = 0x80


def _u16(data: bytes, offset: int) -> int:
    if offset + 2 > len(data):
        raise ProtocolError("Missing two-byte field")
    return int.from_bytes(data[offset:offset + 2], "big")


def _ack(first_byte: int, packet_id: int) -> bytes:
    return bytes([first_byte, 0x02]) + packet_id.to_bytes(2, "big")


async def _connack(writer: Any, code: int) -> None:
    await send_packet(writer, bytes([0x20, 0x02, 0x00, code]))


async def handle_connect(
    writer: Any, data: bytes, auth_callback: Callable[[str, str], bool]
) -> ConnectResult:
    """Process a CONNECT packet, answer with CONNACK and return the session details."""
    protocol_name, offset = parse_mqtt_string(data, 0)
    level = data[offset] if offset < len(data) else None
    if protocol_name != PROTOCOL_NAME or level != PROTOCOL_LEVEL:
        await _connack(writer, CONNACK_UNSUPPORTED_VERSION)
        raise ProtocolError(f"Unsupported protocol '{protocol_name}' or version")
    offset += 1

    if offset + 3 > len(data):
        raise ProtocolError("Truncated CONNECT header")
    flags = data[offset]
    clean_session = bool(flags & 0x02)
    username_flag = bool(flags & 0x80)
    password_flag = bool(flags & 0x40)
    keep_alive = _u16(data, offset + 1)
    offset += 3

    client_id, offset = parse_mqtt_string(data, offset)
    if not client_id:
        await _connack(writer, CONNACK_IDENTIFIER_REJECTED)
        raise ProtocolError("Empty client ID")

    if username_flag and password_flag:
        username, offset = parse_mqtt_string(data, offset)
        secret, offset = parse_mqtt_string(data, offset)
        authenticated = bool(auth_callback(username, secret))
    else:
        authenticated = not (username_flag or password_flag)

    await _connack(writer, CONNACK_ACCEPTED if authenticated else CONNACK_BAD_CREDENTIALS)
    if not authenticated:
        raise AuthFailedError()
    return ConnectResult(client_id, clean_session, keep_alive)


async def handle_subscribe(writer: Any, data: bytes, client_id: str, state: BrokerState) -> None:
    """Process a SUBSCRIBE packet and answer with SUBACK."""
    packet_id = _u16(data, 0)
    offset = 2
    return_codes: list[int] = []
    while offset < len(data):
        topic, offset = parse_mqtt_string(data, offset)
        if offset >= len(data):
            await send_packet(
                writer, bytes([0x90, 0x03]) + packet_id.to_bytes(2, "big") + bytes([SUBACK_FAILURE])
            )
            raise ProtocolError("Missing QoS in SUBSCRIBE packet")
        qos = data[offset]
        offset += 1

        if qos > 2:
            return_codes.append(SUBACK_FAILURE)
            continue
        await state.add_subscription(client_id, topic)
        if state.subscribe_hook is not None:
            try:
                state.subscribe_hook(client_id, topic)
            except Exception as exc:
                logger.error(
                    "Subscription hook failed for client %s on topic %s: %s", client_id, topic, exc
                )
        return_codes.append(qos)

    suback = bytes([0x90, (2 + len(return_codes)) & 0xFF]) + packet_id.to_bytes(2, "big")
    await send_packet(writer, suback + bytes(return_codes))


async def handle_unsubscribe(writer: Any, data: bytes, client_id: str, state: BrokerState) -> None:
    """Process an UNSUBSCRIBE packet and answer with UNSUBACK."""
    packet_id = _u16(data, 0)
    offset = 2
    return_codes: list[int] = []
    while offset < len(data):
        topic, offset = parse_mqtt_string(data, offset)
        state.remove_subscription(client_id, topic)
        if state.unsubscribe_hook is not None:
            try:
                state.unsubscribe_hook(client_id, topic)
            except Exception as exc:
                logger.error(
                    "Unsubscribe hook failed for client %s on topic %s: %s", client_id, topic, exc
                )
        return_codes.append(0x00)

    unsuback = bytes([0xB0, (2 + len(return_codes)) & 0xFF]) + packet_id.to_bytes(2, "big")
    await send_packet(writer, unsuback + bytes(return_codes))


async def handle_publish(data: bytes, state: BrokerState, writer: Any) -> None:
    """Process a PUBLISH packet: retain, run the hook, queue it and acknowledge."""
    started = time.perf_counter()
    topic, offset = parse_mqtt_string(data, 0)
    qos = (data[0] >> 1) & 0x03
    retain = bool(data[0] & 0x01)

    if not topic or "+" in topic or "#" in topic:
        if qos > 0:
            await send_packet(writer, _ack(0x40, _u16(data, offset)))
        return

    packet_id = 0
    if qos > 0:
        if offset + 2 > len(data):
            await send_packet(writer, _ack(0x40, 0))
            return
        packet_id = _u16(data, offset)
        offset += 2

    payload = bytes(data[offset:])
    version = ProtocolVersion.V3_1_1

    if retain:
        state.store_retained_message(topic, payload, version)

    if state.publish_hook is not None:
        try:
            state.publish_hook(topic, payload, version)
        except Exception as exc:
            logger.error("Publish hook failed for topic %s: %s", topic, exc)

    try:
        await asyncio.wait_for(state.message_queue.put((topic, payload, version)), SEND_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Failed to send message to channel: channel full or closed")
        if qos > 0:
            await send_packet(writer, _ack(0x40, packet_id))
        return

    if qos == 1:
        await send_packet(writer, _ack(0x40, packet_id))
    elif qos == 2:
        await send_packet(writer, _ack(0x50, packet_id))

    logger.info("Processed PUBLISH packet in %.6fs", time.perf_counter() - started)