"""Packet handlers for MQTT 5.0 clients."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from .errors import AuthFailedError, ProtocolError
from .packet import parse_mqtt_string, parse_properties, send_packet
from .protocol import ConnectResult, ProtocolVersion
from .state import BrokerState

logger = logging.getLogger(__name__)

PROTOCOL_NAME = "MQTT"
PROTOCOL_LEVEL = 5
SEND_TIMEOUT = 5.0

REASON_SUCCESS = 0x00
CONNACK_UNSUPPORTED_VERSION = 0x01
CONNACK_CLIENT_ID_NOT_VALID = 0x02
CONNACK_BAD_CREDENTIALS = 0x04
REASON_QOS_NOT_SUPPORTED = 0x80
REASON_PROTOCOL_ERROR = 0x81
REASON_TOPIC_NAME_INVALID = 0x82
REASON_MALFORMED_PACKET = 0x87
REASON_PACKET_TOO_LARGE = 0x8B

_PUBACK = 0x40
_PUBREC = 0x50
_SUBACK = 0x90
_UNSUBACK = 0xB0


def _u16(data: bytes, offset: int) -> int:
    if offset + 2 > len(data):
        raise ProtocolError("Missing two-byte field")
    return int.from_bytes(data[offset:offset + 2], "big")


def _reason_ack(first_byte: int, packet_id: int, reason: int) -> bytes:
    return bytes([first_byte, 0x03]) + packet_id.to_bytes(2, "big") + bytes([reason])


def _malformed_ack(first_byte: int, packet_id: int) -> bytes:
    return bytes([first_byte, 0x04]) + packet_id.to_bytes(2, "big") + bytes(
        [0x00, REASON_MALFORMED_PACKET]
    )


async def _connack(writer: Any, code: int) -> None:
    await send_packet(writer, bytes([0x20, 0x03, 0x00, code, 0x00]))


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

    _, offset = parse_properties(data, offset)

    client_id, offset = parse_mqtt_string(data, offset)
    if not client_id:
        await _connack(writer, CONNACK_CLIENT_ID_NOT_VALID)
        raise ProtocolError("Empty client ID")

    if username_flag and password_flag:
        username, offset = parse_mqtt_string(data, offset)
        secret, offset = parse_mqtt_string(data, offset)
        authenticated = bool(auth_callback(username, secret))
    else:
        authenticated = not (username_flag or password_flag)

    if offset < len(data):
        _, offset = parse_properties(data, offset)

    await _connack(writer, REASON_SUCCESS if authenticated else CONNACK_BAD_CREDENTIALS)
    if not authenticated:
        raise AuthFailedError()
    return ConnectResult(client_id, clean_session, keep_alive)


async def handle_subscribe(writer: Any, data: bytes, client_id: str, state: BrokerState) -> None:
    """Process a SUBSCRIBE packet and answer with SUBACK."""
    packet_id = _u16(data, 0)
    try:
        _, offset = parse_properties(data, 2)
    except ProtocolError:
        await send_packet(writer, _malformed_ack(_SUBACK, packet_id))
        raise

    return_codes: list[int] = []
    while offset < len(data):
        topic, offset = parse_mqtt_string(data, offset)
        if offset >= len(data):
            await send_packet(writer, _malformed_ack(_SUBACK, packet_id))
            raise ProtocolError("Missing QoS in SUBSCRIBE packet")
        qos = data[offset]
        offset += 1

        if qos > 2:
            return_codes.append(REASON_QOS_NOT_SUPPORTED)
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

    header = bytes([_SUBACK, (3 + len(return_codes)) & 0xFF]) + packet_id.to_bytes(2, "big")
    await send_packet(writer, header + b"\x00" + bytes(return_codes))


async def handle_unsubscribe(writer: Any, data: bytes, client_id: str, state: BrokerState) -> None:
    """Process an UNSUBSCRIBE packet and answer with UNSUBACK."""
    packet_id = _u16(data, 0)
    try:
        _, offset = parse_properties(data, 2)
    except ProtocolError:
        await send_packet(writer, _malformed_ack(_UNSUBACK, packet_id))
        raise

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
        return_codes.append(REASON_SUCCESS)

    header = bytes([_UNSUBACK, (3 + len(return_codes)) & 0xFF]) + packet_id.to_bytes(2, "big")
    await send_packet(writer, header + b"\x00" + bytes(return_codes))


async def _acknowledge(writer: Any, qos: int, packet_id: int, reason: int) -> None:
    if qos == 1:
        await send_packet(writer, _reason_ack(_PUBACK, packet_id, reason))
    elif qos == 2:
        await send_packet(writer, _reason_ack(_PUBREC, packet_id, reason))


async def handle_publish(data: bytes, state: BrokerState, writer: Any) -> None:
    """Process a PUBLISH packet: retain, run the hook, queue it and acknowledge.

    A publish whose property block cannot be decoded is answered with the
    matching reason code and not delivered.
    """
    started = time.perf_counter()
    qos = (data[0] >> 1) & 0x03 if data else 0
    retain = bool(data[0] & 0x01) if data else False

    try:
        topic, offset = parse_mqtt_string(data, 0)
    except ProtocolError:
        if qos > 0 and len(data) >= 4:
            await send_packet(writer, _reason_ack(_PUBACK, _u16(data, 2), REASON_MALFORMED_PACKET))
        raise

    if not topic or "+" in topic or "#" in topic:
        if qos > 0 and len(data) >= 4:
            await send_packet(writer, _reason_ack(_PUBACK, _u16(data, 2), REASON_TOPIC_NAME_INVALID))
        return

    packet_id = 0
    if qos > 0:
        if offset + 2 > len(data):
            await send_packet(writer, _reason_ack(_PUBACK, 0, REASON_MALFORMED_PACKET))
            return
        packet_id = _u16(data, offset)
        offset += 2

    if offset < len(data):
        try:
            _, offset = parse_properties(data, offset)
        except ProtocolError as exc:
            reason = (
                REASON_PROTOCOL_ERROR
                if "Unsupported property ID" in exc.detail
                else REASON_MALFORMED_PACKET
            )
            logger.warning("Rejected PUBLISH on topic %s: %s", topic, exc)
            await _acknowledge(writer, qos, packet_id, reason)
            return

    payload = bytes(data[offset:])
    version = ProtocolVersion.V5_0

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
        await _acknowledge(writer, qos, packet_id, REASON_PACKET_TOO_LARGE)
        return

    await _acknowledge(writer, qos, packet_id, REASON_SUCCESS)
    logger.info("Processed PUBLISH packet in %.6fs", time.perf_counter() - started)