"""Reading and decoding of MQTT packets."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Union

from .errors import PacketTooLargeError, ProtocolError

logger = logging.getLogger(__name__)


class PropertyId(enum.IntEnum):
    """Identifiers of the MQTT 5 properties the broker understands."""

    TOPIC_ALIAS = 0x01
    SESSION_EXPIRY_INTERVAL = 0x11
    MAXIMUM_PACKET_SIZE = 0x17
    SUBSCRIPTION_IDENTIFIER = 0x21
    USER_PROPERTY = 0x26


@dataclass(frozen=True)
class Property:
    """A decoded property: an integer, or a (key, value) pair for user properties."""

    identifier: PropertyId
    value: Union[int, tuple[str, str]]


_FIXED_WIDTH = {
    PropertyId.TOPIC_ALIAS: (2, "topic alias"),
    PropertyId.SESSION_EXPIRY_INTERVAL: (4, "session expiry interval"),
    PropertyId.MAXIMUM_PACKET_SIZE: (4, "maximum packet size"),
    PropertyId.SUBSCRIPTION_IDENTIFIER: (4, "subscription identifier"),
}


async def read_packet(reader: asyncio.StreamReader, max_packet_size: int) -> tuple[int, bytes]:
    """Read one packet and return its type and the bytes after the fixed header."""
    first = (await reader.readexactly(1))[0]
    packet_type = first >> 4
    remaining = 0
    multiplier = 1
    for position in range(4):
        byte = (await reader.readexactly(1))[0]
        remaining += (byte & 0x7F) * multiplier
        if not byte & 0x80:
            break
        multiplier *= 128
        if position == 3:
            raise ProtocolError("Invalid remaining length")

    if remaining > max_packet_size:
        raise PacketTooLargeError(
            f"Packet size {remaining} exceeds maximum allowed {max_packet_size}"
        )
    return packet_type, await reader.readexactly(remaining)


async def read_bytes(reader: asyncio.StreamReader, length: int) -> bytes:
    """Read exactly ``length`` bytes."""
    return await reader.readexactly(length)


def parse_mqtt_string(data: bytes, offset: int) -> tuple[str, int]:
    """Decode a length-prefixed UTF-8 string; return it with the offset after it."""
    if offset + 2 > len(data):
        raise ProtocolError("Invalid string length")
    length = int.from_bytes(data[offset:offset + 2], "big")
    offset += 2
    if offset + length > len(data):
        raise ProtocolError("Invalid string data")
    try:
        text = bytes(data[offset:offset + length]).decode("utf-8")
    except UnicodeDecodeError:
        raise ProtocolError("Invalid UTF-8 string") from None
    return text, offset + length


def parse_properties(data: bytes, offset: int) -> tuple[list[Property], int]:
    """Decode a property block; return the properties with the offset after it."""
    if offset >= len(data):
        return [], offset

    start = offset
    length = 0
    multiplier = 1
    for position in range(4):
        if offset >= len(data):
            logger.warning("Incomplete property length encoding at offset %d", start)
            raise ProtocolError("Incomplete property length encoding")
        byte = data[offset]
        length += (byte & 0x7F) * multiplier
        offset += 1
        if not byte & 0x80:
            break
        multiplier *= 128
        if position == 3:
            raise ProtocolError("Invalid property length encoding")

    if length == 0:
        return [], offset

    if length > len(data) - offset:
        logger.error(
            "Property length %d exceeds remaining packet length %d at offset %d",
            length, len(data) - offset, start,
        )
        raise ProtocolError("Property length exceeds packet length")

    end = offset + length
    properties: list[Property] = []
    while offset < end:
        prop_id = data[offset]
        offset += 1
        if prop_id == 0:
            raise ProtocolError("Invalid property ID 0")
        try:
            identifier = PropertyId(prop_id)
        except ValueError:
            logger.error("Unsupported property ID %d at offset %d", prop_id, offset - 1)
            raise ProtocolError(f"Unsupported property ID {prop_id}") from None

        if identifier is PropertyId.USER_PROPERTY:
            key, offset = parse_mqtt_string(data, offset)
            value, offset = parse_mqtt_string(data, offset)
            properties.append(Property(identifier, (key, value)))
            continue

        width, name = _FIXED_WIDTH[identifier]
        if offset + width > end:
            raise ProtocolError(f"Invalid {name} property")
        properties.append(Property(identifier, int.from_bytes(data[offset:offset + width], "big")))
        offset += width

    if offset != end:
        logger.error("Property parsing ended at %d, expected %d", offset, end)
        raise ProtocolError("Property parsing did not consume expected length")
    return properties, offset


async def send_packet(writer: asyncio.StreamWriter, data: bytes) -> None:
    """Write raw packet bytes and wait until they are flushed."""
    writer.write(data)
    await writer.drain()