"""MQTT control packet types, protocol versions and connect results."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class ControlPacketType(enum.IntEnum):
    """Packet type held in the upper nibble of a fixed header."""

    CONNECT = 1
    CONNACK = 2
    PUBLISH = 3
    PUBACK = 4
    PUBREC = 5
    PUBREL = 6
    PUBCOMP = 7
    SUBSCRIBE = 8
    SUBACK = 9
    UNSUBSCRIBE = 10
    UNSUBACK = 11
    PINGREQ = 12
    PINGRESP = 13
    DISCONNECT = 14


class ProtocolVersion(enum.Enum):
    """Protocol versions a listener speaks, valued by their protocol level."""

    V3_1_1 = 4
    V5_0 = 5


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of a successful CONNECT handshake."""

    client_id: str
    clean_session: bool
    keep_alive: int