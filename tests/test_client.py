import asyncio

import pytest

from brokerlet.client import handle_client
from brokerlet.protocol import ProtocolVersion
from brokerlet.state import BrokerState

V3 = ProtocolVersion.V3_1_1
V5 = ProtocolVersion.V5_0

CONNACK_V3_OK = bytes([0x20, 0x02, 0x00, 0x00])
CONNACK_V5_OK = bytes([0x20, 0x03, 0x00, 0x00, 0x00])
DISCONNECT = bytes([0xE0, 0x00])
PINGREQ = bytes([0xC0, 0x00])


class FakeWriter:
    def __init__(self):
        self.buffer = bytearray()
        self.closed = False

    def write(self, data):
        self.buffer += data

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def mqtt_str(text):
    raw = text.encode("utf-8")
    return len(raw).to_bytes(2, "big") + raw


def packet(first, body=b""):
    return bytes([first, len(body)]) + body


def connect_packet(level=4, client_id="c1", keep_alive=60, flags=0x02, creds=b""):
    props = b"\x00" if level == 5 else b""
    body = (
        mqtt_str("MQTT")
        + bytes([level, flags])
        + keep_alive.to_bytes(2, "big")
        + props
        + mqtt_str(client_id)
        + creds
    )
    return packet(0x10, body)


def recording_state():
    events = []
    state = BrokerState(
        connect_hook=lambda c: events.append(("connect", c)),
        disconnect_hook=lambda c: events.append(("disconnect", c)),
        subscribe_hook=lambda c, t: events.append(("subscribe", c, t)),
    )
    return state, events


async def run(stream, state, version=V3, max_size=1024, auth=lambda u, p: True, eof=True):
    reader = asyncio.StreamReader()
    reader.feed_data(stream)
    if eof:
        reader.feed_eof()
    writer = FakeWriter()
    await asyncio.wait_for(handle_client(reader, writer, state, auth, version, max_size), 5)
    return writer


@pytest.mark.asyncio
async def test_connect_then_disconnect():
    state, events = recording_state()
    writer = await run(connect_packet() + DISCONNECT, state)
    assert bytes(writer.buffer) == CONNACK_V3_OK
    assert writer.closed
    assert state.clients == {}
    assert events == [("connect", "c1"), ("disconnect", "c1")]


@pytest.mark.asyncio
async def test_pingreq_answered():
    state, _ = recording_state()
    writer = await run(connect_packet() + PINGREQ + DISCONNECT, state)
    assert bytes(writer.buffer) == CONNACK_V3_OK + bytes([0xD0, 0x00])


@pytest.mark.asyncio
async def test_subscribe_before_connect_closes():
    state, events = recording_state()
    subscribe = packet(0x82, b"\x00\x01" + mqtt_str("t") + b"\x00")
    writer = await run(subscribe + connect_packet(), state)
    assert writer.buffer == bytearray()
    assert writer.closed
    assert events == []


@pytest.mark.asyncio
async def test_v5_subscribe_after_connect():
    state, events = recording_state()
    subscribe = packet(0x82, b"\x00\x01\x00" + mqtt_str("a/b") + b"\x01")
    writer = await run(connect_packet(level=5) + subscribe + DISCONNECT, state, version=V5)
    assert bytes(writer.buffer) == CONNACK_V5_OK + bytes([0x90, 0x04, 0x00, 0x01, 0x00, 0x01])
    assert ("subscribe", "c1", "a/b") in events
    assert state.topic_subscribers == {}


@pytest.mark.asyncio
async def test_v3_unsubscribe_after_connect():
    state, _ = recording_state()
    subscribe = packet(0x82, b"\x00\x01" + mqtt_str("t") + b"\x00")
    unsubscribe = packet(0xA2, b"\x00\x02" + mqtt_str("t"))
    writer = await run(connect_packet() + subscribe + unsubscribe + DISCONNECT, state)
    assert writer.buffer.endswith(bytes([0xB0, 0x03, 0x00, 0x02, 0x00]))


@pytest.mark.asyncio
async def test_publish_is_queued():
    state, _ = recording_state()
    publish = packet(0x30, mqtt_str("t") + b"hi")
    writer = await run(publish + DISCONNECT, state)
    assert state.message_queue.get_nowait() == ("t", b"hi", V3)
    assert writer.closed


@pytest.mark.asyncio
async def test_bad_publish_keeps_session():
    state, _ = recording_state()
    bad_publish = packet(0x30, b"\x00")
    writer = await run(bad_publish + connect_packet() + DISCONNECT, state)
    assert bytes(writer.buffer) == CONNACK_V3_OK


@pytest.mark.asyncio
async def test_unsupported_packet_type_disconnects():
    state, events = recording_state()
    writer = await run(connect_packet() + packet(0x62, b"\x00\x01") + PINGREQ, state)
    assert bytes(writer.buffer) == CONNACK_V3_OK
    assert state.clients == {}
    assert events[-1] == ("disconnect", "c1")


@pytest.mark.asyncio
async def test_bad_credentials_rejected():
    state, events = recording_state()
    creds = mqtt_str("admin") + mqtt_str("password")
    writer = await run(
        connect_packet(flags=0xC2, creds=creds), state, auth=lambda u, p: False
    )
    assert bytes(writer.buffer) == bytes([0x20, 0x02, 0x00, 0x04])
    assert state.clients == {}
    assert events == []
    assert writer.closed


@pytest.mark.asyncio
async def test_packet_too_large_closes():
    state, _ = recording_state()
    writer = await run(connect_packet(), state, max_size=4)
    assert writer.buffer == bytearray()
    assert writer.closed


@pytest.mark.asyncio
async def test_eof_removes_client():
    state, events = recording_state()
    writer = await run(connect_packet(), state)
    assert state.clients == {}
    assert events == [("connect", "c1"), ("disconnect", "c1")]
    assert writer.closed


@pytest.mark.asyncio
async def test_keep_alive_timeout_removes_client():
    state, events = recording_state()
    writer = await run(connect_packet(keep_alive=0), state, eof=False)
    assert bytes(writer.buffer) == CONNACK_V3_OK
    assert events == [("connect", "c1"), ("disconnect", "c1")]
    assert writer.closed


@pytest.mark.asyncio
async def test_v5_listener_rejects_v3_connect():
    state, _ = recording_state()
    writer = await run(connect_packet(level=4), state, version=V5)
    assert bytes(writer.buffer) == bytes([0x20, 0x03, 0x00, 0x01, 0x00])
    assert state.clients == {}