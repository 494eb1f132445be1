import asyncio
import contextlib

import pytest

from brokerlet.broker import Broker, BrokerConfig
from brokerlet.protocol import ProtocolVersion


def _string(text):
    raw = text.encode("utf-8")
    return len(raw).to_bytes(2, "big") + raw


def _packet(first_byte, body):
    return bytes([first_byte, len(body)]) + body


def _connect_v3(client_id, flags=0x02, credentials=b""):
    body = _string("MQTT") + bytes([4, flags, 0x00, 0x3C]) + _string(client_id) + credentials
    return _packet(0x10, body)


def _connect_v5(client_id):
    body = _string("MQTT") + bytes([5, 0x02, 0x00, 0x3C, 0x00]) + _string(client_id)
    return _packet(0x10, body)


@contextlib.asynccontextmanager
async def running(config):
    broker = Broker(config)
    task = asyncio.create_task(broker.start())
    await asyncio.wait_for(broker.ready.wait(), 5)
    try:
        yield broker
    finally:
        await broker.stop()
        await asyncio.wait_for(task, 5)


async def _open(broker, version):
    host, port = broker.addresses[version]
    return await asyncio.open_connection(host, port)


async def _read(reader, count):
    return await asyncio.wait_for(reader.readexactly(count), 5)


def _local_config(**kwargs):
    return BrokerConfig(v3_address="127.0.0.1:0", v5_address="127.0.0.1:0", **kwargs)


def test_default_config_accepts_any_credentials():
    config = BrokerConfig()
    assert config.auth_callback("anyone", "password") is True
    assert config.max_packet_size == 1024 * 1024
    assert config.v3_address is None and config.v5_address is None


@pytest.mark.asyncio
async def test_v3_connect_is_accepted():
    async with running(_local_config()) as broker:
        reader, writer = await _open(broker, ProtocolVersion.V3_1_1)
        writer.write(_connect_v3("c1"))
        await writer.drain()
        assert await _read(reader, 4) == bytes([0x20, 0x02, 0x00, 0x00])
        writer.close()


@pytest.mark.asyncio
async def test_v5_connect_is_accepted():
    async with running(_local_config()) as broker:
        reader, writer = await _open(broker, ProtocolVersion.V5_0)
        writer.write(_connect_v5("c5"))
        await writer.drain()
        assert await _read(reader, 5) == bytes([0x20, 0x03, 0x00, 0x00, 0x00])
        writer.close()


@pytest.mark.asyncio
async def test_rejected_credentials_close_the_connection():
    config = _local_config(auth_callback=lambda user, secret: False)
    async with running(config) as broker:
        reader, writer = await _open(broker, ProtocolVersion.V3_1_1)
        credentials = _string("admin") + _string("password")
        writer.write(_connect_v3("c1", flags=0xC2, credentials=credentials))
        await writer.drain()
        assert await _read(reader, 4) == bytes([0x20, 0x02, 0x00, 0x04])
        assert await asyncio.wait_for(reader.read(), 5) == b""
        writer.close()


@pytest.mark.asyncio
async def test_oversized_packet_closes_the_connection():
    async with running(_local_config(max_packet_size=4)) as broker:
        reader, writer = await _open(broker, ProtocolVersion.V3_1_1)
        writer.write(_connect_v3("c1"))
        await writer.drain()
        assert await asyncio.wait_for(reader.read(), 5) == b""
        writer.close()


@pytest.mark.asyncio
async def test_published_message_reaches_subscriber():
    async with running(_local_config()) as broker:
        sub_reader, sub_writer = await _open(broker, ProtocolVersion.V3_1_1)
        sub_writer.write(_connect_v3("sub"))
        await sub_writer.drain()
        assert await _read(sub_reader, 4) == bytes([0x20, 0x02, 0x00, 0x00])
        sub_writer.write(_packet(0x82, b"\x00\x01" + _string("a/b") + b"\x00"))
        await sub_writer.drain()
        assert await _read(sub_reader, 5) == bytes([0x90, 0x03, 0x00, 0x01, 0x00])

        pub_reader, pub_writer = await _open(broker, ProtocolVersion.V3_1_1)
        pub_writer.write(_connect_v3("pub"))
        await pub_writer.drain()
        assert await _read(pub_reader, 4) == bytes([0x20, 0x02, 0x00, 0x00])
        pub_writer.write(_packet(0x30, _string("a/b") + b"hi"))
        await pub_writer.drain()

        expected = bytes([0x30, 0x07]) + _string("a/b") + b"hi"
        assert await _read(sub_reader, len(expected)) == expected
        sub_writer.close()
        pub_writer.close()


@pytest.mark.asyncio
async def test_hooks_run_on_connect_and_disconnect():
    events = []
    config = _local_config(
        connect_hook=lambda client_id: events.append(("connect", client_id)),
        disconnect_hook=lambda client_id: events.append(("disconnect", client_id)),
    )
    async with running(config) as broker:
        reader, writer = await _open(broker, ProtocolVersion.V3_1_1)
        writer.write(_connect_v3("hooked"))
        await writer.drain()
        await _read(reader, 4)
        writer.write(bytes([0xC0, 0x00]))
        await writer.drain()
        assert await _read(reader, 2) == bytes([0xD0, 0x00])
        assert events == [("connect", "hooked")]

        writer.write(bytes([0xE0, 0x00]))
        await writer.drain()
        assert await asyncio.wait_for(reader.read(), 5) == b""
        assert events == [("connect", "hooked"), ("disconnect", "hooked")]
        writer.close()


@pytest.mark.asyncio
async def test_stop_ends_start_and_closes_listeners():
    broker = Broker(BrokerConfig(v3_address="127.0.0.1:0"))
    task = asyncio.create_task(broker.start())
    await asyncio.wait_for(broker.ready.wait(), 5)
    host, port = broker.addresses[ProtocolVersion.V3_1_1]
    await broker.stop()
    assert await asyncio.wait_for(task, 5) is None
    assert broker.addresses == {}
    with pytest.raises(OSError):
        await asyncio.open_connection(host, port)


@pytest.mark.asyncio
async def test_start_without_addresses_returns_at_once():
    broker = Broker(BrokerConfig())
    assert await asyncio.wait_for(broker.start(), 5) is None
    assert broker.addresses == {}


@pytest.mark.asyncio
async def test_invalid_address_is_rejected():
    broker = Broker(BrokerConfig(v3_address="nohost"))
    with pytest.raises(ValueError):
        await broker.start()