# brokerlet

A small MQTT broker built on `asyncio`. It needs nothing outside the standard
library. It runs one listener for MQTT 3.1.1 clients and one for MQTT 5.0
clients. Both listeners share the same set of sessions, subscriptions and
retained messages.

## Installing

```
pip install .
```

To install the test requirements and run the tests:

```
pip install ".[test]"
pytest
```

## Running the broker

```
brokerlet
```

This starts the broker with the configuration from
`brokerlet.cli.build_config()`:

- MQTT 3.1.1 on `127.0.0.1:1883`.
- MQTT 5.0 on `127.0.0.1:1884`.
- At most 100000 connections served at once per listener. Further
  connections wait until a slot is free.
- Packets may have up to 1048576 bytes (1 MiB) of remaining length. A larger
  packet closes the connection.
- A client that sends both a user name and a password must use the user name
  `admin` and the password `password`. A client that sends neither is
  accepted. A client that sends only one of the two is rejected.
- Connects, disconnects, subscriptions and unsubscriptions are printed to
  standard output, and so are authentication attempts.

Stop it with Ctrl-C. The command exits with status 1 if a listener cannot be
opened.

## Using it from Python

Build a `brokerlet.broker.BrokerConfig` and pass it to `brokerlet.broker.Broker`:

```python
import asyncio

from brokerlet.broker import Broker, BrokerConfig


async def run() -> None:
    broker = Broker(BrokerConfig(v3_address="127.0.0.1:0", v5_address="127.0.0.1:0"))
    server = asyncio.create_task(broker.start())
    await broker.ready.wait()
    print(broker.addresses)   # {ProtocolVersion.V3_1_1: (host, port), ...}
    await broker.stop()
    await server


asyncio.run(run())
```

`BrokerConfig` fields:

- `v3_address` and `v5_address` take the form `host:port`. A listener is
  opened only for an address that is set. Port `0` picks a free port.
- `auth_callback(username, password)` returns whether the credentials are
  accepted. The default accepts everyone.
- `max_connections` is the number of connections served at once per listener.
  The default is 1000.
- `max_packet_size` is the largest remaining length of a packet. The default
  is 1 MiB.
- The hooks are `connect_hook(client_id)`, `disconnect_hook(client_id)`,
  `subscribe_hook(client_id, topic)`, `unsubscribe_hook(client_id, topic)` and
  `publish_hook(topic, payload, version)`. A hook that raises is logged, and
  the broker keeps serving.

`Broker.start()` opens the listeners. It serves until `Broker.stop()` is
called, then closes the listeners and every open session. While it runs,
`Broker.ready` is set and `Broker.addresses` maps each `ProtocolVersion` to its
bound address. Calling `start()` on a running broker raises `MqttError`. An
address that is not `host:port` raises `ValueError`.

The building blocks are public too:

- `brokerlet.packet` reads packets and decodes strings and MQTT 5 properties.
- `brokerlet.state.BrokerState` keeps the clients, subscriptions and retained
  messages.
- `brokerlet.v3` and `brokerlet.v5` handle CONNECT, SUBSCRIBE, UNSUBSCRIBE and
  PUBLISH for each protocol version.
- `brokerlet.client.handle_client` runs the session loop for one connection.

## Behaviour

- **Sessions.** A client must send CONNECT before SUBSCRIBE or UNSUBSCRIBE.
  Otherwise its connection is closed. An empty client identifier is rejected.
  With the clean-session flag set, any earlier session under the same
  identifier is dropped first. PINGREQ is answered with PINGRESP. DISCONNECT,
  or any packet type the broker does not handle, ends the connection.
- **Keep-alive.** Before CONNECT, a connection is closed after 10 seconds of
  silence. After CONNECT, the limit is 1.5 times the client's keep-alive
  interval, rounded down to whole seconds. A keep-alive of 0 therefore leaves
  no waiting time.
- **Topics.** Delivery matches topic names exactly. Wildcard filters are not
  expanded. A PUBLISH whose topic is empty or contains `+` or `#` is dropped,
  and the session stays open.
- **Shared subscriptions.** A subscription to `$share/<group>/<topic>`
  subscribes the client to `<topic>` and adds it to `<group>`. A message on any
  topic that has subscribers also goes to the first member of every group.
- **Retained messages.** A retained PUBLISH is stored for its topic. A
  retained PUBLISH with an empty payload clears the stored message. When a
  client subscribes to a topic that has a stored message, that message is sent
  again to all subscribers of the topic.
- **Acknowledgements.** At QoS 1 the broker answers with PUBACK, and at QoS 2
  with PUBREC. It does not handle the rest of the QoS 2 exchange.
  SUBACK grants the requested QoS, or reports failure for a QoS above 2.
- **MQTT 5 properties.** The broker understands these properties: topic alias,
  session expiry interval, maximum packet size, subscription identifier and
  user property. Any other property is a protocol error. A PUBLISH whose
  properties cannot be decoded is acknowledged with a reason code and not
  delivered.

## Limitations

- The broker does not use the flag bits of a PUBLISH fixed header. It takes
  QoS and retain from the first byte after that header, which is the high byte
  of the topic length. For topics shorter than 256 bytes, every PUBLISH is
  therefore handled as QoS 0 and is not retained.
- Messages are forwarded to subscribers as QoS 0 PUBLISH packets with a
  one-byte length field. A topic plus payload longer than 125 bytes is not
  encoded correctly.
- Sessions, subscriptions and retained messages live in memory only. Nothing
  survives a restart.
- There is no TLS, no WebSocket listener and no will message. Authentication
  is only what the `auth_callback` provides.

## Errors

`brokerlet.errors` defines `MqttError` and its subclasses `ProtocolError`,
`AuthFailedError`, `HookError` and `PacketTooLargeError`.

- The packet and protocol handlers raise `ProtocolError`, `AuthFailedError`
  and `PacketTooLargeError`.
- Hook failures are logged, not raised.
- In a running broker, such an error ends the connection of the client that
  caused it. The exception is a failure while handling PUBLISH: it is logged,
  and the session stays open.