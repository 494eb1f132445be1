"""Command that runs a broker on the standard local ports."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional, Sequence

from .broker import Broker, BrokerConfig

logger = logging.getLogger(__name__)


def _authenticate(username: str, secret: str) -> bool:
    print(f"Authenticating: username={username}, password={secret}")
    return username == "admin" and secret == "password"


def _on_connect(client_id: str) -> None:
    print(f"Client {client_id} connected")


def _on_disconnect(client_id: str) -> None:
    print(f"Client {client_id} disconnected")


def _on_subscribe(client_id: str, topic: str) -> None:
    print(f"Client {client_id} subscribed to topic {topic}")


def _on_unsubscribe(client_id: str, topic: str) -> None:
    print(f"Client {client_id} unsubscribed from topic {topic}")


def build_config() -> BrokerConfig:
    """The configuration the command runs with."""
    return BrokerConfig(
        v3_address="127.0.0.1:1883",
        v5_address="127.0.0.1:1884",
        auth_callback=_authenticate,
        max_connections=100000,
        max_packet_size=1024 * 1024,
        connect_hook=_on_connect,
        disconnect_hook=_on_disconnect,
        subscribe_hook=_on_subscribe,
        unsubscribe_hook=_on_unsubscribe,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the broker until interrupted."""
    parser = argparse.ArgumentParser(description="Run an MQTT broker on 127.0.0.1:1883 and :1884.")
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    broker = Broker(build_config())
    try:
        asyncio.run(broker.start())
    except KeyboardInterrupt:
        return 0
    except OSError as exc:
        logger.error("Broker failed: %s", exc)
        return 1
    return 0