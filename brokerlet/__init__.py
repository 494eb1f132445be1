"""An asyncio MQTT broker for MQTT 3.1.1 and MQTT 5.0 clients."""

__version__ = "0.1.0"