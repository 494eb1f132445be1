"""Exception hierarchy raised by the broker."""

from __future__ import annotations


class MqttError(Exception):
    """Base class for every error the broker raises."""

    label = "MQTT error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.label}: {self.detail}" if self.detail else self.label


class ProtocolError(MqttError):
    """A packet violated the MQTT wire format or protocol rules."""

    label = "Protocol error"


class AuthFailedError(MqttError):
    """The client's credentials were rejected."""

    label = "Authentication failed"


class HookError(MqttError):
    """A user-supplied hook reported a failure."""

    label = "Hook error"


class PacketTooLargeError(MqttError):
    """A packet exceeded the configured maximum size."""

    label = "Packet too large"