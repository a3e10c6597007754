"""Adapter modules for external integrations."""

from .mqtt import InboundMessage, MQTTClient, MQTTConnectionError, SessionInfo

__all__ = [
    "InboundMessage",
    "MQTTClient",
    "MQTTConnectionError",
    "SessionInfo",
]
