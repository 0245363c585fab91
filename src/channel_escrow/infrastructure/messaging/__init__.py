"""Messaging Surface implementations."""

from channel_escrow.infrastructure.messaging.memory import (
    ChannelMessage,
    InMemoryMessagingSurface,
)

__all__ = ["ChannelMessage", "InMemoryMessagingSurface"]
