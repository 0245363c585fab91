"""Escrow coordinator for peer-to-peer crypto deals negotiated in chat channels."""

__version__ = "0.1.0"
