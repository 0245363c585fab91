"""Payment Rail implementations."""

from __future__ import annotations

from channel_escrow.config import Settings, get_settings
from channel_escrow.domain.protocols import PaymentRail
from channel_escrow.infrastructure.rail.exchange import ExchangeRail
from channel_escrow.infrastructure.rail.simulated import SimulatedRail


def build_rail(settings: Settings | None = None) -> PaymentRail:
    """Return the simulated rail or the exchange client, per settings."""
    settings = settings or get_settings()
    if settings.rail_simulate:
        return SimulatedRail()
    return ExchangeRail(settings)


__all__ = ["ExchangeRail", "SimulatedRail", "build_rail"]
