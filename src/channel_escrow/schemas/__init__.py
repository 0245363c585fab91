"""Pydantic API schemas."""

from channel_escrow.schemas.deals import (
    ActionRequest,
    ActionResponse,
    AnalyticsResponse,
    ChannelMessageResponse,
    CompletedDealResponse,
    DealResponse,
    HealthResponse,
    MessageAccepted,
    MessageRequest,
    OpenDealRequest,
    ResolveRequest,
    UserProfileResponse,
    UserStatsResponse,
)

__all__ = [
    "ActionRequest",
    "ActionResponse",
    "AnalyticsResponse",
    "ChannelMessageResponse",
    "CompletedDealResponse",
    "DealResponse",
    "HealthResponse",
    "MessageAccepted",
    "MessageRequest",
    "OpenDealRequest",
    "ResolveRequest",
    "UserProfileResponse",
    "UserStatsResponse",
]
