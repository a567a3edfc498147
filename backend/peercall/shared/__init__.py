"""Shared DTOs and exceptions used across the call modules."""

from .dto import SessionDescription, IceCandidatePayload
from .errors import (
    CallError,
    MediaUnavailable,
    StoreUnavailable,
    ChannelNotFound,
    InvalidChannelId,
    ProtocolError,
    NegotiationError,
    SessionClosed,
    CallInProgress,
)

__all__ = [
    "SessionDescription",
    "IceCandidatePayload",
    "CallError",
    "MediaUnavailable",
    "StoreUnavailable",
    "ChannelNotFound",
    "InvalidChannelId",
    "ProtocolError",
    "NegotiationError",
    "SessionClosed",
    "CallInProgress",
]
