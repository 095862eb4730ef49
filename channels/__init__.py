"""Delivery channel infrastructure: transport interface, splitting, media, rate limiting."""
from channels.base import (
    ChannelError,
    TransportError,
    NotReadyError,
    MediaValidationError,
    SlidingWindowRateLimiter,
    DeliveryMetrics,
)
from channels.media import normalize_media, validate_media
from channels.splitter import Chunk, split_message, join_chunks
from channels.transport import Transport, TransportEvents, attach_transport, translate_event

__all__ = [
    "ChannelError", "TransportError", "NotReadyError", "MediaValidationError",
    "SlidingWindowRateLimiter", "DeliveryMetrics",
    "normalize_media", "validate_media",
    "Chunk", "split_message", "join_chunks",
    "Transport", "TransportEvents", "attach_transport", "translate_event",
]
