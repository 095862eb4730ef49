"""
Core data models for the delivery layer.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import mimetypes
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConnectionStatus(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    READY = "ready"
    DISCONNECTED = "disconnected"
    RESTARTING = "restarting"
    FAILED = "failed"


class ItemKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"


class SendOutcome(str, Enum):
    """Terminal outcome of one logical send request (logged, and counted in metrics)."""
    DELIVERED = "delivered"
    QUEUED = "queued"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"          # failed validation, never retried
    FAILED = "failed"              # transport failure after retries


# ──────────────────────────────────────────────────────────────
#  Delivery options — per-request knobs carried into the queue
# ──────────────────────────────────────────────────────────────

class DeliveryOptions(BaseModel):
    skip_typing: bool = False
    suppress_retry: bool = False
    retry_count: int = Field(default=0, ge=0)

    def next_attempt(self) -> DeliveryOptions:
        return self.model_copy(update={"retry_count": self.retry_count + 1})


# ──────────────────────────────────────────────────────────────
#  Media — the single internal representation for outbound media
# ──────────────────────────────────────────────────────────────

class MediaPayload(BaseModel):
    """Binary media plus the metadata the transport needs to frame it."""
    mimetype: str
    data: bytes
    filename: str = ""

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        """Subtype of the mimetype, e.g. 'jpeg' for image/jpeg."""
        _, _, subtype = self.mimetype.partition("/")
        return subtype.split(";")[0].strip().lower()

    @classmethod
    def from_bytes(
        cls, data: bytes, mimetype: Optional[str] = None, filename: Optional[str] = None,
    ) -> MediaPayload:
        return cls(
            mimetype=mimetype or "image/jpeg",
            data=bytes(data),
            filename=filename or "image.jpg",
        )

    @classmethod
    def guess_mimetype(cls, filename: str) -> str:
        guessed, _ = mimetypes.guess_type(filename)
        return guessed or "application/octet-stream"


# ──────────────────────────────────────────────────────────────
#  Transport-facing records
# ──────────────────────────────────────────────────────────────

class SelfInfo(BaseModel):
    """Identity of the logged-in session, reported with the ready event."""
    pushname: str = ""
    user: str = ""                 # own number / account id
    platform: str = ""


class InboundMessage(BaseModel):
    """Normalized view of a received message, as handed over by the transport."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = ""
    chat_id: str
    sender: str = ""               # phone number of the author
    body: str = ""
    has_media: bool = False
    from_me: bool = False
    is_group: bool = False
    raw: Any = None                # transport-native message object
