"""
Transport interface consumed by the delivery layer.

A Transport wraps one messaging session (a WhatsApp-Web style client):
it connects, authenticates, emits lifecycle events and carries sends.
Concrete transports subclass Transport and call emit() from their own
callbacks; attach_transport() adapts those callbacks into connection events.
"""
from __future__ import annotations

import abc
import inspect
from typing import Any, Callable, Optional, Union

import structlog

from context.connection import (
    Authenticated, AuthenticationFailed, ClientReady, ConnectionEvent,
    Disconnected, LoadProgress, PairingChallenge, TransportFault,
)
from models.schemas import InboundMessage, MediaPayload, SelfInfo

logger = structlog.get_logger()


class TransportEvents:
    PAIRING_CHALLENGE = "pairing_challenge"
    READY = "ready"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    LOADING = "loading_screen"
    ERROR = "error"

    LIFECYCLE = (
        PAIRING_CHALLENGE, READY, AUTHENTICATED, AUTH_FAILURE,
        DISCONNECTED, LOADING, ERROR,
    )


# ══════════════════════════════════════════════════════════════
#  TRANSPORT — Abstract Base
# ══════════════════════════════════════════════════════════════

class Transport(abc.ABC):
    """Session-based messaging transport."""

    def __init__(self):
        self._handlers: dict[str, list[Callable[..., Any]]] = {}

    # ── Event registration ────────────────────────────────────

    def on(self, event_name: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event_name, []).append(handler)

    async def emit(self, event_name: str, *args: Any) -> None:
        """Invoke every handler registered for event_name, awaiting coroutines."""
        for handler in list(self._handlers.get(event_name, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    # ── Lifecycle ─────────────────────────────────────────────

    @abc.abstractmethod
    async def connect(self, config: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def destroy(self) -> None:
        ...

    @property
    def self_info(self) -> Optional[SelfInfo]:
        return None

    # ── Sending ───────────────────────────────────────────────

    @abc.abstractmethod
    async def send(
        self, recipient: str, content: Union[str, MediaPayload], caption: Optional[str] = None,
    ) -> Any:
        ...

    @abc.abstractmethod
    async def send_typing_state(self, recipient: str) -> None:
        ...

    @abc.abstractmethod
    async def download_media(self, message: InboundMessage) -> Optional[MediaPayload]:
        ...

    # ── Lookups ───────────────────────────────────────────────

    @abc.abstractmethod
    async def fetch_chat_by_id(self, chat_id: str) -> Any:
        ...

    @abc.abstractmethod
    async def fetch_contact_by_id(self, contact_id: str) -> Any:
        ...

    @abc.abstractmethod
    async def list_chats(self) -> list[Any]:
        ...


# ══════════════════════════════════════════════════════════════
#  CALLBACK → EVENT ADAPTER
# ══════════════════════════════════════════════════════════════

def translate_event(event_name: str, *args: Any) -> Optional[ConnectionEvent]:
    """Map a raw transport callback to a connection event (None if unknown)."""
    if event_name == TransportEvents.PAIRING_CHALLENGE:
        return PairingChallenge(data=str(args[0]) if args else "")
    if event_name == TransportEvents.READY:
        info = args[0] if args else None
        if isinstance(info, dict):
            info = SelfInfo(**info)
        return ClientReady(self_info=info if isinstance(info, SelfInfo) else None)
    if event_name == TransportEvents.AUTHENTICATED:
        return Authenticated()
    if event_name == TransportEvents.AUTH_FAILURE:
        return AuthenticationFailed(reason=str(args[0]) if args else "")
    if event_name == TransportEvents.DISCONNECTED:
        return Disconnected(reason=str(args[0]) if args else "")
    if event_name == TransportEvents.LOADING:
        percent = int(args[0]) if args else 0
        stage = str(args[1]) if len(args) > 1 else ""
        return LoadProgress(percent=percent, stage=stage)
    if event_name == TransportEvents.ERROR:
        return TransportFault(error=str(args[0]) if args else "unknown")
    return None


def attach_transport(
    transport: Transport,
    sink: Callable[[ConnectionEvent], Any],
) -> None:
    """
    Register lifecycle callbacks on the transport that forward translated
    events to sink (typically DeliveryService.handle_event).
    """
    for name in TransportEvents.LIFECYCLE:
        def _forward(*args: Any, _name: str = name):
            event = translate_event(_name, *args)
            if event is None:
                return None
            return sink(event)

        transport.on(name, _forward)

    logger.debug("transport_events_attached", events=list(TransportEvents.LIFECYCLE))
