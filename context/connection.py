"""
Connection State Machine — tracks the transport session lifecycle.

Transport callbacks are translated into event objects (see
channels.transport.attach_transport) and fed through a single transition
function, handle(). The machine never performs I/O itself: each transition
returns the actions its owner must run (drain the queue, surface a pairing
challenge, schedule a restart).

States:
  INITIALIZING → AWAITING_PAIRING → READY → DISCONNECTED → RESTARTING → INITIALIZING
                                                        ↘ FAILED (restart budget exhausted,
                                                                  or repeated auth failure)

Usage:
    machine = ConnectionStateMachine(settings.client)
    result = machine.handle(Disconnected(reason="NAVIGATION"))
    for action in result.actions:
        ...   # SCHEDULE_RESTART(delay_seconds=5.0, attempt=1)
"""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

import structlog

from config.settings import ClientConfig
from models.schemas import ConnectionStatus, SelfInfo

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PairingChallenge:
    data: str


@dataclass(frozen=True)
class Authenticated:
    pass


@dataclass(frozen=True)
class ClientReady:
    self_info: Optional[SelfInfo] = None


@dataclass(frozen=True)
class AuthenticationFailed:
    reason: str = ""


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


@dataclass(frozen=True)
class LoadProgress:
    percent: int
    stage: str = ""


@dataclass(frozen=True)
class TransportFault:
    error: str


@dataclass(frozen=True)
class RestartStarted:
    manual: bool = False           # operator-driven; allowed from any state


@dataclass(frozen=True)
class RestartCompleted:
    pass


@dataclass(frozen=True)
class RestartFailed:
    error: str = ""


@dataclass(frozen=True)
class Shutdown:
    pass


ConnectionEvent = Union[
    PairingChallenge, Authenticated, ClientReady, AuthenticationFailed,
    Disconnected, LoadProgress, TransportFault,
    RestartStarted, RestartCompleted, RestartFailed, Shutdown,
]


# ──────────────────────────────────────────────────────────────
#  Actions & results
# ──────────────────────────────────────────────────────────────

class ActionType(str, Enum):
    DRAIN_QUEUE = "drain_queue"
    SURFACE_PAIRING = "surface_pairing"
    SCHEDULE_RESTART = "schedule_restart"


@dataclass(frozen=True)
class ConnectionAction:
    type: ActionType
    delay_seconds: float = 0.0
    attempt: int = 0
    payload: str = ""


@dataclass(frozen=True)
class TransitionRecord:
    from_state: ConnectionStatus
    to_state: ConnectionStatus
    event: str
    at: float


@dataclass
class TransitionResult:
    """Outcome of applying one event to the machine."""
    transitioned: bool
    from_state: ConnectionStatus
    to_state: ConnectionStatus
    actions: list[ConnectionAction] = field(default_factory=list)

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.from_state.value} → {self.to_state.value} [{len(self.actions)} actions]>"
        return f"<NoTransition {self.from_state.value} [{len(self.actions)} actions]>"


# ──────────────────────────────────────────────────────────────
#  Connection State Machine
# ──────────────────────────────────────────────────────────────

class ConnectionStateMachine:

    def __init__(self, config: ClientConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._state = ConnectionStatus.INITIALIZING
        self.pairing_retries = 0
        self.restart_attempts = 0
        self.last_disconnect_reason = ""
        self.self_info: Optional[SelfInfo] = None
        self.history: deque[TransitionRecord] = deque(maxlen=50)
        self._last_auth_failure_at: Optional[float] = None
        self._shutdown = False
        self._handlers: dict[type, Callable[[Any], list[ConnectionAction]]] = {
            PairingChallenge: self._on_pairing_challenge,
            Authenticated: self._on_authenticated,
            ClientReady: self._on_ready,
            AuthenticationFailed: self._on_auth_failure,
            Disconnected: self._on_disconnected,
            LoadProgress: self._on_load_progress,
            TransportFault: self._on_fault,
            RestartStarted: self._on_restart_started,
            RestartCompleted: self._on_restart_completed,
            RestartFailed: self._on_restart_failed,
            Shutdown: self._on_shutdown,
        }

    @property
    def state(self) -> ConnectionStatus:
        return self._state

    @property
    def is_ready(self) -> bool:
        # derived from the single state field, so it flips in the same assignment
        return self._state == ConnectionStatus.READY

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    # ── Transition function ───────────────────────────────────

    def handle(self, event: ConnectionEvent) -> TransitionResult:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unknown connection event: {event!r}")

        from_state = self._state
        actions = handler(event)
        to_state = self._state

        if to_state != from_state:
            self.history.append(TransitionRecord(
                from_state=from_state,
                to_state=to_state,
                event=type(event).__name__,
                at=self._clock(),
            ))
            logger.info("connection_transition",
                        transition=f"{from_state.value} → {to_state.value}",
                        trigger=type(event).__name__)

        return TransitionResult(
            transitioned=to_state != from_state,
            from_state=from_state,
            to_state=to_state,
            actions=actions,
        )

    # ── Handlers ──────────────────────────────────────────────

    def _on_pairing_challenge(self, event: PairingChallenge) -> list[ConnectionAction]:
        if self._state not in (ConnectionStatus.INITIALIZING, ConnectionStatus.AWAITING_PAIRING):
            logger.debug("pairing_challenge_ignored", state=self._state.value)
            return []

        self.pairing_retries += 1
        if self.pairing_retries > self.config.pairing_retry_limit:
            logger.error("pairing_retries_exhausted",
                         retries=self.pairing_retries,
                         limit=self.config.pairing_retry_limit)
            self._state = ConnectionStatus.RESTARTING
            return self._restart_path("pairing_retries_exhausted", delay_seconds=0.0)

        self._state = ConnectionStatus.AWAITING_PAIRING
        return [ConnectionAction(ActionType.SURFACE_PAIRING, payload=event.data,
                                 attempt=self.pairing_retries)]

    def _on_authenticated(self, event: Authenticated) -> list[ConnectionAction]:
        logger.info("transport_authenticated", state=self._state.value)
        return []

    def _on_ready(self, event: ClientReady) -> list[ConnectionAction]:
        if self._shutdown:
            logger.warning("ready_after_shutdown_ignored")
            return []

        self._state = ConnectionStatus.READY
        self.pairing_retries = 0
        self.restart_attempts = 0
        self._last_auth_failure_at = None
        if event.self_info is not None:
            self.self_info = event.self_info
        return [ConnectionAction(ActionType.DRAIN_QUEUE)]

    def _on_auth_failure(self, event: AuthenticationFailed) -> list[ConnectionAction]:
        if self._state == ConnectionStatus.FAILED:
            return []

        now = self._clock()
        window = self.config.auth_failure_window_ms / 1000
        if self._last_auth_failure_at is not None and now - self._last_auth_failure_at < window:
            logger.error("auth_failure_repeated",
                         reason=event.reason,
                         window_seconds=window)
            self._state = ConnectionStatus.FAILED
            return []

        logger.error("auth_failure", reason=event.reason)
        self._last_auth_failure_at = now
        self._state = ConnectionStatus.RESTARTING
        return self._restart_path(f"auth_failure: {event.reason}", delay_seconds=0.0)

    def _on_disconnected(self, event: Disconnected) -> list[ConnectionAction]:
        self.last_disconnect_reason = event.reason
        if self._state not in (
            ConnectionStatus.INITIALIZING,
            ConnectionStatus.AWAITING_PAIRING,
            ConnectionStatus.READY,
        ):
            # already restarting, down, or failed
            return []

        logger.warning("transport_disconnected", reason=event.reason)
        self._state = ConnectionStatus.DISCONNECTED
        return self._restart_path(event.reason)

    def _on_load_progress(self, event: LoadProgress) -> list[ConnectionAction]:
        if event.percent < 100:
            logger.info("transport_loading", percent=event.percent, stage=event.stage)
        return []

    def _on_fault(self, event: TransportFault) -> list[ConnectionAction]:
        logger.error("transport_error", error=event.error, state=self._state.value)
        return []

    def _on_restart_started(self, event: RestartStarted) -> list[ConnectionAction]:
        if event.manual:
            self._shutdown = False
            self.restart_attempts = 0
            self._last_auth_failure_at = None
        elif self._shutdown or self._state not in (
            ConnectionStatus.DISCONNECTED, ConnectionStatus.RESTARTING,
        ):
            return []
        self._state = ConnectionStatus.RESTARTING
        return []

    def _on_restart_completed(self, event: RestartCompleted) -> list[ConnectionAction]:
        # transport may have reported ready while connect() was still running
        if self._state == ConnectionStatus.RESTARTING:
            self._state = ConnectionStatus.INITIALIZING
        return []

    def _on_restart_failed(self, event: RestartFailed) -> list[ConnectionAction]:
        if self._state != ConnectionStatus.RESTARTING:
            return []
        logger.error("restart_failed", error=event.error, attempt=self.restart_attempts)
        self._state = ConnectionStatus.DISCONNECTED
        return self._restart_path(f"restart_failed: {event.error}")

    def _on_shutdown(self, event: Shutdown) -> list[ConnectionAction]:
        self._shutdown = True
        if self._state != ConnectionStatus.FAILED:
            self._state = ConnectionStatus.DISCONNECTED
        return []

    # ── Restart policy ────────────────────────────────────────

    def _restart_path(self, reason: str, delay_seconds: Optional[float] = None) -> list[ConnectionAction]:
        if self._shutdown:
            return []

        if self.restart_attempts >= self.config.max_reconnect_attempts:
            logger.error("max_restart_attempts_reached",
                         attempts=self.restart_attempts,
                         reason=reason,
                         hint="manual intervention required")
            self._state = ConnectionStatus.FAILED
            return []

        self.restart_attempts += 1
        self.pairing_retries = 0
        if delay_seconds is None:
            delay_seconds = self.config.restart_base_delay_ms * self.restart_attempts / 1000

        logger.info("restart_scheduled",
                    attempt=self.restart_attempts,
                    max_attempts=self.config.max_reconnect_attempts,
                    delay_seconds=delay_seconds,
                    reason=reason)
        return [ConnectionAction(ActionType.SCHEDULE_RESTART,
                                 delay_seconds=delay_seconds,
                                 attempt=self.restart_attempts,
                                 payload=reason)]
