"""
Delivery Service — public send API over a volatile transport session.

Responsibilities:
- Route sends: immediate when the connection is ready, queued otherwise
- Per-recipient admission control (rate-limited sends are dropped, not queued)
- Split long bodies, pace chunks, show a typing indicator
- Bounded retry of transient transport failures
- Own the single drain loop that empties the queue on every return to READY
- Execute connection actions: restart with backoff, surface pairing challenges

Request lifecycle:
  Requested ─(not ready)──────────▶ Queued ─(drain)─▶ Delivered | Dropped
  Requested ─(ready, rate-limited)▶ Rejected
  Requested ─(ready)──────────────▶ Attempting ─▶ Delivered
                                               ─▶ Retrying (≤ max) ─▶ Delivered | Failed
                                               ─▶ (connection lost) ─▶ Queued
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from channels.base import (
    ChannelError, DeliveryMetrics, MediaValidationError, NotReadyError,
    SlidingWindowRateLimiter, TransportError,
)
from channels.media import MediaContent, normalize_media, validate_media
from channels.splitter import join_chunks, split_message
from channels.transport import Transport, attach_transport
from config.settings import Settings, validate_settings
from context.connection import (
    ActionType, ConnectionAction, ConnectionEvent, ConnectionStateMachine,
    RestartCompleted, RestartFailed, RestartStarted, Shutdown, TransitionResult,
)
from core.analysis import ContentAnalyzer
from job_queue.delivery_queue import DeliveryQueue, QueuedItem
from models.schemas import (
    ConnectionStatus, DeliveryOptions, InboundMessage, ItemKind, MediaPayload, SendOutcome,
)
from utils.access import AccessPolicy

logger = structlog.get_logger()


class DeliveryService:
    """
    Composition root for the delivery layer.

    Usage:
        service = DeliveryService(transport, load_settings())
        await service.initialize()
        await service.send_message("6281234567890@c.us", report_text)
        await service.send_media(chat_id, "/tmp/chart.png", caption="M15")
    """

    def __init__(
        self,
        transport: Transport,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
        pairing_handler: Optional[Callable[[str], Any]] = None,
    ):
        self.transport = transport
        self.settings = settings
        self.connection = ConnectionStateMachine(settings.client, clock=clock)
        self.rate_limiter = SlidingWindowRateLimiter(
            limit=settings.security.rate_limit_per_recipient,
            window_seconds=settings.security.rate_limit_window_ms / 1000,
            enabled=settings.features.rate_limiting,
            clock=clock,
        )
        self.queue = DeliveryQueue(
            stale_after_seconds=settings.messaging.stale_after_ms / 1000,
            max_retries=settings.messaging.max_retries,
            clock=clock,
            on_drop=self._on_item_dropped,
        )
        self.access = AccessPolicy(settings.security)
        self.metrics = DeliveryMetrics()
        self._pairing_handler = pairing_handler
        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._events_attached = False

    @property
    def is_ready(self) -> bool:
        return self.connection.is_ready

    @property
    def state(self) -> ConnectionStatus:
        return self.connection.state

    # ── Lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> None:
        """Validate settings, wire transport callbacks and start connecting."""
        for warning in validate_settings(self.settings):
            logger.warning("settings_warning", warning=warning)

        if not self._events_attached:
            attach_transport(self.transport, self.handle_event)
            self._events_attached = True

        try:
            await self.transport.connect(self._connect_config())
        except Exception as e:
            logger.error("delivery_service_init_failed", error=str(e))
            raise

        logger.info("delivery_service_initializing",
                    session=self.settings.client.session_name)

    async def restart(self) -> None:
        """Operator-driven restart; also the way out of FAILED."""
        self._cancel_restart()
        await self.handle_event(RestartStarted(manual=True))
        await self._reconnect(attempt=0)

    async def destroy(self) -> None:
        await self.handle_event(Shutdown())
        self._cancel_restart()
        try:
            await self.transport.destroy()
        except Exception as e:
            logger.error("transport_destroy_failed", error=str(e))
        logger.info("delivery_service_destroyed", queue_length=len(self.queue))

    def _connect_config(self) -> dict[str, Any]:
        return {"session_name": self.settings.client.session_name, **self.settings.client.options}

    # ── Connection events & actions ───────────────────────────

    async def handle_event(self, event: ConnectionEvent) -> TransitionResult:
        result = self.connection.handle(event)
        for action in result.actions:
            self._run_action(action)
        return result

    def _run_action(self, action: ConnectionAction) -> None:
        if action.type == ActionType.DRAIN_QUEUE:
            self._schedule_drain()
        elif action.type == ActionType.SURFACE_PAIRING:
            self._surface_pairing(action.payload, action.attempt)
        elif action.type == ActionType.SCHEDULE_RESTART:
            self._schedule_restart(action.delay_seconds, action.attempt)

    def _surface_pairing(self, data: str, attempt: int) -> None:
        logger.warning("pairing_challenge",
                       attempt=attempt,
                       limit=self.settings.client.pairing_retry_limit,
                       hint="scan the code with the linked phone")
        if self._pairing_handler:
            try:
                self._pairing_handler(data)
            except Exception as e:
                logger.error("pairing_handler_failed", attempt=attempt, error=str(e))

    def _schedule_drain(self) -> None:
        if self._drain_task and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self.process_queue())

    async def wait_for_drain(self) -> None:
        if self._drain_task:
            await self._drain_task

    def _schedule_restart(self, delay_seconds: float, attempt: int) -> None:
        if self._restart_task and not self._restart_task.done():
            logger.debug("restart_already_pending", attempt=attempt)
            return
        self._restart_task = asyncio.create_task(self._restart_after(delay_seconds, attempt))

    def _cancel_restart(self) -> None:
        if self._restart_task and not self._restart_task.done():
            self._restart_task.cancel()
        self._restart_task = None

    async def _restart_after(self, delay_seconds: float, attempt: int) -> None:
        await asyncio.sleep(delay_seconds)
        # a follow-up failure must be able to schedule the next attempt
        self._restart_task = None
        await self.handle_event(RestartStarted())
        if self.connection.state != ConnectionStatus.RESTARTING:
            logger.info("restart_skipped", state=self.connection.state.value, attempt=attempt)
            return
        await self._reconnect(attempt)

    async def _reconnect(self, attempt: int) -> None:
        logger.info("transport_restarting", attempt=attempt)
        try:
            await self.transport.destroy()
        except Exception as e:
            logger.warning("transport_destroy_failed", error=str(e))

        await asyncio.sleep(self.settings.client.restart_settle_delay_ms / 1000)

        try:
            await self.transport.connect(self._connect_config())
        except Exception as e:
            logger.error("transport_reconnect_failed", attempt=attempt, error=str(e))
            await self.handle_event(RestartFailed(error=str(e)))
            return
        await self.handle_event(RestartCompleted())

    # ── Public send API ───────────────────────────────────────

    async def send_message(
        self, recipient: str, body: str, options: Optional[DeliveryOptions] = None,
    ) -> bool:
        """Deliver a text message. True only when every chunk reached the transport."""
        if not recipient:
            raise ValueError("recipient must be non-empty")
        options = options or DeliveryOptions()

        if not body or not body.strip():
            self.metrics.record(SendOutcome.REJECTED, error="empty_body")
            logger.warning("empty_message_rejected", recipient=recipient)
            return False

        if not self.is_ready:
            self.queue.enqueue(QueuedItem.text(recipient, body, options, enqueued_at=self.queue.now()))
            self.metrics.record(SendOutcome.QUEUED)
            logger.info("message_queued", recipient=recipient, reason="not_ready")
            return False

        if not self._admit(recipient):
            return False

        chunks = self._split(body)
        outcome, next_chunk = await self._attempt_text(recipient, chunks, options)
        if outcome == SendOutcome.QUEUED:
            remainder = join_chunks(chunks[next_chunk:])
            self.queue.enqueue(QueuedItem.text(recipient, remainder, options, enqueued_at=self.queue.now()))
            self.metrics.record(SendOutcome.QUEUED)
        return outcome == SendOutcome.DELIVERED

    async def send_media(
        self,
        recipient: str,
        content: MediaContent,
        caption: str = "",
        options: Optional[DeliveryOptions] = None,
        mimetype: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> bool:
        """Deliver media given as a file path, raw bytes or a MediaPayload."""
        if not recipient:
            raise ValueError("recipient must be non-empty")
        options = options or DeliveryOptions()

        try:
            media = normalize_media(content, mimetype=mimetype, filename=filename)
            validate_media(media, self.settings.media)
        except MediaValidationError as e:
            self.metrics.record(SendOutcome.REJECTED, error=e.reason)
            logger.warning("media_rejected", recipient=recipient, reason=e.reason)
            return False

        if not self.is_ready:
            self.queue.enqueue(QueuedItem.media(recipient, media, caption, options,
                                                enqueued_at=self.queue.now()))
            self.metrics.record(SendOutcome.QUEUED)
            logger.info("media_queued", recipient=recipient, reason="not_ready")
            return False

        if not self._admit(recipient):
            return False

        outcome = await self._attempt_media(recipient, media, caption, options)
        if outcome == SendOutcome.QUEUED:
            self.queue.enqueue(QueuedItem.media(recipient, media, caption, options,
                                                enqueued_at=self.queue.now()))
            self.metrics.record(SendOutcome.QUEUED)
        return outcome == SendOutcome.DELIVERED

    async def download_media(self, message: InboundMessage) -> Optional[MediaPayload]:
        """
        Fetch media attached to an inbound message.

        No media, a failed download and invalid content all return None;
        none of them is retryable here.
        """
        if not message.has_media:
            return None

        try:
            media = await self.transport.download_media(message)
        except Exception as e:
            logger.error("media_download_failed", message_id=message.id, error=str(e))
            return None

        if media is None:
            logger.warning("media_download_empty", message_id=message.id)
            return None

        try:
            validate_media(media, self.settings.media)
        except MediaValidationError as e:
            logger.warning("downloaded_media_invalid", message_id=message.id, reason=e.reason)
            return None
        return media

    async def analyze_media(self, message: InboundMessage, analyzer: ContentAnalyzer) -> Optional[str]:
        """Download + validate inbound media and forward it to the analyzer."""
        media = await self.download_media(message)
        if media is None:
            return None
        try:
            text = await analyzer.analyze(media.data)
        except Exception as e:
            logger.error("media_analysis_failed", message_id=message.id, error=str(e))
            return None
        return text or None

    # ── Drain loop ────────────────────────────────────────────

    async def process_queue(self) -> int:
        """
        Deliver queued items while the connection stays ready.
        Returns the number delivered. A no-op if a drain is already running.
        """
        if self._draining or not self.is_ready:
            return 0

        self._draining = True
        delivered = 0
        logger.info("queue_drain_started", queue_length=len(self.queue))
        try:
            while self.is_ready and len(self.queue):
                batch = self.queue.dequeue_all()
                for index, item in enumerate(batch):
                    if not self.is_ready:
                        self.queue.requeue(batch[index:])
                        break

                    outcome = await self._deliver_queued(item)
                    if outcome == SendOutcome.QUEUED:
                        # connection dropped mid-delivery; keep FIFO order for next READY
                        self.queue.requeue(batch[index + 1:])
                        self.queue.retry(item)
                        break
                    if outcome == SendOutcome.DELIVERED:
                        delivered += 1

                    await asyncio.sleep(self.settings.messaging.inter_message_delay_ms / 1000)
        finally:
            self._draining = False

        logger.info("queue_drain_finished",
                    delivered=delivered,
                    remaining=len(self.queue),
                    state=self.connection.state.value)
        return delivered

    async def _deliver_queued(self, item: QueuedItem) -> SendOutcome:
        # queued items already waited out an outage: one attempt only
        options = item.options.model_copy(update={"suppress_retry": True})

        if not self._admit(item.recipient):
            return SendOutcome.RATE_LIMITED

        if item.kind == ItemKind.TEXT:
            chunks = self._split(item.payload)
            outcome, next_chunk = await self._attempt_text(item.recipient, chunks, options)
            if outcome == SendOutcome.QUEUED:
                item.payload = join_chunks(chunks[next_chunk:])
        else:
            try:
                validate_media(item.payload, self.settings.media)
            except MediaValidationError as e:
                logger.warning("queued_media_dropped",
                               item_id=item.item_id,
                               recipient=item.recipient,
                               reason=e.reason)
                self.metrics.record(SendOutcome.REJECTED, error=e.reason)
                self.metrics.record_drop(error=e.reason)
                return SendOutcome.REJECTED
            outcome = await self._attempt_media(item.recipient, item.payload, item.caption, options)

        if outcome == SendOutcome.FAILED:
            logger.warning("queued_item_dropped",
                           item_id=item.item_id,
                           recipient=item.recipient,
                           reason="delivery_failed")
            self.metrics.record_drop(error=f"{item.item_id}: delivery_failed")
        return outcome

    def _on_item_dropped(self, item: QueuedItem, reason: str) -> None:
        self.metrics.record_drop(stale=reason == "stale", error=f"{item.item_id}: {reason}")

    # ── Delivery attempts ─────────────────────────────────────

    async def _attempt_text(
        self, recipient: str, chunks: list[str], options: DeliveryOptions,
    ) -> tuple[SendOutcome, int]:
        """
        Send chunks in order with bounded retries.

        Retries resume from the first undelivered chunk. Returns the outcome
        and the index of the first undelivered chunk; QUEUED means the
        connection left READY and the remainder must be queued by the caller.
        """
        messaging = self.settings.messaging
        start = time.monotonic()
        next_chunk = 0
        typed = not self._typing_enabled(options)

        try:
            async for attempt in self._retrying(recipient, options):
                with attempt:
                    self._ensure_ready()
                    if not typed:
                        await self._call(self.transport.send_typing_state, recipient)
                        typed = True
                        await asyncio.sleep(messaging.typing_delay_ms / 1000)
                    while next_chunk < len(chunks):
                        if next_chunk > 0:
                            await asyncio.sleep(messaging.inter_message_delay_ms / 1000)
                        await self._call(self.transport.send, recipient, chunks[next_chunk])
                        next_chunk += 1
                        self.metrics.record_chunk()
        except NotReadyError:
            logger.warning("send_interrupted_not_ready",
                           recipient=recipient,
                           delivered_chunks=next_chunk,
                           total_chunks=len(chunks))
            return SendOutcome.QUEUED, next_chunk
        except TransportError as e:
            if not self.is_ready:
                logger.warning("send_interrupted_not_ready",
                               recipient=recipient,
                               delivered_chunks=next_chunk,
                               total_chunks=len(chunks),
                               error=str(e))
                return SendOutcome.QUEUED, next_chunk
            self.metrics.record(SendOutcome.FAILED, error=str(e))
            logger.error("message_send_failed",
                         recipient=recipient,
                         delivered_chunks=next_chunk,
                         total_chunks=len(chunks),
                         retry_count=options.retry_count,
                         error=str(e))
            return SendOutcome.FAILED, next_chunk

        latency = (time.monotonic() - start) * 1000
        self.metrics.record(SendOutcome.DELIVERED, latency_ms=latency)
        logger.info("message_sent", recipient=recipient, chunks=len(chunks))
        return SendOutcome.DELIVERED, next_chunk

    async def _attempt_media(
        self, recipient: str, media: MediaPayload, caption: Optional[str], options: DeliveryOptions,
    ) -> SendOutcome:
        start = time.monotonic()
        try:
            async for attempt in self._retrying(recipient, options):
                with attempt:
                    self._ensure_ready()
                    await self._call(self.transport.send, recipient, media, caption or None)
        except NotReadyError:
            logger.warning("media_send_interrupted_not_ready", recipient=recipient)
            return SendOutcome.QUEUED
        except TransportError as e:
            if not self.is_ready:
                logger.warning("media_send_interrupted_not_ready", recipient=recipient, error=str(e))
                return SendOutcome.QUEUED
            self.metrics.record(SendOutcome.FAILED, error=str(e))
            logger.error("media_send_failed",
                         recipient=recipient,
                         filename=media.filename,
                         retry_count=options.retry_count,
                         error=str(e))
            return SendOutcome.FAILED

        latency = (time.monotonic() - start) * 1000
        self.metrics.record(SendOutcome.DELIVERED, latency_ms=latency)
        logger.info("media_sent", recipient=recipient, filename=media.filename, size=media.size)
        return SendOutcome.DELIVERED

    def _retrying(self, recipient: str, options: DeliveryOptions) -> AsyncRetrying:
        messaging = self.settings.messaging
        if options.suppress_retry:
            retries = 0
        else:
            retries = max(0, messaging.max_retries - options.retry_count)

        def _log_retry(retry_state):
            self.metrics.record_retry()
            logger.info("send_retry_scheduled",
                        recipient=recipient,
                        attempt=options.retry_count + retry_state.attempt_number,
                        max_retries=messaging.max_retries,
                        error=str(retry_state.outcome.exception()))

        return AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_fixed(messaging.retry_delay_ms / 1000),
            retry=retry_if_exception_type(TransportError),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Invoke a transport coroutine, normalizing its failures to TransportError."""
        try:
            return await fn(*args)
        except ChannelError:
            raise
        except Exception as e:
            raise TransportError(str(e) or type(e).__name__) from e

    # ── Helpers ───────────────────────────────────────────────

    def _admit(self, recipient: str) -> bool:
        if self.rate_limiter.admit(recipient):
            return True
        self.metrics.record(SendOutcome.RATE_LIMITED)
        logger.warning("rate_limit_exceeded", recipient=recipient)
        return False

    def _split(self, body: str) -> list[str]:
        messaging = self.settings.messaging
        return split_message(body, messaging.max_message_length, messaging.split_reserve)

    def _typing_enabled(self, options: DeliveryOptions) -> bool:
        return self.settings.features.send_typing and not options.skip_typing

    def _ensure_ready(self) -> None:
        if not self.is_ready:
            raise NotReadyError(self.settings.app_name)

    def is_authorized(self, message: InboundMessage) -> bool:
        return self.access.should_handle(message)

    # ── Lookups & status ──────────────────────────────────────

    async def get_chats(self) -> list[Any]:
        if not self.is_ready:
            return []
        try:
            return await self.transport.list_chats()
        except Exception as e:
            logger.error("get_chats_failed", error=str(e))
            return []

    async def get_chat_by_id(self, chat_id: str) -> Any:
        if not self.is_ready:
            return None
        try:
            return await self.transport.fetch_chat_by_id(chat_id)
        except Exception as e:
            logger.error("get_chat_failed", chat_id=chat_id, error=str(e))
            return None

    async def get_contact_by_id(self, contact_id: str) -> Any:
        if not self.is_ready:
            return None
        try:
            return await self.transport.fetch_contact_by_id(contact_id)
        except Exception as e:
            logger.error("get_contact_failed", contact_id=contact_id, error=str(e))
            return None

    def get_client_info(self) -> Optional[dict[str, Any]]:
        if not self.is_ready:
            return None
        info = self.connection.self_info or self.transport.self_info
        return {
            "is_ready": True,
            "client_info": info.model_dump() if info else None,
            "queue_length": len(self.queue),
            "reconnect_attempts": self.connection.restart_attempts,
        }

    async def health_check(self) -> dict[str, Any]:
        return {
            "state": self.connection.state.value,
            "is_ready": self.is_ready,
            "queue_length": len(self.queue),
            "draining": self._draining,
            "restart_attempts": self.connection.restart_attempts,
            "pairing_retries": self.connection.pairing_retries,
            "last_disconnect_reason": self.connection.last_disconnect_reason,
            "rate_limited_recipients": self.rate_limiter.tracked_recipients,
            "metrics": self.metrics.to_dict(),
        }
