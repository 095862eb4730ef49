"""Shared test fixtures for the delivery layer."""
import pytest
import pytest_asyncio
from typing import Any, Callable, Optional

from channels.transport import Transport
from config.settings import (
    ClientConfig, FeatureFlags, MediaConfig, MessagingConfig, SecurityConfig, Settings,
)
from core.delivery_service import DeliveryService
from models.schemas import InboundMessage, MediaPayload, SelfInfo


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTransport(Transport):
    """
    In-memory transport.

    fail_sends: number of upcoming send() calls that raise.
    before_send: hook invoked with (recipient, content) before each send,
                 e.g. to emit a disconnect mid-delivery.
    """

    def __init__(self):
        super().__init__()
        self.sent: list[tuple[str, Any, Optional[str]]] = []
        self.typing: list[str] = []
        self.connect_calls = 0
        self.destroy_calls = 0
        self.fail_sends = 0
        self.fail_connect = 0
        self.send_error: Exception = RuntimeError("socket hang up")
        self.before_send: Optional[Callable[[str, Any], Any]] = None
        self.download_result: Optional[MediaPayload] = None
        self.download_error: Optional[Exception] = None
        self.chats: list[dict] = [{"id": "123@c.us"}]

    async def connect(self, config: dict[str, Any]) -> None:
        self.connect_calls += 1
        self.last_config = config
        if self.fail_connect:
            self.fail_connect -= 1
            raise RuntimeError("browser launch failed")

    async def destroy(self) -> None:
        self.destroy_calls += 1

    async def send(self, recipient, content, caption=None):
        if self.before_send:
            result = self.before_send(recipient, content)
            if result is not None:
                await result
        if self.fail_sends:
            self.fail_sends -= 1
            raise self.send_error
        self.sent.append((recipient, content, caption))
        return {"id": f"msg_{len(self.sent)}"}

    async def send_typing_state(self, recipient: str) -> None:
        self.typing.append(recipient)

    async def download_media(self, message: InboundMessage) -> Optional[MediaPayload]:
        if self.download_error:
            raise self.download_error
        return self.download_result

    async def fetch_chat_by_id(self, chat_id: str) -> Any:
        return {"id": chat_id}

    async def fetch_contact_by_id(self, contact_id: str) -> Any:
        return {"id": contact_id, "pushname": "Budi"}

    async def list_chats(self) -> list[Any]:
        return list(self.chats)

    @property
    def sent_texts(self) -> list[str]:
        return [content for _, content, _ in self.sent if isinstance(content, str)]


def make_settings(**overrides) -> Settings:
    """Settings with every delay zeroed so tests never sleep."""
    settings = Settings(
        client=ClientConfig(
            session_name="test-session",
            restart_base_delay_ms=0,
            restart_settle_delay_ms=0,
        ),
        messaging=MessagingConfig(
            typing_delay_ms=0,
            inter_message_delay_ms=0,
            retry_delay_ms=0,
        ),
        media=MediaConfig(max_file_size=1024),
        security=SecurityConfig(),
        features=FeatureFlags(),
    )
    for section, values in overrides.items():
        target = getattr(settings, section)
        for key, value in values.items():
            setattr(target, key, value)
    return settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def service(transport, settings, clock) -> DeliveryService:
    return DeliveryService(transport, settings, clock=clock)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def make_ready_service(transport, clock):
    """Factory: initialized, READY service built from settings overrides."""
    async def _make(**overrides) -> DeliveryService:
        svc = DeliveryService(transport, make_settings(**overrides), clock=clock)
        await svc.initialize()
        await transport.emit("ready", {"pushname": "Bot", "user": "6281111111111", "platform": "android"})
        await svc.wait_for_drain()
        return svc
    return _make


@pytest_asyncio.fixture
async def ready_service(service, transport) -> DeliveryService:
    """Initialized service whose transport has reported ready."""
    await service.initialize()
    await transport.emit("ready", {"pushname": "Bot", "user": "6281111111111", "platform": "android"})
    await service.wait_for_drain()
    return service


@pytest.fixture
def jpeg() -> MediaPayload:
    return MediaPayload(mimetype="image/jpeg", data=b"\xff\xd8\xff" + b"0" * 100, filename="chart.jpg")


@pytest.fixture
def self_info() -> SelfInfo:
    return SelfInfo(pushname="Bot", user="6281111111111", platform="android")
