"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from devlink.broadcast import BroadcastChannel
from devlink.config import LinkingConfig
from devlink.credentials import CredentialStore
from devlink.linking import LinkOrchestrator


class FakeProtocolClient:
    """Scripted stand-in for the messaging protocol client.

    Tests push events with emit(); events() yields them in order until
    the client is closed.
    """

    def __init__(
        self,
        config,
        registered: bool = False,
        code: str | None = "ABCDEFGH",
        code_error: Exception | None = None,
        send_error: Exception | None = None,
        send_delay: float = 0.0,
        code_delay: float = 0.0,
        registration_delay: float = 0.0,
    ):
        self.config = config
        self.registered = registered
        self.code = code
        self.code_error = code_error
        self.send_error = send_error
        self.send_delay = send_delay
        self.code_delay = code_delay
        self.registration_delay = registration_delay
        self.code_requests: list[str] = []
        self.sent: list[dict] = []
        self.close_count = 0
        self.closed = False
        self._events: asyncio.Queue = asyncio.Queue()

    def emit(self, event) -> None:
        self._events.put_nowait(event)

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def is_registered(self) -> bool:
        if self.registration_delay:
            await asyncio.sleep(self.registration_delay)
        return self.registered

    async def request_pairing_code(self, phone_number: str) -> str | None:
        self.code_requests.append(phone_number)
        if self.code_delay:
            await asyncio.sleep(self.code_delay)
        if self.code_error:
            raise self.code_error
        return self.code

    async def send_document(self, target, data, file_name, mimetype, caption=""):
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error:
            raise self.send_error
        self.sent.append(
            {
                "target": target,
                "data": data,
                "file_name": file_name,
                "mimetype": mimetype,
                "caption": caption,
            }
        )

    async def close(self) -> None:
        self.close_count += 1
        if not self.closed:
            self.closed = True
            self._events.put_nowait(None)


class FakeClientFactory:
    """Builds FakeProtocolClients and remembers them."""

    def __init__(self, **client_kwargs):
        self.client_kwargs = client_kwargs
        self.clients: list[FakeProtocolClient] = []

    def __call__(self, config) -> FakeProtocolClient:
        client = FakeProtocolClient(config, **self.client_kwargs)
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeProtocolClient:
        return self.clients[-1]


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from devlink.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def client_factory():
    """Factory producing scripted protocol clients."""
    return FakeClientFactory()


@pytest.fixture
def credential_store(tmp_path):
    """Credential store rooted in a temp directory."""
    return CredentialStore(tmp_path / "auth")


@pytest.fixture
def broadcast():
    """Fresh broadcast channel."""
    return BroadcastChannel(queue_size=8)


@pytest.fixture
def version_fetcher():
    """Version fetcher that answers immediately."""
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=(2, 3000, 1))
    fetcher.close = AsyncMock()
    return fetcher


@pytest.fixture
def linking_config():
    """Linking config with no settle delays."""
    return LinkingConfig(
        window_seconds=5.0,
        settle_seconds=0.0,
        post_delivery_seconds=0.0,
        delivery_timeout=1.0,
    )


@pytest_asyncio.fixture
async def orchestrator(
    client_factory, credential_store, broadcast, version_fetcher, linking_config
):
    """Orchestrator wired to fakes, shut down after the test."""
    orch = LinkOrchestrator(
        client_factory=client_factory,
        credential_store=credential_store,
        broadcast=broadcast,
        version_fetcher=version_fetcher,
        config=linking_config,
    )
    yield orch
    await orch.shutdown()


@pytest.fixture
def wait_until() -> Callable:
    """Poll a predicate until true or fail after a timeout."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait_until
