import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from pagekit.core.config import ConfigManager
from pagekit.core.locator import ServiceLocator
from pagekit.datasources.handlers import HttpClient
from pagekit.datasources.websocket import WebSocketHub, WebSocketTransport
from pagekit.providers import Providers
from pagekit.runtime import PageRuntime
from pagekit.widgets.registry import WidgetRegistry


class FakeTransport(WebSocketTransport):
    """In-memory socket: tests push server messages with `feed()`."""

    def __init__(self, fail_connect: bool = False):
        self.fail_connect = fail_connect
        self.sent: List[Dict[str, Any]] = []
        self.connected = False
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def connect(self):
        if self.fail_connect:
            raise ConnectionError("refused")
        self.connected = True

    async def send(self, message):
        self.sent.append(message)

    async def receive(self) -> Optional[Dict[str, Any]]:
        return await self._inbox.get()

    async def close(self):
        self.closed = True

    def feed(self, message: Optional[Dict[str, Any]]):
        self._inbox.put_nowait(message)

    def drop(self):
        """Simulate the server closing the connection."""
        self._inbox.put_nowait(None)


class TransportFactory:
    def __init__(self, fail_first: int = 0):
        self.fail_first = fail_first
        self.created: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(fail_connect=len(self.created) < self.fail_first)
        self.created.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.created[-1]


async def settle(rounds: int = 5):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def container_renderer(props, node):
    return {"type": node.widget.type, "id": node.widget.id, "children": [c.output for c in node.children]}


def text_renderer(props, node):
    return {"type": "Text", "id": node.widget.id, "text": props.get("text")}


def kpi_renderer(props, node):
    return {"type": "KPI", "id": node.widget.id, "value": props.get("value"), "loading": node.loading}


@pytest.fixture
def config():
    return ConfigManager()


@pytest.fixture
def providers():
    return Providers()


@pytest.fixture
def locator(config, providers):
    return ServiceLocator(config, providers)


@pytest.fixture
def registry():
    registry = WidgetRegistry()
    registry.register("Container", container_renderer, category="layout")
    registry.register("Text", text_renderer)
    registry.register("KPI", kpi_renderer, category="charts")
    return registry


@pytest.fixture
def http_client():
    client = MagicMock(spec=HttpClient)
    client.request = AsyncMock(return_value={})
    client.close = AsyncMock()
    return client


@pytest.fixture
def transports():
    return TransportFactory()


@pytest.fixture
def hub_factory(transports):
    hubs: Dict[str, WebSocketHub] = {}

    def factory(url: str) -> WebSocketHub:
        hub = WebSocketHub(transports, reconnect_delay=0.01, max_reconnect_delay=0.02, max_reconnect_attempts=2)
        hubs[url] = hub
        return hub

    factory.hubs = hubs
    return factory


@pytest.fixture
def runtime(registry, config, providers, http_client, hub_factory):
    return PageRuntime(registry, config=config, providers=providers, http_client=http_client, hub_factory=hub_factory)


@pytest.fixture(name="settle")
def settle_fixture():
    return settle
