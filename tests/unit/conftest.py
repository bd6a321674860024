"""Fakes for the WebSocket, the RPC transport and the DevTools endpoint.

FakePage simulates the status page: it answers the protocol commands the
session sends, fires a load event after Page.enable, and emits tagged
mutation events after Debugger.resume.
"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from dishy_exporter.devtools import DevToolsEndpoint, Target
from dishy_exporter.exceptions import TransportClosed
from dishy_exporter.mutations import MUTATION_TAG

BROWSER_WS = "ws://127.0.0.1:9222/devtools/browser/B1"
PAGE_WS = "ws://127.0.0.1:9222/devtools/page/T1"


class FakeWebSocket:
    """Stand-in for a websockets ClientConnection."""

    def __init__(self):
        self.sent = []
        self.close_calls = 0
        self.state = MagicMock()
        self.state.name = "OPEN"
        self._incoming = asyncio.Queue()

    async def send(self, message):
        if self.state.name != "OPEN":
            from websockets.exceptions import ConnectionClosed

            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(message))

    async def close(self):
        self.close_calls += 1
        self.state.name = "CLOSED"
        self._incoming.put_nowait(None)

    def feed(self, payload):
        self._incoming.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self):
        """Remote end goes away."""
        self.state.name = "CLOSED"
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeTransport:
    """In-memory RpcTransport with scripted responders per method."""

    def __init__(self, ws_url, timeout=30.0, max_size=2_097_152):
        self.ws_url = ws_url
        self.timeout = timeout
        self.max_size = max_size
        self.commands = []
        self.responders = {}
        self.handlers = {}
        self.close_listeners = []
        self.connected = False
        self.connect_error = None

    @property
    def is_connected(self):
        return self.connected

    @property
    def methods(self):
        return [method for method, _ in self.commands]

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def execute_command(self, method, params=None, *, timeout=None):
        if not self.connected:
            raise TransportClosed("Cannot execute command: connection not active")
        params = params or {}
        self.commands.append((method, params))
        responder = self.responders.get(method)
        if responder is None:
            return {}
        result = responder(params)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def subscribe(self, event_name, callback):
        self.handlers.setdefault(event_name, []).append(callback)

    def unsubscribe(self, event_name, callback):
        if callback in self.handlers.get(event_name, []):
            self.handlers[event_name].remove(callback)

    def add_close_listener(self, callback):
        self.close_listeners.append(callback)

    def emit(self, event_name, params=None):
        for handler in list(self.handlers.get(event_name, [])):
            handler(params or {})

    def emit_mutation(self):
        self.emit(
            "Runtime.consoleAPICalled",
            {"type": "debug", "args": [{"type": "string", "value": MUTATION_TAG}]},
        )

    def drop(self):
        self.connected = False
        error = TransportClosed("Connection closed: remote end")
        for listener in list(self.close_listeners):
            listener(error)


class FakePage(FakeTransport):
    """Page-level transport simulating the status page."""

    def __init__(self, ws_url, **kwargs):
        super().__init__(ws_url, **kwargs)
        self.payload = json.dumps({"id": "ut-1", "uptime": 42})
        self.fire_load = True
        self.mutations_per_resume = 2
        self.element_present = True
        self.responders.update(
            {
                "Page.enable": self._on_page_enable,
                "Debugger.resume": self._on_resume,
                "Runtime.evaluate": self._on_evaluate,
            }
        )

    def _on_page_enable(self, params):
        if self.fire_load:
            asyncio.get_running_loop().call_soon(self.emit, "Page.loadEventFired", {})
        return {}

    def _on_resume(self, params):
        loop = asyncio.get_running_loop()
        for n in range(self.mutations_per_resume):
            loop.call_later(0.005 * (n + 1), self.emit_mutation)
        return {}

    def _on_evaluate(self, params):
        expression = params.get("expression", "")
        if "MutationObserver" in expression:
            return {"result": {"type": "boolean", "value": self.element_present}}
        return {"result": {"type": "string", "value": self.payload}}

    @property
    def read_count(self):
        return sum(
            1
            for method, params in self.commands
            if method == "Runtime.evaluate" and "textContent" in params.get("expression", "")
        )


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def fake_browser():
    browser = FakeTransport(BROWSER_WS)
    browser.responders["Target.createTarget"] = lambda params: {"targetId": "T1"}
    return browser


@pytest.fixture
def fake_page():
    return FakePage(PAGE_WS)


@pytest.fixture
def transport_factory(fake_browser, fake_page):
    transports = {BROWSER_WS: fake_browser, PAGE_WS: fake_page}

    def factory(ws_url, **kwargs):
        return transports[ws_url]

    return factory


@pytest.fixture
def fresh_transport_factory():
    """Builds a new fake per connection; created fakes are kept in .browsers / .pages."""

    def factory(ws_url, **kwargs):
        if ws_url == BROWSER_WS:
            transport = FakeTransport(ws_url, **kwargs)
            transport.responders["Target.createTarget"] = lambda params: {"targetId": "T1"}
            factory.browsers.append(transport)
        else:
            transport = FakePage(ws_url, **kwargs)
            factory.pages.append(transport)
        return transport

    factory.browsers = []
    factory.pages = []
    return factory


@pytest.fixture
def fake_endpoint():
    endpoint = MagicMock(spec=DevToolsEndpoint)
    endpoint.browser_ws_url.return_value = BROWSER_WS

    async def wait_for_target(target_id, timeout=5.0, interval=0.1):
        return Target(target_id, PAGE_WS, url="http://192.168.100.1/")

    endpoint.wait_for_target.side_effect = wait_for_target
    return endpoint
