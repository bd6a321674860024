"""Unit tests for SessionController against a simulated status page.

FakePage (conftest.py) answers protocol commands, fires the first load event
after Page.enable and emits tagged mutation events after every resume.
"""

import asyncio
import json
import pytest
from unittest.mock import MagicMock

from dishy_exporter.browser import BrowserProcess
from dishy_exporter.config import Configuration
from dishy_exporter.exceptions import (
    CommandFailedError,
    CommandTimeoutError,
    ConnectionFailedError,
    ExtractionTimeout,
    MalformedPayload,
    SessionBusy,
    StartupError,
    TransportClosed,
)
from dishy_exporter.orchestrator import ScrapeOrchestrator
from dishy_exporter.session import (
    SessionController,
    SessionState,
    create_session,
    parse_payload,
)

TARGET_URL = "http://192.168.100.1/"


def make_session(endpoint, factory, **kwargs) -> SessionController:
    kwargs.setdefault("load_timeout", 0.5)
    kwargs.setdefault("snapshot_timeout", 1.0)
    return SessionController(TARGET_URL, endpoint, transport_factory=factory, **kwargs)


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.unit
class TestParsePayload:
    """Test JSON extraction from element text."""

    def test_plain_json(self):
        assert parse_payload('{"id": "ut-1", "uptime": 42}') == {"id": "ut-1", "uptime": 42}

    def test_surrounding_whitespace(self):
        assert parse_payload('\n  {"a": 1}  \n') == {"a": 1}

    def test_last_embedded_object_wins(self):
        text = 'status {"a": 1} then {"id": "x", "b": 2} trailing'
        assert parse_payload(text) == {"id": "x", "b": 2}

    def test_missing_element(self):
        with pytest.raises(MalformedPayload, match="not found"):
            parse_payload(None)

    def test_empty_element(self):
        with pytest.raises(MalformedPayload, match="empty"):
            parse_payload("   ")

    def test_unparseable_text(self):
        with pytest.raises(MalformedPayload, match="JSON parse error") as exc_info:
            parse_payload("<div>loading</div>")
        assert exc_info.value.text == "<div>loading</div>"


@pytest.mark.unit
class TestSessionConstruction:
    """Test constructor validation and factories."""

    def test_initial_state_is_closed(self, fake_endpoint, transport_factory):
        session = make_session(fake_endpoint, transport_factory)
        assert session.state is SessionState.CLOSED
        assert session.target is None
        assert not session.paused
        assert session.mutation_count == 0

    def test_threshold_must_be_positive(self, fake_endpoint, transport_factory):
        with pytest.raises(ValueError, match="mutation_threshold"):
            make_session(fake_endpoint, transport_factory, mutation_threshold=0)

    def test_from_config(self):
        config = Configuration()
        config.merge(
            target_url="http://10.0.0.1",
            cdp_port=9333,
            selector="#data",
            mutation_threshold=3,
            snapshot_timeout=4.0,
        )
        session = create_session(config)

        assert session.target_url == "http://10.0.0.1"
        assert session.endpoint.port == 9333
        assert session.selector == "#data"
        assert session.mutation_threshold == 3
        assert session.snapshot_timeout == 4.0
        assert session.browser is not None


@pytest.mark.unit
@pytest.mark.asyncio
class TestSessionStart:
    """Test startup sequencing."""

    async def test_start_sequence(self, fake_endpoint, transport_factory, fake_browser, fake_page):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        assert session.state is SessionState.IDLE
        assert session.paused
        assert session.target.target_id == "T1"
        assert fake_browser.commands == [("Target.createTarget", {"url": TARGET_URL})]
        fake_endpoint.wait_for_target.assert_awaited_once_with("T1")
        assert fake_page.methods == [
            "Runtime.enable",
            "Page.enable",
            "Debugger.enable",
            "Runtime.evaluate",
            "Debugger.pause",
        ]
        assert "MutationObserver" in fake_page.commands[3][1]["expression"]
        await session.shutdown()

    async def test_start_without_load_event(self, fake_endpoint, transport_factory, fake_page):
        fake_page.fire_load = False
        session = make_session(fake_endpoint, transport_factory, load_timeout=0.05)

        await session.start()

        assert session.state is SessionState.IDLE
        assert session.paused
        await session.shutdown()

    async def test_start_when_element_missing(self, fake_endpoint, transport_factory, fake_page):
        fake_page.element_present = False
        session = make_session(fake_endpoint, transport_factory, load_timeout=0.05)

        await session.start()

        assert session.state is SessionState.IDLE
        assert not session._watcher.armed
        await session.shutdown()

    async def test_start_is_noop_when_running(self, fake_endpoint, transport_factory, fake_browser):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        await session.start()

        assert fake_browser.methods.count("Target.createTarget") == 1
        await session.shutdown()

    async def test_browser_unreachable(self, fake_endpoint, transport_factory, fake_browser):
        fake_browser.connect_error = ConnectionFailedError("Failed to connect to renderer")
        session = make_session(fake_endpoint, transport_factory)

        with pytest.raises(StartupError, match="startup failed"):
            await session.start()
        assert session.state is SessionState.CLOSED

    async def test_page_unreachable(self, fake_endpoint, transport_factory, fake_browser, fake_page):
        fake_page.connect_error = ConnectionFailedError("Failed to connect to page")
        session = make_session(fake_endpoint, transport_factory)

        with pytest.raises(StartupError):
            await session.start()

        assert session.state is SessionState.CLOSED
        assert ("Target.closeTarget", {"targetId": "T1"}) in fake_browser.commands
        assert not fake_browser.connected

    async def test_missing_target_id(self, fake_endpoint, transport_factory, fake_browser):
        fake_browser.responders["Target.createTarget"] = lambda params: {}
        session = make_session(fake_endpoint, transport_factory)

        with pytest.raises(StartupError, match="targetId"):
            await session.start()


@pytest.mark.unit
@pytest.mark.asyncio
class TestAcquireSnapshot:
    """Test the resume / wait / read / pause cycle."""

    async def test_snapshot_success(self, fake_endpoint, transport_factory, fake_page):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        fake_page.commands.clear()

        data = await session.acquire_snapshot()

        assert data == {"id": "ut-1", "uptime": 42}
        assert session.state is SessionState.IDLE
        assert session.paused
        assert session.mutation_count == 2
        assert fake_page.methods[0] == "Debugger.resume"
        assert fake_page.methods[-1] == "Debugger.pause"
        assert fake_page.read_count == 1
        await session.shutdown()

    async def test_consecutive_snapshots(self, fake_endpoint, transport_factory, fake_page):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        await session.acquire_snapshot()
        fake_page.payload = json.dumps({"uptime": 43})
        data = await session.acquire_snapshot()

        assert data == {"uptime": 43}
        assert session.mutation_count == 4
        await session.shutdown()

    async def test_no_read_before_threshold(self, fake_endpoint, transport_factory, fake_page):
        """A single mutation is not enough; the read never happens."""
        fake_page.mutations_per_resume = 1
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        with pytest.raises(ExtractionTimeout) as exc_info:
            await session.acquire_snapshot(timeout=0.1)

        assert exc_info.value.mutations == 1
        assert exc_info.value.timeout == 0.1
        assert fake_page.read_count == 0
        assert session.state is SessionState.IDLE
        assert session.paused
        await session.shutdown()

    async def test_custom_threshold(self, fake_endpoint, transport_factory, fake_page):
        fake_page.mutations_per_resume = 3
        session = make_session(fake_endpoint, transport_factory, mutation_threshold=3)
        await session.start()

        assert await session.acquire_snapshot() == {"id": "ut-1", "uptime": 42}
        assert session.mutation_count == 3
        await session.shutdown()

    async def test_malformed_payload_leaves_page_paused(
        self, fake_endpoint, transport_factory, fake_page
    ):
        fake_page.payload = "<span>Loading...</span>"
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        with pytest.raises(MalformedPayload):
            await session.acquire_snapshot()

        assert session.state is SessionState.IDLE
        assert session.paused
        await session.shutdown()

    async def test_embedded_payload(self, fake_endpoint, transport_factory, fake_page):
        fake_page.payload = 'Status: {"id": "ut-2", "state": "CONNECTED"}'
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        assert await session.acquire_snapshot() == {"id": "ut-2", "state": "CONNECTED"}
        await session.shutdown()

    async def test_read_expression_exception(self, fake_endpoint, transport_factory, fake_page):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        original = fake_page.responders["Runtime.evaluate"]

        def evaluate(params):
            if "textContent" in params["expression"]:
                return {"exceptionDetails": {"text": "Uncaught TypeError"}}
            return original(params)

        fake_page.responders["Runtime.evaluate"] = evaluate

        with pytest.raises(MalformedPayload, match="Read expression raised"):
            await session.acquire_snapshot()
        assert session.paused
        await session.shutdown()

    async def test_read_timeout(self, fake_endpoint, transport_factory, fake_page):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        original = fake_page.responders["Runtime.evaluate"]

        async def evaluate(params):
            if "textContent" in params["expression"]:
                await asyncio.sleep(0.05)
                raise CommandTimeoutError(
                    "Command timed out", method="Runtime.evaluate", timeout=0.05
                )
            return original(params)

        fake_page.responders["Runtime.evaluate"] = evaluate

        with pytest.raises(ExtractionTimeout) as excinfo:
            await session.acquire_snapshot()

        assert isinstance(excinfo.value.__cause__, CommandTimeoutError)
        assert excinfo.value.details["state"] == "extracting"
        assert excinfo.value.mutations == 2
        assert fake_page.read_count == 1
        assert session.paused
        assert session.state is SessionState.IDLE
        assert fake_page.methods[-1] == "Debugger.pause"
        await session.shutdown()

    async def test_read_protocol_error(self, fake_endpoint, transport_factory, fake_page):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        original = fake_page.responders["Runtime.evaluate"]

        def evaluate(params):
            if "textContent" in params["expression"]:
                raise CommandFailedError(
                    "Execution context was destroyed.",
                    method="Runtime.evaluate",
                    error_code=-32000,
                )
            return original(params)

        fake_page.responders["Runtime.evaluate"] = evaluate

        with pytest.raises(MalformedPayload, match="Read failed") as excinfo:
            await session.acquire_snapshot()

        assert excinfo.value.details == {"code": -32000}
        assert session.paused
        assert session.state is SessionState.IDLE
        await session.shutdown()

    async def test_resume_rejection_is_tolerated(
        self, fake_endpoint, transport_factory, fake_page
    ):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        original = fake_page.responders["Debugger.resume"]

        def resume(params):
            original(params)
            raise CommandFailedError(
                "Can only perform operation while paused.",
                method="Debugger.resume",
                error_code=-32000,
            )

        fake_page.responders["Debugger.resume"] = resume

        assert await session.acquire_snapshot() == {"id": "ut-1", "uptime": 42}
        assert session.paused
        await session.shutdown()

    async def test_concurrent_snapshot_is_busy(self, fake_endpoint, transport_factory, fake_page):
        fake_page.mutations_per_resume = 0
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        first = asyncio.create_task(session.acquire_snapshot())
        await settle()
        assert session.state is SessionState.AWAITING_MUTATIONS

        with pytest.raises(SessionBusy):
            await session.acquire_snapshot()

        fake_page.emit_mutation()
        fake_page.emit_mutation()
        assert await first == {"id": "ut-1", "uptime": 42}
        assert session.state is SessionState.IDLE
        await session.shutdown()

    async def test_snapshot_on_closed_session(self, fake_endpoint, transport_factory):
        session = make_session(fake_endpoint, transport_factory)

        with pytest.raises(TransportClosed):
            await session.acquire_snapshot()


@pytest.mark.unit
@pytest.mark.asyncio
class TestPageLoadEvents:
    """Counter resets exactly once per load; reload re-arms the listener."""

    async def test_counter_reset_on_load(self, fake_endpoint, transport_factory, fake_page):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        await session.acquire_snapshot()
        assert session.mutation_count == 2
        generation = session._watcher.generation

        fake_page.emit("Page.loadEventFired", {})

        assert session.mutation_count == 0
        assert session._watcher.generation == generation + 1
        await session.shutdown()

    async def test_reload_while_idle_rearms_and_pauses(
        self, fake_endpoint, transport_factory, fake_page
    ):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        fake_page.commands.clear()

        fake_page.emit("Page.loadEventFired", {})
        await asyncio.wait_for(session._rearm_task, timeout=1.0)

        assert fake_page.methods == ["Runtime.evaluate", "Debugger.pause"]
        assert session._watcher.armed
        assert session.state is SessionState.IDLE
        await session.shutdown()

    async def test_reload_during_wait_rebases_target(
        self, fake_endpoint, transport_factory, fake_page
    ):
        fake_page.mutations_per_resume = 0
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        snapshot = asyncio.create_task(session.acquire_snapshot())
        await settle()
        fake_page.emit_mutation()
        fake_page.emit("Page.loadEventFired", {})
        fake_page.emit_mutation()
        await settle()
        assert not snapshot.done()

        fake_page.emit_mutation()
        assert await snapshot == {"id": "ut-1", "uptime": 42}
        assert session.mutation_count == 2
        await session.shutdown()

    async def test_reload_while_arming_at_startup(
        self, fake_endpoint, transport_factory, fake_page
    ):
        original = fake_page.responders["Runtime.evaluate"]
        injections = []

        def evaluate(params):
            if "MutationObserver" in params["expression"]:
                injections.append(params)
                if len(injections) == 1:
                    # Redirect lands while the first observer is being injected
                    fake_page.emit("Page.loadEventFired", {})
            return original(params)

        fake_page.responders["Runtime.evaluate"] = evaluate
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        await asyncio.wait_for(session._rearm_task, timeout=1.0)

        assert len(injections) == 2
        assert session._watcher.armed
        assert session.paused
        assert session.state is SessionState.IDLE
        assert await session.acquire_snapshot() == {"id": "ut-1", "uptime": 42}
        await session.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
class TestTransportLoss:
    """Transport closure surfaces as TransportClosed and closes the session."""

    async def test_drop_during_wait(self, fake_endpoint, transport_factory, fake_page):
        fake_page.mutations_per_resume = 0
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        snapshot = asyncio.create_task(session.acquire_snapshot())
        await settle()
        fake_page.drop()

        with pytest.raises(TransportClosed):
            await snapshot
        assert session.state is SessionState.CLOSED
        assert not session.paused

        with pytest.raises(TransportClosed):
            await session.acquire_snapshot()
        await session.shutdown()

    async def test_restart_after_drop(
        self, fake_endpoint, transport_factory, fake_browser, fake_page
    ):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()
        fake_page.drop()
        await session.shutdown()

        await session.start()

        assert session.state is SessionState.IDLE
        assert fake_browser.methods.count("Target.createTarget") == 2
        assert await session.acquire_snapshot() == {"id": "ut-1", "uptime": 42}
        await session.shutdown()

    async def test_scrape_restart_releases_old_target(
        self, fake_endpoint, fresh_transport_factory
    ):
        browsers, pages = fresh_transport_factory.browsers, fresh_transport_factory.pages
        browser = MagicMock(spec=BrowserProcess)
        session = make_session(fake_endpoint, fresh_transport_factory, browser=browser)
        orchestrator = ScrapeOrchestrator(session, prefix="p_")
        await session.start()
        pages[0].drop()
        assert session.state is SessionState.CLOSED

        text = await orchestrator.scrape()

        assert 'p_uptime{id="ut-1"} 42' in text.splitlines()
        assert ("Target.closeTarget", {"targetId": "T1"}) in browsers[0].commands
        assert not browsers[0].connected
        assert len(browsers) == 2 and browsers[1].connected
        assert len(pages) == 2 and pages[1].connected
        browser.stop.assert_not_awaited()
        assert browser.start.await_count == 2

        await session.shutdown()
        browser.stop.assert_awaited_once()


@pytest.mark.unit
@pytest.mark.asyncio
class TestShutdown:
    """Test shutdown cleanup."""

    async def test_shutdown_closes_target(
        self, fake_endpoint, transport_factory, fake_browser, fake_page
    ):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        await session.shutdown()

        assert session.state is SessionState.CLOSED
        assert fake_browser.commands[-1] == ("Target.closeTarget", {"targetId": "T1"})
        assert not fake_browser.connected
        assert not fake_page.connected
        assert session.target is None

    async def test_shutdown_is_idempotent(self, fake_endpoint, transport_factory, fake_browser):
        session = make_session(fake_endpoint, transport_factory)
        await session.start()

        await session.shutdown()
        await session.shutdown()

        assert fake_browser.methods.count("Target.closeTarget") == 1

    async def test_shutdown_before_start(self, fake_endpoint, transport_factory):
        session = make_session(fake_endpoint, transport_factory)
        await session.shutdown()
        assert session.state is SessionState.CLOSED
