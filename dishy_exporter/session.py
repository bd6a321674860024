"""
Session controller: one persistent, normally paused page.

The controller keeps a single target alive across scrapes. Between scrapes the
page's scripts are paused in the debugger; a scrape resumes them, waits for the
observed element to change twice, reads it, and pauses again.
"""

import asyncio
import enum
import json
import logging
from typing import Any, Callable, Optional

from .browser import BrowserProcess
from .config import Configuration
from .connection import RpcTransport
from .devtools import DevToolsEndpoint, Target
from .exceptions import (
    CommandError,
    CommandFailedError,
    CommandTimeoutError,
    ExporterError,
    ExtractionTimeout,
    MalformedPayload,
    SessionBusy,
    StartupError,
    TransportClosed,
)
from .logging_setup import log_with_context
from .mutations import MutationWatcher

logger = logging.getLogger(__name__)

PROTOCOL_DOMAINS = ("Runtime", "Page", "Debugger")

READ_SCRIPT = """(function(selector) {
  const el = document.querySelector(selector);
  return el ? (el.textContent || el.innerHTML) : null;
})(%s)"""

# Two changes: the first one may fire while the element is still being written
DEFAULT_MUTATION_THRESHOLD = 2


class SessionState(enum.Enum):
    STARTING = "starting"
    AWAITING_FIRST_LOAD = "awaiting_first_load"
    IDLE = "idle"
    RESUMING = "resuming"
    AWAITING_MUTATIONS = "awaiting_mutations"
    EXTRACTING = "extracting"
    CLOSED = "closed"


def parse_payload(text: Optional[str]) -> Any:
    """Parse element text as JSON, falling back to the last embedded {...} object.

    Raises:
        MalformedPayload: If neither strategy yields JSON
    """
    if text is None:
        raise MalformedPayload("Data element not found")
    text = str(text).strip()
    if not text:
        raise MalformedPayload("Data element is empty")

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        first_error = e

    embedded = _last_json_object(text)
    if embedded is not None:
        return embedded

    raise MalformedPayload(f"JSON parse error: {first_error}", text=text)


def _last_json_object(text: str) -> Optional[dict]:
    decoder = json.JSONDecoder()
    found = None
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        found = obj
        idx = text.find("{", end)
    return found


class SessionController:
    """
    Owns one page target and synchronizes reads with the page's own updates.

    States:
        STARTING -> AWAITING_FIRST_LOAD -> IDLE -> RESUMING -> AWAITING_MUTATIONS
        -> EXTRACTING -> IDLE, and CLOSED from anywhere on shutdown or transport loss.

    A session starts CLOSED; start() is also the recovery path after closure.
    Only one acquire_snapshot() may run at a time, a concurrent call raises
    SessionBusy.

    Usage:
        session = create_session(config)
        await session.start()
        data = await session.acquire_snapshot(timeout=10.0)
        await session.shutdown()
    """

    def __init__(
        self,
        target_url: str,
        endpoint: DevToolsEndpoint,
        browser: Optional[BrowserProcess] = None,
        *,
        selector: str = ".Json-Text",
        load_timeout: float = 15.0,
        snapshot_timeout: float = 10.0,
        mutation_threshold: int = DEFAULT_MUTATION_THRESHOLD,
        command_timeout: float = 30.0,
        max_size: int = 2_097_152,
        transport_factory: Callable[..., RpcTransport] = RpcTransport,
    ):
        if mutation_threshold < 1:
            raise ValueError(f"mutation_threshold must be >= 1, got {mutation_threshold}")

        self.target_url = target_url
        self.endpoint = endpoint
        self.browser = browser
        self.selector = selector
        self.load_timeout = load_timeout
        self.snapshot_timeout = snapshot_timeout
        self.mutation_threshold = mutation_threshold
        self.command_timeout = command_timeout
        self.max_size = max_size
        self._transport_factory = transport_factory

        self._state = SessionState.CLOSED
        self._browser_transport: Optional[RpcTransport] = None
        self._page: Optional[RpcTransport] = None
        self._target: Optional[Target] = None
        self._watcher: Optional[MutationWatcher] = None
        self._first_load: Optional[asyncio.Event] = None
        self._rearm_task: Optional[asyncio.Task] = None
        self._paused = False

    @classmethod
    def from_config(cls, config: Configuration, **kwargs) -> "SessionController":
        endpoint = DevToolsEndpoint(config.cdp_host, config.cdp_port)
        browser = BrowserProcess(
            endpoint, binary=config.chrome_bin, user_data_dir=config.user_data_dir
        )
        return cls(
            config.target_url,
            endpoint,
            browser,
            selector=config.selector,
            load_timeout=config.load_timeout,
            snapshot_timeout=config.snapshot_timeout,
            mutation_threshold=config.mutation_threshold,
            command_timeout=config.timeout,
            max_size=config.max_size,
            **kwargs,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def target(self) -> Optional[Target]:
        return self._target

    @property
    def paused(self) -> bool:
        """True when the last execution command issued to the page was a pause."""
        return self._paused

    @property
    def mutation_count(self) -> int:
        return self._watcher.count if self._watcher else 0

    def _new_transport(self, ws_url: str) -> RpcTransport:
        return self._transport_factory(
            ws_url, timeout=self.command_timeout, max_size=self.max_size
        )

    async def start(self) -> None:
        """Launch or attach the renderer, open the page and leave it paused.

        Waits up to load_timeout for the first page load; a page that never
        reports one is used anyway.

        Raises:
            StartupError: If the renderer or either transport is unreachable
        """
        if self._state is not SessionState.CLOSED:
            logger.debug(f"start() ignored, session is {self._state.value}")
            return

        # Handles left over from a session that closed on transport loss
        await self._release_target()
        self._state = SessionState.STARTING
        try:
            await self._open_target()
            await self._wait_for_first_load()
            await self._register_change_listener()
            await self._pause()
        except StartupError:
            await self.shutdown()
            raise
        except ExporterError as e:
            await self.shutdown()
            raise StartupError(
                f"Session startup failed: {e}",
                details={"target_url": self.target_url},
            ) from e

        self._state = SessionState.IDLE
        log_with_context(
            logger,
            logging.INFO,
            "Session ready",
            target_id=self._target.target_id,
            url=self.target_url,
        )

    async def _open_target(self) -> None:
        if self.browser is not None:
            await self.browser.start()

        browser_ws = await asyncio.to_thread(self.endpoint.browser_ws_url)
        self._browser_transport = self._new_transport(browser_ws)
        await self._browser_transport.connect()

        logger.info(f"Creating persistent target for {self.target_url}")
        created = await self._browser_transport.execute_command(
            "Target.createTarget", {"url": self.target_url}
        )
        target_id = created.get("targetId")
        if not target_id:
            raise ExporterError("Target.createTarget did not return a targetId")
        self._target = await self.endpoint.wait_for_target(target_id)

        self._page = self._new_transport(self._target.ws_url)
        await self._page.connect()
        self._page.add_close_listener(self._on_transport_closed)

        self._watcher = MutationWatcher(self._page, self.selector)
        self._first_load = asyncio.Event()
        self._page.subscribe("Page.loadEventFired", self._on_load_event)

        self._state = SessionState.AWAITING_FIRST_LOAD
        for domain in PROTOCOL_DOMAINS:
            await self._page.execute_command(f"{domain}.enable")
        self._watcher.start()

    async def _wait_for_first_load(self) -> None:
        try:
            await asyncio.wait_for(self._first_load.wait(), timeout=self.load_timeout)
            logger.info("Page loaded")
        except asyncio.TimeoutError:
            logger.warning(
                f"No load event within {self.load_timeout}s, continuing with current page"
            )
        if self._state is SessionState.CLOSED:
            raise TransportClosed("Page transport closed before first load")

    async def _register_change_listener(self) -> bool:
        """Inject the element observer. Safe to repeat; re-run after every load."""
        generation = self._watcher.generation
        armed = await self._watcher.arm(timeout=self.load_timeout)
        if not armed and self._watcher.generation != generation:
            logger.debug("Page reloaded while arming, a re-arm is scheduled")
        elif not armed:
            logger.warning("Change listener not armed; snapshots will time out until the element appears")
        return armed

    async def _pause(self) -> None:
        await self._page.execute_command("Debugger.pause")
        self._paused = True
        logger.debug("Page paused")

    async def _resume(self, timeout: Optional[float] = None) -> None:
        try:
            await self._page.execute_command("Debugger.resume", timeout=timeout)
        except CommandFailedError as e:
            # Pause is only requested; the page may not have hit a statement yet
            logger.debug(f"Debugger.resume rejected: {e}")
        self._paused = False
        logger.debug("Page resumed")

    async def acquire_snapshot(self, timeout: Optional[float] = None) -> Any:
        """Resume, wait for the element to settle, read it, pause again.

        The page is back in the paused state before this returns or raises.

        Args:
            timeout: Seconds for the whole read (default: snapshot_timeout)

        Returns:
            Parsed JSON value of the data element

        Raises:
            SessionBusy: If another snapshot is in progress
            TransportClosed: If the session is closed or the transport drops
            ExtractionTimeout: If the mutation target or the read is not reached in time
            MalformedPayload: If the element text is not JSON
        """
        timeout = self.snapshot_timeout if timeout is None else timeout
        if self._state is SessionState.CLOSED:
            raise TransportClosed("Session is closed", details={"recovery": "call start()"})
        if self._state is not SessionState.IDLE:
            raise SessionBusy(
                "Snapshot already in progress", details={"state": self._state.value}
            )

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout

        def remaining() -> float:
            return max(deadline - loop.time(), 0.0)

        mark = self._watcher.mark(self.mutation_threshold)
        self._state = SessionState.RESUMING
        try:
            try:
                await self._resume(timeout=remaining())
                self._state = SessionState.AWAITING_MUTATIONS
                mutations = await asyncio.wait_for(
                    self._watcher.wait_until(mark), timeout=remaining()
                )
                self._state = SessionState.EXTRACTING
                text = await self._read_text(timeout=remaining())
            except (asyncio.TimeoutError, CommandTimeoutError) as e:
                raise ExtractionTimeout(
                    f"No settled snapshot within {timeout}s",
                    timeout=timeout,
                    mutations=self.mutation_count,
                    details={"state": self._state.value, "mutations": self.mutation_count},
                ) from e
        finally:
            await self._restore_paused()

        data = parse_payload(text)
        log_with_context(
            logger,
            logging.DEBUG,
            "Snapshot acquired",
            mutations=mutations,
            elapsed=round(loop.time() - started, 3),
        )
        return data

    async def _read_text(self, timeout: float) -> Optional[str]:
        try:
            response = await self._page.execute_command(
                "Runtime.evaluate",
                {"expression": READ_SCRIPT % json.dumps(self.selector), "returnByValue": True},
                timeout=max(timeout, 0.001),
            )
        except CommandFailedError as e:
            raise MalformedPayload(
                f"Read failed: {e.message}",
                details={"code": e.error_code},
            ) from e
        if response.get("exceptionDetails"):
            raise MalformedPayload(
                "Read expression raised",
                details={"exception": response["exceptionDetails"].get("text", "")},
            )
        return response.get("result", {}).get("value")

    async def _restore_paused(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        try:
            await self._pause()
        except TransportClosed:
            logger.warning("Transport closed while re-pausing page")
        except CommandError as e:
            logger.warning(f"Failed to re-pause page: {e}")
        if self._state is not SessionState.CLOSED:
            self._state = SessionState.IDLE

    def _on_load_event(self, params: dict) -> None:
        if self._watcher is None:
            return
        self._watcher.reset()
        starting = self._state in (SessionState.STARTING, SessionState.AWAITING_FIRST_LOAD)
        if starting and not self._first_load.is_set():
            self._first_load.set()
            return
        if self._state is SessionState.CLOSED:
            return

        logger.info("Page reloaded, re-arming change listener")
        if self._rearm_task and not self._rearm_task.done():
            self._rearm_task.cancel()
        self._rearm_task = asyncio.create_task(self._rearm_after_reload())

    async def _rearm_after_reload(self) -> None:
        # A navigation discards the debugger pause along with the old document
        try:
            await self._register_change_listener()
            if self._state is SessionState.IDLE:
                await self._pause()
        except TransportClosed:
            pass
        except CommandError as e:
            logger.warning(f"Re-arming after reload failed: {e}")

    def _on_transport_closed(self, error: TransportClosed) -> None:
        logger.error(f"Page transport lost, session closed: {error}")
        self._state = SessionState.CLOSED
        self._paused = False
        if self._watcher:
            self._watcher.stop(error)
        if self._first_load:
            self._first_load.set()

    async def shutdown(self) -> None:
        """Close the target and transports and stop a spawned renderer. Idempotent."""
        self._state = SessionState.CLOSED
        self._paused = False
        await self._release_target()

        if self.browser is not None:
            await self.browser.stop()

    async def _release_target(self) -> None:
        """Drop the page, its watcher and the browser socket; the renderer keeps running."""
        if self._rearm_task and not self._rearm_task.done():
            self._rearm_task.cancel()
            try:
                await self._rearm_task
            except asyncio.CancelledError:
                pass
        self._rearm_task = None

        if self._watcher:
            self._watcher.stop()
            self._watcher = None

        if self._page:
            await self._page.disconnect()
            self._page = None

        if self._browser_transport:
            if self._target and self._browser_transport.is_connected:
                try:
                    await self._browser_transport.execute_command(
                        "Target.closeTarget", {"targetId": self._target.target_id}, timeout=5.0
                    )
                except ExporterError as e:
                    logger.debug(f"Target.closeTarget failed: {e}")
            await self._browser_transport.disconnect()
            self._browser_transport = None

        self._target = None


def create_session(config: Configuration, **kwargs) -> SessionController:
    """Build a SessionController (with renderer launcher) from configuration."""
    return SessionController.from_config(config, **kwargs)
