"""
DOM mutation watcher - counts changes of the page element holding the status JSON.

An injected MutationObserver logs a tagged console message on every change of the
observed element; the watcher counts those Runtime.consoleAPICalled events.
"""

import asyncio
import json
import logging
from typing import NamedTuple, Optional

from .connection import RpcTransport
from .exceptions import CommandError, TransportClosed

logger = logging.getLogger(__name__)

MUTATION_TAG = "__dishy_exporter_mutation__"

OBSERVER_SCRIPT = """(function(selector, tag) {
  const el = document.querySelector(selector);
  if (!el) return false;
  if (window.__dishyObserver) window.__dishyObserver.disconnect();
  window.__dishyObserver = new MutationObserver(function() { console.debug(tag); });
  window.__dishyObserver.observe(el, {
    subtree: true, childList: true, characterData: true, attributes: true
  });
  return true;
})(%s, %s)"""


class MutationMark(NamedTuple):
    """Count to reach, recorded against one page load (generation)."""

    target: int
    generation: int
    threshold: int


class MutationWatcher:
    """
    Maintains the mutation counter for the lifetime of one target.

    The counter only moves from the transport's event callback (increment) and
    from reset() (page load complete), so it never changes concurrently with a
    waiter inspecting it.

    Usage:
        watcher = MutationWatcher(transport, ".Json-Text")
        watcher.start()
        await watcher.arm()
        mark = watcher.mark(2)
        ...  # resume the page
        await watcher.wait_until(mark)

    Attributes:
        transport: Page-level RPC transport
        selector: CSS selector of the observed element
        tag: Console message text emitted by the injected observer
    """

    def __init__(self, transport: RpcTransport, selector: str, tag: str = MUTATION_TAG):
        self.transport = transport
        self.selector = selector
        self.tag = tag

        self._count = 0
        self._generation = 0
        self._armed = False
        self._running = False
        self._error: Optional[Exception] = None
        self._changed = asyncio.Event()

    @property
    def count(self) -> int:
        return self._count

    @property
    def generation(self) -> int:
        """Number of page loads observed since start()."""
        return self._generation

    @property
    def armed(self) -> bool:
        return self._armed

    def start(self) -> None:
        """Subscribe to console events. Runtime domain must be enabled."""
        if self._running:
            return
        self.transport.subscribe("Runtime.consoleAPICalled", self._on_console_event)
        self._running = True
        self._error = None

    def stop(self, error: Optional[Exception] = None) -> None:
        """Unsubscribe and release waiters (with error, if given)."""
        if self._running:
            self.transport.unsubscribe("Runtime.consoleAPICalled", self._on_console_event)
            self._running = False
        self._error = error or TransportClosed("Mutation watcher stopped")
        self._armed = False
        self._changed.set()

    def reset(self) -> None:
        """Page load complete: the observed node is gone, start counting from zero."""
        self._count = 0
        self._generation += 1
        self._armed = False
        self._changed.set()
        logger.debug(f"Mutation counter reset (load #{self._generation})")

    async def arm(self, timeout: float = 15.0, interval: float = 0.2) -> bool:
        """Inject the observer, polling until the element exists.

        Re-arming replaces a previous observer. Returns False when the element
        did not appear within timeout.

        Raises:
            TransportClosed: If the transport drops while arming
        """
        expression = OBSERVER_SCRIPT % (json.dumps(self.selector), json.dumps(self.tag))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        generation = self._generation

        while True:
            try:
                response = await self.transport.execute_command(
                    "Runtime.evaluate",
                    {"expression": expression, "returnByValue": True},
                )
            except CommandError as e:
                logger.debug(f"Observer injection failed: {e}")
                response = {}

            if response.get("exceptionDetails"):
                logger.debug(f"Observer script raised: {response['exceptionDetails']}")
            elif response.get("result", {}).get("value") is True:
                # A load that happened meanwhile destroyed this observer
                if generation == self._generation:
                    self._armed = True
                    logger.info(f"Change listener armed on {self.selector}")
                return self._armed

            if loop.time() >= deadline:
                logger.warning(
                    f"Element {self.selector} not found within {timeout}s, listener not armed"
                )
                return False
            await asyncio.sleep(interval)

    def mark(self, threshold: int) -> MutationMark:
        """Record the count to wait for: current count + threshold."""
        return MutationMark(self._count + threshold, self._generation, threshold)

    async def wait_until(self, mark: MutationMark) -> int:
        """Suspend until the counter reaches mark.target.

        A page load in between re-bases the target to mark.threshold against the
        fresh counter. Cancel (e.g. asyncio.wait_for) to impose a deadline.

        Returns:
            Counter value when the target was reached

        Raises:
            TransportClosed: If the watcher is stopped while waiting
        """
        target, generation = mark.target, mark.generation
        while True:
            if self._error is not None:
                raise self._error
            if self._generation != generation:
                generation = self._generation
                target = mark.threshold
            if self._count >= target:
                return self._count
            self._changed.clear()
            await self._changed.wait()

    def _on_console_event(self, params: dict) -> None:
        args = params.get("args") or []
        if not args or args[0].get("value") != self.tag:
            return
        self._count += 1
        self._changed.set()
