"""
Scrape orchestration: snapshot -> encode, with timing.
"""

import asyncio
import logging
import time
from typing import Any, Optional

from .encoder import MetricsEncoder, NamingPolicy, format_value
from .exceptions import TransportClosed
from .logging_setup import log_with_context
from .session import SessionController, SessionState

logger = logging.getLogger(__name__)


class ScrapeOrchestrator:
    """
    The only caller of both SessionController.acquire_snapshot() and the encoder.

    Nothing is retried within a scrape. A session found CLOSED (transport lost)
    is restarted once, at the start of the next scrape.

    Attributes:
        session: Started SessionController
        encoder: MetricsEncoder with the configured prefix and naming policy
    """

    def __init__(
        self,
        session: SessionController,
        prefix: str = "starlink_",
        naming: NamingPolicy = NamingPolicy.LABELED,
        restart_closed: bool = True,
    ):
        self.session = session
        self.encoder = MetricsEncoder(prefix, naming)
        self.restart_closed = restart_closed
        self._restart_lock = asyncio.Lock()

    @property
    def duration_metric(self) -> str:
        return f"{self.encoder.prefix}exporter_scrape_duration_seconds"

    async def ensure_session(self) -> None:
        """Start the session if it is closed (recovery after transport loss)."""
        if self.session.state is not SessionState.CLOSED:
            return
        if not self.restart_closed:
            raise TransportClosed("Session is closed")
        async with self._restart_lock:
            if self.session.state is SessionState.CLOSED:
                logger.warning("Session closed, starting a fresh one")
                await self.session.start()

    async def snapshot(self, timeout: Optional[float] = None) -> Any:
        await self.ensure_session()
        return await self.session.acquire_snapshot(timeout)

    async def scrape(self, timeout: Optional[float] = None) -> str:
        """Acquire one snapshot and return it as exposition text.

        Raises:
            ExporterError subclasses from the session or the encoder, unchanged
        """
        started = time.monotonic()
        data = await self.snapshot(timeout)
        text = self.encoder.encode(data)
        elapsed = time.monotonic() - started

        log_with_context(
            logger, logging.INFO, "Scrape complete", elapsed=round(elapsed, 3), bytes=len(text)
        )
        name = self.duration_metric
        return text + f"# TYPE {name} gauge\n{name} {format_value(round(elapsed, 6))}\n"
