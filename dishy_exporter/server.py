"""
HTTP surface: /metrics, /json, /health and an index page.

Usage:
    app = create_app(config)
    web.run_app(app, host=config.listen_host, port=config.listen_port)
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web

from .config import Configuration
from .encoder import CONTENT_TYPE, NamingPolicy
from .exceptions import (
    EncodingError,
    ExporterError,
    ExtractionTimeout,
    MalformedPayload,
    SessionBusy,
    StartupError,
    TransportClosed,
)
from .orchestrator import ScrapeOrchestrator
from .session import SessionController, create_session

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = web.AppKey("orchestrator", ScrapeOrchestrator)
STARTED_AT_KEY = web.AppKey("started_at", float)

ERROR_STATUS = (
    (SessionBusy, 503),
    (ExtractionTimeout, 504),
    (MalformedPayload, 502),
    (TransportClosed, 503),
    (StartupError, 503),
    (EncodingError, 500),
)

INDEX_PAGE = """<html>
<head><title>Dishy Exporter</title></head>
<body>
<h1>Dishy Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
<p><a href="/json">Raw snapshot</a></p>
<p><a href="/health">Health</a></p>
</body>
</html>
"""


def _status_for(error: ExporterError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def _error_response(error: ExporterError) -> web.Response:
    status = _status_for(error)
    logger.warning(f"Scrape failed ({status}): {error}")
    return web.json_response(
        {"error": type(error).__name__, "message": str(error)}, status=status
    )


def _timeout_param(request: web.Request) -> Optional[float]:
    """Optional ?timeoutMs= override of the snapshot timeout, in seconds."""
    raw = request.query.get("timeoutMs")
    if raw is None:
        return None
    try:
        timeout_ms = float(raw)
    except ValueError:
        raise web.HTTPBadRequest(reason=f"Invalid timeoutMs: {raw}")
    if timeout_ms <= 0:
        raise web.HTTPBadRequest(reason="timeoutMs must be positive")
    return timeout_ms / 1000.0


async def handle_metrics(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    timeout = _timeout_param(request)
    try:
        text = await orchestrator.scrape(timeout)
    except ExporterError as e:
        return _error_response(e)
    return web.Response(body=text.encode("utf-8"), headers={"Content-Type": CONTENT_TYPE})


async def handle_json(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    timeout = _timeout_param(request)
    try:
        data = await orchestrator.snapshot(timeout)
    except ExporterError as e:
        return _error_response(e)
    return web.json_response(data)


async def handle_health(request: web.Request) -> web.Response:
    session = request.app[ORCHESTRATOR_KEY].session
    return web.json_response(
        {
            "status": "ok",
            "uptime": round(time.monotonic() - request.app[STARTED_AT_KEY], 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session": session.state.value,
        }
    )


async def handle_index(request: web.Request) -> web.Response:
    return web.Response(text=INDEX_PAGE, content_type="text/html")


async def _session_lifecycle(app: web.Application):
    session = app[ORCHESTRATOR_KEY].session
    await session.start()
    yield
    await session.shutdown()


def create_app(
    config: Configuration,
    session: Optional[SessionController] = None,
    manage_session: bool = True,
) -> web.Application:
    """Build the aiohttp application.

    Args:
        config: Exporter configuration
        session: Session to serve (default: create_session(config))
        manage_session: Start the session on startup and shut it down on cleanup
    """
    if session is None:
        session = create_session(config)

    app = web.Application()
    app[ORCHESTRATOR_KEY] = ScrapeOrchestrator(
        session, prefix=config.metric_prefix, naming=NamingPolicy(config.naming)
    )
    app[STARTED_AT_KEY] = time.monotonic()
    app.router.add_get("/metrics", handle_metrics)
    app.router.add_get("/json", handle_json)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/", handle_index)
    if manage_session:
        app.cleanup_ctx.append(_session_lifecycle)
    return app


def run_server(config: Configuration) -> None:
    """Serve until SIGINT/SIGTERM; the session is shut down on exit."""
    app = create_app(config)
    logger.info(f"Listening on http://{config.listen_host}:{config.listen_port}")
    web.run_app(app, host=config.listen_host, port=config.listen_port, print=None)
