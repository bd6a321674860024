"""
DevTools HTTP endpoint discovery.

The renderer's debugging port serves JSON descriptions of the browser-level
socket (/json/version) and of every page target (/json/list).
"""

import asyncio
import json
import logging
import urllib.request
import urllib.error
from typing import Any, Dict, List, Optional

from .exceptions import ExporterError

logger = logging.getLogger(__name__)


class Target:
    """
    One controllable page within the renderer.

    Attributes:
        target_id: Unique target ID
        ws_url: RPC socket endpoint for this target
        type: Target type ("page", "iframe", "worker", ...)
        url: Current page URL
        title: Page title
    """

    def __init__(
        self,
        target_id: str,
        ws_url: str,
        type: str = "page",
        url: str = "",
        title: str = "",
    ):
        self.target_id = target_id
        self.ws_url = ws_url
        self.type = type
        self.url = url
        self.title = title

    @classmethod
    def from_dict(cls, target_data: Dict[str, Any]) -> "Target":
        """Build a Target from one /json/list entry."""
        return cls(
            target_id=target_data["id"],
            ws_url=target_data.get("webSocketDebuggerUrl", ""),
            type=target_data.get("type", "page"),
            url=target_data.get("url", ""),
            title=target_data.get("title", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.target_id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "webSocketDebuggerUrl": self.ws_url,
        }

    def __repr__(self):
        return f"Target(id={self.target_id!r}, type={self.type!r}, url={self.url!r})"


class DevToolsEndpoint:
    """
    HTTP discovery for one remote-debugging port.

    Usage:
        endpoint = DevToolsEndpoint("127.0.0.1", 9222)
        browser_ws = endpoint.browser_ws_url()
        target = await endpoint.wait_for_target(target_id)

    Attributes:
        host: Debugging host
        port: Debugging port
        timeout: HTTP request timeout in seconds
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 9222, timeout: float = 5.0):
        if not 1 <= port <= 65535:
            raise ValueError(f"port must be 1-65535, got {port}")

        self.host = host
        self.port = port
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _get_json(self, path: str) -> Any:
        endpoint_url = f"{self.base_url}{path}"
        try:
            with urllib.request.urlopen(endpoint_url, timeout=self.timeout) as response:
                return json.loads(response.read())
        except (urllib.error.URLError, OSError) as e:
            raise ExporterError(
                f"Failed to reach DevTools endpoint at {endpoint_url}: {e}",
                details={
                    "host": self.host,
                    "port": self.port,
                    "recovery": "Ensure the renderer runs with --remote-debugging-port",
                },
            ) from e
        except json.JSONDecodeError as e:
            raise ExporterError(
                f"Invalid JSON response from DevTools endpoint: {e}",
                details={"endpoint": endpoint_url},
            ) from e

    def version(self) -> Dict[str, Any]:
        """Fetch /json/version."""
        return self._get_json("/json/version")

    def is_ready(self) -> bool:
        """Return True when /json/version answers."""
        try:
            self.version()
        except ExporterError:
            return False
        return True

    def browser_ws_url(self) -> str:
        """Return the browser-level RPC socket URL.

        Raises:
            ExporterError: If the endpoint is unreachable or reports no socket URL
        """
        ws_url = self.version().get("webSocketDebuggerUrl")
        if not ws_url:
            raise ExporterError(
                "Browser WebSocket URL not found",
                details={"endpoint": f"{self.base_url}/json/version"},
            )
        return ws_url

    def list_targets(self, target_type: Optional[str] = None) -> List[Target]:
        """Fetch /json/list, optionally filtered by target type."""
        targets = [Target.from_dict(data) for data in self._get_json("/json/list")]
        if target_type:
            targets = [t for t in targets if t.type == target_type]
        return targets

    def get_target_by_id(self, target_id: str) -> Optional[Target]:
        for target in self.list_targets():
            if target.target_id == target_id and target.ws_url:
                return target
        return None

    async def wait_until_ready(self, timeout: float = 10.0, interval: float = 0.2) -> bool:
        """Poll /json/version until it answers or timeout elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await asyncio.to_thread(self.is_ready):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(interval)

    async def wait_for_target(
        self, target_id: str, timeout: float = 5.0, interval: float = 0.1
    ) -> Target:
        """Poll /json/list until target_id is listed with a socket URL.

        Raises:
            ExporterError: If the target does not appear within timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                target = await asyncio.to_thread(self.get_target_by_id, target_id)
            except ExporterError as e:
                logger.debug(f"Target list not available yet: {e}")
                target = None
            if target is not None:
                logger.debug(f"Target ready with WebSocket URL: {target.ws_url}")
                return target
            if loop.time() >= deadline:
                raise ExporterError(
                    "WebSocket URL for new target not found",
                    details={"target_id": target_id, "timeout": timeout},
                )
            await asyncio.sleep(interval)
