"""
Renderer (headless Chrome/Chromium) discovery and process management.
"""

import asyncio
import logging
import os
import shutil
import subprocess
import tempfile
from typing import List, Optional

from .devtools import DevToolsEndpoint
from .exceptions import StartupError

logger = logging.getLogger(__name__)

BINARY_CANDIDATES = [
    "chromium",
    "chromium-browser",
    "google-chrome",
    "google-chrome-stable",
    "google-chrome-beta",
    "chrome",
    "msedge",
    "microsoft-edge",
]

# Background services that would only add noise to a long-lived headless page
QUIET_FLAGS = [
    "--disable-background-networking",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-sync",
    "--disable-translate",
    "--metrics-recording-only",
    "--no-first-run",
    "--mute-audio",
    "--hide-scrollbars",
]


def _binary_works(binary: str) -> bool:
    try:
        result = subprocess.run(
            [binary, "--version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


def find_browser_binary(preferred: Optional[str] = None) -> Optional[str]:
    """Return the first candidate whose `--version` exits 0.

    Order: explicit argument, CHROME_BIN environment variable, BINARY_CANDIDATES.
    """
    candidates = [preferred, os.environ.get("CHROME_BIN"), *BINARY_CANDIDATES]
    for binary in candidates:
        if not binary:
            continue
        if not os.path.isabs(binary) and shutil.which(binary) is None:
            continue
        if _binary_works(binary):
            return binary
    return None


class BrowserProcess:
    """
    Launches the renderer with remote debugging enabled, or attaches to one
    already listening on the debugging port.

    Only a process spawned by this object is ever terminated by it.

    Attributes:
        endpoint: DevTools HTTP endpoint of the debugging port
        binary: Renderer binary (None = auto-discover on start)
        user_data_dir: Profile directory (None = temporary directory, removed on stop)
        ready_timeout: Seconds to wait for the endpoint after spawning
    """

    def __init__(
        self,
        endpoint: DevToolsEndpoint,
        binary: Optional[str] = None,
        user_data_dir: Optional[str] = None,
        ready_timeout: float = 10.0,
    ):
        self.endpoint = endpoint
        self.binary = binary
        self.user_data_dir = user_data_dir
        self.ready_timeout = ready_timeout

        self._process: Optional[asyncio.subprocess.Process] = None
        self._temp_dir: Optional[str] = None

    @property
    def spawned(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def build_command(self, binary: str, user_data_dir: str) -> List[str]:
        return [
            binary,
            f"--remote-debugging-port={self.endpoint.port}",
            "--headless=new",
            "--disable-gpu",
            "--no-sandbox",
            f"--user-data-dir={user_data_dir}",
            *QUIET_FLAGS,
        ]

    async def start(self) -> None:
        """Attach to a listening renderer or spawn one and wait until it answers.

        Raises:
            StartupError: If no binary is found, it cannot be spawned, or the
                endpoint never becomes ready
        """
        if await asyncio.to_thread(self.endpoint.is_ready):
            logger.info(f"Attaching to renderer already listening on {self.endpoint.base_url}")
            return

        binary = await asyncio.to_thread(find_browser_binary, self.binary)
        if binary is None:
            raise StartupError(
                "No Chrome/Chromium binary found",
                details={"recovery": "Set CHROME_BIN or install chromium/google-chrome"},
            )

        user_data_dir = self.user_data_dir
        if not user_data_dir:
            self._temp_dir = tempfile.mkdtemp(prefix="dishy-chrome-")
            user_data_dir = self._temp_dir

        command = self.build_command(binary, user_data_dir)
        logger.debug(f"Launching renderer: {' '.join(command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            self._cleanup_temp_dir()
            raise StartupError(
                f"Failed to launch {binary}: {e}", details={"binary": binary}
            ) from e

        logger.info(f"Renderer launched (PID: {self._process.pid})")

        if not await self.endpoint.wait_until_ready(timeout=self.ready_timeout):
            await self.stop()
            raise StartupError(
                "DevTools endpoint not reachable",
                details={"endpoint": self.endpoint.base_url, "timeout": self.ready_timeout},
            )

    async def stop(self, timeout: float = 5.0) -> None:
        """Terminate the spawned renderer (SIGTERM, then SIGKILL). Idempotent."""
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            logger.info(f"Terminating renderer (PID: {process.pid})")
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"Renderer did not exit after {timeout}s, killing")
                process.kill()
                await process.wait()
        self._cleanup_temp_dir()

    def _cleanup_temp_dir(self) -> None:
        if self._temp_dir:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            self._temp_dir = None
