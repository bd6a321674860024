"""Remote-debugging RPC transport.

Provides RpcTransport for correlated command execution and event subscription
over one DevTools WebSocket endpoint (browser-level or page-level).
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

try:
    import websockets
    from websockets.asyncio.client import ClientConnection
    from websockets.exceptions import ConnectionClosed
except ImportError:
    raise ImportError(
        "websockets library not found. Install with: pip3 install 'websockets>=13'"
    )

from .exceptions import (
    ConnectionFailedError,
    TransportClosed,
    CommandFailedError,
    CommandTimeoutError,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Any]
CloseListener = Callable[[TransportClosed], None]


class RpcTransport:
    """Bidirectional message channel to one remote-debugging endpoint.

    Handles:
    - Connection lifecycle (connect, disconnect, context manager)
    - Correlation ids: every command gets a fresh integer id and a pending future,
      resolved when the response with the same id arrives (in any order)
    - Publish/subscribe dispatch of unsolicited events (messages without "id")
    - Closure: every pending call is rejected with TransportClosed, and close
      listeners are told when the socket drops without disconnect() being called

    Event handlers are plain callables invoked from the receive loop, so state
    they mutate is never touched concurrently with another message. A handler
    returning an awaitable has it scheduled as a task.

    Usage:
        async with RpcTransport(ws_url) as transport:
            result = await transport.execute_command("Runtime.evaluate", {"expression": "1+1"})
            transport.subscribe("Page.loadEventFired", on_load)

    Attributes:
        ws_url: WebSocket debugger URL
        timeout: Default command timeout in seconds
        max_size: Maximum WebSocket message size in bytes
    """

    def __init__(
        self,
        ws_url: str,
        *,
        timeout: float = 30.0,
        max_size: int = 2_097_152,
    ):
        if not ws_url.startswith(("ws://", "wss://")):
            raise ValueError(f"Invalid WebSocket URL: {ws_url}")

        self.ws_url = ws_url
        self.timeout = timeout
        self.max_size = max_size

        self._ws: Optional[ClientConnection] = None
        self._next_command_id: int = 1
        self._pending_commands: Dict[int, asyncio.Future] = {}
        self._event_handlers: Dict[str, List[EventHandler]] = {}
        self._close_listeners: List[CloseListener] = []
        self._handler_tasks: Set[asyncio.Task] = set()
        self._receive_task: Optional[asyncio.Task] = None
        self._is_connected: bool = False
        self._closing: bool = False

    @property
    def is_connected(self) -> bool:
        """Check if WebSocket connection is active."""
        if not self._is_connected or self._ws is None:
            return False
        return self._ws.state.name == "OPEN"

    @property
    def pending_count(self) -> int:
        """Number of commands still waiting for a response."""
        return len(self._pending_commands)

    async def connect(self) -> None:
        """Open the WebSocket and start the receive loop.

        Raises:
            ConnectionFailedError: If the WebSocket cannot be opened
        """
        logger.info(f"Connecting to {self.ws_url}")
        try:
            self._ws = await websockets.connect(self.ws_url, max_size=self.max_size)
        except Exception as e:
            raise ConnectionFailedError(
                f"Failed to connect to {self.ws_url}: {e}",
                details={"url": self.ws_url, "error": str(e)},
            ) from e

        self._is_connected = True
        self._closing = False
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.debug("Transport established")

    async def disconnect(self) -> None:
        """Close the WebSocket and reject every pending call. Idempotent."""
        if self._ws is None:
            return
        logger.debug(f"Disconnecting from {self.ws_url}")
        self._closing = True
        self._is_connected = False

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        try:
            if self._ws.state.name != "CLOSED":
                await self._ws.close()
        except Exception as e:
            logger.warning(f"Error closing WebSocket: {e}")

        self._fail_pending(TransportClosed("Connection closed during command execution"))
        self._ws = None

    async def __aenter__(self) -> "RpcTransport":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def execute_command(
        self,
        method: str,
        params: Optional[dict] = None,
        *,
        timeout: Optional[float] = None,
    ) -> dict:
        """Send a command and wait for the response bearing its id.

        Args:
            method: Protocol method name (e.g., "Runtime.evaluate", "Debugger.pause")
            params: Method parameters (default: empty dict)
            timeout: Command timeout in seconds (default: self.timeout)

        Returns:
            Command result dict (contents of "result" field in response)

        Raises:
            TransportClosed: If the transport is not open or closes while waiting
            CommandTimeoutError: If no response arrives in time
            CommandFailedError: If the response carries an error object
        """
        if not self.is_connected:
            raise TransportClosed(
                "Cannot execute command: connection not active",
                details={"method": method},
            )

        cmd_id = self._next_command_id
        self._next_command_id += 1

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_commands[cmd_id] = future

        message = json.dumps({"id": cmd_id, "method": method, "params": params or {}})
        cmd_timeout = timeout if timeout is not None else self.timeout

        try:
            try:
                await self._ws.send(message)
            except ConnectionClosed as e:
                raise TransportClosed(
                    f"Connection closed while sending {method}", details={"reason": str(e)}
                ) from e
            logger.debug(f"Sent command {cmd_id}: {method}")

            return await asyncio.wait_for(future, timeout=cmd_timeout)

        except asyncio.TimeoutError:
            raise CommandTimeoutError(
                "Command timed out", method=method, timeout=cmd_timeout
            )
        finally:
            self._pending_commands.pop(cmd_id, None)

    def subscribe(self, event_name: str, callback: EventHandler) -> None:
        """Register a callback for an event (e.g., "Page.loadEventFired").

        The corresponding domain must be enabled for the event to be delivered.
        """
        self._event_handlers.setdefault(event_name, []).append(callback)
        logger.debug(f"Subscribed to event: {event_name}")

    def unsubscribe(self, event_name: str, callback: EventHandler) -> None:
        """Remove a previously registered event callback."""
        try:
            self._event_handlers.get(event_name, []).remove(callback)
            logger.debug(f"Unsubscribed from event: {event_name}")
        except ValueError:
            logger.warning(f"Callback not found for event: {event_name}")

    def add_close_listener(self, callback: CloseListener) -> None:
        """Register a callback invoked once when the socket drops unexpectedly."""
        self._close_listeners.append(callback)

    async def _receive_loop(self) -> None:
        """Receive messages until the socket closes, routing each one."""
        reason = "connection closed by remote end"
        try:
            async for message in self._ws:
                self._route(message)
        except ConnectionClosed as e:
            reason = str(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Receive loop error: {e}", exc_info=True)
            reason = str(e)

        if not self._closing:
            self._handle_remote_close(reason)

    def _route(self, message) -> None:
        """Resolve a pending call (message with "id") or dispatch an event."""
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.error(f"Malformed message: {e}")
            return
        if not isinstance(data, dict):
            logger.error(f"Unexpected message type: {type(data).__name__}")
            return

        if "id" in data:
            future = self._pending_commands.get(data["id"])
            if future is None or future.done():
                logger.debug(f"Dropping response for unknown or abandoned id {data['id']}")
                return
            if "error" in data:
                error = data["error"] or {}
                future.set_exception(
                    CommandFailedError(
                        error.get("message", "Unknown protocol error"),
                        error_code=error.get("code"),
                        details={"error": error},
                    )
                )
            else:
                future.set_result(data.get("result", {}))

        elif "method" in data:
            self._dispatch(data["method"], data.get("params", {}))

    def _dispatch(self, event_name: str, params: dict) -> None:
        handlers = self._event_handlers.get(event_name)
        if not handlers:
            return
        logger.debug(f"Received event: {event_name}")
        for handler in list(handlers):
            try:
                result = handler(params)
                if asyncio.iscoroutine(result):
                    task = asyncio.create_task(result)
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._handler_tasks.discard)
            except Exception as e:
                logger.error(f"Event handler error for {event_name}: {e}", exc_info=True)

    def _handle_remote_close(self, reason: str) -> None:
        logger.warning(f"WebSocket connection closed: {reason}")
        self._is_connected = False
        error = TransportClosed(f"Connection closed: {reason}", details={"url": self.ws_url})
        self._fail_pending(error)
        for listener in list(self._close_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Close listener error: {e}", exc_info=True)

    def _fail_pending(self, error: TransportClosed) -> None:
        for future in self._pending_commands.values():
            if not future.done():
                future.set_exception(error)
        self._pending_commands.clear()
