"""
Figma Communicator - Relay Transport Layer

This module provides the communication layer between the MCP server and
the Figma plugin. Commands travel over a websocket relay: the server joins
a channel, sends commands into it, and resolves each pending request when
the plugin's reply with the same id comes back.
"""

import asyncio
import json
import uuid
import logging
import time
from typing import Dict, Any, Optional

import websockets

logger = logging.getLogger(__name__)

MESSAGE_TYPE_JOIN = "join"
MESSAGE_TYPE_MESSAGE = "message"
MESSAGE_TYPE_PROGRESS_UPDATE = "progress_update"

COMMAND_JOIN = "join"


class ToolExecutionError(Exception):
    """
    Failure of a command sent to the Figma plugin.

    Carries a structured payload so callers can report it without parsing.
    Expected payload shape: { code: str, message: str, details?: dict }
    """

    def __init__(self, payload: Any, command: str | None = None, params: Dict[str, Any] | None = None):
        self.command = command
        self.params = params

        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", "unknown_plugin_error"))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
            normalized_payload = payload
        else:
            self.code = "unknown_plugin_error"
            self.message = str(payload)
            self.details = {}
            normalized_payload = {"code": self.code, "message": self.message, "details": self.details}

        self.payload = normalized_payload

        text = self.message if self.message else self.code
        super().__init__(text)


def _error_from_reply(error_val: Any, command: str | None, params: Dict[str, Any] | None) -> ToolExecutionError:
    """Build a ToolExecutionError from the `error` field of a plugin reply.

    Object errors keep their structure; JSON strings are parsed when they hold
    an object; anything else becomes the message verbatim.
    """
    if isinstance(error_val, dict):
        return ToolExecutionError(error_val, command=command, params=params)
    if isinstance(error_val, str):
        try:
            parsed = json.loads(error_val)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return ToolExecutionError(parsed, command=command, params=params)
    return ToolExecutionError({"code": "plugin_error", "message": str(error_val)}, command=command, params=params)


class FigmaCommunicator:
    """
    Handles command traffic with the Figma plugin through the websocket relay.

    This class manages:
    - Connecting to the relay and joining a channel
    - Sending commands with unique IDs
    - Resolving futures when matching replies arrive
    - Timeouts, refreshed by progress updates from the plugin
    - Failing in-flight requests when the connection drops
    """

    def __init__(self, url: str, timeout: float = 30.0, channel: Optional[str] = None):
        """
        Initialize the communicator.

        Args:
            url: Websocket URL of the relay (e.g. ws://localhost:3055)
            timeout: Seconds to wait for a reply without any progress (default: 30.0)
            channel: Channel to join after (re)connecting; updated by join_channel
        """
        self.url = url
        self.timeout = timeout
        self.websocket = None
        self.channel: Optional[str] = channel
        self.current_channel: Optional[str] = None
        self._connect_lock = asyncio.Lock()
        self._join_lock = asyncio.Lock()
        self.pending_requests: Dict[str, asyncio.Future] = {}
        self.request_timestamps: Dict[str, float] = {}  # Last activity per request
        self.request_meta: Dict[str, Dict[str, Any]] = {}  # Command/params per request
        self._listen_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.websocket is not None

    def generate_id(self) -> str:
        """Generate a unique ID for a command."""
        return str(uuid.uuid4())

    async def connect(self) -> None:
        """Open the relay connection and start listening. No-op when already connected.

        Concurrent callers share a single connection attempt.
        """
        if self.websocket is not None:
            return

        async with self._connect_lock:
            if self.websocket is not None:
                return

            logger.info(f"🔌 Connecting to Figma relay at {self.url}")
            try:
                # Node trees can be large; lift the frame size limit
                websocket = await websockets.connect(self.url, max_size=None)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.error(f"Failed to connect to Figma relay: {e}")
                raise ToolExecutionError({
                    "code": "connection_failed",
                    "message": f"Failed to connect to Figma relay at {self.url}: {e}",
                    "details": {"url": self.url},
                })

            self.websocket = websocket
            self._listen_task = asyncio.create_task(self.listen(websocket))
            logger.info("🌉 Connected to Figma relay")

    async def join_channel(self, channel: str) -> Any:
        """Join a relay channel; subsequent commands are routed through it.

        The channel is remembered and joined again after a reconnect.
        """
        result = await self.send_command(COMMAND_JOIN, {"channel": channel})
        self.channel = channel
        self.current_channel = channel
        logger.info(f"📡 Joined channel: {channel}")
        return result

    async def _rejoin(self, command: str) -> None:
        async with self._join_lock:
            if self.current_channel:
                return
            logger.info(f"📡 Rejoining channel {self.channel} before {command}")
            await self.join_channel(self.channel)

    async def send_command(self, command: str, params: Dict[str, Any] = None) -> Any:
        """
        Send a command to the Figma plugin and wait for its reply.

        Args:
            command: The command name (e.g., "create_component_set")
            params: Optional parameters for the command

        Returns:
            The `result` field of the plugin's reply

        Raises:
            ToolExecutionError: On connection failure, missing channel,
                plugin error reply, timeout, or disconnect
        """
        params = dict(params or {})

        if self.websocket is None:
            await self.connect()

        is_join = command == COMMAND_JOIN
        if not is_join and not self.current_channel and self.channel:
            await self._rejoin(command)
        if not is_join and not self.current_channel:
            raise ToolExecutionError({
                "code": "channel_not_joined",
                "message": "Must join a channel before sending commands",
            }, command=command, params=params)

        request_id = self.generate_id()
        request = {
            "id": request_id,
            "type": MESSAGE_TYPE_JOIN if is_join else MESSAGE_TYPE_MESSAGE,
            "channel": params.get("channel") if is_join else self.current_channel,
            "message": {
                "id": request_id,
                "command": command,
                "params": {**params, "commandId": request_id},
            },
        }

        future = asyncio.get_running_loop().create_future()
        self.pending_requests[request_id] = future
        self.request_timestamps[request_id] = time.time()
        self.request_meta[request_id] = {"command": command, "params": params}

        try:
            logger.info(f"🚀 Sending command: {command} with ID: {request_id}")
            logger.debug(f"🚀 Command payload: {json.dumps(request)}")
            await self.websocket.send(json.dumps(request))
            return await self._wait_for_reply(request_id, future)
        finally:
            self.pending_requests.pop(request_id, None)
            self.request_timestamps.pop(request_id, None)
            self.request_meta.pop(request_id, None)

    async def _wait_for_reply(self, request_id: str, future: asyncio.Future) -> Any:
        meta = self.request_meta.get(request_id, {})
        while True:
            last_activity = self.request_timestamps.get(request_id, 0.0)
            remaining = self.timeout - (time.time() - last_activity)
            if remaining <= 0:
                logger.error(f"⏰ Command {meta.get('command')} (ID: {request_id}) timed out after {self.timeout}s without progress")
                future.cancel()
                raise ToolExecutionError({
                    "code": "timeout",
                    "message": "Request to Figma timed out",
                    "details": {"timeout": self.timeout},
                }, command=meta.get("command"), params=meta.get("params"))
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout=remaining)
            except asyncio.TimeoutError:
                # Progress updates may have moved the deadline; re-check
                continue

    async def listen(self, websocket) -> None:
        """Read relay messages until the connection ends."""
        try:
            async for raw_message in websocket:
                try:
                    message = json.loads(raw_message)
                except json.JSONDecodeError as e:
                    logger.error(f"❌ Failed to decode message: {e}")
                    continue
                try:
                    self.handle_message(message)
                except Exception as e:
                    logger.error(f"❌ Error handling message: {e}")
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Relay connection closed: {e}")
        finally:
            logger.info("Disconnected from Figma relay")
            if self.websocket is websocket:
                self.websocket = None
                self.current_channel = None
            self._fail_pending_requests("connection_closed", "Connection to Figma closed")

    def handle_message(self, message: Dict[str, Any]) -> None:
        """
        Dispatch one decoded relay message.

        Progress updates refresh the deadline of their request; replies
        carrying a known id resolve or reject it; everything else is a
        broadcast and only logged.
        """
        if not isinstance(message, dict):
            logger.debug(f"Ignoring non-object message: {message!r}")
            return

        if message.get("type") == MESSAGE_TYPE_PROGRESS_UPDATE:
            self._handle_progress_update(message)
            return

        reply = message.get("message")
        request_id = reply.get("id") if isinstance(reply, dict) else None
        future = self.pending_requests.get(request_id) if request_id else None
        if future is None:
            logger.debug(f"📣 Broadcast message: {reply!r}")
            return

        if future.done():
            logger.debug(f"⚠️ Reply for completed request: {request_id}")
            return

        meta = self.request_meta.get(request_id, {})
        elapsed = time.time() - self.request_timestamps.get(request_id, time.time())

        if reply.get("error"):
            logger.error(f"❌ Command {meta.get('command')} (ID: {request_id}) failed after {elapsed:.3f}s: {reply['error']}")
            future.set_exception(_error_from_reply(reply["error"], meta.get("command"), meta.get("params")))
            return

        if "result" in reply:
            logger.info(f"✅ Command {meta.get('command')} (ID: {request_id}) completed")
            logger.debug(f"🎯 Result payload: {reply['result']}")
            future.set_result(reply["result"])
            return

        # Our own request echoed back by the relay
        logger.debug(f"Ignoring reply without result for {request_id}")

    def _handle_progress_update(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        progress = message.get("message") or {}
        data = progress.get("data", {}) if isinstance(progress, dict) else {}
        logger.info(f"📈 Progress for {data.get('commandType', 'unknown')}: {data.get('progress', 0)}% {data.get('message', '')}")
        if request_id in self.request_timestamps:
            self.request_timestamps[request_id] = time.time()

    def _fail_pending_requests(self, code: str, message: str) -> None:
        for request_id, future in list(self.pending_requests.items()):
            if future.done():
                continue
            meta = self.request_meta.get(request_id, {})
            future.set_exception(ToolExecutionError({"code": code, "message": message}, command=meta.get("command"), params=meta.get("params")))

    def cleanup_pending_requests(self) -> None:
        """Cancel all pending requests (called on shutdown).

        Waiting send_command calls raise asyncio.CancelledError, which tool
        handlers do not turn into a text result. Outside shutdown, requests
        fail with ToolExecutionError instead.
        """
        for request_id, future in self.pending_requests.items():
            if not future.done():
                future.cancel()
                logger.info(f"Cancelled pending request: {request_id}")
        self.pending_requests.clear()
        self.request_timestamps.clear()
        self.request_meta.clear()

    async def close(self) -> None:
        """Cancel in-flight requests and close the relay connection."""
        self.cleanup_pending_requests()
        websocket, self.websocket = self.websocket, None
        self.current_channel = None
        if websocket is not None:
            await websocket.close()
        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
        self._listen_task = None


# Global communicator instance (set by main.py)
_communicator: Optional[FigmaCommunicator] = None

def set_communicator(communicator: FigmaCommunicator) -> None:
    """Set the global communicator instance."""
    global _communicator
    _communicator = communicator

def get_communicator() -> FigmaCommunicator:
    """Get the global communicator instance."""
    if _communicator is None:
        raise RuntimeError("Communicator not initialized. Call set_communicator() first.")
    return _communicator

async def send_command(command: str, params: Dict[str, Any] = None) -> Any:
    """
    Convenience function to send a command using the global communicator.

    Args:
        command: The command name
        params: Optional parameters

    Returns:
        The result from the plugin
    """
    communicator = get_communicator()
    return await communicator.send_command(command, params)

async def join_channel(channel: str) -> Any:
    """Join a relay channel using the global communicator."""
    communicator = get_communicator()
    return await communicator.join_channel(channel)
