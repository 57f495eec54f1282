# File: r_lsp_shim/server/lsp_client.py

"""Asynchronous JSON-RPC client speaking LSP over a server channel.

This module defines `RLspClient`, which frames messages with `Content-Length`
headers over an asyncio stream pair, correlates responses with pending
requests, forwards the server's log messages to the output channel and
queues other notifications for consumers.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

from r_lsp_shim.server.output import OutputChannel

logger = logging.getLogger(__name__)

CONTENT_LENGTH_HEADER = b"Content-Length: "
HEADER_SEPARATOR = b"\r\n\r\n"
DEFAULT_LSP_TIMEOUT = 30.0
METHOD_NOT_FOUND = -32601
MAX_HEADER_BYTES = 4096

# Message types of window/logMessage and window/showMessage.
_MESSAGE_TYPE_NAMES = {1: "Error", 2: "Warning", 3: "Info", 4: "Log"}


class LspResponseError(Exception):
    """Raised for JSON-RPC error responses.

    Attributes:
        code (Any): The error code from the response. Defaults to "Unknown".
        message (str): The error message. Defaults to "Unknown error".
        data (Any): Optional additional data provided with the error.
    """

    def __init__(self, error_payload: Dict[str, Any]):
        self.code = error_payload.get("code", "Unknown")
        self.message = error_payload.get("message", "Unknown error")
        self.data = error_payload.get("data")
        super().__init__(f"LSP Error Code {self.code}: {self.message}")


class RLspClient:
    """Manages LSP communication with one R language server over a channel.

    Attributes:
        reader (asyncio.StreamReader): Bytes from the server.
        writer (asyncio.StreamWriter): Bytes to the server.
        output (OutputChannel): Receives server log messages.
        timeout (float): Default timeout in seconds for requests.
        notifications (asyncio.Queue): Server notifications other than log
            messages, in arrival order.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        output: OutputChannel,
        timeout: float = DEFAULT_LSP_TIMEOUT,
    ):
        self.reader = reader
        self.writer = writer
        self.output = output
        self.timeout = timeout
        self.notifications: asyncio.Queue = asyncio.Queue()
        self.server_capabilities: Dict[str, Any] = {}
        self._message_id_counter = 1
        self._pending_requests: Dict[int, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Starts the background task dispatching incoming messages."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(
                self._message_reader_loop(), name="r_lsp_message_reader"
            )

    async def _read_message(self) -> Optional[Dict[str, Any]]:
        """Reads one framed message. Returns None at EOF or on a bad frame.

        Raises:
            ConnectionError: If the stream ends in the middle of a message.
        """
        if self.reader.at_eof():
            return None
        try:
            header_bytes = bytearray()
            while not header_bytes.endswith(HEADER_SEPARATOR):
                line = await self.reader.readline()
                if not line:
                    if header_bytes:
                        raise asyncio.IncompleteReadError(bytes(header_bytes), None)
                    return None
                header_bytes.extend(line)
                if header_bytes.endswith(b"\n\n"):
                    logger.warning("LSP message used non-standard \\n\\n separator.")
                    break
                if len(header_bytes) > MAX_HEADER_BYTES:
                    logger.error("Excessively long LSP header received.")
                    return None

            content_length = -1
            for h_line in header_bytes.decode("ascii", errors="replace").splitlines():
                if h_line.lower().startswith("content-length:"):
                    try:
                        content_length = int(h_line.split(":", 1)[1].strip())
                    except ValueError:
                        logger.error(f"Invalid Content-Length value: {h_line}")
                        return None
            if content_length < 0:
                logger.error(
                    f"Content-Length header not found in: {bytes(header_bytes)!r}"
                )
                return None

            body = await self.reader.readexactly(content_length)
        except asyncio.IncompleteReadError as e:
            raise ConnectionError("LSP connection closed unexpectedly.") from e

        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Failed to decode JSON from server: {e}")
            return {}

    async def _message_reader_loop(self) -> None:
        logger.debug("Starting LSP message reader loop.")
        try:
            while not self._closed:
                try:
                    message = await self._read_message()
                    if message is None:
                        logger.info("LSP channel reached EOF.")
                        break
                    if message:
                        await self._dispatch(message)
                except ConnectionError as e:
                    if not self._closed:
                        logger.warning(f"Connection error in reader loop: {e}")
                    break
        except asyncio.CancelledError:
            logger.debug("LSP message reader loop cancelled.")
        finally:
            self._fail_pending("LSP reader loop exited")

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        msg_id = message.get("id")
        method = message.get("method")

        if msg_id is not None and method is None:
            future = self._pending_requests.pop(msg_id, None)
            if future is None:
                logger.warning(f"Received response for ID {msg_id}, but it was not pending.")
            elif not future.done():
                if "error" in message:
                    future.set_exception(LspResponseError(message["error"]))
                else:
                    future.set_result(message.get("result"))
        elif method is not None and msg_id is None:
            if method in ("window/logMessage", "window/showMessage"):
                params = message.get("params") or {}
                kind = _MESSAGE_TYPE_NAMES.get(params.get("type"), "Log")
                self.output.append_line(f"[{kind}] {params.get('message', '')}")
            else:
                await self.notifications.put(message)
        elif method is not None and msg_id is not None:
            logger.debug(f"Declining server request {method} (ID {msg_id}).")
            await self._write_message(
                {
                    "jsonrpc": "2.0",
                    "id": msg_id,
                    "error": {
                        "code": METHOD_NOT_FOUND,
                        "message": f"Unhandled method {method}",
                    },
                }
            )
        else:
            logger.warning(f"Received message with unknown structure: {message}")

    def _fail_pending(self, reason: str) -> None:
        for req_id, future in list(self._pending_requests.items()):
            if not future.done():
                future.set_exception(ConnectionError(f"{reason} (request {req_id})"))
            self._pending_requests.pop(req_id, None)

    async def _write_message(self, message: Dict[str, Any]) -> None:
        """Frames and writes one message.

        Raises:
            ConnectionError: If the writer is closing or the write fails.
        """
        if self.writer.is_closing():
            raise ConnectionError("LSP writer is not available or closing.")
        body = json.dumps(message).encode("utf-8")
        try:
            self.writer.write(
                CONTENT_LENGTH_HEADER + str(len(body)).encode("ascii") + HEADER_SEPARATOR
            )
            self.writer.write(body)
            await self.writer.drain()
        except (ConnectionResetError, BrokenPipeError) as e:
            raise ConnectionError(f"Connection error writing LSP message: {e}") from e

    async def send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Sends a request and waits for its result.

        Raises:
            ConnectionError: If the client is closed or the channel fails.
            asyncio.TimeoutError: If no response arrives within the timeout.
            LspResponseError: If the server answers with an error.
        """
        if self._closed:
            raise ConnectionError("Client is closed.")
        request_id = self._message_id_counter
        self._message_id_counter += 1
        future = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future
        try:
            logger.debug(f"Sending request {request_id}: {method}")
            await self._write_message(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "method": method,
                    "params": params if params is not None else {},
                }
            )
            return await asyncio.wait_for(
                future, timeout=self.timeout if timeout is None else timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Timeout waiting for response to request {request_id} ({method}).")
            raise
        finally:
            self._pending_requests.pop(request_id, None)

    async def send_notification(
        self, method: str, params: Optional[Dict[str, Any]] = None
    ) -> None:
        if self._closed:
            raise ConnectionError("Client is closed.")
        logger.debug(f"Sending notification: {method}")
        await self._write_message(
            {"jsonrpc": "2.0", "method": method, "params": params if params is not None else {}}
        )

    async def initialize(
        self,
        root_uri: Optional[str],
        workspace_folders: Optional[List[Dict[str, str]]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Performs the `initialize` handshake and records server capabilities."""
        result = await self.send_request(
            "initialize",
            {
                "processId": os.getpid(),
                "clientInfo": {"name": "r-lsp-shim"},
                "rootUri": root_uri,
                "workspaceFolders": workspace_folders,
                "capabilities": {},
            },
            timeout=timeout,
        )
        self.server_capabilities = (result or {}).get("capabilities", {})
        await self.send_notification("initialized", {})
        return result or {}

    async def did_change_configuration(self, settings: Dict[str, Any]) -> None:
        await self.send_notification(
            "workspace/didChangeConfiguration", {"settings": settings}
        )

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        await self.send_request("shutdown", None, timeout=timeout)

    async def exit(self) -> None:
        await self.send_notification("exit")

    async def close(self) -> None:
        """Stops the reader loop and fails outstanding requests. Idempotent."""
        if self._closed:
            return
        self._closed = True
        task = self._reader_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._fail_pending("LSP client closed")
