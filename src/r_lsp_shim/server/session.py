# File: r_lsp_shim/server/session.py

"""One supervised R language server process and its protocol client.

A `Session` is created for a single scope, started once and stopped once.
Stopping is terminal: the process and any listening socket are released and
the instance is never restarted. If the server process exits on its own the
session stops itself, revealing the output channel first when the exit was
abnormal.

Only exits the session did not ask for can reveal the channel. A requested
stop that has to fall back to SIGTERM or SIGKILL still writes the signal exit
line but never reveals the channel.
"""

import asyncio
import enum
import logging
from typing import Any, Dict, Optional

from r_lsp_shim.config.loader import LspSettings
from r_lsp_shim.server.binary import build_server_args, build_server_env, resolve_r_path
from r_lsp_shim.server.lsp_client import LspResponseError, RLspClient
from r_lsp_shim.server.output import OutputChannel
from r_lsp_shim.server.transport import SERVER_LABEL, ServerTransport, use_direct_pipe
from r_lsp_shim.workspace.host import TextDocument
from r_lsp_shim.workspace.scope import ScopeDescriptor
from r_lsp_shim.workspace.uri import DocumentUri

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    NEW = "new"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Session:
    """Owns the server process, channel and protocol client of one scope.

    Attributes:
        scope (ScopeDescriptor): Key, selector, working directory and folder.
        settings (LspSettings): Launch and timeout settings.
        output (OutputChannel): Receives stderr, exit notices and log messages.
        state (SessionState): Current lifecycle state.
        transport (Optional[ServerTransport]): Set once `start()` begins.
        client (Optional[RLspClient]): Set once the channel is live.
    """

    def __init__(
        self,
        scope: ScopeDescriptor,
        settings: LspSettings,
        output: OutputChannel,
    ):
        self.scope = scope
        self.settings = settings
        self.output = output
        self.state = SessionState.NEW
        self.transport: Optional[ServerTransport] = None
        self.client: Optional[RLspClient] = None
        self._stop_future: Optional[asyncio.Future] = None

    def __repr__(self) -> str:
        return f"Session(key={self.key!r}, state={self.state.value})"

    @property
    def key(self) -> str:
        return self.scope.key

    @property
    def cwd(self) -> str:
        return self.scope.cwd

    @property
    def pid(self) -> Optional[int]:
        if self.transport is None or self.transport.process is None:
            return None
        return self.transport.process.pid

    def needs_stop(self) -> bool:
        """True while the session is starting or running."""
        return self.state in (SessionState.STARTING, SessionState.RUNNING)

    def matches(self, document: TextDocument) -> bool:
        return self.scope.matches(document)

    async def start(self) -> None:
        """Spawns the server, connects to it and completes `initialize`.

        On any failure the session is stopped before the error propagates.

        Raises:
            RuntimeError: If the session was started before.
            ConnectionError: If the channel could not be established or the
                session was stopped while starting.
            asyncio.TimeoutError: If `connect_timeout` or
                `initialize_timeout` elapsed.
        """
        if self.state is not SessionState.NEW:
            raise RuntimeError(f"{self!r} can only be started once.")
        self.state = SessionState.STARTING
        logger.info(f"Start language server for scope {self.key} in {self.cwd}")

        try:
            executable = resolve_r_path(self.settings)
            if self.settings.debug:
                logger.info(f"R binary: {executable}")
            self.transport = ServerTransport(
                executable,
                lambda port: build_server_args(self.settings, port),
                self.cwd,
                build_server_env(self.settings),
                self.output,
                on_exit=self._on_process_exit,
                use_stdio=use_direct_pipe(self.settings.use_stdio),
                terminate_timeout=self.settings.shutdown_timeout,
            )
            if self.settings.connect_timeout is not None:
                channel = await asyncio.wait_for(
                    self.transport.connect(), timeout=self.settings.connect_timeout
                )
            else:
                channel = await self.transport.connect()
            if self.state is not SessionState.STARTING:
                raise ConnectionError(f"{SERVER_LABEL} for {self.key} stopped while starting.")

            self.client = RLspClient(
                channel.reader,
                channel.writer,
                self.output,
                timeout=self.settings.initialize_timeout,
            )
            self.client.start()
            folder = self.scope.workspace_folder
            await self.client.initialize(
                root_uri=str(DocumentUri.file(self.cwd)),
                workspace_folders=[folder.to_lsp()] if folder else None,
                timeout=self.settings.initialize_timeout,
            )
            await self.client.did_change_configuration(
                {"r": {"lsp": self.settings.as_section()}}
            )
        except Exception as e:
            logger.error(f"Failed to start {SERVER_LABEL} for {self.key}: {e}")
            await self.stop()
            raise

        if self.state is not SessionState.STARTING:
            raise ConnectionError(f"{SERVER_LABEL} for {self.key} stopped while starting.")
        self.state = SessionState.RUNNING
        logger.info(f"{SERVER_LABEL} for {self.key} running (pid {self.pid}).")

    async def _on_process_exit(self, returncode: int) -> None:
        if self._stop_future is not None:
            return
        logger.warning(f"{SERVER_LABEL} for {self.key} exited unexpectedly ({returncode}).")
        if returncode != 0:
            self.output.show()
        await self.stop()

    async def stop(self) -> None:
        """Shuts the server down and releases all resources.

        Idempotent; concurrent callers wait for the same shutdown.
        """
        if self._stop_future is not None:
            await asyncio.shield(self._stop_future)
            return
        self._stop_future = asyncio.get_running_loop().create_future()
        was_running = self.state is SessionState.RUNNING
        self.state = SessionState.STOPPING
        try:
            await self._shutdown(graceful=was_running)
        finally:
            self.state = SessionState.STOPPED
            self._stop_future.set_result(None)
            logger.info(f"{SERVER_LABEL} for {self.key} stopped.")

    async def _shutdown(self, graceful: bool) -> None:
        client = self.client
        process_alive = (
            self.transport is not None
            and self.transport.process is not None
            and self.transport.process.returncode is None
        )
        if client is not None:
            if graceful and process_alive:
                try:
                    await client.shutdown(timeout=self.settings.shutdown_timeout)
                    await client.exit()
                    await self.transport.wait_for_exit(self.settings.shutdown_timeout)
                except (ConnectionError, asyncio.TimeoutError, LspResponseError) as e:
                    logger.warning(f"Graceful shutdown of {self.key} failed ({e}), proceeding.")
            await client.close()
        if self.transport is not None:
            await self.transport.close()

    def _require_running(self) -> RLspClient:
        if self.state is not SessionState.RUNNING or self.client is None:
            raise ConnectionError(f"{self!r} is not running.")
        return self.client

    async def send_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Forwards a request to the server and returns its result."""
        return await self._require_running().send_request(method, params)

    async def send_notification(
        self, method: str, params: Optional[Dict[str, Any]] = None
    ) -> None:
        await self._require_running().send_notification(method, params)
