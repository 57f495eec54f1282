# File: r_lsp_shim/server/transport.py

"""Spawns the R language server and connects a duplex byte channel to it.

Two strategies are supported:

- Direct pipe: the server speaks LSP on its own stdin/stdout. Only used when
  configured and the platform is not Windows, where blocking stdio makes the
  R server unreliable.
- Loopback socket (default): a listener is bound to 127.0.0.1 on an OS chosen
  port, the server is started with that port in its startup expression, and
  the single connection it makes back becomes the channel. The listener is
  closed as soon as that connection is accepted.

In both cases stderr is forwarded line by line to the output channel and the
process exit is reported there once, then handed to an `on_exit` callback.

If the server never connects back (spawn failure, or exit before connecting)
the loopback `connect()` never returns. Callers wanting unattended operation
wrap it in `asyncio.wait_for`.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from r_lsp_shim.server.output import OutputChannel

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
DEFAULT_TERMINATE_TIMEOUT = 5.0
SERVER_LABEL = "R Language Server"
STDERR_CHUNK_SIZE = 64 * 1024
STDERR_MAX_LINE = 1024 * 1024

ArgsForPort = Callable[[Optional[int]], List[str]]
ExitCallback = Callable[[int], Union[Awaitable[None], None]]


def use_direct_pipe(use_stdio: bool, platform: str = sys.platform) -> bool:
    """Returns True when the stdin/stdout transport should be used."""
    return bool(use_stdio) and platform != "win32"


def describe_exit(pid: Optional[int], returncode: int) -> str:
    """Formats the one-line exit summary written to the output channel."""
    if returncode < 0:
        try:
            signame = signal.Signals(-returncode).name
        except ValueError:
            signame = str(-returncode)
        return f"{SERVER_LABEL} ({pid}) exited from signal {signame}"
    return f"{SERVER_LABEL} ({pid}) exited with exit code {returncode}"


@dataclass
class Channel:
    """A live duplex connection to a running server process.

    Attributes:
        reader: Stream carrying bytes from the server.
        writer: Stream carrying bytes to the server.
        process: The server subprocess.
        transport: The transport that owns the process and any listener.
    """

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    process: asyncio.subprocess.Process
    transport: "ServerTransport"

    @property
    def pid(self) -> int:
        return self.process.pid

    async def close(self) -> None:
        await self.transport.close()


class ServerTransport:
    """Owns one server process and the channel connected to it.

    A transport is single use: `connect()` is called once and `close()`
    releases the listener, the streams and the process on every path.

    Attributes:
        executable (str): The R binary.
        cwd (str): Working directory of the server process.
        env (Dict[str, str]): Environment of the server process.
        use_stdio (bool): Whether the direct-pipe strategy is used.
        process (Optional[asyncio.subprocess.Process]): Set once spawned.
        port (Optional[int]): Listening port of the loopback strategy.
    """

    def __init__(
        self,
        executable: str,
        args_for_port: ArgsForPort,
        cwd: str,
        env: Dict[str, str],
        output: OutputChannel,
        on_exit: Optional[ExitCallback] = None,
        use_stdio: bool = False,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
    ):
        self.executable = executable
        self.args_for_port = args_for_port
        self.cwd = cwd
        self.env = env
        self.output = output
        self.on_exit = on_exit
        self.use_stdio = use_stdio
        self.terminate_timeout = terminate_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self.port: Optional[int] = None
        self._listener: Optional[asyncio.AbstractServer] = None
        self._connected: Optional[asyncio.Future] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def listening(self) -> bool:
        return self._listener is not None and self._listener.is_serving()

    async def connect(self) -> Channel:
        """Spawns the server and returns once the channel to it is live.

        Raises:
            ConnectionError: If the transport was already closed, or the
                direct-pipe process could not be started.
        """
        if self._closed:
            raise ConnectionError("Transport is closed.")
        if self._connected is not None:
            raise ConnectionError("Transport already connected or connecting.")
        if self.use_stdio:
            return await self._connect_stdio()
        return await self._connect_loopback()

    async def _spawn(self, args: List[str], **pipes: Any) -> asyncio.subprocess.Process:
        logger.info(f"Starting {SERVER_LABEL}: {self.executable} {args} in {self.cwd}")
        process = await asyncio.create_subprocess_exec(
            self.executable,
            *args,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=self.env,
            **pipes,
        )
        self.process = process
        self.output.append_line(f"{SERVER_LABEL} ({process.pid}) started")
        self._stderr_task = asyncio.create_task(
            self._forward_stderr(process), name=f"r_lsp_stderr_{process.pid}"
        )
        self._exit_task = asyncio.create_task(
            self._watch_exit(process), name=f"r_lsp_exit_{process.pid}"
        )
        return process

    async def _connect_stdio(self) -> Channel:
        self._connected = asyncio.get_running_loop().create_future()
        try:
            process = await self._spawn(
                self.args_for_port(None),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.output.append_line(f"{SERVER_LABEL} failed to start: {e}")
            self.output.show()
            raise ConnectionError(f"Failed to start {SERVER_LABEL}: {e}") from e
        if not process.stdout or not process.stdin:
            raise ConnectionError("Failed to get stdout/stdin streams from subprocess.")
        self._writer = process.stdin
        self._connected.set_result((process.stdout, process.stdin))
        return Channel(process.stdout, process.stdin, process, self)

    async def _connect_loopback(self) -> Channel:
        self._connected = asyncio.get_running_loop().create_future()
        self._listener = await asyncio.start_server(
            self._on_client_connected, host=LOOPBACK_HOST, port=0
        )
        self.port = self._listener.sockets[0].getsockname()[1]
        logger.debug(f"Listening for {SERVER_LABEL} on {LOOPBACK_HOST}:{self.port}")
        try:
            await self._spawn(
                self.args_for_port(self.port),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            # Nothing will ever connect; the wait below is left pending.
            logger.error(f"Failed to spawn {self.executable}: {e}")
            self.output.append_line(f"{SERVER_LABEL} failed to start: {e}")
            self.output.show()

        reader, writer = await self._connected
        return Channel(reader, writer, self.process, self)

    def _on_client_connected(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self._connected is None or self._connected.done() or self._closed:
            logger.warning("Rejecting extra connection to the language server listener.")
            writer.close()
            return
        logger.info(f"{SERVER_LABEL} connected on port {self.port}")
        self._writer = writer
        self._connected.set_result((reader, writer))
        if self._listener is not None:
            self._listener.close()

    def _append_stderr(self, line: bytes) -> None:
        self.output.append_line(line.decode("utf-8", errors="replace").rstrip("\r"))

    async def _forward_stderr(self, process: asyncio.subprocess.Process) -> None:
        """Relays stderr to the output channel one line at a time.

        Reads fixed-size chunks, so lines of any length keep the pipe
        draining. A line longer than `STDERR_MAX_LINE` is emitted in pieces.
        """
        if not process.stderr:
            return
        pending = b""
        try:
            while True:
                chunk = await process.stderr.read(STDERR_CHUNK_SIZE)
                if not chunk:
                    break
                pending += chunk
                *lines, pending = pending.split(b"\n")
                for line in lines:
                    self._append_stderr(line)
                while len(pending) >= STDERR_MAX_LINE:
                    self._append_stderr(pending[:STDERR_MAX_LINE])
                    pending = pending[STDERR_MAX_LINE:]
            if pending:
                self._append_stderr(pending)
        except asyncio.CancelledError:
            logger.debug("Stderr forwarder cancelled.")
            raise
        except Exception as e:
            logger.exception(f"Error reading {SERVER_LABEL} stderr: {e}")

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        # Let buffered stderr land before the exit line.
        if self._stderr_task is not None and not self._stderr_task.done():
            await asyncio.wait([self._stderr_task], timeout=1.0)
        self.output.append_line(describe_exit(process.pid, returncode))
        if self.on_exit is None:
            return
        try:
            result = self.on_exit(returncode)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.exception(f"Exit handler for {SERVER_LABEL} ({process.pid}) failed: {e}")

    async def wait_for_exit(self, timeout: float) -> Optional[int]:
        """Waits up to `timeout` seconds for the process to exit by itself."""
        if self.process is None:
            return None
        try:
            return await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"{SERVER_LABEL} process {self.process.pid} still running.")
            return None

    async def close(self) -> None:
        """Closes the listener and streams and terminates the process.

        Idempotent. The process gets `terminate_timeout` seconds to exit after
        SIGTERM before it is killed.
        """
        if self._closed:
            return
        self._closed = True

        if self._listener is not None:
            self._listener.close()
            self._listener = None

        if self._writer is not None and not self._writer.is_closing():
            try:
                self._writer.close()
            except (OSError, RuntimeError) as e:
                logger.warning(f"Error closing server channel: {e}")
        self._writer = None

        proc = self.process
        if proc is not None and proc.returncode is None:
            logger.info(f"Terminating {SERVER_LABEL} process {proc.pid}...")
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=self.terminate_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"{SERVER_LABEL} process {proc.pid} did not terminate after "
                    f"{self.terminate_timeout}s, killing."
                )
                try:
                    proc.kill()
                    await proc.wait()
                except ProcessLookupError:
                    logger.debug("Process already finished before kill.")
            except ProcessLookupError:
                logger.debug("Process already finished before terminate.")

        current = asyncio.current_task()
        pending = [
            task
            for task in (self._exit_task, self._stderr_task)
            if task is not None and task is not current and not task.done()
        ]
        if pending:
            # The exit watcher reports the exit line and the callback.
            _, still_running = await asyncio.wait(pending, timeout=self.terminate_timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)


async def spawn_server(
    executable: str,
    args_for_port: ArgsForPort,
    cwd: str,
    env: Dict[str, str],
    output: OutputChannel,
    on_exit: Optional[ExitCallback] = None,
    use_stdio: bool = False,
) -> Channel:
    """Starts a server process and returns the live channel to it.

    `args_for_port` receives the loopback port, or None for the direct-pipe
    strategy, and returns the server's argument list.
    """
    transport = ServerTransport(
        executable,
        args_for_port,
        cwd,
        env,
        output,
        on_exit=on_exit,
        use_stdio=use_direct_pipe(use_stdio),
    )
    return await transport.connect()
