"""Hand-off to an external hot-module-reload dev server.

For bundler-based projects the bundler's own dev server does the serving.
The adapter makes sure it is running (launching it if needed), and the
server then proxies HTTP and WebSocket traffic to it.
"""

import asyncio
import logging
import pathlib
import shutil
from dataclasses import dataclass
from typing import Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from .errors import HmrTimeoutError, StartupError

logger = logging.getLogger(__name__)

DEV_SERVER_HOST = "localhost"
READY_TIMEOUT = 15.0
POLL_INTERVAL = 0.5
PROBE_TIMEOUT = 1.0


@dataclass(frozen=True)
class DevToolProfile:
    name: str
    command: Tuple[str, ...]
    port: int

    def target_url(self, host: str = DEV_SERVER_HOST) -> str:
        return f"http://{host}:{self.port}"


PROFILES = {
    "vite": DevToolProfile("vite", ("npx", "vite"), 5173),
    "snowpack": DevToolProfile("snowpack", ("npx", "snowpack", "dev"), 8080),
    "webpack": DevToolProfile("webpack", ("npx", "webpack", "serve"), 8080),
}


async def port_is_open(host: str, port: int, timeout: float = PROBE_TIMEOUT) -> bool:
    """Try a short-lived TCP connection to host:port."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_for_port(
    host: str,
    port: int,
    timeout: float = READY_TIMEOUT,
    interval: float = POLL_INTERVAL,
    stop_event: Optional[asyncio.Event] = None,
) -> bool:
    """Poll until host:port accepts connections.

    Returns False once `timeout` seconds have passed. Raises StartupError if
    `stop_event` is set while waiting.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await port_is_open(host, port):
            return True
        if loop.time() >= deadline:
            return False
        if stop_event is None:
            await asyncio.sleep(interval)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), interval)
        except asyncio.TimeoutError:
            continue
        raise StartupError(f"Stopped while waiting for port {port}")


class HmrAdapter:
    """Ensures the profile's dev server is reachable and owns its process."""

    def __init__(
        self,
        profile: DevToolProfile,
        root: pathlib.Path,
        host: str = DEV_SERVER_HOST,
        timeout: float = READY_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.profile = profile
        self.root = pathlib.Path(root)
        self.host = host
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.process: Optional[asyncio.subprocess.Process] = None
        self.target_url: Optional[str] = None

    @property
    def socket_target_url(self) -> Optional[str]:
        if self.target_url is None:
            return None
        return "ws" + self.target_url[len("http") :]

    async def _spawn(self) -> None:
        command = list(self.profile.command)
        # npx is a .cmd shim on Windows
        command[0] = shutil.which(command[0]) or command[0]
        logger.info(f"Starting {self.profile.name} dev server: {' '.join(self.profile.command)}")
        try:
            self.process = await asyncio.create_subprocess_exec(*command, cwd=str(self.root))
        except OSError as e:
            raise StartupError(
                f"Could not launch {self.profile.name} dev server "
                f"({' '.join(self.profile.command)}): {e}"
            ) from e

    async def start(self, stop_event: Optional[asyncio.Event] = None) -> str:
        """Make sure the dev server is up and return its URL."""
        port = self.profile.port
        if await port_is_open(self.host, port):
            logger.info(f"{self.profile.name} dev server already running on port {port}")
        else:
            await self._spawn()
            try:
                ready = await wait_for_port(
                    self.host, port, self.timeout, self.poll_interval, stop_event
                )
            except BaseException:
                await self.stop()
                raise
            if not ready:
                logger.error(
                    f"{self.profile.name} dev server did not open port {port} "
                    f"within {self.timeout:g}s; terminating it"
                )
                await self.stop()
                raise HmrTimeoutError(self.profile.name, port, self.timeout)

        self.target_url = self.profile.target_url(self.host)
        logger.info(f"HMR proxy target: {self.target_url}")
        return self.target_url

    async def stop(self, grace: float = 5.0) -> None:
        """Terminate the spawned dev server, if this adapter started one."""
        process, self.process = self.process, None
        if process is None or process.returncode is not None:
            return
        logger.info(f"Stopping {self.profile.name} dev server (pid {process.pid})")
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), grace)
        except asyncio.TimeoutError:
            logger.warning(f"{self.profile.name} dev server ignored SIGTERM; killing it")
            process.kill()
            await process.wait()


async def _pump(source, sink) -> None:
    async for message in source:
        await sink.send(message)


async def relay_socket(connection, target_url: str) -> None:
    """Forward a socket-channel connection to the dev server's WebSocket endpoint."""
    path = connection.request.path
    subprotocols = [connection.subprotocol] if connection.subprotocol else None
    url = target_url.rstrip("/") + path
    try:
        async with websockets.connect(url, subprotocols=subprotocols) as upstream:
            tasks = [
                asyncio.create_task(_pump(connection, upstream)),
                asyncio.create_task(_pump(upstream, connection)),
            ]
            try:
                await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
    except (OSError, ConnectionClosed, InvalidHandshake) as e:
        logger.warning(f"WebSocket relay to {url} ended: {e}")
