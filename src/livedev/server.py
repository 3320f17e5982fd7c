"""LiveServer: development server with live reload and collaboration."""

import asyncio
import logging
import socket
import threading
import webbrowser
from dataclasses import dataclass
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed
from werkzeug.serving import make_server

from .certs import CertificateProvisioner, build_ssl_context
from .collab import CollabRelay
from .config import ServerConfig
from .errors import BindError, StartupError
from .events import ERROR, FILE_CHANGED, STARTED, STOPPED, LifecycleEvents
from .hmr import PROFILES, HmrAdapter, relay_socket
from .protocol import ReloadMessage
from .registry import ConnectionRegistry
from .reload_script import RELOAD_SOCKET_PATH
from .router import UpgradeForwardingHandler, create_app
from .watcher import FileWatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerInfo:
    url: str
    port: int
    https: bool


class LiveServer:
    """Owns the HTTP(S) listener, the socket-channel listener, and the watcher.

    All socket-channel and watcher work runs on the asyncio loop that called
    `start()`; the WSGI server runs in a background thread and only reads
    files.
    """

    def __init__(
        self,
        config: ServerConfig,
        events: Optional[LifecycleEvents] = None,
        certificates: Optional[CertificateProvisioner] = None,
        hmr_adapter: Optional[HmrAdapter] = None,
    ):
        self.config = config
        self.events = events or LifecycleEvents()
        self.certificates = certificates or CertificateProvisioner()
        self.connections = ConnectionRegistry()
        self.collab = CollabRelay(self.connections, max_documents=config.max_documents)

        if hmr_adapter is None and config.hmr_enabled:
            hmr_adapter = HmrAdapter(PROFILES[config.project_type], config.root_path)
        self.hmr = hmr_adapter

        self.watcher = FileWatcher(
            config.root_path,
            self._handle_file_change,
            include=config.watch_patterns,
            ignore=config.watch_ignore_patterns,
        )

        self._http_server = None
        self._http_thread: Optional[threading.Thread] = None
        self._ws_server = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False

    # -- public surface --------------------------------------------------

    def is_running(self) -> bool:
        return self._running

    @property
    def http_port(self) -> Optional[int]:
        return self._http_server.port if self._http_server else None

    @property
    def socket_port(self) -> Optional[int]:
        if self._ws_server is None:
            return None
        return self._ws_server.sockets[0].getsockname()[1]

    def server_info(self) -> Optional[ServerInfo]:
        if not self._running:
            return None
        scheme = "https" if self.config.use_https else "http"
        return ServerInfo(
            url=f"{scheme}://localhost:{self.http_port}",
            port=self.http_port,
            https=self.config.use_https,
        )

    async def start(self) -> ServerInfo:
        """Bring up every listener. On failure nothing is left running."""
        if self._running:
            raise StartupError("Server is already running")

        config = self.config
        logger.info(f"Starting live server for {config.root_path}")
        logger.debug(
            f"port={config.port} https={config.use_https} spa={config.spa_mode} "
            f"overlay={config.show_overlay} project_type={config.project_type}"
        )
        self._stop_event = asyncio.Event()

        try:
            hmr_target = None
            if self.hmr is not None:
                hmr_target = await self.hmr.start(self._stop_event)

            ssl_context = None
            if config.use_https:
                logger.info("Acquiring HTTPS certificate...")
                pair = await self.certificates.acquire()
                ssl_context = build_ssl_context(pair)

            # Socket channel first so its port can be baked into injected pages
            await self._start_socket_listener(ssl_context)
            self._start_http_listener(ssl_context, hmr_target)
        except StartupError as e:
            await self._teardown()
            self.events.emit(ERROR, f"Failed to start server: {e}")
            raise
        except Exception as e:
            await self._teardown()
            self.events.emit(ERROR, f"Failed to start server: {e}")
            raise StartupError(f"Failed to start server: {e}") from e

        self._watch_task = asyncio.create_task(self.watcher.run(self._stop_event))
        self._running = True

        info = self.server_info()
        logger.info(f"Live server running at {info.url}")
        logger.info(f"Socket channel on port {self.socket_port}")
        self.events.emit(STARTED, info.port, info.https)
        return info

    async def stop(self) -> None:
        """Shut everything down. Each step runs even if an earlier one failed."""
        was_running = self._running
        self._running = False
        self._stop_event.set()
        await self._teardown()
        if was_running:
            logger.info("Live server stopped")
            self.events.emit(STOPPED)

    async def serve(self) -> None:
        """Start, optionally open the browser, and run until stop() is called."""
        info = await self.start()
        if self.config.open_browser:
            threading.Timer(1, lambda: webbrowser.open(info.url)).start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    # -- listeners -------------------------------------------------------

    async def _start_socket_listener(self, ssl_context) -> None:
        host, port = self.config.host, self.config.socket_port
        try:
            self._ws_server = await websockets.serve(
                self._socket_handler,
                host,
                port,
                ssl=ssl_context,
                select_subprotocol=self._select_subprotocol,
            )
        except OSError as e:
            raise BindError("socket channel", host, port, e.strerror or str(e)) from e

    def _start_http_listener(self, ssl_context, hmr_target: Optional[str]) -> None:
        host, port = self.config.host, self.config.port
        try:
            family = socket.AF_INET6 if ":" in host else socket.AF_INET
            sock = socket.create_server((host, port), family=family)
        except OSError as e:
            raise BindError("HTTP", host, port, e.strerror or str(e)) from e

        app = create_app(self.config, socket_port=self.socket_port, hmr_target=hmr_target)
        try:
            self._http_server = make_server(
                host,
                port,
                app,
                threaded=True,
                request_handler=UpgradeForwardingHandler,
                ssl_context=ssl_context,
                fd=sock.fileno(),
            )
        finally:
            # make_server duplicated the descriptor
            sock.close()

        # WebSocket upgrades on the page origin belong to the dev server
        self._http_server.upgrade_target = hmr_target

        self._http_thread = threading.Thread(
            target=self._http_server.serve_forever, name="livedev-http", daemon=True
        )
        self._http_thread.start()
        logger.debug(f"HTTP server thread started on {host}:{self._http_server.port}")

    def _select_subprotocol(self, connection, subprotocols):
        # Dev-server HMR clients insist on their subprotocol being echoed
        if self.hmr is not None and subprotocols:
            return subprotocols[0]
        return None

    async def _socket_handler(self, connection) -> None:
        path = connection.request.path
        if self.hmr is not None and self.hmr.socket_target_url and not path.startswith(
            RELOAD_SOCKET_PATH
        ):
            await relay_socket(connection, self.hmr.socket_target_url)
            return

        self.connections.add(connection)
        try:
            async for message in connection:
                await self.collab.handle_frame(connection, message)
        except ConnectionClosed:
            pass
        finally:
            self.connections.discard(connection)

    async def _handle_file_change(self, relative_path: str, extension: str) -> None:
        self.events.emit(FILE_CHANGED, relative_path)
        message = ReloadMessage(relative_path, extension).to_json()
        delivered = await self.connections.broadcast(message)
        logger.info(f"Reload sent to {delivered} of {len(self.connections)} clients")

    # -- teardown --------------------------------------------------------

    async def _teardown(self) -> None:
        if self._ws_server is not None:
            try:
                self._ws_server.close()
                await self._ws_server.wait_closed()
            except Exception:
                logger.exception("Error closing socket-channel listener")
            self._ws_server = None

        if self._watch_task is not None:
            try:
                self._stop_event.set()
                await asyncio.wait_for(self._watch_task, timeout=5)
            except Exception:
                logger.exception("Error stopping file watcher")
                self._watch_task.cancel()
            self._watch_task = None

        if self._http_server is not None:
            try:
                await asyncio.to_thread(self._http_server.shutdown)
                self._http_server.server_close()
            except Exception:
                logger.exception("Error closing HTTP listener")
            self._http_server = None
            self._http_thread = None

        if self.hmr is not None:
            try:
                await self.hmr.stop()
            except Exception:
                logger.exception("Error stopping HMR dev server")
