"""WSGI application serving the project directory."""

import logging
import pathlib
import re
import selectors
import socket
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from werkzeug.middleware.http_proxy import ProxyMiddleware
from werkzeug.security import safe_join
from werkzeug.serving import WSGIRequestHandler
from werkzeug.utils import send_file
from werkzeug.wrappers import Request, Response

from .config import ServerConfig
from .reload_script import inject_reload_script

logger = logging.getLogger(__name__)

ASSET_EXTENSIONS = {".css", ".js", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico"}
HTML_EXTENSIONS = {".html", ".htm"}
ASSET_CACHE_CONTROL = "public, max-age=31536000"
DEFAULT_CACHE_CONTROL = "no-cache"
INDEX_FILE = "index.html"
TUNNEL_BUFFER_SIZE = 65536

_META_CHARSET = re.compile(rb"<meta[^>]+charset=[\"']?([A-Za-z0-9_.:-]+)", re.IGNORECASE)

NOT_FOUND_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>404 - File Not Found</title>
    <style>
        body { font-family: Arial, sans-serif; text-align: center; padding: 50px; }
        .error { color: #e74c3c; font-size: 72px; margin-bottom: 20px; }
        .message { font-size: 18px; color: #7f8c8d; }
    </style>
</head>
<body>
    <div class="error">404</div>
    <div class="message">File not found</div>
    <p>livedev</p>
</body>
</html>"""


def decode_html(raw: bytes) -> Tuple[str, Optional[str]]:
    """Decode a page using its declared charset, UTF-8 when it declares none.

    Returns the text and the charset it was decoded with. A page that does
    not decode comes back as a latin-1 view of its bytes with a charset of
    None, so re-encoding it as latin-1 reproduces the original bytes.
    """
    match = _META_CHARSET.search(raw[:2048])
    charset = match.group(1).decode("ascii").lower() if match else "utf-8"
    try:
        return raw.decode(charset), charset
    except (UnicodeDecodeError, LookupError) as e:
        logger.debug(f"Page is not valid {charset} ({e}); passing bytes through")
        return raw.decode("latin-1"), None


class StaticRouter:
    """Resolves request paths against the project root.

    Resolution order: an existing file, then a directory's index.html, then
    (in SPA mode) the root index.html, then a 404 page. HTML is always sent
    through the reload script injector.
    """

    def __init__(
        self,
        root: pathlib.Path,
        spa_mode: bool = False,
        show_overlay: bool = True,
        socket_port: Optional[int] = None,
    ):
        self.root = pathlib.Path(root).resolve()
        self.spa_mode = spa_mode
        self.show_overlay = show_overlay
        self.socket_port = socket_port

    def resolve(self, path: str) -> Optional[pathlib.Path]:
        """Return the file that should answer `path`, or None for a 404."""
        joined = safe_join(str(self.root), path.lstrip("/"))
        if joined is None:
            logger.debug(f"Rejected path outside root: {path}")
            return None

        target = pathlib.Path(joined)
        if target.is_file():
            logger.debug(f"{path} -> file {target}")
            return target

        if target.is_dir():
            index = target / INDEX_FILE
            if index.is_file():
                logger.debug(f"{path} -> directory index {index}")
                return index
            logger.debug(f"{path} -> directory without {INDEX_FILE}")

        if self.spa_mode:
            index = self.root / INDEX_FILE
            if index.is_file():
                logger.debug(f"{path} -> SPA fallback {index}")
                return index
            logger.debug(f"{path} -> SPA fallback missing root {INDEX_FILE}")
            return None

        logger.debug(f"{path} -> not found")
        return None

    def serve_file(self, target: pathlib.Path, request: Request) -> Response:
        ext = target.suffix.lower()
        if ext in HTML_EXTENSIONS:
            html, charset = decode_html(target.read_bytes())
            body = inject_reload_script(html, self.show_overlay, self.socket_port)
            if charset is None:
                # latin-1 round trip leaves the page's own bytes untouched
                response = Response(body.encode("latin-1"), content_type="text/html")
            else:
                response = Response(
                    body.encode(charset, errors="xmlcharrefreplace"),
                    content_type=f"text/html; charset={charset}",
                )
        else:
            response = send_file(target, request.environ, conditional=True)

        if ext in ASSET_EXTENSIONS:
            response.headers["Cache-Control"] = ASSET_CACHE_CONTROL
        else:
            response.headers["Cache-Control"] = DEFAULT_CACHE_CONTROL
        return response

    def __call__(self, environ, start_response):
        request = Request(environ)

        if request.method not in ("GET", "HEAD"):
            response = Response("Method Not Allowed", status=405, mimetype="text/plain")
            response.headers["Allow"] = "GET, HEAD"
            return response(environ, start_response)

        target = self.resolve(request.path)
        if target is None:
            response = Response(NOT_FOUND_HTML, status=404, mimetype="text/html")
            return response(environ, start_response)

        try:
            response = self.serve_file(target, request)
        except OSError as e:
            logger.warning(f"Could not read {target}: {e}")
            response = Response(NOT_FOUND_HTML, status=404, mimetype="text/html")
        return response(environ, start_response)


class PrefixProxyMiddleware(ProxyMiddleware):
    """Forward requests under a path prefix to another origin.

    Unlike werkzeug's ProxyMiddleware, "/" is accepted as a catch-all and
    "/api" matches "/api" and "/api/..." but not "/apiary". The longest
    prefix wins. The Host header is rewritten to the target's.
    """

    def __init__(self, app, targets: Mapping[str, str], timeout: int = 30):
        super().__init__(app, {}, timeout=timeout)
        normalized = {}
        for prefix, target in targets.items():
            key = "/" + prefix.strip("/")
            normalized[key] = {
                "target": target,
                "remove_prefix": False,
                "host": "<auto>",
                "headers": {},
                "ssl_context": None,
            }
            logger.info(f"Proxying {key} -> {target}")
        self.targets = dict(
            sorted(normalized.items(), key=lambda item: len(item[0]), reverse=True)
        )

    def __call__(self, environ, start_response):
        path = environ.get("PATH_INFO", "") or "/"
        for prefix, opts in self.targets.items():
            if prefix == "/" or path == prefix or path.startswith(prefix + "/"):
                logger.debug(f"Proxy {path} -> {opts['target']}")
                return self.proxy_to(opts, path, prefix)(environ, start_response)
        return self.app(environ, start_response)


class CorsMiddleware:
    """Allows cross-origin requests from any origin and answers preflights."""

    def __init__(self, app):
        self.app = app

    def __call__(self, environ, start_response):
        if environ.get("REQUEST_METHOD") == "OPTIONS":
            request = Request(environ)
            response = Response(status=204)
            response.headers["Access-Control-Allow-Methods"] = (
                "GET, HEAD, PUT, PATCH, POST, DELETE"
            )
            requested = request.headers.get("Access-Control-Request-Headers")
            if requested:
                response.headers["Access-Control-Allow-Headers"] = requested
            response.headers["Access-Control-Allow-Origin"] = "*"
            return response(environ, start_response)

        def cors_start_response(status, headers, exc_info=None):
            headers = [
                (name, value)
                for name, value in headers
                if name.lower() != "access-control-allow-origin"
            ]
            headers.append(("Access-Control-Allow-Origin", "*"))
            return start_response(status, headers, exc_info)

        return self.app(environ, cors_start_response)


def splice(a: socket.socket, b: socket.socket) -> None:
    """Copy bytes both ways between two sockets until either side closes."""
    peers = {a: b, b: a}
    with selectors.DefaultSelector() as selector:
        selector.register(a, selectors.EVENT_READ)
        selector.register(b, selectors.EVENT_READ)
        while True:
            # TLS sockets can hold decrypted bytes the selector cannot see
            ready = [s for s in peers if hasattr(s, "pending") and s.pending()]
            if not ready:
                ready = [key.fileobj for key, _ in selector.select()]
            for source in ready:
                data = source.recv(TUNNEL_BUFFER_SIZE)
                if not data:
                    return
                peers[source].sendall(data)


class UpgradeForwardingHandler(WSGIRequestHandler):
    """werkzeug request handler that tunnels WebSocket upgrades elsewhere.

    When the server carries an `upgrade_target` URL, an `Upgrade: websocket`
    request is replayed to that origin and the two connections are spliced
    together until one side closes. The handshake itself is answered by the
    target. Every other request goes through the WSGI app as usual.
    """

    def run_wsgi(self) -> None:
        target = getattr(self.server, "upgrade_target", None)
        if target and self.headers.get("Upgrade", "").lower() == "websocket":
            self.forward_upgrade(target)
        else:
            super().run_wsgi()

    def forward_upgrade(self, target: str) -> None:
        parts = urlsplit(target)
        host, port = parts.hostname or "localhost", parts.port or 80
        self.close_connection = True
        try:
            upstream = socket.create_connection((host, port), timeout=5)
        except OSError as e:
            logger.warning(f"Could not reach {target} for WebSocket {self.path}: {e}")
            self.send_error(502, "Bad Gateway")
            return

        lines = [f"{self.command} {self.path} {self.request_version}"]
        for name, value in self.headers.items():
            if name.lower() == "host":
                value = f"{host}:{port}"
            lines.append(f"{name}: {value}")
        head = "\r\n".join(lines) + "\r\n\r\n"

        logger.debug(f"Tunneling WebSocket {self.path} -> {host}:{port}")
        with upstream:
            upstream.settimeout(None)
            try:
                upstream.sendall(head.encode("latin-1"))
                splice(self.connection, upstream)
            except OSError as e:
                logger.debug(f"WebSocket tunnel for {self.path} closed: {e}")


def create_app(
    config: ServerConfig,
    socket_port: Optional[int] = None,
    hmr_target: Optional[str] = None,
):
    """Assemble the WSGI stack: CORS, then proxy rules, then HMR or static files."""
    app = StaticRouter(
        config.root_path,
        spa_mode=config.spa_mode,
        show_overlay=config.show_overlay,
        socket_port=socket_port,
    )

    if hmr_target:
        app = PrefixProxyMiddleware(app, {"/": hmr_target})

    if config.proxy_rules:
        app = PrefixProxyMiddleware(app, config.proxy_rules)

    return CorsMiddleware(app)
