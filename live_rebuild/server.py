"""
Development HTTP server.

Purpose:
  Serve the project's static files, proxy API prefixes to a backend, and expose
  the live-reload event stream that injected bundles listen on.

Routes:
  GET  /esbuild              Server-Sent Events, one build stamp per connection
  *    <proxy prefixes>      Forwarded to the configured upstream
  GET  <static mount point>  Files from the static directory
"""

from __future__ import annotations

import logging
import queue
import sys
import threading
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit
from urllib.request import HTTPRedirectHandler, Request, build_opener

from live_rebuild.config import HttpConfig
from live_rebuild.notifier import STAMP_KEY, SubscriberNotifier, encode_stamp

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["LIVE_RELOAD_PATH", "StreamSubscriber", "DevServer", "build_dev_server"]

LIVE_RELOAD_PATH = "/esbuild"
KEEPALIVE_SECONDS = 15.0
RECONNECT_MS = 2000
PROXY_TIMEOUT_SECONDS = 60.0

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


class StreamSubscriber:
    """Notifier subscriber backed by an in-memory queue.

    ``send`` never blocks: the request thread that owns the connection drains
    the queue and writes to the socket.
    """

    __slots__ = ("_queue", "_closed")

    def __init__(self) -> None:
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self._closed = False

    def send(self, payload: Dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionError("live reload client disconnected")
        self._queue.put(payload)

    def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Return the next payload. Raises ``queue.Empty`` on timeout."""
        return self._queue.get(timeout=timeout)

    def close(self) -> None:
        self._closed = True


class QuietThreadingHTTPServer(ThreadingHTTPServer):
    """
    Quiet server: ignore noisy disconnect errors.

    Browsers reset connections on every reload, which would otherwise print a
    full traceback for each one.
    """

    daemon_threads = True

    def handle_error(self, request: object, client_address: object) -> None:
        exc = sys.exc_info()[1]
        if isinstance(exc, (BrokenPipeError, ConnectionResetError)):
            return
        return super().handle_error(request, client_address)  # type: ignore[arg-type]


class _NoRedirect(HTTPRedirectHandler):
    """Hand redirects back to the browser instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[no-untyped-def]
        return None


def build_dev_server(
    http: HttpConfig,
    notifier: SubscriberNotifier,
    keepalive_seconds: float = KEEPALIVE_SECONDS,
) -> QuietThreadingHTTPServer:
    """
    Build the dev HTTP server (static files, proxy, live reload).

    Assumption:
      Local development only. No auth, no TLS.
    """
    static = http.static
    proxy = http.proxy
    opener = build_opener(_NoRedirect)
    static_dir = str(static.dir) if static else None

    class DevHandler(SimpleHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, directory=static_dir, **kwargs)

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug("[http] " + format % args)

        def log_request(self, code: Any = "-", size: Any = "-") -> None:
            if isinstance(code, HTTPStatus):
                code = code.value
            logger.info(f"[http] {self.command} {self.path} {code}")

        def _send_text(self, body: str, status: int) -> None:
            data = body.encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(data)

        def _route_path(self) -> str:
            return urlsplit(self.path).path

        def _is_proxied(self, path: str) -> bool:
            return bool(proxy.target) and any(path.startswith(prefix) for prefix in proxy.prefixes)

        def _is_static(self, path: str) -> bool:
            return static is not None and path.startswith(static.mount_point)

        def translate_path(self, path: str) -> str:
            # Map <mount point>/x onto <static dir>/x
            request_path = urlsplit(path).path
            if static is not None and request_path.startswith(static.mount_point):
                request_path = "/" + request_path[len(static.mount_point):]
            return super().translate_path(request_path)

        def do_GET(self) -> None:  # noqa: N802
            path = self._route_path()
            if path == LIVE_RELOAD_PATH:
                self._serve_live_reload()
            elif self._is_proxied(path):
                self._proxy()
            elif self._is_static(path):
                super().do_GET()
            else:
                self._send_text("Not Found", 404)

        def do_HEAD(self) -> None:  # noqa: N802
            path = self._route_path()
            if self._is_proxied(path):
                self._proxy()
            elif self._is_static(path):
                super().do_HEAD()
            else:
                self._send_text("Not Found", 404)

        def _proxy_or_404(self) -> None:
            if self._is_proxied(self._route_path()):
                self._proxy()
            else:
                self._send_text("Not Found", 404)

        do_POST = _proxy_or_404
        do_PUT = _proxy_or_404
        do_PATCH = _proxy_or_404
        do_DELETE = _proxy_or_404
        do_OPTIONS = _proxy_or_404

        def _serve_live_reload(self) -> None:
            """Stream build stamps until one broadcast reached this client."""
            self.send_response(200)
            self.send_header("Content-Type", "text/event-stream")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("Connection", "close")
            self.end_headers()
            self.close_connection = True

            subscriber = StreamSubscriber()
            try:
                self.wfile.write(f"retry: {RECONNECT_MS}\n\n".encode("utf-8"))
                self.wfile.flush()
                notifier.register(subscriber)
                while True:
                    try:
                        payload = subscriber.get(timeout=keepalive_seconds)
                    except queue.Empty:
                        self.wfile.write(b": keep-alive\n\n")
                        self.wfile.flush()
                        continue
                    self._write_stamp(payload)
                    # Catch-up stamps keep the stream open; a broadcast ends it
                    if not notifier.is_registered(subscriber):
                        while True:
                            try:
                                self._write_stamp(subscriber.get(timeout=0))
                            except queue.Empty:
                                return
            except (BrokenPipeError, ConnectionResetError):
                return
            finally:
                subscriber.close()
                notifier.unregister(subscriber)

        def _write_stamp(self, payload: Dict[str, Any]) -> None:
            self.wfile.write(f"data: {encode_stamp(payload[STAMP_KEY])}\n\n".encode("utf-8"))
            self.wfile.flush()

        def _proxy(self) -> None:
            assert proxy.target is not None
            target_url = proxy.target.rstrip("/") + self.path
            try:
                length = int(self.headers.get("Content-Length", "0") or 0)
            except ValueError:
                length = 0
            body = self.rfile.read(length) if length > 0 else None

            headers = {
                k: v
                for k, v in self.headers.items()
                if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "host"
            }
            headers["Host"] = urlsplit(target_url).netloc

            request = Request(target_url, data=body, headers=headers, method=self.command)
            try:
                with opener.open(request, timeout=PROXY_TIMEOUT_SECONDS) as response:
                    status = response.status
                    response_headers: List[Tuple[str, str]] = list(response.headers.items())
                    data = response.read()
            except HTTPError as e:
                status = e.code
                response_headers = list(e.headers.items()) if e.headers else []
                data = e.read()
            except (URLError, OSError) as e:
                logger.warning(f"[proxy] {self.command} {target_url} failed: {e}")
                self._send_text(f"Bad Gateway: {e}", 502)
                return

            self.send_response(status)
            for key, value in response_headers:
                if key.lower() in HOP_BY_HOP_HEADERS or key.lower() in ("content-length", "server", "date"):
                    continue
                self.send_header(key, value)
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(data)

    return QuietThreadingHTTPServer((http.host, http.port), DevHandler)


class DevServer:
    """Run the dev HTTP server on a background thread.

    Example:
        >>> server = DevServer(config.http, notifier)
        >>> server.start()
        >>> server.url
        'http://127.0.0.1:8020/app/'
        >>> server.stop()
    """

    def __init__(self, http: HttpConfig, notifier: SubscriberNotifier, keepalive_seconds: float = KEEPALIVE_SECONDS) -> None:
        self.http = http
        self.notifier = notifier
        self.keepalive_seconds = keepalive_seconds
        self._server: Optional[QuietThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._server is None:
            return self.http.port
        return int(self._server.server_address[1])

    @property
    def url(self) -> str:
        mount_point = self.http.static.mount_point if self.http.static else "/"
        return f"http://{self.http.host}:{self.port}{mount_point}"

    def start(self) -> None:
        """Bind the socket and serve on a daemon thread.

        Raises:
            OSError: If the address cannot be bound.
        """
        self._server = build_dev_server(self.http, self.notifier, keepalive_seconds=self.keepalive_seconds)
        self._thread = threading.Thread(target=self._server.serve_forever, name="DevServer", daemon=True)
        self._thread.start()
        logger.info(f"[http] listening on {self.url}")

    def stop(self) -> None:
        if self._server is None:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except Exception as e:
            logger.error(f"Error stopping HTTP server: {e}")
        if self._thread:
            self._thread.join(timeout=5.0)
        self._server = None
        self._thread = None
        logger.info("[http] stopped")
