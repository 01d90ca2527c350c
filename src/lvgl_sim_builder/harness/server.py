"""Cache-defeating static server for extracted simulator builds."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import urlsplit

from lvgl_sim_builder.harness.instrumentation import (
    CONSOLE_RELAY_PATH,
    ConsoleMessage,
    ConsoleMessageError,
    inject_instrumentation,
    parse_console_message,
)
from lvgl_sim_builder.harness.ports import DEFAULT_START_PORT, find_available_port

logger = logging.getLogger(__name__)

ENTRY_POINT = "index.html"
MAX_CONSOLE_PAYLOAD_BYTES = 64 * 1024
NO_CACHE_HEADERS = (
    ("Cache-Control", "no-store, no-cache, must-revalidate, private"),
    ("Pragma", "no-cache"),
    ("Expires", "0"),
)

ConsoleListener = Callable[[ConsoleMessage], None]


@dataclass(slots=True)
class PortLease:
    """Bound port plus the live server that owns it."""

    port: int
    url: str
    server: ThreadingHTTPServer
    thread: threading.Thread


class _ArtifactRequestHandler(SimpleHTTPRequestHandler):
    extensions_map = {
        **SimpleHTTPRequestHandler.extensions_map,
        ".wasm": "application/wasm",
        ".data": "application/octet-stream",
        ".js": "text/javascript",
    }

    def __init__(self, *args, on_console: ConsoleListener | None = None, **kwargs) -> None:
        self._on_console = on_console
        super().__init__(*args, **kwargs)

    def end_headers(self) -> None:
        for name, value in NO_CACHE_HEADERS:
            self.send_header(name, value)
        super().end_headers()

    def do_GET(self) -> None:  # noqa: N802
        path = urlsplit(self.path).path
        if path in {"/", f"/{ENTRY_POINT}"}:
            self._send_entry_point()
            return
        super().do_GET()

    def do_HEAD(self) -> None:  # noqa: N802
        path = urlsplit(self.path).path
        if path in {"/", f"/{ENTRY_POINT}"}:
            self._send_entry_point(include_body=False)
            return
        super().do_HEAD()

    def do_POST(self) -> None:  # noqa: N802
        if urlsplit(self.path).path != CONSOLE_RELAY_PATH:
            self.send_error(HTTPStatus.NOT_FOUND)
            return
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0 or length > MAX_CONSOLE_PAYLOAD_BYTES:
            self.send_error(HTTPStatus.BAD_REQUEST, "Invalid console payload size")
            return
        try:
            message = parse_console_message(json.loads(self.rfile.read(length)))
        except (json.JSONDecodeError, UnicodeDecodeError, ConsoleMessageError) as error:
            self.send_error(HTTPStatus.BAD_REQUEST, str(error))
            return

        if self._on_console is not None:
            self._on_console(message)
        self.send_response(HTTPStatus.NO_CONTENT)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_entry_point(self, *, include_body: bool = True) -> None:
        entry = Path(self.directory) / ENTRY_POINT
        try:
            html = entry.read_text("utf-8")
        except OSError:
            self.send_error(HTTPStatus.NOT_FOUND, f"{ENTRY_POINT} not found")
            return

        body = inject_instrumentation(html).encode("utf-8")
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if include_body:
            self.wfile.write(body)


class TestHarness:
    """Serve one output directory at a time on a freshly allocated local port."""

    __test__ = False

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        start_port: int = DEFAULT_START_PORT,
        on_console: ConsoleListener | None = None,
    ) -> None:
        self.host = host
        self.start_port = start_port
        self.on_console = on_console
        self._lease: PortLease | None = None
        self._lock = threading.Lock()

    @property
    def lease(self) -> PortLease | None:
        return self._lease

    @property
    def is_running(self) -> bool:
        return self._lease is not None

    def start(self, output_dir: Path) -> PortLease:
        """Tear down any previous server, then serve ``output_dir``."""

        directory = output_dir.resolve()
        if not (directory / ENTRY_POINT).is_file():
            raise FileNotFoundError(f"{ENTRY_POINT} not found in {directory}")

        with self._lock:
            self._stop_locked()
            port = find_available_port(self.start_port, host=self.host)
            handler = partial(
                _ArtifactRequestHandler,
                directory=str(directory),
                on_console=self._dispatch_console,
            )
            server = ThreadingHTTPServer((self.host, port), handler)
            server.daemon_threads = True
            thread = threading.Thread(
                target=server.serve_forever,
                name=f"test-harness-{port}",
                daemon=True,
            )
            thread.start()
            lease = PortLease(
                port=port,
                url=f"http://{self.host}:{port}",
                server=server,
                thread=thread,
            )
            self._lease = lease
        logger.info("Test server started at %s serving %s", lease.url, directory)
        return lease

    def stop(self) -> bool:
        with self._lock:
            return self._stop_locked()

    def __enter__(self) -> TestHarness:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _stop_locked(self) -> bool:
        lease = self._lease
        if lease is None:
            return False
        self._lease = None
        lease.server.shutdown()
        lease.server.server_close()
        lease.thread.join(timeout=5)
        logger.info("Test server on port %d stopped", lease.port)
        return True

    def _dispatch_console(self, message: ConsoleMessage) -> None:
        if self.on_console is not None:
            self.on_console(message)


def cache_busting_url(url: str, *, now: float | None = None) -> str:
    """Append a millisecond timestamp so the page is fetched fresh."""

    stamp = int((time.time() if now is None else now) * 1000)
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}t={stamp}"
