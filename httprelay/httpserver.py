"""A static-file HTTP server driven by a selector and a worker pool."""

from __future__ import annotations

import argparse
import logging
import os
import re
import selectors
import socket
import sys
import threading
from collections import deque
from concurrent.futures import wait
from dataclasses import dataclass, field

from httprelay.buffer import Buffer
from httprelay.request import HTTPParseError, HTTPRequest
from httprelay.threadpool import ThreadPool

log = logging.getLogger(__name__)

NOT_FOUND_BODY = b"<h1>File Not Found</h1>"
READ_SIZE = 4096

_FORM_BODY = re.compile(rb"([a-zA-Z0-9_]+=[^&]*&?)+")
_STATUS_TEXT = {200: "OK", 404: "Not Found", 501: "Not Implemented"}
_MIME_TYPES = (
    (".html", "text/html"),
    (".css", "text/css"),
    (".js", "text/javascript"),
    (".json", "application/json"),
)
_INT_PREFIX = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")


def load_file(path: str) -> bytes:
    """Return the content of ``path``, or a small HTML notice if it cannot be read."""
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError:
        return NOT_FOUND_BODY


def is_valid_body(body: bytes, content_type: str) -> bool:
    """Loosely check that ``body`` fits ``content_type``."""
    if content_type == "application/json":
        return body.startswith(b"{") and body.endswith(b"}")
    if content_type == "application/x-www-form-urlencoded":
        return _FORM_BODY.fullmatch(body) is not None
    return False


def get_status_text(code: int) -> str:
    """Reason phrase for the status codes the server produces."""
    return _STATUS_TEXT.get(code, "Unknown")


def build_http_response(status_code: int, content_type: str, body: bytes) -> bytes:
    """Assemble a complete HTTP/1.1 response."""
    head = (
        f"HTTP/1.1 {status_code} {get_status_text(status_code)}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("latin-1") + body


def get_mime_type(path: str) -> str:
    """Content type by file extension, defaulting to ``text/html``."""
    for suffix, mime in _MIME_TYPES:
        if path.endswith(suffix):
            return mime
    return "text/html"


def minify_json(data: bytes) -> bytes:
    """Drop newlines, carriage returns and tabs."""
    return data.translate(None, b"\n\r\t")


@dataclass
class ConnCtx:
    """State of one client connection."""

    client_sock: socket.socket | None = None
    client_fd: int = -1
    upstream_fd: int = -1
    in_buf: Buffer = field(default_factory=Buffer)
    out_buf: Buffer = field(default_factory=Buffer)
    pipeline: deque = field(default_factory=deque)
    keep_alive: bool = True


class ConnectionManager:
    """Tracks client connections and answers their requests from ``root``.

    ``root`` holds the ``static`` and ``data`` directories.
    """

    def __init__(self, root: str = ".") -> None:
        self.root = root
        self._connections: dict[int, ConnCtx] = {}
        self._lock = threading.Lock()
        self._selector_lock = threading.Lock()

    def register_conn(self, fd: int, ctx: ConnCtx) -> None:
        """Remember ``ctx`` under descriptor ``fd``."""
        with self._lock:
            self._connections[fd] = ctx
        log.info("Registered client_fd %d", fd)

    def get_conn(self, fd: int) -> ConnCtx | None:
        """Context for ``fd``, or ``None``."""
        with self._lock:
            return self._connections.get(fd)

    def remove_conn(self, fd: int) -> None:
        """Forget the context for ``fd`` if there is one."""
        with self._lock:
            self._connections.pop(fd, None)

    def clear_all(self) -> None:
        """Forget every connection."""
        with self._lock:
            self._connections.clear()

    def accept_new_conn(self, listen_sock: socket.socket, selector: selectors.BaseSelector) -> None:
        """Accept every pending connection and watch it for reading."""
        while True:
            try:
                client, address = listen_sock.accept()
            except BlockingIOError:
                break
            except OSError as exc:
                log.error("accept: %s", exc)
                break
            client.setblocking(False)
            fd = client.fileno()
            log.info("accept new conn, client_fd = %d", fd)
            ctx = ConnCtx(client_sock=client, client_fd=fd)
            self.register_conn(fd, ctx)
            try:
                with self._selector_lock:
                    selector.register(client, selectors.EVENT_READ, fd)
            except (OSError, ValueError, KeyError) as exc:
                log.error("selector register (add client): %s", exc)
                client.close()
                self.remove_conn(fd)
                continue
            log.info("[STATE] New connection from ip: %s, port: %s, fd: %d",
                     address[0], address[1], fd)

    def handle_io_event(self, fd: int, events: int, selector: selectors.BaseSelector) -> None:
        """Serve read and write readiness on client descriptor ``fd``."""
        ctx = self.get_conn(fd)
        if ctx is None or ctx.client_sock is None:
            log.error("[ERROR] no context for fd %d", fd)
            return
        sock = ctx.client_sock

        if events & selectors.EVENT_READ:
            try:
                chunk = sock.recv(READ_SIZE)
            except BlockingIOError:
                chunk = None
            except OSError as exc:
                log.error("read: %s", exc)
                self._close(fd, sock, selector)
                return
            if chunk is not None:
                if not chunk:
                    self._close(fd, sock, selector)
                    return
                ctx.in_buf.append(chunk)
                self._parse_pending(ctx)
                while ctx.pipeline:
                    self.handle_request(ctx, ctx.pipeline.popleft())
                self._watch(selector, sock, fd, selectors.EVENT_READ | selectors.EVENT_WRITE)

        if events & selectors.EVENT_WRITE:
            while ctx.out_buf:
                try:
                    sent = sock.send(ctx.out_buf.peek())
                except BlockingIOError:
                    break
                except OSError as exc:
                    log.error("write: %s", exc)
                    self._close(fd, sock, selector)
                    return
                ctx.out_buf.consume(sent)
            if not ctx.out_buf:
                self._watch(selector, sock, fd, selectors.EVENT_READ)
                if not ctx.keep_alive:
                    self._close(fd, sock, selector)

    def handle_request(self, ctx: ConnCtx, req: HTTPRequest) -> None:
        """Build the response to ``req`` and queue it on ``ctx.out_buf``."""
        method = req.method
        path = req.path
        # Header names are stored lower-cased, so this mixed-case key never matches.
        content_type = req.headers.get("Content-Type", "")
        status_code = 200
        response_type = "application/json"

        if method not in ("GET", "POST"):
            body = load_file(self._path("static/501.html"))
            status_code = 501
            response_type = "text/html"
        elif method == "POST" and path == "/api/upload":
            if (content_type in ("application/json", "application/x-www-form-urlencoded")
                    and is_valid_body(req.body, content_type)):
                body = req.body
            else:
                body = load_file(self._path("data/error.json"))
                status_code = 404
        elif method == "GET":
            if path in ("/", "/index.html"):
                path = "/index.html"
            file_path = "static" + path
            body = load_file(self._path(file_path))
            if body == NOT_FOUND_BODY:
                body = load_file(self._path("static/404.html"))
                status_code = 404
                response_type = "text/html"
            else:
                response_type = get_mime_type(file_path)
                if response_type == "application/json":
                    body = minify_json(body)
        else:
            body = load_file(self._path("static/404.html"))
            status_code = 404
            response_type = "text/html"

        ctx.out_buf.append(build_http_response(status_code, response_type, body))

    def _path(self, relative: str) -> str:
        return os.path.join(self.root, relative)

    @staticmethod
    def _parse_pending(ctx: ConnCtx) -> None:
        while ctx.in_buf:
            req = HTTPRequest()
            try:
                consumed = req.parse(ctx.in_buf.peek())
            except HTTPParseError:
                break
            if consumed is None:
                break
            ctx.in_buf.consume(consumed)
            ctx.pipeline.append(req)

    def _watch(self, selector: selectors.BaseSelector, sock: socket.socket, fd: int, mask: int) -> None:
        with self._selector_lock:
            try:
                selector.modify(sock, mask, fd)
            except (KeyError, ValueError, OSError) as exc:
                log.error("selector modify on fd %d: %s", fd, exc)

    def _close(self, fd: int, sock: socket.socket, selector: selectors.BaseSelector) -> None:
        with self._selector_lock:
            try:
                selector.unregister(sock)
            except (KeyError, ValueError):
                pass
        sock.close()
        self.remove_conn(fd)


def _atoi(text: str) -> int:
    match = _INT_PREFIX.match(text)
    return int(match.group(1)) if match else 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Read ``--ip``, ``--port`` and ``--threads``; exit when any is missing or invalid."""
    parser = argparse.ArgumentParser(
        prog="http-server",
        usage="%(prog)s --ip <IP> --port <PORT> --threads <THREADS>",
    )
    parser.add_argument("-i", "--ip", default="")
    parser.add_argument("-p", "--port", default="0")
    parser.add_argument("-t", "--threads", default="0")
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(f"[ERROR] Usage: {parser.prog} --ip <IP> --port <PORT> --threads <THREADS>",
              file=sys.stderr)
    args.port = _atoi(args.port)
    args.threads = _atoi(args.threads)
    if not args.ip or args.port <= 0 or args.threads <= 0:
        print("[ERROR] Missing required parameters", file=sys.stderr)
        raise SystemExit(1)
    return args


def main(argv: list[str] | None = None) -> int:
    """Run the server until interrupted."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    args = parse_args(argv)

    listen_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listen_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        listen_sock.bind((args.ip, args.port))
        listen_sock.listen(socket.SOMAXCONN)
    except OSError as exc:
        log.error("bind/listen: %s", exc)
        listen_sock.close()
        return 1
    listen_sock.setblocking(False)

    selector = selectors.DefaultSelector()
    selector.register(listen_sock, selectors.EVENT_READ, listen_sock.fileno())
    manager = ConnectionManager(os.getcwd())
    pool = ThreadPool(args.threads)
    log.info("[INIT] HttpServer has started, ip: %s, port: %d, thread nums: %d",
             args.ip, args.port, args.threads)

    try:
        while True:
            ready = selector.select()
            log.debug("[STATE] select: got %d events", len(ready))
            futures = []
            for key, mask in ready:
                if key.fileobj is listen_sock:
                    futures.append(pool.commit(manager.accept_new_conn, listen_sock, selector))
                else:
                    futures.append(pool.commit(manager.handle_io_event, key.data, mask, selector))
            wait(futures)
    except KeyboardInterrupt:
        pass
    finally:
        pool.stop()
        selector.close()
        listen_sock.close()
        manager.clear_all()
    return 0