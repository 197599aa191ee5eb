"""A forwarding HTTP proxy driven by a selector and a worker pool."""

from __future__ import annotations

import argparse
import errno
import logging
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
from httprelay.upstream import UpstreamManager, parse_url

log = logging.getLogger(__name__)

READ_SIZE = 4096
DEFAULT_UPSTREAM_HOST = "127.0.0.1"
DEFAULT_UPSTREAM_PORT = 8888

_INT_PREFIX = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")
_IN_PROGRESS = {errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN}
_USAGE = "--ip <IP> --port <PORT> --threads <N> [--proxy <URL>]"


@dataclass
class ProxyConnCtx:
    """State shared by a client connection and its upstream connection."""

    client_sock: socket.socket | None = None
    client_fd: int = -1
    upstream_sock: socket.socket | None = None
    upstream_fd: int = -1
    in_buf: Buffer = field(default_factory=Buffer)
    out_buf: Buffer = field(default_factory=Buffer)
    upstream_in_buf: Buffer = field(default_factory=Buffer)
    upstream_out_buf: Buffer = field(default_factory=Buffer)
    pipeline: deque = field(default_factory=deque)
    keep_alive: bool = True


class ProxyConnectionManager:
    """Relays requests from clients to one upstream server and the replies back."""

    def __init__(self, upstream_host: str = DEFAULT_UPSTREAM_HOST,
                 upstream_port: int = DEFAULT_UPSTREAM_PORT) -> None:
        self.upstream_host = upstream_host
        self.upstream_port = upstream_port
        self._connections: dict[int, ProxyConnCtx] = {}
        self._lock = threading.Lock()
        self._selector_lock = threading.Lock()

    def register_conn(self, fd: int, ctx: ProxyConnCtx) -> None:
        """Remember ``ctx`` under descriptor ``fd``."""
        with self._lock:
            self._connections[fd] = ctx
        log.info("Registered fd %d", fd)

    def get_conn(self, fd: int) -> ProxyConnCtx | None:
        """Context for ``fd``, or ``None``."""
        with self._lock:
            return self._connections.get(fd)

    def remove_conn(self, fd: int) -> None:
        """Forget the context registered under ``fd`` if there is one."""
        with self._lock:
            self._connections.pop(fd, None)

    def clear_all(self) -> None:
        """Forget every connection."""
        with self._lock:
            self._connections.clear()

    def accept_new_conn(self, listen_sock: socket.socket, selector: selectors.BaseSelector) -> None:
        """Accept every pending client and watch it for reading."""
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
            ctx = ProxyConnCtx(client_sock=client, client_fd=fd)
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
        """Serve readiness on ``fd``, which is either a client or an upstream socket."""
        ctx = self.get_conn(fd)
        if ctx is None:
            log.error("[ERROR] no context for fd %d", fd)
            return
        is_client = fd == ctx.client_fd
        is_upstream = fd == ctx.upstream_fd
        if not is_client and not is_upstream:
            log.error("[ERROR] cant distinguish is_client or is_upstream for fd %d", fd)
            return
        sock = ctx.client_sock if is_client else ctx.upstream_sock
        if sock is None:
            log.error("[ERROR] no socket for fd %d", fd)
            return

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
                if is_client:
                    if not self._forward_requests(ctx, chunk, selector):
                        return
                else:
                    ctx.upstream_in_buf.append(chunk)
                    ctx.out_buf.append(ctx.upstream_in_buf.read_all())
                    if ctx.client_sock is not None:
                        self._watch(selector, ctx.client_sock, ctx.client_fd,
                                    selectors.EVENT_READ | selectors.EVENT_WRITE)

        if events & selectors.EVENT_WRITE:
            buf = ctx.out_buf if is_client else ctx.upstream_out_buf
            while buf:
                try:
                    sent = sock.send(buf.peek())
                except BlockingIOError:
                    break
                except OSError as exc:
                    log.error("write: %s", exc)
                    self._close(fd, sock, selector)
                    return
                buf.consume(sent)
            if not buf:
                self._watch(selector, sock, fd, selectors.EVENT_READ)

    def connect_to_upstream(self, ip: str, port: int) -> socket.socket:
        """Start a non-blocking IPv4 connection to ``ip:port``.

        The connection may still be in progress when the socket is
        returned. Raises :class:`OSError` on failure.
        """
        socket.inet_pton(socket.AF_INET, ip)
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setblocking(False)
        code = sock.connect_ex((ip, port))
        if code != 0 and code not in _IN_PROGRESS:
            sock.close()
            raise OSError(code, f"connect to {ip}:{port} failed")
        return sock

    def _forward_requests(self, ctx: ProxyConnCtx, chunk: bytes,
                          selector: selectors.BaseSelector) -> bool:
        ctx.in_buf.append(chunk)
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

            if ctx.upstream_fd == -1:
                try:
                    upstream = self.connect_to_upstream(self.upstream_host, self.upstream_port)
                except OSError as exc:
                    log.error("[ERROR] connect upstream failed: %s", exc)
                    if ctx.client_sock is not None:
                        self._close(ctx.client_fd, ctx.client_sock, selector)
                    return False
                ctx.upstream_sock = upstream
                ctx.upstream_fd = upstream.fileno()
                self.register_conn(ctx.upstream_fd, ctx)
                try:
                    with self._selector_lock:
                        selector.register(upstream,
                                          selectors.EVENT_READ | selectors.EVENT_WRITE,
                                          ctx.upstream_fd)
                except (OSError, ValueError, KeyError) as exc:
                    log.error("selector register (add upstream): %s", exc)

            ctx.upstream_out_buf.append(req.raw())

        if ctx.upstream_sock is not None:
            self._watch(selector, ctx.upstream_sock, ctx.upstream_fd,
                        selectors.EVENT_READ | selectors.EVENT_WRITE)
        return True

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
    """Read ``--ip``, ``--port``, ``--threads`` and ``--proxy``; exit on bad input."""
    parser = argparse.ArgumentParser(prog="proxy-server", usage=f"%(prog)s {_USAGE}")
    parser.add_argument("-i", "--ip", default="")
    parser.add_argument("-p", "--port", default="0")
    parser.add_argument("-t", "--threads", default="0")
    parser.add_argument("--proxy", default="")
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(f"[ERROR] Usage: {parser.prog} {_USAGE}", file=sys.stderr)
        raise SystemExit(1)
    args.port = _atoi(args.port)
    args.threads = _atoi(args.threads)
    if not args.ip or args.port <= 0 or args.threads <= 0:
        print("[ERROR] Missing required parameters", file=sys.stderr)
        raise SystemExit(1)
    return args


def main(argv: list[str] | None = None) -> int:
    """Run the proxy until interrupted."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    args = parse_args(argv)

    upstream_host, upstream_port = DEFAULT_UPSTREAM_HOST, DEFAULT_UPSTREAM_PORT
    if args.proxy:
        try:
            upstream_host, upstream_port = parse_url(args.proxy)
        except ValueError as exc:
            log.error("[ERROR] %s", exc)
            return 1

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
    manager = ProxyConnectionManager(upstream_host, upstream_port)
    upstreams = UpstreamManager()
    pool = ThreadPool(args.threads)
    log.info("[INIT] ProxyServer has started, ip: %s, port: %d, thread nums: %d, upstream server: %s",
             args.ip, args.port, args.threads, args.proxy)

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
        upstreams.close_all()
    return 0