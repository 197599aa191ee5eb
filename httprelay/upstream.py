"""Opening and tracking connections to an upstream HTTP server."""

from __future__ import annotations

import errno
import logging
import re
import socket
import threading

log = logging.getLogger(__name__)

_PORT = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")
_IN_PROGRESS = {errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN}


def parse_url(url: str) -> tuple[str, int]:
    """Return ``(host, port)`` for a URL of the form ``scheme://host[:port][/path]``.

    The port defaults to 80. Raises :class:`ValueError` when the scheme
    separator is missing or the port is not a number.
    """
    marker = url.find("://")
    if marker < 0:
        raise ValueError("Invalid URL: missing protocol")
    host_port = url[marker + 3:].split("/", 1)[0]
    host, colon, port_text = host_port.partition(":")
    if not colon:
        return host, 80
    match = _PORT.match(port_text)
    if match is None:
        raise ValueError(f"Invalid URL port: {port_text!r}")
    return host, int(match.group(1))


class UpstreamManager:
    """Opens non-blocking upstream sockets and keeps them until closed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[int, tuple[socket.socket, str]] = {}

    def get_upstream_socket(self, url: str) -> socket.socket:
        """Open a connection to the host and port named by ``url``."""
        host, port = parse_url(url)
        return self.connect_to_upstream(host, port)

    def connect_to_upstream(self, host: str, port: int) -> socket.socket:
        """Start a non-blocking connection to ``host:port``.

        The connection may still be in progress when the socket is
        returned. Raises :class:`OSError` when no address can be reached.
        """
        infos = socket.getaddrinfo(host, str(port), socket.AF_UNSPEC, socket.SOCK_STREAM)
        last_error: OSError | None = None
        for family, socktype, proto, _, address in infos:
            try:
                sock = socket.socket(family, socktype, proto)
            except OSError as exc:
                last_error = exc
                continue
            sock.setblocking(False)
            code = sock.connect_ex(address)
            if code == 0 or code in _IN_PROGRESS:
                with self._lock:
                    self._active[sock.fileno()] = (sock, f"{host}:{port}")
                return sock
            sock.close()
            last_error = OSError(code, f"connect to {host}:{port} failed")
        if last_error is None:
            last_error = OSError(f"no address found for {host}:{port}")
        log.error("upstream connection failed: %s", last_error)
        raise last_error

    def active_connections(self) -> dict[int, str]:
        """Map of socket descriptor to ``"host:port"`` for open upstream sockets."""
        with self._lock:
            return {fd: target for fd, (_, target) in self._active.items()}

    def close_all(self) -> None:
        """Close every upstream socket this manager opened."""
        with self._lock:
            entries = list(self._active.values())
            self._active.clear()
        for sock, _ in entries:
            sock.close()