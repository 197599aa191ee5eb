"""Incremental parser for HTTP/1.x requests."""

from __future__ import annotations

import re
from enum import Enum, auto

_CRLF = b"\r\n"
_CONTENT_LENGTH = re.compile(rb"[ \t\n\v\f\r]*\+?([0-9]+)")
_CHUNK_SIZE = re.compile(rb"[ \t\n\v\f\r]*\+?(?:0[xX])?([0-9a-fA-F]+)")


class ParseState(Enum):
    """Where the parser stands within a request."""

    REQUEST_LINE = auto()
    HEADERS = auto()
    BODY = auto()
    DONE = auto()
    ERROR = auto()


class HTTPParseError(ValueError):
    """Raised when the request bytes are malformed."""


class HTTPRequest:
    """One HTTP request, filled in by :meth:`parse`.

    Header names are stored lower-cased, values with surrounding blanks
    and tabs removed. The body is kept as bytes.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Return to the initial, empty state."""
        self.state = ParseState.REQUEST_LINE
        self.keep_alive = False
        self.method = ""
        self.path = ""
        self.version = ""
        self.headers: dict[str, str] = {}
        self.body = b""
        self._chunked = False
        self._content_length = 0

    def is_complete(self) -> bool:
        """True once a whole request has been parsed."""
        return self.state is ParseState.DONE

    def parse(self, data: bytes) -> int | None:
        """Parse one request from the start of ``data``.

        Returns the number of bytes the request occupies once it is
        complete, or ``None`` when more data is needed. Raises
        :class:`HTTPParseError` on malformed input.
        """
        if self.state is ParseState.ERROR:
            raise HTTPParseError("request has already failed to parse")
        data = bytes(data)
        steps = {
            ParseState.REQUEST_LINE: self._parse_request_line,
            ParseState.HEADERS: self._parse_headers,
            ParseState.BODY: self._parse_body,
        }
        pos = 0
        while self.state is not ParseState.DONE:
            new_pos = steps[self.state](data, pos)
            if new_pos is None:
                return None
            pos = new_pos
        return pos

    def raw(self) -> bytes:
        """Serialise the request back to wire form."""
        lines = [f"{self.method} {self.path} {self.version}\r\n"]
        lines.extend(f"{key}: {value}\r\n" for key, value in self.headers.items())
        lines.append("\r\n")
        return "".join(lines).encode("latin-1") + self.body

    def _fail(self, message: str) -> HTTPParseError:
        self.state = ParseState.ERROR
        return HTTPParseError(message)

    def _parse_request_line(self, data: bytes, pos: int) -> int | None:
        end = data.find(_CRLF, pos)
        if end < 0:
            return None
        parts = data[pos:end].split()
        if len(parts) < 3:
            raise self._fail("malformed request line")
        self.method, self.path, self.version = (p.decode("latin-1") for p in parts[:3])
        self.state = ParseState.HEADERS
        return end + 2

    def _parse_headers(self, data: bytes, pos: int) -> int | None:
        while True:
            end = data.find(_CRLF, pos)
            if end < 0:
                return None
            if end == pos:
                self._end_of_headers()
                return pos + 2
            key, colon, value = data[pos:end].partition(b":")
            if not colon:
                raise self._fail("header line without a colon")
            self.headers[key.lower().decode("latin-1")] = value.strip(b" \t").decode("latin-1")
            pos = end + 2

    def _end_of_headers(self) -> None:
        if "content-length" in self.headers:
            match = _CONTENT_LENGTH.match(self.headers["content-length"].encode("latin-1"))
            if match is None:
                raise self._fail("invalid Content-Length")
            self._content_length = int(match.group(1))
            self.state = ParseState.BODY
        elif self.headers.get("transfer-encoding") == "chunked":
            self._chunked = True
            self.state = ParseState.BODY
        else:
            self._finalize()

    def _parse_body(self, data: bytes, pos: int) -> int | None:
        if self._chunked:
            return self._parse_chunked_body(data, pos)
        end = pos + self._content_length
        if len(data) < end:
            return None
        self.body = data[pos:end]
        self._finalize()
        return end

    def _parse_chunked_body(self, data: bytes, pos: int) -> int | None:
        while True:
            end = data.find(_CRLF, pos)
            if end < 0:
                return None
            match = _CHUNK_SIZE.match(data[pos:end])
            if match is None:
                raise self._fail("invalid chunk size")
            size = int(match.group(1), 16)
            pos = end + 2
            if size == 0:
                if len(data) - pos < 2:
                    return None
                self._finalize()
                return pos + 2
            if len(data) - pos < size + 2:
                return None
            self.body += data[pos:pos + size]
            pos += size
            if data[pos:pos + 2] != _CRLF:
                raise self._fail("chunk not terminated by CRLF")
            pos += 2

    def _finalize(self) -> None:
        connection = self.headers.get("connection")
        if self.version == "HTTP/1.1":
            self.keep_alive = connection != "close"
        else:
            self.keep_alive = connection == "keep-alive"
        self.state = ParseState.DONE