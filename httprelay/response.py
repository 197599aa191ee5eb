"""Incremental parser for HTTP/1.x responses."""

from __future__ import annotations

import re
from enum import Enum, auto

from httprelay.request import HTTPParseError

_CRLF = b"\r\n"
_WS = rb"[ \t\n\v\f\r]"
_STATUS_LINE = re.compile(_WS + rb"*(\S+)" + _WS + rb"+([+-]?[0-9]+)(.*)", re.DOTALL)
_CONTENT_LENGTH = re.compile(_WS + rb"*\+?([0-9]+)")
_CHUNK_SIZE = re.compile(_WS + rb"*\+?(?:0[xX])?([0-9a-fA-F]+)")


class ResponseParseState(Enum):
    """Where the parser stands within a response."""

    STATUS_LINE = auto()
    HEADERS = auto()
    BODY = auto()
    DONE = auto()
    ERROR = auto()


class HTTPResponse:
    """One HTTP response, filled in by :meth:`parse`.

    Header names are stored lower-cased, values with surrounding blanks
    and tabs removed. The body is kept as bytes.
    """

    def __init__(self) -> None:
        self.state = ResponseParseState.STATUS_LINE
        self.version = ""
        self.status_code = 0
        self.reason_phrase = ""
        self.headers: dict[str, str] = {}
        self.body = b""
        self._chunked = False
        self._content_length = 0

    def is_complete(self) -> bool:
        """True once a whole response has been parsed."""
        return self.state is ResponseParseState.DONE

    def parse(self, data: bytes) -> int | None:
        """Parse one response from the start of ``data``.

        Returns the number of bytes the response occupies once it is
        complete, or ``None`` when more data is needed. Raises
        :class:`HTTPParseError` on malformed input.
        """
        if self.state is ResponseParseState.ERROR:
            raise HTTPParseError("response has already failed to parse")
        data = bytes(data)
        steps = {
            ResponseParseState.STATUS_LINE: self._parse_status_line,
            ResponseParseState.HEADERS: self._parse_headers,
            ResponseParseState.BODY: self._parse_body,
        }
        pos = 0
        while self.state is not ResponseParseState.DONE:
            new_pos = steps[self.state](data, pos)
            if new_pos is None:
                return None
            pos = new_pos
        return pos

    def _fail(self, message: str) -> HTTPParseError:
        self.state = ResponseParseState.ERROR
        return HTTPParseError(message)

    def _parse_status_line(self, data: bytes, pos: int) -> int | None:
        end = data.find(_CRLF, pos)
        if end < 0:
            return None
        match = _STATUS_LINE.fullmatch(data[pos:end])
        if match is None:
            raise self._fail("malformed status line")
        version, code, reason = match.groups()
        if reason.startswith(b" "):
            reason = reason[1:]
        self.version = version.decode("latin-1")
        self.status_code = int(code)
        self.reason_phrase = reason.decode("latin-1")
        self.state = ResponseParseState.HEADERS
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
            self.state = ResponseParseState.BODY
        elif self.headers.get("transfer-encoding") == "chunked":
            self._chunked = True
            self.state = ResponseParseState.BODY
        else:
            self.state = ResponseParseState.DONE

    def _parse_body(self, data: bytes, pos: int) -> int | None:
        if self._chunked:
            return self._parse_chunked_body(data, pos)
        end = pos + self._content_length
        if len(data) < end:
            return None
        self.body = data[pos:end]
        self.state = ResponseParseState.DONE
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
                self.state = ResponseParseState.DONE
                return pos + 2
            if len(data) - pos < size + 2:
                return None
            self.body += data[pos:pos + size]
            pos += size
            if data[pos:pos + 2] != _CRLF:
                raise self._fail("chunk not terminated by CRLF")
            pos += 2