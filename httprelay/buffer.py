"""A growable byte buffer used for connection input and output."""

from __future__ import annotations


class Buffer:
    """Bytes waiting to be parsed or written, consumed from the front."""

    def __init__(self) -> None:
        self._data = bytearray()

    def append(self, data: bytes) -> None:
        """Add ``data`` to the end of the buffer."""
        self._data += data

    def read_until(self, delimiter: bytes) -> bytes:
        """Remove and return everything up to and including ``delimiter``.

        Returns ``b""`` and leaves the buffer untouched when the delimiter
        is not present yet. An empty delimiter reads the whole buffer.
        """
        if not delimiter:
            return self.read_all()
        index = self._data.find(delimiter)
        if index < 0:
            return b""
        end = index + len(delimiter)
        result = bytes(self._data[:end])
        del self._data[:end]
        return result

    def read_all(self) -> bytes:
        """Remove and return the whole content."""
        result = bytes(self._data)
        self._data.clear()
        return result

    def consume(self, n: int) -> None:
        """Drop the first ``n`` bytes."""
        if n < 0:
            raise ValueError("cannot consume a negative number of bytes")
        del self._data[:n]

    def peek(self) -> bytes:
        """Return the content without removing it."""
        return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)