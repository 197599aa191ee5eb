import pytest

from httprelay.buffer import Buffer


def test_new_buffer_is_empty():
    buf = Buffer()
    assert len(buf) == 0
    assert not buf
    assert buf.peek() == b""


def test_append_and_peek_keeps_content():
    buf = Buffer()
    buf.append(b"hello ")
    buf.append(b"world")
    assert buf.peek() == b"hello world"
    assert len(buf) == len(b"hello world")
    assert buf


def test_read_until_removes_through_delimiter():
    buf = Buffer()
    buf.append(b"GET / HTTP/1.1\r\nHost: x\r\n")
    line = buf.read_until(b"\r\n")
    assert line == b"GET / HTTP/1.1\r\n"
    assert buf.peek() == b"Host: x\r\n"


def test_read_until_missing_delimiter_leaves_buffer():
    buf = Buffer()
    buf.append(b"partial")
    assert buf.read_until(b"\r\n") == b""
    assert buf.peek() == b"partial"


def test_read_until_empty_delimiter_reads_everything():
    buf = Buffer()
    buf.append(b"abc")
    assert buf.read_until(b"") == b"abc"
    assert len(buf) == 0


def test_read_all_clears():
    buf = Buffer()
    buf.append(b"data")
    assert buf.read_all() == b"data"
    assert not buf
    assert buf.read_all() == b""


def test_consume_drops_prefix():
    buf = Buffer()
    buf.append(b"0123456789")
    buf.consume(4)
    assert buf.peek() == b"456789"
    buf.consume(100)
    assert buf.peek() == b""


def test_consume_on_empty_buffer():
    buf = Buffer()
    buf.consume(3)
    assert len(buf) == 0


def test_consume_negative_raises():
    buf = Buffer()
    buf.append(b"x")
    with pytest.raises(ValueError):
        buf.consume(-1)


def test_peek_is_a_snapshot():
    buf = Buffer()
    buf.append(b"abc")
    snapshot = buf.peek()
    buf.append(b"def")
    assert snapshot == b"abc"
    assert buf.peek() == b"abcdef"