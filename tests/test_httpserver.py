import selectors
import socket

import pytest

from httprelay.httpserver import (
    NOT_FOUND_BODY,
    ConnCtx,
    ConnectionManager,
    build_http_response,
    get_mime_type,
    get_status_text,
    is_valid_body,
    load_file,
    minify_json,
    parse_args,
)
from httprelay.request import HTTPRequest
from httprelay.response import HTTPResponse

INDEX = b"<h1>index</h1>"
PAGE_404 = b"<h1>missing</h1>"
PAGE_501 = b"<h1>unsupported</h1>"
ERROR_JSON = b'{"error": "bad"}'


@pytest.fixture
def site(tmp_path):
    static = tmp_path / "static"
    static.mkdir()
    (static / "index.html").write_bytes(INDEX)
    (static / "404.html").write_bytes(PAGE_404)
    (static / "501.html").write_bytes(PAGE_501)
    (static / "style.css").write_bytes(b"body{}")
    (static / "info.json").write_bytes(b'{\n\t"a": 1\r\n}')
    data = tmp_path / "data"
    data.mkdir()
    (data / "error.json").write_bytes(ERROR_JSON)
    return tmp_path


def _request(raw):
    req = HTTPRequest()
    assert req.parse(raw) == len(raw)
    return req


def _respond(manager, raw):
    ctx = ConnCtx()
    manager.handle_request(ctx, _request(raw))
    data = ctx.out_buf.read_all()
    resp = HTTPResponse()
    assert resp.parse(data) == len(data)
    return resp


def test_build_http_response_wire_form():
    assert build_http_response(200, "text/html", b"hi") == (
        b"HTTP/1.1 200 OK\r\nContent-Type: text/html\r\n"
        b"Content-Length: 2\r\nConnection: close\r\n\r\nhi"
    )


def test_status_texts():
    assert get_status_text(200) == "OK"
    assert get_status_text(404) == "Not Found"
    assert get_status_text(501) == "Not Implemented"
    assert get_status_text(302) == "Unknown"


@pytest.mark.parametrize(
    "path, mime",
    [
        ("static/a.html", "text/html"),
        ("static/a.css", "text/css"),
        ("static/a.js", "text/javascript"),
        ("static/a.json", "application/json"),
        ("static/a.png", "text/html"),
    ],
)
def test_get_mime_type(path, mime):
    assert get_mime_type(path) == mime


def test_minify_json_strips_layout_characters():
    result = minify_json(b'{\n\t"a": 1\r\n}')
    assert result == b'{"a": 1}'
    assert minify_json(result) == result


def test_is_valid_body():
    assert is_valid_body(b'{"a":1}', "application/json")
    assert not is_valid_body(b"[1]", "application/json")
    assert not is_valid_body(b"", "application/json")
    assert is_valid_body(b"name=x&age=3", "application/x-www-form-urlencoded")
    assert not is_valid_body(b"=x", "application/x-www-form-urlencoded")
    assert not is_valid_body(b'{"a":1}', "text/plain")


def test_load_file(tmp_path):
    target = tmp_path / "f.bin"
    target.write_bytes(b"\x00\x01abc")
    assert load_file(str(target)) == b"\x00\x01abc"
    assert load_file(str(tmp_path / "absent")) == NOT_FOUND_BODY


def test_get_root_serves_index(site):
    resp = _respond(ConnectionManager(str(site)), b"GET / HTTP/1.1\r\nHost: x\r\n\r\n")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "text/html"
    assert resp.body == INDEX


def test_get_css_uses_its_mime_type(site):
    resp = _respond(ConnectionManager(str(site)), b"GET /style.css HTTP/1.1\r\n\r\n")
    assert resp.headers["content-type"] == "text/css"
    assert resp.body == b"body{}"


def test_get_json_is_minified(site):
    resp = _respond(ConnectionManager(str(site)), b"GET /info.json HTTP/1.1\r\n\r\n")
    assert resp.headers["content-type"] == "application/json"
    assert resp.body == minify_json((site / "static" / "info.json").read_bytes())


def test_get_missing_file_gives_404_page(site):
    resp = _respond(ConnectionManager(str(site)), b"GET /nope.html HTTP/1.1\r\n\r\n")
    assert resp.status_code == 404
    assert resp.reason_phrase == "Not Found"
    assert resp.body == PAGE_404


def test_unsupported_method_gives_501(site):
    resp = _respond(ConnectionManager(str(site)), b"DELETE / HTTP/1.1\r\n\r\n")
    assert resp.status_code == 501
    assert resp.body == PAGE_501


def test_post_elsewhere_gives_404_page(site):
    raw = b"POST /other HTTP/1.1\r\nContent-Length: 2\r\n\r\n{}"
    resp = _respond(ConnectionManager(str(site)), raw)
    assert resp.status_code == 404
    assert resp.body == PAGE_404


def test_post_upload_answers_with_error_json(site):
    raw = b"POST /api/upload HTTP/1.1\r\nContent-Type: application/json\r\nContent-Length: 7\r\n\r\n{\"a\":1}"
    resp = _respond(ConnectionManager(str(site)), raw)
    assert resp.status_code == 404
    assert resp.headers["content-type"] == "application/json"
    assert resp.body == ERROR_JSON


def test_connection_registry():
    manager = ConnectionManager()
    ctx = ConnCtx(client_fd=7)
    manager.register_conn(7, ctx)
    assert manager.get_conn(7) is ctx
    manager.remove_conn(7)
    assert manager.get_conn(7) is None
    manager.register_conn(8, ConnCtx(client_fd=8))
    manager.clear_all()
    assert manager.get_conn(8) is None


def test_handle_io_event_round_trip(site):
    manager = ConnectionManager(str(site))
    selector = selectors.DefaultSelector()
    server_side, peer = socket.socketpair()
    try:
        server_side.setblocking(False)
        fd = server_side.fileno()
        manager.register_conn(fd, ConnCtx(client_sock=server_side, client_fd=fd))
        selector.register(server_side, selectors.EVENT_READ, fd)

        peer.sendall(b"GET / HTTP/1.1\r\n\r\n")
        manager.handle_io_event(fd, selectors.EVENT_READ, selector)
        assert selector.get_key(server_side).events == selectors.EVENT_READ | selectors.EVENT_WRITE

        manager.handle_io_event(fd, selectors.EVENT_WRITE, selector)
        assert selector.get_key(server_side).events == selectors.EVENT_READ

        peer.settimeout(2)
        data = b""
        resp = HTTPResponse()
        while resp.parse(data) is None:
            data += peer.recv(4096)
        assert resp.status_code == 200
        assert resp.body == INDEX

        peer.close()
        manager.handle_io_event(fd, selectors.EVENT_READ, selector)
        assert manager.get_conn(fd) is None
        assert server_side.fileno() == -1
    finally:
        peer.close()
        server_side.close()
        selector.close()


def test_handle_io_event_unknown_fd_leaves_registry_empty():
    manager = ConnectionManager()
    selector = selectors.DefaultSelector()
    try:
        manager.handle_io_event(12345, selectors.EVENT_READ, selector)
        assert manager.get_conn(12345) is None
    finally:
        selector.close()


def test_accept_new_conn_registers_client():
    manager = ConnectionManager()
    selector = selectors.DefaultSelector()
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    client = socket.create_connection(("127.0.0.1", 0), timeout=2) if False else None
    try:
        listener.bind(("127.0.0.1", 0))
        listener.listen()
        client = socket.create_connection(listener.getsockname(), timeout=2)
        listener.setblocking(False)
        manager.accept_new_conn(listener, selector)
        keys = list(selector.get_map().values())
        assert len(keys) == 1
        ctx = manager.get_conn(keys[0].data)
        assert ctx.client_fd == keys[0].data
        assert ctx.keep_alive is True
    finally:
        for key in list(selector.get_map().values()):
            key.fileobj.close()
        selector.close()
        listener.close()
        if client is not None:
            client.close()


def test_parse_args_accepts_all_options():
    args = parse_args(["--ip", "127.0.0.1", "-p", "8080", "--threads", "4"])
    assert args.ip == "127.0.0.1"
    assert args.port == 8080
    assert args.threads == 4


@pytest.mark.parametrize(
    "argv",
    [
        ["--port", "8080", "--threads", "4"],
        ["--ip", "127.0.0.1", "--threads", "4"],
        ["--ip", "127.0.0.1", "--port", "abc", "--threads", "4"],
        ["--ip", "127.0.0.1", "--port", "8080", "--threads", "0"],
    ],
)
def test_parse_args_rejects_missing_values(argv):
    with pytest.raises(SystemExit) as info:
        parse_args(argv)
    assert info.value.code == 1