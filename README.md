# httprelay

An event-driven HTTP/1.1 toolkit with two small programs:

- **httprelay-server** serves static files from its working directory.
- **httprelay-proxy** accepts HTTP requests from clients and relays them to one upstream server.

Both programs watch their sockets with the `selectors` module and hand each
ready socket to a `ThreadPool`. They log to standard error at INFO level and
run until interrupted with Ctrl-C.

## Installation

```
pip install .
```

Install the test dependencies as well with `pip install .[test]`.

## The static file server

```
httprelay-server --ip 127.0.0.1 --port 8080 --threads 4
```

`--ip` (`-i`), `--port` (`-p`) and `--threads` (`-t`) are all required. The
port and the thread count must be positive; otherwise the program prints
`[ERROR] Missing required parameters` and exits with status 1. Unknown
options make it print a usage line, but it carries on.

Files are looked up relative to the working directory:

- `GET /` and `GET /index.html` serve `static/index.html`.
- `GET /<path>` serves `static/<path>`. The content type comes from the
  extension: `.html`, `.css`, `.js` or `.json`; anything else is sent as
  `text/html`. The path is not checked, so `..` segments are not refused.
- JSON files have their newlines, carriage returns and tabs removed before
  they are sent.
- A file that cannot be read is answered with `404` and the contents of
  `static/404.html`.
- `POST /api/upload` is answered with `404` and the contents of
  `data/error.json`. The handler looks up the request's content type under
  the key `Content-Type`, while the request parser stores header names in
  lower case, so the lookup never finds it and no upload is ever accepted.
- A `POST` to any other path is answered with `404` and `static/404.html`.
- Methods other than `GET` and `POST` are answered with `501` and
  `static/501.html`.

When one of these files is itself missing, the body is
`<h1>File Not Found</h1>`.

Every response carries `Content-Type`, `Content-Length` and
`Connection: close` headers, but the server does not close the connection
itself; it stays open until the client closes it. Several requests sent
back to back on one connection are all answered, in order.

## The proxy

```
httprelay-proxy --ip 127.0.0.1 --port 9090 --threads 4 --proxy http://127.0.0.1:8888
```

`--ip`, `--port` and `--threads` are required, as for the server. Unknown
options make the proxy print its usage line and exit with status 1.

`--proxy` names the upstream server as `scheme://host[:port][/path]`; the
port defaults to 80 and the path is ignored. Without `--proxy` the upstream
is `127.0.0.1:8888`. The host must be an IPv4 address: a host name is not
resolved, and a client whose upstream connection cannot be opened is
disconnected.

For each client the proxy parses complete requests, including pipelined
requests and chunked bodies, and forwards each one in a rewritten form:
header names in lower case, values trimmed, and the body de-chunked without
adjusting the headers. It opens one upstream connection per client, on the
first complete request. Bytes from the upstream server are copied back to
the client as they arrive, without being parsed.

## Using the pieces as a library

```python
from httprelay.buffer import Buffer
from httprelay.request import HTTPRequest
from httprelay.response import HTTPResponse
from httprelay.upstream import parse_url

req = HTTPRequest()
consumed = req.parse(b"GET /a HTTP/1.1\r\nHost: x\r\n\r\n")
print(req.is_complete(), consumed)   # True 29
print(req.method, req.path, req.headers, req.keep_alive)
print(req.raw())                     # bytes

resp = HTTPResponse()
resp.parse(b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nhi")
print(resp.status_code, resp.reason_phrase, resp.body)

host, port = parse_url("http://example.com:8080/path")   # ("example.com", 8080)
```

- `httprelay.request.HTTPRequest.parse(data)` returns the number of bytes
  the request takes up, or `None` when more data is needed, and raises
  `HTTPParseError` (a `ValueError`) on malformed input. `reset()` makes the
  object ready for a new request. `ParseState` tells where parsing stands.
- `httprelay.response.HTTPResponse.parse(data)` works the same way for
  responses; its state is a `ResponseParseState`.
- `httprelay.buffer.Buffer` is a byte buffer with `append`, `read_until`,
  `read_all`, `consume` and `peek`; `len()` and truth testing work on it.
- `httprelay.threadpool.ThreadPool(num)` is a fixed-size worker pool (at
  least two threads, one per CPU by default). `commit(fn, *args, **kwargs)`
  returns a `concurrent.futures.Future`; `idle_thread_count()` counts idle
  workers; `stop()`, or leaving a `with` block, stops it and cancels tasks
  still queued.
- `httprelay.upstream.UpstreamManager` opens non-blocking connections with
  `connect_to_upstream(host, port)` or `get_upstream_socket(url)`, lists
  them with `active_connections()` and closes them with `close_all()`.
- `httprelay.httpserver` exposes the response helpers `load_file`,
  `is_valid_body`, `build_http_response`, `get_status_text`,
  `get_mime_type` and `minify_json`, and `ConnectionManager(root)`, whose
  `handle_request(ctx, req)` appends the response for a request to a
  `ConnCtx`'s output buffer.

## What the package does not do

- No TLS: neither program speaks HTTPS.
- The proxy always relays to the single upstream given at start-up; it does
  not route by the request's host or path, cache responses, or tell clients
  when the upstream connection fails after it was opened.
- The server accepts no uploads (see above) and serves no directory
  listings.

## Running the tests

```
pytest
```