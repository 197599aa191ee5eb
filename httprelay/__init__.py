"""Event-driven HTTP/1.1 static file server and forwarding proxy, with request and response parsers, a byte buffer and a thread pool."""

__version__ = "0.1.0"