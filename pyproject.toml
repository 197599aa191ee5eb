[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "httprelay"
version = "0.1.0"
description = "A small event-driven HTTP/1.1 static file server and forwarding proxy built on selectors and a thread pool"
requires-python = ">=3.10"
dependencies = []
keywords = ["http", "server", "proxy", "selectors", "thread-pool", "static-files", "parser"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
httprelay-server = "httprelay.httpserver:main"
httprelay-proxy = "httprelay.proxyserver:main"

[tool.hatch.build.targets.wheel]
packages = ["httprelay"]

[tool.pytest.ini_options]
addopts = "-ra"
