"""HTTP request/response types, routing and shared handler helpers."""

from __future__ import annotations

import http
import json
import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Iterable, Iterator, Mapping, Optional, Union

from .config_model import HttpServerConfig

_LOG = logging.getLogger("zwappliance.httpd")

_CHUNK_SIZE = 1024


class QueryParamError(ValueError):
    """Raised when a query parameter is missing or malformed."""


@dataclass
class Request:
    method: str
    uri: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_addr: str = ""
    server_addr: str = ""

    def __post_init__(self) -> None:
        self.method = self.method.upper()

    @property
    def content_len(self) -> int:
        return len(self.body)

    def header(self, name: str) -> str:
        """Return a header value (case-insensitive), or "" when absent."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return ""


@dataclass
class Response:
    status: str = "200 OK"
    headers: dict[str, str] = field(default_factory=dict)
    body: Union[bytes, Iterable[bytes]] = b""

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return "text/html"


@dataclass
class ServingConfig:
    httpd: HttpServerConfig = field(default_factory=HttpServerConfig)
    dav_enabled: bool = False
    provisioning: bool = False


def query_parse_param(query_frag: str, name: str, expect_len: int = 0) -> str:
    """Return the raw value of ``name`` in a query fragment starting with '?'.

    A non-zero ``expect_len`` rejects values longer than that.
    """
    if not query_frag.startswith("?"):
        raise QueryParamError(f"not a query fragment: {query_frag!r}")
    for pair in query_frag[1:].split("&"):
        key, sep, value = pair.partition("=")
        if not sep or key != name:
            continue
        if expect_len and len(value) > expect_len:
            raise QueryParamError(f"query parameter {name!r} is too long")
        _LOG.debug("Query [%s] = '%s'", name, value)
        return value
    raise QueryParamError(f"query parameter {name!r} not found")


def _status_line(status: Union[int, str]) -> str:
    if isinstance(status, int):
        code = http.HTTPStatus(status)
        return f"{code.value} {code.phrase}"
    return status


def error_response(status: Union[int, str], message: str) -> Response:
    return Response(
        status=_status_line(status),
        headers={"Content-Type": "text/html"},
        body=message.encode("utf-8"),
    )


def file_response(stream: BinaryIO, size: int) -> Response:
    """Stream ``size`` bytes of a file in chunks."""

    def chunks() -> Iterator[bytes]:
        remaining = size
        while True:
            chunk = stream.read(_CHUNK_SIZE)
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
        if remaining > 0:
            _LOG.warning("File read short by %d bytes", remaining)

    return Response(headers={"Content-Length": str(size)}, body=chunks())


def json_response(data: Any) -> Response:
    try:
        text = json.dumps(data, indent="\t", ensure_ascii=False)
    except (TypeError, ValueError):
        return error_response(500, "Failed to print JSON data")
    return Response(headers={"Content-Type": "application/json"}, body=text.encode("utf-8"))


def receive_json(request: Request) -> Any:
    """Decode the request body as JSON; raise ValueError if it cannot be."""
    declared = request.header("Content-Length")
    if declared.isdigit() and int(declared) != request.content_len:
        _LOG.warning("Receive short, expect %s, got %d", declared, request.content_len)
        raise ValueError("Not all data received")
    try:
        return json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("Payload failed to parse as JSON") from exc


def uri_match_wildcard(pattern: str, uri: str) -> bool:
    """Match a URI (query excluded) against a pattern.

    A trailing '*' matches any suffix; a trailing '?' makes the character
    before it optional; '?*' combines both.
    """
    path = uri.split("?", 1)[0]
    if pattern.endswith("?*"):
        base = pattern[:-2]
        return path == base[:-1] or path.startswith(base)
    if pattern.endswith("*"):
        return path.startswith(pattern[:-1])
    if pattern.endswith("?"):
        base = pattern[:-1]
        return path == base or path == base[:-1]
    return path == pattern


Handler = Callable[[Request], Response]


def _request_from_environ(environ: Mapping[str, Any]) -> Request:
    query = environ.get("QUERY_STRING", "")
    uri = environ.get("PATH_INFO", "") or "/"
    if query:
        uri = f"{uri}?{query}"
    headers: dict[str, str] = {}
    for key, value in environ.items():
        if key.startswith("HTTP_"):
            name = "-".join(part.capitalize() for part in key[5:].split("_"))
            headers[name] = value
    if environ.get("CONTENT_TYPE"):
        headers["Content-Type"] = environ["CONTENT_TYPE"]
    if environ.get("CONTENT_LENGTH"):
        headers["Content-Length"] = environ["CONTENT_LENGTH"]
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    body = environ["wsgi.input"].read(length) if length > 0 else b""
    return Request(
        method=environ.get("REQUEST_METHOD", "GET"),
        uri=uri,
        headers=headers,
        body=body,
        client_addr=environ.get("REMOTE_ADDR", ""),
        server_addr=environ.get("SERVER_NAME", ""),
    )


class Router:
    """Dispatches requests to handlers by wildcard URI pattern and method."""

    def __init__(self) -> None:
        self._routes: list[tuple[str, Optional[str], Handler]] = []

    def register(self, pattern: str, method: Optional[str], handler: Handler) -> None:
        """Register a handler; a method of None (or "ANY") accepts every method."""
        normalized = None if method is None or method.upper() == "ANY" else method.upper()
        for existing, existing_method, _ in self._routes:
            if existing == pattern and existing_method == normalized:
                raise ValueError(f"handler for {normalized or 'ANY'} {pattern} already exists")
        self._routes.append((pattern, normalized, handler))

    def dispatch(self, request: Request) -> Response:
        uri_matched = False
        for pattern, method, handler in self._routes:
            if not uri_match_wildcard(pattern, request.uri):
                continue
            uri_matched = True
            if method is None or method == request.method:
                return handler(request)
        if uri_matched:
            return error_response(405, "Request method for this URI is not handled by server")
        return error_response(404, "This URI does not exist")

    def __call__(self, environ: Mapping[str, Any], start_response: Callable) -> Iterable[bytes]:
        request = _request_from_environ(environ)
        try:
            response = self.dispatch(request)
        except Exception:
            _LOG.exception("Handler failed for %s %s", request.method, request.uri)
            response = error_response(500, "Internal Server Error")
        headers = list(response.headers.items())
        if not any(key.lower() == "content-type" for key, _ in headers):
            headers.append(("Content-Type", response.content_type))
        start_response(response.status, headers)
        body = response.body
        if isinstance(body, (bytes, bytearray)):
            return [bytes(body)]
        return body