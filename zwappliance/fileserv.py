"""Regular static file serving, with captive-portal redirection while provisioning."""

from __future__ import annotations

import logging
import os
from typing import BinaryIO, Callable, Iterable, Iterator, Optional, Union

from .http_core import (
    Request,
    Response,
    Router,
    ServingConfig,
    error_response,
    file_response,
)

_LOG = logging.getLogger("zwappliance.httpd.fs")

URI_PATTERN = "/*"
URI_DEFAULT_FILENAME = "index.html"
URI_SCHEME_SEP = "http://"

HTTP_STATUS_302_FOUND = "302 Found"
HTTP_STATUS_304_NOT_MODIFIED = "304 Not Modified"
HTTP_CACHE_CONTROL_VALUE = "max-age=0, must-revalidate"

HTTP_MIME_BINARY = "application/octet-stream"

_MIME_TYPES = {
    ".txt": "text/plain",
    ".css": "text/css",
    ".csv": "text/csv",
    ".htm": "text/html",
    ".html": "text/html",
    ".md": "text/markdown",
    ".js": "text/javascript",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".png": "image/png",
    ".ico": "image/vnd.microsoft.icon",
    ".json": "application/json",
    ".zip": "application/zip",
    ".mp3": "audio/mpeg",
    ".aac": "audio/aac",
    ".mid": "audio/midi",
    ".midi": "audio/midi",
    ".xml": "application/xml",
    ".xhtml": "application/xhtml+xml",
}

ServingSource = Union[ServingConfig, Callable[[], ServingConfig]]


def infer_mimetype(uri: str) -> str:
    """Infer a MIME type from the text after the last '.' of the URI."""
    dot = uri.rfind(".")
    if dot < 0:
        return HTTP_MIME_BINARY
    return _MIME_TYPES.get(uri[dot:], HTTP_MIME_BINARY)


def make_etag(size: int, mtime: float) -> str:
    """Build the entity tag from the low 24 bits of the size and the mtime."""
    return f"{int(size) & 0xFFFFFF:06X}:{int(mtime):08X}"


def _redirect(location: str) -> Response:
    return Response(status=HTTP_STATUS_302_FOUND, headers={"Location": location}, body=b"")


def _closing(stream: BinaryIO, body: Iterable[bytes]) -> Iterator[bytes]:
    try:
        yield from body
    finally:
        stream.close()


class FileServer:
    """Serves files below the configured root directory.

    ``serving`` is a ServingConfig or a callable returning the current one.
    When ``hostname`` is given, requests for any other host are redirected
    to it while the appliance is provisioning.
    """

    def __init__(self, serving: ServingSource, hostname: Optional[str] = None) -> None:
        self._serving = serving
        self.hostname = hostname

    def _current(self) -> ServingConfig:
        serving = self._serving
        return serving() if callable(serving) else serving

    def _captive_redirect(self, request: Request) -> Optional[Response]:
        host = request.header("Host")
        if not host:
            return error_response(400, "No host header provided")
        if host.lower() != self.hostname.lower():
            return _redirect(f"{URI_SCHEME_SEP}{self.hostname}/")
        return None

    def __call__(self, request: Request) -> Response:
        serving = self._current()
        if serving.provisioning and self.hostname:
            redirect = self._captive_redirect(request)
            if redirect is not None:
                return redirect

        httpd = serving.httpd
        if not httpd.root_dir:
            return error_response(500, "HTTP service `root_dir` not configured")

        uri = request.uri.split("?", 1)[0]
        if not uri:
            uri = "/"
        elif not uri.startswith("/"):
            return error_response(400, "URI must start with root delimiter")

        if (
            uri == "/"
            and serving.provisioning
            and httpd.net_provision
            and httpd.net_provision.default_page
        ):
            return _redirect(httpd.net_provision.default_page)

        if uri.endswith("/"):
            uri += URI_DEFAULT_FILENAME
        file_path = httpd.root_dir + uri
        mime_type = infer_mimetype(uri)
        _LOG.info("%s -> %s", request.uri, file_path)

        try:
            stream = open(file_path, "rb")
        except OSError:
            return error_response(404, "Unable to open file")
        try:
            st = os.fstat(stream.fileno())
        except OSError:
            stream.close()
            return error_response(500, "Failed to query file stat")

        etag = make_etag(st.st_size, st.st_mtime)
        if request.header("If-None-Match") == etag:
            stream.close()
            return Response(status=HTTP_STATUS_304_NOT_MODIFIED, body=b"")

        _LOG.debug("Serving %d bytes (%s)...", st.st_size, mime_type)
        response = file_response(stream, st.st_size)
        response.headers["Content-Type"] = mime_type
        response.headers["Cache-Control"] = HTTP_CACHE_CONTROL_VALUE
        response.headers["ETag"] = etag
        response.body = _closing(stream, response.body)
        return response


def register_handler_fileserv(
    router: Router, serving: ServingSource, hostname: Optional[str] = None
) -> FileServer:
    """Register the file server on the root wildcard; register it last."""
    _LOG.debug("Register handler on %s", URI_PATTERN)
    handler = FileServer(serving, hostname)
    router.register(URI_PATTERN, "GET", handler)
    return handler