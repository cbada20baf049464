"""WebDAV access to a directory tree, served under ``/.fs``."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
from typing import BinaryIO, Callable, Iterator, Optional, Union
from urllib.parse import unquote

from .fileserv import make_etag
from .http_core import Request, Response, Router, error_response
from .webdav_support import (
    DAV_MULTISTAT_POSTAMBLE,
    DAV_MULTISTAT_PREAMBLE,
    DAV_TAG_INFINITE_DEPTH,
    DAV_XML_RESP_PREAMBLE,
    DAV_XML_RESP_TYPE,
    DEPTH_INFINITE,
    HTTP_MIME_BINARY,
    HTTP_MIME_HTML,
    URI_PATTERN,
    URI_PATTERN_ROOT,
    PValue,
    PVState,
    dir_listing_entry,
    dir_listing_page,
    http_date,
    item_propstat,
    normalize_path,
    parse_bool_header,
    parse_depth_header,
    xml_error,
)

_LOG = logging.getLogger("zwappliance.httpd.dav")

URI_SCHEME_SEP = "http://"

STATUS_201_CREATED = "201 Created"
STATUS_204_NO_CONTENT = "204 No Content"
STATUS_207_MULTI_STATUS = "207 Multi-Status"
STATUS_302_FOUND = "302 Found"
STATUS_409_CONFLICT = "409 Conflict"
STATUS_412_PRECONDITION_FAILED = "412 Precondition Failed"
STATUS_415_UNSUPPORTED_MEDIA_TYPE = "415 Unsupported Media Type"

CACHE_CONTROL_VALUE = "no-cache"

ALLOWED_METHODS = (
    "COPY",
    "DELETE",
    "GET",
    "HEAD",
    "MKCOL",
    "MOVE",
    "OPTIONS",
    "PROPFIND",
    "PROPPATCH",
    "PUT",
)

_CHUNK_SIZE = 1024

Root = Union[str, "os.PathLike[str]"]


def _uri_path(uri: str) -> str:
    return uri.split("?", 1)[0]


def _empty(status: str, headers: Optional[dict[str, str]] = None) -> Response:
    return Response(status=status, headers=dict(headers or {}), body=b"")


def _fs_error(exc: OSError) -> Response:
    return error_response(500, exc.strerror or str(exc))


def _is_empty(path: str) -> bool:
    if os.path.isdir(path):
        with os.scandir(path) as entries:
            return next(entries, None) is None
    return os.path.getsize(path) == 0


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


def _common_headers(st: os.stat_result) -> dict[str, str]:
    return {
        "Last-Modified": http_date(st.st_mtime),
        "ETag": make_etag(st.st_size, st.st_mtime),
    }


def _stream(stream: BinaryIO, size: int) -> Iterator[bytes]:
    remaining = size
    try:
        while True:
            chunk = stream.read(_CHUNK_SIZE)
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
        if remaining > 0:
            _LOG.warning("File read short by %d bytes", remaining)
    finally:
        stream.close()


class DAVHandler:
    """Serves one WebDAV request against the tree below ``root``.

    ``fs_path`` is the normalized path within the DAV tree, starting with '/'.
    """

    def __init__(self, request: Request, fs_path: str, host_prefix: str, root: Root) -> None:
        self.request = request
        self.fs_path = fs_path
        self.host_prefix = host_prefix
        self.root = os.fspath(root)

    @classmethod
    def create(cls, request: Request, root: Root) -> Union["DAVHandler", Response]:
        """Prepare a handler for the request, or return the error response."""
        path_frag = _uri_path(request.uri)[len(URI_PATTERN_ROOT):]
        if path_frag and not path_frag.startswith("/"):
            return error_response(400, "Bad request path")
        fs_path = normalize_path("/" + path_frag[1:] if path_frag else "/")
        _LOG.info("[%s] %s -> %s", request.method, request.uri, fs_path)
        if not fs_path.startswith("/"):
            return error_response(400, "Path out-of-range")

        host = request.header("Host")
        if not host:
            return error_response(400, "Missing host header")
        return cls(request, fs_path, URI_SCHEME_SEP + host, root)

    def run(self) -> Response:
        """Carry out the request and return the response."""
        handlers: dict[str, Callable[[], Response]] = {
            "COPY": lambda: self._reloc(True),
            "MOVE": lambda: self._reloc(False),
            "DELETE": self._delete,
            "GET": lambda: self._send(True),
            "HEAD": lambda: self._send(False),
            "MKCOL": self._mkcol,
            "OPTIONS": self._options,
            "PROPFIND": self._propfind,
            "PROPPATCH": self._proppatch,
            "PUT": self._put,
        }
        handler = handlers.get(self.request.method)
        if handler is None:
            return error_response(405, "Unsupported method")
        return handler()

    # -- helpers ---------------------------------------------------------

    def _local(self, path: str) -> str:
        return os.path.join(self.root, path.lstrip("/"))

    @property
    def _src(self) -> str:
        return self._local(self.fs_path)

    def _destination(self) -> PValue[str]:
        dest_uri = self.request.header("Destination")
        if not dest_uri:
            return PValue(PVState.ABSENT)
        prefix = self.host_prefix
        if not dest_uri.startswith(prefix) or dest_uri[len(prefix):len(prefix) + 1] != "/":
            _LOG.warning("! Unsupported remote destination")
            return PValue(PVState.INVALID)
        root_path = _uri_path(dest_uri[len(prefix):])
        rel_path = root_path[len(URI_PATTERN_ROOT):]
        if not root_path.startswith(URI_PATTERN_ROOT) or (rel_path and not rel_path.startswith("/")):
            _LOG.warning("! Destination path out of range")
            return PValue(PVState.INVALID)
        result = normalize_path(unquote(rel_path))
        _LOG.debug("Destination Path = %s", result)
        if not result.startswith("/"):
            _LOG.warning("! Destination out-of-range")
            return PValue(PVState.INVALID)
        return PValue(value=result)

    # -- COPY / MOVE -----------------------------------------------------

    def _reloc(self, duplicate: bool) -> Response:
        src = self._src
        if not os.path.exists(src):
            return error_response(404, "Source does not exist")
        overwrite = parse_bool_header(self.request.header("Overwrite"))
        depth = parse_depth_header(self.request.header("Depth"))
        if PVState.INVALID in (overwrite.state, depth.state):
            return error_response(400, "Invalid header data")

        dest_path = self._destination()
        if dest_path.state is PVState.ABSENT:
            return error_response(400, "Missing destination header")
        if dest_path.state is PVState.INVALID:
            return error_response(400, "Invalid destination header")
        if dest_path.value == self.fs_path:
            return error_response(400, "Destination same as source")
        dest = self._local(dest_path.value)

        if os.path.isfile(src):
            if depth.value_or(0) != 0:
                return error_response(400, "Unsupported depth on file")
            return self._reloc_file(src, dest, overwrite, duplicate)
        if os.path.isdir(src):
            return self._reloc_dir(src, dest, overwrite, depth, duplicate)
        return error_response(501, "Unsupported source")

    @staticmethod
    def _reloc_file(src: str, dest: str, overwrite: PValue[bool], duplicate: bool) -> Response:
        dest_exists = os.path.exists(dest)
        if dest_exists:
            if not overwrite.value_or(True):
                return error_response(STATUS_412_PRECONDITION_FAILED, "Destination file exists")
        elif not os.path.isdir(os.path.dirname(dest)):
            return error_response(STATUS_409_CONFLICT, "Destination parent dir DNE")

        try:
            if duplicate:
                shutil.copyfile(src, dest)
            else:
                os.replace(src, dest)
        except OSError as exc:
            return _fs_error(exc)
        return _empty(STATUS_204_NO_CONTENT if dest_exists else STATUS_201_CREATED)

    @staticmethod
    def _reloc_dir(
        src: str, dest: str, overwrite: PValue[bool], depth: PValue[int], duplicate: bool
    ) -> Response:
        trans_closure = depth.value_or(DEPTH_INFINITE) == DEPTH_INFINITE
        if not trans_closure and (not duplicate or depth.value != 0):
            return error_response(400, "Unsupported depth on dir")

        dest_exists = os.path.exists(dest)
        if dest_exists:
            if not overwrite.value_or(True):
                return error_response(STATUS_412_PRECONDITION_FAILED, "Destination dir exists")
            if trans_closure:
                try:
                    if not _is_empty(dest):
                        _remove_all(dest)
                except OSError as exc:
                    return _fs_error(exc)
        elif not os.path.isdir(os.path.dirname(dest)):
            return error_response(STATUS_409_CONFLICT, "Destination parent dir DNE")

        if not trans_closure:
            # Depth 0 copy: only the collection itself is created.
            if dest_exists:
                return _empty(STATUS_204_NO_CONTENT)
            try:
                os.mkdir(dest)
            except OSError as exc:
                return _fs_error(exc)
            return _empty(STATUS_201_CREATED)

        try:
            if duplicate:
                shutil.copytree(src, dest, dirs_exist_ok=True)
            else:
                os.rename(src, dest)
        except (OSError, shutil.Error) as exc:
            if isinstance(exc, OSError) and not isinstance(exc, shutil.Error):
                return _fs_error(exc)
            return error_response(500, str(exc))
        return _empty(STATUS_204_NO_CONTENT if dest_exists else STATUS_201_CREATED)

    # -- DELETE ----------------------------------------------------------

    def _delete(self) -> Response:
        src = self._src
        if not os.path.exists(src):
            return error_response(404, "Source does not exist")
        depth = parse_depth_header(self.request.header("Depth"))
        if depth.state is PVState.INVALID:
            return error_response(400, "Invalid depth header")
        if os.path.isfile(src):
            if depth.value_or(0) != 0:
                return error_response(400, "Unsupported delete depth on file")
            try:
                os.remove(src)
            except OSError as exc:
                return _fs_error(exc)
            return _empty(STATUS_204_NO_CONTENT)
        if os.path.isdir(src):
            if depth.value_or(DEPTH_INFINITE) != DEPTH_INFINITE:
                return error_response(400, "Invalid depth for delete dir")
            try:
                shutil.rmtree(src)
            except OSError as exc:
                return _fs_error(exc)
            return _empty(STATUS_204_NO_CONTENT)
        return error_response(501, "Unsupported source")

    # -- GET / HEAD ------------------------------------------------------

    def _send(self, content: bool) -> Response:
        src = self._src
        if not os.path.exists(src):
            return error_response(404, "Source does not exist")
        if os.path.isfile(src):
            return self._send_file(src, content)
        if os.path.isdir(src):
            return self._send_dir(src, content)
        return error_response(501, "Unsupported source")

    @staticmethod
    def _send_file(src: str, content: bool) -> Response:
        try:
            stream = open(src, "rb")
        except OSError:
            return error_response(500, "Unable to open file")
        try:
            st = os.fstat(stream.fileno())
        except OSError:
            stream.close()
            return error_response(500, "Unable to get file stat")

        headers = _common_headers(st)
        headers["Content-Length"] = str(st.st_size)
        if not content:
            stream.close()
            return Response(headers=headers, body=b"")
        headers["Content-Type"] = HTTP_MIME_BINARY
        headers["Cache-Control"] = CACHE_CONTROL_VALUE
        _LOG.debug("Sending %d bytes...", st.st_size)
        return Response(headers=headers, body=_stream(stream, st.st_size))

    def _send_dir(self, src: str, content: bool) -> Response:
        uri_path = _uri_path(self.request.uri)
        if not uri_path.endswith("/"):
            return _empty(STATUS_302_FOUND, {"Location": uri_path + "/"})
        try:
            st = os.stat(src)
        except OSError:
            return error_response(500, "Unable to get directory stat")
        headers = _common_headers(st)
        if not content:
            return Response(headers=headers, body=b"")

        headers["Content-Type"] = HTTP_MIME_HTML
        headers["Cache-Control"] = CACHE_CONTROL_VALUE
        entries = []
        for name in sorted(os.listdir(src)):
            try:
                entry_st = os.stat(os.path.join(src, name))
            except OSError:
                _LOG.warning("Unable to stat %s", name)
                continue
            entries.append(dir_listing_entry(name, entry_st))
        page = dir_listing_page(f"Directory contents of '{self.fs_path}'", entries)
        return Response(headers=headers, body=page.encode("utf-8"))

    # -- MKCOL / OPTIONS -------------------------------------------------

    def _mkcol(self) -> Response:
        src = self._src
        if os.path.exists(src):
            return error_response(STATUS_409_CONFLICT, "Target already exists")
        if self.request.content_len != 0:
            return error_response(STATUS_415_UNSUPPORTED_MEDIA_TYPE, "Content not accepted")
        if not os.path.isdir(os.path.dirname(src.rstrip("/"))):
            return error_response(STATUS_409_CONFLICT, "Target parent dir DNE")
        try:
            os.mkdir(src)
        except OSError as exc:
            return _fs_error(exc)
        return _empty(STATUS_201_CREATED)

    @staticmethod
    def _options() -> Response:
        return _empty(
            STATUS_204_NO_CONTENT,
            {
                "DAV": "1",
                "Accept-Ranges": "none",
                "Allow": ",".join(ALLOWED_METHODS),
            },
        )

    # -- PROPFIND / PROPPATCH --------------------------------------------

    def _propfind(self) -> Response:
        src = self._src
        if not os.path.exists(src):
            return error_response(404, "Source does not exist")
        depth = parse_depth_header(self.request.header("Depth"))
        if not depth:
            _LOG.warning("Depth header state: %s", depth.state.value)
            return error_response(400, "Missing or invalid depth header")
        if depth.value == DEPTH_INFINITE:
            href = self.host_prefix + self.request.uri
            return error_response(403, xml_error(DAV_TAG_INFINITE_DEPTH, href))
        # The request body (property filters) is ignored: every property is reported.
        try:
            st = os.stat(src)
        except OSError:
            return error_response(500, "Unable to stat")

        parts = [DAV_XML_RESP_PREAMBLE, DAV_MULTISTAT_PREAMBLE]
        item = item_propstat(self.fs_path, st)
        if item is not None:
            parts.append(item)
        if depth.value != 0 and os.path.isdir(src):
            for name in sorted(os.listdir(src)):
                try:
                    entry_st = os.stat(os.path.join(src, name))
                except OSError:
                    _LOG.warning("Unable to stat %s", name)
                    continue
                entry = item_propstat(posixpath.join(self.fs_path, name), entry_st)
                if entry is not None:
                    parts.append(entry)
        parts.append(DAV_MULTISTAT_POSTAMBLE)
        return Response(
            status=STATUS_207_MULTI_STATUS,
            headers={"Content-Type": DAV_XML_RESP_TYPE},
            body="".join(parts).encode("utf-8"),
        )

    def _proppatch(self) -> Response:
        if not os.path.exists(self._src):
            return error_response(404, "Source does not exist")
        # Property updates are not supported; they are refused as a whole.
        return error_response(403, "Disallowed by file system")

    # -- PUT -------------------------------------------------------------

    def _put(self) -> Response:
        dest = self._src
        dest_exists = os.path.exists(dest)
        if dest_exists and not os.path.isfile(dest):
            return error_response(STATUS_409_CONFLICT, "Target already exists")
        try:
            with open(dest, "wb") as stream:
                stream.write(self.request.body)
        except OSError:
            return error_response(500, "Unable to open file")
        declared = self.request.header("Content-Length")
        if declared.isdigit() and int(declared) != self.request.content_len:
            _LOG.warning(
                "Receive short by %d bytes", int(declared) - self.request.content_len
            )
            return error_response(500, "Not all data received")
        return _empty(STATUS_204_NO_CONTENT if dest_exists else STATUS_201_CREATED)


def handle_webdav(request: Request, root: Root) -> Response:
    """Serve a WebDAV request against the tree below ``root``."""
    handler = DAVHandler.create(request, root)
    if isinstance(handler, Response):
        return handler
    return handler.run()


def register_handler_webdav(router: Router, root: Root) -> Callable[[Request], Response]:
    """Register the WebDAV handler for every method under ``/.fs``."""
    _LOG.debug("Register handler on %s", URI_PATTERN)

    def handler(request: Request) -> Response:
        return handle_webdav(request, root)

    router.register(URI_PATTERN, None, handler)
    return handler