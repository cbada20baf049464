"""Building blocks for the WebDAV handler: header values, paths and response bodies."""

from __future__ import annotations

import enum
import html
import os
import posixpath
import stat as stat_mod
import time
from email.utils import formatdate
from typing import Any, Generic, Iterable, Optional, TypeVar, Union
from xml.sax.saxutils import escape

from .fileserv import make_etag

URI_PATTERN_ROOT = "/.fs"
URI_PATTERN = URI_PATTERN_ROOT + "*"

DEPTH_INFINITE = -1

HTTP_MIME_BINARY = "application/octet-stream"
HTTP_MIME_HTML = "text/html"

DAV_XML_RESP_TYPE = "application/xml"
DAV_XML_RESP_PREAMBLE = '<?xml version="1.0"?>'
DAV_MULTISTAT_PREAMBLE = '<multistatus xmlns="DAV:">'
DAV_MULTISTAT_POSTAMBLE = "</multistatus>"
DAV_TAG_INFINITE_DEPTH = "propfind-finite-depth"

_HTML_HEAD_STYLE = (
    "<style>a{text-decoration:none;cursor:pointer;}a:hover{background:powderblue}</style>"
)
_HTML_BODY_PREAMBLE = "<body><pre>"
_HTML_BODY_POSTAMBLE = "</pre></body></html>"

_FILE_PROP_TMPL = (
    "<response><href>{href}</href><propstat><prop>"
    "<getcontenttype>{ctype}</getcontenttype>"
    "<getcontentlength>{size}</getcontentlength>"
    "<getetag>{etag}</getetag><getlastmodified>{modified}</getlastmodified>"
    "</prop><status>HTTP/1.1 200 OK</status>"
    "</propstat></response>"
)
_COLL_PROP_TMPL = (
    "<response><href>{href}</href><propstat><prop>"
    "<resourcetype><collection/></resourcetype>"
    "<getetag>{etag}</getetag><getlastmodified>{modified}</getlastmodified>"
    "</prop><status>HTTP/1.1 200 OK</status>"
    "</propstat></response>"
)

T = TypeVar("T")


class PVState(enum.Enum):
    """State of a value parsed from a request header."""

    ABSENT = "absent"
    INVALID = "invalid"
    PARSED = "parsed"


class PValue(Generic[T]):
    """A parsed value that may also be absent or invalid."""

    __slots__ = ("state", "_value")

    def __init__(self, state: PVState = PVState.ABSENT, value: Optional[T] = None) -> None:
        if value is not None and state is PVState.ABSENT:
            state = PVState.PARSED
        if state is PVState.PARSED and value is None:
            raise ValueError("a parsed value needs a value")
        if state is not PVState.PARSED and value is not None:
            raise ValueError(f"a {state.value} value cannot hold a value")
        self.state = state
        self._value = value

    @property
    def value(self) -> T:
        if not self.has_value():
            raise LookupError(f"value is {self.state.value}")
        return self._value  # type: ignore[return-value]

    def has_value(self) -> bool:
        return self.state is PVState.PARSED

    def __bool__(self) -> bool:
        return self.has_value()

    def value_or(self, default: T) -> T:
        return self._value if self.has_value() else default  # type: ignore[return-value]

    def state_in(self, states: Iterable[PVState]) -> bool:
        return self.state in tuple(states)

    def value_in(self, values: Iterable[T]) -> bool:
        return self.has_value() and self._value in tuple(values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PValue):
            return NotImplemented
        return self.state is other.state and self._value == other._value

    def __hash__(self) -> int:
        return hash((self.state, self._value))

    def __repr__(self) -> str:
        if self.has_value():
            return f"PValue({self._value!r})"
        return f"PValue({self.state})"


def normalize_path(path: Union[str, "os.PathLike[str]"]) -> str:
    """Normalize a path lexically and drop any trailing separator.

    A result that does not start with '/' is relative, i.e. out of range.
    """
    text = os.fspath(path)
    if text == "":
        return ""
    norm = posixpath.normpath(text)
    if norm.startswith("//"):
        norm = "/" + norm.lstrip("/")
    return norm


def parse_bool_header(value: str) -> PValue[bool]:
    """Parse a WebDAV boolean header ("T" or "F")."""
    if value == "T":
        return PValue(value=True)
    if value == "F":
        return PValue(value=False)
    return PValue(PVState.ABSENT if value == "" else PVState.INVALID)


def parse_depth_header(value: str) -> PValue[int]:
    """Parse a Depth header: "0", "1" or "infinity" (DEPTH_INFINITE)."""
    if value == "0":
        return PValue(value=0)
    if value == "1":
        return PValue(value=1)
    if value == "infinity":
        return PValue(value=DEPTH_INFINITE)
    return PValue(PVState.ABSENT if value == "" else PVState.INVALID)


def http_date(timestamp: float) -> str:
    """Format a timestamp as an HTTP date in GMT."""
    return formatdate(int(timestamp), usegmt=True)


def _listing_date(timestamp: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(int(timestamp))) + " GMT"


def xml_error(element: str, href: str) -> str:
    """Build a DAV error body naming a precondition element and a resource."""
    return f'<error xmlns="DAV:"><{element}><href>{href}</href></{element}></error>'


def item_propstat(href: str, st: Any) -> Optional[str]:
    """Build the PROPFIND response element for one resource.

    ``href`` is the resource path within the DAV tree; the DAV URI root is
    prefixed to it. Returns None for anything but files and directories.
    """
    full_href = escape(URI_PATTERN_ROOT + href)
    modified = http_date(st.st_mtime)
    etag = make_etag(st.st_size, st.st_mtime)
    if stat_mod.S_ISREG(st.st_mode):
        return _FILE_PROP_TMPL.format(
            href=full_href,
            ctype=HTTP_MIME_BINARY,
            size=int(st.st_size),
            etag=etag,
            modified=modified,
        )
    if stat_mod.S_ISDIR(st.st_mode):
        return _COLL_PROP_TMPL.format(href=full_href, etag=etag, modified=modified)
    return None


def _listing_line(name: str, size: str, modified: str) -> str:
    return f"{name[:24]:<24} {size:>8}  {modified:<24}"


def dir_listing_header() -> str:
    """Return the column header line of a directory listing and its underline."""
    line = f"<b>{_listing_line('Name', 'Size', 'Last Modified')}</b>\n"
    return line + "-" * (len(line) - 1) + "\n"


def dir_listing_entry(name: str, st: Any) -> Optional[str]:
    """Return the listing line for one entry, or None if it is not a file or directory."""
    if stat_mod.S_ISREG(st.st_mode):
        size = str(int(st.st_size))[:9]
    elif stat_mod.S_ISDIR(st.st_mode):
        size = "(Folder)"
    else:
        return None
    return f'<a href="./{name}">{_listing_line(name, size, _listing_date(st.st_mtime))}</a>\n'


def dir_listing_page(title: str, entries: Iterable[Optional[str]]) -> str:
    """Assemble a directory listing HTML page; None entries are skipped."""
    parts = [
        "<!DOCTYPE html><html><head><title>",
        html.escape(title),
        "</title>",
        _HTML_HEAD_STYLE,
        "</head>",
        _HTML_BODY_PREAMBLE,
        dir_listing_header(),
    ]
    parts.extend(entry for entry in entries if entry is not None)
    parts.append(_HTML_BODY_POSTAMBLE)
    return "".join(parts)