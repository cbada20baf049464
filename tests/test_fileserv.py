import os

import pytest

from zwappliance.config_model import HttpServerConfig, NetProvision
from zwappliance.fileserv import (
    FileServer,
    infer_mimetype,
    make_etag,
    register_handler_fileserv,
)
from zwappliance.http_core import Request, Router, ServingConfig


def _body(response):
    body = response.body
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    return b"".join(body)


@pytest.fixture
def root(tmp_path):
    (tmp_path / "index.html").write_bytes(b"<html>home</html>")
    (tmp_path / "app.js").write_bytes(b"console.log(1);")
    return tmp_path


def _serving(root, **kwargs):
    return ServingConfig(httpd=HttpServerConfig(root_dir=str(root)), **kwargs)


@pytest.mark.parametrize(
    "uri,expected",
    [
        ("/index.html", "text/html"),
        ("/page.htm", "text/html"),
        ("/photo.jpeg", "image/jpeg"),
        ("/photo.jpg", "image/jpeg"),
        ("/song.midi", "audio/midi"),
        ("/data.json", "application/json"),
        ("/noext", "application/octet-stream"),
        ("/dir.d/file", "application/octet-stream"),
        ("/PHOTO.JPG", "application/octet-stream"),
    ],
)
def test_infer_mimetype(uri, expected):
    assert infer_mimetype(uri) == expected


def test_make_etag_format():
    assert make_etag(5, 0x12345678) == "000005:12345678"


def test_make_etag_keeps_low_size_bits():
    assert make_etag(0x1000000 + 7, 100) == make_etag(7, 100)


def test_serves_file_with_headers(root):
    server = FileServer(_serving(root))
    response = server(Request("GET", "/app.js"))
    assert response.status == "200 OK"
    assert _body(response) == b"console.log(1);"
    st = os.stat(root / "app.js")
    assert response.headers["ETag"] == make_etag(st.st_size, st.st_mtime)
    assert response.headers["Content-Type"] == "text/javascript"
    assert response.headers["Cache-Control"] == "max-age=0, must-revalidate"
    assert response.headers["Content-Length"] == str(st.st_size)


def test_root_serves_index(root):
    response = FileServer(_serving(root))(Request("GET", "/"))
    assert _body(response) == b"<html>home</html>"
    assert response.headers["Content-Type"] == "text/html"


def test_query_string_ignored(root):
    response = FileServer(_serving(root))(Request("GET", "/app.js?v=2"))
    assert _body(response) == b"console.log(1);"


def test_not_modified(root):
    server = FileServer(_serving(root))
    first = server(Request("GET", "/app.js"))
    etag = first.headers["ETag"]
    _body(first)
    second = server(Request("GET", "/app.js", headers={"If-None-Match": etag}))
    assert second.status == "304 Not Modified"
    assert _body(second) == b""


def test_stale_etag_serves_content(root):
    server = FileServer(_serving(root))
    response = server(Request("GET", "/app.js", headers={"If-None-Match": "stale"}))
    assert _body(response) == b"console.log(1);"


def test_missing_file(root):
    response = FileServer(_serving(root))(Request("GET", "/missing.txt"))
    assert response.status.startswith("404")


def test_root_dir_not_configured():
    response = FileServer(ServingConfig())(Request("GET", "/"))
    assert response.status.startswith("500")


def test_uri_without_leading_slash(root):
    response = FileServer(_serving(root))(Request("GET", "index.html"))
    assert response.status.startswith("400")


def test_provisioning_default_page_redirect(root):
    serving = _serving(root, provisioning=True)
    serving.httpd.net_provision = NetProvision(enabled=True, default_page="setup.html")
    response = FileServer(serving)(Request("GET", "/"))
    assert response.status == "302 Found"
    assert response.headers["Location"] == "setup.html"


def test_default_page_ignored_when_not_provisioning(root):
    serving = _serving(root)
    serving.httpd.net_provision = NetProvision(enabled=True, default_page="setup.html")
    response = FileServer(serving)(Request("GET", "/"))
    assert _body(response) == b"<html>home</html>"


def test_captive_redirect_other_host(root):
    server = FileServer(_serving(root, provisioning=True), hostname="zw-device")
    response = server(Request("GET", "/app.js", headers={"Host": "example.com"}))
    assert response.status == "302 Found"
    assert response.headers["Location"] == "http://zw-device/"


def test_captive_matching_host_served(root):
    server = FileServer(_serving(root, provisioning=True), hostname="zw-device")
    response = server(Request("GET", "/app.js", headers={"Host": "ZW-Device"}))
    assert _body(response) == b"console.log(1);"


def test_captive_missing_host(root):
    server = FileServer(_serving(root, provisioning=True), hostname="zw-device")
    response = server(Request("GET", "/app.js"))
    assert response.status.startswith("400")


def test_serving_callable_is_consulted(root):
    current = {"serving": ServingConfig()}
    server = FileServer(lambda: current["serving"])
    assert server(Request("GET", "/")).status.startswith("500")
    current["serving"] = _serving(root)
    assert _body(server(Request("GET", "/"))) == b"<html>home</html>"


def test_register_with_router(root):
    router = Router()
    register_handler_fileserv(router, _serving(root))
    response = router.dispatch(Request("GET", "/app.js"))
    assert _body(response) == b"console.log(1);"
    assert router.dispatch(Request("POST", "/app.js")).status.startswith("405")