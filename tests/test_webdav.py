import os

import pytest

from zwappliance.fileserv import make_etag
from zwappliance.http_core import Request, Router
from zwappliance.webdav import DAVHandler, handle_webdav, register_handler_webdav

HOST = "dev.local"


def make_request(method, uri, headers=None, body=b""):
    all_headers = {"Host": HOST}
    all_headers.update(headers or {})
    return Request(method, uri, all_headers, body)


def body_of(response):
    if isinstance(response.body, (bytes, bytearray)):
        return bytes(response.body)
    return b"".join(response.body)


def dav(root, method, uri, headers=None, body=b""):
    return handle_webdav(make_request(method, uri, headers, body), root)


def dest(path):
    return {"Destination": f"http://{HOST}/.fs{path}"}


@pytest.fixture
def root(tmp_path):
    (tmp_path / "a.txt").write_bytes(b"alpha")
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / "x.txt").write_bytes(b"xray")
    return tmp_path


def test_create_normalizes_path(root):
    handler = DAVHandler.create(make_request("GET", "/.fs/a/../b/"), root)
    assert isinstance(handler, DAVHandler)
    assert handler.fs_path == "/b"
    assert handler.host_prefix == "http://dev.local"


def test_bad_request_path(root):
    response = dav(root, "GET", "/.fsx")
    assert response.status.startswith("400")
    assert body_of(response) == b"Bad request path"


def test_missing_host(root):
    response = handle_webdav(Request("GET", "/.fs/a.txt"), root)
    assert response.status.startswith("400")
    assert body_of(response) == b"Missing host header"


def test_traversal_stays_in_root(root):
    response = dav(root, "GET", "/.fs/../../etc/passwd")
    assert response.status.startswith("404")


def test_get_file(root):
    response = dav(root, "GET", "/.fs/a.txt")
    st = os.stat(root / "a.txt")
    assert response.status.startswith("200")
    assert body_of(response) == b"alpha"
    assert response.headers["Content-Length"] == str(st.st_size)
    assert response.headers["ETag"] == make_etag(st.st_size, st.st_mtime)
    assert response.headers["Cache-Control"] == "no-cache"


def test_head_file_has_no_body(root):
    response = dav(root, "HEAD", "/.fs/a.txt")
    assert body_of(response) == b""
    assert response.headers["Content-Length"] == str(len(b"alpha"))


def test_get_missing(root):
    assert dav(root, "GET", "/.fs/none.txt").status.startswith("404")


def test_get_dir_redirects_without_slash(root):
    response = dav(root, "GET", "/.fs/sub")
    assert response.status.startswith("302")
    assert response.headers["Location"] == "/.fs/sub/"


def test_get_dir_listing(root):
    response = dav(root, "GET", "/.fs/sub/")
    assert response.headers["Content-Type"] == "text/html"
    assert b'href="./x.txt"' in body_of(response)


def test_put_creates_then_replaces(root):
    first = dav(root, "PUT", "/.fs/new.txt", body=b"one")
    assert first.status == "201 Created"
    second = dav(root, "PUT", "/.fs/new.txt", body=b"two")
    assert second.status.startswith("204")
    assert (root / "new.txt").read_bytes() == b"two"


def test_put_on_directory_conflicts(root):
    assert dav(root, "PUT", "/.fs/sub", body=b"x").status == "409 Conflict"


def test_mkcol(root):
    assert dav(root, "MKCOL", "/.fs/made").status == "201 Created"
    assert (root / "made").is_dir()
    assert dav(root, "MKCOL", "/.fs/made").status == "409 Conflict"
    assert dav(root, "MKCOL", "/.fs/other", body=b"x").status == "415 Unsupported Media Type"
    assert dav(root, "MKCOL", "/.fs/no/such").status == "409 Conflict"


def test_delete_file_and_dir(root):
    assert dav(root, "DELETE", "/.fs/a.txt").status.startswith("204")
    assert not (root / "a.txt").exists()
    assert dav(root, "DELETE", "/.fs/sub", {"Depth": "0"}).status.startswith("400")
    assert (root / "sub").exists()
    assert dav(root, "DELETE", "/.fs/sub").status.startswith("204")
    assert not (root / "sub").exists()


def test_copy_file(root):
    response = dav(root, "COPY", "/.fs/a.txt", dest("/b.txt"))
    assert response.status == "201 Created"
    assert (root / "b.txt").read_bytes() == b"alpha"
    assert (root / "a.txt").exists()
    refused = dav(root, "COPY", "/.fs/a.txt", {**dest("/b.txt"), "Overwrite": "F"})
    assert refused.status == "412 Precondition Failed"
    replaced = dav(root, "COPY", "/.fs/a.txt", dest("/b.txt"))
    assert replaced.status.startswith("204")


@pytest.mark.parametrize(
    "headers, message",
    [
        ({}, b"Missing destination header"),
        ({"Destination": "http://elsewhere/.fs/b.txt"}, b"Invalid destination header"),
        ({"Destination": f"http://{HOST}/other/b.txt"}, b"Invalid destination header"),
        ({**dest("/a.txt")}, b"Destination same as source"),
        ({**dest("/b.txt"), "Overwrite": "X"}, b"Invalid header data"),
        ({**dest("/b.txt"), "Depth": "1"}, b"Unsupported depth on file"),
    ],
)
def test_copy_errors(root, headers, message):
    response = dav(root, "COPY", "/.fs/a.txt", headers)
    assert response.status.startswith("400")
    assert body_of(response) == message


def test_copy_missing_parent(root):
    response = dav(root, "COPY", "/.fs/a.txt", dest("/no/b.txt"))
    assert response.status == "409 Conflict"


def test_move_dir(root):
    response = dav(root, "MOVE", "/.fs/sub", dest("/moved"))
    assert response.status == "201 Created"
    assert not (root / "sub").exists()
    assert (root / "moved" / "x.txt").read_bytes() == b"xray"


def test_move_dir_depth_zero_rejected(root):
    response = dav(root, "MOVE", "/.fs/sub", {**dest("/moved"), "Depth": "0"})
    assert body_of(response) == b"Unsupported depth on dir"


def test_copy_dir_depth_zero(root):
    response = dav(root, "COPY", "/.fs/sub", {**dest("/shell"), "Depth": "0"})
    assert response.status == "201 Created"
    assert os.listdir(root / "shell") == []


def test_copy_dir_recursive(root):
    response = dav(root, "COPY", "/.fs/sub", dest("/copy"))
    assert response.status == "201 Created"
    assert (root / "copy" / "x.txt").read_bytes() == b"xray"
    assert (root / "sub" / "x.txt").exists()


def test_options(root):
    response = dav(root, "OPTIONS", "/.fs/")
    assert response.headers["DAV"] == "1"
    assert "PROPFIND" in response.headers["Allow"].split(",")
    assert response.status.startswith("204")


def test_propfind(root):
    deep = dav(root, "PROPFIND", "/.fs/sub", {"Depth": "1"})
    assert deep.status.startswith("207")
    text = body_of(deep).decode()
    assert "<href>/.fs/sub</href>" in text
    assert "<href>/.fs/sub/x.txt</href>" in text
    shallow = body_of(dav(root, "PROPFIND", "/.fs/sub", {"Depth": "0"})).decode()
    assert "x.txt" not in shallow


def test_propfind_depth_errors(root):
    assert dav(root, "PROPFIND", "/.fs/sub").status.startswith("400")
    infinite = dav(root, "PROPFIND", "/.fs/sub", {"Depth": "infinity"})
    assert infinite.status.startswith("403")
    assert b"propfind-finite-depth" in body_of(infinite)


def test_proppatch_refused(root):
    response = dav(root, "PROPPATCH", "/.fs/a.txt")
    assert body_of(response) == b"Disallowed by file system"


def test_unsupported_method(root):
    assert dav(root, "PATCH", "/.fs/a.txt").status.startswith("405")


def test_register_handler(root):
    router = Router()
    register_handler_webdav(router, root)
    response = router.dispatch(make_request("GET", "/.fs/a.txt"))
    assert body_of(response) == b"alpha"