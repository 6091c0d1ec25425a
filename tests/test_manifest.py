import io
import os
import zipfile
from contextlib import contextmanager

import pytest
import requests

from blobsaver import manifest
from blobsaver.errors import FormField, Reportable, Unreportable

IPSW_URL = "https://updates.cdn-apple.com/2023/iPhone_16.7.2_Restore.ipsw"
MANIFEST_BYTES = b"<plist><dict><key>ProductBuildVersion</key><string>20H115</string></dict></plist>"


def make_ipsw(with_manifest=True):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as z:
        z.writestr("Restore.plist", b"<plist/>")
        z.writestr("Firmware/all_flash/LLB.img4", os.urandom(2048))
        if with_manifest:
            z.writestr("BuildManifest.plist", MANIFEST_BYTES)
    return buf.getvalue()


def serve_archive(monkeypatch, data):
    @contextmanager
    def fake_open(url, session=None, timeout=None):
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            yield archive
    monkeypatch.setattr(manifest, "open_remote_zip", fake_open)


class FakeResponse:
    def __init__(self, status_code, content=b"", headers=None, url=IPSW_URL):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.url = url

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        pass


class StreamResponse(FakeResponse):
    """A streamed 200 that counts how many bytes the reader actually pulled."""
    def __init__(self, data):
        super().__init__(200)
        self.data = data
        self.served = 0
        self.closed = False

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.data), chunk_size):
            chunk = self.data[start:start + chunk_size]
            self.served += len(chunk)
            yield chunk

    def close(self):
        self.closed = True


class StreamSession:
    """A server without range support: GET always sends the whole file."""
    def __init__(self, data, accept_ranges=False):
        self.data = data
        self.accept_ranges = accept_ranges
        self.range_requests = 0
        self.streams = []

    def head(self, url, **kwargs):
        headers = {"Content-Length": str(len(self.data))}
        if self.accept_ranges:
            headers["Accept-Ranges"] = "bytes"
        return FakeResponse(200, headers=headers)

    def get(self, url, headers=None, stream=False, **kwargs):
        if headers and "Range" in headers:
            # advertised, but ignored
            self.range_requests += 1
            return FakeResponse(200, self.data)
        response = StreamResponse(self.data)
        self.streams.append(response)
        return response


def make_streamed_ipsw(manifest_first, compression=zipfile.ZIP_STORED, filler=2 * 1024 * 1024):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as z:
        if manifest_first:
            z.writestr("BuildManifest.plist", MANIFEST_BYTES)
        z.writestr("Restore.plist", b"<plist/>" * 100)
        z.writestr("Firmware/dfu/iBSS.im4p", os.urandom(filler))
        if not manifest_first:
            z.writestr("BuildManifest.plist", MANIFEST_BYTES)
    return buf.getvalue()


class RangeSession:
    """Serves a byte string the way a CDN answers HEAD and Range requests."""
    def __init__(self, data):
        self.data = data
        self.ranges = []

    def head(self, url, **kwargs):
        return FakeResponse(200, headers={"Content-Length": str(len(self.data)), "Accept-Ranges": "bytes"})

    def get(self, url, headers=None, **kwargs):
        start, end = headers["Range"].split("=")[1].split("-")
        self.ranges.append((int(start), int(end)))
        return FakeResponse(206, self.data[int(start):int(end) + 1])


@pytest.mark.parametrize("url", [
    "ftp://example.com/x.zip",
    "https://example.com/x.ipsw",
    "https://updates.cdn-apple.com/x.zip",
    "https://updates.cdn-APPLE.com/x.ipsw",
    "",
])
def test_invalid_urls_rejected(url):
    with pytest.raises(Unreportable) as exc:
        manifest.validate_ipsw_url(url)
    assert exc.value.invalid_element is FormField.IPSW_URL


def test_valid_url_accepted():
    assert manifest.validate_ipsw_url(IPSW_URL) == IPSW_URL


def test_invalid_url_raises_before_network(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("network should not be touched")
    monkeypatch.setattr(manifest, "open_remote_zip", boom)
    with pytest.raises(Unreportable):
        manifest.fetch_build_manifest("ftp://example.com/x.zip")


def test_fetch_copies_manifest(monkeypatch):
    serve_archive(monkeypatch, make_ipsw())
    path = manifest.fetch_build_manifest(IPSW_URL)
    try:
        assert path.name.startswith("BuildManifest")
        assert path.read_bytes() == MANIFEST_BYTES
        assert manifest.read_build_id(path) == "20H115"
    finally:
        os.remove(path)


def test_missing_manifest_is_reportable_and_cleans_up(monkeypatch, tmp_path):
    monkeypatch.setattr(manifest.tempfile, "tempdir", str(tmp_path))
    serve_archive(monkeypatch, make_ipsw(with_manifest=False))
    with pytest.raises(Reportable) as exc:
        manifest.fetch_build_manifest(IPSW_URL)
    assert exc.value.invalid_element is FormField.IPSW_URL
    assert list(tmp_path.iterdir()) == []


def test_corrupt_archive_is_reportable(monkeypatch, tmp_path):
    monkeypatch.setattr(manifest.tempfile, "tempdir", str(tmp_path))

    @contextmanager
    def broken(url, session=None, timeout=None):
        raise zipfile.BadZipFile("File is not a zip file")
        yield

    monkeypatch.setattr(manifest, "open_remote_zip", broken)
    with pytest.raises(Reportable) as exc:
        manifest.fetch_build_manifest(IPSW_URL)
    assert isinstance(exc.value.original_exception, zipfile.BadZipFile)
    assert list(tmp_path.iterdir()) == []


def test_range_requests_fetch_only_part_of_archive():
    data = make_ipsw()
    session = RangeSession(data)
    with manifest.open_remote_zip(IPSW_URL, session=session) as archive:
        assert archive.read("BuildManifest.plist") == MANIFEST_BYTES
    assert session.ranges


def test_unreachable_url_is_invalid(monkeypatch):
    class DeadSession:
        def head(self, url, **kwargs):
            return FakeResponse(404)

    with pytest.raises(Unreportable):
        with manifest.open_remote_zip(IPSW_URL, session=DeadSession()):
            pass


def test_streaming_stops_once_manifest_is_read():
    data = make_streamed_ipsw(manifest_first=True)
    session = StreamSession(data)

    path = manifest.fetch_build_manifest(IPSW_URL, session=session)
    try:
        assert path.read_bytes() == MANIFEST_BYTES
    finally:
        os.remove(path)

    response = session.streams[0]
    assert response.served <= manifest.STREAM_CHUNK_SIZE
    assert response.served < len(data) // 10
    assert response.closed


def test_streaming_skips_deflated_entries_before_manifest():
    data = make_streamed_ipsw(manifest_first=False, compression=zipfile.ZIP_DEFLATED, filler=256 * 1024)
    session = StreamSession(data)
    with manifest.open_remote_zip(IPSW_URL, session=session) as archive:
        info = archive.getinfo("BuildManifest.plist")
        with archive.open(info) as f:
            assert f.read() == MANIFEST_BYTES
    assert session.streams[0].closed


def test_streaming_without_manifest_is_reportable(monkeypatch, tmp_path):
    monkeypatch.setattr(manifest.tempfile, "tempdir", str(tmp_path))
    session = StreamSession(make_ipsw(with_manifest=False))
    with pytest.raises(Reportable) as exc:
        manifest.fetch_build_manifest(IPSW_URL, session=session)
    assert exc.value.invalid_element is FormField.IPSW_URL
    assert list(tmp_path.iterdir()) == []


def test_truncated_stream_is_reportable(tmp_path, monkeypatch):
    monkeypatch.setattr(manifest.tempfile, "tempdir", str(tmp_path))
    data = make_streamed_ipsw(manifest_first=False, filler=4096)
    session = StreamSession(data[:len(data) // 2])
    with pytest.raises(Reportable) as exc:
        manifest.fetch_build_manifest(IPSW_URL, session=session)
    assert isinstance(exc.value.original_exception, zipfile.BadZipFile)
    assert list(tmp_path.iterdir()) == []


def test_ignored_range_header_falls_back_to_streaming():
    data = make_streamed_ipsw(manifest_first=True)
    session = StreamSession(data, accept_ranges=True)

    path = manifest.fetch_build_manifest(IPSW_URL, session=session)
    try:
        assert path.read_bytes() == MANIFEST_BYTES
    finally:
        os.remove(path)

    assert session.range_requests == 1
    assert session.streams[0].served < len(data) // 10


def test_range_reader_rejects_full_body():
    data = make_ipsw()
    reader = manifest.HttpRangeReader(IPSW_URL, len(data), StreamSession(data, accept_ranges=True))
    with pytest.raises(manifest.RangeIgnored):
        reader.read(16)
    assert reader.range_ignored
    assert reader.tell() == 0


def test_own_session_is_closed(monkeypatch):
    opened = []

    class ClosingSession(StreamSession):
        def __init__(self):
            super().__init__(make_streamed_ipsw(manifest_first=True, filler=1024))
            self.closed = False
            opened.append(self)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            self.closed = True

    monkeypatch.setattr(manifest.requests, "Session", ClosingSession)
    path = manifest.fetch_build_manifest(IPSW_URL)
    os.remove(path)
    assert [s.closed for s in opened] == [True]
