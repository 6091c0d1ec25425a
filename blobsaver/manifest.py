# manifest.py
"""
Fetching BuildManifest.plist out of a remote .ipsw for beta/custom builds.

An .ipsw is a ZIP archive of several gigabytes. When the server honours HTTP
range requests only the central directory and the manifest entry are
downloaded. Otherwise the archive is streamed and its local file headers are
read in order; the download stops as soon as the manifest entry has been read.
"""
from __future__ import annotations

import io
import logging
import os
import plistlib
import re
import shutil
import struct
import tempfile
import zipfile
import zlib
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, NamedTuple, Optional

import requests

from blobsaver.errors import FormField, Reportable, invalid_url_error

logger = logging.getLogger(__name__)

IPSW_URL_PATTERN = re.compile(r"https?://.*apple.*\.ipsw")
MANIFEST_ENTRY = "BuildManifest.plist"
USER_AGENT = "blobsaver"
DEFAULT_TIMEOUT = 30
RANGE_BUFFER_SIZE = 64 * 1024
STREAM_CHUNK_SIZE = 64 * 1024

LOCAL_HEADER = struct.Struct("<4s5H3I2H")
LOCAL_HEADER_SIGNATURE = b"PK\x03\x04"
DATA_DESCRIPTOR_SIGNATURE = b"PK\x07\x08"
ZIP64_EXTRA_ID = 0x0001
FLAG_DATA_DESCRIPTOR = 0x08


def validate_ipsw_url(url: Optional[str]) -> str:
    if not url or not IPSW_URL_PATTERN.fullmatch(url):
        raise invalid_url_error(url or "")
    return url


class RangeIgnored(OSError):
    """The server advertised range support but sent the whole body."""


class HttpRangeReader(io.RawIOBase):
    """Seekable read-only view of a remote file, backed by HTTP range requests."""

    def __init__(self, url: str, size: int, session: requests.Session, timeout: float = DEFAULT_TIMEOUT):
        super().__init__()
        self.url = url
        self.size = size
        self.session = session
        self.timeout = timeout
        self._pos = 0
        # ZipFile turns read errors into BadZipFile, so the cause is kept here too
        self.range_ignored = False

    def readable(self):
        return True

    def seekable(self):
        return True

    def tell(self):
        return self._pos

    def seek(self, offset, whence=io.SEEK_SET):
        if whence == io.SEEK_SET:
            pos = offset
        elif whence == io.SEEK_CUR:
            pos = self._pos + offset
        elif whence == io.SEEK_END:
            pos = self.size + offset
        else:
            raise ValueError(f"invalid whence: {whence}")
        if pos < 0:
            raise ValueError("negative seek position")
        self._pos = pos
        return self._pos

    def readinto(self, buffer):
        if self._pos >= self.size:
            return 0
        end = min(self._pos + len(buffer), self.size) - 1
        with self.session.get(
            self.url,
            headers={"Range": f"bytes={self._pos}-{end}", "User-Agent": USER_AGENT},
            timeout=self.timeout,
            stream=True,
        ) as response:
            response.raise_for_status()
            if response.status_code != 206:
                self.range_ignored = True
                raise RangeIgnored(f"{self.url} answered a range request with {response.status_code}")
            data = response.content
        n = len(data)
        buffer[:n] = data
        self._pos += n
        return n


class StreamEntry(NamedTuple):
    filename: str
    flags: int
    method: int
    crc: int
    compress_size: int
    file_size: int


class ZipStreamReader:
    """
    Forward-only reader over the local file headers of a ZIP byte stream.

    Offers the two calls fetch_build_manifest needs from ZipFile: getinfo()
    reads ahead until the named entry's header, open() returns its data.
    Entries before it are read and discarded; nothing after it is read.
    """

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._buffer = b""
        self._eof = False

    # ---------- raw stream ----------
    def _fill(self, n: int) -> None:
        while len(self._buffer) < n and not self._eof:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self._eof = True
                break
            self._buffer += chunk

    def _read(self, n: int) -> bytes:
        self._fill(n)
        data, self._buffer = self._buffer[:n], self._buffer[n:]
        return data

    def _read_exact(self, n: int) -> bytes:
        data = self._read(n)
        if len(data) != n:
            raise zipfile.BadZipFile("Truncated ZIP stream")
        return data

    def _skip(self, n: int) -> None:
        while n > 0:
            step = min(n, STREAM_CHUNK_SIZE)
            self._read_exact(step)
            n -= step

    def _unread(self, data: bytes) -> None:
        self._buffer = data + self._buffer

    # ---------- entries ----------
    def _next_entry(self) -> Optional[StreamEntry]:
        signature = self._read(4)
        if signature != LOCAL_HEADER_SIGNATURE:
            # central directory (or nothing): no more local entries
            return None
        (_, _, flags, method, _, _, crc, compress_size, file_size,
         name_len, extra_len) = LOCAL_HEADER.unpack(signature + self._read_exact(LOCAL_HEADER.size - 4))
        raw_name = self._read_exact(name_len)
        extra = self._read_exact(extra_len)
        if 0xFFFFFFFF in (compress_size, file_size):
            file_size, compress_size = self._zip64_sizes(extra, file_size, compress_size)
        encoding = "utf-8" if flags & 0x800 else "cp437"
        return StreamEntry(raw_name.decode(encoding), flags, method, crc, compress_size, file_size)

    @staticmethod
    def _zip64_sizes(extra: bytes, file_size: int, compress_size: int):
        pos = 0
        while pos + 4 <= len(extra):
            header_id, size = struct.unpack("<HH", extra[pos:pos + 4])
            if header_id == ZIP64_EXTRA_ID:
                field = extra[pos + 4:pos + 4 + size]
                values = [struct.unpack("<Q", field[i:i + 8])[0] for i in range(0, len(field) - 7, 8)]
                if file_size == 0xFFFFFFFF and values:
                    file_size = values.pop(0)
                if compress_size == 0xFFFFFFFF and values:
                    compress_size = values.pop(0)
                break
            pos += 4 + size
        return file_size, compress_size

    def _read_data(self, entry: StreamEntry, keep: bool = True) -> bytes:
        """Consume the entry's data; with keep=False it is discarded instead of returned."""
        has_descriptor = bool(entry.flags & FLAG_DATA_DESCRIPTOR)
        sizes_known = not has_descriptor or entry.compress_size > 0
        if entry.method not in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED):
            raise zipfile.BadZipFile(f"Unsupported compression method {entry.method} for {entry.filename}")
        if not keep and sizes_known:
            self._skip(entry.compress_size)
            data = b""
        elif entry.method == zipfile.ZIP_STORED:
            if not sizes_known:
                raise zipfile.BadZipFile(f"Cannot stream stored entry {entry.filename} without sizes")
            data = self._read_exact(entry.compress_size)
        else:
            data = self._inflate(entry, has_descriptor, keep)

        if has_descriptor:
            self._skip_descriptor(entry)
        elif keep and zlib.crc32(data) & 0xFFFFFFFF != entry.crc:
            raise zipfile.BadZipFile(f"Bad CRC-32 for {entry.filename}")
        return data

    def _inflate(self, entry: StreamEntry, has_descriptor: bool, keep: bool = True) -> bytes:
        inflater = zlib.decompressobj(-zlib.MAX_WBITS)
        out = []
        remaining = None if has_descriptor and not entry.compress_size else entry.compress_size
        while not inflater.eof:
            step = STREAM_CHUNK_SIZE if remaining is None else min(STREAM_CHUNK_SIZE, remaining)
            if step == 0:
                break
            chunk = self._read(step)
            if not chunk:
                raise zipfile.BadZipFile(f"Truncated data for {entry.filename}")
            if remaining is not None:
                remaining -= len(chunk)
            inflated = inflater.decompress(chunk)
            if keep:
                out.append(inflated)
        if inflater.unused_data:
            self._unread(inflater.unused_data)
        return b"".join(out)

    def _skip_descriptor(self, entry: StreamEntry) -> None:
        first = self._read_exact(4)
        if first != DATA_DESCRIPTOR_SIGNATURE:
            self._unread(first)
        # crc + sizes; the sizes are 8 bytes each for zip64 entries
        self._skip(20 if entry.file_size > 0xFFFFFFFE else 12)

    def getinfo(self, name: str) -> StreamEntry:
        while True:
            entry = self._next_entry()
            if entry is None:
                raise KeyError(name)
            if entry.filename == name:
                return entry
            logger.debug("Skipping %s (%d bytes)", entry.filename, entry.compress_size)
            self._read_data(entry, keep=False)

    def open(self, entry: StreamEntry) -> io.BytesIO:
        return io.BytesIO(self._read_data(entry))


@contextmanager
def open_remote_zip(url: str, session: Optional[requests.Session] = None,
                    timeout: float = DEFAULT_TIMEOUT):
    """Yield a ZipFile (range requests) or a ZipStreamReader (plain download) for ``url``."""
    if session is None:
        with requests.Session() as own:
            with open_remote_zip(url, own, timeout) as archive:
                yield archive
        return

    try:
        head = session.head(url, allow_redirects=True, timeout=timeout,
                            headers={"User-Agent": USER_AGENT})
        head.raise_for_status()
    except requests.RequestException as e:
        logger.error("Could not open %s: %s", url, e)
        raise invalid_url_error(url) from e

    size = int(head.headers.get("Content-Length") or 0)
    if size and "bytes" in head.headers.get("Accept-Ranges", "").lower():
        logger.info("Reading %s with range requests (%d bytes)", head.url, size)
        raw = HttpRangeReader(head.url, size, session, timeout)
        try:
            archive = zipfile.ZipFile(io.BufferedReader(raw, buffer_size=RANGE_BUFFER_SIZE))
        except (RangeIgnored, zipfile.BadZipFile):
            if not raw.range_ignored:
                raise
            logger.warning("%s ignored the Range header; streaming instead", head.url)
            archive = None
        if archive is not None:
            with archive:
                yield archive
            return

    logger.info("Streaming %s until %s is found", url, MANIFEST_ENTRY)
    with session.get(url, stream=True, timeout=timeout,
                     headers={"User-Agent": USER_AGENT}) as response:
        response.raise_for_status()
        # leaving the block closes the connection; the rest is never downloaded
        yield ZipStreamReader(response.iter_content(chunk_size=STREAM_CHUNK_SIZE))


def _delete_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def fetch_build_manifest(url: str, session: Optional[requests.Session] = None,
                         timeout: float = DEFAULT_TIMEOUT) -> Path:
    """Copy BuildManifest.plist from the .ipsw at ``url`` into a new temporary file."""
    validate_ipsw_url(url)
    fd, name = tempfile.mkstemp(prefix="BuildManifest", suffix=".plist")
    os.close(fd)
    path = Path(name)
    try:
        with open_remote_zip(url, session, timeout) as archive:
            try:
                info = archive.getinfo(MANIFEST_ENTRY)
            except KeyError:
                raise Reportable(
                    "Unable to find BuildManifest.plist from inputted .ipsw file\n\n"
                    "Please check your internet connection and if the IPSW url is correct.\n\n"
                    "If that doesn't work, please create a new issue on Github or PM me on Reddit.",
                    append_message=False,
                    invalid_fields=(FormField.IPSW_URL,),
                ) from None
            with archive.open(info) as src, path.open("wb") as dst:
                shutil.copyfileobj(src, dst)
    except (requests.RequestException, zipfile.BadZipFile, zlib.error, OSError) as e:
        _delete_quietly(path)
        raise Reportable("Unable to get BuildManifest from .ipsw URL", original_exception=e) from e
    except BaseException:
        _delete_quietly(path)
        raise
    logger.info("BuildManifest saved to %s", path)
    return path


def read_build_id(manifest_path: Path) -> Optional[str]:
    with open(manifest_path, "rb") as f:
        manifest = plistlib.load(f)
    return manifest.get("ProductBuildVersion")
