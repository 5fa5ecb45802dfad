"""Deterministic layer construction for aumai-imagespec."""

from __future__ import annotations

import base64
import binascii
import gzip
import hashlib
import io
import posixpath
import re
import tarfile
import threading
import zlib
from collections.abc import Iterator

import requests
import structlog
import urllib3

from .errors import (
    BuildCancelledError,
    ConflictingContentError,
    DuplicatePathError,
    EncodingError,
    FetchError,
    IntegrityError,
    InvalidPathError,
    SizeMismatchError,
)
from .models import DEFAULT_FILE_MODE, ArchiveSpec, BuiltLayer, FileSpec, LayerSpec, sha256_digest
from .settings import Settings

__all__ = [
    "COMPRESSION_LEVEL",
    "LayerBuilder",
    "layer_from_tar",
    "normalize_path",
]

logger = structlog.get_logger(__name__)

COMPRESSION_LEVEL = 9
_BODY_EXCERPT_LIMIT = 1024
_LINE_BREAKS = re.compile(r"[\r\n]")


def normalize_path(name: str) -> str:
    """
    Clean *name* into a path relative to the layer root.

    Leading slashes are dropped, then ``.``, ``..`` and repeated separators
    are collapsed lexically.  The result is ``"."`` for the root itself and
    starts with ``".."`` when the path escapes the root.
    """
    return posixpath.normpath(name.lstrip("/") or ".")


def _escapes_root(path: str) -> bool:
    return path == ".." or path.startswith("../")


def layer_from_tar(
    tar_bytes: bytes,
    compression_level: int = COMPRESSION_LEVEL,
    paths: tuple[str, ...] = (),
) -> BuiltLayer:
    """
    Gzip *tar_bytes* into a layer blob.

    The gzip header carries no file name and a zero mtime, so identical tar
    bytes always give an identical blob and digest.
    """
    buf = io.BytesIO()
    with gzip.GzipFile(
        filename="", mode="wb", fileobj=buf, compresslevel=compression_level, mtime=0
    ) as gz:
        gz.write(tar_bytes)
    blob = buf.getvalue()
    return BuiltLayer(
        blob=blob,
        digest=sha256_digest(blob),
        diff_id=sha256_digest(tar_bytes),
        paths=paths,
    )


class _VerifiedStream:
    """
    File-like view over a streamed HTTP body.

    Counts and hashes every byte as it arrives and refuses to read past the
    declared size.  ``tarfile`` reads from it in stream mode.
    """

    def __init__(
        self,
        chunks: Iterator[bytes],
        archive: ArchiveSpec,
        layer: int,
        cancel_event: threading.Event | None,
    ) -> None:
        self._chunks = chunks
        self._archive = archive
        self._layer = layer
        self._cancel = cancel_event
        self._buffer = bytearray()
        self._sha = hashlib.sha256()
        self.received = 0
        self.exhausted = False

    @property
    def hexdigest(self) -> str:
        return self._sha.hexdigest()

    def _pull(self) -> bool:
        if self.exhausted:
            return False
        if self._cancel is not None and self._cancel.is_set():
            raise BuildCancelledError(f"layer {self._layer}: fetch of {self._archive.url} cancelled")
        try:
            chunk = next(self._chunks)
        except StopIteration:
            self.exhausted = True
            return False
        except (requests.RequestException, urllib3.exceptions.HTTPError) as exc:
            raise FetchError(f"fetching {self._archive.url}: {exc}", self._layer) from exc
        self.received += len(chunk)
        if self.received > self._archive.size:
            raise SizeMismatchError(
                f"fetching {self._archive.url}: size mismatch: "
                f"got more than {self._archive.size} bytes, want {self._archive.size}",
                self._layer,
            )
        self._sha.update(chunk)
        self._buffer += chunk
        return True

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            while self._pull():
                pass
            size = len(self._buffer)
        else:
            while len(self._buffer) < size and self._pull():
                pass
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def drain(self) -> None:
        while self._pull():
            self._buffer.clear()
        self._buffer.clear()


class LayerBuilder:
    """
    Builds one compressed layer per :class:`LayerSpec`.

    Explicit files are written first in normalized-path order.  Entries of
    the optional archive follow in archive order; an entry whose path was
    already written is skipped, so explicit files always win.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        settings: Settings | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self._settings = settings if settings is not None else Settings()
        self._cancel = cancel_event

    def build(self, layer: LayerSpec, index: int = 0) -> BuiltLayer:
        """Build the layer declared at position *index*."""
        if self._cancel is not None and self._cancel.is_set():
            raise BuildCancelledError(f"layer {index}: build cancelled")

        log = logger.bind(layer=index)
        written: set[str] = set()
        paths: list[str] = []
        raw = io.BytesIO()
        with tarfile.open(fileobj=raw, mode="w", format=tarfile.PAX_FORMAT) as out:
            for path, file in self._sorted_files(layer.files, index):
                if path in written:
                    raise DuplicatePathError(f"duplicate file path: {path}", index)
                data = _file_payload(file, path, index)
                info = tarfile.TarInfo(name=path)
                info.size = len(data)
                info.mode = DEFAULT_FILE_MODE if file.mode is None else file.mode
                info.mtime = 0
                out.addfile(info, io.BytesIO(data))
                written.add(path)
                paths.append(path)
                log.debug("file_written", path=path, size=len(data))

            if layer.archive is not None:
                self._write_archive(layer.archive, out, written, paths, index)

        built = layer_from_tar(raw.getvalue(), COMPRESSION_LEVEL, tuple(paths))
        log.info("layer_built", digest=built.digest, size=built.size, entries=len(paths))
        return built

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _sorted_files(files: list[FileSpec], index: int) -> list[tuple[str, FileSpec]]:
        entries: list[tuple[str, FileSpec]] = []
        for file in files:
            path = normalize_path(file.name)
            if path == "." or _escapes_root(path):
                raise InvalidPathError(
                    f"invalid file path {file.name!r}: must name a file inside the layer",
                    index,
                )
            entries.append((path, file))
        entries.sort(key=lambda entry: entry[0])
        return entries

    def _write_archive(
        self,
        archive: ArchiveSpec,
        out: tarfile.TarFile,
        written: set[str],
        paths: list[str],
        index: int,
    ) -> None:
        log = logger.bind(layer=index, url=archive.url)
        log.debug("archive_fetch_started", size=archive.size)
        try:
            response = self._session.get(
                archive.url,
                stream=True,
                timeout=self._settings.http_timeout,
                headers={"Accept-Encoding": "identity"},
            )
        except requests.RequestException as exc:
            raise FetchError(f"fetching {archive.url}: {exc}", index) from exc

        with response:
            if not 200 <= response.status_code < 300:
                message = f"fetching {archive.url}: HTTP {response.status_code} {response.reason or ''}".rstrip()
                body = _body_excerpt(response)
                if body:
                    message = f"{message}: {body}"
                raise FetchError(message, index)
            declared = response.headers.get("Content-Length")
            if declared is not None and declared.isdigit() and int(declared) != archive.size:
                raise SizeMismatchError(
                    f"fetching {archive.url}: size mismatch: got {declared}, want {archive.size}",
                    index,
                )

            # Size and digest cover the bytes as served, before any Content-Encoding.
            stream = _VerifiedStream(
                response.raw.stream(self._settings.chunk_size, decode_content=False),
                archive,
                index,
                self._cancel,
            )
            try:
                with tarfile.open(fileobj=stream, mode="r|*") as source:
                    for member in source:
                        self._copy_member(source, member, out, written, paths, archive, index)
            except (tarfile.TarError, EOFError, OSError, zlib.error) as exc:
                # Corrupt bytes are reported as a size or digest failure first.
                stream.drain()
                _verify(stream, archive, index)
                raise FetchError(f"reading archive {archive.url}: {exc}", index) from exc
            stream.drain()

        _verify(stream, archive, index)
        log.info("archive_verified", sha256=archive.sha256)

    @staticmethod
    def _copy_member(
        source: tarfile.TarFile,
        member: tarfile.TarInfo,
        out: tarfile.TarFile,
        written: set[str],
        paths: list[str],
        archive: ArchiveSpec,
        index: int,
    ) -> None:
        path = normalize_path(member.name)
        if path == ".":
            return
        if _escapes_root(path):
            raise InvalidPathError(
                f"archive {archive.url}: entry {member.name!r} escapes the layer root",
                index,
            )
        if path in written:
            logger.info("archive_entry_skipped", layer=index, url=archive.url, path=member.name)
            return
        member.name = path
        member.pax_headers = {
            key: value
            for key, value in member.pax_headers.items()
            if key not in ("path", "linkpath")
        }
        if member.islnk():
            member.linkname = normalize_path(member.linkname)
        fileobj = source.extractfile(member) if member.isreg() else None
        out.addfile(member, fileobj)
        written.add(path)
        paths.append(path)
        logger.debug("file_written", layer=index, path=path, size=member.size)


def _file_payload(file: FileSpec, path: str, index: int) -> bytes:
    if file.contents is not None and file.data is not None:
        raise ConflictingContentError(
            f"file {path!r}: cannot specify both contents and data", index
        )
    if file.data is not None:
        try:
            return base64.b64decode(_LINE_BREAKS.sub("", file.data), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EncodingError(f"file {path!r}: invalid base64 data: {exc}", index) from exc
    return (file.contents or "").encode("utf-8")


def _verify(stream: _VerifiedStream, archive: ArchiveSpec, index: int) -> None:
    if stream.received != archive.size:
        raise SizeMismatchError(
            f"fetching {archive.url}: size mismatch: got {stream.received}, want {archive.size}",
            index,
        )
    if stream.hexdigest != archive.sha256:
        raise IntegrityError(
            f"fetching {archive.url}: digest mismatch; got {stream.hexdigest!r}, "
            f"want {archive.sha256!r}",
            index,
        )


def _body_excerpt(response: requests.Response) -> str:
    try:
        body = response.text
    except (requests.RequestException, UnicodeDecodeError):
        return ""
    body = body.strip()
    if len(body) > _BODY_EXCERPT_LIMIT:
        body = body[:_BODY_EXCERPT_LIMIT] + "..."
    return body
