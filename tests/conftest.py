"""Shared test fixtures for aumai-imagespec."""

from __future__ import annotations

import gzip
import hashlib
import io
import json
import re
import tarfile
import uuid
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl, urlsplit

import pytest
import requests
import structlog
from requests.structures import CaseInsensitiveDict

from aumai_imagespec.core import ImageAssembler
from aumai_imagespec.image import DOCKER_CONFIG, DOCKER_MANIFEST, OCI_CONFIG, OCI_LAYER, OCI_MANIFEST, canonical_json
from aumai_imagespec.layers import LayerBuilder
from aumai_imagespec.registry import OCI_INDEX, RegistryClient
from aumai_imagespec.settings import Settings

REGISTRY_HOST = "registry.example.com"
TOKEN_REALM = "https://auth.example.com/token"
ARCHIVE_URL = "https://downloads.example.com/rootfs.tar.gz"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_tar_gz(entries: dict[str, bytes], *, directories: tuple[str, ...] = ()) -> bytes:
    """Build a gzip'd tar archive holding *entries* in insertion order."""
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w:gz") as tar:
        for name in directories:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o600
            tar.addfile(info, io.BytesIO(data))
    return raw.getvalue()


def read_layer(blob: bytes) -> list[tuple[str, bytes | None, tarfile.TarInfo]]:
    """Return (name, data, header) for every entry of a gzip'd layer blob."""
    entries = []
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        for member in tar.getmembers():
            fh = tar.extractfile(member) if member.isreg() else None
            entries.append((member.name, fh.read() if fh else None, member))
    return entries


# ---------------------------------------------------------------------------
# Fake HTTP
# ---------------------------------------------------------------------------


class FakeRaw:
    """Stands in for the urllib3 response behind ``FakeResponse.raw``."""

    def __init__(self, response: "FakeResponse") -> None:
        self._response = response
        self.decode_requests: list[bool] = []

    def stream(self, amt: int = 2 ** 16, decode_content: bool | None = None):
        self.decode_requests.append(bool(decode_content))
        body = self._response.body_chunks(amt)
        if decode_content and self._response.headers.get("Content-Encoding") == "gzip":
            body = iter([gzip.decompress(b"".join(body))])
        return body


class FakeResponse:
    """Just enough of ``requests.Response`` for the code under test."""

    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
        reason: str = "",
    ) -> None:
        self.status_code = status_code
        self.content = body
        self.headers = CaseInsensitiveDict(headers or {})
        self.reason = reason
        self.closed = False
        self.raw = FakeRaw(self)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", "replace")

    def json(self) -> Any:
        return json.loads(self.content)

    def body_chunks(self, chunk_size: int):
        """Yield the body as it travels on the wire."""
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]

    def iter_content(self, chunk_size: int = 1):
        # requests decodes Content-Encoding here.
        return self.raw.stream(chunk_size, decode_content=True)

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FakeSession:
    """Routes requests to canned responses and in-memory registries."""

    def __init__(self) -> None:
        self.routes: dict[str, Callable[..., FakeResponse]] = {}
        self.registries: dict[str, FakeRegistry] = {}
        self.calls: list[tuple[str, str]] = []
        self.sent_headers: list[CaseInsensitiveDict] = []
        self.cookies = requests.cookies.RequestsCookieJar()

    def add_archive(
        self,
        url: str,
        body: bytes,
        *,
        status: int = 200,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.routes[url] = lambda **_: FakeResponse(status, body, headers)

    def add_registry(self, registry: "FakeRegistry") -> "FakeRegistry":
        self.registries[registry.host] = registry
        self.routes[registry.token_realm] = registry.issue_token
        return registry

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("GET", url, **kwargs)

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        data: Any = None,
        **kwargs: Any,
    ) -> FakeResponse:
        self.calls.append((method, url))
        self.sent_headers.append(CaseInsensitiveDict(headers or {}))
        parts = urlsplit(url)
        bare = f"{parts.scheme}://{parts.netloc}{parts.path}"
        query = dict(parse_qsl(parts.query))
        query.update(params or {})
        if bare in self.routes:
            return self.routes[bare](params=query, auth=kwargs.get("auth"))
        registry = self.registries.get(parts.netloc)
        if registry is None:
            raise requests.ConnectionError(f"no route to {url}")
        return registry.handle(method, parts.path, CaseInsensitiveDict(headers or {}), query, data)


class FakeRegistry:
    """An in-memory OCI distribution endpoint."""

    _UPLOADS = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/$")
    _UPLOAD = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/(?P<upload>[^/]+)$")
    _BLOB = re.compile(r"^/v2/(?P<repo>.+)/blobs/(?P<digest>sha256:[a-f0-9]{64})$")
    _MANIFEST = re.compile(r"^/v2/(?P<repo>.+)/manifests/(?P<ref>[^/]+)$")

    def __init__(
        self,
        host: str = REGISTRY_HOST,
        *,
        require_token: bool = False,
        digest_header_on_head: bool = True,
    ) -> None:
        self.host = host
        self.token_realm = f"https://auth.{host}/token" if host != REGISTRY_HOST else TOKEN_REALM
        self.require_token = require_token
        self.digest_header_on_head = digest_header_on_head
        self.manifests: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.uploads: dict[str, str] = {}
        self.token_requests: list[dict[str, str]] = []

    # -- seeding -------------------------------------------------------

    def add_blob(self, repo: str, data: bytes) -> str:
        digest = f"sha256:{sha256_hex(data)}"
        self.blobs[(repo, digest)] = data
        return digest

    def add_manifest(self, repo: str, tag: str, document: dict[str, Any], media_type: str) -> str:
        raw = canonical_json(document)
        digest = f"sha256:{sha256_hex(raw)}"
        self.manifests[(repo, tag)] = (raw, media_type)
        self.manifests[(repo, digest)] = (raw, media_type)
        return digest

    def add_image(
        self,
        repo: str,
        tag: str,
        *,
        layers: tuple[bytes, ...] = (),
        runtime_config: dict[str, Any] | None = None,
        docker: bool = False,
    ) -> str:
        config = {
            "architecture": "amd64",
            "os": "linux",
            "config": runtime_config or {},
            "rootfs": {"type": "layers", "diff_ids": [f"sha256:{'0' * 64}" for _ in layers]},
        }
        config_raw = canonical_json(config)
        config_digest = self.add_blob(repo, config_raw)
        manifest = {
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST if docker else OCI_MANIFEST,
            "config": {
                "mediaType": DOCKER_CONFIG if docker else OCI_CONFIG,
                "digest": config_digest,
                "size": len(config_raw),
            },
            "layers": [
                {"mediaType": OCI_LAYER, "digest": self.add_blob(repo, blob), "size": len(blob)}
                for blob in layers
            ],
        }
        return self.add_manifest(repo, tag, manifest, manifest["mediaType"])

    def add_index(self, repo: str, tag: str, children: dict[str, str]) -> str:
        index = {
            "schemaVersion": 2,
            "mediaType": OCI_INDEX,
            "manifests": [
                {
                    "mediaType": OCI_MANIFEST,
                    "digest": digest,
                    "size": len(self.manifests[(repo, digest)][0]),
                    "platform": {"os": platform.split("/")[0], "architecture": platform.split("/")[1]},
                }
                for platform, digest in children.items()
            ],
        }
        return self.add_manifest(repo, tag, index, OCI_INDEX)

    # -- protocol ------------------------------------------------------

    def issue_token(self, params: dict[str, str], auth: Any = None) -> FakeResponse:
        self.token_requests.append(dict(params))
        return FakeResponse(200, json.dumps({"token": f"token|{params.get('scope', '')}"}).encode())

    @staticmethod
    def _scope(method: str, path: str) -> str:
        repo = re.sub(r"/(blobs|manifests)/.*$", "", path[len("/v2/"):])
        actions = "pull" if method in ("GET", "HEAD") else "pull,push"
        return f"repository:{repo}:{actions}"

    def _authorized(self, headers: CaseInsensitiveDict, scope: str) -> bool:
        granted = headers.get("Authorization", "")
        if not granted.startswith("Bearer token|"):
            return False
        granted_scope = granted[len("Bearer token|"):]
        want_repo, _, want_actions = scope.rpartition(":")
        have_repo, _, have_actions = granted_scope.rpartition(":")
        return have_repo == want_repo and set(want_actions.split(",")) <= set(have_actions.split(","))

    def handle(
        self,
        method: str,
        path: str,
        headers: CaseInsensitiveDict,
        params: dict[str, str],
        data: Any,
    ) -> FakeResponse:
        scope = self._scope(method, path)
        if self.require_token and not self._authorized(headers, scope):
            return FakeResponse(
                401,
                b'{"errors":[{"code":"UNAUTHORIZED"}]}',
                {
                    "WWW-Authenticate": (
                        f'Bearer realm="{self.token_realm}",service="{self.host}",scope="{scope}"'
                    )
                },
            )

        if match := self._UPLOADS.match(path):
            return self._start_upload(match["repo"])
        if match := self._UPLOAD.match(path):
            return self._finish_upload(match["repo"], match["upload"], params, data)
        if match := self._BLOB.match(path):
            blob = self.blobs.get((match["repo"], match["digest"]))
            if blob is None:
                return FakeResponse(404, b'{"errors":[{"code":"BLOB_UNKNOWN"}]}')
            return FakeResponse(200, blob if method == "GET" else b"", {"Content-Length": str(len(blob))})
        if match := self._MANIFEST.match(path):
            return self._manifest(method, match["repo"], match["ref"], headers, data)
        return FakeResponse(404, b"unknown endpoint")

    def _start_upload(self, repo: str) -> FakeResponse:
        upload = uuid.uuid4().hex
        self.uploads[upload] = repo
        return FakeResponse(202, headers={"Location": f"/v2/{repo}/blobs/uploads/{upload}"})

    def _finish_upload(self, repo: str, upload: str, params: dict[str, str], data: Any) -> FakeResponse:
        if self.uploads.pop(upload, None) != repo:
            return FakeResponse(404, b"unknown upload")
        payload = data.read() if hasattr(data, "read") else bytes(data)
        digest = f"sha256:{sha256_hex(payload)}"
        if params.get("digest") != digest:
            return FakeResponse(400, b'{"errors":[{"code":"DIGEST_INVALID"}]}')
        self.blobs[(repo, digest)] = payload
        return FakeResponse(201, headers={"Docker-Content-Digest": digest})

    def _manifest(
        self, method: str, repo: str, ref: str, headers: CaseInsensitiveDict, data: Any
    ) -> FakeResponse:
        if method == "PUT":
            raw = bytes(data)
            digest = f"sha256:{sha256_hex(raw)}"
            document = json.loads(raw)
            missing = [
                d["digest"]
                for d in [document["config"], *document["layers"]]
                if (repo, d["digest"]) not in self.blobs
            ]
            if missing:
                return FakeResponse(400, f"blob unknown: {missing}".encode())
            self.manifests[(repo, ref)] = (raw, headers["Content-Type"])
            self.manifests[(repo, digest)] = (raw, headers["Content-Type"])
            return FakeResponse(201, headers={"Docker-Content-Digest": digest})

        stored = self.manifests.get((repo, ref))
        if stored is None:
            return FakeResponse(404, b'{"errors":[{"code":"MANIFEST_UNKNOWN"}]}')
        raw, media_type = stored
        response_headers = {"Content-Type": media_type, "Content-Length": str(len(raw))}
        if method == "GET" or self.digest_header_on_head:
            response_headers["Docker-Content-Digest"] = f"sha256:{sha256_hex(raw)}"
        return FakeResponse(200, raw if method == "GET" else b"", response_headers)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture()
def settings() -> Settings:
    return Settings()


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def registry(session: FakeSession) -> FakeRegistry:
    return session.add_registry(FakeRegistry())


@pytest.fixture()
def registry_client(session: FakeSession, settings: Settings) -> RegistryClient:
    return RegistryClient(session, settings)


@pytest.fixture()
def builder(session: FakeSession, settings: Settings) -> LayerBuilder:
    return LayerBuilder(session, settings)


@pytest.fixture()
def assembler(session: FakeSession, settings: Settings) -> ImageAssembler:
    return ImageAssembler.from_settings(settings, session)


@pytest.fixture()
def archive_bytes() -> bytes:
    return make_tar_gz(
        {
            "./etc/motd": b"from archive\n",
            "usr/bin/tool": b"#!/bin/sh\necho tool\n",
        },
        directories=("./", "./etc/"),
    )
