"""OCI distribution client used to resolve, pull and push images.

Transport, authentication challenges and blob uploads are handled by
oras-py (:class:`oras.provider.Registry`), one remote per registry host.
Manifests are read and written as raw bytes through ``do_request`` so their
digests are computed over exactly what the registry stores.
"""

from __future__ import annotations

import hashlib
import json
import tempfile
from pathlib import Path
from typing import Any

import oras.provider
import requests
import structlog

from .errors import (
    AuthenticationError,
    IntegrityError,
    NotFoundError,
    PushError,
    RegistryError,
    RegistryUnavailableError,
)
from .image import (
    DOCKER_MANIFEST,
    OCI_CONFIG,
    OCI_MANIFEST,
    Image,
    LayerDescriptor,
)
from .models import sha256_digest
from .reference import DEFAULT_REGISTRY, Reference
from .settings import Settings

__all__ = ["RegistryClient"]

logger = structlog.get_logger(__name__)

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

_IMAGE_MANIFESTS = frozenset({OCI_MANIFEST, DOCKER_MANIFEST})
_INDEX_MANIFESTS = frozenset({OCI_INDEX, DOCKER_MANIFEST_LIST})
_ACCEPT = ", ".join([OCI_MANIFEST, DOCKER_MANIFEST, OCI_INDEX, DOCKER_MANIFEST_LIST])

_DOCKER_HUB_API = "registry-1.docker.io"
_BODY_EXCERPT_LIMIT = 512


def _excerpt(response: requests.Response) -> str:
    try:
        body = response.text.strip()
    except (requests.RequestException, UnicodeDecodeError):
        return ""
    if len(body) > _BODY_EXCERPT_LIMIT:
        body = body[:_BODY_EXCERPT_LIMIT] + "..."
    return body


def _api_host(registry: str) -> str:
    return _DOCKER_HUB_API if registry == DEFAULT_REGISTRY else registry


class RegistryClient:
    """
    Registry operations scoped by :class:`Reference`.

    A session passed in replaces the one each oras remote creates, so tests
    (and callers sharing a connection pool) control all network access.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._settings = settings if settings is not None else Settings()
        self._remotes: dict[str, oras.provider.Registry] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_digest(self, reference: Reference) -> str:
        """Return the manifest digest *reference* currently points at.

        Only manifest metadata is read; no blobs are downloaded.
        """
        url = self._url(reference, f"manifests/{reference.identifier}")
        response = self._request(reference, "HEAD", url, headers={"Accept": _ACCEPT})
        with response:
            if response.status_code == 404:
                raise NotFoundError(f"manifest {reference} not found")
            digest = response.headers.get("Docker-Content-Digest")
            if response.status_code == 200 and digest:
                return digest
        # Some registries omit the digest header on HEAD.
        raw, _ = self._get_manifest(reference, reference.identifier)
        return sha256_digest(raw)

    def fetch_image(self, reference: Reference) -> Image:
        """Load the manifest and config of *reference* as an :class:`Image`.

        Layer blobs stay in the registry; ``Image.source`` records where
        they can be copied from.  Indexes are narrowed to the configured
        platform.
        """
        raw, media_type = self._get_manifest(reference, reference.identifier)
        if reference.digest and sha256_digest(raw) != reference.digest:
            raise IntegrityError(
                f"manifest {reference}: digest mismatch; got {sha256_digest(raw)!r}, "
                f"want {reference.digest!r}"
            )
        manifest = _load_json(raw, f"manifest {reference}")
        media_type = media_type or manifest.get("mediaType", "")

        if media_type in _INDEX_MANIFESTS or "manifests" in manifest:
            child = self._select_platform(reference, manifest)
            raw, media_type = self._get_manifest(reference, child)
            if sha256_digest(raw) != child:
                raise IntegrityError(
                    f"manifest {reference.context}@{child}: digest mismatch; "
                    f"got {sha256_digest(raw)!r}"
                )
            manifest = _load_json(raw, f"manifest {reference.context}@{child}")
            media_type = media_type or manifest.get("mediaType", "")

        if media_type not in _IMAGE_MANIFESTS:
            raise RegistryUnavailableError(
                f"manifest {reference}: unsupported media type {media_type!r}"
            )

        config_descriptor = manifest.get("config") or {}
        config_digest = config_descriptor.get("digest", "")
        config_raw = self._get_blob(reference, config_digest)
        if sha256_digest(config_raw) != config_digest:
            raise IntegrityError(
                f"config {reference.context}@{config_digest}: digest mismatch; "
                f"got {sha256_digest(config_raw)!r}"
            )

        try:
            layers = tuple(
                LayerDescriptor(
                    media_type=layer["mediaType"],
                    digest=layer["digest"],
                    size=layer["size"],
                    annotations=layer.get("annotations") or {},
                )
                for layer in manifest.get("layers", [])
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RegistryError(f"manifest {reference}: malformed layer descriptor: {exc}") from exc
        pinned = reference.with_digest(sha256_digest(raw))
        logger.info("base_image_fetched", reference=str(reference), pinned=str(pinned), layers=len(layers))
        return Image(
            media_type=media_type,
            config_media_type=config_descriptor.get("mediaType") or OCI_CONFIG,
            config_file=_load_json(config_raw, f"config {config_digest}"),
            layers=layers,
            annotations=manifest.get("annotations") or {},
            source=pinned,
        )

    def push_image(self, reference: Reference, image: Image) -> str:
        """Upload every missing blob of *image*, then its manifest.

        Returns the image digest.
        """
        log = logger.bind(reference=str(reference))
        for descriptor in image.layers:
            self._ensure_blob(reference, image, descriptor)

        config = image.config_bytes()
        config_digest = sha256_digest(config)
        if not self._blob_exists(reference, config_digest):
            with tempfile.TemporaryDirectory() as tmpdir:
                path = Path(tmpdir) / "config.json"
                path.write_bytes(config)
                self._upload_blob(reference, config_digest, path, image.config_media_type)

        digest = image.digest()
        url = self._url(reference, f"manifests/{reference.identifier}")
        response = self._request(
            reference,
            "PUT",
            url,
            headers={"Content-Type": image.media_type},
            data=image.manifest_bytes(),
        )
        with response:
            if response.status_code not in (200, 201, 202):
                raise PushError(
                    f"PUT manifest {reference}: HTTP {response.status_code}: {_excerpt(response)}"
                )
            returned = response.headers.get("Docker-Content-Digest")
        if returned and returned != digest:
            raise PushError(
                f"PUT manifest {reference}: registry digest {returned!r} != local {digest!r}"
            )
        log.info("image_pushed", digest=digest)
        return digest

    # ------------------------------------------------------------------
    # Manifests and blobs
    # ------------------------------------------------------------------

    def _get_manifest(self, reference: Reference, identifier: str) -> tuple[bytes, str]:
        url = self._url(reference, f"manifests/{identifier}")
        response = self._request(reference, "GET", url, headers={"Accept": _ACCEPT})
        with response:
            self._raise_for_read(response, f"manifest {reference.context}:{identifier}")
            media_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip()
            return response.content, media_type

    def _get_blob(self, reference: Reference, digest: str) -> bytes:
        response = self._request(reference, "GET", self._url(reference, f"blobs/{digest}"))
        with response:
            self._raise_for_read(response, f"blob {reference.context}@{digest}")
            return response.content

    def _select_platform(self, reference: Reference, index: dict[str, Any]) -> str:
        os_name = self._settings.platform_os
        architecture = self._settings.platform_architecture
        for entry in index.get("manifests", []):
            platform = entry.get("platform") or {}
            if platform.get("os") == os_name and platform.get("architecture") == architecture:
                logger.debug(
                    "platform_selected",
                    reference=str(reference),
                    platform=self._settings.platform,
                    digest=entry["digest"],
                )
                return entry["digest"]
        raise NotFoundError(f"{reference}: no manifest for platform {self._settings.platform}")

    def _ensure_blob(self, reference: Reference, image: Image, descriptor: LayerDescriptor) -> None:
        digest = descriptor.digest
        if self._blob_exists(reference, digest):
            logger.debug("blob_exists", reference=str(reference), digest=digest)
            return
        blob = image.blobs.get(digest)
        if blob is not None:
            with tempfile.TemporaryDirectory() as tmpdir:
                path = Path(tmpdir) / "layer.tar.gz"
                path.write_bytes(blob)
                self._upload_blob(reference, digest, path, descriptor.media_type)
            return
        if image.source is None:
            raise PushError(f"blob {digest} is neither built locally nor available from a base image")
        self._copy_blob(image.source, reference, descriptor)

    def _blob_exists(self, reference: Reference, digest: str) -> bool:
        response = self._request(reference, "HEAD", self._url(reference, f"blobs/{digest}"))
        with response:
            if response.status_code == 200:
                return True
            if response.status_code == 404:
                return False
            raise PushError(f"HEAD blob {reference.context}@{digest}: HTTP {response.status_code}")

    def _upload_blob(self, reference: Reference, digest: str, path: Path, media_type: str) -> None:
        remote = self._remote(reference.registry)
        container = remote.get_container(f"{_api_host(reference.registry)}/{reference.repository}")
        layer = {"mediaType": media_type, "digest": digest, "size": path.stat().st_size}
        try:
            response = remote.upload_blob(blob=str(path), container=container, layer=layer)
        except requests.RequestException as exc:
            raise RegistryUnavailableError(f"uploading blob {digest} to {reference.context}: {exc}") from exc
        except ValueError as exc:
            # oras raises ValueError for a non-2xx upload response.
            raise PushError(f"uploading blob {digest} to {reference.context}: {exc}") from exc
        if response.status_code not in (200, 201, 202):
            raise PushError(
                f"uploading blob {digest} to {reference.context}: "
                f"HTTP {response.status_code}: {_excerpt(response)}"
            )
        logger.debug("blob_uploaded", reference=str(reference), digest=digest)

    def _copy_blob(self, source: Reference, target: Reference, descriptor: LayerDescriptor) -> None:
        digest = descriptor.digest
        response = self._request(source, "GET", self._url(source, f"blobs/{digest}"), stream=True)
        with response, tempfile.TemporaryDirectory() as tmpdir:
            self._raise_for_read(response, f"blob {source.context}@{digest}")
            path = Path(tmpdir) / "layer.tar.gz"
            sha = hashlib.sha256()
            with path.open("wb") as fh:
                for chunk in response.iter_content(chunk_size=self._settings.chunk_size):
                    sha.update(chunk)
                    fh.write(chunk)
            actual = f"sha256:{sha.hexdigest()}"
            if actual != digest:
                raise IntegrityError(f"blob {source.context}@{digest}: digest mismatch; got {actual!r}")
            self._upload_blob(target, digest, path, descriptor.media_type)
        logger.debug("blob_copied", source=source.context, target=target.context, digest=digest)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _insecure(self, registry: str) -> bool:
        host = registry.split(":", 1)[0]
        return host in ("localhost", "127.0.0.1") or registry in self._settings.insecure_registries

    def _url(self, reference: Reference, path: str) -> str:
        scheme = "http" if self._insecure(reference.registry) else "https"
        return f"{scheme}://{_api_host(reference.registry)}/v2/{reference.repository}/{path}"

    def _remote(self, registry: str) -> oras.provider.Registry:
        remote = self._remotes.get(registry)
        if remote is not None:
            return remote

        host = _api_host(registry)
        remote = oras.provider.Registry(
            hostname=host,
            insecure=self._insecure(registry),
            auth_backend=self._settings.registry_auth,
        )
        if self._session is not None:
            remote.session = self._session
            remote.auth.session = self._session

        credentials = self._settings.credentials
        if credentials is not None:
            try:
                remote.login(hostname=host, username=credentials[0], password=credentials[1])
            except Exception as exc:
                raise AuthenticationError(f"login to {registry} failed: {exc}") from exc
        logger.debug("registry_remote_created", registry=registry, auth=self._settings.registry_auth)
        self._remotes[registry] = remote
        return remote

    def _request(
        self,
        reference: Reference,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        remote = self._remote(reference.registry)
        try:
            return remote.do_request(url, method, headers=dict(headers or {}), **kwargs)
        except requests.RequestException as exc:
            raise RegistryUnavailableError(f"{method} {url}: {exc}") from exc

    @staticmethod
    def _raise_for_read(response: requests.Response, what: str) -> None:
        if response.status_code == 404:
            raise NotFoundError(f"{what} not found")
        if response.status_code == 401:
            raise AuthenticationError(f"{what}: unauthorized: {_excerpt(response)}")
        if response.status_code != 200:
            raise RegistryUnavailableError(
                f"{what}: HTTP {response.status_code}: {_excerpt(response)}"
            )


def _load_json(raw: bytes, what: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise RegistryError(f"{what}: invalid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise RegistryError(f"{what}: expected a JSON object")
    return value
