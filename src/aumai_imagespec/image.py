"""Immutable OCI image values and the mutations applied during a build.

Every function here returns a new :class:`Image`; the input value is never
modified, so an image can be threaded through the build as an accumulator.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import MergeError
from .models import BuiltLayer, RuntimeConfig, sha256_digest
from .reference import Reference

__all__ = [
    "DOCKER_CONFIG",
    "DOCKER_LAYER",
    "DOCKER_MANIFEST",
    "Image",
    "LayerDescriptor",
    "OCI_CONFIG",
    "OCI_LAYER",
    "OCI_MANIFEST",
    "append_layer",
    "canonical_json",
    "empty_image",
    "get_runtime_config",
    "merge_runtime_config",
    "set_annotations",
    "set_runtime_config",
]

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"

_HISTORY_ENTRY = {"created": "1970-01-01T00:00:00Z", "created_by": "aumai-imagespec"}


def canonical_json(value: Any) -> bytes:
    """Serialize *value* with sorted keys and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


class LayerDescriptor(BaseModel):
    """A layer entry in an image manifest."""

    model_config = ConfigDict(frozen=True)

    media_type: str
    digest: str
    size: int
    annotations: dict[str, str] = Field(default_factory=dict)

    def to_manifest(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.annotations:
            entry["annotations"] = dict(self.annotations)
        return entry


class Image(BaseModel):
    """
    An OCI image held in memory.

    ``blobs`` holds the compressed bytes of layers built locally, keyed by
    digest.  Layers inherited from a base image are not downloaded; ``source``
    records the digest-pinned base reference they can be copied from.
    """

    model_config = ConfigDict(frozen=True)

    media_type: str = OCI_MANIFEST
    config_media_type: str = OCI_CONFIG
    config_file: dict[str, Any]
    layers: tuple[LayerDescriptor, ...] = ()
    annotations: dict[str, str] = Field(default_factory=dict)
    blobs: dict[str, bytes] = Field(default_factory=dict)
    source: Reference | None = None

    def config_bytes(self) -> bytes:
        return canonical_json(self.config_file)

    def config_digest(self) -> str:
        return sha256_digest(self.config_bytes())

    def manifest(self) -> dict[str, Any]:
        """Build the manifest document for this image."""
        config = self.config_bytes()
        manifest: dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": self.media_type,
            "config": {
                "mediaType": self.config_media_type,
                "digest": sha256_digest(config),
                "size": len(config),
            },
            "layers": [layer.to_manifest() for layer in self.layers],
        }
        if self.annotations:
            manifest["annotations"] = dict(self.annotations)
        return manifest

    def manifest_bytes(self) -> bytes:
        return canonical_json(self.manifest())

    def digest(self) -> str:
        """The content digest of the manifest, i.e. the image digest."""
        return sha256_digest(self.manifest_bytes())


def empty_image(os: str = "linux", architecture: str = "amd64") -> Image:
    """Return an image with no layers and an empty runtime config."""
    return Image(
        config_file={
            "architecture": architecture,
            "os": os,
            "config": {},
            "rootfs": {"type": "layers", "diff_ids": []},
            "history": [],
        }
    )


def append_layer(image: Image, layer: BuiltLayer) -> Image:
    """Return *image* with *layer* stacked on top."""
    layer_media_type = DOCKER_LAYER if image.media_type == DOCKER_MANIFEST else OCI_LAYER
    config_file = copy.deepcopy(image.config_file)
    rootfs = config_file.setdefault("rootfs", {"type": "layers", "diff_ids": []})
    rootfs.setdefault("diff_ids", []).append(layer.diff_id)
    config_file.setdefault("history", []).append(dict(_HISTORY_ENTRY))
    descriptor = LayerDescriptor(
        media_type=layer_media_type, digest=layer.digest, size=layer.size
    )
    return image.model_copy(
        update={
            "config_file": config_file,
            "layers": (*image.layers, descriptor),
            "blobs": {**image.blobs, layer.digest: layer.blob},
        }
    )


def set_annotations(image: Image, annotations: Mapping[str, str]) -> Image:
    """Merge *annotations* into the manifest annotations; new values win."""
    return image.model_copy(update={"annotations": {**image.annotations, **annotations}})


def get_runtime_config(image: Image) -> dict[str, Any]:
    """Return a copy of the image's runtime ``config`` object."""
    return copy.deepcopy(image.config_file.get("config") or {})


def set_runtime_config(image: Image, runtime_config: Mapping[str, Any]) -> Image:
    """Return *image* with its runtime ``config`` object replaced."""
    config_file = copy.deepcopy(image.config_file)
    config_file["config"] = copy.deepcopy(dict(runtime_config))
    return image.model_copy(update={"config_file": config_file})


def merge_runtime_config(
    base: Mapping[str, Any], override: RuntimeConfig | Mapping[str, Any]
) -> dict[str, Any]:
    """
    Merge *override* onto *base*.

    The override takes precedence at every overlapping field and
    non-overlapping fields from both sides are preserved.  Mappings (e.g.
    ``Labels``, ``ExposedPorts``) merge key by key; lists and scalars in the
    override replace the base value.  A ``None`` override keeps the base
    value.

    Raises:
        MergeError: if a field is a mapping on one side but not the other.
    """
    values = override.overrides() if isinstance(override, RuntimeConfig) else dict(override)
    return _merge(dict(base), values, path="config")


def _merge(base: dict[str, Any], override: Mapping[str, Any], *, path: str) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if value is None:
            continue
        next_path = f"{path}.{key}"
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = _merge(dict(current), value, path=next_path)
        elif current is not None and isinstance(value, Mapping) != isinstance(current, Mapping):
            raise MergeError(
                f"cannot merge {next_path}: image has {type(current).__name__}, "
                f"override has {type(value).__name__}"
            )
        else:
            merged[key] = copy.deepcopy(value)
    return merged
