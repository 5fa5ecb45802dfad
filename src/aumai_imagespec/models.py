"""Pydantic models for aumai-imagespec."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidReferenceError, SpecValidationError
from .reference import parse_reference

__all__ = [
    "ArchiveSpec",
    "BuiltLayer",
    "FileSpec",
    "ImageSpec",
    "LayerSpec",
    "RuntimeConfig",
    "dump_spec",
    "load_spec",
    "parse_spec",
    "sha256_digest",
]

DEFAULT_FILE_MODE = 0o644


def sha256_digest(data: bytes) -> str:
    """Return 'sha256:<hex>' digest for *data*."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class _SpecModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class FileSpec(_SpecModel):
    """A single file written into a layer."""

    name: str
    contents: str | None = None
    data: str | None = None    # base64
    mode: int | None = Field(default=None, ge=0, le=0o7777)


class ArchiveSpec(_SpecModel):
    """A remote tar archive unpacked into a layer, pinned by size and sha256."""

    url: str = Field(min_length=1)
    sha256: str
    size: int = Field(gt=0)

    @field_validator("sha256")
    @classmethod
    def _check_sha256(cls, value: str) -> str:
        value = value.lower()
        if len(value) != 64 or any(c not in "0123456789abcdef" for c in value):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return value


class LayerSpec(_SpecModel):
    """One filesystem layer: explicit files plus an optional archive."""

    archive: ArchiveSpec | None = None
    files: list[FileSpec] = Field(default_factory=list)


class RuntimeConfig(_SpecModel):
    """
    Partial OCI runtime configuration.

    Keys use the names of the ``config`` object in the OCI image config
    https://github.com/opencontainers/image-spec/blob/main/config.md
    """

    user: str | None = Field(default=None, alias="User")
    exposed_ports: dict[str, dict[str, Any]] | None = Field(default=None, alias="ExposedPorts")
    env: list[str] | None = Field(default=None, alias="Env")
    entrypoint: list[str] | None = Field(default=None, alias="Entrypoint")
    cmd: list[str] | None = Field(default=None, alias="Cmd")
    volumes: dict[str, dict[str, Any]] | None = Field(default=None, alias="Volumes")
    working_dir: str | None = Field(default=None, alias="WorkingDir")
    labels: dict[str, str] | None = Field(default=None, alias="Labels")
    stop_signal: str | None = Field(default=None, alias="StopSignal")
    # Docker extensions to the OCI config.
    shell: list[str] | None = Field(default=None, alias="Shell")
    healthcheck: dict[str, Any] | None = Field(default=None, alias="Healthcheck")
    on_build: list[str] | None = Field(default=None, alias="OnBuild")
    args_escaped: bool | None = Field(default=None, alias="ArgsEscaped")
    hostname: str | None = Field(default=None, alias="Hostname")
    domainname: str | None = Field(default=None, alias="Domainname")

    def overrides(self) -> dict[str, Any]:
        """Return the keys set in the document, under their OCI names.

        A key given without a value (``User:``) leaves the image unchanged.
        """
        return self.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)


class ImageSpec(_SpecModel):
    """The declarative description of an image."""

    name: str | None = None
    base: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)
    layers: list[LayerSpec] = Field(default_factory=list)
    config: RuntimeConfig | None = None

    @field_validator("base")
    @classmethod
    def _check_base(cls, value: str) -> str:
        if value:
            try:
                parse_reference(value)
            except InvalidReferenceError as exc:
                raise ValueError(str(exc)) from exc
        return value


class BuiltLayer(BaseModel):
    """A compressed, content-addressed layer blob ready to append."""

    model_config = ConfigDict(frozen=True)

    blob: bytes
    digest: str            # sha256:<hex> of blob
    diff_id: str           # sha256:<hex> of the uncompressed tar
    paths: tuple[str, ...] = ()

    @property
    def size(self) -> int:
        return len(self.blob)


# ---------------------------------------------------------------------------
# YAML documents
# ---------------------------------------------------------------------------


def parse_spec(text: str) -> ImageSpec:
    """Parse a YAML document into an :class:`ImageSpec`."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SpecValidationError(f"invalid YAML: {exc}") from exc
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise SpecValidationError(
            f"image spec must be a mapping, got {type(document).__name__}"
        )
    try:
        return ImageSpec.model_validate(document)
    except ValidationError as exc:
        raise SpecValidationError(f"invalid image spec: {exc}") from exc


def load_spec(path: str | Path) -> ImageSpec:
    """Read and validate the image spec at *path*."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise SpecValidationError(f"cannot read {str(path)!r}: {exc}") from exc
    return parse_spec(text)


def dump_spec(spec: ImageSpec) -> str:
    """Serialize *spec* back to YAML, echoing only the keys present on input.

    Keys come out in model field order (``name``, ``base``, ``annotations``,
    ``layers``, ``config``), not in the order they appeared in the document.
    """
    document = spec.model_dump(mode="json", by_alias=True, exclude_unset=True)
    return yaml.safe_dump(
        document,
        sort_keys=False,
        indent=2,
        default_flow_style=False,
        allow_unicode=True,
    )
