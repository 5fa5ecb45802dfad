"""Container image reference parsing.

Accepted form::

    [registry/]repository[:tag][@sha256:<64 hex>]

Examples:
    >>> str(parse_reference("ubuntu"))
    'index.docker.io/library/ubuntu:latest'
    >>> str(parse_reference("ghcr.io/acme/app:v1"))
    'ghcr.io/acme/app:v1'
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

from .errors import InvalidReferenceError

__all__ = [
    "DEFAULT_REGISTRY",
    "DEFAULT_TAG",
    "Reference",
    "parse_reference",
]

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

_DOCKER_HUB_ALIASES = frozenset({"docker.io", "index.docker.io", "registry-1.docker.io"})

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
_REGISTRY_RE = re.compile(r"^[A-Za-z0-9.-]+(?::[0-9]+)?$")


class Reference(BaseModel):
    """A parsed image reference pointing at a tag or a digest."""

    model_config = ConfigDict(frozen=True)

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def identifier(self) -> str:
        """The digest if pinned, else the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def context(self) -> str:
        """``registry/repository`` without tag or digest."""
        return f"{self.registry}/{self.repository}"

    @property
    def is_pinned(self) -> bool:
        return self.digest is not None

    def with_digest(self, digest: str) -> "Reference":
        """Return this reference pinned to *digest*, keeping registry and repository."""
        if not _DIGEST_RE.match(digest):
            raise InvalidReferenceError(f"invalid digest {digest!r}")
        return Reference(registry=self.registry, repository=self.repository, digest=digest)

    def __str__(self) -> str:
        if self.digest:
            return f"{self.context}@{self.digest}"
        return f"{self.context}:{self.tag or DEFAULT_TAG}"


def parse_reference(text: str) -> Reference:
    """Parse *text* into a :class:`Reference`.

    Raises:
        InvalidReferenceError: if *text* is empty or malformed.
    """
    if not text or text != text.strip():
        raise InvalidReferenceError(f"invalid image reference {text!r}")

    remainder = text
    digest: str | None = None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not _DIGEST_RE.match(digest):
            raise InvalidReferenceError(
                f"invalid image reference {text!r}: bad digest {digest!r}"
            )

    tag: str | None = None
    last_slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > last_slash:
        remainder, tag = remainder[:colon], remainder[colon + 1:]
        if not _TAG_RE.match(tag):
            raise InvalidReferenceError(f"invalid image reference {text!r}: bad tag {tag!r}")

    parts = remainder.split("/")
    first = parts[0]
    if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
        registry = first
        parts = parts[1:]
        if not _REGISTRY_RE.match(registry):
            raise InvalidReferenceError(
                f"invalid image reference {text!r}: bad registry {registry!r}"
            )
    else:
        registry = DEFAULT_REGISTRY

    if registry in _DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if len(parts) == 1:
            parts = ["library", *parts]

    for component in parts:
        if not _COMPONENT_RE.match(component):
            raise InvalidReferenceError(
                f"invalid image reference {text!r}: bad repository component {component!r}"
            )

    if digest is not None:
        tag = None
    elif tag is None:
        tag = DEFAULT_TAG

    return Reference(registry=registry, repository="/".join(parts), tag=tag, digest=digest)
