"""Exception taxonomy for aumai-imagespec.

Every failure raised by the build pipeline derives from ``ImageSpecError``
so callers (and the CLI) can catch a single type.  Apart from the transport
retries oras makes for registry requests, the first error raised aborts the
build.
"""

from __future__ import annotations

__all__ = [
    "ArchiveError",
    "AuthenticationError",
    "BuildCancelledError",
    "ConflictingContentError",
    "DuplicatePathError",
    "EncodingError",
    "FetchError",
    "ImageSpecError",
    "IntegrityError",
    "InvalidPathError",
    "InvalidReferenceError",
    "LayerError",
    "MergeError",
    "NotFoundError",
    "PushError",
    "RegistryError",
    "RegistryUnavailableError",
    "SizeMismatchError",
    "SpecValidationError",
]


class ImageSpecError(Exception):
    """Base class for all aumai-imagespec errors."""


class SpecValidationError(ImageSpecError):
    """The declarative image spec could not be parsed or validated."""


class InvalidReferenceError(ImageSpecError):
    """An image reference is not ``registry/repository[:tag|@digest]``."""


# ---------------------------------------------------------------------------
# Registry failures
# ---------------------------------------------------------------------------


class RegistryError(ImageSpecError):
    """Base class for failures talking to a container registry."""


class RegistryUnavailableError(RegistryError):
    """The registry could not be reached or answered with an error."""


class AuthenticationError(RegistryError):
    """Logging in to the registry with the configured credentials failed."""


class NotFoundError(RegistryError):
    """The requested manifest or blob does not exist."""


class PushError(RegistryError):
    """Writing a blob or manifest to the registry failed."""


# ---------------------------------------------------------------------------
# Layer failures
# ---------------------------------------------------------------------------


class LayerError(ImageSpecError):
    """A layer could not be built.

    ``layer`` is the zero-based declaration index of the failing layer, or
    ``None`` when the error was raised outside of a layer build.
    """

    def __init__(self, message: str, layer: int | None = None) -> None:
        self.layer = layer
        if layer is not None:
            message = f"layer {layer}: {message}"
        super().__init__(message)


class InvalidPathError(LayerError):
    """A file or archive entry path is empty or escapes the layer root."""


class DuplicatePathError(LayerError):
    """Two files in the same layer normalize to the same path."""


class ConflictingContentError(LayerError):
    """A file sets both inline ``contents`` and base64 ``data``."""


class EncodingError(LayerError):
    """A file's ``data`` is not valid base64."""


class ArchiveError(LayerError):
    """Base class for remote archive retrieval and verification failures."""


class FetchError(ArchiveError):
    """The archive could not be downloaded or read."""


class SizeMismatchError(ArchiveError):
    """The archive length differs from the declared size."""


class IntegrityError(ArchiveError):
    """The archive digest differs from the declared sha256."""


class MergeError(ImageSpecError):
    """The runtime config override could not be merged onto the image."""


class BuildCancelledError(ImageSpecError):
    """The build was cancelled while work was still in flight."""
