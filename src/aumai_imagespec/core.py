"""Core logic for aumai-imagespec."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing

import requests
import structlog
from pydantic import BaseModel, ConfigDict

from .errors import IntegrityError
from .image import (
    Image,
    append_layer,
    empty_image,
    get_runtime_config,
    merge_runtime_config,
    set_annotations,
    set_runtime_config,
)
from .layers import LayerBuilder
from .models import BuiltLayer, ImageSpec, LayerSpec
from .reference import parse_reference
from .registry import RegistryClient
from .settings import Settings

__all__ = [
    "BuildResult",
    "ImageAssembler",
    "ReferenceResolver",
    "build",
    "resolve",
]

logger = structlog.get_logger(__name__)


class BuildResult(BaseModel):
    """The assembled image and its manifest digest."""

    model_config = ConfigDict(frozen=True)

    image: Image
    digest: str


class ReferenceResolver:
    """Pins mutable image references to the digest they currently name."""

    def __init__(self, registry: RegistryClient) -> None:
        self._registry = registry

    def resolve(self, reference: str) -> str:
        """
        Return *reference* rewritten as ``registry/repository@sha256:<hex>``.

        An empty reference means "no base image" and is returned unchanged.
        Resolving an already pinned reference re-confirms its digest.
        """
        if not reference:
            return reference
        parsed = parse_reference(reference)
        digest = self._registry.resolve_digest(parsed)
        if parsed.digest is not None and digest != parsed.digest:
            raise IntegrityError(
                f"registry reports {digest!r} for {reference!r}, pinned to {parsed.digest!r}"
            )
        pinned = str(parsed.with_digest(digest))
        logger.info("base_resolved", reference=reference, pinned=pinned)
        return pinned

    def resolve_spec(self, spec: ImageSpec) -> ImageSpec:
        """Return a copy of *spec* whose only change is a digest-pinned ``base``."""
        if not spec.base:
            return spec
        return spec.model_copy(update={"base": self.resolve(spec.base)})


class ImageAssembler:
    """
    Folds built layers and declarative metadata onto a base image.

    Layers are built in declaration order.  With ``Settings.max_workers``
    above one they are built concurrently, but still appended in
    declaration order and only after each layer passed verification.
    """

    def __init__(
        self,
        registry: RegistryClient,
        layer_builder: LayerBuilder,
        settings: Settings | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._registry = registry
        self._layers = layer_builder
        self._settings = settings if settings is not None else Settings()
        self._cancel = cancel_event if cancel_event is not None else threading.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        session: requests.Session | None = None,
    ) -> "ImageAssembler":
        """Wire a registry client and layer builder sharing one session and cancel event."""
        settings = settings if settings is not None else Settings()
        session = session if session is not None else requests.Session()
        cancel_event = threading.Event()
        return cls(
            RegistryClient(session, settings),
            LayerBuilder(session, settings, cancel_event),
            settings,
            cancel_event,
        )

    @property
    def registry(self) -> RegistryClient:
        return self._registry

    def cancel(self) -> None:
        """Abort in-flight archive fetches at their next chunk."""
        self._cancel.set()

    def build(self, spec: ImageSpec) -> BuildResult:
        """Assemble the image described by *spec*.  Nothing is pushed."""
        self._cancel.clear()
        image = self._base_image(spec)
        with closing(self._built_layers(spec.layers)) as built_layers:
            for built in built_layers:
                image = append_layer(image, built)

        if spec.annotations:
            image = set_annotations(image, spec.annotations)

        if spec.config is not None:
            merged = merge_runtime_config(get_runtime_config(image), spec.config)
            image = set_runtime_config(image, merged)

        digest = image.digest()
        logger.info("image_built", digest=digest, layers=len(image.layers))
        return BuildResult(image=image, digest=digest)

    def push(self, target: str, image: Image) -> str:
        """Push *image* to *target* and return ``registry/repository@<digest>``."""
        reference = parse_reference(target)
        digest = self._registry.push_image(reference, image)
        return f"{reference.context}@{digest}"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _base_image(self, spec: ImageSpec) -> Image:
        if not spec.base:
            return empty_image(
                self._settings.platform_os, self._settings.platform_architecture
            )
        return self._registry.fetch_image(parse_reference(spec.base))

    def _built_layers(self, layers: list[LayerSpec]) -> Iterator[BuiltLayer]:
        if self._settings.max_workers <= 1 or len(layers) <= 1:
            for index, layer in enumerate(layers):
                yield self._layers.build(layer, index)
            return

        pool = ThreadPoolExecutor(
            max_workers=self._settings.max_workers, thread_name_prefix="aumai-layer"
        )
        futures = [pool.submit(self._layers.build, layer, index) for index, layer in enumerate(layers)]
        try:
            for future in futures:
                yield future.result()
        except BaseException:
            self._cancel.set()
            raise
        finally:
            for future in futures:
                future.cancel()
            pool.shutdown(wait=True)


def build(
    spec: ImageSpec,
    settings: Settings | None = None,
    session: requests.Session | None = None,
) -> BuildResult:
    """Build *spec* with a freshly wired :class:`ImageAssembler`."""
    return ImageAssembler.from_settings(settings, session).build(spec)


def resolve(
    spec: ImageSpec,
    settings: Settings | None = None,
    session: requests.Session | None = None,
) -> ImageSpec:
    """Return *spec* with its ``base`` pinned to a digest."""
    settings = settings if settings is not None else Settings()
    return ReferenceResolver(RegistryClient(session, settings)).resolve_spec(spec)
