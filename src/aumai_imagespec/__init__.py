"""
AumAI ImageSpec: reproducible, content-addressed container images.

An image is described declaratively (base reference, layers of explicit
files and verified remote archives, annotations and a runtime config
override) and assembled deterministically:

    spec = load_spec("image.yaml")
    result = build(spec)
    print(result.digest)
"""

__version__ = "0.1.0"

from .core import BuildResult, ImageAssembler, ReferenceResolver, build, resolve
from .layers import LayerBuilder
from .models import ArchiveSpec, FileSpec, ImageSpec, LayerSpec, RuntimeConfig, dump_spec, load_spec
from .registry import RegistryClient
from .settings import Settings

__all__ = [
    "ArchiveSpec",
    "BuildResult",
    "FileSpec",
    "ImageAssembler",
    "ImageSpec",
    "LayerBuilder",
    "LayerSpec",
    "ReferenceResolver",
    "RegistryClient",
    "RuntimeConfig",
    "Settings",
    "build",
    "dump_spec",
    "load_spec",
    "resolve",
]
