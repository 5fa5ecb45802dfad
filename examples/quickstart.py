"""
aumai-imagespec quickstart: parse a spec, build an image, inspect the result.

Run directly:

    python examples/quickstart.py

No network access is needed: the spec has no base image and no archives.
"""

from __future__ import annotations

import io
import json
import tarfile

SPEC = """\
annotations:
  org.opencontainers.image.title: quickstart
  org.opencontainers.image.version: "1.0"
layers:
  - files:
      - name: /app/main.sh
        contents: |
          #!/bin/sh
          echo "hello from aumai-imagespec"
        mode: 0755
      - name: /app/README
        contents: built with aumai-imagespec
  - files:
      - name: /etc/app/logo.bin
        data: iVBORw0KGgo=
config:
  Entrypoint: ["/app/main.sh"]
  Env: ["APP_MODE=demo"]
  WorkingDir: /app
"""


# ---------------------------------------------------------------------------
# Demo 1: Parse and echo the spec
# ---------------------------------------------------------------------------

def demo_parse_spec():
    """Parse the YAML document and echo it back."""
    print("\n=== Demo 1: Parse spec ===")

    from aumai_imagespec.models import dump_spec, parse_spec

    spec = parse_spec(SPEC)
    print(f"  Layers      : {len(spec.layers)}")
    print(f"  Annotations : {spec.annotations}")
    print("\n  Normalized YAML:")
    for line in dump_spec(spec).splitlines():
        print(f"    {line}")
    return spec


# ---------------------------------------------------------------------------
# Demo 2: Build the image
# ---------------------------------------------------------------------------

def demo_build(spec):
    """Build the image twice and show the digest does not change."""
    print("\n=== Demo 2: Build image ===")

    from aumai_imagespec.core import build

    first = build(spec)
    second = build(spec)
    print(f"  Digest       : {first.digest}")
    print(f"  Reproducible : {first.digest == second.digest}")
    return first.image


# ---------------------------------------------------------------------------
# Demo 3: Inspect manifest, config and layers
# ---------------------------------------------------------------------------

def demo_inspect(image) -> None:
    """Print the manifest, runtime config and every layer's entries."""
    print("\n=== Demo 3: Inspect image ===")

    from aumai_imagespec.image import get_runtime_config

    print("  Manifest:")
    for line in json.dumps(image.manifest(), indent=2).splitlines():
        print(f"    {line}")
    print(f"\n  Runtime config : {get_runtime_config(image)}")

    for number, descriptor in enumerate(image.layers):
        blob = image.blobs[descriptor.digest]
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            print(f"\n  Layer {number} ({descriptor.size} bytes, {descriptor.digest[:19]}...)")
            for member in tar.getmembers():
                print(f"    {oct(member.mode):>7}  {member.size:5d}  {member.name}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    print("aumai-imagespec quickstart demo")
    print("=" * 40)

    spec = demo_parse_spec()
    image = demo_build(spec)
    demo_inspect(image)

    print("\n" + "=" * 40)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
