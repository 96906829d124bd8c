from .loader import load_manifest, read_manifest_file, validate_manifest
from .models import (
    CompositeLayout,
    CompositeSource,
    LocalSource,
    Manifest,
    OutputKind,
    PackageSpec,
    PrebuiltSource,
    ServiceManifestSpec,
    SourcePath,
)

__all__ = [
    "CompositeLayout",
    "CompositeSource",
    "LocalSource",
    "Manifest",
    "OutputKind",
    "PackageSpec",
    "PrebuiltSource",
    "ServiceManifestSpec",
    "SourcePath",
    "load_manifest",
    "read_manifest_file",
    "validate_manifest",
]
