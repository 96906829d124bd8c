from .archive import ArchiveBundle, archive_package, write_archive
from .build import run_local_build
from .composite import assemble_composite, embed_service_manifest
from .fetch import fetch_prebuilt

__all__ = [
    "ArchiveBundle",
    "archive_package",
    "assemble_composite",
    "embed_service_manifest",
    "fetch_prebuilt",
    "run_local_build",
    "write_archive",
]
