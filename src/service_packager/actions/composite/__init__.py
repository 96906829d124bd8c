from .runner import assemble_composite
from .service import (
    JsonManifestRenderer,
    ServiceManifestRenderer,
    SmfManifestRenderer,
    embed_service_manifest,
    get_renderer,
    register_renderer,
)

__all__ = [
    "JsonManifestRenderer",
    "ServiceManifestRenderer",
    "SmfManifestRenderer",
    "assemble_composite",
    "embed_service_manifest",
    "get_renderer",
    "register_renderer",
]
