from .config import Settings, load_settings
from .errors import (
    ActionCancelled,
    ArchiveWriteFailed,
    ArtifactFetchFailed,
    ArtifactVerificationFailed,
    AssemblyFailed,
    BuildCommandFailed,
    BuildTimeout,
    CyclicDependency,
    DependencyFailed,
    FailureRecord,
    InternalError,
    InvalidManifest,
    MissingPart,
    PackageActionError,
    PackagerError,
    TransientError,
    failure_from_exc,
)
from .fs import (
    atomic_dir_commit,
    atomic_replace,
    atomic_write_bytes,
    atomic_write_text,
    copy_into,
    ensure_parent,
    file_size,
    make_tmp_dir_for,
    relpath_posix,
    safe_rmtree,
    safe_unlink,
)
from .hashing import (
    Checksum,
    FileDigest,
    digest_bytes,
    digest_file,
    new_hasher,
    parse_checksum,
    sha256_bytes,
    sha256_file,
    tree_digest,
)
from .json import atomic_write_json, read_json, stable_json_dumps
from .logging import ILogger, bind, clear_bindings, configure_logging, get_logger
from .paths import BuildLayout
from .provenance import Timer, new_run_id
from .time import format_duration_ms, monotonic_ms, utc_now_iso

__all__ = [
    "Settings",
    "load_settings",
    "ActionCancelled",
    "ArchiveWriteFailed",
    "ArtifactFetchFailed",
    "ArtifactVerificationFailed",
    "AssemblyFailed",
    "BuildCommandFailed",
    "BuildTimeout",
    "CyclicDependency",
    "DependencyFailed",
    "FailureRecord",
    "InternalError",
    "InvalidManifest",
    "MissingPart",
    "PackageActionError",
    "PackagerError",
    "TransientError",
    "failure_from_exc",
    "atomic_dir_commit",
    "atomic_replace",
    "atomic_write_bytes",
    "atomic_write_text",
    "copy_into",
    "ensure_parent",
    "file_size",
    "make_tmp_dir_for",
    "relpath_posix",
    "safe_rmtree",
    "safe_unlink",
    "Checksum",
    "FileDigest",
    "digest_bytes",
    "digest_file",
    "new_hasher",
    "parse_checksum",
    "sha256_bytes",
    "sha256_file",
    "tree_digest",
    "atomic_write_json",
    "read_json",
    "stable_json_dumps",
    "ILogger",
    "bind",
    "clear_bindings",
    "configure_logging",
    "get_logger",
    "BuildLayout",
    "Timer",
    "new_run_id",
    "format_duration_ms",
    "monotonic_ms",
    "utc_now_iso",
]
