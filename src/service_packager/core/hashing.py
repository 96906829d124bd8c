from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


@dataclass(frozen=True, slots=True)
class FileDigest:
    algorithm: str
    hexdigest: str
    bytes: int


@dataclass(frozen=True, slots=True)
class Checksum:
    """
    An expected content digest, e.g. parsed from "sha256:9f86d0...".
    """

    algorithm: str
    hexdigest: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hexdigest}"

    def matches(self, digest: FileDigest) -> bool:
        return (
            digest.algorithm == self.algorithm
            and digest.hexdigest.lower() == self.hexdigest.lower()
        )


def new_hasher(algorithm: str = "sha256") -> "hashlib._Hash":
    try:
        return hashlib.new(algorithm)
    except ValueError as e:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm!r}") from e


def is_supported_algorithm(algorithm: str) -> bool:
    return algorithm in hashlib.algorithms_available


def digest_bytes(b: bytes, *, algorithm: str = "sha256") -> str:
    h = new_hasher(algorithm)
    h.update(b)
    return h.hexdigest()


def sha256_bytes(b: bytes) -> str:
    return digest_bytes(b, algorithm="sha256")


def digest_file(
    path: Path, *, algorithm: str = "sha256", chunk_bytes: int = 1024 * 1024
) -> FileDigest:
    h = new_hasher(algorithm)
    total = 0
    with Path(path).open("rb") as f:
        while True:
            b = f.read(chunk_bytes)
            if not b:
                break
            h.update(b)
            total += len(b)

    return FileDigest(algorithm=algorithm, hexdigest=h.hexdigest(), bytes=total)


def sha256_file(path: Path) -> FileDigest:
    return digest_file(path, algorithm="sha256")


def parse_checksum(value: str, *, default_algorithm: str = "sha256") -> Checksum:
    """
    Accepts "<algorithm>:<hex>" or bare "<hex>" (default algorithm).
    """
    s = value.strip()
    if ":" in s:
        algorithm, _, hexdigest = s.partition(":")
        algorithm = algorithm.strip().lower()
    else:
        algorithm, hexdigest = default_algorithm, s

    hexdigest = hexdigest.strip()
    if not hexdigest or not _HEX_RE.match(hexdigest):
        raise ValueError(f"Checksum is not a hex digest: {value!r}")
    if not is_supported_algorithm(algorithm):
        raise ValueError(f"Unsupported checksum algorithm: {algorithm!r}")

    expected_len = new_hasher(algorithm).digest_size * 2
    if len(hexdigest) != expected_len:
        raise ValueError(
            f"{algorithm} digest must be {expected_len} hex chars, got {len(hexdigest)}"
        )
    return Checksum(algorithm=algorithm, hexdigest=hexdigest.lower())


def tree_digest(root: Path, *, algorithm: str = "sha256") -> str:
    """
    Content hash of a directory tree: relative paths, entry type, exec bit and
    file contents. Timestamps and ownership are ignored.
    """
    root = Path(root)
    h = new_hasher(algorithm)
    for p in sorted(root.rglob("*"), key=lambda x: x.relative_to(root).as_posix()):
        rel = p.relative_to(root).as_posix()
        if p.is_symlink():
            h.update(f"L {rel} {os.readlink(p)}\n".encode("utf-8"))
        elif p.is_dir():
            h.update(f"D {rel}\n".encode("utf-8"))
        elif p.is_file():
            x = "x" if p.stat().st_mode & 0o111 else "-"
            fd = digest_file(p, algorithm=algorithm)
            h.update(f"F {rel} {x} {fd.hexdigest}\n".encode("utf-8"))
    return h.hexdigest()
