from __future__ import annotations

import shlex
from enum import StrEnum
from functools import cached_property
from pathlib import Path, PurePosixPath
from typing import Annotated, Any, Literal, Optional, Union
from urllib.parse import urlsplit

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)

NamePattern = r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$"

PackageName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=120, pattern=NamePattern),
]
ServiceName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=120, pattern=r"^[A-Za-z0-9][A-Za-z0-9_\-/]*$"),
]
PropertyValue = Union[bool, int, str]


class OutputKind(StrEnum):
    zone = "zone"
    tarball = "tarball"


class CompositeLayout(StrEnum):
    namespaced = "namespaced"
    flatten = "flatten"


def _check_relative(p: str, *, what: str) -> str:
    pp = PurePosixPath(p)
    if pp.is_absolute() or ".." in pp.parts:
        raise ValueError(f"{what} must be a relative path without '..': {p!r}")
    return p


class SourcePath(BaseModel):
    """
    One input of a local package: `from` (relative to the manifest directory,
    or absolute) is copied to `to` inside the package tree.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    from_: str = Field(..., alias="from", min_length=1)
    to: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_path(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"from": data}
        return data

    @field_validator("to")
    @classmethod
    def _relative_to(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().strip("/") or "."
        return _check_relative(v, what="SourcePath.to")

    @property
    def dest(self) -> str:
        if self.to is not None:
            return self.to
        name = PurePosixPath(self.from_.rstrip("/")).name
        return name or "."

    def resolve(self, base_dir: Path) -> Path:
        p = Path(self.from_).expanduser()
        return p if p.is_absolute() else base_dir / p


class LocalSource(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["local"] = "local"
    build_command: list[str] = Field(..., min_length=1)
    source_paths: list[SourcePath] = Field(..., min_length=1)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("build_command", mode="before")
    @classmethod
    def _split_command(cls, v: Any) -> Any:
        if isinstance(v, str):
            return shlex.split(v)
        return v


class PrebuiltSource(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["prebuilt"] = "prebuilt"
    url: Optional[str] = None
    checksum: Optional[str] = None
    version: Optional[str] = None
    filename: Optional[str] = None
    unpack: bool = False

    @model_validator(mode="after")
    def _validate_location(self) -> "PrebuiltSource":
        if not self.url or not self.checksum:
            missing = [k for k in ("url", "checksum") if not getattr(self, k)]
            raise ValueError(
                f"prebuilt source needs both a url and a checksum (missing: {', '.join(missing)})"
            )
        scheme = urlsplit(self.url).scheme.lower()
        if scheme not in ("http", "https"):
            raise ValueError(f"prebuilt url must be http(s), got {self.url!r}")
        if self.filename is not None:
            _check_relative(self.filename, what="PrebuiltSource.filename")
        return self

    def effective_filename(self) -> str:
        if self.filename:
            return self.filename
        name = PurePosixPath(urlsplit(self.url or "").path).name
        return name or "artifact"


class CompositeSource(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["composite"] = "composite"
    parts: list[PackageName] = Field(..., min_length=1)
    layout: CompositeLayout = CompositeLayout.namespaced

    @field_validator("parts")
    @classmethod
    def _unique_parts(cls, v: list[str]) -> list[str]:
        dupes = sorted({p for p in v if v.count(p) > 1})
        if dupes:
            raise ValueError(f"duplicate composite parts: {dupes}")
        return v


PackageSource = Annotated[
    Union[LocalSource, PrebuiltSource, CompositeSource],
    Field(discriminator="type"),
]


class ServiceManifestSpec(BaseModel):
    """
    Data needed to emit a service-lifecycle manifest for a package.
    `properties` keys may be "group/name"; a bare name goes to the "config" group.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    service_name: ServiceName
    exec_path: str = Field(..., min_length=1)
    properties: dict[str, PropertyValue] = Field(default_factory=dict)
    description: Optional[str] = None
    format: Optional[str] = None
    path: Optional[str] = None

    @field_validator("path")
    @classmethod
    def _relative_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_relative(v.strip("/"), what="ServiceManifestSpec.path")


class PackageSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: PackageName
    source: PackageSource
    output_kind: OutputKind = OutputKind.tarball
    service_manifest: Optional[ServiceManifestSpec] = None

    # built when a requested package needs it, never archived on its own
    intermediate: bool = False

    @property
    def kind(self) -> str:
        return self.source.type

    @property
    def parts(self) -> tuple[str, ...]:
        if isinstance(self.source, CompositeSource):
            return tuple(self.source.parts)
        return ()


class Manifest(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    packages: tuple[PackageSpec, ...]
    base_dir: Path = Field(default_factory=Path.cwd)

    @model_validator(mode="after")
    def _unique_names(self) -> "Manifest":
        names = [p.name for p in self.packages]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate package names: {dupes}")
        return self

    @cached_property
    def by_name(self) -> dict[str, PackageSpec]:
        return {p.name: p for p in self.packages}

    def names(self) -> list[str]:
        return [p.name for p in self.packages]

    def get(self, name: str) -> PackageSpec:
        return self.by_name[name]

    def default_targets(self) -> list[str]:
        return [p.name for p in self.packages if not p.intermediate]
