from __future__ import annotations

import traceback
from dataclasses import dataclass
from typing import Sequence


class PackagerError(RuntimeError):
    """Base error"""


@dataclass(frozen=True, slots=True)
class FailureRecord:
    """
    A normalized, serializable record of a package failure.
    """

    kind: str
    message: str
    traceback: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"kind": self.kind, "message": self.message, "traceback": self.traceback}


def failure_from_exc(exc: BaseException, *, with_traceback: bool = True) -> FailureRecord:
    kind = exc.kind if isinstance(exc, PackageActionError) else type(exc).__name__
    tb = None
    if with_traceback and exc.__traceback__ is not None:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return FailureRecord(kind=kind, message=str(exc), traceback=tb)


class InvalidManifest(PackagerError):
    """
    Structural: the manifest cannot be turned into a set of PackageSpecs.
    Fatal before any work starts.
    """

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = tuple(problems)
        body = "\n".join(f"- {p}" for p in self.problems)
        super().__init__(f"Invalid manifest:\n{body}")


class CyclicDependency(PackagerError):
    """
    Structural: composite parts form a cycle. `cycle` starts and ends with the
    same name.
    """

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__("Cyclic dependency: " + " -> ".join(self.cycle))


class TransientError(PackagerError):
    """
    Retryable failures such as network timeouts, temporary upstream 5xx
    """


class InternalError(PackagerError):
    """Bugs or invariant violation in our code"""


class MissingPart(InternalError):
    def __init__(self, package: str, missing: Sequence[str]) -> None:
        self.package = package
        self.missing = tuple(missing)
        super().__init__(
            f"{package}: assembly started before parts resolved: {', '.join(self.missing)}"
        )


class PackageActionError(PackagerError):
    """
    Per-package failure. Fails that package (and its dependents) only.
    """

    kind: str = "PackageActionError"

    def __init__(self, package: str, message: str) -> None:
        self.package = package
        super().__init__(f"{package}: {message}")


class ArtifactFetchFailed(PackageActionError):
    kind = "ArtifactFetchFailed"


class ArtifactVerificationFailed(PackageActionError):
    kind = "ArtifactVerificationFailed"

    def __init__(self, package: str, *, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(package, f"checksum mismatch: expected {expected}, got {actual}")


class BuildCommandFailed(PackageActionError):
    kind = "BuildCommandFailed"

    def __init__(
        self,
        package: str,
        message: str,
        *,
        exit_status: int | None,
        captured_output: str,
    ) -> None:
        self.exit_status = exit_status
        self.captured_output = captured_output
        super().__init__(package, message)


class BuildTimeout(BuildCommandFailed):
    kind = "BuildTimeout"


class AssemblyFailed(PackageActionError):
    kind = "AssemblyFailed"


class ArchiveWriteFailed(PackageActionError):
    kind = "ArchiveWriteFailed"


class DependencyFailed(PackageActionError):
    """Skipped because a part (directly or transitively) failed."""

    kind = "SkippedDueToDependencyFailure"

    def __init__(self, package: str, failed_part: str) -> None:
        self.failed_part = failed_part
        super().__init__(package, f"dependency '{failed_part}' failed")


class ActionCancelled(PackageActionError):
    kind = "Cancelled"
