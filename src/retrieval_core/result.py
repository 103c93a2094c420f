"""
retrieval_core/result.py

Result types for retrieval outcomes.

Error Handling Convention:
--------------------------
1. **Exceptions** are raised for configuration and programmer errors:
   - ConfigurationError: a required job/manager parameter is missing
   - InvalidPathError: a resolved path has no parent directory or is malformed
   - ValueError: invalid arguments to functions

2. **Result types** (this module) are returned for recoverable runtime issues:
   - Artifact not present in a tier (ResolutionResult with found=False)
   - Archive CRC/size mismatches, unreadable containers
   - Cloud download failures

3. Facade operations (FileSearch, DataPackageFileHandler) collapse these into
   a boolean after logging one explanatory message.

Usage:
------
    from retrieval_core.result import Ok, Err

    def unzip(path: Path) -> Result[list[ExtractedEntry]]:
        ...
        return Ok(listing, archive=str(path))

    result = codec.unzip_file(path, work_dir)
    if result.is_ok:
        for entry in result.value:
            print(entry.path)
    else:
        print(f"Failed: {result.error}: {result.message}")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """
    A result that is either a success (Ok), a failure (Err) or skipped (Noop).

    Attributes:
        status: "ok", "error" or "noop"
        value: The success value (only meaningful when status="ok")
        error: Error code (only meaningful when status="error")
        message: Human-readable error message or skip reason
        extras: Additional context (archive path, file counts, etc.)
    """

    status: str
    value: T | None = None
    error: str | None = None
    message: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    @property
    def is_err(self) -> bool:
        return self.status == "error"

    @property
    def is_noop(self) -> bool:
        return self.status == "noop"

    def __bool__(self) -> bool:
        return self.status != "error"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict for JSON output."""
        d: dict[str, Any] = {"status": self.status}
        if self.status == "ok":
            if self.value is not None:
                d["value"] = self.value
        elif self.status == "error":
            if self.error:
                d["error"] = self.error
            if self.message:
                d["message"] = self.message
        elif self.status == "noop":
            if self.message:
                d["reason"] = self.message
        d.update(self.extras)
        return d


def Ok(value: T = None, **extras: Any) -> Result[T]:  # noqa: N802 - intentional PascalCase
    """Create a successful result."""
    return Result(status="ok", value=value, extras=extras)


def Err(error: str, message: str | None = None, **extras: Any) -> Result[Any]:  # noqa: N802
    """Create a failure result."""
    return Result(status="error", error=error, message=message, extras=extras)


def Noop(reason: str, **extras: Any) -> Result[Any]:  # noqa: N802
    """Create a no-operation result (skipped)."""
    return Result(status="noop", message=reason, extras=extras)


@dataclass
class ResolutionResult:
    """Outcome of one resolver call.

    ``path`` is always populated: on a miss it holds the primary-storage
    location so callers have a deterministic place to name in messages.
    Cloud hits carry the matched file ids.
    """

    path: str
    found: bool
    reason: str = ""
    cloud_file_ids: list[int] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.found

    @classmethod
    def hit(cls, path: str, cloud_file_ids: list[int] | None = None) -> ResolutionResult:
        return cls(path=path, found=True, cloud_file_ids=list(cloud_file_ids or []))

    @classmethod
    def not_found(cls, path: str, reason: str) -> ResolutionResult:
        return cls(path=path, found=False, reason=reason)
