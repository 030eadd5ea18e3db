"""Build request/result value types and the build status state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from xr_buildkit.exceptions import InvalidTransitionError
from xr_buildkit.models.framework import FrameworkKind

SOURCE_ROOT = "/src"


@dataclass(frozen=True)
class BuildRequest:
    """One build attempt. Owned by the caller until handed to a backend."""

    framework: FrameworkKind
    entry_code: str
    extra_files: Mapping[str, str] = field(default_factory=dict)  # path -> content
    jsx_runtime: str = "automatic"  # "automatic" | "classic"
    defines: Mapping[str, str] = field(default_factory=dict)
    minify: bool = False

    @property
    def entry_path(self) -> str:
        return f"{SOURCE_ROOT}/{self.framework.entry_file_name}"

    def files(self) -> dict[str, str]:
        """Entry file plus extra files. Extra files win on path collisions."""
        merged = {self.entry_path: self.entry_code}
        merged.update(self.extra_files)
        return merged

    def to_payload(self) -> dict[str, Any]:
        return {
            "framework": self.framework.value,
            "entryCode": self.entry_code,
            "extraFiles": dict(self.extra_files),
            "jsxRuntime": self.jsx_runtime or "automatic",
            "defines": dict(self.defines),
            "minify": self.minify,
        }


@dataclass(frozen=True)
class BuildResult:
    """
    Outcome of a build.
    A failed result never carries a bundle; bytes/duration_ms stay 0 unless
    something was measured before the failure.
    """

    success: bool
    bundle_code: str | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    bytes: int = 0
    duration_ms: int = 0

    def __post_init__(self) -> None:
        if not self.success and self.bundle_code is not None:
            object.__setattr__(self, "bundle_code", None)

    @classmethod
    def failure(
        cls,
        errors: list[str] | str,
        *,
        warnings: list[str] | None = None,
        duration_ms: int = 0,
        bytes: int = 0,
    ) -> BuildResult:
        if isinstance(errors, str):
            errors = [errors]
        return cls(
            success=False,
            errors=list(errors),
            warnings=list(warnings or []),
            bytes=bytes,
            duration_ms=duration_ms,
        )

    @property
    def headline(self) -> str:
        """First error, rendered by the UI as the failure title."""
        return self.errors[0] if self.errors else "Build failed"

    @property
    def details(self) -> list[str]:
        return self.errors[1:]


class BuildState(Enum):
    IDLE = "idle"
    BUILDING = "building"
    SUCCESS = "success"
    ERROR = "error"


_TRANSITIONS: dict[BuildState, frozenset[BuildState]] = {
    BuildState.IDLE: frozenset({BuildState.BUILDING, BuildState.IDLE}),
    BuildState.BUILDING: frozenset({BuildState.SUCCESS, BuildState.ERROR, BuildState.IDLE}),
    BuildState.SUCCESS: frozenset({BuildState.BUILDING, BuildState.IDLE}),
    BuildState.ERROR: frozenset({BuildState.BUILDING, BuildState.IDLE}),
}


@dataclass(frozen=True)
class BuildStatus:
    """Immutable snapshot of the build manager's state."""

    state: BuildState
    bytes: int = 0
    duration_ms: int = 0
    message: str = ""

    @classmethod
    def idle(cls) -> BuildStatus:
        return cls(BuildState.IDLE)

    @classmethod
    def building(cls) -> BuildStatus:
        return cls(BuildState.BUILDING)

    @classmethod
    def success(cls, bytes: int, duration_ms: int) -> BuildStatus:
        return cls(BuildState.SUCCESS, bytes=bytes, duration_ms=duration_ms)

    @classmethod
    def error(cls, message: str) -> BuildStatus:
        return cls(BuildState.ERROR, message=message)

    @property
    def is_building(self) -> bool:
        return self.state is BuildState.BUILDING

    @property
    def is_success(self) -> bool:
        return self.state is BuildState.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.state is BuildState.ERROR

    def can_transition_to(self, new: BuildStatus) -> bool:
        return new.state in _TRANSITIONS[self.state]

    def transition(self, new: BuildStatus) -> BuildStatus:
        if not self.can_transition_to(new):
            raise InvalidTransitionError(
                f"Illegal build status transition: {self.state.value} -> {new.state.value}"
            )
        return new

    @property
    def status_text(self) -> str:
        if self.state is BuildState.IDLE:
            return "Ready to build"
        if self.state is BuildState.BUILDING:
            return "Building..."
        if self.state is BuildState.SUCCESS:
            return f"Built in {self.duration_ms / 1000:.1f}s, {self.bytes / 1024:.1f} KB"
        return self.message
