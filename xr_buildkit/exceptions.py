"""Custom exceptions for xr-buildkit.

Raised inside backends only; every backend converts them into a failed
BuildResult before returning.
"""


class BuildKitError(Exception):
    """Base exception for all build kit errors."""


class InitializationTimeout(BuildKitError):
    """Raised when the sandbox or worker never became ready."""


class WorkerUnavailable(BuildKitError):
    """Raised when the native worker is selected but not running."""


class CompileTimeout(BuildKitError):
    """Raised when a build call exceeds its hard ceiling."""


class CompileError(BuildKitError):
    """Raised when the compiler reported diagnostics."""

    def __init__(self, diagnostics: list[str]):
        self.diagnostics = diagnostics
        super().__init__(diagnostics[0] if diagnostics else "Compilation failed")


class NetworkUnavailable(BuildKitError):
    """Raised when no compiler source could be reached. Triggers fallback mode."""

    def __init__(self, sources: list[str]):
        self.sources = sources
        super().__init__(
            f"All compiler sources failed to load ({len(sources)} tried). "
            "Network may be restricted."
        )


class SandboxError(BuildKitError):
    """Raised when script evaluation inside the sandbox fails."""


class InvalidTransitionError(BuildKitError):
    """Raised on an illegal build status transition."""
