"""Wire schemas for the worker and sandbox bridges (JSON, camelCase keys)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from xr_buildkit.models.build import BuildRequest, BuildResult


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ── native worker ──


class WorkerBuildMessage(WireModel):
    """Payload of a ``build`` command."""

    cmd: str = "build"
    message_id: str | None = None
    framework: str
    entry: str
    files: dict[str, str]
    defines: dict[str, str] = Field(default_factory=dict)
    minify: bool = False

    @classmethod
    def from_request(cls, request: BuildRequest) -> WorkerBuildMessage:
        return cls(
            framework=request.framework.value,
            entry=request.entry_path,
            files=request.files(),
            defines=dict(request.defines),
            minify=request.minify,
        )


class WorkerBuildResponse(WireModel):
    status: str
    message_id: str | None = None
    bundle_code: str | None = None
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    bytes: int = 0
    duration_ms: int = 0
    from_cache: bool = False
    metafile: dict[str, Any] | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "ok"

    def to_result(self) -> BuildResult:
        errors = list(self.errors)
        if not self.success and not errors and self.error:
            errors = [self.error]
        return BuildResult(
            success=self.success,
            bundle_code=self.bundle_code if self.success else None,
            warnings=list(self.warnings),
            errors=errors,
            bytes=self.bytes,
            duration_ms=self.duration_ms,
        )


class WorkerStats(WireModel):
    """Aggregate counters reported by the worker. Operator-facing only."""

    total_builds: int = 0
    cache_hits: int = 0
    average_build_time: float = 0.0
    last_build_time: int = 0
    cache_size: int = 0
    uptime: float = 0.0


# ── sandbox bridge ──


class SandboxBuildMessage(WireModel):
    """Host-to-sandbox build call: the request plus the compiler options."""

    build_id: str | None = None
    framework: str
    entry_code: str
    entry_path: str
    extra_files: dict[str, str] = Field(default_factory=dict)
    jsx_runtime: str = "automatic"
    defines: dict[str, str] = Field(default_factory=dict)
    minify: bool = False
    options: dict[str, Any] = Field(default_factory=dict)


class SandboxBuildResponse(WireModel):
    """Sandbox-to-host result post."""

    build_id: str | None = None
    success: bool = False
    bundle_code: str | None = None
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    bytes: int = 0
    duration_ms: int = 0

    def to_result(self) -> BuildResult:
        # A compiler that reports errors did not produce a usable bundle
        success = self.success and not self.errors
        return BuildResult(
            success=success,
            bundle_code=self.bundle_code if success else None,
            warnings=list(self.warnings),
            errors=list(self.errors),
            bytes=self.bytes,
            duration_ms=self.duration_ms,
        )
