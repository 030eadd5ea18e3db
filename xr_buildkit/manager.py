"""Build manager: single-flight builds, status state machine, analysis."""

from __future__ import annotations

import asyncio
from typing import Callable

import structlog

from xr_buildkit.analyzer import BuildAnalysis, BuildAnalyzer, BuildTrends
from xr_buildkit.backends.base import BuildBackend
from xr_buildkit.backends.factory import BuildBackendFactory
from xr_buildkit.backends.native_backend import NativeWorkerBackend
from xr_buildkit.events import AnalysisReady, EventBus, StatusChanged
from xr_buildkit.models.build import BuildRequest, BuildResult, BuildStatus
from xr_buildkit.models.framework import FrameworkKind
from xr_buildkit.models.protocol import WorkerStats

log = structlog.get_logger(__name__)

BUILD_IN_PROGRESS = "Build already in progress"
SERVICE_NOT_AVAILABLE = "Build service not available"
BUILD_CANCELLED = "Build cancelled"

DEFAULT_DEFINES = {"process.env.NODE_ENV": '"production"'}

CompletionCallback = Callable[[BuildResult], None]


class BuildManager:
    """
    Entry point for builds. At most one build runs per instance; a call made
    while another is in flight is rejected, never queued.
    """

    def __init__(
        self,
        factory: BuildBackendFactory,
        analyzer: BuildAnalyzer | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._factory = factory
        self._analyzer = analyzer or BuildAnalyzer()
        self.events = events or EventBus()

        self._status = BuildStatus.idle()
        self._building = False
        self._backend: BuildBackend | None = None
        self._last_analysis: BuildAnalysis | None = None
        self._trends: BuildTrends | None = None

    # ── observable state ───────────────────────────────────────────────────

    @property
    def status(self) -> BuildStatus:
        return self._status

    @property
    def is_building(self) -> bool:
        return self._building

    @property
    def last_analysis(self) -> BuildAnalysis | None:
        return self._last_analysis

    @property
    def trends(self) -> BuildTrends | None:
        return self._trends

    @property
    def analyzer(self) -> BuildAnalyzer:
        return self._analyzer

    @property
    def backend(self) -> BuildBackend | None:
        """Backend used by the most recent build."""
        return self._backend

    @property
    def is_using_native(self) -> bool:
        return self._factory.is_native_available and isinstance(
            self._backend, NativeWorkerBackend
        )

    # ── builds ─────────────────────────────────────────────────────────────

    async def build_code(
        self,
        code: str,
        framework: FrameworkKind,
        on_complete: CompletionCallback | None = None,
        *,
        minify: bool = False,
    ) -> BuildResult:
        if self._building:
            log.warning("build.rejected", reason="in_progress", framework=framework.value)
            result = BuildResult.failure(BUILD_IN_PROGRESS)
            self._complete(result, on_complete)
            return result

        self._building = True
        try:
            self._set_status(BuildStatus.building())
            request = BuildRequest(
                framework=framework,
                entry_code=code,
                jsx_runtime="automatic",
                defines=dict(DEFAULT_DEFINES),
                minify=minify,
            )
            try:
                result = await self._run(request)
            except asyncio.CancelledError:
                self._set_status(BuildStatus.error(BUILD_CANCELLED))
                log.warning("build.cancelled", framework=framework.value)
                raise

            if result.success:
                self._set_status(BuildStatus.success(result.bytes, result.duration_ms))
            else:
                self._set_status(BuildStatus.error(result.headline))

            self._last_analysis = self._analyzer.analyze(result, framework)
            self._trends = self._analyzer.trends()
            log.info(
                "build.analyzed",
                grade=self._last_analysis.grade.value,
                build_time=round(self._last_analysis.build_time, 3),
                bundle_kb=round(self._last_analysis.bundle_size_kb, 1),
            )
            self.events.publish(AnalysisReady(self._last_analysis, self._trends))
        finally:
            self._building = False

        self._complete(result, on_complete)
        return result

    async def _run(self, request: BuildRequest) -> BuildResult:
        try:
            backend = self._factory.create_backend()
        except Exception:
            log.exception("build.backend_unavailable")
            return BuildResult.failure(SERVICE_NOT_AVAILABLE)

        self._backend = backend
        log.info("build.started", backend=backend.name, framework=request.framework.value)
        try:
            result = await backend.build(request)
        except Exception as exc:
            log.exception("build.backend_error", backend=backend.name)
            result = BuildResult.failure(f"Build failed: {exc}")
        log.info(
            "build.finished",
            backend=backend.name,
            success=result.success,
            bytes=result.bytes,
            duration_ms=result.duration_ms,
            errors=len(result.errors),
        )
        return result

    def _set_status(self, new: BuildStatus) -> None:
        previous = self._status
        self._status = previous.transition(new)
        self.events.publish(StatusChanged(previous, self._status))

    @staticmethod
    def _complete(result: BuildResult, on_complete: CompletionCallback | None) -> None:
        if on_complete is None:
            return
        try:
            on_complete(result)
        except Exception:
            log.exception("build.callback_error")

    def reset_status(self) -> None:
        """Back to IDLE. Ignored while a build is running."""
        if self._building:
            log.warning("build.reset_ignored", reason="in_progress")
            return
        self._set_status(BuildStatus.idle())

    @staticmethod
    def should_auto_build(framework: FrameworkKind) -> bool:
        return framework.requires_build

    def optimization_recommendations(self) -> list[str]:
        return self._analyzer.recommendations()

    # ── native worker pass-throughs ────────────────────────────────────────

    def _native_backend(self) -> NativeWorkerBackend | None:
        backend = self._factory.create_backend()
        if isinstance(backend, NativeWorkerBackend):
            return backend
        return None

    async def clear_cache(self) -> bool:
        native = self._native_backend()
        if native is None:
            log.debug("build.clear_cache_skipped", reason="not_native")
            return False
        return await native.clear_cache()

    async def get_worker_stats(self) -> WorkerStats | None:
        native = self._native_backend()
        if native is None:
            return None
        return await native.get_worker_stats()

    async def warmup(self) -> BuildResult | None:
        native = self._native_backend()
        if native is None:
            log.debug("build.warmup_skipped", reason="not_native")
            return None
        return await native.warmup()
