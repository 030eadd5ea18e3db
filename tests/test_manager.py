"""Tests for BuildManager: single-flight builds, status, analysis, pass-throughs."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from xr_buildkit.analyzer import BuildGrade
from xr_buildkit.backends.factory import BuildBackendFactory
from xr_buildkit.backends.native_backend import NativeWorkerBackend
from xr_buildkit.events import AnalysisReady, StatusChanged
from xr_buildkit.manager import (
    BUILD_CANCELLED,
    BUILD_IN_PROGRESS,
    DEFAULT_DEFINES,
    SERVICE_NOT_AVAILABLE,
    BuildManager,
)
from xr_buildkit.models.build import BuildResult, BuildState
from xr_buildkit.models.framework import FrameworkKind
from xr_buildkit.testing import FakeBuildBackend, InProcessWorkerClient

R3F = FrameworkKind.REACT_THREE_FIBER
CODE = "export default function Scene() { return <mesh />; }"


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _manager(settings, backend: FakeBuildBackend | None = None):
    backend = backend or FakeBuildBackend(name="sandbox")
    factory = BuildBackendFactory(settings, sandbox_factory=lambda s: backend)
    return BuildManager(factory), backend


async def _native_manager(settings):
    factory = BuildBackendFactory(
        replace(settings, native_enabled=True),
        sandbox_factory=lambda s: FakeBuildBackend(name="sandbox"),
        native_factory=lambda s: NativeWorkerBackend(InProcessWorkerClient()),
    )
    assert await factory.wait_for_probe()
    return BuildManager(factory)


class TestBuildCode:
    @pytest.mark.asyncio
    async def test_success(self, settings):
        manager, backend = _manager(settings)
        assert manager.status.state is BuildState.IDLE

        result = await manager.build_code(CODE, R3F)

        assert result.success
        assert manager.status.state is BuildState.SUCCESS
        assert manager.status.bytes == result.bytes
        assert manager.status.duration_ms == 25
        assert not manager.is_building
        assert manager.backend is backend

        request = backend.requests[0]
        assert request.entry_code == CODE
        assert request.framework is R3F
        assert request.jsx_runtime == "automatic"
        assert dict(request.defines) == DEFAULT_DEFINES
        assert request.minify is False

    @pytest.mark.asyncio
    async def test_minify_is_forwarded(self, settings):
        manager, backend = _manager(settings)
        await manager.build_code(CODE, R3F, minify=True)
        assert backend.requests[0].minify is True

    @pytest.mark.asyncio
    async def test_failure_sets_error_status(self, settings):
        failing = FakeBuildBackend(
            result=BuildResult.failure(["Unexpected token '<'", "at /src/index.tsx:1:8"])
        )
        manager, _ = _manager(settings, failing)

        result = await manager.build_code(CODE, R3F)

        assert not result.success
        assert manager.status.state is BuildState.ERROR
        assert manager.status.message == "Unexpected token '<'"
        assert manager.last_analysis is not None
        assert manager.last_analysis.success is False

    @pytest.mark.asyncio
    async def test_backend_unavailable(self):
        factory = MagicMock(spec=BuildBackendFactory)
        factory.create_backend.side_effect = RuntimeError("no backend")
        manager = BuildManager(factory)

        result = await manager.build_code(CODE, R3F)

        assert not result.success
        assert result.errors == [SERVICE_NOT_AVAILABLE]
        assert manager.status.state is BuildState.ERROR
        assert manager.status.message == SERVICE_NOT_AVAILABLE

    @pytest.mark.asyncio
    async def test_sequential_builds(self, settings):
        manager, backend = _manager(settings)
        for _ in range(3):
            assert (await manager.build_code(CODE, R3F)).success
        assert len(backend.requests) == 3
        assert len(manager.analyzer.history) == 3


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_build_is_rejected(self, settings):
        backend = FakeBuildBackend()
        backend.gate = asyncio.Event()
        manager, _ = _manager(settings, backend)

        first = asyncio.create_task(manager.build_code(CODE, R3F))
        await _wait_until(lambda: backend.requests)
        assert manager.is_building
        assert manager.status.state is BuildState.BUILDING

        completed = []
        second = await manager.build_code("other code", R3F, completed.append)
        assert not second.success
        assert second.errors == [BUILD_IN_PROGRESS]
        assert completed == [second]
        assert manager.status.state is BuildState.BUILDING

        backend.gate.set()
        result = await first
        assert result.success
        assert len(backend.requests) == 1
        assert len(manager.analyzer.history) == 1
        assert manager.status.state is BuildState.SUCCESS

    @pytest.mark.asyncio
    async def test_backend_exception_becomes_failed_result(self, settings):
        class _BrokenPipeOnce(FakeBuildBackend):
            async def build(self, request):
                if not self.requests:
                    self.requests.append(request)
                    raise OSError("pipe broke")
                return await super().build(request)

        manager, _ = _manager(settings, _BrokenPipeOnce())
        completed = []
        result = await manager.build_code(CODE, R3F, completed.append)

        assert not result.success
        assert result.errors == ["Build failed: pipe broke"]
        assert completed == [result]
        assert not manager.is_building
        assert manager.status.state is BuildState.ERROR

        second = await manager.build_code(CODE, R3F)
        assert second.success
        assert manager.status.state is BuildState.SUCCESS

    @pytest.mark.asyncio
    async def test_cancelled_build_leaves_manager_usable(self, settings):
        backend = FakeBuildBackend()
        backend.gate = asyncio.Event()
        manager, _ = _manager(settings, backend)

        task = asyncio.create_task(manager.build_code(CODE, R3F))
        await _wait_until(lambda: backend.requests)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not manager.is_building
        assert manager.status.state is BuildState.ERROR
        assert manager.status.message == BUILD_CANCELLED

        backend.gate.set()
        second = await manager.build_code(CODE, R3F)
        assert second.success
        assert manager.status.state is BuildState.SUCCESS


class TestNotifications:
    @pytest.mark.asyncio
    async def test_event_order(self, settings):
        manager, _ = _manager(settings)
        seen = []
        manager.events.subscribe(seen.append)

        result = await manager.build_code(CODE, R3F, lambda r: seen.append(("done", r)))

        assert isinstance(seen[0], StatusChanged)
        assert seen[0].previous.state is BuildState.IDLE
        assert seen[0].current.state is BuildState.BUILDING
        assert isinstance(seen[1], StatusChanged)
        assert seen[1].current.state is BuildState.SUCCESS
        assert isinstance(seen[2], AnalysisReady)
        assert seen[2].analysis is manager.last_analysis
        assert seen[3] == ("done", result)

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_build(self, settings):
        manager, _ = _manager(settings)

        def _boom(result):
            raise ValueError("listener bug")

        result = await manager.build_code(CODE, R3F, _boom)
        assert result.success
        assert manager.status.state is BuildState.SUCCESS

    @pytest.mark.asyncio
    async def test_analysis_and_trends(self, settings):
        manager, _ = _manager(settings)
        await manager.build_code(CODE, R3F)

        assert manager.last_analysis.grade is BuildGrade.EXCELLENT
        assert manager.last_analysis.build_time == pytest.approx(0.025)
        assert manager.trends is not None
        assert manager.trends.average_build_time == 0.0
        assert manager.optimization_recommendations() == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_reset_status(self, settings):
        manager, _ = _manager(settings)
        await manager.build_code(CODE, R3F)
        manager.reset_status()
        assert manager.status.state is BuildState.IDLE

    @pytest.mark.asyncio
    async def test_reset_ignored_while_building(self, settings):
        backend = FakeBuildBackend()
        backend.gate = asyncio.Event()
        manager, _ = _manager(settings, backend)
        task = asyncio.create_task(manager.build_code(CODE, R3F))
        await _wait_until(lambda: backend.requests)

        manager.reset_status()
        assert manager.status.state is BuildState.BUILDING

        backend.gate.set()
        await task

    def test_should_auto_build(self):
        assert BuildManager.should_auto_build(FrameworkKind.REACT_THREE_FIBER)
        assert BuildManager.should_auto_build(FrameworkKind.REACTYLON)
        assert not BuildManager.should_auto_build(FrameworkKind.BABYLON)
        assert not BuildManager.should_auto_build(FrameworkKind.AFRAME)


class TestNativePassThroughs:
    @pytest.mark.asyncio
    async def test_sandbox_backend_answers_neutrally(self, settings):
        manager, _ = _manager(settings)
        assert await manager.clear_cache() is False
        assert await manager.get_worker_stats() is None
        assert await manager.warmup() is None
        assert not manager.is_using_native

    @pytest.mark.asyncio
    async def test_native_backend(self, settings):
        manager = await _native_manager(settings)

        assert (await manager.build_code(CODE, R3F)).success
        assert manager.is_using_native

        stats = await manager.get_worker_stats()
        assert stats is not None
        assert stats.total_builds == 1

        assert await manager.clear_cache() is True
        warm = await manager.warmup()
        assert warm is not None and warm.success

    @pytest.mark.asyncio
    async def test_build_after_worker_exit_uses_sandbox(self, settings):
        manager = await _native_manager(settings)
        assert (await manager.build_code(CODE, R3F)).success
        assert manager.is_using_native

        await manager.backend.close()

        result = await manager.build_code(CODE, R3F)
        assert result.success
        assert manager.backend.name == "sandbox"
        assert not manager.is_using_native
        assert await manager.get_worker_stats() is None
