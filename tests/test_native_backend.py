"""Tests for NativeWorkerBackend over an in-process worker."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from xr_buildkit.backends.native_backend import WARMUP_SOURCE, NativeWorkerBackend
from xr_buildkit.exceptions import CompileError, CompileTimeout, WorkerUnavailable
from xr_buildkit.models.build import BuildRequest
from xr_buildkit.models.framework import FrameworkKind
from xr_buildkit.testing import InProcessWorkerClient, fake_esbuild
from xr_buildkit.worker.cache import BuildCache
from xr_buildkit.worker.server import WorkerServer


def _request(code: str = "export default () => <mesh />;", **kwargs) -> BuildRequest:
    return BuildRequest(framework=FrameworkKind.REACT_THREE_FIBER, entry_code=code, **kwargs)


def _mock_client(reply=None, error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    client.running = True
    client.start = AsyncMock()
    client.close = AsyncMock()
    client.request = AsyncMock(return_value=reply, side_effect=error)
    return client


class TestStart:
    @pytest.mark.asyncio
    async def test_available_after_start(self):
        backend = NativeWorkerBackend(InProcessWorkerClient())
        assert backend.name == "native"
        assert not backend.is_available()
        await backend.start()
        assert backend.is_available()

    @pytest.mark.asyncio
    async def test_start_failure_leaves_backend_unavailable(self):
        client = InProcessWorkerClient(fail_start=True)
        backend = NativeWorkerBackend(client)
        await backend.start()
        assert not backend.is_available()

        result = await backend.build(_request())
        assert not result.success
        assert result.errors == ["Native build worker is not running"]
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_start_timeout_leaves_backend_unavailable(self):
        backend = NativeWorkerBackend(InProcessWorkerClient(start_timeout=True))
        await backend.start()
        assert not backend.is_available()

    @pytest.mark.asyncio
    async def test_start_runs_once(self):
        client = _mock_client()
        backend = NativeWorkerBackend(client)
        await backend.start()
        await backend.start()
        client.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close(self):
        client = InProcessWorkerClient()
        backend = NativeWorkerBackend(client)
        await backend.start()
        await backend.close()
        assert not backend.is_available()


class TestBuild:
    @pytest.mark.asyncio
    async def test_success(self):
        client = InProcessWorkerClient()
        backend = NativeWorkerBackend(client)
        result = await backend.build(
            _request(defines={"process.env.NODE_ENV": '"production"'}, minify=True)
        )

        assert result.success
        assert "<mesh />" in result.bundle_code
        assert result.bytes == len(result.bundle_code.encode("utf-8"))

        sent = client.requests[0]
        assert sent["cmd"] == "build"
        assert sent["framework"] == "reactThreeFiber"
        assert sent["entry"] == "/src/index.tsx"
        assert sent["files"] == {"/src/index.tsx": "export default () => <mesh />;"}
        assert sent["defines"] == {"process.env.NODE_ENV": '"production"'}
        assert sent["minify"] is True

    @pytest.mark.asyncio
    async def test_extra_files_are_sent(self):
        client = InProcessWorkerClient()
        backend = NativeWorkerBackend(client)
        await backend.build(_request(extra_files={"/src/util.ts": "export const x = 1;"}))
        assert client.requests[0]["files"]["/src/util.ts"] == "export const x = 1;"

    @pytest.mark.asyncio
    async def test_second_identical_build_comes_from_cache(self):
        cache = BuildCache()
        backend = NativeWorkerBackend(InProcessWorkerClient(WorkerServer(fake_esbuild, cache)))
        first = await backend.build(_request())
        second = await backend.build(_request())
        assert second.bundle_code == first.bundle_code
        assert second.bytes == first.bytes
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_compile_errors(self):
        async def _failing(message):
            raise CompileError(["/src/index.tsx:1:1: Unexpected '<'"])

        backend = NativeWorkerBackend(
            InProcessWorkerClient(WorkerServer(_failing, BuildCache()))
        )
        result = await backend.build(_request())
        assert not result.success
        assert result.bundle_code is None
        assert result.headline == "/src/index.tsx:1:1: Unexpected '<'"

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        backend = NativeWorkerBackend(_mock_client(error=CompileTimeout("no answer in 60s")))
        await backend.start()
        result = await backend.build(_request())
        assert not result.success
        assert result.errors == ["no answer in 60s"]

    @pytest.mark.asyncio
    async def test_worker_died(self):
        backend = NativeWorkerBackend(_mock_client(error=WorkerUnavailable("process exited")))
        await backend.start()
        result = await backend.build(_request())
        assert result.errors == ["process exited"]

    @pytest.mark.asyncio
    async def test_invalid_response(self):
        backend = NativeWorkerBackend(_mock_client(reply={"bundleCode": "x"}))
        await backend.start()
        result = await backend.build(_request())
        assert not result.success
        assert result.errors == ["Invalid response from build worker"]


class TestAdministration:
    @pytest.mark.asyncio
    async def test_ping(self):
        backend = NativeWorkerBackend(InProcessWorkerClient())
        assert not await backend.ping()
        await backend.start()
        assert await backend.ping()

    @pytest.mark.asyncio
    async def test_clear_cache(self):
        cache = BuildCache()
        backend = NativeWorkerBackend(InProcessWorkerClient(WorkerServer(fake_esbuild, cache)))
        await backend.build(_request())
        assert len(cache) == 1
        assert await backend.clear_cache()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_clear_cache_when_unavailable(self):
        backend = NativeWorkerBackend(InProcessWorkerClient(fail_start=True))
        await backend.start()
        assert not await backend.clear_cache()

    @pytest.mark.asyncio
    async def test_stats(self):
        backend = NativeWorkerBackend(InProcessWorkerClient())
        await backend.build(_request())
        await backend.build(_request())
        stats = await backend.get_worker_stats()
        assert stats is not None
        assert stats.total_builds == 1
        assert stats.cache_hits == 1
        assert stats.cache_size == 1

    @pytest.mark.asyncio
    async def test_stats_when_unavailable(self):
        backend = NativeWorkerBackend(InProcessWorkerClient(fail_start=True))
        await backend.start()
        assert await backend.get_worker_stats() is None

    @pytest.mark.asyncio
    async def test_stats_error_reply(self):
        backend = NativeWorkerBackend(_mock_client(reply={"status": "error", "error": "x"}))
        await backend.start()
        assert await backend.get_worker_stats() is None

    @pytest.mark.asyncio
    async def test_warmup(self):
        client = InProcessWorkerClient()
        backend = NativeWorkerBackend(client)
        result = await backend.warmup()
        assert result.success
        sent = client.requests[0]
        assert sent["files"]["/src/index.tsx"] == WARMUP_SOURCE
        assert sent["minify"] is False
