"""Tests for the worker process internals: cache, command handling, esbuild glue."""

from __future__ import annotations

import asyncio
import io
import json
from pathlib import Path

import pytest

from xr_buildkit.exceptions import CompileError
from xr_buildkit.models.protocol import WorkerBuildMessage, WorkerBuildResponse
from xr_buildkit.testing import fake_esbuild
from xr_buildkit.worker.cache import BuildCache, WorkerCounters
from xr_buildkit.worker.esbuild import EsbuildOutput, build_argv, parse_diagnostics
from xr_buildkit.worker.server import WorkerServer, ready_message, serve


def _message(entry_code: str = "console.log(1);", **overrides) -> dict:
    message = {
        "cmd": "build",
        "messageId": "m-1",
        "framework": "reactThreeFiber",
        "entry": "/src/index.tsx",
        "files": {"/src/index.tsx": entry_code},
        "defines": {"process.env.NODE_ENV": '"production"'},
        "minify": False,
    }
    message.update(overrides)
    return message


async def _slow_esbuild(message: WorkerBuildMessage) -> EsbuildOutput:
    await asyncio.sleep(0.02)
    return await fake_esbuild(message)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ── BuildCache ──


class TestBuildCache:
    def _put(self, cache: BuildCache, key: str) -> None:
        cache.put(key, bundle_code=f"bundle-{key}", warnings=[], bytes=10, duration_ms=5)

    def test_hit(self):
        cache = BuildCache()
        self._put(cache, "a")
        entry = cache.get("a")
        assert entry is not None
        assert entry.bundle_code == "bundle-a"
        assert len(cache) == 1

    def test_ttl_expiry(self):
        clock = _Clock()
        cache = BuildCache(ttl=300, clock=clock)
        self._put(cache, "a")
        clock.now = 299.0
        assert cache.get("a") is not None
        clock.now = 300.0
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_capacity_evicts_oldest(self):
        cache = BuildCache(capacity=2)
        for key in ("a", "b", "c"):
            self._put(cache, key)
        assert cache.get("a") is None
        assert cache.get("b") is not None
        assert cache.get("c") is not None

    def test_clear(self):
        cache = BuildCache()
        self._put(cache, "a")
        cache.clear()
        assert len(cache) == 0

    def test_key_covers_build_inputs(self):
        base = WorkerBuildMessage.model_validate(_message())
        same = WorkerBuildMessage.model_validate(_message(messageId="other"))
        minified = WorkerBuildMessage.model_validate(_message(minify=True))
        edited = WorkerBuildMessage.model_validate(_message("console.log(2);"))
        assert BuildCache.key_for(base) == BuildCache.key_for(same)
        assert BuildCache.key_for(base) != BuildCache.key_for(minified)
        assert BuildCache.key_for(base) != BuildCache.key_for(edited)


class TestWorkerCounters:
    def test_running_average(self):
        counters = WorkerCounters()
        for ms in (100, 200, 300):
            counters.record_build(ms)
        counters.record_hit()
        snap = counters.snapshot(cache_size=3)
        assert snap["totalBuilds"] == 3
        assert snap["cacheHits"] == 1
        assert snap["averageBuildTime"] == pytest.approx(200.0)
        assert snap["lastBuildTime"] == 300
        assert snap["cacheSize"] == 3
        assert snap["uptime"] >= 0


# ── WorkerServer ──


class TestWorkerServer:
    @pytest.mark.asyncio
    async def test_build(self):
        server = WorkerServer(fake_esbuild, BuildCache())
        response = await server.handle(_message())
        assert response["status"] == "ok"
        assert response["messageId"] == "m-1"
        assert "console.log(1);" in response["bundleCode"]
        assert response["bytes"] == len(response["bundleCode"].encode("utf-8"))
        assert response["fromCache"] is False
        assert response["metafile"] is not None

    @pytest.mark.asyncio
    async def test_cache_hit_reports_cached_size_and_duration(self):
        server = WorkerServer(_slow_esbuild, BuildCache())
        first = await server.handle(_message())
        second = await server.handle(_message(messageId="m-2"))

        assert second["fromCache"] is True
        assert second["messageId"] == "m-2"
        assert second["bytes"] > 0
        assert second["durationMs"] > 0
        assert second["bytes"] == first["bytes"]
        assert second["durationMs"] == first["durationMs"]
        assert second["bundleCode"] == first["bundleCode"]

        stats = await server.handle({"cmd": "stats"})
        assert stats["stats"]["totalBuilds"] == 1
        assert stats["stats"]["cacheHits"] == 1
        assert stats["stats"]["cacheSize"] == 1

    @pytest.mark.asyncio
    async def test_compile_error(self):
        async def _failing(message):
            raise CompileError(["/src/index.tsx:1:5: Unexpected token", "second"])

        server = WorkerServer(_failing, BuildCache())
        response = await server.handle(_message())
        assert response["status"] == "error"
        assert response["errors"] == ["/src/index.tsx:1:5: Unexpected token", "second"]
        assert response["bundleCode"] is None
        assert response["messageId"] == "m-1"

    @pytest.mark.asyncio
    async def test_invalid_build_message(self):
        server = WorkerServer(fake_esbuild, BuildCache())
        response = await server.handle({"cmd": "build", "messageId": "x"})
        assert response["status"] == "error"
        assert response["errors"][0].startswith("Invalid build message")

    @pytest.mark.asyncio
    async def test_clear_cache(self):
        cache = BuildCache()
        server = WorkerServer(fake_esbuild, cache)
        await server.handle(_message())
        response = await server.handle({"cmd": "clear-cache", "messageId": "c"})
        assert response == {"status": "ok", "message": "Cache cleared", "messageId": "c"}
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_ping(self):
        server = WorkerServer(fake_esbuild, BuildCache())
        response = await server.handle({"cmd": "ping", "messageId": "p"})
        assert response["status"] == "ok"
        assert response["message"] == "pong"
        assert response["messageId"] == "p"

    @pytest.mark.asyncio
    async def test_unknown_command(self):
        server = WorkerServer(fake_esbuild, BuildCache())
        response = await server.handle({"cmd": "explode", "messageId": "u"})
        assert response == {
            "status": "error",
            "error": "Unknown command: explode",
            "messageId": "u",
        }

    def test_ready_message(self):
        ready = ready_message("0.19.11")
        assert ready["status"] == "ready"
        assert ready["esbuild"] == "0.19.11"
        assert "caching" in ready["capabilities"]


class TestServe:
    @pytest.mark.asyncio
    async def test_processes_lines_until_eof(self):
        stdin = io.StringIO(
            "\n".join(
                [
                    json.dumps({"cmd": "ping", "messageId": "1"}),
                    "",
                    "not json",
                    json.dumps(_message(messageId="2")),
                ]
            )
            + "\n"
        )
        stdout = io.StringIO()
        await serve(WorkerServer(fake_esbuild, BuildCache()), stdin, stdout)

        replies = [json.loads(line) for line in stdout.getvalue().splitlines()]
        assert len(replies) == 3
        by_id = {r.get("messageId"): r for r in replies}
        assert by_id["1"]["message"] == "pong"
        assert by_id["2"]["status"] == "ok"
        assert by_id[None]["error"].startswith("Invalid JSON")

    @pytest.mark.asyncio
    async def test_handler_error_reaches_client_errors(self):
        async def _missing_binary(message):
            raise FileNotFoundError("esbuild: No such file or directory")

        stdin = io.StringIO(json.dumps(_message(messageId="7")) + "\n")
        stdout = io.StringIO()
        await serve(WorkerServer(_missing_binary, BuildCache()), stdin, stdout)

        reply = json.loads(stdout.getvalue())
        assert reply["status"] == "error"
        assert reply["messageId"] == "7"
        assert reply["errors"] == ["esbuild: No such file or directory"]
        result = WorkerBuildResponse.model_validate(reply).to_result()
        assert not result.success
        assert result.headline == "esbuild: No such file or directory"


# ── esbuild glue ──


class TestParseDiagnostics:
    def test_errors_and_warnings(self):
        stderr = (
            "✘ [ERROR] Expected \";\" but found \"}\"\n"
            "\n"
            "    src/index.tsx:3:10:\n"
            "      3 │   return <Canvas>\n"
            "        ╵           ^\n"
            "\n"
            "▲ [WARNING] Comparison with -0 using the \"===\" operator [equals-negative-zero]\n"
            "\n"
            "    src/index.tsx:7:4:\n"
            "\n"
            "1 warning and 1 error\n"
        )
        warnings, errors = parse_diagnostics(stderr)
        assert errors == ['src/index.tsx:3:10: Expected ";" but found "}"']
        assert len(warnings) == 1
        assert warnings[0].startswith("src/index.tsx:7:4: Comparison with -0")

    def test_empty(self):
        assert parse_diagnostics("") == ([], [])


class TestBuildArgv:
    def test_flags(self, tmp_path: Path):
        message = WorkerBuildMessage.model_validate(_message(minify=True))
        argv = build_argv(
            "esbuild",
            tmp_path / "src/index.tsx",
            tmp_path / "out.js",
            tmp_path / "meta.json",
            message,
        )
        assert argv[0] == "esbuild"
        for flag in (
            "--bundle",
            "--platform=browser",
            "--format=iife",
            "--sourcemap=inline",
            "--jsx=automatic",
            "--minify",
            "--external:app://*",
            "--define:process.env.NODE_ENV=\"production\"",
            "--alias:three=app://vendor/three.module.js",
        ):
            assert flag in argv

    def test_plain_script_has_no_jsx(self, tmp_path: Path):
        message = WorkerBuildMessage.model_validate(
            _message(framework="babylon", entry="/src/index.js", files={"/src/index.js": "x"})
        )
        argv = build_argv("esbuild", tmp_path / "a", tmp_path / "b", tmp_path / "c", message)
        assert "--jsx=automatic" not in argv
        assert "--minify" not in argv
