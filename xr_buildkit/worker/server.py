"""Worker command loop: JSON lines in on stdin, JSON lines out on stdout."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from collections.abc import Awaitable, Callable
from typing import Any, TextIO

import structlog
from pydantic import ValidationError

from xr_buildkit import __version__
from xr_buildkit.exceptions import CompileError
from xr_buildkit.models.protocol import WorkerBuildMessage
from xr_buildkit.worker.cache import BuildCache, WorkerCounters
from xr_buildkit.worker.esbuild import EsbuildOutput

log = structlog.get_logger(__name__)

CAPABILITIES = ["esbuild", "caching", "typescript", "jsx", "react-three-fiber"]

BuildFn = Callable[[WorkerBuildMessage], Awaitable[EsbuildOutput]]


class WorkerServer:
    """Handles build / clear-cache / stats / ping commands."""

    def __init__(self, build_fn: BuildFn, cache: BuildCache) -> None:
        self._build_fn = build_fn
        self._cache = cache
        self._counters = WorkerCounters()

    @property
    def counters(self) -> WorkerCounters:
        return self._counters

    async def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        cmd = message.get("cmd")
        if cmd == "build":
            response = await self._build(message)
        elif cmd == "clear-cache":
            self._cache.clear()
            log.info("worker.cache_cleared")
            response = {"status": "ok", "message": "Cache cleared"}
        elif cmd == "stats":
            response = {"status": "ok", "stats": self._counters.snapshot(len(self._cache))}
        elif cmd == "ping":
            response = {"status": "ok", "message": "pong", "timestamp": time.time()}
        else:
            log.warning("worker.unknown_command", cmd=cmd)
            response = {"status": "error", "error": f"Unknown command: {cmd}"}
        if "messageId" in message:
            response["messageId"] = message["messageId"]
        return response

    async def _build(self, raw: dict[str, Any]) -> dict[str, Any]:
        started = time.monotonic()
        try:
            message = WorkerBuildMessage.model_validate(raw)
        except ValidationError as exc:
            return self._error([f"Invalid build message: {exc.error_count()} error(s)"], started)

        key = BuildCache.key_for(message)
        cached = self._cache.get(key)
        if cached is not None:
            self._counters.record_hit()
            log.info("worker.cache_hit", framework=message.framework)
            return {
                "status": "ok",
                "bundleCode": cached.bundle_code,
                "warnings": cached.warnings,
                "errors": [],
                "bytes": cached.bytes,
                "durationMs": cached.duration_ms,
                "fromCache": True,
            }

        log.info("worker.build", framework=message.framework, files=len(message.files))
        try:
            output = await self._build_fn(message)
        except CompileError as exc:
            return self._error(exc.diagnostics, started)

        duration_ms = int((time.monotonic() - started) * 1000)
        size = len(output.bundle_code.encode("utf-8"))
        self._cache.put(
            key,
            bundle_code=output.bundle_code,
            warnings=output.warnings,
            bytes=size,
            duration_ms=duration_ms,
        )
        self._counters.record_build(duration_ms)
        log.info("worker.build_done", duration_ms=duration_ms, bytes=size)
        return {
            "status": "ok",
            "bundleCode": output.bundle_code,
            "warnings": output.warnings,
            "errors": [],
            "bytes": size,
            "durationMs": duration_ms,
            "fromCache": False,
            "metafile": output.metafile,
        }

    @staticmethod
    def _error(errors: list[str], started: float) -> dict[str, Any]:
        return {
            "status": "error",
            "bundleCode": None,
            "warnings": [],
            "errors": errors,
            "bytes": 0,
            "durationMs": int((time.monotonic() - started) * 1000),
            "fromCache": False,
        }


def ready_message(esbuild_version: str) -> dict[str, Any]:
    return {
        "status": "ready",
        "worker": "xr-buildkit build worker",
        "version": __version__,
        "esbuild": esbuild_version,
        "capabilities": CAPABILITIES,
    }


async def serve(
    server: WorkerServer,
    stdin: TextIO = sys.stdin,
    stdout: TextIO = sys.stdout,
) -> None:
    """Read commands until EOF. Each command runs as its own task."""
    write_lock = asyncio.Lock()
    tasks: set[asyncio.Task[None]] = set()

    async def _emit(payload: dict[str, Any]) -> None:
        async with write_lock:
            stdout.write(json.dumps(payload, separators=(",", ":")) + "\n")
            stdout.flush()

    async def _process(message: dict[str, Any]) -> None:
        try:
            response = await server.handle(message)
        except Exception as exc:
            log.exception("worker.handler_error")
            response = {"status": "error", "error": str(exc), "errors": [str(exc)]}
            if "messageId" in message:
                response["messageId"] = message["messageId"]
        await _emit(response)

    while True:
        line = await asyncio.to_thread(stdin.readline)
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            await _emit({"status": "error", "error": f"Invalid JSON: {exc.msg}"})
            continue
        task = asyncio.create_task(_process(message))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
