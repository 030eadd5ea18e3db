"""Sandboxed compiler backend: compiles inside a script sandbox.

Workflow:
    open sandbox -> evaluate bootstrap -> download compiler (primary, mirrors)
        -> evaluate compiler + initializeCompiler(wasmURL)
        -> poll until the build function exists and the compiler is ready
           (or has failed, which selects the fallback transform)
    build: window.buildWithEsbuild(<json>) -> result posted on "buildResult",
        tagged with the buildId of the call it answers,
        raced against a hard timeout through a single-assignment slot.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
import uuid
from typing import Any

import structlog
from pydantic import ValidationError

from xr_buildkit.backends.base import BuildBackend, compiler_options
from xr_buildkit.backends.compiler_loader import CompilerLoader
from xr_buildkit.backends.harness import (
    BOOTSTRAP_SCRIPT,
    BUILD_FUNCTION,
    COMPILER_ERROR_PROBE,
    COMPILER_READY_PROBE,
    FALLBACK_WARNING,
    READY_PROBE,
    RESULT_CHANNEL,
    fallback_transform,
)
from xr_buildkit.backends.sandbox_host import SandboxHost
from xr_buildkit.exceptions import NetworkUnavailable, SandboxError
from xr_buildkit.models.build import BuildRequest, BuildResult
from xr_buildkit.models.protocol import SandboxBuildMessage, SandboxBuildResponse

log = structlog.get_logger(__name__)

INIT_TIMEOUT_MESSAGE = "Build service initialization timeout"
BUILD_TIMEOUT_MESSAGE = "Build timeout - no response from compiler"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ResultSlot:
    """Set-once cell for one pending build result, keyed by its build id."""

    def __init__(self, build_id: str | None = None) -> None:
        self.build_id = build_id or uuid.uuid4().hex
        self._future: asyncio.Future[BuildResult] = asyncio.get_running_loop().create_future()

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def resolve(self, result: BuildResult) -> bool:
        if self._future.done():
            return False
        self._future.set_result(result)
        return True

    async def wait(self) -> BuildResult:
        return await self._future


class SandboxBuildBackend(BuildBackend):
    def __init__(
        self,
        host: SandboxHost,
        loader: CompilerLoader,
        *,
        poll_interval: float = 0.5,
        init_timeout: float = 15.0,
        build_timeout: float = 30.0,
    ) -> None:
        self._host = host
        self._loader = loader
        self._poll_interval = poll_interval
        self._init_timeout = init_timeout
        self._build_timeout = build_timeout

        self._init_task: asyncio.Task[None] | None = None
        self._ready = False
        self._compiler_available = False
        self._compiler_failed = False
        self._host_failed = False
        self._pending: ResultSlot | None = None
        self._build_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "sandbox"

    @property
    def compiler_available(self) -> bool:
        return self._compiler_available

    @property
    def fallback_mode(self) -> bool:
        return self._ready and not self._compiler_available

    def is_available(self) -> bool:
        return self._ready

    async def start(self) -> None:
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize(), name="sandbox-init")
        await asyncio.shield(self._init_task)

    async def close(self) -> None:
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            await asyncio.gather(self._init_task, return_exceptions=True)
        await self._host.close()

    # ── build ──────────────────────────────────────────────────────────────

    async def build(self, request: BuildRequest) -> BuildResult:
        await self.start()
        if not self._ready:
            log.info("sandbox.waiting_for_init")
            if not await self._poll_ready():
                log.error("sandbox.init_timeout", timeout=self._init_timeout)
                return BuildResult.failure(INIT_TIMEOUT_MESSAGE)

        if not self._compiler_available:
            return self._fallback_build(request)

        async with self._build_lock:
            return await self._compile(request)

    async def _compile(self, request: BuildRequest) -> BuildResult:
        started = time.monotonic()
        slot = ResultSlot()
        self._pending = slot
        timer = asyncio.get_running_loop().call_later(
            self._build_timeout, self._on_build_timeout, started
        )
        try:
            message = SandboxBuildMessage(
                build_id=slot.build_id,
                framework=request.framework.value,
                entry_code=request.entry_code,
                entry_path=request.entry_path,
                extra_files=dict(request.extra_files),
                jsx_runtime=request.jsx_runtime or "automatic",
                defines=dict(request.defines),
                minify=request.minify,
                options=compiler_options(request),
            ).to_wire()
            log.info(
                "sandbox.build_started",
                framework=request.framework.value,
                build_id=slot.build_id,
            )
            try:
                await self._host.evaluate(
                    f"window.{BUILD_FUNCTION}({json.dumps(message)}); undefined;"
                )
            except SandboxError as exc:
                log.error("sandbox.build_eval_failed", error=str(exc))
                self._resolve_pending(
                    BuildResult.failure(
                        f"Build execution failed: {exc}", duration_ms=_elapsed_ms(started)
                    ),
                    via="evaluate",
                )
            result = await slot.wait()
        finally:
            timer.cancel()
            if self._pending is slot:
                self._pending = None
        log.info(
            "sandbox.build_finished",
            success=result.success,
            bytes=result.bytes,
            duration_ms=result.duration_ms,
        )
        return result

    def _fallback_build(self, request: BuildRequest) -> BuildResult:
        started = time.monotonic()
        bundle = fallback_transform(request.entry_code, request.framework)
        log.warning("sandbox.fallback_build", framework=request.framework.value)
        return BuildResult(
            success=True,
            bundle_code=bundle,
            warnings=[FALLBACK_WARNING],
            bytes=len(bundle.encode("utf-8")),
            duration_ms=_elapsed_ms(started),
        )

    def _resolve_pending(self, result: BuildResult, *, via: str) -> bool:
        """Resolve the pending slot exactly once; later arrivals are dropped."""
        slot, self._pending = self._pending, None
        if slot is None or not slot.resolve(result):
            log.warning("sandbox.result_dropped", via=via, success=result.success)
            return False
        return True

    def _on_build_timeout(self, started: float) -> None:
        if self._pending is None:
            return
        log.error("sandbox.build_timeout", timeout=self._build_timeout)
        self._resolve_pending(
            BuildResult.failure(BUILD_TIMEOUT_MESSAGE, duration_ms=_elapsed_ms(started)),
            via="timeout",
        )

    def _on_build_result(self, body: Any) -> None:
        try:
            if isinstance(body, (str, bytes)):
                response = SandboxBuildResponse.model_validate_json(body)
            else:
                response = SandboxBuildResponse.model_validate(body)
        except ValidationError as exc:
            log.error("sandbox.invalid_result", error=str(exc))
            self._resolve_pending(
                BuildResult.failure("Invalid build result from sandbox"), via="channel"
            )
            return
        pending = self._pending
        if pending is None or response.build_id != pending.build_id:
            # Posted by a build that already timed out
            log.warning(
                "sandbox.result_dropped",
                via="channel",
                build_id=response.build_id,
                success=response.success,
            )
            return
        self._resolve_pending(response.to_result(), via="channel")

    # ── initialization ─────────────────────────────────────────────────────

    async def _initialize(self) -> None:
        try:
            await self._provision()
        except SandboxError as exc:
            # The fallback transform runs host-side, so it survives a dead sandbox
            log.error("sandbox.provision_failed", error=str(exc))
            self._host_failed = True
            self._compiler_failed = True
        if await self._poll_ready():
            log.info(
                "sandbox.ready",
                compiler=self._compiler_available,
                fallback=not self._compiler_available,
            )
        else:
            log.warning("sandbox.init_timeout", timeout=self._init_timeout)

    async def _provision(self) -> None:
        await self._host.open()
        self._host.set_message_handler(RESULT_CHANNEL, self._on_build_result)
        await self._host.evaluate(BOOTSTRAP_SCRIPT)
        try:
            bundle = await self._loader.load()
        except NetworkUnavailable as exc:
            log.warning("sandbox.compiler_unavailable", error=str(exc), sources=exc.sources)
            self._compiler_failed = True
            await self._host.evaluate(f"window.esbuildError = {json.dumps(str(exc))}; undefined;")
            return
        await self._host.evaluate(bundle.script + "\n;undefined;")
        await self._host.evaluate(
            f"window.initializeCompiler({json.dumps(bundle.wasm_url)}); undefined;"
        )

    async def _poll_ready(self) -> bool:
        attempts = max(1, math.ceil(self._init_timeout / self._poll_interval))
        for _ in range(attempts):
            if await self._check_ready():
                return True
            await asyncio.sleep(self._poll_interval)
        return await self._check_ready()

    async def _check_ready(self) -> bool:
        if self._ready:
            return True
        if self._host_failed:
            self._ready = True
            return True
        try:
            if not await self._host.evaluate(READY_PROBE):
                return False
            if await self._host.evaluate(COMPILER_READY_PROBE):
                self._compiler_available = True
            elif self._compiler_failed or await self._host.evaluate(COMPILER_ERROR_PROBE):
                self._compiler_available = False
            else:
                return False
        except SandboxError as exc:
            log.debug("sandbox.probe_failed", error=str(exc))
            return False
        self._ready = True
        return True
