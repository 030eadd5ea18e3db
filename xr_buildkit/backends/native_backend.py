"""Native worker backend: builds in a persistent out-of-process worker.

Requires the worker command to start and announce readiness (by default
``python -m xr_buildkit.worker``, which needs an ``esbuild`` binary).
A failed start leaves the backend unavailable for its whole lifetime;
retrying is the factory's job.
"""

from __future__ import annotations

import asyncio

import structlog
from pydantic import ValidationError

from xr_buildkit.backends.base import BuildBackend
from xr_buildkit.backends.worker_client import WorkerClient
from xr_buildkit.exceptions import CompileTimeout, InitializationTimeout, WorkerUnavailable
from xr_buildkit.models.build import BuildRequest, BuildResult
from xr_buildkit.models.framework import FrameworkKind
from xr_buildkit.models.protocol import WorkerBuildMessage, WorkerBuildResponse, WorkerStats

log = structlog.get_logger(__name__)

WARMUP_SOURCE = "console.log('warmup');"


class NativeWorkerBackend(BuildBackend):
    def __init__(self, client: WorkerClient) -> None:
        self._client = client
        self._start_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def name(self) -> str:
        return "native"

    def is_available(self) -> bool:
        return self._started and self._client.running

    async def start(self) -> None:
        if self._start_task is None:
            self._start_task = asyncio.create_task(self._start(), name="native-worker-start")
        await asyncio.shield(self._start_task)

    async def _start(self) -> None:
        try:
            await self._client.start()
        except (WorkerUnavailable, InitializationTimeout) as exc:
            log.warning("native.unavailable", error=str(exc))
            return
        self._started = True

    async def close(self) -> None:
        await self._client.close()

    async def build(self, request: BuildRequest) -> BuildResult:
        await self.start()
        if not self.is_available():
            return BuildResult.failure("Native build worker is not running")

        payload = WorkerBuildMessage.from_request(request).to_wire()
        log.info("native.build_started", framework=request.framework.value)
        try:
            raw = await self._client.request("build", payload)
            response = WorkerBuildResponse.model_validate(raw)
        except (WorkerUnavailable, CompileTimeout) as exc:
            log.error("native.build_failed", error=str(exc))
            return BuildResult.failure(str(exc))
        except ValidationError as exc:
            log.error("native.invalid_response", error=str(exc))
            return BuildResult.failure("Invalid response from build worker")

        result = response.to_result()
        log.info(
            "native.build_finished",
            success=result.success,
            from_cache=response.from_cache,
            bytes=result.bytes,
            duration_ms=result.duration_ms,
        )
        return result

    # ── worker administration ──────────────────────────────────────────────

    async def ping(self) -> bool:
        if not self.is_available():
            return False
        try:
            reply = await self._client.request("ping", timeout=5.0)
        except (WorkerUnavailable, CompileTimeout) as exc:
            log.warning("native.ping_failed", error=str(exc))
            return False
        return reply.get("status") == "ok"

    async def clear_cache(self) -> bool:
        if not self.is_available():
            return False
        try:
            reply = await self._client.request("clear-cache")
        except (WorkerUnavailable, CompileTimeout) as exc:
            log.error("native.clear_cache_failed", error=str(exc))
            return False
        log.info("native.cache_cleared")
        return reply.get("status") == "ok"

    async def get_worker_stats(self) -> WorkerStats | None:
        if not self.is_available():
            return None
        try:
            reply = await self._client.request("stats")
            if reply.get("status") != "ok" or "stats" not in reply:
                return None
            return WorkerStats.model_validate(reply["stats"])
        except (WorkerUnavailable, CompileTimeout, ValidationError) as exc:
            log.error("native.stats_failed", error=str(exc))
            return None

    async def warmup(self) -> BuildResult:
        """Pay first-build cost up front. The result only matters for logging."""
        result = await self.build(
            BuildRequest(
                framework=FrameworkKind.REACT_THREE_FIBER,
                entry_code=WARMUP_SOURCE,
                minify=False,
            )
        )
        log.info("native.warmed_up", success=result.success, duration_ms=result.duration_ms)
        return result
