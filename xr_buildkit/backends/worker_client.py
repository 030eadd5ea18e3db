"""Client side of the native worker protocol."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from xr_buildkit.backends.channel import JsonLinesChannel
from xr_buildkit.exceptions import CompileTimeout, InitializationTimeout, WorkerUnavailable

log = structlog.get_logger(__name__)


class WorkerClient:
    """
    Owns the worker process. ``start`` waits for the worker's ready line;
    ``request`` sends ``{cmd, messageId, ...}`` and returns the matching reply.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        startup_timeout: float = 10.0,
        request_timeout: float = 60.0,
        env: dict[str, str] | None = None,
    ) -> None:
        self._startup_timeout = startup_timeout
        self._request_timeout = request_timeout
        self._channel = JsonLinesChannel(
            argv, name="build-worker", on_message=self._on_message, env=env
        )
        self._ready: asyncio.Future[dict[str, Any]] | None = None
        self._started = False
        self.worker_info: dict[str, Any] = {}

    @property
    def running(self) -> bool:
        return self._started and self._channel.running

    async def start(self) -> None:
        """Raises WorkerUnavailable or InitializationTimeout."""
        self._ready = asyncio.get_running_loop().create_future()
        try:
            await self._channel.spawn()
        except OSError as exc:
            raise WorkerUnavailable(f"Cannot start build worker: {exc}") from exc
        try:
            self.worker_info = await asyncio.wait_for(
                asyncio.shield(self._ready), timeout=self._startup_timeout
            )
        except asyncio.TimeoutError:
            await self._channel.close()
            raise InitializationTimeout(
                f"Build worker not ready after {self._startup_timeout}s"
            ) from None
        except WorkerUnavailable:
            await self._channel.close()
            raise
        self._started = True
        log.info(
            "worker.ready",
            version=self.worker_info.get("version"),
            esbuild=self.worker_info.get("esbuild"),
        )

    async def request(
        self,
        cmd: str,
        payload: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        if not self.running:
            raise WorkerUnavailable("Build worker is not running")
        limit = timeout if timeout is not None else self._request_timeout
        try:
            return await self._channel.request({**(payload or {}), "cmd": cmd}, timeout=limit)
        except asyncio.TimeoutError:
            raise CompileTimeout(f"Build worker did not answer '{cmd}' within {limit}s") from None

    async def close(self) -> None:
        self._started = False
        await self._channel.close()

    def _on_message(self, message: dict[str, Any]) -> None:
        status = message.get("status")
        ready = self._ready
        if status == "ready":
            if ready is not None and not ready.done():
                ready.set_result(message)
            return
        if status in ("error", "exited"):
            reason = message.get("error") or f"worker exited ({message.get('returncode')})"
            if ready is not None and not ready.done():
                ready.set_exception(WorkerUnavailable(str(reason)))
            else:
                log.warning("worker.unsolicited", status=status, reason=reason)
            return
        log.debug("worker.unmatched_message", message=message)
