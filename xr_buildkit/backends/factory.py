"""Backend selection: native worker when available, sandbox otherwise."""

from __future__ import annotations

import asyncio
from typing import Callable

import structlog

from xr_buildkit.backends.base import BuildBackend
from xr_buildkit.backends.compiler_loader import CompilerLoader
from xr_buildkit.backends.native_backend import NativeWorkerBackend
from xr_buildkit.backends.node_sandbox import NodeSandboxHost
from xr_buildkit.backends.sandbox_backend import SandboxBuildBackend
from xr_buildkit.backends.worker_client import WorkerClient
from xr_buildkit.config import BuildKitSettings

log = structlog.get_logger(__name__)


def default_sandbox_factory(settings: BuildKitSettings) -> SandboxBuildBackend:
    return SandboxBuildBackend(
        NodeSandboxHost(settings.node_binary),
        CompilerLoader(settings.compiler_sources, timeout=settings.source_timeout),
        poll_interval=settings.sandbox_poll_interval,
        init_timeout=settings.sandbox_init_timeout,
        build_timeout=settings.build_timeout,
    )


def default_native_factory(settings: BuildKitSettings) -> NativeWorkerBackend:
    return NativeWorkerBackend(
        WorkerClient(
            settings.worker_command,
            startup_timeout=settings.worker_startup_timeout,
            request_timeout=settings.worker_request_timeout,
        )
    )


class BuildBackendFactory:
    """
    Holds one backend of each kind, created on first need.

    Native availability is probed once in the background; until the probe
    resolves, ``is_native_available`` is False and builds go to the sandbox.
    ``refresh_availability`` is the only way to probe again.
    """

    def __init__(
        self,
        settings: BuildKitSettings | None = None,
        *,
        sandbox_factory: Callable[[BuildKitSettings], BuildBackend] | None = None,
        native_factory: Callable[[BuildKitSettings], NativeWorkerBackend] | None = None,
    ) -> None:
        self._settings = settings or BuildKitSettings.from_env()
        self._sandbox_factory = sandbox_factory or default_sandbox_factory
        self._native_factory = native_factory or default_native_factory

        self._sandbox: BuildBackend | None = None
        self._native: NativeWorkerBackend | None = None
        self._native_available = False
        self._probe_task: asyncio.Task[bool] | None = None

    @property
    def is_native_available(self) -> bool:
        return (
            self._native_available
            and self._native is not None
            and self._native.is_available()
        )

    @property
    def probe_started(self) -> bool:
        return self._probe_task is not None

    @property
    def native_backend(self) -> NativeWorkerBackend | None:
        return self._native

    def sandbox_backend(self) -> BuildBackend:
        if self._sandbox is None:
            self._sandbox = self._sandbox_factory(self._settings)
            log.info("factory.sandbox_created", backend=self._sandbox.name)
        return self._sandbox

    def create_backend(self) -> BuildBackend:
        """Return the backend for the next build. Never blocks on the probe."""
        self._ensure_probe()
        if self._native_available and self._native is not None:
            if self._native.is_available():
                return self._native
            # Worker exited after a successful start
            log.warning("factory.native_lost", backend=self._native.name)
            self._native_available = False
        return self.sandbox_backend()

    def refresh_availability(self) -> None:
        """Forget the last probe result and probe again."""
        if self._probe_task is not None and not self._probe_task.done():
            return
        self._native_available = False
        self._probe_task = None
        log.info("factory.refresh_availability")
        self._ensure_probe()

    async def wait_for_probe(self) -> bool:
        self._ensure_probe()
        assert self._probe_task is not None
        return await asyncio.shield(self._probe_task)

    async def close(self) -> None:
        if self._probe_task is not None and not self._probe_task.done():
            self._probe_task.cancel()
            await asyncio.gather(self._probe_task, return_exceptions=True)
        for backend in (self._native, self._sandbox):
            if backend is not None:
                await backend.close()
        self._native = None
        self._sandbox = None
        self._native_available = False

    # ── probe ──────────────────────────────────────────────────────────────

    def _ensure_probe(self) -> None:
        if self._probe_task is None:
            self._probe_task = asyncio.create_task(self._probe(), name="native-probe")

    async def _probe(self) -> bool:
        if not self._settings.native_enabled:
            log.info("factory.native_disabled")
            return False

        # A native backend that failed to start stays dead; replace it
        if self._native is not None and not self._native.is_available():
            await self._native.close()
            self._native = None

        try:
            if self._native is None:
                self._native = self._native_factory(self._settings)
            await self._native.start()
            available = self._native.is_available()
        except Exception:
            log.exception("factory.probe_error")
            available = False
        self._native_available = available
        log.info("factory.probe_done", native=available)
        return available
