"""Test doubles for xr_buildkit.

Usage::

    from xr_buildkit.testing import FakeBuildBackend, ScriptedSandboxHost

    backend = FakeBuildBackend()                          # always succeeds
    backend = FakeBuildBackend(result=BuildResult.failure("boom"))
    host = ScriptedSandboxHost(result_delay=0.05)         # posts results late
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Callable

from xr_buildkit.backends.base import BuildBackend
from xr_buildkit.backends.compiler_loader import CompilerBundle, CompilerLoader
from xr_buildkit.backends.harness import (
    BOOTSTRAP_SCRIPT,
    BUILD_FUNCTION,
    COMPILER_ERROR_PROBE,
    COMPILER_READY_PROBE,
    READY_PROBE,
    RESULT_CHANNEL,
)
from xr_buildkit.backends.sandbox_host import MessageHandler, SandboxHost
from xr_buildkit.backends.worker_client import WorkerClient
from xr_buildkit.exceptions import (
    InitializationTimeout,
    NetworkUnavailable,
    SandboxError,
    WorkerUnavailable,
)
from xr_buildkit.models.build import BuildRequest, BuildResult
from xr_buildkit.models.protocol import WorkerBuildMessage
from xr_buildkit.worker.cache import BuildCache
from xr_buildkit.worker.esbuild import EsbuildOutput
from xr_buildkit.worker.server import WorkerServer

Responder = Callable[[dict[str, Any]], "dict[str, Any] | None"]

_BUILD_PREFIX = f"window.{BUILD_FUNCTION}("
_BUILD_SUFFIX = "); undefined;"
_ERROR_PREFIX = "window.esbuildError = "
_STATEMENT_SUFFIX = "; undefined;"


def default_sandbox_response(message: dict[str, Any]) -> dict[str, Any]:
    bundle = f"(function () {{\n{message['entryCode']}\n}})();"
    return {
        "success": True,
        "bundleCode": bundle,
        "warnings": [],
        "errors": [],
        "bytes": len(bundle.encode("utf-8")),
        "durationMs": 12,
    }


class ScriptedSandboxHost(SandboxHost):
    """In-memory sandbox that answers the bootstrap probes and build calls.

    Parameters
    ----------
    responder:
        Maps the decoded build message to the result body to post, or
        ``None`` to post nothing (simulates a compiler that never answers).
    result_delay:
        Seconds before the result is posted; ``0`` posts during ``evaluate``.
    compiler_loads:
        Whether ``initializeCompiler`` flips the compiler-ready flag.
    bootstrap_works:
        If ``False`` the build function never appears (readiness times out).
    """

    def __init__(
        self,
        *,
        responder: Responder | None = None,
        result_delay: float = 0.0,
        compiler_loads: bool = True,
        bootstrap_works: bool = True,
        fail_open: bool = False,
        fail_builds: bool = False,
    ) -> None:
        self._responder = responder or default_sandbox_response
        self._result_delay = result_delay
        self._compiler_loads = compiler_loads
        self._bootstrap_works = bootstrap_works
        self._fail_open = fail_open
        self._fail_builds = fail_builds

        self._handlers: dict[str, MessageHandler] = {}
        self.opened = False
        self.closed = False
        self.bootstrapped = False
        self.compiler_ready = False
        self.compiler_error: str | None = None
        self.scripts: list[str] = []
        self.build_calls: list[dict[str, Any]] = []

    async def open(self) -> None:
        if self._fail_open:
            raise SandboxError("sandbox could not be provisioned")
        self.opened = True

    async def evaluate(self, script: str) -> Any:
        self.scripts.append(script)
        if script == BOOTSTRAP_SCRIPT:
            self.bootstrapped = self._bootstrap_works
            return None
        if script == READY_PROBE:
            return self.bootstrapped
        if script == COMPILER_READY_PROBE:
            return self.compiler_ready
        if script == COMPILER_ERROR_PROBE:
            return self.compiler_error is not None
        if script.startswith(_ERROR_PREFIX):
            self.compiler_error = json.loads(script[len(_ERROR_PREFIX) : -len(_STATEMENT_SUFFIX)])
            return None
        if script.startswith("window.initializeCompiler("):
            self.compiler_ready = self._compiler_loads
            return None
        if script.startswith(_BUILD_PREFIX):
            return self._build(json.loads(script[len(_BUILD_PREFIX) : -len(_BUILD_SUFFIX)]))
        return None

    def _build(self, message: dict[str, Any]) -> None:
        self.build_calls.append(message)
        if self._fail_builds:
            raise SandboxError("ReferenceError: esbuild is not defined")
        body = self._responder(message)
        if body is None:
            return
        if isinstance(body, dict):
            body = {"buildId": message.get("buildId"), **body}
        if self._result_delay > 0:
            asyncio.get_running_loop().call_later(
                self._result_delay, self.post, RESULT_CHANNEL, json.dumps(body)
            )
        else:
            self.post(RESULT_CHANNEL, json.dumps(body))

    def post(self, name: str, body: Any) -> None:
        """Deliver a sandbox-to-host message, as ``window.__buildkitPost`` would."""
        handler = self._handlers.get(name)
        if handler is not None:
            handler(body)

    def set_message_handler(self, name: str, handler: MessageHandler) -> None:
        self._handlers[name] = handler

    async def close(self) -> None:
        self.closed = True


class StaticCompilerLoader(CompilerLoader):
    """Returns a fixed bundle, or raises NetworkUnavailable when given none."""

    def __init__(self, bundle: CompilerBundle | None = None) -> None:
        super().__init__(())
        self._bundle = bundle
        self.loads = 0

    async def load(self) -> CompilerBundle:
        self.loads += 1
        if self._bundle is None:
            raise NetworkUnavailable(["https://primary.invalid", "https://mirror.invalid"])
        return self._bundle


FAKE_COMPILER = CompilerBundle(
    script="window.esbuild = {};",
    wasm_url="https://cdn.invalid/esbuild.wasm",
    source="https://cdn.invalid/browser.js",
)


class FakeBuildBackend(BuildBackend):
    """Backend double that records requests and returns a canned result.

    Set ``gate`` to an unset ``asyncio.Event`` to hold builds until it is set.
    """

    def __init__(
        self,
        *,
        result: BuildResult | None = None,
        available: bool = True,
        delay: float = 0.0,
        name: str = "fake",
    ) -> None:
        self._result = result
        self._available = available
        self._delay = delay
        self._name = name
        self.gate: asyncio.Event | None = None
        self.requests: list[BuildRequest] = []
        self.request_times: list[float] = []
        self.started = 0
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    def is_available(self) -> bool:
        return self._available

    async def start(self) -> None:
        self.started += 1

    async def build(self, request: BuildRequest) -> BuildResult:
        self.requests.append(request)
        self.request_times.append(asyncio.get_running_loop().time())
        if self.gate is not None:
            await self.gate.wait()
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._result is not None:
            return self._result
        bundle = f"/* {request.framework.value} */\n{request.entry_code}"
        return BuildResult(
            success=True,
            bundle_code=bundle,
            bytes=len(bundle.encode("utf-8")),
            duration_ms=25,
        )

    async def close(self) -> None:
        self.closed = True


async def fake_esbuild(message: WorkerBuildMessage) -> EsbuildOutput:
    """Stand-in for EsbuildRunner.build: wraps the entry file in an IIFE."""
    entry = message.files.get(message.entry, "")
    return EsbuildOutput(
        bundle_code=f"var XRAiApp = (() => {{\n{entry}\n}})();\n",
        metafile={"inputs": {message.entry: {"bytes": len(entry)}}},
    )


class InProcessWorkerClient(WorkerClient):
    """WorkerClient that talks to a WorkerServer in the same event loop."""

    def __init__(
        self,
        server: WorkerServer | None = None,
        *,
        fail_start: bool = False,
        start_timeout: bool = False,
    ) -> None:
        # Skip real __init__: no child process involved.
        self.server = server or WorkerServer(fake_esbuild, BuildCache())
        self._fail_start = fail_start
        self._start_timeout = start_timeout
        self._running = False
        self.worker_info: dict[str, Any] = {}
        self.requests: list[dict[str, Any]] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._fail_start:
            raise WorkerUnavailable("esbuild binary not found")
        if self._start_timeout:
            raise InitializationTimeout("Build worker not ready after 0.1s")
        self._running = True
        self.worker_info = {"status": "ready", "version": "test", "esbuild": "0.19.11"}

    async def request(
        self,
        cmd: str,
        payload: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        if not self._running:
            raise WorkerUnavailable("Build worker is not running")
        message = {**(payload or {}), "cmd": cmd, "messageId": uuid.uuid4().hex}
        self.requests.append(message)
        return await self.server.handle(message)

    async def close(self) -> None:
        self._running = False
