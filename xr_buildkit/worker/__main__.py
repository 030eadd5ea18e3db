"""Entry point: python -m xr_buildkit.worker"""

from __future__ import annotations

import asyncio
import json
import sys

import structlog

from xr_buildkit.config import BuildKitSettings
from xr_buildkit.core.logging import setup_logging
from xr_buildkit.worker.cache import BuildCache
from xr_buildkit.worker.esbuild import EsbuildRunner, find_esbuild
from xr_buildkit.worker.server import WorkerServer, ready_message, serve

log = structlog.get_logger("xr_buildkit.worker")


async def _run(settings: BuildKitSettings) -> int:
    binary = find_esbuild(settings.esbuild_binary)
    if binary is None:
        log.error("worker.esbuild_missing")
        error = {"status": "error", "error": "esbuild binary not found"}
        sys.stdout.write(json.dumps(error) + "\n")
        sys.stdout.flush()
        return 1

    runner = EsbuildRunner(binary)
    version = await runner.version()
    server = WorkerServer(
        runner.build,
        BuildCache(ttl=settings.cache_ttl, capacity=settings.cache_capacity),
    )
    sys.stdout.write(json.dumps(ready_message(version)) + "\n")
    sys.stdout.flush()
    log.info("worker.ready", esbuild=version, binary=binary)
    await serve(server)
    log.info("worker.stopped")
    return 0


def main() -> int:
    setup_logging(process="worker")
    return asyncio.run(_run(BuildKitSettings.from_env()))


if __name__ == "__main__":
    raise SystemExit(main())
