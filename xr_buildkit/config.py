"""Runtime settings, read from ``XR_BUILDKIT_*`` environment variables."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

_PREFIX = "XR_BUILDKIT_"

ESBUILD_WASM_VERSION = "0.19.11"

# (script URL, wasm URL), primary first then mirrors
DEFAULT_COMPILER_SOURCES: tuple[tuple[str, str], ...] = (
    (
        f"https://unpkg.com/esbuild-wasm@{ESBUILD_WASM_VERSION}/lib/browser.js",
        f"https://unpkg.com/esbuild-wasm@{ESBUILD_WASM_VERSION}/esbuild.wasm",
    ),
    (
        f"https://cdn.jsdelivr.net/npm/esbuild-wasm@{ESBUILD_WASM_VERSION}/lib/browser.js",
        f"https://cdn.jsdelivr.net/npm/esbuild-wasm@{ESBUILD_WASM_VERSION}/esbuild.wasm",
    ),
)


def _env(key: str) -> str | None:
    return os.environ.get(_PREFIX + key)


def _env_float(key: str, default: float) -> float:
    return float(_env(key) or default)


def _env_int(key: str, default: int) -> int:
    return int(_env(key) or default)


def _env_bool(key: str, default: bool) -> bool:
    raw = _env(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_sources(raw: str) -> tuple[tuple[str, str], ...]:
    """``script|wasm,script|wasm`` -> source tuples. Missing wasm URL is derived."""
    sources = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        script, _, wasm = chunk.partition("|")
        if not wasm:
            wasm = script.rsplit("/lib/", 1)[0] + "/esbuild.wasm"
        sources.append((script.strip(), wasm.strip()))
    return tuple(sources)


@dataclass
class BuildKitSettings:
    # sandbox backend
    sandbox_poll_interval: float = 0.5
    sandbox_init_timeout: float = 15.0
    build_timeout: float = 30.0
    source_timeout: float = 5.0
    compiler_sources: tuple[tuple[str, str], ...] = DEFAULT_COMPILER_SOURCES
    node_binary: str = "node"

    # native worker backend
    native_enabled: bool = True
    worker_command: list[str] = field(
        default_factory=lambda: [sys.executable, "-m", "xr_buildkit.worker"]
    )
    worker_startup_timeout: float = 10.0
    worker_request_timeout: float = 60.0

    # worker process
    esbuild_binary: str | None = None
    cache_ttl: float = 300.0
    cache_capacity: int = 100

    # hot reload
    hot_reload_preset: str = "default"

    @classmethod
    def from_env(cls) -> BuildKitSettings:
        settings = cls(
            sandbox_poll_interval=_env_float("SANDBOX_POLL_INTERVAL", 0.5),
            sandbox_init_timeout=_env_float("SANDBOX_INIT_TIMEOUT", 15.0),
            build_timeout=_env_float("BUILD_TIMEOUT", 30.0),
            source_timeout=_env_float("SOURCE_TIMEOUT", 5.0),
            node_binary=_env("NODE") or "node",
            native_enabled=_env_bool("NATIVE", True),
            worker_startup_timeout=_env_float("WORKER_STARTUP_TIMEOUT", 10.0),
            worker_request_timeout=_env_float("WORKER_REQUEST_TIMEOUT", 60.0),
            esbuild_binary=_env("ESBUILD"),
            cache_ttl=_env_float("CACHE_TTL", 300.0),
            cache_capacity=_env_int("CACHE_CAPACITY", 100),
            hot_reload_preset=(_env("HOT_RELOAD_PRESET") or "default").lower(),
        )
        sources = _env("COMPILER_SOURCES")
        if sources:
            settings.compiler_sources = _parse_sources(sources)
        worker_cmd = _env("WORKER_COMMAND")
        if worker_cmd:
            settings.worker_command = worker_cmd.split()
        return settings
