"""Abstract base class for build backends and the shared compiler options."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from xr_buildkit.models.build import BuildRequest, BuildResult

# Bare package name -> locally served vendor asset. The assets themselves are
# served by the host application's app:// scheme handler.
VENDOR_ALIASES: dict[str, str] = {
    "react": "app://vendor/react.production.min.js",
    "react-dom": "app://vendor/react-dom.production.min.js",
    "react-dom/client": "app://vendor/react-dom.production.min.js",
    "three": "app://vendor/three.module.js",
    "@react-three/fiber": "app://vendor/react-three-fiber.js",
    "@react-three/drei": "app://vendor/drei.js",
    "reactylon": "app://vendor/reactylon.js",
    "@babylonjs/core": "app://vendor/babylonjs.js",
}

BUNDLE_GLOBAL_NAME = "XRAiApp"
BUNDLE_TARGET = "es2020"


def compiler_options(request: BuildRequest) -> dict[str, Any]:
    """Options forwarded to the real compiler (esbuild build API shape)."""
    framework = request.framework
    options: dict[str, Any] = {
        "loader": "tsx" if framework.uses_jsx else "js",
        "bundle": True,
        "platform": "browser",
        "format": "iife",
        "globalName": BUNDLE_GLOBAL_NAME,
        "target": BUNDLE_TARGET,
        "minify": request.minify,
        "sourcemap": "inline",
        "write": False,
        "define": {"process.env.NODE_ENV": '"production"', **request.defines},
        "alias": dict(VENDOR_ALIASES),
    }
    if framework.uses_jsx:
        options["jsx"] = request.jsx_runtime or "automatic"
    return options


class BuildBackend(ABC):
    """
    One compilation strategy.
    ``build`` never raises: every failure is encoded in BuildResult.errors.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier, e.g. 'sandbox', 'native'."""
        ...

    @abstractmethod
    def is_available(self) -> bool:
        """Non-blocking; reflects the last readiness probe."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Begin (or await) initialization. Safe to call more than once."""
        ...

    @abstractmethod
    async def build(self, request: BuildRequest) -> BuildResult:
        ...

    async def close(self) -> None:
        return None
