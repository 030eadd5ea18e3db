"""Runs the esbuild binary over a materialized copy of the virtual file map."""

from __future__ import annotations

import asyncio
import json
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from xr_buildkit.backends.base import BUNDLE_GLOBAL_NAME, BUNDLE_TARGET, VENDOR_ALIASES
from xr_buildkit.exceptions import CompileError
from xr_buildkit.models.framework import FrameworkKind
from xr_buildkit.models.protocol import WorkerBuildMessage

log = structlog.get_logger(__name__)

ESBUILD_TIMEOUT = 120  # seconds

_HEADER_RE = re.compile(r"^\s*(?:▲|✘|X)?\s*\[(WARNING|ERROR)\]\s*(.*)$")
_LOCATION_RE = re.compile(r"^\s+(\S+:\d+:\d+):")


@dataclass
class EsbuildOutput:
    bundle_code: str
    warnings: list[str] = field(default_factory=list)
    metafile: dict[str, Any] | None = None


def find_esbuild(explicit: str | None = None) -> str | None:
    if explicit:
        return explicit if Path(explicit).exists() else shutil.which(explicit)
    return shutil.which("esbuild")


def parse_diagnostics(stderr: str) -> tuple[list[str], list[str]]:
    """Split esbuild log output into (warnings, errors), with locations prefixed."""
    warnings: list[str] = []
    errors: list[str] = []
    current: list[str] | None = None
    text = ""
    located = False
    for line in stderr.splitlines():
        header = _HEADER_RE.match(line)
        if header:
            if current is not None:
                current.append(text)
            current = errors if header.group(1) == "ERROR" else warnings
            text = header.group(2).strip()
            located = False
            continue
        if current is None or located:
            continue
        location = _LOCATION_RE.match(line)
        if location:
            text = f"{location.group(1)}: {text}"
            located = True
    if current is not None:
        current.append(text)
    return warnings, errors


def build_argv(
    binary: str,
    entry: Path,
    outfile: Path,
    metafile: Path,
    message: WorkerBuildMessage,
) -> list[str]:
    argv = [
        binary,
        str(entry),
        "--bundle",
        "--platform=browser",
        "--format=iife",
        f"--global-name={BUNDLE_GLOBAL_NAME}",
        f"--target={BUNDLE_TARGET}",
        "--sourcemap=inline",
        f"--outfile={outfile}",
        f"--metafile={metafile}",
        "--log-level=warning",
        "--color=false",
        "--external:app://*",
    ]
    try:
        uses_jsx = FrameworkKind.parse(message.framework).uses_jsx
    except ValueError:
        uses_jsx = False
    if uses_jsx:
        argv.append("--jsx=automatic")
    if message.minify:
        argv.append("--minify")
    defines = {"process.env.NODE_ENV": '"production"', "global": "globalThis", **message.defines}
    argv.extend(f"--define:{key}={value}" for key, value in defines.items())
    argv.extend(f"--alias:{name}={url}" for name, url in VENDOR_ALIASES.items())
    return argv


class EsbuildRunner:
    def __init__(self, binary: str) -> None:
        self._binary = binary

    async def version(self) -> str:
        proc = await asyncio.create_subprocess_exec(
            self._binary,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await proc.communicate()
        return stdout.decode().strip()

    async def build(self, message: WorkerBuildMessage) -> EsbuildOutput:
        """Raises CompileError with esbuild's diagnostics on failure."""
        if message.entry not in message.files:
            raise CompileError([f"Entry file not found: {message.entry}"])

        with tempfile.TemporaryDirectory(prefix="xr-build-") as tmp:
            root = Path(tmp).resolve()
            for path, content in message.files.items():
                target = (root / path.lstrip("/")).resolve()
                if root not in target.parents:
                    raise CompileError([f"File path escapes the project root: {path}"])
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")

            entry = root / message.entry.lstrip("/")
            outfile = root / "__out__" / "bundle.js"
            metafile = root / "__out__" / "meta.json"
            argv = build_argv(self._binary, entry, outfile, metafile, message)

            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout=ESBUILD_TIMEOUT)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise CompileError([f"esbuild timed out after {ESBUILD_TIMEOUT}s"])

            stderr = stderr_raw.decode("utf-8", errors="replace")
            warnings, errors = parse_diagnostics(stderr)
            if proc.returncode != 0:
                raise CompileError(
                    errors or [stderr.strip() or f"esbuild exited with code {proc.returncode}"]
                )

            bundle_code = outfile.read_text(encoding="utf-8") if outfile.exists() else ""
            meta = json.loads(metafile.read_text()) if metafile.exists() else None
            log.debug("esbuild.done", bytes=len(bundle_code), warnings=len(warnings))
            return EsbuildOutput(bundle_code=bundle_code, warnings=warnings, metafile=meta)
