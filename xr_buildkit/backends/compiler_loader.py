"""Compiler bundle download with ordered mirror fallback."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from xr_buildkit.exceptions import NetworkUnavailable

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CompilerBundle:
    script: str
    wasm_url: str
    source: str


class CompilerLoader:
    """Fetch the compiler script from the first reachable source.

    Sources are tried in order (primary, then mirrors); each attempt is
    bounded by *timeout* seconds.
    """

    def __init__(
        self,
        sources: tuple[tuple[str, str], ...] | list[tuple[str, str]],
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._sources = list(sources)
        self._timeout = timeout
        self._transport = transport

    async def load(self) -> CompilerBundle:
        tried: list[str] = []
        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            for script_url, wasm_url in self._sources:
                tried.append(script_url)
                try:
                    resp = await client.get(script_url)
                    resp.raise_for_status()
                except httpx.HTTPError as exc:
                    log.warning("compiler.source_failed", url=script_url, error=str(exc))
                    continue
                if not resp.text.strip():
                    log.warning("compiler.source_empty", url=script_url)
                    continue
                log.info("compiler.loaded", url=script_url, bytes=len(resp.content))
                return CompilerBundle(script=resp.text, wasm_url=wasm_url, source=script_url)
        raise NetworkUnavailable(tried)
