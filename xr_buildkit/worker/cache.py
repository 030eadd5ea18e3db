"""Build artifact cache and counters kept by the worker process."""

from __future__ import annotations

import json
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from xr_buildkit.models.protocol import WorkerBuildMessage


@dataclass(frozen=True)
class CachedBuild:
    bundle_code: str
    warnings: list[str]
    bytes: int
    duration_ms: int
    stored_at: float


class BuildCache:
    """Insertion-ordered cache with a TTL; the oldest entry goes first when full."""

    def __init__(
        self,
        ttl: float = 300.0,
        capacity: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._capacity = capacity
        self._clock = clock
        self._entries: OrderedDict[str, CachedBuild] = OrderedDict()

    @staticmethod
    def key_for(message: WorkerBuildMessage) -> str:
        return json.dumps(
            {
                "framework": message.framework,
                "entry": message.entry,
                "files": message.files,
                "defines": message.defines,
                "minify": message.minify,
            },
            sort_keys=True,
        )

    def get(self, key: str) -> CachedBuild | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self._ttl:
            del self._entries[key]
            return None
        return entry

    def put(
        self,
        key: str,
        *,
        bundle_code: str,
        warnings: list[str],
        bytes: int,
        duration_ms: int,
    ) -> None:
        self._entries.pop(key, None)
        self._entries[key] = CachedBuild(
            bundle_code=bundle_code,
            warnings=list(warnings),
            bytes=bytes,
            duration_ms=duration_ms,
            stored_at=self._clock(),
        )
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class WorkerCounters:
    total_builds: int = 0
    cache_hits: int = 0
    average_build_time: float = 0.0
    last_build_time: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def record_build(self, duration_ms: int) -> None:
        self.total_builds += 1
        self.last_build_time = duration_ms
        self.average_build_time += (duration_ms - self.average_build_time) / self.total_builds

    def record_hit(self) -> None:
        self.cache_hits += 1

    def snapshot(self, cache_size: int) -> dict[str, Any]:
        return {
            "totalBuilds": self.total_builds,
            "cacheHits": self.cache_hits,
            "averageBuildTime": round(self.average_build_time, 2),
            "lastBuildTime": self.last_build_time,
            "cacheSize": cache_size,
            "uptime": round(time.monotonic() - self.started_at, 3),
        }
