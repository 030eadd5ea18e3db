"""Debounced hot reload: rebuild once source edits have paused."""

from __future__ import annotations

import asyncio
import difflib
import time
from dataclasses import dataclass, field, replace
from typing import Callable

import structlog

from xr_buildkit.events import EventBus, HotReloadCompleted
from xr_buildkit.manager import BuildManager
from xr_buildkit.models.build import BuildResult
from xr_buildkit.models.framework import FrameworkKind

log = structlog.get_logger(__name__)

ReloadCallback = Callable[[BuildResult], None]
SourceCallback = Callable[[str], None]


@dataclass(frozen=True)
class HotReloadConfig:
    enabled: bool = True
    debounce_delay: float = 1.5  # seconds
    min_code_length: int = 10
    exclude_patterns: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def named(cls, name: str) -> HotReloadConfig:
        try:
            return PRESETS[name.lower()]
        except KeyError:
            raise ValueError(
                f"Unknown hot reload preset {name!r} (expected one of {', '.join(PRESETS)})"
            ) from None


FAST = HotReloadConfig(debounce_delay=0.8, min_code_length=5)
DEFAULT = HotReloadConfig(
    debounce_delay=1.5,
    min_code_length=10,
    exclude_patterns=("console.log", "// TODO", "/* test */"),
)
CONSERVATIVE = HotReloadConfig(
    debounce_delay=3.0,
    min_code_length=50,
    exclude_patterns=(
        "console.log",
        "console.warn",
        "console.error",
        "// TODO",
        "/* test */",
        "debugger",
    ),
)

PRESETS: dict[str, HotReloadConfig] = {
    "fast": FAST,
    "default": DEFAULT,
    "conservative": CONSERVATIVE,
}


def changed_lines(old: str, new: str) -> list[str]:
    """Lines removed from *old* or added in *new*."""
    a, b = old.splitlines(), new.splitlines()
    changed: list[str] = []
    matcher = difflib.SequenceMatcher(None, a, b, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag != "equal":
            changed.extend(a[i1:i2])
            changed.extend(b[j1:j2])
    return changed


def only_excluded_changes(old: str, new: str, patterns: tuple[str, ...]) -> bool:
    """True when every non-blank changed line contains an exclude pattern."""
    if not patterns:
        return False
    lines = [line for line in changed_lines(old, new) if line.strip()]
    return bool(lines) and all(any(p in line for p in patterns) for line in lines)


class HotReloadScheduler:
    """
    Turns a stream of source edits into builds.

    Each accepted edit cancels the pending timer and arms a new one for
    ``config.debounce_delay``; only the last edit of a burst is built.
    Edits are suppressed while disabled, for frameworks that need no build,
    when the source did not change, when the stripped source is shorter than
    ``min_code_length``, or when every changed line matches an exclude
    pattern. Suppressed edits do not become the last seen source.

    Cancelling the timer never touches a build that is already running.
    """

    def __init__(
        self,
        manager: BuildManager,
        config: HotReloadConfig = DEFAULT,
        events: EventBus | None = None,
    ) -> None:
        self._manager = manager
        self._config = config
        self._events = events if events is not None else manager.events

        self._enabled = False
        self._last_source = ""
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._last_reload_at: float | None = None
        self._reload_callbacks: list[ReloadCallback] = []
        self._source_callbacks: list[SourceCallback] = []

    @property
    def config(self) -> HotReloadConfig:
        return self._config

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def is_reloading(self) -> bool:
        return bool(self._tasks)

    @property
    def has_pending(self) -> bool:
        return self._timer is not None

    @property
    def last_reload_at(self) -> float | None:
        """Wall-clock time of the last finished reload."""
        return self._last_reload_at

    # ── control ────────────────────────────────────────────────────────────

    def enable(self) -> None:
        self._enabled = True
        log.info("hot_reload.enabled", debounce=self._config.debounce_delay)

    def disable(self) -> None:
        self._enabled = False
        self._cancel_timer()
        self._update_idle()
        log.info("hot_reload.disabled")

    def configure(self, config: HotReloadConfig) -> None:
        self._config = config
        log.info(
            "hot_reload.configured",
            debounce=config.debounce_delay,
            min_code_length=config.min_code_length,
            exclude_patterns=len(config.exclude_patterns),
        )
        if not config.enabled and self._enabled:
            self.disable()

    def set_debounce_delay(self, delay: float) -> None:
        if delay < 0:
            raise ValueError("debounce delay must be >= 0")
        self._config = replace(self._config, debounce_delay=delay)
        log.info("hot_reload.delay_set", debounce=delay)

    def on_reload(self, callback: ReloadCallback) -> Callable[[], None]:
        """Call *callback* with every reload result, including failures."""
        self._reload_callbacks.append(callback)
        return lambda: self._reload_callbacks.remove(callback)

    def on_source_change(self, callback: SourceCallback) -> Callable[[], None]:
        self._source_callbacks.append(callback)
        return lambda: self._source_callbacks.remove(callback)

    # ── edits ──────────────────────────────────────────────────────────────

    def source_changed(self, source: str, framework: FrameworkKind) -> bool:
        """Feed one edit. Returns True when a reload was (re)scheduled."""
        if not self._enabled or not framework.requires_build:
            return False
        if source == self._last_source:
            return False
        if len(source.strip()) < self._config.min_code_length:
            log.debug("hot_reload.suppressed", reason="too_short", length=len(source.strip()))
            return False
        if only_excluded_changes(self._last_source, source, self._config.exclude_patterns):
            log.debug("hot_reload.suppressed", reason="excluded_pattern")
            return False

        self._last_source = source
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._config.debounce_delay, self._fire, source, framework)
        self._idle.clear()

        for callback in list(self._source_callbacks):
            try:
                callback(source)
            except Exception:
                log.exception("hot_reload.source_callback_error")
        return True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, source: str, framework: FrameworkKind) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(
            self._reload(source, framework), name="hot-reload"
        )
        self._tasks.add(task)
        task.add_done_callback(self._reload_done)

    def _reload_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("hot_reload.task_failed", error=str(task.exception()))
        self._update_idle()

    def _update_idle(self) -> None:
        if self._timer is None and not self._tasks:
            self._idle.set()

    async def _reload(self, source: str, framework: FrameworkKind) -> None:
        if not self._enabled:
            return
        log.info("hot_reload.started", framework=framework.value)
        result = await self._manager.build_code(source, framework)
        self._last_reload_at = time.time()
        if result.success:
            log.info("hot_reload.succeeded", duration_ms=result.duration_ms, bytes=result.bytes)
        else:
            log.warning("hot_reload.failed", errors=result.errors)

        for callback in list(self._reload_callbacks):
            try:
                callback(result)
            except Exception:
                log.exception("hot_reload.callback_error")
        self._events.publish(HotReloadCompleted(result))

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def wait_idle(self) -> None:
        """Wait until no timer is armed and no reload is running."""
        await self._idle.wait()

    async def close(self) -> None:
        self.disable()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
