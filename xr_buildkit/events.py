"""Event notification for build status, analysis and hot-reload results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Union

import structlog

from xr_buildkit.models.build import BuildResult, BuildStatus

if TYPE_CHECKING:
    from xr_buildkit.analyzer import BuildAnalysis, BuildTrends

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StatusChanged:
    previous: BuildStatus
    current: BuildStatus


@dataclass(frozen=True)
class AnalysisReady:
    analysis: BuildAnalysis
    trends: BuildTrends


@dataclass(frozen=True)
class HotReloadCompleted:
    result: BuildResult


BuildEvent = Union[StatusChanged, AnalysisReady, HotReloadCompleted]
Listener = Callable[[BuildEvent], None]


class EventBus:
    """Observer list. Listeners run synchronously in subscription order."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that removes it again."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: BuildEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("events.listener_error", event=type(event).__name__)

    def __len__(self) -> int:
        return len(self._listeners)
