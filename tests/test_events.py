"""Tests for EventBus."""

from __future__ import annotations

from xr_buildkit.events import EventBus, HotReloadCompleted, StatusChanged
from xr_buildkit.models.build import BuildResult, BuildStatus


def _event() -> StatusChanged:
    return StatusChanged(BuildStatus.idle(), BuildStatus.building())


class TestEventBus:
    def test_delivers_in_subscription_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe(lambda e: seen.append(("a", e)))
        bus.subscribe(lambda e: seen.append(("b", e)))

        event = _event()
        bus.publish(event)
        assert seen == [("a", event), ("b", event)]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        assert len(bus) == 1

        unsubscribe()
        unsubscribe()
        bus.publish(_event())
        assert seen == []
        assert len(bus) == 0

    def test_failing_listener_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def _boom(event):
            raise RuntimeError("listener bug")

        bus.subscribe(_boom)
        bus.subscribe(seen.append)
        event = HotReloadCompleted(BuildResult.failure("x"))
        bus.publish(event)
        assert seen == [event]

    def test_listener_may_unsubscribe_while_publishing(self):
        bus = EventBus()
        seen = []
        unsubscribe = None

        def _once(event):
            seen.append(event)
            unsubscribe()

        unsubscribe = bus.subscribe(_once)
        bus.publish(_event())
        bus.publish(_event())
        assert len(seen) == 1
