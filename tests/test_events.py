"""Tests for assetsmith.events -- event bus and one-off delivery."""

from __future__ import annotations

from assetsmith.events import Event, EventBus, EventType, deliver
from assetsmith.models import AssetType, GenerationRequest, GenerationResult


class TestEvent:
    def test_to_dict_serialises_nested_objects(self):
        req = GenerationRequest(id="r", name="r", description="a sword", type=AssetType.WEAPON)
        event = Event(
            type=EventType.STAGE_COMPLETE,
            data={"result": GenerationResult(id="r", request=req), "stage": "image"},
            source="pipeline",
        )

        d = event.to_dict()

        assert d["type"] == "stage-complete"
        assert d["data"]["stage"] == "image"
        assert d["data"]["result"]["id"] == "r"
        assert d["source"] == "pipeline"


class TestEventBus:
    def test_subscribe_and_publish(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.COMPLETE, received.append)

        bus.publish(EventType.COMPLETE, {"result_id": "a"})
        bus.publish(EventType.ERROR, {"result_id": "a"})

        assert len(received) == 1
        assert received[0].data["result_id"] == "a"

    def test_wildcard(self):
        bus = EventBus()
        received = []
        bus.subscribe(None, received.append)

        bus.publish(EventType.STAGE_START)
        bus.publish(EventType.BATCH_ERROR)

        assert [e.type for e in received] == [EventType.STAGE_START, EventType.BATCH_ERROR]

    def test_filter(self):
        bus = EventBus()
        received = []
        bus.subscribe(
            EventType.STAGE_COMPLETE,
            received.append,
            filter=lambda e: e.data.get("stage") == "final",
        )

        bus.publish(EventType.STAGE_COMPLETE, {"stage": "image"})
        bus.publish(EventType.STAGE_COMPLETE, {"stage": "final"})

        assert [e.data["stage"] for e in received] == ["final"]

    def test_duplicate_subscription_ignored(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.COMPLETE, received.append)
        bus.subscribe(EventType.COMPLETE, received.append)

        bus.publish(EventType.COMPLETE)

        assert len(received) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.COMPLETE, received.append)
        bus.unsubscribe(EventType.COMPLETE, received.append)
        bus.unsubscribe(EventType.ERROR, received.append)

        bus.publish(EventType.COMPLETE)

        assert received == []

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        received = []

        def _broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.ERROR, _broken)
        bus.subscribe(EventType.ERROR, received.append)

        bus.publish(EventType.ERROR)

        assert len(received) == 1

    def test_history_newest_first(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            bus.publish(EventType.STAGE_START, {"i": i})

        recent = bus.recent_events()
        assert [e.data["i"] for e in recent] == [4, 3, 2]

        bus.clear_history()
        assert bus.recent_events() == []

    def test_history_filtered_by_type(self):
        bus = EventBus()
        bus.publish(EventType.STAGE_START)
        bus.publish(EventType.COMPLETE)
        assert [e.type for e in bus.recent_events(EventType.COMPLETE)] == [EventType.COMPLETE]

    def test_publish_prebuilt_event(self):
        bus = EventBus()
        event = Event(type=EventType.COMPLETE, source="batch")
        assert bus.publish(event) is event


class TestDeliver:
    def test_none_handler(self):
        deliver(None, Event(type=EventType.COMPLETE))

    def test_handler_errors_are_logged(self, caplog):
        def _broken(event):
            raise ValueError("nope")

        deliver(_broken, Event(type=EventType.COMPLETE))
        assert "Event callback" in caplog.text
