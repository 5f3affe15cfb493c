"""Tests for assetsmith.batch -- windowed batch generation."""

from __future__ import annotations

import threading

import pytest

from assetsmith.batch import BatchRunner
from assetsmith.events import EventBus, EventType


def _requests(make_request, count, broken=()):
    out = []
    for i in range(1, count + 1):
        desc = f"A steel sword number {i}"
        if i in broken:
            desc = f"A broken sword number {i}"
        out.append(make_request(f"sword-{i}", name=f"Sword {i}", description=desc))
    return out


class TestBatchRunner:
    def test_one_failure_does_not_sink_the_batch(self, make_pipeline, fakes, make_request):
        FakeImage, _ = fakes
        pipe = make_pipeline(image_service=FakeImage(fail_on="broken"))
        events = []

        results = pipe.batch_generate(
            _requests(make_request, 5, broken={3}),
            on_event=events.append,
        )

        assert len(results) == 4
        assert {r.id for r in results} == {"sword-1", "sword-2", "sword-4", "sword-5"}
        batch_errors = [e for e in events if e.type == EventType.BATCH_ERROR]
        assert len(batch_errors) == 1
        assert batch_errors[0].data["request_id"] == "sword-3"
        assert "boom" in batch_errors[0].data["reason"]
        assert batch_errors[0].data["code"] == "API_ERROR"

    def test_batch_errors_reach_event_bus(self, make_pipeline, fakes, make_request):
        FakeImage, _ = fakes
        bus = EventBus()
        pipe = make_pipeline(image_service=FakeImage(fail_on="broken"), event_bus=bus)

        pipe.batch_generate(_requests(make_request, 2, broken={1}))

        recorded = bus.recent_events(EventType.BATCH_ERROR)
        assert [e.data["request_id"] for e in recorded] == ["sword-1"]

    def test_window_bounds_concurrency(self, make_pipeline, fakes, make_request):
        FakeImage, _ = fakes
        images = FakeImage(delay=0.05)
        pipe = make_pipeline(image_service=images)

        results = BatchRunner(pipe, window_size=2).run_batch(_requests(make_request, 5))

        assert len(results) == 5
        assert images.max_in_flight <= 2

    def test_default_window_from_pipeline(self, make_pipeline, fakes, make_request):
        FakeImage, _ = fakes
        images = FakeImage(delay=0.05)
        pipe = make_pipeline(image_service=images, batch_size=3)

        pipe.batch_generate(_requests(make_request, 6))

        assert images.max_in_flight <= 3

    def test_empty_batch(self, make_pipeline):
        assert make_pipeline().batch_generate([]) == []

    def test_invalid_window(self, make_pipeline):
        with pytest.raises(ValueError):
            BatchRunner(make_pipeline(), window_size=0)

    def test_cancelled_batch_stops(self, make_pipeline, fakes, make_request):
        FakeImage, _ = fakes
        images = FakeImage()
        pipe = make_pipeline(image_service=images)
        cancel = threading.Event()
        cancel.set()

        results = pipe.batch_generate(_requests(make_request, 4), cancel_event=cancel)

        assert results == []
        assert images.calls == []

    def test_invalid_request_reported_not_raised(self, make_pipeline, make_request):
        pipe = make_pipeline()
        good = make_request("ok-1")
        bad = make_request("bad-1", description="")
        events = []

        results = pipe.batch_generate([good, bad], on_event=events.append)

        assert [r.id for r in results] == ["ok-1"]
        failed = [e.data for e in events if e.type == EventType.BATCH_ERROR]
        assert failed[0]["request_id"] == "bad-1"
        assert failed[0]["code"] == "VALIDATION_ERROR"
