"""Tests for the in-process telemetry recorder."""

import threading

from rcon.core.constants import TELEMETRY_HISTORY
from rcon.core.telemetry import Telemetry


class TestHistoryLimit:
    """Memory stays bounded in long-running processes"""

    def test_oldest_events_dropped(self):
        telemetry = Telemetry(history=3)
        for index in range(5):
            telemetry.record_event("relay.opened", {"index": index})

        events = telemetry.get_events()
        assert [event.metadata["index"] for event in events] == [2, 3, 4]

    def test_oldest_metrics_dropped(self):
        telemetry = Telemetry(history=2)
        for value in (1, 2, 3):
            telemetry.record_metric("bytes", value)

        assert [metric.value for metric in telemetry.get_metrics()] == [2, 3]

    def test_default_history(self):
        telemetry = Telemetry()
        for index in range(TELEMETRY_HISTORY + 50):
            telemetry.record_event("tick")

        assert len(telemetry.get_events("tick")) == TELEMETRY_HISTORY

    def test_concurrent_writers(self):
        telemetry = Telemetry(history=100)

        def write():
            for _ in range(500):
                telemetry.record_event("tick")

        threads = [threading.Thread(target=write) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(telemetry.get_events()) == 100


class TestQueries:
    """Filtering by name"""

    def test_events_by_name(self):
        telemetry = Telemetry()
        telemetry.record_event("a")
        telemetry.record_event("b", {"x": 1})

        assert [event.name for event in telemetry.get_events("b")] == ["b"]
        assert len(telemetry.get_events()) == 2

    def test_metrics_by_name_with_tags(self):
        telemetry = Telemetry()
        telemetry.record_metric("bytes_up", 10, {"agent": "office-pc"})
        telemetry.record_metric("bytes_down", 20)

        [metric] = telemetry.get_metrics("bytes_up")
        assert metric.value == 10
        assert metric.tags == {"agent": "office-pc"}

    def test_clear(self):
        telemetry = Telemetry()
        telemetry.record_event("a")
        telemetry.record_metric("m", 1)
        telemetry.clear()

        assert telemetry.get_events() == []
        assert telemetry.get_metrics() == []
