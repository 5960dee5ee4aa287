# -*- coding: utf-8 -*-
"""
Tests for the typed event bus
"""

from datetime import datetime

from meterflow.events import EventBus, MeterReset, UsageRecorded


def _usage(tenant="t1", quantity=1.0):
    return UsageRecorded(
        tenant_id=tenant,
        meter_type="api_calls",
        quantity=quantity,
        current_value=quantity,
        timestamp=datetime(2024, 6, 1, 12),
    )


class TestEventBus:
    def test_dispatch_by_class(self):
        bus = EventBus()
        received = []
        bus.subscribe(UsageRecorded, received.append)

        bus.publish(_usage())
        bus.publish(MeterReset("t1", "api_calls", 5.0, "manual", datetime(2024, 6, 1)))

        assert len(received) == 1
        assert isinstance(received[0], UsageRecorded)

    def test_global_handler_sees_everything(self):
        bus = EventBus()
        received = []
        bus.subscribe_all(received.append)
        bus.publish(_usage())
        bus.publish(MeterReset("t1", "api_calls", 5.0, "manual", datetime(2024, 6, 1)))
        assert [e.topic for e in received] == ["usage.recorded", "usage.meter.reset"]

    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(UsageRecorded, broken)
        bus.subscribe(UsageRecorded, received.append)
        bus.publish(_usage())

        assert len(received) == 1
        assert bus.get_statistics()["handler_errors"] == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(UsageRecorded, received.append)
        bus.unsubscribe(UsageRecorded, received.append)
        bus.publish(_usage())
        assert received == []

    def test_history_filter(self):
        bus = EventBus(history_size=2)
        for i in range(3):
            bus.publish(_usage(quantity=i))
        history = bus.history(UsageRecorded)
        assert [e.quantity for e in history] == [1, 2]

    def test_to_dict_serializes_timestamp(self):
        data = _usage().to_dict()
        assert data["topic"] == "usage.recorded"
        assert data["timestamp"] == "2024-06-01T12:00:00"
