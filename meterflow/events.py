# -*- coding: utf-8 -*-
"""
Billing Event Bus
=================

In-process typed pub/sub used to decouple the metering engine, the
aggregator and the billing calculator.

Each event kind is its own dataclass; handlers subscribe to a class, not
to a string topic. The ``topic`` attribute is kept only for logs and for
forwarding to an external broker.

Usage:
    bus = EventBus()
    bus.subscribe(UsageRecorded, aggregator.on_usage_recorded)
    bus.publish(UsageRecorded(tenant_id="t1", meter_type="api_calls", ...))
"""

import logging
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Type

logger = logging.getLogger(__name__)


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class BillingEvent:
    """Base class for all pipeline events."""
    topic = "event"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        data["topic"] = self.topic
        return data


@dataclass(frozen=True)
class UsageRecorded(BillingEvent):
    """A usage event was applied to a live meter reading."""
    topic = "usage.recorded"

    tenant_id: str
    meter_type: str
    quantity: float
    current_value: float
    timestamp: datetime
    event_id: Optional[str] = None


@dataclass(frozen=True)
class ThresholdBreached(BillingEvent):
    """A meter crossed one of its configured usage thresholds."""
    topic = "usage.threshold.breached"

    tenant_id: str
    meter_type: str
    threshold_percentage: float
    alert_type: str
    notify_on_breach: bool
    current_value: float
    limit: Optional[float]
    percentage_used: float
    timestamp: datetime


@dataclass(frozen=True)
class MeterReset(BillingEvent):
    """A meter reading was zeroed."""
    topic = "usage.meter.reset"

    tenant_id: str
    meter_type: str
    previous_value: float
    reason: str
    timestamp: datetime


@dataclass(frozen=True)
class BillingCalculated(BillingEvent):
    topic = "billing.calculated"

    calculation_id: str
    subscription_id: str
    tenant_id: str
    final_total: float
    currency: str
    timestamp: datetime


@dataclass(frozen=True)
class ProRataCalculated(BillingEvent):
    topic = "billing.prorata.calculated"

    calculation_id: str
    subscription_id: str
    tenant_id: str
    reason: str
    factor: float
    adjustment_amount: float
    timestamp: datetime


@dataclass(frozen=True)
class ExchangeRateUpdated(BillingEvent):
    topic = "billing.exchange_rate.updated"

    from_currency: str
    to_currency: str
    rate: float
    timestamp: datetime


@dataclass(frozen=True)
class HighUsageDetected(BillingEvent):
    """Billing-side view of a threshold breach."""
    topic = "billing.usage.high"

    tenant_id: str
    meter_type: str
    threshold_percentage: float
    alert_type: str
    current_value: float
    limit: Optional[float]
    percentage_used: float
    timestamp: datetime


# =============================================================================
# BUS
# =============================================================================

Handler = Callable[[BillingEvent], None]


class EventBus:
    """
    Synchronous typed event bus.

    Handlers run in subscription order. A failing handler is logged and
    does not prevent the remaining handlers from running, nor does it
    propagate to the publisher.
    """

    def __init__(self, history_size: int = 1000):
        self._handlers: Dict[Type[BillingEvent], List[Handler]] = {}
        self._global_handlers: List[Handler] = []
        self._history: Deque[BillingEvent] = deque(maxlen=history_size)
        self._published = 0
        self._handler_errors = 0

    def subscribe(self, event_class: Type[BillingEvent], handler: Handler) -> None:
        """Subscribe to events of a specific class."""
        if event_class not in self._handlers:
            self._handlers[event_class] = []
        self._handlers[event_class].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to all events."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event_class: Type[BillingEvent], handler: Handler) -> None:
        if event_class in self._handlers:
            if handler in self._handlers[event_class]:
                self._handlers[event_class].remove(handler)

    def publish(self, event: BillingEvent) -> None:
        """Dispatch event to its subscribers."""
        self._published += 1
        self._history.append(event)

        handlers = list(self._handlers.get(type(event), []))
        handlers.extend(self._global_handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self._handler_errors += 1
                logger.exception(f"Event handler failed for {event.topic}")

    def history(self, event_class: Optional[Type[BillingEvent]] = None) -> List[BillingEvent]:
        """Recently published events, optionally filtered by class."""
        if event_class is None:
            return list(self._history)
        return [e for e in self._history if isinstance(e, event_class)]

    def clear_history(self) -> None:
        self._history.clear()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "published": self._published,
            "handler_errors": self._handler_errors,
            "subscriptions": {
                cls.__name__: len(handlers) for cls, handlers in self._handlers.items()
            },
            "global_subscriptions": len(self._global_handlers),
        }
