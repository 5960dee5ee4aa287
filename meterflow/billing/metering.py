# -*- coding: utf-8 -*-
"""
Usage Metering Engine
=====================

Ingests usage events per tenant and keeps live meter readings.

Implementa:
- Idempotent ingestion (per-tenant seen-set of idempotency keys)
- Bounded ingestion buffer with synchronous flush at the high-water mark
- Lazy per-tenant / per-meter readings with calendar reset windows
- Monotonic threshold breach detection, cleared only on reset
- Cache-aside persistence: live state in memory, dirty tenants mirrored
  to a DurableStore as serializable snapshots

Live state (TenantMeterState, MeterReading) and persisted state
(TenantMeterSnapshot) are separate types; conversion happens only at the
store boundary.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from meterflow import config
from meterflow.events import EventBus, MeterReset, ThresholdBreached, UsageRecorded
from meterflow.logging_config import get_tenant_logger
from meterflow.storage import DurableStore

from .exceptions import RateLimitExceededError
from .meters import MeterConfig, MeterRegistry, MeterType
from .rate_limiter import TenantRateLimiter

logger = logging.getLogger(__name__)

TENANT_KEY_PREFIX = "metering:tenant:"


def tenant_key(tenant_id: str) -> str:
    return f"{TENANT_KEY_PREFIX}{tenant_id}"


def _parse_dt(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class UsageEvent:
    """Uma unidade observada de consumo"""
    id: str
    tenant_id: str
    meter_type: MeterType
    quantity: float
    unit: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["meter_type"] = self.meter_type.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class UsageEventBatch:
    batch_id: str
    timestamp: datetime
    events: List[UsageEvent]


# =============================================================================
# LIVE STATE
# =============================================================================

@dataclass
class MeterReading:
    """Contador vivo por (tenant, medidor)"""
    tenant_id: str
    meter_type: MeterType
    unit: str
    period_start: datetime
    period_end: datetime
    current_value: float = 0.0
    limit: Optional[float] = None
    percentage_used: float = 0.0
    last_updated: Optional[datetime] = None
    event_count: int = 0

    def recompute_percentage(self) -> None:
        if self.limit and self.limit > 0:
            self.percentage_used = self.current_value / self.limit * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "meter_type": self.meter_type.value,
            "unit": self.unit,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "current_value": self.current_value,
            "limit": self.limit,
            "percentage_used": self.percentage_used,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "event_count": self.event_count,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MeterReading":
        return cls(
            tenant_id=d["tenant_id"],
            meter_type=MeterType(d["meter_type"]),
            unit=d["unit"],
            period_start=_parse_dt(d["period_start"]),
            period_end=_parse_dt(d["period_end"]),
            current_value=d.get("current_value", 0.0),
            limit=d.get("limit"),
            percentage_used=d.get("percentage_used", 0.0),
            last_updated=_parse_dt(d.get("last_updated")),
            event_count=d.get("event_count", 0),
        )


@dataclass
class TenantMeterState:
    """Raiz de agregado por tenant (somente em memoria)"""
    tenant_id: str
    readings: Dict[MeterType, MeterReading] = field(default_factory=dict)
    # insertion-ordered: oldest keys first
    idempotency_keys: "OrderedDict[str, None]" = field(default_factory=OrderedDict)
    breached: Dict[MeterType, Set[float]] = field(default_factory=dict)
    last_reset_at: Optional[datetime] = None

    def has_seen(self, key: str) -> bool:
        return key in self.idempotency_keys

    def remember(self, key: str) -> None:
        self.idempotency_keys[key] = None

    def prune_keys(self, keep: int) -> int:
        """Evict oldest keys until at most ``keep`` remain."""
        removed = 0
        while len(self.idempotency_keys) > keep:
            self.idempotency_keys.popitem(last=False)
            removed += 1
        return removed


@dataclass
class TenantMeterSnapshot:
    """Serializable copy of a tenant's meter state"""
    tenant_id: str
    readings: List[Dict[str, Any]]
    idempotency_keys: List[str]
    breached: Dict[str, List[float]]
    last_reset_at: Optional[str]
    saved_at: str

    @classmethod
    def from_state(cls, state: TenantMeterState, max_keys: int, saved_at: datetime) -> "TenantMeterSnapshot":
        keys = list(state.idempotency_keys)
        return cls(
            tenant_id=state.tenant_id,
            readings=[r.to_dict() for r in state.readings.values()],
            idempotency_keys=keys[-max_keys:] if max_keys > 0 else [],
            breached={m.value: sorted(p) for m, p in state.breached.items() if p},
            last_reset_at=state.last_reset_at.isoformat() if state.last_reset_at else None,
            saved_at=saved_at.isoformat(),
        )

    def to_state(self, max_keys: int) -> TenantMeterState:
        keys = self.idempotency_keys[-max_keys:] if max_keys > 0 else []
        readings = [MeterReading.from_dict(r) for r in self.readings]
        return TenantMeterState(
            tenant_id=self.tenant_id,
            readings={r.meter_type: r for r in readings},
            idempotency_keys=OrderedDict((k, None) for k in keys),
            breached={MeterType(m): set(p) for m, p in self.breached.items()},
            last_reset_at=_parse_dt(self.last_reset_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TenantMeterSnapshot":
        return cls(
            tenant_id=d["tenant_id"],
            readings=list(d.get("readings", [])),
            idempotency_keys=list(d.get("idempotency_keys", [])),
            breached=dict(d.get("breached", {})),
            last_reset_at=d.get("last_reset_at"),
            saved_at=d.get("saved_at", ""),
        )


@dataclass
class UsageSummary:
    tenant_id: str
    meters: List[MeterReading]
    total_overage_cost: float
    meters_at_limit: List[MeterType]
    meters_over_limit: List[MeterType]


# =============================================================================
# SERVICE
# =============================================================================

class UsageMeteringService:
    """
    Servico de metering em tempo real.

    Uso:
        bus = EventBus()
        service = UsageMeteringService(bus, store=SqlStore())
        await service.start()

        service.record_usage("tenant-1", MeterType.API_CALLS, 1, idempotency_key="req-42")
        reading = service.get_meter_reading("tenant-1", MeterType.API_CALLS)

        await service.stop()
    """

    def __init__(
        self,
        bus: EventBus,
        store: Optional[DurableStore] = None,
        registry: Optional[MeterRegistry] = None,
        rate_limiter: Optional[TenantRateLimiter] = None,
        clock: Callable[[], datetime] = datetime.now,
        buffer_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
        sync_interval: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        max_idempotency_keys: Optional[int] = None,
        snapshot_idempotency_keys: Optional[int] = None,
    ):
        self.bus = bus
        self.store = store
        self.registry = registry or MeterRegistry.default()
        self.rate_limiter = rate_limiter
        self._clock = clock

        self.buffer_size = buffer_size or config.METERING_BUFFER_SIZE
        self.flush_interval = flush_interval or config.METERING_FLUSH_INTERVAL
        self.sync_interval = sync_interval or config.METERING_SYNC_INTERVAL
        self.cleanup_interval = cleanup_interval or config.METERING_CLEANUP_INTERVAL
        self.max_idempotency_keys = max_idempotency_keys or config.IDEMPOTENCY_MAX_KEYS
        self.snapshot_idempotency_keys = snapshot_idempotency_keys or config.IDEMPOTENCY_SNAPSHOT_KEYS

        self._states: Dict[str, TenantMeterState] = {}
        self._buffer: List[UsageEvent] = []
        self._dirty: Set[str] = set()
        self._tasks: List[asyncio.Task] = []

        self._metrics = {
            "total_events_received": 0,
            "total_events_processed": 0,
            "duplicate_events_skipped": 0,
            "rate_limited_events": 0,
            "batches_processed": 0,
            "threshold_breaches": 0,
            "errors": 0,
            "sync_failures": 0,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted snapshots and start the flush/sync/cleanup loops."""
        await self.load()
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._periodic(self.flush_interval, self.flush, "flush")),
                asyncio.create_task(self._periodic(self.sync_interval, self.sync, "sync")),
                asyncio.create_task(
                    self._periodic(self.cleanup_interval, self.cleanup_idempotency_keys, "cleanup")
                ),
            ]
        logger.info(f"Usage metering started with {len(self._states)} tenant states")

    async def stop(self) -> None:
        """Stop background loops, then flush the buffer and persist once more."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        self.flush()
        await self.sync()
        logger.info("Usage metering stopped")

    async def _periodic(self, interval: float, action: Callable, name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = action()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(f"Metering {name} cycle failed")

    async def load(self) -> int:
        """Rehydrate tenant states from the store; a failed load starts empty."""
        if self.store is None:
            return 0

        try:
            items = await self.store.items(TENANT_KEY_PREFIX)
        except Exception as e:
            logger.error(f"Failed to load tenant meter snapshots, starting empty: {e}")
            return 0

        loaded = 0
        for key, data in items.items():
            try:
                snapshot = TenantMeterSnapshot.from_dict(data)
                self._states[snapshot.tenant_id] = snapshot.to_state(self.snapshot_idempotency_keys)
                loaded += 1
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable tenant snapshot {key}: {e}")

        logger.info(f"Loaded {loaded} tenant meter snapshots")
        return loaded

    async def sync(self) -> int:
        """Persist dirty tenants. Failed writes are re-marked dirty."""
        if self.store is None or not self._dirty:
            return 0

        dirty = list(self._dirty)
        self._dirty.clear()

        now = self._clock()
        items = {}
        for tenant_id in dirty:
            state = self._states.get(tenant_id)
            if state is not None:
                snapshot = TenantMeterSnapshot.from_state(state, self.snapshot_idempotency_keys, now)
                items[tenant_key(tenant_id)] = snapshot.to_dict()

        try:
            await self.store.put_many(items)
        except Exception as e:
            self._dirty.update(dirty)
            self._metrics["sync_failures"] += 1
            logger.error(f"Failed to sync {len(items)} tenant meter states, will retry: {e}")
            return 0

        logger.debug(f"Synced {len(items)} tenant meter states")
        return len(items)

    def cleanup_idempotency_keys(self) -> int:
        """Evict oldest idempotency keys from tenants above the ceiling."""
        removed = 0
        for state in self._states.values():
            if len(state.idempotency_keys) > self.max_idempotency_keys:
                count = state.prune_keys(self.max_idempotency_keys)
                removed += count
                self._dirty.add(state.tenant_id)
                logger.debug(f"Pruned {count} idempotency keys for tenant: {state.tenant_id}")
        return removed

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def record_usage(
        self,
        tenant_id: str,
        meter_type: Union[MeterType, str],
        quantity: float,
        *,
        unit: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> UsageEvent:
        """
        Registra um evento de uso.

        Repeats of an already-seen idempotency key return a synthetic
        event flagged ``duplicate`` and are not counted.

        Raises:
            RateLimitExceededError: injected limiter denied the tenant
            ValueError: negative quantity
        """
        meter_type = MeterType(meter_type)
        if quantity < 0:
            raise ValueError(f"Usage quantity cannot be negative: {quantity}")

        self._metrics["total_events_received"] += 1
        state = self._get_or_create_state(tenant_id)
        cfg = self.registry.resolve(meter_type)

        event = UsageEvent(
            id=f"evt_{uuid.uuid4().hex}",
            tenant_id=tenant_id,
            meter_type=meter_type,
            quantity=quantity,
            unit=unit or cfg.unit,
            timestamp=timestamp or self._clock(),
            metadata=dict(metadata or {}),
            source=source,
            user_id=user_id,
            resource_id=resource_id,
            idempotency_key=idempotency_key,
        )

        if idempotency_key and state.has_seen(idempotency_key):
            self._metrics["duplicate_events_skipped"] += 1
            logger.debug(f"Duplicate event skipped: {tenant_id} {idempotency_key}")
            return replace(event, id=f"dup_{uuid.uuid4().hex}", duplicate=True)

        if self.rate_limiter is not None and not self.rate_limiter.allow(tenant_id, 1):
            self._metrics["rate_limited_events"] += 1
            raise RateLimitExceededError(tenant_id, 1, self.rate_limiter.remaining(tenant_id))

        if idempotency_key:
            state.remember(idempotency_key)

        self._buffer.append(event)
        if len(self._buffer) >= self.buffer_size:
            self.flush()

        return event

    def record_usage_batch(self, events: List[Dict[str, Any]]) -> UsageEventBatch:
        """Fan-out over record_usage; each dict holds its keyword arguments."""
        batch = UsageEventBatch(
            batch_id=f"batch_{uuid.uuid4().hex}",
            timestamp=self._clock(),
            events=[self.record_usage(**e) for e in events],
        )
        self._metrics["batches_processed"] += 1
        return batch

    def flush(self) -> int:
        """Process buffered events in arrival order."""
        if not self._buffer:
            return 0

        events = self._buffer
        self._buffer = []
        for event in events:
            self._process_event(event)

        logger.debug(f"Flushed {len(events)} events")
        return len(events)

    @property
    def pending_events(self) -> int:
        return len(self._buffer)

    def _process_event(self, event: UsageEvent) -> None:
        try:
            state = self._get_or_create_state(event.tenant_id)
            reading = self._get_or_create_reading(state, event.meter_type, event.timestamp)

            if event.timestamp > reading.period_end:
                self._reset_reading(state, reading, "period_rollover", event.timestamp)

            reading.current_value += event.quantity
            reading.event_count += 1
            reading.last_updated = event.timestamp
            reading.recompute_percentage()

            self._check_thresholds(state, reading)
            self._dirty.add(event.tenant_id)
            self._metrics["total_events_processed"] += 1

            self.bus.publish(UsageRecorded(
                tenant_id=event.tenant_id,
                meter_type=event.meter_type.value,
                quantity=event.quantity,
                current_value=reading.current_value,
                timestamp=event.timestamp,
                event_id=event.id,
            ))
        except Exception as e:
            self._metrics["errors"] += 1
            get_tenant_logger(__name__, event.tenant_id).error(
                f"Error processing usage event {event.id}: {e}",
                exc_info=True,
                extra={"meter_type": event.meter_type.value},
            )

    def _get_or_create_state(self, tenant_id: str) -> TenantMeterState:
        state = self._states.get(tenant_id)
        if state is None:
            state = TenantMeterState(tenant_id=tenant_id, last_reset_at=self._clock())
            self._states[tenant_id] = state
        return state

    def _get_or_create_reading(
        self,
        state: TenantMeterState,
        meter_type: MeterType,
        at: Optional[datetime] = None
    ) -> MeterReading:
        reading = state.readings.get(meter_type)
        if reading is None:
            cfg = self.registry.resolve(meter_type)
            start, end = cfg.period_bounds(at or self._clock())
            reading = MeterReading(
                tenant_id=state.tenant_id,
                meter_type=meter_type,
                unit=cfg.unit,
                period_start=start,
                period_end=end,
                limit=cfg.max_value,
                last_updated=self._clock(),
            )
            state.readings[meter_type] = reading
        return reading

    def _check_thresholds(self, state: TenantMeterState, reading: MeterReading) -> None:
        cfg = self.registry.resolve(reading.meter_type)
        if not cfg.thresholds or not reading.limit:
            return

        breached = state.breached.setdefault(reading.meter_type, set())
        for threshold in cfg.thresholds:
            if reading.percentage_used < threshold.percentage or threshold.percentage in breached:
                continue

            breached.add(threshold.percentage)
            self._metrics["threshold_breaches"] += 1

            if threshold.notify_on_breach:
                get_tenant_logger(__name__, state.tenant_id).warning(
                    f"Usage threshold breached: {state.tenant_id} - {reading.meter_type.value} "
                    f"at {reading.percentage_used:.1f}%",
                    extra={"meter_type": reading.meter_type.value},
                )

            self.bus.publish(ThresholdBreached(
                tenant_id=state.tenant_id,
                meter_type=reading.meter_type.value,
                threshold_percentage=threshold.percentage,
                alert_type=threshold.alert_type.value,
                notify_on_breach=threshold.notify_on_breach,
                current_value=reading.current_value,
                limit=reading.limit,
                percentage_used=reading.percentage_used,
                timestamp=self._clock(),
            ))

    # -------------------------------------------------------------------------
    # Limits and resets
    # -------------------------------------------------------------------------

    def set_meter_limit(self, tenant_id: str, meter_type: Union[MeterType, str], limit: float) -> MeterReading:
        meter_type = MeterType(meter_type)
        state = self._get_or_create_state(tenant_id)
        reading = self._get_or_create_reading(state, meter_type)
        reading.limit = limit
        reading.percentage_used = 0.0
        reading.recompute_percentage()
        self._check_thresholds(state, reading)
        self._dirty.add(tenant_id)
        logger.debug(f"Set meter limit: {tenant_id} - {meter_type.value} = {limit}")
        return reading

    def reset_meter(
        self,
        tenant_id: str,
        meter_type: Union[MeterType, str],
        reason: str = "manual"
    ) -> Optional[MeterReading]:
        """Zero a meter and open a fresh window; None if the meter never existed."""
        state = self._states.get(tenant_id)
        if state is None:
            return None
        reading = state.readings.get(MeterType(meter_type))
        if reading is None:
            return None

        self._reset_reading(state, reading, reason, self._clock())
        return reading

    def _reset_reading(self, state: TenantMeterState, reading: MeterReading, reason: str, at: datetime) -> None:
        previous_value = reading.current_value
        cfg = self.registry.resolve(reading.meter_type)

        reading.current_value = 0.0
        reading.percentage_used = 0.0
        reading.event_count = 0
        reading.last_updated = at
        reading.period_start, reading.period_end = cfg.period_bounds(at)

        state.breached.pop(reading.meter_type, None)
        self._dirty.add(state.tenant_id)

        self.bus.publish(MeterReset(
            tenant_id=state.tenant_id,
            meter_type=reading.meter_type.value,
            previous_value=previous_value,
            reason=reason,
            timestamp=at,
        ))
        get_tenant_logger(__name__, state.tenant_id).info(
            f"Meter reset: {state.tenant_id} - {reading.meter_type.value} (was {previous_value}, {reason})",
            extra={"meter_type": reading.meter_type.value},
        )

    def reset_all_meters(self, tenant_id: str, reason: str = "manual") -> int:
        state = self._states.get(tenant_id)
        if state is None:
            return 0

        now = self._clock()
        for reading in state.readings.values():
            self._reset_reading(state, reading, reason, now)

        state.idempotency_keys.clear()
        state.last_reset_at = now
        self._dirty.add(tenant_id)

        logger.info(f"All meters reset for tenant: {tenant_id}")
        return len(state.readings)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_meter_reading(self, tenant_id: str, meter_type: Union[MeterType, str]) -> Optional[MeterReading]:
        state = self._states.get(tenant_id)
        if state is None:
            return None
        return state.readings.get(MeterType(meter_type))

    def get_all_meter_readings(self, tenant_id: str) -> List[MeterReading]:
        state = self._states.get(tenant_id)
        return list(state.readings.values()) if state else []

    def get_tenant_state(self, tenant_id: str) -> Optional[TenantMeterState]:
        return self._states.get(tenant_id)

    def get_breached_thresholds(self, tenant_id: str, meter_type: Union[MeterType, str]) -> Set[float]:
        state = self._states.get(tenant_id)
        if state is None:
            return set()
        return set(state.breached.get(MeterType(meter_type), set()))

    def is_within_limits(self, tenant_id: str, meter_type: Union[MeterType, str]) -> bool:
        reading = self.get_meter_reading(tenant_id, meter_type)
        if reading is None or not reading.limit:
            return True
        return reading.current_value <= reading.limit

    def get_remaining_usage(self, tenant_id: str, meter_type: Union[MeterType, str]) -> Optional[float]:
        reading = self.get_meter_reading(tenant_id, meter_type)
        if reading is None or not reading.limit:
            return None
        return max(0.0, reading.limit - reading.current_value)

    def get_overage(self, tenant_id: str, meter_type: Union[MeterType, str]) -> float:
        reading = self.get_meter_reading(tenant_id, meter_type)
        if reading is None or not reading.limit:
            return 0.0
        return max(0.0, reading.current_value - reading.limit)

    def get_overage_cost(self, tenant_id: str, meter_type: Union[MeterType, str]) -> float:
        overage = self.get_overage(tenant_id, meter_type)
        if overage <= 0:
            return 0.0
        cfg = self.registry.resolve(meter_type)
        if not cfg.allow_overage or not cfg.overage_rate:
            return 0.0
        return overage * cfg.overage_rate

    def get_usage_summary(self, tenant_id: str) -> UsageSummary:
        meters = self.get_all_meter_readings(tenant_id)
        total_overage_cost = 0.0
        at_limit: List[MeterType] = []
        over_limit: List[MeterType] = []

        for reading in meters:
            if not reading.limit:
                continue
            if reading.current_value > reading.limit:
                over_limit.append(reading.meter_type)
                total_overage_cost += self.get_overage_cost(tenant_id, reading.meter_type)
            elif reading.current_value == reading.limit:
                at_limit.append(reading.meter_type)

        return UsageSummary(
            tenant_id=tenant_id,
            meters=meters,
            total_overage_cost=total_overage_cost,
            meters_at_limit=at_limit,
            meters_over_limit=over_limit,
        )

    def export_usage_data(self, tenant_id: str) -> Dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "exported_at": self._clock().isoformat(),
            "meters": [r.to_dict() for r in self.get_all_meter_readings(tenant_id)],
            "configs": [asdict(cfg) for cfg in self.registry],
        }

    def register_meter_config(self, meter_config: MeterConfig) -> None:
        self.registry.register(meter_config)

    def get_meter_config(self, meter_type: Union[MeterType, str]) -> Optional[MeterConfig]:
        return self.registry.get(meter_type)

    def get_metrics(self) -> Dict[str, Any]:
        metrics = dict(self._metrics)
        metrics["buffered_events"] = len(self._buffer)
        metrics["tenants"] = len(self._states)
        metrics["dirty_tenants"] = len(self._dirty)
        return metrics
