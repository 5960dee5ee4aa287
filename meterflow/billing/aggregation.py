# -*- coding: utf-8 -*-
"""
Usage Aggregator
================

Maintains period-bucketed usage per (tenant, meter) and rolls finer
granularities up into coarser ones.

Implementa:
- Hourly buckets fed by ``UsageRecorded`` events
- Rollups hourly -> daily -> weekly/monthly -> quarterly/yearly, driven by
  the windows touched since the last run
- Per (tenant, meter, period) index of buckets ordered by start
- Range queries, tenant summaries with previous-period comparison
- Zero-filled usage trends and descriptive statistics
- Rolling raw-value buffer per (tenant, meter) for trend analysis
- Cache-aside persistence of dirty buckets and buffers, retention cleanup
"""

import asyncio
import logging
import math
from bisect import bisect_left, bisect_right, insort
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

from meterflow import config
from meterflow.events import EventBus, UsageRecorded
from meterflow.storage import DurableStore

from .meters import MeterRegistry, MeterType
from .periods import AggregationPeriod, period_bounds, period_start, previous_period_start, shift_periods

logger = logging.getLogger(__name__)

BUCKET_KEY_PREFIX = "aggregation:bucket:"
TREND_KEY_PREFIX = "aggregation:trend:"


class AggregationDimension(str, Enum):
    TENANT = "tenant"
    MODULE = "module"
    METER_TYPE = "meter_type"
    USER = "user"
    FARM = "farm"
    RESOURCE = "resource"


def aggregation_key(tenant_id: str, meter_type: MeterType, period: AggregationPeriod, start: datetime) -> str:
    return f"{tenant_id}:{MeterType(meter_type).value}:{AggregationPeriod(period).value}:{start.isoformat()}"


def trend_key(tenant_id: str, meter_type: MeterType) -> str:
    return f"{tenant_id}:{MeterType(meter_type).value}:hourly"


# =============================================================================
# TYPES
# =============================================================================

@dataclass
class AggregatedUsage:
    """Bucket de uso para um periodo"""
    id: str
    tenant_id: str
    meter_type: MeterType
    period: AggregationPeriod
    period_start: datetime
    period_end: datetime
    unit: str
    total_usage: float = 0.0
    peak_usage: float = 0.0
    average_usage: float = 0.0
    min_usage: float = math.inf
    max_usage: float = 0.0
    event_count: int = 0
    dimension: Optional[AggregationDimension] = None
    dimension_value: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "meter_type": self.meter_type.value,
            "period": self.period.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "unit": self.unit,
            "total_usage": self.total_usage,
            "peak_usage": self.peak_usage,
            "average_usage": self.average_usage,
            "min_usage": self.min_usage if math.isfinite(self.min_usage) else None,
            "max_usage": self.max_usage,
            "event_count": self.event_count,
            "dimension": self.dimension.value if self.dimension else None,
            "dimension_value": self.dimension_value,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AggregatedUsage":
        def dt(value):
            return datetime.fromisoformat(value) if isinstance(value, str) else value

        min_usage = d.get("min_usage")
        return cls(
            id=d["id"],
            tenant_id=d["tenant_id"],
            meter_type=MeterType(d["meter_type"]),
            period=AggregationPeriod(d["period"]),
            period_start=dt(d["period_start"]),
            period_end=dt(d["period_end"]),
            unit=d.get("unit", "units"),
            total_usage=d.get("total_usage", 0.0),
            peak_usage=d.get("peak_usage", 0.0),
            average_usage=d.get("average_usage", 0.0),
            min_usage=math.inf if min_usage is None else min_usage,
            max_usage=d.get("max_usage", 0.0),
            event_count=d.get("event_count", 0),
            dimension=AggregationDimension(d["dimension"]) if d.get("dimension") else None,
            dimension_value=d.get("dimension_value"),
            metadata=d.get("metadata") or {},
            created_at=dt(d.get("created_at")),
            updated_at=dt(d.get("updated_at")),
        )


@dataclass(frozen=True)
class RollupConfig:
    source_period: AggregationPeriod
    target_period: AggregationPeriod
    retention_days: int
    aggregate_on_schedule: bool = True


DEFAULT_ROLLUPS: Tuple[RollupConfig, ...] = (
    RollupConfig(AggregationPeriod.HOURLY, AggregationPeriod.DAILY, retention_days=90),
    RollupConfig(AggregationPeriod.DAILY, AggregationPeriod.WEEKLY, retention_days=365),
    RollupConfig(AggregationPeriod.DAILY, AggregationPeriod.MONTHLY, retention_days=730),
    RollupConfig(AggregationPeriod.MONTHLY, AggregationPeriod.QUARTERLY, retention_days=1095),
    RollupConfig(AggregationPeriod.MONTHLY, AggregationPeriod.YEARLY, retention_days=1825),
)


@dataclass(frozen=True)
class UsageTrendPoint:
    timestamp: datetime
    value: float
    period: AggregationPeriod


@dataclass(frozen=True)
class UsageStatistics:
    mean: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0
    variance: float = 0.0
    min: float = 0.0
    max: float = 0.0
    sum: float = 0.0
    count: int = 0
    percentile_95: float = 0.0
    percentile_99: float = 0.0


@dataclass(frozen=True)
class PeriodComparison:
    total_change: float
    percentage_change: float


@dataclass
class TenantUsageSummary:
    tenant_id: str
    period: AggregationPeriod
    period_start: datetime
    period_end: datetime
    total_usage_by_meter: Dict[MeterType, float]
    peak_usage_time: Optional[datetime] = None
    compared_to_previous_period: Optional[PeriodComparison] = None


def compute_statistics(values: List[float]) -> UsageStatistics:
    """Descriptive statistics with population variance; empty input gives all zeros."""
    if not values:
        return UsageStatistics()

    ordered = sorted(values)
    count = len(ordered)
    total = sum(ordered)
    mean = total / count
    variance = sum((v - mean) ** 2 for v in ordered) / count

    mid = count // 2
    median = ordered[mid] if count % 2 else (ordered[mid - 1] + ordered[mid]) / 2

    def percentile(p: float) -> float:
        return ordered[min(int(math.floor(count * p)), count - 1)]

    return UsageStatistics(
        mean=mean,
        median=median,
        std_dev=math.sqrt(variance),
        variance=variance,
        min=ordered[0],
        max=ordered[-1],
        sum=total,
        count=count,
        percentile_95=percentile(0.95),
        percentile_99=percentile(0.99),
    )


class BucketSeries:
    """Buckets of one (tenant, meter, period), kept ordered by period start."""

    def __init__(self):
        self.starts: List[datetime] = []
        self.buckets: Dict[datetime, AggregatedUsage] = {}

    def __len__(self) -> int:
        return len(self.starts)

    def add(self, bucket: AggregatedUsage) -> None:
        if bucket.period_start not in self.buckets:
            insort(self.starts, bucket.period_start)
        self.buckets[bucket.period_start] = bucket

    def remove(self, start: datetime) -> None:
        if self.buckets.pop(start, None) is not None:
            del self.starts[bisect_left(self.starts, start)]

    def starting_between(self, start: datetime, end: datetime) -> List[AggregatedUsage]:
        lo = bisect_left(self.starts, start)
        hi = bisect_right(self.starts, end)
        return [self.buckets[s] for s in self.starts[lo:hi]]


PendingWindow = Tuple[str, MeterType, AggregationPeriod, datetime]

_PERIOD_RANK = {period: rank for rank, period in enumerate(AggregationPeriod)}


# =============================================================================
# SERVICE
# =============================================================================

class UsageAggregatorService:
    """
    Servico de agregacao de uso por periodo.

    Uso:
        aggregator = UsageAggregatorService(bus, store=store)
        await aggregator.start()

        aggregator.perform_rollup("tenant-1", MeterType.API_CALLS,
                                  AggregationPeriod.DAILY, AggregationPeriod.WEEKLY,
                                  datetime(2024, 6, 3))
    """

    def __init__(
        self,
        bus: EventBus,
        store: Optional[DurableStore] = None,
        registry: Optional[MeterRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
        rollups: Optional[List[RollupConfig]] = None,
        persist_interval: Optional[float] = None,
        rollup_interval: Optional[float] = None,
        trend_buffer_size: Optional[int] = None,
        hourly_load_days: Optional[int] = None,
    ):
        self.bus = bus
        self.store = store
        self.registry = registry or MeterRegistry.default()
        self._clock = clock
        self.rollups: List[RollupConfig] = list(rollups if rollups is not None else DEFAULT_ROLLUPS)

        self.persist_interval = persist_interval or config.AGGREGATION_PERSIST_INTERVAL
        self.rollup_interval = rollup_interval or config.AGGREGATION_ROLLUP_INTERVAL
        self.trend_buffer_size = trend_buffer_size or config.TREND_BUFFER_SIZE
        self.hourly_load_days = hourly_load_days or config.AGGREGATION_HOURLY_LOAD_DAYS

        self._buckets: Dict[str, AggregatedUsage] = {}
        self._index: Dict[str, Dict[Tuple[MeterType, AggregationPeriod], BucketSeries]] = {}
        self._pending_rollups: Set[PendingWindow] = set()
        self._trends: Dict[str, Deque[float]] = {}
        self._dirty_buckets: Set[str] = set()
        self._dirty_trends: Set[str] = set()
        self._deleted_buckets: Set[str] = set()
        self._tasks: List[asyncio.Task] = []

        self._metrics = {
            "total_aggregations": 0,
            "rollups_performed": 0,
            "last_aggregation_time": None,
            "persist_failures": 0,
        }

        bus.subscribe(UsageRecorded, self.on_usage_recorded)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await self.load()
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._periodic(self.persist_interval, self.persist, "persist")),
                asyncio.create_task(self._periodic(self.rollup_interval, self.perform_scheduled_rollups, "rollup")),
            ]
        logger.info(f"Usage aggregator started with {len(self._buckets)} aggregations")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        await self.persist()
        logger.info("Usage aggregator stopped")

    async def _periodic(self, interval: float, action: Callable, name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = action()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(f"Aggregator {name} cycle failed")

    async def load(self) -> int:
        """Reload buckets and trend buffers. Old hourly buckets stay in the store only."""
        if self.store is None:
            return 0

        try:
            buckets = await self.store.items(BUCKET_KEY_PREFIX)
            trends = await self.store.items(TREND_KEY_PREFIX)
        except Exception as e:
            logger.error(f"Failed to load aggregations, starting empty: {e}")
            return 0

        hourly_cutoff = self._clock() - timedelta(days=self.hourly_load_days)
        # first day whose hours are all loaded
        full_days_from = period_start(AggregationPeriod.DAILY, hourly_cutoff) + timedelta(days=1)
        loaded = 0
        for key, data in buckets.items():
            try:
                bucket = AggregatedUsage.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable aggregation {key}: {e}")
                continue
            if bucket.period == AggregationPeriod.HOURLY and bucket.period_start < hourly_cutoff:
                continue
            self._add_bucket(bucket)
            if bucket.period != AggregationPeriod.HOURLY or bucket.period_start >= full_days_from:
                self._mark_for_rollup(bucket)
            loaded += 1

        for key, data in trends.items():
            values = data.get("values", [])
            self._trends[key[len(TREND_KEY_PREFIX):]] = deque(values, maxlen=self.trend_buffer_size)

        logger.info(f"Loaded {loaded} aggregations and {len(trends)} trend buffers")
        return loaded

    async def persist(self) -> int:
        """Write dirty buckets/buffers and drop deleted ones; failures are retried next cycle."""
        if self.store is None:
            return 0
        if not (self._dirty_buckets or self._dirty_trends or self._deleted_buckets):
            return 0

        dirty_buckets = list(self._dirty_buckets)
        dirty_trends = list(self._dirty_trends)
        deleted = list(self._deleted_buckets)
        self._dirty_buckets.clear()
        self._dirty_trends.clear()
        self._deleted_buckets.clear()

        items: Dict[str, Dict[str, Any]] = {}
        for key in dirty_buckets:
            bucket = self._buckets.get(key)
            if bucket is not None:
                items[f"{BUCKET_KEY_PREFIX}{key}"] = bucket.to_dict()
        for key in dirty_trends:
            values = self._trends.get(key)
            if values is not None:
                items[f"{TREND_KEY_PREFIX}{key}"] = {"values": list(values)}

        try:
            await self.store.put_many(items)
            if deleted:
                await self.store.delete_many(f"{BUCKET_KEY_PREFIX}{key}" for key in deleted)
        except Exception as e:
            self._dirty_buckets.update(dirty_buckets)
            self._dirty_trends.update(dirty_trends)
            self._deleted_buckets.update(deleted)
            self._metrics["persist_failures"] += 1
            logger.error(f"Failed to persist {len(items)} aggregation entries, will retry: {e}")
            return 0

        logger.debug(f"Persisted {len(items)} aggregation entries")
        return len(items)

    # -------------------------------------------------------------------------
    # Index
    # -------------------------------------------------------------------------

    def _series(
        self, tenant_id: str, meter_type: MeterType, period: AggregationPeriod
    ) -> Optional[BucketSeries]:
        return self._index.get(tenant_id, {}).get((meter_type, period))

    def _add_bucket(self, bucket: AggregatedUsage) -> None:
        self._buckets[bucket.id] = bucket
        by_meter = self._index.setdefault(bucket.tenant_id, {})
        by_meter.setdefault((bucket.meter_type, bucket.period), BucketSeries()).add(bucket)

    def _remove_bucket(self, key: str) -> None:
        bucket = self._buckets.pop(key)
        by_meter = self._index.get(bucket.tenant_id, {})
        series = by_meter.get((bucket.meter_type, bucket.period))
        if series is not None:
            series.remove(bucket.period_start)
            if not series:
                del by_meter[(bucket.meter_type, bucket.period)]
        if not by_meter:
            self._index.pop(bucket.tenant_id, None)
        self._pending_rollups.discard(
            (bucket.tenant_id, bucket.meter_type, bucket.period, bucket.period_start)
        )

    def _mark_for_rollup(self, bucket: AggregatedUsage) -> None:
        self._pending_rollups.add(
            (bucket.tenant_id, bucket.meter_type, bucket.period, bucket.period_start)
        )

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def on_usage_recorded(self, event: UsageRecorded) -> None:
        self.update_aggregation(
            event.tenant_id,
            MeterType(event.meter_type),
            event.quantity,
            AggregationPeriod.HOURLY,
            event.timestamp,
        )

    def _unit_for(self, meter_type: MeterType) -> str:
        return self.registry.resolve(meter_type).unit

    def update_aggregation(
        self,
        tenant_id: str,
        meter_type: Union[MeterType, str],
        quantity: float,
        period: Union[AggregationPeriod, str],
        timestamp: datetime,
    ) -> AggregatedUsage:
        meter_type = MeterType(meter_type)
        period = AggregationPeriod(period)
        start, end = period_bounds(period, timestamp)
        key = aggregation_key(tenant_id, meter_type, period, start)
        now = self._clock()

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = AggregatedUsage(
                id=key,
                tenant_id=tenant_id,
                meter_type=meter_type,
                period=period,
                period_start=start,
                period_end=end,
                unit=self._unit_for(meter_type),
                created_at=now,
            )
            self._add_bucket(bucket)
            self._metrics["total_aggregations"] += 1

        bucket.total_usage += quantity
        bucket.event_count += 1
        bucket.average_usage = bucket.total_usage / bucket.event_count
        bucket.min_usage = min(bucket.min_usage, quantity)
        bucket.max_usage = max(bucket.max_usage, quantity)
        bucket.peak_usage = max(bucket.peak_usage, bucket.total_usage)
        bucket.updated_at = now
        self._dirty_buckets.add(key)
        self._mark_for_rollup(bucket)

        buffer_key = trend_key(tenant_id, meter_type)
        values = self._trends.get(buffer_key)
        if values is None:
            values = deque(maxlen=self.trend_buffer_size)
            self._trends[buffer_key] = values
        values.append(quantity)
        self._dirty_trends.add(buffer_key)

        return bucket

    def perform_rollup(
        self,
        tenant_id: str,
        meter_type: Union[MeterType, str],
        source_period: Union[AggregationPeriod, str],
        target_period: Union[AggregationPeriod, str],
        target_period_start: datetime,
    ) -> Optional[AggregatedUsage]:
        """
        Combine every source bucket inside the target period into one bucket.

        Returns None when there is no source data for the window; callers
        treat that as zero usage.
        """
        meter_type = MeterType(meter_type)
        source_period = AggregationPeriod(source_period)
        target_period = AggregationPeriod(target_period)
        start, end = period_bounds(target_period, target_period_start)

        series = self._series(tenant_id, meter_type, source_period)
        sources = [b for b in series.starting_between(start, end) if b.period_end <= end] if series else []
        if not sources:
            return None

        total = sum(b.total_usage for b in sources)
        events = sum(b.event_count for b in sources)
        key = aggregation_key(tenant_id, meter_type, target_period, start)
        now = self._clock()
        existing = self._buckets.get(key)

        rollup = AggregatedUsage(
            id=key,
            tenant_id=tenant_id,
            meter_type=meter_type,
            period=target_period,
            period_start=start,
            period_end=end,
            unit=self._unit_for(meter_type),
            total_usage=total,
            peak_usage=max(b.peak_usage for b in sources),
            average_usage=total / events if events > 0 else 0.0,
            min_usage=min(b.min_usage for b in sources),
            max_usage=max(b.max_usage for b in sources),
            event_count=events,
            metadata={"source_period": source_period.value, "source_buckets": len(sources)},
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if existing is None:
            self._metrics["total_aggregations"] += 1

        self._add_bucket(rollup)
        self._dirty_buckets.add(key)
        self._mark_for_rollup(rollup)
        self._metrics["rollups_performed"] += 1
        self._metrics["last_aggregation_time"] = now

        logger.debug(
            f"Performed rollup: {tenant_id} - {meter_type.value} "
            f"from {source_period.value} to {target_period.value}"
        )
        return rollup

    def perform_scheduled_rollups(self) -> List[AggregatedUsage]:
        """
        Roll up every target window whose source buckets changed since the
        last run.

        Rollups run finest source first, so a daily bucket rebuilt from
        hourly data feeds the weekly and monthly rollups of the same run.
        Windows come from the touched buckets, not from the clock, so
        backdated usage and buckets reloaded after downtime are covered.
        """
        changed = self._pending_rollups
        self._pending_rollups = set()
        results: List[AggregatedUsage] = []

        try:
            for rollup in sorted(self.rollups, key=lambda r: _PERIOD_RANK[r.source_period]):
                if not rollup.aggregate_on_schedule:
                    continue

                windows = {
                    (tenant_id, meter_type, period_start(rollup.target_period, start))
                    for tenant_id, meter_type, period, start in changed
                    if period == rollup.source_period
                }
                for tenant_id, meter_type, target_start in sorted(
                    windows, key=lambda w: (w[0], w[1].value, w[2])
                ):
                    result = self.perform_rollup(
                        tenant_id, meter_type, rollup.source_period, rollup.target_period, target_start
                    )
                    if result is not None:
                        results.append(result)
                        changed.add((tenant_id, meter_type, rollup.target_period, result.period_start))
        except Exception:
            self._pending_rollups.update(changed)
            raise

        # buckets written by this run were already fed to the coarser rollups
        self._pending_rollups.difference_update(changed)
        return results

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_aggregation(
        self,
        tenant_id: str,
        meter_type: Union[MeterType, str],
        period: Union[AggregationPeriod, str],
        timestamp: datetime,
    ) -> Optional[AggregatedUsage]:
        start, _ = period_bounds(period, timestamp)
        return self._buckets.get(aggregation_key(tenant_id, meter_type, period, start))

    def get_aggregations_in_range(
        self,
        tenant_id: str,
        period: Union[AggregationPeriod, str],
        start: datetime,
        end: datetime,
        meter_type: Optional[Union[MeterType, str]] = None,
    ) -> List[AggregatedUsage]:
        """Buckets whose bounds lie within [start, end], oldest first."""
        period = AggregationPeriod(period)
        meter_type = MeterType(meter_type) if meter_type is not None else None
        results: List[AggregatedUsage] = []
        for (m, p), series in self._index.get(tenant_id, {}).items():
            if p != period or (meter_type is not None and m != meter_type):
                continue
            results.extend(b for b in series.starting_between(start, end) if b.period_end <= end)
        return sorted(results, key=lambda b: b.period_start)

    def get_usage_totals(
        self,
        tenant_id: str,
        period: Union[AggregationPeriod, str],
        start: datetime,
        end: datetime,
    ) -> Dict[MeterType, float]:
        """
        Total usage per meter for buckets of ``period`` starting inside
        [start, end]. A billing window that ends on a date (midnight) still
        picks up the bucket for its last period.
        """
        period = AggregationPeriod(period)
        totals: Dict[MeterType, float] = {}
        for (m, p), series in self._index.get(tenant_id, {}).items():
            if p != period:
                continue
            buckets = series.starting_between(start, end)
            if buckets:
                totals[m] = totals.get(m, 0.0) + sum(b.total_usage for b in buckets)
        return totals

    def get_tenant_usage_summary(
        self,
        tenant_id: str,
        period: Union[AggregationPeriod, str],
        period_start: datetime,
    ) -> TenantUsageSummary:
        period = AggregationPeriod(period)
        start, end = period_bounds(period, period_start)
        current = self.get_aggregations_in_range(tenant_id, period, start, end)

        totals: Dict[MeterType, float] = {}
        peak_time = None
        peak_value = 0.0
        for bucket in current:
            totals[bucket.meter_type] = totals.get(bucket.meter_type, 0.0) + bucket.total_usage
            if bucket.peak_usage > peak_value:
                peak_value = bucket.peak_usage
                peak_time = bucket.period_start

        comparison = None
        previous = self.get_aggregations_in_range(
            tenant_id, period, previous_period_start(period, start), start
        )
        if previous:
            previous_total = sum(b.total_usage for b in previous)
            current_total = sum(b.total_usage for b in current)
            change = current_total - previous_total
            comparison = PeriodComparison(
                total_change=change,
                percentage_change=(change / previous_total * 100) if previous_total > 0 else 0.0,
            )

        return TenantUsageSummary(
            tenant_id=tenant_id,
            period=period,
            period_start=start,
            period_end=end,
            total_usage_by_meter=totals,
            peak_usage_time=peak_time,
            compared_to_previous_period=comparison,
        )

    def get_usage_trend(
        self,
        tenant_id: str,
        meter_type: Union[MeterType, str],
        period: Union[AggregationPeriod, str],
        num_periods: int,
        reference_time: Optional[datetime] = None,
    ) -> List[UsageTrendPoint]:
        """Last ``num_periods`` periods, oldest first, zero-filled."""
        period = AggregationPeriod(period)
        reference_time = reference_time or self._clock()
        points = []
        for i in range(num_periods - 1, -1, -1):
            ts = shift_periods(reference_time, period, -i)
            start, _ = period_bounds(period, ts)
            bucket = self.get_aggregation(tenant_id, meter_type, period, ts)
            points.append(UsageTrendPoint(
                timestamp=start,
                value=bucket.total_usage if bucket else 0.0,
                period=period,
            ))
        return points

    def calculate_statistics(
        self,
        tenant_id: str,
        meter_type: Union[MeterType, str],
        period: Union[AggregationPeriod, str],
        num_periods: int,
        reference_time: Optional[datetime] = None,
    ) -> UsageStatistics:
        """Statistics over the non-empty periods of the trend window."""
        trend = self.get_usage_trend(tenant_id, meter_type, period, num_periods, reference_time)
        return compute_statistics([p.value for p in trend if p.value > 0])

    def get_trend_buffer(self, tenant_id: str, meter_type: Union[MeterType, str]) -> List[float]:
        return list(self._trends.get(trend_key(tenant_id, meter_type), ()))

    def cleanup_old_aggregations(
        self,
        retention_days: Optional[int] = None,
        reference_time: Optional[datetime] = None,
    ) -> int:
        """Drop buckets whose period ended before the retention horizon."""
        retention_days = retention_days if retention_days is not None else config.AGGREGATION_RETENTION_DAYS
        cutoff = (reference_time or self._clock()) - timedelta(days=retention_days)

        expired = [key for key, b in self._buckets.items() if b.period_end < cutoff]
        for key in expired:
            self._remove_bucket(key)
            self._dirty_buckets.discard(key)
            self._deleted_buckets.add(key)

        if expired:
            logger.info(f"Cleaned up {len(expired)} aggregations older than {retention_days} days")
        return len(expired)

    def export_aggregations(self, tenant_id: str) -> List[AggregatedUsage]:
        return sorted(
            (b for series in self._index.get(tenant_id, {}).values() for b in series.buckets.values()),
            key=lambda b: (b.period_start, b.period.value, b.meter_type.value),
        )

    def get_active_meter_types(self, tenant_id: str) -> List[MeterType]:
        seen = {m for m, _ in self._index.get(tenant_id, {})}
        return sorted(seen, key=lambda m: m.value)

    def get_metrics(self) -> Dict[str, Any]:
        metrics = dict(self._metrics)
        metrics["aggregations"] = len(self._buckets)
        metrics["trend_buffers"] = len(self._trends)
        metrics["dirty_aggregations"] = len(self._dirty_buckets)
        metrics["pending_rollups"] = len(self._pending_rollups)
        return metrics
