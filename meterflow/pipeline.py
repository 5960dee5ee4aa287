# -*- coding: utf-8 -*-
"""
Billing Pipeline
================

Wires the three stages around one event bus and one durable store.

Usage:
    pipeline = create_pipeline()
    await pipeline.start()

    pipeline.metering.record_usage("tenant-1", MeterType.API_CALLS, 1)
    ...

    await pipeline.stop()
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from meterflow import config
from meterflow.events import EventBus
from meterflow.storage import DurableStore, build_store
from meterflow.billing.aggregation import UsageAggregatorService
from meterflow.billing.metered_billing import MeteredBillingService
from meterflow.billing.metering import UsageMeteringService
from meterflow.billing.meters import MeterRegistry
from meterflow.billing.pricing import ExchangeRateTable, PricingCatalog, TaxTable, load_catalog
from meterflow.billing.rate_limiter import TenantRateLimiter

logger = logging.getLogger(__name__)


class BillingPipeline:
    """Metering -> aggregation -> billing sharing one bus and store."""

    def __init__(
        self,
        store: Optional[DurableStore] = None,
        bus: Optional[EventBus] = None,
        registry: Optional[MeterRegistry] = None,
        catalog: Optional[PricingCatalog] = None,
        tax_table: Optional[TaxTable] = None,
        exchange_rates: Optional[ExchangeRateTable] = None,
        rate_limiter: Optional[TenantRateLimiter] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.bus = bus or EventBus()
        self.store = store
        self.registry = registry or MeterRegistry.default()

        self.metering = UsageMeteringService(
            self.bus, store=store, registry=self.registry, rate_limiter=rate_limiter, clock=clock
        )
        self.aggregator = UsageAggregatorService(self.bus, store=store, registry=self.registry, clock=clock)
        self.billing = MeteredBillingService(
            self.aggregator,
            self.bus,
            catalog=catalog,
            tax_table=tax_table,
            exchange_rates=exchange_rates,
            clock=clock,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        if self.store is not None:
            try:
                await self.store.init()
            except Exception as e:
                logger.error(f"Durable store unavailable at startup: {e}")
        await self.metering.start()
        await self.aggregator.start()
        self._started = True
        logger.info("Billing pipeline started")

    async def stop(self) -> None:
        if not self._started:
            return
        # metering flushes into the aggregator before it persists
        await self.metering.stop()
        await self.aggregator.stop()
        if self.store is not None:
            await self.store.close()
        self._started = False
        logger.info("Billing pipeline stopped")


def create_pipeline(store: Optional[DurableStore] = None, **kwargs) -> BillingPipeline:
    """Pipeline from environment settings (store backend, catalog path)."""
    config.validate_config()
    if store is None:
        store = build_store()
    kwargs.setdefault("catalog", load_catalog())
    return BillingPipeline(store=store, **kwargs)
