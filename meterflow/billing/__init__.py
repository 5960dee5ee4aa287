# -*- coding: utf-8 -*-
"""
Billing Module
==============

Metering -> aggregation -> metered billing.

Componentes:
- meters: registro de configuracoes de medidores
- metering: ingestao idempotente de eventos de uso
- aggregation: buckets por periodo, rollups, tendencias
- pricing: catalogo de precos, impostos e cambio
- metered_billing: calculo de billing, pro-rata, creditos e descontos
"""

from .exceptions import (
    MeterflowError,
    ConfigurationError,
    UnknownPlanTierError,
    UnknownMeterTypeError,
    InvalidPricingTiersError,
    UnknownCurrencyPairError,
    RateLimitExceededError,
)
from .periods import AggregationPeriod, period_bounds, days_between
from .meters import MeterType, ResetPeriod, AlertSeverity, UsageThreshold, MeterConfig, MeterRegistry
from .rate_limiter import TenantRateLimiter
from .metering import (
    UsageEvent,
    UsageEventBatch,
    MeterReading,
    TenantMeterState,
    TenantMeterSnapshot,
    UsageSummary,
    UsageMeteringService,
)
from .aggregation import (
    AggregatedUsage,
    AggregationDimension,
    RollupConfig,
    UsageTrendPoint,
    UsageStatistics,
    TenantUsageSummary,
    UsageAggregatorService,
)
from .pricing import (
    PlanTier,
    BillingCycle,
    PricingTier,
    MeterPricingModel,
    PricingCatalog,
    TaxType,
    TaxRateConfig,
    TaxTable,
    ExchangeRateTable,
    load_catalog,
    round_currency,
)
from .metered_billing import (
    ProRataReason,
    DiscountType,
    BillingCalculation,
    MeterBillingBreakdown,
    CreditApplication,
    DiscountApplication,
    MeteredBillingService,
)

__all__ = [
    "MeterflowError", "ConfigurationError", "UnknownPlanTierError", "UnknownMeterTypeError",
    "InvalidPricingTiersError", "UnknownCurrencyPairError", "RateLimitExceededError",
    "AggregationPeriod", "period_bounds", "days_between",
    "MeterType", "ResetPeriod", "AlertSeverity", "UsageThreshold", "MeterConfig", "MeterRegistry",
    "TenantRateLimiter",
    "UsageEvent", "UsageEventBatch", "MeterReading", "TenantMeterState", "TenantMeterSnapshot",
    "UsageSummary", "UsageMeteringService",
    "AggregatedUsage", "AggregationDimension", "RollupConfig", "UsageTrendPoint", "UsageStatistics",
    "TenantUsageSummary", "UsageAggregatorService",
    "PlanTier", "BillingCycle", "PricingTier", "MeterPricingModel", "PricingCatalog",
    "TaxType", "TaxRateConfig", "TaxTable", "ExchangeRateTable", "load_catalog", "round_currency",
    "ProRataReason", "DiscountType", "BillingCalculation", "MeterBillingBreakdown",
    "CreditApplication", "DiscountApplication", "MeteredBillingService",
]
