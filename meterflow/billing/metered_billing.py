# -*- coding: utf-8 -*-
"""
Metered Billing Calculator
==========================

Turns aggregated usage into a priced, taxed, currency-converted billing
calculation.

Implementa:
- Graduated tier pricing with included units and minimum charges
- Regional tax (single tax line)
- Currency conversion with hard failure on unknown pairs
- Pro-rata billing for partial periods
- Invoice previews projected from usage so far
- Credits and discounts as post-processing over an existing calculation
- Read-through result cache keyed by (subscription, period)

Every BillingCalculation is immutable; credits and discounts return a new
calculation.
"""

import logging
import math
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from meterflow import config
from meterflow.cache import TTLCache
from meterflow.events import (
    BillingCalculated,
    EventBus,
    ExchangeRateUpdated,
    HighUsageDetected,
    ProRataCalculated,
    ThresholdBreached,
)
from meterflow.logging_config import get_tenant_logger

from .aggregation import UsageAggregatorService
from .meters import MeterType
from .periods import AggregationPeriod, days_between, period_bounds
from .pricing import (
    BillingCycle,
    ExchangeRateTable,
    MeterPricingModel,
    PlanTier,
    PricingCatalog,
    TaxRateConfig,
    TaxTable,
    aggregation_period_for_cycle,
    round_currency,
)

logger = logging.getLogger(__name__)


class ProRataReason(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    MID_CYCLE_START = "mid_cycle_start"
    CANCELLATION = "cancellation"


PRO_RATA_DESCRIPTIONS = {
    ProRataReason.UPGRADE: "Plan upgrade - prorated for remaining period",
    ProRataReason.DOWNGRADE: "Plan downgrade - credit for unused portion",
    ProRataReason.MID_CYCLE_START: "Mid-cycle subscription start",
    ProRataReason.CANCELLATION: "Subscription cancellation - credit for unused period",
}


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class TierCharge:
    tier_index: int
    min_units: int
    max_units: Optional[int]
    units_in_tier: float
    price_per_unit: float
    amount: float


@dataclass(frozen=True)
class MeterBillingBreakdown:
    meter_id: str
    meter_type: MeterType
    display_name: str
    unit: str
    total_units: float
    included_units: float
    billable_units: float
    tier_breakdown: Tuple[TierCharge, ...]
    subtotal: float
    minimum_applied: bool = False


@dataclass(frozen=True)
class TaxLine:
    region: str
    tax_type: str
    name: str
    rate: float
    taxable_amount: float
    amount: float


@dataclass(frozen=True)
class ProRataAdjustment:
    reason: ProRataReason
    description: str
    factor: float
    full_period_days: int
    actual_days: int
    amount: float


@dataclass(frozen=True)
class CreditApplication:
    credit_id: str
    amount: float
    description: str = "Account credit"


@dataclass(frozen=True)
class DiscountApplication:
    discount_id: str
    discount_type: DiscountType
    value: float
    amount: float
    code: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class BillingCalculation:
    """Resultado imutavel de um calculo de billing"""
    calculation_id: str
    subscription_id: str
    tenant_id: str
    plan_tier: PlanTier
    billing_cycle: BillingCycle
    period_start: datetime
    period_end: datetime
    region: Optional[str]
    base_plan_fee: float
    meter_breakdown: Tuple[MeterBillingBreakdown, ...]
    subtotal_metered: float
    subtotal_before_tax: float
    discounted_subtotal: float
    taxes: Tuple[TaxLine, ...]
    total_tax: float
    total: float
    base_currency: str
    currency: str
    exchange_rate: float
    final_total: float
    calculated_at: datetime
    pro_rata: Optional[ProRataAdjustment] = None
    credits: Tuple[CreditApplication, ...] = ()
    discounts: Tuple[DiscountApplication, ...] = ()
    estimated_charges: bool = False
    projected_usage: Optional[Dict[MeterType, float]] = None

    def breakdown_for(self, meter_type: Union[MeterType, str]) -> Optional[MeterBillingBreakdown]:
        meter_type = MeterType(meter_type)
        for item in self.meter_breakdown:
            if item.meter_type == meter_type:
                return item
        return None

    @property
    def total_credits(self) -> float:
        return round_currency(sum(c.amount for c in self.credits))

    @property
    def total_discounts(self) -> float:
        return round_currency(sum(d.amount for d in self.discounts))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calculation_id": self.calculation_id,
            "subscription_id": self.subscription_id,
            "tenant_id": self.tenant_id,
            "plan_tier": self.plan_tier.value,
            "billing_cycle": self.billing_cycle.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "region": self.region,
            "base_plan_fee": self.base_plan_fee,
            "meter_breakdown": [
                {**asdict(m), "meter_type": m.meter_type.value} for m in self.meter_breakdown
            ],
            "subtotal_metered": self.subtotal_metered,
            "subtotal_before_tax": self.subtotal_before_tax,
            "discounted_subtotal": self.discounted_subtotal,
            "taxes": [asdict(t) for t in self.taxes],
            "total_tax": self.total_tax,
            "total": self.total,
            "base_currency": self.base_currency,
            "currency": self.currency,
            "exchange_rate": self.exchange_rate,
            "pro_rata": {
                "reason": self.pro_rata.reason.value,
                "description": self.pro_rata.description,
                "factor": self.pro_rata.factor,
                "full_period_days": self.pro_rata.full_period_days,
                "actual_days": self.pro_rata.actual_days,
                "amount": self.pro_rata.amount,
            } if self.pro_rata else None,
            "credits": [asdict(c) for c in self.credits],
            "discounts": [
                {**asdict(d), "discount_type": d.discount_type.value} for d in self.discounts
            ],
            "final_total": self.final_total,
            "calculated_at": self.calculated_at.isoformat(),
            "estimated_charges": self.estimated_charges,
            "projected_usage": (
                {m.value: v for m, v in self.projected_usage.items()} if self.projected_usage else None
            ),
        }


# =============================================================================
# SERVICE
# =============================================================================

def cache_key(subscription_id: str, period_start: datetime, period_end: datetime) -> str:
    return f"{subscription_id}:{period_start.isoformat()}:{period_end.isoformat()}"


class MeteredBillingService:
    """
    Servico de calculo de billing medido.

    Uso:
        billing = MeteredBillingService(aggregator, bus)
        calc = await billing.calculate_billing(
            "sub-1", "tenant-1", PlanTier.STARTER, BillingCycle.MONTHLY,
            datetime(2024, 6, 1), datetime(2024, 6, 30), base_plan_fee=99,
            region="US", target_currency="USD",
        )
    """

    def __init__(
        self,
        aggregator: UsageAggregatorService,
        bus: EventBus,
        catalog: Optional[PricingCatalog] = None,
        tax_table: Optional[TaxTable] = None,
        exchange_rates: Optional[ExchangeRateTable] = None,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = datetime.now,
        cache_ttl: Optional[int] = None,
    ):
        self.aggregator = aggregator
        self.bus = bus
        self.catalog = catalog or PricingCatalog.default()
        self.tax_table = tax_table or TaxTable.default()
        self.exchange_rates = exchange_rates or ExchangeRateTable.default()
        self.cache_ttl = cache_ttl or config.BILLING_CACHE_TTL
        self.cache = cache or TTLCache(max_size=config.BILLING_CACHE_MAX_SIZE, default_ttl=self.cache_ttl)
        self._clock = clock

        self._metrics = {
            "calculations_performed": 0,
            "cache_hits": 0,
            "pro_rata_calculations": 0,
            "previews_generated": 0,
            "high_usage_notifications": 0,
        }

        bus.subscribe(ThresholdBreached, self.on_threshold_breached)

    @property
    def base_currency(self) -> str:
        return self.exchange_rates.base_currency

    # -------------------------------------------------------------------------
    # Main calculation
    # -------------------------------------------------------------------------

    async def calculate_billing(
        self,
        subscription_id: str,
        tenant_id: str,
        plan_tier: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
        period_start: datetime,
        period_end: datetime,
        base_plan_fee: float,
        region: Optional[str] = None,
        target_currency: Optional[str] = None,
    ) -> BillingCalculation:
        """
        Calcula o billing de uma assinatura para um periodo.

        Raises:
            UnknownPlanTierError: plano sem modelo de preco
            UnknownCurrencyPairError: moeda alvo sem taxa de cambio
        """
        key = cache_key(subscription_id, period_start, period_end)
        cached = await self.cache.get(key)
        if cached is not None:
            self._metrics["cache_hits"] += 1
            logger.debug(f"Billing cache hit: {key}")
            return cached

        calculation = self._calculate(
            subscription_id, tenant_id, plan_tier, billing_cycle,
            period_start, period_end, base_plan_fee, region, target_currency,
        )

        await self.cache.set(key, calculation, ttl=self.cache_ttl)
        self._publish_calculated(calculation)
        return calculation

    def _calculate(
        self,
        subscription_id: str,
        tenant_id: str,
        plan_tier: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
        period_start: datetime,
        period_end: datetime,
        base_plan_fee: float,
        region: Optional[str],
        target_currency: Optional[str],
    ) -> BillingCalculation:
        plan = self.catalog.get_plan(plan_tier)
        billing_cycle = BillingCycle(billing_cycle)
        usage = self.aggregator.get_usage_totals(
            tenant_id, aggregation_period_for_cycle(billing_cycle), period_start, period_end
        )
        return self._price(
            subscription_id, tenant_id, PlanTier(plan_tier), billing_cycle,
            period_start, period_end, base_plan_fee, region, target_currency, plan, usage,
        )

    def _price(
        self,
        subscription_id: str,
        tenant_id: str,
        plan_tier: PlanTier,
        billing_cycle: BillingCycle,
        period_start: datetime,
        period_end: datetime,
        base_plan_fee: float,
        region: Optional[str],
        target_currency: Optional[str],
        plan: Dict[MeterType, MeterPricingModel],
        usage: Dict[MeterType, float],
    ) -> BillingCalculation:
        currency = (target_currency or self.base_currency).upper()
        rate = self.exchange_rates.get_rate(self.base_currency, currency)

        breakdown = tuple(
            self.calculate_meter_billing(model, usage.get(meter_type, 0.0))
            for meter_type, model in plan.items()
        )
        subtotal_metered = round_currency(sum(m.subtotal for m in breakdown))
        subtotal_before_tax = round_currency(base_plan_fee + subtotal_metered)
        taxes, total_tax = self._compute_tax(region, subtotal_before_tax)
        total = round_currency(subtotal_before_tax + total_tax)

        self._metrics["calculations_performed"] += 1
        calculation = BillingCalculation(
            calculation_id=f"calc_{uuid.uuid4().hex}",
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            plan_tier=plan_tier,
            billing_cycle=billing_cycle,
            period_start=period_start,
            period_end=period_end,
            region=region,
            base_plan_fee=round_currency(base_plan_fee),
            meter_breakdown=breakdown,
            subtotal_metered=subtotal_metered,
            subtotal_before_tax=subtotal_before_tax,
            discounted_subtotal=subtotal_before_tax,
            taxes=taxes,
            total_tax=total_tax,
            total=total,
            base_currency=self.base_currency,
            currency=currency,
            exchange_rate=rate,
            final_total=round_currency(total * rate),
            calculated_at=self._clock(),
        )
        get_tenant_logger(__name__, tenant_id, subscription_id=subscription_id).info(
            f"Billing calculated: {subscription_id} tenant={tenant_id} "
            f"total={calculation.final_total} {currency}"
        )
        return calculation

    def calculate_meter_billing(self, model: MeterPricingModel, total_units: float) -> MeterBillingBreakdown:
        """Walk the graduated tiers for the units above the free allowance."""
        billable = max(0.0, total_units - model.included_units)
        charges: List[TierCharge] = []
        subtotal = 0.0
        minimum_applied = False

        if billable > 0:
            remaining = billable
            for index, tier in enumerate(model.tiers):
                if remaining <= 0:
                    break
                units = remaining if tier.capacity is None else min(remaining, tier.capacity)
                amount = round_currency(units * tier.price_per_unit + (tier.flat_fee or 0))
                charges.append(TierCharge(
                    tier_index=index,
                    min_units=tier.min_units,
                    max_units=tier.max_units,
                    units_in_tier=units,
                    price_per_unit=tier.price_per_unit,
                    amount=amount,
                ))
                subtotal += amount
                remaining -= units

            subtotal = round_currency(subtotal)
            if model.minimum_charge and subtotal < model.minimum_charge:
                subtotal = round_currency(model.minimum_charge)
                minimum_applied = True

        return MeterBillingBreakdown(
            meter_id=model.meter_id,
            meter_type=model.meter_type,
            display_name=model.display_name,
            unit=model.unit,
            total_units=total_units,
            included_units=model.included_units,
            billable_units=billable,
            tier_breakdown=tuple(charges),
            subtotal=subtotal,
            minimum_applied=minimum_applied,
        )

    def _compute_tax(self, region: Optional[str], taxable: float) -> Tuple[Tuple[TaxLine, ...], float]:
        tax = self.tax_table.get(region)
        if tax is None or tax.rate <= 0:
            return (), 0.0

        amount = round_currency(taxable * tax.rate / 100)
        line = TaxLine(
            region=tax.region,
            tax_type=tax.tax_type.value,
            name=tax.name,
            rate=tax.rate,
            taxable_amount=taxable,
            amount=amount,
        )
        return (line,), amount

    def _publish_calculated(self, calculation: BillingCalculation) -> None:
        self.bus.publish(BillingCalculated(
            calculation_id=calculation.calculation_id,
            subscription_id=calculation.subscription_id,
            tenant_id=calculation.tenant_id,
            final_total=calculation.final_total,
            currency=calculation.currency,
            timestamp=calculation.calculated_at,
        ))

    # -------------------------------------------------------------------------
    # Pro-rata and previews
    # -------------------------------------------------------------------------

    async def calculate_pro_rata_billing(
        self,
        subscription_id: str,
        tenant_id: str,
        plan_tier: Union[PlanTier, str],
        full_period_start: datetime,
        full_period_end: datetime,
        actual_start: datetime,
        actual_end: datetime,
        base_plan_fee: float,
        reason: Union[ProRataReason, str],
        region: Optional[str] = None,
        target_currency: Optional[str] = None,
        billing_cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    ) -> BillingCalculation:
        """
        Bill a partial window: the base fee is scaled by the day factor and
        the unused share of the metered subtotal is taken off the total.
        Results bypass the cache. BillingCalculated is published with the
        prorated final total, followed by ProRataCalculated.
        """
        reason = ProRataReason(reason)
        full_days = days_between(full_period_start, full_period_end)
        actual_days = days_between(actual_start, actual_end)
        if full_days <= 0:
            raise ValueError("Full billing period must span at least one day")
        factor = min(1.0, actual_days / full_days)

        calculation = self._calculate(
            subscription_id, tenant_id, plan_tier, billing_cycle,
            actual_start, actual_end, base_plan_fee * factor, region, target_currency,
        )
        adjustment = round_currency(calculation.subtotal_metered * (1 - factor))
        final_total = max(0.0, round_currency((calculation.total - adjustment) * calculation.exchange_rate))

        calculation = replace(
            calculation,
            pro_rata=ProRataAdjustment(
                reason=reason,
                description=PRO_RATA_DESCRIPTIONS[reason],
                factor=factor,
                full_period_days=full_days,
                actual_days=actual_days,
                amount=adjustment,
            ),
            final_total=final_total,
        )

        self._metrics["pro_rata_calculations"] += 1
        self._publish_calculated(calculation)
        self.bus.publish(ProRataCalculated(
            calculation_id=calculation.calculation_id,
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            reason=reason.value,
            factor=factor,
            adjustment_amount=adjustment,
            timestamp=calculation.calculated_at,
        ))
        get_tenant_logger(__name__, tenant_id, subscription_id=subscription_id).info(
            f"Pro-rata billing: {subscription_id} {reason.value} factor={factor:.4f}"
        )
        return calculation

    async def generate_invoice_preview(
        self,
        subscription_id: str,
        tenant_id: str,
        plan_tier: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
        period_start: datetime,
        period_end: datetime,
        base_plan_fee: float,
        region: Optional[str] = None,
        target_currency: Optional[str] = None,
    ) -> BillingCalculation:
        """Estimate the period's charges by projecting usage so far linearly."""
        plan = self.catalog.get_plan(plan_tier)
        now = self._clock()

        total_days = days_between(period_start, period_end)
        elapsed_days = days_between(period_start, now)
        projection_factor = total_days / max(elapsed_days, 1)

        measured = self.aggregator.get_usage_totals(
            tenant_id, AggregationPeriod.HOURLY, period_start, period_bounds(AggregationPeriod.HOURLY, now)[1]
        )
        # rounded first so float noise cannot push ceil up by one unit
        projected = {
            meter_type: float(math.ceil(round(value * projection_factor, 6)))
            for meter_type, value in measured.items()
        }

        calculation = self._price(
            subscription_id, tenant_id, PlanTier(plan_tier), BillingCycle(billing_cycle),
            period_start, period_end, base_plan_fee, region, target_currency, plan, projected,
        )
        self._metrics["previews_generated"] += 1
        return replace(calculation, estimated_charges=True, projected_usage=projected)

    # -------------------------------------------------------------------------
    # Credits and discounts
    # -------------------------------------------------------------------------

    def apply_credits(self, calculation: BillingCalculation, credits: List[CreditApplication]) -> BillingCalculation:
        """Apply credits in order, each capped at what is still owed."""
        final_total = calculation.final_total
        applied = list(calculation.credits)

        for credit in credits:
            amount = round_currency(min(max(credit.amount, 0.0), final_total))
            final_total = round_currency(final_total - amount)
            applied.append(replace(credit, amount=amount))

        return replace(calculation, credits=tuple(applied), final_total=max(0.0, final_total))

    def apply_discount(
        self,
        calculation: BillingCalculation,
        discount_type: Union[DiscountType, str],
        value: float,
        code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BillingCalculation:
        """
        Reduce the taxable base and recompute tax on what is left.

        Percentages apply to the undiscounted subtotal, so stacked discounts
        do not compound; every discount is capped at the remaining base.
        """
        discount_type = DiscountType(discount_type)
        remaining_base = calculation.discounted_subtotal

        if discount_type == DiscountType.PERCENTAGE:
            amount = round_currency(calculation.subtotal_before_tax * value / 100)
        else:
            amount = round_currency(value)
        amount = max(0.0, min(amount, remaining_base))

        discounted = round_currency(remaining_base - amount)
        taxes, total_tax = self._compute_tax(calculation.region, discounted)
        total = round_currency(discounted + total_tax)

        adjustment = calculation.pro_rata.amount if calculation.pro_rata else 0.0
        converted = max(0.0, round_currency((total - adjustment) * calculation.exchange_rate))
        final_total = max(0.0, round_currency(converted - calculation.total_credits))

        discount = DiscountApplication(
            discount_id=f"disc_{uuid.uuid4().hex[:12]}",
            discount_type=discount_type,
            value=value,
            amount=amount,
            code=code,
            description=description,
        )
        return replace(
            calculation,
            discounted_subtotal=discounted,
            taxes=taxes,
            total_tax=total_tax,
            total=total,
            discounts=calculation.discounts + (discount,),
            final_total=final_total,
        )

    # -------------------------------------------------------------------------
    # Catalog access
    # -------------------------------------------------------------------------

    def get_tax_rate(self, region: str) -> Optional[TaxRateConfig]:
        return self.tax_table.get(region)

    def get_supported_tax_regions(self) -> List[TaxRateConfig]:
        return self.tax_table.regions()

    def get_pricing_model(self, plan_tier: Union[PlanTier, str], meter_type: Union[MeterType, str]) -> MeterPricingModel:
        return self.catalog.get_model(plan_tier, meter_type)

    def get_exchange_rate(self, from_currency: str, to_currency: str) -> float:
        return self.exchange_rates.get_rate(from_currency, to_currency)

    def convert_currency(self, amount: float, from_currency: str, to_currency: str) -> float:
        return self.exchange_rates.convert(amount, from_currency, to_currency)

    def update_exchange_rate(self, from_currency: str, to_currency: str, rate: float) -> None:
        entry = self.exchange_rates.set_rate(from_currency, to_currency, rate)
        self.bus.publish(ExchangeRateUpdated(
            from_currency=entry.from_currency,
            to_currency=entry.to_currency,
            rate=entry.rate,
            timestamp=self._clock(),
        ))
        logger.info(f"Exchange rate updated: {entry.from_currency}->{entry.to_currency} = {rate}")

    async def clear_cache(self, subscription_id: Optional[str] = None) -> int:
        if subscription_id is None:
            return await self.cache.clear()
        return await self.cache.invalidate_prefix(f"{subscription_id}:")

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on_threshold_breached(self, event: ThresholdBreached) -> None:
        self._metrics["high_usage_notifications"] += 1
        self.bus.publish(HighUsageDetected(
            tenant_id=event.tenant_id,
            meter_type=event.meter_type,
            threshold_percentage=event.threshold_percentage,
            alert_type=event.alert_type,
            current_value=event.current_value,
            limit=event.limit,
            percentage_used=event.percentage_used,
            timestamp=event.timestamp,
        ))

    def get_metrics(self) -> Dict[str, Any]:
        metrics = dict(self._metrics)
        metrics["cache"] = self.cache.get_stats()
        return metrics
