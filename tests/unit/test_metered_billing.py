# -*- coding: utf-8 -*-
"""
Tests for the metered billing calculator
"""

import logging

import pytest
from datetime import datetime
from unittest.mock import patch

from meterflow.events import (
    BillingCalculated,
    ExchangeRateUpdated,
    HighUsageDetected,
    ProRataCalculated,
    ThresholdBreached,
)
from meterflow.billing.exceptions import UnknownCurrencyPairError, UnknownPlanTierError
from meterflow.billing.metered_billing import (
    CreditApplication,
    DiscountType,
    ProRataReason,
)
from meterflow.billing.meters import MeterType
from meterflow.billing.pricing import (
    BillingCycle,
    MeterPricingModel,
    PlanTier,
    PricingCatalog,
    PricingTier,
)

JUNE_START = datetime(2024, 6, 1)
JUNE_END = datetime(2024, 6, 30)


async def _calculate(billing, base_plan_fee=99, region="US", currency="USD", subscription_id="sub-1"):
    return await billing.calculate_billing(
        subscription_id, "t1", PlanTier.STARTER, BillingCycle.MONTHLY,
        JUNE_START, JUNE_END, base_plan_fee, region=region, target_currency=currency,
    )


class TestTieredPricing:
    @pytest.fixture
    def api_model(self):
        return PricingCatalog.default().get_model(PlanTier.STARTER, MeterType.API_CALLS)

    def test_boundary_stays_in_first_tier(self, billing, api_model):
        result = billing.calculate_meter_billing(api_model, 50000)
        assert result.billable_units == 40000
        assert len(result.tier_breakdown) == 1
        assert result.subtotal == 40.00

    def test_usage_spans_tiers(self, billing, api_model):
        result = billing.calculate_meter_billing(api_model, 100000)
        assert result.billable_units == 90000
        assert [t.units_in_tier for t in result.tier_breakdown] == [50001, 39999]
        assert sum(t.units_in_tier for t in result.tier_breakdown) == result.billable_units
        assert result.subtotal == 82.00

    def test_within_allowance(self, billing, api_model):
        result = billing.calculate_meter_billing(api_model, 9000)
        assert result.billable_units == 0
        assert result.tier_breakdown == ()
        assert result.subtotal == 0

    def test_minimum_charge(self, billing):
        model = MeterPricingModel(
            meter_id="reports-min",
            meter_type=MeterType.REPORTS_GENERATED,
            display_name="Reports",
            unit="reports",
            included_units=0,
            tiers=(PricingTier(0, None, 0.01),),
            minimum_charge=5,
        )
        charged = billing.calculate_meter_billing(model, 10)
        assert charged.subtotal == 5
        assert charged.minimum_applied is True

        idle = billing.calculate_meter_billing(model, 0)
        assert idle.subtotal == 0
        assert idle.minimum_applied is False


class TestCalculateBilling:
    @pytest.mark.asyncio
    async def test_full_calculation(self, billing, aggregator, bus):
        aggregator.update_aggregation("t1", MeterType.API_CALLS, 50000, "monthly", datetime(2024, 6, 10))

        calc = await _calculate(billing)
        assert calc.base_plan_fee == 99
        assert calc.subtotal_metered == 40.00
        assert calc.subtotal_before_tax == 139.00
        assert calc.total_tax == 0
        assert calc.final_total == 139.00
        assert calc.currency == "USD"
        assert calc.exchange_rate == 1.0

        # every priced meter is present, used or not
        assert len(calc.meter_breakdown) == 7
        assert calc.breakdown_for(MeterType.PONDS_ACTIVE).subtotal == 0

        events = bus.history(BillingCalculated)
        assert events[-1].calculation_id == calc.calculation_id

    @pytest.mark.asyncio
    async def test_tax_is_applied(self, billing):
        calc = await _calculate(billing, base_plan_fee=100, region="DE")
        assert calc.total_tax == 19.00
        assert calc.taxes[0].name == "MwSt"
        assert calc.total == 119.00

    @pytest.mark.asyncio
    async def test_other_tenants_usage_ignored(self, billing, aggregator):
        aggregator.update_aggregation("t2", MeterType.API_CALLS, 10 ** 6, "monthly", JUNE_START)
        calc = await _calculate(billing)
        assert calc.subtotal_metered == 0

    @pytest.mark.asyncio
    async def test_unknown_plan_tier(self, billing):
        with pytest.raises(UnknownPlanTierError):
            await billing.calculate_billing(
                "sub-1", "t1", PlanTier.CUSTOM, BillingCycle.MONTHLY, JUNE_START, JUNE_END, 10
            )

    @pytest.mark.asyncio
    async def test_unknown_currency(self, billing):
        with pytest.raises(UnknownCurrencyPairError):
            await _calculate(billing, currency="XYZ")

    @pytest.mark.asyncio
    async def test_currency_conversion(self, billing):
        usd = await _calculate(billing, base_plan_fee=100, subscription_id="sub-usd")
        eur = await _calculate(billing, base_plan_fee=100, currency="EUR", subscription_id="sub-eur")
        tl = await _calculate(billing, base_plan_fee=100, currency="TRY", subscription_id="sub-try")

        assert usd.final_total == 100
        assert eur.final_total == 92.0
        assert eur.final_total < usd.final_total
        assert tl.final_total > usd.final_total
        assert eur.total == usd.total


class TestCache:
    @pytest.mark.asyncio
    async def test_usage_query_runs_once(self, billing, aggregator):
        with patch.object(aggregator, "get_usage_totals", wraps=aggregator.get_usage_totals) as query:
            first = await _calculate(billing)
            second = await _calculate(billing)

        assert query.call_count == 1
        assert second is first
        assert billing.get_metrics()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_clear_cache_by_subscription(self, billing, aggregator):
        await _calculate(billing, subscription_id="sub-1")
        await _calculate(billing, subscription_id="sub-10")

        assert await billing.clear_cache("sub-1") == 1

        with patch.object(aggregator, "get_usage_totals", wraps=aggregator.get_usage_totals) as query:
            await _calculate(billing, subscription_id="sub-1")
            await _calculate(billing, subscription_id="sub-10")
        assert query.call_count == 1

    @pytest.mark.asyncio
    async def test_clear_whole_cache(self, billing):
        await _calculate(billing, subscription_id="sub-1")
        await _calculate(billing, subscription_id="sub-2")
        assert await billing.clear_cache() == 2


class TestProRata:
    @pytest.mark.asyncio
    async def test_factor(self, billing, bus):
        calc = await billing.calculate_pro_rata_billing(
            "sub-1", "t1", PlanTier.STARTER,
            JUNE_START, JUNE_END, datetime(2024, 6, 20), JUNE_END,
            base_plan_fee=100, reason=ProRataReason.CANCELLATION,
        )
        assert calc.pro_rata.factor == pytest.approx(10 / 29)
        assert calc.pro_rata.factor == pytest.approx(0.3448, abs=1e-4)
        assert calc.pro_rata.full_period_days == 29
        assert calc.pro_rata.actual_days == 10
        assert calc.base_plan_fee == 34.48
        assert calc.final_total == 34.48

        event = bus.history(ProRataCalculated)[-1]
        assert event.reason == "cancellation"

    @pytest.mark.asyncio
    async def test_metered_adjustment(self, billing, aggregator):
        aggregator.update_aggregation("t1", MeterType.API_CALLS, 50000, "monthly", JUNE_START)

        calc = await billing.calculate_pro_rata_billing(
            "sub-1", "t1", PlanTier.STARTER,
            JUNE_START, JUNE_END, JUNE_START, datetime(2024, 6, 11),
            base_plan_fee=100, reason="upgrade",
        )
        assert calc.subtotal_metered == 40.00
        assert calc.pro_rata.amount == 26.21
        assert calc.pro_rata.description.startswith("Plan upgrade")
        assert calc.final_total == pytest.approx(48.27)

    @pytest.mark.asyncio
    async def test_publishes_billing_calculated_with_prorated_total(self, billing, aggregator, bus):
        aggregator.update_aggregation("t1", MeterType.API_CALLS, 50000, "monthly", JUNE_START)

        calc = await billing.calculate_pro_rata_billing(
            "sub-1", "t1", PlanTier.STARTER,
            JUNE_START, JUNE_END, JUNE_START, datetime(2024, 6, 11),
            base_plan_fee=100, reason="upgrade",
        )

        calculated = bus.history(BillingCalculated)
        assert len(calculated) == 1
        assert calculated[0].calculation_id == calc.calculation_id
        assert calculated[0].final_total == calc.final_total
        assert bus.history(ProRataCalculated)[-1].calculation_id == calc.calculation_id

    @pytest.mark.asyncio
    async def test_prorated_result_is_not_cached(self, billing, aggregator):
        aggregator.update_aggregation("t1", MeterType.API_CALLS, 50000, "monthly", JUNE_START)
        await billing.calculate_pro_rata_billing(
            "sub-1", "t1", PlanTier.STARTER,
            JUNE_START, JUNE_END, JUNE_START, JUNE_END,
            base_plan_fee=100, reason="upgrade",
        )

        full = await _calculate(billing, base_plan_fee=100, region=None)
        assert full.pro_rata is None
        assert full.final_total == 140.00
        assert billing.get_metrics()["cache_hits"] == 0

    @pytest.mark.asyncio
    async def test_logs_carry_tenant_context(self, billing, caplog):
        with caplog.at_level(logging.INFO, logger="meterflow.billing.metered_billing"):
            await billing.calculate_pro_rata_billing(
                "sub-1", "t1", PlanTier.STARTER,
                JUNE_START, JUNE_END, datetime(2024, 6, 20), JUNE_END,
                base_plan_fee=100, reason="cancellation",
            )

        records = [r for r in caplog.records if r.name == "meterflow.billing.metered_billing"]
        assert records
        assert all(r.tenant_id == "t1" and r.subscription_id == "sub-1" for r in records)

    @pytest.mark.asyncio
    async def test_factor_is_capped(self, billing):
        calc = await billing.calculate_pro_rata_billing(
            "sub-1", "t1", PlanTier.STARTER,
            JUNE_START, JUNE_END, datetime(2024, 5, 1), JUNE_END,
            base_plan_fee=100, reason="mid_cycle_start",
        )
        assert calc.pro_rata.factor == 1.0

    @pytest.mark.asyncio
    async def test_empty_full_period(self, billing):
        with pytest.raises(ValueError):
            await billing.calculate_pro_rata_billing(
                "sub-1", "t1", PlanTier.STARTER,
                JUNE_END, JUNE_START, JUNE_START, JUNE_END,
                base_plan_fee=100, reason="downgrade",
            )


class TestInvoicePreview:
    @pytest.mark.asyncio
    async def test_projects_usage_linearly(self, billing, aggregator):
        # clock is 2024-06-15 10:30, 15 of 29 days elapsed
        aggregator.update_aggregation("t1", MeterType.API_CALLS, 30000, "hourly", datetime(2024, 6, 10, 12))

        preview = await billing.generate_invoice_preview(
            "sub-1", "t1", PlanTier.STARTER, BillingCycle.MONTHLY,
            JUNE_START, JUNE_END, base_plan_fee=99, region="US",
        )
        assert preview.estimated_charges is True
        assert preview.projected_usage == {MeterType.API_CALLS: 58000.0}
        assert preview.breakdown_for(MeterType.API_CALLS).billable_units == 48000
        assert preview.subtotal_metered == 48.00
        assert preview.final_total == 147.00


class TestCreditsAndDiscounts:
    @pytest.mark.asyncio
    async def test_tax_recomputed_after_discount(self, billing):
        calc = await _calculate(billing, base_plan_fee=100, region="TR")
        assert calc.total_tax == 18.00

        discounted = billing.apply_discount(calc, DiscountType.PERCENTAGE, 50)
        assert discounted.total_tax == pytest.approx(9.00)
        assert discounted.final_total == 59.00
        assert calc.total_tax == 18.00

    @pytest.mark.asyncio
    async def test_percentage_and_fixed(self, billing):
        calc = await _calculate(billing, base_plan_fee=100, region=None)

        coded = billing.apply_discount(calc, "percentage", 20, code="SAVE20")
        assert coded.discounts[0].amount == 20
        assert coded.discounts[0].code == "SAVE20"
        assert coded.final_total == 80

        fixed = billing.apply_discount(calc, DiscountType.FIXED, 25)
        assert fixed.total_discounts == 25
        assert fixed.final_total == 75

    @pytest.mark.asyncio
    async def test_discounts_do_not_compound(self, billing):
        calc = await _calculate(billing, base_plan_fee=100, region=None)
        twice = billing.apply_discount(billing.apply_discount(calc, "percentage", 10), "percentage", 10)
        assert [d.amount for d in twice.discounts] == [10, 10]
        assert twice.discounted_subtotal == 80

    @pytest.mark.asyncio
    async def test_fixed_discount_is_capped(self, billing):
        calc = await _calculate(billing, base_plan_fee=100, region=None)
        capped = billing.apply_discount(calc, DiscountType.FIXED, 500)
        assert capped.discounts[0].amount == 100
        assert capped.final_total == 0

    @pytest.mark.asyncio
    async def test_credits(self, billing):
        calc = await _calculate(billing, base_plan_fee=100, region=None)
        credited = billing.apply_credits(calc, [CreditApplication("c1", 25)])
        assert credited.final_total == 75
        assert calc.final_total == 100

    @pytest.mark.asyncio
    async def test_credit_capped_at_total(self, billing):
        calc = await _calculate(billing, base_plan_fee=50, region=None)
        credited = billing.apply_credits(calc, [CreditApplication("c1", 100), CreditApplication("c2", 10)])
        assert credited.final_total == 0
        assert [c.amount for c in credited.credits] == [50, 0]
        assert credited.total_credits == 50


class TestEventsAndRates:
    def test_threshold_breach_is_forwarded(self, billing, bus):
        bus.publish(ThresholdBreached(
            tenant_id="t1",
            meter_type="api_calls",
            threshold_percentage=90,
            alert_type="critical",
            notify_on_breach=True,
            current_value=90,
            limit=100,
            percentage_used=90.0,
            timestamp=datetime(2024, 6, 15),
        ))
        forwarded = bus.history(HighUsageDetected)
        assert len(forwarded) == 1
        assert forwarded[0].threshold_percentage == 90

    def test_update_exchange_rate(self, billing, bus):
        billing.update_exchange_rate("USD", "EUR", 0.9)
        assert billing.get_exchange_rate("EUR", "USD") == pytest.approx(1 / 0.9)
        event = bus.history(ExchangeRateUpdated)[-1]
        assert (event.from_currency, event.to_currency, event.rate) == ("USD", "EUR", 0.9)

    def test_catalog_accessors(self, billing):
        assert billing.get_tax_rate("US-CA").rate == 7.25
        assert len(billing.get_supported_tax_regions()) == 17
        assert billing.get_pricing_model("enterprise", "api_calls").included_units == 1000000
        assert billing.convert_currency(100, "USD", "GBP") == 79.0

    def test_to_dict(self, billing):
        model = billing.get_pricing_model(PlanTier.STARTER, MeterType.API_CALLS)
        assert model.to_dict()["meter_id"] == "api-calls-starter"
