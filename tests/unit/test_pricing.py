# -*- coding: utf-8 -*-
"""
Tests for the pricing catalog, tax table and exchange rates
"""

import json

import pytest

from meterflow.billing.exceptions import (
    ConfigurationError,
    InvalidPricingTiersError,
    UnknownCurrencyPairError,
    UnknownMeterTypeError,
    UnknownPlanTierError,
)
from meterflow.billing.meters import MeterType
from meterflow.billing.periods import AggregationPeriod
from meterflow.billing.pricing import (
    BillingCycle,
    ExchangeRateTable,
    MeterPricingModel,
    PlanTier,
    PricingCatalog,
    PricingTier,
    TaxTable,
    aggregation_period_for_cycle,
    load_catalog,
    round_currency,
)


def _model(tiers, **kwargs):
    return MeterPricingModel(
        meter_id="test-meter",
        meter_type=MeterType.API_CALLS,
        display_name="API Calls",
        unit="calls",
        included_units=kwargs.pop("included_units", 0),
        tiers=tuple(PricingTier(*t) for t in tiers),
        **kwargs,
    )


class TestRounding:
    def test_half_up(self):
        assert round_currency(2.675) == 2.68
        assert round_currency(0.125) == 0.13
        assert round_currency(1.004) == 1.0


class TestTierValidation:
    def test_valid_tiers(self):
        model = _model([(0, 100, 0.1), (101, None, 0.05)])
        assert model.tiers[0].capacity == 101
        assert model.tiers[1].capacity is None

    @pytest.mark.parametrize("tiers", [
        [],
        [(1, 100, 0.1)],
        [(0, 100, 0.1), (150, None, 0.05)],
        [(0, 100, 0.1), (100, None, 0.05)],
        [(0, None, 0.1), (101, None, 0.05)],
        [(0, 100, -1)],
    ])
    def test_invalid_tiers(self, tiers):
        with pytest.raises(InvalidPricingTiersError):
            _model(tiers)


class TestPricingCatalog:
    def test_default_catalog(self):
        catalog = PricingCatalog.default()
        model = catalog.get_model(PlanTier.STARTER, MeterType.API_CALLS)
        assert model.meter_id == "api-calls-starter"
        assert model.included_units == 10000
        assert [t.price_per_unit for t in model.tiers] == [0.001, 0.0008, 0.0005]
        assert set(catalog.plan_tiers()) == {PlanTier.STARTER, PlanTier.PROFESSIONAL, PlanTier.ENTERPRISE}

    def test_unknown_plan_raises(self):
        catalog = PricingCatalog.default()
        with pytest.raises(UnknownPlanTierError):
            catalog.get_plan(PlanTier.CUSTOM)
        with pytest.raises(UnknownPlanTierError):
            catalog.get_plan("platinum")

    def test_unpriced_meter_raises(self):
        catalog = PricingCatalog.default()
        with pytest.raises(UnknownMeterTypeError):
            catalog.get_model(PlanTier.STARTER, MeterType.FARMS_ACTIVE)

    def test_mismatched_registration(self):
        with pytest.raises(ConfigurationError):
            PricingCatalog({PlanTier.STARTER: {MeterType.ALERTS_SENT: _model([(0, None, 1)])}})

    def test_from_dict_round_trip(self):
        catalog = PricingCatalog.default()
        restored = PricingCatalog.from_dict(catalog.to_dict())
        assert restored.get_model("professional", "data_storage") == catalog.get_model(
            PlanTier.PROFESSIONAL, MeterType.DATA_STORAGE
        )

    def test_from_dict_wraps_errors(self):
        with pytest.raises(ConfigurationError):
            PricingCatalog.from_dict({"starter": {"teleportation": {"meter_id": "x", "tiers": []}}})

    def test_load_catalog_from_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({
            "custom": {
                "api_calls": {
                    "meter_id": "api-custom",
                    "included_units": 0,
                    "tiers": [{"min_units": 0, "max_units": None, "price_per_unit": 0.002}],
                    "minimum_charge": 10,
                },
            },
        }))
        catalog = load_catalog(path)
        assert catalog.has_plan(PlanTier.CUSTOM)
        assert catalog.get_model("custom", "api_calls").minimum_charge == 10

    def test_load_catalog_default(self):
        assert load_catalog("").has_plan(PlanTier.STARTER)


class TestCycles:
    def test_cycle_granularity(self):
        assert aggregation_period_for_cycle(BillingCycle.MONTHLY) == AggregationPeriod.MONTHLY
        assert aggregation_period_for_cycle("semi_annual") == AggregationPeriod.QUARTERLY
        assert aggregation_period_for_cycle(BillingCycle.ANNUAL) == AggregationPeriod.YEARLY


class TestTaxTable:
    def test_lookup_is_case_insensitive(self):
        table = TaxTable.default()
        tax = table.get("tr")
        assert tax.rate == 18
        assert tax.name == "KDV"
        assert "de" in table

    def test_missing_region_means_no_tax(self):
        table = TaxTable.default()
        assert table.get("XX") is None
        assert table.get(None) is None
        assert len(table.regions()) == 17


class TestExchangeRates:
    @pytest.fixture
    def rates(self):
        return ExchangeRateTable.default()

    def test_identity(self, rates):
        assert rates.get_rate("usd", "USD") == 1.0

    def test_direct_and_reverse(self, rates):
        assert rates.get_rate("USD", "EUR") == 0.92
        assert rates.get_rate("EUR", "USD") == pytest.approx(1 / 0.92)

    def test_unknown_pair_fails(self, rates):
        with pytest.raises(UnknownCurrencyPairError):
            rates.get_rate("USD", "XYZ")
        with pytest.raises(UnknownCurrencyPairError):
            rates.get_rate("EUR", "GBP")

    def test_round_trip_conversion(self, rates):
        eur = rates.convert(100, "USD", "EUR")
        assert eur == 92.0
        assert rates.convert(eur, "EUR", "USD") == pytest.approx(100, abs=0.01)

    def test_rejects_non_positive_rate(self, rates):
        with pytest.raises(ValueError):
            rates.set_rate("USD", "EUR", 0)
