# -*- coding: utf-8 -*-
"""
Pricing Catalog
===============

Static pricing for metered billing:
- per (plan tier, meter type) graduated pricing with included units
- regional tax table
- currency exchange rates from the base currency

The catalog is a typed two-level table validated at construction: tiers
must start at zero, be contiguous and non-overlapping, and only the last
one may be unbounded. Looking up a plan or meter without a model raises
instead of returning nothing.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from meterflow import config

from .exceptions import (
    ConfigurationError,
    InvalidPricingTiersError,
    UnknownCurrencyPairError,
    UnknownMeterTypeError,
    UnknownPlanTierError,
)
from .meters import MeterType
from .periods import AggregationPeriod

logger = logging.getLogger(__name__)


def round_currency(amount: float, places: int = 2) -> float:
    """Round half-up to ``places`` decimals (cents by default)."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(amount)).quantize(quantum, rounding=ROUND_HALF_UP))


# =============================================================================
# ENUMS
# =============================================================================

class PlanTier(str, Enum):
    """Niveis de plano"""
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"
    CUSTOM = "custom"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi_annual"
    ANNUAL = "annual"


# Semi-annual windows are read from quarterly buckets; every bucket that
# starts inside the window is summed, so both quarters are counted.
CYCLE_GRANULARITY = {
    BillingCycle.MONTHLY: AggregationPeriod.MONTHLY,
    BillingCycle.QUARTERLY: AggregationPeriod.QUARTERLY,
    BillingCycle.SEMI_ANNUAL: AggregationPeriod.QUARTERLY,
    BillingCycle.ANNUAL: AggregationPeriod.YEARLY,
}


def aggregation_period_for_cycle(cycle: Union[BillingCycle, str]) -> AggregationPeriod:
    return CYCLE_GRANULARITY[BillingCycle(cycle)]


class TaxType(str, Enum):
    VAT = "VAT"
    GST = "GST"
    SALES_TAX = "SALES_TAX"
    NONE = "NONE"


# =============================================================================
# PRICING MODEL
# =============================================================================

@dataclass(frozen=True)
class PricingTier:
    """Faixa de preco; max_units inclusivo, None = sem limite"""
    min_units: int
    max_units: Optional[int]
    price_per_unit: float
    flat_fee: Optional[float] = None

    @property
    def capacity(self) -> Optional[int]:
        if self.max_units is None:
            return None
        return self.max_units - self.min_units + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_units": self.min_units,
            "max_units": self.max_units,
            "price_per_unit": self.price_per_unit,
            "flat_fee": self.flat_fee,
        }


@dataclass(frozen=True)
class MeterPricingModel:
    meter_id: str
    meter_type: MeterType
    display_name: str
    unit: str
    included_units: float
    tiers: Tuple[PricingTier, ...]
    minimum_charge: Optional[float] = None
    currency: str = "USD"

    def __post_init__(self):
        object.__setattr__(self, "tiers", tuple(self.tiers))
        self._validate_tiers()

    def _validate_tiers(self) -> None:
        if not self.tiers:
            raise InvalidPricingTiersError(self.meter_id, "at least one tier is required")
        if self.tiers[0].min_units != 0:
            raise InvalidPricingTiersError(self.meter_id, "first tier must start at 0")

        for index, tier in enumerate(self.tiers):
            if tier.price_per_unit < 0:
                raise InvalidPricingTiersError(self.meter_id, f"tier {index} has a negative price")
            is_last = index == len(self.tiers) - 1
            if tier.max_units is None:
                if not is_last:
                    raise InvalidPricingTiersError(self.meter_id, f"tier {index} is unbounded but not last")
                continue
            if tier.max_units < tier.min_units:
                raise InvalidPricingTiersError(self.meter_id, f"tier {index} ends before it starts")
            if not is_last and self.tiers[index + 1].min_units != tier.max_units + 1:
                raise InvalidPricingTiersError(
                    self.meter_id, f"tier {index + 1} must start at {tier.max_units + 1}"
                )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meter_id": self.meter_id,
            "meter_type": self.meter_type.value,
            "display_name": self.display_name,
            "unit": self.unit,
            "included_units": self.included_units,
            "tiers": [t.to_dict() for t in self.tiers],
            "minimum_charge": self.minimum_charge,
            "currency": self.currency,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MeterPricingModel":
        return cls(
            meter_id=d["meter_id"],
            meter_type=MeterType(d["meter_type"]),
            display_name=d.get("display_name", d["meter_type"]),
            unit=d.get("unit", "units"),
            included_units=d.get("included_units", 0),
            tiers=tuple(
                PricingTier(
                    min_units=t["min_units"],
                    max_units=t.get("max_units"),
                    price_per_unit=t["price_per_unit"],
                    flat_fee=t.get("flat_fee"),
                )
                for t in d["tiers"]
            ),
            minimum_charge=d.get("minimum_charge"),
            currency=d.get("currency", config.BASE_CURRENCY),
        )


# Built-in catalog: display name, unit, included units, tiers (min, max, price)
_METER_LABELS = {
    MeterType.API_CALLS: ("API Calls", "calls"),
    MeterType.DATA_STORAGE: ("Data Storage", "GB"),
    MeterType.SENSOR_READINGS: ("Sensor Readings", "readings"),
    MeterType.ALERTS_SENT: ("Alerts Sent", "alerts"),
    MeterType.REPORTS_GENERATED: ("Reports Generated", "reports"),
    MeterType.USERS_ACTIVE: ("Active Users", "users"),
    MeterType.PONDS_ACTIVE: ("Ponds Managed", "ponds"),
}

DEFAULT_PLAN_PRICING = {
    PlanTier.STARTER: {
        MeterType.API_CALLS: (10000, [(0, 50000, 0.001), (50001, 100000, 0.0008), (100001, None, 0.0005)]),
        MeterType.DATA_STORAGE: (5, [(0, 50, 0.10), (51, 200, 0.08), (201, None, 0.05)]),
        MeterType.SENSOR_READINGS: (100000, [(0, 500000, 0.00005), (500001, 1000000, 0.00003), (1000001, None, 0.00001)]),
        MeterType.ALERTS_SENT: (100, [(0, 1000, 0.05), (1001, None, 0.02)]),
        MeterType.REPORTS_GENERATED: (10, [(0, 100, 0.50), (101, None, 0.25)]),
        MeterType.USERS_ACTIVE: (3, [(0, 10, 5.0), (11, 50, 4.0), (51, None, 3.0)]),
        MeterType.PONDS_ACTIVE: (5, [(0, 20, 10.0), (21, 50, 8.0), (51, None, 5.0)]),
    },
    PlanTier.PROFESSIONAL: {
        MeterType.API_CALLS: (100000, [(0, 500000, 0.0005), (500001, 1000000, 0.0003), (1000001, None, 0.0001)]),
        MeterType.DATA_STORAGE: (50, [(0, 200, 0.05), (201, 500, 0.03), (501, None, 0.02)]),
        MeterType.SENSOR_READINGS: (1000000, [(0, 5000000, 0.00002), (5000001, None, 0.00001)]),
        MeterType.ALERTS_SENT: (1000, [(0, 5000, 0.02), (5001, None, 0.01)]),
        MeterType.REPORTS_GENERATED: (100, [(0, 500, 0.20), (501, None, 0.10)]),
        MeterType.USERS_ACTIVE: (10, [(0, 50, 3.0), (51, 100, 2.5), (101, None, 2.0)]),
        MeterType.PONDS_ACTIVE: (25, [(0, 100, 5.0), (101, None, 3.0)]),
    },
    PlanTier.ENTERPRISE: {
        MeterType.API_CALLS: (1000000, [(0, None, 0.00005)]),
        MeterType.DATA_STORAGE: (500, [(0, None, 0.01)]),
        MeterType.SENSOR_READINGS: (10000000, [(0, None, 0.000005)]),
        MeterType.ALERTS_SENT: (10000, [(0, None, 0.005)]),
        MeterType.REPORTS_GENERATED: (1000, [(0, None, 0.05)]),
        MeterType.USERS_ACTIVE: (100, [(0, None, 1.0)]),
        MeterType.PONDS_ACTIVE: (200, [(0, None, 1.0)]),
    },
}


class PricingCatalog:
    """
    Tabela tipada plano -> medidor -> modelo de preco.

    Exemplo:
        catalog = PricingCatalog.default()
        model = catalog.get_model(PlanTier.STARTER, MeterType.API_CALLS)
    """

    def __init__(self, plans: Mapping[PlanTier, Mapping[MeterType, MeterPricingModel]]):
        self._plans: Dict[PlanTier, Dict[MeterType, MeterPricingModel]] = {}
        for tier, models in plans.items():
            tier = PlanTier(tier)
            table: Dict[MeterType, MeterPricingModel] = {}
            for meter_type, model in models.items():
                meter_type = MeterType(meter_type)
                if model.meter_type != meter_type:
                    raise ConfigurationError(
                        f"Pricing model {model.meter_id} is registered under {meter_type.value} "
                        f"but prices {model.meter_type.value}"
                    )
                table[meter_type] = model
            if not table:
                raise ConfigurationError(f"Plan tier {tier.value} has no meter pricing")
            self._plans[tier] = table

    def get_plan(self, plan_tier: Union[PlanTier, str]) -> Dict[MeterType, MeterPricingModel]:
        try:
            tier = PlanTier(plan_tier)
        except ValueError:
            raise UnknownPlanTierError(str(plan_tier))
        plan = self._plans.get(tier)
        if plan is None:
            raise UnknownPlanTierError(tier.value)
        return dict(plan)

    def get_model(self, plan_tier: Union[PlanTier, str], meter_type: Union[MeterType, str]) -> MeterPricingModel:
        plan = self.get_plan(plan_tier)
        model = plan.get(MeterType(meter_type))
        if model is None:
            raise UnknownMeterTypeError(MeterType(meter_type).value, PlanTier(plan_tier).value)
        return model

    def has_plan(self, plan_tier: Union[PlanTier, str]) -> bool:
        return PlanTier(plan_tier) in self._plans

    def plan_tiers(self) -> List[PlanTier]:
        return list(self._plans)

    def to_dict(self) -> Dict[str, Any]:
        return {
            tier.value: {meter.value: model.to_dict() for meter, model in models.items()}
            for tier, models in self._plans.items()
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, Dict[str, Any]]]) -> "PricingCatalog":
        plans: Dict[PlanTier, Dict[MeterType, MeterPricingModel]] = {}
        try:
            for tier_name, meters in data.items():
                tier = PlanTier(tier_name)
                plans[tier] = {
                    MeterType(meter_name): MeterPricingModel.from_dict({"meter_type": meter_name, **model})
                    for meter_name, model in meters.items()
                }
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid pricing catalog: {e}") from e
        return cls(plans)

    @classmethod
    def default(cls, currency: Optional[str] = None) -> "PricingCatalog":
        currency = currency or config.BASE_CURRENCY
        plans: Dict[PlanTier, Dict[MeterType, MeterPricingModel]] = {}
        for tier, meters in DEFAULT_PLAN_PRICING.items():
            plans[tier] = {}
            for meter_type, (included, tiers) in meters.items():
                display_name, unit = _METER_LABELS[meter_type]
                plans[tier][meter_type] = MeterPricingModel(
                    meter_id=f"{meter_type.value.replace('_', '-')}-{tier.value}",
                    meter_type=meter_type,
                    display_name=display_name,
                    unit=unit,
                    included_units=included,
                    tiers=tuple(PricingTier(lo, hi, price) for lo, hi, price in tiers),
                    currency=currency,
                )
        return cls(plans)


def load_catalog(path: Optional[Union[str, Path]] = None) -> PricingCatalog:
    """Catalog from a JSON file (``PRICING_CATALOG_PATH``) or the built-in one."""
    path = path or config.PRICING_CATALOG_PATH
    if not path:
        return PricingCatalog.default()

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    catalog = PricingCatalog.from_dict(data)
    logger.info(f"Loaded pricing catalog from {path} with tiers {[t.value for t in catalog.plan_tiers()]}")
    return catalog


# =============================================================================
# TAX
# =============================================================================

@dataclass(frozen=True)
class TaxRateConfig:
    region: str
    country: str
    tax_type: TaxType
    rate: float
    name: str
    is_compound: bool = False


DEFAULT_TAX_RATES: Tuple[TaxRateConfig, ...] = (
    TaxRateConfig("TR", "Turkey", TaxType.VAT, 18, "KDV"),
    TaxRateConfig("US", "United States", TaxType.SALES_TAX, 0, "Sales Tax"),
    TaxRateConfig("US-CA", "United States - California", TaxType.SALES_TAX, 7.25, "California Sales Tax"),
    TaxRateConfig("US-NY", "United States - New York", TaxType.SALES_TAX, 8, "New York Sales Tax"),
    TaxRateConfig("US-TX", "United States - Texas", TaxType.SALES_TAX, 6.25, "Texas Sales Tax"),
    TaxRateConfig("DE", "Germany", TaxType.VAT, 19, "MwSt"),
    TaxRateConfig("FR", "France", TaxType.VAT, 20, "TVA"),
    TaxRateConfig("NL", "Netherlands", TaxType.VAT, 21, "BTW"),
    TaxRateConfig("GB", "United Kingdom", TaxType.VAT, 20, "VAT"),
    TaxRateConfig("JP", "Japan", TaxType.GST, 10, "Consumption Tax"),
    TaxRateConfig("AU", "Australia", TaxType.GST, 10, "GST"),
    TaxRateConfig("SG", "Singapore", TaxType.GST, 8, "GST"),
    TaxRateConfig("TH", "Thailand", TaxType.VAT, 7, "VAT"),
    TaxRateConfig("VN", "Vietnam", TaxType.VAT, 10, "VAT"),
    TaxRateConfig("ID", "Indonesia", TaxType.VAT, 11, "PPN"),
    TaxRateConfig("BR", "Brazil", TaxType.VAT, 17, "ICMS"),
    TaxRateConfig("CL", "Chile", TaxType.VAT, 19, "IVA"),
)


class TaxTable:
    """Taxas por regiao; regiao ausente = sem imposto"""

    def __init__(self, rates: Optional[List[TaxRateConfig]] = None):
        self._rates: Dict[str, TaxRateConfig] = {r.region.upper(): r for r in (rates or [])}

    def get(self, region: Optional[str]) -> Optional[TaxRateConfig]:
        if not region:
            return None
        return self._rates.get(region.upper())

    def set(self, rate: TaxRateConfig) -> None:
        self._rates[rate.region.upper()] = rate

    def regions(self) -> List[TaxRateConfig]:
        return list(self._rates.values())

    def __contains__(self, region: str) -> bool:
        return region.upper() in self._rates

    @classmethod
    def default(cls) -> "TaxTable":
        return cls(list(DEFAULT_TAX_RATES))


# =============================================================================
# EXCHANGE RATES
# =============================================================================

DEFAULT_EXCHANGE_RATES = {
    "EUR": 0.92,
    "GBP": 0.79,
    "TRY": 32.5,
    "JPY": 149.5,
    "AUD": 1.53,
    "CAD": 1.36,
    "CHF": 0.88,
    "CNY": 7.24,
    "INR": 83.1,
    "SGD": 1.34,
    "THB": 35.5,
    "VND": 24500,
    "IDR": 15700,
    "BRL": 4.97,
}


@dataclass
class CurrencyRate:
    from_currency: str
    to_currency: str
    rate: float
    updated_at: datetime = field(default_factory=datetime.now)


class ExchangeRateTable:
    """
    Taxas de cambio.

    A missing pair is resolved through the reciprocal of the reverse pair;
    if neither exists the lookup fails instead of assuming parity.
    """

    def __init__(self, base_currency: Optional[str] = None, rates: Optional[Dict[str, float]] = None):
        self.base_currency = (base_currency or config.BASE_CURRENCY).upper()
        self._rates: Dict[Tuple[str, str], CurrencyRate] = {}
        for currency, rate in (rates or {}).items():
            self.set_rate(self.base_currency, currency, rate)

    def set_rate(self, from_currency: str, to_currency: str, rate: float) -> CurrencyRate:
        if rate <= 0:
            raise ValueError(f"Exchange rate must be positive: {from_currency}->{to_currency}={rate}")
        entry = CurrencyRate(from_currency.upper(), to_currency.upper(), rate)
        self._rates[(entry.from_currency, entry.to_currency)] = entry
        return entry

    def get_rate(self, from_currency: str, to_currency: str) -> float:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return 1.0

        direct = self._rates.get((from_currency, to_currency))
        if direct is not None:
            return direct.rate

        reverse = self._rates.get((to_currency, from_currency))
        if reverse is not None:
            return 1 / reverse.rate

        raise UnknownCurrencyPairError(from_currency, to_currency)

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        return round_currency(amount * self.get_rate(from_currency, to_currency))

    def pairs(self) -> List[CurrencyRate]:
        return list(self._rates.values())

    @classmethod
    def default(cls) -> "ExchangeRateTable":
        # built-in rates are quoted from USD
        return cls("USD", DEFAULT_EXCHANGE_RATES)
