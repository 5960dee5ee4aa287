# -*- coding: utf-8 -*-
"""
Billing Errors
==============

Errors raised by the metering and billing pipeline.

Configuration and currency errors are fatal to a single calculation and
propagate to the caller. Per-event and persistence failures are handled
inside the services and never surface as exceptions.
"""

from typing import Optional


class MeterflowError(Exception):
    """Base error for the metering/billing pipeline."""
    pass


class ConfigurationError(MeterflowError):
    """Catalog or registry is missing or malformed."""
    pass


class UnknownPlanTierError(ConfigurationError):
    """Plan tier has no registered pricing model."""

    def __init__(self, plan_tier: str, message: Optional[str] = None):
        self.plan_tier = plan_tier
        super().__init__(message or f"No pricing model registered for plan tier: {plan_tier}")


class UnknownMeterTypeError(ConfigurationError):
    """Meter type is not present in the registry or in a plan's pricing."""

    def __init__(self, meter_type: str, plan_tier: Optional[str] = None):
        self.meter_type = meter_type
        self.plan_tier = plan_tier
        if plan_tier:
            message = f"No pricing for meter {meter_type} on plan tier {plan_tier}"
        else:
            message = f"Unknown meter type: {meter_type}"
        super().__init__(message)


class InvalidPricingTiersError(ConfigurationError):
    """Pricing tiers overlap, leave gaps or are unbounded before the last one."""

    def __init__(self, meter_id: str, reason: str):
        self.meter_id = meter_id
        self.reason = reason
        super().__init__(f"Invalid pricing tiers for {meter_id}: {reason}")


class UnknownCurrencyPairError(MeterflowError):
    """No direct or reverse exchange rate exists for the pair."""

    def __init__(self, from_currency: str, to_currency: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(f"Exchange rate not found: {from_currency} -> {to_currency}")


class RateLimitExceededError(MeterflowError):
    """Tenant exceeded its usage ingestion budget."""

    def __init__(self, tenant_id: str, cost: float, remaining: float):
        self.tenant_id = tenant_id
        self.cost = cost
        self.remaining = remaining
        super().__init__(
            f"Rate limit exceeded for tenant {tenant_id}: "
            f"requested {cost}, remaining {remaining:.2f}"
        )
