# -*- coding: utf-8 -*-
"""
Meter Registry
==============

Static per-meter policy: reset period, unit label, breach thresholds,
optional hard cap and overage policy.

Loaded once at startup and read-only thereafter. Meter types without a
registered config fall back to a monthly, threshold-free counter
measured in generic ``units``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .exceptions import UnknownMeterTypeError
from .periods import AggregationPeriod, period_bounds


class MeterType(str, Enum):
    """Tipos de recurso medidos"""
    API_CALLS = "api_calls"
    DATA_STORAGE = "data_storage"
    SENSOR_READINGS = "sensor_readings"
    ALERTS_SENT = "alerts_sent"
    REPORTS_GENERATED = "reports_generated"
    USERS_ACTIVE = "users_active"
    FARMS_ACTIVE = "farms_active"
    PONDS_ACTIVE = "ponds_active"
    SENSORS_ACTIVE = "sensors_active"
    DATA_EXPORT = "data_export"
    INTEGRATIONS = "integrations"
    CUSTOM = "custom"


class ResetPeriod(str, Enum):
    """Quando um medidor volta a zero"""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    BILLING_PERIOD = "billing_period"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


# billing_period resets follow the calendar month
_RESET_TO_PERIOD = {
    ResetPeriod.HOURLY: AggregationPeriod.HOURLY,
    ResetPeriod.DAILY: AggregationPeriod.DAILY,
    ResetPeriod.WEEKLY: AggregationPeriod.WEEKLY,
    ResetPeriod.MONTHLY: AggregationPeriod.MONTHLY,
    ResetPeriod.BILLING_PERIOD: AggregationPeriod.MONTHLY,
}


def reset_period_bounds(reset_period: ResetPeriod, ts: datetime) -> Tuple[datetime, datetime]:
    """Bounds of the metering window that contains ``ts``."""
    return period_bounds(_RESET_TO_PERIOD[ResetPeriod(reset_period)], ts)


@dataclass(frozen=True)
class UsageThreshold:
    """Percentual de uso que dispara um alerta"""
    percentage: float
    alert_type: AlertSeverity = AlertSeverity.WARNING
    notify_on_breach: bool = True
    notify_recipients: Tuple[str, ...] = ()


DEFAULT_THRESHOLDS: Tuple[UsageThreshold, ...] = (
    UsageThreshold(50, AlertSeverity.WARNING, notify_on_breach=False),
    UsageThreshold(75, AlertSeverity.WARNING),
    UsageThreshold(90, AlertSeverity.CRITICAL),
    UsageThreshold(100, AlertSeverity.CRITICAL),
)


@dataclass(frozen=True)
class MeterConfig:
    """Politica de um tipo de medidor"""
    meter_type: MeterType
    reset_period: ResetPeriod = ResetPeriod.MONTHLY
    unit: str = "units"
    thresholds: Tuple[UsageThreshold, ...] = ()
    max_value: Optional[float] = None
    allow_overage: bool = False
    overage_rate: Optional[float] = None

    def __post_init__(self):
        ordered = tuple(sorted(self.thresholds, key=lambda t: t.percentage))
        object.__setattr__(self, "thresholds", ordered)

    def period_bounds(self, ts: datetime) -> Tuple[datetime, datetime]:
        return reset_period_bounds(self.reset_period, ts)


class MeterRegistry:
    """
    Registro de configuracoes de medidores.

    Exemplo:
        registry = MeterRegistry.default()
        cfg = registry.get(MeterType.API_CALLS)
    """

    def __init__(self, configs: Optional[List[MeterConfig]] = None):
        self._configs: Dict[MeterType, MeterConfig] = {}
        for cfg in configs or []:
            self.register(cfg)

    def register(self, config: MeterConfig) -> None:
        self._configs[MeterType(config.meter_type)] = config

    def get(self, meter_type: Union[MeterType, str]) -> Optional[MeterConfig]:
        return self._configs.get(MeterType(meter_type))

    def require(self, meter_type: Union[MeterType, str]) -> MeterConfig:
        cfg = self._configs.get(MeterType(meter_type))
        if cfg is None:
            raise UnknownMeterTypeError(str(meter_type))
        return cfg

    def resolve(self, meter_type: Union[MeterType, str]) -> MeterConfig:
        """Registered config, or the generic monthly fallback."""
        meter_type = MeterType(meter_type)
        return self._configs.get(meter_type) or MeterConfig(meter_type=meter_type)

    def all(self) -> List[MeterConfig]:
        return list(self._configs.values())

    def __contains__(self, meter_type) -> bool:
        return MeterType(meter_type) in self._configs

    def __iter__(self) -> Iterator[MeterConfig]:
        return iter(self._configs.values())

    def __len__(self) -> int:
        return len(self._configs)

    @classmethod
    def default(cls) -> "MeterRegistry":
        """Built-in meter configuration."""
        def metered(meter_type, reset, unit, rate):
            return MeterConfig(
                meter_type=meter_type,
                reset_period=reset,
                unit=unit,
                thresholds=DEFAULT_THRESHOLDS,
                allow_overage=True,
                overage_rate=rate,
            )

        def seats(meter_type, unit):
            return MeterConfig(
                meter_type=meter_type,
                reset_period=ResetPeriod.BILLING_PERIOD,
                unit=unit,
                thresholds=DEFAULT_THRESHOLDS,
                allow_overage=False,
            )

        return cls([
            metered(MeterType.API_CALLS, ResetPeriod.MONTHLY, "calls", 0.001),
            metered(MeterType.DATA_STORAGE, ResetPeriod.BILLING_PERIOD, "GB", 0.10),
            metered(MeterType.SENSOR_READINGS, ResetPeriod.MONTHLY, "readings", 0.0001),
            metered(MeterType.ALERTS_SENT, ResetPeriod.MONTHLY, "alerts", 0.01),
            metered(MeterType.REPORTS_GENERATED, ResetPeriod.MONTHLY, "reports", 0.05),
            seats(MeterType.USERS_ACTIVE, "users"),
            seats(MeterType.FARMS_ACTIVE, "farms"),
            seats(MeterType.PONDS_ACTIVE, "ponds"),
            seats(MeterType.SENSORS_ACTIVE, "sensors"),
        ])
