# -*- coding: utf-8 -*-
"""
JSON Logging Configuration
==========================
Structured logging for metering and billing workers.

Logs go to stdout, JSON formatted in production/staging so they can be
collected by Fluentd/Loki, human readable in development.

Usage:
    from meterflow.logging_config import setup_logging

    setup_logging()
"""

import sys
import logging
from typing import Optional

from pythonjsonlogger import jsonlogger

from meterflow import config


class BillingJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps service/environment on every record."""

    def __init__(self, *args, **kwargs):
        self.service_name = kwargs.pop("service_name", config.SERVICE_NAME)
        self.environment = kwargs.pop("environment", config.ENVIRONMENT)
        super().__init__(*args, **kwargs)

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self.service_name
        log_record["environment"] = self.environment

        # Source location in debug mode
        if record.levelno <= logging.DEBUG:
            log_record["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName
            }


def setup_logging(
    level: Optional[str] = None,
    service_name: Optional[str] = None,
    json_format: Optional[bool] = None
) -> None:
    """
    Setup structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        service_name: Service name for log entries
        json_format: Force JSON format (auto-detected if None)
    """
    level = level or config.LOG_LEVEL
    service_name = service_name or config.SERVICE_NAME
    environment = config.ENVIRONMENT

    # Auto-detect JSON format: use JSON in production, readable in dev
    if json_format is None:
        json_format = environment in ("production", "staging")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if json_format:
        formatter = BillingJsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            service_name=service_name,
            environment=environment
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Reduce noise from libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured: level={level}, json={json_format}, env={environment}")


class TenantLoggerAdapter(logging.LoggerAdapter):
    """
    Adapter that stamps tenant_id (and any extra billing keys) on each record.

    Per-call ``extra`` values win over the adapter's own, so a calculation
    can add ``subscription_id`` without building a new adapter.
    """

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_tenant_logger(name: str, tenant_id: str, **extra) -> TenantLoggerAdapter:
    """
    Usage:
        log = get_tenant_logger(__name__, "tenant-1", subscription_id="sub-9")
        log.info("Billing calculated")
    """
    return TenantLoggerAdapter(logging.getLogger(name), {"tenant_id": tenant_id, **extra})
