# -*- coding: utf-8 -*-
"""
Tests for configuration validation and logging setup
"""

import json
import logging

import pytest

from meterflow import config
from meterflow.logging_config import BillingJsonFormatter, get_tenant_logger, setup_logging


class TestValidateConfig:
    def test_defaults_are_valid(self):
        assert config.validate_config() is True

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setattr(config, "STORE_BACKEND", "cassandra")
        with pytest.raises(config.ConfigValidationError, match="STORE_BACKEND"):
            config.validate_config()

    def test_non_positive_values(self, monkeypatch):
        monkeypatch.setattr(config, "METERING_BUFFER_SIZE", 0)
        monkeypatch.setattr(config, "BILLING_CACHE_TTL", -1)
        with pytest.raises(config.ConfigValidationError) as exc_info:
            config.validate_config()
        assert "METERING_BUFFER_SIZE" in str(exc_info.value)
        assert "BILLING_CACHE_TTL" in str(exc_info.value)

    def test_snapshot_keys_bounded_by_ceiling(self, monkeypatch):
        monkeypatch.setattr(config, "IDEMPOTENCY_SNAPSHOT_KEYS", 10)
        monkeypatch.setattr(config, "IDEMPOTENCY_MAX_KEYS", 5)
        with pytest.raises(config.ConfigValidationError):
            config.validate_config()


class TestLogging:
    @pytest.fixture
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield root
        root.handlers = handlers
        root.setLevel(level)

    def _record(self, level=logging.INFO):
        return logging.LogRecord("meterflow.test", level, __file__, 10, "meter reset", None, None)

    def test_json_formatter_fields(self):
        formatter = BillingJsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            service_name="meterflow-test",
            environment="staging",
        )
        data = json.loads(formatter.format(self._record()))
        assert data["message"] == "meter reset"
        assert data["level"] == "INFO"
        assert data["service"] == "meterflow-test"
        assert data["environment"] == "staging"
        assert "source" not in data

    def test_debug_records_carry_source(self):
        formatter = BillingJsonFormatter(fmt="%(message)s")
        data = json.loads(formatter.format(self._record(logging.DEBUG)))
        assert data["source"]["line"] == 10

    def test_setup_logging_json(self, restore_root):
        setup_logging(level="DEBUG", json_format=True)
        assert restore_root.level == logging.DEBUG
        assert len(restore_root.handlers) == 1
        assert isinstance(restore_root.handlers[0].formatter, BillingJsonFormatter)

    def test_setup_logging_plain(self, restore_root):
        setup_logging(level="WARNING", json_format=False)
        assert not isinstance(restore_root.handlers[0].formatter, BillingJsonFormatter)

    def test_tenant_logger_adds_context(self):
        adapter = get_tenant_logger("meterflow.test", "t1", subscription_id="sub-1")
        _, kwargs = adapter.process("msg", {})
        assert kwargs["extra"] == {"tenant_id": "t1", "subscription_id": "sub-1"}

    def test_call_extra_overrides_adapter(self):
        adapter = get_tenant_logger("meterflow.test", "t1", subscription_id="sub-1")
        _, kwargs = adapter.process("msg", {"extra": {"subscription_id": "sub-2"}})
        assert kwargs["extra"] == {"tenant_id": "t1", "subscription_id": "sub-2"}

    def test_tenant_context_reaches_json_output(self, caplog):
        adapter = get_tenant_logger("meterflow.test", "t1")
        with caplog.at_level(logging.INFO, logger="meterflow.test"):
            adapter.info("meter reset")

        record = caplog.records[-1]
        data = json.loads(BillingJsonFormatter(fmt="%(message)s").format(record))
        assert data["tenant_id"] == "t1"
        assert data["message"] == "meter reset"
