"""
Configuracoes do Meterflow
Metering, agregacao de uso e billing medido
"""
import os
from dotenv import load_dotenv

# Carregar variaveis de ambiente
load_dotenv()

# =============================================================================
# ENVIRONMENT
# =============================================================================

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SERVICE_NAME = os.getenv("SERVICE_NAME", "meterflow")

# =============================================================================
# STORAGE
# =============================================================================

# sql (SQLAlchemy async), redis ou memory
STORE_BACKEND = os.getenv("STORE_BACKEND", "sql")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///meterflow.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

# =============================================================================
# METERING
# =============================================================================

METERING_BUFFER_SIZE = int(os.getenv("METERING_BUFFER_SIZE", 1000))
METERING_FLUSH_INTERVAL = float(os.getenv("METERING_FLUSH_INTERVAL", 5))
METERING_SYNC_INTERVAL = float(os.getenv("METERING_SYNC_INTERVAL", 10))
METERING_CLEANUP_INTERVAL = float(os.getenv("METERING_CLEANUP_INTERVAL", 3600))

# Idempotency
IDEMPOTENCY_MAX_KEYS = int(os.getenv("IDEMPOTENCY_MAX_KEYS", 100000))
IDEMPOTENCY_SNAPSHOT_KEYS = int(os.getenv("IDEMPOTENCY_SNAPSHOT_KEYS", 1000))

# Rate limit de ingestao por tenant (token bucket)
RATE_LIMIT_CAPACITY = float(os.getenv("RATE_LIMIT_CAPACITY", 1000))
RATE_LIMIT_REFILL_PER_SECOND = float(os.getenv("RATE_LIMIT_REFILL_PER_SECOND", 100))

# =============================================================================
# AGGREGATION
# =============================================================================

AGGREGATION_PERSIST_INTERVAL = float(os.getenv("AGGREGATION_PERSIST_INTERVAL", 30))
AGGREGATION_ROLLUP_INTERVAL = float(os.getenv("AGGREGATION_ROLLUP_INTERVAL", 300))
AGGREGATION_RETENTION_DAYS = int(os.getenv("AGGREGATION_RETENTION_DAYS", 365))
AGGREGATION_HOURLY_LOAD_DAYS = int(os.getenv("AGGREGATION_HOURLY_LOAD_DAYS", 90))
TREND_BUFFER_SIZE = int(os.getenv("TREND_BUFFER_SIZE", 8760))  # 1 ano de horas

# =============================================================================
# BILLING
# =============================================================================

BILLING_CACHE_TTL = int(os.getenv("BILLING_CACHE_TTL", 300))  # 5 minutos
BILLING_CACHE_MAX_SIZE = int(os.getenv("BILLING_CACHE_MAX_SIZE", 10000))
BASE_CURRENCY = os.getenv("BASE_CURRENCY", "USD")

# JSON opcional que substitui o catalogo embutido
PRICING_CATALOG_PATH = os.getenv("PRICING_CATALOG_PATH", "")


# =============================================================================
# VALIDATION
# =============================================================================

class ConfigValidationError(Exception):
    """Erro de validacao de configuracao"""
    pass


def validate_config():
    """
    Valida configuracoes carregadas do ambiente.

    Raises:
        ConfigValidationError: se algum valor for invalido
    """
    errors = []

    if STORE_BACKEND not in ("sql", "redis", "memory"):
        errors.append(f"STORE_BACKEND must be sql, redis or memory, got {STORE_BACKEND}")

    positive = {
        "METERING_BUFFER_SIZE": METERING_BUFFER_SIZE,
        "METERING_FLUSH_INTERVAL": METERING_FLUSH_INTERVAL,
        "METERING_SYNC_INTERVAL": METERING_SYNC_INTERVAL,
        "METERING_CLEANUP_INTERVAL": METERING_CLEANUP_INTERVAL,
        "IDEMPOTENCY_MAX_KEYS": IDEMPOTENCY_MAX_KEYS,
        "IDEMPOTENCY_SNAPSHOT_KEYS": IDEMPOTENCY_SNAPSHOT_KEYS,
        "AGGREGATION_PERSIST_INTERVAL": AGGREGATION_PERSIST_INTERVAL,
        "AGGREGATION_ROLLUP_INTERVAL": AGGREGATION_ROLLUP_INTERVAL,
        "AGGREGATION_RETENTION_DAYS": AGGREGATION_RETENTION_DAYS,
        "TREND_BUFFER_SIZE": TREND_BUFFER_SIZE,
        "BILLING_CACHE_TTL": BILLING_CACHE_TTL,
        "RATE_LIMIT_CAPACITY": RATE_LIMIT_CAPACITY,
    }
    for name, value in positive.items():
        if value <= 0:
            errors.append(f"{name} must be positive, got {value}")

    if IDEMPOTENCY_SNAPSHOT_KEYS > IDEMPOTENCY_MAX_KEYS:
        errors.append("IDEMPOTENCY_SNAPSHOT_KEYS cannot exceed IDEMPOTENCY_MAX_KEYS")

    if errors:
        raise ConfigValidationError("; ".join(errors))

    return True
