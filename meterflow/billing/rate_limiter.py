# -*- coding: utf-8 -*-
"""
Tenant Rate Limiter
===================

Token bucket per tenant, owned by a single limiter instance that is
constructed once and injected into the services that need it.

Each tenant starts with a full bucket of ``capacity`` tokens; tokens refill
continuously at ``refill_per_second`` up to the capacity. A request of
``cost`` tokens is allowed when the bucket holds at least that many.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from meterflow import config

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    tokens: float
    updated_at: float


class TenantRateLimiter:
    """
    Rate limiter por tenant.

    Exemplo:
        limiter = TenantRateLimiter(capacity=100, refill_per_second=10)
        if not limiter.allow("tenant-1", cost=5):
            ...
    """

    def __init__(
        self,
        capacity: Optional[float] = None,
        refill_per_second: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        overrides: Optional[Dict[str, float]] = None
    ):
        """
        Args:
            capacity: Tokens maximos por tenant
            refill_per_second: Tokens repostos por segundo
            clock: Fonte de tempo monotonica
            overrides: Capacidade especifica por tenant
        """
        self.capacity = capacity if capacity is not None else config.RATE_LIMIT_CAPACITY
        self.refill_per_second = (
            refill_per_second if refill_per_second is not None else config.RATE_LIMIT_REFILL_PER_SECOND
        )
        if self.capacity <= 0 or self.refill_per_second < 0:
            raise ValueError("capacity must be positive and refill_per_second non-negative")

        self._clock = clock
        self._overrides = dict(overrides or {})
        self._buckets: Dict[str, TokenBucket] = {}
        self._denied = 0

    def _capacity_for(self, tenant_id: str) -> float:
        return self._overrides.get(tenant_id, self.capacity)

    def _bucket(self, tenant_id: str) -> TokenBucket:
        now = self._clock()
        capacity = self._capacity_for(tenant_id)
        bucket = self._buckets.get(tenant_id)

        if bucket is None:
            bucket = TokenBucket(tokens=capacity, updated_at=now)
            self._buckets[tenant_id] = bucket
            return bucket

        elapsed = max(0.0, now - bucket.updated_at)
        bucket.tokens = min(capacity, bucket.tokens + elapsed * self.refill_per_second)
        bucket.updated_at = now
        return bucket

    def allow(self, tenant_id: str, cost: float = 1) -> bool:
        """Consume ``cost`` tokens if available; never blocks."""
        bucket = self._bucket(tenant_id)
        if bucket.tokens >= cost:
            bucket.tokens -= cost
            return True

        self._denied += 1
        logger.debug(f"Rate limit denied tenant={tenant_id} cost={cost} tokens={bucket.tokens:.2f}")
        return False

    def remaining(self, tenant_id: str) -> float:
        return self._bucket(tenant_id).tokens

    def set_capacity(self, tenant_id: str, capacity: float) -> None:
        self._overrides[tenant_id] = capacity
        bucket = self._buckets.get(tenant_id)
        if bucket is not None:
            bucket.tokens = min(bucket.tokens, capacity)

    def reset(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id is None:
            self._buckets.clear()
        else:
            self._buckets.pop(tenant_id, None)

    def get_stats(self) -> Dict[str, float]:
        return {
            "tenants": len(self._buckets),
            "denied": self._denied,
            "capacity": self.capacity,
            "refill_per_second": self.refill_per_second,
        }
