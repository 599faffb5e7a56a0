"""
Metered Gateway: one call that puts a paid API request behind the cache
and the rate limiter.

    cache hit            -> cached value, no quota spent
    limiter denies       -> QuotaExceededError(retry_after=...)
    otherwise            -> fetch(), record usage, cache the result

Usage is recorded only after fetch() actually ran, whether it succeeded or
not. Job handlers let QuotaExceededError propagate so the processor defers
the job instead of failing it.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from governor.cache import make_cache_key
from governor.errors import QuotaExceededError

logger = logging.getLogger("governor.gateway")


class MeteredGateway:
    def __init__(self, rate_limiter, cache=None):
        self.rate_limiter = rate_limiter
        self.cache = cache

    def call(
        self,
        service: str,
        operation: str,
        target: str,
        params: Optional[Dict],
        fetch: Callable[[], Any],
        cost: int = None,
        use_cache: bool = True,
        category: str = None,
    ) -> Any:
        cost = self.rate_limiter.cost_for(service, operation) if cost is None else cost
        key = make_cache_key(operation, target, params, service=service)

        if use_cache and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"💾 {service}.{operation} {target} served from cache")
                return cached

        if not self.rate_limiter.can_make_request(service, cost):
            retry_after = max(
                self.rate_limiter.time_until_reset(service),
                self.rate_limiter.time_until_credits(service, cost),
            )
            raise QuotaExceededError(
                f"{service} rate limit reached for {operation}",
                retry_after=retry_after or None,
                service=service,
            )

        started = time.monotonic()
        try:
            result = fetch()
        except Exception as e:
            self.rate_limiter.record_failed_request(service, str(e), operation=operation)
            logger.warning(
                f"⚠️ {service}.{operation} failed for {target}: {e}",
                extra={
                    "operation": f"{service}.{operation}",
                    "duration_ms": round((time.monotonic() - started) * 1000, 1),
                    "outcome": "error",
                },
            )
            raise

        self.rate_limiter.record_request(service, cost, operation=operation)
        logger.info(
            f"🌐 {service}.{operation} {target}",
            extra={
                "operation": f"{service}.{operation}",
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
                "outcome": "ok",
                "credits_used": cost,
            },
        )

        if use_cache and self.cache is not None:
            self.cache.set(key, category or operation, result, target=target, credits_saved=cost)
        return result
