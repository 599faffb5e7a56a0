"""
Rate Limiter: multi-window admission control and quota accounting for
metered external APIs (DataForSEO, Tomba, ...).

Every guarded service is described by data (config.SERVICE_LIMITS):

    windows       {name: {"seconds": N, "limit": M}}   request counts
    monthly_quota credits available over a rolling 30 days
    costs         {operation: credits}

Usage is an append-only log (MongoDB `api_usage` or in-memory). Admission
and recording are separate calls: callers check `can_make_request`, do the
work, then `record_request`. A denial never writes to the log.

Storage failure policy:
    can_make_request      fail-closed  (unreachable log -> deny, protects spend)
    statistics / waits    fail-open    (unreachable log -> zeros)
    record_request        logged, returns False, never raises

Check and record are not atomic across processes, so concurrent workers can
over-admit by a few requests at a window boundary.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

import config
from governor.alerts import AlertLevel, notify
from governor.clock import utcnow
from governor.errors import ConfigurationError

logger = logging.getLogger("governor.rate_limiter")

MONTH_SECONDS = 2592000  # 30 days


class UsageStoreError(Exception):
    """Usage log could not be read or written."""


class ServiceLimits:
    """Per-service limits, built from a config dict."""

    def __init__(self, name: str, windows: Dict[str, Dict], monthly_quota: int = None,
                 costs: Dict[str, int] = None):
        if not windows:
            raise ConfigurationError(f"Service '{name}' has no rate limit windows")
        self.name = name
        # Shortest window first so the cheapest check denies first
        self.windows = dict(sorted(
            ((w, {"seconds": int(v["seconds"]), "limit": int(v["limit"])}) for w, v in windows.items()),
            key=lambda item: item[1]["seconds"],
        ))
        self.monthly_quota = monthly_quota
        self.costs = costs or {"default": 1}

    @classmethod
    def from_config(cls, name: str, settings: Dict) -> "ServiceLimits":
        try:
            return cls(
                name,
                settings["windows"],
                monthly_quota=settings.get("monthly_quota"),
                costs=settings.get("costs"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid limits for service '{name}': {e}") from e

    @property
    def longest_window(self) -> int:
        return max(w["seconds"] for w in self.windows.values())

    def cost_for(self, operation: Optional[str]) -> int:
        return int(self.costs.get(operation or "default", self.costs.get("default", 1)))


# ── Usage logs ───────────────────────────────────────────────────────


class MongoUsageLog:
    """Usage records in the `api_usage` collection."""

    def __init__(self, collection):
        self._collection = collection

    def append(self, record: Dict):
        try:
            self._collection.insert_one(record)
        except PyMongoError as e:
            raise UsageStoreError(str(e)) from e

    def summarize(self, service: str, since: datetime) -> Dict:
        pipeline = [
            {"$match": {"service_name": service, "timestamp": {"$gte": since}}},
            {
                "$group": {
                    "_id": None,
                    "requests": {"$sum": 1},
                    "credits": {"$sum": "$credits_used"},
                    "oldest": {"$min": "$timestamp"},
                }
            },
        ]
        try:
            results = list(self._collection.aggregate(pipeline))
        except PyMongoError as e:
            raise UsageStoreError(str(e)) from e
        if not results:
            return {"requests": 0, "credits": 0, "oldest": None}
        row = results[0]
        return {"requests": row["requests"], "credits": row["credits"] or 0, "oldest": row["oldest"]}

    def credit_records(self, service: str, since: datetime) -> List[Tuple[datetime, int]]:
        """(timestamp, credits) of credit-bearing records, oldest first."""
        try:
            cursor = self._collection.find(
                {"service_name": service, "timestamp": {"$gte": since}, "credits_used": {"$gt": 0}},
                {"timestamp": 1, "credits_used": 1},
            ).sort("timestamp", ASCENDING)
            return [(doc["timestamp"], doc["credits_used"]) for doc in cursor]
        except PyMongoError as e:
            raise UsageStoreError(str(e)) from e

    def prune(self, before: datetime) -> int:
        try:
            return self._collection.delete_many({"timestamp": {"$lt": before}}).deleted_count
        except PyMongoError as e:
            raise UsageStoreError(str(e)) from e


class MemoryUsageLog:
    """In-process usage log for dry runs and tests."""

    def __init__(self):
        self._records: List[Dict] = []
        self._lock = threading.Lock()

    def append(self, record: Dict):
        with self._lock:
            self._records.append(dict(record))

    def summarize(self, service: str, since: datetime) -> Dict:
        with self._lock:
            rows = [r for r in self._records if r["service_name"] == service and r["timestamp"] >= since]
        if not rows:
            return {"requests": 0, "credits": 0, "oldest": None}
        return {
            "requests": len(rows),
            "credits": sum(r["credits_used"] for r in rows),
            "oldest": min(r["timestamp"] for r in rows),
        }

    def credit_records(self, service: str, since: datetime) -> List[Tuple[datetime, int]]:
        with self._lock:
            rows = [
                (r["timestamp"], r["credits_used"]) for r in self._records
                if r["service_name"] == service and r["timestamp"] >= since and r["credits_used"] > 0
            ]
        return sorted(rows, key=lambda row: row[0])

    def prune(self, before: datetime) -> int:
        with self._lock:
            kept = [r for r in self._records if r["timestamp"] >= before]
            removed = len(self._records) - len(kept)
            self._records = kept
        return removed

    def __len__(self):
        return len(self._records)


# ── Limiter ──────────────────────────────────────────────────────────


class RateLimiter:
    """
    Admission control over a usage log.

    Usage:
        limiter = RateLimiter(MongoUsageLog(db["api_usage"]))
        if limiter.can_make_request("dataforseo", expected_cost=2):
            result = call_api()
            limiter.record_request("dataforseo", 2, operation="competitor_analysis")
    """

    def __init__(
        self,
        usage_log,
        service_limits: Dict[str, Dict] = None,
        clock: Callable[[], datetime] = utcnow,
        alert_sender: Callable = None,
    ):
        self.usage_log = usage_log
        self._clock = clock
        self._alert_sender = alert_sender or notify
        self._services = {
            name: ServiceLimits.from_config(name, settings)
            for name, settings in (service_limits if service_limits is not None else config.SERVICE_LIMITS).items()
        }
        # service -> {level: "YYYY-MM-DD"} of the last quota alert
        self._alerts_sent: Dict[str, Dict[str, str]] = {}

    # ── Configuration ────────────────────────────────────────────────

    def limits_for(self, service: str) -> ServiceLimits:
        limits = self._services.get(service)
        if limits is None:
            raise ConfigurationError(f"No rate limits configured for service '{service}'")
        return limits

    @property
    def services(self) -> List[str]:
        return list(self._services)

    def cost_for(self, service: str, operation: str = None) -> int:
        """Credit cost of one call to `operation` (falls back to the default cost)."""
        return self.limits_for(service).cost_for(operation)

    # ── Admission ────────────────────────────────────────────────────

    def can_make_request(self, service: str, expected_cost: int = 1) -> bool:
        """True if every window has headroom and the monthly quota covers expected_cost."""
        limits = self.limits_for(service)
        now = self._clock()

        try:
            for window, bounds in limits.windows.items():
                usage = self.usage_log.summarize(service, now - timedelta(seconds=bounds["seconds"]))
                if usage["requests"] >= bounds["limit"]:
                    logger.warning(
                        f"🚦 {service} {window} limit reached: {usage['requests']}/{bounds['limit']}",
                        extra={"service": service, "window": window, "requests": usage["requests"],
                               "limit": bounds["limit"], "outcome": "denied"},
                    )
                    return False

            remaining = self._remaining_credits(limits, now)
            if remaining is not None and remaining < expected_cost:
                logger.warning(
                    f"🚦 {service} insufficient credits: need {expected_cost}, have {remaining}",
                    extra={"service": service, "expected_cost": expected_cost,
                           "remaining_credits": remaining, "outcome": "denied"},
                )
                return False
        except UsageStoreError as e:
            logger.error(
                f"❌ Usage log unavailable, denying {service} request: {e}",
                extra={"service": service, "outcome": "denied"},
            )
            return False

        return True

    def _remaining_credits(self, limits: ServiceLimits, now: datetime) -> Optional[int]:
        if limits.monthly_quota is None:
            return None
        used = self.usage_log.summarize(limits.name, now - timedelta(seconds=MONTH_SECONDS))["credits"]
        return limits.monthly_quota - used

    # ── Recording ────────────────────────────────────────────────────

    def record_request(
        self,
        service: str,
        credits_used: int = 1,
        success: bool = True,
        error_message: str = None,
        operation: str = None,
    ) -> bool:
        """Append a usage record. Returns False (and logs) if the log is unavailable."""
        self.limits_for(service)
        record = {
            "service_name": service,
            "operation": operation,
            "timestamp": self._clock(),
            "credits_used": credits_used,
            "success": success,
            "error_message": error_message,
        }
        try:
            self.usage_log.append(record)
        except UsageStoreError as e:
            logger.warning(
                f"⚠️ Failed to record {service} usage: {e}",
                extra={"service": service, "credits_used": credits_used},
            )
            return False
        logger.debug(
            f"{service} usage recorded: {credits_used} credit(s)",
            extra={"service": service, "operation": operation, "credits_used": credits_used, "success": success},
        )
        return True

    def record_failed_request(self, service: str, error_message: str, operation: str = None,
                              credits_used: int = 0) -> bool:
        """A failed call still counts as a request against the windows."""
        return self.record_request(
            service, credits_used=credits_used, success=False,
            error_message=error_message, operation=operation,
        )

    # ── Waiting ──────────────────────────────────────────────────────

    def time_until_reset(self, service: str, window: str = None) -> float:
        """
        Seconds until a saturated window admits again.

        For a named window: 0 unless it is at its limit, else the time until
        its oldest record falls out. Without a window: the longest such wait
        across all saturated windows.
        """
        limits = self.limits_for(service)
        if window is not None and window not in limits.windows:
            raise ConfigurationError(f"Service '{service}' has no '{window}' window")

        names = [window] if window else list(limits.windows)
        now = self._clock()
        wait = 0.0
        try:
            for name in names:
                bounds = limits.windows[name]
                usage = self.usage_log.summarize(service, now - timedelta(seconds=bounds["seconds"]))
                if usage["requests"] >= bounds["limit"] and usage["oldest"] is not None:
                    elapsed = (now - usage["oldest"]).total_seconds()
                    wait = max(wait, bounds["seconds"] - elapsed)
        except UsageStoreError as e:
            logger.warning(f"⚠️ Usage log unavailable, reporting no wait for {service}: {e}")
            return 0.0
        return max(0.0, wait)

    def time_until_credits(self, service: str, expected_cost: int = 1) -> float:
        """
        Seconds until enough monthly credits age out of the rolling 30 days
        to cover expected_cost. 0 when the quota already covers it or the
        service has no quota.
        """
        limits = self.limits_for(service)
        if limits.monthly_quota is None:
            return 0.0
        now = self._clock()
        try:
            records = self.usage_log.credit_records(service, now - timedelta(seconds=MONTH_SECONDS))
        except UsageStoreError as e:
            logger.warning(f"⚠️ Usage log unavailable, reporting no credit wait for {service}: {e}")
            return 0.0

        excess = sum(credits for _, credits in records) + expected_cost - limits.monthly_quota
        if excess <= 0:
            return 0.0
        freed = 0
        for timestamp, credits in records:
            freed += credits
            if freed >= excess:
                return max(0.0, MONTH_SECONDS - (now - timestamp).total_seconds())

        # expected_cost is larger than the whole quota
        logger.warning(
            f"⚠️ {service} call costing {expected_cost} exceeds the monthly quota of {limits.monthly_quota}",
            extra={"service": service, "expected_cost": expected_cost},
        )
        return float(MONTH_SECONDS)

    # ── Reporting ────────────────────────────────────────────────────

    def get_usage_statistics(self, service: str) -> Dict:
        limits = self.limits_for(service)
        now = self._clock()
        stats = {"service": service, "windows": {}, "monthly_quota": limits.monthly_quota}

        try:
            for name, bounds in limits.windows.items():
                usage = self.usage_log.summarize(service, now - timedelta(seconds=bounds["seconds"]))
                percentage = round(usage["requests"] / bounds["limit"] * 100, 2) if bounds["limit"] else 0.0
                stats["windows"][name] = {
                    "requests": usage["requests"],
                    "credits": usage["credits"],
                    "limit": bounds["limit"],
                    "remaining": max(0, bounds["limit"] - usage["requests"]),
                    "percentage": percentage,
                    "reset_in": self._window_wait(bounds, usage, now),
                }
            remaining = self._remaining_credits(limits, now)
        except UsageStoreError as e:
            logger.warning(f"⚠️ Usage log unavailable, reporting empty stats for {service}: {e}")
            for name, bounds in limits.windows.items():
                stats["windows"][name] = {
                    "requests": 0, "credits": 0, "limit": bounds["limit"],
                    "remaining": bounds["limit"], "percentage": 0.0, "reset_in": 0.0,
                }
            remaining = limits.monthly_quota
            stats["store_available"] = False

        stats["remaining_credits"] = remaining
        return stats

    @staticmethod
    def _window_wait(bounds: Dict, usage: Dict, now: datetime) -> float:
        if usage["requests"] < bounds["limit"] or usage["oldest"] is None:
            return 0.0
        return max(0.0, bounds["seconds"] - (now - usage["oldest"]).total_seconds())

    def get_health_status(self, service: str) -> Dict:
        """healthy / warning (>=80% of a window) / critical (>=90%)."""
        stats = self.get_usage_statistics(service)
        status = "healthy"
        issues = []
        recommendations = []

        for name, window in stats["windows"].items():
            pct = window["percentage"]
            if pct >= config.USAGE_CRITICAL_PERCENT:
                status = "critical"
                issues.append(f"{name} usage at {pct:.1f}%")
                recommendations.append(f"Pause {service} calls until the {name} window resets")
            elif pct >= config.USAGE_WARNING_PERCENT:
                if status != "critical":
                    status = "warning"
                issues.append(f"{name} usage at {pct:.1f}%")
                recommendations.append(f"Reduce {service} batch sizes")

        return {
            "service": service,
            "status": status,
            "issues": issues,
            "recommendations": recommendations,
            "usage": stats,
        }

    def get_recommended_batch_size(self, service: str, max_batch_size: int = 10) -> int:
        """Largest batch every window can still admit, at least 1."""
        stats = self.get_usage_statistics(service)
        available = min(w["remaining"] for w in stats["windows"].values())
        if stats["remaining_credits"] is not None:
            available = min(available, stats["remaining_credits"])
        return max(1, min(available, max_batch_size))

    def check_quota_alerts(self, service: str) -> Optional[str]:
        """
        Alert when monthly credit usage crosses the warning or critical
        threshold. Each level fires at most once per service per day.
        Returns the level sent, if any.
        """
        limits = self.limits_for(service)
        if not limits.monthly_quota:
            return None
        stats = self.get_usage_statistics(service)
        if stats.get("store_available") is False:
            return None

        used = limits.monthly_quota - stats["remaining_credits"]
        ratio = used / limits.monthly_quota
        if ratio >= config.QUOTA_CRITICAL_THRESHOLD:
            level = AlertLevel.CRITICAL
        elif ratio >= config.QUOTA_WARNING_THRESHOLD:
            level = AlertLevel.WARNING
        else:
            return None

        today = self._clock().strftime("%Y-%m-%d")
        sent = self._alerts_sent.setdefault(service, {})
        if sent.get(level) == today:
            return None
        sent[level] = today

        message = (
            f"{service} monthly credits: {used}/{limits.monthly_quota} used ({ratio:.0%}).\n"
            f"Remaining: {stats['remaining_credits']}"
        )
        logger.warning(f"📊 Quota {level}: {message}", extra={"service": service, "quota_ratio": ratio})
        self._alert_sender(message, level, f"📊 {service} quota {level}")
        return level

    # ── Maintenance ──────────────────────────────────────────────────

    def prune(self, older_than: datetime = None) -> int:
        """Delete usage rows no window can see anymore."""
        if older_than is None:
            longest = max(limits.longest_window for limits in self._services.values())
            older_than = self._clock() - timedelta(seconds=longest)
        try:
            removed = self.usage_log.prune(older_than)
        except UsageStoreError as e:
            logger.warning(f"⚠️ Usage prune failed: {e}")
            return 0
        if removed:
            logger.info(f"🧹 Pruned {removed} usage records", extra={"removed": removed})
        return removed
