"""
Response Cache: TTL cache for paid API responses.

Each entry belongs to a category (backlinks, domain_analysis, ...) whose TTL
comes from config.CACHE_TTLS. Expiry is lazy: an expired entry is deleted
when it is read, and roughly 1% of writes also purge everything expired.

Keys are built with make_cache_key() from (operation, normalized target,
canonical params), so the same request always maps to the same key no
matter how its parameters were ordered.
"""

import hashlib
import json
import logging
import random
import re
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from pymongo import DESCENDING

import config
from governor.clock import utcnow
from governor.errors import CorruptCacheEntryError

logger = logging.getLogger("governor.cache")

DEFAULT_CATEGORY = "default"

# Endpoint fragment -> category, checked in order
ENDPOINT_CATEGORIES = [
    ("backlinks/backlinks", "backlinks"),
    ("backlinks/summary", "summary"),
    ("backlinks/competitors", "competitor_analysis"),
    ("domain_analytics", "domain_analysis"),
]

_SCHEME_RE = re.compile(r"^https?://")


def normalize_target(target: Optional[str]) -> str:
    """'  HTTPS://Example.com/ ' -> 'example.com'"""
    if not target:
        return ""
    target = _SCHEME_RE.sub("", target.strip().lower())
    return target.rstrip("/")


def canonical_params(params: Any) -> str:
    """JSON with keys sorted at every level."""
    if params is None:
        params = {}
    return json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)


def make_cache_key(operation: str, target: str, params: Any = None, service: str = None) -> str:
    digest = hashlib.sha256(canonical_params(params).encode("utf-8")).hexdigest()[:16]
    key = f"{operation}_{normalize_target(target)}_{digest}"
    return f"{service}_{key}" if service else key


def category_for_endpoint(endpoint: str) -> str:
    """Map an API endpoint path to a cache category."""
    for fragment, category in ENDPOINT_CATEGORIES:
        if fragment in (endpoint or ""):
            return category
    return DEFAULT_CATEGORY


# ── Stores ───────────────────────────────────────────────────────────
# Entries are dicts: key, category, target, payload (JSON text), created_at,
# expires_at, access_count, last_accessed_at, credits_saved.


class MongoCacheStore:
    """Entries in the `api_cache` collection."""

    def __init__(self, collection):
        self._collection = collection

    def find(self, key: str) -> Optional[Dict]:
        return self._collection.find_one({"key": key}, {"_id": 0})

    def upsert(self, entry: Dict):
        self._collection.update_one({"key": entry["key"]}, {"$set": entry}, upsert=True)

    def touch(self, key: str, now: datetime):
        self._collection.update_one(
            {"key": key},
            {"$inc": {"access_count": 1}, "$set": {"last_accessed_at": now}},
        )

    def delete(self, key: str) -> int:
        return self._collection.delete_one({"key": key}).deleted_count

    def delete_where(self, field: str = None, value: Any = None) -> int:
        query = {field: value} if field else {}
        return self._collection.delete_many(query).deleted_count

    def delete_expired(self, now: datetime) -> int:
        return self._collection.delete_many({"expires_at": {"$lte": now}}).deleted_count

    def summary(self, now: datetime) -> Dict:
        total = self._collection.count_documents({})
        active = self._collection.count_documents({"expires_at": {"$gt": now}})
        totals = list(self._collection.aggregate([
            {"$group": {
                "_id": None,
                "credits_saved": {"$sum": "$credits_saved"},
                "accesses": {"$sum": "$access_count"},
            }},
        ]))
        by_category = list(self._collection.aggregate([
            {"$match": {"expires_at": {"$gt": now}}},
            {"$group": {
                "_id": "$category",
                "entries": {"$sum": 1},
                "credits_saved": {"$sum": "$credits_saved"},
                "accesses": {"$sum": "$access_count"},
            }},
            {"$sort": {"credits_saved": DESCENDING}},
        ]))
        top_targets = list(self._collection.aggregate([
            {"$match": {"expires_at": {"$gt": now}}},
            {"$group": {
                "_id": "$target",
                "entries": {"$sum": 1},
                "accesses": {"$sum": "$access_count"},
                "credits_saved": {"$sum": "$credits_saved"},
            }},
            {"$sort": {"accesses": DESCENDING}},
            {"$limit": 10},
        ]))
        hits_24h = list(self._collection.aggregate([
            {"$match": {"last_accessed_at": {"$gte": now - timedelta(hours=24)}}},
            {"$group": {"_id": None, "hits": {"$sum": "$access_count"}}},
        ]))
        return {
            "total_entries": total,
            "active_entries": active,
            "expired_entries": total - active,
            "credits_saved": totals[0]["credits_saved"] if totals else 0,
            "accesses": totals[0]["accesses"] if totals else 0,
            "hits_24h": hits_24h[0]["hits"] if hits_24h else 0,
            "by_category": {row["_id"]: {k: v for k, v in row.items() if k != "_id"} for row in by_category},
            "top_targets": [{"target": row["_id"], **{k: v for k, v in row.items() if k != "_id"}} for row in top_targets],
        }


class MemoryCacheStore:
    """In-process entries for dry runs and tests."""

    def __init__(self):
        self._entries: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def find(self, key: str) -> Optional[Dict]:
        with self._lock:
            entry = self._entries.get(key)
            return dict(entry) if entry else None

    def upsert(self, entry: Dict):
        with self._lock:
            self._entries[entry["key"]] = dict(entry)

    def touch(self, key: str, now: datetime):
        with self._lock:
            entry = self._entries.get(key)
            if entry:
                entry["access_count"] = entry.get("access_count", 0) + 1
                entry["last_accessed_at"] = now

    def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    def delete_where(self, field: str = None, value: Any = None) -> int:
        with self._lock:
            doomed = [k for k, e in self._entries.items() if field is None or e.get(field) == value]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def delete_expired(self, now: datetime) -> int:
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e["expires_at"] <= now]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def summary(self, now: datetime) -> Dict:
        with self._lock:
            entries = [dict(e) for e in self._entries.values()]
        active = [e for e in entries if e["expires_at"] > now]

        by_category: Dict[str, Dict] = {}
        targets: Dict[str, Dict] = {}
        for e in active:
            cat = by_category.setdefault(e["category"], {"entries": 0, "credits_saved": 0, "accesses": 0})
            cat["entries"] += 1
            cat["credits_saved"] += e.get("credits_saved", 0)
            cat["accesses"] += e.get("access_count", 0)
            tgt = targets.setdefault(e.get("target", ""), {"entries": 0, "accesses": 0, "credits_saved": 0})
            tgt["entries"] += 1
            tgt["accesses"] += e.get("access_count", 0)
            tgt["credits_saved"] += e.get("credits_saved", 0)

        top = sorted(targets.items(), key=lambda item: item[1]["accesses"], reverse=True)[:10]
        cutoff = now - timedelta(hours=24)
        return {
            "total_entries": len(entries),
            "active_entries": len(active),
            "expired_entries": len(entries) - len(active),
            "credits_saved": sum(e.get("credits_saved", 0) for e in entries),
            "accesses": sum(e.get("access_count", 0) for e in entries),
            "hits_24h": sum(
                e.get("access_count", 0) for e in entries
                if e.get("last_accessed_at") and e["last_accessed_at"] >= cutoff
            ),
            "by_category": by_category,
            "top_targets": [{"target": t, **row} for t, row in top],
        }


# ── Cache ────────────────────────────────────────────────────────────


class ResponseCache:
    """
    Usage:
        cache = ResponseCache(MongoCacheStore(db["api_cache"]))
        key = make_cache_key("backlinks", "example.com", {"limit": 100})
        data = cache.get(key)
        if data is None:
            data = fetch()
            cache.set(key, "backlinks", data, target="example.com")
    """

    def __init__(
        self,
        store,
        ttls: Dict[str, int] = None,
        clock: Callable[[], datetime] = utcnow,
        purge_probability: float = None,
        rng: Callable[[], float] = random.random,
    ):
        self.store = store
        self.ttls = dict(ttls if ttls is not None else config.CACHE_TTLS)
        self.ttls.setdefault(DEFAULT_CATEGORY, 43200)
        self._clock = clock
        self.purge_probability = (
            config.CACHE_PURGE_PROBABILITY if purge_probability is None else purge_probability
        )
        self._rng = rng
        self._hits = 0
        self._misses = 0

    def ttl_for(self, category: str) -> int:
        return self.ttls.get(category, self.ttls[DEFAULT_CATEGORY])

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None on miss or expiry."""
        entry = self.store.find(key)
        now = self._clock()

        if entry is None:
            self._misses += 1
            return None

        if entry["expires_at"] <= now:
            self.store.delete(key)
            self._misses += 1
            logger.debug(f"Cache expired: {key}")
            return None

        try:
            value = json.loads(entry["payload"])
        except (TypeError, ValueError) as e:
            self.store.delete(key)
            logger.error(f"❌ Corrupt cache entry {key} deleted: {e}")
            raise CorruptCacheEntryError(f"Cache entry {key} could not be decoded") from e

        self.store.touch(key, now)
        self._hits += 1
        logger.debug(f"💾 Cache hit: {key}")
        return value

    def set(
        self,
        key: str,
        category: str,
        value: Any,
        ttl_override: int = None,
        target: str = None,
        credits_saved: int = 1,
    ) -> bool:
        """Store a JSON-serializable value. None is never cached."""
        if value is None:
            return False

        ttl = ttl_override if ttl_override is not None else self.ttl_for(category)
        now = self._clock()
        entry = {
            "key": key,
            "category": category,
            "target": normalize_target(target),
            "payload": json.dumps(value, default=str),
            "created_at": now,
            "expires_at": now + timedelta(seconds=ttl),
            "access_count": 0,
            "last_accessed_at": None,
            "credits_saved": credits_saved,
        }
        self.store.upsert(entry)
        logger.debug(f"💾 Cached {key} ({category}, {ttl}s)")

        if self._rng() < self.purge_probability:
            self.purge_expired()
        return True

    # ── Invalidation ─────────────────────────────────────────────────

    def invalidate(self, key: str) -> int:
        return self.store.delete(key)

    def invalidate_category(self, category: str) -> int:
        removed = self.store.delete_where("category", category)
        logger.info(f"🧹 Invalidated {removed} '{category}' cache entries")
        return removed

    def invalidate_target(self, target: str) -> int:
        removed = self.store.delete_where("target", normalize_target(target))
        logger.info(f"🧹 Invalidated {removed} cache entries for {normalize_target(target)}")
        return removed

    def clear(self) -> int:
        removed = self.store.delete_where()
        logger.info(f"🧹 Cleared cache ({removed} entries)")
        return removed

    def purge_expired(self) -> int:
        removed = self.store.delete_expired(self._clock())
        if removed:
            logger.info(f"🧹 Purged {removed} expired cache entries", extra={"removed": removed})
        return removed

    # ── Reporting ────────────────────────────────────────────────────

    def stats(self) -> Dict:
        summary = self.store.summary(self._clock())
        lookups = self._hits + self._misses
        summary.update({
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 3) if lookups else 0.0,
        })
        return summary

    def health(self) -> Dict:
        stats = self.stats()
        health: Dict[str, Any] = {"status": "healthy", "issues": [], "recommendations": []}
        total = stats["total_entries"]

        if total:
            expired_ratio = stats["expired_entries"] / total
            if expired_ratio > config.CACHE_EXPIRED_WARNING_RATIO:
                health["status"] = "warning"
                health["issues"].append(f"High share of expired cache entries ({expired_ratio:.0%})")
                health["recommendations"].append("Purge expired entries more often")

        if stats["hits_24h"] < 10 and total > 50:
            health["issues"].append("Low cache utilization")
            health["recommendations"].append("Review cache TTL settings")

        return health
