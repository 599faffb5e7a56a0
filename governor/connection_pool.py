"""
Connection Pool: reuse expensive connections (MongoDB clients, IMAP
sessions) across jobs.

Rules:
- At most one live connection per (resource class, identifier).
- A connection older than the TTL is replaced even if it still works.
- Health is checked lazily on acquire with a cheap probe (ping / NOOP).
- When a class is at its maximum, the least recently used idle connection
  is closed to make room. If every connection is in use, acquire raises
  PoolExhaustedError instead of waiting.
- Shutdown errors are logged, never raised.

One pool per process, built by the composition root (main.py) and passed
to whoever needs it. `close_all()` runs at exit.
"""

import imaplib
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Optional, Tuple

from pymongo import MongoClient
from pymongo.errors import PyMongoError

import config
from governor.alerts import AlertLevel, notify
from governor.errors import (
    ConfigurationError,
    GovernorError,
    PoolExhaustedError,
    TransientResourceError,
)
from utils.logging_utils import retry_with_backoff

logger = logging.getLogger("governor.connection_pool")

DB = "db"
IMAP = "imap"

# (min, max) accepted by configure()
MAX_DB_RANGE = (1, 50)
MAX_IMAP_RANGE = (1, 10)
TTL_RANGE = (60, 3600)


def _clamp(value: int, bounds: Tuple[int, int]) -> int:
    return max(bounds[0], min(bounds[1], int(value)))


# ── Resources ────────────────────────────────────────────────────────
# Anything with validate() -> bool and shutdown() can be pooled.


class MongoResource:
    """A dedicated MongoClient, probed with `ping`."""

    def __init__(self, url: str, timeout_ms: int = None):
        timeout_ms = timeout_ms or config.MONGO_TIMEOUT_MS
        self.client = MongoClient(
            url,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )

    def validate(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    def shutdown(self):
        self.client.close()


class ImapResource:
    """A logged-in IMAP4_SSL session, probed with NOOP."""

    def __init__(self, host: str, port: int, username: str, password: str, timeout: int = None):
        self.username = username
        self.conn = self._connect(host, port, username, password, timeout or config.IMAP_TIMEOUT)

    @staticmethod
    @retry_with_backoff(max_retries=2, initial_delay=1.0, exceptions=(OSError, imaplib.IMAP4.abort))
    def _connect(host, port, username, password, timeout):
        conn = imaplib.IMAP4_SSL(host, port, timeout=timeout)
        try:
            conn.login(username, password)
        except imaplib.IMAP4.error:
            conn.shutdown()
            raise
        return conn

    def validate(self) -> bool:
        try:
            status, _ = self.conn.noop()
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    def shutdown(self):
        self.conn.logout()


def mongo_factory(url: str = None) -> Callable[[str], MongoResource]:
    """Factory for the `db` class. The identifier names the logical connection."""
    url = url or config.DATABASE_URL

    def create(identifier: str) -> MongoResource:
        return MongoResource(url)

    return create


def imap_factory(accounts: Dict[str, str] = None, host: str = None, port: int = None) -> Callable[[str], ImapResource]:
    """Factory for the `imap` class. The identifier is the mailbox address."""
    accounts = config.IMAP_ACCOUNTS if accounts is None else accounts
    host = host or config.IMAP_HOST
    port = port or config.IMAP_PORT

    def create(identifier: str) -> ImapResource:
        if identifier not in accounts:
            raise ConfigurationError(f"No IMAP credentials configured for {identifier}")
        return ImapResource(host, port, identifier, accounts[identifier])

    return create


# ── Pool ─────────────────────────────────────────────────────────────


class PooledConnection:
    def __init__(self, identifier: str, resource, now: float):
        self.identifier = identifier
        self.resource = resource
        self.created_at = now
        self.last_used_at = now
        self.in_use = 0

    def age(self, now: float) -> float:
        return now - self.created_at


class ConnectionPool:
    """
    Usage:
        pool = ConnectionPool()
        pool.register("imap", imap_factory(), max_connections=3)
        with pool.borrow("imap", "sales@example.com") as session:
            session.conn.select("INBOX")
    """

    def __init__(
        self,
        ttl: int = None,
        sweep_interval: int = None,
        clock: Callable[[], float] = time.monotonic,
        alert_sender: Callable = None,
        alert_interval: int = None,
    ):
        self.ttl = ttl if ttl is not None else config.POOL_CONNECTION_TTL
        self.sweep_interval = sweep_interval if sweep_interval is not None else config.POOL_SWEEP_INTERVAL
        self._clock = clock
        self.alert_interval = alert_interval if alert_interval is not None else config.POOL_ALERT_INTERVAL
        self._alert_sender = alert_sender or notify
        self._lock = threading.RLock()
        self._factories: Dict[str, Callable] = {}
        self._max: Dict[str, int] = {}
        self._entries: Dict[str, Dict[str, PooledConnection]] = {}
        self._last_sweep = clock()
        self._last_alert: Dict[str, float] = {}
        self._counters = {"created": 0, "reused": 0, "evicted": 0, "expired": 0, "unhealthy": 0}

    def register(self, resource_class: str, factory: Callable, max_connections: int):
        if max_connections < 1:
            raise ConfigurationError(f"max_connections for '{resource_class}' must be >= 1")
        with self._lock:
            self._factories[resource_class] = factory
            self._max[resource_class] = max_connections
            self._entries.setdefault(resource_class, {})

    def configure(self, max_db_connections: int = None, max_imap_connections: int = None, ttl: int = None):
        """Adjust limits at runtime. Values are clamped to safe ranges."""
        with self._lock:
            if max_db_connections is not None:
                self._max[DB] = _clamp(max_db_connections, MAX_DB_RANGE)
            if max_imap_connections is not None:
                self._max[IMAP] = _clamp(max_imap_connections, MAX_IMAP_RANGE)
            if ttl is not None:
                self.ttl = _clamp(ttl, TTL_RANGE)
        logger.info(
            "⚙️ Pool configured",
            extra={"max": dict(self._max), "ttl": self.ttl},
        )

    # ── Acquire / release ────────────────────────────────────────────

    def acquire(self, resource_class: str, identifier: str):
        """Return a live resource for identifier, creating or evicting as needed."""
        with self._lock:
            entries = self._class_entries(resource_class)
            self._maybe_sweep()
            now = self._clock()

            entry = entries.get(identifier)
            if entry is not None:
                if entry.age(now) >= self.ttl:
                    self._counters["expired"] += 1
                    self._discard(resource_class, entry, "expired")
                elif not self._healthy(entry):
                    self._counters["unhealthy"] += 1
                    self._discard(resource_class, entry, "unhealthy")
                else:
                    entry.last_used_at = now
                    entry.in_use += 1
                    self._counters["reused"] += 1
                    logger.debug(f"♻️ Reusing {resource_class} connection {identifier}")
                    return entry.resource

            limit = self._max[resource_class]
            if len(entries) < limit or self._evict_one(resource_class, entries):
                entry = self._create(resource_class, identifier)
                entries[identifier] = entry
                entry.in_use += 1
                return entry.resource
            alert_due = self._exhaustion_alert_due(resource_class, now)

        # Every slot is in use. Alerting happens outside the lock.
        logger.warning(
            f"⚠️ {resource_class} pool exhausted ({limit} in use)",
            extra={"resource_class": resource_class, "identifier": identifier},
        )
        if alert_due:
            self._alert_sender(
                f"Connection pool `{resource_class}` is exhausted ({limit} max).",
                AlertLevel.WARNING,
                "⚠️ Connection Pool Exhausted",
            )
        raise PoolExhaustedError(f"{resource_class} pool is full ({limit}) and every connection is in use")

    def release(self, resource_class: str, identifier: str):
        """Hand a connection back. It stays open for reuse."""
        with self._lock:
            entry = self._entries.get(resource_class, {}).get(identifier)
            if entry is None:
                return
            entry.in_use = max(0, entry.in_use - 1)
            entry.last_used_at = self._clock()

    def close(self, resource_class: str, identifier: str) -> bool:
        with self._lock:
            entry = self._entries.get(resource_class, {}).get(identifier)
            if entry is None:
                return False
            self._discard(resource_class, entry, "closed")
            return True

    def close_all(self):
        with self._lock:
            total = 0
            for resource_class, entries in self._entries.items():
                for entry in list(entries.values()):
                    self._discard(resource_class, entry, "shutdown")
                    total += 1
        if total:
            logger.info(f"🔌 Closed {total} pooled connection(s)")

    @contextmanager
    def borrow(self, resource_class: str, identifier: str):
        resource = self.acquire(resource_class, identifier)
        try:
            yield resource
        finally:
            self.release(resource_class, identifier)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_all()
        return False

    # ── Reporting ────────────────────────────────────────────────────

    def stats(self) -> Dict:
        with self._lock:
            now = self._clock()
            classes = {}
            for resource_class, entries in self._entries.items():
                classes[resource_class] = {
                    "active": len(entries),
                    "in_use": sum(1 for e in entries.values() if e.in_use),
                    "max": self._max.get(resource_class),
                    "connections": {
                        ident: {
                            "age_seconds": round(e.age(now), 1),
                            "idle_seconds": round(now - e.last_used_at, 1),
                            "in_use": e.in_use,
                        }
                        for ident, e in entries.items()
                    },
                }
            return {"ttl": self.ttl, "classes": classes, **self._counters}

    def test_all_connections(self) -> Dict[str, Dict[str, bool]]:
        """Probe every pooled connection. Failed ones are closed."""
        report = {}
        with self._lock:
            for resource_class, entries in self._entries.items():
                report[resource_class] = {}
                for identifier, entry in list(entries.items()):
                    healthy = self._healthy(entry)
                    report[resource_class][identifier] = healthy
                    if not healthy and not entry.in_use:
                        self._discard(resource_class, entry, "failed health test")
        return report

    # ── Internals ────────────────────────────────────────────────────

    def _class_entries(self, resource_class: str) -> Dict[str, PooledConnection]:
        if resource_class not in self._factories:
            raise ConfigurationError(f"Unknown resource class '{resource_class}'")
        return self._entries[resource_class]

    def _create(self, resource_class: str, identifier: str) -> PooledConnection:
        started = time.monotonic()
        try:
            resource = self._factories[resource_class](identifier)
        except GovernorError:
            raise
        except Exception as e:
            logger.error(
                f"❌ Failed to open {resource_class} connection {identifier}: {e}",
                extra={"operation": "pool.create", "resource_class": resource_class, "outcome": "error"},
            )
            raise TransientResourceError(f"Could not open {resource_class} connection {identifier}: {e}") from e

        self._counters["created"] += 1
        logger.info(
            f"🔌 Opened {resource_class} connection {identifier}",
            extra={
                "operation": "pool.create",
                "resource_class": resource_class,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
                "outcome": "created",
            },
        )
        return PooledConnection(identifier, resource, self._clock())

    @staticmethod
    def _healthy(entry: PooledConnection) -> bool:
        try:
            return bool(entry.resource.validate())
        except Exception as e:
            logger.debug(f"Health probe raised for {entry.identifier}: {e}")
            return False

    @staticmethod
    def _least_recently_used(entries: Dict[str, PooledConnection]) -> Optional[PooledConnection]:
        idle = [e for e in entries.values() if not e.in_use]
        if not idle:
            return None
        return min(idle, key=lambda e: (e.last_used_at, e.identifier))

    def _evict_one(self, resource_class: str, entries: Dict[str, PooledConnection]) -> bool:
        victim = self._least_recently_used(entries)
        if victim is None:
            return False
        self._counters["evicted"] += 1
        self._discard(resource_class, victim, "evicted (LRU)")
        return True

    def _exhaustion_alert_due(self, resource_class: str, now: float) -> bool:
        """At most one exhaustion alert per resource class per alert_interval."""
        last = self._last_alert.get(resource_class)
        if last is not None and now - last < self.alert_interval:
            return False
        self._last_alert[resource_class] = now
        return True

    def _discard(self, resource_class: str, entry: PooledConnection, reason: str):
        try:
            entry.resource.shutdown()
        except Exception as e:
            logger.warning(f"⚠️ Error closing {resource_class} connection {entry.identifier}: {e}")
        self._entries[resource_class].pop(entry.identifier, None)
        logger.debug(f"🔌 {resource_class} connection {entry.identifier} {reason}")

    def _maybe_sweep(self):
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        removed = 0
        for resource_class, entries in self._entries.items():
            for entry in list(entries.values()):
                if entry.in_use:
                    continue
                if entry.age(now) >= self.ttl:
                    self._counters["expired"] += 1
                    self._discard(resource_class, entry, "expired (sweep)")
                    removed += 1
                elif not self._healthy(entry):
                    self._counters["unhealthy"] += 1
                    self._discard(resource_class, entry, "unhealthy (sweep)")
                    removed += 1
        if removed:
            logger.info(f"🧹 Pool sweep removed {removed} connection(s)")
