#!/usr/bin/env python3
"""
Outreach Governor
=================

Runs background jobs for the outreach pipeline behind rate limits, a
response cache, pooled connections and lock-guarded token refresh.

Usage:
    python main.py run                      # continuous, until SIGTERM/SIGINT
    python main.py run --once               # one cycle, then exit
    python main.py enqueue email_search --payload '{"domain": "example.com"}' --priority 5
    python main.py status
    python main.py recent --limit 20
    python main.py refresh-tokens
    python main.py usage dataforseo
    python main.py cache-stats
    python main.py cache-clear --category backlinks
    python main.py pool-check
"""

import argparse
import atexit
import json
import sys
from typing import Callable, Dict

import config
import database
from governor.cache import MemoryCacheStore, MongoCacheStore, ResponseCache
from governor.clock import format_local
from governor.connection_pool import DB, IMAP, ConnectionPool, imap_factory, mongo_factory
from governor.errors import ConfigurationError
from governor.gateway import MeteredGateway
from governor.job_queue import MemoryJobQueue, MongoJobQueue
from governor.rate_limiter import MemoryUsageLog, MongoUsageLog, RateLimiter
from governor.scheduler import JobProcessor, RetryableFailure, Success, TerminalFailure
from governor.token_refresh import (
    CredentialStatus,
    FileRefreshLock,
    GoogleOAuthRefresher,
    MemoryCredentialStore,
    MemoryRefreshLock,
    MongoCredentialStore,
    MongoRefreshLock,
    TokenRefreshManager,
)
from utils.elk_logging import LogTimer
from utils.logging_utils import get_logger, setup_logging

logger = get_logger("main")


class Governor:
    """
    Composition root. Builds exactly one of each component for this process
    and wires the periodic maintenance tasks into the job processor.
    """

    def __init__(self, backend: str = None, handlers: Dict[str, Callable] = None,
                 pipeline_reconciler: Callable[[], object] = None):
        backend = (backend or config.STORAGE_BACKEND).lower()
        self.backend = backend

        if backend == "mongo":
            db = database.get_db()
            database.ensure_indexes(db)
            usage_log = MongoUsageLog(db[database.USAGE_COLLECTION])
            cache_store = MongoCacheStore(db[database.CACHE_COLLECTION])
            credential_store = MongoCredentialStore(db[database.CREDENTIALS_COLLECTION])
            self.queue = MongoJobQueue(db[database.JOBS_COLLECTION])
            locks = db[database.LOCKS_COLLECTION]
            if config.LOCK_BACKEND == "file":
                lock_factory = lambda rid: FileRefreshLock(rid)
            else:
                lock_factory = lambda rid: MongoRefreshLock(locks, rid)
        elif backend == "memory":
            usage_log = MemoryUsageLog()
            cache_store = MemoryCacheStore()
            credential_store = MemoryCredentialStore()
            self.queue = MemoryJobQueue()
            lock_factory = MemoryRefreshLock
        else:
            raise ConfigurationError(f"Unknown storage backend '{backend}'")

        self.pool = ConnectionPool()
        self.pool.register(DB, mongo_factory(), config.POOL_MAX_DB_CONNECTIONS)
        self.pool.register(IMAP, imap_factory(), config.POOL_MAX_IMAP_CONNECTIONS)

        self.rate_limiter = RateLimiter(usage_log)
        self.cache = ResponseCache(cache_store)
        self.gateway = MeteredGateway(self.rate_limiter, self.cache)
        self.token_manager = TokenRefreshManager(credential_store, GoogleOAuthRefresher(), lock_factory)

        self.processor = JobProcessor(self.queue)
        self.processor.register("refresh_token", self._refresh_token_job)
        for job_type, handler in (handlers or {}).items():
            self.processor.register(job_type, handler)

        self.processor.add_periodic_task("token_refresh", config.TOKEN_REFRESH_INTERVAL,
                                         self.token_manager.refresh_expiring)
        if pipeline_reconciler is not None:
            self.processor.add_periodic_task("pipeline_update", config.PIPELINE_UPDATE_INTERVAL,
                                             pipeline_reconciler)
        self.processor.add_periodic_task("stuck_jobs", config.STUCK_JOB_CHECK_INTERVAL,
                                         self.processor.recover_stuck_jobs)
        self.processor.add_periodic_task("cache_purge", config.CACHE_PURGE_INTERVAL,
                                         self.cache.purge_expired)
        self.processor.add_periodic_task("usage_prune", config.USAGE_PRUNE_INTERVAL,
                                         self.rate_limiter.prune)
        self.processor.add_periodic_task("quota_alerts", config.QUOTA_ALERT_INTERVAL,
                                         self._check_quota_alerts)

    def _refresh_token_job(self, payload: Dict):
        resource_id = payload["resource_id"]
        if self.token_manager.refresh(resource_id):
            return Success({"resource_id": resource_id})
        credential = self.token_manager.store.get(resource_id)
        if credential is None or credential.get("status") == CredentialStatus.NEEDS_REAUTH:
            return TerminalFailure(f"{resource_id} needs re-authorization")
        return RetryableFailure(f"Token refresh for {resource_id} did not complete")

    def _check_quota_alerts(self):
        return {service: self.rate_limiter.check_quota_alerts(service) for service in self.rate_limiter.services}

    def shutdown(self):
        self.processor.stop()
        self.pool.close_all()
        if self.backend == "mongo":
            database.close_client()


# ── Commands ─────────────────────────────────────────────────────────


def run(gov: Governor, once: bool = False):
    if once:
        summary = gov.processor.run_once()
        print(f"\n✅ Cycle complete: {json.dumps(summary)}")
        return
    gov.processor.install_signal_handlers()
    gov.processor.run_continuous()


def enqueue(gov: Governor, job_type: str, payload: str, priority: int, max_attempts: int, delay: float):
    try:
        data = json.loads(payload) if payload else {}
    except ValueError as e:
        print(f"❌ Invalid JSON payload: {e}")
        sys.exit(1)
    job_id = gov.processor.enqueue(job_type, data, priority=priority, max_attempts=max_attempts,
                                   delay_seconds=delay)
    print(f"📥 Queued {job_type} job {job_id}")


def show_status(gov: Governor):
    status = gov.processor.get_system_status()
    print(f"\n📊 System status at {format_local(status['timestamp'])}\n")
    print("Jobs (last 24h):")
    for name, count in status["jobs_24h"].items():
        print(f"   {name:<11} {count}")
    print(f"\nHandlers: {', '.join(status['handlers']) or '-'}")
    print("\nPeriodic tasks:")
    for name, task in status["periodic_tasks"].items():
        since = task["seconds_since_run"]
        print(f"   {name:<16} every {task['interval']}s, last run: {'never' if since is None else f'{since}s ago'}")
    print("\nRate limits:")
    for service in gov.rate_limiter.services:
        health = gov.rate_limiter.get_health_status(service)
        icon = {"healthy": "🟢", "warning": "🟡", "critical": "🔴"}[health["status"]]
        print(f"   {icon} {service}: {health['status']}" + (f" ({'; '.join(health['issues'])})" if health["issues"] else ""))


def show_recent(gov: Governor, limit: int):
    jobs = gov.processor.get_recent_jobs(limit)
    if not jobs:
        print("\n📭 No jobs yet.")
        return
    print(f"\n📋 Recent jobs ({len(jobs)})\n")
    for job in jobs:
        print(f"[{job['id']}] {job['type']:<20} {job['status']:<11} attempts={job['attempts']}/{job['max_attempts']}"
              f" created={format_local(job['created_at'])}")
        if job.get("error_message"):
            print(f"   └─ {job['error_message']}")


def refresh_tokens(gov: Governor):
    with LogTimer("token_refresh_pass", logger=logger):
        results = gov.token_manager.refresh_expiring()
    print(f"\n🔑 {results['refreshed']}/{results['checked']} token(s) refreshed, {results['failed']} failed")


def show_usage(gov: Governor, service: str):
    services = [service] if service else gov.rate_limiter.services
    for name in services:
        stats = gov.rate_limiter.get_usage_statistics(name)
        print(f"\n📈 {name}")
        for window, row in stats["windows"].items():
            print(f"   {window:<7} {row['requests']:>6}/{row['limit']:<6} ({row['percentage']:.1f}%)"
                  f" reset in {row['reset_in']:.0f}s")
        if stats["remaining_credits"] is not None:
            print(f"   credits remaining: {stats['remaining_credits']}/{stats['monthly_quota']}")
        print(f"   recommended batch size: {gov.rate_limiter.get_recommended_batch_size(name)}")


def show_cache_stats(gov: Governor):
    stats = gov.cache.stats()
    health = gov.cache.health()
    print(f"\n💾 Cache: {stats['active_entries']} active / {stats['total_entries']} total"
          f" ({stats['expired_entries']} expired)")
    print(f"   credits saved: {stats['credits_saved']}, accesses: {stats['accesses']}")
    for category, row in stats["by_category"].items():
        print(f"   {category:<20} {row['entries']} entries, {row['accesses']} hits")
    print(f"   health: {health['status']}")
    for issue in health["issues"]:
        print(f"   ⚠️ {issue}")


def clear_cache(gov: Governor, category: str = None, target: str = None, clear_all: bool = False):
    if category:
        removed = gov.cache.invalidate_category(category)
    elif target:
        removed = gov.cache.invalidate_target(target)
    elif clear_all:
        removed = gov.cache.clear()
    else:
        removed = gov.cache.purge_expired()
    print(f"\n🧹 Removed {removed} cache entries")


def pool_check(gov: Governor):
    report = gov.pool.test_all_connections()
    stats = gov.pool.stats()
    print(f"\n🔌 Pool (ttl {stats['ttl']}s)")
    for resource_class, info in stats["classes"].items():
        print(f"   {resource_class}: {info['active']}/{info['max']} open, {info['in_use']} in use")
        for identifier, healthy in report.get(resource_class, {}).items():
            print(f"      {'✅' if healthy else '❌'} {identifier}")


def main():
    parser = argparse.ArgumentParser(
        description="Outreach Governor - job processing with rate limits, caching and token refresh",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run --once
  python main.py enqueue refresh_token --payload '{"resource_id": "sales@example.com"}'
  python main.py usage tomba
        """
    )
    parser.add_argument("--backend", choices=["mongo", "memory"], default=None,
                        help="Storage backend (default: STORAGE_BACKEND)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Process jobs")
    run_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a job")
    enqueue_parser.add_argument("job_type", help="Handler name")
    enqueue_parser.add_argument("--payload", default="{}", help="JSON payload")
    enqueue_parser.add_argument("--priority", type=int, default=0, help="Higher runs first")
    enqueue_parser.add_argument("--max-attempts", type=int, default=None, help="Default: JOB_MAX_ATTEMPTS")
    enqueue_parser.add_argument("--delay", type=float, default=0, help="Seconds before the job is due")

    subparsers.add_parser("status", help="Job counts, periodic tasks, rate limit health")

    recent_parser = subparsers.add_parser("recent", help="List recent jobs")
    recent_parser.add_argument("--limit", type=int, default=20)

    subparsers.add_parser("refresh-tokens", help="Refresh tokens that expire soon")

    usage_parser = subparsers.add_parser("usage", help="API usage per window")
    usage_parser.add_argument("service", nargs="?", help="Service name (default: all)")

    subparsers.add_parser("cache-stats", help="Cache statistics and health")

    clear_parser = subparsers.add_parser("cache-clear", help="Invalidate cache entries (default: expired only)")
    clear_parser.add_argument("--category", help="Only this category")
    clear_parser.add_argument("--target", help="Only this domain/target")
    clear_parser.add_argument("--all", action="store_true", help="Everything")

    subparsers.add_parser("pool-check", help="Probe pooled connections")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    setup_logging(config.LOG_LEVEL, config.LOG_FILE, structured=config.LOG_STRUCTURED)
    try:
        for warning in config.validate_config():
            logger.warning(f"⚠️ {warning}")
        gov = Governor(backend=args.backend)
    except ConfigurationError as e:
        logger.error(f"❌ {e}")
        sys.exit(2)
    atexit.register(gov.shutdown)

    if args.command == "run":
        run(gov, once=args.once)
    elif args.command == "enqueue":
        enqueue(gov, args.job_type, args.payload, args.priority, args.max_attempts, args.delay)
    elif args.command == "status":
        show_status(gov)
    elif args.command == "recent":
        show_recent(gov, args.limit)
    elif args.command == "refresh-tokens":
        refresh_tokens(gov)
    elif args.command == "usage":
        show_usage(gov, args.service)
    elif args.command == "cache-stats":
        show_cache_stats(gov)
    elif args.command == "cache-clear":
        clear_cache(gov, args.category, args.target, args.all)
    elif args.command == "pool-check":
        pool_check(gov)


if __name__ == "__main__":
    main()
