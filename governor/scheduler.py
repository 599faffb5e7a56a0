"""
Job Processor: drains the job queue and runs periodic maintenance.

Each cycle:
    1. Periodic sub-tasks whose interval has elapsed (token refresh,
       pipeline reconciliation, stuck-job recovery, cache purge, usage
       pruning, quota alerts). Each has its own minimum interval.
    2. Up to `batch_size` due jobs, highest priority first, oldest first.
       Each job is claimed atomically, dispatched by type, and moved to
       completed / retrying / failed by `transition()`.

A job that raises never aborts the batch. Quota denials defer the job
without spending an attempt. Retries back off exponentially:
    delay = min(cap, 2 ** attempts * base) minutes

Modes:
    processor.run_once()
    processor.run_continuous()   # until stop() / SIGTERM / SIGINT
"""

import logging
import signal
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import config
from governor.alerts import AlertLevel, notify
from governor.clock import utcnow
from governor.errors import (
    ConfigurationError,
    QuotaExceededError,
    TerminalAuthError,
)
from governor.job_queue import JobStatus
from utils.elk_logging import log_performance_metric

logger = logging.getLogger("governor.scheduler")

DEFAULT_DEFER_SECONDS = 60


# ── Outcomes ─────────────────────────────────────────────────────────


@dataclass
class Success:
    data: Any = None


@dataclass
class RetryableFailure:
    error: str


@dataclass
class TerminalFailure:
    error: str


@dataclass
class Deferred:
    retry_after: float
    reason: str = "quota exceeded"


def outcome_from_result(result: Any):
    """Accept an outcome object, a {success, data|error} dict, or None."""
    if isinstance(result, (Success, RetryableFailure, TerminalFailure, Deferred)):
        return result
    if result is None:
        return Success()
    if isinstance(result, dict) and "success" in result:
        if result["success"]:
            return Success(result.get("data"))
        error = str(result.get("error") or "handler reported failure")
        if result.get("retryable", True):
            return RetryableFailure(error)
        return TerminalFailure(error)
    return Success(result)


def outcome_from_exception(exc: Exception):
    """Map the error taxonomy onto job outcomes."""
    if isinstance(exc, QuotaExceededError):
        return Deferred(exc.retry_after or DEFAULT_DEFER_SECONDS, str(exc) or "quota exceeded")
    if isinstance(exc, (TerminalAuthError, ConfigurationError)):
        return TerminalFailure(f"{type(exc).__name__}: {exc}")
    # Transient errors, corrupt cache entries (already deleted) and anything
    # unexpected are retried with backoff
    return RetryableFailure(f"{type(exc).__name__}: {exc}")


# ── Transition ───────────────────────────────────────────────────────


def backoff_delay(attempts: int, base_minutes: float = None, cap_minutes: float = None) -> timedelta:
    base = config.RETRY_BASE_MINUTES if base_minutes is None else base_minutes
    cap = config.RETRY_CAP_MINUTES if cap_minutes is None else cap_minutes
    return timedelta(minutes=min(cap, (2 ** attempts) * base))


def transition(
    status: str,
    outcome,
    attempts: int,
    max_attempts: int,
    now: datetime,
    base_minutes: float = None,
    cap_minutes: float = None,
) -> Dict[str, Any]:
    """
    Fields to write for a processing job that produced `outcome`.

    Failures always increment attempts, including the last one. A job whose
    incremented attempts reach max_attempts fails permanently.
    """
    if status != JobStatus.PROCESSING:
        raise ValueError(f"Cannot transition a job in status '{status}'")

    if isinstance(outcome, Success):
        return {
            "status": JobStatus.COMPLETED,
            "completed_at": now,
            "updated_at": now,
            "error_message": None,
            "result": outcome.data,
        }

    if isinstance(outcome, Deferred):
        return {
            "status": JobStatus.RETRYING,
            "scheduled_at": now + timedelta(seconds=max(0.0, outcome.retry_after)),
            "updated_at": now,
            "error_message": f"Deferred: {outcome.reason}",
        }

    attempts += 1
    if isinstance(outcome, TerminalFailure) or attempts >= max_attempts:
        return {
            "status": JobStatus.FAILED,
            "attempts": attempts,
            "completed_at": now,
            "updated_at": now,
            "error_message": outcome.error,
        }

    return {
        "status": JobStatus.RETRYING,
        "attempts": attempts,
        "scheduled_at": now + backoff_delay(attempts, base_minutes, cap_minutes),
        "updated_at": now,
        "error_message": outcome.error,
    }


# ── Periodic tasks ───────────────────────────────────────────────────


class PeriodicTask:
    def __init__(self, name: str, interval: float, func: Callable[[], Any]):
        self.name = name
        self.interval = interval
        self.func = func
        self.last_run: Optional[float] = None
        self.last_result: Any = None

    def is_due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval


# ── Processor ────────────────────────────────────────────────────────


class JobProcessor:
    """
    Usage:
        processor = JobProcessor(queue, handlers={"email_search": search_emails})
        processor.add_periodic_task("token_refresh", 600, manager.refresh_expiring)
        processor.run_continuous()
    """

    def __init__(
        self,
        queue,
        handlers: Dict[str, Callable[[Dict], Any]] = None,
        batch_size: int = None,
        interval: float = None,
        stuck_timeout_minutes: int = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        alert_sender: Callable = None,
    ):
        self.queue = queue
        self.handlers: Dict[str, Callable[[Dict], Any]] = dict(handlers or {})
        self.batch_size = batch_size or config.JOB_BATCH_SIZE
        self.interval = config.SCHEDULER_INTERVAL_SECONDS if interval is None else interval
        self.stuck_timeout = timedelta(
            minutes=stuck_timeout_minutes if stuck_timeout_minutes is not None else config.STUCK_JOB_TIMEOUT_MINUTES
        )
        self._clock = clock
        self._monotonic = monotonic
        self._alert_sender = alert_sender or notify
        self._periodic: Dict[str, PeriodicTask] = {}
        self._stop = threading.Event()

    # ── Registration ─────────────────────────────────────────────────

    def register(self, job_type: str, handler: Callable[[Dict], Any]):
        self.handlers[job_type] = handler

    def add_periodic_task(self, name: str, interval: float, func: Callable[[], Any]):
        self._periodic[name] = PeriodicTask(name, interval, func)

    def enqueue(self, job_type: str, payload: Dict = None, priority: int = 0, max_attempts: int = None,
                delay_seconds: float = 0) -> str:
        now = self._clock()
        scheduled_at = now + timedelta(seconds=delay_seconds) if delay_seconds else None
        return self.queue.enqueue(job_type, payload, priority, max_attempts, scheduled_at, now=now)

    # ── Running ──────────────────────────────────────────────────────

    def run_once(self) -> Dict[str, int]:
        """One full cycle: due periodic tasks, then one batch of jobs."""
        self.run_periodic_tasks()
        return self.process_batch()

    def process_batch(self) -> Dict[str, int]:
        summary = {"processed": 0, "completed": 0, "retrying": 0, "failed": 0, "skipped": 0}
        jobs = self.queue.fetch_due(self._clock(), self.batch_size)
        if not jobs:
            logger.debug("No jobs due")
            return summary

        logger.info(f"📋 Processing {len(jobs)} job(s)")
        for job in jobs:
            if self._stop.is_set():
                break
            status = self.process_job(job["id"])
            if status is None:
                summary["skipped"] += 1
                continue
            summary["processed"] += 1
            if status in summary:
                summary[status] += 1

        logger.info(
            f"✅ Batch done: {summary['completed']} completed, {summary['retrying']} retrying, "
            f"{summary['failed']} failed, {summary['skipped']} skipped",
            extra=summary,
        )
        log_performance_metric("jobs_per_batch", summary["processed"], unit="jobs")
        return summary

    def process_job(self, job_id: str) -> Optional[str]:
        """Claim and run one job. Returns its new status, or None if another worker claimed it."""
        job = self.queue.claim(job_id, self._clock())
        if job is None:
            logger.debug(f"Job {job_id} already claimed elsewhere")
            return None

        job_type = job["type"]
        started = self._monotonic()
        handler = self.handlers.get(job_type)

        if handler is None:
            outcome = TerminalFailure(f"Unknown job type: {job_type}")
        else:
            try:
                outcome = outcome_from_result(handler(job["payload"]))
            except Exception as e:
                outcome = outcome_from_exception(e)
                logger.warning(f"⚠️ Job {job_id} ({job_type}) raised {type(e).__name__}: {e}")

        fields = transition(
            JobStatus.PROCESSING, outcome, job["attempts"], job["max_attempts"], self._clock(),
        )
        if not self.queue.update(job_id, fields, expected_status=JobStatus.PROCESSING):
            logger.warning(f"⚠️ Job {job_id} left processing before its result was saved")

        new_status = fields["status"]
        duration_ms = round((self._monotonic() - started) * 1000, 1)
        log = logger.info if new_status == JobStatus.COMPLETED else logger.warning
        log(
            f"{'✅' if new_status == JobStatus.COMPLETED else '🔁' if new_status == JobStatus.RETRYING else '💀'} "
            f"Job {job_id} ({job_type}) -> {new_status}",
            extra={
                "operation": f"job.{job_type}",
                "job_id": job_id,
                "duration_ms": duration_ms,
                "outcome": new_status,
                "attempts": fields.get("attempts", job["attempts"]),
                "error_message": fields.get("error_message"),
            },
        )

        if new_status == JobStatus.FAILED:
            self._alert_sender(
                f"Job `{job_id}` ({job_type}) failed permanently after "
                f"{fields['attempts']} attempt(s).\nLast error: {fields['error_message']}",
                AlertLevel.WARNING,
                "❌ Job Failed",
            )
        return new_status

    def run_periodic_tasks(self) -> List[str]:
        """Run every periodic task whose interval has elapsed. Returns the names run."""
        ran = []
        for task in self._periodic.values():
            now = self._monotonic()
            if not task.is_due(now):
                continue
            task.last_run = now
            started = self._monotonic()
            try:
                task.last_result = task.func()
                outcome = "ok"
            except ConfigurationError:
                raise
            except Exception as e:
                task.last_result = None
                outcome = "error"
                logger.error(f"❌ Periodic task {task.name} failed: {e}", exc_info=True)
            logger.info(
                f"⏱️ Periodic task {task.name}: {outcome}",
                extra={
                    "operation": f"periodic.{task.name}",
                    "duration_ms": round((self._monotonic() - started) * 1000, 1),
                    "outcome": outcome,
                },
            )
            ran.append(task.name)
        return ran

    def run_continuous(self, stop_event: threading.Event = None):
        """Run cycles until stopped. Waiting between cycles is interruptible."""
        if stop_event is not None:
            self._stop = stop_event
        logger.info(f"🚀 Job processor started (interval {self.interval}s, batch {self.batch_size})")

        while not self._stop.is_set():
            try:
                self.run_once()
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(f"❌ Processor cycle failed: {e}", exc_info=True)
            self._stop.wait(self.interval)

        logger.info("🛑 Job processor stopped")

    def stop(self):
        self._stop.set()

    def install_signal_handlers(self):
        def _handle(signum, frame):
            logger.info(f"Received {signal.Signals(signum).name}, finishing current job and stopping")
            self.stop()

        signal.signal(signal.SIGTERM, _handle)
        signal.signal(signal.SIGINT, _handle)

    # ── Maintenance ──────────────────────────────────────────────────

    def recover_stuck_jobs(self) -> int:
        """Jobs left in processing past the timeout go through the normal retry policy."""
        now = self._clock()
        recovered = 0
        for job in self.queue.find_stuck(now - self.stuck_timeout):
            minutes = int(self.stuck_timeout.total_seconds() // 60)
            fields = transition(
                JobStatus.PROCESSING,
                RetryableFailure(f"Stuck in processing for more than {minutes} minutes"),
                job["attempts"], job["max_attempts"], now,
            )
            if self.queue.update(job["id"], fields, expected_status=JobStatus.PROCESSING):
                recovered += 1
                logger.warning(f"🔧 Recovered stuck job {job['id']} ({job['type']}) -> {fields['status']}")
        return recovered

    # ── Reporting ────────────────────────────────────────────────────

    def get_system_status(self) -> Dict:
        now = self._clock()
        mono = self._monotonic()
        counts = self.queue.status_counts(now - timedelta(hours=24))
        return {
            "timestamp": now,
            "jobs_24h": counts,
            "handlers": sorted(self.handlers),
            "periodic_tasks": {
                name: {
                    "interval": task.interval,
                    "seconds_since_run": None if task.last_run is None else round(mono - task.last_run, 1),
                }
                for name, task in self._periodic.items()
            },
        }

    def get_recent_jobs(self, limit: int = 20) -> List[Dict]:
        return self.queue.recent(limit)
