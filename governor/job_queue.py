"""
Job Queue: durable storage for background jobs.

Lifecycle:
    pending ──claim──▶ processing ──▶ completed
       ▲                   │
       │                   ├──▶ retrying (scheduled_at = now + backoff) ──claim──▶ processing
       │                   └──▶ failed (attempts exhausted or terminal error)

The queue only stores and guards transitions; the scheduler decides them.
`claim` is a conditional update, so when several workers race for the same
job exactly one wins and the others get None.
"""

import itertools
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument

import config
from governor.clock import utcnow

logger = logging.getLogger("governor.job_queue")


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    CLAIMABLE = (PENDING, RETRYING)
    ALL = (PENDING, PROCESSING, COMPLETED, FAILED, RETRYING)


def new_job_document(job_type: str, payload: Dict = None, priority: int = 0, max_attempts: int = None,
                     scheduled_at: datetime = None, now: datetime = None) -> Dict:
    now = now or utcnow()
    return {
        "type": job_type,
        "payload": payload or {},
        "priority": priority,
        "status": JobStatus.PENDING,
        "attempts": 0,
        "max_attempts": max_attempts if max_attempts is not None else config.JOB_MAX_ATTEMPTS,
        "scheduled_at": scheduled_at,
        "created_at": now,
        "updated_at": now,
        "started_at": None,
        "completed_at": None,
        "error_message": None,
        "result": None,
    }


def _sort_key(job: Dict):
    # priority desc, created_at asc, id asc
    return (-job["priority"], job["created_at"], job["id"])


class MongoJobQueue:
    """Jobs in the `background_jobs` collection."""

    SORT = [("priority", DESCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)]

    def __init__(self, collection):
        self._collection = collection

    @staticmethod
    def _normalize(doc: Optional[Dict]) -> Optional[Dict]:
        if doc is None:
            return None
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return doc

    @staticmethod
    def _oid(job_id: str) -> Optional[ObjectId]:
        try:
            return ObjectId(job_id)
        except (InvalidId, TypeError):
            return None

    def enqueue(self, job_type: str, payload: Dict = None, priority: int = 0, max_attempts: int = None,
                scheduled_at: datetime = None, now: datetime = None) -> str:
        doc = new_job_document(job_type, payload, priority, max_attempts, scheduled_at, now)
        result = self._collection.insert_one(doc)
        job_id = str(result.inserted_id)
        logger.info(f"📥 Job queued: {job_type} ({job_id[:8]}...) priority={priority}")
        return job_id

    def fetch_due(self, now: datetime, limit: int) -> List[Dict]:
        cursor = self._collection.find({
            "status": {"$in": list(JobStatus.CLAIMABLE)},
            "$or": [{"scheduled_at": None}, {"scheduled_at": {"$lte": now}}],
        }).sort(self.SORT).limit(limit)
        return [self._normalize(doc) for doc in cursor]

    def claim(self, job_id: str, now: datetime) -> Optional[Dict]:
        oid = self._oid(job_id)
        if oid is None:
            return None
        doc = self._collection.find_one_and_update(
            {"_id": oid, "status": {"$in": list(JobStatus.CLAIMABLE)}},
            {"$set": {"status": JobStatus.PROCESSING, "started_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return self._normalize(doc)

    def update(self, job_id: str, fields: Dict[str, Any], expected_status: str = JobStatus.PROCESSING) -> bool:
        """Write a transition. Only applies if the job is still in expected_status."""
        oid = self._oid(job_id)
        if oid is None:
            return False
        result = self._collection.update_one({"_id": oid, "status": expected_status}, {"$set": fields})
        return result.modified_count == 1

    def get(self, job_id: str) -> Optional[Dict]:
        oid = self._oid(job_id)
        if oid is None:
            return None
        return self._normalize(self._collection.find_one({"_id": oid}))

    def find_stuck(self, started_before: datetime) -> List[Dict]:
        cursor = self._collection.find({
            "status": JobStatus.PROCESSING,
            "started_at": {"$lt": started_before},
        })
        return [self._normalize(doc) for doc in cursor]

    def status_counts(self, since: datetime) -> Dict[str, int]:
        pipeline = [
            {"$match": {"created_at": {"$gte": since}}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        counts = {status: 0 for status in JobStatus.ALL}
        for row in self._collection.aggregate(pipeline):
            counts[row["_id"]] = row["count"]
        return counts

    def recent(self, limit: int = 20) -> List[Dict]:
        cursor = self._collection.find().sort("created_at", DESCENDING).limit(limit)
        return [self._normalize(doc) for doc in cursor]


class MemoryJobQueue:
    """In-process queue with the same semantics, for dry runs and tests."""

    def __init__(self):
        self._jobs: Dict[str, Dict] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def enqueue(self, job_type: str, payload: Dict = None, priority: int = 0, max_attempts: int = None,
                scheduled_at: datetime = None, now: datetime = None) -> str:
        doc = new_job_document(job_type, payload, priority, max_attempts, scheduled_at, now)
        with self._lock:
            job_id = f"{next(self._ids):08d}"
            doc["id"] = job_id
            self._jobs[job_id] = doc
        logger.info(f"📥 Job queued: {job_type} ({job_id}) priority={priority}")
        return job_id

    def fetch_due(self, now: datetime, limit: int) -> List[Dict]:
        with self._lock:
            due = [
                dict(job) for job in self._jobs.values()
                if job["status"] in JobStatus.CLAIMABLE
                and (job["scheduled_at"] is None or job["scheduled_at"] <= now)
            ]
        return sorted(due, key=_sort_key)[:limit]

    def claim(self, job_id: str, now: datetime) -> Optional[Dict]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job["status"] not in JobStatus.CLAIMABLE:
                return None
            job.update({"status": JobStatus.PROCESSING, "started_at": now, "updated_at": now})
            return dict(job)

    def update(self, job_id: str, fields: Dict[str, Any], expected_status: str = JobStatus.PROCESSING) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job["status"] != expected_status:
                return False
            job.update(fields)
            return True

    def get(self, job_id: str) -> Optional[Dict]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    def find_stuck(self, started_before: datetime) -> List[Dict]:
        with self._lock:
            return [
                dict(job) for job in self._jobs.values()
                if job["status"] == JobStatus.PROCESSING
                and job["started_at"] is not None
                and job["started_at"] < started_before
            ]

    def status_counts(self, since: datetime) -> Dict[str, int]:
        counts = {status: 0 for status in JobStatus.ALL}
        with self._lock:
            for job in self._jobs.values():
                if job["created_at"] is None or job["created_at"] >= since:
                    counts[job["status"]] += 1
        return counts

    def recent(self, limit: int = 20) -> List[Dict]:
        with self._lock:
            jobs = [dict(job) for job in self._jobs.values()]
        return sorted(jobs, key=lambda j: (j["created_at"], j["id"]), reverse=True)[:limit]
