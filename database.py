"""
MongoDB access for the governor.

The client is created lazily so that importing this module never opens a
socket. Stores in governor/ receive their collection objects explicitly;
this module only knows collection names and the indexes they need.
"""

import logging
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import ConfigurationError as MongoConfigurationError

import config

logger = logging.getLogger("governor.database")

# Collections
JOBS_COLLECTION = "background_jobs"
USAGE_COLLECTION = "api_usage"
CACHE_COLLECTION = "api_cache"
CREDENTIALS_COLLECTION = "oauth_tokens"
LOCKS_COLLECTION = "refresh_locks"

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    """Lazy-init the shared MongoClient."""
    global _client
    if _client is None:
        _client = MongoClient(
            config.DATABASE_URL,
            serverSelectionTimeoutMS=config.MONGO_TIMEOUT_MS,
            connectTimeoutMS=config.MONGO_TIMEOUT_MS,
        )
        logger.info("🔌 MongoDB client created")
    return _client


def get_db() -> Database:
    client = get_client()
    try:
        return client.get_database()
    except MongoConfigurationError:
        # URL without a database path
        return client[config.DATABASE_NAME]


def ensure_indexes(db: Database):
    """Create every index the governor relies on. Safe to call repeatedly."""
    jobs = db[JOBS_COLLECTION]
    jobs.create_index([("status", ASCENDING), ("priority", DESCENDING), ("created_at", ASCENDING)])
    jobs.create_index("scheduled_at")
    jobs.create_index("created_at")

    usage = db[USAGE_COLLECTION]
    usage.create_index([("service_name", ASCENDING), ("timestamp", DESCENDING)])
    # Rows older than the longest window are never read again
    longest = max(
        w["seconds"]
        for settings in config.SERVICE_LIMITS.values()
        for w in settings.get("windows", {}).values()
    )
    usage.create_index("timestamp", expireAfterSeconds=longest + 86400)

    cache = db[CACHE_COLLECTION]
    cache.create_index("key", unique=True)
    cache.create_index("category")
    cache.create_index("target")
    cache.create_index("expires_at")

    db[CREDENTIALS_COLLECTION].create_index("resource_id", unique=True)
    db[CREDENTIALS_COLLECTION].create_index([("status", ASCENDING), ("expires_at", ASCENDING)])
    db[LOCKS_COLLECTION].create_index("resource_id", unique=True)

    logger.info("✅ MongoDB indexes ensured")


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("🔌 MongoDB client closed")
