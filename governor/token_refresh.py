"""
Token Refresh Manager: refresh OAuth access tokens without two workers
burning the same refresh token at once.

Flow for refresh(resource_id):
    1. Take an exclusive per-credential lock (wait up to 30s, poll 0.5s).
       Locks older than 5 minutes are considered abandoned and reclaimed.
    2. Re-read the credential. If another worker already refreshed it
       (expires more than 5 minutes from now), stop there.
    3. Exchange the refresh token and persist the new access token, expiry
       and rotated refresh token in one update.
    4. invalid_grant marks the credential `needs_reauth`. It is never retried
       automatically and an alert is sent.
    5. The lock is always released.

Two lock backends share the RefreshLock interface (try_acquire / release):
FileRefreshLock for single-host deployments and MongoRefreshLock when
workers run on several hosts.
"""

import hashlib
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import requests
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from governor.alerts import AlertLevel, notify
from governor.clock import utcnow
from governor.errors import (
    ConfigurationError,
    LockTimeoutError,
    TerminalAuthError,
    TransientResourceError,
)

logger = logging.getLogger("governor.token_refresh")


class CredentialStatus:
    ACTIVE = "active"
    NEEDS_REAUTH = "needs_reauth"


# ── Locks ────────────────────────────────────────────────────────────


class FileRefreshLock:
    """
    Lock file created with O_EXCL, holding an owner token ("<pid>:<uuid>").

    Reclaim and release first rename the file to a unique name, so only one
    worker can take a given file away. The moved file is deleted only if it
    still carries the expected token. Otherwise it belonged to someone else
    and is linked back into place.
    """

    def __init__(self, resource_id: str, lock_dir: str = None, stale_seconds: int = None):
        lock_dir = lock_dir or config.LOCK_DIR
        digest = hashlib.md5(resource_id.encode("utf-8")).hexdigest()
        self.path = os.path.join(lock_dir, f"token_refresh.{digest}.lock")
        self.stale_seconds = stale_seconds if stale_seconds is not None else config.LOCK_STALE_SECONDS
        self.token = f"{os.getpid()}:{uuid.uuid4().hex}"
        self._held = False

    def try_acquire(self) -> bool:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        if self._create():
            return True
        owner = self._stale_owner()
        if owner is not None and self._reclaim(owner):
            return self._create()
        return False

    def _create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(self.token)
        self._held = True
        return True

    @staticmethod
    def _read(path: str) -> Optional[str]:
        try:
            with open(path) as f:
                return f.read()
        except FileNotFoundError:
            return None

    def _stale_owner(self) -> Optional[str]:
        """Token in the lock file if it is older than the stale ceiling, else None."""
        try:
            age = time.time() - os.path.getmtime(self.path)
        except FileNotFoundError:
            return ""
        if age <= self.stale_seconds:
            return None
        owner = self._read(self.path)
        return "" if owner is None else owner

    def _move_aside(self) -> Optional[str]:
        aside = f"{self.path}.{uuid.uuid4().hex}.released"
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return None
        return aside

    def _put_back(self, aside: str):
        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.warning(f"⚠️ Refresh lock {self.path} was replaced while being restored")
        finally:
            os.remove(aside)

    def _reclaim(self, stale_owner: str) -> bool:
        aside = self._move_aside()
        if aside is None:
            return True
        if self._read(aside) != stale_owner:
            # Another reclaimer already replaced the stale lock
            self._put_back(aside)
            return False
        logger.warning(f"⚠️ Reclaimed stale refresh lock {self.path} from {stale_owner or 'unknown owner'}")
        os.remove(aside)
        return True

    def release(self):
        if not self._held:
            return
        self._held = False
        aside = self._move_aside()
        if aside is None:
            logger.warning(f"⚠️ Refresh lock {self.path} vanished before release")
            return
        if self._read(aside) == self.token:
            os.remove(aside)
            return
        logger.warning(f"⚠️ Refresh lock {self.path} was reclaimed by another worker, leaving it in place")
        self._put_back(aside)


class MongoRefreshLock:
    """One document per locked credential in `refresh_locks` (unique resource_id)."""

    def __init__(self, collection, resource_id: str, stale_seconds: int = None,
                 clock: Callable[[], datetime] = utcnow):
        self._collection = collection
        self.resource_id = resource_id
        self.stale_seconds = stale_seconds if stale_seconds is not None else config.LOCK_STALE_SECONDS
        self._clock = clock
        self._token = uuid.uuid4().hex
        self._held = False

    def try_acquire(self) -> bool:
        if self._insert():
            return True
        cutoff = self._clock() - timedelta(seconds=self.stale_seconds)
        reclaimed = self._collection.delete_one(
            {"resource_id": self.resource_id, "acquired_at": {"$lt": cutoff}}
        ).deleted_count
        if reclaimed:
            logger.warning(f"⚠️ Reclaimed stale refresh lock for {self.resource_id}")
            return self._insert()
        return False

    def _insert(self) -> bool:
        try:
            self._collection.insert_one({
                "resource_id": self.resource_id,
                "holder": self._token,
                "holder_pid": os.getpid(),
                "acquired_at": self._clock(),
            })
        except DuplicateKeyError:
            return False
        self._held = True
        return True

    def release(self):
        if not self._held:
            return
        self._held = False
        self._collection.delete_one({"resource_id": self.resource_id, "holder": self._token})


class MemoryRefreshLock:
    """Process-local lock shared by name, for dry runs and tests."""

    _held: Dict[str, bool] = {}
    _guard = threading.Lock()

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        self._mine = False

    def try_acquire(self) -> bool:
        with self._guard:
            if self._held.get(self.resource_id):
                return False
            self._held[self.resource_id] = True
            self._mine = True
            return True

    def release(self):
        with self._guard:
            if self._mine:
                self._held.pop(self.resource_id, None)
                self._mine = False


# ── Credential stores ────────────────────────────────────────────────


class MongoCredentialStore:
    """
    Credentials in the `oauth_tokens` collection, keyed by resource_id.
    Driver errors surface as TransientResourceError.
    """

    def __init__(self, collection, clock: Callable[[], datetime] = utcnow):
        self._collection = collection
        self._clock = clock

    def get(self, resource_id: str) -> Optional[Dict]:
        try:
            return self._collection.find_one({"resource_id": resource_id}, {"_id": 0})
        except PyMongoError as e:
            raise TransientResourceError(f"Credential store unavailable: {e}") from e

    def _update(self, resource_id: str, update: Dict, upsert: bool = False):
        try:
            self._collection.update_one({"resource_id": resource_id}, update, upsert=upsert)
        except PyMongoError as e:
            raise TransientResourceError(f"Credential store unavailable: {e}") from e

    def store_credentials(self, resource_id: str, access_token: str, refresh_token: str, expires_at: datetime):
        """Initial authorization or re-authorization. Clears needs_reauth."""
        now = self._clock()
        self._update(
            resource_id,
            {
                "$set": {
                    "access_token": access_token,
                    "refresh_token": refresh_token,
                    "expires_at": expires_at,
                    "status": CredentialStatus.ACTIVE,
                    "reauth_error": None,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    def save_refreshed(self, resource_id: str, access_token: str, expires_at: datetime,
                       refresh_token: str = None):
        fields = {"access_token": access_token, "expires_at": expires_at, "updated_at": self._clock()}
        if refresh_token:
            fields["refresh_token"] = refresh_token
        self._update(resource_id, {"$set": fields})

    def mark_needs_reauth(self, resource_id: str, error: str):
        self._update(
            resource_id,
            {"$set": {
                "status": CredentialStatus.NEEDS_REAUTH,
                "reauth_error": error,
                "updated_at": self._clock(),
            }},
        )

    def expiring_before(self, when: datetime) -> List[str]:
        try:
            cursor = self._collection.find(
                {"status": CredentialStatus.ACTIVE, "expires_at": {"$lte": when}},
                {"resource_id": 1},
            ).sort("expires_at", ASCENDING)
            return [doc["resource_id"] for doc in cursor]
        except PyMongoError as e:
            raise TransientResourceError(f"Credential store unavailable: {e}") from e


class MemoryCredentialStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._docs: Dict[str, Dict] = {}
        self._clock = clock

    def get(self, resource_id: str) -> Optional[Dict]:
        doc = self._docs.get(resource_id)
        return dict(doc) if doc else None

    def store_credentials(self, resource_id: str, access_token: str, refresh_token: str, expires_at: datetime):
        now = self._clock()
        doc = self._docs.setdefault(resource_id, {"resource_id": resource_id, "created_at": now})
        doc.update({
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
            "status": CredentialStatus.ACTIVE,
            "reauth_error": None,
            "updated_at": now,
        })

    def save_refreshed(self, resource_id: str, access_token: str, expires_at: datetime,
                       refresh_token: str = None):
        doc = self._docs[resource_id]
        doc.update({"access_token": access_token, "expires_at": expires_at, "updated_at": self._clock()})
        if refresh_token:
            doc["refresh_token"] = refresh_token

    def mark_needs_reauth(self, resource_id: str, error: str):
        doc = self._docs[resource_id]
        doc.update({"status": CredentialStatus.NEEDS_REAUTH, "reauth_error": error, "updated_at": self._clock()})

    def expiring_before(self, when: datetime) -> List[str]:
        docs = [d for d in self._docs.values()
                if d["status"] == CredentialStatus.ACTIVE and d["expires_at"] <= when]
        return [d["resource_id"] for d in sorted(docs, key=lambda d: d["expires_at"])]


# ── Provider ─────────────────────────────────────────────────────────


class GoogleOAuthRefresher:
    """refresh_token grant against Google's token endpoint."""

    def __init__(self, client_id: str = None, client_secret: str = None, token_url: str = None,
                 timeout: int = None, session: requests.Session = None):
        self.client_id = client_id or config.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or config.GOOGLE_CLIENT_SECRET
        self.token_url = token_url or config.GOOGLE_TOKEN_URL
        self.timeout = timeout or config.OAUTH_HTTP_TIMEOUT
        self.session = session or requests.Session()

    def refresh(self, refresh_token: str) -> Dict:
        """Returns {access_token, expires_in, refresh_token (None unless rotated)}."""
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required for token refresh")

        try:
            response = self.session.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientResourceError(f"Token endpoint unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200:
            error = body.get("error", f"http_{response.status_code}")
            description = body.get("error_description", "")
            detail = f"{error}: {description}".rstrip(": ")
            if error == "invalid_grant":
                raise TerminalAuthError(detail)
            if error == "invalid_client":
                raise ConfigurationError(f"OAuth client rejected: {detail}")
            raise TransientResourceError(f"Token refresh failed ({response.status_code}) {detail}")

        if not body.get("access_token"):
            raise TransientResourceError("Token endpoint returned no access_token")

        return {
            "access_token": body["access_token"],
            "expires_in": int(body.get("expires_in") or 3600),
            "refresh_token": body.get("refresh_token"),
        }


# ── Manager ──────────────────────────────────────────────────────────


class TokenRefreshManager:
    """
    Usage:
        manager = TokenRefreshManager(store, GoogleOAuthRefresher(), lambda rid: FileRefreshLock(rid))
        if manager.refresh("sales@example.com"):
            ...
    """

    def __init__(
        self,
        store,
        refresher,
        lock_factory: Callable[[str], object],
        clock: Callable[[], datetime] = utcnow,
        lock_wait: float = None,
        lock_poll: float = None,
        expiry_buffer: int = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        alert_sender: Callable = None,
    ):
        self.store = store
        self.refresher = refresher
        self.lock_factory = lock_factory
        self._clock = clock
        self.lock_wait = config.LOCK_WAIT_SECONDS if lock_wait is None else lock_wait
        self.lock_poll = config.LOCK_POLL_SECONDS if lock_poll is None else lock_poll
        self.expiry_buffer = config.TOKEN_EXPIRY_BUFFER_SECONDS if expiry_buffer is None else expiry_buffer
        self._sleep = sleep
        self._monotonic = monotonic
        self._alert_sender = alert_sender or notify

    def is_fresh(self, credential: Dict) -> bool:
        expires_at = credential.get("expires_at")
        if expires_at is None:
            return False
        return self._clock() < expires_at - timedelta(seconds=self.expiry_buffer)

    @contextmanager
    def _locked(self, resource_id: str):
        lock = self.lock_factory(resource_id)
        deadline = self._monotonic() + self.lock_wait
        while not lock.try_acquire():
            if self._monotonic() >= deadline:
                raise LockTimeoutError(f"Refresh lock for {resource_id} not acquired within {self.lock_wait}s")
            self._sleep(self.lock_poll)
        try:
            yield
        finally:
            lock.release()

    def refresh(self, resource_id: str) -> bool:
        """Refresh one credential. True if it is valid afterwards."""
        started = time.monotonic()
        outcome = "error"
        try:
            credential = self.store.get(resource_id)
            if credential is None:
                outcome = "missing"
                logger.warning(f"⚠️ No credential stored for {resource_id}")
                return False
            if credential.get("status") == CredentialStatus.NEEDS_REAUTH:
                outcome = "needs_reauth"
                logger.info(f"🔒 {resource_id} needs re-authorization, skipping refresh")
                return False

            with self._locked(resource_id):
                credential = self.store.get(resource_id)
                if credential is None:
                    outcome = "missing"
                    logger.warning(f"⚠️ Credential {resource_id} was removed before it could be refreshed")
                    return False
                if credential.get("status") == CredentialStatus.NEEDS_REAUTH:
                    outcome = "needs_reauth"
                    return False
                if self.is_fresh(credential):
                    outcome = "already_fresh"
                    logger.info(f"✅ {resource_id} token already refreshed by another worker")
                    return True
                if not credential.get("refresh_token"):
                    raise TerminalAuthError("no refresh token stored")

                result = self.refresher.refresh(credential["refresh_token"])
                expires_at = self._clock() + timedelta(seconds=result.get("expires_in") or 3600)
                self.store.save_refreshed(
                    resource_id, result["access_token"], expires_at, result.get("refresh_token"),
                )
                outcome = "refreshed"
                logger.info(f"🔑 Refreshed token for {resource_id}, expires {expires_at.isoformat()}")
                return True

        except TerminalAuthError as e:
            outcome = "needs_reauth"
            self._mark_needs_reauth(resource_id, str(e))
            return False
        except TransientResourceError as e:
            outcome = "lock_timeout" if isinstance(e, LockTimeoutError) else "transient_error"
            logger.warning(f"⚠️ Token refresh for {resource_id} failed, will retry next cycle: {e}")
            return False
        finally:
            logger.info(
                f"token_refresh {resource_id}: {outcome}",
                extra={
                    "operation": "token_refresh",
                    "resource_id": resource_id,
                    "duration_ms": round((time.monotonic() - started) * 1000, 1),
                    "outcome": outcome,
                },
            )

    def _mark_needs_reauth(self, resource_id: str, reason: str):
        try:
            self.store.mark_needs_reauth(resource_id, reason)
        except TransientResourceError as e:
            logger.error(f"❌ Could not mark {resource_id} needs_reauth: {e}")
        else:
            logger.error(f"❌ {resource_id} refresh rejected, marked needs_reauth: {reason}")
        self._alert_sender(
            f"Credential `{resource_id}` was rejected by the provider.\n"
            f"Reason: {reason}\n"
            f"It will not be refreshed again until it is re-authorized.",
            AlertLevel.CRITICAL,
            "🔑 Re-authorization Required",
        )

    def refresh_expiring(self, within_seconds: int = None) -> Dict[str, int]:
        """Refresh every active credential expiring within the window."""
        within = config.TOKEN_REFRESH_AHEAD_SECONDS if within_seconds is None else within_seconds
        due = self.store.expiring_before(self._clock() + timedelta(seconds=within))
        results = {"checked": len(due), "refreshed": 0, "failed": 0}
        for resource_id in due:
            if self.refresh(resource_id):
                results["refreshed"] += 1
            else:
                results["failed"] += 1
        if due:
            logger.info(
                f"🔑 Token refresh pass: {results['refreshed']}/{len(due)} refreshed",
                extra=results,
            )
        return results

    def get_valid_token(self, resource_id: str) -> str:
        """Access token for immediate use, refreshing first if it is about to expire."""
        credential = self.store.get(resource_id)
        if credential is None:
            raise ConfigurationError(f"No credential stored for {resource_id}")
        if credential.get("status") == CredentialStatus.NEEDS_REAUTH:
            raise TerminalAuthError(f"{resource_id} needs re-authorization")
        if self.is_fresh(credential):
            return credential["access_token"]
        if not self.refresh(resource_id):
            credential = self.store.get(resource_id)
            if credential is not None and credential.get("status") == CredentialStatus.NEEDS_REAUTH:
                raise TerminalAuthError(f"{resource_id} needs re-authorization")
            raise TransientResourceError(f"Could not refresh token for {resource_id}")
        return self.store.get(resource_id)["access_token"]
