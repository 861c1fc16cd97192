from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from copy import deepcopy
from typing import Callable, Dict, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from .models import ProcessingJob

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Durable, at-least-once queue keyed by lesson id.

    A claimed job carries a `lock_token` and `lock_expires_at`. The holder
    must `renew` before expiry; an expired lease makes the job claimable
    again. `ack`, `nack` and `renew` are ignored for a stale token, so a
    worker that lost its lease can never overwrite the new holder's state.
    `attempt` is incremented on every claim.
    """

    def enqueue(self, job: ProcessingJob) -> bool:
        """Add the job; return False when the lesson is already queued or in flight."""
        raise NotImplementedError

    def claim(self, worker_id: str, lease_seconds: float) -> Optional[ProcessingJob]:
        raise NotImplementedError

    def renew(self, job: ProcessingJob, lease_seconds: float) -> bool:
        raise NotImplementedError

    def ack(self, job: ProcessingJob) -> bool:
        """Remove a finished job (terminal success or terminal failure)."""
        raise NotImplementedError

    def nack(self, job: ProcessingJob, delay_seconds: float, error: Optional[str] = None) -> bool:
        """Release the lease and make the job claimable again after `delay_seconds`."""
        raise NotImplementedError

    def get(self, lesson_id: str) -> Optional[ProcessingJob]:
        raise NotImplementedError

    def contains(self, lesson_id: str) -> bool:
        return self.get(lesson_id) is not None

    def close(self) -> None:
        return None


def _new_token(worker_id: str) -> str:
    return f"{worker_id}:{uuid.uuid4().hex}"


class InMemoryJobQueue(JobQueue):
    """
    Thread-safe in-process queue for tests and single-process runs. The clock
    is injectable so lease expiry and backoff can be tested without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._jobs: Dict[str, ProcessingJob] = {}
        self._ready: Dict[str, float] = {}
        self._leases: Dict[str, Tuple[str, float]] = {}

    def enqueue(self, job: ProcessingJob) -> bool:
        with self._lock:
            if job.lesson_id in self._jobs:
                return False
            stored = deepcopy(job)
            stored.lock_token = None
            stored.lock_expires_at = None
            self._jobs[job.lesson_id] = stored
            self._ready[job.lesson_id] = self.clock()
            return True

    def claim(self, worker_id: str, lease_seconds: float) -> Optional[ProcessingJob]:
        with self._lock:
            now = self.clock()
            self._reclaim_expired(now)
            due = [(at, lesson_id) for lesson_id, at in self._ready.items() if at <= now]
            if not due:
                return None
            _, lesson_id = min(due)
            del self._ready[lesson_id]
            token = _new_token(worker_id)
            expires_at = now + lease_seconds
            self._leases[lesson_id] = (token, expires_at)
            stored = self._jobs[lesson_id]
            stored.attempt += 1
            claimed = deepcopy(stored)
            claimed.lock_token = token
            claimed.lock_expires_at = expires_at
            return claimed

    def renew(self, job: ProcessingJob, lease_seconds: float) -> bool:
        with self._lock:
            if not self._holds(job):
                return False
            expires_at = self.clock() + lease_seconds
            self._leases[job.lesson_id] = (job.lock_token, expires_at)
            job.lock_expires_at = expires_at
            return True

    def ack(self, job: ProcessingJob) -> bool:
        with self._lock:
            if not self._holds(job):
                return False
            del self._leases[job.lesson_id]
            del self._jobs[job.lesson_id]
            return True

    def nack(self, job: ProcessingJob, delay_seconds: float, error: Optional[str] = None) -> bool:
        with self._lock:
            if not self._holds(job):
                return False
            del self._leases[job.lesson_id]
            self._jobs[job.lesson_id].last_error = error
            self._ready[job.lesson_id] = self.clock() + delay_seconds
            return True

    def get(self, lesson_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            job = self._jobs.get(lesson_id)
            if job is None:
                return None
            found = deepcopy(job)
            lease = self._leases.get(lesson_id)
            if lease:
                found.lock_token, found.lock_expires_at = lease
            return found

    def _holds(self, job: ProcessingJob) -> bool:
        lease = self._leases.get(job.lesson_id)
        return bool(lease and job.lock_token and lease[0] == job.lock_token)

    def _reclaim_expired(self, now: float) -> None:
        for lesson_id, (token, expires_at) in list(self._leases.items()):
            if expires_at <= now:
                logger.warning("Lease on lesson %s expired (holder %s), job is claimable again", lesson_id, token)
                del self._leases[lesson_id]
                self._ready[lesson_id] = now


# region Redis scripts
_ENQUEUE = """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
  return 0
end
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 1
"""

_CLAIM = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[1])
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[3], id)
  redis.call('HDEL', KEYS[4], id)
  redis.call('ZADD', KEYS[2], ARGV[1], id)
end
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #due == 0 then
  return false
end
local id = due[1]
redis.call('ZREM', KEYS[2], id)
local payload = cjson.decode(redis.call('HGET', KEYS[1], id))
payload['attempt'] = (tonumber(payload['attempt']) or 0) + 1
local encoded = cjson.encode(payload)
redis.call('HSET', KEYS[1], id, encoded)
redis.call('ZADD', KEYS[3], ARGV[1] + ARGV[2], id)
redis.call('HSET', KEYS[4], id, ARGV[3])
return {id, encoded, #expired}
"""

_RENEW = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZADD', KEYS[1], 'XX', ARGV[3], ARGV[1])
return 1
"""

_ACK = """
if redis.call('HGET', KEYS[3], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[1], ARGV[1])
return 1
"""

_NACK = """
if redis.call('HGET', KEYS[4], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
redis.call('HSET', KEYS[1], ARGV[1], ARGV[3])
redis.call('ZADD', KEYS[2], ARGV[4], ARGV[1])
return 1
"""
# endregion


class RedisJobQueue(JobQueue):
    """
    Redis-backed lease queue. State lives in four keys under `queue_name`:
    a payload hash, a ready set scored by available-at time, a lease set
    scored by expiry, and a hash of lease tokens. Every transition is a Lua
    script, so claim/renew/ack/nack are atomic across worker processes.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        queue_name: str = "content-processing",
        redis: Optional[Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis or Redis.from_url(redis_url, decode_responses=True)
        self.clock = clock
        self.jobs_key = f"{queue_name}:jobs"
        self.ready_key = f"{queue_name}:ready"
        self.leases_key = f"{queue_name}:leases"
        self.tokens_key = f"{queue_name}:tokens"
        self._enqueue = self.redis.register_script(_ENQUEUE)
        self._claim = self.redis.register_script(_CLAIM)
        self._renew = self.redis.register_script(_RENEW)
        self._ack = self.redis.register_script(_ACK)
        self._nack = self.redis.register_script(_NACK)
        self._connection_checked = False

    def _ensure_connection(self) -> None:
        """Lazy connection check with retry."""
        if self._connection_checked:
            return
        retry_delay = 1.0
        max_retries = 3
        for attempt in range(max_retries):
            try:
                self.redis.ping()
                self._connection_checked = True
                return
            except RedisError as exc:
                if attempt == max_retries - 1:
                    logger.error("Redis unreachable after %s attempts: %s", max_retries, exc)
                    raise ConnectionError(f"Redis connection failed: {exc}") from exc
                logger.warning("Redis connection attempt %s failed, retrying in %ss: %s", attempt + 1, retry_delay, exc)
                time.sleep(retry_delay)
                retry_delay *= 2

    def enqueue(self, job: ProcessingJob) -> bool:
        self._ensure_connection()
        payload = json.dumps(job.to_payload())
        added = self._enqueue(keys=[self.jobs_key, self.ready_key], args=[job.lesson_id, payload, self.clock()])
        return bool(added)

    def claim(self, worker_id: str, lease_seconds: float) -> Optional[ProcessingJob]:
        self._ensure_connection()
        token = _new_token(worker_id)
        now = self.clock()
        result = self._claim(
            keys=[self.jobs_key, self.ready_key, self.leases_key, self.tokens_key],
            args=[now, lease_seconds, token],
        )
        if not result:
            return None
        _, payload, reclaimed = result
        if int(reclaimed):
            logger.warning("Reclaimed %s jobs with expired leases", reclaimed)
        job = ProcessingJob.from_payload(json.loads(payload))
        job.lock_token = token
        job.lock_expires_at = now + lease_seconds
        return job

    def renew(self, job: ProcessingJob, lease_seconds: float) -> bool:
        expires_at = self.clock() + lease_seconds
        renewed = self._renew(
            keys=[self.leases_key, self.tokens_key], args=[job.lesson_id, job.lock_token or "", expires_at]
        )
        if renewed:
            job.lock_expires_at = expires_at
        return bool(renewed)

    def ack(self, job: ProcessingJob) -> bool:
        return bool(
            self._ack(
                keys=[self.jobs_key, self.leases_key, self.tokens_key],
                args=[job.lesson_id, job.lock_token or ""],
            )
        )

    def nack(self, job: ProcessingJob, delay_seconds: float, error: Optional[str] = None) -> bool:
        job.last_error = error
        return bool(
            self._nack(
                keys=[self.jobs_key, self.ready_key, self.leases_key, self.tokens_key],
                args=[job.lesson_id, job.lock_token or "", json.dumps(job.to_payload()), self.clock() + delay_seconds],
            )
        )

    def get(self, lesson_id: str) -> Optional[ProcessingJob]:
        self._ensure_connection()
        payload = self.redis.hget(self.jobs_key, lesson_id)
        if payload is None:
            return None
        job = ProcessingJob.from_payload(json.loads(payload))
        job.lock_token = self.redis.hget(self.tokens_key, lesson_id)
        if job.lock_token:
            job.lock_expires_at = self.redis.zscore(self.leases_key, lesson_id)
        return job

    def contains(self, lesson_id: str) -> bool:
        self._ensure_connection()
        return bool(self.redis.hexists(self.jobs_key, lesson_id))

    def clear(self) -> None:
        self.redis.delete(self.jobs_key, self.ready_key, self.leases_key, self.tokens_key)

    def close(self) -> None:
        self.redis.close()
