import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import redis
from redis.exceptions import RedisError

from pdv_worker.errors import JobNotFoundError, JobStateError, QueueError
from pdv_worker.models import Job, JobHandle, JobState, PENDING_STATES
from pdv_worker.settings import settings

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """
    Durable job queue contract shared by the Redis broker and the in-memory backend.

    A job is visible for leasing at ``enqueued_at + delay_ms``. ``lease`` hands a
    job to exactly one caller and moves it to ``active``; the caller then reports
    the outcome with ``complete`` or ``fail``. Failed jobs are never requeued here.
    """

    def enqueue(self, queue_name: str, payload: Dict[str, Any], delay_ms: int = 0,
                name: Optional[str] = None) -> JobHandle:
        raise NotImplementedError

    def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def update_job_data(self, queue_name: str, job_id: str, payload: Dict[str, Any]) -> Job:
        raise NotImplementedError

    def lease(self, queue_name: str, timeout: float = 1.0) -> Optional[Job]:
        raise NotImplementedError

    def complete(self, job: Job, result: Any = None) -> bool:
        """Finalize an active job; returns False and changes nothing once the job left ``active``."""
        raise NotImplementedError

    def fail(self, job: Job, error: str) -> bool:
        raise NotImplementedError

    def get_queue_length(self, queue_name: str) -> int:
        raise NotImplementedError

    def reclaim_stalled(self, queue_name: str, visibility_s: int) -> int:
        return 0

    def is_healthy(self) -> bool:
        return True


# Sets the payload only while the job is still pending (waiting or delayed and not yet moved to active).
_UPDATE_PENDING_SCRIPT = """
local state = redis.call('HGET', KEYS[1], 'state')
if not state then
    return -1
end
if state ~= 'waiting' and state ~= 'delayed' then
    return 0
end
if redis.call('LPOS', KEYS[2], ARGV[2]) then
    return 0
end
redis.call('HSET', KEYS[1], 'payload', ARGV[1])
return 1
"""

# Finalizes a job only while it is still active; a lease already failed by the
# watchdog keeps its terminal state. ARGV[1] is the job id, the rest are field/value pairs.
_FINISH_ACTIVE_SCRIPT = """
redis.call('LREM', KEYS[2], 1, ARGV[1])
local state = redis.call('HGET', KEYS[1], 'state')
if state ~= 'active' then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV, 2))
return 1
"""


class RedisJobQueue(JobQueue):
    """
    Redis-backed job queue.

    Keys per queue (``{prefix}:{queue}:...``):
      id        INCR counter for job ids
      job:{id}  hash with the job record
      wait      list of eligible job ids (LPUSH in, BRPOPLPUSH out)
      delayed   sorted set of job ids scored by visible_at (ms)
      active    list of leased job ids
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, prefix: Optional[str] = None):
        self.redis_client = redis_client or redis.from_url(settings.redis_url)
        self.prefix = prefix or settings.queue_prefix
        self._update_script = self.redis_client.register_script(_UPDATE_PENDING_SCRIPT)
        self._finish_script = self.redis_client.register_script(_FINISH_ACTIVE_SCRIPT)

    def _key(self, queue_name: str, suffix: str) -> str:
        return f"{self.prefix}:{queue_name}:{suffix}"

    def _job_key(self, queue_name: str, job_id: str) -> str:
        return self._key(queue_name, f"job:{job_id}")

    def enqueue(self, queue_name: str, payload: Dict[str, Any], delay_ms: int = 0,
                name: Optional[str] = None) -> JobHandle:
        """
        Enqueue a job, immediately eligible or delayed by ``delay_ms``.

        Returns:
            JobHandle with the broker-assigned id
        """
        try:
            job_id = str(self.redis_client.incr(self._key(queue_name, "id")))
            now = _now_ms()
            delay_ms = max(0, int(delay_ms or 0))
            state = JobState.DELAYED if delay_ms > 0 else JobState.WAITING
            record = {
                "name": name or queue_name,
                "payload": json.dumps(payload),
                "enqueued_at": now,
                "visible_at": now + delay_ms,
                "state": state.value,
                "attempt_count": 0,
            }
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.hset(self._job_key(queue_name, job_id), mapping=record)
            if state is JobState.DELAYED:
                pipe.zadd(self._key(queue_name, "delayed"), {job_id: now + delay_ms})
            else:
                pipe.lpush(self._key(queue_name, "wait"), job_id)
            pipe.execute()
        except (RedisError, TypeError, ValueError) as e:
            raise QueueError(f"Failed to enqueue job on {queue_name}: {e}") from e

        logger.info("job_enqueued queue=%s job=%s delay_ms=%d", queue_name, job_id, delay_ms)
        return JobHandle(id=job_id, queue_name=queue_name)

    def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        try:
            raw = self.redis_client.hgetall(self._job_key(queue_name, job_id))
        except RedisError as e:
            raise QueueError(f"Failed to fetch job {job_id}: {e}") from e
        if not raw:
            return None
        return self._decode_job(queue_name, job_id, raw)

    def _decode_job(self, queue_name: str, job_id: str, raw: Dict[Any, Any]) -> Job:
        data = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }
        return Job(
            id=job_id,
            queue_name=queue_name,
            name=data.get("name", queue_name),
            payload=json.loads(data.get("payload") or "{}"),
            enqueued_at=int(data.get("enqueued_at", 0)),
            visible_at=int(data.get("visible_at", 0)),
            state=JobState(data.get("state", JobState.WAITING.value)),
            attempt_count=int(data.get("attempt_count", 0)),
            result=json.loads(data["result"]) if data.get("result") else None,
            error=data.get("error") or None,
            finished_at=int(data["finished_at"]) if data.get("finished_at") else None,
        )

    def update_job_data(self, queue_name: str, job_id: str, payload: Dict[str, Any]) -> Job:
        """Replace the payload of a job that has not been leased yet."""
        try:
            outcome = self._update_script(
                keys=[self._job_key(queue_name, job_id), self._key(queue_name, "active")],
                args=[json.dumps(payload), job_id],
            )
        except RedisError as e:
            raise QueueError(f"Failed to update job {job_id}: {e}") from e
        if outcome == -1:
            raise JobNotFoundError(queue_name, job_id)
        if outcome == 0:
            raise JobStateError(f"Job {job_id} in {queue_name} is no longer pending")
        logger.info("job_data_updated queue=%s job=%s", queue_name, job_id)
        return self.get_job(queue_name, job_id)

    def promote_delayed(self, queue_name: str) -> int:
        """Move delayed jobs whose visibility time has passed onto the wait list."""
        delayed_key = self._key(queue_name, "delayed")
        wait_key = self._key(queue_name, "wait")
        due: List[bytes] = self.redis_client.zrangebyscore(delayed_key, 0, _now_ms())
        promoted = 0
        for raw_id in due:
            job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            # ZREM is the claim: only the caller that removes the member promotes it
            if not self.redis_client.zrem(delayed_key, job_id):
                continue
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.hset(self._job_key(queue_name, job_id), "state", JobState.WAITING.value)
            pipe.lpush(wait_key, job_id)
            pipe.execute()
            promoted += 1
        if promoted:
            logger.debug("delayed_promoted queue=%s count=%d", queue_name, promoted)
        return promoted

    def lease(self, queue_name: str, timeout: float = 1.0) -> Optional[Job]:
        """
        Lease the next eligible job using BRPOPLPUSH so each job id lands in
        exactly one worker's hands.
        """
        try:
            self.promote_delayed(queue_name)
            raw_id = self.redis_client.brpoplpush(
                self._key(queue_name, "wait"), self._key(queue_name, "active"), max(1, int(timeout))
            )
            if raw_id is None:
                return None
            job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            job_key = self._job_key(queue_name, job_id)
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.hset(job_key, mapping={"state": JobState.ACTIVE.value, "leased_at": _now_ms()})
            pipe.hincrby(job_key, "attempt_count", 1)
            pipe.execute()
        except RedisError as e:
            logger.error(f"Failed to lease job from {queue_name}: {e}")
            return None

        job = self.get_job(queue_name, job_id)
        if job is None:
            logger.warning("lease_orphan queue=%s job=%s record missing", queue_name, job_id)
            self.redis_client.lrem(self._key(queue_name, "active"), 1, job_id)
        return job

    def _finish(self, job: Job, fields: Dict[str, Any]) -> bool:
        """Write the terminal fields; returns False when the job was no longer active."""
        pairs: List[Any] = []
        for field, value in {**fields, "finished_at": _now_ms()}.items():
            pairs.extend([field, value])
        try:
            outcome = self._finish_script(
                keys=[self._job_key(job.queue_name, job.id), self._key(job.queue_name, "active")],
                args=[job.id, *pairs],
            )
        except RedisError as e:
            raise QueueError(f"Failed to finalize job {job.id}: {e}") from e
        if outcome == 0:
            logger.warning("job_finish_skipped queue=%s job=%s state_changed", job.queue_name, job.id)
            return False
        return True

    def complete(self, job: Job, result: Any = None) -> bool:
        return self._finish(job, {"state": JobState.COMPLETED.value, "result": json.dumps(result, default=str)})

    def fail(self, job: Job, error: str) -> bool:
        return self._finish(job, {"state": JobState.FAILED.value, "error": error or "unknown"})

    def get_queue_length(self, queue_name: str) -> int:
        try:
            return int(self.redis_client.llen(self._key(queue_name, "wait"))) + int(
                self.redis_client.zcard(self._key(queue_name, "delayed"))
            )
        except RedisError as e:
            logger.error(f"Failed to get queue length for {queue_name}: {e}")
            return 0

    def reclaim_stalled(self, queue_name: str, visibility_s: int) -> int:
        """
        Mark leased jobs whose worker vanished as failed.

        A distributed lock (SET NX EX) keeps only one worker instance scanning
        a queue at a time. Stalled jobs are not requeued.
        """
        lock_key = self._key(queue_name, "watchdog")
        lock_ttl = max(1, settings.watchdog_interval_s * 2)
        try:
            if not self.redis_client.set(lock_key, "1", nx=True, ex=lock_ttl):
                logger.debug("watchdog_lock_held queue=%s, skipping", queue_name)
                return 0
        except RedisError as e:
            logger.warning("watchdog_lock_failed queue=%s: %s", queue_name, e)
            return 0

        reclaimed = 0
        try:
            now = _now_ms()
            for raw_id in self.redis_client.lrange(self._key(queue_name, "active"), 0, -1):
                job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
                leased_at = self.redis_client.hget(self._job_key(queue_name, job_id), "leased_at")
                if leased_at is None:
                    continue
                age_s = (now - int(leased_at)) / 1000
                if age_s <= visibility_s:
                    continue
                job = self.get_job(queue_name, job_id)
                if job is None:
                    continue
                if not self.fail(job, f"stalled: lease older than {visibility_s}s"):
                    continue
                logger.error("queue_watchdog_stalled queue=%s job=%s age_s=%.0f", queue_name, job_id, age_s)
                reclaimed += 1
        except RedisError as e:
            logger.warning("watchdog_scan_failed queue=%s: %s", queue_name, e)
        finally:
            try:
                self.redis_client.delete(lock_key)
            except RedisError:
                pass  # TTL will expire naturally
        return reclaimed

    def is_healthy(self) -> bool:
        """Check if Redis connection is healthy."""
        try:
            self.redis_client.ping()
            return True
        except RedisError:
            return False


class MemoryJobQueue(JobQueue):
    """In-process queue with the same semantics, used by tests and local runs."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._jobs: Dict[str, Dict[str, Job]] = {}
        self._wait: Dict[str, Deque[str]] = {}
        self._counters: Dict[str, int] = {}
        self._cond = threading.Condition()

    def enqueue(self, queue_name: str, payload: Dict[str, Any], delay_ms: int = 0,
                name: Optional[str] = None) -> JobHandle:
        with self._cond:
            self._counters[queue_name] = self._counters.get(queue_name, 0) + 1
            job_id = str(self._counters[queue_name])
            now = self._clock()
            delay_ms = max(0, int(delay_ms or 0))
            job = Job(
                id=job_id,
                queue_name=queue_name,
                name=name or queue_name,
                payload=json.loads(json.dumps(payload)),
                enqueued_at=now,
                visible_at=now + delay_ms,
                state=JobState.DELAYED if delay_ms > 0 else JobState.WAITING,
            )
            self._jobs.setdefault(queue_name, {})[job_id] = job
            if job.state is JobState.WAITING:
                self._wait.setdefault(queue_name, deque()).append(job_id)
            self._cond.notify_all()
        logger.info("job_enqueued queue=%s job=%s delay_ms=%d", queue_name, job_id, delay_ms)
        return JobHandle(id=job_id, queue_name=queue_name)

    def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        with self._cond:
            job = self._jobs.get(queue_name, {}).get(job_id)
            return job.model_copy(deep=True) if job else None

    def update_job_data(self, queue_name: str, job_id: str, payload: Dict[str, Any]) -> Job:
        with self._cond:
            job = self._jobs.get(queue_name, {}).get(job_id)
            if job is None:
                raise JobNotFoundError(queue_name, job_id)
            if job.state not in PENDING_STATES:
                raise JobStateError(f"Job {job_id} in {queue_name} is no longer pending")
            job.payload = json.loads(json.dumps(payload))
            return job.model_copy(deep=True)

    def _promote_delayed(self, queue_name: str) -> None:
        now = self._clock()
        due = sorted(
            (j for j in self._jobs.get(queue_name, {}).values()
             if j.state is JobState.DELAYED and j.visible_at <= now),
            key=lambda j: (j.visible_at, int(j.id)),
        )
        for job in due:
            job.state = JobState.WAITING
            self._wait.setdefault(queue_name, deque()).append(job.id)

    def lease(self, queue_name: str, timeout: float = 1.0) -> Optional[Job]:
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                self._promote_delayed(queue_name)
                wait = self._wait.get(queue_name)
                if wait:
                    job = self._jobs[queue_name][wait.popleft()]
                    job.state = JobState.ACTIVE
                    job.attempt_count += 1
                    return job.model_copy(deep=True)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, 0.05))

    def _finish(self, job: Job, state: JobState, result: Any = None, error: Optional[str] = None) -> bool:
        with self._cond:
            stored = self._jobs[job.queue_name][job.id]
            if stored.state is not JobState.ACTIVE:
                logger.warning("job_finish_skipped queue=%s job=%s state=%s", job.queue_name, job.id, stored.state.value)
                return False
            stored.state = state
            stored.result = result
            stored.error = error
            stored.finished_at = self._clock()
            return True

    def complete(self, job: Job, result: Any = None) -> bool:
        return self._finish(job, JobState.COMPLETED, result=result)

    def fail(self, job: Job, error: str) -> bool:
        return self._finish(job, JobState.FAILED, error=error or "unknown")

    def get_queue_length(self, queue_name: str) -> int:
        with self._cond:
            return sum(1 for j in self._jobs.get(queue_name, {}).values() if j.state in PENDING_STATES)

    def jobs(self, queue_name: str) -> List[Job]:
        with self._cond:
            return [j.model_copy(deep=True) for j in self._jobs.get(queue_name, {}).values()]
