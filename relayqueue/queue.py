import json
import logging
import time
import uuid
from contextlib import contextmanager

from redis import Redis
from redis.exceptions import ConnectionError, TimeoutError

from .errors import InvalidJob, InvalidTransition, LeaseExpired, NotFound, QueueUnavailable, StaleLease
from .models import DispatchJob, DispatchKind, JobState
from .settings import Settings

log = logging.getLogger("queue")

# delayed jobs moved back to the waiting list per lease call
PROMOTE_BATCH = 50


class QueueService:
    """Lease-based dispatch queue on top of Redis.

    Layout (key names come from Settings):

    - ``relay:job:<id>``   hash, the job record
    - ``relay:waiting``    list, jobs eligible right now (RPUSH in, LPOP out)
    - ``relay:delayed``    zset, retried jobs scored by when they become eligible
    - ``relay:active``     zset, leased jobs scored by lease expiry
    - ``relay:completed``  zset, scored by finish time
    - ``relay:failed``     zset, scored by finish time

    Every transition runs inside a WATCH/MULTI transaction, so concurrent
    workers and reapers in any number of processes never see a job in two
    states at once. Terminal job hashes expire after ``retention_seconds``.
    """

    def __init__(self, redis: Redis, settings: Settings, ledger=None, clock=time.time):
        self.redis = redis
        self.settings = settings
        self.ledger = ledger
        self._clock = clock

    def _job_key(self, job_id: str) -> str:
        return f"{self.settings.job_key_prefix}{job_id}"

    @contextmanager
    def _store(self):
        try:
            yield
        except (ConnectionError, TimeoutError) as e:
            raise QueueUnavailable(str(e) or "redis unreachable") from e

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except (ConnectionError, TimeoutError):
            return False

    def backoff_delay(self, attempt: int) -> float:
        s = self.settings
        return min(s.retry_backoff_cap, s.retry_backoff_base * 2 ** max(attempt - 1, 0))

    # ---------- enqueue / read ----------

    def enqueue(
        self,
        recipient: str,
        subject: str,
        body: str = "",
        kind: DispatchKind | str = DispatchKind.mission_relay,
        max_attempts: int | None = None,
    ) -> str:
        recipient = (recipient or "").strip()
        subject = (subject or "").strip()
        if not recipient:
            raise InvalidJob("recipient must not be empty")
        if not subject:
            raise InvalidJob("subject must not be empty")
        limit = self.settings.max_attempts if max_attempts is None else max_attempts
        if limit < 1:
            raise InvalidJob("max_attempts must be at least 1")

        job = DispatchJob(
            id=str(uuid.uuid4()),
            recipient=recipient,
            subject=subject,
            body=body or "",
            kind=DispatchKind(kind),
            max_attempts=limit,
            enqueued_at=self._clock(),
        )
        with self._store():
            pipe = self.redis.pipeline()
            pipe.hset(self._job_key(job.id), mapping=job.to_hash())
            pipe.rpush(self.settings.job_waiting, job.id)
            pipe.execute()

        log.info(
            f"job queued for {job.recipient}",
            extra={"job_id": job.id, "event": "job_queued"},
        )
        return job.id

    def get(self, job_id: str) -> DispatchJob:
        with self._store():
            data = self.redis.hgetall(self._job_key(job_id))
        if not data:
            raise NotFound(job_id)
        return DispatchJob.from_hash(data)

    def _load(self, pipe, job_id: str) -> DispatchJob:
        data = pipe.hgetall(self._job_key(job_id))
        if not data:
            raise NotFound(job_id)
        return DispatchJob.from_hash(data)

    # ---------- lease ----------

    def lease(self, worker_id: str, lease_seconds: float | None = None) -> DispatchJob | None:
        """Hand the oldest eligible WAITING job to ``worker_id``, or return None."""
        s = self.settings
        lease_seconds = lease_seconds or s.lease_seconds

        def _claim(pipe):
            now = self._clock()
            due = pipe.zrangebyscore(s.job_delayed, "-inf", now, start=0, num=PROMOTE_BATCH)
            head = pipe.lindex(s.job_waiting, 0)
            job_id = head if head is not None else (due[0] if due else None)
            if job_id is None:
                return None

            key = self._job_key(job_id)
            pipe.watch(key)
            state = pipe.hget(key, "state")

            pipe.multi()
            # due retries rejoin at the back of the line
            for due_id in due:
                pipe.zrem(s.job_delayed, due_id)
                pipe.rpush(s.job_waiting, due_id)
            pipe.lpop(s.job_waiting)
            if state != JobState.waiting.value:
                return ""

            expires = now + lease_seconds
            pipe.hincrby(key, "attempt", 1)
            pipe.hset(
                key,
                mapping={
                    "state": JobState.active.value,
                    "worker_id": worker_id,
                    "lease_token": uuid.uuid4().hex,
                    "lease_expires_at": repr(expires),
                    "started_at": repr(now),
                },
            )
            pipe.zadd(s.job_active, {job_id: expires})
            return job_id

        with self._store():
            while True:
                job_id = self.redis.transaction(
                    _claim, s.job_waiting, s.job_delayed, value_from_callable=True
                )
                if job_id is None:
                    return None
                if job_id:
                    break
                log.warning("dropped queue entry that is not a waiting job", extra={"event": "job_orphan"})
            job = self.get(job_id)

        log.info(
            "job leased",
            extra={"job_id": job.id, "worker_id": worker_id, "attempt": job.attempt, "event": "job_leased"},
        )
        return job

    # ---------- resolve ----------

    def complete(self, job_id: str, result: dict | None = None, *, token: str | None = None) -> DispatchJob:
        """Mark an ACTIVE job COMPLETED.

        Pass the ``lease_token`` returned by ``lease`` to resolve only while the
        lease is still yours; a reaped and re-leased job raises ``StaleLease``.
        """
        s = self.settings
        key = self._job_key(job_id)
        payload = result or {}

        def _complete(pipe):
            job = self._load(pipe, job_id)
            self._check_holder(job, token, JobState.completed)
            now = self._clock()
            pipe.multi()
            pipe.hset(
                key,
                mapping={
                    "state": JobState.completed.value,
                    "result": json.dumps(payload),
                    "finished_at": repr(now),
                },
            )
            pipe.hdel(key, "lease_expires_at", "lease_token")
            pipe.zrem(s.job_active, job_id)
            pipe.zadd(s.job_completed, {job_id: now})
            pipe.expire(key, s.retention_seconds)

            job.state = JobState.completed
            job.result = payload
            job.finished_at = now
            job.lease_expires_at = None
            job.lease_token = None
            return job

        with self._store():
            job = self.redis.transaction(_complete, key, value_from_callable=True)

        log.info("job completed", extra={"job_id": job_id, "attempt": job.attempt, "event": "job_completed"})
        self._archive(job)
        return job

    def fail(self, job_id: str, error: str, retry: bool = True, *, token: str | None = None) -> DispatchJob:
        """Record a failed attempt.

        With ``retry`` and attempts left the job goes back to WAITING behind a
        backoff delay; otherwise it is FAILED for good.
        """
        key = self._job_key(job_id)

        def _fail(pipe):
            job = self._load(pipe, job_id)
            self._check_holder(job, token, JobState.failed)
            return self._resolve_failure(pipe, job, error, retry)

        with self._store():
            job = self.redis.transaction(_fail, key, value_from_callable=True)

        self._log_failure(job)
        return job

    @staticmethod
    def _check_holder(job: DispatchJob, token: str | None, wanted: JobState):
        if job.state is not JobState.active:
            raise InvalidTransition(job.id, job.state.value, wanted.value)
        if token is not None and job.lease_token != token:
            raise StaleLease(job.id, wanted.value)

    def _resolve_failure(self, pipe, job: DispatchJob, error: str, retry: bool) -> DispatchJob:
        s = self.settings
        key = self._job_key(job.id)
        now = self._clock()

        pipe.multi()
        pipe.zrem(s.job_active, job.id)
        pipe.hdel(key, "lease_expires_at", "lease_token")
        job.last_error = error
        job.lease_expires_at = None
        job.lease_token = None

        if retry and job.attempt < job.max_attempts:
            pipe.hset(key, mapping={"state": JobState.waiting.value, "last_error": error})
            pipe.zadd(s.job_delayed, {job.id: now + self.backoff_delay(job.attempt)})
            job.state = JobState.waiting
        else:
            pipe.hset(
                key,
                mapping={"state": JobState.failed.value, "last_error": error, "finished_at": repr(now)},
            )
            pipe.zadd(s.job_failed, {job.id: now})
            pipe.expire(key, s.retention_seconds)
            job.state = JobState.failed
            job.finished_at = now
        return job

    def _log_failure(self, job: DispatchJob):
        extra = {"job_id": job.id, "attempt": job.attempt}
        if job.state is JobState.failed:
            log.error(f"job failed permanently: {job.last_error}", extra={**extra, "event": "job_failed"})
            self._archive(job)
        else:
            log.warning(
                f"job failed, retry scheduled in {self.backoff_delay(job.attempt):g}s: {job.last_error}",
                extra={**extra, "event": "job_retry_scheduled"},
            )

    def reap_expired_leases(self) -> int:
        """Put jobs whose worker vanished mid-lease back in line (or fail them)."""
        s = self.settings
        with self._store():
            expired = self.redis.zrangebyscore(s.job_active, "-inf", self._clock())

        reaped = 0
        for job_id in expired:
            key = self._job_key(job_id)

            def _reap(pipe, job_id=job_id):
                score = pipe.zscore(s.job_active, job_id)
                if score is None or score > self._clock():
                    return None
                data = pipe.hgetall(self._job_key(job_id))
                job = DispatchJob.from_hash(data) if data else None
                if job is None or job.state is not JobState.active:
                    pipe.multi()
                    pipe.zrem(s.job_active, job_id)
                    return None
                error = LeaseExpired(f"lease expired while held by {job.worker_id}")
                return self._resolve_failure(pipe, job, str(error), retry=True)

            with self._store():
                job = self.redis.transaction(_reap, s.job_active, key, value_from_callable=True)
            if job is None:
                continue
            reaped += 1
            log.warning("expired lease reaped", extra={"job_id": job_id, "event": "lease_reaped"})
            self._log_failure(job)
        return reaped

    # ---------- housekeeping / status ----------

    def purge_expired(self) -> int:
        s = self.settings
        now = self._clock()
        cutoff = now - s.retention_seconds
        with self._store():
            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(s.job_completed, "-inf", cutoff)
            pipe.zremrangebyscore(s.job_failed, "-inf", cutoff)
            pipe.zremrangebyscore(s.worker_heartbeats, "-inf", now - s.heartbeat_ttl_seconds)
            completed, failed, _ = pipe.execute()
        if completed or failed:
            log.info(f"purged {completed + failed} terminal jobs", extra={"event": "retention_purge"})
        return completed + failed

    def heartbeat(self, worker_ids) -> None:
        now = self._clock()
        with self._store():
            self.redis.zadd(self.settings.worker_heartbeats, {w: now for w in worker_ids})

    def retire(self, worker_ids) -> None:
        with self._store():
            self.redis.zrem(self.settings.worker_heartbeats, *worker_ids)

    def live_workers(self) -> int:
        since = self._clock() - self.settings.heartbeat_ttl_seconds
        with self._store():
            return self.redis.zcount(self.settings.worker_heartbeats, since, "+inf")

    def snapshot(self) -> dict[str, int]:
        s = self.settings
        with self._store():
            pipe = self.redis.pipeline(transaction=False)
            pipe.llen(s.job_waiting)
            pipe.zcard(s.job_delayed)
            pipe.zcard(s.job_active)
            pipe.zcard(s.job_completed)
            pipe.zcard(s.job_failed)
            waiting, delayed, active, completed, failed = pipe.execute()
        return {
            "waiting": waiting + delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
        }

    def _archive(self, job: DispatchJob):
        if self.ledger is not None:
            self.ledger.record(job)
