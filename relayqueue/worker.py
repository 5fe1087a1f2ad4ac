import concurrent.futures
import logging
import signal
import threading
import time

from .db import Base, make_engine, make_session_factory
from .errors import ActionError, DispatchError, QueueUnavailable
from .executor import BrowserActionExecutor
from .ledger import DispatchLedger
from .logging_utils import setup_logging
from .queue import QueueService
from .redis_client import get_redis
from .settings import Settings

log = logging.getLogger("worker")

# pause after an unexpected loop error
ERROR_PAUSE_SECONDS = 2.0


class WorkerPool:
    """``pool_size`` lease/execute/resolve loops plus one reaper.

    Threads share nothing but the queue; the lease transaction is the only
    synchronization point, so the pool size alone caps how many browsers run.
    """

    def __init__(self, queue: QueueService, executor: BrowserActionExecutor, settings: Settings, name: str | None = None):
        self.queue = queue
        self.executor = executor
        self.settings = settings
        self.name = name or settings.node_name
        self.worker_ids = [f"{self.name}:worker-{i + 1}" for i in range(settings.pool_size)]
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def run_once(self, worker_id: str) -> bool:
        """Lease and resolve at most one job. Returns False when nothing was waiting."""
        job = self.queue.lease(worker_id, self.settings.lease_seconds)
        if job is None:
            return False

        timeout = self.settings.action_timeout_seconds
        runner = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{worker_id}:action")
        try:
            future = runner.submit(self.executor.execute, job, timeout)
            try:
                result = future.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                self._abort(job, worker_id)
                raise ActionError(f"action exceeded its {timeout:g}s budget") from None
        except Exception as e:
            retry = job.attempt < job.max_attempts
            log.warning(
                f"job attempt failed: {e}",
                extra={"job_id": job.id, "worker_id": worker_id, "attempt": job.attempt, "event": "attempt_failed"},
                exc_info=not isinstance(e, ActionError),
            )
            self.queue.fail(job.id, str(e), retry=retry, token=job.lease_token)
            return True
        finally:
            # a hung action finishes in the background once its browser is gone
            runner.shutdown(wait=False)

        self.queue.complete(job.id, result.to_payload(), token=job.lease_token)
        return True

    def _abort(self, job, worker_id: str):
        try:
            self.executor.abort(job)
        except Exception:
            log.error(
                "could not kill browser of timed out action",
                extra={"job_id": job.id, "worker_id": worker_id, "event": "abort_error"},
                exc_info=True,
            )

    def _worker_loop(self, worker_id: str):
        log.info("worker started", extra={"worker_id": worker_id, "event": "worker_start"})
        next_beat = 0.0
        while not self._stop.is_set():
            try:
                now = time.monotonic()
                if now >= next_beat:
                    self.queue.heartbeat([worker_id])
                    next_beat = now + self.settings.heartbeat_ttl_seconds / 3
                if not self.run_once(worker_id):
                    self._stop.wait(self.settings.worker_poll_seconds)
            except QueueUnavailable:
                log.warning("queue unavailable, backing off", extra={"worker_id": worker_id, "event": "queue_unavailable"})
                self._stop.wait(ERROR_PAUSE_SECONDS)
            except DispatchError:
                # the lease was reaped and the job resolved or handed on elsewhere
                log.warning("job resolution rejected", extra={"worker_id": worker_id, "event": "resolve_rejected"}, exc_info=True)
            except Exception:
                log.error("worker loop error", extra={"worker_id": worker_id, "event": "worker_loop_error"}, exc_info=True)
                self._stop.wait(ERROR_PAUSE_SECONDS)
        log.info("worker stopped", extra={"worker_id": worker_id, "event": "worker_stop"})

    def reap_once(self) -> int:
        reaped = self.queue.reap_expired_leases()
        self.queue.purge_expired()
        return reaped

    def _reaper_loop(self):
        while not self._stop.is_set():
            try:
                self.reap_once()
            except QueueUnavailable:
                log.warning("queue unavailable during reap", extra={"event": "queue_unavailable"})
            except Exception:
                log.error("reaper error", extra={"event": "reaper_error"}, exc_info=True)
            self._stop.wait(self.settings.reap_interval_seconds)

    def start(self):
        self._stop.clear()
        for worker_id in self.worker_ids:
            t = threading.Thread(target=self._worker_loop, args=(worker_id,), name=worker_id, daemon=True)
            t.start()
            self._threads.append(t)
        reaper = threading.Thread(target=self._reaper_loop, name=f"{self.name}:reaper", daemon=True)
        reaper.start()
        self._threads.append(reaper)
        log.info(f"pool started with {len(self.worker_ids)} workers", extra={"event": "pool_start"})

    def stop(self, timeout: float | None = None):
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads.clear()
        try:
            self.queue.retire(self.worker_ids)
        except QueueUnavailable:
            log.warning("could not retire worker heartbeats", extra={"event": "queue_unavailable"})
        log.info("pool stopped", extra={"event": "pool_stop"})

    def run_forever(self):
        def _handler(signum, frame):
            log.info(f"received signal {signum}, stopping workers", extra={"event": "signal"})
            self._stop.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, _handler)

        self.start()
        try:
            while not self._stop.wait(0.5):
                pass
        finally:
            self.stop()


def build_pool(settings: Settings) -> WorkerPool:
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    queue = QueueService(
        get_redis(settings.redis_url, settings.redis_socket_timeout, settings.redis_tls_verify),
        settings,
        ledger=DispatchLedger(make_session_factory(engine)),
    )
    return WorkerPool(queue, BrowserActionExecutor(settings), settings)


def main():
    settings = Settings()
    setup_logging(settings.log_level)
    build_pool(settings).run_forever()


if __name__ == "__main__":
    main()
