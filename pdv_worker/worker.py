import logging
import signal
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Set

from pdv_worker.delivery import DeliveryDispatcher, DeliveryWebhook, PostmarkTransport
from pdv_worker.errors import ConfigurationError
from pdv_worker.models import Job
from pdv_worker.notifications import NotificationBus, Notifier
from pdv_worker.queue_handler import JobQueue, RedisJobQueue
from pdv_worker.record_store import PostgresRecordStore, RecordStore
from pdv_worker.renderer import HttpDocumentRenderer
from pdv_worker.report_pipeline import ReportPipeline
from pdv_worker.settings import settings
from pdv_worker.text_generation import OpenAITextGenerator

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Any]


def build_record_store() -> RecordStore:
    """Postgres store for report and notification rows; DATABASE_DSN is required."""
    if not settings.database_dsn:
        raise ConfigurationError("DATABASE_DSN is not configured")
    return PostgresRecordStore(settings.database_dsn)


class WorkerPool:
    """
    Lease loop for one queue with up to ``concurrency`` handler calls in flight.

    A handler's return value is stored as the job result; an exception marks
    the job failed with the error text. Nothing is requeued here.
    """

    def __init__(self, queue: JobQueue, queue_name: str, handler: JobHandler, concurrency: int = 1,
                 poll_timeout: Optional[float] = None):
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_timeout = settings.worker_poll_timeout if poll_timeout is None else poll_timeout
        self.running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self.running = True
        self._thread = threading.Thread(target=self._loop, name=f"pool-{self.queue_name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self.running = False

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run_once(self) -> bool:
        """Lease and process a single job on the calling thread. Returns False when the queue was empty."""
        job = self.queue.lease(self.queue_name, timeout=self.poll_timeout)
        if job is None:
            return False
        self.process(job)
        return True

    def process(self, job: Job) -> None:
        start = time.perf_counter()
        logger.info("job_start queue=%s job=%s name=%s attempt=%d", self.queue_name, job.id, job.name,
                    job.attempt_count)
        try:
            result = self.handler(job)
        except Exception as e:
            logger.error("job_failed queue=%s job=%s: %s", self.queue_name, job.id, e)
            try:
                self.queue.fail(job, str(e) or e.__class__.__name__)
            except Exception as mark_err:
                logger.error("job_fail_mark_error queue=%s job=%s: %s", self.queue_name, job.id, mark_err)
            return
        try:
            completed = self.queue.complete(job, result)
        except Exception as e:
            logger.error("job_complete_mark_error queue=%s job=%s: %s", self.queue_name, job.id, e)
            return
        if not completed:
            return
        logger.info("job_succeeded queue=%s job=%s in %.2fs", self.queue_name, job.id, time.perf_counter() - start)

    def _loop(self) -> None:
        logger.info("Worker pool started (queue=%s, concurrency=%d)", self.queue_name, self.concurrency)
        futures: Set[Future] = set()
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"job-{self.queue_name}") as executor:
            while self.running:
                try:
                    done = {f for f in futures if f.done()}
                    for f in done:
                        futures.remove(f)
                        if exc := f.exception():
                            logger.error(f"Job execution failed: {exc}")

                    if len(futures) >= self.concurrency:
                        time.sleep(0.2)
                        continue

                    job = self.queue.lease(self.queue_name, timeout=self.poll_timeout)
                    if job:
                        futures.add(executor.submit(self.process, job))
                except Exception as e:
                    logger.error(f"Error in worker loop for {self.queue_name}: {e}")
                    time.sleep(5)
        logger.info("Worker pool stopped (queue=%s)", self.queue_name)


class PDVWorker:
    """Report and delivery worker: owns the queue pools, the notification bus and the watchdog."""

    def __init__(self, queue: JobQueue, store: Optional[RecordStore], bus: NotificationBus,
                 pipeline: ReportPipeline, dispatcher: DeliveryDispatcher, mode: Optional[str] = None):
        self.queue = queue
        self.store = store
        self.bus = bus
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.mode = mode or settings.worker_mode
        self.pools: List[WorkerPool] = []
        self.running = False
        self._stopped = threading.Event()
        self._watchdog_thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, require_store: bool = True) -> "PDVWorker":
        """
        Wire the worker from ``settings``.

        ``require_store=False`` tolerates a missing DATABASE_DSN so the health
        check can report it; such a worker refuses to start.
        """
        queue = RedisJobQueue()
        if settings.database_dsn or require_store:
            store = build_record_store()
        else:
            store = None
        bus = NotificationBus()
        notifier = Notifier(bus, store)
        pipeline = ReportPipeline(
            text_generator=OpenAITextGenerator(),
            renderer=HttpDocumentRenderer(),
            store=store,
            queue=queue,
            notifier=notifier,
        )
        dispatcher = DeliveryDispatcher(PostmarkTransport(), store, notifier, webhook=DeliveryWebhook())
        return cls(queue, store, bus, pipeline, dispatcher)

    def register_worker(self, queue_name: str, concurrency: int, handler: JobHandler) -> WorkerPool:
        pool = WorkerPool(self.queue, queue_name, handler, concurrency)
        self.pools.append(pool)
        return pool

    def _register_pools(self) -> None:
        if self.mode in ("all", "email"):
            self.register_worker(settings.queue_email, settings.email_concurrency, self.dispatcher.handle_job)
        if self.mode in ("all", "report"):
            self.register_worker(settings.queue_report, settings.report_concurrency, self.pipeline.handle_job)

    def start(self, install_signal_handlers: bool = True) -> None:
        """Start every pool and block until ``stop`` is called."""
        if self.store is None:
            raise ConfigurationError("DATABASE_DSN is not configured; refusing to start without a record store")
        logger.info("Starting PDV worker (mode=%s)", self.mode)
        self.running = True
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        self._register_pools()
        self._start_watchdog()
        try:
            for pool in self.pools:
                pool.start()
            self._stopped.wait()
        except Exception as e:
            logger.error(f"Worker failed: {e}")
            sys.exit(1)
        finally:
            for pool in self.pools:
                pool.stop()
            for pool in self.pools:
                pool.join(timeout=settings.worker_poll_timeout + 5)
            logger.info("Worker stopped")

    def stop(self) -> None:
        logger.info("Stopping worker...")
        self.running = False
        self._stopped.set()

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()

    def _start_watchdog(self) -> None:
        self._watchdog_thread = threading.Thread(target=self._watchdog_loop, name="pdv-watchdog", daemon=True)
        self._watchdog_thread.start()
        logger.info(
            "queue_watchdog_started interval_s=%d visibility_s=%d",
            settings.watchdog_interval_s, settings.queue_visibility_timeout_s,
        )

    def _watchdog_loop(self) -> None:
        """Periodically fail jobs whose lease outlived the visibility timeout."""
        while not self._stopped.wait(settings.watchdog_interval_s):
            for pool in self.pools:
                try:
                    reclaimed = self.queue.reclaim_stalled(pool.queue_name, settings.queue_visibility_timeout_s)
                    if reclaimed:
                        logger.info("queue_watchdog_tick_done queue=%s reclaimed=%d", pool.queue_name, reclaimed)
                except Exception as exc:
                    logger.error("queue_watchdog_tick_error queue=%s: %s", pool.queue_name, exc)

    def check_health(self) -> Dict[str, Any]:
        """Perform health check."""
        health_status = {
            "healthy": True,
            "checks": {}
        }

        try:
            redis_healthy = self.queue.is_healthy()
            health_status["checks"]["redis"] = {"healthy": redis_healthy}
            if not redis_healthy:
                health_status["healthy"] = False
        except Exception as e:
            health_status["checks"]["redis"] = {"healthy": False, "error": str(e)}
            health_status["healthy"] = False

        try:
            if self.store is None:
                raise ConfigurationError("DATABASE_DSN is not configured")
            store_healthy = self.store.is_healthy()
            health_status["checks"]["record_store"] = {
                "healthy": store_healthy,
                "backend": type(self.store).__name__,
            }
            if not store_healthy:
                health_status["healthy"] = False
        except Exception as e:
            health_status["checks"]["record_store"] = {"healthy": False, "error": str(e)}
            health_status["healthy"] = False

        required = {
            "database_dsn": settings.database_dsn,
            "openai_api_key": settings.openai_api_key,
            "redis_url": settings.redis_url,
            "renderer_url": settings.renderer_url,
            "postmark_server_token": settings.postmark_server_token,
        }
        missing = sorted(name for name, value in required.items() if not value)
        health_status["checks"]["environment"] = {"healthy": not missing, "missing": missing}
        if missing:
            health_status["healthy"] = False

        health_status["checks"]["notification_bus"] = {"healthy": True, "listeners": self.bus.listener_count()}
        return health_status
