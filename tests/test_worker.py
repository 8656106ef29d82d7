import threading
import time
import unittest
from unittest import mock
from unittest.mock import MagicMock

from pdv_worker.errors import ConfigurationError
from pdv_worker.models import JobState
from pdv_worker.notifications import NotificationBus
from pdv_worker.queue_handler import MemoryJobQueue
from pdv_worker.record_store import MemoryRecordStore, PostgresRecordStore
from pdv_worker.settings import settings
from pdv_worker.worker import PDVWorker, WorkerPool, build_record_store


class WorkerPoolTests(unittest.TestCase):
    def test_handler_result_completes_job(self):
        queue = MemoryJobQueue()
        handle = queue.enqueue("Q", {"n": 1})
        pool = WorkerPool(queue, "Q", lambda job: {"seen": job.payload["n"]}, poll_timeout=0)

        self.assertTrue(pool.run_once())

        job = queue.get_job("Q", handle.id)
        self.assertEqual(job.state, JobState.COMPLETED)
        self.assertEqual(job.result, {"seen": 1})

    def test_handler_exception_fails_job_without_requeue(self):
        queue = MemoryJobQueue()
        handle = queue.enqueue("Q", {})

        def handler(job):
            raise RuntimeError("mail provider down")

        pool = WorkerPool(queue, "Q", handler, poll_timeout=0)
        pool.run_once()

        job = queue.get_job("Q", handle.id)
        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.error, "mail provider down")
        self.assertEqual(queue.get_queue_length("Q"), 0)
        self.assertFalse(pool.run_once())

    def test_concurrency_limit(self):
        queue = MemoryJobQueue()
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        def handler(job):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.05)
            with lock:
                state["active"] -= 1

        handles = [queue.enqueue("Q", {"i": i}) for i in range(5)]
        pool = WorkerPool(queue, "Q", handler, concurrency=2, poll_timeout=0.05)
        pool.start()
        try:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                states = [queue.get_job("Q", h.id).state for h in handles]
                if all(s == JobState.COMPLETED for s in states):
                    break
                time.sleep(0.02)
        finally:
            pool.stop()
            pool.join(timeout=2)

        self.assertTrue(all(queue.get_job("Q", h.id).state == JobState.COMPLETED for h in handles))
        self.assertLessEqual(state["peak"], 2)


class PDVWorkerTests(unittest.TestCase):
    def _worker(self, mode="all"):
        return PDVWorker(
            queue=MemoryJobQueue(),
            store=MemoryRecordStore(),
            bus=NotificationBus(),
            pipeline=MagicMock(),
            dispatcher=MagicMock(),
            mode=mode,
        )

    def test_mode_selects_pools(self):
        worker = self._worker(mode="report")
        worker._register_pools()
        self.assertEqual([p.queue_name for p in worker.pools], [settings.queue_report])
        self.assertEqual(worker.pools[0].concurrency, settings.report_concurrency)

        worker = self._worker(mode="all")
        worker._register_pools()
        self.assertEqual({p.queue_name for p in worker.pools}, {settings.queue_email, settings.queue_report})

    def test_health_reports_missing_environment(self):
        worker = self._worker()
        with mock.patch.object(settings, "database_dsn", "postgresql://pdv@db/pdv"), \
                mock.patch.object(settings, "openai_api_key", ""), \
                mock.patch.object(settings, "renderer_url", "http://renderer"), \
                mock.patch.object(settings, "postmark_server_token", "token"):
            health = worker.check_health()

        self.assertFalse(health["healthy"])
        self.assertTrue(health["checks"]["redis"]["healthy"])
        self.assertTrue(health["checks"]["record_store"]["healthy"])
        self.assertEqual(health["checks"]["environment"]["missing"], ["openai_api_key"])

    def test_health_ok_when_configured(self):
        worker = self._worker()
        with mock.patch.object(settings, "database_dsn", "postgresql://pdv@db/pdv"), \
                mock.patch.object(settings, "openai_api_key", "key"), \
                mock.patch.object(settings, "renderer_url", "http://renderer"), \
                mock.patch.object(settings, "postmark_server_token", "token"):
            health = worker.check_health()
        self.assertTrue(health["healthy"])

    def test_start_refuses_without_record_store(self):
        worker = PDVWorker(MemoryJobQueue(), None, NotificationBus(), MagicMock(), MagicMock())
        with self.assertRaises(ConfigurationError):
            worker.start(install_signal_handlers=False)
        self.assertEqual(worker.pools, [])

    def test_build_record_store_requires_dsn(self):
        with mock.patch.object(settings, "database_dsn", None):
            with self.assertRaises(ConfigurationError):
                build_record_store()
        with mock.patch.object(settings, "database_dsn", "postgresql://pdv@db/pdv"):
            self.assertIsInstance(build_record_store(), PostgresRecordStore)

    def test_health_from_settings_without_credentials(self):
        with mock.patch("pdv_worker.worker.RedisJobQueue", MemoryJobQueue), \
                mock.patch.object(settings, "database_dsn", None), \
                mock.patch.object(settings, "openai_api_key", ""), \
                mock.patch.object(settings, "renderer_url", "http://renderer"), \
                mock.patch.object(settings, "postmark_server_token", "token"):
            worker = PDVWorker.from_settings(require_store=False)
            health = worker.check_health()

        self.assertFalse(health["healthy"])
        self.assertFalse(health["checks"]["record_store"]["healthy"])
        self.assertEqual(health["checks"]["environment"]["missing"], ["database_dsn", "openai_api_key"])


if __name__ == "__main__":
    unittest.main()
