import base64
import json
import threading
import unittest

from pdv_worker.errors import RecordNotFoundError, RecordStoreError, RenderError, TextGenerationError
from pdv_worker.models import DeliveryStatus, JobState, ReportJobRequest, ReportRecord
from pdv_worker.notifications import NotificationBus, Notifier
from pdv_worker.prompts import EMPTY_SUMMARY
from pdv_worker.queue_handler import MemoryJobQueue
from pdv_worker.record_store import MemoryRecordStore
from pdv_worker.renderer import DocumentRenderer
from pdv_worker.report_pipeline import PipelineStage, ReportPipeline, metrics_from_summary
from pdv_worker.text_generation import TextGenerator
from pdv_worker.worker import WorkerPool

PDF_BYTES = b"%PDF-1.4 rendered report"
EMAIL_QUEUE = "EmailQueue"
REPORT_QUEUE = "PDVReportQueue"

GOOD_SUMMARY = json.dumps({
    "summary": "Acme has a **strong** data moat.",
    "competitiveAdvantages": ["Proprietary telemetry"],
    "dataProfileTable": [
        {"dataMetric": "Data Reliance", "estimate": "80%", "strategicSignificance": "core"},
        {"dataMetric": "Data Attribution", "estimate": "45%", "strategicSignificance": "high"},
        {"dataMetric": "Data Scarcity", "estimate": "60%", "strategicSignificance": "rare"},
        {"dataMetric": "Data Ownership", "estimate": "60%", "strategicSignificance": "owned"},
        {"dataMetric": "Data Uniqueness", "estimate": "60%", "strategicSignificance": "unique"},
    ],
})

VALUATION_JSON = json.dumps({
    "yearsCollectingData": 3,
    "dataAttributablePercent": 0,
    "dataReliancePercent": 100,
    "currentCompanyValue": 1000,
    "yearlyValuations": [100, 200, 300],
})


class _ScriptedGenerator(TextGenerator):
    """Answers each prompt family with a canned response."""

    def __init__(self, summary=GOOD_SUMMARY, supplementary='{"sectorName": "Logistics"}',
                 valuation=VALUATION_JSON, fail_on=()):
        self.summary = summary
        self.supplementary = supplementary
        self.valuation = valuation
        self.fail_on = fail_on
        self.prompts = []
        self._lock = threading.Lock()

    def generate(self, prompt, system_prompt=None, max_tokens=1024):
        with self._lock:
            self.prompts.append(prompt)
        for marker in self.fail_on:
            if marker in prompt:
                raise TextGenerationError(f"upstream error for {marker}")
        if "powerful and professional data summary" in prompt:
            return self.summary
        if "Competitive Moat" in prompt:
            return self.supplementary
        if "data extraction expert" in prompt:
            return self.valuation
        if "5-line overview" in prompt:
            return "Acme runs a logistics marketplace."
        if "data collected by" in prompt:
            return "Acme collects shipment telemetry."
        if "sector that" in prompt:
            return "The sector relies on data for about 55% of decisions."
        return "Estimated at 40% based on public information."

    def calls_matching(self, marker):
        return [p for p in self.prompts if marker in p]


class _StubRenderer(DocumentRenderer):
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def render(self, org_name, pre_analysis, supplementary, valuation):
        self.calls.append((org_name, pre_analysis, supplementary, valuation))
        if self.error:
            raise self.error
        return PDF_BYTES


class _PersistFailingStore(MemoryRecordStore):
    def update_report(self, report_id, update):
        if "pdf_report_data" in update.changes():
            raise RecordStoreError("database unreachable")
        super().update_report(report_id, update)


def _request(**overrides):
    data = {
        "reportId": "r1",
        "orgName": "Acme",
        "workflowId": "w1",
        "reportType": "PDV",
        "userEmail": "owner@acme.test",
        "platformId": "p1",
        "organizationId": "o1",
        "orgWorkflowId": "ow1",
        "subdomain": "acme",
        "enableADV": False,
        "pdvAnswers": [],
    }
    data.update(overrides)
    return ReportJobRequest.model_validate(data)


class ReportPipelineTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryRecordStore()
        self.store.create_report(ReportRecord(id="r1"))
        self.queue = MemoryJobQueue()
        self.bus = NotificationBus()
        self.events = []
        self.bus.subscribe("p1_o1", self.events.append)

    def _pipeline(self, generator=None, renderer=None, store=None):
        self.generator = generator or _ScriptedGenerator()
        self.renderer = renderer or _StubRenderer()
        store = store or self.store
        return ReportPipeline(
            text_generator=self.generator,
            renderer=self.renderer,
            store=store,
            queue=self.queue,
            notifier=Notifier(self.bus, store),
            email_queue=EMAIL_QUEUE,
            delivery_delay_ms=300000,
            sender_email="reports@pdv.test",
            stage_timeout=10,
        )

    def test_end_to_end_without_valuation(self):
        artifacts = self._pipeline().run(_request(enableADV=False))

        self.assertEqual(artifacts.stage, PipelineStage.DONE)
        self.assertEqual(len(self.generator.calls_matching("5-line overview")), 1)
        self.assertEqual(len(self.generator.calls_matching("Competitive Moat")), 1)
        self.assertEqual(self.generator.calls_matching("data extraction expert"), [])

        self.assertEqual(len(self.renderer.calls), 1)
        org, pre, supp, valuation = self.renderer.calls[0]
        self.assertEqual(org, "Acme")
        self.assertIsNotNone(pre)
        self.assertEqual(supp, {"sectorName": "Logistics"})
        self.assertIsNone(valuation)

        record = self.store.get_report("r1")
        self.assertIsNone(record.adv_data)
        self.assertEqual(record.pdf_report_data, base64.b64encode(PDF_BYTES).decode())
        self.assertEqual(record.pre_adv_data["summary"]["competitiveAdvantages"], ["Proprietary telemetry"])

        jobs = self.queue.jobs(EMAIL_QUEUE)
        self.assertEqual(len(jobs), 1)
        job = jobs[0]
        self.assertEqual(job.name, "Email")
        self.assertEqual(job.state, JobState.DELAYED)
        self.assertEqual(job.visible_at - job.enqueued_at, 300000)
        self.assertEqual(job.payload["toEmail"], "owner@acme.test")
        self.assertEqual(job.payload["fromEmail"], "reports@pdv.test")
        self.assertEqual(job.payload["subject"], "Your PDV Report - Acme is Ready")
        self.assertEqual(job.payload["reportId"], "r1")
        self.assertIn("<strong>strong</strong>", job.payload["htmlBody"])
        attachment = job.payload["attachments"][0]
        self.assertEqual(attachment["ContentType"], "application/pdf")
        self.assertEqual(attachment["Name"], "PDV Report - Acme.pdf")
        self.assertEqual(base64.b64decode(attachment["Content"]), PDF_BYTES)

        self.assertEqual(record.delivery_job_id, job.id)
        self.assertEqual(record.delivery_status, DeliveryStatus.PENDING)
        self.assertEqual(artifacts.delivery_job_id, job.id)

        self.assertEqual([e.title for e in self.events], ["PDV Report Generated"])
        self.assertEqual(len(self.store.find_notifications("o1")), 1)

    def test_metric_prompts_seeded_with_overview(self):
        self._pipeline().run(_request())
        metric_prompts = self.generator.calls_matching("Estimate the data")
        self.assertEqual(len(metric_prompts), 5)
        self.assertTrue(all("Acme runs a logistics marketplace." in p for p in metric_prompts))

    def test_garbage_summary_still_persists(self):
        generator = _ScriptedGenerator(summary="I'm sorry, I cannot produce JSON today.")
        artifacts = self._pipeline(generator=generator).run(_request())

        self.assertEqual(artifacts.pre_analysis["summary"], EMPTY_SUMMARY)
        record = self.store.get_report("r1")
        self.assertEqual(record.pre_adv_data["summary"], EMPTY_SUMMARY)
        self.assertEqual(record.pdf_report_data, base64.b64encode(PDF_BYTES).decode())
        self.assertEqual(artifacts.stage, PipelineStage.DONE)

    def test_render_failure_skips_delivery(self):
        renderer = _StubRenderer(error=RenderError("renderer unavailable"))
        artifacts = self._pipeline(renderer=renderer).run(_request())

        self.assertEqual(self.queue.jobs(EMAIL_QUEUE), [])
        record = self.store.get_report("r1")
        self.assertIsNone(record.delivery_job_id)
        self.assertIsNone(record.delivery_status)
        self.assertIsNone(record.pdf_report_data)
        self.assertIsNotNone(record.pre_adv_data)
        self.assertIsNotNone(record.supplement_adv_data)
        self.assertIn("render", artifacts.stage_errors)
        self.assertEqual(len(self.events), 1)
        self.assertIn("No email delivery", self.events[0].description)

    def test_missing_recipient_skips_delivery(self):
        self._pipeline().run(_request(userEmail=""))
        self.assertEqual(self.queue.jobs(EMAIL_QUEUE), [])
        self.assertIsNotNone(self.store.get_report("r1").pdf_report_data)

    def test_valuation_uses_profile_fallbacks(self):
        answers = [{"question": "What percentage of business is data reliant?", "answer": "all of it"}]
        artifacts = self._pipeline().run(_request(enableADV=True, pdvAnswers=answers))

        self.assertEqual(artifacts.metrics["dataReliance"], 80.0)
        record = self.store.get_report("r1")
        self.assertEqual(record.adv_data["upperADV"], 252)
        self.assertEqual(record.adv_data["lowerADV"], 176)
        self.assertEqual(record.adv_data["calculationDetails"]["dataReliancePercent"], 80.0)
        self.assertEqual(record.adv_data["calculationDetails"]["dataAttributablePercent"], 45.0)
        self.assertEqual(record.adv_data["qaTable"], answers)
        self.assertEqual(record.lower_adv_range, "$0.0M")
        self.assertIsNotNone(self.renderer.calls[0][3])

    def test_unparseable_valuation_is_absent(self):
        generator = _ScriptedGenerator(valuation="The company is worth a lot.")
        answers = [{"question": "q", "answer": "a"}]
        artifacts = self._pipeline(generator=generator).run(_request(enableADV=True, pdvAnswers=answers))

        self.assertIsNone(artifacts.valuation)
        self.assertIsNone(self.store.get_report("r1").adv_data)
        self.assertIsNone(self.renderer.calls[0][3])
        self.assertEqual(artifacts.stage, PipelineStage.DONE)

    def test_non_finite_valuation_numbers_are_skipped(self):
        answers = [{"question": "q", "answer": "a"}]
        outputs = [
            '{"yearsCollectingData": 3, "dataAttributablePercent": 40, "dataReliancePercent": 60, '
            '"currentCompanyValue": 1000, "yearlyValuations": [100, NaN]}',
            '{"yearsCollectingData": 1e400, "dataAttributablePercent": 40, "dataReliancePercent": 60, '
            '"currentCompanyValue": 1000, "yearlyValuations": [100]}',
            '{"yearsCollectingData": 3, "dataAttributablePercent": 40, "dataReliancePercent": 60, '
            '"currentCompanyValue": 1000, "yearlyValuations": [1e308, 1e308]}',
        ]
        for raw in outputs:
            with self.subTest(raw=raw):
                self.store.create_report(ReportRecord(id="r1"))
                self.queue = MemoryJobQueue()
                generator = _ScriptedGenerator(valuation=raw)

                artifacts = self._pipeline(generator=generator).run(_request(enableADV=True, pdvAnswers=answers))

                self.assertEqual(artifacts.stage, PipelineStage.DONE)
                self.assertIsNone(artifacts.valuation)
                record = self.store.get_report("r1")
                self.assertIsNone(record.adv_data)
                self.assertIsNone(record.upper_adv_range)
                self.assertEqual(record.delivery_status, DeliveryStatus.PENDING)
                self.assertEqual(len(self.queue.jobs(EMAIL_QUEUE)), 1)

    def test_summary_with_loose_rows_is_kept(self):
        summary = json.dumps({
            "summary": "Acme is strong.",
            "competitiveAdvantages": ["Telemetry"],
            "dataProfileTable": [
                {"dataMetric": "Data Reliance", "estimate": 80},
                {"dataMetric": "Data Ownership", "estimate": "70%", "strategicSignificance": None},
                {"estimate": "10%"},
            ],
        })
        artifacts = self._pipeline(generator=_ScriptedGenerator(summary=summary)).run(_request())

        stored = artifacts.pre_analysis["summary"]
        self.assertEqual(stored["summary"], "Acme is strong.")
        self.assertEqual(stored["competitiveAdvantages"], ["Telemetry"])
        self.assertEqual([row["dataMetric"] for row in stored["dataProfileTable"]],
                         ["Data Reliance", "Data Ownership"])
        self.assertEqual(stored["dataProfileTable"][0]["estimate"], "80%")
        self.assertEqual(stored["dataProfileTable"][0]["strategicSignificance"], "")
        self.assertEqual(artifacts.metrics["dataReliance"], 80.0)
        self.assertEqual(artifacts.metrics["dataOwnership"], 70.0)

    def test_missing_report_row_fails_at_persist(self):
        store = MemoryRecordStore()
        with self.assertRaises(RecordNotFoundError):
            self._pipeline(store=store).run(_request())
        self.assertEqual(self.queue.jobs(EMAIL_QUEUE), [])
        self.assertEqual([e.title for e in self.events], ["PDV Report Failed"])

    def test_valuation_without_answers_is_skipped(self):
        self._pipeline().run(_request(enableADV=True, pdvAnswers=[]))
        self.assertEqual(self.generator.calls_matching("data extraction expert"), [])

    def test_pre_analysis_failure_does_not_block_supplementary(self):
        generator = _ScriptedGenerator(fail_on=("5-line overview",))
        artifacts = self._pipeline(generator=generator).run(_request())

        self.assertIsNone(artifacts.pre_analysis)
        self.assertIn("pre_analysis", artifacts.stage_errors)
        record = self.store.get_report("r1")
        self.assertIsNone(record.pre_adv_data)
        self.assertEqual(record.supplement_adv_data, {"sectorName": "Logistics"})
        self.assertEqual(len(self.queue.jobs(EMAIL_QUEUE)), 1)

    def test_malformed_supplementary_becomes_empty_object(self):
        generator = _ScriptedGenerator(supplementary="no comparison available")
        self._pipeline(generator=generator).run(_request())
        self.assertEqual(self.store.get_report("r1").supplement_adv_data, {})

    def test_persist_failure_fails_report(self):
        store = _PersistFailingStore()
        store.create_report(ReportRecord(id="r1"))
        pipeline = self._pipeline(store=store)

        with self.assertRaises(RecordStoreError):
            pipeline.run(_request())

        record = store.get_report("r1")
        self.assertEqual(record.delivery_status, DeliveryStatus.DELIVERY_FAILED)
        self.assertEqual(record.email_delivery_error, "database unreachable")
        self.assertEqual(self.queue.jobs(EMAIL_QUEUE), [])
        self.assertEqual([e.title for e in self.events], ["PDV Report Failed"])

    def test_job_handler_through_worker_pool(self):
        pipeline = self._pipeline()
        handle = self.queue.enqueue(REPORT_QUEUE, _request().to_payload())
        pool = WorkerPool(self.queue, REPORT_QUEUE, pipeline.handle_job, concurrency=2, poll_timeout=0)

        self.assertTrue(pool.run_once())

        job = self.queue.get_job(REPORT_QUEUE, handle.id)
        self.assertEqual(job.state, JobState.COMPLETED)
        self.assertEqual(job.result["reportId"], "r1")
        self.assertEqual(job.result["deliveryJobId"], self.queue.jobs(EMAIL_QUEUE)[0].id)


class MetricsFromSummaryTests(unittest.TestCase):
    def test_table_first_then_text(self):
        summary = {"dataProfileTable": [
            {"dataMetric": "Sector Data Reliance", "estimate": "55%"},
            {"dataMetric": "Data Reliance", "estimate": "80 percent"},
            {"dataMetric": "Data Ownership", "estimate": "high"},
        ]}
        texts = {"dataOwnership": "Ownership is around 70%.", "dataScarcity": "unknown"}

        metrics = metrics_from_summary(summary, texts)

        self.assertEqual(metrics["dataReliance"], 80.0)
        self.assertEqual(metrics["sectorReliance"], 55.0)
        self.assertEqual(metrics["dataOwnership"], 70.0)
        self.assertIsNone(metrics["dataScarcity"])


if __name__ == "__main__":
    unittest.main()
