"""
Report pipeline: questionnaire + organization name in, rendered report and a
scheduled delivery out.

Stages run sequentially inside one handler call:

    RECEIVED -> GENERATING_PRE_ANALYSIS -> GENERATING_SUPPLEMENT
             -> GENERATING_VALUATION (only when enableADV) -> RENDERING
             -> PERSISTING -> SCHEDULING_DELIVERY -> DONE

Any stage may end in FAILED. Generation and rendering failures leave that
stage's artifact absent and the run continues; the persist step is the
durability checkpoint and its failure fails the job.
"""
import base64
import copy
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError

from pdv_worker.deadline import call_with_deadline
from pdv_worker.email_templates import attachment_name, render_html_body, render_text_body, report_subject
from pdv_worker.models import (
    Attachment,
    DeliveryMessage,
    DeliveryStatus,
    Job,
    NotificationEvent,
    ReportJobRequest,
    ReportUpdate,
)
from pdv_worker.notifications import Notifier
from pdv_worker.parsing import extract_percentage, parse_json_object
from pdv_worker.prompts import (
    EMPTY_SUMMARY,
    DataSummary,
    PreAnalysisPrompts,
    SupplementaryPrompt,
    ValuationExtractionPrompt,
    with_context,
)
from pdv_worker.queue_handler import JobQueue
from pdv_worker.record_store import RecordStore
from pdv_worker.renderer import DocumentRenderer
from pdv_worker.settings import settings
from pdv_worker.text_generation import TextGenerator
from pdv_worker.valuation import ValuationInputs, build_valuation_report

logger = logging.getLogger(__name__)

# dataProfileTable rows are matched to metrics by these name fragments
_METRIC_LABELS = {
    "dataReliance": "reliance",
    "dataAttribute": "attribut",
    "dataUniqueness": "uniqueness",
    "dataScarcity": "scarcity",
    "dataOwnership": "ownership",
    "sectorReliance": "sector",
}

ATTACHMENT_CONTENT_ID = "adv-report-pdf"


class PipelineStage(str, Enum):
    RECEIVED = "RECEIVED"
    GENERATING_PRE_ANALYSIS = "GENERATING_PRE_ANALYSIS"
    GENERATING_SUPPLEMENT = "GENERATING_SUPPLEMENT"
    GENERATING_VALUATION = "GENERATING_VALUATION"
    RENDERING = "RENDERING"
    PERSISTING = "PERSISTING"
    SCHEDULING_DELIVERY = "SCHEDULING_DELIVERY"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class ReportArtifacts:
    """What one pipeline run produced; absent artifacts stay None."""

    report_id: str
    stage: PipelineStage = PipelineStage.RECEIVED
    pre_analysis: Optional[Dict[str, Any]] = None
    metrics: Dict[str, Optional[float]] = field(default_factory=dict)
    supplementary: Optional[Dict[str, Any]] = None
    valuation: Optional[Dict[str, Any]] = None
    lower_range: Optional[str] = None
    upper_range: Optional[str] = None
    document: Optional[bytes] = None
    delivery_job_id: Optional[str] = None
    stage_errors: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def document_base64(self) -> Optional[str]:
        if self.document is None:
            return None
        return base64.b64encode(self.document).decode("ascii")


def metrics_from_summary(summary: Dict[str, Any], metric_texts: Dict[str, str]) -> Dict[str, Optional[float]]:
    """
    Numeric metric estimates: the summary's dataProfileTable first, then the
    percentage found in each metric's own answer text.
    """
    rows = summary.get("dataProfileTable") or []
    metrics: Dict[str, Optional[float]] = {}
    for key, label in _METRIC_LABELS.items():
        value = None
        for row in rows:
            name = str(row.get("dataMetric", "")).lower() if isinstance(row, dict) else ""
            if label not in name:
                continue
            if key == "dataReliance" and "sector" in name:
                continue
            value = extract_percentage(str(row.get("estimate", "")))
            if value is not None:
                break
        if value is None:
            value = extract_percentage(metric_texts.get(key))
        metrics[key] = value
    return metrics


class ReportPipeline:
    """Handler for report-queue jobs."""

    def __init__(
        self,
        text_generator: TextGenerator,
        renderer: DocumentRenderer,
        store: RecordStore,
        queue: JobQueue,
        notifier: Notifier,
        email_queue: Optional[str] = None,
        delivery_delay_ms: Optional[int] = None,
        sender_email: Optional[str] = None,
        stage_timeout: Optional[float] = None,
    ):
        self.text_generator = text_generator
        self.renderer = renderer
        self.store = store
        self.queue = queue
        self.notifier = notifier
        self.email_queue = email_queue or settings.queue_email
        self.delivery_delay_ms = settings.delivery_delay_ms if delivery_delay_ms is None else delivery_delay_ms
        self.sender_email = sender_email or settings.sender_email
        self.stage_timeout = settings.stage_timeout_seconds if stage_timeout is None else stage_timeout

    def handle_job(self, job: Job) -> Dict[str, Any]:
        request = ReportJobRequest.model_validate(job.payload)
        artifacts = self.run(request, job_id=job.id)
        return {
            "success": True,
            "reportId": request.report_id,
            "deliveryJobId": artifacts.delivery_job_id,
            "stageErrors": artifacts.stage_errors,
        }

    def run(self, request: ReportJobRequest, job_id: Optional[str] = None) -> ReportArtifacts:
        artifacts = ReportArtifacts(report_id=request.report_id)
        start = time.perf_counter()
        logger.info(
            "report_start report=%s job=%s org=%r tenant=%s platform=%s adv=%s",
            request.report_id, job_id, request.org_name, request.tenant_id, request.platform_id, request.enable_adv,
        )
        try:
            self._advance(artifacts, PipelineStage.GENERATING_PRE_ANALYSIS)
            self._pre_analysis_stage(request, artifacts)
            self._checkpoint(request.report_id, ReportUpdate(pre_adv_data=artifacts.pre_analysis))

            self._advance(artifacts, PipelineStage.GENERATING_SUPPLEMENT)
            self._supplementary_stage(request, artifacts)
            self._checkpoint(request.report_id, ReportUpdate(supplement_adv_data=artifacts.supplementary))

            if request.enable_adv:
                self._advance(artifacts, PipelineStage.GENERATING_VALUATION)
                self._valuation_stage(request, artifacts)
                self._checkpoint(request.report_id, ReportUpdate(
                    adv_data=artifacts.valuation,
                    lower_adv_range=artifacts.lower_range,
                    upper_adv_range=artifacts.upper_range,
                ))

            self._advance(artifacts, PipelineStage.RENDERING)
            self._render_stage(request, artifacts)

            self._advance(artifacts, PipelineStage.PERSISTING)
            self._persist(request, artifacts)

            self._advance(artifacts, PipelineStage.SCHEDULING_DELIVERY)
            self._schedule_delivery(request, artifacts)

            self._advance(artifacts, PipelineStage.DONE)
        except Exception as e:
            failed_at = artifacts.stage
            artifacts.stage = PipelineStage.FAILED
            artifacts.error = str(e) or e.__class__.__name__
            logger.error("report_failed report=%s stage=%s: %s", request.report_id, failed_at.value, e)
            self._mark_failed(request.report_id, artifacts.error)
            self._notify_failure(request, artifacts.error)
            raise

        self._notify_success(request, artifacts)
        logger.info(
            "report_done report=%s delivery_job=%s stage_errors=%s in %.2fs",
            request.report_id, artifacts.delivery_job_id, sorted(artifacts.stage_errors),
            time.perf_counter() - start,
        )
        return artifacts

    # ── Stages ───────────────────────────────────────────────────────────────

    def _generate(self, label: str, prompt: str, max_tokens: int, system_prompt: Optional[str] = None) -> str:
        return call_with_deadline(
            label, self.stage_timeout, self.text_generator.generate,
            prompt, system_prompt=system_prompt, max_tokens=max_tokens,
        )

    def _pre_analysis_stage(self, request: ReportJobRequest, artifacts: ReportArtifacts) -> None:
        org = request.org_name
        try:
            overview = self._generate("pre_analysis.overview", PreAnalysisPrompts.overview.format(org_name=org), 300)

            metric_texts: Dict[str, str] = {}
            with ThreadPoolExecutor(max_workers=len(PreAnalysisPrompts.metrics),
                                    thread_name_prefix="pdv-metric") as pool:
                futures = {
                    key: pool.submit(
                        self._generate, f"pre_analysis.{key}",
                        with_context(prompt.format(org_name=org), overview), 200,
                    )
                    for key, prompt in PreAnalysisPrompts.metrics.items()
                }
                for key, future in futures.items():
                    try:
                        metric_texts[key] = future.result()
                    except Exception as e:
                        logger.warning("metric_generation_failed report=%s metric=%s: %s", request.report_id, key, e)
                        metric_texts[key] = ""

            data_collection = self._generate(
                "pre_analysis.data_collection",
                with_context(PreAnalysisPrompts.data_collection.format(org_name=org), overview),
                400,
            )
            context = "\n\n".join(t for t in [overview, *metric_texts.values(), data_collection] if t)
            summary_raw = self._generate(
                "pre_analysis.summary", with_context(PreAnalysisPrompts.summary.format(org_name=org), context), 600
            )
        except Exception as e:
            self._stage_failed(artifacts, "pre_analysis", e)
            return

        summary = self._parse_summary(summary_raw, request.report_id)
        artifacts.metrics = metrics_from_summary(summary, metric_texts)
        artifacts.pre_analysis = {
            "overview": overview,
            **{key: metric_texts.get(key, "") for key in PreAnalysisPrompts.metrics},
            "dataCollection": data_collection,
            "summary": summary,
            "metricEstimates": artifacts.metrics,
        }
        logger.info(
            "pre_analysis_done report=%s metrics=%s",
            request.report_id, {k: v for k, v in artifacts.metrics.items() if v is not None},
        )

    @staticmethod
    def _parse_summary(raw: str, report_id: str) -> Dict[str, Any]:
        data = parse_json_object(raw)
        if data is None:
            logger.warning("summary_unparseable report=%s chars=%d", report_id, len(raw or ""))
            return copy.deepcopy(EMPTY_SUMMARY)
        try:
            return DataSummary.model_validate(data).model_dump()
        except ValidationError as e:
            logger.warning("summary_invalid report=%s: %s", report_id, e.errors()[:3])
            return copy.deepcopy(EMPTY_SUMMARY)

    def _supplementary_stage(self, request: ReportJobRequest, artifacts: ReportArtifacts) -> None:
        prompt = with_context(
            SupplementaryPrompt.comparison.format(org_name=request.org_name),
            SupplementaryPrompt.metrics_context(artifacts.metrics),
        )
        try:
            raw = self._generate("supplementary", prompt, 800)
        except Exception as e:
            self._stage_failed(artifacts, "supplementary", e)
            return
        comparison = parse_json_object(raw)
        if comparison is None:
            logger.warning("supplementary_unparseable report=%s", request.report_id)
            comparison = {}
        artifacts.supplementary = comparison

    def _valuation_stage(self, request: ReportJobRequest, artifacts: ReportArtifacts) -> None:
        if not request.pdv_answers:
            logger.info("valuation_skipped report=%s reason=no_answers", request.report_id)
            return
        answers = {qa.question: qa.answer for qa in request.pdv_answers}
        try:
            raw = self._generate(
                "valuation.extract", ValuationExtractionPrompt.build(answers), 1024,
                system_prompt=ValuationExtractionPrompt.system,
            )
        except Exception as e:
            self._stage_failed(artifacts, "valuation", e)
            return

        data = parse_json_object(raw)
        if data is None:
            logger.warning("valuation_unparseable report=%s", request.report_id)
            return
        try:
            inputs = ValuationInputs.model_validate(data)
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning("valuation_inputs_invalid report=%s: %s", request.report_id, e)
            return

        metrics = artifacts.metrics
        try:
            report = build_valuation_report(
                inputs,
                [qa.model_dump() for qa in request.pdv_answers],
                reliance_fallback=metrics.get("dataReliance"),
                attributable_fallback=metrics.get("dataAttribute"),
                scarcity=metrics.get("dataScarcity"),
                ownership=metrics.get("dataOwnership"),
                uniqueness=metrics.get("dataUniqueness"),
            )
        except (ArithmeticError, ValueError) as e:
            self._stage_failed(artifacts, "valuation", e)
            return
        artifacts.valuation = report["advData"]
        artifacts.lower_range = report["lowerADVRange"]
        artifacts.upper_range = report["upperADVRange"]
        logger.info(
            "valuation_done report=%s lower=%s upper=%s",
            request.report_id, artifacts.lower_range, artifacts.upper_range,
        )

    def _render_stage(self, request: ReportJobRequest, artifacts: ReportArtifacts) -> None:
        try:
            artifacts.document = call_with_deadline(
                "render", self.stage_timeout, self.renderer.render,
                request.org_name, artifacts.pre_analysis, artifacts.supplementary, artifacts.valuation,
            )
        except Exception as e:
            self._stage_failed(artifacts, "render", e)

    def _persist(self, request: ReportJobRequest, artifacts: ReportArtifacts) -> None:
        update = ReportUpdate(
            pre_adv_data=artifacts.pre_analysis,
            supplement_adv_data=artifacts.supplementary,
            adv_data=artifacts.valuation,
            lower_adv_range=artifacts.lower_range,
            upper_adv_range=artifacts.upper_range,
            pdf_report_data=artifacts.document_base64,
        )
        call_with_deadline("persist", self.stage_timeout, self.store.update_report, request.report_id, update)
        logger.info(
            "report_persisted report=%s pre=%s supp=%s adv=%s document=%s",
            request.report_id, artifacts.pre_analysis is not None, artifacts.supplementary is not None,
            artifacts.valuation is not None, artifacts.document is not None,
        )

    def _schedule_delivery(self, request: ReportJobRequest, artifacts: ReportArtifacts) -> None:
        if artifacts.document is None or not request.user_email:
            logger.info(
                "delivery_not_scheduled report=%s document=%s recipient=%s",
                request.report_id, artifacts.document is not None, bool(request.user_email),
            )
            return
        summary_text = ((artifacts.pre_analysis or {}).get("summary") or {}).get("summary")
        message = DeliveryMessage(
            sender=self.sender_email,
            recipient=request.user_email,
            subject=report_subject(request.org_name),
            html_body=render_html_body(request.org_name, summary_text),
            text_body=render_text_body(request.org_name, summary_text),
            attachments=[Attachment(
                name=attachment_name(request.org_name),
                content_base64=artifacts.document_base64,
                content_id=ATTACHMENT_CONTENT_ID,
                mime_type="application/pdf",
            )],
            correlation_id=request.report_id,
            subdomain=request.subdomain,
            platform_id=request.platform_id,
            organization_id=request.organization_id,
        )
        handle = call_with_deadline(
            "enqueue_delivery", self.stage_timeout, self.queue.enqueue,
            self.email_queue, message.to_payload(), delay_ms=self.delivery_delay_ms, name="Email",
        )
        artifacts.delivery_job_id = handle.id
        call_with_deadline(
            "record_delivery_job", self.stage_timeout, self.store.update_report,
            request.report_id, ReportUpdate(delivery_job_id=handle.id, delivery_status=DeliveryStatus.PENDING),
        )
        logger.info(
            "delivery_scheduled report=%s job=%s delay_ms=%d", request.report_id, handle.id, self.delivery_delay_ms
        )

    # ── Helpers ──────────────────────────────────────────────────────────────

    @staticmethod
    def _advance(artifacts: ReportArtifacts, stage: PipelineStage) -> None:
        artifacts.stage = stage
        logger.debug("report_stage report=%s stage=%s", artifacts.report_id, stage.value)

    @staticmethod
    def _stage_failed(artifacts: ReportArtifacts, name: str, error: Exception) -> None:
        artifacts.stage_errors[name] = str(error) or error.__class__.__name__
        logger.warning("stage_failed report=%s stage=%s: %s", artifacts.report_id, name, error)

    def _checkpoint(self, report_id: str, update: ReportUpdate) -> None:
        try:
            call_with_deadline("checkpoint", self.stage_timeout, self.store.update_report, report_id, update)
        except Exception as e:
            logger.warning("checkpoint_failed report=%s fields=%s: %s", report_id, sorted(update.changes()), e)

    def _mark_failed(self, report_id: str, message: str) -> None:
        try:
            self.store.update_report(report_id, ReportUpdate(
                delivery_status=DeliveryStatus.DELIVERY_FAILED,
                email_delivery_error=message,
            ))
        except Exception as e:
            logger.error("Failed to update report error status for %s: %s", report_id, e)

    def _notify_success(self, request: ReportJobRequest, artifacts: ReportArtifacts) -> None:
        if artifacts.delivery_job_id:
            description = "Your PDV report has been generated successfully. Email delivery has been scheduled."
        else:
            description = "Your PDV report has been generated. No email delivery was scheduled."
        self.notifier.notify(NotificationEvent(
            title="PDV Report Generated",
            description=description,
            tenant_id=request.tenant_id,
            platform_id=request.platform_id,
        ))

    def _notify_failure(self, request: ReportJobRequest, error: str) -> None:
        self.notifier.notify(NotificationEvent(
            title="PDV Report Failed",
            description=f"Your PDV report for {request.org_name} could not be generated: {error}",
            tenant_id=request.tenant_id,
            platform_id=request.platform_id,
        ))