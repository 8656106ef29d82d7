"""
Framework-neutral request handlers.

An HTTP layer maps its routes onto these methods and returns the dicts as
JSON bodies. Every handler answers with ``{"ok": bool, ...}``; only enqueue
acknowledgements are returned, never job results.
"""
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from pdv_worker.errors import JobNotFoundError, JobStateError, PDVWorkerError
from pdv_worker.models import DeliveryMessage, NotificationEvent, ReportJobRequest
from pdv_worker.notifications import NotificationBus, subscription_key
from pdv_worker.queue_handler import JobQueue
from pdv_worker.settings import settings

logger = logging.getLogger(__name__)


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "; ".join(parts)


class IngressService:
    def __init__(self, queue: JobQueue, bus: NotificationBus, email_queue: Optional[str] = None,
                 report_queue: Optional[str] = None, delivery_delay_ms: Optional[int] = None):
        self.queue = queue
        self.bus = bus
        self.email_queue = email_queue or settings.queue_email
        self.report_queue = report_queue or settings.queue_report
        self.delivery_delay_ms = settings.delivery_delay_ms if delivery_delay_ms is None else delivery_delay_ms

    def add_mailing_job(self, body: Dict[str, Any], delay_ms: Optional[int] = None) -> Dict[str, Any]:
        """Enqueue an email for delivery after the standard delay."""
        try:
            message = DeliveryMessage.model_validate(body)
            handle = self.queue.enqueue(
                self.email_queue,
                message.to_payload(),
                delay_ms=self.delivery_delay_ms if delay_ms is None else delay_ms,
                name="Email",
            )
        except ValidationError as e:
            return {"ok": False, "error": _validation_message(e)}
        except PDVWorkerError as e:
            logger.error("add_mailing_job_failed: %s", e)
            return {"ok": False, "error": str(e)}
        return {"ok": True, "jobId": handle.id}

    def update_mailing_job(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace the message fields of an email job that has not been sent yet.

        Fields absent from ``body`` keep their queued values, so routing
        metadata such as ``reportId`` survives an edit of the subject or body.
        """
        job_id = body.get("jobId")
        if not job_id:
            return {"ok": False, "error": "jobId is required"}
        fields = {k: v for k, v in body.items() if k != "jobId"}
        try:
            job = self.queue.get_job(self.email_queue, str(job_id))
            if job is None:
                return {"ok": False, "error": "Job not found"}
            message = DeliveryMessage.model_validate({**job.payload, **fields})
            self.queue.update_job_data(self.email_queue, job.id, message.to_payload())
        except ValidationError as e:
            return {"ok": False, "error": _validation_message(e)}
        except JobNotFoundError:
            return {"ok": False, "error": "Job not found"}
        except JobStateError as e:
            return {"ok": False, "error": str(e)}
        except PDVWorkerError as e:
            logger.error("update_mailing_job_failed job=%s: %s", job_id, e)
            return {"ok": False, "error": str(e)}
        return {"ok": True}

    def submit_report(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            request = ReportJobRequest.model_validate(body)
            handle = self.queue.enqueue(self.report_queue, request.to_payload(), name="PDVReport")
        except ValidationError as e:
            return {"ok": False, "error": _validation_message(e)}
        except PDVWorkerError as e:
            logger.error("submit_report_failed: %s", e)
            return {"ok": False, "error": str(e)}
        logger.info("report_submitted report=%s job=%s", request.report_id, handle.id)
        return {"ok": True, "jobId": handle.id}

    def relay_notification(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Push an externally produced notification to live listeners only; nothing is recorded."""
        try:
            event = NotificationEvent.model_validate(body)
        except ValidationError as e:
            return {"ok": False, "error": _validation_message(e)}
        delivered = self.bus.publish(subscription_key(event.platform_id, event.tenant_id), event)
        return {"ok": True, "delivered": delivered}

    def job_status(self, queue_name: str, job_id: str) -> Dict[str, Any]:
        try:
            job = self.queue.get_job(queue_name, job_id)
        except PDVWorkerError as e:
            return {"ok": False, "error": str(e)}
        if job is None:
            return {"ok": False, "error": "Job not found"}
        return {
            "ok": True,
            "job": {
                "id": job.id,
                "queue": job.queue_name,
                "name": job.name,
                "state": job.state.value,
                "attempts": job.attempt_count,
                "visibleAt": job.visible_at,
                "result": job.result,
                "error": job.error,
                "finishedAt": job.finished_at,
            },
        }
