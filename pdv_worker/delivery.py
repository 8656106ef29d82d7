import logging
import time
from typing import Any, Dict, Optional

import requests

from pdv_worker.deadline import call_with_deadline
from pdv_worker.errors import MailTransportError
from pdv_worker.models import DeliveryMessage, DeliveryStatus, Job, NotificationEvent, ReportUpdate
from pdv_worker.notifications import Notifier
from pdv_worker.record_store import RecordStore
from pdv_worker.settings import settings

logger = logging.getLogger(__name__)


class MailTransport:
    """Capability: send one email, returning the provider message id."""

    def send(self, message: DeliveryMessage) -> str:
        raise NotImplementedError


class PostmarkTransport(MailTransport):
    """Sends through the Postmark HTTP API."""

    def __init__(self, server_token: Optional[str] = None, api_url: Optional[str] = None,
                 message_stream: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.server_token = server_token or settings.postmark_server_token
        self.api_url = api_url or settings.postmark_api_url
        self.message_stream = message_stream or settings.mail_message_stream
        self.timeout = timeout or settings.mail_timeout_seconds
        self.session = session or requests.Session()

    def _body(self, message: DeliveryMessage) -> Dict[str, Any]:
        return {
            "From": message.sender,
            "To": message.recipient,
            "Subject": message.subject,
            "HtmlBody": message.html_body,
            "TextBody": message.text_body,
            "MessageStream": self.message_stream,
            "Attachments": [a.to_payload() for a in message.attachments],
        }

    def send(self, message: DeliveryMessage) -> str:
        if not self.server_token:
            raise MailTransportError("POSTMARK_SERVER_TOKEN is not configured")
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Postmark-Server-Token": self.server_token,
        }
        try:
            response = self.session.post(self.api_url, json=self._body(message), headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise MailTransportError(f"Mail request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        error_code = data.get("ErrorCode")
        if response.status_code >= 400 or error_code:
            detail = data.get("Message") or response.text[:200]
            raise MailTransportError(
                f"Mail provider rejected message (status={response.status_code}): {detail}",
                error_code=error_code,
            )
        message_id = data.get("MessageID")
        if not message_id:
            raise MailTransportError("Mail provider response has no MessageID")
        return message_id


class DeliveryWebhook:
    """Tells the tenant's platform how a delivery went."""

    def __init__(self, url_template: Optional[str] = None, timeout: float = 30.0):
        self.url_template = url_template if url_template is not None else settings.delivery_webhook_template
        self.timeout = timeout

    def url_for(self, subdomain: Optional[str]) -> Optional[str]:
        if not self.url_template or not subdomain:
            return None
        return self.url_template.format(subdomain=subdomain)

    def send(self, message: DeliveryMessage, success: bool, message_id: Optional[str] = None,
             error_message: Optional[str] = None) -> Optional[float]:
        url = self.url_for(message.subdomain)
        if not url:
            return None
        if success:
            payload = {"mailId": message_id, "success": True, "reportId": message.correlation_id}
        else:
            payload = {"success": False, "reportId": message.correlation_id, "error": error_message}
        try:
            start = time.perf_counter()
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            duration_ms = (time.perf_counter() - start) * 1000
            logger.info("delivery_webhook_sent report=%s url=%s in %.2fms", message.correlation_id, url, duration_ms)
            return duration_ms
        except requests.RequestException as e:
            logger.error(f"Failed to send delivery webhook: {e}")
            return None


class DeliveryDispatcher:
    """Handler for delivery-queue jobs: one transport call per job."""

    def __init__(self, transport: MailTransport, store: RecordStore, notifier: Notifier,
                 webhook: Optional[DeliveryWebhook] = None, timeout: Optional[float] = None):
        self.transport = transport
        self.store = store
        self.notifier = notifier
        self.webhook = webhook or DeliveryWebhook()
        self.timeout = settings.stage_timeout_seconds if timeout is None else timeout

    def handle_job(self, job: Job) -> Dict[str, Any]:
        message = DeliveryMessage.model_validate(job.payload)
        report_id = message.correlation_id
        logger.info("delivery_start job=%s report=%s attachments=%d", job.id, report_id, len(message.attachments))

        try:
            message_id = call_with_deadline("mail_send", self.timeout, self.transport.send, message)
        except Exception as e:
            logger.error("delivery_failed job=%s report=%s: %s", job.id, report_id, e)
            self._record(report_id, ReportUpdate(
                delivery_status=DeliveryStatus.DELIVERY_FAILED,
                email_delivery_error=str(e),
            ))
            self.webhook.send(message, success=False, error_message=str(e))
            raise

        self._record(report_id, ReportUpdate(
            delivery_status=DeliveryStatus.DELIVERED,
            mail_message_id=message_id,
            email_delivery_error=None,
        ))
        if message.organization_id:
            self.notifier.notify(NotificationEvent(
                title="PDV Report Delivered",
                description=f"Your PDV report has been emailed to {message.recipient}.",
                tenant_id=message.organization_id,
                platform_id=message.platform_id,
            ))
        self.webhook.send(message, success=True, message_id=message_id)
        logger.info("delivery_done job=%s report=%s message=%s", job.id, report_id, message_id)
        return {"jobId": job.id, "messageId": message_id}

    def _record(self, report_id: Optional[str], update: ReportUpdate) -> None:
        if not report_id:
            return
        try:
            self.store.update_report(report_id, update)
        except Exception as e:
            logger.error("delivery_status_write_failed report=%s: %s", report_id, e)
