import unittest
from unittest import mock
from unittest.mock import MagicMock

import requests

from pdv_worker.delivery import DeliveryDispatcher, DeliveryWebhook, MailTransport, PostmarkTransport
from pdv_worker.errors import MailTransportError
from pdv_worker.models import Attachment, DeliveryMessage, DeliveryStatus, Job, JobState, ReportRecord
from pdv_worker.notifications import NotificationBus, Notifier
from pdv_worker.record_store import MemoryRecordStore


class _StubTransport(MailTransport):
    def __init__(self, message_id="msg-1", error=None):
        self.message_id = message_id
        self.error = error
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        if self.error:
            raise self.error
        return self.message_id


def _message(**overrides):
    data = dict(
        sender="reports@pdv.test",
        recipient="owner@acme.test",
        subject="Your PDV Report - Acme is Ready",
        html_body="<p>hi</p>",
        text_body="hi",
        attachments=[Attachment(name="r.pdf", content_base64="JVBERg==", content_id="adv-report-pdf",
                                mime_type="application/pdf")],
        correlation_id="r1",
        subdomain="acme",
        platform_id="p1",
        organization_id="o1",
    )
    data.update(overrides)
    return DeliveryMessage(**data)


def _job(message):
    return Job(id="11", queue_name="EmailQueue", name="Email", payload=message.to_payload(),
               enqueued_at=0, visible_at=0, state=JobState.ACTIVE, attempt_count=1)


class DeliveryDispatcherTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryRecordStore()
        self.store.create_report(ReportRecord(id="r1", delivery_status=DeliveryStatus.PENDING, delivery_job_id="11"))
        self.bus = NotificationBus()
        self.events = []
        self.bus.subscribe("p1_o1", self.events.append)

    def _dispatcher(self, transport, webhook=None):
        return DeliveryDispatcher(transport, self.store, Notifier(self.bus, self.store),
                                  webhook=webhook or DeliveryWebhook(url_template=""), timeout=5)

    def test_success_records_delivery(self):
        transport = _StubTransport(message_id="pm-123")
        result = self._dispatcher(transport).handle_job(_job(_message()))

        self.assertEqual(result, {"jobId": "11", "messageId": "pm-123"})
        self.assertEqual(len(transport.sent), 1)
        self.assertEqual(transport.sent[0].attachments[0].mime_type, "application/pdf")
        record = self.store.get_report("r1")
        self.assertEqual(record.delivery_status, DeliveryStatus.DELIVERED)
        self.assertEqual(record.mail_message_id, "pm-123")
        self.assertEqual([e.title for e in self.events], ["PDV Report Delivered"])
        self.assertEqual(len(self.store.find_notifications("o1")), 1)

    def test_failure_records_error_and_reraises(self):
        transport = _StubTransport(error=MailTransportError("Invalid 'To' address", error_code=300))

        with self.assertRaises(MailTransportError):
            self._dispatcher(transport).handle_job(_job(_message()))

        record = self.store.get_report("r1")
        self.assertEqual(record.delivery_status, DeliveryStatus.DELIVERY_FAILED)
        self.assertEqual(record.email_delivery_error, "Invalid 'To' address")
        self.assertIsNone(record.mail_message_id)
        self.assertEqual(self.events, [])

    def test_message_without_report_still_sends(self):
        transport = _StubTransport()
        self._dispatcher(transport).handle_job(_job(_message(correlation_id=None)))
        self.assertEqual(len(transport.sent), 1)
        record = self.store.get_report("r1")
        self.assertEqual(record.delivery_status, DeliveryStatus.PENDING)
        self.assertIsNone(record.mail_message_id)

    def test_webhook_posted_after_send(self):
        webhook = DeliveryWebhook(url_template="https://{subdomain}.platform.test/api/send-adv-report/webhook")
        with mock.patch("pdv_worker.delivery.requests.post") as post:
            self._dispatcher(_StubTransport(message_id="pm-9"), webhook=webhook).handle_job(_job(_message()))

        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://acme.platform.test/api/send-adv-report/webhook")
        self.assertEqual(post.call_args.kwargs["json"], {"mailId": "pm-9", "success": True, "reportId": "r1"})

    def test_webhook_failure_is_not_fatal(self):
        webhook = DeliveryWebhook(url_template="https://{subdomain}.platform.test/hook")
        with mock.patch("pdv_worker.delivery.requests.post", side_effect=requests.ConnectionError("refused")):
            result = self._dispatcher(_StubTransport(), webhook=webhook).handle_job(_job(_message()))
        self.assertEqual(result["messageId"], "msg-1")


class PostmarkTransportTests(unittest.TestCase):
    def _transport(self, status_code, body):
        session = MagicMock()
        response = session.post.return_value
        response.status_code = status_code
        response.json.return_value = body
        response.text = str(body)
        return PostmarkTransport(server_token="server-token", api_url="https://api.postmark.test/email",
                                 message_stream="outbound", timeout=3, session=session), session

    def test_send_returns_message_id(self):
        transport, session = self._transport(200, {"ErrorCode": 0, "MessageID": "abc-123", "Message": "OK"})

        self.assertEqual(transport.send(_message()), "abc-123")

        kwargs = session.post.call_args.kwargs
        self.assertEqual(kwargs["headers"]["X-Postmark-Server-Token"], "server-token")
        self.assertEqual(kwargs["json"]["MessageStream"], "outbound")
        self.assertEqual(kwargs["json"]["To"], "owner@acme.test")
        self.assertEqual(kwargs["json"]["Attachments"][0]["ContentID"], "adv-report-pdf")

    def test_provider_error_raises(self):
        transport, _ = self._transport(422, {"ErrorCode": 300, "Message": "Invalid email request"})
        with self.assertRaises(MailTransportError) as ctx:
            transport.send(_message())
        self.assertEqual(ctx.exception.error_code, 300)
        self.assertIn("Invalid email request", str(ctx.exception))

    def test_missing_token(self):
        transport = PostmarkTransport(server_token="", session=MagicMock())
        transport.server_token = ""
        with self.assertRaises(MailTransportError):
            transport.send(_message())


if __name__ == "__main__":
    unittest.main()
