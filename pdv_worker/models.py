"""Typed payloads and records shared by the queue, pipeline and stores.

Wire payloads keep the camelCase field names used by the producers that
enqueue jobs; Python code uses the snake_case attribute names.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for models that travel as queue payloads or HTTP bodies."""

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ── Queue ─────────────────────────────────────────────────────────────────────

class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = frozenset({JobState.WAITING, JobState.DELAYED})


class Job(BaseModel):
    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any]
    enqueued_at: int = Field(description="Epoch milliseconds")
    visible_at: int = Field(description="Epoch milliseconds at which the job becomes eligible for leasing")
    state: JobState
    attempt_count: int = 0
    result: Optional[Any] = None
    error: Optional[str] = None
    finished_at: Optional[int] = None


class JobHandle(BaseModel):
    id: str
    queue_name: str


# ── Report job ────────────────────────────────────────────────────────────────

class ReportType(str, Enum):
    PRE_ADV = "PRE_ADV"
    PDV = "PDV"
    SUPPLEMENT = "SUPPLEMENT"


class QAPair(WireModel):
    question: str
    answer: str


class ReportJobRequest(WireModel):
    """Payload of a report-queue job. Immutable once enqueued."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    report_id: str = Field(alias="reportId")
    org_name: str = Field(alias="orgName")
    workflow_id: Optional[str] = Field(None, alias="workflowId")
    report_type: ReportType = Field(ReportType.PDV, alias="reportType")
    user_email: str = Field("", alias="userEmail")
    platform_id: Optional[str] = Field(None, alias="platformId")
    organization_id: str = Field(alias="organizationId")
    org_workflow_id: Optional[str] = Field(None, alias="orgWorkflowId")
    subdomain: Optional[str] = None
    enable_adv: bool = Field(False, alias="enableADV")
    pdv_answers: List[QAPair] = Field(default_factory=list, alias="pdvAnswers")

    @property
    def tenant_id(self) -> str:
        return self.organization_id


# ── Email job ─────────────────────────────────────────────────────────────────

class Attachment(WireModel):
    name: str = Field(alias="Name")
    content_base64: str = Field(alias="Content")
    content_id: Optional[str] = Field(None, alias="ContentID")
    mime_type: str = Field("application/octet-stream", alias="ContentType")


class DeliveryMessage(WireModel):
    """Payload of an email-queue job."""

    sender: str = Field(alias="fromEmail")
    recipient: str = Field(alias="toEmail")
    subject: str
    html_body: str = Field(alias="htmlBody")
    text_body: str = Field(alias="textBody")
    attachments: List[Attachment] = Field(default_factory=list)
    correlation_id: Optional[str] = Field(None, alias="reportId")
    subdomain: Optional[str] = None
    platform_id: Optional[str] = Field(None, alias="platformId")
    organization_id: Optional[str] = Field(None, alias="organizationId")


# ── Notifications ─────────────────────────────────────────────────────────────

class NotificationEvent(WireModel):
    title: str = Field(alias="notificationTitle")
    description: str = Field(alias="notificationDescription")
    ref_link: str = Field("", alias="refLink")
    read: bool = Field(False, alias="notificationRead")
    tenant_id: str = Field(alias="organizationId")
    platform_id: Optional[str] = Field(None, alias="platformId")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")


# ── Records ───────────────────────────────────────────────────────────────────

class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"


class ReportRecord(BaseModel):
    id: str
    pre_adv_data: Optional[Dict[str, Any]] = None
    supplement_adv_data: Optional[Dict[str, Any]] = None
    adv_data: Optional[Dict[str, Any]] = None
    lower_adv_range: Optional[str] = None
    upper_adv_range: Optional[str] = None
    pdf_report_data: Optional[str] = None
    delivery_status: Optional[DeliveryStatus] = None
    email_delivery_error: Optional[str] = None
    delivery_job_id: Optional[str] = None
    mail_message_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class ReportUpdate(BaseModel):
    """Partial update of a report row. Only fields that were explicitly set are written."""

    pre_adv_data: Optional[Dict[str, Any]] = None
    supplement_adv_data: Optional[Dict[str, Any]] = None
    adv_data: Optional[Dict[str, Any]] = None
    lower_adv_range: Optional[str] = None
    upper_adv_range: Optional[str] = None
    pdf_report_data: Optional[str] = None
    delivery_status: Optional[DeliveryStatus] = None
    email_delivery_error: Optional[str] = None
    delivery_job_id: Optional[str] = None
    mail_message_id: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class NotificationRecord(BaseModel):
    id: Optional[str] = None
    title: str
    description: str
    ref_link: str = ""
    read: bool = False
    tenant_id: str
    platform_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_event(cls, event: NotificationEvent) -> "NotificationRecord":
        return cls(
            title=event.title,
            description=event.description,
            ref_link=event.ref_link,
            read=event.read,
            tenant_id=event.tenant_id,
            platform_id=event.platform_id,
            created_at=event.created_at,
        )
