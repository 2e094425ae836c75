from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from campus_comms.models import (
    MessageCategory,
    ScheduledMessageStatus,
    Severity,
    SystemMessageCategory,
    ThresholdType,
    UserRole,
)


class UserRef(BaseModel):
    """The acting principal as handed over by the authentication collaborator."""

    model_config = ConfigDict(frozen=True)

    id: int
    role: UserRole
    name: str = ''
    avatar_url: str | None = None


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    mime_type: str
    data: bytes

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class FileCheck:
    allowed: bool
    reason: str | None = None


class SendMessageInput(BaseModel):
    conversation_id: int | None = None
    recipient_id: int
    recipient_role: UserRole
    content: str = ''
    category: MessageCategory = MessageCategory.GENERAL
    reply_to_id: int | None = None
    client_message_id: str | None = Field(default=None, max_length=64)


class AttachmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    message_id: int
    filename: str
    original_filename: str
    mime_type: str
    size_bytes: int
    url: str
    thumbnail_url: str | None = None
    uploaded_at: datetime


class FailedAttachment(BaseModel):
    filename: str
    error: str


class MessageOut(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    sender_role: str
    sender_name: str
    content: str
    message_type: str
    category: str
    created_at: datetime
    is_deleted: bool = False
    attachments: list[AttachmentOut] = Field(default_factory=list)
    failed_attachments: list[FailedAttachment] = Field(default_factory=list)
    is_read: bool = True
    reply_to_id: int | None = None
    is_forwarded: bool = False
    original_sender_name: str | None = None
    client_message_id: str | None = None
    broadcast_id: int | None = None


class ParticipantOut(BaseModel):
    id: int
    role: str
    name: str
    avatar_url: str | None = None


class ConversationSummary(BaseModel):
    id: int
    last_message_at: datetime | None = None
    last_message_preview: str | None = None
    is_archived: bool = False
    other_participant: ParticipantOut
    unread_count: int = 0
    is_muted: bool = False


class BroadcastRequest(BaseModel):
    class_id: int
    content: str
    category: MessageCategory = MessageCategory.GENERAL


class BroadcastResult(BaseModel):
    broadcast_id: int
    total_recipients: int
    delivered_count: int


class BroadcastStats(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_id: int
    class_id: int
    class_name: str
    content: str
    category: str
    total_recipients: int
    delivered_count: int
    read_count: int
    created_at: datetime


class MessageDraft(BaseModel):
    content: str
    category: MessageCategory = MessageCategory.GENERAL
    reply_to_id: int | None = None


class ScheduleMessageRequest(BaseModel):
    recipient_id: int
    recipient_role: UserRole
    conversation_id: int | None = None
    draft: MessageDraft
    scheduled_for: datetime


class ScheduledMessageOut(BaseModel):
    id: int
    draft: MessageDraft
    conversation_id: int | None = None
    recipient_id: int
    recipient_role: str
    scheduled_for: datetime
    status: ScheduledMessageStatus
    sent_message_id: int | None = None
    last_error: str | None = None
    created_at: datetime


class CreateSystemMessageInput(BaseModel):
    target_user_id: int
    target_user_role: UserRole
    title: str
    content: str
    category: SystemMessageCategory = SystemMessageCategory.INFO
    severity: Severity = Severity.INFO
    expires_at: datetime | None = None
    action_url: str | None = None
    action_label: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SystemMessageOut(BaseModel):
    id: int
    target_user_id: int
    target_user_role: str
    title: str
    content: str
    category: str
    severity: str
    created_at: datetime
    expires_at: datetime | None = None
    is_read: bool = False
    read_at: datetime | None = None
    is_dismissed: bool = False
    action_url: str | None = None
    action_label: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StudentMetrics(BaseModel):
    student_id: int
    attendance_rate: float
    present_days: int = 0
    absent_days: int = 0
    late_days: int = 0
    sick_days: int = 0
    leave_days: int = 0
    sick_and_leave_hours: float = 0.0
    total_days: int = 0


class AlertOutcome(BaseModel):
    status: Literal['sent', 'failed', 'skipped']
    threshold_type: ThresholdType | None = None
    system_message_id: int | None = None
    reason: str | None = None


class ScanError(BaseModel):
    student_id: int | None = None
    error: str


class MonitoringJobResult(BaseModel):
    total_students_checked: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    errors: list[ScanError] = Field(default_factory=list)
    execution_time_ms: float = 0.0
    timestamp: datetime


class RetrySweepResult(BaseModel):
    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    permanently_failed: list[ScanError] = Field(default_factory=list)


class RetryQueueEntry(BaseModel):
    notification_key: str
    student_id: int
    threshold_type: ThresholdType
    attendance_rate: float
    sick_and_leave_hours: float = 0.0
    attempts: int = 1
    last_attempt_at: datetime
    next_retry_at: datetime
    last_error: str | None = None


class MonitorStatus(BaseModel):
    is_running: bool
    cron_job_active: bool
    retry_queue_size: int
    last_execution: datetime | None = None


class RetryQueueStatus(BaseModel):
    total_pending: int
    by_type: dict[str, int] = Field(default_factory=dict)
    by_attempts: dict[int, int] = Field(default_factory=dict)
