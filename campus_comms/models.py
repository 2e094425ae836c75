from datetime import date, datetime
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from campus_comms.db import Base


class UserRole(str, Enum):
    STUDENT = 'student'
    TEACHER = 'teacher'
    OFFICE = 'office'


class MessageType(str, Enum):
    USER = 'user'
    SYSTEM = 'system'


class MessageCategory(str, Enum):
    GENERAL = 'general'
    ATTENDANCE_INQUIRY = 'attendance_inquiry'
    DOCUMENTATION = 'documentation'
    URGENT = 'urgent'
    SYSTEM_ALERT = 'system_alert'
    SYSTEM_INFO = 'system_info'


class SystemMessageCategory(str, Enum):
    ATTENDANCE_ALERT = 'attendance_alert'
    SCHEDULE_CHANGE = 'schedule_change'
    ANNOUNCEMENT = 'announcement'
    REMINDER = 'reminder'
    WARNING = 'warning'
    INFO = 'info'


class Severity(str, Enum):
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'
    SUCCESS = 'success'


class ScheduledMessageStatus(str, Enum):
    PENDING = 'pending'
    SENT = 'sent'
    CANCELLED = 'cancelled'


class ThresholdType(str, Enum):
    WARNING = 'warning'
    DISQUALIFIED = 'disqualified'
    CERTIFICATION = 'certification'


class AttendanceStatus(str, Enum):
    PRESENT = 'present'
    ABSENT = 'absent'
    LATE = 'late'
    SICK = 'sick'
    LEAVE = 'leave'


# Directory tables. Owned by the surrounding school records system; the
# messaging core only reads them.


class Teacher(Base):
    __tablename__ = 'teachers'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(160))
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    classes: Mapped[list['SchoolClass']] = relationship('SchoolClass', back_populates='teacher')


class OfficeStaff(Base):
    __tablename__ = 'office_staff'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(160))
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class SchoolClass(Base):
    __tablename__ = 'school_classes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120), unique=True)
    teacher_id: Mapped[int | None] = mapped_column(ForeignKey('teachers.id'), nullable=True, index=True)

    teacher: Mapped['Teacher | None'] = relationship('Teacher', back_populates='classes')
    students: Mapped[list['Student']] = relationship('Student', back_populates='school_class')


class Student(Base):
    __tablename__ = 'students'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(160))
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    class_id: Mapped[int | None] = mapped_column(ForeignKey('school_classes.id'), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default='active', index=True)

    school_class: Mapped['SchoolClass | None'] = relationship('SchoolClass', back_populates='students')
    attendances: Mapped[list['AttendanceRecord']] = relationship('AttendanceRecord', back_populates='student')


class AttendanceRecord(Base):
    __tablename__ = 'attendance_records'
    __table_args__ = (
        Index('ix_attendance_records_student_date', 'student_id', 'attendance_date'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('students.id'))
    attendance_date: Mapped[date] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20))
    hours: Mapped[float] = mapped_column(Float, default=1.0)
    marked_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    student: Mapped['Student'] = relationship('Student', back_populates='attendances')


# Messaging


class Conversation(Base):
    __tablename__ = 'conversations'
    __table_args__ = (
        UniqueConstraint('pair_key', name='uq_conversations_pair_key'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    pair_key: Mapped[str] = mapped_column(String(80))
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    last_message_preview: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    participants: Mapped[list['ConversationParticipant']] = relationship(
        'ConversationParticipant',
        back_populates='conversation',
        cascade='all, delete-orphan',
    )
    messages: Mapped[list['Message']] = relationship('Message', back_populates='conversation')


class ConversationParticipant(Base):
    __tablename__ = 'conversation_participants'
    __table_args__ = (
        UniqueConstraint('conversation_id', 'user_id', 'user_role', name='uq_conversation_participant'),
        Index('ix_conversation_participants_user', 'user_id', 'user_role'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    conversation_id: Mapped[int] = mapped_column(ForeignKey('conversations.id'), index=True)
    user_id: Mapped[int] = mapped_column(Integer)
    user_role: Mapped[str] = mapped_column(String(20))
    display_name: Mapped[str] = mapped_column(String(160), default='')
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    conversation: Mapped['Conversation'] = relationship('Conversation', back_populates='participants')


class Message(Base):
    __tablename__ = 'messages'
    __table_args__ = (
        UniqueConstraint('sender_id', 'sender_role', 'client_message_id', name='uq_messages_client_message_id'),
        Index('ix_messages_conversation_created', 'conversation_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    conversation_id: Mapped[int] = mapped_column(ForeignKey('conversations.id'), index=True)
    sender_id: Mapped[int] = mapped_column(Integer, index=True)
    sender_role: Mapped[str] = mapped_column(String(20))
    sender_name: Mapped[str] = mapped_column(String(160), default='')
    content: Mapped[str] = mapped_column(Text, default='')
    message_type: Mapped[str] = mapped_column(String(20), default=MessageType.USER.value)
    category: Mapped[str] = mapped_column(String(40), default=MessageCategory.GENERAL.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    reply_to_id: Mapped[int | None] = mapped_column(ForeignKey('messages.id'), nullable=True)
    is_forwarded: Mapped[bool] = mapped_column(Boolean, default=False)
    forwarded_from_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    original_sender_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    client_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    broadcast_id: Mapped[int | None] = mapped_column(ForeignKey('broadcast_messages.id'), nullable=True, index=True)

    conversation: Mapped['Conversation'] = relationship('Conversation', back_populates='messages')
    attachments: Mapped[list['MessageAttachment']] = relationship(
        'MessageAttachment',
        back_populates='message',
        order_by='MessageAttachment.id',
    )


class MessageAttachment(Base):
    __tablename__ = 'message_attachments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    message_id: Mapped[int] = mapped_column(ForeignKey('messages.id'), index=True)
    filename: Mapped[str] = mapped_column(String(300))
    original_filename: Mapped[str] = mapped_column(String(300))
    mime_type: Mapped[str] = mapped_column(String(160))
    size_bytes: Mapped[int] = mapped_column(Integer)
    url: Mapped[str] = mapped_column(String(1000))
    storage_path: Mapped[str] = mapped_column(String(600))
    thumbnail_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    uploaded_by_id: Mapped[int] = mapped_column(Integer)
    uploaded_by_role: Mapped[str] = mapped_column(String(20))
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    message: Mapped['Message'] = relationship('Message', back_populates='attachments')


class MessageReadStatus(Base):
    __tablename__ = 'message_read_status'
    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', 'user_role', name='uq_message_read_status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    message_id: Mapped[int] = mapped_column(ForeignKey('messages.id'), index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    user_role: Mapped[str] = mapped_column(String(20))
    read_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class BroadcastMessage(Base):
    __tablename__ = 'broadcast_messages'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    sender_id: Mapped[int] = mapped_column(Integer, index=True)
    sender_role: Mapped[str] = mapped_column(String(20))
    sender_name: Mapped[str] = mapped_column(String(160), default='')
    class_id: Mapped[int] = mapped_column(ForeignKey('school_classes.id'), index=True)
    class_name: Mapped[str] = mapped_column(String(120))
    content: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(40), default=MessageCategory.GENERAL.value)
    total_recipients: Mapped[int] = mapped_column(Integer, default=0)
    delivered_count: Mapped[int] = mapped_column(Integer, default=0)
    read_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    recipients: Mapped[list['BroadcastRecipient']] = relationship('BroadcastRecipient', back_populates='broadcast')


class BroadcastRecipient(Base):
    __tablename__ = 'broadcast_recipients'
    __table_args__ = (
        UniqueConstraint('broadcast_id', 'student_id', name='uq_broadcast_recipient'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    broadcast_id: Mapped[int] = mapped_column(ForeignKey('broadcast_messages.id'), index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('students.id'), index=True)
    message_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    broadcast: Mapped['BroadcastMessage'] = relationship('BroadcastMessage', back_populates='recipients')


class ScheduledMessage(Base):
    __tablename__ = 'scheduled_messages'
    __table_args__ = (
        Index('ix_scheduled_messages_status_due', 'status', 'scheduled_for'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    sender_id: Mapped[int] = mapped_column(Integer, index=True)
    sender_role: Mapped[str] = mapped_column(String(20))
    sender_name: Mapped[str] = mapped_column(String(160), default='')
    conversation_id: Mapped[int | None] = mapped_column(ForeignKey('conversations.id'), nullable=True)
    recipient_id: Mapped[int] = mapped_column(Integer)
    recipient_role: Mapped[str] = mapped_column(String(20))
    content: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(40), default=MessageCategory.GENERAL.value)
    reply_to_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(20), default=ScheduledMessageStatus.PENDING.value)
    sent_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SystemMessage(Base):
    __tablename__ = 'system_messages'
    __table_args__ = (
        Index('ix_system_messages_target', 'target_user_id', 'target_user_role', 'is_dismissed'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    target_user_id: Mapped[int] = mapped_column(Integer)
    target_user_role: Mapped[str] = mapped_column(String(20))
    title: Mapped[str] = mapped_column(String(200))
    content: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(40), default=SystemMessageCategory.INFO.value)
    severity: Mapped[str] = mapped_column(String(20), default=Severity.INFO.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_dismissed: Mapped[bool] = mapped_column(Boolean, default=False)
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    action_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    action_label: Mapped[str | None] = mapped_column(String(120), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default='{}')


class AttendanceAlertMark(Base):
    __tablename__ = 'attendance_alert_marks'
    __table_args__ = (
        UniqueConstraint('student_id', 'threshold_type', 'period_key', name='uq_attendance_alert_mark'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('students.id'), index=True)
    threshold_type: Mapped[str] = mapped_column(String(20))
    period_key: Mapped[str] = mapped_column(String(20))
    attendance_rate: Mapped[float] = mapped_column(Float, default=0.0)
    system_message_id: Mapped[int | None] = mapped_column(ForeignKey('system_messages.id'), nullable=True)
    notified_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class NotificationPreference(Base):
    __tablename__ = 'notification_preferences'

    student_id: Mapped[int] = mapped_column(ForeignKey('students.id'), primary_key=True)
    attendance_alerts: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
