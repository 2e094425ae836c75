"""messaging core tables

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 00:01:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261016_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'teachers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('avatar_url', sa.String(length=500), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_teachers_id', 'teachers', ['id'])
    op.create_index('ix_teachers_active', 'teachers', ['active'])

    op.create_table(
        'office_staff',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('avatar_url', sa.String(length=500), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_office_staff_id', 'office_staff', ['id'])
    op.create_index('ix_office_staff_active', 'office_staff', ['active'])

    op.create_table(
        'school_classes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False, unique=True),
        sa.Column('teacher_id', sa.Integer(), sa.ForeignKey('teachers.id'), nullable=True),
    )
    op.create_index('ix_school_classes_id', 'school_classes', ['id'])
    op.create_index('ix_school_classes_teacher_id', 'school_classes', ['teacher_id'])

    op.create_table(
        'students',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('avatar_url', sa.String(length=500), nullable=True),
        sa.Column('class_id', sa.Integer(), sa.ForeignKey('school_classes.id'), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
    )
    op.create_index('ix_students_id', 'students', ['id'])
    op.create_index('ix_students_class_id', 'students', ['class_id'])
    op.create_index('ix_students_status', 'students', ['status'])

    op.create_table(
        'attendance_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('attendance_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('hours', sa.Float(), nullable=False, server_default='1'),
        sa.Column('marked_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_attendance_records_id', 'attendance_records', ['id'])
    op.create_index('ix_attendance_records_student_date', 'attendance_records', ['student_id', 'attendance_date'])

    op.create_table(
        'conversations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pair_key', sa.String(length=80), nullable=False),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('last_message_preview', sa.String(length=200), nullable=True),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('pair_key', name='uq_conversations_pair_key'),
    )
    op.create_index('ix_conversations_id', 'conversations', ['id'])
    op.create_index('ix_conversations_last_message_at', 'conversations', ['last_message_at'])
    op.create_index('ix_conversations_is_archived', 'conversations', ['is_archived'])

    op.create_table(
        'conversation_participants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('conversation_id', sa.Integer(), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('user_role', sa.String(length=20), nullable=False),
        sa.Column('display_name', sa.String(length=160), nullable=False, server_default=''),
        sa.Column('avatar_url', sa.String(length=500), nullable=True),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_muted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_read_at', sa.DateTime(), nullable=True),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('conversation_id', 'user_id', 'user_role', name='uq_conversation_participant'),
    )
    op.create_index('ix_conversation_participants_id', 'conversation_participants', ['id'])
    op.create_index('ix_conversation_participants_conversation_id', 'conversation_participants', ['conversation_id'])
    op.create_index('ix_conversation_participants_user', 'conversation_participants', ['user_id', 'user_role'])

    op.create_table(
        'broadcast_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sender_id', sa.Integer(), nullable=False),
        sa.Column('sender_role', sa.String(length=20), nullable=False),
        sa.Column('sender_name', sa.String(length=160), nullable=False, server_default=''),
        sa.Column('class_id', sa.Integer(), sa.ForeignKey('school_classes.id'), nullable=False),
        sa.Column('class_name', sa.String(length=120), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=40), nullable=False, server_default='general'),
        sa.Column('total_recipients', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivered_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('read_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_broadcast_messages_id', 'broadcast_messages', ['id'])
    op.create_index('ix_broadcast_messages_sender_id', 'broadcast_messages', ['sender_id'])
    op.create_index('ix_broadcast_messages_class_id', 'broadcast_messages', ['class_id'])
    op.create_index('ix_broadcast_messages_created_at', 'broadcast_messages', ['created_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('conversation_id', sa.Integer(), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('sender_id', sa.Integer(), nullable=False),
        sa.Column('sender_role', sa.String(length=20), nullable=False),
        sa.Column('sender_name', sa.String(length=160), nullable=False, server_default=''),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('message_type', sa.String(length=20), nullable=False, server_default='user'),
        sa.Column('category', sa.String(length=40), nullable=False, server_default='general'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reply_to_id', sa.Integer(), sa.ForeignKey('messages.id'), nullable=True),
        sa.Column('is_forwarded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('forwarded_from_id', sa.Integer(), nullable=True),
        sa.Column('original_sender_name', sa.String(length=160), nullable=True),
        sa.Column('client_message_id', sa.String(length=64), nullable=True),
        sa.Column('broadcast_id', sa.Integer(), sa.ForeignKey('broadcast_messages.id'), nullable=True),
        sa.UniqueConstraint('sender_id', 'sender_role', 'client_message_id', name='uq_messages_client_message_id'),
    )
    op.create_index('ix_messages_id', 'messages', ['id'])
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index('ix_messages_sender_id', 'messages', ['sender_id'])
    op.create_index('ix_messages_is_deleted', 'messages', ['is_deleted'])
    op.create_index('ix_messages_broadcast_id', 'messages', ['broadcast_id'])
    op.create_index('ix_messages_conversation_created', 'messages', ['conversation_id', 'created_at'])

    op.create_table(
        'message_attachments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('message_id', sa.Integer(), sa.ForeignKey('messages.id'), nullable=False),
        sa.Column('filename', sa.String(length=300), nullable=False),
        sa.Column('original_filename', sa.String(length=300), nullable=False),
        sa.Column('mime_type', sa.String(length=160), nullable=False),
        sa.Column('size_bytes', sa.Integer(), nullable=False),
        sa.Column('url', sa.String(length=1000), nullable=False),
        sa.Column('storage_path', sa.String(length=600), nullable=False),
        sa.Column('thumbnail_url', sa.String(length=1000), nullable=True),
        sa.Column('uploaded_by_id', sa.Integer(), nullable=False),
        sa.Column('uploaded_by_role', sa.String(length=20), nullable=False),
        sa.Column('uploaded_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_message_attachments_id', 'message_attachments', ['id'])
    op.create_index('ix_message_attachments_message_id', 'message_attachments', ['message_id'])

    op.create_table(
        'message_read_status',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('message_id', sa.Integer(), sa.ForeignKey('messages.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('user_role', sa.String(length=20), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('message_id', 'user_id', 'user_role', name='uq_message_read_status'),
    )
    op.create_index('ix_message_read_status_id', 'message_read_status', ['id'])
    op.create_index('ix_message_read_status_message_id', 'message_read_status', ['message_id'])
    op.create_index('ix_message_read_status_user_id', 'message_read_status', ['user_id'])

    op.create_table(
        'broadcast_recipients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('broadcast_id', sa.Integer(), sa.ForeignKey('broadcast_messages.id'), nullable=False),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('message_id', sa.Integer(), nullable=True),
        sa.Column('delivered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('broadcast_id', 'student_id', name='uq_broadcast_recipient'),
    )
    op.create_index('ix_broadcast_recipients_id', 'broadcast_recipients', ['id'])
    op.create_index('ix_broadcast_recipients_broadcast_id', 'broadcast_recipients', ['broadcast_id'])
    op.create_index('ix_broadcast_recipients_student_id', 'broadcast_recipients', ['student_id'])
    op.create_index('ix_broadcast_recipients_message_id', 'broadcast_recipients', ['message_id'])

    op.create_table(
        'scheduled_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sender_id', sa.Integer(), nullable=False),
        sa.Column('sender_role', sa.String(length=20), nullable=False),
        sa.Column('sender_name', sa.String(length=160), nullable=False, server_default=''),
        sa.Column('conversation_id', sa.Integer(), sa.ForeignKey('conversations.id'), nullable=True),
        sa.Column('recipient_id', sa.Integer(), nullable=False),
        sa.Column('recipient_role', sa.String(length=20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=40), nullable=False, server_default='general'),
        sa.Column('reply_to_id', sa.Integer(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('sent_message_id', sa.Integer(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_scheduled_messages_id', 'scheduled_messages', ['id'])
    op.create_index('ix_scheduled_messages_sender_id', 'scheduled_messages', ['sender_id'])
    op.create_index('ix_scheduled_messages_status_due', 'scheduled_messages', ['status', 'scheduled_for'])

    op.create_table(
        'system_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('target_user_id', sa.Integer(), nullable=False),
        sa.Column('target_user_role', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=40), nullable=False, server_default='info'),
        sa.Column('severity', sa.String(length=20), nullable=False, server_default='info'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('is_dismissed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('dismissed_at', sa.DateTime(), nullable=True),
        sa.Column('action_url', sa.String(length=500), nullable=True),
        sa.Column('action_label', sa.String(length=120), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=False, server_default='{}'),
    )
    op.create_index('ix_system_messages_id', 'system_messages', ['id'])
    op.create_index('ix_system_messages_created_at', 'system_messages', ['created_at'])
    op.create_index('ix_system_messages_target', 'system_messages', ['target_user_id', 'target_user_role', 'is_dismissed'])

    op.create_table(
        'attendance_alert_marks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('threshold_type', sa.String(length=20), nullable=False),
        sa.Column('period_key', sa.String(length=20), nullable=False),
        sa.Column('attendance_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('system_message_id', sa.Integer(), sa.ForeignKey('system_messages.id'), nullable=True),
        sa.Column('notified_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('student_id', 'threshold_type', 'period_key', name='uq_attendance_alert_mark'),
    )
    op.create_index('ix_attendance_alert_marks_id', 'attendance_alert_marks', ['id'])
    op.create_index('ix_attendance_alert_marks_student_id', 'attendance_alert_marks', ['student_id'])

    op.create_table(
        'notification_preferences',
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), primary_key=True),
        sa.Column('attendance_alerts', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('notification_preferences')
    op.drop_table('attendance_alert_marks')
    op.drop_table('system_messages')
    op.drop_table('scheduled_messages')
    op.drop_table('broadcast_recipients')
    op.drop_table('message_read_status')
    op.drop_table('message_attachments')
    op.drop_table('messages')
    op.drop_table('broadcast_messages')
    op.drop_table('conversation_participants')
    op.drop_table('conversations')
    op.drop_table('attendance_records')
    op.drop_table('students')
    op.drop_table('school_classes')
    op.drop_table('office_staff')
    op.drop_table('teachers')
