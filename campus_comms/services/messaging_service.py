from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from campus_comms.core.errors import DatabaseError, MessagingError, NotFoundError, PermissionDeniedError, ValidationError
from campus_comms.core.permissions import can_send, denial_message, is_file_allowed
from campus_comms.core.time_provider import TimeProvider, default_time_provider
from campus_comms.metrics import timed_service
from campus_comms.models import (
    ConversationParticipant,
    Message,
    MessageCategory,
    MessageType,
    OfficeStaff,
    SchoolClass,
    Student,
    SystemMessage,
    Teacher,
    UserRole,
)
from campus_comms.schemas import (
    AttachmentOut,
    CreateSystemMessageInput,
    FailedAttachment,
    IncomingFile,
    MessageOut,
    ParticipantOut,
    SendMessageInput,
    SystemMessageOut,
    UserRef,
)
from campus_comms.services import conversation_service
from campus_comms.services.attachment_service import ObjectStorage, VirusScanner, upload_attachment


logger = logging.getLogger(__name__)

_DIRECTORY = {
    UserRole.STUDENT: Student,
    UserRole.TEACHER: Teacher,
    UserRole.OFFICE: OfficeStaff,
}


def get_user_info(db: Session, user_id: int, role: UserRole | str) -> UserRef:
    try:
        resolved_role = UserRole(role)
    except ValueError as exc:
        raise NotFoundError('User not found') from exc
    row = db.get(_DIRECTORY[resolved_role], int(user_id))
    if row is None:
        raise NotFoundError('User not found')
    return UserRef(id=row.id, role=resolved_role, name=row.name or '', avatar_url=row.avatar_url)


def with_directory_name(db: Session, user: UserRef) -> UserRef:
    if user.name:
        return user
    try:
        return get_user_info(db, user.id, user.role)
    except NotFoundError:
        return user


def hydrate_message(
    db: Session,
    message: Message,
    *,
    viewer: UserRef | None = None,
    read_ids: set[int] | None = None,
    failed_attachments: list[FailedAttachment] | None = None,
) -> MessageOut:
    is_read = True
    if viewer is not None and (message.sender_id != int(viewer.id) or message.sender_role != viewer.role.value):
        if read_ids is None:
            read_ids = conversation_service.read_message_ids(db, [int(message.id)], viewer)
        is_read = int(message.id) in read_ids
    return MessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        sender_role=message.sender_role,
        sender_name=message.sender_name or '',
        content='' if message.is_deleted else message.content or '',
        message_type=message.message_type,
        category=message.category,
        created_at=message.created_at,
        is_deleted=bool(message.is_deleted),
        attachments=[AttachmentOut.model_validate(item) for item in message.attachments],
        failed_attachments=list(failed_attachments or []),
        is_read=is_read,
        reply_to_id=message.reply_to_id,
        is_forwarded=bool(message.is_forwarded),
        original_sender_name=message.original_sender_name,
        client_message_id=message.client_message_id,
        broadcast_id=message.broadcast_id,
    )


def _find_by_client_id(db: Session, sender: UserRef, client_message_id: str | None) -> Message | None:
    if not client_message_id:
        return None
    return (
        db.query(Message)
        .filter(
            Message.sender_id == int(sender.id),
            Message.sender_role == sender.role.value,
            Message.client_message_id == client_message_id,
        )
        .first()
    )


def create_message(
    db: Session,
    sender: UserRef,
    conversation_id: int,
    content: str,
    *,
    category: MessageCategory | str = MessageCategory.GENERAL,
    message_type: MessageType = MessageType.USER,
    reply_to_id: int | None = None,
    client_message_id: str | None = None,
    broadcast_id: int | None = None,
    forwarded_from: Message | None = None,
    commit: bool = True,
    time_provider: TimeProvider = default_time_provider,
) -> Message:
    """Write one message and the conversation metadata it implies.

    With commit=False the rows are only flushed so the caller can fold the
    send into a larger transaction.
    """
    now = time_provider.utcnow()
    message = Message(
        conversation_id=int(conversation_id),
        sender_id=int(sender.id),
        sender_role=sender.role.value,
        sender_name=sender.name or '',
        content=content or '',
        message_type=message_type.value,
        category=MessageCategory(category).value,
        created_at=now,
        reply_to_id=reply_to_id,
        client_message_id=client_message_id,
        broadcast_id=broadcast_id,
    )
    if forwarded_from is not None:
        message.is_forwarded = True
        message.forwarded_from_id = forwarded_from.id
        message.original_sender_name = forwarded_from.original_sender_name or forwarded_from.sender_name
    db.add(message)
    conversation_service.touch_conversation(db, conversation_id, content=content, at=now)
    conversation_service.increment_unread(db, conversation_id, sender)
    if commit:
        db.commit()
        db.refresh(message)
    else:
        db.flush()
    return message


def _resolve_conversation(
    db: Session,
    sender: UserRef,
    payload: SendMessageInput,
    *,
    time_provider: TimeProvider,
) -> int:
    if payload.conversation_id is not None:
        conversation_service.require_participant(db, payload.conversation_id, sender)
        other = conversation_service.get_other_participant(db, payload.conversation_id, sender)
        if other is None or other.user_id != int(payload.recipient_id) or other.user_role != payload.recipient_role.value:
            raise ValidationError('Recipient does not belong to this conversation')
        return int(payload.conversation_id)

    recipient = get_user_info(db, payload.recipient_id, payload.recipient_role)
    return conversation_service.get_or_create_conversation(db, sender, recipient, time_provider=time_provider)


@timed_service('send_message')
def send_message(
    db: Session,
    sender: UserRef,
    payload: SendMessageInput,
    files: list[IncomingFile] | None = None,
    *,
    storage: ObjectStorage | None = None,
    scanner: VirusScanner | None = None,
    commit: bool = True,
    time_provider: TimeProvider = default_time_provider,
) -> MessageOut:
    files = list(files or [])
    if not can_send(sender.role, payload.recipient_role):
        logger.info(
            'send_denied sender=%s recipient_role=%s',
            conversation_service.participant_key(sender),
            payload.recipient_role.value,
        )
        raise PermissionDeniedError(denial_message(sender.role, payload.recipient_role))

    if sender.role == UserRole.STUDENT:
        for item in files:
            check = is_file_allowed(sender.role, item)
            if not check.allowed:
                raise ValidationError(check.reason or 'File not allowed', details={'filename': item.filename})

    content = (payload.content or '').strip()
    if not content and not files:
        raise ValidationError('Message content or an attachment is required')
    if files and not commit:
        raise ValidationError('Attachments require a committed send')

    existing = _find_by_client_id(db, sender, payload.client_message_id)
    if existing is not None:
        logger.info('send_deduplicated message_id=%s client_message_id=%s', existing.id, payload.client_message_id)
        return hydrate_message(db, existing, viewer=sender)

    sender = with_directory_name(db, sender)
    conversation_id = _resolve_conversation(db, sender, payload, time_provider=time_provider)

    if payload.reply_to_id is not None:
        target = db.get(Message, int(payload.reply_to_id))
        if target is None or target.conversation_id != conversation_id:
            raise NotFoundError('Reply target not found in this conversation')

    try:
        message = create_message(
            db,
            sender,
            conversation_id,
            content,
            category=payload.category,
            reply_to_id=payload.reply_to_id,
            client_message_id=payload.client_message_id,
            commit=commit,
            time_provider=time_provider,
        )
    except IntegrityError as exc:
        db.rollback()
        existing = _find_by_client_id(db, sender, payload.client_message_id)
        if existing is None:
            raise DatabaseError('Failed to save message') from exc
        return hydrate_message(db, existing, viewer=sender)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('send_message_failed conversation_id=%s', conversation_id)
        raise DatabaseError('Failed to save message') from exc

    failed: list[FailedAttachment] = []
    for item in files:
        try:
            upload_attachment(db, message.id, item, sender, storage=storage, scanner=scanner, time_provider=time_provider)
        except MessagingError as exc:
            logger.warning('attachment_failed message_id=%s filename=%s error=%s', message.id, item.filename, exc.message)
            failed.append(FailedAttachment(filename=item.filename, error=exc.message))
    if files:
        db.refresh(message)

    logger.info(
        'message_sent message_id=%s conversation_id=%s sender=%s attachments=%s failed_attachments=%s',
        message.id,
        conversation_id,
        conversation_service.participant_key(sender),
        len(files) - len(failed),
        len(failed),
    )
    return hydrate_message(db, message, viewer=sender, failed_attachments=failed)


def forward_message(
    db: Session,
    sender: UserRef,
    original_message_id: int,
    recipient_id: int,
    recipient_role: UserRole,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> MessageOut:
    if not can_send(sender.role, recipient_role):
        raise PermissionDeniedError(denial_message(sender.role, recipient_role))

    original = db.get(Message, int(original_message_id))
    if original is None or original.is_deleted:
        raise NotFoundError('Original message not found')
    if conversation_service.get_participant(db, original.conversation_id, sender) is None:
        raise NotFoundError('Original message not found')

    sender = with_directory_name(db, sender)
    recipient = get_user_info(db, recipient_id, recipient_role)
    conversation_id = conversation_service.get_or_create_conversation(db, sender, recipient, time_provider=time_provider)
    try:
        message = create_message(
            db,
            sender,
            conversation_id,
            original.content,
            category=original.category,
            forwarded_from=original,
            time_provider=time_provider,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseError('Failed to forward message') from exc
    logger.info('message_forwarded original_id=%s message_id=%s', original.id, message.id)
    return hydrate_message(db, message, viewer=sender)


def search_messages(db: Session, user: UserRef, query: str, *, limit: int = 50) -> list[MessageOut]:
    needle = str(query or '').strip()
    if not needle:
        return []
    conversation_ids = (
        db.query(ConversationParticipant.conversation_id)
        .filter(
            ConversationParticipant.user_id == int(user.id),
            ConversationParticipant.user_role == user.role.value,
        )
        .scalar_subquery()
    )
    rows = (
        db.query(Message)
        .filter(
            Message.conversation_id.in_(conversation_ids),
            Message.is_deleted.is_(False),
            Message.content.ilike(f'%{needle}%'),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    read_ids = conversation_service.read_message_ids(db, [row.id for row in rows], user)
    return [hydrate_message(db, row, viewer=user, read_ids=read_ids) for row in rows]


def get_available_recipients(db: Session, user: UserRef) -> list[ParticipantOut]:
    out: list[ParticipantOut] = []
    if user.role == UserRole.STUDENT:
        student = db.get(Student, int(user.id))
        if student and student.school_class and student.school_class.teacher:
            teacher = student.school_class.teacher
            if teacher.active:
                out.append(ParticipantOut(id=teacher.id, role=UserRole.TEACHER.value, name=teacher.name, avatar_url=teacher.avatar_url))
        return out

    if user.role == UserRole.TEACHER:
        students = (
            db.query(Student)
            .join(SchoolClass, SchoolClass.id == Student.class_id)
            .filter(SchoolClass.teacher_id == int(user.id), Student.status == 'active')
            .order_by(Student.name.asc())
            .all()
        )
        out.extend(
            ParticipantOut(id=row.id, role=UserRole.STUDENT.value, name=row.name, avatar_url=row.avatar_url)
            for row in students
        )
        staff = db.query(OfficeStaff).filter(OfficeStaff.active.is_(True)).order_by(OfficeStaff.name.asc()).all()
        out.extend(
            ParticipantOut(id=row.id, role=UserRole.OFFICE.value, name=row.name, avatar_url=row.avatar_url)
            for row in staff
        )
        return out

    students = db.query(Student).filter(Student.status == 'active').order_by(Student.name.asc()).all()
    out.extend(
        ParticipantOut(id=row.id, role=UserRole.STUDENT.value, name=row.name, avatar_url=row.avatar_url)
        for row in students
    )
    teachers = db.query(Teacher).filter(Teacher.active.is_(True)).order_by(Teacher.name.asc()).all()
    out.extend(
        ParticipantOut(id=row.id, role=UserRole.TEACHER.value, name=row.name, avatar_url=row.avatar_url)
        for row in teachers
    )
    return out


# System messages


def system_message_out(row: SystemMessage) -> SystemMessageOut:
    try:
        metadata = json.loads(row.metadata_json or '{}')
    except ValueError:
        metadata = {}
    return SystemMessageOut(
        id=row.id,
        target_user_id=row.target_user_id,
        target_user_role=row.target_user_role,
        title=row.title,
        content=row.content,
        category=row.category,
        severity=row.severity,
        created_at=row.created_at,
        expires_at=row.expires_at,
        is_read=bool(row.is_read),
        read_at=row.read_at,
        is_dismissed=bool(row.is_dismissed),
        action_url=row.action_url,
        action_label=row.action_label,
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def create_system_message(
    db: Session,
    payload: CreateSystemMessageInput,
    *,
    commit: bool = True,
    time_provider: TimeProvider = default_time_provider,
) -> SystemMessage:
    row = SystemMessage(
        target_user_id=int(payload.target_user_id),
        target_user_role=payload.target_user_role.value,
        title=payload.title,
        content=payload.content,
        category=payload.category.value,
        severity=payload.severity.value,
        created_at=time_provider.utcnow(),
        expires_at=payload.expires_at,
        action_url=payload.action_url,
        action_label=payload.action_label,
        metadata_json=json.dumps(payload.metadata or {}, default=str),
    )
    db.add(row)
    if commit:
        db.commit()
        db.refresh(row)
    else:
        db.flush()
    return row


def get_system_messages(
    db: Session,
    user: UserRef,
    *,
    include_read: bool = True,
    limit: int = 50,
    now: datetime | None = None,
) -> list[SystemMessage]:
    current = now or default_time_provider.utcnow()
    query = db.query(SystemMessage).filter(
        SystemMessage.target_user_id == int(user.id),
        SystemMessage.target_user_role == user.role.value,
        SystemMessage.is_dismissed.is_(False),
        or_(SystemMessage.expires_at.is_(None), SystemMessage.expires_at > current),
    )
    if not include_read:
        query = query.filter(SystemMessage.is_read.is_(False))
    return query.order_by(SystemMessage.created_at.desc(), SystemMessage.id.desc()).limit(max(1, min(int(limit), 200))).all()


def _owned_system_message(db: Session, system_message_id: int, user: UserRef) -> SystemMessage:
    row = db.get(SystemMessage, int(system_message_id))
    if row is None or row.target_user_id != int(user.id) or row.target_user_role != user.role.value:
        raise NotFoundError('System message not found')
    return row


def mark_system_message_read(
    db: Session,
    system_message_id: int,
    user: UserRef,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> SystemMessage:
    row = _owned_system_message(db, system_message_id, user)
    if not row.is_read:
        row.is_read = True
        row.read_at = time_provider.utcnow()
        db.commit()
        db.refresh(row)
    return row


def dismiss_system_message(
    db: Session,
    system_message_id: int,
    user: UserRef,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> SystemMessage:
    row = _owned_system_message(db, system_message_id, user)
    if not row.is_dismissed:
        row.is_dismissed = True
        row.dismissed_at = time_provider.utcnow()
        db.commit()
        db.refresh(row)
    return row
