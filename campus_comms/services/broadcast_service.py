from __future__ import annotations

import logging

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from campus_comms.core.errors import (
    DatabaseError,
    MessagingError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from campus_comms.core.permissions import can_broadcast
from campus_comms.core.time_provider import TimeProvider, default_time_provider
from campus_comms.metrics import timed_service
from campus_comms.models import (
    BroadcastMessage,
    BroadcastRecipient,
    Message,
    MessageCategory,
    SchoolClass,
    Student,
    UserRole,
)
from campus_comms.schemas import BroadcastResult, BroadcastStats, UserRef
from campus_comms.services import conversation_service


logger = logging.getLogger(__name__)


def refresh_broadcast_counts(db: Session, broadcast_id: int) -> BroadcastMessage:
    """Recompute the aggregate counters from recipient rows; the caller commits."""
    delivered, read = (
        db.query(
            func.coalesce(func.sum(case((BroadcastRecipient.delivered.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((BroadcastRecipient.read.is_(True), 1), else_=0)), 0),
        )
        .filter(BroadcastRecipient.broadcast_id == int(broadcast_id))
        .one()
    )
    broadcast = db.get(BroadcastMessage, int(broadcast_id))
    if broadcast is None:
        raise NotFoundError('Broadcast not found')
    broadcast.delivered_count = int(delivered or 0)
    broadcast.read_count = int(read or 0)
    return broadcast


@timed_service('broadcast_to_class')
def broadcast_to_class(
    db: Session,
    sender: UserRef,
    class_id: int,
    content: str,
    category: MessageCategory | str = MessageCategory.GENERAL,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> BroadcastResult:
    if not can_broadcast(sender.role):
        raise PermissionDeniedError('Students cannot send broadcast messages')
    text = (content or '').strip()
    if not text:
        raise ValidationError('Broadcast content is required')

    school_class = db.get(SchoolClass, int(class_id))
    if school_class is None:
        raise NotFoundError('Class not found')
    students = (
        db.query(Student)
        .filter(Student.class_id == school_class.id, Student.status == 'active')
        .order_by(Student.id.asc())
        .all()
    )
    if not students:
        raise ValidationError('No students found in this class')

    from campus_comms.services.messaging_service import with_directory_name, create_message

    sender = with_directory_name(db, sender)
    now = time_provider.utcnow()
    broadcast = BroadcastMessage(
        sender_id=int(sender.id),
        sender_role=sender.role.value,
        sender_name=sender.name or '',
        class_id=school_class.id,
        class_name=school_class.name,
        content=text,
        category=MessageCategory(category).value,
        total_recipients=len(students),
        delivered_count=0,
        read_count=0,
        created_at=now,
    )
    db.add(broadcast)
    try:
        db.flush()
        for student in students:
            db.add(BroadcastRecipient(broadcast_id=broadcast.id, student_id=student.id))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('broadcast_create_failed class_id=%s', class_id)
        raise DatabaseError('Failed to create broadcast') from exc
    broadcast_id = int(broadcast.id)

    for student in students:
        recipient_ref = UserRef(id=student.id, role=UserRole.STUDENT, name=student.name, avatar_url=student.avatar_url)
        try:
            conversation_id = conversation_service.get_or_create_conversation(
                db, sender, recipient_ref, time_provider=time_provider
            )
            message = create_message(
                db,
                sender,
                conversation_id,
                text,
                category=category,
                broadcast_id=broadcast_id,
                commit=False,
                time_provider=time_provider,
            )
            row = (
                db.query(BroadcastRecipient)
                .filter(BroadcastRecipient.broadcast_id == broadcast_id, BroadcastRecipient.student_id == student.id)
                .one()
            )
            row.message_id = message.id
            row.delivered = True
            row.delivered_at = time_provider.utcnow()
            db.commit()
        except (MessagingError, SQLAlchemyError):
            db.rollback()
            logger.exception('broadcast_delivery_failed broadcast_id=%s student_id=%s', broadcast_id, student.id)

    try:
        refresh_broadcast_counts(db, broadcast_id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseError('Failed to update broadcast counts') from exc

    persisted = db.get(BroadcastMessage, broadcast_id)
    db.refresh(persisted)
    logger.info(
        'broadcast_sent broadcast_id=%s class_id=%s total=%s delivered=%s',
        broadcast_id,
        school_class.id,
        persisted.total_recipients,
        persisted.delivered_count,
    )
    return BroadcastResult(
        broadcast_id=broadcast_id,
        total_recipients=int(persisted.total_recipients),
        delivered_count=int(persisted.delivered_count),
    )


def apply_broadcast_reads(
    db: Session,
    message_ids: list[int],
    reader: UserRef,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> int:
    """Flag recipient rows of broadcast deliveries the reader just opened; no commit."""
    if reader.role != UserRole.STUDENT or not message_ids:
        return 0
    rows = (
        db.query(BroadcastRecipient)
        .join(Message, Message.id == BroadcastRecipient.message_id)
        .filter(
            Message.id.in_(message_ids),
            Message.broadcast_id.is_not(None),
            BroadcastRecipient.student_id == int(reader.id),
            BroadcastRecipient.read.is_(False),
        )
        .all()
    )
    touched: set[int] = set()
    for row in rows:
        row.read = True
        row.read_at = time_provider.utcnow()
        touched.add(int(row.broadcast_id))
    if touched:
        db.flush()
        for broadcast_id in touched:
            refresh_broadcast_counts(db, broadcast_id)
    return len(rows)


def mark_broadcast_read(
    db: Session,
    broadcast_id: int,
    reader: UserRef,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> bool:
    row = (
        db.query(BroadcastRecipient)
        .filter(BroadcastRecipient.broadcast_id == int(broadcast_id), BroadcastRecipient.student_id == int(reader.id))
        .first()
    )
    if row is None or reader.role != UserRole.STUDENT:
        raise NotFoundError('Broadcast not found')
    if row.read:
        return False
    delivered = db.get(Message, int(row.message_id)) if row.message_id is not None else None
    if delivered is not None:
        # Reading the inbox copy flags this recipient row as well.
        conversation_service.mark_read(db, delivered.conversation_id, reader, time_provider=time_provider)
        db.refresh(row)
        if row.read:
            return True
    row.read = True
    row.read_at = time_provider.utcnow()
    try:
        db.flush()
        refresh_broadcast_counts(db, broadcast_id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseError('Failed to mark broadcast as read') from exc
    return True


def get_broadcast_stats(db: Session, broadcast_id: int, user: UserRef) -> BroadcastStats:
    row = db.get(BroadcastMessage, int(broadcast_id))
    if row is None:
        raise NotFoundError('Broadcast not found')
    if user.role != UserRole.OFFICE and (row.sender_id != int(user.id) or row.sender_role != user.role.value):
        raise NotFoundError('Broadcast not found')
    return BroadcastStats.model_validate(row)


def get_broadcast_history(db: Session, user: UserRef, *, limit: int = 50) -> list[BroadcastStats]:
    if not can_broadcast(user.role):
        raise PermissionDeniedError('Students cannot send broadcast messages')
    rows = (
        db.query(BroadcastMessage)
        .filter(BroadcastMessage.sender_id == int(user.id), BroadcastMessage.sender_role == user.role.value)
        .order_by(BroadcastMessage.created_at.desc(), BroadcastMessage.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    return [BroadcastStats.model_validate(row) for row in rows]
