from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from campus_comms.core.errors import (
    DatabaseError,
    InvalidStateError,
    MessagingError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from campus_comms.core.permissions import can_send, denial_message
from campus_comms.core.time_provider import TimeProvider, default_time_provider, to_naive_utc
from campus_comms.models import ScheduledMessage, ScheduledMessageStatus, UserRole
from campus_comms.schemas import MessageDraft, ScheduleMessageRequest, ScheduledMessageOut, SendMessageInput, UserRef
from campus_comms.services import conversation_service, messaging_service


logger = logging.getLogger(__name__)


def scheduled_message_out(row: ScheduledMessage) -> ScheduledMessageOut:
    return ScheduledMessageOut(
        id=row.id,
        draft=MessageDraft(content=row.content, category=row.category, reply_to_id=row.reply_to_id),
        conversation_id=row.conversation_id,
        recipient_id=row.recipient_id,
        recipient_role=row.recipient_role,
        scheduled_for=row.scheduled_for,
        status=ScheduledMessageStatus(row.status),
        sent_message_id=row.sent_message_id,
        last_error=row.last_error,
        created_at=row.created_at,
    )


def schedule_message(
    db: Session,
    sender: UserRef,
    request: ScheduleMessageRequest,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> ScheduledMessageOut:
    if not can_send(sender.role, request.recipient_role):
        raise PermissionDeniedError(denial_message(sender.role, request.recipient_role))
    if not (request.draft.content or '').strip():
        raise ValidationError('Message content is required')

    now = time_provider.utcnow()
    scheduled_for = to_naive_utc(request.scheduled_for)
    if scheduled_for <= now:
        raise ValidationError('Scheduled time must be in the future')

    messaging_service.get_user_info(db, request.recipient_id, request.recipient_role)
    if request.conversation_id is not None:
        conversation_service.require_participant(db, request.conversation_id, sender)
        other = conversation_service.get_other_participant(db, request.conversation_id, sender)
        if other is None or other.user_id != int(request.recipient_id) or other.user_role != request.recipient_role.value:
            raise ValidationError('Recipient does not belong to this conversation')

    row = ScheduledMessage(
        sender_id=int(sender.id),
        sender_role=sender.role.value,
        sender_name=sender.name or '',
        conversation_id=request.conversation_id,
        recipient_id=int(request.recipient_id),
        recipient_role=request.recipient_role.value,
        content=request.draft.content,
        category=request.draft.category.value,
        reply_to_id=request.draft.reply_to_id,
        scheduled_for=scheduled_for,
        status=ScheduledMessageStatus.PENDING.value,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseError('Failed to schedule message') from exc
    db.refresh(row)
    logger.info('message_scheduled scheduled_id=%s scheduled_for=%s', row.id, row.scheduled_for.isoformat())
    return scheduled_message_out(row)


def cancel_scheduled_message(
    db: Session,
    scheduled_id: int,
    user: UserRef,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> ScheduledMessageOut:
    row = db.get(ScheduledMessage, int(scheduled_id))
    if row is None or row.sender_id != int(user.id) or row.sender_role != user.role.value:
        raise NotFoundError('Scheduled message not found')

    result = db.execute(
        update(ScheduledMessage)
        .where(
            ScheduledMessage.id == int(scheduled_id),
            ScheduledMessage.status == ScheduledMessageStatus.PENDING.value,
        )
        .values(status=ScheduledMessageStatus.CANCELLED.value, updated_at=time_provider.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        db.refresh(row)
        raise InvalidStateError(f'Cannot cancel a message that is already {row.status}')
    db.commit()
    db.refresh(row)
    logger.info('scheduled_message_cancelled scheduled_id=%s', row.id)
    return scheduled_message_out(row)


def list_scheduled_messages(
    db: Session,
    sender: UserRef,
    *,
    status: ScheduledMessageStatus | None = None,
) -> list[ScheduledMessageOut]:
    query = db.query(ScheduledMessage).filter(
        ScheduledMessage.sender_id == int(sender.id),
        ScheduledMessage.sender_role == sender.role.value,
    )
    if status is not None:
        query = query.filter(ScheduledMessage.status == status.value)
    rows = query.order_by(ScheduledMessage.scheduled_for.asc(), ScheduledMessage.id.asc()).all()
    return [scheduled_message_out(row) for row in rows]


def _dispatch_one(db: Session, row: ScheduledMessage, *, time_provider: TimeProvider) -> bool:
    sender = UserRef(id=row.sender_id, role=UserRole(row.sender_role), name=row.sender_name or '')
    recipient_role = UserRole(row.recipient_role)

    conversation_id = row.conversation_id
    if conversation_id is None:
        if not can_send(sender.role, recipient_role):
            raise PermissionDeniedError(denial_message(sender.role, recipient_role))
        recipient = messaging_service.get_user_info(db, row.recipient_id, recipient_role)
        conversation_id = conversation_service.get_or_create_conversation(
            db, sender, recipient, time_provider=time_provider
        )

    payload = SendMessageInput(
        conversation_id=conversation_id,
        recipient_id=row.recipient_id,
        recipient_role=recipient_role,
        content=row.content,
        category=row.category,
        reply_to_id=row.reply_to_id,
    )
    sent = messaging_service.send_message(db, sender, payload, commit=False, time_provider=time_provider)

    result = db.execute(
        update(ScheduledMessage)
        .where(
            ScheduledMessage.id == row.id,
            ScheduledMessage.status == ScheduledMessageStatus.PENDING.value,
        )
        .values(
            status=ScheduledMessageStatus.SENT.value,
            sent_message_id=sent.id,
            conversation_id=conversation_id,
            last_error=None,
            updated_at=time_provider.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Cancelled while we were sending.
        db.rollback()
        logger.info('scheduled_message_dispatch_lost_race scheduled_id=%s', row.id)
        return False
    db.commit()
    logger.info('scheduled_message_sent scheduled_id=%s message_id=%s', row.id, sent.id)
    return True


def dispatch_due_scheduled_messages(
    db: Session,
    *,
    time_provider: TimeProvider = default_time_provider,
    limit: int = 100,
) -> dict:
    now = time_provider.utcnow()
    due_ids = [
        int(item.id)
        for item in db.query(ScheduledMessage.id)
        .filter(
            ScheduledMessage.status == ScheduledMessageStatus.PENDING.value,
            ScheduledMessage.scheduled_for <= now,
        )
        .order_by(ScheduledMessage.scheduled_for.asc(), ScheduledMessage.id.asc())
        .limit(limit)
        .all()
    ]
    sent = 0
    skipped = 0
    failed = 0
    for scheduled_id in due_ids:
        row = db.get(ScheduledMessage, scheduled_id)
        if row is None or row.status != ScheduledMessageStatus.PENDING.value:
            skipped += 1
            continue
        try:
            if _dispatch_one(db, row, time_provider=time_provider):
                sent += 1
            else:
                skipped += 1
        except (MessagingError, SQLAlchemyError) as exc:
            db.rollback()
            failed += 1
            error_text = exc.message if isinstance(exc, MessagingError) else str(exc)
            logger.warning('scheduled_message_dispatch_failed scheduled_id=%s error=%s', scheduled_id, error_text)
            db.execute(
                update(ScheduledMessage)
                .where(
                    ScheduledMessage.id == scheduled_id,
                    ScheduledMessage.status == ScheduledMessageStatus.PENDING.value,
                )
                .values(last_error=error_text[:1000], updated_at=time_provider.utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
    db.expire_all()
    return {'due': len(due_ids), 'sent': sent, 'skipped': skipped, 'failed': failed}
