from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from campus_comms.config import settings
from campus_comms.core.errors import DatabaseError, NotFoundError, PermissionDeniedError
from campus_comms.core.time_provider import TimeProvider, default_time_provider
from campus_comms.metrics import timed_service
from campus_comms.models import Conversation, ConversationParticipant, Message, MessageReadStatus
from campus_comms.schemas import ConversationSummary, ParticipantOut, UserRef


logger = logging.getLogger(__name__)


def participant_key(user: UserRef) -> str:
    return f'{user.role.value}:{int(user.id)}'


def conversation_pair_key(user_a: UserRef, user_b: UserRef) -> str:
    return '|'.join(sorted((participant_key(user_a), participant_key(user_b))))


def build_preview(content: str | None) -> str:
    text = ' '.join(str(content or '').split())
    limit = settings.message_preview_chars
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + '...'


def _find_existing(db: Session, user_a: UserRef, user_b: UserRef) -> int | None:
    rows = (
        db.query(ConversationParticipant)
        .filter(
            ConversationParticipant.user_id == int(user_a.id),
            ConversationParticipant.user_role == user_a.role.value,
        )
        .order_by(ConversationParticipant.conversation_id.asc())
        .all()
    )
    for row in rows:
        other = (
            db.query(ConversationParticipant.id)
            .filter(
                ConversationParticipant.conversation_id == row.conversation_id,
                ConversationParticipant.user_id == int(user_b.id),
                ConversationParticipant.user_role == user_b.role.value,
            )
            .first()
        )
        if other:
            return int(row.conversation_id)
    return None


def get_or_create_conversation(
    db: Session,
    user_a: UserRef,
    user_b: UserRef,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> int:
    existing = _find_existing(db, user_a, user_b)
    if existing is not None:
        return existing

    now = time_provider.utcnow()
    conversation = Conversation(pair_key=conversation_pair_key(user_a, user_b), created_at=now)
    for user in (user_a, user_b):
        conversation.participants.append(
            ConversationParticipant(
                user_id=int(user.id),
                user_role=user.role.value,
                display_name=user.name or '',
                avatar_url=user.avatar_url,
                unread_count=0,
                joined_at=now,
            )
        )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # Another request created the same pair first.
        db.rollback()
        existing = _find_existing(db, user_a, user_b)
        if existing is None:
            raise DatabaseError('Failed to create conversation')
        logger.info('conversation_create_race_lost conversation_id=%s', existing)
        return existing
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('conversation_create_failed pair=%s', conversation.pair_key)
        raise DatabaseError('Failed to create conversation') from exc
    db.refresh(conversation)
    logger.info('conversation_created conversation_id=%s pair=%s', conversation.id, conversation.pair_key)
    return int(conversation.id)


def get_participant(db: Session, conversation_id: int, user: UserRef) -> ConversationParticipant | None:
    return (
        db.query(ConversationParticipant)
        .filter(
            ConversationParticipant.conversation_id == int(conversation_id),
            ConversationParticipant.user_id == int(user.id),
            ConversationParticipant.user_role == user.role.value,
        )
        .first()
    )


def require_participant(db: Session, conversation_id: int, user: UserRef) -> ConversationParticipant:
    conversation = db.query(Conversation.id).filter(Conversation.id == int(conversation_id)).first()
    if not conversation:
        raise NotFoundError('Conversation not found')
    participant = get_participant(db, conversation_id, user)
    if participant is None:
        raise PermissionDeniedError('You are not a participant in this conversation')
    return participant


def get_other_participant(db: Session, conversation_id: int, user: UserRef) -> ConversationParticipant | None:
    rows = (
        db.query(ConversationParticipant)
        .filter(ConversationParticipant.conversation_id == int(conversation_id))
        .all()
    )
    for row in rows:
        if row.user_id != int(user.id) or row.user_role != user.role.value:
            return row
    return None


def touch_conversation(db: Session, conversation_id: int, *, content: str, at) -> None:
    """Stage last-message metadata; the caller owns the commit."""
    conversation = db.get(Conversation, int(conversation_id))
    if conversation is None:
        raise NotFoundError('Conversation not found')
    conversation.last_message_at = at
    conversation.last_message_preview = build_preview(content)
    if conversation.is_archived:
        conversation.is_archived = False


def increment_unread(db: Session, conversation_id: int, sender: UserRef) -> int:
    rows = (
        db.query(ConversationParticipant)
        .filter(ConversationParticipant.conversation_id == int(conversation_id))
        .all()
    )
    touched = 0
    for row in rows:
        if row.user_id == int(sender.id) and row.user_role == sender.role.value:
            continue
        row.unread_count = int(row.unread_count or 0) + 1
        touched += 1
    return touched


@timed_service('conversation_mark_read')
def mark_read(
    db: Session,
    conversation_id: int,
    user: UserRef,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> int:
    participant = require_participant(db, conversation_id, user)
    now = time_provider.utcnow()

    incoming_ids = [
        int(row.id)
        for row in db.query(Message.id)
        .filter(
            Message.conversation_id == int(conversation_id),
            ~((Message.sender_id == int(user.id)) & (Message.sender_role == user.role.value)),
        )
        .all()
    ]
    already_read: set[int] = set()
    if incoming_ids:
        already_read = {
            int(row.message_id)
            for row in db.query(MessageReadStatus.message_id)
            .filter(
                MessageReadStatus.message_id.in_(incoming_ids),
                MessageReadStatus.user_id == int(user.id),
                MessageReadStatus.user_role == user.role.value,
            )
            .all()
        }
    newly_read = [message_id for message_id in incoming_ids if message_id not in already_read]
    for message_id in newly_read:
        db.add(
            MessageReadStatus(
                message_id=message_id,
                user_id=int(user.id),
                user_role=user.role.value,
                read_at=now,
            )
        )
    participant.unread_count = 0
    participant.last_read_at = now

    from campus_comms.services.broadcast_service import apply_broadcast_reads

    try:
        db.flush()
        apply_broadcast_reads(db, newly_read, user, time_provider=time_provider)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('conversation_mark_read_failed conversation_id=%s', conversation_id)
        raise DatabaseError('Failed to mark conversation as read') from exc
    logger.info(
        'conversation_marked_read conversation_id=%s user=%s new_reads=%s',
        conversation_id,
        participant_key(user),
        len(newly_read),
    )
    return len(newly_read)


def set_muted(db: Session, conversation_id: int, user: UserRef, muted: bool) -> ConversationParticipant:
    participant = require_participant(db, conversation_id, user)
    participant.is_muted = bool(muted)
    db.commit()
    db.refresh(participant)
    return participant


def set_archived(db: Session, conversation_id: int, user: UserRef, archived: bool) -> Conversation:
    require_participant(db, conversation_id, user)
    conversation = db.get(Conversation, int(conversation_id))
    conversation.is_archived = bool(archived)
    db.commit()
    db.refresh(conversation)
    return conversation


def list_conversations(
    db: Session,
    user: UserRef,
    *,
    include_archived: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[ConversationSummary]:
    query = (
        db.query(Conversation, ConversationParticipant)
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .filter(
            ConversationParticipant.user_id == int(user.id),
            ConversationParticipant.user_role == user.role.value,
        )
    )
    if not include_archived:
        query = query.filter(Conversation.is_archived.is_(False))
    rows = (
        query.order_by(
            func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(),
            Conversation.id.desc(),
        )
        .offset(max(0, int(offset)))
        .limit(max(1, min(int(limit), 200)))
        .all()
    )

    out: list[ConversationSummary] = []
    for conversation, mine in rows:
        other = get_other_participant(db, conversation.id, user)
        if other is None:
            continue
        out.append(
            ConversationSummary(
                id=conversation.id,
                last_message_at=conversation.last_message_at,
                last_message_preview=conversation.last_message_preview,
                is_archived=bool(conversation.is_archived),
                other_participant=ParticipantOut(
                    id=other.user_id,
                    role=other.user_role,
                    name=other.display_name or '',
                    avatar_url=other.avatar_url,
                ),
                unread_count=int(mine.unread_count or 0),
                is_muted=bool(mine.is_muted),
            )
        )
    return out


def get_messages(
    db: Session,
    conversation_id: int,
    user: UserRef,
    *,
    limit: int = 50,
    before_id: int | None = None,
) -> list[Message]:
    """Newest page of non-deleted messages, returned oldest first."""
    require_participant(db, conversation_id, user)
    query = db.query(Message).filter(
        Message.conversation_id == int(conversation_id),
        Message.is_deleted.is_(False),
    )
    if before_id is not None:
        query = query.filter(Message.id < int(before_id))
    rows = query.order_by(Message.id.desc()).limit(max(1, min(int(limit), 200))).all()
    rows.reverse()
    return rows


def read_message_ids(db: Session, message_ids: list[int], user: UserRef) -> set[int]:
    if not message_ids:
        return set()
    return {
        int(row.message_id)
        for row in db.query(MessageReadStatus.message_id)
        .filter(
            MessageReadStatus.message_id.in_(message_ids),
            MessageReadStatus.user_id == int(user.id),
            MessageReadStatus.user_role == user.role.value,
        )
        .all()
    }


def delete_message(
    db: Session,
    message_id: int,
    user: UserRef,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> Message:
    message = db.get(Message, int(message_id))
    if message is None or message.is_deleted:
        raise NotFoundError('Message not found')
    if message.sender_id != int(user.id) or message.sender_role != user.role.value:
        raise PermissionDeniedError('Only the sender can delete this message')
    message.is_deleted = True
    message.updated_at = time_provider.utcnow()
    db.commit()
    db.refresh(message)
    logger.info('message_deleted message_id=%s by=%s', message.id, participant_key(user))
    return message
