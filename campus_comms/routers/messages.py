from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session

from campus_comms.core.router_guard import require_auth_user
from campus_comms.db import get_db
from campus_comms.models import MessageCategory, UserRole
from campus_comms.schemas import IncomingFile, SendMessageInput, UserRef
from campus_comms.services import conversation_service, messaging_service
from campus_comms.services.presence_service import presence_tracker


router = APIRouter(prefix='/api/messages', tags=['Messages'])


class ToggleRequest(BaseModel):
    value: bool = True


class ForwardRequest(BaseModel):
    recipient_id: int
    recipient_role: UserRole


class TypingRequest(BaseModel):
    is_typing: bool = True


@router.get('/conversations')
def list_conversations(
    include_archived: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    rows = conversation_service.list_conversations(db, user, include_archived=include_archived, limit=limit, offset=offset)
    return {'conversations': [row.model_dump(mode='json') for row in rows]}


@router.get('/conversations/{conversation_id}')
def get_conversation_messages(
    conversation_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    before_id: int | None = None,
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    rows = conversation_service.get_messages(db, conversation_id, user, limit=limit, before_id=before_id)
    read_ids = conversation_service.read_message_ids(db, [row.id for row in rows], user)
    messages = [messaging_service.hydrate_message(db, row, viewer=user, read_ids=read_ids) for row in rows]
    return {'conversation_id': conversation_id, 'messages': [item.model_dump(mode='json') for item in messages]}


@router.post('/conversations/{conversation_id}/read')
def mark_conversation_read(conversation_id: int, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    marked = conversation_service.mark_read(db, conversation_id, user)
    return {'ok': True, 'marked': marked}


@router.post('/conversations/{conversation_id}/mute')
def mute_conversation(
    conversation_id: int,
    payload: ToggleRequest,
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    participant = conversation_service.set_muted(db, conversation_id, user, payload.value)
    return {'ok': True, 'is_muted': participant.is_muted}


@router.post('/conversations/{conversation_id}/archive')
def archive_conversation(
    conversation_id: int,
    payload: ToggleRequest,
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    conversation = conversation_service.set_archived(db, conversation_id, user, payload.value)
    return {'ok': True, 'is_archived': conversation.is_archived}


@router.post('/send')
async def send_message(
    recipient_id: int = Form(...),
    recipient_role: UserRole = Form(...),
    content: str = Form(default=''),
    category: MessageCategory = Form(default=MessageCategory.GENERAL),
    conversation_id: int | None = Form(default=None),
    reply_to_id: int | None = Form(default=None),
    client_message_id: str | None = Form(default=None),
    files: list[UploadFile] = File(default=[]),
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    incoming = []
    for upload in files:
        data = await upload.read()
        incoming.append(
            IncomingFile(
                filename=upload.filename or 'file',
                mime_type=upload.content_type or 'application/octet-stream',
                data=data,
            )
        )
    payload = SendMessageInput(
        conversation_id=conversation_id,
        recipient_id=recipient_id,
        recipient_role=recipient_role,
        content=content,
        category=category,
        reply_to_id=reply_to_id,
        client_message_id=client_message_id or None,
    )
    message = messaging_service.send_message(db, user, payload, incoming)
    presence_tracker.set_typing(message.conversation_id, user, False)
    return message.model_dump(mode='json')


@router.post('/{message_id}/forward')
def forward_message(
    message_id: int,
    payload: ForwardRequest,
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    message = messaging_service.forward_message(db, user, message_id, payload.recipient_id, payload.recipient_role)
    return message.model_dump(mode='json')


@router.delete('/{message_id}')
def delete_message(message_id: int, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    conversation_service.delete_message(db, message_id, user)
    return {'ok': True, 'message_id': message_id}


@router.get('/search')
def search_messages(
    q: str = Query(default='', max_length=200),
    limit: int = Query(default=50, ge=1, le=200),
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    results = messaging_service.search_messages(db, user, q, limit=limit)
    return {'query': q, 'results': [item.model_dump(mode='json') for item in results]}


@router.get('/recipients')
def available_recipients(user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    rows = messaging_service.get_available_recipients(db, user)
    return {'recipients': [row.model_dump() for row in rows]}


@router.post('/conversations/{conversation_id}/typing')
def set_typing(
    conversation_id: int,
    payload: TypingRequest,
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    conversation_service.require_participant(db, conversation_id, user)
    presence_tracker.set_typing(conversation_id, user, payload.is_typing)
    presence_tracker.heartbeat(user)
    return {'ok': True}


@router.get('/conversations/{conversation_id}/typing')
def get_typing(conversation_id: int, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    conversation_service.require_participant(db, conversation_id, user)
    return {'typing': presence_tracker.get_typing(conversation_id, exclude=user)}
