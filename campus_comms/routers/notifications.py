from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from campus_comms.core.router_guard import require_auth_user
from campus_comms.db import get_db
from campus_comms.schemas import UserRef
from campus_comms.services import messaging_service


router = APIRouter(prefix='/api/system-messages', tags=['System Messages'])


@router.get('')
def list_system_messages(
    include_read: bool = True,
    limit: int = Query(default=50, ge=1, le=200),
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    rows = messaging_service.get_system_messages(db, user, include_read=include_read, limit=limit)
    items = [messaging_service.system_message_out(row) for row in rows]
    return {
        'system_messages': [item.model_dump(mode='json') for item in items],
        'unread_count': sum(1 for item in items if not item.is_read),
    }


@router.post('/{system_message_id}/read')
def read_system_message(system_message_id: int, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    row = messaging_service.mark_system_message_read(db, system_message_id, user)
    return messaging_service.system_message_out(row).model_dump(mode='json')


@router.post('/{system_message_id}/dismiss')
def dismiss_system_message(system_message_id: int, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    row = messaging_service.dismiss_system_message(db, system_message_id, user)
    return messaging_service.system_message_out(row).model_dump(mode='json')
