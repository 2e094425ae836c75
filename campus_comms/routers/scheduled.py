from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from campus_comms.core.router_guard import require_auth_user
from campus_comms.db import get_db
from campus_comms.models import ScheduledMessageStatus
from campus_comms.schemas import ScheduleMessageRequest, UserRef
from campus_comms.services import scheduled_message_service


router = APIRouter(prefix='/api/scheduled-messages', tags=['Scheduled Messages'])


@router.post('')
def schedule_message(payload: ScheduleMessageRequest, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    return scheduled_message_service.schedule_message(db, user, payload).model_dump(mode='json')


@router.get('')
def list_scheduled(
    status: ScheduledMessageStatus | None = None,
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    rows = scheduled_message_service.list_scheduled_messages(db, user, status=status)
    return {'scheduled_messages': [row.model_dump(mode='json') for row in rows]}


@router.post('/{scheduled_id}/cancel')
def cancel_scheduled(scheduled_id: int, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    return scheduled_message_service.cancel_scheduled_message(db, scheduled_id, user).model_dump(mode='json')
