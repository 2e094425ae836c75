from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from campus_comms.core.router_guard import require_auth_user
from campus_comms.db import get_db
from campus_comms.schemas import BroadcastRequest, UserRef
from campus_comms.services import broadcast_service


router = APIRouter(prefix='/api/broadcasts', tags=['Broadcasts'])


@router.post('')
def create_broadcast(payload: BroadcastRequest, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    result = broadcast_service.broadcast_to_class(db, user, payload.class_id, payload.content, payload.category)
    return result.model_dump()


@router.get('')
def broadcast_history(
    limit: int = Query(default=50, ge=1, le=200),
    user: UserRef = Depends(require_auth_user),
    db: Session = Depends(get_db),
):
    rows = broadcast_service.get_broadcast_history(db, user, limit=limit)
    return {'broadcasts': [row.model_dump(mode='json') for row in rows]}


@router.get('/{broadcast_id}')
def broadcast_stats(broadcast_id: int, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    return broadcast_service.get_broadcast_stats(db, broadcast_id, user).model_dump(mode='json')


@router.post('/{broadcast_id}/read')
def mark_broadcast_read(broadcast_id: int, user: UserRef = Depends(require_auth_user), db: Session = Depends(get_db)):
    changed = broadcast_service.mark_broadcast_read(db, broadcast_id, user)
    return {'ok': True, 'changed': changed}
