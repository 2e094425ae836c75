from __future__ import annotations

from typing import Iterable

from fastapi import HTTPException, Request

from campus_comms.models import UserRole
from campus_comms.schemas import UserRef


def require_auth_user(request: Request) -> UserRef:
    """Identity is asserted upstream; the gateway forwards it as X-User-* headers."""
    raw_id = (request.headers.get('X-User-Id') or '').strip()
    raw_role = (request.headers.get('X-User-Role') or '').strip().lower()
    try:
        user_id = int(raw_id)
        role = UserRole(raw_role)
    except ValueError:
        raise HTTPException(status_code=401, detail='Unauthorized')
    if user_id <= 0:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return UserRef(id=user_id, role=role, name=(request.headers.get('X-User-Name') or '').strip())


def require_role(user: UserRef, allowed_roles: Iterable[UserRole]) -> None:
    if user.role not in set(allowed_roles):
        raise HTTPException(status_code=403, detail='Forbidden')
