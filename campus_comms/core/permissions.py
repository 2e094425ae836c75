from __future__ import annotations

from dataclasses import dataclass

from campus_comms.config import settings
from campus_comms.models import UserRole
from campus_comms.schemas import FileCheck, IncomingFile


MIB = 1024 * 1024

STUDENT_ALLOWED_MIME_TYPES = frozenset(
    {
        'text/plain',
        'image/jpeg',
        'image/jpg',
        'image/png',
        'application/pdf',
        'application/msword',
        'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
        'application/vnd.ms-excel',
        'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        'application/vnd.ms-powerpoint',
        'application/vnd.openxmlformats-officedocument.presentationml.presentation',
    }
)

STUDENT_MIME_REASON = 'Students can only send text, images (JPG, PNG), PDF, Word, Excel, and PowerPoint files'


@dataclass(frozen=True)
class FilePolicy:
    max_bytes: int
    allowed_mime_types: frozenset[str] | None = None


_SEND_MATRIX: dict[UserRole, frozenset[UserRole]] = {
    UserRole.STUDENT: frozenset({UserRole.TEACHER}),
    UserRole.TEACHER: frozenset({UserRole.STUDENT, UserRole.OFFICE}),
    UserRole.OFFICE: frozenset({UserRole.STUDENT, UserRole.TEACHER}),
}

_FILE_POLICIES: dict[UserRole, FilePolicy] = {
    UserRole.STUDENT: FilePolicy(
        max_bytes=settings.student_max_file_mb * MIB,
        allowed_mime_types=STUDENT_ALLOWED_MIME_TYPES,
    ),
    UserRole.TEACHER: FilePolicy(max_bytes=settings.staff_max_file_mb * MIB),
    UserRole.OFFICE: FilePolicy(max_bytes=settings.staff_max_file_mb * MIB),
}

# Every role needs a row in both tables.
for _table_name, _table in (('send matrix', _SEND_MATRIX), ('file policy', _FILE_POLICIES)):
    _missing = set(UserRole) - set(_table)
    if _missing:
        raise RuntimeError(f'{_table_name} has no entry for roles: {sorted(r.value for r in _missing)}')


def _coerce_role(value: UserRole | str | None) -> UserRole | None:
    if isinstance(value, UserRole):
        return value
    try:
        return UserRole(str(value or '').strip().lower())
    except ValueError:
        return None


def can_send(sender_role: UserRole | str, recipient_role: UserRole | str) -> bool:
    sender = _coerce_role(sender_role)
    recipient = _coerce_role(recipient_role)
    if sender is None or recipient is None:
        return False
    return recipient in _SEND_MATRIX[sender]


def can_broadcast(sender_role: UserRole | str) -> bool:
    sender = _coerce_role(sender_role)
    return sender in (UserRole.TEACHER, UserRole.OFFICE)


def file_policy_for(role: UserRole | str) -> FilePolicy | None:
    resolved = _coerce_role(role)
    if resolved is None:
        return None
    return _FILE_POLICIES[resolved]


def denial_message(sender_role: UserRole | str, recipient_role: UserRole | str) -> str:
    if _coerce_role(sender_role) is UserRole.STUDENT and _coerce_role(recipient_role) is UserRole.OFFICE:
        return 'Students cannot message office directly. Please contact your teacher.'
    return 'You do not have permission to message this user'


def is_file_allowed(role: UserRole | str, file: IncomingFile) -> FileCheck:
    policy = file_policy_for(role)
    if policy is None:
        return FileCheck(allowed=False, reason='Unknown sender role')

    if policy.allowed_mime_types is not None:
        mime_type = (file.mime_type or '').strip().lower()
        if mime_type not in policy.allowed_mime_types:
            return FileCheck(allowed=False, reason=STUDENT_MIME_REASON)

    if file.size_bytes > policy.max_bytes:
        return FileCheck(allowed=False, reason=f'File size exceeds {policy.max_bytes // MIB}MB limit')
    return FileCheck(allowed=True)
