from __future__ import annotations

from typing import Any


class MessagingError(Exception):
    """Base class for failures surfaced by the messaging core."""

    status_code = 400
    error_type = 'messaging_error'

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {'error': self.error_type, 'detail': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class PermissionDeniedError(MessagingError, PermissionError):
    status_code = 403
    error_type = 'permission_denied'


class ValidationError(MessagingError, ValueError):
    status_code = 422
    error_type = 'validation_error'


class NotFoundError(MessagingError, LookupError):
    status_code = 404
    error_type = 'not_found'


class StorageError(MessagingError):
    status_code = 502
    error_type = 'storage_error'


class DeliveryError(MessagingError):
    status_code = 502
    error_type = 'delivery_error'


class DatabaseError(MessagingError):
    status_code = 503
    error_type = 'database_error'


class InvalidStateError(MessagingError):
    status_code = 409
    error_type = 'invalid_state'
