from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from campus_comms.config import settings
from campus_comms.core.errors import DatabaseError, StorageError, ValidationError
from campus_comms.core.time_provider import TimeProvider, default_time_provider
from campus_comms.models import MessageAttachment
from campus_comms.schemas import IncomingFile, UserRef


logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r'[^a-zA-Z0-9.-]')


@dataclass
class ScanVerdict:
    clean: bool
    threats: list[str] = field(default_factory=list)


class ObjectStorage(ABC):
    @abstractmethod
    def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store the bytes under path and return a retrievable URL."""


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: str | Path, public_base_url: str) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip('/')

    def put(self, path: str, data: bytes, content_type: str) -> str:
        target = self.root / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f'Failed to upload file: {exc}') from exc
        return f'{self.public_base_url}/{path}'


class HttpObjectStorage(ObjectStorage):
    def __init__(self, base_url: str, *, token: str = '', timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout

    def put(self, path: str, data: bytes, content_type: str) -> str:
        headers = {'Content-Type': content_type or 'application/octet-stream'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        url = f'{self.base_url}/{path}'
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.put(url, headers=headers, content=data)
        except httpx.HTTPError as exc:
            raise StorageError(f'Failed to upload file: {exc}') from exc
        if resp.status_code >= 300:
            raise StorageError(f'Failed to upload file: {resp.status_code} {resp.text[:200]}')
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return str((body or {}).get('url') or url)


class VirusScanner(ABC):
    @abstractmethod
    def scan(self, data: bytes) -> ScanVerdict:
        ...


class NoopVirusScanner(VirusScanner):
    def scan(self, data: bytes) -> ScanVerdict:
        return ScanVerdict(clean=True)


class HttpVirusScanner(VirusScanner):
    def __init__(self, url: str, *, timeout: float = 15.0) -> None:
        self.url = url
        self.timeout = timeout

    def scan(self, data: bytes) -> ScanVerdict:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    self.url,
                    content=data,
                    headers={'Content-Type': 'application/octet-stream'},
                )
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise StorageError(f'Virus scan unavailable: {exc}') from exc
        threats = [str(item) for item in (body.get('threats') or [])]
        return ScanVerdict(clean=bool(body.get('clean', not threats)), threats=threats)


_storage: ObjectStorage | None = None
_scanner: VirusScanner | None = None


def get_object_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        backend = (settings.attachment_storage_backend or 'local').strip().lower()
        if backend == 'http':
            _storage = HttpObjectStorage(
                settings.object_storage_url,
                token=settings.object_storage_token,
                timeout=settings.object_storage_timeout_seconds,
            )
        else:
            _storage = LocalObjectStorage(settings.attachment_storage_dir, settings.attachment_public_base_url)
    return _storage


def set_object_storage(storage: ObjectStorage | None) -> None:
    global _storage
    _storage = storage


def get_virus_scanner() -> VirusScanner:
    global _scanner
    if _scanner is None:
        if settings.virus_scanner_url:
            _scanner = HttpVirusScanner(settings.virus_scanner_url, timeout=settings.virus_scanner_timeout_seconds)
        else:
            _scanner = NoopVirusScanner()
    return _scanner


def set_virus_scanner(scanner: VirusScanner | None) -> None:
    global _scanner
    _scanner = scanner


def sanitize_filename(filename: str) -> str:
    name = Path(str(filename or '')).name
    cleaned = _UNSAFE_FILENAME_CHARS.sub('_', name)
    return cleaned or 'file'


def build_storage_path(message_id: int, filename: str, now: datetime) -> tuple[str, str]:
    stamp = int(now.timestamp() * 1000)
    stored_name = f'{stamp}_{sanitize_filename(filename)}'
    return f'messages/{int(message_id)}/{stored_name}', stored_name


def upload_attachment(
    db: Session,
    message_id: int,
    file: IncomingFile,
    uploader: UserRef,
    *,
    storage: ObjectStorage | None = None,
    scanner: VirusScanner | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> MessageAttachment:
    storage = storage or get_object_storage()
    scanner = scanner or get_virus_scanner()

    verdict = scanner.scan(file.data)
    if not verdict.clean:
        logger.warning(
            'attachment_rejected_infected message_id=%s filename=%s threats=%s',
            message_id,
            file.filename,
            ','.join(verdict.threats),
        )
        raise ValidationError('File failed security scan', details={'threats': verdict.threats})

    now = time_provider.now()
    path, stored_name = build_storage_path(message_id, file.filename, now)
    url = storage.put(path, file.data, file.mime_type)

    mime_type = (file.mime_type or 'application/octet-stream').strip().lower()
    attachment = MessageAttachment(
        message_id=int(message_id),
        filename=stored_name,
        original_filename=file.filename,
        mime_type=mime_type,
        size_bytes=file.size_bytes,
        url=url,
        storage_path=path,
        thumbnail_url=url if mime_type.startswith('image/') else None,
        uploaded_by_id=int(uploader.id),
        uploaded_by_role=uploader.role.value,
        uploaded_at=time_provider.utcnow(),
    )
    db.add(attachment)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('attachment_persist_failed message_id=%s path=%s', message_id, path)
        raise DatabaseError('Failed to save attachment') from exc
    db.refresh(attachment)
    logger.info('attachment_uploaded message_id=%s attachment_id=%s size=%s', message_id, attachment.id, file.size_bytes)
    return attachment
