from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

import httpx
from sqlalchemy import func
from sqlalchemy.orm import Session

from campus_comms.config import settings
from campus_comms.db import SessionLocal
from campus_comms.models import AttendanceRecord, AttendanceStatus, Student
from campus_comms.schemas import StudentMetrics


logger = logging.getLogger(__name__)


class MetricsProvider(ABC):
    @abstractmethod
    def get_student_metrics(self, student_id: int) -> StudentMetrics:
        ...

    @abstractmethod
    def list_active_student_ids(self) -> list[int]:
        ...


class DatabaseMetricsProvider(MetricsProvider):
    """Aggregates attendance rows; every call uses a short-lived session of its own."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.session_factory = session_factory

    def list_active_student_ids(self) -> list[int]:
        db = self.session_factory()
        try:
            rows = db.query(Student.id).filter(Student.status == 'active').order_by(Student.id.asc()).all()
            return [int(row.id) for row in rows]
        finally:
            db.close()

    def get_student_metrics(self, student_id: int) -> StudentMetrics:
        db = self.session_factory()
        try:
            rows = (
                db.query(
                    AttendanceRecord.status,
                    func.count(AttendanceRecord.id),
                    func.coalesce(func.sum(AttendanceRecord.hours), 0.0),
                )
                .filter(AttendanceRecord.student_id == int(student_id))
                .group_by(AttendanceRecord.status)
                .all()
            )
        finally:
            db.close()

        counts: dict[str, int] = {}
        hours: dict[str, float] = {}
        for status, count, total_hours in rows:
            key = str(status or '').strip().lower()
            counts[key] = counts.get(key, 0) + int(count or 0)
            hours[key] = hours.get(key, 0.0) + float(total_hours or 0.0)

        present = counts.get(AttendanceStatus.PRESENT.value, 0)
        late = counts.get(AttendanceStatus.LATE.value, 0)
        total = sum(counts.values())
        rate = 100.0 if total == 0 else round(((present + late) / total) * 100.0, 2)
        return StudentMetrics(
            student_id=int(student_id),
            attendance_rate=rate,
            present_days=present,
            absent_days=counts.get(AttendanceStatus.ABSENT.value, 0),
            late_days=late,
            sick_days=counts.get(AttendanceStatus.SICK.value, 0),
            leave_days=counts.get(AttendanceStatus.LEAVE.value, 0),
            sick_and_leave_hours=hours.get(AttendanceStatus.SICK.value, 0.0) + hours.get(AttendanceStatus.LEAVE.value, 0.0),
            total_days=total,
        )


class HttpMetricsProvider(MetricsProvider):
    def __init__(self, base_url: str, *, timeout: float = 10.0, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._directory = DatabaseMetricsProvider(session_factory)

    def list_active_student_ids(self) -> list[int]:
        return self._directory.list_active_student_ids()

    def get_student_metrics(self, student_id: int) -> StudentMetrics:
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.get(f'{self.base_url}/students/{int(student_id)}/attendance-metrics')
            resp.raise_for_status()
            body = resp.json()
        body['student_id'] = int(student_id)
        return StudentMetrics.model_validate(body)


def build_metrics_provider(session_factory: Callable[[], Session] = SessionLocal) -> MetricsProvider:
    kind = (settings.metrics_provider or 'database').strip().lower()
    if kind == 'http' and settings.metrics_api_base:
        return HttpMetricsProvider(
            settings.metrics_api_base,
            timeout=settings.metrics_timeout_seconds,
            session_factory=session_factory,
        )
    if kind not in {'database', 'http'}:
        logger.warning('unknown_metrics_provider kind=%s falling_back=database', kind)
    return DatabaseMetricsProvider(session_factory)
