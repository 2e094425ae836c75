from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

import httpx
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from campus_comms.config import settings
from campus_comms.core.errors import DeliveryError, MessagingError
from campus_comms.core.time_provider import TimeProvider, default_time_provider
from campus_comms.db import SessionLocal
from campus_comms.models import (
    AttendanceAlertMark,
    NotificationPreference,
    Severity,
    SystemMessage,
    SystemMessageCategory,
    ThresholdType,
    UserRole,
)
from campus_comms.schemas import AlertOutcome, CreateSystemMessageInput, StudentMetrics
from campus_comms.services.messaging_service import create_system_message


logger = logging.getLogger(__name__)

STUDENT_DASHBOARD_URL = '/student/student-dashboard'


def certification_percentage(sick_and_leave_hours: float) -> float:
    allowed = float(settings.attendance_allowed_absence_hours or 0)
    if allowed <= 0:
        return 0.0
    return (float(sick_and_leave_hours or 0.0) / allowed) * 100.0


def evaluate_threshold(metrics: StudentMetrics) -> ThresholdType | None:
    rate = float(metrics.attendance_rate)
    if rate <= settings.attendance_disqualified_threshold:
        return ThresholdType.DISQUALIFIED
    if rate < settings.attendance_warning_threshold:
        return ThresholdType.WARNING
    if certification_percentage(metrics.sick_and_leave_hours) >= settings.attendance_certification_threshold:
        return ThresholdType.CERTIFICATION
    return None


def attendance_period_key(now: datetime, period: str = 'month') -> str:
    kind = (period or 'month').strip().lower()
    if kind == 'day':
        return now.strftime('%Y-%m-%d')
    if kind == 'week':
        iso_year, iso_week, _ = now.isocalendar()
        return f'{iso_year}-W{iso_week:02d}'
    return now.strftime('%Y-%m')


def build_alert(
    student_id: int,
    threshold_type: ThresholdType,
    *,
    attendance_rate: float,
    sick_and_leave_hours: float,
) -> CreateSystemMessageInput:
    if threshold_type == ThresholdType.DISQUALIFIED:
        title = 'Urgent: Mahroom Risk Alert'
        content = (
            f'URGENT: Your attendance rate is {attendance_rate:.1f}%, which is at or below the mahroom '
            f'threshold of {settings.attendance_disqualified_threshold:g}%. You are at risk of being barred '
            'from exams. Please contact your academic advisor immediately.'
        )
        severity = Severity.ERROR
        metadata = {'attendance_rate': attendance_rate, 'threshold': settings.attendance_disqualified_threshold, 'urgent': True}
    elif threshold_type == ThresholdType.WARNING:
        title = 'Attendance Warning'
        content = (
            f'Your attendance rate has dropped to {attendance_rate:.1f}%. Please improve your attendance '
            f'to avoid academic consequences. The minimum required attendance is '
            f'{settings.attendance_disqualified_threshold:g}%.'
        )
        severity = Severity.WARNING
        metadata = {'attendance_rate': attendance_rate, 'threshold': settings.attendance_warning_threshold}
    else:
        allowed = settings.attendance_allowed_absence_hours
        percentage = certification_percentage(sick_and_leave_hours)
        title = 'Medical Certification Required (Tasdiq)'
        content = (
            f'Your sick and leave hours have reached {sick_and_leave_hours:g} hours ({percentage:.1f}% of the '
            f'allowed {allowed:g} hours). Please upload medical certificates to justify your absences.'
        )
        severity = Severity.WARNING
        metadata = {
            'sick_and_leave_hours': sick_and_leave_hours,
            'allowed_hours': allowed,
            'percentage': percentage,
            'threshold': settings.attendance_certification_threshold,
        }
    metadata['threshold_type'] = threshold_type.value
    return CreateSystemMessageInput(
        target_user_id=int(student_id),
        target_user_role=UserRole.STUDENT,
        title=title,
        content=content,
        category=SystemMessageCategory.ATTENDANCE_ALERT,
        severity=severity,
        action_url=STUDENT_DASHBOARD_URL,
        action_label='View attendance',
        metadata=metadata,
    )


class NotificationChannel(ABC):
    @abstractmethod
    def push(self, system_message: SystemMessage) -> None:
        """Deliver the alert outside the app; raise DeliveryError on failure."""


class NullNotificationChannel(NotificationChannel):
    def push(self, system_message: SystemMessage) -> None:
        return None


class WebhookNotificationChannel(NotificationChannel):
    def __init__(self, url: str, *, timeout: float = 8.0) -> None:
        self.url = url
        self.timeout = timeout

    def push(self, system_message: SystemMessage) -> None:
        payload = {
            'system_message_id': system_message.id,
            'user_id': system_message.target_user_id,
            'user_role': system_message.target_user_role,
            'title': system_message.title,
            'content': system_message.content,
            'severity': system_message.severity,
            'action_url': system_message.action_url,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise DeliveryError(f'Notification push failed: {exc}') from exc
        if resp.status_code >= 300:
            raise DeliveryError(f'Notification push failed: {resp.status_code}')


def build_notification_channel() -> NotificationChannel:
    if settings.notification_webhook_url:
        return WebhookNotificationChannel(settings.notification_webhook_url, timeout=settings.notification_timeout_seconds)
    return NullNotificationChannel()


class AttendanceAlertService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        channel: NotificationChannel | None = None,
        *,
        time_provider: TimeProvider = default_time_provider,
        period: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.channel = channel or NullNotificationChannel()
        self.time_provider = time_provider
        self.period = period or settings.attendance_alert_period

    def check_thresholds_and_notify(self, student_id: int, metrics: StudentMetrics) -> AlertOutcome:
        threshold_type = evaluate_threshold(metrics)
        if threshold_type is None:
            return AlertOutcome(status='skipped', reason='No threshold breached')
        return self.deliver_alert(
            student_id,
            threshold_type,
            attendance_rate=metrics.attendance_rate,
            sick_and_leave_hours=metrics.sick_and_leave_hours,
        )

    def deliver_alert(
        self,
        student_id: int,
        threshold_type: ThresholdType,
        *,
        attendance_rate: float,
        sick_and_leave_hours: float = 0.0,
    ) -> AlertOutcome:
        period_key = attendance_period_key(self.time_provider.now(), self.period)
        db = self.session_factory()
        try:
            preference = db.get(NotificationPreference, int(student_id))
            if preference is not None and not preference.attendance_alerts:
                return AlertOutcome(
                    status='skipped',
                    threshold_type=threshold_type,
                    reason='Attendance alerts disabled in preferences',
                )

            already = (
                db.query(AttendanceAlertMark.id)
                .filter(
                    AttendanceAlertMark.student_id == int(student_id),
                    AttendanceAlertMark.threshold_type == threshold_type.value,
                    AttendanceAlertMark.period_key == period_key,
                )
                .first()
            )
            if already:
                return AlertOutcome(
                    status='skipped',
                    threshold_type=threshold_type,
                    reason=f'{threshold_type.value} alert already sent for {period_key}',
                )

            alert = build_alert(
                student_id,
                threshold_type,
                attendance_rate=float(attendance_rate),
                sick_and_leave_hours=float(sick_and_leave_hours or 0.0),
            )
            try:
                system_message = create_system_message(db, alert, commit=False, time_provider=self.time_provider)
                self.channel.push(system_message)
                db.add(
                    AttendanceAlertMark(
                        student_id=int(student_id),
                        threshold_type=threshold_type.value,
                        period_key=period_key,
                        attendance_rate=float(attendance_rate),
                        system_message_id=system_message.id,
                        notified_at=self.time_provider.utcnow(),
                    )
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                return AlertOutcome(
                    status='skipped',
                    threshold_type=threshold_type,
                    reason=f'{threshold_type.value} alert already sent for {period_key}',
                )
            except (MessagingError, SQLAlchemyError) as exc:
                db.rollback()
                error_text = exc.message if isinstance(exc, MessagingError) else str(exc)
                logger.warning(
                    'attendance_alert_failed student_id=%s threshold=%s error=%s',
                    student_id,
                    threshold_type.value,
                    error_text,
                )
                return AlertOutcome(status='failed', threshold_type=threshold_type, reason=error_text)
            except Exception:
                db.rollback()
                raise

            logger.info(
                'attendance_alert_sent student_id=%s threshold=%s period=%s system_message_id=%s',
                student_id,
                threshold_type.value,
                period_key,
                system_message.id,
            )
            return AlertOutcome(status='sent', threshold_type=threshold_type, system_message_id=system_message.id)
        finally:
            db.close()
