from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from apscheduler.jobstores.base import JobLookupError

from campus_comms.config import settings
from campus_comms.core.errors import InvalidStateError
from campus_comms.core.retry_policy import RetryPolicy
from campus_comms.core.time_provider import TimeProvider, default_time_provider
from campus_comms.metrics import run_timed_job
from campus_comms.models import ThresholdType
from campus_comms.schemas import (
    AlertOutcome,
    MonitoringJobResult,
    MonitorStatus,
    RetryQueueEntry,
    RetryQueueStatus,
    RetrySweepResult,
    ScanError,
    StudentMetrics,
)
from campus_comms.services.attendance_alert_service import (
    AttendanceAlertService,
    build_notification_channel,
    evaluate_threshold,
)
from campus_comms.services.attendance_metrics import MetricsProvider, build_metrics_provider


logger = logging.getLogger(__name__)

SCAN_JOB_ID = 'attendance_threshold_scan'
RETRY_JOB_ID = 'attendance_alert_retry'
ALREADY_RUNNING_ERROR = 'Job already running'


@dataclass
class _StudentCheck:
    student_id: int
    status: str
    error: str | None = None


def notification_key(student_id: int, threshold_type: ThresholdType) -> str:
    return f'{int(student_id)}:{threshold_type.value}'


class NotificationThresholdMonitor:
    """Periodic attendance scan with a bounded worker pool and an in-memory retry queue.

    One scan runs at a time; a second caller gets an "already running" result
    immediately instead of waiting.
    """

    def __init__(
        self,
        *,
        metrics_provider: MetricsProvider | None = None,
        alert_service: AttendanceAlertService | None = None,
        scheduler=None,
        time_provider: TimeProvider = default_time_provider,
        retry_policy: RetryPolicy | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.metrics_provider = metrics_provider or build_metrics_provider()
        self.alert_service = alert_service or AttendanceAlertService(
            channel=build_notification_channel(),
            time_provider=time_provider,
        )
        self.time_provider = time_provider
        self.retry_policy = retry_policy or RetryPolicy(
            base_minutes=settings.retry_base_minutes,
            max_delay_minutes=settings.retry_max_delay_minutes,
            max_attempts=settings.retry_max_attempts,
        )
        self.max_workers = max(1, int(max_workers or settings.monitor_max_workers))
        self._scheduler = scheduler

        self._scan_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._queue_lock = threading.Lock()
        self._control_lock = threading.Lock()
        self._retry_queue: dict[str, RetryQueueEntry] = {}
        self._permanent_failures: list[ScanError] = []
        self._cron_job_active = False
        self._last_execution: datetime | None = None

    # Scan

    def run_threshold_check(self) -> MonitoringJobResult:
        if not self._scan_lock.acquire(blocking=False):
            logger.warning('attendance_monitor_skipped reason=already_running')
            return MonitoringJobResult(
                errors=[ScanError(error=ALREADY_RUNNING_ERROR)],
                timestamp=self.time_provider.utcnow(),
            )

        started = time.perf_counter()
        result = MonitoringJobResult(timestamp=self.time_provider.utcnow())
        try:
            result.errors.extend(self._drain_permanent_failures())
            try:
                student_ids = self.metrics_provider.list_active_student_ids()
            except Exception as exc:
                logger.exception('attendance_monitor_student_load_failed')
                result.errors.append(ScanError(error=f'Failed to load students: {exc}'))
                return result

            result.total_students_checked = len(student_ids)
            if student_ids:
                workers = min(self.max_workers, len(student_ids))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='attendance-monitor') as pool:
                    checks = list(pool.map(self._check_student, student_ids))
                for check in checks:
                    if check.status == 'sent':
                        result.notifications_sent += 1
                    elif check.status == 'failed':
                        result.notifications_failed += 1
                        result.errors.append(ScanError(student_id=check.student_id, error=check.error or 'Unknown error'))
            return result
        finally:
            result.execution_time_ms = round((time.perf_counter() - started) * 1000.0, 2)
            self._last_execution = self.time_provider.utcnow()
            self._scan_lock.release()
            logger.info(
                'attendance_monitor_scan_done checked=%s sent=%s failed=%s errors=%s duration_ms=%.2f',
                result.total_students_checked,
                result.notifications_sent,
                result.notifications_failed,
                len(result.errors),
                result.execution_time_ms,
            )

    def run_manual_check(self) -> MonitoringJobResult:
        logger.info('attendance_monitor_manual_check')
        return self.run_threshold_check()

    def _check_student(self, student_id: int) -> _StudentCheck:
        try:
            metrics = self.metrics_provider.get_student_metrics(student_id)
        except Exception as exc:
            logger.warning('attendance_metrics_failed student_id=%s error=%s', student_id, exc)
            return _StudentCheck(student_id, 'failed', f'Failed to fetch metrics: {exc}')

        try:
            outcome = self.alert_service.check_thresholds_and_notify(student_id, metrics)
        except Exception as exc:
            logger.exception('attendance_alert_crashed student_id=%s', student_id)
            outcome = AlertOutcome(status='failed', threshold_type=evaluate_threshold(metrics), reason=str(exc))

        if outcome.status == 'failed':
            if outcome.threshold_type is not None:
                self._enqueue_retry(student_id, outcome.threshold_type, metrics, outcome.reason)
            return _StudentCheck(student_id, 'failed', outcome.reason or 'Notification delivery failed')
        return _StudentCheck(student_id, outcome.status)

    # Retry queue

    def _enqueue_retry(self, student_id: int, threshold_type: ThresholdType, metrics: StudentMetrics, error: str | None) -> None:
        key = notification_key(student_id, threshold_type)
        now = self.time_provider.utcnow()
        with self._queue_lock:
            existing = self._retry_queue.get(key)
            if existing is not None:
                self._retry_queue[key] = existing.model_copy(update={'last_error': error})
                return
            self._retry_queue[key] = RetryQueueEntry(
                notification_key=key,
                student_id=int(student_id),
                threshold_type=threshold_type,
                attendance_rate=metrics.attendance_rate,
                sick_and_leave_hours=metrics.sick_and_leave_hours,
                attempts=1,
                last_attempt_at=now,
                next_retry_at=self.retry_policy.next_attempt(1, now=now),
                last_error=error,
            )
        logger.info('attendance_alert_queued_for_retry key=%s', key)

    def _record_failure(self, key: str, error: str | None, now: datetime) -> ScanError | None:
        with self._queue_lock:
            entry = self._retry_queue.get(key)
            if entry is None:
                return None
            attempts = entry.attempts + 1
            if self.retry_policy.exhausted(attempts):
                del self._retry_queue[key]
                failure = ScanError(
                    student_id=entry.student_id,
                    error=f'Notification {key} permanently failed after {attempts} attempts: {error or "unknown error"}',
                )
                self._permanent_failures.append(failure)
                logger.error('attendance_alert_gave_up key=%s attempts=%s', key, attempts)
                return failure
            self._retry_queue[key] = entry.model_copy(
                update={
                    'attempts': attempts,
                    'last_attempt_at': now,
                    'next_retry_at': self.retry_policy.next_attempt(attempts, now=now),
                    'last_error': error,
                }
            )
        return None

    def _drain_permanent_failures(self) -> list[ScanError]:
        with self._queue_lock:
            drained = list(self._permanent_failures)
            self._permanent_failures.clear()
        return drained

    def process_retry_queue(self) -> RetrySweepResult:
        result = RetrySweepResult()
        if not self._sweep_lock.acquire(blocking=False):
            logger.info('attendance_retry_sweep_skipped reason=already_running')
            return result
        try:
            now = self.time_provider.utcnow()
            with self._queue_lock:
                due = [entry for entry in self._retry_queue.values() if entry.next_retry_at <= now]
            for entry in due:
                result.retried += 1
                try:
                    outcome = self.alert_service.deliver_alert(
                        entry.student_id,
                        entry.threshold_type,
                        attendance_rate=entry.attendance_rate,
                        sick_and_leave_hours=entry.sick_and_leave_hours,
                    )
                except Exception as exc:
                    logger.exception('attendance_alert_retry_crashed key=%s', entry.notification_key)
                    outcome = AlertOutcome(status='failed', threshold_type=entry.threshold_type, reason=str(exc))

                if outcome.status == 'failed':
                    result.failed += 1
                    permanent = self._record_failure(entry.notification_key, outcome.reason, now)
                    if permanent is not None:
                        result.permanently_failed.append(permanent)
                    continue
                with self._queue_lock:
                    self._retry_queue.pop(entry.notification_key, None)
                result.succeeded += 1
            if due:
                logger.info(
                    'attendance_retry_sweep_done retried=%s succeeded=%s failed=%s permanent=%s',
                    result.retried,
                    result.succeeded,
                    result.failed,
                    len(result.permanently_failed),
                )
            return result
        finally:
            self._sweep_lock.release()

    def get_retry_queue_status(self) -> RetryQueueStatus:
        with self._queue_lock:
            entries = list(self._retry_queue.values())
        by_type: dict[str, int] = {}
        by_attempts: dict[int, int] = {}
        for entry in entries:
            by_type[entry.threshold_type.value] = by_type.get(entry.threshold_type.value, 0) + 1
            by_attempts[entry.attempts] = by_attempts.get(entry.attempts, 0) + 1
        return RetryQueueStatus(total_pending=len(entries), by_type=by_type, by_attempts=by_attempts)

    def get_retry_queue(self) -> list[RetryQueueEntry]:
        with self._queue_lock:
            return sorted(self._retry_queue.values(), key=lambda entry: entry.next_retry_at)

    def clear_retry_queue(self) -> int:
        with self._queue_lock:
            cleared = len(self._retry_queue)
            self._retry_queue.clear()
        logger.info('attendance_retry_queue_cleared count=%s', cleared)
        return cleared

    # Control

    def get_status(self) -> MonitorStatus:
        with self._queue_lock:
            queue_size = len(self._retry_queue)
        return MonitorStatus(
            is_running=self._scan_lock.locked(),
            cron_job_active=self._cron_job_active,
            retry_queue_size=queue_size,
            last_execution=self._last_execution,
        )

    def _get_scheduler(self):
        if self._scheduler is None:
            from campus_comms.scheduler import scheduler

            self._scheduler = scheduler
        return self._scheduler

    def _scheduled_scan(self) -> None:
        run_timed_job(SCAN_JOB_ID, self.run_threshold_check)

    def _scheduled_retry_sweep(self) -> None:
        run_timed_job(RETRY_JOB_ID, self.process_retry_queue)

    def start(self, *, strict: bool = False) -> bool:
        with self._control_lock:
            if self._cron_job_active:
                logger.info('attendance_monitor_start_ignored reason=already_active')
                if strict:
                    raise InvalidStateError('Attendance monitor is already running')
                return False
            scheduler = self._get_scheduler()
            scheduler.add_job(
                self._scheduled_scan,
                'cron',
                minute=settings.monitor_scan_minute,
                id=SCAN_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.add_job(
                self._scheduled_retry_sweep,
                'interval',
                minutes=settings.monitor_retry_interval_minutes,
                id=RETRY_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self._cron_job_active = True
        logger.info('attendance_monitor_started scan_minute=%s', settings.monitor_scan_minute)
        return True

    def stop(self) -> bool:
        with self._control_lock:
            if not self._cron_job_active:
                return False
            scheduler = self._get_scheduler()
            for job_id in (SCAN_JOB_ID, RETRY_JOB_ID):
                try:
                    scheduler.remove_job(job_id)
                except JobLookupError:
                    logger.warning('attendance_monitor_job_missing job_id=%s', job_id)
            self._cron_job_active = False
        logger.info('attendance_monitor_stopped')
        return True


_monitor: NotificationThresholdMonitor | None = None
_monitor_lock = threading.Lock()


def get_threshold_monitor() -> NotificationThresholdMonitor:
    global _monitor
    with _monitor_lock:
        if _monitor is None:
            _monitor = NotificationThresholdMonitor()
        return _monitor


def set_threshold_monitor(monitor: NotificationThresholdMonitor | None) -> None:
    global _monitor
    with _monitor_lock:
        _monitor = monitor
