import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from apscheduler.jobstores.base import JobLookupError

from campus_comms.core.errors import InvalidStateError
from campus_comms.core.retry_policy import RetryPolicy
from campus_comms.core.time_provider import TimeProvider
from campus_comms.models import ThresholdType
from campus_comms.schemas import AlertOutcome, StudentMetrics
from campus_comms.services.attendance_alert_service import evaluate_threshold
from campus_comms.services.attendance_metrics import MetricsProvider
from campus_comms.services.threshold_monitor import (
    ALREADY_RUNNING_ERROR,
    RETRY_JOB_ID,
    SCAN_JOB_ID,
    NotificationThresholdMonitor,
)


class MovableTimeProvider(TimeProvider):
    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeMetricsProvider(MetricsProvider):
    def __init__(self, rates: dict[int, float], failing: set[int] | None = None):
        self.rates = rates
        self.failing = failing or set()
        self.entered = threading.Event()
        self.release = threading.Event()
        self.release.set()

    def list_active_student_ids(self) -> list[int]:
        self.entered.set()
        self.release.wait(timeout=5)
        return sorted(self.rates)

    def get_student_metrics(self, student_id: int) -> StudentMetrics:
        if student_id in self.failing:
            raise ConnectionError('metrics service unavailable')
        return StudentMetrics(student_id=student_id, attendance_rate=self.rates[student_id])


class FakeAlertService:
    """Sends to everyone except the students listed as failing or crashing."""

    def __init__(self, failing: set[int] | None = None, crashing: set[int] | None = None):
        self.failing = failing or set()
        self.crashing = crashing or set()
        self.delivered: list[tuple[int, ThresholdType]] = []

    def check_thresholds_and_notify(self, student_id: int, metrics: StudentMetrics) -> AlertOutcome:
        threshold_type = evaluate_threshold(metrics)
        if threshold_type is None:
            return AlertOutcome(status='skipped')
        return self.deliver_alert(student_id, threshold_type, attendance_rate=metrics.attendance_rate)

    def deliver_alert(self, student_id, threshold_type, *, attendance_rate, sick_and_leave_hours=0.0) -> AlertOutcome:
        if student_id in self.crashing:
            raise RuntimeError('channel exploded')
        if student_id in self.failing:
            return AlertOutcome(status='failed', threshold_type=threshold_type, reason='push gateway returned 503')
        self.delivered.append((student_id, threshold_type))
        return AlertOutcome(status='sent', threshold_type=threshold_type, system_message_id=len(self.delivered))


FROZEN = datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc)


class ThresholdMonitorTests(unittest.TestCase):
    def setUp(self):
        self.clock = MovableTimeProvider(FROZEN)
        self.scheduler = MagicMock()

    def build(self, metrics_provider, alert_service) -> NotificationThresholdMonitor:
        return NotificationThresholdMonitor(
            metrics_provider=metrics_provider,
            alert_service=alert_service,
            scheduler=self.scheduler,
            time_provider=self.clock,
            retry_policy=RetryPolicy(base_minutes=15, max_delay_minutes=240, max_attempts=3),
            max_workers=4,
        )

    def test_scan_counts_outcomes_and_keeps_going_after_failures(self):
        provider = FakeMetricsProvider({1: 70.0, 2: 60.0, 3: 78.0, 4: 95.0, 5: 50.0}, failing={2})
        alerts = FakeAlertService(failing={3}, crashing={5})
        monitor = self.build(provider, alerts)

        result = monitor.run_threshold_check()

        self.assertEqual(result.total_students_checked, 5)
        self.assertEqual(result.notifications_sent, 1)
        self.assertEqual(result.notifications_failed, 3)
        self.assertEqual(sorted(error.student_id for error in result.errors), [2, 3, 5])
        self.assertGreaterEqual(result.execution_time_ms, 0.0)
        self.assertEqual(alerts.delivered, [(1, ThresholdType.DISQUALIFIED)])

        queued = {entry.notification_key for entry in monitor.get_retry_queue()}
        self.assertEqual(queued, {'3:warning', '5:disqualified'})
        self.assertEqual(monitor.get_status().last_execution, datetime(2026, 10, 16, 9, 0))

    def test_second_scan_returns_immediately_while_first_runs(self):
        provider = FakeMetricsProvider({1: 70.0})
        provider.release.clear()
        monitor = self.build(provider, FakeAlertService())
        results = {}

        worker = threading.Thread(target=lambda: results.setdefault('first', monitor.run_threshold_check()))
        worker.start()
        self.assertTrue(provider.entered.wait(timeout=5))
        try:
            self.assertTrue(monitor.get_status().is_running)
            second = monitor.run_threshold_check()
        finally:
            provider.release.set()
            worker.join(timeout=5)

        self.assertEqual([error.error for error in second.errors], [ALREADY_RUNNING_ERROR])
        self.assertEqual(second.total_students_checked, 0)
        self.assertEqual(results['first'].notifications_sent, 1)
        self.assertFalse(monitor.get_status().is_running)

    def test_student_list_failure_is_a_single_error(self):
        provider = FakeMetricsProvider({})
        provider.list_active_student_ids = MagicMock(side_effect=ConnectionError('db down'))
        monitor = self.build(provider, FakeAlertService())

        result = monitor.run_threshold_check()

        self.assertEqual(len(result.errors), 1)
        self.assertIn('Failed to load students', result.errors[0].error)
        self.assertFalse(monitor.get_status().is_running)

    def test_retry_backoff_until_permanent_failure(self):
        alerts = FakeAlertService(failing={7})
        monitor = self.build(FakeMetricsProvider({7: 72.0}), alerts)
        monitor.run_threshold_check()

        entry = monitor.get_retry_queue()[0]
        self.assertEqual(entry.attempts, 1)
        self.assertEqual(entry.next_retry_at, datetime(2026, 10, 16, 9, 15))

        self.assertEqual(monitor.process_retry_queue().retried, 0)

        self.clock.advance(minutes=15)
        sweep = monitor.process_retry_queue()
        self.assertEqual((sweep.retried, sweep.failed), (1, 1))
        entry = monitor.get_retry_queue()[0]
        self.assertEqual(entry.attempts, 2)
        self.assertEqual(entry.next_retry_at, self.clock.utcnow() + timedelta(minutes=30))

        self.clock.advance(minutes=30)
        monitor.process_retry_queue()
        self.assertEqual(monitor.get_retry_queue()[0].attempts, 3)

        self.clock.advance(minutes=60)
        final = monitor.process_retry_queue()
        self.assertEqual(len(final.permanently_failed), 1)
        self.assertIn('permanently failed after 4 attempts', final.permanently_failed[0].error)
        self.assertEqual(monitor.get_retry_queue(), [])

        alerts.failing.clear()
        follow_up = monitor.run_threshold_check()
        self.assertTrue(any('permanently failed' in error.error for error in follow_up.errors))
        self.assertEqual(follow_up.notifications_sent, 1)

    def test_successful_retry_removes_entry(self):
        alerts = FakeAlertService(failing={7})
        monitor = self.build(FakeMetricsProvider({7: 72.0}), alerts)
        monitor.run_threshold_check()

        alerts.failing.clear()
        self.clock.advance(minutes=15)
        sweep = monitor.process_retry_queue()

        self.assertEqual((sweep.retried, sweep.succeeded), (1, 1))
        self.assertEqual(monitor.get_status().retry_queue_size, 0)

    def test_repeat_scan_failure_does_not_reset_attempts(self):
        monitor = self.build(FakeMetricsProvider({7: 72.0}), FakeAlertService(failing={7}))
        monitor.run_threshold_check()
        self.clock.advance(minutes=15)
        monitor.process_retry_queue()
        monitor.run_threshold_check()

        entries = monitor.get_retry_queue()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].attempts, 2)

    def test_queue_status_and_clear(self):
        monitor = self.build(
            FakeMetricsProvider({1: 70.0, 2: 78.0, 3: 60.0}),
            FakeAlertService(failing={1, 2, 3}),
        )
        monitor.run_threshold_check()

        status = monitor.get_retry_queue_status()
        self.assertEqual(status.total_pending, 3)
        self.assertEqual(status.by_type, {'disqualified': 2, 'warning': 1})
        self.assertEqual(status.by_attempts, {1: 3})
        self.assertEqual(monitor.clear_retry_queue(), 3)
        self.assertEqual(monitor.get_retry_queue_status().total_pending, 0)

    def test_start_and_stop_register_jobs_once(self):
        monitor = self.build(FakeMetricsProvider({}), FakeAlertService())

        self.assertTrue(monitor.start())
        self.assertFalse(monitor.start())
        with self.assertRaises(InvalidStateError):
            monitor.start(strict=True)

        job_ids = [call.kwargs['id'] for call in self.scheduler.add_job.call_args_list]
        self.assertEqual(job_ids, [SCAN_JOB_ID, RETRY_JOB_ID])
        self.assertEqual(self.scheduler.add_job.call_args_list[0].args[1], 'cron')
        self.assertTrue(monitor.get_status().cron_job_active)

        self.scheduler.remove_job.side_effect = [None, JobLookupError(RETRY_JOB_ID)]
        self.assertTrue(monitor.stop())
        self.assertFalse(monitor.stop())
        self.assertFalse(monitor.get_status().cron_job_active)


if __name__ == '__main__':
    unittest.main()
