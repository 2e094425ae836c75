import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from freezegun import freeze_time
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from campus_comms.core.errors import InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError
from campus_comms.core.time_provider import TimeProvider
from campus_comms.db import Base
from campus_comms.models import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageReadStatus,
    ScheduledMessage,
    ScheduledMessageStatus,
    Student,
    Teacher,
    UserRole,
)
from campus_comms.schemas import MessageDraft, ScheduleMessageRequest, UserRef
from campus_comms.services import conversation_service, messaging_service, scheduled_message_service


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


TEACHER = UserRef(id=10, role=UserRole.TEACHER, name='Ms. Rahimi')
STUDENT = UserRef(id=101, role=UserRole.STUDENT, name='Aria')
FROZEN = datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc)


def request_for(recipient_id: int, role: UserRole, when: datetime, content: str = 'Quiz tomorrow') -> ScheduleMessageRequest:
    return ScheduleMessageRequest(
        recipient_id=recipient_id,
        recipient_role=role,
        draft=MessageDraft(content=content),
        scheduled_for=when,
    )


class ScheduledMessageTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_scheduled_messages.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)
        cls.before = FixedTimeProvider(FROZEN)
        cls.after = FixedTimeProvider(FROZEN + timedelta(hours=2))

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.db = self._session_factory()
        for model in (
            ScheduledMessage,
            MessageReadStatus,
            Message,
            ConversationParticipant,
            Conversation,
            Student,
            Teacher,
        ):
            self.db.query(model).delete()
        self.db.add(Teacher(id=10, name='Ms. Rahimi', active=True))
        self.db.add(Student(id=101, name='Aria', status='active'))
        self.db.add(Student(id=102, name='Bahar', status='active'))
        self.db.commit()

    def tearDown(self):
        self.db.close()

    @freeze_time('2026-10-16 09:00:00')
    def test_past_or_present_time_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            scheduled_message_service.schedule_message(
                self.db, TEACHER, request_for(101, UserRole.STUDENT, datetime(2026, 10, 16, 8, 59, tzinfo=timezone.utc))
            )
        self.assertEqual(ctx.exception.message, 'Scheduled time must be in the future')
        with self.assertRaises(ValidationError):
            scheduled_message_service.schedule_message(
                self.db, TEACHER, request_for(101, UserRole.STUDENT, datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc))
            )
        self.assertEqual(self.db.query(ScheduledMessage).count(), 0)

    def test_schedule_respects_permission_matrix(self):
        with self.assertRaises(PermissionDeniedError):
            scheduled_message_service.schedule_message(
                self.db,
                STUDENT,
                request_for(20, UserRole.OFFICE, FROZEN + timedelta(hours=1)),
                time_provider=self.before,
            )

    def test_aware_time_is_stored_as_naive_utc(self):
        tehran = timezone(timedelta(hours=3, minutes=30))
        out = scheduled_message_service.schedule_message(
            self.db,
            TEACHER,
            request_for(101, UserRole.STUDENT, datetime(2026, 10, 16, 14, 0, tzinfo=tehran)),
            time_provider=self.before,
        )
        self.assertEqual(out.status, ScheduledMessageStatus.PENDING)
        self.assertEqual(out.scheduled_for, datetime(2026, 10, 16, 10, 30))

    def test_cancel_is_owner_only_and_once(self):
        out = scheduled_message_service.schedule_message(
            self.db, TEACHER, request_for(101, UserRole.STUDENT, FROZEN + timedelta(hours=1)), time_provider=self.before
        )
        stranger = UserRef(id=11, role=UserRole.TEACHER, name='Mr. Karimi')
        with self.assertRaises(NotFoundError):
            scheduled_message_service.cancel_scheduled_message(self.db, out.id, stranger)

        cancelled = scheduled_message_service.cancel_scheduled_message(self.db, out.id, TEACHER, time_provider=self.before)
        self.assertEqual(cancelled.status, ScheduledMessageStatus.CANCELLED)
        with self.assertRaises(InvalidStateError):
            scheduled_message_service.cancel_scheduled_message(self.db, out.id, TEACHER, time_provider=self.before)

    def test_dispatch_sends_due_messages_once(self):
        due = scheduled_message_service.schedule_message(
            self.db, TEACHER, request_for(101, UserRole.STUDENT, FROZEN + timedelta(hours=1)), time_provider=self.before
        )
        later = scheduled_message_service.schedule_message(
            self.db,
            TEACHER,
            request_for(101, UserRole.STUDENT, FROZEN + timedelta(days=1), content='Next week'),
            time_provider=self.before,
        )

        summary = scheduled_message_service.dispatch_due_scheduled_messages(self.db, time_provider=self.after)
        self.assertEqual(summary, {'due': 1, 'sent': 1, 'skipped': 0, 'failed': 0})

        row = self.db.get(ScheduledMessage, due.id)
        self.assertEqual(row.status, ScheduledMessageStatus.SENT.value)
        message = self.db.get(Message, row.sent_message_id)
        self.assertEqual(message.content, 'Quiz tomorrow')
        self.assertEqual(message.conversation_id, row.conversation_id)
        self.assertEqual(self.db.get(ScheduledMessage, later.id).status, ScheduledMessageStatus.PENDING.value)

        again = scheduled_message_service.dispatch_due_scheduled_messages(self.db, time_provider=self.after)
        self.assertEqual(again['sent'], 0)
        self.assertEqual(self.db.query(Message).count(), 1)
        with self.assertRaises(InvalidStateError):
            scheduled_message_service.cancel_scheduled_message(self.db, due.id, TEACHER, time_provider=self.after)

    def test_cancel_during_dispatch_discards_the_send(self):
        out = scheduled_message_service.schedule_message(
            self.db, TEACHER, request_for(101, UserRole.STUDENT, FROZEN + timedelta(hours=1)), time_provider=self.before
        )
        original_send = messaging_service.send_message
        session_factory = self._session_factory

        def cancel_then_send(db, sender, payload, files=None, **kwargs):
            other = session_factory()
            try:
                scheduled_message_service.cancel_scheduled_message(other, out.id, TEACHER, time_provider=self.after)
            finally:
                other.close()
            return original_send(db, sender, payload, files, **kwargs)

        messaging_service.send_message = cancel_then_send
        try:
            summary = scheduled_message_service.dispatch_due_scheduled_messages(self.db, time_provider=self.after)
        finally:
            messaging_service.send_message = original_send

        self.assertEqual(summary['sent'], 0)
        self.assertEqual(summary['skipped'], 1)
        self.assertEqual(self.db.query(Message).count(), 0)
        row = self.db.get(ScheduledMessage, out.id)
        self.assertEqual(row.status, ScheduledMessageStatus.CANCELLED.value)
        self.assertIsNone(row.sent_message_id)

    def test_unknown_recipient_is_rejected_when_scheduling(self):
        with self.assertRaises(NotFoundError) as ctx:
            scheduled_message_service.schedule_message(
                self.db, TEACHER, request_for(999, UserRole.STUDENT, FROZEN + timedelta(hours=1)), time_provider=self.before
            )
        self.assertEqual(ctx.exception.message, 'User not found')
        self.assertEqual(self.db.query(ScheduledMessage).count(), 0)

    def test_recipient_must_belong_to_the_given_conversation(self):
        conversation_id = conversation_service.get_or_create_conversation(
            self.db, TEACHER, STUDENT, time_provider=self.before
        )
        request = request_for(102, UserRole.STUDENT, FROZEN + timedelta(hours=1))
        request.conversation_id = conversation_id

        with self.assertRaises(ValidationError) as ctx:
            scheduled_message_service.schedule_message(self.db, TEACHER, request, time_provider=self.before)
        self.assertEqual(ctx.exception.message, 'Recipient does not belong to this conversation')
        self.assertEqual(self.db.query(ScheduledMessage).count(), 0)

        request.recipient_id = 101
        out = scheduled_message_service.schedule_message(self.db, TEACHER, request, time_provider=self.before)
        self.assertEqual(out.conversation_id, conversation_id)

    def test_failed_dispatch_stays_pending_with_error(self):
        out = scheduled_message_service.schedule_message(
            self.db, TEACHER, request_for(102, UserRole.STUDENT, FROZEN + timedelta(hours=1)), time_provider=self.before
        )
        self.db.query(Student).filter(Student.id == 102).delete()
        self.db.commit()

        summary = scheduled_message_service.dispatch_due_scheduled_messages(self.db, time_provider=self.after)

        self.assertEqual(summary['failed'], 1)
        row = self.db.get(ScheduledMessage, out.id)
        self.assertEqual(row.status, ScheduledMessageStatus.PENDING.value)
        self.assertEqual(row.last_error, 'User not found')

    def test_list_is_sender_scoped_and_filterable(self):
        first = scheduled_message_service.schedule_message(
            self.db, TEACHER, request_for(101, UserRole.STUDENT, FROZEN + timedelta(hours=3)), time_provider=self.before
        )
        scheduled_message_service.schedule_message(
            self.db, TEACHER, request_for(101, UserRole.STUDENT, FROZEN + timedelta(hours=1)), time_provider=self.before
        )
        scheduled_message_service.cancel_scheduled_message(self.db, first.id, TEACHER, time_provider=self.before)

        everything = scheduled_message_service.list_scheduled_messages(self.db, TEACHER)
        pending = scheduled_message_service.list_scheduled_messages(
            self.db, TEACHER, status=ScheduledMessageStatus.PENDING
        )

        self.assertEqual(len(everything), 2)
        self.assertLess(everything[0].scheduled_for, everything[1].scheduled_for)
        self.assertEqual(len(pending), 1)
        self.assertEqual(scheduled_message_service.list_scheduled_messages(self.db, STUDENT), [])


if __name__ == '__main__':
    unittest.main()
