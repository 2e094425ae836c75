import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from campus_comms.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from campus_comms.core.time_provider import TimeProvider
from campus_comms.db import Base
from campus_comms.models import (
    BroadcastMessage,
    BroadcastRecipient,
    Conversation,
    ConversationParticipant,
    Message,
    MessageReadStatus,
    SchoolClass,
    Student,
    Teacher,
    UserRole,
)
from campus_comms.schemas import UserRef
from campus_comms.services import broadcast_service, conversation_service
import campus_comms.services.messaging_service as messaging_module


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


TEACHER = UserRef(id=10, role=UserRole.TEACHER, name='Ms. Rahimi')


def student_ref(student_id: int) -> UserRef:
    return UserRef(id=student_id, role=UserRole.STUDENT, name=f'Student {student_id}')


class BroadcastServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_broadcast_service.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)
        cls.clock = FixedTimeProvider(datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc))

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.db = self._session_factory()
        for model in (
            BroadcastRecipient,
            MessageReadStatus,
            Message,
            BroadcastMessage,
            ConversationParticipant,
            Conversation,
            Student,
            SchoolClass,
            Teacher,
        ):
            self.db.query(model).delete()
        self.db.add(Teacher(id=10, name='Ms. Rahimi', active=True))
        self.db.flush()
        self.db.add_all([SchoolClass(id=1, name='Grade 10-A', teacher_id=10), SchoolClass(id=2, name='Empty Class')])
        self.db.flush()
        self.db.add_all(
            [
                Student(id=101, name='Aria', class_id=1, status='active'),
                Student(id=102, name='Bahar', class_id=1, status='active'),
                Student(id=103, name='Cyrus', class_id=1, status='active'),
                Student(id=104, name='Dara', class_id=1, status='withdrawn'),
            ]
        )
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def test_students_cannot_broadcast(self):
        with self.assertRaises(PermissionDeniedError) as ctx:
            broadcast_service.broadcast_to_class(self.db, student_ref(101), 1, 'hi all')
        self.assertEqual(ctx.exception.message, 'Students cannot send broadcast messages')

    def test_unknown_and_empty_classes(self):
        with self.assertRaises(NotFoundError):
            broadcast_service.broadcast_to_class(self.db, TEACHER, 99, 'hi')
        with self.assertRaises(ValidationError):
            broadcast_service.broadcast_to_class(self.db, TEACHER, 2, 'hi')
        self.assertEqual(self.db.query(BroadcastMessage).count(), 0)

    def test_broadcast_delivers_to_every_active_student(self):
        result = broadcast_service.broadcast_to_class(self.db, TEACHER, 1, 'Exam on Monday', time_provider=self.clock)

        self.assertEqual(result.total_recipients, 3)
        self.assertEqual(result.delivered_count, 3)
        parent = self.db.get(BroadcastMessage, result.broadcast_id)
        self.assertEqual(parent.class_name, 'Grade 10-A')
        self.assertEqual(parent.read_count, 0)
        recipients = self.db.query(BroadcastRecipient).filter_by(broadcast_id=result.broadcast_id).all()
        self.assertEqual(sorted(row.student_id for row in recipients), [101, 102, 103])
        self.assertTrue(all(row.delivered and row.message_id for row in recipients))
        inbox = self.db.query(Message).filter_by(broadcast_id=result.broadcast_id).all()
        self.assertEqual(len(inbox), 3)
        self.assertEqual(len({row.conversation_id for row in inbox}), 3)

    def test_failed_inbox_write_is_not_counted_as_delivered(self):
        original = messaging_module.create_message

        def flaky_create_message(db, sender, conversation_id, content, **kwargs):
            participant = conversation_service.get_other_participant(db, conversation_id, sender)
            if participant is not None and participant.user_id == 102:
                raise NotFoundError('Conversation not found')
            return original(db, sender, conversation_id, content, **kwargs)

        messaging_module.create_message = flaky_create_message
        try:
            result = broadcast_service.broadcast_to_class(self.db, TEACHER, 1, 'Trip form due', time_provider=self.clock)
        finally:
            messaging_module.create_message = original

        self.assertEqual(result.total_recipients, 3)
        self.assertEqual(result.delivered_count, 2)
        missed = self.db.query(BroadcastRecipient).filter_by(broadcast_id=result.broadcast_id, student_id=102).one()
        self.assertFalse(missed.delivered)
        self.assertIsNone(missed.message_id)

    def test_read_count_tracks_recipients_opening_the_message(self):
        result = broadcast_service.broadcast_to_class(self.db, TEACHER, 1, 'Bring calculators', time_provider=self.clock)
        delivered = self.db.query(Message).filter_by(broadcast_id=result.broadcast_id).all()
        by_student = {}
        for message in delivered:
            other = conversation_service.get_other_participant(self.db, message.conversation_id, TEACHER)
            by_student[other.user_id] = message.conversation_id

        conversation_service.mark_read(self.db, by_student[101], student_ref(101), time_provider=self.clock)
        conversation_service.mark_read(self.db, by_student[101], student_ref(101), time_provider=self.clock)
        self.assertTrue(broadcast_service.mark_broadcast_read(self.db, result.broadcast_id, student_ref(102), time_provider=self.clock))
        self.assertFalse(broadcast_service.mark_broadcast_read(self.db, result.broadcast_id, student_ref(102), time_provider=self.clock))

        stats = broadcast_service.get_broadcast_stats(self.db, result.broadcast_id, TEACHER)
        self.assertEqual(stats.read_count, 2)
        self.assertEqual(stats.delivered_count, 3)
        rows = self.db.query(BroadcastRecipient).filter_by(broadcast_id=result.broadcast_id).all()
        self.assertEqual(stats.read_count, sum(1 for row in rows if row.read))

    def test_marking_a_broadcast_read_clears_the_inbox_copy(self):
        result = broadcast_service.broadcast_to_class(self.db, TEACHER, 1, 'Lab coats tomorrow', time_provider=self.clock)
        recipient = self.db.query(BroadcastRecipient).filter_by(broadcast_id=result.broadcast_id, student_id=103).one()
        message = self.db.get(Message, recipient.message_id)
        participant = conversation_service.require_participant(self.db, message.conversation_id, student_ref(103))
        self.assertEqual(participant.unread_count, 1)

        self.assertTrue(broadcast_service.mark_broadcast_read(self.db, result.broadcast_id, student_ref(103), time_provider=self.clock))

        self.db.refresh(participant)
        self.assertEqual(participant.unread_count, 0)
        self.assertEqual(
            conversation_service.read_message_ids(self.db, [message.id], student_ref(103)),
            {message.id},
        )
        self.assertEqual(broadcast_service.get_broadcast_stats(self.db, result.broadcast_id, TEACHER).read_count, 1)

    def test_history_and_stats_are_sender_scoped(self):
        result = broadcast_service.broadcast_to_class(self.db, TEACHER, 1, 'Reminder', time_provider=self.clock)
        other_teacher = UserRef(id=11, role=UserRole.TEACHER, name='Mr. Karimi')

        self.assertEqual([row.id for row in broadcast_service.get_broadcast_history(self.db, TEACHER)], [result.broadcast_id])
        self.assertEqual(broadcast_service.get_broadcast_history(self.db, other_teacher), [])
        with self.assertRaises(NotFoundError):
            broadcast_service.get_broadcast_stats(self.db, result.broadcast_id, other_teacher)
        with self.assertRaises(PermissionDeniedError):
            broadcast_service.get_broadcast_history(self.db, student_ref(101))


if __name__ == '__main__':
    unittest.main()
