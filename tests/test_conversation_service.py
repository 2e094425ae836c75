import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from campus_comms.core.errors import NotFoundError, PermissionDeniedError
from campus_comms.core.time_provider import TimeProvider
from campus_comms.db import Base
from campus_comms.models import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageReadStatus,
    UserRole,
)
from campus_comms.schemas import UserRef
from campus_comms.services import conversation_service
from campus_comms.services.messaging_service import create_message


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


STUDENT = UserRef(id=101, role=UserRole.STUDENT, name='Aria')
TEACHER = UserRef(id=10, role=UserRole.TEACHER, name='Ms. Rahimi')
OFFICE = UserRef(id=20, role=UserRole.OFFICE, name='Registrar')


class ConversationServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_conversation_service.db'
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
        self.db.query(MessageReadStatus).delete()
        self.db.query(Message).delete()
        self.db.query(ConversationParticipant).delete()
        self.db.query(Conversation).delete()
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def test_get_or_create_is_order_independent(self):
        first = conversation_service.get_or_create_conversation(self.db, STUDENT, TEACHER, time_provider=self.clock)
        second = conversation_service.get_or_create_conversation(self.db, TEACHER, STUDENT, time_provider=self.clock)

        self.assertEqual(first, second)
        self.assertEqual(self.db.query(Conversation).count(), 1)
        participants = self.db.query(ConversationParticipant).filter_by(conversation_id=first).all()
        self.assertEqual({(p.user_id, p.user_role) for p in participants}, {(101, 'student'), (10, 'teacher')})
        self.assertTrue(all(p.unread_count == 0 for p in participants))

    def test_losing_pair_race_returns_winner(self):
        winner = conversation_service.get_or_create_conversation(self.db, STUDENT, TEACHER, time_provider=self.clock)

        original_find = conversation_service._find_existing
        calls = {'count': 0}

        def stale_then_real(db, user_a, user_b):
            calls['count'] += 1
            if calls['count'] == 1:
                return None
            return original_find(db, user_a, user_b)

        conversation_service._find_existing = stale_then_real
        try:
            result = conversation_service.get_or_create_conversation(self.db, TEACHER, STUDENT, time_provider=self.clock)
        finally:
            conversation_service._find_existing = original_find

        self.assertEqual(result, winner)
        self.assertEqual(self.db.query(Conversation).count(), 1)
        self.assertEqual(self.db.query(ConversationParticipant).count(), 2)

    def test_distinct_pairs_get_distinct_conversations(self):
        a = conversation_service.get_or_create_conversation(self.db, TEACHER, STUDENT, time_provider=self.clock)
        b = conversation_service.get_or_create_conversation(self.db, TEACHER, OFFICE, time_provider=self.clock)
        self.assertNotEqual(a, b)

    def test_send_updates_preview_and_unread_for_other_side_only(self):
        conversation_id = conversation_service.get_or_create_conversation(self.db, STUDENT, TEACHER, time_provider=self.clock)
        long_text = 'Please review the attached absence note ' * 10
        create_message(self.db, STUDENT, conversation_id, long_text, time_provider=self.clock)

        conversation = self.db.get(Conversation, conversation_id)
        self.assertEqual(conversation.last_message_at, datetime(2026, 10, 16, 9, 0))
        self.assertTrue(conversation.last_message_preview.endswith('...'))
        self.assertLessEqual(len(conversation.last_message_preview), 103)

        teacher_row = conversation_service.get_participant(self.db, conversation_id, TEACHER)
        student_row = conversation_service.get_participant(self.db, conversation_id, STUDENT)
        self.assertEqual(teacher_row.unread_count, 1)
        self.assertEqual(student_row.unread_count, 0)

    def test_mark_read_is_idempotent(self):
        conversation_id = conversation_service.get_or_create_conversation(self.db, STUDENT, TEACHER, time_provider=self.clock)
        create_message(self.db, STUDENT, conversation_id, 'one', time_provider=self.clock)
        create_message(self.db, STUDENT, conversation_id, 'two', time_provider=self.clock)
        create_message(self.db, TEACHER, conversation_id, 'reply', time_provider=self.clock)

        first = conversation_service.mark_read(self.db, conversation_id, TEACHER, time_provider=self.clock)
        second = conversation_service.mark_read(self.db, conversation_id, TEACHER, time_provider=self.clock)

        self.assertEqual(first, 2)
        self.assertEqual(second, 0)
        rows = self.db.query(MessageReadStatus).filter_by(user_id=10, user_role='teacher').all()
        self.assertEqual(len(rows), 2)
        self.assertEqual(conversation_service.get_participant(self.db, conversation_id, TEACHER).unread_count, 0)
        self.assertEqual(conversation_service.get_participant(self.db, conversation_id, STUDENT).unread_count, 1)

    def test_outsider_cannot_read_or_mark(self):
        conversation_id = conversation_service.get_or_create_conversation(self.db, STUDENT, TEACHER, time_provider=self.clock)
        with self.assertRaises(PermissionDeniedError):
            conversation_service.get_messages(self.db, conversation_id, OFFICE)
        with self.assertRaises(PermissionDeniedError):
            conversation_service.mark_read(self.db, conversation_id, OFFICE)
        with self.assertRaises(NotFoundError):
            conversation_service.get_messages(self.db, 9999, TEACHER)

    def test_list_conversations_hides_archived_by_default(self):
        first = conversation_service.get_or_create_conversation(self.db, TEACHER, STUDENT, time_provider=self.clock)
        conversation_service.get_or_create_conversation(self.db, TEACHER, OFFICE, time_provider=self.clock)
        conversation_service.set_archived(self.db, first, TEACHER, True)

        visible = conversation_service.list_conversations(self.db, TEACHER)
        everything = conversation_service.list_conversations(self.db, TEACHER, include_archived=True)

        self.assertEqual([row.other_participant.role for row in visible], ['office'])
        self.assertEqual(len(everything), 2)

    def test_new_message_unarchives_conversation(self):
        conversation_id = conversation_service.get_or_create_conversation(self.db, TEACHER, STUDENT, time_provider=self.clock)
        conversation_service.set_archived(self.db, conversation_id, TEACHER, True)
        create_message(self.db, STUDENT, conversation_id, 'hello again', time_provider=self.clock)
        self.assertFalse(self.db.get(Conversation, conversation_id).is_archived)

    def test_mute_is_per_participant(self):
        conversation_id = conversation_service.get_or_create_conversation(self.db, TEACHER, STUDENT, time_provider=self.clock)
        conversation_service.set_muted(self.db, conversation_id, STUDENT, True)
        self.assertTrue(conversation_service.get_participant(self.db, conversation_id, STUDENT).is_muted)
        self.assertFalse(conversation_service.get_participant(self.db, conversation_id, TEACHER).is_muted)

    def test_only_sender_can_soft_delete(self):
        conversation_id = conversation_service.get_or_create_conversation(self.db, TEACHER, STUDENT, time_provider=self.clock)
        message = create_message(self.db, STUDENT, conversation_id, 'oops', time_provider=self.clock)

        with self.assertRaises(PermissionDeniedError):
            conversation_service.delete_message(self.db, message.id, TEACHER)
        conversation_service.delete_message(self.db, message.id, STUDENT, time_provider=self.clock)

        self.assertTrue(self.db.get(Message, message.id).is_deleted)
        self.assertEqual(conversation_service.get_messages(self.db, conversation_id, TEACHER), [])
        with self.assertRaises(NotFoundError):
            conversation_service.delete_message(self.db, message.id, STUDENT)


if __name__ == '__main__':
    unittest.main()
