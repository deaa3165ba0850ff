"""
Tests for the chat session store.
"""
from datetime import timedelta

import pytest
from django.utils import timezone

from intake.models import ChatSession, TranscriptEntry
from intake.services.sessions import SessionNotFoundError, SessionStore


def expire(session_id):
    ChatSession.objects.filter(pk=session_id).update(expires_at=timezone.now() - timedelta(seconds=1))


@pytest.mark.django_db
class TestCreateAndGet:
    """Tests for session creation and lookup."""

    def test_create_generates_id(self, store):
        session = store.create(ip_address='203.0.113.7', user_agent='pytest')
        assert len(session.session_id) == 32
        assert session.stage == ChatSession.Stage.INIT
        assert session.answers == {}
        assert session.ip_address == '203.0.113.7'

    def test_create_returns_existing_live_session(self, store):
        first = store.create(session_id='session-aaaa1111')
        store.merge_answers(first.session_id, {'first_name': 'Jane'})
        again = store.create(session_id='session-aaaa1111', ip_address='198.51.100.1')
        assert again.answers == {'first_name': 'Jane'}
        assert ChatSession.objects.count() == 1

    def test_create_replaces_expired_session(self, store):
        store.create(session_id='session-aaaa1111')
        store.merge_answers('session-aaaa1111', {'first_name': 'Jane'})
        expire('session-aaaa1111')
        fresh = store.create(session_id='session-aaaa1111')
        assert fresh.answers == {}

    def test_expired_session_is_invisible(self, store):
        store.create(session_id='session-aaaa1111')
        expire('session-aaaa1111')
        assert store.get('session-aaaa1111') is None
        with pytest.raises(SessionNotFoundError):
            store.require('session-aaaa1111')

    def test_get_without_id(self, store):
        assert store.get('') is None


@pytest.mark.django_db
class TestMutations:
    """Tests for update, transition and merge."""

    def test_update_refreshes_expiry(self, store):
        session = store.create(session_id='session-aaaa1111')
        ChatSession.objects.filter(pk=session.pk).update(expires_at=timezone.now() + timedelta(seconds=5))
        updated = store.update(session.pk, main_category='family_law')
        assert updated.main_category == 'family_law'
        assert updated.expires_at > timezone.now() + timedelta(seconds=3000)

    def test_update_missing_session(self, store):
        assert store.update('missing-session', main_category='family_law') is None

    def test_transition_is_compare_and_set(self, store):
        session = store.create(session_id='session-aaaa1111')
        assert store.transition(session.pk, 'INIT', 'CATEGORIZED', main_category='family_law') is True
        assert store.transition(session.pk, 'INIT', 'CATEGORIZED', main_category='criminal_law') is False
        assert store.get(session.pk).main_category == 'family_law'

    def test_merge_keeps_existing_values(self, store):
        session = store.create(session_id='session-aaaa1111')
        store.merge_answers(session.pk, {'first_name': 'Jane', 'phone': '(555) 123-4567'})
        merged = store.merge_answers(session.pk, {'first_name': '', 'phone': None, 'email': 'jane@example.com'})
        assert merged.answers == {
            'first_name': 'Jane',
            'phone': '(555) 123-4567',
            'email': 'jane@example.com',
        }

    def test_merge_overwrites_with_new_value(self, store):
        session = store.create(session_id='session-aaaa1111')
        store.merge_answers(session.pk, {'zip_code': '94102'})
        assert store.merge_answers(session.pk, {'zip_code': '10001'}).answers['zip_code'] == '10001'

    def test_merge_missing_session(self, store):
        assert store.merge_answers('missing-session', {'first_name': 'Jane'}) is None


@pytest.mark.django_db
class TestAskedFields:
    """Tests for question bookkeeping."""

    def test_repeat_count(self, store):
        session = store.create(session_id='session-aaaa1111')
        assert store.mark_asked(session.pk, 'phone').repeat_count == 0
        assert store.mark_asked(session.pk, 'phone').repeat_count == 1
        asked = store.mark_asked(session.pk, 'email')
        assert asked.repeat_count == 0
        assert asked.asked_fields == ['phone', 'email']
        assert asked.last_asked_field == 'email'


@pytest.mark.django_db
class TestResetAndPurge:
    """Tests for reset and expiry cleanup."""

    def test_reset_clears_state_but_keeps_transcript(self, store, ready_session):
        store.append_transcript(ready_session.pk, TranscriptEntry.Role.USER, 'hello')

        session = store.reset(ready_session.pk)

        assert session.stage == ChatSession.Stage.INIT
        assert session.answers == {}
        assert session.main_category is None
        assert session.asked_fields == []
        assert session.transcript.count() == 1

    def test_reset_missing_session(self, store):
        assert store.reset('missing-session') is None

    def test_purge_expired(self, store):
        store.create(session_id='session-live-0001')
        store.create(session_id='session-dead-0001')
        store.append_transcript('session-dead-0001', TranscriptEntry.Role.USER, 'hello')
        expire('session-dead-0001')

        assert store.purge_expired() == 1
        assert list(ChatSession.objects.values_list('session_id', flat=True)) == ['session-live-0001']
        assert TranscriptEntry.objects.count() == 0
