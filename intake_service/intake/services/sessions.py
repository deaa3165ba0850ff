"""
Durable, TTL'd storage for chat sessions.

All mutations are single UPDATE statements or short row-locked transactions,
so two concurrent requests never interleave a read and a write of the same
session row.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from intake.models import ChatSession, TranscriptEntry
from intake.services.normalization import strip_empty

logger = logging.getLogger(__name__)


class SessionNotFoundError(Exception):
    """Raised when a session does not exist or has expired."""
    pass


class SessionStore:
    def __init__(self, ttl: Optional[int] = None):
        self.ttl = ttl if ttl is not None else settings.CHAT_SESSION_TTL

    def _expiry(self):
        return timezone.now() + timedelta(seconds=self.ttl)

    def _live(self):
        return ChatSession.objects.filter(expires_at__gt=timezone.now())

    def get(self, session_id: str) -> Optional[ChatSession]:
        if not session_id:
            return None
        return self._live().filter(pk=session_id).first()

    def require(self, session_id: str) -> ChatSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found or expired")
        return session

    def create(self, ip_address: str = '', user_agent: str = '', session_id: Optional[str] = None,
               landing_page_url: str = '') -> ChatSession:
        """
        Create a session, or return the live one already stored under ``session_id``.

        An expired session with the same id is replaced.
        """
        session_id = session_id or uuid.uuid4().hex
        with transaction.atomic():
            ChatSession.objects.filter(pk=session_id, expires_at__lte=timezone.now()).delete()
            session, created = ChatSession.objects.get_or_create(
                session_id=session_id,
                defaults={
                    'ip_address': ip_address or '',
                    'user_agent': user_agent or '',
                    'landing_page_url': landing_page_url or '',
                    'expires_at': self._expiry(),
                },
            )
        if created:
            logger.info(f"Created chat session {session_id}")
        return session

    def update(self, session_id: str, **fields) -> Optional[ChatSession]:
        """Set the given fields and refresh the TTL; None when the session is gone."""
        fields['expires_at'] = self._expiry()
        fields['updated_at'] = timezone.now()
        if not self._live().filter(pk=session_id).update(**fields):
            return None
        return self.get(session_id)

    def transition(self, session_id: str, from_stage: str, to_stage: str, **fields) -> bool:
        """
        Move a session from ``from_stage`` to ``to_stage`` only if it is still in ``from_stage``.

        Returns False when another request changed the stage first.
        """
        fields.update(stage=to_stage, expires_at=self._expiry(), updated_at=timezone.now())
        return bool(self._live().filter(pk=session_id, stage=from_stage).update(**fields))

    def merge_answers(self, session_id: str, values: dict) -> Optional[ChatSession]:
        """Merge non-empty values into ``answers``; existing values are never blanked."""
        values = strip_empty(values)
        with transaction.atomic():
            session = self._live().select_for_update().filter(pk=session_id).first()
            if session is None:
                return None
            if values:
                session.answers = {**(session.answers or {}), **values}
            session.expires_at = self._expiry()
            session.save(update_fields=['answers', 'expires_at', 'updated_at'])
        if values:
            logger.debug(f"Session {session_id}: merged fields {sorted(values)}")
        return session

    def mark_asked(self, session_id: str, field: str) -> Optional[ChatSession]:
        """Record that ``field`` was asked; consecutive asks of the same field bump ``repeat_count``."""
        with transaction.atomic():
            session = self._live().select_for_update().filter(pk=session_id).first()
            if session is None:
                return None
            asked = list(session.asked_fields or [])
            if field not in asked:
                asked.append(field)
            session.repeat_count = session.repeat_count + 1 if session.last_asked_field == field else 0
            session.asked_fields = asked
            session.last_asked_field = field
            session.expires_at = self._expiry()
            session.save(update_fields=['asked_fields', 'last_asked_field', 'repeat_count', 'expires_at', 'updated_at'])
        return session

    def append_transcript(self, session_id: str, role: str, text: str,
                          metadata: Optional[dict] = None) -> TranscriptEntry:
        return TranscriptEntry.objects.create(
            session_id=session_id,
            role=role,
            text=text,
            metadata=metadata,
        )

    def reset(self, session_id: str) -> Optional[ChatSession]:
        """Return a session to INIT with no answers; transcript is kept."""
        session = self.update(
            session_id,
            stage=ChatSession.Stage.INIT,
            main_category=None,
            sub_category=None,
            answers={},
            asked_fields=[],
            last_asked_field=None,
            repeat_count=0,
            detection_attempts=0,
            lead_status=None,
            vendor_response=None,
        )
        if session is not None:
            logger.info(f"Session {session_id} reset to INIT")
        return session

    def purge_expired(self) -> int:
        _, per_model = ChatSession.objects.filter(expires_at__lte=timezone.now()).delete()
        purged = per_model.get(ChatSession._meta.label, 0)
        if purged:
            logger.info(f"Purged {purged} expired chat sessions")
        return purged
