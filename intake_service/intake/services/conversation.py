"""
Conversation state machine for the intake chat.

Stages only move forward::

    INIT -> CATEGORIZED -> COLLECTING -> READY_TO_SUBMIT -> SUBMITTED

``reset`` is the only way back to INIT. The practice area is detected once,
on the first message, and frozen for the rest of the conversation.
"""
import logging
from typing import NamedTuple, Optional

from django.conf import settings
from django.db import transaction

from intake.models import ChatSession, LeadJob, TranscriptEntry
from intake.services.category_detection import DEFAULT_SUBCATEGORY, CategoryDetector
from intake.services.extraction import FieldExtractor
from intake.services.lead_queue import LeadQueue
from intake.services.mapping import build_lead_data
from intake.services.normalization import normalize_yes_no, strip_empty
from intake.services.schema_registry import PracticeAreaRegistry
from intake.services.sessions import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

Stage = ChatSession.Stage

STAGE_ORDER = (
    Stage.INIT,
    Stage.CATEGORIZED,
    Stage.COLLECTING,
    Stage.READY_TO_SUBMIT,
    Stage.SUBMITTED,
)

COMPLIANCE_FIELDS = ('jornaya_leadid', 'trustedform_cert_url', 'tcpa_text')

GREETING = (
    "I'm here to help you find the right attorney for your legal needs. "
    "What legal issue can I help you with today?"
)
CATEGORY_PROMPT = (
    "I'd be happy to help you find legal assistance. "
    "Can you tell me what type of legal issue you're facing?"
)
EMPTY_MESSAGE_REPLY = "I didn't catch that. Could you tell me a little more?"
DECLINED_REPLY = (
    "No problem. Your information has not been shared. "
    "If you change your mind, just let me know and I'll submit it."
)
SUBMITTED_REPLY = (
    "Thank you! Your information has been submitted. "
    "A qualified attorney from our network will be in touch with you soon."
)
STATUS_REPLIES = {
    ChatSession.LeadStatus.QUEUED: (
        "Your information has been submitted and is being sent to attorneys in your area."
    ),
    ChatSession.LeadStatus.SENT: (
        "Your information has been sent to attorneys in your area. One of them will contact you shortly."
    ),
    ChatSession.LeadStatus.FAILED: (
        "We had trouble sending your information to attorneys. Our team has been notified and will follow up."
    ),
}


class InvalidStageTransition(Exception):
    """Raised for a stage change that skips or reverses the intake funnel."""
    pass


def successor(stage: str) -> Optional[str]:
    """The stage that follows ``stage``; None for SUBMITTED."""
    index = STAGE_ORDER.index(stage)
    return STAGE_ORDER[index + 1] if index + 1 < len(STAGE_ORDER) else None


def check_transition(from_stage: str, to_stage: str) -> None:
    if to_stage == Stage.INIT:
        return
    if successor(from_stage) != to_stage:
        raise InvalidStageTransition(f"Cannot move from {from_stage} to {to_stage}")


class ChatReply(NamedTuple):
    session_id: str
    reply: str
    stage: str
    current_field: Optional[str] = None
    has_error: bool = False
    validation_method: Optional[str] = None
    ready_to_submit: bool = False
    job_id: Optional[str] = None
    lead_status: Optional[str] = None
    answers: Optional[dict] = None

    def as_dict(self) -> dict:
        data = self._asdict()
        data['answers'] = dict(self.answers or {})
        return data


class ConversationService:
    """
    Drives one chat message through the intake funnel.

    All collaborators are injected; ``build_conversation_service()`` wires the
    production ones.
    """

    def __init__(self, registry: PracticeAreaRegistry, store: SessionStore, queue: LeadQueue,
                 extractor: FieldExtractor, detector: CategoryDetector,
                 default_category: Optional[str] = None, fallback_after: Optional[int] = None):
        self.registry = registry
        self.store = store
        self.queue = queue
        self.extractor = extractor
        self.detector = detector
        self.default_category = default_category or registry.default_category
        self.fallback_after = fallback_after if fallback_after is not None else settings.INTAKE_CATEGORY_FALLBACK_AFTER

    # Entry points

    def handle_message(self, session_id: Optional[str], message: str, ip_address: str = '',
                       user_agent: str = '', landing_page_url: str = '',
                       compliance: Optional[dict] = None) -> ChatReply:
        session = self.store.create(
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
            landing_page_url=landing_page_url,
        )
        session_id = session.session_id
        text = (message or '').strip()

        tokens = self._compliance_tokens(compliance)
        if tokens:
            session = self.store.merge_answers(session_id, tokens) or session

        if not text:
            return self._respond(session, ChatReply(session_id, EMPTY_MESSAGE_REPLY, session.stage, has_error=True))

        self.store.append_transcript(session_id, TranscriptEntry.Role.USER, text)
        logger.info(f"Session {session_id}: message in stage {session.stage}")

        if session.stage == Stage.INIT:
            reply = self._handle_init(session, text)
        elif session.stage in (Stage.CATEGORIZED, Stage.COLLECTING):
            reply = self._handle_collecting(session, text)
        elif session.stage == Stage.READY_TO_SUBMIT:
            reply = self._handle_consent(session, text)
        else:
            reply = self._status_reply(session)
        return self._respond(self.store.get(session_id) or session, reply)

    def submit(self, session_id: str, server_data: Optional[dict] = None,
               compliance: Optional[dict] = None) -> ChatReply:
        """Explicit submit action; only valid once every required field is collected."""
        session = self.store.require(session_id)
        tokens = self._compliance_tokens(compliance)
        if tokens:
            session = self.store.merge_answers(session_id, tokens) or session

        if session.stage == Stage.SUBMITTED:
            return self._status_reply(session)
        if session.stage != Stage.READY_TO_SUBMIT:
            missing = self.registry.get_missing_fields(session.main_category, session.answers)
            raise InvalidStageTransition(
                f"Session {session_id} is {session.stage}; missing fields: {', '.join(missing) or 'category'}"
            )
        reply = self._submit(session, server_data)
        return self._respond(self.store.get(session_id) or session, reply)

    def reset(self, session_id: str) -> ChatReply:
        session = self.store.reset(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found or expired")
        self.store.append_transcript(session_id, TranscriptEntry.Role.SYSTEM, "Conversation reset")
        return self._respond(session, ChatReply(session_id, GREETING, Stage.INIT))

    def status(self, session_id: str) -> dict:
        session = self.store.require(session_id)
        job = LeadJob.objects.filter(session_id=session_id).order_by('-created_at', '-id').first()
        return {
            'session_id': session_id,
            'stage': session.stage,
            'main_category': session.main_category,
            'sub_category': session.sub_category,
            'lead_status': session.lead_status,
            'missing_fields': self.registry.get_missing_fields(session.main_category, session.answers),
            'job': {
                'job_id': job.job_id,
                'status': job.status,
                'attempts': job.attempts,
                'error': job.error,
            } if job else None,
        }

    # Stage handlers

    def _handle_init(self, session: ChatSession, text: str) -> ChatReply:
        session_id = session.session_id
        match = self.detector.detect(text)
        category, sub_category, method = match.category, match.sub_category, match.method
        attempts = session.detection_attempts + 1

        if not category and attempts >= self.fallback_after and self.registry.has_category(self.default_category):
            category, sub_category, method = self.default_category, DEFAULT_SUBCATEGORY, 'fallback'
            logger.info(f"Session {session_id}: no category after {attempts} messages, using {category}")

        if not category:
            self.store.update(session_id, detection_attempts=attempts)
            return ChatReply(session_id, CATEGORY_PROMPT, Stage.INIT, validation_method=method or 'no_match')

        check_transition(Stage.INIT, Stage.CATEGORIZED)
        moved = self.store.transition(
            session_id, Stage.INIT, Stage.CATEGORIZED,
            main_category=category,
            sub_category=sub_category,
            detection_attempts=attempts,
        )
        if not moved:
            logger.warning(f"Session {session_id}: categorized by a concurrent request")
            return self._ask_next(self.store.require(session_id), method)
        logger.info(f"Session {session_id}: INIT -> CATEGORIZED ({category} / {sub_category}, {method})")

        describe_spec = self.registry.get_field(category, 'describe')
        describe = text[:describe_spec.max_length] if describe_spec and describe_spec.max_length else text
        session = self.store.merge_answers(session_id, {'describe': describe, 'sub_category': sub_category})

        result = self.extractor.extract(text, None, session.answers, category)
        if result.kind != 'error' and result.values:
            logger.info(f"Session {session_id}: first message yielded {sorted(result.values)} ({result.method})")
            session = self.store.merge_answers(session_id, result.values)
        return self._ask_next(session, method)

    def _handle_collecting(self, session: ChatSession, text: str) -> ChatReply:
        session_id = session.session_id
        category = session.main_category
        answers = session.answers or {}
        target = self.registry.get_next_missing_field(category, answers)
        if target is None:
            return self._ask_next(session, None)

        result = self.extractor.extract(
            text, target, answers, category,
            candidate_fields=self.registry.get_missing_fields(category, answers),
        )
        if result.kind == 'error':
            logger.info(f"Session {session_id}: {target} not accepted ({result.method})")
            return ChatReply(
                session_id, result.message, session.stage,
                current_field=target,
                has_error=True,
                validation_method=result.method,
            )

        if result.values:
            logger.info(f"Session {session_id}: extracted {sorted(result.values)} ({result.method})")
            session = self.store.merge_answers(session_id, result.values)

        if result.kind == 'followUp':
            session = self._advance(session, Stage.COLLECTING)
            next_field = self.registry.get_next_missing_field(category, session.answers)
            self._mark_asked(session, next_field)
            return ChatReply(session_id, result.question, session.stage,
                             current_field=next_field, validation_method=result.method)
        return self._ask_next(session, result.method)

    def _handle_consent(self, session: ChatSession, text: str) -> ChatReply:
        answer = normalize_yes_no(text)
        if answer == 'yes':
            return self._submit(session, None)
        if answer == 'no':
            logger.info(f"Session {session.session_id}: submission declined")
            return ChatReply(session.session_id, DECLINED_REPLY, session.stage,
                             ready_to_submit=True, validation_method='consent')
        return ChatReply(session.session_id, self._completion_question(session), session.stage,
                         ready_to_submit=True, validation_method='consent')

    def _status_reply(self, session: ChatSession) -> ChatReply:
        job = LeadJob.objects.filter(session_id=session.session_id).order_by('-created_at', '-id').first()
        reply = STATUS_REPLIES.get(session.lead_status, SUBMITTED_REPLY)
        return ChatReply(session.session_id, reply, session.stage,
                         job_id=job.job_id if job else None, lead_status=session.lead_status)

    # Helpers

    def _ask_next(self, session: ChatSession, method: Optional[str]) -> ChatReply:
        category = session.main_category
        answers = session.answers or {}
        next_field = self.registry.get_next_missing_field(category, answers)

        if next_field is None:
            session = self._advance(session, Stage.READY_TO_SUBMIT)
            return ChatReply(session.session_id, self._completion_question(session), session.stage,
                             validation_method=method, ready_to_submit=True)

        session = self._advance(session, Stage.COLLECTING)
        self._mark_asked(session, next_field)
        question = self.registry.get_question_template(category, next_field, answers)
        return ChatReply(session.session_id, question, session.stage,
                         current_field=next_field, validation_method=method)

    def _mark_asked(self, session: ChatSession, field: Optional[str]) -> None:
        if not field:
            return
        updated = self.store.mark_asked(session.session_id, field)
        if updated is not None and updated.repeat_count:
            logger.warning(
                f"Session {session.session_id}: asking {field} again without new information "
                f"(repeat {updated.repeat_count})"
            )

    def _advance(self, session: ChatSession, target: str) -> ChatSession:
        """Step forward one stage at a time until ``target`` is reached."""
        current = session.stage
        while STAGE_ORDER.index(current) < STAGE_ORDER.index(target):
            following = successor(current)
            check_transition(current, following)
            if self.store.transition(session.session_id, current, following):
                logger.info(f"Session {session.session_id}: {current} -> {following}")
            else:
                logger.warning(f"Session {session.session_id}: stage changed concurrently, expected {current}")
            refreshed = self.store.require(session.session_id)
            if refreshed.stage == current:
                break
            session, current = refreshed, refreshed.stage
        return session

    def _completion_question(self, session: ChatSession) -> str:
        answers = session.answers or {}
        first_name = answers.get('first_name')
        name_prefix = f"{first_name}, " if first_name else ''
        area = self.registry.display_name(session.main_category)
        return (
            f"Excellent! {name_prefix}I have all the information I need to connect you with qualified "
            f"{area} attorneys in your area. Would you like me to submit your information?"
        )

    def _submit(self, session: ChatSession, server_data: Optional[dict]) -> ChatReply:
        session_id = session.session_id
        server = {
            'ip_address': session.ip_address,
            'user_agent': session.user_agent,
            'landing_page_url': session.landing_page_url,
        }
        server.update(strip_empty(server_data or {}))
        lead_data = build_lead_data(session.main_category, session.answers or {}, server, self.registry)

        check_transition(Stage.READY_TO_SUBMIT, Stage.SUBMITTED)
        with transaction.atomic():
            moved = self.store.transition(
                session_id, Stage.READY_TO_SUBMIT, Stage.SUBMITTED,
                lead_status=ChatSession.LeadStatus.QUEUED,
            )
            if not moved:
                logger.warning(f"Session {session_id}: already submitted by a concurrent request")
                return self._status_reply(self.store.require(session_id))
            job_id = self.queue.enqueue(session_id, lead_data, session.main_category)
            self.store.append_transcript(
                session_id, TranscriptEntry.Role.SYSTEM, "Lead queued for delivery", metadata={'job_id': job_id}
            )

        logger.info(f"Session {session_id}: READY_TO_SUBMIT -> SUBMITTED, {job_id}")
        return ChatReply(session_id, SUBMITTED_REPLY, Stage.SUBMITTED,
                         validation_method='consent', job_id=job_id,
                         lead_status=ChatSession.LeadStatus.QUEUED)

    @staticmethod
    def _compliance_tokens(compliance: Optional[dict]) -> dict:
        if not compliance:
            return {}
        return strip_empty({key: compliance.get(key) for key in COMPLIANCE_FIELDS})

    def _respond(self, session: ChatSession, reply: ChatReply) -> ChatReply:
        reply = reply._replace(answers=dict(session.answers or {}))
        if reply.lead_status is None and session.lead_status:
            reply = reply._replace(lead_status=session.lead_status)
        self.store.append_transcript(
            reply.session_id,
            TranscriptEntry.Role.ASSISTANT,
            reply.reply,
            metadata={
                'stage': reply.stage,
                'current_field': reply.current_field,
                'has_error': reply.has_error,
                'validation_method': reply.validation_method,
            },
        )
        return reply


def build_conversation_service() -> ConversationService:
    """Wire the production collaborators from settings."""
    from intake.services.ai_client import GenerativeBackend
    from intake.services.geocoding import ZipGeocoder
    from intake.services.schema_registry import get_registry

    registry = get_registry()
    backend = GenerativeBackend()
    return ConversationService(
        registry=registry,
        store=SessionStore(),
        queue=LeadQueue(),
        extractor=FieldExtractor(registry, geocoder=ZipGeocoder(), backend=backend),
        detector=CategoryDetector(registry, backend=backend),
    )
