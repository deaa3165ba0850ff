"""
API views for the intake chat and the lead delivery cron.
"""
import hmac
import logging
import re
import uuid

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.exceptions import ParseError
from rest_framework.response import Response
from rest_framework.views import APIView

from intake.services.conversation import InvalidStageTransition, build_conversation_service
from intake.services.lead_queue import LeadQueue
from intake.services.sessions import SessionNotFoundError
from intake.tasks import process_lead_queue
from intake.throttling import FixedWindowIPThrottle

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r'^[A-Za-z0-9_\-]{8,64}$')


def client_ip(request) -> str:
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', '')


def error_response(message: str, correlation_id: str, status_code: int) -> Response:
    return Response({'error': message, 'correlation_id': correlation_id}, status=status_code)


def kick_lead_queue(correlation_id: str) -> None:
    """Start delivery right away instead of waiting for the next beat tick."""
    if not settings.LEAD_QUEUE_KICK_ON_SUBMIT:
        return
    try:
        process_lead_queue.delay()
    except Exception as e:
        # The job is already durable; beat will pick it up.
        logger.warning(f"Could not kick lead queue: {e}, correlation_id={correlation_id}", exc_info=True)


def _request_payload(request):
    """Return the JSON body as a dict, or None when it is not an object."""
    data = request.data
    return data if isinstance(data, dict) else None


@method_decorator(csrf_exempt, name='dispatch')
class ChatView(APIView):
    """
    Conversational intake endpoint.

    POST /chat/
    - Body: ``{"message": str, "session_id": str?, "landing_page_url": str?}``
      plus optional compliance tokens
    - Returns 200 with the assistant reply, stage and collected answers
    - Returns 400 when ``message`` is missing or not a string
    - Returns 500 when the session cannot be loaded or created
    """

    throttle_classes = [FixedWindowIPThrottle]

    def post(self, request):
        correlation_id = str(uuid.uuid4())

        try:
            payload = _request_payload(request)
        except ParseError as e:
            logger.warning(f"Malformed JSON payload: {e}, correlation_id={correlation_id}")
            return error_response('Malformed JSON', correlation_id, status.HTTP_400_BAD_REQUEST)
        if payload is None:
            return error_response('Request body must be a JSON object', correlation_id,
                                  status.HTTP_400_BAD_REQUEST)

        message = payload.get('message')
        if not isinstance(message, str):
            logger.warning(f"Chat request without a string message, correlation_id={correlation_id}")
            return error_response('message is required and must be a string', correlation_id,
                                  status.HTTP_400_BAD_REQUEST)

        session_id = payload.get('session_id') or None
        if session_id is not None and (not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id)):
            return error_response('Invalid session_id', correlation_id, status.HTTP_400_BAD_REQUEST)

        try:
            reply = build_conversation_service().handle_message(
                session_id,
                message,
                ip_address=client_ip(request),
                user_agent=request.META.get('HTTP_USER_AGENT', ''),
                landing_page_url=payload.get('landing_page_url') or request.META.get('HTTP_REFERER', ''),
                compliance=payload,
            )
        except Exception as e:
            logger.error(f"Error handling chat message: {e}, correlation_id={correlation_id}", exc_info=True)
            return error_response('Something went wrong. Please try again.', correlation_id,
                                  status.HTTP_500_INTERNAL_SERVER_ERROR)

        if reply.job_id:
            kick_lead_queue(correlation_id)

        logger.info(
            f"Chat reply for {reply.session_id}: stage={reply.stage}, field={reply.current_field}, "
            f"method={reply.validation_method}, correlation_id={correlation_id}"
        )
        return Response({**reply.as_dict(), 'correlation_id': correlation_id}, status=status.HTTP_200_OK)


@method_decorator(csrf_exempt, name='dispatch')
class ChatResetView(APIView):
    """POST /chat/reset/ - return a session to INIT."""

    throttle_classes = [FixedWindowIPThrottle]

    def post(self, request):
        correlation_id = str(uuid.uuid4())
        try:
            payload = _request_payload(request) or {}
        except ParseError:
            return error_response('Malformed JSON', correlation_id, status.HTTP_400_BAD_REQUEST)

        session_id = payload.get('session_id')
        if not isinstance(session_id, str) or not session_id:
            return error_response('session_id is required', correlation_id, status.HTTP_400_BAD_REQUEST)

        try:
            reply = build_conversation_service().reset(session_id)
        except SessionNotFoundError:
            return error_response('Session not found', correlation_id, status.HTTP_404_NOT_FOUND)

        logger.info(f"Session {session_id} reset, correlation_id={correlation_id}")
        return Response({**reply.as_dict(), 'correlation_id': correlation_id}, status=status.HTTP_200_OK)


@method_decorator(csrf_exempt, name='dispatch')
class ChatSubmitView(APIView):
    """
    POST /chat/submit/ - explicit submit action.

    Accepts optional compliance tokens (``jornaya_leadid``,
    ``trustedform_cert_url``, ``tcpa_text``). Returns 409 while required
    fields are still missing.
    """

    throttle_classes = [FixedWindowIPThrottle]

    def post(self, request):
        correlation_id = str(uuid.uuid4())
        try:
            payload = _request_payload(request) or {}
        except ParseError:
            return error_response('Malformed JSON', correlation_id, status.HTTP_400_BAD_REQUEST)

        session_id = payload.get('session_id')
        if not isinstance(session_id, str) or not session_id:
            return error_response('session_id is required', correlation_id, status.HTTP_400_BAD_REQUEST)

        server_data = {
            'ip_address': client_ip(request),
            'user_agent': request.META.get('HTTP_USER_AGENT', ''),
        }
        try:
            reply = build_conversation_service().submit(session_id, server_data=server_data, compliance=payload)
        except SessionNotFoundError:
            return error_response('Session not found', correlation_id, status.HTTP_404_NOT_FOUND)
        except InvalidStageTransition as e:
            logger.info(f"Submit rejected: {e}, correlation_id={correlation_id}")
            return error_response(str(e), correlation_id, status.HTTP_409_CONFLICT)

        if reply.job_id:
            kick_lead_queue(correlation_id)
        return Response({**reply.as_dict(), 'correlation_id': correlation_id}, status=status.HTTP_200_OK)


class SessionStatusView(APIView):
    """GET /chat/<session_id>/status/ - stage, lead status and latest delivery job."""

    def get(self, request, session_id):
        try:
            data = build_conversation_service().status(session_id)
        except SessionNotFoundError:
            return Response({'error': 'Session not found'}, status=status.HTTP_404_NOT_FOUND)
        return Response(data, status=status.HTTP_200_OK)


@method_decorator(csrf_exempt, name='dispatch')
class ProcessLeadsView(APIView):
    """
    POST /cron/process-leads/ - run the batch driver from an external scheduler.

    Requires the ``X-Cron-Secret`` header to match ``CRON_SECRET``.
    """

    def post(self, request):
        correlation_id = str(uuid.uuid4())
        secret = request.META.get('HTTP_X_CRON_SECRET', '')
        if not settings.CRON_SECRET or not hmac.compare_digest(secret, settings.CRON_SECRET):
            logger.warning(f"Rejected cron request, correlation_id={correlation_id}")
            return error_response('Unauthorized', correlation_id, status.HTTP_401_UNAUTHORIZED)

        try:
            payload = _request_payload(request) or {}
        except ParseError:
            payload = {}
        max_jobs = payload.get('max_jobs')
        batch_size = payload.get('batch_size')
        if any(value is not None and (not isinstance(value, int) or value < 1) for value in (max_jobs, batch_size)):
            return error_response('max_jobs and batch_size must be positive integers', correlation_id,
                                  status.HTTP_400_BAD_REQUEST)

        summary = process_lead_queue(max_jobs=max_jobs, batch_size=batch_size)
        logger.info(f"Cron processed {summary['processed']} jobs, correlation_id={correlation_id}")
        return Response(
            {
                'success': True,
                'summary': summary,
                'queue': LeadQueue().stats(),
                'correlation_id': correlation_id,
            },
            status=status.HTTP_200_OK,
        )
