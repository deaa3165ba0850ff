"""
LeadProsper API client for delivering completed leads.
"""
import json
import logging
import time
from typing import Callable, NamedTuple, Optional

import httpx
from django.conf import settings
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class TransientVendorError(Exception):
    """A 5xx response or network failure; safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AttemptRecord(NamedTuple):
    attempt_no: int
    status_code: Optional[int]
    body: Optional[str]
    error: Optional[str]
    success: bool


class SubmissionResult(NamedTuple):
    success: bool
    lead_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    response: Optional[dict] = None
    attempts: int = 0
    retryable: bool = False


def _format_response(response: httpx.Response) -> str:
    """Return a readable response string (pretty JSON if possible)."""
    try:
        data = response.json()
        return json.dumps(data, indent=2, ensure_ascii=False)
    except ValueError:
        return response.text


def _parse_body(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {'raw': response.text}
    return data if isinstance(data, dict) else {'data': data}


class LeadProsperClient:
    """
    Posts leads to the LeadProsper ``direct_post`` endpoint.

    Transient failures (5xx, timeouts, connection errors) are retried with
    exponential backoff up to ``max_attempts`` times or until
    ``total_timeout`` seconds have passed; no single request may outlast that
    budget. 4xx responses are permanent and returned immediately.
    """

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None, max_attempts: Optional[int] = None,
                 backoff_base: Optional[float] = None, backoff_max: Optional[float] = None,
                 total_timeout: Optional[float] = None):
        self.url = url or settings.LEADPROSPER_API_URL
        self.token = token if token is not None else settings.LEADPROSPER_API_TOKEN
        self.timeout = timeout if timeout is not None else settings.LEADPROSPER_TIMEOUT
        self.max_attempts = max_attempts or settings.LEADPROSPER_MAX_RETRIES
        self.backoff_base = backoff_base if backoff_base is not None else settings.LEADPROSPER_BACKOFF_BASE
        self.backoff_max = backoff_max if backoff_max is not None else settings.LEADPROSPER_BACKOFF_MAX
        self.total_timeout = total_timeout if total_timeout is not None else settings.LEADPROSPER_TOTAL_TIMEOUT

    def _headers(self) -> dict:
        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _attempt_timeout(self, deadline: float) -> float:
        """Per-request timeout, capped by what is left of the total budget."""
        return max(min(self.timeout, deadline - time.monotonic()), 0.0)

    def _post_once(self, payload: dict, attempts: list, deadline: float,
                   on_attempt: Optional[Callable[[AttemptRecord], None]]) -> httpx.Response:
        timeout = self._attempt_timeout(deadline)
        if timeout <= 0:
            raise TransientVendorError(f"Total timeout of {self.total_timeout}s exceeded")
        attempt_no = len(attempts) + 1
        attempts.append(attempt_no)
        logger.info(f"Sending lead to LeadProsper: {self.url} (attempt {attempt_no}/{self.max_attempts})")

        try:
            response = httpx.post(self.url, json=payload, headers=self._headers(), timeout=timeout)
        except httpx.TimeoutException as e:
            logger.error(f"Timeout sending to LeadProsper: {e}")
            self._record(on_attempt, AttemptRecord(attempt_no, None, None, f"Timeout: {e}", False))
            raise TransientVendorError(f"Timeout: {e}") from e
        except httpx.TransportError as e:
            logger.error(f"Connection error sending to LeadProsper: {e}")
            self._record(on_attempt, AttemptRecord(attempt_no, None, None, f"Network error: {e}", False))
            raise TransientVendorError(f"Network error: {e}") from e

        logger.info(f"LeadProsper response: {response.status_code}")
        logger.info("LeadProsper response body:\n%s", _format_response(response))
        success = 200 <= response.status_code < 300
        self._record(on_attempt, AttemptRecord(attempt_no, response.status_code, response.text, None, success))

        if response.status_code >= 500:
            raise TransientVendorError(
                f"Server error: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    @staticmethod
    def _record(on_attempt, record: AttemptRecord) -> None:
        if on_attempt is not None:
            on_attempt(record)

    def submit(self, lead_payload: dict,
               on_attempt: Optional[Callable[[AttemptRecord], None]] = None) -> SubmissionResult:
        """
        Deliver a vendor-formatted lead.

        Args:
            lead_payload: Payload produced by ``map_to_vendor``
            on_attempt: Called with an ``AttemptRecord`` after every HTTP attempt

        Returns:
            SubmissionResult; never raises for HTTP or network failures
        """
        logger.debug(f"Payload: {lead_payload}")
        attempts: list = []
        deadline = time.monotonic() + self.total_timeout
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts) | stop_after_delay(self.total_timeout),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(TransientVendorError),
            reraise=True,
        )

        try:
            response = retryer(self._post_once, lead_payload, attempts, deadline, on_attempt)
        except TransientVendorError as e:
            logger.warning(f"LeadProsper delivery failed after {len(attempts)} attempts: {e}")
            return SubmissionResult(
                success=False,
                error=str(e),
                status_code=e.status_code,
                attempts=len(attempts),
                retryable=True,
            )

        body = _parse_body(response)
        status_code = response.status_code

        if 200 <= status_code < 300:
            if str(body.get('status', '')).upper() == 'ERROR':
                message = body.get('message') or 'unknown reason'
                logger.error(f"LeadProsper rejected lead: {message}")
                return SubmissionResult(False, error=f"Vendor rejected lead: {message}",
                                        status_code=status_code, response=body,
                                        attempts=len(attempts), retryable=False)
            lead_id = body.get('lead_id') or body.get('id')
            logger.info(f"Lead accepted by LeadProsper, lead_id={lead_id}")
            return SubmissionResult(True, lead_id=str(lead_id) if lead_id is not None else None,
                                    status_code=status_code, response=body, attempts=len(attempts))

        logger.error(f"LeadProsper client error {status_code}, not retrying")
        return SubmissionResult(False, error=f"Client error: {status_code}", status_code=status_code,
                                response=body, attempts=len(attempts), retryable=False)
