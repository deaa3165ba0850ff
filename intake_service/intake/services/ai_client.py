"""
Generative extraction backend (OpenAI-compatible chat completions).

Used only when deterministic patterns cannot handle a message.
"""
import json
import logging
from datetime import date
from typing import Iterable, List, Optional

import httpx
from django.conf import settings

from intake.services.schema_registry import FieldSpec

logger = logging.getLogger(__name__)

EMPTY_MARKERS = ('', 'unknown', 'null', 'none', 'n/a')


class ExtractionBackendError(Exception):
    """Raised when the generative backend is unavailable or returns unusable output."""
    pass


def _describe_field(spec: FieldSpec) -> str:
    line = f"- {spec.name} ({spec.type})"
    if spec.type == 'date':
        line += ": convert to YYYY-MM-DD"
    elif spec.allowed_values:
        line += f": must be one of {', '.join(spec.allowed_values)}"
    elif spec.type == 'phone':
        line += ": 10 digit US phone number"
    return line


class GenerativeBackend:
    """
    Thin client over the chat-completions endpoint in JSON mode.

    Every failure raises ``ExtractionBackendError``; callers decide how to
    degrade.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 url: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self.url = url or settings.OPENAI_API_URL
        self.timeout = timeout if timeout is not None else settings.OPENAI_TIMEOUT

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _complete(self, system_prompt: str, user_prompt: str) -> dict:
        if not self.enabled:
            raise ExtractionBackendError("Generative backend is not configured")

        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }
        payload = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': user_prompt},
            ],
            'response_format': {'type': 'json_object'},
            'temperature': 0.1,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, headers=headers, json=payload)
                response.raise_for_status()
                content = response.json()['choices'][0]['message']['content']
        except httpx.HTTPError as e:
            raise ExtractionBackendError(f"Generative backend request failed: {e}") from e
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionBackendError(f"Unexpected generative backend response: {e}") from e

        try:
            data = json.loads(content)
        except (TypeError, ValueError) as e:
            raise ExtractionBackendError(f"Generative backend returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ExtractionBackendError("Generative backend returned a non-object")
        return data

    def extract_fields(self, message: str, candidate_fields: Iterable[FieldSpec],
                       known_answers: Optional[dict] = None, category: Optional[str] = None) -> dict:
        """
        Extract values for ``candidate_fields`` from a user message.

        Keys outside the candidate list and empty/unknown values are dropped.
        """
        candidates: List[FieldSpec] = list(candidate_fields)
        if not candidates:
            return {}
        allowed = {spec.name for spec in candidates}

        system_prompt = (
            "You extract structured intake fields from a message sent to a legal intake assistant. "
            "Return a flat JSON object whose keys are only from the listed fields. "
            "Only extract information that is clearly stated; omit anything you are not confident about. "
            "Never invent values. For yes/no fields answer 'yes' or 'no'. "
            f"Today is {date.today().isoformat()}."
        )
        known = {key: value for key, value in (known_answers or {}).items() if key in allowed}
        user_prompt = (
            f"Practice area: {category or 'unknown'}\n"
            "Fields:\n" + "\n".join(_describe_field(spec) for spec in candidates) + "\n"
            f"Already known: {json.dumps(known)}\n"
            f"Message: {message}"
        )

        data = self._complete(system_prompt, user_prompt)
        extracted = {}
        for key, value in data.items():
            if key not in allowed:
                logger.debug(f"Dropping field outside candidates from backend output: {key}")
                continue
            if value is None or str(value).strip().lower() in EMPTY_MARKERS:
                continue
            extracted[key] = value
        logger.info(f"Generative extraction returned fields: {sorted(extracted)}")
        return extracted

    def classify_category(self, message: str, categories: Iterable[str]) -> dict:
        """
        Classify a message into one of ``categories``.

        Returns ``{'category': key | None, 'sub_category': str | None}``.
        """
        keys = list(categories)
        system_prompt = (
            "You classify a potential client's description of a legal problem into a practice area. "
            "Respond with a JSON object: {\"category\": <one of the given keys or null>, "
            "\"sub_category\": <short lowercase label or null>}."
        )
        user_prompt = f"Practice areas: {', '.join(keys)}\nMessage: {message}"
        data = self._complete(system_prompt, user_prompt)
        category = data.get('category')
        if category not in keys:
            if category:
                logger.warning(f"Backend proposed unknown category '{category}', ignoring")
            category = None
        sub_category = data.get('sub_category') or None
        return {'category': category, 'sub_category': sub_category}
