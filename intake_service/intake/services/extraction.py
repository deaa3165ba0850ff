"""
Field extraction from free-text chat messages.

Extraction is layered:

1. Deterministic patterns for the field currently being asked about
   (phone, email, ZIP, dates, yes/no, names). Fast, free and repeatable.
2. Opportunistic pattern scan for contact details mentioned in passing.
3. The generative backend, only when patterns cannot answer the target field
   or when a rich multi-fact message has to be broken into several fields.

Every value passes through ``validate_and_normalize`` before it is returned,
and empty values are never returned.
"""
import logging
import re
from datetime import date
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Union

from intake.services.ai_client import ExtractionBackendError
from intake.services.normalization import (
    NON_NAME_WORDS,
    digits_only,
    find_phone,
    normalize_name,
    parse_full_name,
    resolve_date,
    strip_empty,
)
from intake.services.schema_registry import FieldSpec, PracticeAreaRegistry
from intake.services.validation import (
    enrich_zip,
    invalid_value_message,
    unparseable_message,
    validate_and_normalize,
)

logger = logging.getLogger(__name__)

EMAIL_SEARCH_PATTERN = re.compile(r'[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}')
ZIP_SEARCH_PATTERN = re.compile(r'(?<![\d-])(\d{5}(?:-\d{4})?)(?![\d-])')
NAME_INTRO_SEARCH = re.compile(
    r"\b(?:my name is|my name's|name is|this is|call me)\s+([A-Za-z][A-Za-z'\-]*)(?:\s+([A-Za-z][A-Za-z'\-]*))?",
    re.IGNORECASE
)
LAST_NAME_INTRO = re.compile(r"^(?:my\s+)?(?:last name|surname|family name)\s*(?:is|'s)?\s*[:\-]?\s*", re.IGNORECASE)
GREETING_PATTERN = re.compile(r'^\s*(?:hi|hello|hey|good (?:morning|afternoon|evening))\b', re.IGNORECASE)
RICH_PHRASES = (
    'my name is', "my name's", 'i was', 'i am ', "i'm ", 'i got', 'i have been',
    "i've been", 'i need', 'happened', 'my husband', 'my wife', 'my son', 'my daughter',
)
RICH_WORD_COUNT = 12


class FieldsExtracted(NamedTuple):
    values: Dict[str, object]
    method: str
    kind = 'fields'


class ExtractionFailed(NamedTuple):
    message: str
    method: str
    kind = 'error'


class FollowUpNeeded(NamedTuple):
    values: Dict[str, object]
    question: str
    method: str
    kind = 'followUp'


ExtractionResult = Union[FieldsExtracted, ExtractionFailed, FollowUpNeeded]


class _TargetOutcome(NamedTuple):
    status: str  # matched | invalid | followup
    values: Dict[str, object] = {}
    method: str = 'regex'
    message: Optional[str] = None


def is_rich_message(message: str, known_answers: Optional[dict] = None) -> bool:
    """
    True when a message probably carries several facts at once.

    Introductions and narrative phrasing ("my name is", "I was") count, as do
    greetings on a fresh session and long messages.
    """
    text = (message or '').strip().lower()
    if not text:
        return False
    padded = f"{text} "
    if any(phrase in padded for phrase in RICH_PHRASES):
        return True
    if GREETING_PATTERN.match(text) and not known_answers:
        return True
    return len(text.split()) >= RICH_WORD_COUNT


class FieldExtractor:
    """
    Turns a chat message into validated field values.

    Args:
        registry: Practice area schema registry
        geocoder: Object with ``lookup(zip) -> {city, state} | None``
        backend: Generative backend with ``extract_fields``; optional
        today: Callable returning the reference date for relative dates
    """

    def __init__(self, registry: PracticeAreaRegistry, geocoder=None, backend=None,
                 today: Optional[Callable[[], date]] = None):
        self.registry = registry
        self.geocoder = geocoder
        self.backend = backend
        self.today = today or date.today

    def _spec(self, category: Optional[str], field: str) -> FieldSpec:
        spec = self.registry.get_field(category, field) if category else None
        return spec or FieldSpec(name=field)

    def _validate(self, spec: FieldSpec, raw_value):
        return validate_and_normalize(
            raw_value,
            spec.type,
            allowed_values=spec.allowed_values,
            field=spec.name,
            max_length=spec.max_length,
            today=self.today(),
        )

    def extract(self, message: str, target_field: Optional[str], known_answers: Optional[dict],
                category: Optional[str], candidate_fields: Optional[Iterable[str]] = None) -> ExtractionResult:
        """
        Extract field values from ``message``.

        Args:
            message: Raw user message
            target_field: Field the last question asked for, if any
            known_answers: Answers already collected for the session
            category: Practice area key
            candidate_fields: Fields that may be filled from this message;
                defaults to the category's missing fields

        Returns:
            FieldsExtracted, ExtractionFailed or FollowUpNeeded
        """
        known = known_answers or {}
        text = (message or '').strip()
        if candidate_fields is None:
            candidate_fields = self.registry.get_missing_fields(category, known) if category else []
        candidates = [field for field in candidate_fields if field != target_field]
        rich = is_rich_message(text, known)

        scanned = self._scan(text, candidates, category, rich)
        if scanned:
            logger.debug(f"Opportunistic scan found: {sorted(scanned)}")

        if target_field:
            outcome = self._extract_target(text, target_field, known, category)
            if outcome is not None:
                if outcome.status == 'invalid':
                    logger.info(f"Invalid value for {target_field} ({outcome.method})")
                    return ExtractionFailed(outcome.message, outcome.method)
                extra = {}
                if rich:
                    extra = self._extract_remaining(text, candidates, {**scanned, **outcome.values}, known, category)
                    if outcome.status == 'followup':
                        extra.pop('last_name', None)
                values = self._finish({**extra, **scanned, **outcome.values}, known)
                if outcome.status == 'followup':
                    return FollowUpNeeded(values, outcome.message, outcome.method)
                return FieldsExtracted(values, outcome.method)

        ai_fields = [target_field] if target_field else []
        if rich or not target_field:
            ai_fields += [field for field in candidates if field not in scanned]
        if not ai_fields or (not target_field and not rich):
            return FieldsExtracted(self._finish(scanned, known), 'regex' if scanned else 'no_match')

        try:
            ai_values = self._extract_with_backend(text, ai_fields, known, category, target=target_field)
        except ExtractionBackendError as e:
            logger.warning(f"Generative extraction failed: {e}")
            if target_field and not scanned:
                return ExtractionFailed(unparseable_message(target_field), 'ai_failed')
            return FieldsExtracted(self._finish(scanned, known), 'ai_failed')

        invalid_target = ai_values.pop('__invalid_target__', None)
        values = {**scanned, **ai_values}
        if target_field and target_field not in values and not rich:
            if invalid_target:
                return ExtractionFailed(invalid_value_message(target_field, invalid_target), 'ai_success')
            return ExtractionFailed(unparseable_message(target_field), 'ai_no_match')
        return FieldsExtracted(self._finish(values, known), 'ai_success' if ai_values else 'ai_no_match')

    def _finish(self, values: dict, known: dict) -> dict:
        values = strip_empty(values)
        zip_code = values.get('zip_code')
        if zip_code and zip_code != known.get('zip_code'):
            for key, value in enrich_zip(zip_code, self.geocoder).items():
                if not known.get(key) and not values.get(key):
                    values[key] = value
            if 'city' in values:
                logger.info(f"Auto-populated city/state from ZIP {zip_code}")
        return values

    def _scan(self, text: str, candidates: List[str], category: Optional[str], rich: bool) -> dict:
        found = {}
        for field in candidates:
            spec = self._spec(category, field)
            raw = None
            if spec.type == 'phone':
                raw = find_phone(text)
            elif spec.type == 'email':
                match = EMAIL_SEARCH_PATTERN.search(text)
                raw = match.group(0) if match else None
            elif spec.type == 'zip':
                match = ZIP_SEARCH_PATTERN.search(text)
                raw = match.group(1) if match else None
            elif rich and spec.type == 'date':
                resolved = resolve_date(text, today=self.today())
                raw = resolved.isoformat() if resolved else None
            if raw is None:
                continue
            result = self._validate(spec, raw)
            if result.valid:
                found[field] = result.value

        if rich and ('first_name' in candidates or 'last_name' in candidates):
            match = NAME_INTRO_SEARCH.search(text)
            if match and match.group(1).lower() not in NON_NAME_WORDS:
                if 'first_name' in candidates:
                    found['first_name'] = normalize_name(match.group(1))
                last = match.group(2)
                if last and last[0].isupper() and last.lower() not in NON_NAME_WORDS and 'last_name' in candidates:
                    found['last_name'] = normalize_name(last)
        return found

    def _extract_target(self, text: str, field: str, known: dict, category: Optional[str]) -> Optional[_TargetOutcome]:
        """Deterministic extraction for the asked-about field; None means no pattern matched."""
        if field == 'first_name' and not known.get('first_name'):
            return self._extract_name(text)
        if field == 'last_name' and known.get('first_name') and not known.get('last_name'):
            return self._extract_last_name(text)

        spec = self._spec(category, field)
        raw = None
        if spec.type == 'phone':
            raw = find_phone(text)
            if raw is None and 7 <= len(digits_only(text)) <= 15:
                return _TargetOutcome('invalid', message=invalid_value_message(field))
        elif spec.type == 'email':
            match = EMAIL_SEARCH_PATTERN.search(text)
            raw = match.group(0) if match else None
            if raw is None and '@' in text:
                return _TargetOutcome('invalid', message=invalid_value_message(field))
        elif spec.type == 'zip':
            match = ZIP_SEARCH_PATTERN.search(text)
            raw = match.group(1) if match else None
            if raw is None and 3 <= len(digits_only(text)) <= 9 and len(digits_only(text)) != 5:
                return _TargetOutcome('invalid', message=invalid_value_message(field))
        elif spec.type == 'date':
            resolved = resolve_date(text, today=self.today(), fuzzy=True)
            if resolved is not None:
                if resolved > self.today():
                    return _TargetOutcome('invalid', message=invalid_value_message(field, 'date is in the future'))
                raw = resolved.isoformat()
        elif spec.type in ('text', 'city', 'state', 'numeric'):
            raw = text
            result = self._validate(spec, raw)
            if result.valid:
                return _TargetOutcome('matched', {field: result.value}, 'direct')
            return None
        else:
            raw = text

        if raw is None:
            return None
        result = self._validate(spec, raw)
        if not result.valid:
            if spec.type == 'enum':
                return None
            return _TargetOutcome('invalid', message=invalid_value_message(field, result.error))
        return _TargetOutcome('matched', {field: result.value}, 'regex')

    def _extract_name(self, text: str) -> Optional[_TargetOutcome]:
        first, last = parse_full_name(text)
        if first is None:
            match = NAME_INTRO_SEARCH.search(text)
            if not match or match.group(1).lower() in NON_NAME_WORDS:
                return None
            first = normalize_name(match.group(1))
            second = match.group(2)
            last = normalize_name(second) if second and second.lower() not in NON_NAME_WORDS else None

        if last:
            logger.info("Full name parsed from message")
            return _TargetOutcome('matched', {'first_name': first, 'last_name': last}, 'full_name_parsed')
        logger.info("Partial name parsed, asking for last name")
        return _TargetOutcome(
            'followup',
            {'first_name': first},
            'partial_name_parsed',
            message=f"Thank you, {first}. What's your last name?",
        )

    def _extract_last_name(self, text: str) -> Optional[_TargetOutcome]:
        cleaned = LAST_NAME_INTRO.sub('', text.strip())
        first, last = parse_full_name(cleaned)
        if first is None:
            return None
        # "Smith" or "John Smith": the final token is the surname either way
        return _TargetOutcome('matched', {'last_name': last or first}, 'last_name_completed')

    def _extract_remaining(self, text: str, candidates: List[str], found: dict, known: dict,
                           category: Optional[str]) -> dict:
        """Backend pass over the other candidate fields of a rich message whose target already matched."""
        if self.backend is None or not getattr(self.backend, 'enabled', True):
            return {}
        remaining = [field for field in candidates if field not in found]
        if not remaining:
            return {}
        try:
            return self._extract_with_backend(text, remaining, known, category)
        except ExtractionBackendError as e:
            logger.warning(f"Generative extraction of remaining fields failed: {e}")
            return {}

    def _extract_with_backend(self, text: str, fields: List[str], known: dict, category: Optional[str],
                              target: Optional[str] = None) -> dict:
        if self.backend is None:
            raise ExtractionBackendError("No generative backend configured")
        specs = [self._spec(category, field) for field in fields]
        raw_values = self.backend.extract_fields(text, specs, known_answers=known, category=category)

        values = {}
        for spec in specs:
            if spec.name not in raw_values:
                continue
            result = self._validate(spec, raw_values[spec.name])
            if result.valid:
                values[spec.name] = result.value
            else:
                logger.warning(f"Backend value for {spec.name} failed validation: {result.error}")
                if spec.name == target:
                    values['__invalid_target__'] = result.error
        return values
