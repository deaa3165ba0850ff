"""
Validation service for intake field values.

Each collected value is type-checked and normalized before it is merged into
a session. Failures carry a conversational message that is shown to the user
as the next chat reply.
"""
import re
import logging
from datetime import date
from typing import Any, Iterable, NamedTuple, Optional

from intake.services.normalization import (
    digits_only,
    format_phone,
    normalize_yes_no,
    resolve_date,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$')
ZIP_PATTERN = re.compile(r'^(\d{5})(?:-(\d{4}))?$')
STATE_PATTERN = re.compile(r'^[A-Za-z]{2}$')
CITY_PATTERN = re.compile(r"^[A-Za-z][A-Za-z .'\-]{0,63}$")

YES_NO_VALUES = ('yes', 'no')

# Shown when a value was recognised but is malformed.
INVALID_VALUE_MESSAGES = {
    'phone': (
        "I see you entered a phone number, but it needs to be 10 digits. Could you please "
        "provide your complete phone number? For example: (555) 123-4567."
    ),
    'email': (
        "I see you provided an email address, but the format doesn't look quite right. "
        "Could you please double-check your email address? For example: name@email.com."
    ),
    'zip_code': (
        "I see you provided a ZIP code, but it needs to be exactly 5 digits. Could you please "
        "provide your full ZIP code? For example: 12345."
    ),
    'date_of_incident': (
        "That date appears to be in the future. Could you please tell me when the incident "
        "actually occurred?"
    ),
}

# Shown when nothing usable could be extracted from the message.
UNPARSEABLE_MESSAGES = {
    'first_name': (
        "I couldn't understand that name. Could you please tell me your full name? "
        "For example: John Smith"
    ),
    'last_name': "I couldn't understand that last name. Could you please tell me your last name?",
    'date_of_incident': (
        "I couldn't parse that date correctly. Could you please tell me when the incident "
        "occurred using a format like MM/DD/YYYY or saying something like 'September 15, 2025'?"
    ),
    'bodily_injury': (
        "I couldn't understand your response. Were you injured in the incident? "
        "Please answer 'yes' or 'no'."
    ),
    'at_fault': (
        "I couldn't understand your response. Were you at fault for what happened? "
        "Please answer 'yes' or 'no'."
    ),
    'has_attorney': (
        "I couldn't understand your response. Do you currently have an attorney? "
        "Please answer 'yes' or 'no'."
    ),
    'children_involved': (
        "I couldn't understand your response. Are there children involved? "
        "Please answer 'yes' or 'no'."
    ),
    'phone': (
        "I couldn't understand that phone number. Could you please provide your phone number? "
        "For example: (555) 123-4567."
    ),
    'email': (
        "I couldn't understand that email address. Could you please provide your email address? "
        "For example: name@email.com."
    ),
    'zip_code': (
        "I couldn't understand that ZIP code. Could you please provide your 5-digit ZIP code? "
        "For example: 12345."
    ),
}

GENERIC_UNPARSEABLE_MESSAGE = "I couldn't understand your response. Could you please try again?"


class ValidationResult(NamedTuple):
    """Outcome of validating one value."""
    valid: bool
    value: Any = None
    error: Optional[str] = None


def invalid_value_message(field: str, detail: Optional[str] = None) -> str:
    """Conversational message for a recognised but malformed value."""
    if field in INVALID_VALUE_MESSAGES:
        return INVALID_VALUE_MESSAGES[field]
    label = field.replace('_', ' ')
    if detail:
        return f"I noticed an issue with your {label}: {detail}. Could you please try again?"
    return f"I noticed an issue with your {label}. Could you please try again?"


def unparseable_message(field: Optional[str]) -> str:
    """Conversational message for a message nothing could be extracted from."""
    return UNPARSEABLE_MESSAGES.get(field or '', GENERIC_UNPARSEABLE_MESSAGE)


def _validate_text(value: Any, max_length: Optional[int]) -> ValidationResult:
    text = re.sub(r'\s+', ' ', str(value)).strip()
    if not text:
        return ValidationResult(False, error='value is empty')
    if max_length and len(text) > max_length:
        text = text[:max_length].rstrip()
    return ValidationResult(True, text)


def _validate_phone(value: Any) -> ValidationResult:
    formatted = format_phone(value)
    if formatted is None:
        return ValidationResult(False, error=f'expected 10 digits, got {len(digits_only(value))}')
    return ValidationResult(True, formatted)


def _validate_email(value: Any) -> ValidationResult:
    email = str(value).strip().lower()
    if not EMAIL_PATTERN.match(email):
        return ValidationResult(False, error='invalid email format')
    return ValidationResult(True, email)


def _validate_zip(value: Any) -> ValidationResult:
    zip_code = str(value).strip()
    if isinstance(value, int):
        zip_code = f"{value:05d}"
    if not ZIP_PATTERN.match(zip_code):
        return ValidationResult(False, error='ZIP code must be 5 digits')
    return ValidationResult(True, zip_code)


def _validate_date(value: Any, today: Optional[date]) -> ValidationResult:
    today = today or date.today()
    resolved = resolve_date(value, today=today, fuzzy=True)
    if resolved is None:
        return ValidationResult(False, error='unrecognised date')
    if resolved > today:
        return ValidationResult(False, error='date is in the future')
    return ValidationResult(True, resolved.isoformat())


def _validate_enum(value: Any, allowed_values: Optional[Iterable[str]], field: Optional[str]) -> ValidationResult:
    allowed = [str(item) for item in (allowed_values or [])]
    if not allowed or set(item.lower() for item in allowed) == set(YES_NO_VALUES):
        answer = normalize_yes_no(value, field=field)
        if answer is None:
            return ValidationResult(False, error="expected 'yes' or 'no'")
        return ValidationResult(True, answer)

    text = str(value).strip().lower()
    for item in allowed:
        if text == item.lower():
            return ValidationResult(True, item)
    return ValidationResult(False, error=f"'{value}' is not one of {allowed}")


def validate_and_normalize(
    raw_value: Any,
    field_type: str,
    allowed_values: Optional[Iterable[str]] = None,
    field: Optional[str] = None,
    max_length: Optional[int] = None,
    today: Optional[date] = None,
) -> ValidationResult:
    """
    Type-check and normalize a single value.

    Args:
        raw_value: Value extracted from the user's message
        field_type: One of text, phone, email, zip, state, city, date, enum, numeric
        allowed_values: Permitted values for enum fields
        field: Field name, used for field-specific yes/no phrasing
        max_length: Truncation limit for text fields
        today: Reference date for relative dates (defaults to the server date)

    Returns:
        ValidationResult(valid, value, error)
    """
    if raw_value is None or (isinstance(raw_value, str) and not raw_value.strip()):
        return ValidationResult(False, error='value is empty')

    if field_type == 'phone':
        result = _validate_phone(raw_value)
    elif field_type == 'email':
        result = _validate_email(raw_value)
    elif field_type == 'zip':
        result = _validate_zip(raw_value)
    elif field_type == 'date':
        result = _validate_date(raw_value, today)
    elif field_type == 'enum':
        result = _validate_enum(raw_value, allowed_values, field)
    elif field_type == 'state':
        state = str(raw_value).strip()
        result = (
            ValidationResult(True, state.upper()) if STATE_PATTERN.match(state)
            else ValidationResult(False, error='expected a 2-letter state code')
        )
    elif field_type == 'city':
        city = str(raw_value).strip()
        result = (
            ValidationResult(True, city.title()) if CITY_PATTERN.match(city)
            else ValidationResult(False, error='invalid city name')
        )
    elif field_type == 'numeric':
        digits = digits_only(raw_value)
        result = ValidationResult(True, digits) if digits else ValidationResult(False, error='expected a number')
    else:
        if field_type != 'text':
            logger.warning(f"Unknown field type '{field_type}' for field {field}, treating as text")
        result = _validate_text(raw_value, max_length)

    if not result.valid:
        logger.debug(f"Validation failed for {field or field_type}: {result.error}")
    return result


def enrich_zip(zip_code: str, geocoder) -> dict:
    """
    Look up city/state for a ZIP code.

    Enrichment is best effort: any failure yields an empty dict and the ZIP
    itself stays valid.
    """
    if geocoder is None:
        return {}
    try:
        place = geocoder.lookup(zip_code[:5])
    except Exception as e:
        logger.warning(f"Geocoding lookup raised for {zip_code}: {e}")
        return {}
    if not place:
        return {}
    enriched = {}
    if place.get('city'):
        enriched['city'] = place['city']
    if place.get('state'):
        enriched['state'] = place['state']
    return enriched
