"""
Normalization helpers for values collected during intake.

Everything here is pure: no database, no network.
"""
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Optional, Tuple

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'\b(?:\+?1[-.\s]?)?\(?([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})\b')
FORMATTED_PHONE_PATTERN = re.compile(r'^\(\d{3}\) \d{3}-\d{4}$')

NAME_PREFIXES = ('mr', 'mrs', 'ms', 'miss', 'dr', 'prof')
NAME_INTRO_PATTERN = re.compile(
    r"^(?:hi|hello|hey)?[\s,!.]*(?:my name is|my name's|i am|i'm|this is|it's|its|name is|call me)\s+",
    re.IGNORECASE
)
NAME_TOKEN_PATTERN = re.compile(r"^[A-Za-z][A-Za-z'\-]*$")

YES_WORDS = ('yes', 'yeah', 'yep', 'yup', 'sure', 'correct', 'absolutely', 'definitely', 'y')
NO_WORDS = ('no', 'nope', 'nah', 'never', 'n')
NEGATIVE_PHRASES = (
    'not injured', 'not hurt', "wasn't hurt", "wasn't injured", 'was not hurt',
    'was not injured', "didn't get hurt", 'not really', 'none', "don't", 'do not',
    "didn't", 'did not', "wasn't", 'was not', "haven't", 'have not', 'not yet', 'fine',
)
POSITIVE_PHRASES = ('injured', 'hurt', 'i was', 'i am', 'i do', 'i did', 'i have', 'we do', 'we have')

# Phrases that only make sense for a specific field.
FIELD_PHRASES = {
    'at_fault': {
        'no': ('their fault', 'his fault', 'her fault', 'not my fault', 'other driver', 'they hit me', 'hit me'),
        'yes': ('my fault', 'i caused', 'i hit'),
    },
    'has_attorney': {
        'no': ('looking for one', 'need one', 'need a lawyer', 'need an attorney'),
        'yes': ('have a lawyer', 'have an attorney', 'already have'),
    },
}
NEGATION_PATTERN = re.compile(
    r"\b(?:not|no|never|don't|dont|do not|doesn't|didn't|did not|wasn't|was not|isn't|is not|"
    r"haven't|have not|hasn't)\b"
)
NEGATION_WINDOW = 3

# Words that show up where a name was expected but are never names themselves.
NON_NAME_WORDS = frozenset({
    'and', 'i', 'im', 'my', 'was', 'from', 'in', 'the', 'a', 'an', 'who', 'here', 'calling',
    'looking', 'writing', 'need', 'have', 'had', 'got', 'with', 'about', 'but', 'so',
    'not', 'sure', 'no', 'yes', 'yeah', 'yep', 'nope', 'there', 'unknown', 'none',
    'maybe', 'idea', 'ok', 'okay', 'hi', 'hello', 'hey', 'thanks', 'thank', 'you',
    'what', 'why', 'dont', "don't", 'know', 'rather', 'prefer', 'skip', 'anonymous',
    'is', 'am', 'are', 'it', 'that', 'this', 'to', 'of', 'for', 'me', 'just', 'please',
})

NUMBER_WORDS = {
    'a': 1, 'an': 1, 'one': 1, 'two': 2, 'three': 3, 'four': 4, 'five': 5,
    'six': 6, 'seven': 7, 'eight': 8, 'nine': 9, 'ten': 10, 'eleven': 11,
    'twelve': 12, 'couple': 2, 'a couple': 2, 'a couple of': 2, 'few': 3, 'a few': 3,
}
RELATIVE_AGO_PATTERN = re.compile(
    r'\b(\d+|a couple of|a couple|a few|couple|few|an?|one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve)'
    r'\s+(day|week|month|year)s?\s+ago\b',
    re.IGNORECASE
)
ISO_DATE_PATTERN = re.compile(r'\b(\d{4})-(\d{1,2})-(\d{1,2})\b')
US_DATE_PATTERN = re.compile(r'\b(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})\b')
YEAR_PATTERN = re.compile(r'\b\d{4}\b')
MONTH_NAME_PATTERN = re.compile(
    r'\b(jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+\d{1,2}(?:st|nd|rd|th)?(?:,?\s+\d{4})?\b',
    re.IGNORECASE
)


def digits_only(value: Any) -> str:
    """Return only the digit characters of a value."""
    return re.sub(r'\D', '', str(value or ''))


def format_phone(value: Any) -> Optional[str]:
    """
    Canonicalize a US phone number to ``(xxx) xxx-xxxx``.

    A leading country code ``1`` is dropped. Returns None when the value does
    not contain exactly ten national digits.
    """
    if value is None:
        return None
    text = str(value).strip()
    if FORMATTED_PHONE_PATTERN.match(text):
        return text
    digits = digits_only(text)
    if len(digits) == 11 and digits.startswith('1'):
        digits = digits[1:]
    if len(digits) != 10:
        return None
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def find_phone(text: str) -> Optional[str]:
    """Find the first phone number in free text and return it formatted."""
    match = PHONE_PATTERN.search(text or '')
    if not match:
        return None
    area, exchange, line = match.groups()
    return f"({area}) {exchange}-{line}"


def _find_phrase(text: str, phrase: str):
    return re.search(r'(?<![a-z])' + re.escape(phrase) + r'(?![a-z])', text)


def _contains_phrase(text: str, phrase: str) -> bool:
    return _find_phrase(text, phrase) is not None


def _is_negated(text: str, position: int) -> bool:
    """True when a negation precedes ``position`` within the same clause."""
    clause = re.split(r'[,.;!?]', text[:position])[-1]
    preceding = clause.split()[-NEGATION_WINDOW:]
    return NEGATION_PATTERN.search(' '.join(preceding)) is not None


def _field_phrase_answer(text: str, field: Optional[str]) -> Optional[str]:
    specific = FIELD_PHRASES.get(field or '', {})
    for answer, opposite in (('no', 'yes'), ('yes', 'no')):
        for phrase in specific.get(answer, ()):
            match = _find_phrase(text, phrase)
            if match:
                return opposite if _is_negated(text, match.start()) else answer
    return None


def normalize_yes_no(text: Any, field: Optional[str] = None) -> Optional[str]:
    """
    Map free-text affirmative/negative phrasing to ``"yes"`` or ``"no"``.

    Returns None when the answer cannot be classified.
    """
    if isinstance(text, bool):
        return 'yes' if text else 'no'
    if text is None:
        return None
    cleaned = re.sub(r'\s+', ' ', str(text).strip().lower())
    if not cleaned:
        return None

    specific = _field_phrase_answer(cleaned, field)
    if specific is not None:
        return specific

    first_word = re.split(r'[\s,.!?;]+', cleaned)[0]
    if first_word in YES_WORDS:
        return 'yes'
    if first_word in NO_WORDS:
        return 'no'

    if any(_contains_phrase(cleaned, phrase) for phrase in NEGATIVE_PHRASES):
        return 'no'
    if any(_contains_phrase(cleaned, word) for word in YES_WORDS if len(word) > 1):
        return 'yes'
    if any(_contains_phrase(cleaned, word) for word in NO_WORDS if len(word) > 1):
        return 'no'
    if any(_contains_phrase(cleaned, phrase) for phrase in POSITIVE_PHRASES):
        return 'yes'
    return None


def _to_number(token: str) -> int:
    token = token.lower()
    if token.isdigit():
        return int(token)
    return NUMBER_WORDS[token]


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def resolve_date(text: Any, today: Optional[date] = None, fuzzy: bool = False) -> Optional[date]:
    """
    Resolve an absolute or relative date expression to a calendar date.

    Relative phrases ("yesterday", "last week", "3 days ago") are resolved
    against ``today``. With ``fuzzy`` set, month-name dates anywhere in the text
    are also parsed. Returns None when nothing date-like is found.
    """
    if text is None:
        return None
    if isinstance(text, datetime):
        return text.date()
    if isinstance(text, date):
        return text
    today = today or date.today()
    cleaned = str(text).strip().lower()
    if not cleaned:
        return None

    if re.search(r'\bday before yesterday\b', cleaned):
        return today - timedelta(days=2)
    if re.search(r'\byesterday\b', cleaned):
        return today - timedelta(days=1)
    if re.search(r'\b(today|this morning|earlier today|tonight)\b', cleaned):
        return today
    if re.search(r'\blast week\b', cleaned):
        return today - timedelta(weeks=1)
    if re.search(r'\blast month\b', cleaned):
        return today - relativedelta(months=1)
    if re.search(r'\blast year\b', cleaned):
        return today - relativedelta(years=1)

    match = RELATIVE_AGO_PATTERN.search(cleaned)
    if match:
        amount = _to_number(match.group(1))
        unit = match.group(2).lower()
        if unit == 'day':
            return today - timedelta(days=amount)
        if unit == 'week':
            return today - timedelta(weeks=amount)
        if unit == 'month':
            return today - relativedelta(months=amount)
        return today - relativedelta(years=amount)

    match = ISO_DATE_PATTERN.search(cleaned)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = US_DATE_PATTERN.search(cleaned)
    if match:
        month, day, year = (int(part) for part in match.groups())
        if year < 100:
            year += 2000
        return _safe_date(year, month, day)

    if fuzzy or MONTH_NAME_PATTERN.search(cleaned):
        candidate = MONTH_NAME_PATTERN.search(cleaned)
        target = candidate.group(0) if candidate else cleaned
        try:
            parsed = date_parser.parse(target, fuzzy=True, default=datetime(today.year, 1, 1)).date()
        except (ValueError, OverflowError):
            logger.debug(f"Could not parse date from: {cleaned!r}")
            return None
        # no year given: "December 20" said in October means last December
        if parsed > today and not YEAR_PATTERN.search(target):
            parsed -= relativedelta(years=1)
        return parsed
    return None


def normalize_name(value: Any) -> str:
    """Capitalize a name token, keeping hyphenated and apostrophe parts."""
    text = str(value or '').strip()
    parts = re.split(r"([\-'])", text)
    return ''.join(part[:1].upper() + part[1:].lower() if part not in ('-', "'") else part for part in parts)


def _is_non_name(token: str, index: int, count: int) -> bool:
    # single-letter middle initials are fine
    if 0 < index < count - 1 and len(token) == 1:
        return False
    return token.lower() in NON_NAME_WORDS


def parse_full_name(text: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a free-text name answer into ``(first_name, last_name)``.

    Introductions ("my name is") and honorifics are stripped. A single token
    yields ``(first, None)``. Returns ``(None, None)`` when the text does not
    look like a name, including when any token is a common non-name word
    ("I'm not sure", "no idea").
    """
    cleaned = NAME_INTRO_PATTERN.sub('', str(text or '').strip())
    cleaned = re.sub(r'[.,!?]+$', '', cleaned).strip()
    tokens = [token for token in re.split(r'\s+', cleaned) if token]
    while tokens and tokens[0].lower().rstrip('.') in NAME_PREFIXES:
        tokens = tokens[1:]
    if not tokens or len(tokens) > 4:
        return None, None
    if not all(NAME_TOKEN_PATTERN.match(token) for token in tokens):
        return None, None
    if any(_is_non_name(token, index, len(tokens)) for index, token in enumerate(tokens)):
        return None, None
    if len(tokens) == 1:
        return normalize_name(tokens[0]), None
    return normalize_name(tokens[0]), normalize_name(tokens[-1])


def normalize_value(value: Any) -> Any:
    """Trim strings; leave everything else untouched."""
    if isinstance(value, str):
        return value.strip()
    return value


def is_empty(value: Any) -> bool:
    """True for None, blank strings and empty containers."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def strip_empty(data: dict) -> dict:
    """Return a copy of ``data`` without empty values, strings trimmed."""
    return {
        key: normalize_value(value)
        for key, value in (data or {}).items()
        if not is_empty(value)
    }
