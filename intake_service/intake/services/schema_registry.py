"""
Practice area field schema registry.

The practice area configuration is read once and kept in memory. Callers
receive a ``PracticeAreaRegistry`` either through ``get_registry()`` or by
constructing one directly (tests build them from dicts).
"""
import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from django.conf import settings

logger = logging.getLogger(__name__)

# Never asked directly: inferred from other answers or set at categorization.
AUTO_DERIVED_FIELDS = frozenset({'city', 'state', 'main_category', 'sub_category'})
SERVER_SOURCES = frozenset({'server', 'tracking', 'compliance'})

DEFAULT_INTRO = "I'm here to help you find the right attorney."

FALLBACK_QUESTIONS = {
    'describe': "Could you tell me a little more about what happened?",
    'first_name': "I'm here to help you find the right attorney. What's your full name?",
    'last_name': "What's your last name, {first_name}?",
    'email': "{name_prefix}what email address should we use to send you your confirmation?",
    'phone': "Thanks, {first_name}. What's the best phone number to reach you at?",
    'zip_code': "{name_prefix}what's your ZIP code so I can connect you with local attorneys?",
    'has_attorney': "{name_prefix}do you currently have an attorney helping you with this?",
    'date_of_incident': "{name_prefix}when did this incident occur?",
    'bodily_injury': "{name_prefix}were you hurt or injured in any way?",
    'at_fault': "{name_prefix}were you at fault for what happened?",
    'children_involved': "{name_prefix}are there children involved in this situation?",
}


class PracticeAreaConfigError(Exception):
    """Raised when the practice area configuration is missing or malformed."""
    pass


class FieldSpec(NamedTuple):
    name: str
    type: str = 'text'
    required: bool = False
    source: Optional[str] = None
    value: Optional[str] = None
    format: Optional[str] = None
    allowed_values: Optional[List[str]] = None
    max_length: Optional[int] = None

    @property
    def askable(self) -> bool:
        return self.required and not self.source and self.name not in AUTO_DERIVED_FIELDS


class PracticeAreaRegistry:
    """Read-only access to per-category field schemas and question templates."""

    def __init__(self, areas: Dict[str, dict], default_category: Optional[str] = None):
        self._areas = areas
        self._fields = {
            key: self._build_fields(area)
            for key, area in areas.items()
        }
        self.default_category = default_category if default_category in areas else None

    @classmethod
    def from_dict(cls, data: dict, default_category: Optional[str] = None) -> 'PracticeAreaRegistry':
        areas = cls._validate(data)
        return cls(areas, default_category=default_category)

    @classmethod
    def from_file(cls, path, default_category: Optional[str] = None) -> 'PracticeAreaRegistry':
        config_path = Path(path)
        if not config_path.exists():
            raise PracticeAreaConfigError(f"Practice area config not found: {config_path}")
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise PracticeAreaConfigError(f"Invalid JSON in {config_path}: {e}") from e
        registry = cls.from_dict(data, default_category=default_category)
        logger.info(f"Loaded {len(registry.categories())} practice areas from {config_path}")
        return registry

    @staticmethod
    def _validate(data: dict) -> Dict[str, dict]:
        if not isinstance(data, dict) or not isinstance(data.get('legal_practice_areas'), dict):
            raise PracticeAreaConfigError("Missing 'legal_practice_areas' section")
        areas = data['legal_practice_areas']
        if not areas:
            raise PracticeAreaConfigError("No practice areas configured")

        for key, area in areas.items():
            for section in ('name', 'required_fields', 'chat_flow'):
                if section not in area:
                    raise PracticeAreaConfigError(f"Practice area '{key}' is missing '{section}'")
            fields = area['required_fields']
            for field_name, field_config in fields.items():
                if 'type' not in field_config:
                    raise PracticeAreaConfigError(f"Field '{key}.{field_name}' has no type")
            for step in area['chat_flow']:
                if step.get('field') not in fields:
                    raise PracticeAreaConfigError(
                        f"Chat flow of '{key}' references unknown field '{step.get('field')}'"
                    )
        return areas

    @staticmethod
    def _build_fields(area: dict) -> Dict[str, FieldSpec]:
        return {
            name: FieldSpec(
                name=name,
                type=config.get('type', 'text'),
                required=bool(config.get('required', False)),
                source=config.get('source'),
                value=config.get('value'),
                format=config.get('format'),
                allowed_values=config.get('allowed_values'),
                max_length=config.get('max_length'),
            )
            for name, config in area['required_fields'].items()
        }

    def categories(self) -> List[str]:
        return list(self._areas)

    def has_category(self, category: Optional[str]) -> bool:
        return category in self._areas

    def get_area(self, category: str) -> dict:
        try:
            return self._areas[category]
        except KeyError:
            raise PracticeAreaConfigError(f"Unknown practice area: {category}") from None

    def display_name(self, category: str) -> str:
        area = self._areas.get(category)
        if not area:
            return category
        return area.get('display_name') or area['name'].lower()

    def get_field(self, category: str, field: str) -> Optional[FieldSpec]:
        return self._fields.get(category, {}).get(field)

    def fields(self, category: str) -> List[FieldSpec]:
        return list(self._fields.get(category, {}).values())

    def get_required_fields(self, category: str) -> List[str]:
        """
        Ordered field names that must be asked for a category.

        Chat-flow order comes first, then any remaining required fields in
        declaration order. Server-populated, config-sourced and auto-derived
        fields are excluded.
        """
        if category not in self._areas:
            return []
        specs = self._fields[category]
        flow = sorted(self._areas[category]['chat_flow'], key=lambda step: step.get('order', 0))
        ordered = [step['field'] for step in flow]
        ordered += [name for name in specs if name not in ordered]
        return [name for name in ordered if specs[name].askable]

    def get_missing_fields(self, category: str, answers: dict) -> List[str]:
        answers = answers or {}
        return [
            field for field in self.get_required_fields(category)
            if answers.get(field) in (None, '')
        ]

    def get_next_missing_field(self, category: str, answers: dict) -> Optional[str]:
        missing = self.get_missing_fields(category, answers)
        return missing[0] if missing else None

    def server_fields(self, category: str) -> List[str]:
        return [spec.name for spec in self.fields(category) if spec.source in SERVER_SOURCES]

    def config_values(self, category: str) -> dict:
        return {
            spec.name: spec.value
            for spec in self.fields(category)
            if spec.source == 'config' and spec.value is not None
        }

    def field_formats(self, category: str) -> dict:
        return {spec.name: spec.format for spec in self.fields(category) if spec.format}

    def get_vendor_config(self, category: str) -> dict:
        return dict(self._areas.get(category, {}).get('lead_prosper_config') or {})

    def subcategories(self, category: str) -> List[str]:
        return list(self._areas.get(category, {}).get('subcategories') or [])

    def subcategory_keywords(self, category: str) -> Dict[str, List[str]]:
        return dict(self._areas.get(category, {}).get('subcategory_keywords') or {})

    def detection_keywords(self, category: str) -> List[str]:
        return list(self._areas.get(category, {}).get('ai_detection_keywords') or [])

    def compassionate_intro(self, category: str, describe: str = '') -> str:
        personality = self._areas.get(category, {}).get('personality') or {}
        text = (describe or '').lower()
        for keyword, intro in (personality.get('context_intros') or {}).items():
            if keyword.lower() in text:
                return intro
        return personality.get('compassionate_intro') or DEFAULT_INTRO

    def get_question_template(self, category: str, field: str, context_answers: Optional[dict] = None) -> str:
        """Question text for ``field`` with placeholders filled from known answers."""
        answers = context_answers or {}
        questions = self._areas.get(category, {}).get('field_questions') or {}
        template = questions.get(field)
        context = f"{answers.get('describe') or ''} {answers.get('sub_category') or ''}".lower()

        if isinstance(template, dict):
            template = self._select_variant(template, context)
        if not template:
            template = FALLBACK_QUESTIONS.get(field)
        if not template:
            template = "{name_prefix}could you please provide your " + field.replace('_', ' ') + "?"

        first_name = answers.get('first_name') or ''
        variables = {
            'first_name': first_name or 'friend',
            'name_prefix': f"{first_name}, " if first_name else '',
            'compassionate_intro': self.compassionate_intro(category, answers.get('describe') or ''),
        }
        question = template
        for key, value in variables.items():
            question = question.replace('{' + key + '}', value)
        question = question.strip()
        return question[:1].upper() + question[1:]

    @staticmethod
    def _select_variant(variants: dict, context: str) -> Optional[str]:
        if 'accident' in context and variants.get('accident'):
            return variants['accident']
        if ('injury' in context or 'hurt' in context) and variants.get('injury'):
            return variants['injury']
        if variants.get('default'):
            return variants['default']
        return next(iter(variants.values()), None)


@lru_cache(maxsize=1)
def get_registry() -> PracticeAreaRegistry:
    """Process-wide registry loaded from ``PRACTICE_AREAS_CONFIG_PATH``."""
    return PracticeAreaRegistry.from_file(
        settings.PRACTICE_AREAS_CONFIG_PATH,
        default_category=settings.INTAKE_DEFAULT_CATEGORY,
    )


def invalidate_registry() -> None:
    """Drop the cached registry; the next ``get_registry()`` reloads from disk."""
    get_registry.cache_clear()
