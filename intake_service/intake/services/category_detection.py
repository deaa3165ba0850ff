"""
Practice area detection for the first message of a conversation.

Keyword matching runs first; the generative backend is consulted only when no
keyword matches.
"""
import logging
import re
from typing import NamedTuple, Optional

from intake.services.ai_client import ExtractionBackendError
from intake.services.schema_registry import PracticeAreaRegistry

logger = logging.getLogger(__name__)

DEFAULT_SUBCATEGORY = 'other'


class CategoryMatch(NamedTuple):
    category: Optional[str]
    sub_category: Optional[str] = None
    method: Optional[str] = None


def _mentions(text: str, phrase: str) -> bool:
    return re.search(r'\b' + re.escape(phrase.lower()) + r'\b', text) is not None


class CategoryDetector:
    def __init__(self, registry: PracticeAreaRegistry, backend=None):
        self.registry = registry
        self.backend = backend

    def detect(self, message: str) -> CategoryMatch:
        text = (message or '').lower()
        if not text.strip():
            return CategoryMatch(None)

        best, best_score = None, 0
        for category in self.registry.categories():
            score = sum(1 for keyword in self.registry.detection_keywords(category) if _mentions(text, keyword))
            if score > best_score:
                best, best_score = category, score

        if best:
            sub_category = self.detect_subcategory(best, text)
            logger.info(f"Keyword detection: {best} / {sub_category} (score={best_score})")
            return CategoryMatch(best, sub_category, 'keyword')

        return self._detect_with_backend(message, text)

    def _detect_with_backend(self, message: str, text: str) -> CategoryMatch:
        if self.backend is None or not getattr(self.backend, 'enabled', False):
            return CategoryMatch(None)
        candidates = [key for key in self.registry.categories() if key != self.registry.default_category]
        try:
            result = self.backend.classify_category(message, candidates)
        except ExtractionBackendError as e:
            logger.warning(f"Category classification failed: {e}")
            return CategoryMatch(None, method='ai_failed')

        category = result.get('category')
        if not category or category not in candidates:
            return CategoryMatch(None, method='ai_no_match')

        proposed = (result.get('sub_category') or '').lower()
        known = [item.lower() for item in self.registry.subcategories(category)]
        sub_category = proposed if proposed in known else self.detect_subcategory(category, text)
        logger.info(f"Backend detection: {category} / {sub_category}")
        return CategoryMatch(category, sub_category, 'ai')

    def detect_subcategory(self, category: str, message: str) -> str:
        text = (message or '').lower()
        for sub_category, keywords in self.registry.subcategory_keywords(category).items():
            if any(_mentions(text, keyword) for keyword in keywords):
                return sub_category
        for sub_category in self.registry.subcategories(category):
            if sub_category != DEFAULT_SUBCATEGORY and _mentions(text, sub_category):
                return sub_category
        return DEFAULT_SUBCATEGORY
