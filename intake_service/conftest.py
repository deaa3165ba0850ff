import pytest
from django.conf import settings
from django.core.cache import cache

from intake.services.ai_client import ExtractionBackendError
from intake.services.category_detection import CategoryDetector
from intake.services.conversation import ConversationService
from intake.services.extraction import FieldExtractor
from intake.services.lead_queue import LeadQueue
from intake.services.schema_registry import PracticeAreaRegistry
from intake.services.sessions import SessionStore


class FakeGeocoder:
    """In-memory stand-in for ``ZipGeocoder``."""

    def __init__(self, places=None, error=None):
        self.places = places if places is not None else {'94102': {'city': 'San Francisco', 'state': 'CA'}}
        self.error = error
        self.lookups = []

    def lookup(self, zip_code):
        self.lookups.append(zip_code)
        if self.error is not None:
            raise self.error
        return self.places.get(zip_code)


class FakeBackend:
    """In-memory stand-in for ``GenerativeBackend``."""

    enabled = True

    def __init__(self, fields=None, category=None, error=None):
        self.fields = fields or {}
        self.category = category or {}
        self.error = error
        self.calls = []

    def extract_fields(self, message, candidate_fields, known_answers=None, category=None):
        names = [spec.name for spec in candidate_fields]
        self.calls.append(('extract_fields', message, names))
        if self.error is not None:
            raise self.error
        return {key: value for key, value in self.fields.items() if key in names}

    def classify_category(self, message, categories):
        self.calls.append(('classify_category', message, list(categories)))
        if self.error is not None:
            raise self.error
        return dict(self.category)


@pytest.fixture(autouse=True)
def clear_cache():
    """Throttle counters and geocoding results must not leak between tests."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def registry():
    return PracticeAreaRegistry.from_file(settings.PRACTICE_AREAS_CONFIG_PATH, default_category='general')


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def failing_backend():
    return FakeBackend(error=ExtractionBackendError("upstream timeout"))


@pytest.fixture
def store():
    return SessionStore(ttl=3600)


@pytest.fixture
def queue():
    return LeadQueue(max_attempts=3, retention=3600, poll_interval=0.01, visibility_timeout=300)


@pytest.fixture
def make_conversation(registry, store, queue, geocoder):
    """Factory for a ``ConversationService`` wired with fakes."""
    def _make(backend=None, geocoder_override=None):
        geo = geocoder_override if geocoder_override is not None else geocoder
        return ConversationService(
            registry=registry,
            store=store,
            queue=queue,
            extractor=FieldExtractor(registry, geocoder=geo, backend=backend),
            detector=CategoryDetector(registry, backend=backend),
            default_category='general',
            fallback_after=2,
        )
    return _make


@pytest.fixture
def conversation(make_conversation):
    return make_conversation()


@pytest.fixture
def personal_injury_answers():
    """A complete set of collected answers for a personal injury lead."""
    return {
        'describe': 'I was rear-ended at a red light',
        'sub_category': 'car accident',
        'first_name': 'Jane',
        'last_name': 'Doe',
        'date_of_incident': '2024-03-14',
        'bodily_injury': 'yes',
        'at_fault': 'no',
        'has_attorney': 'no',
        'zip_code': '94102',
        'city': 'San Francisco',
        'state': 'CA',
        'phone': '(555) 123-4567',
        'email': 'jane.doe@example.com',
    }


@pytest.fixture
def ready_session(store, personal_injury_answers):
    """A session with every required field collected, waiting for consent."""
    session = store.create(ip_address='203.0.113.7', user_agent='pytest', session_id='ready-session-0001')
    store.update(
        session.session_id,
        stage='READY_TO_SUBMIT',
        main_category='personal_injury_law',
        sub_category='car accident',
        answers=personal_injury_answers,
    )
    return store.get(session.session_id)


@pytest.fixture
def lead_data():
    """A frozen lead snapshot as stored on a queued job."""
    return {
        'lp_campaign_id': 22990,
        'lp_supplier_id': 84732,
        'lp_key': 'pi-key',
        'first_name': 'Jane',
        'last_name': 'Doe',
        'phone': '5551234567',
        'email': 'jane.doe@example.com',
        'zip_code': '94102',
        'date_of_incident': '2024-03-14',
        'main_category': 'Personal Injury Law',
        'sub_category': 'car accident',
        'ip_address': '203.0.113.7',
        'tcpa_text': '',
    }
