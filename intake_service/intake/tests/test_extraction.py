"""
Unit tests for field extraction.
"""
from datetime import date

import pytest

from conftest import FakeBackend, FakeGeocoder
from intake.services.ai_client import ExtractionBackendError
from intake.services.extraction import FieldExtractor, is_rich_message

TODAY = date(2024, 6, 15)
PI = 'personal_injury_law'
STARTED = {'describe': 'I was rear-ended', 'sub_category': 'car accident'}


@pytest.fixture
def extractor(registry, geocoder):
    return FieldExtractor(registry, geocoder=geocoder, today=lambda: TODAY)


class TestRichMessage:
    """Tests for is_rich_message."""

    @pytest.mark.parametrize('message', [
        'my name is Jane',
        'I was hit by a truck',
        'one two three four five six seven eight nine ten eleven twelve',
    ])
    def test_rich(self, message):
        assert is_rich_message(message, {'describe': 'x'}) is True

    def test_greeting_counts_only_on_fresh_session(self):
        assert is_rich_message('Hello', {}) is True
        assert is_rich_message('Hello', {'describe': 'x'}) is False

    @pytest.mark.parametrize('message', ['', '555-123-4567', 'yes'])
    def test_not_rich(self, message):
        assert is_rich_message(message, {'describe': 'x'}) is False


class TestTargetFieldPatterns:
    """Tests for deterministic extraction of the asked-about field."""

    def test_phone(self, extractor):
        result = extractor.extract('(555) 123-4567', 'phone', STARTED, PI)
        assert result.kind == 'fields'
        assert result.values == {'phone': '(555) 123-4567'}
        assert result.method == 'regex'

    def test_phone_with_too_few_digits(self, extractor):
        result = extractor.extract('555-1234', 'phone', STARTED, PI)
        assert result.kind == 'error'
        assert 'phone number' in result.message

    def test_zip_is_enriched_with_city_and_state(self, extractor):
        result = extractor.extract('94102', 'zip_code', STARTED, PI)
        assert result.values == {'zip_code': '94102', 'city': 'San Francisco', 'state': 'CA'}

    def test_zip_without_geocoder_result(self, registry):
        extractor = FieldExtractor(registry, geocoder=FakeGeocoder(places={}), today=lambda: TODAY)
        result = extractor.extract('94102', 'zip_code', STARTED, PI)
        assert result.values == {'zip_code': '94102'}

    def test_short_zip(self, extractor):
        result = extractor.extract('9410', 'zip_code', STARTED, PI)
        assert result.kind == 'error'
        assert 'ZIP code' in result.message

    def test_email(self, extractor):
        result = extractor.extract('it is Jane.Doe@Example.com', 'email', STARTED, PI)
        assert result.values == {'email': 'jane.doe@example.com'}

    def test_malformed_email(self, extractor):
        result = extractor.extract('jane@nowhere', 'email', STARTED, PI)
        assert result.kind == 'error'

    def test_relative_date(self, extractor):
        result = extractor.extract('yesterday', 'date_of_incident', STARTED, PI)
        assert result.values == {'date_of_incident': '2024-06-14'}

    def test_future_date(self, extractor):
        result = extractor.extract('2030-01-01', 'date_of_incident', STARTED, PI)
        assert result.kind == 'error'
        assert 'future' in result.message

    @pytest.mark.parametrize('message, expected', [
        ('Yes, my neck hurts', 'yes'),
        ('I was not injured', 'no'),
    ])
    def test_yes_no(self, extractor, message, expected):
        result = extractor.extract(message, 'bodily_injury', STARTED, PI)
        assert result.values == {'bodily_injury': expected}

    @pytest.mark.parametrize('message, field', [
        ("I don't have an attorney", 'has_attorney'),
        ("It wasn't my fault", 'at_fault'),
    ])
    def test_negated_answers(self, extractor, message, field):
        result = extractor.extract(message, field, STARTED, PI)
        assert result.values == {field: 'no'}

    def test_month_day_without_year_is_in_the_past(self, extractor):
        result = extractor.extract('December 20', 'date_of_incident', STARTED, PI)
        assert result.kind == 'fields'
        assert result.values == {'date_of_incident': '2023-12-20'}

    def test_free_text_field(self, extractor):
        result = extractor.extract('A truck ran a red light', 'describe', {}, PI)
        assert result.values == {'describe': 'A truck ran a red light'}
        assert result.method == 'direct'


class TestNameExtraction:
    """Tests for the two-step name flow."""

    def test_full_name(self, extractor):
        result = extractor.extract('John Smith', 'first_name', STARTED, PI)
        assert result.kind == 'fields'
        assert result.values == {'first_name': 'John', 'last_name': 'Smith'}
        assert result.method == 'full_name_parsed'

    def test_first_name_only_asks_for_last_name(self, extractor):
        result = extractor.extract('John', 'first_name', STARTED, PI)
        assert result.kind == 'followUp'
        assert result.values == {'first_name': 'John'}
        assert result.question == "Thank you, John. What's your last name?"

    def test_unsure_answer_is_not_a_name(self, extractor):
        result = extractor.extract("I'm not sure", 'first_name', STARTED, PI)
        assert result.kind == 'error'
        assert result.method == 'ai_failed'

    @pytest.mark.parametrize('message', ['Smith', 'my last name is smith'])
    def test_last_name_completion(self, extractor, message):
        result = extractor.extract(message, 'last_name', {**STARTED, 'first_name': 'John'}, PI)
        assert result.values == {'last_name': 'Smith'}
        assert result.method == 'last_name_completed'


class TestOpportunisticScan:
    """Tests for details mentioned in passing."""

    def test_rich_message_without_target(self, extractor):
        message = 'Hi, my name is Jane Doe and I was rear-ended yesterday. My number is 555-123-4567'
        result = extractor.extract(message, None, STARTED, PI)
        assert result.kind == 'fields'
        assert result.values == {
            'first_name': 'Jane',
            'last_name': 'Doe',
            'date_of_incident': '2024-06-14',
            'phone': '(555) 123-4567',
        }

    def test_email_alongside_target(self, extractor):
        result = extractor.extract('(555) 123-4567 or jane@example.com', 'phone', STARTED, PI)
        assert result.values == {'phone': '(555) 123-4567', 'email': 'jane@example.com'}

    def test_nothing_to_extract(self, extractor):
        result = extractor.extract('ok', None, STARTED, PI)
        assert result.kind == 'fields'
        assert result.values == {}
        assert result.method == 'no_match'


class TestBackendFallback:
    """Tests for the generative backend fallback."""

    def test_unanswerable_target_without_backend(self, extractor):
        result = extractor.extract('invalid phone', 'phone', STARTED, PI)
        assert result.kind == 'error'
        assert result.method == 'ai_failed'
        assert 'phone number' in result.message

    def test_backend_answers_target(self, registry):
        backend = FakeBackend(fields={'bodily_injury': 'yes'})
        extractor = FieldExtractor(registry, backend=backend, today=lambda: TODAY)
        result = extractor.extract('it is complicated', 'bodily_injury', STARTED, PI)
        assert result.values == {'bodily_injury': 'yes'}
        assert result.method == 'ai_success'
        assert backend.calls[0][2] == ['bodily_injury']

    def test_backend_without_answer(self, registry):
        extractor = FieldExtractor(registry, backend=FakeBackend(), today=lambda: TODAY)
        result = extractor.extract('it is complicated', 'bodily_injury', STARTED, PI)
        assert result.kind == 'error'
        assert result.method == 'ai_no_match'

    def test_backend_error(self, registry, failing_backend):
        extractor = FieldExtractor(registry, backend=failing_backend, today=lambda: TODAY)
        result = extractor.extract('it is complicated', 'bodily_injury', STARTED, PI)
        assert result.kind == 'error'
        assert result.method == 'ai_failed'

    def test_backend_values_are_validated(self, registry):
        backend = FakeBackend(fields={'bodily_injury': 'yes', 'at_fault': 'maybe', 'email': ''})
        extractor = FieldExtractor(registry, backend=backend, today=lambda: TODAY)
        result = extractor.extract('I was in a wreck and it was a mess, honestly a very long story', None, STARTED, PI)
        assert result.values == {'bodily_injury': 'yes'}

    def test_pattern_match_on_short_answer_skips_backend(self, registry):
        backend = FakeBackend(fields={'phone': '5550000000'})
        extractor = FieldExtractor(registry, backend=backend, today=lambda: TODAY)
        result = extractor.extract('(555) 123-4567', 'phone', STARTED, PI)
        assert result.values == {'phone': '(555) 123-4567'}
        assert backend.calls == []

    def test_rich_answer_fills_other_fields_from_backend(self, registry):
        backend = FakeBackend(fields={'bodily_injury': 'yes', 'at_fault': 'no', 'date_of_incident': '2024-01-01'})
        extractor = FieldExtractor(registry, backend=backend, today=lambda: TODAY)
        message = "It was yesterday, I was hurt badly and it was the other driver's fault"

        result = extractor.extract(message, 'date_of_incident', STARTED, PI)

        assert result.kind == 'fields'
        assert result.method == 'regex'
        assert result.values == {'date_of_incident': '2024-06-14', 'bodily_injury': 'yes', 'at_fault': 'no'}
        assert len(backend.calls) == 1
        assert 'date_of_incident' not in backend.calls[0][2]
        assert 'at_fault' in backend.calls[0][2]

    def test_rich_answer_keeps_pattern_value_when_backend_fails(self, registry, failing_backend):
        extractor = FieldExtractor(registry, backend=failing_backend, today=lambda: TODAY)
        message = "It was yesterday, I was hurt badly and it was the other driver's fault"

        result = extractor.extract(message, 'date_of_incident', STARTED, PI)

        assert result.kind == 'fields'
        assert result.values == {'date_of_incident': '2024-06-14'}
        assert result.method == 'regex'

    def test_backend_error_type_is_not_raised(self, registry):
        backend = FakeBackend(error=ExtractionBackendError('quota'))
        extractor = FieldExtractor(registry, backend=backend, today=lambda: TODAY)
        result = extractor.extract('I was hurt and I need help with all of this right now please', None, STARTED, PI)
        assert result.kind == 'fields'
        assert result.method == 'ai_failed'
