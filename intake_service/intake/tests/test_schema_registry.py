"""
Unit tests for the practice area schema registry.
"""
import json

import pytest

from intake.services.schema_registry import (
    PracticeAreaConfigError,
    PracticeAreaRegistry,
    get_registry,
    invalidate_registry,
)

MINIMAL_CONFIG = {
    'legal_practice_areas': {
        'traffic_law': {
            'name': 'Traffic Law',
            'chat_flow': [
                {'order': 2, 'field': 'phone'},
                {'order': 1, 'field': 'first_name'},
            ],
            'required_fields': {
                'first_name': {'type': 'text', 'required': True},
                'phone': {'type': 'phone', 'required': True},
                'ticket_number': {'type': 'text', 'required': True},
                'state': {'type': 'state', 'required': True},
                'ip_address': {'type': 'text', 'required': True, 'source': 'server'},
            },
        },
    },
}


class TestRegistryLoading:
    """Tests for loading and validating configuration."""

    def test_bundled_config_loads(self, registry):
        assert 'personal_injury_law' in registry.categories()
        assert registry.default_category == 'general'

    def test_missing_file(self, tmp_path):
        with pytest.raises(PracticeAreaConfigError):
            PracticeAreaRegistry.from_file(tmp_path / 'missing.json')

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'areas.json'
        path.write_text('{not json')
        with pytest.raises(PracticeAreaConfigError, match='Invalid JSON'):
            PracticeAreaRegistry.from_file(path)

    def test_missing_section(self):
        with pytest.raises(PracticeAreaConfigError, match='legal_practice_areas'):
            PracticeAreaRegistry.from_dict({'areas': {}})

    def test_chat_flow_referencing_unknown_field(self):
        config = json.loads(json.dumps(MINIMAL_CONFIG))
        config['legal_practice_areas']['traffic_law']['chat_flow'].append({'order': 3, 'field': 'nope'})
        with pytest.raises(PracticeAreaConfigError, match='unknown field'):
            PracticeAreaRegistry.from_dict(config)

    def test_get_registry_is_cached_until_invalidated(self):
        invalidate_registry()
        first = get_registry()
        assert get_registry() is first
        invalidate_registry()
        assert get_registry() is not first


class TestRequiredFields:
    """Tests for required field ordering and filtering."""

    def test_personal_injury_order(self, registry):
        assert registry.get_required_fields('personal_injury_law') == [
            'describe', 'first_name', 'last_name', 'date_of_incident', 'bodily_injury',
            'at_fault', 'has_attorney', 'zip_code', 'phone', 'email',
        ]

    def test_server_and_auto_derived_fields_are_never_asked(self, registry):
        for category in registry.categories():
            fields = registry.get_required_fields(category)
            for excluded in ('ip_address', 'user_agent', 'main_category', 'sub_category', 'city', 'state',
                             'trustedform_cert_url', 'jornaya_leadid'):
                assert excluded not in fields

    def test_chat_flow_first_then_declaration_order(self):
        registry = PracticeAreaRegistry.from_dict(MINIMAL_CONFIG)
        # state is auto-derived from the ZIP code, ip_address is server-populated
        assert registry.get_required_fields('traffic_law') == ['first_name', 'phone', 'ticket_number']

    def test_unknown_category_has_no_fields(self, registry):
        assert registry.get_required_fields('maritime_law') == []
        assert registry.get_next_missing_field('maritime_law', {}) is None

    def test_missing_fields_treat_blank_as_missing(self, registry):
        answers = {'describe': 'rear-ended', 'first_name': '', 'last_name': 'Doe'}
        missing = registry.get_missing_fields('general', answers)
        assert missing[0] == 'first_name'
        assert 'last_name' not in missing

    def test_next_missing_field_is_stable(self, registry):
        answers = {'describe': 'rear-ended', 'first_name': 'Jane'}
        assert registry.get_next_missing_field('personal_injury_law', answers) == 'last_name'
        assert registry.get_next_missing_field('personal_injury_law', answers) == 'last_name'


class TestQuestionTemplates:
    """Tests for question rendering."""

    def test_accident_variant(self, registry):
        question = registry.get_question_template(
            'personal_injury_law', 'date_of_incident',
            {'first_name': 'Jane', 'sub_category': 'car accident'},
        )
        assert question == 'Jane, when did the accident happen?'

    def test_injury_variant(self, registry):
        question = registry.get_question_template(
            'personal_injury_law', 'date_of_incident',
            {'describe': 'I got an injury at work'},
        )
        assert question == 'When did the injury occur?'

    def test_default_variant_without_name(self, registry):
        question = registry.get_question_template('personal_injury_law', 'date_of_incident', {})
        assert question == 'When did this incident occur?'

    def test_first_name_placeholder_falls_back_to_friend(self, registry):
        question = registry.get_question_template('personal_injury_law', 'phone', {})
        assert question == "Thanks, friend. What's the best phone number to reach you at?"

    def test_compassionate_intro_uses_context(self, registry):
        question = registry.get_question_template(
            'personal_injury_law', 'first_name', {'describe': 'I was in an accident'},
        )
        assert question.startswith("I'm sorry to hear about your accident.")
        assert question.endswith("what's your full name?")

    def test_field_without_template_gets_generic_question(self):
        registry = PracticeAreaRegistry.from_dict(MINIMAL_CONFIG)
        question = registry.get_question_template('traffic_law', 'ticket_number', {'first_name': 'Sam'})
        assert question == 'Sam, could you please provide your ticket number?'


class TestVendorConfig:
    """Tests for vendor and server field helpers."""

    def test_vendor_config(self, registry):
        config = registry.get_vendor_config('personal_injury_law')
        assert config['lp_campaign_id'] == 22991
        assert config['lp_supplier_id'] == 84732

    def test_server_fields(self, registry):
        fields = registry.server_fields('personal_injury_law')
        assert {'ip_address', 'user_agent', 'landing_page_url', 'jornaya_leadid', 'tcpa_text'} <= set(fields)

    def test_config_values_and_formats(self, registry):
        assert registry.config_values('personal_injury_law') == {'main_category': 'Personal Injury Law'}
        assert registry.field_formats('personal_injury_law') == {'date_of_incident': 'MM/DD/YYYY'}

    def test_display_name(self, registry):
        assert registry.display_name('family_law') == 'family law'
        assert registry.display_name('unknown') == 'unknown'
