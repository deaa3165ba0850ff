"""
Mapping service for turning collected answers into a vendor (LeadProsper) payload.

The vendor payload is permissive: unmapped fields pass through
unchanged so new practice-area fields need no code changes, while empty
values are dropped.
"""
import copy
import logging
from datetime import date
from typing import List, Optional, Tuple

from intake.services.normalization import format_phone, is_empty, strip_empty
from intake.services.schema_registry import PracticeAreaRegistry

logger = logging.getLogger(__name__)

VENDOR_CREDENTIAL_FIELDS = ('lp_campaign_id', 'lp_supplier_id', 'lp_key')


class MissingRequiredFieldError(Exception):
    """Raised when a field the vendor requires is missing from a lead."""
    pass


def build_lead_data(category: str, answers: dict, server_data: Optional[dict],
                    registry: PracticeAreaRegistry) -> dict:
    """
    Snapshot everything needed to deliver a lead.

    Combines the collected answers with vendor credentials and config values
    from the practice area, plus server-populated fields (IP, user agent,
    landing page) and compliance tokens. The result is a deep copy so later
    session changes cannot leak into a queued job.
    """
    server_data = server_data or {}
    lead = dict(registry.get_vendor_config(category))
    lead.update(strip_empty(answers))

    for field in registry.server_fields(category):
        value = server_data.get(field, lead.get(field))
        if not is_empty(value):
            lead[field] = value

    # Config-sourced values always win over anything typed by the user
    lead.update(registry.config_values(category))
    lead.setdefault('main_category', registry.get_area(category)['name'])

    logger.debug(f"Built lead snapshot for {category} with {len(lead)} fields")
    return copy.deepcopy(lead)


def format_date(value, fmt: Optional[str]) -> str:
    """Render an ISO date string in a ``MM/DD/YYYY``-style format."""
    if not fmt or not isinstance(value, str):
        return value
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        return value
    pattern = fmt.replace('YYYY', '%Y').replace('MM', '%m').replace('DD', '%d')
    return parsed.strftime(pattern)


def map_to_vendor(lead_data: dict, field_map: Optional[dict] = None,
                  field_formats: Optional[dict] = None) -> Tuple[dict, List[str]]:
    """
    Maps a lead snapshot to the vendor's wire format.

    Core vendor fields (REQUIRED):
    - phone: canonicalized to (xxx) xxx-xxxx
    - lp_campaign_id: campaign the lead is posted to

    Args:
        lead_data: Frozen lead snapshot from the queue
        field_map: Internal field name -> vendor field name renames
        field_formats: Field name -> date format (e.g. MM/DD/YYYY)

    Returns:
        Tuple of (vendor_payload, omitted_fields)
        - vendor_payload: Payload ready to POST
        - omitted_fields: Fields dropped because they were empty

    Raises:
        MissingRequiredFieldError: If phone or lp_campaign_id is missing
    """
    field_map = field_map or {}
    field_formats = field_formats or {}
    payload = {}
    omitted = []

    phone = format_phone(lead_data.get('phone'))
    if not phone:
        raise MissingRequiredFieldError("Missing required field: phone")
    if is_empty(lead_data.get('lp_campaign_id')):
        raise MissingRequiredFieldError("Missing required field: lp_campaign_id")

    for field, value in lead_data.items():
        if is_empty(value):
            omitted.append(field)
            continue
        if field == 'phone':
            value = phone
        elif field in field_formats:
            value = format_date(value, field_formats[field])
        elif isinstance(value, str):
            value = value.strip()
        payload[field_map.get(field, field)] = value

    if omitted:
        logger.info(f"Omitted {len(omitted)} empty fields: {omitted}")
    logger.debug(f"Mapped vendor payload with {len(payload)} fields")
    return payload, omitted


def compare_vendor_fields(payload: dict, category: str, registry: PracticeAreaRegistry,
                          field_map: Optional[dict] = None) -> dict:
    """
    Diff a vendor payload against the practice area schema.

    Returns a dict with ``missing`` (required fields absent), ``empty``
    (present but blank) and ``unexpected`` (not declared anywhere) lists.
    """
    field_map = field_map or {}
    reverse = {vendor: internal for internal, vendor in field_map.items()}
    present = {reverse.get(key, key): value for key, value in payload.items()}

    declared = {spec.name for spec in registry.fields(category)} | set(VENDOR_CREDENTIAL_FIELDS)
    required = [spec.name for spec in registry.fields(category) if spec.required]
    required += [field for field in VENDOR_CREDENTIAL_FIELDS if field in registry.get_vendor_config(category)]

    return {
        'missing': sorted(field for field in required if field not in present),
        'empty': sorted(field for field, value in present.items() if is_empty(value)),
        'unexpected': sorted(field for field in present if field not in declared),
    }
