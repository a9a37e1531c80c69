"""Transformations between FSS payloads, CRM payloads and the normalized models."""

import re
import logging
from typing import Any, Dict, List, Optional, Set

from .errors import InvalidTimeRange, MissingIdentifier
from .extraction import (
    CRM_APPOINTMENT_FIELDS, FSS_APPOINTMENT_FIELDS, FSS_QUOTE_FIELDS, FieldTable,
    extract_fields, get_path
)
from .models import Appointment, FieldMapping, Quote, SystemSide, parse_timestamp

logger = logging.getLogger(__name__)

FSS_TO_NORMALIZED_STATUS = {
    'Scheduled': 'scheduled',
    'Confirmed': 'confirmed',
    'In Progress': 'in_progress',
    'Completed': 'completed',
    'Cancelled': 'cancelled',
    'Canceled': 'cancelled',
    'No Show': 'no_show',
    'Rescheduled': 'rescheduled',
}

NORMALIZED_TO_FSS_STATUS = {
    'scheduled': 'Scheduled',
    'confirmed': 'Confirmed',
    'in_progress': 'In Progress',
    'completed': 'Completed',
    'cancelled': 'Cancelled',
    'no_show': 'No Show',
    'rescheduled': 'Rescheduled',
}

# Standard CRM contact fields and the FSS keys that may carry them, in priority order
STANDARD_CONTACT_FIELDS: Dict[str, List[str]] = {
    'firstName': ['FirstName', 'first_name', 'firstName', 'firstname'],
    'lastName': ['LastName', 'last_name', 'lastName', 'lastname'],
    'email': ['Email', 'email', 'EmailAddress', 'email_address'],
    'phone': ['Phone', 'phone', 'PhoneNumber', 'phone_number', 'Mobile', 'mobile'],
    'address1': ['Address', 'address', 'HomeAddress1', 'home_address1', 'BillingAddress1', 'billing_address1'],
    'city': ['City', 'city', 'HomeCity', 'home_city', 'BillingCity', 'billing_city'],
    'state': ['State', 'state', 'Region', 'region', 'HomeRegion', 'home_region', 'BillingRegion', 'billing_region'],
    'postalCode': ['PostalCode', 'postal_code', 'ZipCode', 'zip_code', 'HomePostalCode', 'home_postal_code',
                   'BillingPostalCode', 'billing_postal_code'],
}

# Nested objects a quote payload may wrap its fields in
QUOTE_NESTED_PREFIXES = ('Quote', 'Lead')


def camel_to_snake(name: str) -> str:
    """Convert CamelCase / camelCase / mixed keys into snake_case."""
    name = re.sub(r'[\s\-.]+', '_', name)
    name = re.sub(r'([A-Z]+)([A-Z][a-z])', r'\1_\2', name)
    name = re.sub(r'([a-z0-9])([A-Z])', r'\1_\2', name)
    return re.sub(r'_+', '_', name).strip('_').lower()


def snake_to_camel(name: str) -> str:
    return re.sub(r'_([a-z])', lambda m: m.group(1).upper(), name)


def fss_status_to_normalized(status: Optional[str]) -> str:
    if not status:
        return 'scheduled'
    return FSS_TO_NORMALIZED_STATUS.get(status, re.sub(r'\s+', '_', status.strip().lower()))


def normalized_status_to_fss(status: Optional[str]) -> str:
    if not status:
        return 'Scheduled'
    return NORMALIZED_TO_FSS_STATUS.get(status, status.replace('_', ' ').capitalize())


def crm_status_to_normalized(status: Optional[str]) -> str:
    if not status:
        return 'scheduled'
    normalized = re.sub(r'[\s\-]+', '_', status.strip().lower())
    if normalized == 'canceled':
        return 'cancelled'
    return normalized


def _build_appointment(payload: Dict[str, Any], table: FieldTable, source: SystemSide, **overrides) -> Appointment:
    if not isinstance(payload, dict):
        raise MissingIdentifier(f"{source.value} appointment payload is not an object")

    fields = extract_fields(payload, table)
    fields.update({k: v for k, v in overrides.items() if v is not None})

    if fields.get('id') is None:
        raise MissingIdentifier(f"{source.value} appointment payload carries no identifier")

    try:
        start = parse_timestamp(fields['start'])
        end = parse_timestamp(fields['end'])
        last_modified = parse_timestamp(fields['last_modified'])
    except ValueError as e:
        raise InvalidTimeRange(f"{source.value} appointment {fields['id']}: {e}") from e
    if start is None or end is None:
        raise InvalidTimeRange(f"{source.value} appointment {fields['id']} is missing its start or end time")
    if start >= end:
        raise InvalidTimeRange(f"{source.value} appointment {fields['id']} ends before it starts")

    if source == SystemSide.FSS:
        status = fss_status_to_normalized(fields.get('status'))
    else:
        status = crm_status_to_normalized(fields.get('status'))

    return Appointment(
        id=fields['id'],
        source=source,
        start=start,
        end=end,
        status=status,
        last_modified=last_modified,
        team_id=fields.get('team_id'),
        calendar_id=fields.get('calendar_id'),
        title=fields.get('title') or 'Service Appointment',
        notes=fields.get('notes'),
        contact_id=fields.get('contact_id'),
        email=fields.get('email'),
        phone=fields.get('phone'),
        first_name=fields.get('first_name'),
        last_name=fields.get('last_name'),
        address=fields.get('address'),
        city=fields.get('city'),
        state=fields.get('state'),
        postal_code=fields.get('postal_code'),
        raw=payload,
    )


def fss_appointment_from_payload(payload: Dict[str, Any], team_id: Optional[str] = None) -> Appointment:
    """Normalize an FSS appointment payload.

    Args:
        payload: Raw FSS appointment (or booked lead/quote) object
        team_id: Team to assume when the payload does not name one

    Raises:
        MissingIdentifier: No appointment ID could be extracted
        InvalidTimeRange: Start/end missing, unparseable or inverted
    """
    appointment = _build_appointment(payload, FSS_APPOINTMENT_FIELDS, SystemSide.FSS)
    if appointment.team_id is None and team_id is not None:
        appointment.team_id = str(team_id)
    return appointment


def crm_appointment_from_payload(payload: Dict[str, Any], calendar_id: Optional[str] = None) -> Appointment:
    """Normalize a CRM calendar event payload."""
    appointment = _build_appointment(payload, CRM_APPOINTMENT_FIELDS, SystemSide.CRM)
    if appointment.calendar_id is None and calendar_id is not None:
        appointment.calendar_id = str(calendar_id)
    return appointment


def _drop_empty(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None and v != ''}


def appointment_to_crm_payload(
    appointment: Appointment,
    calendar_id: str,
    location_id: str,
    contact_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build the CRM calendar event body for an appointment."""
    return _drop_empty({
        'calendarId': calendar_id,
        'locationId': location_id,
        'contactId': contact_id,
        'title': appointment.title,
        'description': appointment.notes,
        'startTime': appointment.start.isoformat(),
        'endTime': appointment.end.isoformat(),
        'appointmentStatus': appointment.status,
        'address': appointment.address,
        'ignoreDateRange': False,
        'toNotify': False,
    })


def appointment_to_fss_payload(
    appointment: Appointment,
    team_id: str,
    location_id: str,
    crm_appointment_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build the FSS appointment body for an appointment."""
    return _drop_empty({
        'LocationId': location_id,
        'TeamId': team_id,
        'Title': appointment.title,
        'Notes': appointment.notes,
        'ScheduledStart': appointment.start.isoformat(),
        'ScheduledEnd': appointment.end.isoformat(),
        'Date': appointment.start.date().isoformat(),
        'Status': normalized_status_to_fss(appointment.status),
        'Email': appointment.email,
        'Phone': appointment.phone,
        'FirstName': appointment.first_name,
        'LastName': appointment.last_name,
        'Address': appointment.address,
        'City': appointment.city,
        'State': appointment.state,
        'PostalCode': appointment.postal_code,
        'ExternalReference': crm_appointment_id,
    })


def appointment_contact_fields(appointment: Appointment) -> Dict[str, Any]:
    """CRM contact fields for the customer on an appointment."""
    return _drop_empty({
        'firstName': appointment.first_name,
        'lastName': appointment.last_name,
        'email': appointment.email,
        'phone': appointment.phone,
        'address1': appointment.address,
        'city': appointment.city,
        'state': appointment.state,
        'postalCode': appointment.postal_code,
    })


# Quotes

def quote_from_payload(payload: Dict[str, Any]) -> Quote:
    """Normalize an FSS quote (or lead wrapping a quote) payload."""
    if not isinstance(payload, dict):
        raise MissingIdentifier("Quote payload is not an object")

    fields = extract_fields(payload, FSS_QUOTE_FIELDS)
    if fields['id'] is None:
        raise MissingIdentifier("Quote payload carries no identifier")

    total = fields.get('total_amount')
    try:
        total = float(total) if total is not None else None
    except (TypeError, ValueError):
        logger.warning(f"Quote {fields['id']} has a non-numeric total: {total!r}")
        total = None

    try:
        last_modified = parse_timestamp(fields.get('last_modified'))
    except ValueError:
        logger.warning(f"Quote {fields['id']} has an unparseable modification time")
        last_modified = None

    return Quote(
        id=fields['id'],
        lead_id=fields.get('lead_id'),
        quote_number=fields.get('quote_number'),
        total_amount=total,
        last_modified=last_modified,
        fields=payload,
    )


def _lookup_quote_field(data: Dict[str, Any], field_name: str) -> Optional[tuple]:
    """Find a user-mapped field under its name variants, then inside nested Quote/Lead objects.

    Returns (matched_key, value) or None.
    """
    variants = [
        field_name,
        field_name.lower(),
        field_name.upper(),
        camel_to_snake(field_name),
        snake_to_camel(field_name),
    ]
    for key in variants:
        value = data.get(key)
        if value is not None:
            return key, value

    for prefix in QUOTE_NESTED_PREFIXES:
        for key in (field_name, field_name.lower()):
            path = f"{prefix}.{key}"
            value = get_path(data, path)
            if value is not None:
                return path, value
    return None


def _split_name(value: str) -> List[str]:
    return value.strip().split()


def map_quote_to_contact(
    quote: Quote,
    field_mappings: Optional[List[FieldMapping]] = None,
    custom_field_prefix: str = 'fss_quote_'
) -> Dict[str, Any]:
    """Map quote fields onto a CRM contact body.

    User-defined mappings apply first, then the standard contact field table,
    then every remaining scalar field becomes a custom field named
    ``<custom_field_prefix><snake_case_key>``.
    """
    data = quote.fields
    contact: Dict[str, Any] = {}
    consumed: Set[str] = set()

    for mapping in field_mappings or []:
        if not mapping.fss_field or not mapping.crm_field:
            continue
        found = _lookup_quote_field(data, mapping.fss_field)
        if found is None:
            continue
        key, value = found
        consumed.add(key)

        if mapping.crm_field == 'firstName' and isinstance(value, str):
            parts = _split_name(value)
            if parts:
                contact['firstName'] = parts[0]
                if len(parts) > 1:
                    contact['lastName'] = ' '.join(parts[1:])
        elif mapping.crm_field == 'lastName' and isinstance(value, str):
            contact.setdefault('lastName', value)
        else:
            contact[mapping.crm_field] = value

    for crm_field, candidates in STANDARD_CONTACT_FIELDS.items():
        if crm_field in contact:
            continue
        for key in candidates:
            value = data.get(key)
            if value is None or key in consumed:
                continue
            if crm_field == 'firstName' and isinstance(value, str):
                parts = _split_name(value)
                if parts:
                    contact['firstName'] = parts[0]
                    if len(parts) > 1 and 'lastName' not in contact:
                        contact['lastName'] = ' '.join(parts[1:])
            else:
                contact[crm_field] = value
            consumed.add(key)
            break

    custom_fields = []
    for key, value in data.items():
        if key in consumed or key.startswith('_'):
            continue
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            continue
        if value == '':
            continue
        custom_fields.append({'key': f"{custom_field_prefix}{camel_to_snake(key)}", 'field_value': value})
    if custom_fields:
        contact['customFields'] = custom_fields

    return {k: v for k, v in contact.items() if v is not None}


def quote_opportunity_fields(
    quote: Quote,
    pipeline_id: Optional[str] = None,
    pipeline_stage_id: Optional[str] = None
) -> Dict[str, Any]:
    """Opportunity body carrying the quote amount and reference."""
    return _drop_empty({
        'name': quote.quote_number or f"Quote {quote.id}",
        'status': 'open',
        'source': 'Field Service Quote',
        'monetaryValue': quote.total_amount,
        'pipelineId': pipeline_id,
        'pipelineStageId': pipeline_stage_id,
    })
