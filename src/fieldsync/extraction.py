"""Ordered-fallback field extraction from heterogeneous external payloads.

Both platforms return the same logical value under different keys depending on
the endpoint and API version. Each logical field has an explicit priority list;
the first key holding a non-empty value wins. Keys may be dotted paths into
nested objects (``contact.email``).
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

FieldTable = Dict[str, Tuple[str, ...]]

FSS_APPOINTMENT_FIELDS: FieldTable = {
    'id': ('Id', 'AppointmentId', 'BookingId', 'id'),
    'start': ('StartTime', 'ScheduledStart', 'ServiceDate', 'Date', 'ScheduledDate', 'startTime'),
    'end': ('EndTime', 'ScheduledEnd', 'ServiceEndTime', 'endTime'),
    'status': ('Status', 'StatusName', 'status'),
    'last_modified': ('LastModified', 'ModifiedDate', 'DateModified', 'UpdatedAt', 'lastModified'),
    'team_id': ('TeamId', 'AssignedTeamId', 'teamId'),
    'title': ('ServiceName', 'Title', 'title'),
    'notes': ('Notes', 'Description', 'notes'),
    'contact_id': ('CustomerId', 'ContactId', 'customerId'),
    'email': ('Email', 'EmailAddress', 'Customer.Email'),
    'phone': ('Phone', 'PhoneNumber', 'Customer.Phone'),
    'first_name': ('FirstName', 'Customer.FirstName'),
    'last_name': ('LastName', 'Customer.LastName'),
    'address': ('Address', 'ServiceAddress', 'HomeAddress1'),
    'city': ('City', 'HomeCity'),
    'state': ('State', 'Region', 'HomeRegion'),
    'postal_code': ('PostalCode', 'ZipCode', 'HomePostalCode'),
}

CRM_APPOINTMENT_FIELDS: FieldTable = {
    'id': ('id', 'appointmentId', 'eventId'),
    'start': ('startTime', 'start', 'date'),
    'end': ('endTime', 'end'),
    'status': ('appointmentStatus', 'status'),
    'last_modified': ('updatedAt', 'dateUpdated', 'lastModified'),
    'calendar_id': ('calendarId', 'calendar.id'),
    'title': ('title', 'name'),
    'notes': ('notes', 'description'),
    'contact_id': ('contactId', 'contact.id', 'customerId'),
    'email': ('contact.email', 'email'),
    'phone': ('contact.phone', 'phone'),
    'first_name': ('contact.firstName', 'firstName'),
    'last_name': ('contact.lastName', 'lastName'),
    'address': ('address', 'address1'),
    'city': ('city',),
    'state': ('state', 'region'),
    'postal_code': ('postalCode', 'zipCode'),
}

FSS_QUOTE_FIELDS: FieldTable = {
    'id': ('QuoteId', 'Id', 'quoteId', 'id', 'Quote.QuoteId'),
    'lead_id': ('LeadId', 'leadId', 'Lead.LeadId'),
    'quote_number': ('QuoteNumber', 'quoteNumber', 'Quote.QuoteNumber'),
    'total_amount': ('TotalAmount', 'QuoteTotal', 'Total', 'totalAmount', 'Quote.TotalAmount'),
    'last_modified': ('LastModified', 'ModifiedDate', 'DateModified', 'UpdatedAt', 'lastModified'),
}

FSS_TEAM_FIELDS: FieldTable = {
    'team_id': ('TeamId', 'Id', 'teamId', 'id'),
    'team_name': ('TeamName', 'Name', 'teamName', 'name'),
}

# Where the id of a created/updated entity appears in write responses
RESPONSE_ID_FIELDS: Tuple[str, ...] = (
    'id', 'Id', 'contact.id', 'appointment.id', 'event.id', 'opportunity.id',
    'data.id', 'Data.Id', 'AppointmentId', 'Appointment.Id',
)

RESPONSE_MODIFIED_FIELDS: Tuple[str, ...] = (
    'updatedAt', 'appointment.updatedAt', 'event.updatedAt', 'dateUpdated',
    'LastModified', 'Data.LastModified', 'Appointment.LastModified',
)

# Where list endpoints put their items
LIST_FIELDS: Tuple[str, ...] = (
    'events', 'appointments', 'Appointments', 'quotes', 'Quotes', 'teams', 'Teams',
    'data', 'Data', 'items', 'Items', 'results', 'Results',
)

# Where single-entity endpoints wrap their entity
ENTITY_WRAPPER_FIELDS: Tuple[str, ...] = (
    'appointment', 'Appointment', 'event', 'quote', 'data', 'Data',
)

WEBHOOK_EVENT_TYPE_FIELDS: Tuple[str, ...] = ('type', 'event', 'eventType', 'EventType')
WEBHOOK_PAYLOAD_FIELDS: Tuple[str, ...] = ('appointment', 'data', 'Data', 'Appointment')
WEBHOOK_QUOTE_ID_FIELDS: Tuple[str, ...] = (
    'quoteId', 'QuoteId', 'data.quoteId', 'data.QuoteId', 'Data.QuoteId', 'quote.id', 'Quote.QuoteId', 'id',
)


def _is_empty(value: Any) -> bool:
    return value is None or value == ''


def get_path(payload: Any, path: str) -> Any:
    """Read a dotted path from nested dicts, returning None when any step is missing."""
    current = payload
    for part in path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def extract_first(payload: Any, candidates: Iterable[str], default: Any = None) -> Any:
    """Return the value of the first candidate key holding a non-empty value."""
    if not isinstance(payload, dict):
        return default
    for path in candidates:
        value = get_path(payload, path)
        if not _is_empty(value):
            return value
    return default


def extract_field(payload: Any, table: FieldTable, field: str, default: Any = None) -> Any:
    return extract_first(payload, table[field], default)


def extract_fields(payload: Any, table: FieldTable) -> Dict[str, Any]:
    """Resolve every field of a table at once."""
    return {field: extract_first(payload, candidates) for field, candidates in table.items()}


def extract_id(payload: Any, candidates: Iterable[str] = RESPONSE_ID_FIELDS) -> Optional[str]:
    value = extract_first(payload, candidates)
    return None if value is None else str(value)


def extract_list(payload: Any, candidates: Iterable[str] = LIST_FIELDS) -> List[Any]:
    """Extract the item list from a list response. A bare list is returned as is."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for path in candidates:
            value = get_path(payload, path)
            if isinstance(value, list):
                return value
    return []


def unwrap_entity(payload: Any, candidates: Iterable[str] = ENTITY_WRAPPER_FIELDS) -> Any:
    """Return the wrapped entity of a single-entity response, or the payload itself."""
    if isinstance(payload, dict):
        for path in candidates:
            value = get_path(payload, path)
            if isinstance(value, dict):
                return value
    return payload
