"""Tests for payload extraction and mapping."""

import pytest

from fieldsync.errors import InvalidTimeRange, MissingIdentifier
from fieldsync.extraction import extract_first, extract_list, unwrap_entity
from fieldsync.mappers import (
    appointment_to_crm_payload, camel_to_snake, crm_status_to_normalized, fss_appointment_from_payload,
    fss_status_to_normalized, map_quote_to_contact, normalized_status_to_fss
)
from fieldsync.models import FieldMapping, Quote, SystemSide

from conftest import make_appointment, utc


class TestExtraction:

    def test_first_non_empty_candidate_wins(self):
        assert extract_first({'Id': '', 'AppointmentId': 5}, ('Id', 'AppointmentId')) == 5
        assert extract_first({'contact': {'email': 'a@b.c'}}, ('email', 'contact.email')) == 'a@b.c'
        assert extract_first({}, ('Id',), default='x') == 'x'

    def test_list_and_entity_wrappers(self):
        assert extract_list([1, 2]) == [1, 2]
        assert extract_list({'Data': [{'Id': 1}]}) == [{'Id': 1}]
        assert extract_list({'message': 'none'}) == []
        assert unwrap_entity({'appointment': {'id': 'e1'}}) == {'id': 'e1'}
        assert unwrap_entity({'id': 'e1'}) == {'id': 'e1'}


class TestAppointmentMapping:

    def test_fss_payload_with_alternate_keys(self):
        appointment = fss_appointment_from_payload({
            'AppointmentId': 9,
            'ScheduledStart': '2024-03-01T09:00:00Z',
            'ScheduledEnd': '2024-03-01T10:30:00Z',
            'StatusName': 'In Progress',
            'Customer': {'Email': 'lee@example.com'},
        }, team_id=4)

        assert appointment.id == '9'
        assert appointment.team_id == '4'
        assert appointment.status == 'in_progress'
        assert appointment.email == 'lee@example.com'
        assert appointment.end == utc(2024, 3, 1, 10, 30)

    def test_fss_payload_errors(self):
        with pytest.raises(MissingIdentifier):
            fss_appointment_from_payload({'StartTime': '2024-03-01T09:00:00Z'})
        with pytest.raises(InvalidTimeRange):
            fss_appointment_from_payload({'Id': 1, 'StartTime': '2024-03-01T09:00:00Z'})
        with pytest.raises(InvalidTimeRange):
            fss_appointment_from_payload({
                'Id': 1, 'StartTime': '2024-03-01T10:00:00Z', 'EndTime': '2024-03-01T09:00:00Z'
            })

    def test_crm_payload(self):
        appointment = make_appointment(SystemSide.FSS, 'f1', utc(2024, 3, 1, 9), status='cancelled', notes=None)

        body = appointment_to_crm_payload(appointment, 'C1', 'L1')

        assert body['calendarId'] == 'C1'
        assert body['appointmentStatus'] == 'cancelled'
        assert 'description' not in body
        assert 'contactId' not in body

    def test_status_mapping(self):
        assert fss_status_to_normalized('Canceled') == 'cancelled'
        assert fss_status_to_normalized('On Hold') == 'on_hold'
        assert fss_status_to_normalized(None) == 'scheduled'
        assert normalized_status_to_fss('no_show') == 'No Show'
        assert crm_status_to_normalized('Canceled') == 'cancelled'
        assert crm_status_to_normalized('no-show') == 'no_show'


class TestQuoteToContact:

    def test_standard_and_custom_fields(self):
        quote = Quote(id='7', fields={
            'QuoteId': 7,
            'FirstName': 'Ana Lucia Perez',
            'Email': 'ana@example.com',
            'HomePostalCode': '78701',
            'PetCount': 2,
            'IsVip': True,
            'Notes': '',
            'Lead': {'LeadId': 3},
        })

        contact = map_quote_to_contact(quote)

        assert contact['firstName'] == 'Ana'
        assert contact['lastName'] == 'Lucia Perez'
        assert contact['email'] == 'ana@example.com'
        assert contact['postalCode'] == '78701'
        custom = {f['key']: f['field_value'] for f in contact['customFields']}
        assert custom == {'fss_quote_quote_id': 7, 'fss_quote_pet_count': 2}

    def test_user_mapping_reads_nested_quote_fields(self):
        quote = Quote(id='7', fields={'QuoteId': 7, 'Quote': {'Notes': 'gate code 1234'}})

        contact = map_quote_to_contact(quote, [FieldMapping(fss_field='Notes', crm_field='notes')], 'q_')

        assert contact['notes'] == 'gate code 1234'
        assert contact['customFields'] == [{'key': 'q_quote_id', 'field_value': 7}]


def test_camel_to_snake():
    assert camel_to_snake('HomePostalCode') == 'home_postal_code'
    assert camel_to_snake('QuoteID') == 'quote_id'
    assert camel_to_snake('job-notes') == 'job_notes'
    assert camel_to_snake('already_snake') == 'already_snake'
