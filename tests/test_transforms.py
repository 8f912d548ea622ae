from datetime import date, datetime
from decimal import Decimal

import pytest
import pytz

from caresync.models import Appointment, Bill, BillStatus, ItemType
from caresync.timezones import (
    format_instant_with_zone, infer_time_zone_from_offset, parse_event_date, parse_rfc3339,
)
from caresync.transforms import (
    AppointmentTransform, BillTransform, EventTransform, TransformError, hash_content, resolve_event_reference,
    transform_for,
)


def make_appointment(**overrides):
    values = dict(
        item_id='item-1',
        recipient_id='rec-1',
        summary='Dentist',
        start_at=datetime(2024, 1, 15, 14, 0, tzinfo=pytz.UTC),
        end_at=datetime(2024, 1, 15, 15, 0, tzinfo=pytz.UTC),
        start_time_zone='America/New_York',
        location='12 Main St',
        prep_note='Bring insurance card',
    )
    values.update(overrides)
    return Appointment(**values)


def make_bill(**overrides):
    values = dict(
        item_id='bill-1',
        recipient_id='rec-1',
        amount=Decimal('42.5'),
        due_date=date(2024, 2, 1),
        status=BillStatus.OVERDUE,
        pay_url='https://pay.example.org/123',
    )
    values.update(overrides)
    return Bill(**values)


def test_appointment_payload_carries_zone_and_metadata():
    transform = AppointmentTransform(default_time_zone='UTC', app_base_url='https://app.example.org')
    payload = transform.build_payload(make_appointment())

    assert payload['summary'] == 'Dentist'
    assert payload['start'] == {'dateTime': '2024-01-15T09:00:00-05:00', 'timeZone': 'America/New_York'}
    # End zone follows the start zone when unset
    assert payload['end'] == {'dateTime': '2024-01-15T10:00:00-05:00', 'timeZone': 'America/New_York'}
    assert payload['description'] == 'Bring insurance card'
    assert payload['location'] == '12 Main St'
    assert payload['extendedProperties']['private'] == {'caresyncItemId': 'item-1', 'caresyncType': 'appointment'}
    assert payload['source'] == {'title': 'CareSync', 'url': 'https://app.example.org'}


def test_appointment_payload_falls_back_to_utc_for_unknown_zone():
    transform = AppointmentTransform(default_time_zone='UTC')
    payload = transform.build_payload(make_appointment(start_time_zone='Mars/Olympus_Mons'))

    assert payload['start'] == {'dateTime': '2024-01-15T14:00:00+00:00', 'timeZone': 'UTC'}
    assert 'source' not in payload


def test_bill_payload_is_all_day_on_due_date():
    payload = BillTransform().build_payload(make_bill())

    assert payload['summary'] == 'Bill $42.50 (Overdue)'
    assert payload['description'] == 'Pay online: https://pay.example.org/123\nStatus: overdue'
    assert payload['start'] == {'date': '2024-02-01'}
    assert payload['end'] == {'date': '2024-02-02'}
    assert payload['extendedProperties']['private']['caresyncType'] == 'bill'


def test_bill_payload_without_amount_or_url():
    payload = BillTransform().build_payload(make_bill(amount=None, pay_url=None, status=BillStatus.TODO))

    assert payload['summary'] == 'Bill'
    assert payload['description'] == 'Status: todo'


def test_content_hash_tracks_synced_fields_only():
    transform = AppointmentTransform()
    base = transform.content_hash(make_appointment())

    assert transform.content_hash(make_appointment()) == base
    assert transform.content_hash(make_appointment(summary='Dentist ')) == base
    assert transform.content_hash(make_appointment(summary='Orthodontist')) != base
    assert transform.content_hash(make_appointment(created_at=datetime(2020, 1, 1, tzinfo=pytz.UTC))) == base


def test_hash_content_normalizes_values():
    aware = datetime(2024, 1, 15, 9, 0, tzinfo=pytz.FixedOffset(-300))
    utc = datetime(2024, 1, 15, 14, 0, tzinfo=pytz.UTC)

    assert hash_content([aware]) == hash_content([utc])
    assert hash_content([None, 'a']) == hash_content(['', ' a '])
    assert hash_content([Decimal('1.5')]) == hash_content([Decimal('1.50')])


def test_remote_changes_infer_zone_from_offset():
    transform = AppointmentTransform(default_time_zone='America/New_York')
    event = {
        'summary': 'Dentist (moved)',
        'start': {'dateTime': '2024-01-16T10:00:00-05:00'},
        'end': {'dateTime': '2024-01-16T11:00:00-05:00'},
    }
    changes = transform.remote_changes(make_appointment(start_time_zone=None), event)

    assert changes['summary'] == 'Dentist (moved)'
    assert changes['start_at'] == datetime(2024, 1, 16, 15, 0, tzinfo=pytz.UTC)
    assert changes['end_at'] == datetime(2024, 1, 16, 16, 0, tzinfo=pytz.UTC)
    assert changes['start_time_zone'] == 'America/New_York'
    assert changes['end_time_zone'] == 'America/New_York'
    assert changes['start_offset'] == '-05:00'
    # Fields absent from the event keep their local value
    assert changes['location'] == '12 Main St'
    assert changes['prep_note'] == 'Bring insurance card'


def test_remote_changes_prefer_event_time_zone():
    transform = AppointmentTransform(default_time_zone='America/New_York')
    event = {
        'start': {'dateTime': '2024-07-01T09:00:00-07:00', 'timeZone': 'America/Los_Angeles'},
        'end': {'dateTime': '2024-07-01T10:00:00-07:00', 'timeZone': 'America/Los_Angeles'},
    }
    changes = transform.remote_changes(make_appointment(), event)

    assert changes['start_time_zone'] == 'America/Los_Angeles'
    assert changes['start_offset'] == '-07:00'
    assert changes['summary'] == 'Dentist'


def test_remote_changes_reject_event_without_times():
    with pytest.raises(TransformError):
        AppointmentTransform().remote_changes(make_appointment(), {'summary': 'x', 'start': {}})


def test_bill_remote_changes_only_move_due_date():
    changes = BillTransform().remote_changes(
        make_bill(), {'summary': 'Renamed', 'start': {'date': '2024-02-10'}, 'end': {'date': '2024-02-11'}}
    )
    assert changes == {'due_date': date(2024, 2, 10)}


def test_resolve_event_reference():
    event = {'extendedProperties': {'private': {'caresyncItemId': 'abc', 'caresyncType': 'bill'}}}
    assert resolve_event_reference(event) == ('abc', ItemType.BILL)
    assert resolve_event_reference({'id': 'evt'}) == (None, None)
    assert resolve_event_reference(
        {'extendedProperties': {'private': {'caresyncItemId': 'abc', 'caresyncType': 'task'}}}
    ) == ('abc', None)


def test_transform_for_selects_by_item_type():
    assert isinstance(transform_for('appointment'), AppointmentTransform)
    assert isinstance(transform_for(ItemType.BILL), BillTransform)


def test_format_instant_with_zone_uses_zone_offset_at_instant():
    summer = format_instant_with_zone(datetime(2024, 7, 1, 13, 0, tzinfo=pytz.UTC), 'America/New_York')
    assert summer == {'dateTime': '2024-07-01T09:00:00-04:00', 'timeZone': 'America/New_York'}


def test_all_day_event_date_resolves_to_midnight_utc():
    assert parse_event_date({'date': '2024-03-05'}) == datetime(2024, 3, 5, tzinfo=pytz.UTC)
    assert parse_event_date({}) is None
    assert parse_rfc3339('2024-03-05T10:00:00Z') == datetime(2024, 3, 5, 10, tzinfo=pytz.UTC)


def test_infer_time_zone_from_offset():
    reference = datetime(2024, 1, 15, tzinfo=pytz.UTC)
    assert infer_time_zone_from_offset('-05:00', reference, 'America/New_York') == 'America/New_York'
    assert infer_time_zone_from_offset('+05:30', reference, 'America/New_York') == 'Asia/Kolkata'
    assert infer_time_zone_from_offset('+04:00', reference, 'America/New_York') == 'Etc/GMT-4'
    assert infer_time_zone_from_offset('Z', reference, 'America/New_York') == 'UTC'
    assert infer_time_zone_from_offset(None, reference, 'America/New_York') is None


def test_event_transform_requires_every_hook():
    class HashOnly(EventTransform):
        item_type = ItemType.APPOINTMENT

        def content_hash(self, item):
            return ''

    with pytest.raises(TypeError):
        HashOnly()
