"""Bidirectional mapping between local schedulable entities and Google events."""

import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple

import pytz

from .models import Appointment, Bill, BillStatus, ItemType, Schedulable
from .timezones import (
    event_date_only, extract_event_time_zone, extract_offset, format_instant_with_zone,
    infer_time_zone_from_offset, offset_for, parse_event_date,
)

logger = logging.getLogger(__name__)

ITEM_ID_PROPERTY = 'caresyncItemId'
ITEM_TYPE_PROPERTY = 'caresyncType'
SOURCE_TITLE = 'CareSync'


class TransformError(ValueError):
    """Remote event cannot be mapped onto the local entity."""


def hash_content(parts: Iterable[Any]) -> str:
    """SHA-256 over ``|``-joined normalized field values.

    None becomes the empty string, datetimes are rendered in UTC ISO form and
    strings are trimmed.
    """
    normalized = []
    for value in parts:
        if value is None:
            normalized.append('')
        elif isinstance(value, datetime):
            normalized.append(value.astimezone(pytz.UTC).isoformat())
        elif isinstance(value, date):
            normalized.append(value.isoformat())
        elif isinstance(value, Decimal):
            normalized.append(f"{value:.2f}")
        else:
            normalized.append(str(getattr(value, 'value', value)).strip())
    return hashlib.sha256('|'.join(normalized).encode('utf-8')).hexdigest()


def resolve_event_reference(event: Dict[str, Any]) -> Tuple[Optional[str], Optional[ItemType]]:
    """Extract the embedded local item id and type from an event, if any."""
    private = (event.get('extendedProperties') or {}).get('private') or {}
    item_id = private.get(ITEM_ID_PROPERTY) or None
    try:
        item_type = ItemType(private[ITEM_TYPE_PROPERTY]) if private.get(ITEM_TYPE_PROPERTY) else None
    except ValueError:
        item_type = None
    return item_id, item_type


class EventTransform(ABC):
    """Base for per-entity-type payload builders and remote appliers."""

    item_type: ItemType

    def __init__(self, default_time_zone: str = 'UTC', app_base_url: Optional[str] = None):
        self.default_time_zone = default_time_zone
        self.app_base_url = app_base_url
        self.logger = logger.getChild(self.item_type.value)

    @abstractmethod
    def content_hash(self, item: Schedulable) -> str:
        pass

    @abstractmethod
    def build_payload(self, item: Schedulable) -> Dict[str, Any]:
        pass

    @abstractmethod
    def remote_changes(self, item: Schedulable, event: Dict[str, Any]) -> Dict[str, Any]:
        """Column updates that bring ``item`` in line with ``event``.

        Raises:
            TransformError: If the event cannot be applied
        """

    def _metadata(self, item: Schedulable) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            'extendedProperties': {
                'private': {
                    ITEM_ID_PROPERTY: str(item.item_id),
                    ITEM_TYPE_PROPERTY: self.item_type.value,
                }
            }
        }
        if self.app_base_url:
            payload['source'] = {'title': SOURCE_TITLE, 'url': self.app_base_url}
        return payload


class AppointmentTransform(EventTransform):
    item_type = ItemType.APPOINTMENT

    def content_hash(self, item: Appointment) -> str:
        return hash_content([
            item.summary,
            item.start_at,
            item.end_at,
            item.start_time_zone,
            item.end_time_zone,
            item.start_offset,
            item.end_offset,
            item.location,
            item.prep_note,
            item.assigned_collaborator_id,
        ])

    def _date_time(self, instant: datetime, preferred_zone: str) -> Dict[str, str]:
        try:
            return format_instant_with_zone(instant, preferred_zone)
        except pytz.UnknownTimeZoneError:
            self.logger.warning(
                f"Failed to format appointment time in {preferred_zone!r}; falling back to UTC"
            )
            return format_instant_with_zone(instant, 'UTC')

    def build_payload(self, item: Appointment) -> Dict[str, Any]:
        start_zone = item.start_time_zone or self.default_time_zone
        end_zone = item.end_time_zone or start_zone
        payload: Dict[str, Any] = {
            'summary': item.summary,
            'start': self._date_time(item.start_at, start_zone),
            'end': self._date_time(item.end_at, end_zone),
        }
        if item.prep_note:
            payload['description'] = item.prep_note
        if item.location:
            payload['location'] = item.location
        payload.update(self._metadata(item))
        return payload

    def remote_changes(self, item: Appointment, event: Dict[str, Any]) -> Dict[str, Any]:
        start = parse_event_date(event.get('start'))
        end = parse_event_date(event.get('end'))
        if start is None or end is None:
            raise TransformError('Google event missing start/end time')

        start_offset = extract_offset((event.get('start') or {}).get('dateTime'))
        end_offset = extract_offset((event.get('end') or {}).get('dateTime'))

        fallback_start_zone = (
            item.start_time_zone
            or infer_time_zone_from_offset(start_offset, start, self.default_time_zone)
            or self.default_time_zone
        )
        start_zone = extract_event_time_zone(event.get('start'), fallback_start_zone)
        fallback_end_zone = (
            item.end_time_zone
            or item.start_time_zone
            or infer_time_zone_from_offset(end_offset, end, start_zone)
            or start_zone
        )
        end_zone = extract_event_time_zone(event.get('end'), fallback_end_zone)

        return {
            'summary': event['summary'] if event.get('summary') is not None else item.summary,
            'start_at': start.astimezone(pytz.UTC),
            'end_at': end.astimezone(pytz.UTC),
            'start_time_zone': start_zone,
            'end_time_zone': end_zone,
            'start_offset': self._offset(start, start_zone, start_offset),
            'end_offset': self._offset(end, end_zone, end_offset),
            'location': event['location'] if event.get('location') is not None else item.location,
            'prep_note': event['description'] if event.get('description') is not None else item.prep_note,
        }

    @staticmethod
    def _offset(instant: datetime, zone: str, fallback: Optional[str]) -> Optional[str]:
        try:
            return offset_for(instant, zone)
        except pytz.UnknownTimeZoneError:
            return '+00:00' if fallback == 'Z' else fallback


class BillTransform(EventTransform):
    item_type = ItemType.BILL

    def content_hash(self, item: Bill) -> str:
        return hash_content([
            item.amount,
            item.due_date,
            item.statement_date,
            item.status,
            item.pay_url,
            item.task_key,
        ])

    def build_payload(self, item: Bill) -> Dict[str, Any]:
        due = item.due_date or item.statement_date or datetime.now(pytz.UTC).date()

        summary = ['Bill']
        if item.amount is not None:
            summary.append(f"${Decimal(item.amount):.2f}")
        if item.status == BillStatus.OVERDUE:
            summary.append('(Overdue)')

        description = []
        if item.pay_url:
            description.append(f"Pay online: {item.pay_url}")
        description.append(f"Status: {item.status.value}")

        payload: Dict[str, Any] = {
            'summary': ' '.join(summary),
            'description': '\n'.join(description),
            'start': {'date': due.isoformat()},
            'end': {'date': (due + timedelta(days=1)).isoformat()},
        }
        payload.update(self._metadata(item))
        return payload

    def remote_changes(self, item: Bill, event: Dict[str, Any]) -> Dict[str, Any]:
        # Only the due date is editable from the calendar side.
        due = event_date_only(event.get('start'))
        return {'due_date': due or item.due_date}


TRANSFORMS = {
    ItemType.APPOINTMENT: AppointmentTransform,
    ItemType.BILL: BillTransform,
}


def transform_for(
    item_type: ItemType,
    default_time_zone: str = 'UTC',
    app_base_url: Optional[str] = None,
) -> EventTransform:
    """Return the transform for an item type.

    Raises:
        KeyError: If the item type has no transform
    """
    return TRANSFORMS[ItemType(item_type)](default_time_zone=default_time_zone, app_base_url=app_base_url)
