import itertools
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from caresync.config import Settings
from caresync.database import DatabaseManager
from caresync.services.base import (
    BaseCalendarService, CalendarNotFoundError, DuplicateError, EventNotFoundError, TokenInvalidError,
)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    __test__ = False
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, webhook_base_url=None, **sync_config):
    config = {
        'debounce_ms': 10,
        'retry_base_ms': 10,
        'retry_max_ms': 40,
        'default_time_zone': 'America/New_York',
    }
    config.update(sync_config)
    return TestSettings(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        app_base_url='https://app.example.org',
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        webhook_base_url=webhook_base_url,
        sync_config=config,
    )


class FakeCalendarService(BaseCalendarService):
    """In-memory Google Calendar with call counters and scripted failures."""

    def __init__(self):
        self.calendars: Dict[str, Dict[str, Any]] = {'primary': {'id': 'primary', 'summary': 'me@example.com'}}
        self.events: Dict[str, Dict[str, Dict[str, Any]]] = {'primary': {}}
        self.acl: Dict[str, Dict[str, str]] = {}
        self.calls = Counter()
        self.requests: List[Dict[str, Any]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.pages: Optional[List[Dict[str, Any]]] = None
        self.invalid_sync_tokens = set()
        self.duplicate_grants = set()
        self.channels: Dict[str, Dict[str, Any]] = {}
        self.stopped_channels: List[str] = []
        self.closed = False
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=pytz.UTC)

    def tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat().replace('+00:00', 'Z')

    def fail_next(self, method: str, error: Exception) -> None:
        self.failures.setdefault(method, []).append(error)

    def _record(self, method: str, **params) -> None:
        self.calls[method] += 1
        self.requests.append({'method': method, **params})
        queued = self.failures.get(method)
        if queued:
            raise queued.pop(0)

    def _calendar_events(self, calendar_id: str) -> Dict[str, Dict[str, Any]]:
        if calendar_id not in self.events:
            raise CalendarNotFoundError(f"Calendar {calendar_id} not found", 404)
        return self.events[calendar_id]

    def add_event(self, calendar_id: str, **fields) -> Dict[str, Any]:
        event = {'id': f"evt{next(self._ids)}", 'status': 'confirmed', 'updated': self.tick(), **fields}
        event['etag'] = f'"{event["id"]}-1"'
        self.events.setdefault(calendar_id, {})[event['id']] = event
        return event

    async def get_event(self, calendar_id, event_id):
        self._record('get_event', calendar_id=calendar_id, event_id=event_id)
        event = self._calendar_events(calendar_id).get(event_id)
        if event is None or event.get('status') == 'cancelled':
            raise EventNotFoundError(f"Event {event_id} not found", 404)
        return dict(event)

    async def insert_event(self, calendar_id, body):
        self._record('insert_event', calendar_id=calendar_id, body=body)
        self._calendar_events(calendar_id)
        event = self.add_event(calendar_id, **body)
        return dict(event)

    async def patch_event(self, calendar_id, event_id, body):
        self._record('patch_event', calendar_id=calendar_id, event_id=event_id, body=body)
        event = self._calendar_events(calendar_id).get(event_id)
        if event is None or event.get('status') == 'cancelled':
            raise EventNotFoundError(f"Event {event_id} not found", 404)
        event.update(body)
        event['updated'] = self.tick()
        return dict(event)

    async def list_events_page(self, calendar_id, *, sync_token=None, page_token=None, time_min=None):
        self._record(
            'list_events_page', calendar_id=calendar_id, sync_token=sync_token,
            page_token=page_token, time_min=time_min,
        )
        if sync_token and sync_token in self.invalid_sync_tokens:
            raise TokenInvalidError("Sync token is no longer valid", 410, 'fullSyncRequired')
        if self.pages is not None:
            index = int(page_token) if page_token else 0
            return self.pages[index]
        return {
            'items': [dict(event) for event in self._calendar_events(calendar_id).values()],
            'nextSyncToken': f"sync-{self.calls['list_events_page']}",
        }

    async def move_event(self, calendar_id, event_id, destination):
        self._record('move_event', calendar_id=calendar_id, event_id=event_id, destination=destination)
        event = self._calendar_events(calendar_id).pop(event_id, None)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found", 404)
        event['updated'] = self.tick()
        self._calendar_events(destination)[event_id] = event
        return dict(event)

    async def get_calendar(self, calendar_id):
        self._record('get_calendar', calendar_id=calendar_id)
        if calendar_id not in self.calendars:
            raise CalendarNotFoundError(f"Calendar {calendar_id} not found", 404)
        return dict(self.calendars[calendar_id])

    async def list_calendars(self):
        self._record('list_calendars')
        return [dict(calendar) for calendar in self.calendars.values()]

    async def create_calendar(self, summary, time_zone):
        self._record('create_calendar', summary=summary, time_zone=time_zone)
        calendar_id = f"cal{next(self._ids)}@group.calendar.google.com"
        self.calendars[calendar_id] = {'id': calendar_id, 'summary': summary, 'timeZone': time_zone}
        self.events[calendar_id] = {}
        return dict(self.calendars[calendar_id])

    async def list_acl(self, calendar_id):
        self._record('list_acl', calendar_id=calendar_id)
        return [
            {'role': role, 'scope': {'type': 'user', 'value': email}}
            for email, role in self.acl.get(calendar_id, {}).items()
        ]

    async def insert_acl(self, calendar_id, email, role):
        self._record('insert_acl', calendar_id=calendar_id, email=email, role=role)
        if email in self.duplicate_grants:
            raise DuplicateError("The requested identifier already exists", 409, 'duplicate')
        self.acl.setdefault(calendar_id, {})[email] = role
        return {'role': role, 'scope': {'type': 'user', 'value': email}}

    async def watch_events(self, calendar_id, channel_id, address, token, ttl_seconds):
        self._record(
            'watch_events', calendar_id=calendar_id, channel_id=channel_id,
            address=address, token=token, ttl_seconds=ttl_seconds,
        )
        self._calendar_events(calendar_id)
        expires_ms = int((datetime.now(pytz.UTC) + timedelta(seconds=ttl_seconds)).timestamp() * 1000)
        channel = {
            'kind': 'api#channel',
            'id': channel_id,
            'resourceId': f"res-{calendar_id}",
            'resourceUri': f"https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events",
            'token': token,
            'expiration': str(expires_ms),
        }
        self.channels[channel_id] = channel
        return dict(channel)

    async def stop_channel(self, channel_id, resource_id):
        self._record('stop_channel', channel_id=channel_id, resource_id=resource_id)
        self.channels.pop(channel_id, None)
        self.stopped_channels.append(channel_id)

    async def close(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db(settings):
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    yield db_manager
    db_manager.engine.dispose()


@pytest.fixture
def fake_client():
    return FakeCalendarService()


def connect_user(db, user_id='user-1', **fields):
    """Store a credential that will not need a refresh."""
    values = {
        'access_token': 'access-token',
        'refresh_token': 'refresh-token',
        'expires_at': datetime.now(pytz.UTC) + timedelta(hours=1),
    }
    values.update(fields)
    with db.get_session() as session:
        credential = db.upsert_credential(session, user_id, **values)
        session.commit()
    return credential


def seed_appointment(db, user_id='user-1', recipient_id=None, pending=True, **fields):
    """Create a recipient (if needed) and an appointment; returns (recipient_id, item_id)."""
    values = {
        'summary': 'Cardiology follow-up',
        'start_at': datetime(2024, 1, 15, 14, 0, tzinfo=pytz.UTC),
        'end_at': datetime(2024, 1, 15, 15, 0, tzinfo=pytz.UTC),
    }
    values.update(fields)
    with db.get_session() as session:
        recipient_id = recipient_id or db.add_recipient(session, user_id, 'Mom')
        item_id = db.add_appointment(session, recipient_id, **values)
        if pending:
            db.mark_item_pending(session, item_id)
        session.commit()
    return recipient_id, item_id


def get_link(db, item_id):
    with db.get_session() as session:
        return db.get_sync_link(session, item_id)


def get_appointment(db, item_id):
    with db.get_session() as session:
        return db.get_appointment(session, item_id)
